"""Crash-safe substitution of an original media file with its verified candidate.

The original is displaced to `<original>.bak` and the candidate takes the
original's path in one step where the platform allows it:

- Windows: ``ReplaceFileW`` (replace with backup, one call).
- POSIX: hard-link the original to the backup, then ``os.replace`` the
  candidate over the original. The original path always names a complete
  file.
- Fallback (no hard links, e.g. some network shares): rename original to
  backup, then rename candidate to original. The gap between the two renames
  is the only window where the original path is empty; startup
  reconciliation restores the backup if a crash lands there.

Any failure after the backup exists restores it. A failed restore raises
CriticalSwapError.
"""

import errno
import logging
import os
import shutil
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

from vrc.domain.errors import CriticalSwapError, SwapError
from vrc.infrastructure.artifacts import backup_path, temp_path

logger = logging.getLogger(__name__)

# Errors from the primary primitive that mean "not supported here, nothing changed"
_UNSUPPORTED = {errno.EPERM, errno.EXDEV, errno.EMLINK, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS}


class SwapState(str, Enum):
    ENCODED = "Encoded"
    VERIFIED = "Verified"
    BACKED_UP = "BackedUp"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"


class FileOps:
    """Filesystem primitives used by a swap. Tests override single steps."""

    def stat_dev(self, path: Path) -> int:
        return os.stat(path).st_dev

    def move(self, src: Path, dst: Path) -> None:
        shutil.move(str(src), str(dst))

    def link(self, src: Path, dst: Path) -> None:
        os.link(src, dst)

    def replace(self, src: Path, dst: Path) -> None:
        os.replace(src, dst)

    def unlink(self, path: Path) -> None:
        path.unlink()

    def replace_file(self, original: Path, candidate: Path, backup: Path) -> None:
        """Windows ReplaceFileW: candidate -> original, original -> backup."""
        import ctypes

        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        if not kernel32.ReplaceFileW(str(original), str(candidate), str(backup), 0, None, None):
            raise ctypes.WinError(ctypes.get_last_error())


class SwapTransaction:
    """One replace of `original` by `candidate`; lives for one pipeline run."""

    def __init__(self, original: Path, candidate: Path, ops: Optional[FileOps] = None):
        self.original = original
        self.candidate = candidate
        self.backup = backup_path(original)
        self.ops = ops or FileOps()
        self.state = SwapState.ENCODED
        self.strategy: Optional[str] = None

    def mark_verified(self) -> None:
        if self.state != SwapState.ENCODED:
            raise SwapError(f"cannot verify swap in state {self.state.value}")
        self.state = SwapState.VERIFIED

    def _stage_on_original_volume(self) -> None:
        if self.ops.stat_dev(self.candidate) == self.ops.stat_dev(self.original.parent):
            return
        staged = temp_path(self.original.parent, self.original)
        logger.info(f"SWAP_STAGE: {self.candidate} -> {staged} (cross-volume)")
        self.ops.move(self.candidate, staged)
        self.candidate = staged

    def _install(self) -> None:
        if sys.platform == "win32":
            try:
                self.ops.replace_file(self.original, self.candidate, self.backup)
                self.strategy = "replace_file"
                return
            except OSError as exc:
                if self.backup.exists() or not self.original.exists():
                    raise
                logger.warning(f"SWAP_FALLBACK: ReplaceFileW failed for {self.original.name}: {exc}")
        else:
            try:
                self.ops.link(self.original, self.backup)
            except OSError as exc:
                if exc.errno not in _UNSUPPORTED:
                    raise
                logger.warning(f"SWAP_FALLBACK: hard link unsupported for {self.original.name}: {exc}")
            else:
                self.state = SwapState.BACKED_UP
                self.ops.replace(self.candidate, self.original)
                self.strategy = "link_replace"
                return

        self.ops.replace(self.original, self.backup)
        self.state = SwapState.BACKED_UP
        self.ops.replace(self.candidate, self.original)
        self.strategy = "rename"

    def _rollback(self, cause: Exception) -> None:
        try:
            if self.backup.exists():
                if self.original.exists() and os.path.samefile(self.backup, self.original):
                    self.ops.unlink(self.backup)
                else:
                    self.ops.replace(self.backup, self.original)
        except OSError as exc:
            logger.critical(
                f"SWAP_ROLLBACK_FAILED: {self.original}: {exc}; backup left at {self.backup}"
            )
            raise CriticalSwapError(
                f"swap failed ({cause}) and restoring {self.backup} failed ({exc}); manual intervention required",
                self.backup,
            ) from exc
        self.state = SwapState.ROLLED_BACK
        logger.error(f"SWAP_ROLLED_BACK: {self.original.name}: {cause}")

    def commit(self) -> None:
        """Runs the replace; raises SwapError after a successful rollback."""
        if self.state != SwapState.VERIFIED:
            raise SwapError(f"refusing to swap unverified candidate for {self.original}")
        if self.backup.exists():
            raise SwapError(f"backup {self.backup} already exists; reconcile before swapping")

        try:
            self._stage_on_original_volume()
            self._install()
            self.state = SwapState.BACKED_UP
            self.ops.unlink(self.backup)
        except OSError as exc:
            self._rollback(exc)
            raise SwapError(f"swap failed for {self.original}: {exc}") from exc
        self.state = SwapState.COMMITTED
        logger.info(f"SWAP_COMMIT: {self.original.name} strategy={self.strategy}")

    def discard_candidate(self) -> None:
        try:
            if self.candidate.exists():
                self.ops.unlink(self.candidate)
        except OSError as exc:
            logger.warning(f"Failed to remove candidate {self.candidate}: {exc}")
