from pathlib import Path
from typing import Optional


class VrcError(Exception):
    """Base class for pipeline errors."""


class ProbeError(VrcError):
    """ffprobe missing, crashed, or returned unusable output."""

    def __init__(self, path: Path, message: str, exit_code: Optional[int] = None):
        super().__init__(f"{message} ({path}, exit_code={exit_code})")
        self.path = path
        self.exit_code = exit_code


class SwapError(VrcError):
    """Replace failed; the original was restored from its backup."""


class CriticalSwapError(SwapError):
    """Replace failed and the backup could not be restored.

    Manual inspection required; a stray .bak may remain next to the original.
    """

    def __init__(self, message: str, backup_path: Path):
        super().__init__(message)
        self.backup_path = backup_path
