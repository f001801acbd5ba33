import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional
from pydantic import BaseModel, Field
from vrc.domain.errors import ProbeError
from vrc.infrastructure.artifacts import (
    BACKUP_SUFFIX,
    is_temp_artifact,
    original_for_backup,
)


class ReconcileReport(BaseModel):
    restored: List[Path] = Field(default_factory=list)
    suspicious: List[Path] = Field(default_factory=list)
    kept: List[Path] = Field(default_factory=list)
    failed: List[Path] = Field(default_factory=list)


class HousekeepingService:
    """Cleans up residue of crashed runs: stray backups and temp outputs."""

    def __init__(self, probe: Optional[Callable[[Path], object]] = None, clock: Callable[[], float] = time.time):
        self.probe = probe
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def cleanup_temp_files(self, directory: Path, max_age_hours: float = 24.0) -> List[Path]:
        """Recursively removes encoder temp outputs older than max_age_hours."""
        cutoff = self.clock() - max_age_hours * 3600
        removed: List[Path] = []
        if not directory.exists():
            return removed
        for root, dirs, files in os.walk(directory):
            for file in files:
                path = Path(root) / file
                if not is_temp_artifact(path):
                    continue
                try:
                    if path.stat().st_mtime > cutoff:
                        continue
                    path.unlink()
                    removed.append(path)
                    self.logger.info(f"STALE_TEMP_REMOVED: {path}")
                except OSError as exc:
                    self.logger.warning(f"Failed to remove stale temp {path}: {exc}")
        return removed

    def reconcile_backups(self, directory: Path, extensions: Iterable[str]) -> ReconcileReport:
        """Resolves `.bak` files left by an interrupted swap.

        Missing original: the backup is moved back into place. Original
        present: the backup is left alone and the original is re-probed; a
        failed probe is reported as suspicious for a human to review.
        """
        allowed = {e.lower() for e in extensions}
        report = ReconcileReport()
        if not directory.exists():
            return report
        for root, dirs, files in os.walk(directory):
            for file in sorted(files):
                if not file.endswith(BACKUP_SUFFIX):
                    continue
                backup = Path(root) / file
                original = original_for_backup(backup)
                if original.suffix.lower() not in allowed:
                    continue
                self._reconcile_one(backup, original, report)
        return report

    def _reconcile_one(self, backup: Path, original: Path, report: ReconcileReport) -> None:
        if not original.exists():
            try:
                os.replace(backup, original)
            except OSError as exc:
                report.failed.append(backup)
                self.logger.critical(f"RECONCILE_RESTORE_FAILED: {backup} -> {original}: {exc}")
                return
            report.restored.append(original)
            self.logger.warning(f"RECONCILE_RESTORED: {backup.name} -> {original}")
            return

        report.kept.append(backup)
        if self.probe is None:
            return
        try:
            self.probe(original)
        except ProbeError as exc:
            report.suspicious.append(original)
            self.logger.warning(
                f"RECONCILE_SUSPICIOUS: {original} fails to probe while {backup.name} exists; "
                f"manual review needed: {exc}"
            )
