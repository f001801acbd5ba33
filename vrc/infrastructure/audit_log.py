import csv
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from vrc.domain.models import LogRecord
from vrc.utils.retry import jitter_backoff, retry_call

AUDIT_COLUMNS = [
    "timestamp",
    "input_path",
    "output_path",
    "strategy",
    "old_size",
    "new_size",
    "saved_size",
    "status",
    "detail",
    "video_before",
    "video_after",
    "audio_before",
    "audio_after",
    "dv_before",
    "dv_after",
    "bit_depth",
]


class AuditLog:
    """Append-only CSV audit trail, one row per pipeline outcome.

    A sink held open by another reader (a spreadsheet, a sync client) raises
    PermissionError; writes are retried with randomized backoff and finally
    dropped with a console warning.
    """

    def __init__(
        self,
        path: Path,
        attempts: int = 5,
        backoff: Callable[[int], float] = jitter_backoff(0.2, 1.0),
        console: Optional[Console] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path)
        self.attempts = attempts
        self.backoff = backoff
        self.console = console or Console(stderr=True)
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    def _write(self, record: LogRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists() or self.path.stat().st_size == 0
        with open(self.path, "a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=AUDIT_COLUMNS)
            if new_file:
                writer.writeheader()
            row = record.model_dump()
            writer.writerow({k: "" if row[k] is None else row[k] for k in AUDIT_COLUMNS})

    def append(self, record: LogRecord) -> bool:
        try:
            retry_call(
                lambda: self._write(record),
                attempts=self.attempts,
                backoff=self.backoff,
                retry_on=(OSError,),
                sleep=self.sleep,
            )
        except OSError as exc:
            self.logger.warning(f"AUDIT_DROPPED: {record.input_path} status={record.status}: {exc}")
            self.console.print(
                f"[yellow]Warning:[/yellow] audit log {self.path} is locked, record for "
                f"{record.input_path} dropped ({exc})"
            )
            return False
        return True
