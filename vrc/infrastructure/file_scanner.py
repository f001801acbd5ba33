import os
import re
import time
from pathlib import Path
from typing import Callable, Generator, List, Optional
from vrc.domain.models import CandidateFile
from vrc.infrastructure.volumes import volume_id

class FileScanner:
    """Recursively scans target folders for media files worth considering."""

    def __init__(
        self,
        extensions: List[str],
        exclude_pattern: Optional[str] = None,
        min_age_days: float = 0.0,
        clock: Callable[[], float] = time.time,
        volume_of: Callable[[Path], str] = volume_id,
    ):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.exclude = re.compile(exclude_pattern) if exclude_pattern else None
        self.min_age_seconds = min_age_days * 86400
        self.clock = clock
        self.volume_of = volume_of
        self.excluded = 0

    def _accepts(self, file_path: Path) -> bool:
        if file_path.suffix.lower() not in self.extensions:
            return False
        if self.exclude and self.exclude.search(file_path.name):
            self.excluded += 1
            return False
        return True

    def scan(self, root_dir: Path) -> Generator[CandidateFile, None, None]:
        """Scans the directory and yields CandidateFile objects."""
        cutoff = self.clock() - self.min_age_seconds
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Deterministic traversal
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            files.sort()
            volume = self.volume_of(root_path)

            for file_name in files:
                file_path = root_path / file_name
                if not self._accepts(file_path):
                    continue

                try:
                    stat = file_path.stat()
                except OSError:
                    # Skip files we can't access
                    continue
                if stat.st_mtime > cutoff:
                    self.excluded += 1
                    continue

                yield CandidateFile(
                    path=file_path,
                    size_bytes=stat.st_size,
                    volume=volume,
                    mtime=stat.st_mtime,
                )
