import logging
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional

from vrc.domain.models import CandidateFile
from vrc.infrastructure.file_scanner import FileScanner
from vrc.pipeline.queue_sorting import sort_files


class VolumeQueues:
    """Per-volume FIFO queues of files still to be dispatched.

    A file lives in exactly one queue; `pop` removes it for good.
    """

    def __init__(self, queues: Optional[Dict[str, Iterable[CandidateFile]]] = None):
        self._queues: Dict[str, Deque[CandidateFile]] = {
            volume: deque(files) for volume, files in (queues or {}).items()
        }

    def non_empty(self) -> List[str]:
        return sorted(v for v, q in self._queues.items() if q)

    def pop(self, volume: str) -> CandidateFile:
        return self._queues[volume].popleft()

    def peek(self, volume: str) -> Optional[CandidateFile]:
        queue = self._queues.get(volume)
        return queue[0] if queue else None

    def sizes(self) -> Dict[str, int]:
        return {v: len(q) for v, q in sorted(self._queues.items())}

    def files(self, volume: str) -> List[CandidateFile]:
        return list(self._queues.get(volume, ()))

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())


class VolumeQueueBuilder:
    """Walks target folders once and groups the survivors by volume."""

    def __init__(self, scanner: FileScanner, queue_sort: str):
        self.scanner = scanner
        self.queue_sort = queue_sort
        self.logger = logging.getLogger(__name__)

    def build(self, target_dirs: Iterable[Path]) -> VolumeQueues:
        grouped: Dict[str, List[CandidateFile]] = {}
        seen = set()
        for target in target_dirs:
            if not target.is_dir():
                self.logger.warning(f"Target folder missing or not a directory: {target}")
                continue
            for candidate in self.scanner.scan(target):
                key = str(candidate.path.resolve())
                if key in seen:
                    continue
                seen.add(key)
                grouped.setdefault(candidate.volume, []).append(candidate)

        ordered = {volume: sort_files(files, self.queue_sort) for volume, files in grouped.items()}
        queues = VolumeQueues(ordered)
        self.logger.info(
            f"Queues built: {len(queues)} files on {len(ordered)} volumes "
            f"(sort={self.queue_sort}, excluded={self.scanner.excluded})"
        )
        return queues
