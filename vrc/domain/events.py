"""Domain events for the re-encode controller.

Events flow through the EventBus and decouple the scheduler from the console
reporter. See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import Dict, List
from pydantic import BaseModel, Field
from .models import CandidateFile


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class QueueBuilt(Event):
    """Emitted once the volume queues are built."""

    queue_sizes: Dict[str, int]
    excluded: int = 0


class JobStarted(Event):
    file: CandidateFile


class JobFinished(Event):
    """Emitted after a worker exits, with the scheduler's view of the outcome."""

    file: CandidateFile
    exit_code: int


class JobProgressUpdated(Event):
    """Emitted as ffmpeg reports progress."""

    path: Path
    progress_percent: float


class VolumeSuspended(Event):
    volume: str
    reason: str


class CleanupFinished(Event):
    removed: List[Path] = Field(default_factory=list)


class ReconcileFinished(Event):
    restored: List[Path] = Field(default_factory=list)
    suspicious: List[Path] = Field(default_factory=list)
    failed: List[Path] = Field(default_factory=list)


class WaitingForWindow(Event):
    seconds: float


class SchedulerStopped(Event):
    reason: str
    processed: int = 0
