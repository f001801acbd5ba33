"""Top-level dispatch loop across volumes.

Startup: reconcile stray backups, purge stale temp outputs, build the volume
queues. Then, one file at a time: honour the pause marker and the run
window, pick the most idle eligible volume, run one worker process to
completion, and suspend the volume if the worker reports low space.

Only one worker ever runs at a time. The pause marker is checked between
files, never during one.
"""

import logging
import subprocess
import sys
import tempfile
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

import yaml

from vrc.config.models import AppConfig
from vrc.domain.events import (
    CleanupFinished,
    JobFinished,
    JobStarted,
    QueueBuilt,
    ReconcileFinished,
    SchedulerStopped,
    VolumeSuspended,
    WaitingForWindow,
)
from vrc.infrastructure.event_bus import EventBus
from vrc.infrastructure.housekeeping import HousekeepingService
from vrc.infrastructure.volumes import VolumeActivitySampler, free_bytes
from vrc.pipeline.run_window import RunWindow
from vrc.pipeline.volume_queues import VolumeQueueBuilder, VolumeQueues
from vrc.pipeline.worker import EXIT_HANDLED, EXIT_LOW_SPACE

WORKER_LAUNCH_FAILED = -1


class WindowChoice(str, Enum):
    PROCEED = "proceed"
    WAIT = "wait"
    STOP = "stop"


class Prompter:
    """Non-interactive answers; the console prompter overrides these."""

    def outside_window(self, window: RunWindow, seconds_until_open: float) -> WindowChoice:
        return WindowChoice.WAIT

    def continue_after_low_space(self, volume: str) -> bool:
        return True


class SubprocessWorkerRunner:
    """Runs `vrc worker PATH` in a child process and returns its exit code.

    The effective config is written once to a snapshot file so the child
    sees the same values, CLI overrides included.
    """

    def __init__(self, config: AppConfig, python: str = sys.executable):
        self.python = python
        handle = tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="vrc-config-", delete=False)
        with handle:
            yaml.safe_dump(config.model_dump(mode="json"), handle)
        self.config_path = Path(handle.name)

    def __call__(self, path: Path) -> int:
        cmd = [self.python, "-m", "vrc.main", "worker", str(path), "--config", str(self.config_path)]
        return subprocess.run(cmd).returncode

    def close(self) -> None:
        try:
            self.config_path.unlink()
        except OSError:
            pass


class Scheduler:
    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        queue_builder: VolumeQueueBuilder,
        housekeeping: HousekeepingService,
        worker_runner: Callable[[Path], int],
        sampler: Optional[VolumeActivitySampler] = None,
        prompter: Optional[Prompter] = None,
        free_space: Callable[[Path], int] = free_bytes,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.event_bus = event_bus
        self.queue_builder = queue_builder
        self.housekeeping = housekeeping
        self.worker_runner = worker_runner
        self.sampler = sampler or VolumeActivitySampler(config.schedule.idle_sample_seconds)
        self.prompter = prompter or Prompter()
        self.free_space = free_space
        self.clock = clock
        self.sleep = sleep
        self.window = RunWindow.from_config(config.schedule)
        self.logger = logging.getLogger(__name__)

        # Run-scoped state
        self.suspended: Set[str] = set()
        self.window_override = False
        self.processed = 0
        self.queues: Optional[VolumeQueues] = None

    @property
    def pause_file(self) -> Path:
        return Path(self.config.general.pause_file)

    def _cleanup_dirs(self, target_dirs: List[Path]) -> List[Path]:
        dirs = list(target_dirs)
        if self.config.general.temp_dir:
            dirs.append(Path(self.config.general.temp_dir))
        return dirs

    def reconcile(self, target_dirs: Iterable[Path]) -> ReconcileFinished:
        event = ReconcileFinished()
        for target in target_dirs:
            report = self.housekeeping.reconcile_backups(target, self.config.general.extensions)
            event.restored.extend(report.restored)
            event.suspicious.extend(report.suspicious)
            event.failed.extend(report.failed)
        self.event_bus.publish(event)
        return event

    def cleanup(self, target_dirs: List[Path]) -> CleanupFinished:
        removed: List[Path] = []
        for directory in self._cleanup_dirs(target_dirs):
            removed.extend(
                self.housekeeping.cleanup_temp_files(directory, self.config.general.stale_temp_max_age_hours)
            )
        event = CleanupFinished(removed=removed)
        if removed:
            self.event_bus.publish(event)
        return event

    def suspend(self, volume: str, reason: str) -> None:
        if volume in self.suspended:
            return
        self.suspended.add(volume)
        self.logger.warning(f"VOLUME_SUSPENDED: {volume} ({reason})")
        self.event_bus.publish(VolumeSuspended(volume=volume, reason=reason))

    def eligible_volumes(self) -> List[str]:
        if self.queues is None:
            return []
        return [v for v in self.queues.non_empty() if v not in self.suspended]

    def _check_free_space(self, volumes: List[str]) -> List[str]:
        minimum = self.config.policy.min_free_space_bytes
        if minimum <= 0:
            return volumes
        kept = []
        for volume in volumes:
            head = self.queues.peek(volume)
            try:
                available = self.free_space(head.path.parent)
            except OSError as exc:
                self.logger.warning(f"Free space check failed for {volume}: {exc}")
                kept.append(volume)
                continue
            if available < minimum:
                self.suspend(volume, f"free space {available} below minimum {minimum}")
                continue
            kept.append(volume)
        return kept

    def pick_volume(self, volumes: List[str]) -> str:
        """Most idle volume; ties go to the lowest volume id."""
        if len(volumes) == 1:
            return volumes[0]
        activity: Dict[str, float] = self.sampler.sample(volumes)
        return min(volumes, key=lambda v: (activity.get(v, 0.0), v))

    def _window_gate(self) -> Optional[str]:
        """None to go on, or a stop reason. Sleeps when waiting is chosen."""
        now = self.clock()
        if self.window_override or self.window.contains(now):
            return None
        seconds = self.window.seconds_until_open(now)
        choice = self.prompter.outside_window(self.window, seconds)
        if choice == WindowChoice.PROCEED:
            self.window_override = True
            self.logger.info("Run window overridden for this run")
            return None
        if choice == WindowChoice.STOP:
            return "outside run window"
        self.logger.info(f"WINDOW_WAIT: sleeping {seconds:.0f}s until {self.window.describe()}")
        self.event_bus.publish(WaitingForWindow(seconds=seconds))
        self.sleep(seconds)
        return None

    def _stop(self, reason: str) -> str:
        self.logger.info(f"Scheduler stopped: {reason} (processed={self.processed})")
        self.event_bus.publish(SchedulerStopped(reason=reason, processed=self.processed))
        return reason

    def prepare(self, target_dirs: List[Path]) -> VolumeQueues:
        self.reconcile(target_dirs)
        self.cleanup(target_dirs)
        self.queues = self.queue_builder.build(target_dirs)
        self.event_bus.publish(QueueBuilt(
            queue_sizes=self.queues.sizes(),
            excluded=self.queue_builder.scanner.excluded,
        ))
        return self.queues

    def run(self, target_dirs: List[Path]) -> str:
        """Runs until the queues drain, a pause marker appears, or the user stops."""
        self.prepare(target_dirs)

        while True:
            if self.pause_file.exists():
                return self._stop(f"pause file {self.pause_file} present")

            stop_reason = self._window_gate()
            if stop_reason:
                return self._stop(stop_reason)
            if not self.window_override and not self.window.contains(self.clock()):
                continue

            if not self.queues.non_empty():
                return self._stop("all queues empty")
            volumes = self._check_free_space(self.eligible_volumes())
            if not volumes:
                return self._stop("all remaining volumes suspended")

            volume = self.pick_volume(volumes)
            candidate = self.queues.pop(volume)
            self.event_bus.publish(JobStarted(file=candidate))
            self.logger.info(f"DISPATCH: {candidate.path} volume={volume}")
            try:
                exit_code = self.worker_runner(candidate.path)
            except OSError as exc:
                self.logger.error(f"WORKER_LAUNCH_FAILED: {candidate.path}: {exc}")
                exit_code = WORKER_LAUNCH_FAILED
            self.processed += 1
            self.event_bus.publish(JobFinished(file=candidate, exit_code=exit_code))

            if exit_code == EXIT_LOW_SPACE:
                self.suspend(volume, "worker reported low free space")
                if not self.prompter.continue_after_low_space(volume):
                    return self._stop(f"user declined to continue after {volume} ran low on space")
            elif exit_code != EXIT_HANDLED:
                self.logger.critical(f"WORKER_CRASH: {candidate.path} exit_code={exit_code}")

            self.cleanup(target_dirs)
