"""Per-file pipeline: probe, decide, check space, encode, verify, swap.

Runs exactly one file to a terminal state and writes exactly one audit
record for it. Meant to run in its own process (`vrc worker PATH`); the
process exit code tells the scheduler whether the file's volume ran low on
space.
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from vrc.config.models import AppConfig, DolbyVisionPolicy
from vrc.domain.errors import CriticalSwapError, ProbeError, SwapError
from vrc.domain.events import JobProgressUpdated
from vrc.domain.models import (
    CandidateFile,
    EncodeDecision,
    EncodeProfile,
    FailReason,
    JobStatus,
    LogRecord,
    MediaDescriptor,
    PipelineResult,
    SkipReason,
)
from vrc.infrastructure.artifacts import backup_path, temp_path
from vrc.infrastructure.audit_log import AuditLog
from vrc.infrastructure.event_bus import EventBus
from vrc.infrastructure.ffmpeg import FFmpegAdapter, container_for
from vrc.infrastructure.ffprobe import FFprobeAdapter
from vrc.infrastructure.volumes import free_bytes, is_volume_root, volume_id
from vrc.pipeline.decision import decide, is_4k_tier
from vrc.pipeline.swap import FileOps, SwapTransaction
from vrc.pipeline.verification import CandidateVerifier

EXIT_HANDLED = 0
EXIT_LOW_SPACE = 10


def exit_code_for(result: PipelineResult) -> int:
    return EXIT_LOW_SPACE if result.low_space else EXIT_HANDLED


class _Trail:
    """What the audit record needs, filled in as the pipeline advances."""

    def __init__(self, source: CandidateFile):
        self.source = source
        self.before: Optional[MediaDescriptor] = None
        self.after: Optional[MediaDescriptor] = None
        self.decision: Optional[EncodeDecision] = None
        self.output_path: Optional[Path] = None
        self.new_size: Optional[int] = None


class WorkerPipeline:
    def __init__(
        self,
        config: AppConfig,
        ffprobe_adapter: FFprobeAdapter,
        ffmpeg_adapter: FFmpegAdapter,
        audit_log: AuditLog,
        event_bus: Optional[EventBus] = None,
        free_space: Callable[[Path], int] = free_bytes,
        volume_root: Callable[[Path], bool] = is_volume_root,
        file_ops: Optional[FileOps] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.ffprobe_adapter = ffprobe_adapter
        self.ffmpeg_adapter = ffmpeg_adapter
        self.audit_log = audit_log
        self.event_bus = event_bus
        self.free_space = free_space
        self.volume_root = volume_root
        self.file_ops = file_ops
        self.verifier = CandidateVerifier(ffprobe_adapter.probe, config, sleep=sleep)
        self.logger = logging.getLogger(__name__)

    def _work_dir(self, path: Path) -> Path:
        if self.config.general.temp_dir:
            return Path(self.config.general.temp_dir)
        return path.parent

    def _profile(self, descriptor: MediaDescriptor, decision: EncodeDecision) -> EncodeProfile:
        enc = self.config.encoder
        max_kbps = enc.target_kbps_4k if is_4k_tier(descriptor, self.config.policy) else enc.target_kbps_1080
        safe = {lang.lower() for lang in enc.safe_languages}
        default_audio = next(
            (i for i, a in enumerate(descriptor.audio_streams) if (a.language or "und").lower() in safe),
            None,
        )
        return EncodeProfile(
            bit_depth=10 if decision.use_10bit else 8,
            quality_preset=enc.preset,
            crf=enc.crf,
            encoder_family=enc.family,
            max_kbps=max_kbps,
            default_audio_index=default_audio,
        )

    def _finish(
        self,
        trail: _Trail,
        status: JobStatus,
        reason: Optional[str],
        detail: str = "",
        low_space: bool = False,
        replaced: Optional[CandidateFile] = None,
    ) -> PipelineResult:
        source = trail.source
        saved = None
        if trail.new_size is not None:
            saved = source.size_bytes - trail.new_size
        record = LogRecord(
            timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
            input_path=str(source.path),
            output_path=str(trail.output_path or ""),
            strategy=trail.decision.reason.value if trail.decision else "",
            old_size=source.size_bytes,
            new_size=trail.new_size,
            saved_size=saved,
            status=f"{status.value}:{reason}" if reason else status.value,
            detail=detail,
            video_before=trail.before.video_summary() if trail.before else "",
            video_after=trail.after.video_summary() if trail.after else "",
            audio_before=trail.before.audio_summary() if trail.before else "",
            audio_after=trail.after.audio_summary() if trail.after else "",
            dv_before=trail.before.dolby_vision if trail.before else None,
            dv_after=trail.after.dolby_vision if trail.after else None,
            bit_depth=(10 if trail.decision.use_10bit else 8) if trail.decision else None,
        )
        self.audit_log.append(record)
        level = logging.CRITICAL if status == JobStatus.CRITICAL else logging.INFO
        self.logger.log(level, f"PROCESS_END: {source.path.name} status={record.status} {detail}".rstrip())
        return PipelineResult(
            status=status,
            reason=reason,
            detail=detail,
            source=source,
            replaced=replaced,
            low_space=low_space,
        )

    def process(self, path: Path) -> PipelineResult:
        """Runs one file to a terminal state. Never raises for pipeline errors."""
        self.logger.info(f"PROCESS_START: {path}")
        try:
            stat = path.stat()
        except OSError as e:
            trail = _Trail(CandidateFile(path=path, size_bytes=0, volume=volume_id(path)))
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.PROBE_ERROR.value, f"cannot stat file: {e}")
        source = CandidateFile(path=path, size_bytes=stat.st_size, volume=volume_id(path), mtime=stat.st_mtime)
        trail = _Trail(source)
        try:
            return self._run(trail)
        except Exception as e:
            self.logger.exception(f"Exception processing {path.name}: {e}")
            candidate_path = trail.output_path
            if candidate_path and candidate_path != path and candidate_path.exists():
                try:
                    candidate_path.unlink()
                except OSError as exc:
                    self.logger.warning(f"Failed to remove candidate {candidate_path}: {exc}")
            return self._finish(trail, JobStatus.FAILED, FailReason.CRITICAL_ERROR.value, f"Exception: {e}")

    def _run(self, trail: _Trail) -> PipelineResult:
        source = trail.source
        path = source.path

        # Probing
        try:
            descriptor = self.ffprobe_adapter.probe(path)
        except ProbeError as e:
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.PROBE_ERROR.value, f"exit_code={e.exit_code}: {e}")
        trail.before = descriptor

        if self.volume_root(path.parent):
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.ROOT_SAFETY.value, f"{path.parent} is a volume root")
        if descriptor.primary_video is None:
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.PROBE_ERROR.value, "no video stream")
        if descriptor.duration <= 0:
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.INVALID_DURATION.value, f"duration={descriptor.duration}")
        if descriptor.dolby_vision and self.config.policy.dolby_vision == DolbyVisionPolicy.SKIP:
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.DOLBY_VISION.value, "Dolby Vision source, policy=skip")

        # Deciding
        decision = decide(descriptor, source.size_bytes, self.config.policy)
        trail.decision = decision
        if not decision.should_process:
            return self._finish(trail, JobStatus.SKIPPED, SkipReason.ALREADY_EFFICIENT.value)

        # A backup left by an interrupted swap must be reconciled first
        pending = backup_path(path)
        if pending.exists():
            return self._finish(
                trail, JobStatus.SKIPPED, SkipReason.PENDING_BACKUP.value, f"{pending.name} awaits reconciliation"
            )

        # SpaceChecking
        work_dir = self._work_dir(path)
        required = int(source.size_bytes * self.config.policy.space_headroom)
        available = self.free_space(work_dir)
        if available < required:
            return self._finish(
                trail,
                JobStatus.SKIPPED,
                SkipReason.LOW_SPACE.value,
                f"free={available} required={required} on {work_dir}",
                low_space=True,
            )

        # Encoding
        profile = self._profile(descriptor, decision)
        output_path = temp_path(work_dir, path)
        trail.output_path = output_path

        def on_progress(percent: float) -> None:
            if self.event_bus:
                self.event_bus.publish(JobProgressUpdated(path=path, progress_percent=percent))

        exit_code = self.ffmpeg_adapter.encode(
            path, output_path, profile, descriptor, container=container_for(path), on_progress=on_progress
        )
        if exit_code != 0 or not output_path.exists() or output_path.stat().st_size == 0:
            self._remove(output_path)
            return self._finish(
                trail, JobStatus.FAILED, FailReason.ENCODER_ERROR.value,
                f"exit_code={exit_code} output_exists={output_path.exists()}",
            )

        # Verifying
        verdict = self.verifier.verify(descriptor, source.size_bytes, output_path)
        trail.after = verdict.candidate
        if not verdict.passed:
            self._remove(output_path)
            return self._finish(
                trail, JobStatus.FAILED, FailReason.VALIDATION_ERROR.value,
                f"{verdict.reason} (after {verdict.attempts} attempts)",
            )
        trail.new_size = output_path.stat().st_size

        # Swapping
        swap = SwapTransaction(path, output_path, ops=self.file_ops)
        swap.mark_verified()
        try:
            swap.commit()
        except CriticalSwapError as e:
            return self._finish(trail, JobStatus.CRITICAL, FailReason.SWAP_ERROR.value, f"MANUAL INTERVENTION REQUIRED: {e}")
        except SwapError as e:
            swap.discard_candidate()
            return self._finish(trail, JobStatus.ROLLED_BACK, FailReason.SWAP_ERROR.value, str(e))

        trail.output_path = path
        new_stat = path.stat()
        replaced = CandidateFile(path=path, size_bytes=new_stat.st_size, volume=source.volume, mtime=new_stat.st_mtime)
        return self._finish(
            trail, JobStatus.COMMITTED, None,
            f"strategy={swap.strategy} bit_depth={profile.bit_depth} verify_attempts={verdict.attempts}",
            replaced=replaced,
        )

    def _remove(self, path: Path) -> None:
        try:
            if path.exists():
                path.unlink()
        except OSError as exc:
            self.logger.warning(f"Failed to remove candidate {path}: {exc}")
