import logging
import time
from pathlib import Path
from typing import Callable, Optional

from vrc.config.models import AppConfig, DolbyVisionPolicy
from vrc.domain.errors import ProbeError
from vrc.domain.models import MediaDescriptor, VerifyResult
from vrc.utils.retry import linear_backoff, retry_call

HEVC_CODECS = {"hevc", "h265"}

logger = logging.getLogger(__name__)


def verify(
    original: MediaDescriptor,
    original_size: int,
    candidate: MediaDescriptor,
    candidate_size: int,
    min_savings_bytes: int,
    require_dolby_vision: bool = False,
    duration_ratio: float = 0.95,
    target_codecs=HEVC_CODECS,
) -> VerifyResult:
    """Pass/fail for a candidate output against its original."""
    if original.duration > 0 and candidate.duration < duration_ratio * original.duration:
        return VerifyResult(
            passed=False,
            reason=f"duration {candidate.duration:.1f}s < {duration_ratio:.2f} x {original.duration:.1f}s",
        )
    if len(candidate.audio_streams) < len(original.audio_streams):
        return VerifyResult(
            passed=False,
            reason=f"audio streams {len(candidate.audio_streams)} < {len(original.audio_streams)}",
        )
    if len(candidate.subtitle_streams) < len(original.subtitle_streams):
        return VerifyResult(
            passed=False,
            reason=f"subtitle streams {len(candidate.subtitle_streams)} < {len(original.subtitle_streams)}",
        )
    saved = original_size - candidate_size
    if saved < min_savings_bytes:
        return VerifyResult(passed=False, reason=f"saved {saved} bytes < minimum {min_savings_bytes}")
    video = candidate.primary_video
    codec = video.codec if video else "none"
    if codec not in target_codecs:
        return VerifyResult(passed=False, reason=f"output video codec is {codec}")
    if require_dolby_vision and original.dolby_vision and not candidate.dolby_vision:
        return VerifyResult(passed=False, reason="Dolby Vision lost in output")
    return VerifyResult(passed=True)


class CandidateVerifier:
    """Probes a freshly written candidate and verifies it, with retries.

    The output may not be fully visible right after the encoder exits, so
    probing and checking repeat with a growing delay. The criteria are the
    same on every attempt.
    """

    def __init__(
        self,
        probe: Callable[[Path], MediaDescriptor],
        config: AppConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.probe = probe
        self.config = config
        self.sleep = sleep

    def _attempt(self, original: MediaDescriptor, original_size: int, candidate_path: Path) -> VerifyResult:
        try:
            candidate = self.probe(candidate_path)
            candidate_size = candidate_path.stat().st_size
        except (ProbeError, OSError) as exc:
            return VerifyResult(passed=False, reason=f"candidate unreadable: {exc}")
        policy = self.config.policy
        result = verify(
            original,
            original_size,
            candidate,
            candidate_size,
            policy.min_savings_bytes,
            require_dolby_vision=policy.dolby_vision == DolbyVisionPolicy.REQUIRE_PRESERVE,
            duration_ratio=self.config.verify.duration_ratio,
            target_codecs=self._target_codecs(),
        )
        return result.model_copy(update={"candidate": candidate})

    def _target_codecs(self):
        family = self.config.encoder.family.lower()
        return HEVC_CODECS if family in HEVC_CODECS else {family}

    def verify(self, original: MediaDescriptor, original_size: int, candidate_path: Path) -> VerifyResult:
        attempts = 0

        def attempt() -> VerifyResult:
            nonlocal attempts
            attempts += 1
            result = self._attempt(original, original_size, candidate_path)
            logger.debug(f"VERIFY_ATTEMPT: {candidate_path.name} #{attempts} passed={result.passed} reason={result.reason}")
            return result

        result = retry_call(
            attempt,
            attempts=self.config.verify.attempts,
            backoff=linear_backoff(self.config.verify.base_delay_seconds),
            retry_on=(),
            until=lambda r: r.passed,
            sleep=self.sleep,
        )
        return result.model_copy(update={"attempts": attempts})
