"""Decides whether a probed file is worth re-encoding, and at which bit depth.

`decide` is a pure function of the descriptor, the file size and the policy.
Rules run in order and the first match wins, so a legacy codec is always
upgraded even when its bitrate is already below the bloat threshold.
"""

from vrc.config.models import BitDepthPolicy, PolicyConfig
from vrc.domain.models import DecisionReason, EncodeDecision, MediaDescriptor


def effective_bitrate(descriptor: MediaDescriptor, size_bytes: int) -> float:
    """Container bitrate in bps, or size * 8 / duration when it is missing."""
    if descriptor.bitrate and descriptor.bitrate > 0:
        return float(descriptor.bitrate)
    if descriptor.duration > 0:
        return size_bytes * 8 / descriptor.duration
    return 0.0


def is_4k_tier(descriptor: MediaDescriptor, policy: PolicyConfig) -> bool:
    video = descriptor.primary_video
    return bool(video and video.width > policy.width_4k)


def choose_10bit(descriptor: MediaDescriptor, policy: PolicyConfig) -> bool:
    if policy.bit_depth == BitDepthPolicy.ALWAYS:
        return True
    if policy.bit_depth == BitDepthPolicy.NEVER:
        return False
    video = descriptor.primary_video
    if video is None:
        return False
    return video.bit_depth >= 10 or video.is_hdr or descriptor.dolby_vision


def decide(descriptor: MediaDescriptor, size_bytes: int, policy: PolicyConfig) -> EncodeDecision:
    use_10bit = choose_10bit(descriptor, policy)

    if policy.force:
        return EncodeDecision(should_process=True, reason=DecisionReason.FORCE, use_10bit=use_10bit)

    video = descriptor.primary_video
    codec = video.codec if video else "unknown"
    if codec in policy.legacy_codecs or codec.startswith("msmpeg4"):
        return EncodeDecision(should_process=True, reason=DecisionReason.CODEC_UPGRADE, use_10bit=use_10bit)

    kbps = effective_bitrate(descriptor, size_bytes) / 1000
    if is_4k_tier(descriptor, policy):
        if kbps > policy.bloat_kbps_4k:
            return EncodeDecision(should_process=True, reason=DecisionReason.BITRATE_BLOAT_4K, use_10bit=use_10bit)
    elif kbps > policy.bloat_kbps_1080:
        return EncodeDecision(should_process=True, reason=DecisionReason.BITRATE_BLOAT_1080, use_10bit=use_10bit)

    return EncodeDecision(should_process=False, reason=DecisionReason.ALREADY_EFFICIENT, use_10bit=use_10bit)
