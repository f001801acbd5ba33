from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

DOLBY_VISION_CODEC_TAGS = ("dvhe", "dvh1", "dvav", "dva1", "dav1")
DOLBY_VISION_MARKERS = ("dovi", "dolby vision", "dolbyvision")
HDR_TRANSFERS = {"smpte2084", "arib-std-b67"}


class StreamKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLE = "subtitle"


class DecisionReason(str, Enum):
    FORCE = "Force"
    CODEC_UPGRADE = "CodecUpgrade"
    BITRATE_BLOAT_4K = "BitrateBloat4K"
    BITRATE_BLOAT_1080 = "BitrateBloat1080"
    ALREADY_EFFICIENT = "AlreadyEfficient"


class JobStatus(str, Enum):
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    CRITICAL = "CRITICAL"


class SkipReason(str, Enum):
    PROBE_ERROR = "ProbeError"
    INVALID_DURATION = "InvalidDuration"
    ROOT_SAFETY = "RootSafety"
    DOLBY_VISION = "DolbyVision"
    ALREADY_EFFICIENT = "AlreadyEfficient"
    LOW_SPACE = "LowSpace"
    PENDING_BACKUP = "PendingBackup"


class FailReason(str, Enum):
    ENCODER_ERROR = "EncoderError"
    VALIDATION_ERROR = "ValidationError"
    SWAP_ERROR = "SwapError"
    CRITICAL_ERROR = "CriticalError"


class VideoStream(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = 0
    codec: str = "unknown"
    codec_tag: Optional[str] = None
    width: int = 0
    height: int = 0
    pix_fmt: Optional[str] = None
    bit_depth: int = 8
    color_transfer: Optional[str] = None
    attached_pic: bool = False
    side_data_types: List[str] = Field(default_factory=list)
    title: Optional[str] = None

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def is_hdr(self) -> bool:
        return (self.color_transfer or "").lower() in HDR_TRANSFERS


class AudioStream(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = 0
    codec: str = "unknown"
    channels: int = 0
    bitrate: Optional[int] = None
    language: Optional[str] = None
    default: bool = False


class SubtitleStream(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = 0
    codec: str = "unknown"
    language: Optional[str] = None


class MediaDescriptor(BaseModel):
    """Immutable snapshot of one probe call."""

    model_config = ConfigDict(frozen=True)

    duration: float = 0.0
    bitrate: Optional[int] = None  # bits per second, container level
    format_name: Optional[str] = None
    video_streams: List[VideoStream] = Field(default_factory=list)
    audio_streams: List[AudioStream] = Field(default_factory=list)
    subtitle_streams: List[SubtitleStream] = Field(default_factory=list)
    tags_text: Optional[str] = None

    @property
    def primary_video(self) -> Optional[VideoStream]:
        return select_primary_video(self.video_streams)

    @property
    def dolby_vision(self) -> bool:
        return detect_dolby_vision(self)

    def video_summary(self) -> str:
        video = self.primary_video
        if video is None:
            return "none"
        return f"{video.codec} {video.width}x{video.height} {video.bit_depth}bit"

    def audio_summary(self) -> str:
        if not self.audio_streams:
            return "none"
        return "; ".join(
            f"{a.codec} {a.channels}ch {a.language or 'und'}" for a in self.audio_streams
        )


def select_primary_video(streams: List[VideoStream]) -> Optional[VideoStream]:
    """Largest non-cover-art video stream, first one wins on equal area.

    Falls back to the first video stream when every stream is an attached
    picture.
    """
    if not streams:
        return None
    candidates = [s for s in streams if not s.attached_pic]
    if not candidates:
        return streams[0]
    best = candidates[0]
    for stream in candidates[1:]:
        if stream.area > best.area:
            best = stream
    return best


def detect_dolby_vision(descriptor: MediaDescriptor) -> bool:
    video = descriptor.primary_video
    if video is None:
        return False
    tag = (video.codec_tag or "").lower()
    if tag.startswith(DOLBY_VISION_CODEC_TAGS):
        return True
    for side_data in video.side_data_types:
        text = side_data.lower()
        if "dovi" in text or "dolby vision" in text:
            return True
    for text in (video.title, descriptor.tags_text):
        if text and any(marker in text.lower() for marker in DOLBY_VISION_MARKERS):
            return True
    return False


class CandidateFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path
    size_bytes: int
    volume: str
    mtime: float = 0.0


class EncodeDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_process: bool
    reason: DecisionReason
    use_10bit: bool = False


class EncodeProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    bit_depth: int = 8
    quality_preset: str = "medium"
    crf: int = 22
    encoder_family: str = "hevc"
    max_kbps: Optional[int] = None
    default_audio_index: Optional[int] = None


class VerifyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    reason: Optional[str] = None
    attempts: int = 1
    candidate: Optional[MediaDescriptor] = None


class PipelineResult(BaseModel):
    """Outcome of one Worker Pipeline invocation."""

    status: JobStatus
    reason: Optional[str] = None
    detail: str = ""
    source: Optional[CandidateFile] = None
    replaced: Optional[CandidateFile] = None
    low_space: bool = False


class LogRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str
    input_path: str
    output_path: str = ""
    strategy: str = ""
    old_size: Optional[int] = None
    new_size: Optional[int] = None
    saved_size: Optional[int] = None
    status: str
    detail: str = ""
    video_before: str = ""
    video_after: str = ""
    audio_before: str = ""
    audio_after: str = ""
    dv_before: Optional[bool] = None
    dv_after: Optional[bool] = None
    bit_depth: Optional[int] = None
