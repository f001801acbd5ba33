import re
from datetime import time
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

QUEUE_SORT_CHOICES = ("smallest", "largest", "name", "none")


class BitDepthPolicy(str, Enum):
    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"


class DolbyVisionPolicy(str, Enum):
    SKIP = "skip"
    REQUIRE_PRESERVE = "require_preserve"
    TRANSCODE_ALLOW_LOSS = "transcode_allow_loss"


def validate_queue_sort(value: str) -> str:
    mode = value.strip().lower()
    if mode not in QUEUE_SORT_CHOICES:
        allowed = ", ".join(QUEUE_SORT_CHOICES)
        raise ValueError(f"Unsupported queue_sort '{value}'. Use one of: {allowed}.")
    return mode


def parse_clock(value: str) -> time:
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", value.strip())
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    return time(hours, minutes)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class GeneralConfig(_Frozen):
    target_dirs: List[str] = Field(default_factory=list)
    extensions: List[str] = Field(
        default_factory=lambda: [".mkv", ".mp4", ".m4v", ".mov", ".ts", ".m2ts"]
    )
    exclude_pattern: Optional[str] = r"(?i)(sample|trailer|\.tmp$|\.part$)"
    min_age_days: float = Field(default=3.0, ge=0.0)
    queue_sort: str = "smallest"
    temp_dir: Optional[str] = None
    stale_temp_max_age_hours: float = Field(default=24.0, gt=0.0)
    pause_file: str = "vrc.pause"
    audit_log_path: str = "logs/vrc_audit.csv"
    log_path: str = "logs/vrc.log"
    debug: bool = False

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]

    @field_validator("queue_sort")
    @classmethod
    def check_queue_sort(cls, v: str) -> str:
        return validate_queue_sort(v)

    @field_validator("exclude_pattern")
    @classmethod
    def check_exclude_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v:
            re.compile(v)
        return v or None


class PolicyConfig(_Frozen):
    force: bool = False
    width_4k: int = Field(default=2500, gt=0)
    bloat_kbps_4k: int = Field(default=8000, gt=0)
    bloat_kbps_1080: int = Field(default=4000, gt=0)
    legacy_codecs: List[str] = Field(
        default_factory=lambda: ["h264", "mpeg2video", "mpeg4", "vc1", "msmpeg4v1", "msmpeg4v2", "msmpeg4v3"]
    )
    bit_depth: BitDepthPolicy = BitDepthPolicy.AUTO
    dolby_vision: DolbyVisionPolicy = DolbyVisionPolicy.SKIP
    min_savings_bytes: int = Field(default=50 * 1024 * 1024, ge=0)
    min_free_space_bytes: int = Field(default=20 * 1024 ** 3, ge=0)
    space_headroom: float = Field(default=1.5, ge=1.0)

    @field_validator("legacy_codecs")
    @classmethod
    def lower_codecs(cls, v: List[str]) -> List[str]:
        return [c.lower() for c in v]


class EncoderConfig(_Frozen):
    family: str = "hevc"
    codec: str = "libx265"
    preset: str = "medium"
    crf: int = Field(default=22, ge=0, le=51)
    target_kbps_4k: Optional[int] = Field(default=12000, gt=0)
    target_kbps_1080: Optional[int] = Field(default=4000, gt=0)
    safe_languages: List[str] = Field(default_factory=lambda: ["eng", "und"])
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"


class ScheduleConfig(_Frozen):
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    idle_sample_seconds: float = Field(default=1.0, ge=0.0)

    @model_validator(mode="after")
    def validate_window(self):
        if (self.window_start is None) != (self.window_end is None):
            raise ValueError("window_start and window_end must be set together")
        if self.window_start is not None:
            parse_clock(self.window_start)
            parse_clock(self.window_end)
        return self

    @property
    def has_window(self) -> bool:
        return self.window_start is not None


class VerifyConfig(_Frozen):
    attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=2.0, ge=0.0)
    duration_ratio: float = Field(default=0.95, gt=0.0, le=1.0)


class AppConfig(_Frozen):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
