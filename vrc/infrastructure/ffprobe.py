import subprocess
import json
import re
from pathlib import Path
from typing import Dict, Any, Iterable, List, Optional
from vrc.domain.errors import ProbeError
from vrc.domain.models import (
    AudioStream,
    MediaDescriptor,
    StreamKind,
    SubtitleStream,
    VideoStream,
)

_SELECT_FLAGS = {StreamKind.VIDEO: "v", StreamKind.AUDIO: "a", StreamKind.SUBTITLE: "s"}
_BIT_DEPTH_RE = re.compile(r"p(\d{2})(le|be)?$")
MISSING_BINARY_EXIT_CODE = 127


class FFprobeAdapter:
    """Wrapper around ffprobe that returns typed MediaDescriptor snapshots."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: Optional[float] = 120.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        parts = text.split(":")
        if len(parts) not in (2, 3):
            return 0.0
        try:
            parts_f = [float(p) for p in parts]
        except ValueError:
            return 0.0
        if len(parts_f) == 2:
            minutes, seconds = parts_f
            return minutes * 60 + seconds
        hours, minutes, seconds = parts_f
        return hours * 3600 + minutes * 60 + seconds

    @classmethod
    def _bit_depth(cls, stream: Dict[str, Any]) -> int:
        raw = cls._to_int(stream.get("bits_per_raw_sample"))
        if raw and raw > 0:
            return raw
        match = _BIT_DEPTH_RE.search(stream.get("pix_fmt") or "")
        if match:
            return int(match.group(1))
        if (stream.get("pix_fmt") or "").startswith(("p010", "p210")):
            return 10
        return 8

    def _build_command(self, file_path: Path, selector: Optional[Iterable[StreamKind]]) -> List[str]:
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
        ]
        kinds = list(selector or [])
        if len(kinds) == 1:
            cmd.extend(["-select_streams", _SELECT_FLAGS[StreamKind(kinds[0])]])
        cmd.append(str(file_path))
        return cmd

    def probe(self, file_path: Path, selector: Optional[Iterable[StreamKind]] = None) -> MediaDescriptor:
        """Executes ffprobe and normalizes its JSON output.

        Missing binary, non-zero exit and unusable output all raise ProbeError.
        """
        wanted = {StreamKind(k) for k in selector} if selector else None
        cmd = self._build_command(file_path, wanted)
        try:
            result = subprocess.run(
                cmd, capture_output=True, encoding="utf-8", errors="replace", timeout=self.timeout
            )
        except FileNotFoundError:
            raise ProbeError(file_path, f"{self.ffprobe_path} not found", MISSING_BINARY_EXIT_CODE)
        except subprocess.TimeoutExpired:
            raise ProbeError(file_path, f"ffprobe timed out after {self.timeout}s")

        if result.returncode != 0:
            raise ProbeError(file_path, f"ffprobe failed: {(result.stderr or '').strip()}", result.returncode)

        try:
            data = json.loads(result.stdout or "")
        except ValueError:
            raise ProbeError(file_path, "ffprobe returned malformed output", result.returncode)
        if not isinstance(data, dict) or (not data.get("streams") and not data.get("format")):
            raise ProbeError(file_path, "ffprobe returned empty output", result.returncode)

        return self._build_descriptor(data, wanted)

    def _build_descriptor(self, data: Dict[str, Any], wanted) -> MediaDescriptor:
        videos: List[VideoStream] = []
        audios: List[AudioStream] = []
        subtitles: List[SubtitleStream] = []

        for stream in data.get("streams", []) or []:
            kind = stream.get("codec_type")
            if wanted is not None and kind not in {k.value for k in wanted}:
                continue
            tags = stream.get("tags", {}) or {}
            disposition = stream.get("disposition", {}) or {}
            index = int(stream.get("index", 0) or 0)
            if kind == "video":
                videos.append(VideoStream(
                    index=index,
                    codec=str(stream.get("codec_name") or "unknown").lower(),
                    codec_tag=stream.get("codec_tag_string"),
                    width=int(stream.get("width", 0) or 0),
                    height=int(stream.get("height", 0) or 0),
                    pix_fmt=stream.get("pix_fmt"),
                    bit_depth=self._bit_depth(stream),
                    color_transfer=stream.get("color_transfer"),
                    attached_pic=bool(disposition.get("attached_pic", 0)),
                    side_data_types=[
                        str(sd.get("side_data_type", ""))
                        for sd in stream.get("side_data_list", []) or []
                    ],
                    title=tags.get("title"),
                ))
            elif kind == "audio":
                audios.append(AudioStream(
                    index=index,
                    codec=str(stream.get("codec_name") or "unknown").lower(),
                    channels=int(stream.get("channels", 0) or 0),
                    bitrate=self._to_int(stream.get("bit_rate")),
                    language=tags.get("language"),
                    default=bool(disposition.get("default", 0)),
                ))
            elif kind == "subtitle":
                subtitles.append(SubtitleStream(
                    index=index,
                    codec=str(stream.get("codec_name") or "unknown").lower(),
                    language=tags.get("language"),
                ))

        fmt = data.get("format", {}) or {}
        fmt_tags = fmt.get("tags", {}) or {}
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            duration = self._parse_duration_tag(fmt_tags.get("DURATION") or fmt_tags.get("duration"))
        bitrate = self._to_int(fmt.get("bit_rate"))

        return MediaDescriptor(
            duration=duration,
            bitrate=bitrate if bitrate and bitrate > 0 else None,
            format_name=fmt.get("format_name"),
            video_streams=videos,
            audio_streams=audios,
            subtitle_streams=subtitles,
            tags_text=" ".join(str(v) for v in fmt_tags.values()) or None,
        )
