import subprocess
import re
import logging
from collections import deque
from pathlib import Path
from typing import Callable, List, Optional
from vrc.domain.models import EncodeProfile, MediaDescriptor

MISSING_BINARY_EXIT_CODE = 127

_MP4_SUFFIXES = {".mp4", ".m4v", ".mov"}
_MPEGTS_SUFFIXES = {".ts", ".m2ts"}


def container_for(path: Path) -> str:
    """ffmpeg muxer name for the original's extension."""
    suffix = path.suffix.lower()
    if suffix in _MP4_SUFFIXES:
        return "mp4"
    if suffix in _MPEGTS_SUFFIXES:
        return "mpegts"
    return "matroska"


class FFmpegAdapter:
    """Wrapper around ffmpeg for HEVC transcodes."""

    def __init__(self, codec: str = "libx265", ffmpeg_path: str = "ffmpeg"):
        self.codec = codec
        self.ffmpeg_path = ffmpeg_path
        self.logger = logging.getLogger(__name__)

    def _build_command(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncodeProfile,
        source: MediaDescriptor,
        container: str,
    ) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostdin",
            "-i", str(input_path),
        ]

        primary = source.primary_video
        cmd.extend(["-map", f"0:{primary.index}" if primary else "0:v:0"])
        cmd.extend(["-map", "0:a?", "-map", "0:s?", "-c", "copy"])

        pix_fmt = "yuv420p10le" if profile.bit_depth == 10 else "yuv420p"
        hevc_profile = "main10" if profile.bit_depth == 10 else "main"
        cmd.extend([
            "-c:v", self.codec,
            "-preset", profile.quality_preset,
            "-crf", str(profile.crf),
            "-pix_fmt", pix_fmt,
            "-profile:v", hevc_profile,
        ])
        if profile.max_kbps:
            cmd.extend(["-maxrate", f"{profile.max_kbps}k", "-bufsize", f"{profile.max_kbps * 2}k"])

        if container == "mp4":
            cmd.extend(["-tag:v", "hvc1", "-c:s", "mov_text", "-movflags", "+faststart"])

        if profile.default_audio_index is not None and source.audio_streams:
            cmd.extend(["-disposition:a", "0", f"-disposition:a:{profile.default_audio_index}", "default"])

        cmd.extend(["-map_metadata", "0", "-f", container, str(output_path)])
        return cmd

    def encode(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncodeProfile,
        source: MediaDescriptor,
        container: Optional[str] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> int:
        """Runs ffmpeg to completion and returns its exit code.

        The caller decides success; exit code 0 alone does not guarantee an
        output file.
        """
        filename = input_path.name
        cmd = self._build_command(input_path, output_path, profile, source, container or container_for(input_path))
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError:
            self.logger.error(f"FFMPEG_MISSING: {self.ffmpeg_path} not found")
            return MISSING_BINARY_EXIT_CODE

        # Regex to parse 'time=00:00:00.00' from ffmpeg output
        time_regex = re.compile(r"time=(\d+):(\d+):(\d+\.\d+)")
        tail: "deque[str]" = deque(maxlen=20)
        total = source.duration

        try:
            if process.stdout:
                for line in process.stdout:
                    tail.append(line.rstrip())
                    match = time_regex.search(line)
                    if match and on_progress and total > 0:
                        h, m, s = match.groups()
                        elapsed = int(h) * 3600 + int(m) * 60 + float(s)
                        on_progress(min(100.0, elapsed / total * 100.0))
        except BaseException:
            # Never leave ffmpeg writing the temp output behind us
            self.logger.error(f"FFMPEG_ABORTED: {filename}, killing pid {process.pid}")
            process.kill()
            process.wait()
            raise

        returncode = process.wait()
        if returncode != 0:
            self.logger.error(f"FFMPEG_FAILED: {filename} exit={returncode}: {' | '.join(list(tail)[-3:])}")
        else:
            self.logger.info(f"FFMPEG_DONE: {filename}")
        return returncode
