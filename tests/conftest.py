import os
import time
import pytest
import yaml
from pathlib import Path
from vrc.config.models import AppConfig
from vrc.domain.models import AudioStream, MediaDescriptor, SubtitleStream, VideoStream
from vrc.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns an AppConfig with fast retries and logs under tmp_path."""
    return AppConfig(
        general={
            "extensions": [".mkv", ".mp4"],
            "min_age_days": 0,
            "queue_sort": "smallest",
            "pause_file": str(tmp_path / "vrc.pause"),
            "audit_log_path": str(tmp_path / "logs" / "audit.csv"),
            "log_path": str(tmp_path / "logs" / "vrc.log"),
        },
        policy={
            "bloat_kbps_4k": 8000,
            "bloat_kbps_1080": 4000,
            "min_savings_bytes": 100,
            "min_free_space_bytes": 0,
        },
        verify={"attempts": 3, "base_delay_seconds": 0.0},
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "vrc.yaml"

    content = {
        'general': {
            'target_dirs': [str(tmp_path / "media")],
            'extensions': ['mkv', 'mp4'],
            'queue_sort': 'largest',
            'min_age_days': 1,
        },
        'policy': {
            'bloat_kbps_1080': 3500,
            'dolby_vision': 'require_preserve',
        },
        'schedule': {
            'window_start': '23:00',
            'window_end': '07:00',
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# Media Fixtures
# ============================================================================

@pytest.fixture
def make_descriptor():
    """Factory for MediaDescriptor snapshots with one video stream."""
    def _make(
        codec="h264",
        width=1920,
        height=1080,
        duration=3600.0,
        bitrate=None,
        audio=1,
        subtitles=0,
        bit_depth=8,
        codec_tag=None,
        side_data=None,
        color_transfer=None,
    ):
        return MediaDescriptor(
            duration=duration,
            bitrate=bitrate,
            video_streams=[VideoStream(
                index=0,
                codec=codec,
                codec_tag=codec_tag,
                width=width,
                height=height,
                bit_depth=bit_depth,
                color_transfer=color_transfer,
                side_data_types=side_data or [],
            )],
            audio_streams=[AudioStream(index=1 + i, codec="aac", channels=2, language="eng") for i in range(audio)],
            subtitle_streams=[SubtitleStream(index=1 + audio + i, codec="subrip") for i in range(subtitles)],
        )
    return _make

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def media_dir(tmp_path):
    """Creates a media folder (not a volume root)."""
    d = tmp_path / "media"
    d.mkdir()
    return d

@pytest.fixture
def make_media_file():
    """Writes a dummy media file, optionally backdated by `age_days`."""
    def _make(path: Path, size: int = 2048, age_days: float = 10.0) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\0" * size)
        ts = time.time() - age_days * 86400
        os.utime(path, (ts, ts))
        return path
    return _make

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "slow: runs real ffmpeg/ffprobe binaries"
    )

# ============================================================================
# External Tool Fixtures
# ============================================================================

@pytest.fixture
def fake_tool(tmp_path):
    """Writes an executable /bin/sh script standing in for ffprobe/ffmpeg.

    `body` is raw shell; printf octal escapes (e.g. \\351) emit non-UTF-8 bytes.
    """
    if os.name == "nt":
        pytest.skip("shell script tools need a POSIX shell")

    def _make(name: str, body: str) -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text("#!/bin/sh\n" + body + "\n")
        script.chmod(0o755)
        return script
    return _make
