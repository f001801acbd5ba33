import csv
import errno
import pytest
from pathlib import Path
from vrc.config.models import DolbyVisionPolicy
from vrc.domain.errors import ProbeError
from vrc.domain.events import JobProgressUpdated
from vrc.domain.models import JobStatus
from vrc.infrastructure.artifacts import backup_path, is_temp_artifact
from vrc.infrastructure.audit_log import AuditLog
from vrc.pipeline.swap import FileOps
from vrc.pipeline.worker import EXIT_HANDLED, EXIT_LOW_SPACE, WorkerPipeline, exit_code_for

ORIGINAL_SIZE = 10_000


class FakeProbe:
    """Returns `source` for the original and `candidate` for anything else."""

    def __init__(self, source, candidate=None, source_error=None):
        self.source = source
        self.candidate = candidate
        self.source_error = source_error
        self.original = None
        self.calls = []

    def probe(self, path, selector=None):
        self.calls.append(path)
        if self.original is None or path == self.original:
            self.original = path
            if self.source_error:
                raise self.source_error
            return self.source
        return self.candidate


class FakeEncoder:
    def __init__(self, returncode=0, output=b"\1" * 2000, error=None):
        self.returncode = returncode
        self.output = output
        self.error = error
        self.calls = []

    def encode(self, input_path, output_path, profile, source, container=None, on_progress=None):
        self.calls.append((input_path, output_path, profile, container))
        if on_progress:
            on_progress(50.0)
        if self.output is not None:
            output_path.write_bytes(self.output)
        if self.error:
            raise self.error
        return self.returncode


@pytest.fixture
def movie(media_dir, make_media_file):
    return make_media_file(media_dir / "movie.mkv", size=ORIGINAL_SIZE)


def _pipeline(config, probe, encoder, free=10 ** 12, root=False, file_ops=None, event_bus=None):
    return WorkerPipeline(
        config=config,
        ffprobe_adapter=probe,
        ffmpeg_adapter=encoder,
        audit_log=AuditLog(Path(config.general.audit_log_path), sleep=lambda s: None),
        event_bus=event_bus,
        free_space=lambda p: free,
        volume_root=lambda p: root,
        file_ops=file_ops,
        sleep=lambda s: None,
    )


def _audit_rows(config):
    path = Path(config.general.audit_log_path)
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def _leftovers(directory):
    return [p for p in directory.iterdir() if is_temp_artifact(p) or p.name.endswith(".bak")]


def test_commit_replaces_original(sample_config, movie, make_descriptor, event_bus):
    progress = []
    event_bus.subscribe(JobProgressUpdated, progress.append)
    encoder = FakeEncoder()
    probe = FakeProbe(make_descriptor(codec="h264"), make_descriptor(codec="hevc"))

    result = _pipeline(sample_config, probe, encoder, event_bus=event_bus).process(movie)

    assert result.status == JobStatus.COMMITTED
    assert exit_code_for(result) == EXIT_HANDLED
    assert movie.read_bytes() == b"\1" * 2000
    assert result.replaced.size_bytes == 2000
    assert _leftovers(movie.parent) == []
    assert [p.progress_percent for p in progress] == [50.0]

    _, output_path, profile, container = encoder.calls[0]
    assert output_path.parent == movie.parent
    assert is_temp_artifact(output_path)
    assert container == "matroska"
    assert profile.bit_depth == 8
    assert profile.max_kbps == 4000
    assert profile.default_audio_index == 0

    rows = _audit_rows(sample_config)
    assert len(rows) == 1
    row = rows[0]
    assert row["status"] == "COMMITTED"
    assert row["strategy"] == "CodecUpgrade"
    assert row["old_size"] == str(ORIGINAL_SIZE)
    assert row["new_size"] == "2000"
    assert row["saved_size"] == str(ORIGINAL_SIZE - 2000)
    assert row["output_path"] == str(movie)
    assert row["video_after"].startswith("hevc")


def test_already_efficient_is_skipped(sample_config, movie, make_descriptor):
    encoder = FakeEncoder()
    probe = FakeProbe(make_descriptor(codec="hevc", bitrate=1_000_000))

    result = _pipeline(sample_config, probe, encoder).process(movie)

    assert result.status == JobStatus.SKIPPED
    assert result.reason == "AlreadyEfficient"
    assert encoder.calls == []
    assert [r["status"] for r in _audit_rows(sample_config)] == ["SKIPPED:AlreadyEfficient"]


def test_probe_error_is_skipped(sample_config, movie, make_descriptor):
    probe = FakeProbe(None, source_error=ProbeError(movie, "invalid data", 1))
    result = _pipeline(sample_config, probe, FakeEncoder()).process(movie)
    assert result.status == JobStatus.SKIPPED
    assert result.reason == "ProbeError"
    assert "exit_code=1" in _audit_rows(sample_config)[0]["detail"]


def test_missing_file_is_skipped(sample_config, media_dir, make_descriptor):
    result = _pipeline(sample_config, FakeProbe(make_descriptor()), FakeEncoder()).process(media_dir / "gone.mkv")
    assert result.status == JobStatus.SKIPPED
    assert result.reason == "ProbeError"
    assert len(_audit_rows(sample_config)) == 1


def test_volume_root_is_refused(sample_config, movie, make_descriptor):
    encoder = FakeEncoder()
    result = _pipeline(sample_config, FakeProbe(make_descriptor()), encoder, root=True).process(movie)
    assert result.reason == "RootSafety"
    assert encoder.calls == []


def test_invalid_duration(sample_config, movie, make_descriptor):
    result = _pipeline(sample_config, FakeProbe(make_descriptor(duration=0.0)), FakeEncoder()).process(movie)
    assert result.reason == "InvalidDuration"


def test_dolby_vision_skipped_under_skip_policy(sample_config, movie, make_descriptor):
    source = make_descriptor(codec="hevc", codec_tag="dvhe", width=3840, height=2160, bitrate=30_000_000)
    result = _pipeline(sample_config, FakeProbe(source), FakeEncoder()).process(movie)
    assert result.reason == "DolbyVision"


def test_dolby_vision_transcoded_when_loss_allowed(sample_config, movie, make_descriptor):
    policy = sample_config.policy.model_copy(update={"dolby_vision": DolbyVisionPolicy.TRANSCODE_ALLOW_LOSS})
    config = sample_config.model_copy(update={"policy": policy})
    source = make_descriptor(codec="hevc", codec_tag="dvhe", width=3840, height=2160, bitrate=30_000_000, bit_depth=10)
    encoder = FakeEncoder()
    probe = FakeProbe(source, make_descriptor(codec="hevc", width=3840, height=2160, bit_depth=10))

    result = _pipeline(config, probe, encoder).process(movie)

    assert result.status == JobStatus.COMMITTED
    profile = encoder.calls[0][2]
    assert profile.bit_depth == 10
    assert profile.max_kbps == 12000
    row = _audit_rows(config)[0]
    assert (row["dv_before"], row["dv_after"], row["bit_depth"]) == ("True", "False", "10")


def test_low_space_signals_scheduler(sample_config, movie, make_descriptor):
    encoder = FakeEncoder()
    result = _pipeline(sample_config, FakeProbe(make_descriptor()), encoder, free=ORIGINAL_SIZE).process(movie)

    assert result.status == JobStatus.SKIPPED
    assert result.reason == "LowSpace"
    assert exit_code_for(result) == EXIT_LOW_SPACE
    assert encoder.calls == []
    assert len(_audit_rows(sample_config)) == 1


def test_encoder_failure_removes_partial_output(sample_config, movie, make_descriptor):
    encoder = FakeEncoder(returncode=1, output=b"partial")
    result = _pipeline(sample_config, FakeProbe(make_descriptor()), encoder).process(movie)

    assert result.status == JobStatus.FAILED
    assert result.reason == "EncoderError"
    assert movie.stat().st_size == ORIGINAL_SIZE
    assert _leftovers(movie.parent) == []


def test_empty_output_is_encoder_error(sample_config, movie, make_descriptor):
    result = _pipeline(sample_config, FakeProbe(make_descriptor()), FakeEncoder(output=b"")).process(movie)
    assert result.reason == "EncoderError"


def test_validation_failure_keeps_original(sample_config, movie, make_descriptor):
    probe = FakeProbe(make_descriptor(duration=3600.0), make_descriptor(codec="hevc", duration=3400.0))
    result = _pipeline(sample_config, probe, FakeEncoder()).process(movie)

    assert result.status == JobStatus.FAILED
    assert result.reason == "ValidationError"
    assert movie.stat().st_size == ORIGINAL_SIZE
    assert _leftovers(movie.parent) == []
    assert "after 3 attempts" in _audit_rows(sample_config)[0]["detail"]


class BrokenReplace(FileOps):
    def __init__(self, fail_rollback=False):
        self.fail_rollback = fail_rollback
        self.calls = 0

    def link(self, src, dst):
        raise OSError(errno.EPERM, "Operation not permitted")

    def replace(self, src, dst):
        self.calls += 1
        if self.calls == 2 or (self.fail_rollback and self.calls == 3):
            raise OSError(errno.EIO, "I/O error")
        super().replace(src, dst)


def test_swap_failure_rolls_back(sample_config, movie, make_descriptor):
    probe = FakeProbe(make_descriptor(), make_descriptor(codec="hevc"))
    result = _pipeline(sample_config, probe, FakeEncoder(), file_ops=BrokenReplace()).process(movie)

    assert result.status == JobStatus.ROLLED_BACK
    assert result.reason == "SwapError"
    assert movie.stat().st_size == ORIGINAL_SIZE
    assert _leftovers(movie.parent) == []


def test_failed_rollback_is_critical(sample_config, movie, make_descriptor):
    probe = FakeProbe(make_descriptor(), make_descriptor(codec="hevc"))
    result = _pipeline(sample_config, probe, FakeEncoder(), file_ops=BrokenReplace(fail_rollback=True)).process(movie)

    assert result.status == JobStatus.CRITICAL
    assert backup_path(movie).exists()
    assert "MANUAL INTERVENTION REQUIRED" in _audit_rows(sample_config)[0]["detail"]


def test_unexpected_exception_is_contained(sample_config, movie, make_descriptor):
    encoder = FakeEncoder(error=RuntimeError("boom"))
    result = _pipeline(sample_config, FakeProbe(make_descriptor()), encoder).process(movie)

    assert result.status == JobStatus.FAILED
    assert result.reason == "CriticalError"
    assert movie.stat().st_size == ORIGINAL_SIZE
    assert _leftovers(movie.parent) == []
    assert len(_audit_rows(sample_config)) == 1


def test_pending_backup_skips_before_encoding(sample_config, movie, make_descriptor):
    backup_path(movie).write_bytes(b"older original")
    encoder = FakeEncoder()
    probe = FakeProbe(make_descriptor(codec="h264"), make_descriptor(codec="hevc"))

    result = _pipeline(sample_config, probe, encoder).process(movie)

    assert result.status == JobStatus.SKIPPED
    assert result.reason == "PendingBackup"
    assert exit_code_for(result) == EXIT_HANDLED
    assert encoder.calls == []
    assert movie.stat().st_size == ORIGINAL_SIZE
    assert backup_path(movie).read_bytes() == b"older original"
    rows = _audit_rows(sample_config)
    assert [r["status"] for r in rows] == ["SKIPPED:PendingBackup"]
    assert rows[0]["strategy"] == "CodecUpgrade"


def test_pending_backup_ignored_when_file_is_efficient(sample_config, movie, make_descriptor):
    backup_path(movie).write_bytes(b"older original")
    probe = FakeProbe(make_descriptor(codec="hevc", bitrate=1_000_000))

    result = _pipeline(sample_config, probe, FakeEncoder()).process(movie)

    assert result.reason == "AlreadyEfficient"
