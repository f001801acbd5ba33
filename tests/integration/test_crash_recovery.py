"""Crash at every step of a swap, then reconcile on the next start.

Whatever step the process dies at, the original path must end up holding one
complete file: either the original or the verified candidate.
"""
import errno
import pytest
from vrc.infrastructure.artifacts import backup_path, temp_path
from vrc.infrastructure.housekeeping import HousekeepingService
from vrc.pipeline.swap import FileOps, SwapTransaction

ORIGINAL = b"original-content" * 64
CANDIDATE = b"candidate" * 32
STEPS = 3


class Crash(BaseException):
    """Process death; never caught by the swap's OSError handlers."""


class CrashingOps(FileOps):
    """Dies before the `crash_at`-th mutating filesystem call."""

    def __init__(self, crash_at, hardlinks=True):
        self.crash_at = crash_at
        self.hardlinks = hardlinks
        self.steps = 0

    def _step(self):
        if self.steps == self.crash_at:
            raise Crash()
        self.steps += 1

    def link(self, src, dst):
        if not self.hardlinks:
            raise OSError(errno.EPERM, "Operation not permitted")
        self._step()
        super().link(src, dst)

    def replace(self, src, dst):
        self._step()
        super().replace(src, dst)

    def unlink(self, path):
        self._step()
        super().unlink(path)


def _swap(tmp_path, ops):
    original = tmp_path / "movie.mkv"
    original.write_bytes(ORIGINAL)
    candidate = temp_path(tmp_path, original)
    candidate.write_bytes(CANDIDATE)
    swap = SwapTransaction(original, candidate, ops=ops)
    swap.mark_verified()
    return swap, original


# crash_at == STEPS means the swap ran to completion
EXPECTED = {0: ORIGINAL, 1: ORIGINAL, 2: CANDIDATE, 3: CANDIDATE}


@pytest.mark.integration
@pytest.mark.parametrize("hardlinks", [True, False])
@pytest.mark.parametrize("crash_at", range(STEPS + 1))
def test_crash_then_reconcile_leaves_one_complete_file(tmp_path, crash_at, hardlinks):
    swap, original = _swap(tmp_path, CrashingOps(crash_at, hardlinks=hardlinks))

    if crash_at < STEPS:
        with pytest.raises(Crash):
            swap.commit()
    else:
        swap.commit()

    report = HousekeepingService().reconcile_backups(tmp_path, [".mkv"])

    assert original.exists()
    assert original.read_bytes() == EXPECTED[crash_at]
    assert report.failed == []


@pytest.mark.integration
def test_crash_between_renames_is_restored(tmp_path):
    swap, original = _swap(tmp_path, CrashingOps(1, hardlinks=False))
    with pytest.raises(Crash):
        swap.commit()

    assert not original.exists()
    assert backup_path(original).exists()

    report = HousekeepingService().reconcile_backups(tmp_path, [".mkv"])

    assert report.restored == [original]
    assert original.read_bytes() == ORIGINAL
    assert not backup_path(original).exists()


@pytest.mark.integration
def test_leftover_backup_next_to_live_file_is_kept(tmp_path):
    swap, original = _swap(tmp_path, CrashingOps(2))
    with pytest.raises(Crash):
        swap.commit()

    probed = []
    report = HousekeepingService(probe=probed.append).reconcile_backups(tmp_path, [".mkv"])

    assert report.kept == [backup_path(original)]
    assert report.restored == []
    assert probed == [original]
    assert backup_path(original).read_bytes() == ORIGINAL
    assert original.read_bytes() == CANDIDATE
