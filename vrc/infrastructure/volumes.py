"""Volume identity, free space and I/O activity sampling."""

import logging
import os
import time
from pathlib import Path, PureWindowsPath
from typing import Callable, Dict, Iterable, Optional

import psutil

NETWORK_VOLUME = "NETWORK"

logger = logging.getLogger(__name__)


def _is_windows_path(text: str) -> bool:
    return text.startswith("\\\\") or (len(text) >= 2 and text[1] == ":" and text[0].isalpha())


def volume_id(path: Path) -> str:
    """Drive letter, network sentinel, or mount point containing the path."""
    text = str(path)
    if _is_windows_path(text):
        if text.startswith("\\\\"):
            return NETWORK_VOLUME
        return PureWindowsPath(text).drive.upper()
    current = Path(os.path.abspath(text))
    while not os.path.ismount(current):
        if current.parent == current:
            break
        current = current.parent
    return str(current)


def is_volume_root(directory: Path) -> bool:
    """True for a drive root, a share root, or a mount point."""
    text = str(directory)
    if _is_windows_path(text):
        win = PureWindowsPath(text)
        return str(win) == win.anchor or win.parent == win
    return os.path.ismount(os.path.abspath(text))


def free_bytes(path: Path) -> int:
    target = path if path.is_dir() else path.parent
    return psutil.disk_usage(str(target)).free


def _device_for_mount(mountpoint: str) -> Optional[str]:
    for part in psutil.disk_partitions(all=False):
        if part.mountpoint == mountpoint or part.mountpoint.rstrip("\\").upper() == mountpoint.upper():
            return os.path.basename(part.device.rstrip("\\")) or part.device
    return None


class VolumeActivitySampler:
    """Samples per-volume disk busy time; smaller means more idle.

    Volumes without a resolvable device (network shares, unknown mounts)
    report 0.
    """

    def __init__(self, interval: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.interval = interval
        self.sleep = sleep

    @staticmethod
    def _busy(counters) -> float:
        busy = getattr(counters, "busy_time", None)
        if busy is not None:
            return float(busy)
        return float(counters.read_time + counters.write_time)

    def _snapshot(self) -> Dict[str, float]:
        try:
            counters = psutil.disk_io_counters(perdisk=True) or {}
        except (RuntimeError, OSError) as exc:
            logger.debug(f"IO_SAMPLE_FAILED: {exc}")
            return {}
        return {name: self._busy(c) for name, c in counters.items()}

    def sample(self, volumes: Iterable[str]) -> Dict[str, float]:
        volumes = list(volumes)
        devices = {v: _device_for_mount(v) for v in volumes if v != NETWORK_VOLUME}
        before = self._snapshot()
        if self.interval > 0:
            self.sleep(self.interval)
        after = self._snapshot()
        result: Dict[str, float] = {}
        for volume in volumes:
            device = devices.get(volume)
            if device and device in before and device in after:
                result[volume] = max(0.0, after[device] - before[device])
            else:
                result[volume] = 0.0
        return result
