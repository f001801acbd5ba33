"""Naming of the files a pipeline run leaves next to the media it touches."""

import re
import uuid
from pathlib import Path

BACKUP_SUFFIX = ".bak"
TEMP_SUFFIX = ".tmp"
_TEMP_RE = re.compile(r"^\..+\.vrc-[0-9a-f]{8}\.tmp$")


def temp_path(directory: Path, original: Path) -> Path:
    """Fresh hidden temp name, e.g. `.movie.mkv.vrc-1a2b3c4d.tmp`."""
    return directory / f".{original.name}.vrc-{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}"


def is_temp_artifact(path: Path) -> bool:
    return bool(_TEMP_RE.match(path.name))


def backup_path(original: Path) -> Path:
    return original.with_name(original.name + BACKUP_SUFFIX)


def original_for_backup(backup: Path) -> Path:
    return backup.with_name(backup.name[: -len(BACKUP_SUFFIX)])
