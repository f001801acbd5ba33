from typing import List

from vrc.config.models import QUEUE_SORT_CHOICES
from vrc.domain.models import CandidateFile


def sort_files(files: List[CandidateFile], mode: str) -> List[CandidateFile]:
    if mode == "smallest":
        return sorted(files, key=lambda cf: (cf.size_bytes, str(cf.path)))

    if mode == "largest":
        return sorted(files, key=lambda cf: (-cf.size_bytes, str(cf.path)))

    if mode == "name":
        return sorted(files, key=lambda cf: (cf.path.name.lower(), str(cf.path)))

    if mode == "none":
        return list(files)

    allowed = ", ".join(QUEUE_SORT_CHOICES)
    raise ValueError(f"Unsupported queue_sort '{mode}'. Use one of: {allowed}.")
