"""
Mapping between whole-book ("global") time and per-file ("local") time for
books split over several audio files. All functions expect files ordered by
index; use sort_files() first when the order is not guaranteed.
"""
from typing import List, Sequence
from .models import AudioFile, LocalPosition


def sort_files(files: Sequence[AudioFile]) -> List[AudioFile]:
    return sorted(files, key=lambda f: f.index)


def total_duration(files: Sequence[AudioFile]) -> float:
    return sum((f.duration or 0.0) for f in files)


def global_time(file_index: int, position_in_file: float, files: Sequence[AudioFile]) -> float:
    """Position in the whole book. file_index must be a valid index into files."""
    elapsed = 0.0
    for f in files[:file_index]:
        elapsed += f.duration or 0.0
    return elapsed + position_in_file


def local_position(global_seconds: float, files: Sequence[AudioFile]) -> LocalPosition:
    """
    Find the file and intra-file position for a global time.
    Anything past the end of the book lands on the last file at its full duration.
    """
    if not files:
        raise ValueError("Cannot map a position onto an empty file list")

    remaining = max(0.0, global_seconds)
    for i, f in enumerate(files):
        duration = f.duration or 0.0
        if remaining < duration:
            return LocalPosition(i, remaining)
        remaining -= duration

    last = len(files) - 1
    return LocalPosition(last, files[last].duration or 0.0)
