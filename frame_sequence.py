"""Locate the contiguous numbered frame run to hand to ffmpeg."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import NonContiguousSequence, NoSequenceFound

FRAME_NAME_PATTERN = re.compile(r"^frame_(\d{8})\.(png|jpg|jpeg|webp)$", re.IGNORECASE)
FRAME_NUMBER_FORMAT = "frame_%08d"


@dataclass(frozen=True)
class FrameSequenceInfo:
    extension: str
    start_number: int
    frame_count: int
    input_pattern: str


def parse_frame_number(file_name: str) -> Optional[tuple[int, str]]:
    match = FRAME_NAME_PATTERN.match(file_name)
    if not match:
        return None
    return int(match.group(1)), match.group(2).lower()


def count_contiguous(numbers: list[int]) -> int:
    """Length of the unbroken run starting at the smallest number."""
    ordered = sorted(numbers)
    if not ordered:
        return 0
    start = ordered[0]
    count = 0
    for index, value in enumerate(ordered):
        if value != start + index:
            break
        count += 1
    return count


def resolve_frame_sequence(directory: Path) -> FrameSequenceInfo:
    """Pick the dominant image extension and its contiguous frame range.

    Files after the first gap are ignored so that a stray frame left by an
    interrupted run cannot break the encode input pattern.
    """
    directory = Path(directory)
    buckets: dict[str, list[int]] = {}
    # ffmpeg matches the input pattern case-sensitively.
    spellings: dict[str, str] = {}
    for entry in sorted(directory.iterdir()):
        if not entry.is_file():
            continue
        parsed = parse_frame_number(entry.name)
        if parsed is None:
            continue
        number, extension = parsed
        buckets.setdefault(extension, []).append(number)
        spellings.setdefault(extension, entry.name.rsplit(".", 1)[1])

    selected_extension = None
    selected_numbers: list[int] = []
    for extension, numbers in buckets.items():
        if len(numbers) > len(selected_numbers):
            selected_extension = extension
            selected_numbers = numbers

    if selected_extension is None:
        raise NoSequenceFound(directory)

    frame_count = count_contiguous(selected_numbers)
    if frame_count <= 0:
        raise NonContiguousSequence(directory)

    return FrameSequenceInfo(
        extension=selected_extension,
        start_number=min(selected_numbers),
        frame_count=frame_count,
        input_pattern=str(directory / f"{FRAME_NUMBER_FORMAT}.{spellings[selected_extension]}"),
    )


def count_frame_files(directory: Path) -> int:
    """Count image files regardless of naming, as the ncnn tools see them."""
    directory = Path(directory)
    if not directory.is_dir():
        return 0
    return sum(
        1
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix.lower() in (".png", ".jpg", ".jpeg", ".webp")
    )
