"""
Incremental parsing infrastructure.

Helpers shared by the JSONL parsers for resuming at a byte-offset
checkpoint: truncation detection and reading complete lines only.
"""

from enum import Enum
from pathlib import Path
from typing import Iterator, Tuple

from aiobscura.models.canonical import Checkpoint
from aiobscura.parsers.base import ParseDataError
from aiobscura.parsers.types import ParseResult


class ChangeType(str, Enum):
    """Type of file change detected."""

    APPEND = "append"  # New content after the checkpoint
    TRUNCATE = "truncate"  # File shrank below the checkpoint (full reparse)
    UNCHANGED = "unchanged"  # Nothing new


def detect_change_type(checkpoint: Checkpoint, file_size: int) -> ChangeType:
    """
    Classify a file relative to its checkpoint.

    Examples:
        >>> detect_change_type(Checkpoint.byte_offset(100), 100)
        ChangeType.UNCHANGED
        >>> detect_change_type(Checkpoint.byte_offset(100), 150)
        ChangeType.APPEND
        >>> detect_change_type(Checkpoint.byte_offset(100), 50)
        ChangeType.TRUNCATE
    """
    if checkpoint.kind != Checkpoint.BYTE_OFFSET:
        return ChangeType.APPEND if file_size > 0 else ChangeType.UNCHANGED
    if checkpoint.offset > file_size:
        return ChangeType.TRUNCATE
    if checkpoint.offset == file_size:
        return ChangeType.UNCHANGED
    return ChangeType.APPEND


def start_offset_for(
    checkpoint: Checkpoint,
    file_size: int,
    result: ParseResult,
    assistant: str = "unknown",
) -> int:
    """
    Resolve where a parse should start.

    A byte offset past the end of the file means the file was truncated
    or rotated: one warning is recorded and parsing restarts at 0.

    Raises:
        ParseDataError: If the checkpoint is a variant this version cannot
            resume from
    """
    if checkpoint.is_none:
        return 0
    if checkpoint.kind != Checkpoint.BYTE_OFFSET:
        raise ParseDataError(
            assistant, f"unsupported checkpoint type: {checkpoint.kind}"
        )
    if checkpoint.offset > file_size:
        result.add_warning(
            f"File truncated: checkpoint {checkpoint.offset} > file size "
            f"{file_size}, starting from beginning"
        )
        return 0
    return checkpoint.offset


def iter_complete_lines(path: Path, offset: int = 0) -> Iterator[Tuple[int, int, bytes]]:
    """
    Yield ``(line_number, offset, data)`` for each complete line.

    ``line_number`` counts from 1 at ``offset``. ``data`` excludes the
    trailing LF, so the line ends at ``offset + len(data) + 1``. A final
    line without LF is still being written and is not yielded.

    Args:
        path: File to read
        offset: Byte offset to start at

    Raises:
        OSError: If the file cannot be opened, sought or read
    """
    with open(path, "rb") as f:
        f.seek(offset)
        current = offset
        line_number = 0
        while True:
            line = f.readline()
            if not line or not line.endswith(b"\n"):
                return
            line_number += 1
            yield line_number, current, line[:-1]
            current += len(line)
