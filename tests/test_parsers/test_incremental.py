"""
Tests for incremental parsing helpers.
"""

from pathlib import Path

import pytest

from aiobscura.models.canonical import Checkpoint
from aiobscura.parsers.base import ParseDataError
from aiobscura.parsers.incremental import (
    ChangeType,
    detect_change_type,
    iter_complete_lines,
    start_offset_for,
)
from aiobscura.parsers.types import ParseResult


class TestDetectChangeType:
    """Tests for detect_change_type function."""

    def test_append(self):
        assert detect_change_type(Checkpoint.byte_offset(100), 150) == ChangeType.APPEND

    def test_unchanged(self):
        assert detect_change_type(Checkpoint.byte_offset(100), 100) == ChangeType.UNCHANGED

    def test_truncate(self):
        assert detect_change_type(Checkpoint.byte_offset(100), 50) == ChangeType.TRUNCATE

    def test_no_checkpoint(self):
        assert detect_change_type(Checkpoint.none(), 10) == ChangeType.APPEND
        assert detect_change_type(Checkpoint.none(), 0) == ChangeType.UNCHANGED


class TestStartOffset:
    """Tests for start_offset_for function."""

    def test_resume_at_checkpoint(self):
        result = ParseResult()

        assert start_offset_for(Checkpoint.byte_offset(40), 100, result) == 40
        assert result.warnings == []

    def test_none_starts_at_zero(self):
        assert start_offset_for(Checkpoint.none(), 100, ParseResult()) == 0

    def test_truncation_restarts_with_one_warning(self):
        result = ParseResult()

        offset = start_offset_for(Checkpoint.byte_offset(500), 100, result)

        assert offset == 0
        assert result.warnings == [
            "File truncated: checkpoint 500 > file size 100, starting from beginning"
        ]

    def test_unknown_variant_is_rejected(self):
        checkpoint = Checkpoint.from_json({"type": "record_id", "id": "r1"})

        with pytest.raises(ParseDataError, match="unsupported checkpoint type: record_id"):
            start_offset_for(checkpoint, 100, ParseResult(), "codex")


class TestIterCompleteLines:
    """Tests for iter_complete_lines function."""

    def test_yields_offsets_and_line_numbers(self, tmp_path: Path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n{"b":2}\n')

        lines = list(iter_complete_lines(path))

        assert lines == [(1, 0, b'{"a":1}'), (2, 8, b'{"b":2}')]

    def test_partial_final_line_is_held_back(self, tmp_path: Path):
        """Test that a line still being written is not yielded."""
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n{"b":')

        assert [data for _, _, data in iter_complete_lines(path)] == [b'{"a":1}']

    def test_starts_at_offset(self, tmp_path: Path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n{"b":2}\n')

        assert list(iter_complete_lines(path, 8)) == [(1, 8, b'{"b":2}')]

    def test_blank_lines_are_yielded(self, tmp_path: Path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b"\n{}\n")

        assert [data for _, _, data in iter_complete_lines(path)] == [b"", b"{}"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(OSError):
            list(iter_complete_lines(tmp_path / "missing.jsonl"))
