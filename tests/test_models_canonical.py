"""Tests for the canonical model."""

from datetime import datetime, timedelta, timezone

import pytest

from aiobscura.exceptions import SerializationError
from aiobscura.models.canonical import (
    Assistant,
    AuthorRole,
    BackingModel,
    Checkpoint,
    Message,
    MessageType,
    Session,
    SessionStatus,
    content_type_image,
    content_type_unknown,
    truncate_graphemes,
)

TS = datetime(2025, 1, 13, 10, 0, tzinfo=timezone.utc)


def _message(**fields) -> Message:
    values = dict(
        session_id="s1",
        thread_id="s1",
        seq=1,
        emitted_at=TS,
        observed_at=TS,
        author_role=AuthorRole.ASSISTANT,
        message_type=MessageType.RESPONSE,
        source_file_path="/tmp/s1.jsonl",
        source_offset=0,
        raw_data='{"type":"assistant"}',
    )
    values.update(fields)
    return Message(**values)


class TestCheckpoint:
    """Tests for Checkpoint serialization."""

    def test_none_round_trip(self):
        checkpoint = Checkpoint.none()

        assert checkpoint.to_json() == {"type": "none"}
        assert Checkpoint.from_json({"type": "none"}) == checkpoint
        assert checkpoint.is_none

    def test_byte_offset_round_trip(self):
        checkpoint = Checkpoint.byte_offset(120)

        assert checkpoint.to_json() == {"type": "byte_offset", "offset": 120}
        assert Checkpoint.from_json('{"type": "byte_offset", "offset": 120}') == checkpoint

    def test_negative_offset_rejected(self):
        with pytest.raises(ValueError):
            Checkpoint.byte_offset(-1)

    def test_missing_checkpoint_is_none(self):
        assert Checkpoint.from_json(None).is_none

    def test_unknown_variant_is_preserved(self):
        """Test that future variants serialize back unchanged."""
        data = {"type": "record_id", "id": "abc"}

        checkpoint = Checkpoint.from_json(data)

        assert checkpoint.kind == "record_id"
        assert not checkpoint.is_known
        assert checkpoint.to_json() == data

    @pytest.mark.parametrize(
        "data",
        [
            "not json",
            {"offset": 3},
            {"type": "byte_offset", "offset": -5},
            {"type": "byte_offset", "offset": "10"},
            [1, 2],
        ],
    )
    def test_malformed_checkpoint(self, data):
        with pytest.raises(SerializationError):
            Checkpoint.from_json(data)


class TestEnums:
    """Tests for enum short names."""

    def test_short_name_round_trip(self):
        assert AuthorRole.from_short_name("caller") == AuthorRole.CALLER
        assert MessageType.TOOL_CALL.short_name == "tool_call"

    def test_unknown_short_name(self):
        with pytest.raises(SerializationError):
            MessageType.from_short_name("bogus")

    def test_assistant_display_name(self):
        assert Assistant.CLAUDE_CODE.display_name == "Claude Code"
        assert Assistant.CODEX.display_name == "Codex"

    def test_content_types(self):
        assert content_type_image("image/png") == "image/png;base64"
        assert content_type_image("jpeg") == "image/jpeg;base64"
        assert content_type_unknown("progress") == "unknown:progress"


class TestMessagePreview:
    """Tests for Message.preview."""

    def test_uses_first_line_of_content(self):
        message = _message(content="  first line\nsecond line")

        assert message.preview() == "first line"

    def test_tool_call_shows_primary_argument(self):
        message = _message(
            message_type=MessageType.TOOL_CALL,
            tool_name="Bash",
            tool_input={"command": "ls -la\necho done", "timeout": 5},
        )

        assert message.preview() == "Bash ls -la"

    def test_tool_call_without_known_argument(self):
        message = _message(
            message_type=MessageType.TOOL_CALL, tool_name="Custom", tool_input={"b": 1, "a": 2}
        )

        assert message.preview() == 'Custom {"a":2,"b":1}'

    def test_tool_result_preview(self):
        message = _message(message_type=MessageType.TOOL_RESULT, tool_result="ok\nmore")

        assert message.preview() == "ok"

    def test_truncates_with_ellipsis(self):
        message = _message(content="x" * 200)

        preview = message.preview(80)

        assert len(preview) == 80
        assert preview.endswith("...")

    def test_never_splits_graphemes(self):
        """Test that family emoji (one grapheme, many code points) stay whole."""
        family = "\U0001F468\u200d\U0001F469\u200d\U0001F467"
        text = family * 10

        truncated = truncate_graphemes(text, 5)

        assert truncated == family * 2 + "..."

    def test_short_text_unchanged(self):
        assert truncate_graphemes("abc", 80) == "abc"

    def test_raw_json(self):
        assert _message().raw_json() == {"type": "assistant"}
        assert _message(raw_data="not json").raw_json() is None


class TestSession:
    """Tests for Session helpers."""

    def test_is_active_within_window(self):
        session = Session(
            id="s1",
            assistant=Assistant.CODEX,
            started_at=TS,
            source_file_path="/tmp/x",
            last_activity_at=TS,
        )

        assert session.is_active(now=TS + timedelta(minutes=10))
        assert not session.is_active(now=TS + timedelta(minutes=16))

    def test_completed_is_never_active(self):
        session = Session(
            id="s1",
            assistant=Assistant.CODEX,
            started_at=TS,
            source_file_path="/tmp/x",
            status=SessionStatus.COMPLETED,
        )

        assert not session.is_active(now=TS)

    def test_backing_model_from_id(self):
        model = BackingModel.from_id("anthropic:claude-sonnet-4")

        assert model.provider == "anthropic"
        assert model.model_id == "claude-sonnet-4"
