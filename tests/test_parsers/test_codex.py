"""
Tests for the Codex CLI parser.
"""

import json
from pathlib import Path

import pytest

from aiobscura.models.canonical import (
    Assistant,
    AuthorRole,
    Checkpoint,
    MessageType,
    ThreadType,
)
from aiobscura.parsers.base import ParseContext
from aiobscura.parsers.codex import CodexParser, is_system_injected_context

FILE_UUID = "019ab86e-1e83-75b0-b2d7-d335492e7026"
TS = "2025-11-24T19:33:35.000Z"


def _context(path: Path, checkpoint: Checkpoint = None, last_seq: int = 0) -> ParseContext:
    return ParseContext(
        path=path,
        checkpoint=checkpoint or Checkpoint.none(),
        file_size=path.stat().st_size,
        last_seq=last_seq,
    )


def _envelope(event_type: str, payload: dict, timestamp: str = TS) -> dict:
    return {"timestamp": timestamp, "type": event_type, "payload": payload}


def _message(role: str, text: str) -> dict:
    block_type = "output_text" if role == "assistant" else "input_text"
    return _envelope(
        "response_item",
        {"type": "message", "role": role, "content": [{"type": block_type, "text": text}]},
    )


def _session_meta(session_id: str = FILE_UUID) -> dict:
    return _envelope(
        "session_meta",
        {
            "id": session_id,
            "cwd": "/Users/example/project",
            "originator": "codex_cli_rs",
            "cli_version": "0.63.0",
            "model_provider": "openai",
            "git": {"branch": "main"},
        },
    )


@pytest.fixture
def rollout(codex_root: Path) -> Path:
    return (
        codex_root / "sessions" / "2025" / "11" / "24"
        / f"rollout-2025-11-24T19-33-35-{FILE_UUID}.jsonl"
    )


class TestPathHelpers:
    """Tests for filename-derived identity."""

    def test_session_id_from_filename(self, codex_parser: CodexParser, rollout: Path):
        assert codex_parser.extract_session_id(rollout) == FILE_UUID

    @pytest.mark.parametrize(
        "name",
        ["rollout-abc.jsonl", "rollout-2025-11-24-zzzzzzzz-1e83-75b0-b2d7-d335492e7026.jsonl"],
    )
    def test_filename_without_uuid(self, codex_parser: CodexParser, name: str):
        assert codex_parser.extract_session_id(Path(name)) is None

    def test_no_project_path_in_filename(self, codex_parser: CodexParser, rollout: Path):
        assert codex_parser.extract_project_path(rollout) is None

    def test_discovery(self, codex_parser: CodexParser, rollout: Path, write_jsonl):
        write_jsonl(rollout, [_session_meta()])
        write_jsonl(rollout.parent / "notes.jsonl", [{"x": 1}])

        assert [f.path for f in codex_parser.discover_files()] == [rollout]

    def test_system_injected_context(self):
        assert is_system_injected_context("<environment_context>\n<cwd>/x</cwd>")
        assert is_system_injected_context("  # AGENTS.md instructions for /repo")
        assert not is_system_injected_context("Fix the failing test")


class TestParsing:
    """Tests for mapping rollout records to messages."""

    def test_conversation(self, codex_parser: CodexParser, rollout: Path, write_jsonl):
        write_jsonl(
            rollout,
            [
                _session_meta(),
                _envelope("turn_context", {"model": "gpt-5-codex", "cwd": "/Users/example/project"}),
                _message("user", "<environment_context>cwd</environment_context>"),
                _message("user", "Add a test"),
                _envelope("event_msg", {"type": "user_message", "message": "Add a test"}),
                _envelope(
                    "event_msg",
                    {"type": "token_count", "info": {"last_token_usage": {"input_tokens": 100, "output_tokens": 20}}},
                ),
                _message("assistant", "Done."),
                _message("user", "Thanks"),
            ],
        )

        result = codex_parser.parse(_context(rollout))

        summary = [(m.author_role, m.message_type) for m in result.messages]
        assert summary == [
            (AuthorRole.CALLER, MessageType.CONTEXT),
            (AuthorRole.CALLER, MessageType.PROMPT),
            (AuthorRole.ASSISTANT, MessageType.RESPONSE),
            (AuthorRole.HUMAN, MessageType.PROMPT),
        ]
        response = result.messages[2]
        assert response.tokens_in == 100
        assert response.tokens_out == 20

        session = result.session
        assert session.id == FILE_UUID
        assert session.assistant == Assistant.CODEX
        assert session.backing_model_id == "openai:gpt-5-codex"
        assert session.metadata["cli_version"] == "0.63.0"
        assert session.metadata["git"] == {"branch": "main"}
        assert result.project.path == "/Users/example/project"
        assert result.threads[0].thread_type == ThreadType.MAIN
        assert result.threads[0].id == FILE_UUID

    def test_function_call_round_trip(self, codex_parser: CodexParser, rollout: Path, write_jsonl):
        write_jsonl(
            rollout,
            [
                _session_meta(),
                _envelope(
                    "response_item",
                    {
                        "type": "function_call",
                        "name": "shell",
                        "arguments": json.dumps({"command": ["ls"]}),
                        "call_id": "call_1",
                    },
                ),
                _envelope(
                    "response_item",
                    {"type": "function_call_output", "call_id": "call_1", "output": "a.txt"},
                ),
                _envelope(
                    "response_item",
                    {"type": "custom_tool_call", "name": "apply_patch", "input": "*** Begin", "call_id": "call_2"},
                ),
            ],
        )

        result = codex_parser.parse(_context(rollout))

        call, output, custom = result.messages
        assert call.message_type == MessageType.TOOL_CALL
        assert call.tool_input == {"command": ["ls"]}
        assert call.metadata["call_id"] == "call_1"
        assert output.message_type == MessageType.TOOL_RESULT
        assert output.author_role == AuthorRole.TOOL
        assert output.tool_result == "a.txt"
        assert custom.tool_input == {"input": "*** Begin"}
        assert custom.metadata["custom_tool"] is True

    def test_reasoning_and_snapshots(self, codex_parser: CodexParser, rollout: Path, write_jsonl):
        write_jsonl(
            rollout,
            [
                _envelope(
                    "response_item",
                    {"type": "reasoning", "summary": [{"text": "Considering"}], "encrypted_content": "x"},
                ),
                _envelope(
                    "response_item",
                    {"type": "ghost_snapshot", "ghost_commit": {"id": "0123456789abcdef"}},
                ),
            ],
        )

        result = codex_parser.parse(_context(rollout))

        reasoning, snapshot = result.messages
        assert reasoning.message_type == MessageType.CONTEXT
        assert reasoning.content == "Considering\n[encrypted reasoning]"
        assert snapshot.content == "git checkpoint: 01234567"

    def test_unknown_types_become_context(self, codex_parser, rollout: Path, write_jsonl):
        write_jsonl(
            rollout,
            [
                _envelope("event_msg", {"type": "task_started"}),
                _envelope("response_item", {"type": "web_search_call"}),
                _envelope("compacted", {}),
            ],
        )

        result = codex_parser.parse(_context(rollout))

        assert [m.content_type for m in result.messages] == [
            "unknown:task_started",
            "unknown:web_search_call",
            "unknown:compacted",
        ]
        assert all(m.message_type == MessageType.CONTEXT for m in result.messages)

    def test_session_meta_id_overrides_filename(self, codex_parser, rollout: Path, write_jsonl):
        write_jsonl(rollout, [_message("user", "early"), _session_meta("meta-session-id")])

        result = codex_parser.parse(_context(rollout))

        assert result.session.id == "meta-session-id"
        assert result.messages[0].session_id == "meta-session-id"
        assert result.messages[0].thread_id == "meta-session-id"

    def test_no_session_id_drops_messages(self, codex_parser, codex_root: Path, write_jsonl):
        path = codex_root / "sessions" / "2025" / "11" / "24" / "rollout-unknown.jsonl"
        write_jsonl(path, [_message("user", "hello")])

        result = codex_parser.parse(_context(path))

        assert result.messages == []
        assert result.session is None
        assert "no session id" in result.warnings[0]

    def test_malformed_line(self, codex_parser: CodexParser, rollout: Path, write_jsonl):
        write_jsonl(rollout, [_session_meta(), "{broken", _message("user", "ok")])

        result = codex_parser.parse(_context(rollout))

        assert len(result.messages) == 1
        assert "Line 2" in result.warnings[0]


class TestIncremental:
    """Tests for resuming a rollout."""

    def test_first_prompt_is_not_reclassified_on_resume(self, codex_parser, rollout, write_jsonl):
        """Test that a resumed parse treats user text as human prompts."""
        write_jsonl(rollout, [_session_meta(), _message("user", "first")])
        first = codex_parser.parse(_context(rollout))

        write_jsonl(rollout, [_message("user", "second")], append=True)
        second = codex_parser.parse(_context(rollout, first.new_checkpoint, last_seq=1))

        assert first.messages[0].author_role == AuthorRole.CALLER
        assert second.messages[0].author_role == AuthorRole.HUMAN
        assert second.messages[0].seq == 2
        assert second.session.id == FILE_UUID
