"""
Codex CLI session log parser.

Codex writes ``~/.codex/sessions/YYYY/MM/DD/rollout-<timestamp>-<uuid>.jsonl``.
Each line is an envelope ``{"timestamp", "type", "payload"}`` where ``type``
is one of ``session_meta``, ``turn_context``, ``response_item`` or
``event_msg``.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from aiobscura.config import settings
from aiobscura.models.canonical import (
    CONTENT_TYPE_TEXT,
    Assistant,
    AuthorRole,
    Checkpoint,
    FileType,
    Message,
    MessageType,
    Project,
    Session,
    SessionStatus,
    Thread,
    ThreadType,
    content_type_unknown,
)
from aiobscura.parsers.base import AssistantParser, ParseContext, SourcePattern
from aiobscura.parsers.incremental import iter_complete_lines, start_offset_for
from aiobscura.parsers.types import ParseResult
from aiobscura.parsers.utils import (
    decode_json_line,
    dir_name,
    safe_get_nested,
    stringify_tool_result,
    try_parse_timestamp,
)
from aiobscura.utils.hashing import canonical_path, project_id_for_path

logger = logging.getLogger(__name__)

OPENAI_PROVIDER = "openai"

# event_msg payloads that repeat a response_item
_DUPLICATE_EVENT_MSGS = {"user_message", "agent_message", "agent_reasoning"}

_TEXT_BLOCK_TYPES = {"input_text", "output_text", "text"}

# Prefixes of "user" text the CLI injects on its own
_SYSTEM_CONTEXT_PREFIXES = (
    "<environment_context>",
    "<user_shell_command>",
    "<INSTRUCTIONS>",
    "<user_instructions>",
    "<system",
    "# AGENTS.md instructions for",
)


def is_system_injected_context(text: str) -> bool:
    """True for user-role text written by the CLI rather than a person."""
    return text.strip().startswith(_SYSTEM_CONTEXT_PREFIXES)


@dataclass
class _ParseState:
    path: Path
    observed_at: datetime
    seq: int
    session_id: Optional[str]
    seen_first_user_prompt: bool
    model: Optional[str] = None
    cwd: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    thread_last_activity: Optional[datetime] = None
    last_token_usage: dict[str, Any] = field(default_factory=dict)


class CodexParser(AssistantParser):
    """
    Parser for Codex CLI rollout files.

    The session id comes from the UUID at the end of the filename and is
    overridden by ``session_meta.payload.id``. ``event_msg`` records that
    duplicate a ``response_item`` are skipped; the latest ``token_count``
    usage is attached to the following assistant responses.
    """

    def __init__(self, root: Optional[Path] = None):
        if root is None:
            root = (
                Path(settings.codex_path).expanduser()
                if settings.codex_path
                else Path.home() / ".codex"
            )
        self._root = root

    def assistant(self) -> Assistant:
        return Assistant.CODEX

    def root_path(self) -> Optional[Path]:
        return self._root

    def source_patterns(self) -> List[SourcePattern]:
        return [
            SourcePattern(
                pattern="sessions/*/*/*/rollout-*.jsonl",
                file_type=FileType.SESSION_LOG,
                description="Codex CLI session logs",
            )
        ]

    def extract_project_path(self, file_path: Path) -> Optional[Path]:
        # Codex records the project in session_meta.cwd only
        return None

    def extract_session_id(self, file_path: Path) -> Optional[str]:
        """
        Take the trailing UUID from a rollout filename.

        ``rollout-2025-11-24T19-33-35-019ab86e-1e83-75b0-b2d7-d335492e7026``
        -> ``019ab86e-1e83-75b0-b2d7-d335492e7026``
        """
        parts = file_path.stem.split("-")
        if len(parts) < 6:
            return None
        candidate = parts[-5:]
        if [len(p) for p in candidate] != [8, 4, 4, 4, 12]:
            return None
        if not all(_is_hex(p) for p in candidate):
            return None
        return "-".join(candidate)

    def parse(self, context: ParseContext) -> ParseResult:
        result = ParseResult()
        start = start_offset_for(
            context.checkpoint, context.file_size, result, self.assistant().value
        )
        if start >= context.file_size:
            result.new_checkpoint = Checkpoint.byte_offset(context.file_size)
            return result

        state = _ParseState(
            path=context.path,
            observed_at=datetime.now(timezone.utc),
            seq=context.last_seq,
            session_id=self.extract_session_id(context.path),
            # The CLI prompt was consumed by the parse that started at 0
            seen_first_user_prompt=start > 0,
        )

        end_offset = start
        try:
            for line_number, offset, data in iter_complete_lines(context.path, start):
                end_offset = offset + len(data) + 1
                self._handle_line(state, result, line_number, offset, data)
        except OSError as e:
            raise self._error(f"failed to read {context.path}: {e}") from e

        result.new_checkpoint = Checkpoint.byte_offset(end_offset)
        self._finish(state, result)
        return result

    def _handle_line(
        self,
        state: _ParseState,
        result: ParseResult,
        line_number: int,
        offset: int,
        data: bytes,
    ) -> None:
        if not data.strip():
            return

        try:
            record = decode_json_line(data)
        except ValueError as e:
            result.warnings.append(
                f"{state.path}: Line {line_number} (offset {offset}): JSON parse error: {e}"
            )
            return
        if not isinstance(record, dict):
            result.warnings.append(
                f"{state.path}: Line {line_number} (offset {offset}): "
                f"deserialization error: expected object, got {type(record).__name__}"
            )
            return

        emitted_at = try_parse_timestamp(record.get("timestamp"))
        if emitted_at is None:
            emitted_at = state.last_timestamp or state.observed_at
        if state.first_timestamp is None:
            state.first_timestamp = emitted_at
        state.last_timestamp = emitted_at

        event_type = record.get("type") if isinstance(record.get("type"), str) else "unknown"
        payload = record.get("payload") if isinstance(record.get("payload"), dict) else {}
        raw = data.decode("utf-8")

        def emit(author_role: AuthorRole, message_type: MessageType, **fields) -> Message:
            state.seq += 1
            message = Message(
                session_id=state.session_id or "",
                thread_id=state.session_id or "",
                seq=state.seq,
                emitted_at=emitted_at,
                observed_at=state.observed_at,
                author_role=author_role,
                message_type=message_type,
                source_file_path=str(state.path),
                source_offset=offset,
                source_line=line_number,
                raw_data=raw,
                **fields,
            )
            if message_type != MessageType.CONTEXT:
                state.thread_last_activity = emitted_at
            result.messages.append(message)
            return message

        if event_type == "session_meta":
            self._session_meta(state, payload)
        elif event_type == "turn_context":
            if state.model is None and isinstance(payload.get("model"), str):
                state.model = payload["model"]
            if isinstance(payload.get("cwd"), str):
                state.cwd = payload["cwd"]
        elif event_type == "event_msg":
            self._event_msg(state, payload, emit)
        elif event_type == "response_item":
            self._response_item(state, payload, emit)
        else:
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name=event_type,
                content_type=content_type_unknown(event_type),
            )

    def _session_meta(self, state: _ParseState, payload: dict[str, Any]) -> None:
        session_id = payload.get("id")
        if isinstance(session_id, str) and session_id:
            state.session_id = session_id
        if state.cwd is None and isinstance(payload.get("cwd"), str):
            state.cwd = payload["cwd"]
        if isinstance(payload.get("git"), dict):
            state.metadata.setdefault("git", payload["git"])
        for key in ("originator", "cli_version", "source", "model_provider"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                state.metadata.setdefault(key, value)

    def _event_msg(self, state: _ParseState, payload: dict[str, Any], emit) -> None:
        msg_type = payload.get("type") if isinstance(payload.get("type"), str) else "unknown"
        if msg_type in _DUPLICATE_EVENT_MSGS:
            return
        if msg_type == "token_count":
            usage = safe_get_nested(payload, "info", "last_token_usage")
            if isinstance(usage, dict):
                state.last_token_usage = usage
            return
        emit(
            AuthorRole.SYSTEM,
            MessageType.CONTEXT,
            author_name=msg_type,
            content_type=content_type_unknown(msg_type),
        )

    def _response_item(self, state: _ParseState, payload: dict[str, Any], emit) -> None:
        item_type = payload.get("type") if isinstance(payload.get("type"), str) else "unknown"

        if item_type == "message":
            self._message_item(state, payload, emit)
        elif item_type in ("function_call", "custom_tool_call"):
            custom = item_type == "custom_tool_call"
            if custom:
                tool_input = {"input": payload.get("input")}
            else:
                tool_input = _decode_arguments(payload.get("arguments"))
            metadata: dict[str, Any] = {
                "call_id": payload.get("call_id"),
                "tool_use_id": payload.get("call_id"),
            }
            if custom:
                metadata["custom_tool"] = True
            emit(
                AuthorRole.ASSISTANT,
                MessageType.TOOL_CALL,
                tool_name=payload.get("name"),
                tool_input=tool_input,
                metadata=metadata,
            )
        elif item_type in ("function_call_output", "custom_tool_call_output"):
            metadata = {
                "call_id": payload.get("call_id"),
                "tool_use_id": payload.get("call_id"),
            }
            if item_type == "custom_tool_call_output":
                metadata["custom_tool"] = True
            output = payload.get("output")
            emit(
                AuthorRole.TOOL,
                MessageType.TOOL_RESULT,
                tool_result=stringify_tool_result(output) if output is not None else None,
                metadata=metadata,
            )
        elif item_type == "reasoning":
            summary = safe_get_nested(payload, "summary", 0, "text")
            encrypted = payload.get("encrypted_content") is not None
            parts = []
            if isinstance(summary, str):
                parts.append(summary)
            if encrypted:
                parts.append("[encrypted reasoning]")
            emit(
                AuthorRole.ASSISTANT,
                MessageType.CONTEXT,
                content="\n".join(parts) if parts else None,
                content_type=CONTENT_TYPE_TEXT,
                metadata={"reasoning": True, "encrypted": encrypted},
            )
        elif item_type == "ghost_snapshot":
            commit_id = safe_get_nested(payload, "ghost_commit", "id")
            short = commit_id[:8] if isinstance(commit_id, str) else "unknown"
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name="snapshot",
                content=f"git checkpoint: {short}",
                content_type=CONTENT_TYPE_TEXT,
                metadata={"git_snapshot": payload.get("ghost_commit")},
            )
        else:
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name=item_type,
                content_type=content_type_unknown(item_type),
            )

    def _message_item(self, state: _ParseState, payload: dict[str, Any], emit) -> None:
        role = payload.get("role")
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            return

        for block in blocks:
            if not isinstance(block, dict) or block.get("type") not in _TEXT_BLOCK_TYPES:
                continue
            text = block.get("text")
            if not isinstance(text, str) or not text:
                continue

            if role == "assistant":
                emit(
                    AuthorRole.ASSISTANT,
                    MessageType.RESPONSE,
                    content=text,
                    content_type=CONTENT_TYPE_TEXT,
                    tokens_in=_int_or_none(state.last_token_usage.get("input_tokens")),
                    tokens_out=_int_or_none(state.last_token_usage.get("output_tokens")),
                )
            elif role == "user":
                if is_system_injected_context(text):
                    author_role, message_type = AuthorRole.CALLER, MessageType.CONTEXT
                elif not state.seen_first_user_prompt:
                    # First real prompt is the CLI invocation
                    state.seen_first_user_prompt = True
                    author_role, message_type = AuthorRole.CALLER, MessageType.PROMPT
                else:
                    author_role, message_type = AuthorRole.HUMAN, MessageType.PROMPT
                emit(author_role, message_type, content=text, content_type=CONTENT_TYPE_TEXT)
            else:
                emit(
                    AuthorRole.SYSTEM,
                    MessageType.CONTEXT,
                    author_name=role if isinstance(role, str) else None,
                    content=text,
                    content_type=CONTENT_TYPE_TEXT,
                )

    def _finish(self, state: _ParseState, result: ParseResult) -> None:
        if state.session_id is None:
            if result.messages:
                result.warnings.append(
                    f"{state.path}: no session id in filename or session_meta"
                )
                result.messages = []
            return

        # Messages emitted before session_meta used the filename id
        for message in result.messages:
            message.session_id = state.session_id
            message.thread_id = state.session_id

        result.threads.append(
            Thread(
                id=state.session_id,
                session_id=state.session_id,
                thread_type=ThreadType.MAIN,
                started_at=state.first_timestamp,
                last_activity_at=state.thread_last_activity,
            )
        )

        project_id = None
        if state.cwd:
            canonical = canonical_path(state.cwd)
            project_id = project_id_for_path(canonical)
            result.project = Project(
                id=project_id,
                path=canonical,
                name=dir_name(canonical),
                created_at=state.first_timestamp,
            )

        metadata = dict(state.metadata)
        if state.cwd:
            metadata["cwd"] = state.cwd

        result.session = Session(
            id=state.session_id,
            assistant=Assistant.CODEX,
            started_at=state.first_timestamp,
            source_file_path=str(state.path),
            backing_model_id=f"{OPENAI_PROVIDER}:{state.model}" if state.model else None,
            project_id=project_id,
            last_activity_at=state.last_timestamp,
            status=SessionStatus.ACTIVE,
            metadata=metadata,
        )


def _is_hex(value: str) -> bool:
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def _decode_arguments(arguments: Any) -> Any:
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments)
    except ValueError:
        return None


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
