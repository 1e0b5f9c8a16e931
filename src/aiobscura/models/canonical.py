"""
Canonical event model.

Plain dataclasses shared by parsers, the store, analytics and the
collector. Nothing here performs I/O.
"""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import regex

from aiobscura.exceptions import SerializationError


class _CanonicalEnum(str, enum.Enum):
    """String enum whose value doubles as its serialized short name."""

    @property
    def short_name(self) -> str:
        return self.value

    @classmethod
    def from_short_name(cls, value: str):
        try:
            return cls(value)
        except ValueError as e:
            raise SerializationError(f"unknown {cls.__name__}: {value!r}") from e


class Assistant(_CanonicalEnum):
    """Coding-assistant product family. Only the first two are parsed today."""

    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    AIDER = "aider"
    CURSOR = "cursor"

    @property
    def display_name(self) -> str:
        return _ASSISTANT_DISPLAY_NAMES[self]


_ASSISTANT_DISPLAY_NAMES = {
    Assistant.CLAUDE_CODE: "Claude Code",
    Assistant.CODEX: "Codex",
    Assistant.AIDER: "Aider",
    Assistant.CURSOR: "Cursor",
}


class SessionStatus(_CanonicalEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ThreadType(_CanonicalEnum):
    MAIN = "main"  # Implicit primary thread, id == session id
    AGENT = "agent"  # Spawned sub-agent thread
    BACKGROUND = "background"


class AuthorRole(_CanonicalEnum):
    HUMAN = "human"  # Human at the keyboard
    CALLER = "caller"  # CLI or parent process invoking the agent
    ASSISTANT = "assistant"
    AGENT = "agent"  # Sub-agent
    TOOL = "tool"
    SYSTEM = "system"


class MessageType(_CanonicalEnum):
    PROMPT = "prompt"
    RESPONSE = "response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PLAN = "plan"
    SUMMARY = "summary"
    CONTEXT = "context"
    ERROR = "error"


class FileType(_CanonicalEnum):
    """Kind of source file; selects the checkpoint strategy."""

    SESSION_LOG = "session_log"  # JSONL, byte-offset checkpoints
    PLAN_FILE = "plan_file"  # Markdown, content hash


CONTENT_TYPE_TEXT = "text"


def content_type_text() -> str:
    return CONTENT_TYPE_TEXT


def content_type_image(media_type: str) -> str:
    """``image/png`` or ``png`` -> ``image/png;base64``."""
    subtype = media_type.split("/", 1)[1] if "/" in media_type else media_type
    return f"image/{subtype};base64"


def content_type_unknown(kind: str) -> str:
    return f"unknown:{kind}"


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable marker of how far a source file has been parsed.

    Persisted as a small tagged JSON object so new strategies do not need
    a schema change. Variants this version does not understand keep their
    payload and serialize back unchanged.
    """

    kind: str = "none"
    offset: Optional[int] = None
    payload: Optional[dict[str, Any]] = None

    NONE = "none"
    BYTE_OFFSET = "byte_offset"

    @classmethod
    def none(cls) -> "Checkpoint":
        return cls(kind=cls.NONE)

    @classmethod
    def byte_offset(cls, offset: int) -> "Checkpoint":
        if offset < 0:
            raise ValueError(f"byte offset must be >= 0, got {offset}")
        return cls(kind=cls.BYTE_OFFSET, offset=offset)

    @property
    def is_none(self) -> bool:
        return self.kind == self.NONE

    @property
    def is_known(self) -> bool:
        return self.kind in (self.NONE, self.BYTE_OFFSET)

    def to_json(self) -> dict[str, Any]:
        if self.kind == self.NONE:
            return {"type": self.NONE}
        if self.kind == self.BYTE_OFFSET:
            return {"type": self.BYTE_OFFSET, "offset": self.offset}
        return dict(self.payload or {"type": self.kind})

    @classmethod
    def from_json(cls, data: Any) -> "Checkpoint":
        """
        Decode a persisted checkpoint.

        Raises:
            SerializationError: If the payload is not a tagged object or a
                byte offset is malformed
        """
        if data is None:
            return cls.none()
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise SerializationError(f"invalid checkpoint JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            raise SerializationError(f"invalid checkpoint: {data!r}")

        kind = data["type"]
        if kind == cls.NONE:
            return cls.none()
        if kind == cls.BYTE_OFFSET:
            offset = data.get("offset")
            if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
                raise SerializationError(f"invalid byte_offset checkpoint: {data!r}")
            return cls.byte_offset(offset)
        return cls(kind=kind, payload=dict(data))


@dataclass
class Project:
    """A working directory an assistant was run against."""

    id: str
    path: str
    name: str
    created_at: Optional[datetime] = None


@dataclass
class BackingModel:
    """The LLM behind a session, keyed as ``<provider>:<model>``."""

    id: str
    provider: str
    model_id: str
    display_name: Optional[str] = None

    @classmethod
    def from_id(cls, backing_model_id: str) -> "BackingModel":
        provider, sep, model_id = backing_model_id.partition(":")
        if not sep:
            provider, model_id = "unknown", backing_model_id
        return cls(id=backing_model_id, provider=provider, model_id=model_id)


@dataclass
class Session:
    """One run of an assistant, backed by one source file."""

    id: str
    assistant: Assistant
    started_at: datetime
    source_file_path: str
    backing_model_id: Optional[str] = None
    project_id: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_active(self, now: Optional[datetime] = None, inactivity_minutes: int = 15) -> bool:
        """Active unless completed or idle for longer than the window."""
        if self.status == SessionStatus.COMPLETED:
            return False
        last = self.last_activity_at or self.started_at
        now = now or datetime.now(timezone.utc)
        return now - _as_utc(last) <= timedelta(minutes=inactivity_minutes)


@dataclass
class Thread:
    """Conversation flow inside a session."""

    id: str
    session_id: str
    thread_type: ThreadType = ThreadType.MAIN
    parent_thread_id: Optional[str] = None
    spawned_by_message_id: Optional[int] = None
    agent_id: Optional[str] = None
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


_PREVIEW_ARG_KEYS = (
    "command",
    "file_path",
    "filePath",
    "path",
    "pattern",
    "query",
    "description",
)


@dataclass
class Message:
    """
    A single normalized event.

    ``raw_data`` holds the source record exactly as it appeared on disk;
    ``id`` is assigned by the store on insert.
    """

    session_id: str
    thread_id: str
    seq: int
    emitted_at: datetime
    observed_at: datetime
    author_role: AuthorRole
    message_type: MessageType
    source_file_path: str
    source_offset: int
    raw_data: str
    author_name: Optional[str] = None
    content: Optional[str] = None
    content_type: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Any] = None
    tool_result: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    duration_ms: Optional[int] = None
    source_line: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def raw_json(self) -> Any:
        """Decoded ``raw_data`` (None when it is not valid JSON)."""
        try:
            return json.loads(self.raw_data)
        except (TypeError, ValueError):
            return None

    def _display_text(self) -> str:
        if self.content:
            return _first_line(self.content)
        if self.tool_name:
            arg = _primary_tool_arg(self.tool_input)
            return f"{self.tool_name} {arg}".strip() if arg else self.tool_name
        if self.tool_result:
            return _first_line(self.tool_result)
        return ""

    def preview(self, max_len: int = 80) -> str:
        """
        Short single-line summary for list views.

        Counts grapheme clusters, not code points, so emoji and combining
        sequences are never split. Truncated text ends with ``...`` and the
        result never exceeds ``max_len`` graphemes.
        """
        return truncate_graphemes(self._display_text(), max_len)


def truncate_graphemes(text: str, max_len: int) -> str:
    if max_len <= 0:
        return ""
    clusters = regex.findall(r"\X", text)
    if len(clusters) <= max_len:
        return text
    if max_len <= 3:
        return "".join(clusters[:max_len])
    return "".join(clusters[: max_len - 3]) + "..."


def _first_line(text: str) -> str:
    return text.strip().split("\n", 1)[0].strip()


def _primary_tool_arg(tool_input: Any) -> str:
    if isinstance(tool_input, dict):
        for key in _PREVIEW_ARG_KEYS:
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                return _first_line(value)
    if tool_input in (None, {}, []):
        return ""
    return json.dumps(tool_input, separators=(",", ":"), sort_keys=True)


@dataclass
class Plan:
    """A plan document referenced by a session."""

    id: str
    session_id: str
    path: str
    title: Optional[str] = None
    content: Optional[str] = None
    content_hash: Optional[str] = None
    modified_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceFile:
    """A log file on disk together with its parse state."""

    path: Path
    assistant: Assistant
    file_type: FileType
    size_bytes: int
    modified_at: datetime
    created_at: Optional[datetime] = None
    last_parsed_at: Optional[datetime] = None
    checkpoint: Checkpoint = field(default_factory=Checkpoint.none)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to an aware UTC value (naive is taken as UTC)."""
    return _as_utc(value)
