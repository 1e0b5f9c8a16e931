"""
Claude Code session log parser.

Claude Code writes one JSONL file per session under
``~/.claude/projects/<encoded-cwd>/<session-id>.jsonl``. Sub-agents get
their own ``agent-<agent-id>.jsonl`` file next to the session file; their
records carry the parent ``sessionId``. Plan documents live in
``~/.claude/plans/<slug>.md`` and are referenced by the ``slug`` field.
"""

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
    Plan,
    Project,
    Session,
    SessionStatus,
    Thread,
    ThreadType,
    content_type_image,
    content_type_unknown,
)
from aiobscura.parsers.base import AssistantParser, ParseContext, SourcePattern
from aiobscura.parsers.incremental import iter_complete_lines, start_offset_for
from aiobscura.parsers.types import ParseResult
from aiobscura.parsers.utils import (
    decode_json_line,
    dir_name,
    stringify_tool_result,
    try_parse_timestamp,
)
from aiobscura.utils.hashing import (
    calculate_content_hash,
    canonical_path,
    project_id_for_path,
)

logger = logging.getLogger(__name__)

AGENT_FILE_PREFIX = "agent-"
ANTHROPIC_PROVIDER = "anthropic"

# Record types that never become messages
_SKIPPED_RECORD_TYPES = {"file-history-snapshot"}

# Models Claude Code reports for locally synthesized messages
_SYNTHETIC_MODELS = {"<synthetic>"}


def is_agent_file(path: Path) -> bool:
    """True for ``agent-<id>.jsonl`` sub-agent transcripts."""
    return path.stem.startswith(AGENT_FILE_PREFIX)


def extract_agent_id(path: Path) -> Optional[str]:
    """``agent-a1b2.jsonl`` -> ``a1b2``."""
    if not is_agent_file(path):
        return None
    agent_id = path.stem[len(AGENT_FILE_PREFIX):]
    return agent_id or None


def agent_thread_id(session_id: str, agent_id: str) -> str:
    return f"{session_id}-agent-{agent_id}"


def parse_plan_file(path: Path, slug: Optional[str] = None) -> Optional[Plan]:
    """
    Read a plan document.

    The title is the first ``# `` heading; ``content_hash`` is the SHA-256
    of the file bytes. The plan is returned without a session id.

    Args:
        path: Markdown file
        slug: Plan id (defaults to the file stem)

    Returns:
        Plan, or None if the file does not exist or cannot be read
    """
    try:
        data = path.read_bytes()
        st = path.stat()
    except OSError as e:
        logger.debug(f"Plan file unavailable {path}: {e}")
        return None

    content = data.decode("utf-8", errors="replace")
    title = None
    for line in content.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            break

    return Plan(
        id=slug or path.stem,
        session_id="",
        path=str(path),
        title=title,
        content=content,
        content_hash=calculate_content_hash(data),
        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
    )


@dataclass
class _ParseState:
    """Per-invocation state threaded through record handling."""

    path: Path
    is_agent: bool
    observed_at: datetime
    seq: int
    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    thread_id: Optional[str] = None
    model: Optional[str] = None
    cwd: Optional[str] = None
    git_branch: Optional[str] = None
    version: Optional[str] = None
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    thread_last_activity: Optional[datetime] = None
    slugs: List[str] = field(default_factory=list)
    uuid_to_seq: dict[str, int] = field(default_factory=dict)
    tool_use_to_seq: dict[str, int] = field(default_factory=dict)
    tool_calls: dict[int, Message] = field(default_factory=dict)

    @property
    def user_role(self) -> AuthorRole:
        # In agent files the "user" is the parent assistant
        return AuthorRole.CALLER if self.is_agent else AuthorRole.HUMAN

    @property
    def assistant_role(self) -> AuthorRole:
        return AuthorRole.AGENT if self.is_agent else AuthorRole.ASSISTANT


class ClaudeCodeParser(AssistantParser):
    """
    Parser for Claude Code JSONL session logs.

    Record handling:
    - ``assistant``: text blocks -> Response, ``tool_use`` -> ToolCall,
      images -> Context with an image content type
    - ``user``: text -> Prompt, ``tool_result`` -> ToolResult (or Error
      when ``is_error``), images -> Prompt
    - ``summary``: Summary
    - anything else: System Context keeping the raw record
    - ``file-history-snapshot`` records are skipped, as are ``isSidechain``
      records in main session files (they are replayed in agent files)
    """

    def __init__(self, root: Optional[Path] = None, plans_dir: Optional[Path] = None):
        if root is None:
            root = (
                Path(settings.claude_code_path).expanduser()
                if settings.claude_code_path
                else Path.home() / ".claude"
            )
        self._root = root
        self._plans_dir = plans_dir or root / "plans"

    def assistant(self) -> Assistant:
        return Assistant.CLAUDE_CODE

    def root_path(self) -> Optional[Path]:
        return self._root

    def source_patterns(self) -> List[SourcePattern]:
        return [
            SourcePattern(
                pattern="projects/*/*.jsonl",
                file_type=FileType.SESSION_LOG,
                description="Claude Code session logs",
            )
        ]

    def extract_project_path(self, file_path: Path) -> Optional[Path]:
        """
        Decode the project directory from the parent folder name.

        ``-home-user-dev-proj`` -> ``/home/user/dev/proj``. The encoding is
        lossy: literal dashes in the original path come back as slashes.
        """
        folder = file_path.parent.name
        if not folder.startswith("-"):
            return None
        return Path(folder.replace("-", "/"))

    def extract_session_id(self, file_path: Path) -> Optional[str]:
        return file_path.stem or None

    def parse(self, context: ParseContext) -> ParseResult:
        result = ParseResult()
        start = start_offset_for(
            context.checkpoint, context.file_size, result, self.assistant().value
        )
        if start >= context.file_size:
            result.new_checkpoint = Checkpoint.byte_offset(context.file_size)
            return result

        agent = is_agent_file(context.path)
        state = _ParseState(
            path=context.path,
            is_agent=agent,
            observed_at=datetime.now(timezone.utc),
            seq=context.last_seq,
            agent_id=extract_agent_id(context.path),
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

        record_type = record.get("type")
        if record_type in _SKIPPED_RECORD_TYPES:
            return
        if not state.is_agent and record.get("isSidechain") is True:
            return

        message = record.get("message")
        if message is not None and not isinstance(message, dict):
            result.warnings.append(
                f"{state.path}: Line {line_number} (offset {offset}): "
                f"deserialization error: message is not an object"
            )
            return

        self._observe_identity(state, result, record)

        emitted_at = try_parse_timestamp(record.get("timestamp"))
        if emitted_at is None:
            emitted_at = state.last_timestamp or state.observed_at
        if state.first_timestamp is None:
            state.first_timestamp = emitted_at
        state.last_timestamp = emitted_at

        if message and state.model is None:
            model = message.get("model")
            if isinstance(model, str) and model and model not in _SYNTHETIC_MODELS:
                state.model = model

        raw = data.decode("utf-8")
        seq_before = state.seq
        messages = self._record_to_messages(
            state, record, message or {}, emitted_at, raw, offset, line_number
        )

        uuid = record.get("uuid")
        if isinstance(uuid, str) and state.seq > seq_before:
            state.uuid_to_seq[uuid] = seq_before + 1

        if not state.is_agent:
            self._detect_agent_spawn(state, result, record, message or {})

        if any(m.message_type != MessageType.CONTEXT for m in messages):
            state.thread_last_activity = emitted_at

        result.messages.extend(messages)

    def _observe_identity(
        self, state: _ParseState, result: ParseResult, record: dict[str, Any]
    ) -> None:
        if state.session_id is None:
            session_id = record.get("sessionId")
            state.session_id = (
                session_id
                if isinstance(session_id, str) and session_id
                else self.extract_session_id(state.path)
            )
        if state.cwd is None and isinstance(record.get("cwd"), str):
            state.cwd = record["cwd"]
        if state.git_branch is None and isinstance(record.get("gitBranch"), str):
            state.git_branch = record["gitBranch"]
        if state.version is None and isinstance(record.get("version"), str):
            state.version = record["version"]
        if state.is_agent and isinstance(record.get("agentId"), str) and record["agentId"]:
            state.agent_id = record["agentId"]

        slug = record.get("slug")
        if isinstance(slug, str) and slug and slug not in state.slugs:
            state.slugs.append(slug)

        if state.thread_id is None:
            if state.is_agent:
                agent_id = state.agent_id or self.extract_session_id(state.path)
                state.agent_id = agent_id
                state.thread_id = agent_thread_id(state.session_id, agent_id)
            else:
                state.thread_id = state.session_id

    def _new_message(
        self,
        state: _ParseState,
        emitted_at: datetime,
        raw: str,
        offset: int,
        line_number: int,
        author_role: AuthorRole,
        message_type: MessageType,
        **fields: Any,
    ) -> Message:
        state.seq += 1
        return Message(
            session_id=state.session_id,
            thread_id=state.thread_id,
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

    def _record_to_messages(
        self,
        state: _ParseState,
        record: dict[str, Any],
        message: dict[str, Any],
        emitted_at: datetime,
        raw: str,
        offset: int,
        line_number: int,
    ) -> List[Message]:
        record_type = record.get("type") if isinstance(record.get("type"), str) else "unknown"

        def emit(author_role: AuthorRole, message_type: MessageType, **fields) -> Message:
            return self._new_message(
                state, emitted_at, raw, offset, line_number, author_role, message_type, **fields
            )

        if record_type == "assistant":
            return self._assistant_messages(state, message, emit)
        if record_type == "user":
            return self._user_messages(state, message, emit)
        if record_type == "summary":
            summary = record.get("summary")
            return [
                emit(
                    AuthorRole.SYSTEM,
                    MessageType.SUMMARY,
                    author_name=record_type,
                    content=summary if isinstance(summary, str) else None,
                    content_type=CONTENT_TYPE_TEXT,
                    metadata={"leaf_uuid": record.get("leafUuid")}
                    if record.get("leafUuid")
                    else {},
                )
            ]

        content = record.get("content")
        return [
            emit(
                AuthorRole.SYSTEM,
                MessageType.CONTEXT,
                author_name=record_type,
                content=content if isinstance(content, str) and content else None,
                content_type=content_type_unknown(record_type),
            )
        ]

    def _assistant_messages(self, state: _ParseState, message: dict[str, Any], emit) -> List[Message]:
        usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
        tokens_in = _int_or_none(usage.get("input_tokens"))
        tokens_out = _int_or_none(usage.get("output_tokens"))
        role = state.assistant_role
        content = message.get("content")
        messages: List[Message] = []

        if isinstance(content, str):
            if content:
                messages.append(
                    emit(
                        role,
                        MessageType.RESPONSE,
                        content=content,
                        content_type=CONTENT_TYPE_TEXT,
                        tokens_in=tokens_in,
                        tokens_out=tokens_out,
                    )
                )
            return messages
        if not isinstance(content, list):
            return messages

        for block in content:
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    messages.append(
                        emit(
                            role,
                            MessageType.RESPONSE,
                            content=text,
                            content_type=CONTENT_TYPE_TEXT,
                            tokens_in=tokens_in,
                            tokens_out=tokens_out,
                        )
                    )
            elif block_type == "tool_use":
                tool_input = block.get("input")
                metadata = {"tool_use_id": block.get("id")}
                declared_agent = _declared_agent_id(tool_input)
                if declared_agent:
                    metadata["agent_id"] = declared_agent
                call = emit(
                    role,
                    MessageType.TOOL_CALL,
                    tool_name=block.get("name"),
                    tool_input=tool_input,
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                    metadata=metadata,
                )
                if isinstance(block.get("id"), str):
                    state.tool_use_to_seq[block["id"]] = call.seq
                state.tool_calls[call.seq] = call
                messages.append(call)
            elif block_type == "image":
                messages.append(
                    emit(
                        role,
                        MessageType.CONTEXT,
                        content_type=content_type_image(_media_type(block)),
                        tokens_in=tokens_in,
                        tokens_out=tokens_out,
                    )
                )
            elif block_type == "tool_result":
                messages.append(
                    emit(
                        role,
                        MessageType.CONTEXT,
                        content="[unexpected tool_result in assistant message]",
                        content_type=content_type_unknown("tool_result"),
                        tokens_in=tokens_in,
                        tokens_out=tokens_out,
                    )
                )
            elif block_type == "thinking":
                continue
            else:
                messages.append(
                    emit(
                        role,
                        MessageType.CONTEXT,
                        content="[unknown content block]",
                        content_type=content_type_unknown("unknown"),
                        tokens_in=tokens_in,
                        tokens_out=tokens_out,
                    )
                )
        return messages

    def _user_messages(self, state: _ParseState, message: dict[str, Any], emit) -> List[Message]:
        role = state.user_role
        content = message.get("content")
        messages: List[Message] = []

        if isinstance(content, str):
            if content:
                messages.append(
                    emit(
                        role,
                        MessageType.PROMPT,
                        content=content,
                        content_type=CONTENT_TYPE_TEXT,
                    )
                )
            return messages
        if not isinstance(content, list):
            return messages

        for block in content:
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    messages.append(
                        emit(
                            role,
                            MessageType.PROMPT,
                            content=text,
                            content_type=CONTENT_TYPE_TEXT,
                        )
                    )
            elif block_type == "tool_result":
                result_text = stringify_tool_result(block.get("content"))
                is_error = block.get("is_error") is True
                metadata = {"tool_use_id": block.get("tool_use_id"), "is_error": is_error}
                if is_error:
                    metadata["error_type"] = "tool_error"
                    messages.append(
                        emit(
                            AuthorRole.TOOL,
                            MessageType.ERROR,
                            content=result_text,
                            content_type=CONTENT_TYPE_TEXT,
                            tool_result=result_text,
                            metadata=metadata,
                        )
                    )
                else:
                    messages.append(
                        emit(
                            AuthorRole.TOOL,
                            MessageType.TOOL_RESULT,
                            tool_result=result_text,
                            metadata=metadata,
                        )
                    )
            elif block_type == "image":
                messages.append(
                    emit(
                        role,
                        MessageType.PROMPT,
                        content_type=content_type_image(_media_type(block)),
                    )
                )
            elif block_type == "tool_use":
                messages.append(
                    emit(
                        role,
                        MessageType.CONTEXT,
                        content="[unexpected tool_use in user message]",
                        content_type=content_type_unknown("tool_use"),
                    )
                )
            else:
                messages.append(
                    emit(
                        role,
                        MessageType.CONTEXT,
                        content="[unknown content block]",
                        content_type=content_type_unknown("unknown"),
                    )
                )
        return messages

    def _detect_agent_spawn(
        self,
        state: _ParseState,
        result: ParseResult,
        record: dict[str, Any],
        message: dict[str, Any],
    ) -> None:
        """
        Map a sub-agent id to the ToolCall that spawned it.

        The ``toolUseResult.agentId`` of a tool result names the agent; the
        ToolCall is found through the result's ``tool_use_id`` or, failing
        that, the record's ``parentUuid``.
        """
        tool_use_result = record.get("toolUseResult")
        if not isinstance(tool_use_result, dict):
            return
        agent_id = tool_use_result.get("agentId")
        if not isinstance(agent_id, str) or not agent_id:
            return

        tool_use_id = None
        content = message.get("content")
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    tool_use_id = block.get("tool_use_id")
                    break

        spawning_seq = state.tool_use_to_seq.get(tool_use_id) if tool_use_id else None
        if spawning_seq is None:
            parent_uuid = record.get("parentUuid")
            if isinstance(parent_uuid, str):
                spawning_seq = state.uuid_to_seq.get(parent_uuid)

        if spawning_seq is not None:
            result.agent_spawn_map[agent_id] = spawning_seq
            call = state.tool_calls.get(spawning_seq)
            if call is not None:
                call.metadata["agent_id"] = agent_id
        elif isinstance(tool_use_id, str):
            # ToolCall was committed by an earlier parse
            result.agent_spawn_tool_use_ids[agent_id] = tool_use_id

    def _finish(self, state: _ParseState, result: ParseResult) -> None:
        for seq, call in state.tool_calls.items():
            declared = call.metadata.get("agent_id")
            if declared and declared not in result.agent_spawn_map:
                result.agent_spawn_map[declared] = seq

        if state.session_id is None:
            return

        if state.is_agent:
            thread = Thread(
                id=state.thread_id,
                session_id=state.session_id,
                thread_type=ThreadType.AGENT,
                parent_thread_id=state.session_id,
                agent_id=state.agent_id,
                started_at=state.first_timestamp,
                last_activity_at=state.thread_last_activity,
            )
        else:
            thread = Thread(
                id=state.thread_id,
                session_id=state.session_id,
                thread_type=ThreadType.MAIN,
                started_at=state.first_timestamp,
                last_activity_at=state.thread_last_activity,
            )
        result.threads.append(thread)

        encoded_project = self.extract_project_path(state.path)
        project_path = state.cwd or (str(encoded_project) if encoded_project else None)
        project_id = None
        if project_path:
            canonical = canonical_path(project_path)
            project_id = project_id_for_path(canonical)
            result.project = Project(
                id=project_id,
                path=canonical,
                name=dir_name(canonical),
                created_at=state.first_timestamp,
            )

        metadata: dict[str, Any] = {"slugs": list(state.slugs)}
        if encoded_project:
            metadata["project_path"] = str(encoded_project)
        for key, value in (
            ("cwd", state.cwd),
            ("git_branch", state.git_branch),
            ("version", state.version),
        ):
            if value:
                metadata[key] = value

        result.session = Session(
            id=state.session_id,
            assistant=Assistant.CLAUDE_CODE,
            started_at=state.first_timestamp,
            source_file_path=str(state.path),
            backing_model_id=(
                f"{ANTHROPIC_PROVIDER}:{state.model}" if state.model else None
            ),
            project_id=project_id,
            last_activity_at=state.last_timestamp,
            status=SessionStatus.ACTIVE,
            metadata=metadata,
        )

        for slug in state.slugs:
            plan = parse_plan_file(self._plans_dir / f"{slug}.md", slug)
            if plan is not None:
                plan.session_id = state.session_id
                result.plans.append(plan)


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _media_type(block: dict[str, Any]) -> str:
    source = block.get("source")
    if isinstance(source, dict) and isinstance(source.get("media_type"), str):
        return source["media_type"]
    return "unknown"


def _declared_agent_id(tool_input: Any) -> Optional[str]:
    if not isinstance(tool_input, dict):
        return None
    for key in ("agent_id", "agentId"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None
