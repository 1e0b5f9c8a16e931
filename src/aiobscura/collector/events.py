"""
Collector wire events.

Canonical messages are converted to the collector's event envelope
``{type, emitted_at, observed_at, event_hash, data}``. The hash lets the
server drop events it has already seen.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from aiobscura.models.canonical import Message, MessageType, Session

EVENT_HASH_BYTES = 16

_EVENT_TYPES = {
    MessageType.TOOL_CALL: "tool_call",
    MessageType.TOOL_RESULT: "tool_result",
    MessageType.ERROR: "error",
}


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_event_hash(event_type: str, emitted_at: datetime, data: Any) -> str:
    """
    Hex of the first 16 bytes of SHA-256 over ``type:emitted_at:data``.

    Example:
        >>> compute_event_hash("message", ts, {"content": "hi"})
        '4f1c...'  # 32 hex characters
    """
    hash_input = f"{event_type}:{emitted_at.isoformat()}:{canonical_json(data)}"
    digest = hashlib.sha256(hash_input.encode("utf-8")).digest()
    return digest[:EVENT_HASH_BYTES].hex()


class CollectorEvent(BaseModel):
    """One event in the collector envelope."""

    type: str = Field(..., description="message, tool_call, tool_result, error or session_start")
    emitted_at: datetime
    observed_at: datetime
    event_hash: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Message) -> "CollectorEvent":
        event_type = _EVENT_TYPES.get(message.message_type, "message")
        if event_type == "tool_call":
            data = _tool_call_data(message)
        elif event_type == "tool_result":
            data = _tool_result_data(message)
        elif event_type == "error":
            data = _error_data(message)
        else:
            data = _message_data(message)

        return cls(
            type=event_type,
            emitted_at=message.emitted_at,
            observed_at=message.observed_at,
            event_hash=compute_event_hash(event_type, message.emitted_at, data),
            data=data,
        )

    @classmethod
    def session_start(
        cls, session: Session, observed_at: Optional[datetime] = None
    ) -> "CollectorEvent":
        data: dict[str, Any] = {
            "agent_type": session.assistant.value,
            "working_directory": session.metadata.get("cwd"),
            "git_branch": session.metadata.get("git_branch"),
        }
        if session.backing_model_id:
            data["model"] = session.backing_model_id
        data = {k: v for k, v in data.items() if v is not None}
        return cls(
            type="session_start",
            emitted_at=session.started_at,
            observed_at=observed_at or session.started_at,
            event_hash=compute_event_hash("session_start", session.started_at, data),
            data=data,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class EventBatch(BaseModel):
    """Events for a single session, sent in one request."""

    session_id: str
    events: List[CollectorEvent] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "events": [event.to_wire() for event in self.events],
        }


def _message_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {
        "author_role": message.author_role.value,
        "message_type": message.message_type.value,
    }
    if message.content is not None:
        data["content"] = message.content
    if message.tokens_in is not None:
        data["token_usage"] = {
            "input_tokens": message.tokens_in,
            "output_tokens": message.tokens_out or 0,
        }
    raw = message.raw_json()
    if raw is not None:
        data["raw_data"] = raw
    return data


def _tool_call_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"tool_name": message.tool_name or "unknown"}
    tool_use_id = message.metadata.get("tool_use_id")
    if tool_use_id is not None:
        data["tool_use_id"] = tool_use_id
    if message.tool_input is not None:
        data["parameters"] = message.tool_input
    return data


def _tool_result_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {}
    tool_use_id = message.metadata.get("tool_use_id")
    if tool_use_id is not None:
        data["tool_use_id"] = tool_use_id
    is_error = message.metadata.get("is_error")
    success = not is_error if isinstance(is_error, bool) else True
    data["success"] = success
    if message.tool_result is not None:
        data["result"] = message.tool_result
    if not success and message.content is not None:
        data["error_message"] = message.content
    return data


def _error_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"error_type": message.metadata.get("error_type") or "unknown"}
    if message.content is not None:
        data["message"] = message.content
    return data
