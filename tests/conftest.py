"""
Pytest configuration and fixtures for aiobscura tests.

Provides an in-memory store and helpers for laying out assistant log
directories under ``tmp_path``.
"""

import json
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Optional

import pytest

from aiobscura.db.store import Store
from aiobscura.parsers.claude_code import ClaudeCodeParser
from aiobscura.parsers.codex import CodexParser

PROJECT_DIR = "-home-user-dev-proj"
SESSION_ID = "3f1c2a9e-0000-4000-8000-000000000001"


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path_factory, monkeypatch):
    """Keep config, logs and lock files out of the real home directory."""
    base = tmp_path_factory.mktemp("xdg")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / "data"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / "state"))
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(base / "run"))
    monkeypatch.delenv("AIOBSCURA_CONFIG", raising=False)


@pytest.fixture
def store() -> Generator[Store, None, None]:
    """Fresh in-memory store per test."""
    db = Store.open_in_memory()
    yield db
    db.close()


def to_jsonl(records: Iterable[Any]) -> str:
    """Serialize records one per line; strings are written verbatim."""
    lines = []
    for record in records:
        lines.append(record if isinstance(record, str) else json.dumps(record))
    return "".join(line + "\n" for line in lines)


@pytest.fixture
def write_jsonl() -> Callable[..., Path]:
    """Write records to a JSONL file, creating parent directories."""

    def _write(path: Path, records: Iterable[Any], append: bool = False) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a" if append else "w", encoding="utf-8") as f:
            f.write(to_jsonl(records))
        return path

    return _write


@pytest.fixture
def claude_root(tmp_path: Path) -> Path:
    """Empty ``~/.claude`` layout."""
    root = tmp_path / "claude"
    (root / "projects" / PROJECT_DIR).mkdir(parents=True)
    (root / "plans").mkdir()
    return root


@pytest.fixture
def codex_root(tmp_path: Path) -> Path:
    """Empty ``~/.codex`` layout."""
    root = tmp_path / "codex"
    (root / "sessions" / "2025" / "11" / "24").mkdir(parents=True)
    return root


@pytest.fixture
def claude_parser(claude_root: Path) -> ClaudeCodeParser:
    return ClaudeCodeParser(root=claude_root)


@pytest.fixture
def codex_parser(codex_root: Path) -> CodexParser:
    return CodexParser(root=codex_root)


def claude_user(
    text: Any,
    timestamp: str = "2025-01-13T10:00:00.000Z",
    session_id: str = SESSION_ID,
    uuid: Optional[str] = None,
    **extra: Any,
) -> dict[str, Any]:
    """A Claude Code ``user`` record."""
    record = {
        "type": "user",
        "sessionId": session_id,
        "timestamp": timestamp,
        "cwd": "/home/user/dev/proj",
        "message": {"role": "user", "content": text},
    }
    if uuid:
        record["uuid"] = uuid
    record.update(extra)
    return record


def claude_assistant(
    content: Any,
    timestamp: str = "2025-01-13T10:00:01.000Z",
    session_id: str = SESSION_ID,
    model: str = "claude-sonnet-4",
    usage: Optional[dict[str, int]] = None,
    uuid: Optional[str] = None,
    **extra: Any,
) -> dict[str, Any]:
    """A Claude Code ``assistant`` record."""
    message: dict[str, Any] = {"role": "assistant", "model": model, "content": content}
    if usage is not None:
        message["usage"] = usage
    record = {
        "type": "assistant",
        "sessionId": session_id,
        "timestamp": timestamp,
        "message": message,
    }
    if uuid:
        record["uuid"] = uuid
    record.update(extra)
    return record


def tool_use(tool_id: str, name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}


def tool_result(tool_id: str, content: Any, is_error: bool = False) -> dict[str, Any]:
    block = {"type": "tool_result", "tool_use_id": tool_id, "content": content}
    if is_error:
        block["is_error"] = True
    return block
