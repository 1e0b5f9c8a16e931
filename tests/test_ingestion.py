"""
Tests for the ingestion pipeline.

Exercises IngestCoordinator end to end against Claude Code log files
written under ``tmp_path`` and an in-memory store.
"""

from pathlib import Path

import pytest

from aiobscura.db.store import Store
from aiobscura.exceptions import ParseError
from aiobscura.models.canonical import Checkpoint, MessageType, ThreadType
from aiobscura.parsers.base import ParseContext, ParserError
from aiobscura.parsers.claude_code import ClaudeCodeParser
from aiobscura.pipeline.ingestion import IngestCoordinator, SkipReason
from conftest import (
    PROJECT_DIR,
    SESSION_ID,
    claude_assistant,
    claude_user,
    to_jsonl,
    tool_use,
)


@pytest.fixture
def session_file(claude_root: Path) -> Path:
    return claude_root / "projects" / PROJECT_DIR / f"{SESSION_ID}.jsonl"


@pytest.fixture
def coordinator(store: Store, claude_parser: ClaudeCodeParser) -> IngestCoordinator:
    return IngestCoordinator(store, parsers=[claude_parser])


class TestIncrementalAppend:
    """Tests for resuming files as they grow."""

    def test_append_partial_and_complete_records(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path
    ):
        session_file.write_bytes(b"")

        empty = coordinator.sync_file(session_file)
        assert empty.new_messages == 0
        assert empty.skip_reason == SkipReason.EMPTY_FILE
        assert store.get_checkpoint(session_file).is_none

        first_record = to_jsonl([claude_user("hello")]).encode()
        with session_file.open("ab") as f:
            f.write(first_record)

        first = coordinator.sync_file(session_file)
        assert first.new_messages == 1
        assert first.is_new_session
        assert store.get_checkpoint(session_file) == Checkpoint.byte_offset(len(first_record))

        second_record = to_jsonl([claude_assistant("hi")]).encode()
        with session_file.open("ab") as f:
            f.write(second_record)
            f.write(b'{"type":"user","sessionId":')

        second = coordinator.sync_file(session_file)
        assert second.new_messages == 1
        assert not second.is_new_session
        assert store.get_checkpoint(session_file) == Checkpoint.byte_offset(
            len(first_record) + len(second_record)
        )
        assert store.count_session_messages(SESSION_ID) == 2

    def test_completed_partial_line_is_picked_up(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path
    ):
        line = to_jsonl([claude_user("hello")]).encode()
        session_file.write_bytes(line[:10])

        assert coordinator.sync_file(session_file).new_messages == 0

        with session_file.open("ab") as f:
            f.write(line[10:])

        assert coordinator.sync_file(session_file).new_messages == 1
        assert store.get_session_messages(SESSION_ID)[0].source_offset == 0

    def test_seq_continues_across_syncs(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one"), claude_assistant("two")])
        coordinator.sync_file(session_file)

        write_jsonl(
            session_file,
            [claude_user("three", timestamp="2025-01-13T10:00:05.000Z")],
            append=True,
        )
        coordinator.sync_file(session_file)

        assert [m.seq for m in store.get_session_messages(SESSION_ID)] == [1, 2, 3]

    def test_truncated_file_is_reparsed(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one"), claude_assistant("two " + "x" * 400)])
        coordinator.sync_file(session_file)

        write_jsonl(
            session_file,
            [
                claude_user("one"),
                "not json",
                claude_user("three", timestamp="2025-01-13T10:00:05.000Z"),
            ],
        )
        result = coordinator.sync_file(session_file)

        assert result.new_messages == 1
        assert sum("File truncated" in w for w in result.warnings) == 1
        assert [m.seq for m in store.get_session_messages(SESSION_ID)] == [1, 2, 3]
        assert store.get_checkpoint(session_file) == Checkpoint.byte_offset(
            session_file.stat().st_size
        )

    def test_truncation_to_stored_prefix_adds_nothing(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path, write_jsonl
    ):
        """Test that re-parsing records already stored keeps one row per offset."""
        write_jsonl(session_file, [claude_user("one"), claude_assistant("two")])
        coordinator.sync_file(session_file)

        write_jsonl(session_file, [claude_user("one")])
        result = coordinator.sync_file(session_file)

        assert result.new_messages == 0
        assert any("File truncated" in w for w in result.warnings)
        rows = [(m.source_offset, m.seq) for m in store.get_session_messages(SESSION_ID)]
        assert len(rows) == 2
        assert len({offset for offset, _ in rows}) == 2
        assert [seq for _, seq in rows] == [1, 2]


class TestMalformedLines:
    """Tests for malformed line tolerance."""

    def test_bad_line_is_skipped_with_warning(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one"), "not json", claude_assistant("three")])

        result = coordinator.sync_file(session_file)

        assert result.new_messages == 2
        assert len(result.warnings) == 1
        assert "Line 2" in result.warnings[0]
        assert store.get_checkpoint(session_file) == Checkpoint.byte_offset(
            session_file.stat().st_size
        )


class TestIdempotence:
    """Tests for repeated syncs over unchanged input."""

    def test_second_sync_inserts_nothing(
        self, coordinator: IngestCoordinator, store: Store, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one"), claude_assistant("two")])

        first = coordinator.sync_all()
        second = coordinator.sync_all()

        assert first.messages_inserted == 2
        assert first.sessions_created == 1
        assert second.messages_inserted == 0
        assert second.files_skipped == 1
        assert second.file_results[0].skip_reason == SkipReason.UNCHANGED
        assert store.count_messages() == 2

    def test_replay_from_zero_inserts_nothing(
        self, store: Store, claude_parser: ClaudeCodeParser, session_file: Path, write_jsonl
    ):
        """Test that re-reading already stored bytes does not duplicate rows."""
        write_jsonl(session_file, [claude_user("one"), claude_assistant("two")])
        IngestCoordinator(store, parsers=[claude_parser]).sync_all()

        replayed = claude_parser.parse(
            ParseContext(
                path=session_file,
                checkpoint=Checkpoint.none(),
                file_size=session_file.stat().st_size,
            )
        )
        with store.begin() as txn:
            inserted = txn.insert_messages(replayed.messages)

        assert inserted == []
        assert store.count_messages() == 2


class TestAgentLinking:
    """Tests for linking agent threads to their spawning tool call."""

    def _write_parent(self, session_file: Path, write_jsonl) -> None:
        write_jsonl(
            session_file,
            [
                claude_user("delegate it"),
                claude_assistant(
                    [tool_use("toolu_task", "Task", {"description": "explore", "agent_id": "abc"})]
                ),
            ],
        )

    def _write_agent(self, claude_root: Path, write_jsonl) -> Path:
        agent_file = claude_root / "projects" / PROJECT_DIR / "agent-abc.jsonl"
        write_jsonl(
            agent_file,
            [
                claude_user("explore", agentId="abc", isSidechain=True),
                claude_assistant("found it", agentId="abc", isSidechain=True),
            ],
        )
        return agent_file

    def _spawning_call_id(self, store: Store) -> int:
        calls = [
            m
            for m in store.get_session_messages(SESSION_ID)
            if m.message_type == MessageType.TOOL_CALL and m.tool_name == "Task"
        ]
        assert len(calls) == 1
        return calls[0].id

    def test_parent_first(
        self,
        coordinator: IngestCoordinator,
        store: Store,
        claude_root: Path,
        session_file: Path,
        write_jsonl,
    ):
        self._write_parent(session_file, write_jsonl)
        agent_file = self._write_agent(claude_root, write_jsonl)

        coordinator.sync_file(session_file)
        coordinator.sync_file(agent_file)

        thread = store.get_thread(f"{SESSION_ID}-agent-abc")
        assert thread.thread_type == ThreadType.AGENT
        assert thread.parent_thread_id == SESSION_ID
        assert thread.spawned_by_message_id == self._spawning_call_id(store)

    def test_child_first(
        self,
        coordinator: IngestCoordinator,
        store: Store,
        claude_root: Path,
        session_file: Path,
        write_jsonl,
    ):
        self._write_parent(session_file, write_jsonl)
        agent_file = self._write_agent(claude_root, write_jsonl)

        coordinator.sync_file(agent_file)
        assert store.get_thread(f"{SESSION_ID}-agent-abc").spawned_by_message_id is None

        coordinator.sync_file(session_file)

        thread = store.get_thread(f"{SESSION_ID}-agent-abc")
        assert thread.spawned_by_message_id == self._spawning_call_id(store)

    def test_link_survives_new_coordinator(
        self, store: Store, claude_parser, claude_root: Path, session_file: Path, write_jsonl
    ):
        """Test that spawns persisted by one run link threads in a later run."""
        self._write_parent(session_file, write_jsonl)
        IngestCoordinator(store, parsers=[claude_parser]).sync_file(session_file)

        agent_file = self._write_agent(claude_root, write_jsonl)
        IngestCoordinator(store, parsers=[claude_parser]).sync_file(agent_file)

        thread = store.get_thread(f"{SESSION_ID}-agent-abc")
        assert thread.spawned_by_message_id == self._spawning_call_id(store)


class _BrokenParser(ClaudeCodeParser):
    def parse(self, context: ParseContext):
        raise ParserError("claude_code", f"failed to read {context.path}")


class TestSyncAll:
    """Tests for whole-run behavior."""

    def test_progress_callback(
        self, coordinator: IngestCoordinator, claude_root: Path, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one")])
        other = claude_root / "projects" / PROJECT_DIR / "other.jsonl"
        write_jsonl(other, [claude_user("two", session_id="other")])
        calls = []

        coordinator.sync_all_with_progress(lambda i, total, path: calls.append((i, total, path)))

        assert [(i, total) for i, total, _ in calls] == [(1, 2), (2, 2)]
        assert {path for _, _, path in calls} == {session_file, other}

    def test_messages_committed_hook(self, store: Store, claude_parser, session_file, write_jsonl):
        write_jsonl(session_file, [claude_user("one"), claude_assistant("two")])
        batches = []
        coordinator = IngestCoordinator(
            store, parsers=[claude_parser], on_messages_committed=batches.append
        )

        coordinator.sync_all()
        coordinator.sync_all()

        assert len(batches) == 1
        assert [m.content for m in batches[0]] == ["one", "two"]
        assert all(m.id is not None for m in batches[0])

    def test_failing_hook_does_not_undo_commit(
        self, store: Store, claude_parser, session_file, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one")])

        def explode(messages):
            raise RuntimeError("collector down")

        result = IngestCoordinator(
            store, parsers=[claude_parser], on_messages_committed=explode
        ).sync_all()

        assert result.messages_inserted == 1
        assert result.errors == []
        assert store.count_messages() == 1

    def test_per_file_errors_do_not_stop_the_run(
        self, store: Store, claude_root: Path, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one")])

        result = IngestCoordinator(store, parsers=[_BrokenParser(root=claude_root)]).sync_all()

        assert result.messages_inserted == 0
        assert result.errors == [(session_file, f"claude_code: failed to read {session_file}")]
        assert store.get_source_file(session_file) is None

    def test_uninstalled_assistant_is_ignored(self, store: Store, tmp_path: Path):
        coordinator = IngestCoordinator(
            store, parsers=[ClaudeCodeParser(root=tmp_path / "missing")]
        )

        assert coordinator.installed_assistants() == []
        assert coordinator.sync_all().files_processed == 0

    def test_sync_file_without_parser(self, coordinator: IngestCoordinator, tmp_path: Path):
        path = tmp_path / "elsewhere.jsonl"
        path.write_text("{}\n")

        with pytest.raises(ParseError, match="No parser found"):
            coordinator.sync_file(path)

    def test_sync_file_routes_through_registry(
        self, store: Store, claude_parser, codex_parser, session_file: Path, write_jsonl
    ):
        write_jsonl(session_file, [claude_user("one")])
        coordinator = IngestCoordinator(store, parsers=[codex_parser, claude_parser])

        result = coordinator.sync_file(session_file)

        assert coordinator.registry.parser_for_file(session_file) is claude_parser
        assert coordinator.registry.parsers == [codex_parser, claude_parser]
        assert result.new_messages == 1
