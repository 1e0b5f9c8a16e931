"""
Tests for the embedded store.

Covers session upserts, idempotent message inserts, checkpoints, queries
and plugin output persistence.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from aiobscura.db.store import MetricRecord, SessionFilter, Store
from aiobscura.exceptions import SessionNotFoundError, StoreError
from aiobscura.models.canonical import (
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
    SourceFile,
    Thread,
    ThreadType,
)
from aiobscura.utils.hashing import project_id_for_path

TS = datetime(2025, 1, 13, 10, 0, tzinfo=timezone.utc)
SOURCE = "/logs/s1.jsonl"


def _session(session_id: str = "s1", assistant: Assistant = Assistant.CLAUDE_CODE, **fields):
    values = dict(
        id=session_id,
        assistant=assistant,
        started_at=TS,
        source_file_path=SOURCE,
        last_activity_at=TS,
    )
    values.update(fields)
    return Session(**values)


def _message(seq: int, offset: int, **fields) -> Message:
    values = dict(
        session_id="s1",
        thread_id="s1",
        seq=seq,
        emitted_at=TS + timedelta(seconds=seq),
        observed_at=TS,
        author_role=AuthorRole.ASSISTANT,
        message_type=MessageType.RESPONSE,
        source_file_path=SOURCE,
        source_offset=offset,
        raw_data=f'{{"n": {seq}}}',
        content=f"message {seq}",
    )
    values.update(fields)
    return Message(**values)


def _seed(store: Store, messages=()) -> None:
    with store.begin() as txn:
        txn.upsert_session(_session())
        txn.insert_thread_if_absent(Thread(id="s1", session_id="s1", started_at=TS))
        txn.insert_messages(list(messages))


class TestSessions:
    """Tests for session upserts and lookups."""

    def test_upsert_reports_creation(self, store: Store):
        with store.begin() as txn:
            assert txn.upsert_session(_session()) is True
            assert txn.upsert_session(_session()) is False

    def test_merge_keeps_earliest_start_and_latest_activity(self, store: Store):
        with store.begin() as txn:
            txn.upsert_session(_session(last_activity_at=TS))
        with store.begin() as txn:
            txn.upsert_session(
                _session(
                    started_at=TS + timedelta(hours=1),
                    last_activity_at=TS + timedelta(hours=2),
                    backing_model_id="anthropic:claude-sonnet-4",
                    metadata={"git_branch": "main"},
                )
            )

        session = store.require_session("s1")
        assert session.started_at == TS
        assert session.last_activity_at == TS + timedelta(hours=2)
        assert session.backing_model_id == "anthropic:claude-sonnet-4"
        assert session.metadata["git_branch"] == "main"

    def test_cross_assistant_collision_fails(self, store: Store):
        """Test that the same id under another assistant is rejected."""
        with store.begin() as txn:
            txn.upsert_session(_session(assistant=Assistant.CLAUDE_CODE))

        with pytest.raises(StoreError, match="collision"):
            with store.begin() as txn:
                txn.upsert_session(_session(assistant=Assistant.CODEX))

        assert store.require_session("s1").assistant == Assistant.CLAUDE_CODE

    def test_require_missing_session(self, store: Store):
        with pytest.raises(SessionNotFoundError):
            store.require_session("missing")

    def test_list_sessions_filters(self, store: Store):
        now = datetime.now(timezone.utc)
        with store.begin() as txn:
            txn.upsert_session(_session("old", started_at=TS, last_activity_at=TS))
            txn.upsert_session(
                _session(
                    "new",
                    assistant=Assistant.CODEX,
                    started_at=now,
                    last_activity_at=now,
                )
            )

        assert [s.id for s in store.list_sessions()] == ["new", "old"]
        assert [s.id for s in store.list_sessions(SessionFilter(assistant=Assistant.CODEX))] == [
            "new"
        ]
        active = store.list_sessions(SessionFilter(status=SessionStatus.ACTIVE))
        assert [s.id for s in active] == ["new"]
        assert [s.id for s in store.list_sessions(SessionFilter(limit=1))] == ["new"]

        counts = store.count_sessions_by_status()
        assert counts[SessionStatus.ACTIVE] == 1
        assert counts[SessionStatus.COMPLETED] == 1


class TestMessages:
    """Tests for message inserts."""

    def test_insert_assigns_ids(self, store: Store):
        messages = [_message(1, 0), _message(2, 10)]

        _seed(store, messages)

        assert all(m.id is not None for m in messages)
        assert messages[0].id < messages[1].id

    def test_reinsert_is_idempotent(self, store: Store):
        """Test that replaying the same records inserts nothing."""
        first = [_message(1, 0), _message(2, 10)]
        _seed(store, first)

        replay = [_message(1, 0), _message(2, 10)]
        with store.begin() as txn:
            inserted = txn.insert_messages(replay)

        assert inserted == []
        assert [m.id for m in replay] == [m.id for m in first]
        assert store.count_session_messages("s1") == 2

    def test_messages_from_one_record_are_kept_apart(self, store: Store):
        """Test that several messages emitted from one record are all stored once."""
        _seed(store, [_message(1, 0), _message(2, 0, message_type=MessageType.TOOL_CALL)])

        with store.begin() as txn:
            inserted = txn.insert_messages(
                [_message(3, 0), _message(4, 0, message_type=MessageType.TOOL_CALL)]
            )

        assert inserted == []
        assert store.count_session_messages("s1") == 2

    def test_replayed_records_do_not_use_up_seqs(self, store: Store):
        _seed(store, [_message(1, 0), _message(2, 10)])

        replay, new = _message(3, 0), _message(4, 20)
        with store.begin() as txn:
            inserted = txn.insert_messages([replay, new])

        assert inserted == [new.id]
        assert replay.seq == 1
        assert new.seq == 3
        assert [m.seq for m in store.get_session_messages("s1")] == [1, 2, 3]

    def test_raw_data_is_verbatim(self, store: Store):
        raw = '{"b":1,  "a":2}'
        _seed(store, [_message(1, 0, raw_data=raw)])

        assert store.get_session_messages("s1")[0].raw_data == raw

    def test_messages_ordered_by_emitted_at(self, store: Store):
        _seed(
            store,
            [
                _message(1, 0, emitted_at=TS + timedelta(seconds=5)),
                _message(2, 10, emitted_at=TS + timedelta(seconds=1)),
            ],
        )

        assert [m.seq for m in store.get_session_messages("s1")] == [2, 1]
        assert store.get_session_last_message_ts("s1") == TS + timedelta(seconds=5)

    def test_max_seq_and_tool_call_lookup(self, store: Store):
        call = _message(
            3,
            20,
            message_type=MessageType.TOOL_CALL,
            tool_name="Task",
            metadata={"tool_use_id": "toolu_1"},
        )
        _seed(store, [_message(1, 0), call])

        with store.begin() as txn:
            assert txn.max_seq_for_source(SOURCE) == 3
            assert txn.max_seq_for_source("/other.jsonl") == 0
            assert txn.find_tool_call("s1", "toolu_1") == (call.id, 3)
            assert txn.find_tool_call("s1", "toolu_2") is None
            assert txn.get_message_id_by_seq("s1", 3) == call.id


class TestThreads:
    """Tests for threads and agent linking."""

    def test_insert_if_absent(self, store: Store):
        _seed(store)
        with store.begin() as txn:
            assert txn.insert_thread_if_absent(Thread(id="s1", session_id="s1")) is False

    def test_link_agent_thread_through_spawn(self, store: Store):
        call = _message(1, 0, message_type=MessageType.TOOL_CALL, tool_name="Task")
        _seed(store, [call])

        with store.begin() as txn:
            txn.insert_thread_if_absent(
                Thread(
                    id="s1-agent-abc",
                    session_id="s1",
                    thread_type=ThreadType.AGENT,
                    parent_thread_id="s1",
                    agent_id="abc",
                )
            )
            txn.upsert_agent_spawn("s1", "abc", "s1", 1)
            message_id = txn.get_agent_spawn_message_id("s1", "abc")
            assert message_id == call.id
            assert txn.link_agent_thread("s1-agent-abc", message_id) is True

        thread = store.get_thread("s1-agent-abc")
        assert thread.spawned_by_message_id == call.id
        assert thread.parent_thread_id == "s1"


class TestSourceFiles:
    """Tests for source file state and checkpoints."""

    def test_checkpoint_persistence(self, store: Store):
        source = SourceFile(
            path=Path(SOURCE),
            assistant=Assistant.CLAUDE_CODE,
            file_type=FileType.SESSION_LOG,
            size_bytes=100,
            modified_at=TS,
        )
        with store.begin() as txn:
            txn.observe_source_file(source)
            txn.set_checkpoint(source, Checkpoint.byte_offset(100))
            txn.set_last_parsed(source, TS)

        stored = store.get_source_file(SOURCE)
        assert stored.checkpoint == Checkpoint.byte_offset(100)
        assert stored.size_bytes == 100
        assert stored.last_parsed_at == TS
        assert store.get_checkpoint("/unknown.jsonl").is_none

    def test_rollback_discards_everything(self, store: Store):
        """Test that a failed transaction leaves no partial writes."""
        with pytest.raises(RuntimeError):
            with store.begin() as txn:
                txn.upsert_session(_session())
                txn.insert_thread_if_absent(Thread(id="s1", session_id="s1"))
                txn.insert_messages([_message(1, 0)])
                raise RuntimeError("boom")

        assert store.get_session("s1") is None
        assert store.count_messages() == 0


class TestProjects:
    """Tests for projects, plans and project statistics."""

    def test_project_stats(self, store: Store):
        project_id = project_id_for_path("/home/user/proj")
        with store.begin() as txn:
            txn.upsert_project(
                Project(id=project_id, path="/home/user/proj", name="proj", created_at=TS)
            )
            txn.upsert_session(
                _session(project_id=project_id, last_activity_at=TS + timedelta(minutes=30))
            )
            txn.insert_thread_if_absent(Thread(id="s1", session_id="s1"))
            txn.insert_messages(
                [
                    _message(1, 0, message_type=MessageType.TOOL_CALL, tool_name="Bash",
                             tokens_in=10, tokens_out=5),
                    _message(2, 10, message_type=MessageType.TOOL_CALL, tool_name="Bash"),
                    _message(3, 20, message_type=MessageType.ERROR),
                ]
            )
            txn.upsert_plan(Plan(id="bright-plan", session_id="s1", path="/plans/bright-plan.md"))

        stats = store.get_project_stats(project_id)

        assert stats.name == "proj"
        assert stats.session_count == 1
        assert stats.thread_count == 1
        assert stats.message_count == 3
        assert stats.tokens_total == 15
        assert stats.tool_call_breakdown == {"Bash": 2}
        assert stats.error_count == 1
        assert stats.plans_created == 1
        assert stats.total_duration_secs == 1800
        assert store.get_project_stats("missing") is None

    def test_plans_for_session(self, store: Store):
        _seed(store)
        with store.begin() as txn:
            txn.upsert_plan(Plan(id="p", session_id="s1", path="/plans/p.md", title="Plan"))

        assert [p.title for p in store.get_plans_for_session("s1")] == ["Plan"]
        assert store.require_plan("p").path == "/plans/p.md"


class TestPluginOutputs:
    """Tests for plugin metrics and run history."""

    def _record(self, name: str, value, computed_at=TS) -> MetricRecord:
        return MetricRecord(
            session_id="s1",
            plugin_name="core.first_order",
            entity_type="session",
            entity_id="s1",
            metric_name=name,
            metric_value=value,
            plugin_version="1.0.0",
            metric_version=1,
            computed_at=computed_at,
        )

    def test_replace_plugin_metrics(self, store: Store):
        _seed(store)
        store.replace_plugin_metrics(
            "s1", "core.first_order", [self._record("a", 1), self._record("b", 2)]
        )
        store.replace_plugin_metrics("s1", "core.first_order", [self._record("a", 3)])

        metrics = store.get_plugin_metrics(session_id="s1", plugin_name="core.first_order")

        assert [(m.metric_name, m.metric_value) for m in metrics] == [("a", 3)]

    def test_insert_replaces_same_metric_only(self, store: Store):
        _seed(store)
        store.insert_plugin_metrics([self._record("a", 1), self._record("b", 2)])
        store.insert_plugin_metrics([self._record("a", 5)])

        metrics = store.get_plugin_metrics(session_id="s1")

        assert sorted((m.metric_name, m.metric_value) for m in metrics) == [("a", 5), ("b", 2)]

    def test_json_metric_values(self, store: Store):
        _seed(store)
        store.replace_plugin_metrics(
            "s1", "core.first_order", [self._record("tool_call_breakdown", {"rg": 1})]
        )

        metric = store.get_plugin_metrics(session_id="s1")[0]

        assert metric.metric_value == {"rg": 1}

    def test_metrics_state(self, store: Store):
        _seed(store)
        assert store.get_plugin_metrics_state("s1", "core.first_order") == (None, None)

        store.replace_plugin_metrics("s1", "core.first_order", [self._record("a", 1)])

        computed_at, version = store.get_plugin_metrics_state("s1", "core.first_order")
        assert computed_at == TS
        assert version == 1
