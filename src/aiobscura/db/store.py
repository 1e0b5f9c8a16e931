"""
Store: the persistence contract used by ingest, analytics and the CLI.

Writes go through ``Store.begin()``, which yields a ``Transaction`` bound
to one SQLAlchemy session. Reads open short-lived sessions and return
canonical dataclasses, never ORM rows.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from aiobscura.config import settings as default_settings
from aiobscura.db.connection import (
    MEMORY_PATH,
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from aiobscura.db.repositories import (
    MessageRepository,
    PlanRepository,
    PluginRepository,
    ProjectRepository,
    SessionRepository,
    SourceFileRepository,
    ThreadRepository,
)
from aiobscura.exceptions import (
    PlanNotFoundError,
    SessionNotFoundError,
    StoreError,
)
from aiobscura.models import db as orm
from aiobscura.models.canonical import (
    Assistant,
    BackingModel,
    Checkpoint,
    Message,
    Plan,
    Project,
    Session,
    SessionStatus,
    SourceFile,
    Thread,
    ThreadType,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionFilter:
    """Filter for ``Store.list_sessions``. Unset fields do not filter."""

    assistant: Optional[Assistant] = None
    status: Optional[SessionStatus] = None
    project_id: Optional[str] = None
    since: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass
class ProjectStats:
    """Aggregated activity for one project."""

    id: str
    name: str
    path: str
    session_count: int = 0
    thread_count: int = 0
    message_count: int = 0
    total_duration_secs: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    tool_call_count: int = 0
    tool_call_breakdown: dict[str, int] = field(default_factory=dict)
    error_count: int = 0
    agents_spawned: int = 0
    plans_created: int = 0
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    @property
    def tokens_total(self) -> int:
        return self.tokens_in + self.tokens_out


@dataclass
class ActiveSession:
    """A thread with messages inside the activity window."""

    session_id: str
    thread_id: str
    thread_type: ThreadType
    assistant: Assistant
    last_activity: datetime
    message_count: int
    project_name: Optional[str] = None
    parent_thread_id: Optional[str] = None


@dataclass
class MetricRecord:
    """One persisted analytics metric."""

    session_id: str
    plugin_name: str
    entity_type: str
    entity_id: str
    metric_name: str
    metric_value: Any
    plugin_version: str
    metric_version: int
    computed_at: datetime

    def _values(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plugin_name": self.plugin_name,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metric_name": self.metric_name,
            "metric_value": self.metric_value,
            "plugin_version": self.plugin_version,
            "metric_version": self.metric_version,
            "computed_at": self.computed_at,
        }


@dataclass
class PluginRunRecord:
    """One row of plugin run history."""

    id: int
    plugin_name: str
    session_id: Optional[str]
    started_at: datetime
    duration_ms: float
    status: str
    metrics_produced: int
    error_message: Optional[str]
    plugin_version: str
    metric_version: int


def _project(row: orm.Project) -> Project:
    return Project(id=row.id, path=row.path, name=row.name, created_at=row.created_at)


def _session(row: orm.Session) -> Session:
    return Session(
        id=row.id,
        assistant=row.assistant,
        started_at=row.started_at,
        source_file_path=row.source_file_path,
        backing_model_id=row.backing_model_id,
        project_id=row.project_id,
        last_activity_at=row.last_activity_at,
        status=row.status,
        metadata=dict(row.extra_data or {}),
    )


def _thread(row: orm.Thread) -> Thread:
    return Thread(
        id=row.id,
        session_id=row.session_id,
        thread_type=row.thread_type,
        parent_thread_id=row.parent_thread_id,
        spawned_by_message_id=row.spawned_by_message_id,
        agent_id=row.agent_id,
        started_at=row.started_at,
        last_activity_at=row.last_activity_at,
        metadata=dict(row.extra_data or {}),
    )


def _message(row: orm.Message) -> Message:
    return Message(
        id=row.id,
        session_id=row.session_id,
        thread_id=row.thread_id,
        seq=row.seq,
        emitted_at=row.emitted_at,
        observed_at=row.observed_at,
        author_role=row.author_role,
        author_name=row.author_name,
        message_type=row.message_type,
        content=row.content,
        content_type=row.content_type,
        tool_name=row.tool_name,
        tool_input=row.tool_input,
        tool_result=row.tool_result,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        duration_ms=row.duration_ms,
        source_file_path=row.source_file_path,
        source_offset=row.source_offset,
        source_line=row.source_line,
        raw_data=row.raw_data,
        metadata=dict(row.extra_data or {}),
    )


def _plan(row: orm.Plan) -> Plan:
    return Plan(
        id=row.id,
        session_id=row.session_id,
        path=row.path,
        title=row.title,
        content=row.content,
        content_hash=row.content_hash,
        modified_at=row.modified_at,
        metadata=dict(row.extra_data or {}),
    )


def _source_file(row: orm.SourceFile) -> SourceFile:
    return SourceFile(
        path=Path(row.path),
        assistant=row.assistant,
        file_type=row.file_type,
        size_bytes=row.size_bytes,
        modified_at=row.modified_at,
        created_at=row.created_at,
        last_parsed_at=row.last_parsed_at,
        checkpoint=Checkpoint.from_json(row.checkpoint),
    )


def _metric(row: orm.PluginMetric) -> MetricRecord:
    return MetricRecord(
        session_id=row.session_id,
        plugin_name=row.plugin_name,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        metric_name=row.metric_name,
        metric_value=row.metric_value,
        plugin_version=row.plugin_version,
        metric_version=row.metric_version,
        computed_at=row.computed_at,
    )


def _run(row: orm.PluginRun) -> PluginRunRecord:
    return PluginRunRecord(
        id=row.id,
        plugin_name=row.plugin_name,
        session_id=row.session_id,
        started_at=row.started_at,
        duration_ms=row.duration_ms,
        status=row.status,
        metrics_produced=row.metrics_produced,
        error_message=row.error_message,
        plugin_version=row.plugin_version,
        metric_version=row.metric_version,
    )


def _path_key(source_file: Union[SourceFile, Path, str]) -> str:
    if isinstance(source_file, SourceFile):
        return str(source_file.path)
    return str(source_file)


class Transaction:
    """
    Write scope for one unit of work (one source file during ingest).

    Obtained from ``Store.begin()``; everything done through it commits or
    rolls back together.
    """

    def __init__(self, db):
        self.db = db
        self.projects = ProjectRepository(db)
        self.sessions = SessionRepository(db)
        self.threads = ThreadRepository(db)
        self.messages = MessageRepository(db)
        self.plans = PlanRepository(db)
        self.source_files = SourceFileRepository(db)
        self.plugins = PluginRepository(db)

    # Entities

    def upsert_project(self, project: Project) -> None:
        self.projects.get_or_create(
            id=project.id,
            name=project.name,
            path=project.path,
            created_at=project.created_at,
        )

    def upsert_backing_model(self, model: BackingModel) -> None:
        self.sessions.upsert_backing_model(
            id=model.id,
            provider=model.provider,
            model_id=model.model_id,
            display_name=model.display_name,
        )

    def upsert_session(self, session: Session) -> bool:
        """
        Insert or merge a session.

        Returns:
            True if the session did not exist before

        Raises:
            StoreError: If the id is already used by another assistant
        """
        if session.backing_model_id:
            self.upsert_backing_model(BackingModel.from_id(session.backing_model_id))
        _, created = self.sessions.upsert(
            id=session.id,
            assistant=session.assistant,
            started_at=session.started_at,
            source_file_path=session.source_file_path,
            backing_model_id=session.backing_model_id,
            project_id=session.project_id,
            last_activity_at=session.last_activity_at,
            status=session.status,
            metadata=session.metadata,
        )
        return created

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.sessions.get(session_id)
        return _session(row) if row else None

    def insert_thread_if_absent(self, thread: Thread) -> bool:
        return self.threads.insert_if_absent(
            id=thread.id,
            session_id=thread.session_id,
            thread_type=thread.thread_type,
            parent_thread_id=thread.parent_thread_id,
            spawned_by_message_id=thread.spawned_by_message_id,
            agent_id=thread.agent_id,
            started_at=thread.started_at,
            last_activity_at=thread.last_activity_at,
            extra_data=dict(thread.metadata),
        )

    def get_agent_thread(self, session_id: str, agent_id: str) -> Optional[Thread]:
        row = self.threads.get_agent_thread(session_id, agent_id)
        return _thread(row) if row else None

    def insert_messages(self, batch: Iterable[Message]) -> List[int]:
        """
        Insert messages in order.

        Every message gets its store id and final ``seq`` assigned. A record
        already stored under the same ``(source file, offset, ordinal)`` keeps
        its stored id and seq; the ordinal counts messages emitted from one
        source record, in batch order.

        Returns:
            Ids of the newly inserted messages, in insert order
        """
        messages = list(batch)
        ordinals: dict[tuple[str, int], int] = {}
        rows = []
        for m in messages:
            key = (m.source_file_path, m.source_offset)
            ordinals[key] = ordinals.get(key, -1) + 1
            rows.append(
                {
                    "session_id": m.session_id,
                    "thread_id": m.thread_id,
                    "seq": m.seq,
                    "emitted_at": m.emitted_at,
                    "observed_at": m.observed_at,
                    "author_role": m.author_role,
                    "author_name": m.author_name,
                    "message_type": m.message_type,
                    "content": m.content,
                    "content_type": m.content_type,
                    "tool_name": m.tool_name,
                    "tool_input": m.tool_input,
                    "tool_result": m.tool_result,
                    "tokens_in": m.tokens_in,
                    "tokens_out": m.tokens_out,
                    "duration_ms": m.duration_ms,
                    "source_file_path": m.source_file_path,
                    "source_offset": m.source_offset,
                    "source_ordinal": ordinals[key],
                    "source_line": m.source_line,
                    "raw_data": m.raw_data,
                    "extra_data": dict(m.metadata),
                }
            )
        results = self.messages.insert_batch(rows)
        inserted = []
        for message, (message_id, seq, is_new) in zip(messages, results):
            message.id = message_id
            message.seq = seq
            if is_new:
                inserted.append(message_id)
        return inserted

    def get_message_id_by_seq(self, thread_id: str, seq: int) -> Optional[int]:
        return self.messages.get_id_by_seq(thread_id, seq)

    def max_seq_for_source(self, source_file: Union[SourceFile, Path, str]) -> int:
        return self.messages.max_seq_for_source(_path_key(source_file))

    def find_tool_call(self, thread_id: str, tool_use_id: str) -> Optional[tuple[int, int]]:
        return self.messages.find_tool_call(thread_id, tool_use_id)

    def upsert_plan(self, plan: Plan) -> bool:
        return self.plans.upsert(
            id=plan.id,
            session_id=plan.session_id,
            path=plan.path,
            title=plan.title,
            content=plan.content,
            content_hash=plan.content_hash,
            modified_at=plan.modified_at,
            metadata=plan.metadata,
        )

    # Agent linking

    def upsert_agent_spawn(
        self,
        session_id: str,
        agent_id: str,
        parent_thread_id: str,
        spawning_seq: int,
        message_id: Optional[int] = None,
    ) -> None:
        self.threads.upsert_spawn(
            session_id=session_id,
            agent_id=agent_id,
            parent_thread_id=parent_thread_id,
            spawning_seq=spawning_seq,
            message_id=message_id,
        )

    def get_agent_spawn_message_id(self, session_id: str, agent_id: str) -> Optional[int]:
        """Message id of the ToolCall that spawned ``agent_id``, if known."""
        spawn = self.threads.get_spawn(session_id, agent_id)
        if spawn is None:
            return None
        if spawn.message_id is None:
            spawn.message_id = self.messages.get_id_by_seq(
                spawn.parent_thread_id, spawn.spawning_seq
            )
        return spawn.message_id

    def link_agent_thread(self, thread_id: str, message_id: int) -> bool:
        return self.threads.link_agent(thread_id, message_id)

    # Source files and checkpoints

    def get_source_file(self, path: Union[Path, str]) -> Optional[SourceFile]:
        row = self.source_files.get(str(path))
        return _source_file(row) if row else None

    def observe_source_file(self, source_file: SourceFile) -> None:
        self.source_files.observe(
            path=str(source_file.path),
            assistant=source_file.assistant,
            file_type=source_file.file_type,
            size_bytes=source_file.size_bytes,
            modified_at=source_file.modified_at,
            created_at=source_file.created_at,
        )

    def set_checkpoint(
        self, source_file: Union[SourceFile, Path, str], checkpoint: Checkpoint
    ) -> None:
        self.source_files.set_checkpoint(_path_key(source_file), checkpoint.to_json())

    def set_last_parsed(
        self, source_file: Union[SourceFile, Path, str], ts: datetime
    ) -> None:
        self.source_files.set_last_parsed(_path_key(source_file), ts)

    # Plugin outputs

    def insert_plugin_metrics(self, batch: Iterable[MetricRecord]) -> int:
        records = list(batch)
        for record in records:
            self.plugins.delete_metric(
                record.session_id, record.plugin_name, record.metric_name
            )
        return self.plugins.add_metrics([r._values() for r in records])

    def replace_plugin_metrics(
        self, session_id: str, plugin_name: str, batch: Iterable[MetricRecord]
    ) -> int:
        self.plugins.delete_for_plugin(session_id, plugin_name)
        return self.plugins.add_metrics([r._values() for r in batch])

    def record_plugin_run(self, result: Any) -> int:
        """
        Append a plugin run row.

        Args:
            result: Object with ``plugin_name``, ``session_id``,
                ``started_at``, ``status``, ``metrics_produced``,
                ``duration_ms``, ``error_message``, ``plugin_version`` and
                ``metric_version`` attributes

        Returns:
            Id of the new row
        """
        status = getattr(result.status, "value", result.status)
        run = self.plugins.add_run(
            plugin_name=result.plugin_name,
            session_id=result.session_id,
            started_at=result.started_at,
            duration_ms=result.duration_ms,
            status=status,
            metrics_produced=result.metrics_produced,
            error_message=result.error_message,
            plugin_version=result.plugin_version,
            metric_version=result.metric_version,
        )
        return run.id


class Store:
    """
    Embedded SQLite store.

    Use ``Store.open(path)`` or ``Store.open_in_memory()``. Within a
    process, writes are serialized through ``begin()``; reads may run
    concurrently and observe the last committed state.
    """

    def __init__(self, engine: Engine, path: Optional[Path] = None):
        self.engine = engine
        self.path = path
        self._session_factory = create_session_factory(engine)
        self._write_lock = threading.Lock()
        self.inactivity_minutes = default_settings.analytics.inactivity_minutes

    @classmethod
    def open(cls, path: Union[str, Path]) -> "Store":
        """
        Open or create a database and bring its schema up to date.

        Raises:
            StoreError: If the file cannot be opened or migrated
        """
        try:
            engine = create_db_engine(path)
            version = init_db(engine)
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"failed to open database {path}: {e}") from e

        resolved = None if str(path) == MEMORY_PATH else Path(path).expanduser()
        logger.debug(f"Opened store at {resolved or MEMORY_PATH} (schema v{version})")
        return cls(engine, resolved)

    @classmethod
    def open_in_memory(cls) -> "Store":
        return cls.open(MEMORY_PATH)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def begin(self) -> Generator[Transaction, None, None]:
        """
        Open a write transaction.

        Commits when the block exits normally and rolls back on any
        exception. Database errors are re-raised as ``StoreError``.

        Example:
            >>> with store.begin() as txn:
            >>>     txn.upsert_project(project)
        """
        with self._write_lock:
            db = self._session_factory()
            try:
                yield Transaction(db)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(str(e)) from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    @contextmanager
    def _read(self):
        try:
            with session_scope(self._session_factory) as db:
                yield db
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def _active_cutoff(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now - timedelta(minutes=self.inactivity_minutes)

    # Sessions

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._read() as db:
            row = SessionRepository(db).get(session_id)
            return _session(row) if row else None

    def require_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: If no session has this id
        """
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self, filter: Optional[SessionFilter] = None) -> List[Session]:
        filter = filter or SessionFilter()
        with self._read() as db:
            rows = SessionRepository(db).list_filtered(
                active_cutoff=self._active_cutoff(),
                assistant=filter.assistant,
                status=filter.status,
                project_id=filter.project_id,
                since=filter.since,
                limit=filter.limit,
            )
            return [_session(r) for r in rows]

    def count_sessions_by_status(self) -> dict[SessionStatus, int]:
        with self._read() as db:
            return SessionRepository(db).count_by_status(self._active_cutoff())

    def get_session_threads(self, session_id: str) -> List[Thread]:
        with self._read() as db:
            return [_thread(r) for r in ThreadRepository(db).get_for_session(session_id)]

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        with self._read() as db:
            row = ThreadRepository(db).get(thread_id)
            return _thread(row) if row else None

    # Messages

    def get_session_messages(
        self, session_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        with self._read() as db:
            rows = MessageRepository(db).get_for_session(session_id, limit)
            return [_message(r) for r in rows]

    def get_recent_messages(self, limit: int = 50) -> List[Message]:
        with self._read() as db:
            return [_message(r) for r in MessageRepository(db).get_recent(limit)]

    def count_session_messages(self, session_id: str) -> int:
        with self._read() as db:
            return MessageRepository(db).count_for_session(session_id)

    def count_messages(self) -> int:
        with self._read() as db:
            return MessageRepository(db).count()

    def get_session_last_message_ts(self, session_id: str) -> Optional[datetime]:
        with self._read() as db:
            return MessageRepository(db).last_emitted_at(session_id)

    def get_active_sessions(
        self, window_minutes: int, now: Optional[datetime] = None
    ) -> List[ActiveSession]:
        """
        Threads with at least one message emitted inside the window.

        Args:
            window_minutes: Size of the window ending at ``now``
            now: End of the window (defaults to the current time)

        Returns:
            Active threads, most recent activity first
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=window_minutes)
        last_activity = func.max(orm.Message.emitted_at)
        with self._read() as db:
            rows = (
                db.query(
                    orm.Thread.session_id,
                    orm.Thread.id,
                    orm.Thread.thread_type,
                    orm.Thread.parent_thread_id,
                    orm.Session.assistant,
                    orm.Project.name,
                    last_activity,
                    func.count(orm.Message.id),
                )
                .join(orm.Session, orm.Session.id == orm.Thread.session_id)
                .outerjoin(orm.Project, orm.Project.id == orm.Session.project_id)
                .join(orm.Message, orm.Message.thread_id == orm.Thread.id)
                .filter(orm.Message.emitted_at >= cutoff)
                .group_by(orm.Thread.id)
                .order_by(last_activity.desc(), orm.Thread.id.asc())
                .all()
            )
            return [
                ActiveSession(
                    session_id=session_id,
                    thread_id=thread_id,
                    thread_type=thread_type,
                    assistant=assistant,
                    last_activity=last_at,
                    message_count=count,
                    project_name=project_name,
                    parent_thread_id=parent_thread_id,
                )
                for (
                    session_id,
                    thread_id,
                    thread_type,
                    parent_thread_id,
                    assistant,
                    project_name,
                    last_at,
                    count,
                ) in rows
            ]

    # Projects

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._read() as db:
            row = ProjectRepository(db).get(project_id)
            return _project(row) if row else None

    def list_projects(self) -> List[Project]:
        with self._read() as db:
            return [_project(r) for r in ProjectRepository(db).list_all()]

    def get_project_stats(self, project_id: str) -> Optional[ProjectStats]:
        with self._read() as db:
            repo = ProjectRepository(db)
            row = repo.get(project_id)
            if row is None:
                return None
            return ProjectStats(
                id=row.id, name=row.name, path=row.path, **repo.get_stats(project_id)
            )

    # Plans

    def get_plans_for_session(self, session_id: str) -> List[Plan]:
        with self._read() as db:
            return [_plan(r) for r in PlanRepository(db).get_for_session(session_id)]

    def get_plan(self, plan_id: str, session_id: Optional[str] = None) -> Optional[Plan]:
        with self._read() as db:
            row = PlanRepository(db).get_by_slug(plan_id, session_id)
            return _plan(row) if row else None

    def require_plan(self, plan_id: str, session_id: Optional[str] = None) -> Plan:
        """
        Raises:
            PlanNotFoundError: If no plan has this slug
        """
        plan = self.get_plan(plan_id, session_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    # Source files

    def get_source_file(self, path: Union[Path, str]) -> Optional[SourceFile]:
        with self._read() as db:
            row = SourceFileRepository(db).get(str(path))
            return _source_file(row) if row else None

    def get_checkpoint(self, path: Union[Path, str]) -> Checkpoint:
        source_file = self.get_source_file(path)
        return source_file.checkpoint if source_file else Checkpoint.none()

    # Plugin outputs

    def insert_plugin_metrics(self, batch: Iterable[MetricRecord]) -> int:
        with self.begin() as txn:
            return txn.insert_plugin_metrics(batch)

    def replace_plugin_metrics(
        self, session_id: str, plugin_name: str, batch: Iterable[MetricRecord]
    ) -> int:
        with self.begin() as txn:
            return txn.replace_plugin_metrics(session_id, plugin_name, batch)

    def record_plugin_run(self, result: Any) -> int:
        with self.begin() as txn:
            return txn.record_plugin_run(result)

    def get_plugin_metrics(
        self,
        session_id: Optional[str] = None,
        plugin_name: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[MetricRecord]:
        with self._read() as db:
            rows = PluginRepository(db).get_metrics(
                session_id=session_id,
                plugin_name=plugin_name,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            return [_metric(r) for r in rows]

    def get_plugin_metrics_state(
        self, session_id: str, plugin_name: str
    ) -> tuple[Optional[datetime], Optional[int]]:
        """Latest ``computed_at`` and oldest metric version for a plugin."""
        with self._read() as db:
            return PluginRepository(db).latest_computed(session_id, plugin_name)

    def get_plugin_runs(
        self,
        plugin_name: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PluginRunRecord]:
        with self._read() as db:
            rows = PluginRepository(db).get_runs(
                plugin_name=plugin_name, session_id=session_id, limit=limit
            )
            return [_run(r) for r in rows]
