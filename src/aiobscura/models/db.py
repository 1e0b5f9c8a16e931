"""
SQLAlchemy database models for aiobscura.

These models represent the embedded SQLite schema for storing normalized
assistant activity, parse checkpoints, and analytics outputs.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from aiobscura.models.canonical import (
    Assistant,
    AuthorRole,
    FileType,
    MessageType,
    SessionStatus,
    ThreadType,
)

SCHEMA_VERSION = 1


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and returned as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Project(Base):
    """Working directory an assistant was run against."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<Project(id={self.id!r}, name={self.name!r})>"


class BackingModel(Base):
    """LLM behind a session (``<provider>:<model>``)."""

    __tablename__ = "backing_models"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<BackingModel(id={self.id!r})>"


class Session(Base):
    """One assistant run, keyed by the id the source log provides."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    assistant: Mapped[Assistant] = mapped_column(
        _enum_column(Assistant), nullable=False, index=True
    )
    backing_model_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("backing_models.id")
    )
    project_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("projects.id"), index=True
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, index=True
    )
    status: Mapped[SessionStatus] = mapped_column(
        _enum_column(SessionStatus),
        nullable=False,
        default=SessionStatus.ACTIVE,
    )
    source_file_path: Mapped[str] = mapped_column(Text, nullable=False)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<Session(id={self.id!r}, assistant={self.assistant.value}, "
            f"status={self.status.value})>"
        )


class Thread(Base):
    """Conversation flow within a session."""

    __tablename__ = "threads"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id"), nullable=False, index=True
    )
    thread_type: Mapped[ThreadType] = mapped_column(
        _enum_column(ThreadType), nullable=False
    )
    parent_thread_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    # One ToolCall spawns at most one agent thread
    spawned_by_message_id: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<Thread(id={self.id!r}, session_id={self.session_id!r}, "
            f"type={self.thread_type.value})>"
        )


class Message(Base):
    """Normalized event with its verbatim source record."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "source_file_path",
            "source_offset",
            "source_ordinal",
            name="uq_messages_source_record",
        ),
        Index("ix_messages_session_emitted", "session_id", "emitted_at"),
        Index("ix_messages_thread_seq", "thread_id", "seq"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id"), nullable=False
    )
    thread_id: Mapped[str] = mapped_column(ForeignKey("threads.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    emitted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    author_role: Mapped[AuthorRole] = mapped_column(
        _enum_column(AuthorRole), nullable=False
    )
    author_name: Mapped[Optional[str]] = mapped_column(String(255))
    message_type: Mapped[MessageType] = mapped_column(
        _enum_column(MessageType), nullable=False, index=True
    )

    content: Mapped[Optional[str]] = mapped_column(Text)
    content_type: Mapped[Optional[str]] = mapped_column(String(128))
    tool_name: Mapped[Optional[str]] = mapped_column(String(255))
    tool_input: Mapped[Optional[Any]] = mapped_column(JSON)
    tool_result: Mapped[Optional[str]] = mapped_column(Text)

    tokens_in: Mapped[Optional[int]] = mapped_column(Integer)
    tokens_out: Mapped[Optional[int]] = mapped_column(Integer)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    source_file_path: Mapped[str] = mapped_column(Text, nullable=False)
    source_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    # Position among the messages emitted from one record
    source_ordinal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_line: Mapped[Optional[int]] = mapped_column(Integer)
    raw_data: Mapped[str] = mapped_column(Text, nullable=False)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, thread_id={self.thread_id!r}, seq={self.seq}, "
            f"type={self.message_type.value})>"
        )


class Plan(Base):
    """Plan document referenced by a session, keyed by slug."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id"), primary_key=True
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text)
    content: Mapped[Optional[str]] = mapped_column(Text)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64))
    modified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id!r}, session_id={self.session_id!r})>"


class SourceFile(Base):
    """Log file on disk and how far it has been parsed."""

    __tablename__ = "source_files"

    path: Mapped[str] = mapped_column(Text, primary_key=True)
    assistant: Mapped[Assistant] = mapped_column(
        _enum_column(Assistant), nullable=False
    )
    file_type: Mapped[FileType] = mapped_column(
        _enum_column(FileType), nullable=False
    )
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_parsed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    checkpoint: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=lambda: {"type": "none"}
    )

    def __repr__(self) -> str:
        return (
            f"<SourceFile(path={self.path!r}, size_bytes={self.size_bytes}, "
            f"checkpoint={self.checkpoint})>"
        )


class AgentSpawn(Base):
    """Durable map from a sub-agent id to the ToolCall that spawned it."""

    __tablename__ = "agent_spawns"

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    parent_thread_id: Mapped[str] = mapped_column(String(255), nullable=False)
    spawning_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    message_id: Mapped[Optional[int]] = mapped_column(ForeignKey("messages.id"))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<AgentSpawn(session_id={self.session_id!r}, agent_id={self.agent_id!r}, "
            f"message_id={self.message_id})>"
        )


class PluginMetric(Base):
    """One metric value emitted by an analytics plugin."""

    __tablename__ = "plugin_metrics"
    __table_args__ = (
        Index("ix_plugin_metrics_session_plugin", "session_id", "plugin_name"),
        Index("ix_plugin_metrics_entity", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_name: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_name: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_value: Mapped[Any] = mapped_column(JSON)
    plugin_version: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_version: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PluginMetric(plugin={self.plugin_name!r}, "
            f"metric={self.metric_name!r}, entity={self.entity_type}:{self.entity_id})>"
        )


class PluginRun(Base):
    """Append-only record of a plugin execution."""

    __tablename__ = "plugin_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    metrics_produced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    plugin_version: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_version: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PluginRun(id={self.id}, plugin={self.plugin_name!r}, "
            f"status={self.status})>"
        )


class SchemaVersion(Base):
    """Applied schema versions."""

    __tablename__ = "schema_version"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
