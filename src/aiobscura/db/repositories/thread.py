"""
Thread repository.

Also owns the durable agent spawn map used to link sub-agent threads to
the ToolCall that spawned them.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.canonical import ThreadType
from aiobscura.models.db import AgentSpawn, Thread


class ThreadRepository(BaseRepository[Thread]):
    """Repository for Thread model."""

    def __init__(self, session: DbSession):
        super().__init__(Thread, session)

    def insert_if_absent(self, **kwargs) -> bool:
        """
        Insert a thread unless one with the same id exists.

        An existing thread only has its activity window widened.

        Returns:
            True if a new row was inserted
        """
        existing = self.get(kwargs["id"])
        if existing is None:
            self.create(**kwargs)
            return True

        started_at = kwargs.get("started_at")
        if started_at and (existing.started_at is None or started_at < existing.started_at):
            existing.started_at = started_at
        last_activity_at = kwargs.get("last_activity_at")
        if last_activity_at and (
            existing.last_activity_at is None
            or last_activity_at > existing.last_activity_at
        ):
            existing.last_activity_at = last_activity_at
        if kwargs.get("agent_id") and not existing.agent_id:
            existing.agent_id = kwargs["agent_id"]
        return False

    def get_for_session(self, session_id: str) -> List[Thread]:
        return (
            self.session.query(Thread)
            .filter(Thread.session_id == session_id)
            .order_by(Thread.started_at.asc(), Thread.id.asc())
            .all()
        )

    def get_agent_thread(self, session_id: str, agent_id: str) -> Optional[Thread]:
        return (
            self.session.query(Thread)
            .filter(
                Thread.session_id == session_id,
                Thread.agent_id == agent_id,
                Thread.thread_type == ThreadType.AGENT,
            )
            .first()
        )

    def get_by_spawning_message(self, message_id: int) -> Optional[Thread]:
        return (
            self.session.query(Thread)
            .filter(Thread.spawned_by_message_id == message_id)
            .first()
        )

    def link_agent(self, thread_id: str, message_id: int) -> bool:
        """
        Point an agent thread at the ToolCall message that spawned it.

        A ToolCall already linked to a different thread is left alone.

        Returns:
            True if the thread now references ``message_id``
        """
        thread = self.get(thread_id)
        if thread is None or thread.thread_type != ThreadType.AGENT:
            return False
        if thread.spawned_by_message_id == message_id:
            return True

        holder = self.get_by_spawning_message(message_id)
        if holder is not None and holder.id != thread_id:
            return False

        thread.spawned_by_message_id = message_id
        self.session.flush()
        return True

    def upsert_spawn(
        self,
        session_id: str,
        agent_id: str,
        parent_thread_id: str,
        spawning_seq: int,
        message_id: Optional[int] = None,
    ) -> AgentSpawn:
        spawn = self.session.get(AgentSpawn, (session_id, agent_id))
        if spawn is None:
            spawn = AgentSpawn(
                session_id=session_id,
                agent_id=agent_id,
                parent_thread_id=parent_thread_id,
                spawning_seq=spawning_seq,
                message_id=message_id,
                created_at=datetime.now(timezone.utc),
            )
            self.session.add(spawn)
        elif message_id is not None:
            spawn.message_id = message_id
        self.session.flush()
        return spawn

    def get_spawn(self, session_id: str, agent_id: str) -> Optional[AgentSpawn]:
        return self.session.get(AgentSpawn, (session_id, agent_id))
