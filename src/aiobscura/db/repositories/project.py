"""
Project repository.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.canonical import MessageType, ThreadType
from aiobscura.models.db import Message, Plan, Project, Session, Thread


class ProjectRepository(BaseRepository[Project]):
    """Repository for Project model."""

    def __init__(self, session: DbSession):
        super().__init__(Project, session)

    def get_by_path(self, path: str) -> Optional[Project]:
        return self.session.query(Project).filter(Project.path == path).first()

    def get_or_create(
        self, id: str, name: str, path: str, created_at: Optional[datetime] = None
    ) -> Project:
        """
        Get a project by id, creating it on first sighting.

        Projects are never mutated once created.

        Args:
            id: Stable hash of the canonical path
            name: Final path component
            path: Canonical absolute path
            created_at: Creation time (defaults to now)

        Returns:
            Project instance
        """
        project = self.get(id)
        if project is None:
            project = self.create(
                id=id,
                name=name,
                path=path,
                created_at=created_at or datetime.now(timezone.utc),
            )
        return project

    def list_all(self) -> List[Project]:
        return self.session.query(Project).order_by(Project.name.asc()).all()

    def get_stats(self, project_id: str) -> dict[str, Any]:
        """
        Aggregate activity counters for one project.

        Args:
            project_id: Project id

        Returns:
            Dictionary of counters keyed by ProjectStats field name
        """
        session_rows = (
            self.session.query(Session.started_at, Session.last_activity_at)
            .filter(Session.project_id == project_id)
            .all()
        )
        total_duration = 0.0
        first_activity = None
        last_activity = None
        for started_at, last_at in session_rows:
            end = last_at or started_at
            total_duration += max((end - started_at).total_seconds(), 0.0)
            if first_activity is None or started_at < first_activity:
                first_activity = started_at
            if last_activity is None or end > last_activity:
                last_activity = end

        session_ids = select(Session.id).where(Session.project_id == project_id)

        thread_count, agents_spawned = (
            self.session.query(
                func.count(Thread.id),
                func.coalesce(
                    func.sum(case((Thread.thread_type == ThreadType.AGENT, 1), else_=0)),
                    0,
                ),
            )
            .filter(Thread.session_id.in_(session_ids))
            .one()
        )

        message_count, tokens_in, tokens_out = (
            self.session.query(
                func.count(Message.id),
                func.coalesce(func.sum(Message.tokens_in), 0),
                func.coalesce(func.sum(Message.tokens_out), 0),
            )
            .filter(Message.session_id.in_(session_ids))
            .one()
        )

        tool_rows = (
            self.session.query(Message.tool_name, func.count(Message.id))
            .filter(
                Message.session_id.in_(session_ids),
                Message.message_type == MessageType.TOOL_CALL,
            )
            .group_by(Message.tool_name)
            .all()
        )
        tool_breakdown = {(name or "unknown"): count for name, count in tool_rows}

        error_count = (
            self.session.query(func.count(Message.id))
            .filter(
                Message.session_id.in_(session_ids),
                Message.message_type == MessageType.ERROR,
            )
            .scalar()
        )

        plans_created = (
            self.session.query(func.count(Plan.id))
            .filter(Plan.session_id.in_(session_ids))
            .scalar()
        )

        return {
            "session_count": len(session_rows),
            "thread_count": thread_count,
            "message_count": message_count,
            "total_duration_secs": total_duration,
            "tokens_in": int(tokens_in),
            "tokens_out": int(tokens_out),
            "tool_call_count": sum(tool_breakdown.values()),
            "tool_call_breakdown": tool_breakdown,
            "error_count": error_count,
            "agents_spawned": agents_spawned,
            "plans_created": plans_created,
            "first_activity": first_activity,
            "last_activity": last_activity,
        }
