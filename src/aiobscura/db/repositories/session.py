"""
Session repository.

Covers sessions and the backing models they reference.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.exceptions import StoreError
from aiobscura.models.canonical import Assistant, SessionStatus
from aiobscura.models.db import BackingModel, Session


class SessionRepository(BaseRepository[Session]):
    """Repository for Session model."""

    def __init__(self, session: DbSession):
        super().__init__(Session, session)

    def upsert(
        self,
        id: str,
        assistant: Assistant,
        started_at: datetime,
        source_file_path: str,
        backing_model_id: Optional[str] = None,
        project_id: Optional[str] = None,
        last_activity_at: Optional[datetime] = None,
        status: SessionStatus = SessionStatus.ACTIVE,
        metadata: Optional[dict[str, Any]] = None,
    ) -> tuple[Session, bool]:
        """
        Insert a session or merge new observations into the existing row.

        An existing row keeps its earliest ``started_at``, its original
        ``source_file_path`` and the latest ``last_activity_at``; missing
        model and project references are filled in; metadata keys are
        merged. A completed session is never reopened.

        Returns:
            Tuple of (session row, created flag)

        Raises:
            StoreError: If the id already belongs to a different assistant
        """
        existing = self.get(id)
        if existing is None:
            row = self.create(
                id=id,
                assistant=assistant,
                started_at=started_at,
                source_file_path=source_file_path,
                backing_model_id=backing_model_id,
                project_id=project_id,
                last_activity_at=last_activity_at,
                status=status,
                extra_data=dict(metadata or {}),
            )
            return row, True

        if existing.assistant != assistant:
            raise StoreError(
                f"session id collision: {id} belongs to "
                f"{existing.assistant.value}, not {assistant.value}"
            )

        if started_at < existing.started_at:
            existing.started_at = started_at
        if last_activity_at is not None and (
            existing.last_activity_at is None
            or last_activity_at > existing.last_activity_at
        ):
            existing.last_activity_at = last_activity_at
        if backing_model_id and not existing.backing_model_id:
            existing.backing_model_id = backing_model_id
        if project_id and not existing.project_id:
            existing.project_id = project_id
        if status == SessionStatus.COMPLETED:
            existing.status = SessionStatus.COMPLETED
        if metadata:
            existing.extra_data = {**(existing.extra_data or {}), **metadata}

        self.session.flush()
        return existing, False

    def upsert_backing_model(
        self,
        id: str,
        provider: str,
        model_id: str,
        display_name: Optional[str] = None,
    ) -> BackingModel:
        model = self.session.get(BackingModel, id)
        if model is None:
            model = BackingModel(
                id=id,
                provider=provider,
                model_id=model_id,
                display_name=display_name,
                first_seen_at=datetime.now(timezone.utc),
            )
            self.session.add(model)
            self.session.flush()
        elif display_name and not model.display_name:
            model.display_name = display_name
        return model

    def _status_clause(self, status: SessionStatus, active_cutoff: datetime):
        active = and_(
            Session.status != SessionStatus.COMPLETED,
            func.coalesce(Session.last_activity_at, Session.started_at) >= active_cutoff,
        )
        if status == SessionStatus.ACTIVE:
            return active
        return or_(
            Session.status == SessionStatus.COMPLETED,
            func.coalesce(Session.last_activity_at, Session.started_at) < active_cutoff,
        )

    def list_filtered(
        self,
        active_cutoff: datetime,
        assistant: Optional[Assistant] = None,
        status: Optional[SessionStatus] = None,
        project_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Session]:
        """
        List sessions, most recently active first.

        Args:
            active_cutoff: Sessions idle since before this instant count as
                completed for the status filter
            assistant: Only sessions of this assistant
            status: Only sessions with this derived status
            project_id: Only sessions of this project
            since: Only sessions active at or after this instant
            limit: Maximum number of results

        Returns:
            List of sessions
        """
        last_seen = func.coalesce(Session.last_activity_at, Session.started_at)
        query = self.session.query(Session)
        if assistant is not None:
            query = query.filter(Session.assistant == assistant)
        if status is not None:
            query = query.filter(self._status_clause(status, active_cutoff))
        if project_id is not None:
            query = query.filter(Session.project_id == project_id)
        if since is not None:
            query = query.filter(last_seen >= since)

        query = query.order_by(last_seen.desc(), Session.id.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count_by_status(self, active_cutoff: datetime) -> dict[SessionStatus, int]:
        return {
            status: self.session.query(func.count(Session.id))
            .filter(self._status_clause(status, active_cutoff))
            .scalar()
            for status in SessionStatus
        }
