"""
Plan repository.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import Plan


class PlanRepository(BaseRepository[Plan]):
    """Repository for Plan model."""

    def __init__(self, session: DbSession):
        super().__init__(Plan, session)

    def upsert(
        self,
        id: str,
        session_id: str,
        path: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        content_hash: Optional[str] = None,
        modified_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Insert a plan, or replace its content when the hash differs.

        Returns:
            True if a row was inserted or updated
        """
        existing = self.get((id, session_id))
        now = datetime.now(timezone.utc)
        if existing is None:
            self.create(
                id=id,
                session_id=session_id,
                path=path,
                title=title,
                content=content,
                content_hash=content_hash,
                modified_at=modified_at,
                updated_at=now,
                extra_data=dict(metadata or {}),
            )
            return True

        if existing.content_hash == content_hash:
            return False

        existing.path = path
        existing.title = title
        existing.content = content
        existing.content_hash = content_hash
        existing.modified_at = modified_at
        existing.updated_at = now
        if metadata:
            existing.extra_data = {**(existing.extra_data or {}), **metadata}
        self.session.flush()
        return True

    def get_for_session(self, session_id: str) -> List[Plan]:
        return (
            self.session.query(Plan)
            .filter(Plan.session_id == session_id)
            .order_by(Plan.modified_at.desc(), Plan.id.asc())
            .all()
        )

    def get_by_slug(self, id: str, session_id: Optional[str] = None) -> Optional[Plan]:
        query = self.session.query(Plan).filter(Plan.id == id)
        if session_id is not None:
            query = query.filter(Plan.session_id == session_id)
        return query.order_by(Plan.updated_at.desc()).first()
