"""
Message repository.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.canonical import MessageType
from aiobscura.models.db import Message


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: DbSession):
        super().__init__(Message, session)

    def find_existing(
        self, source_file_path: str, source_offset: int, source_ordinal: int
    ) -> Optional[tuple[int, int]]:
        """(id, seq) of a stored record, if present."""
        row = (
            self.session.query(Message.id, Message.seq)
            .filter(
                Message.source_file_path == source_file_path,
                Message.source_offset == source_offset,
                Message.source_ordinal == source_ordinal,
            )
            .first()
        )
        return (row.id, row.seq) if row else None

    def insert_batch(self, rows: List[dict[str, Any]]) -> List[tuple[int, int, bool]]:
        """
        Insert messages in order, skipping records already stored.

        A record is identified by ``(source_file_path, source_offset,
        source_ordinal)``; re-inserting it returns the stored id and seq.
        Skipped records do not use up a seq: every later new row from the
        same source file is moved down by the number skipped before it.

        Args:
            rows: Column values per message, in emit order

        Returns:
            List of (message id, seq, inserted flag), aligned with ``rows``
        """
        results: List[tuple[int, int, bool]] = []
        skipped: dict[str, int] = {}
        for values in rows:
            path = values["source_file_path"]
            existing = self.find_existing(
                path, values["source_offset"], values["source_ordinal"]
            )
            if existing is not None:
                skipped[path] = skipped.get(path, 0) + 1
                results.append((existing[0], existing[1], False))
                continue

            values = dict(values, seq=values["seq"] - skipped.get(path, 0))
            row = Message(**values)
            self.session.add(row)
            self.session.flush()
            results.append((row.id, row.seq, True))
        return results

    def get_id_by_seq(self, thread_id: str, seq: int) -> Optional[int]:
        return (
            self.session.query(Message.id)
            .filter(Message.thread_id == thread_id, Message.seq == seq)
            .order_by(Message.id.asc())
            .limit(1)
            .scalar()
        )

    def get_for_session(
        self, session_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages of a session in emit order (ties broken by insert order)."""
        query = (
            self.session.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.emitted_at.asc(), Message.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def get_recent(self, limit: int) -> List[Message]:
        return (
            self.session.query(Message)
            .order_by(Message.emitted_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )

    def count_for_session(self, session_id: str) -> int:
        return (
            self.session.query(func.count(Message.id))
            .filter(Message.session_id == session_id)
            .scalar()
        )

    def last_emitted_at(self, session_id: str) -> Optional[datetime]:
        return (
            self.session.query(func.max(Message.emitted_at))
            .filter(Message.session_id == session_id)
            .scalar()
        )

    def max_seq_for_source(self, source_file_path: str) -> int:
        """Highest seq stored from one source file (0 when none)."""
        return (
            self.session.query(func.max(Message.seq))
            .filter(Message.source_file_path == source_file_path)
            .scalar()
            or 0
        )

    def find_tool_call(self, thread_id: str, tool_use_id: str) -> Optional[tuple[int, int]]:
        """(id, seq) of the ToolCall carrying ``metadata.tool_use_id``."""
        row = (
            self.session.query(Message.id, Message.seq)
            .filter(
                Message.thread_id == thread_id,
                Message.message_type == MessageType.TOOL_CALL,
                Message.extra_data["tool_use_id"].as_string() == tool_use_id,
            )
            .order_by(Message.id.asc())
            .first()
        )
        return (row.id, row.seq) if row else None
