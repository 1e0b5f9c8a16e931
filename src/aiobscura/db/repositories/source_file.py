"""
Source file repository.

Tracks what was observed on disk and the parse checkpoint per file.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.canonical import Assistant, FileType
from aiobscura.models.db import SourceFile


class SourceFileRepository(BaseRepository[SourceFile]):
    """Repository for SourceFile model."""

    def __init__(self, session: DbSession):
        super().__init__(SourceFile, session)

    def observe(
        self,
        path: str,
        assistant: Assistant,
        file_type: FileType,
        size_bytes: int,
        modified_at: Optional[datetime],
        created_at: Optional[datetime] = None,
    ) -> SourceFile:
        """
        Record the latest on-disk observation of a file.

        The checkpoint is left untouched; see ``set_checkpoint``.
        """
        row = self.get(path)
        if row is None:
            return self.create(
                path=path,
                assistant=assistant,
                file_type=file_type,
                size_bytes=size_bytes,
                modified_at=modified_at,
                created_at=created_at,
                checkpoint={"type": "none"},
            )

        row.assistant = assistant
        row.file_type = file_type
        row.size_bytes = size_bytes
        row.modified_at = modified_at
        if created_at is not None and row.created_at is None:
            row.created_at = created_at
        self.session.flush()
        return row

    def set_checkpoint(self, path: str, checkpoint: dict[str, Any]) -> None:
        row = self.get(path)
        if row is None:
            raise KeyError(path)
        row.checkpoint = checkpoint
        self.session.flush()

    def set_last_parsed(self, path: str, ts: datetime) -> None:
        row = self.get(path)
        if row is None:
            raise KeyError(path)
        row.last_parsed_at = ts
        self.session.flush()
