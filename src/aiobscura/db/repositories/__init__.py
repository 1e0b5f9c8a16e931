"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.db.repositories.message import MessageRepository
from aiobscura.db.repositories.plan import PlanRepository
from aiobscura.db.repositories.plugin import PluginRepository
from aiobscura.db.repositories.project import ProjectRepository
from aiobscura.db.repositories.session import SessionRepository
from aiobscura.db.repositories.source_file import SourceFileRepository
from aiobscura.db.repositories.thread import ThreadRepository

__all__ = [
    "BaseRepository",
    "MessageRepository",
    "PlanRepository",
    "PluginRepository",
    "ProjectRepository",
    "SessionRepository",
    "SourceFileRepository",
    "ThreadRepository",
]
