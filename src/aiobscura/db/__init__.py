"""
Persistence layer.

``Store`` is the public entry point; repositories and the connection
helpers are building blocks for it.
"""

from aiobscura.db.store import (
    ActiveSession,
    ProjectStats,
    SessionFilter,
    Store,
    Transaction,
)

__all__ = [
    "ActiveSession",
    "ProjectStats",
    "SessionFilter",
    "Store",
    "Transaction",
]
