"""Ingestion pipeline."""

from aiobscura.pipeline.ingestion import (
    FileSyncResult,
    IngestCoordinator,
    SkipReason,
    SyncResult,
)

__all__ = ["FileSyncResult", "IngestCoordinator", "SkipReason", "SyncResult"]
