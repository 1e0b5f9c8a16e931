"""Remote collector: wire events, HTTP client and batching publisher."""

from aiobscura.collector.client import CollectorClient, EventsResponse, SessionStatus
from aiobscura.collector.events import (
    CollectorEvent,
    EventBatch,
    canonical_json,
    compute_event_hash,
)
from aiobscura.collector.publisher import Publisher, PublishStats, SyncPublisher

__all__ = [
    "CollectorClient",
    "CollectorEvent",
    "EventBatch",
    "EventsResponse",
    "PublishStats",
    "Publisher",
    "SessionStatus",
    "SyncPublisher",
    "canonical_json",
    "compute_event_hash",
]
