"""
Batching publisher for collector events.

Messages are buffered per session and sent once a buffer reaches the batch
size or its flush interval elapses. Publishing runs after the local commit;
failures are logged and counted, never raised to the ingest path.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from aiobscura.collector.client import CollectorClient
from aiobscura.collector.events import CollectorEvent, EventBatch
from aiobscura.config import CollectorSettings
from aiobscura.exceptions import CollectorError
from aiobscura.models.canonical import Message, Session

logger = logging.getLogger(__name__)

SessionLookup = Callable[[str], Optional[Session]]


@dataclass
class PublishStats:
    events_sent: int = 0
    events_rejected: int = 0
    api_calls: int = 0
    api_failures: int = 0
    sessions_started: int = 0


@dataclass
class _SessionBuffer:
    session_id: str
    events: List[CollectorEvent] = field(default_factory=list)
    last_flush: float = field(default_factory=time.monotonic)


class Publisher:
    """
    Async per-session event buffer in front of a CollectorClient.

    Args:
        client: Collector client to send through
        session_lookup: Optional callable returning the canonical Session for
            an id; when given, a ``session_start`` event is sent before a
            session's first batch
    """

    def __init__(
        self, client: CollectorClient, session_lookup: Optional[SessionLookup] = None
    ):
        self.client = client
        self.session_lookup = session_lookup
        self._buffers: dict[str, _SessionBuffer] = {}
        self._started: set[str] = set()
        self._stats = PublishStats()

    @classmethod
    def from_settings(
        cls,
        config: CollectorSettings,
        session_lookup: Optional[SessionLookup] = None,
    ) -> Optional["Publisher"]:
        """A publisher, or None unless the collector is enabled and configured."""
        if not config.is_ready:
            return None
        return cls(CollectorClient(config), session_lookup)

    async def queue(self, messages: Iterable[Message]) -> int:
        """
        Buffer messages and flush any session that reached the batch size.

        Returns:
            Number of events the server accepted during this call
        """
        total_sent = 0
        touched: List[str] = []
        for message in messages:
            buffer = self._buffers.get(message.session_id)
            if buffer is None:
                buffer = _SessionBuffer(session_id=message.session_id)
                self._buffers[message.session_id] = buffer
            buffer.events.append(CollectorEvent.from_message(message))
            if message.session_id not in touched:
                touched.append(message.session_id)

        for session_id in touched:
            while len(self._buffers[session_id].events) >= self.client.batch_size:
                sent = await self._flush_session(session_id, self.client.batch_size)
                if sent is None:
                    break
                total_sent += sent
        return total_sent

    async def flush_due(self) -> int:
        """Flush sessions whose flush interval has elapsed."""
        now = time.monotonic()
        total_sent = 0
        for session_id, buffer in list(self._buffers.items()):
            if buffer.events and now - buffer.last_flush >= self.client.flush_interval:
                total_sent += await self._flush_session(session_id) or 0
        return total_sent

    async def flush_all(self) -> int:
        total_sent = 0
        for session_id in list(self._buffers):
            while self._buffers[session_id].events:
                sent = await self._flush_session(session_id, self.client.batch_size)
                if sent is None:
                    break
                total_sent += sent
        return total_sent

    async def _ensure_started(self, session_id: str) -> None:
        if session_id in self._started or self.session_lookup is None:
            return
        session = self.session_lookup(session_id)
        if session is None:
            return
        if await self.client.ensure_session_started(
            session_id, CollectorEvent.session_start(session)
        ):
            self._stats.sessions_started += 1
        self._started.add(session_id)

    async def _flush_session(
        self, session_id: str, limit: Optional[int] = None
    ) -> Optional[int]:
        """
        Send up to ``limit`` buffered events of one session.

        Returns:
            Accepted count, or None if the send failed (events are dropped)
        """
        buffer = self._buffers.get(session_id)
        if buffer is None or not buffer.events:
            return 0

        count = limit or len(buffer.events)
        events = buffer.events[:count]
        del buffer.events[:count]
        buffer.last_flush = time.monotonic()

        self._stats.api_calls += 1
        try:
            await self._ensure_started(session_id)
            response = await self.client.send_events_with_retry(
                EventBatch(session_id=session_id, events=events)
            )
        except CollectorError as e:
            self._stats.api_failures += 1
            logger.warning(f"Failed to publish {len(events)} events for {session_id}: {e}")
            return None

        self._stats.events_sent += response.accepted
        self._stats.events_rejected += response.rejected
        logger.debug(
            f"Published events for {session_id}: "
            f"accepted={response.accepted} rejected={response.rejected}"
        )
        return response.accepted

    @property
    def stats(self) -> PublishStats:
        return self._stats

    def pending_count(self) -> int:
        return sum(len(b.events) for b in self._buffers.values())

    def has_pending(self) -> bool:
        return any(b.events for b in self._buffers.values())

    async def close(self) -> None:
        await self.client.close()


class SyncPublisher:
    """
    Blocking wrapper around Publisher for synchronous callers.

    Owns a private event loop so the async client stays bound to one loop.

    Example:
        >>> publisher = SyncPublisher.from_settings(settings.collector)
        >>> if publisher:
        >>>     publisher.queue(messages)
        >>>     publisher.flush_all()
        >>>     publisher.close()
    """

    def __init__(self, inner: Publisher):
        self.inner = inner
        self._loop = asyncio.new_event_loop()

    @classmethod
    def from_settings(
        cls,
        config: CollectorSettings,
        session_lookup: Optional[SessionLookup] = None,
    ) -> Optional["SyncPublisher"]:
        publisher = Publisher.from_settings(config, session_lookup)
        return cls(publisher) if publisher is not None else None

    def queue(self, messages: Iterable[Message]) -> int:
        return self._loop.run_until_complete(self.inner.queue(list(messages)))

    def flush_due(self) -> int:
        return self._loop.run_until_complete(self.inner.flush_due())

    def flush_all(self) -> int:
        return self._loop.run_until_complete(self.inner.flush_all())

    @property
    def stats(self) -> PublishStats:
        return self.inner.stats

    def pending_count(self) -> int:
        return self.inner.pending_count()

    def has_pending(self) -> bool:
        return self.inner.has_pending()

    def close(self) -> None:
        try:
            self._loop.run_until_complete(self.inner.close())
        finally:
            self._loop.close()
