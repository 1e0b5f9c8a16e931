"""
HTTP client for the remote collector.

Pushes event batches to the collector API with bearer authentication.
All calls are async; ``send_events_with_retry`` backs off exponentially
on server errors and transport failures.
"""

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from aiobscura.collector.events import CollectorEvent, EventBatch
from aiobscura.config import CollectorSettings
from aiobscura.exceptions import CollectorError, ConfigError

logger = logging.getLogger(__name__)

INITIAL_RETRY_DELAY = 0.5
MAX_RETRY_DELAY = 30.0


class EventsResponse(BaseModel):
    accepted: int
    rejected: int = 0
    session_status: Optional[str] = None


class SessionStatus(BaseModel):
    session_id: str
    last_sequence: int
    event_count: int
    status: str


def retry_delay(attempt: int) -> float:
    """Backoff before retry ``attempt`` (1-based): 0.5s, 1s, 2s, ... up to 30s."""
    return min(INITIAL_RETRY_DELAY * (2 ** (attempt - 1)), MAX_RETRY_DELAY)


class CollectorClient:
    """
    Async client for the collector events API.

    Example:
        >>> async with CollectorClient(settings.collector) as client:
        >>>     await client.send_events_with_retry(batch)
    """

    def __init__(
        self,
        config: CollectorSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not config.server_url:
            raise ConfigError("collector.server_url is required")
        config.validate_ready()

        self.config = config
        self.base_url = config.server_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        if config.collector_id:
            headers["X-Collector-ID"] = config.collector_id

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=float(config.timeout_secs),
            transport=transport,
        )
        # Replaced in tests to avoid real waits
        self._sleep = asyncio.sleep

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CollectorClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def batch_size(self) -> int:
        return self.config.batch_size

    @property
    def flush_interval(self) -> float:
        return float(self.config.flush_interval_secs)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise CollectorError(f"HTTP request failed: {e}") from e

    @staticmethod
    def _api_error(response: httpx.Response) -> CollectorError:
        return CollectorError(
            f"API error ({response.status_code}): {response.text[:200]}",
            status_code=response.status_code,
        )

    @staticmethod
    def _parse(model: type, response: httpx.Response) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise CollectorError(
                f"failed to parse response: {e}", status_code=response.status_code
            ) from e

    async def send_events(self, batch: EventBatch) -> EventsResponse:
        """
        POST one batch to ``/collectors/events``.

        Raises:
            CollectorError: On transport failure or a non-2xx response
        """
        response = await self._request("POST", "/collectors/events", json=batch.to_wire())
        if response.is_success:
            return self._parse(EventsResponse, response)
        raise self._api_error(response)

    async def send_events_with_retry(self, batch: EventBatch) -> EventsResponse:
        """
        Send a batch, retrying transient failures.

        At most ``max_retries + 1`` requests are made. 5xx responses and
        transport errors are retried; other errors are raised immediately.
        """
        last_error: Optional[CollectorError] = None
        for attempt in range(self.config.max_retries + 1):
            if attempt > 0:
                delay = retry_delay(attempt)
                logger.debug(
                    f"Retrying send_events (attempt {attempt + 1}/"
                    f"{self.config.max_retries + 1}), waiting {delay:.1f}s"
                )
                await self._sleep(delay)
            try:
                return await self.send_events(batch)
            except CollectorError as e:
                if not e.is_retryable:
                    raise
                logger.warning(f"Transient error sending events: {e}")
                last_error = e

        raise last_error or CollectorError("max retries exceeded")

    async def get_session_status(self, session_id: str) -> Optional[SessionStatus]:
        """Remote status of a session, or None if the server does not know it."""
        response = await self._request(
            "GET", f"/collectors/sessions/{quote(session_id, safe='')}"
        )
        if response.is_success:
            return self._parse(SessionStatus, response)
        if response.status_code == 404:
            return None
        raise self._api_error(response)

    async def ensure_session_started(
        self, session_id: str, start_event: CollectorEvent
    ) -> bool:
        """
        Make sure the server knows the session.

        Returns:
            True if the start event was sent, False if the session existed
        """
        if await self.get_session_status(session_id) is not None:
            return False
        await self.send_events_with_retry(
            EventBatch(session_id=session_id, events=[start_event])
        )
        return True

    async def complete_session(
        self,
        session_id: str,
        outcome: str,
        summary: Optional[str] = None,
        event_count: Optional[int] = None,
    ) -> bool:
        """
        Mark a session completed.

        Returns:
            True on success, False if the server does not know the session
        """
        response = await self._request(
            "POST",
            f"/collectors/sessions/{quote(session_id, safe='')}/complete",
            json={"event_count": event_count, "outcome": outcome, "summary": summary},
        )
        if response.is_success:
            return True
        if response.status_code == 404:
            return False
        raise self._api_error(response)

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return response.is_success
