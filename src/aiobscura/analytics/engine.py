"""
Analytics engine.

Plugins compute metrics from a session's messages. The engine runs each
plugin under a wall-clock budget, replaces the plugin's previous metrics
for the session on success, and records every run in ``plugin_runs``.
"""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple

from aiobscura.config import Settings
from aiobscura.db.store import MetricRecord, SessionFilter, Store
from aiobscura.exceptions import ConfigError, StoreError
from aiobscura.models.canonical import Message, Session

logger = logging.getLogger(__name__)

# Bump when stored metric shapes change; older rows are recomputed
METRIC_VERSION = 1

DEFAULT_TIMEOUT_MS = 30_000
TIMEOUT_ERROR = "timeout"

# Upper bound on messages loaded per session for analysis
MAX_SESSION_MESSAGES = 100_000


class Trigger(str, Enum):
    """When a plugin wants to run."""

    ON_DEMAND = "on_demand"
    ON_SESSION_CLOSE = "on_session_close"
    ON_INGEST = "on_ingest"


class PluginRunStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class MetricOutput:
    """A metric produced by a plugin, before it is stored."""

    entity_type: str
    entity_id: str
    metric_name: str
    metric_value: Any

    @classmethod
    def session(cls, session_id: str, name: str, value: Any) -> "MetricOutput":
        return cls(
            entity_type="session", entity_id=session_id, metric_name=name, metric_value=value
        )

    @classmethod
    def project(cls, project_id: str, name: str, value: Any) -> "MetricOutput":
        return cls(
            entity_type="project", entity_id=project_id, metric_name=name, metric_value=value
        )


@dataclass
class AnalyticsContext:
    """Read access handed to plugins."""

    store: Store
    settings: Optional[Settings] = None


@dataclass
class PluginRunResult:
    plugin_name: str
    session_id: Optional[str]
    started_at: datetime
    status: PluginRunStatus
    metrics_produced: int = 0
    duration_ms: float = 0.0
    error_message: Optional[str] = None
    plugin_version: str = ""
    metric_version: int = METRIC_VERSION

    @property
    def is_success(self) -> bool:
        return self.status == PluginRunStatus.SUCCESS


class AnalyticsPlugin(ABC):
    """
    Contract for analytics plugins.

    Subclasses set ``name`` (namespaced, e.g. ``core.first_order``) and
    ``version``, and implement ``analyze_session``. Raising from
    ``analyze_session`` marks the run as an error.
    """

    name: str = ""
    version: str = "1.0.0"

    def triggers(self) -> List[Trigger]:
        return [Trigger.ON_DEMAND]

    @abstractmethod
    def analyze_session(
        self, session: Session, messages: List[Message], ctx: AnalyticsContext
    ) -> List[MetricOutput]:
        ...


class AnalyticsEngine:
    """
    Registry and runner for analytics plugins.

    Example:
        >>> engine = AnalyticsEngine()
        >>> engine.register(FirstOrderMetricsPlugin())
        >>> result = engine.run_plugin("core.first_order", session, messages, store)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._plugins: List[AnalyticsPlugin] = []
        self.settings = settings
        self.default_timeout_ms = DEFAULT_TIMEOUT_MS
        self.plugin_timeouts_ms: dict[str, int] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, plugins: Optional[Iterable[AnalyticsPlugin]] = None
    ) -> "AnalyticsEngine":
        """
        Build an engine from configuration.

        Registers the built-in plugins (or ``plugins``) except those listed
        in ``analytics.disabled_plugins`` and applies the configured
        timeouts.
        """
        from aiobscura.analytics.plugins import default_plugins

        engine = cls(settings)
        disabled = set(settings.analytics.disabled_plugins)
        for plugin in plugins if plugins is not None else default_plugins():
            if plugin.name in disabled:
                logger.info(f"Analytics plugin disabled by config: {plugin.name}")
                continue
            engine.register(plugin)
        engine.set_default_timeout_ms(settings.analytics.timeout_ms)
        engine.set_plugin_timeouts_ms(settings.analytics.plugin_timeouts)
        return engine

    def register(self, plugin: AnalyticsPlugin) -> None:
        if not plugin.name:
            raise ConfigError(f"Plugin {type(plugin).__name__} has no name")
        if self.has_plugin(plugin.name):
            raise ConfigError(f"Plugin already registered: {plugin.name}")
        self._plugins.append(plugin)
        logger.debug(f"Registered analytics plugin: {plugin.name}")

    def plugin_names(self) -> List[str]:
        return [p.name for p in self._plugins]

    def has_plugin(self, name: str) -> bool:
        return any(p.name == name for p in self._plugins)

    def set_default_timeout_ms(self, timeout_ms: int) -> None:
        self.default_timeout_ms = max(1, int(timeout_ms))

    def set_plugin_timeouts_ms(self, plugin_timeouts_ms: dict[str, int]) -> None:
        self.plugin_timeouts_ms = {
            name: max(1, int(ms)) for name, ms in plugin_timeouts_ms.items()
        }

    def timeout_for_plugin_ms(self, plugin_name: str) -> int:
        return self.plugin_timeouts_ms.get(plugin_name, self.default_timeout_ms)

    def _get_plugin(self, name: str) -> AnalyticsPlugin:
        for plugin in self._plugins:
            if plugin.name == name:
                return plugin
        raise ConfigError(f"Plugin not found: {name}")

    def run_plugin(
        self,
        plugin_name: str,
        session: Session,
        messages: List[Message],
        store: Store,
    ) -> PluginRunResult:
        """
        Run one plugin on a session and persist the outcome.

        On success the plugin's metrics replace every metric it previously
        stored for the session, in the same transaction that records the
        run. On failure or timeout nothing but the run row is written.

        Raises:
            ConfigError: If no plugin with that name is registered
        """
        plugin = self._get_plugin(plugin_name)
        timeout_ms = self.timeout_for_plugin_ms(plugin.name)
        ctx = AnalyticsContext(store=store, settings=self.settings)
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        logger.debug(
            f"Running plugin {plugin.name} on {session.id} "
            f"({len(messages)} messages, timeout {timeout_ms}ms)"
        )

        outputs: Optional[List[MetricOutput]] = None
        error_message: Optional[str] = None
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="analytics")
        try:
            future = executor.submit(plugin.analyze_session, session, messages, ctx)
            outputs = list(future.result(timeout=timeout_ms / 1000.0))
        except FutureTimeoutError:
            error_message = TIMEOUT_ERROR
            logger.warning(
                f"Plugin {plugin.name} exceeded {timeout_ms}ms on {session.id}; "
                f"dropping its metrics"
            )
        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.error(f"Plugin {plugin.name} failed on {session.id}: {e}", exc_info=True)
        finally:
            # A timed-out worker is abandoned, not joined
            executor.shutdown(wait=False)

        duration_ms = (time.monotonic() - start) * 1000
        result = PluginRunResult(
            plugin_name=plugin.name,
            session_id=session.id,
            started_at=started_at,
            status=PluginRunStatus.ERROR if outputs is None else PluginRunStatus.SUCCESS,
            metrics_produced=len(outputs) if outputs is not None else 0,
            duration_ms=duration_ms,
            error_message=error_message,
            plugin_version=plugin.version,
            metric_version=METRIC_VERSION,
        )

        if outputs is None:
            try:
                store.record_plugin_run(result)
            except StoreError as e:
                logger.warning(f"Failed to record plugin run: {e}")
            return result

        computed_at = datetime.now(timezone.utc)
        records = [
            MetricRecord(
                session_id=session.id,
                plugin_name=plugin.name,
                entity_type=output.entity_type,
                entity_id=output.entity_id,
                metric_name=output.metric_name,
                metric_value=output.metric_value,
                plugin_version=plugin.version,
                metric_version=METRIC_VERSION,
                computed_at=computed_at,
            )
            for output in outputs
        ]
        with store.begin() as txn:
            txn.replace_plugin_metrics(session.id, plugin.name, records)
            txn.record_plugin_run(result)

        logger.info(
            f"Plugin {plugin.name} produced {len(records)} metrics for {session.id} "
            f"in {duration_ms:.1f}ms"
        )
        return result

    def run_all(
        self, session: Session, messages: List[Message], store: Store
    ) -> List[PluginRunResult]:
        """Run every registered plugin; a failing plugin does not stop the others."""
        return [
            self.run_plugin(plugin.name, session, messages, store)
            for plugin in self._plugins
        ]

    def run_all_sessions(
        self, store: Store, filter: Optional[SessionFilter] = None
    ) -> Tuple[int, List[str]]:
        """
        Run every plugin on every stored session.

        Returns:
            (number of plugin runs, error descriptions)
        """
        total_runs = 0
        errors: List[str] = []
        for session in store.list_sessions(filter or SessionFilter()):
            messages = store.get_session_messages(session.id, MAX_SESSION_MESSAGES)
            for result in self.run_all(session, messages, store):
                total_runs += 1
                if result.error_message:
                    errors.append(
                        f"{result.plugin_name} on {session.id}: {result.error_message}"
                    )
        return total_runs, errors

    def ensure_plugin_metrics(
        self, session_id: str, store: Store, plugin_name: str = "core.first_order"
    ) -> List[MetricRecord]:
        """
        Return a plugin's metrics for a session, recomputing them if stale.

        Metrics are stale when missing, computed before the session's last
        message, or stored under an older metric version.

        Raises:
            SessionNotFoundError: If the session does not exist
            ConfigError: If the plugin is not registered
        """
        computed_at, metric_version = store.get_plugin_metrics_state(session_id, plugin_name)
        if computed_at is not None and (metric_version or 0) >= METRIC_VERSION:
            last_message_at = store.get_session_last_message_ts(session_id)
            if last_message_at is None or computed_at >= last_message_at:
                logger.debug(f"Using cached {plugin_name} metrics for {session_id}")
                return store.get_plugin_metrics(session_id=session_id, plugin_name=plugin_name)
            logger.debug(f"{plugin_name} metrics for {session_id} are stale, recomputing")

        session = store.require_session(session_id)
        messages = store.get_session_messages(session_id, MAX_SESSION_MESSAGES)
        self.run_plugin(plugin_name, session, messages, store)
        return store.get_plugin_metrics(session_id=session_id, plugin_name=plugin_name)
