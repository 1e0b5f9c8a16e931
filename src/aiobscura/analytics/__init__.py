"""Session analytics: plugin engine and built-in metric plugins."""

from aiobscura.analytics.engine import (
    METRIC_VERSION,
    AnalyticsContext,
    AnalyticsEngine,
    AnalyticsPlugin,
    MetricOutput,
    PluginRunResult,
    PluginRunStatus,
    Trigger,
)

__all__ = [
    "METRIC_VERSION",
    "AnalyticsContext",
    "AnalyticsEngine",
    "AnalyticsPlugin",
    "MetricOutput",
    "PluginRunResult",
    "PluginRunStatus",
    "Trigger",
]
