"""Built-in analytics plugins."""

from typing import List

from aiobscura.analytics.engine import AnalyticsPlugin
from aiobscura.analytics.plugins.edit_churn import EditChurnPlugin
from aiobscura.analytics.plugins.first_order import FirstOrderMetricsPlugin
from aiobscura.analytics.plugins.outcome import OutcomePlugin


def default_plugins() -> List[AnalyticsPlugin]:
    return [FirstOrderMetricsPlugin(), EditChurnPlugin(), OutcomePlugin()]


__all__ = ["EditChurnPlugin", "FirstOrderMetricsPlugin", "OutcomePlugin", "default_plugins"]
