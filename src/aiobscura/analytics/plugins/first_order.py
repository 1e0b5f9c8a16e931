"""
First-order session metrics: token totals, tool usage, errors and duration.
"""

from collections import Counter
from typing import List

from aiobscura.analytics.engine import (
    AnalyticsContext,
    AnalyticsPlugin,
    MetricOutput,
    Trigger,
)
from aiobscura.models.canonical import Message, MessageType, Session


class FirstOrderMetricsPlugin(AnalyticsPlugin):
    """Counts that need no interpretation of message content."""

    name = "core.first_order"
    version = "1.0.0"

    def triggers(self) -> List[Trigger]:
        return [Trigger.ON_DEMAND, Trigger.ON_INGEST]

    def analyze_session(
        self, session: Session, messages: List[Message], ctx: AnalyticsContext
    ) -> List[MetricOutput]:
        tokens_in = sum(m.tokens_in or 0 for m in messages)
        tokens_out = sum(m.tokens_out or 0 for m in messages)
        breakdown: Counter = Counter()
        tool_result_count = 0
        error_count = 0

        for message in messages:
            if message.message_type == MessageType.TOOL_CALL:
                breakdown[message.tool_name or "unknown"] += 1
            elif message.message_type == MessageType.TOOL_RESULT:
                tool_result_count += 1
            elif message.message_type == MessageType.ERROR:
                error_count += 1

        tool_call_count = sum(breakdown.values())
        if messages:
            timestamps = [m.emitted_at for m in messages]
            duration_ms = int((max(timestamps) - min(timestamps)).total_seconds() * 1000)
        else:
            duration_ms = 0
        success_rate = tool_result_count / tool_call_count if tool_call_count else 0.0

        return [
            MetricOutput.session(session.id, "tokens_in", tokens_in),
            MetricOutput.session(session.id, "tokens_out", tokens_out),
            MetricOutput.session(session.id, "tokens_total", tokens_in + tokens_out),
            MetricOutput.session(session.id, "tool_call_count", tool_call_count),
            MetricOutput.session(session.id, "tool_call_breakdown", dict(breakdown)),
            MetricOutput.session(session.id, "error_count", error_count),
            MetricOutput.session(session.id, "duration_ms", duration_ms),
            MetricOutput.session(session.id, "tool_success_rate", success_rate),
        ]
