"""
Coarse session outcome heuristic.

A session "succeeded" when tools returned results and nothing errored.
This is a placeholder signal until outcomes are modelled explicitly.
"""

from typing import List

from aiobscura.analytics.engine import AnalyticsContext, AnalyticsPlugin, MetricOutput
from aiobscura.models.canonical import Message, MessageType, Session


class OutcomePlugin(AnalyticsPlugin):
    name = "core.outcome"
    version = "0.1.0"

    def analyze_session(
        self, session: Session, messages: List[Message], ctx: AnalyticsContext
    ) -> List[MetricOutput]:
        error_count = sum(1 for m in messages if m.message_type == MessageType.ERROR)
        tool_result_count = sum(
            1 for m in messages if m.message_type == MessageType.TOOL_RESULT
        )

        success = tool_result_count > 0 and error_count == 0
        if success:
            evidence = "tool_result_no_errors"
        elif tool_result_count > 0:
            evidence = "tool_result_with_errors"
        elif error_count > 0:
            evidence = "errors_only"
        else:
            evidence = "insufficient_signal"

        return [
            MetricOutput.session(session.id, "outcome_success", success),
            MetricOutput.session(session.id, "outcome_evidence_type", evidence),
            MetricOutput.session(
                session.id,
                "outcome_notes",
                f"tool_results={tool_result_count} errors={error_count}",
            ),
        ]
