"""
Edit churn: how often the assistant rewrote the same files.

High-churn files are statistical outliers among a session's per-file edit
counts; bursts are three or more edits to one file within two minutes,
which usually means a trial-and-error loop.
"""

import difflib
import statistics
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Any, List, Optional, Tuple

from aiobscura.analytics.engine import AnalyticsContext, AnalyticsPlugin, MetricOutput
from aiobscura.models.canonical import Message, MessageType, Session

EDIT_TOOLS = {"Edit", "edit", "Write", "write", "MultiEdit"}

HIGH_CHURN_MIN_EDITS = 3
MIN_FILES_FOR_STATS = 5
OUTLIER_STDDEV_MULTIPLIER = 2.0

BURST_SIZE = 3
BURST_WINDOW = timedelta(minutes=2)

# Planning documents written by the assistant, not project code
EXCLUDED_PATH_PATTERNS = (
    "/.claude/plans/",
    "/.claude/todos/",
    "/PLAN.md",
    "/IMPLEMENTATION.md",
    "/DESIGN.md",
    "/ARCHITECTURE.md",
)


def _file_path(tool_input: Any) -> Optional[str]:
    if not isinstance(tool_input, dict):
        return None
    path = tool_input.get("file_path") or tool_input.get("filePath")
    return path if isinstance(path, str) and path else None


def _is_excluded(path: str) -> bool:
    return any(pattern in path for pattern in EXCLUDED_PATH_PATTERNS)


def _diff_counts(old_text: str, new_text: str) -> Tuple[int, int]:
    """Return (added, removed) line counts using ndiff."""
    added = removed = 0
    for line in difflib.ndiff(old_text.splitlines(), new_text.splitlines()):
        if line.startswith("+ "):
            added += 1
        elif line.startswith("- "):
            removed += 1
    return added, removed


def line_changes(tool_name: Optional[str], tool_input: dict) -> Tuple[int, int]:
    """
    Lines added and removed by one edit tool call.

    Edit diffs ``old_string`` against ``new_string``; Write counts every
    line of ``content`` as added; MultiEdit sums the diffs of its ``edits``.
    """
    if tool_name in ("Edit", "edit"):
        return _diff_counts(
            tool_input.get("old_string") or "", tool_input.get("new_string") or ""
        )
    if tool_name in ("Write", "write"):
        content = tool_input.get("content") or ""
        return len(content.splitlines()), 0
    if tool_name == "MultiEdit":
        added = removed = 0
        for edit in tool_input.get("edits") or []:
            if isinstance(edit, dict):
                a, r = _diff_counts(edit.get("old_string") or "", edit.get("new_string") or "")
                added += a
                removed += r
        return added, removed
    return 0, 0


def high_churn_threshold(counts: List[int]) -> float:
    """
    Edit count at which a file is an outlier: ``max(3, median + 2 * stddev)``.

    Sessions touching fewer than five files use the floor of 3.
    """
    if len(counts) < MIN_FILES_FOR_STATS:
        return float(HIGH_CHURN_MIN_EDITS)
    spread = statistics.median(counts) + OUTLIER_STDDEV_MULTIPLIER * statistics.pstdev(counts)
    return max(float(HIGH_CHURN_MIN_EDITS), spread)


def count_bursts(timestamps: List[datetime]) -> int:
    """Windows of three consecutive edits that fit within two minutes."""
    ordered = sorted(timestamps)
    return sum(
        1
        for i in range(len(ordered) - BURST_SIZE + 1)
        if ordered[i + BURST_SIZE - 1] - ordered[i] <= BURST_WINDOW
    )


def _extension(path: str) -> str:
    suffix = PurePosixPath(path).suffix
    return suffix[1:] if suffix else "no_ext"


class EditChurnPlugin(AnalyticsPlugin):
    """File modification patterns of Edit, Write and MultiEdit tool calls."""

    name = "core.edit_churn"
    version = "1.0.0"

    def analyze_session(
        self, session: Session, messages: List[Message], ctx: AnalyticsContext
    ) -> List[MetricOutput]:
        file_counts: Counter = Counter()
        extension_counts: Counter = Counter()
        edit_times: defaultdict[str, List[datetime]] = defaultdict(list)
        lines_added = lines_removed = 0

        for message in messages:
            if (
                message.message_type != MessageType.TOOL_CALL
                or message.tool_name not in EDIT_TOOLS
            ):
                continue
            path = _file_path(message.tool_input)
            if path is None or _is_excluded(path):
                continue

            file_counts[path] += 1
            extension_counts[_extension(path)] += 1
            edit_times[path].append(message.emitted_at)
            added, removed = line_changes(message.tool_name, message.tool_input)
            lines_added += added
            lines_removed += removed

        edit_count = sum(file_counts.values())
        unique_files = len(file_counts)
        churn_ratio = (edit_count - unique_files) / edit_count if edit_count else 0.0

        threshold = high_churn_threshold(list(file_counts.values()))
        ranked = file_counts.most_common()
        high_churn_files = [path for path, count in ranked if count >= threshold]

        burst_edit_files = {}
        for path, times in edit_times.items():
            bursts = count_bursts(times)
            if bursts:
                burst_edit_files[path] = bursts

        first_try_files = sum(1 for count in file_counts.values() if count == 1)
        first_try_rate = first_try_files / unique_files if unique_files else 0.0

        sid = session.id
        return [
            MetricOutput.session(sid, "edit_count", edit_count),
            MetricOutput.session(sid, "unique_files", unique_files),
            MetricOutput.session(sid, "churn_ratio", churn_ratio),
            MetricOutput.session(sid, "file_edit_counts", dict(ranked)),
            MetricOutput.session(sid, "high_churn_files", high_churn_files),
            MetricOutput.session(sid, "high_churn_threshold", threshold),
            MetricOutput.session(sid, "burst_edit_files", burst_edit_files),
            MetricOutput.session(sid, "burst_edit_count", sum(burst_edit_files.values())),
            MetricOutput.session(sid, "lines_added", lines_added),
            MetricOutput.session(sid, "lines_removed", lines_removed),
            MetricOutput.session(sid, "lines_changed", lines_added + lines_removed),
            MetricOutput.session(
                sid, "edits_by_extension", dict(extension_counts.most_common())
            ),
            MetricOutput.session(sid, "first_try_files", first_try_files),
            MetricOutput.session(sid, "first_try_rate", first_try_rate),
        ]
