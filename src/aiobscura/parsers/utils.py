"""
Utility functions for parsing assistant logs.

This module provides common utilities used by the parsers, including
timestamp parsing, nested lookups and content flattening.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from dateutil import parser as date_parser


def parse_iso_timestamp(timestamp_str: str) -> datetime:
    """
    Parse an ISO 8601 timestamp string to an aware UTC datetime.

    Args:
        timestamp_str: ISO 8601 formatted timestamp (e.g., "2025-10-16T19:12:28.024Z")

    Returns:
        Parsed datetime in UTC (naive input is taken as UTC)

    Raises:
        ValueError: If the timestamp string is invalid
    """
    try:
        parsed = date_parser.isoparse(timestamp_str)
    except (ValueError, TypeError, OverflowError) as e:
        raise ValueError(f"Invalid timestamp format: {timestamp_str}") from e

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def try_parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return parse_iso_timestamp(value)
    except ValueError:
        return None


def safe_get_nested(data: Any, *keys: Any, default: Any = None) -> Optional[Any]:
    """
    Safely get a nested dictionary value.

    Args:
        data: The dictionary to search
        *keys: Sequence of keys (or list indexes) to traverse
        default: Default value if path doesn't exist

    Returns:
        The value at the nested path, or default if not found

    Example:
        >>> data = {"message": {"content": [{"type": "text"}]}}
        >>> safe_get_nested(data, "message", "content", 0, "type")
        'text'
        >>> safe_get_nested(data, "message", "missing", "key", default="N/A")
        'N/A'
    """
    current = data
    for key in keys:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            try:
                current = current[key]
            except IndexError:
                return default
        else:
            return default

        if current is None:
            return default

    return current


def extract_text_content(content: Any) -> str:
    """
    Extract text from a content field.

    Content can be a plain string or a list of typed blocks; only
    ``text`` blocks contribute.
    """
    if isinstance(content, str):
        return content

    if isinstance(content, list):
        text_parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text_parts.append(item.get("text", ""))
            elif isinstance(item, str):
                text_parts.append(item)
        return "\n".join(text_parts)

    return ""


def stringify_tool_result(content: Any) -> str:
    """
    Render a tool result payload as text.

    Strings pass through, block lists are flattened to their text, and
    anything else is JSON-encoded.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text = extract_text_content(content)
        if text or not content:
            return text
    return json.dumps(content, ensure_ascii=False)


def dir_name(path: str) -> str:
    """Final component of a directory path (``/a/b/`` -> ``b``)."""
    stripped = path.rstrip("/\\")
    return Path(stripped).name or stripped


def decode_json_line(data: bytes) -> Any:
    """
    Decode one JSONL line.

    Raises:
        ValueError: If the bytes are not UTF-8 or not valid JSON
    """
    return json.loads(data.decode("utf-8"))
