"""
Session log parsers for coding assistants.

This package provides one parser per assistant family, along with a
registry for routing files to the right parser.
"""

from aiobscura.parsers.base import (
    AssistantParser,
    ParseContext,
    ParseDataError,
    ParseFormatError,
    ParserError,
    SourcePattern,
)
from aiobscura.parsers.claude_code import ClaudeCodeParser
from aiobscura.parsers.codex import CodexParser
from aiobscura.parsers.registry import (
    ParserRegistry,
    create_all_parsers,
    get_default_registry,
)
from aiobscura.parsers.types import ParseResult

__all__ = [
    "AssistantParser",
    "ParseContext",
    "ParserError",
    "ParseFormatError",
    "ParseDataError",
    "SourcePattern",
    "ClaudeCodeParser",
    "CodexParser",
    "ParserRegistry",
    "create_all_parsers",
    "get_default_registry",
    "ParseResult",
]
