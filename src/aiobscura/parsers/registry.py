"""
Parser registry for routing source files to assistant parsers.

The registry is a flat list: each parser owns a root directory and a set of
glob patterns, and a file belongs to the first parser whose root contains
it and whose pattern matches.
"""

import logging
from pathlib import Path
from typing import List, Optional

from aiobscura.config import Settings
from aiobscura.models.canonical import Assistant
from aiobscura.parsers.base import AssistantParser

logger = logging.getLogger(__name__)


class ParserRegistry:
    """
    Registry of assistant parsers.

    Example:
        >>> from aiobscura.parsers.claude_code import ClaudeCodeParser
        >>> registry = ParserRegistry()
        >>> registry.register(ClaudeCodeParser())
        >>> parser = registry.parser_for_file(Path("~/.claude/projects/-x/s.jsonl"))
    """

    def __init__(self) -> None:
        self._parsers: List[AssistantParser] = []

    def register(self, parser: AssistantParser) -> None:
        """
        Register a parser implementation.

        Parsers are tried in registration order.
        """
        self._parsers.append(parser)
        logger.debug(f"Registered parser: {type(parser).__name__}")

    @property
    def parsers(self) -> List[AssistantParser]:
        return list(self._parsers)

    def installed(self) -> List[AssistantParser]:
        """Parsers whose root directory exists."""
        return [p for p in self._parsers if p.is_installed()]

    def parser_for_assistant(self, assistant: Assistant) -> Optional[AssistantParser]:
        for parser in self._parsers:
            if parser.assistant() == assistant:
                return parser
        return None

    def parser_for_file(self, file_path: Path) -> Optional[AssistantParser]:
        """
        Find the parser responsible for a file.

        Args:
            file_path: Path to a log file

        Returns:
            The first parser whose root contains the file and whose source
            pattern matches it, or None
        """
        for parser in self._parsers:
            try:
                if parser.matches(file_path):
                    return parser
            except OSError as e:
                logger.debug(f"Parser {type(parser).__name__} check failed: {e}")
        return None

    @property
    def registered_parsers(self) -> List[str]:
        return [type(parser).__name__ for parser in self._parsers]


def create_all_parsers(cfg: Optional[Settings] = None) -> List[AssistantParser]:
    """
    Fresh instances of every built-in parser.

    Args:
        cfg: Settings whose root overrides to honor (default: the global
            settings, read by each parser)
    """
    from aiobscura.parsers.claude_code import ClaudeCodeParser
    from aiobscura.parsers.codex import CodexParser

    if cfg is None:
        return [ClaudeCodeParser(), CodexParser()]

    claude_root = (
        Path(cfg.claude_code_path).expanduser()
        if cfg.claude_code_path
        else Path.home() / ".claude"
    )
    codex_root = Path(cfg.codex_path).expanduser() if cfg.codex_path else Path.home() / ".codex"
    return [ClaudeCodeParser(root=claude_root), CodexParser(root=codex_root)]


# Global registry instance (singleton pattern)
_default_registry: Optional[ParserRegistry] = None


def get_default_registry() -> ParserRegistry:
    """
    Get the default global parser registry.

    The registry is lazy-initialized on first access and includes all
    built-in parsers. Multiple calls return the same instance.
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = ParserRegistry()
        for parser in create_all_parsers():
            _default_registry.register(parser)
        logger.debug("Initialized default parser registry")

    return _default_registry
