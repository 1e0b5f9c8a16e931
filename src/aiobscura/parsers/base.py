"""
Base parser contract and exception classes for assistant log parsers.

This module defines the interface that every assistant parser implements,
as well as the common exception types for parser errors.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from aiobscura.exceptions import ParseError
from aiobscura.models.canonical import Assistant, Checkpoint, FileType, SourceFile

if TYPE_CHECKING:
    from aiobscura.parsers.types import ParseResult

logger = logging.getLogger(__name__)


class ParserError(ParseError):
    """Base exception for fatal parser errors (the file could not be read)."""

    pass


class ParseFormatError(ParserError):
    """Raised when the log format is invalid or unrecognized."""

    pass


class ParseDataError(ParserError):
    """Raised when required data is missing or malformed."""

    pass


@dataclass(frozen=True)
class SourcePattern:
    """Glob (relative to the parser root) of files a parser consumes."""

    pattern: str
    file_type: FileType
    description: str


@dataclass
class ParseContext:
    """
    Input for one parse invocation.

    Attributes:
        path: File to parse
        checkpoint: Where the previous parse stopped
        file_size: Size observed at discovery time
        modified_at: Modification time observed at discovery time
        last_seq: Highest ``seq`` already stored for this file's thread;
            new messages continue from here
    """

    path: Path
    checkpoint: Checkpoint
    file_size: int
    modified_at: Optional[datetime] = None
    last_seq: int = 0

    @classmethod
    def from_source_file(
        cls, source_file: SourceFile, checkpoint: Optional[Checkpoint] = None, last_seq: int = 0
    ) -> "ParseContext":
        return cls(
            path=source_file.path,
            checkpoint=checkpoint or source_file.checkpoint,
            file_size=source_file.size_bytes,
            modified_at=source_file.modified_at,
            last_seq=last_seq,
        )


def stat_source_file(path: Path, assistant: Assistant, file_type: FileType) -> SourceFile:
    """
    Build a SourceFile from the current on-disk state of ``path``.

    Raises:
        OSError: If the file cannot be stat'ed
    """
    st = path.stat()
    birthtime = getattr(st, "st_birthtime", None)
    return SourceFile(
        path=path,
        assistant=assistant,
        file_type=file_type,
        size_bytes=st.st_size,
        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        created_at=(
            datetime.fromtimestamp(birthtime, tz=timezone.utc)
            if birthtime is not None
            else None
        ),
    )


class AssistantParser(ABC):
    """
    Contract for assistant log parsers.

    Implementations decode one vendor's JSONL dialect into canonical
    entities. They must be deterministic: identical bytes and checkpoint
    produce an identical ParseResult apart from ``observed_at``.
    """

    @abstractmethod
    def assistant(self) -> Assistant:
        """The assistant family this parser handles."""
        ...

    @abstractmethod
    def root_path(self) -> Optional[Path]:
        """
        Root directory the assistant writes to.

        Returns:
            Path (typically under the user home), or None if it cannot be
            determined
        """
        ...

    @abstractmethod
    def source_patterns(self) -> List[SourcePattern]:
        ...

    @abstractmethod
    def extract_project_path(self, file_path: Path) -> Optional[Path]:
        """Project directory encoded in a file's location, if any."""
        ...

    @abstractmethod
    def extract_session_id(self, file_path: Path) -> Optional[str]:
        ...

    @abstractmethod
    def parse(self, context: ParseContext) -> "ParseResult":
        """
        Parse new content of a file.

        Args:
            context: File, checkpoint and observed size

        Returns:
            ParseResult with the entities found after the checkpoint

        Raises:
            ParserError: Only when the file cannot be opened, sought or read.
                Malformed lines and records are reported as warnings.
        """
        ...

    def is_installed(self) -> bool:
        root = self.root_path()
        return root is not None and root.is_dir()

    def discover_files(self) -> List[SourceFile]:
        """
        Expand every source pattern under the root.

        Files that disappear between globbing and stat are skipped.

        Returns:
            Discovered files, sorted by path
        """
        root = self.root_path()
        if root is None or not root.is_dir():
            return []

        found: dict[Path, SourceFile] = {}
        for source_pattern in self.source_patterns():
            for path in root.glob(source_pattern.pattern):
                if path in found or not path.is_file():
                    continue
                try:
                    found[path] = stat_source_file(
                        path, self.assistant(), source_pattern.file_type
                    )
                except OSError as e:
                    logger.debug(f"Skipping {path}: {e}")
        return [found[p] for p in sorted(found)]

    def matches(self, file_path: Path) -> bool:
        """True if ``file_path`` lies under the root and matches a pattern."""
        root = self.root_path()
        if root is None:
            return False
        try:
            relative = file_path.relative_to(root)
        except ValueError:
            return False
        return any(relative.match(p.pattern) for p in self.source_patterns())

    def file_type_for(self, file_path: Path) -> FileType:
        root = self.root_path()
        if root is not None:
            try:
                relative = file_path.relative_to(root)
            except ValueError:
                relative = None
            if relative is not None:
                for source_pattern in self.source_patterns():
                    if relative.match(source_pattern.pattern):
                        return source_pattern.file_type
        return FileType.SESSION_LOG

    def _error(self, message: str) -> ParserError:
        return ParserError(self.assistant().value, message)
