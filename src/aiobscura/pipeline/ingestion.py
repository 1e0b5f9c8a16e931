"""
Ingestion pipeline: discover assistant logs, parse new content and store it.

The coordinator walks every installed parser's source files, skips the ones
that are fully parsed and unchanged, and commits each remaining file in its
own transaction together with its new checkpoint.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

from aiobscura.db.store import Store, Transaction
from aiobscura.exceptions import ParseError
from aiobscura.models.canonical import Checkpoint, Message, SourceFile, ThreadType
from aiobscura.parsers.base import AssistantParser, ParseContext, stat_source_file
from aiobscura.parsers.incremental import ChangeType, detect_change_type
from aiobscura.parsers.registry import ParserRegistry, create_all_parsers
from aiobscura.parsers.types import ParseResult

logger = logging.getLogger(__name__)

MAX_MESSAGE_SUMMARIES = 20
SUMMARY_PREVIEW_LEN = 80

ProgressCallback = Callable[[int, int, Path], None]
MessagesCommittedHook = Callable[[List[Message]], None]


class SkipReason(str, Enum):
    """Why a file produced no new messages."""

    ALREADY_PARSED = "already_parsed"  # Checkpoint at or past end of file
    EMPTY_FILE = "empty_file"
    NO_NEW_CONTENT = "no_new_content"  # Parsed, but nothing to insert
    UNCHANGED = "unchanged"  # Size and mtime match the last parse


@dataclass
class FileSyncResult:
    """Outcome of syncing a single file."""

    path: Path
    new_messages: int = 0
    message_summaries: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    new_checkpoint: Checkpoint = field(default_factory=Checkpoint.none)
    is_new_session: bool = False
    threads_created: int = 0
    warnings: List[str] = field(default_factory=list)
    skip_reason: Optional[SkipReason] = None


@dataclass
class SyncResult:
    """Totals for one sync run across all assistants."""

    files_processed: int = 0
    files_skipped: int = 0
    sessions_created: int = 0
    sessions_updated: int = 0
    messages_inserted: int = 0
    threads_created: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[Tuple[Path, str]] = field(default_factory=list)
    file_results: List[FileSyncResult] = field(default_factory=list)

    def add(self, file_result: FileSyncResult) -> None:
        self.file_results.append(file_result)
        self.warnings.extend(file_result.warnings)
        self.threads_created += file_result.threads_created

        if file_result.new_messages > 0:
            self.files_processed += 1
            self.messages_inserted += file_result.new_messages
        else:
            self.files_skipped += 1
            logger.debug(
                f"File skipped: {file_result.path} "
                f"({file_result.skip_reason.value if file_result.skip_reason else 'unknown'})"
            )

        if file_result.session_id:
            if file_result.is_new_session:
                self.sessions_created += 1
            elif file_result.new_messages > 0:
                self.sessions_updated += 1


class IngestCoordinator:
    """
    Coordinates ingestion across all registered parsers.

    Agent threads are linked to the ToolCall that spawned them whichever
    file is parsed first: spawns seen in parent files are kept in a run-wide
    map and persisted to ``agent_spawns``, and both are consulted when an
    agent thread is stored (and again when the parent's spawn arrives).

    Example:
        >>> coordinator = IngestCoordinator(store)
        >>> result = coordinator.sync_all()
        >>> print(result.messages_inserted)
    """

    def __init__(
        self,
        store: Store,
        parsers: Optional[Iterable[AssistantParser]] = None,
        on_messages_committed: Optional[MessagesCommittedHook] = None,
    ):
        self.store = store
        self.registry = ParserRegistry()
        for parser in parsers if parsers is not None else create_all_parsers():
            self.registry.register(parser)
        self.on_messages_committed = on_messages_committed
        # (session_id, agent_id) -> spawning ToolCall message id, for this run
        self._spawn_messages: dict[Tuple[str, str], int] = {}

    def installed_assistants(self) -> List[AssistantParser]:
        return self.registry.installed()

    def discover_files(self) -> List[Tuple[AssistantParser, SourceFile]]:
        """
        Discover source files of every installed parser.

        Returns:
            (parser, file) pairs, oldest ``modified_at`` first
        """
        found: List[Tuple[AssistantParser, SourceFile]] = []
        seen: set[Path] = set()
        for parser in self.installed_assistants():
            for source_file in parser.discover_files():
                if source_file.path in seen:
                    continue
                seen.add(source_file.path)
                found.append((parser, source_file))
        found.sort(key=lambda item: (item[1].modified_at, str(item[1].path)))
        return found

    def sync_all(self) -> SyncResult:
        return self.sync_all_with_progress(None)

    def sync_all_with_progress(self, callback: Optional[ProgressCallback]) -> SyncResult:
        """
        Sync every discovered file.

        Args:
            callback: Called after each file with ``(index, total, path)``,
                where ``index`` counts files done so far (1-based)

        Returns:
            SyncResult; per-file failures are listed in ``errors`` and do
            not stop the run
        """
        self._spawn_messages = {}
        files = self.discover_files()
        total = len(files)
        result = SyncResult()
        logger.info(f"Syncing {total} source files")

        for index, (parser, source_file) in enumerate(files, start=1):
            try:
                file_result = self._sync_source_file(parser, source_file)
            except Exception as e:
                logger.error(f"Failed to sync {source_file.path}: {e}", exc_info=True)
                result.errors.append((source_file.path, str(e)))
            else:
                result.add(file_result)
            if callback is not None:
                callback(index, total, source_file.path)

        logger.info(
            f"Sync complete: {result.files_processed} processed, "
            f"{result.files_skipped} skipped, {result.messages_inserted} messages, "
            f"{len(result.errors)} errors"
        )
        return result

    def sync_file(self, path: Union[Path, str]) -> FileSyncResult:
        """
        Sync a single file.

        Raises:
            ParseError: If no installed parser handles the file
            OSError: If the file cannot be stat'ed
        """
        path = Path(path)
        parser = self.registry.parser_for_file(path)
        if parser is None:
            raise ParseError("unknown", f"No parser found for file: {path}")
        source_file = stat_source_file(path, parser.assistant(), parser.file_type_for(path))
        return self._sync_source_file(parser, source_file)

    def _sync_source_file(
        self, parser: AssistantParser, source_file: SourceFile
    ) -> FileSyncResult:
        path = source_file.path
        stored = self.store.get_source_file(path)

        if source_file.size_bytes == 0:
            return FileSyncResult(path=path, skip_reason=SkipReason.EMPTY_FILE)

        if stored is not None and _unchanged(stored, source_file):
            return FileSyncResult(
                path=path,
                new_checkpoint=stored.checkpoint,
                skip_reason=SkipReason.UNCHANGED,
            )

        checkpoint = stored.checkpoint if stored is not None else Checkpoint.none()
        committed: List[Message] = []

        with self.store.begin() as txn:
            txn.observe_source_file(source_file)
            context = ParseContext.from_source_file(
                source_file,
                checkpoint=checkpoint,
                last_seq=txn.max_seq_for_source(source_file),
            )
            parse_result = parser.parse(context)
            file_result = self._store_result(txn, source_file, parse_result, committed)

            txn.set_checkpoint(source_file, parse_result.new_checkpoint)
            txn.set_last_parsed(source_file, datetime.now(timezone.utc))

        if file_result.new_messages == 0 and file_result.skip_reason is None:
            change = detect_change_type(checkpoint, source_file.size_bytes)
            file_result.skip_reason = (
                SkipReason.ALREADY_PARSED
                if change == ChangeType.UNCHANGED
                else SkipReason.NO_NEW_CONTENT
            )

        for warning in parse_result.warnings:
            logger.warning(warning)

        if committed and self.on_messages_committed is not None:
            try:
                self.on_messages_committed(committed)
            except Exception as e:
                # The local commit is authoritative
                logger.warning(f"Post-commit hook failed for {path}: {e}")

        return file_result

    def _store_result(
        self,
        txn: Transaction,
        source_file: SourceFile,
        parse_result: ParseResult,
        committed: List[Message],
    ) -> FileSyncResult:
        file_result = FileSyncResult(
            path=source_file.path,
            new_checkpoint=parse_result.new_checkpoint,
            warnings=list(parse_result.warnings),
        )
        session = parse_result.session
        if session is None:
            if parse_result.messages:
                file_result.warnings.append(
                    f"{source_file.path}: {len(parse_result.messages)} messages "
                    f"without a session were dropped"
                )
            return file_result

        if parse_result.project is not None:
            txn.upsert_project(parse_result.project)

        file_result.session_id = session.id
        file_result.is_new_session = txn.upsert_session(session)

        for thread in parse_result.threads:
            if txn.insert_thread_if_absent(thread):
                file_result.threads_created += 1

        parsed_seqs = [m.seq for m in parse_result.messages]
        inserted_ids = set(txn.insert_messages(parse_result.messages))
        # Replayed records take their stored seq
        final_seq = {
            parsed: m.seq for parsed, m in zip(parsed_seqs, parse_result.messages)
        }
        parse_result.agent_spawn_map = {
            agent_id: final_seq.get(seq, seq)
            for agent_id, seq in parse_result.agent_spawn_map.items()
        }
        for message in parse_result.messages:
            if message.id in inserted_ids:
                committed.append(message)
        file_result.new_messages = len(committed)
        file_result.message_summaries = [
            m.preview(SUMMARY_PREVIEW_LEN) for m in committed[:MAX_MESSAGE_SUMMARIES]
        ]

        self._record_spawns(txn, session.id, parse_result)
        self._link_agent_threads(txn, session.id, parse_result)

        for plan in parse_result.plans:
            plan.session_id = plan.session_id or session.id
            txn.upsert_plan(plan)

        return file_result

    def _record_spawns(
        self, txn: Transaction, session_id: str, parse_result: ParseResult
    ) -> None:
        """Persist spawn points found in a parent file."""
        thread_by_seq = {m.seq: m.thread_id for m in parse_result.messages}
        default_thread = parse_result.threads[0].id if parse_result.threads else session_id

        for agent_id, spawning_seq in parse_result.agent_spawn_map.items():
            parent_thread_id = thread_by_seq.get(spawning_seq, default_thread)
            message_id = txn.get_message_id_by_seq(parent_thread_id, spawning_seq)
            txn.upsert_agent_spawn(
                session_id, agent_id, parent_thread_id, spawning_seq, message_id
            )
            if message_id is not None:
                self._spawn_messages[(session_id, agent_id)] = message_id

        for agent_id, tool_use_id in parse_result.agent_spawn_tool_use_ids.items():
            found = txn.find_tool_call(default_thread, tool_use_id)
            if found is None:
                logger.debug(
                    f"Spawning ToolCall {tool_use_id} for agent {agent_id} not stored yet"
                )
                continue
            message_id, spawning_seq = found
            txn.upsert_agent_spawn(
                session_id, agent_id, default_thread, spawning_seq, message_id
            )
            self._spawn_messages[(session_id, agent_id)] = message_id

    def _link_agent_threads(
        self, txn: Transaction, session_id: str, parse_result: ParseResult
    ) -> None:
        agent_ids = {
            t.agent_id
            for t in parse_result.threads
            if t.thread_type == ThreadType.AGENT and t.agent_id
        }
        # Parent parsed after its children: revisit threads still waiting
        agent_ids.update(parse_result.agent_spawn_map)
        agent_ids.update(parse_result.agent_spawn_tool_use_ids)

        for agent_id in sorted(agent_ids):
            thread = txn.get_agent_thread(session_id, agent_id)
            if thread is None or thread.spawned_by_message_id is not None:
                continue
            message_id = self._spawn_messages.get((session_id, agent_id))
            if message_id is None:
                message_id = txn.get_agent_spawn_message_id(session_id, agent_id)
            if message_id is None:
                continue
            if txn.link_agent_thread(thread.id, message_id):
                logger.debug(f"Linked agent thread {thread.id} to message {message_id}")


def _unchanged(stored: SourceFile, current: SourceFile) -> bool:
    """Fully parsed and not modified since."""
    return (
        stored.size_bytes == current.size_bytes
        and stored.modified_at == current.modified_at
        and stored.checkpoint.kind == Checkpoint.BYTE_OFFSET
        and stored.checkpoint.offset == current.size_bytes
    )
