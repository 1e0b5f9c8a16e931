"""
Single-writer guards for a database.

Two advisory lock files live in the runtime directory, both keyed by the
database path:

- ``aiobscura-ui.lock.<hash>``: held by a running viewer
- ``aiobscura-sync.lock.<hash>``: held by whichever process owns ingestion

A viewer always takes the UI lock and then tries the sync lock; if a sync
process already owns ingestion the viewer runs read-only. A standalone sync
refuses to start while a viewer is running or another sync holds the lock.
"""

import fcntl
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Optional, Union

from aiobscura.config import get_runtime_dir
from aiobscura.exceptions import LockBusyError
from aiobscura.utils.hashing import calculate_truncated_hash, canonical_path

logger = logging.getLogger(__name__)

UI_LOCK_PREFIX = "aiobscura-ui.lock"
SYNC_LOCK_PREFIX = "aiobscura-sync.lock"


class ViewerMode(str, Enum):
    """How a viewer process may use the database."""

    OWNS_INGEST = "owns_ingest"  # Viewer also runs ingestion
    READ_ONLY = "read_only"  # Another process owns ingestion


class ProcessLock:
    """
    An exclusive, non-blocking advisory lock on a file.

    The lock is held until ``release()`` is called (or the process exits).
    Usable as a context manager.
    """

    def __init__(self, file: IO[str], path: Path):
        self._file: Optional[IO[str]] = file
        self.path = path

    @property
    def is_held(self) -> bool:
        return self._file is not None

    def release(self) -> None:
        """Unlock, close and remove the lock file. Safe to call twice."""
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None
        try:
            self.path.unlink()
        except OSError:
            pass

    def __enter__(self) -> "ProcessLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


@dataclass
class ViewerGuards:
    """Locks held by a viewer and the mode they grant."""

    viewer_lock: ProcessLock
    sync_lock: Optional[ProcessLock]
    mode: ViewerMode

    def release(self) -> None:
        if self.sync_lock is not None:
            self.sync_lock.release()
        self.viewer_lock.release()


def lock_path(prefix: str, db_path: Union[Path, str], lock_dir: Optional[Path] = None) -> Path:
    """
    Path of a lock file for a database.

    Args:
        prefix: ``UI_LOCK_PREFIX`` or ``SYNC_LOCK_PREFIX``
        db_path: Database the lock guards
        lock_dir: Directory for lock files (default: the runtime dir)
    """
    directory = lock_dir if lock_dir is not None else get_runtime_dir()
    digest = calculate_truncated_hash(canonical_path(db_path), num_bytes=8)
    return directory / f"{prefix}.{digest}"


def _try_acquire(path: Path) -> Optional[ProcessLock]:
    """Take the lock at ``path``, or return None if another holder has it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    # Opened without truncation so a holder's pid line is not clobbered
    file = open(path, "a+")
    try:
        fcntl.flock(file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        file.close()
        return None
    except OSError:
        file.close()
        raise

    file.seek(0)
    file.truncate()
    file.write(f"pid={os.getpid()}\n")
    file.flush()
    return ProcessLock(file, path)


def _acquire(path: Path, message: str) -> ProcessLock:
    lock = _try_acquire(path)
    if lock is None:
        raise LockBusyError(path.name, message)
    logger.debug(f"Acquired lock {path}")
    return lock


def acquire_viewer_guards(
    db_path: Union[Path, str], lock_dir: Optional[Path] = None
) -> ViewerGuards:
    """
    Acquire the locks for a viewer process.

    Returns:
        ViewerGuards with mode ``OWNS_INGEST`` when the sync lock was free,
        ``READ_ONLY`` when another process owns ingestion

    Raises:
        LockBusyError: If another viewer is running on the same database
    """
    viewer_lock = _acquire(
        lock_path(UI_LOCK_PREFIX, db_path, lock_dir),
        "another aiobscura instance appears to be running",
    )
    try:
        sync_lock = _try_acquire(lock_path(SYNC_LOCK_PREFIX, db_path, lock_dir))
    except OSError:
        viewer_lock.release()
        raise

    if sync_lock is None:
        logger.info("Another process owns ingestion; viewer is read-only")
        return ViewerGuards(viewer_lock, None, ViewerMode.READ_ONLY)
    return ViewerGuards(viewer_lock, sync_lock, ViewerMode.OWNS_INGEST)


def acquire_sync_guard(
    db_path: Union[Path, str], lock_dir: Optional[Path] = None
) -> ProcessLock:
    """
    Acquire the ingestion lock for a standalone sync process.

    Raises:
        LockBusyError: If a viewer is running, or another sync already owns
            ingestion
    """
    probe = _try_acquire(lock_path(UI_LOCK_PREFIX, db_path, lock_dir))
    if probe is None:
        raise LockBusyError(
            UI_LOCK_PREFIX, "refusing to start sync: the viewer is already running"
        )
    try:
        return _acquire(
            lock_path(SYNC_LOCK_PREFIX, db_path, lock_dir),
            "another sync or ingest owner is already running",
        )
    finally:
        probe.release()
