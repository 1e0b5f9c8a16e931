"""
Tests for database process locks.

flock locks belong to an open file description, so a second acquisition
from the same test process behaves like a competing process.
"""

from pathlib import Path

import pytest

from aiobscura.exceptions import LockBusyError
from aiobscura.process_lock import (
    SYNC_LOCK_PREFIX,
    UI_LOCK_PREFIX,
    ViewerMode,
    acquire_sync_guard,
    acquire_viewer_guards,
    lock_path,
)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data.db"


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    return tmp_path / "locks"


class TestLockPath:
    """Tests for lock file naming."""

    def test_name_includes_database_hash(self, db_path: Path, lock_dir: Path):
        path = lock_path(UI_LOCK_PREFIX, db_path, lock_dir)

        assert path.parent == lock_dir
        prefix, digest = path.name.rsplit(".", 1)
        assert prefix == UI_LOCK_PREFIX
        assert len(digest) == 16

    def test_same_database_same_lock(self, tmp_path: Path, lock_dir: Path):
        assert lock_path(SYNC_LOCK_PREFIX, tmp_path / "a" / ".." / "data.db", lock_dir) == (
            lock_path(SYNC_LOCK_PREFIX, tmp_path / "data.db", lock_dir)
        )

    def test_different_databases_differ(self, tmp_path: Path, lock_dir: Path):
        assert lock_path(UI_LOCK_PREFIX, tmp_path / "a.db", lock_dir) != lock_path(
            UI_LOCK_PREFIX, tmp_path / "b.db", lock_dir
        )

    def test_defaults_to_runtime_dir(self, db_path: Path, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path / "run"))

        assert lock_path(UI_LOCK_PREFIX, db_path).is_relative_to(tmp_path / "run")


class TestExclusion:
    """Tests for viewer and sync exclusion."""

    def test_viewer_is_read_only_while_sync_runs(self, db_path: Path, lock_dir: Path):
        sync_guard = acquire_sync_guard(db_path, lock_dir)
        try:
            guards = acquire_viewer_guards(db_path, lock_dir)
            try:
                assert guards.mode == ViewerMode.READ_ONLY
                assert guards.sync_lock is None
            finally:
                guards.release()
        finally:
            sync_guard.release()

    def test_second_sync_is_refused(self, db_path: Path, lock_dir: Path):
        with acquire_sync_guard(db_path, lock_dir):
            with pytest.raises(LockBusyError, match="another sync"):
                acquire_sync_guard(db_path, lock_dir)

    def test_viewer_owns_ingest_when_alone(self, db_path: Path, lock_dir: Path):
        guards = acquire_viewer_guards(db_path, lock_dir)
        try:
            assert guards.mode == ViewerMode.OWNS_INGEST
            assert guards.sync_lock.is_held
        finally:
            guards.release()

    def test_sync_refused_while_viewer_runs(self, db_path: Path, lock_dir: Path):
        guards = acquire_viewer_guards(db_path, lock_dir)
        try:
            with pytest.raises(LockBusyError, match="viewer is already running") as exc_info:
                acquire_sync_guard(db_path, lock_dir)
            assert exc_info.value.lock_name == UI_LOCK_PREFIX
        finally:
            guards.release()

    def test_second_viewer_is_refused(self, db_path: Path, lock_dir: Path):
        guards = acquire_viewer_guards(db_path, lock_dir)
        try:
            with pytest.raises(LockBusyError, match="another aiobscura instance"):
                acquire_viewer_guards(db_path, lock_dir)
        finally:
            guards.release()

    def test_other_database_is_independent(self, tmp_path: Path, lock_dir: Path):
        with acquire_sync_guard(tmp_path / "a.db", lock_dir):
            with acquire_sync_guard(tmp_path / "b.db", lock_dir) as other:
                assert other.is_held


class TestRelease:
    """Tests for releasing locks."""

    def test_release_allows_reacquire(self, db_path: Path, lock_dir: Path):
        first = acquire_sync_guard(db_path, lock_dir)
        first.release()

        second = acquire_sync_guard(db_path, lock_dir)
        try:
            assert second.is_held
        finally:
            second.release()

    def test_release_is_idempotent(self, db_path: Path, lock_dir: Path):
        guard = acquire_sync_guard(db_path, lock_dir)

        guard.release()
        guard.release()

        assert not guard.is_held
        assert not guard.path.exists()

    def test_lock_file_records_pid(self, db_path: Path, lock_dir: Path):
        with acquire_sync_guard(db_path, lock_dir) as guard:
            assert guard.path.read_text().startswith("pid=")
