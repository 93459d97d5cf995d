"""
Tests for session lifecycle and retention.

Time is injected through a mutable clock so ages are deterministic.
"""

from pathlib import Path

import pytest

from vigil.config import RetentionSettings
from vigil.observability.logger import StructuredLogger
from vigil.observability.models import LogCategory, LogLevel
from vigil.persistence.errors import SessionNotFoundError, SessionStateError
from vigil.persistence.models import SessionStatus
from vigil.persistence.sessions import ERROR_FILE, LATEST_LINK, METADATA_FILE, SessionManager

DAY = 24 * 3600


class MutableClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return MutableClock()


def make_manager(tmp_path, clock, **retention):
    return SessionManager(base_dir=tmp_path / "sessions", retention=RetentionSettings(**retention), clock=clock)


def run_session(manager, clock, session_id, pad_bytes=0, advance=3600):
    session = manager.create_session(session_id)
    if pad_bytes:
        (Path(session.output_dir) / "padding.bin").write_bytes(b"x" * pad_bytes)
    manager.complete_session(session)
    clock.now += advance
    return session


class TestLifecycle:
    def test_create_writes_layout(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        session = manager.create_session("run/1")

        output_dir = Path(session.output_dir)
        assert output_dir.is_dir()
        assert output_dir.name.endswith("_run_1")
        assert (output_dir / METADATA_FILE).exists()
        assert (output_dir / "reports").is_dir()
        assert session.status == SessionStatus.ACTIVE

    def test_only_one_active_session(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        manager.create_session("a")
        with pytest.raises(SessionStateError):
            manager.create_session("b")

    def test_reused_session_id_rejected(self, tmp_path, clock):
        """
        GIVEN a completed session
        WHEN another session is created with the same id
        THEN SessionStateError is raised and the first session is untouched
        """
        manager = make_manager(tmp_path, clock)
        first = run_session(manager, clock, "a")

        with pytest.raises(SessionStateError, match="already used"):
            manager.create_session("a")

        assert [s.session_id for s in manager.list_sessions()] == ["a"]
        assert manager.get_session("a").output_dir == first.output_dir

    def test_existing_directory_rejected(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        manager.complete_session(manager.create_session("run/1"))

        # Sanitizes to the same directory name at the same timestamp
        with pytest.raises(SessionStateError, match="directory already exists"):
            manager.create_session("run_1")

    def test_complete_is_final(self, tmp_path, clock):
        """
        GIVEN a completed session
        WHEN it is failed or updated afterwards
        THEN SessionStateError is raised and the status stays completed
        """
        manager = make_manager(tmp_path, clock)
        session = manager.create_session("a")
        clock.now += 5
        manager.complete_session(session)

        with pytest.raises(SessionStateError):
            manager.fail_session(session, "late failure")
        with pytest.raises(SessionStateError):
            manager.update_session(session)

        stored = manager.get_session("a")
        assert stored.status == SessionStatus.COMPLETED
        assert stored.duration_seconds == 5

    def test_fail_writes_error_file(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        session = manager.create_session("a")

        manager.fail_session(session, "interceptor exploded")

        error_text = (Path(session.output_dir) / ERROR_FILE).read_text(encoding="utf-8")
        assert "interceptor exploded" in error_text
        stored = manager.get_session("a")
        assert stored.status == SessionStatus.FAILED
        assert stored.failure_reason == "interceptor exploded"
        assert manager.active_session is None

    def test_latest_link_points_at_newest(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        run_session(manager, clock, "old")
        newest = run_session(manager, clock, "new")

        link = manager.base_dir / LATEST_LINK
        assert link.is_symlink()
        assert manager.latest_session_dir() == Path(newest.output_dir).resolve()


class TestQueries:
    def test_list_newest_first(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        for name in ("one", "two", "three"):
            run_session(manager, clock, name)

        assert [s.session_id for s in manager.list_sessions()] == ["three", "two", "one"]

    def test_unknown_session_raises(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        with pytest.raises(SessionNotFoundError):
            manager.get_session("missing")

    def test_summary_counts_by_status(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        run_session(manager, clock, "ok")
        failed = manager.create_session("bad")
        manager.fail_session(failed, "boom")
        clock.now += 60
        manager.create_session("live")

        summary = manager.session_summary()

        assert summary.total_sessions == 3
        assert summary.completed_sessions == 1
        assert summary.failed_sessions == 1
        assert summary.active_sessions == 1
        assert summary.total_bytes > 0

    def test_export_includes_logged_entries(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock)
        session = manager.create_session("a")
        log = StructuredLogger("a", log_path=Path(session.log_file), clock=clock)
        log.log(LogLevel.INFO, LogCategory.EVENT, "HOST", "ONE")
        log.log(LogLevel.INFO, LogCategory.EVENT, "HOST", "TWO")
        log.close()
        manager.complete_session(session)

        data = manager.export_session_data("a")

        assert data["session"]["session_id"] == "a"
        assert [e["action"] for e in data["entries"]] == ["ONE", "TWO"]
        assert data["snapshots"] is None


class TestRetention:
    def test_age_limit(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock, max_age_days=30)
        run_session(manager, clock, "ancient")
        clock.now += 40 * DAY
        run_session(manager, clock, "recent")

        deleted = manager.cleanup_old_sessions()

        assert deleted == ["ancient"]
        assert [s.session_id for s in manager.list_sessions()] == ["recent"]

    def test_count_limit_removes_oldest_first(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock, max_sessions=3)
        for i in range(5):
            run_session(manager, clock, f"s{i}")

        deleted = manager.cleanup_old_sessions()

        assert deleted == ["s0", "s1"]
        assert [s.session_id for s in manager.list_sessions()] == ["s4", "s3", "s2"]

    def test_active_session_never_deleted(self, tmp_path, clock):
        """
        GIVEN three completed sessions plus an active one and max_sessions=2
        WHEN retention runs
        THEN the active session survives and counts toward the limit
        """
        manager = make_manager(tmp_path, clock, max_sessions=2)
        for i in range(3):
            run_session(manager, clock, f"s{i}")
        manager.create_session("live")

        deleted = manager.cleanup_old_sessions()

        assert deleted == ["s0", "s1"]
        remaining = {s.session_id for s in manager.list_sessions()}
        assert remaining == {"s2", "live"}

    def test_storage_limit(self, tmp_path, clock):
        """
        GIVEN four sessions of roughly 4-5 KB each and a 10 KB storage cap
        WHEN retention runs
        THEN the two oldest are removed and the rest fit the cap
        """
        manager = make_manager(tmp_path, clock, max_storage_bytes=10_000)
        for i in range(4):
            run_session(manager, clock, f"s{i}", pad_bytes=4000)

        deleted = manager.cleanup_old_sessions()

        assert deleted == ["s0", "s1"]
        remaining = manager.list_sessions()
        assert [s.session_id for s in remaining] == ["s3", "s2"]
        assert manager.session_summary().total_bytes <= 10_000

    def test_latest_link_survives_cleanup(self, tmp_path, clock):
        manager = make_manager(tmp_path, clock, max_sessions=1)
        run_session(manager, clock, "old")
        newest = run_session(manager, clock, "new")

        manager.cleanup_old_sessions()

        assert manager.latest_session_dir() == Path(newest.output_dir).resolve()
