"""
Session and log-file lifecycle.

Layout under the base directory:

    <base_dir>/
        latest -> 20260118T101500_session-42/
        20260118T101500_session-42/
            session.json          metadata (Session model)
            test-logs.jsonl       active event log (+ rotated parts)
            visual-states.json    state monitor capture history
            error.txt             failure reason, failed sessions only
            reports/              generated report artifacts

Retention applies three independent limits in order, each deleting
oldest sessions first:
1. Age: sessions older than max_age_days
2. Count: down to max_sessions
3. Storage: until total bytes <= max_storage_bytes

The in-process active session is never deleted by retention.
"""

import json
import logging
import re
import shutil
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..config import DEFAULT_BASE_DIR, RetentionSettings
from ..observability.writer import read_entries
from .errors import SessionNotFoundError, SessionStateError
from .models import Session, SessionStatus, SessionSummary

logger = logging.getLogger(__name__)

METADATA_FILE = "session.json"
LOG_FILE = "test-logs.jsonl"
SNAPSHOT_FILE = "visual-states.json"
ERROR_FILE = "error.txt"
REPORT_DIR = "reports"
LATEST_LINK = "latest"

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _directory_size(path: Path) -> int:
    total = 0
    for child in path.rglob("*"):
        try:
            if child.is_file() and not child.is_symlink():
                total += child.stat().st_size
        except OSError:
            continue
    return total


class SessionManager:
    """
    Creates, finalizes, lists and prunes harness sessions.

    Usage:
        manager = SessionManager(Path("~/.vigil/sessions").expanduser())
        session = manager.create_session("run-1")
        ...
        manager.complete_session(session)
        manager.cleanup_old_sessions()
    """

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        retention: Optional[RetentionSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_dir = Path(base_dir or DEFAULT_BASE_DIR)
        self.retention = retention or RetentionSettings()
        self.clock = clock
        self.active_session: Optional[Session] = None
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create_session(self, session_id: str) -> Session:
        """
        Create a new active session directory and metadata file.

        Raises:
            SessionStateError: This manager already has an active session, or
                the id or its directory is already taken
        """
        if self.active_session is not None:
            raise SessionStateError(
                f"Session {self.active_session.session_id} is still active"
            )

        if any(s.session_id == session_id for s in self.list_sessions()):
            raise SessionStateError(f"Session id already used: {session_id}")

        start = self._now()
        safe_id = _UNSAFE_ID_CHARS.sub("_", session_id).strip("_") or "session"
        output_dir = self.base_dir / f"{start.strftime('%Y%m%dT%H%M%S')}_{safe_id}"
        try:
            output_dir.mkdir(parents=True, exist_ok=False)
        except FileExistsError as e:
            raise SessionStateError(f"Session directory already exists: {output_dir}") from e
        (output_dir / REPORT_DIR).mkdir(exist_ok=True)

        session = Session(
            session_id=session_id,
            start_time=start,
            output_dir=str(output_dir),
            log_file=str(output_dir / LOG_FILE),
            snapshot_file=str(output_dir / SNAPSHOT_FILE),
            report_dir=str(output_dir / REPORT_DIR),
        )
        self._write_metadata(session)
        self.active_session = session
        self.update_latest_link(session)
        logger.info(f"[VIGIL:SESSIONS] Created session {session_id} at {output_dir}")
        return session

    def update_session(self, session: Session) -> Session:
        """
        Refresh on-disk size and persist metadata for an active session.

        Raises:
            SessionStateError: Session is already finalized
        """
        if session.status != SessionStatus.ACTIVE:
            raise SessionStateError(
                f"Cannot update session {session.session_id} in status {session.status.value}"
            )
        session.byte_size = _directory_size(Path(session.output_dir))
        self._write_metadata(session)
        return session

    def complete_session(self, session: Session) -> Session:
        return self._finalize(session, SessionStatus.COMPLETED)

    def fail_session(self, session: Session, reason: str) -> Session:
        """Finalize as failed and record the reason in error.txt."""
        if not session.can_transition_to(SessionStatus.FAILED):
            raise SessionStateError(
                f"Illegal transition for session {session.session_id}: "
                f"{session.status.value} -> {SessionStatus.FAILED.value}"
            )
        session.failure_reason = reason
        error_path = Path(session.output_dir) / ERROR_FILE
        try:
            error_path.write_text(f"{self._now().isoformat()}\n{reason}\n", encoding="utf-8")
        except OSError as e:
            logger.error(f"[VIGIL:SESSIONS] Failed to write {error_path}: {e}")
        return self._finalize(session, SessionStatus.FAILED)

    def _finalize(self, session: Session, status: SessionStatus) -> Session:
        if not session.can_transition_to(status):
            raise SessionStateError(
                f"Illegal transition for session {session.session_id}: "
                f"{session.status.value} -> {status.value}"
            )
        session.status = status
        session.end_time = self._now()
        session.byte_size = _directory_size(Path(session.output_dir))
        self._write_metadata(session)
        if self.active_session is not None and self.active_session.session_id == session.session_id:
            self.active_session = None
        logger.info(f"[VIGIL:SESSIONS] Session {session.session_id} {status.value}")
        return session

    def _write_metadata(self, session: Session) -> None:
        path = Path(session.output_dir) / METADATA_FILE
        try:
            path.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"[VIGIL:SESSIONS] Failed to write metadata {path}: {e}")

    def update_latest_link(self, session: Session) -> bool:
        """Point base_dir/latest at the session. Failure is logged, never raised."""
        link = self.base_dir / LATEST_LINK
        try:
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(Path(session.output_dir).name, target_is_directory=True)
            return True
        except OSError as e:
            logger.warning(f"[VIGIL:SESSIONS] Could not update latest link: {e}")
            return False

    def latest_session_dir(self) -> Optional[Path]:
        link = self.base_dir / LATEST_LINK
        if link.is_symlink() and link.exists():
            return link.resolve()
        sessions = self.list_sessions()
        return Path(sessions[0].output_dir) if sessions else None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_sessions(self) -> List[Session]:
        """All readable sessions, newest first."""
        sessions = []
        if not self.base_dir.exists():
            return sessions
        for child in self.base_dir.iterdir():
            if child.name == LATEST_LINK or child.is_symlink() or not child.is_dir():
                continue
            metadata = child / METADATA_FILE
            if not metadata.exists():
                continue
            try:
                sessions.append(Session.model_validate_json(metadata.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning(f"[VIGIL:SESSIONS] Skipping unreadable session {child.name}: {e}")
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def get_session(self, session_id: str) -> Session:
        for session in self.list_sessions():
            if session.session_id == session_id:
                return session
        raise SessionNotFoundError(f"Session not found: {session_id}")

    def session_summary(self) -> SessionSummary:
        sessions = self.list_sessions()
        if not sessions:
            return SessionSummary()
        return SessionSummary(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.status == SessionStatus.ACTIVE),
            completed_sessions=sum(1 for s in sessions if s.status == SessionStatus.COMPLETED),
            failed_sessions=sum(1 for s in sessions if s.status == SessionStatus.FAILED),
            total_entries=sum(s.entry_count for s in sessions),
            total_bytes=sum(_directory_size(Path(s.output_dir)) for s in sessions),
            oldest_session=sessions[-1].start_time,
            newest_session=sessions[0].start_time,
        )

    def export_session_data(self, session_id: str) -> Dict[str, Any]:
        """
        Collect a session's metadata, every logged entry and snapshot history.

        Raises:
            SessionNotFoundError: Unknown session id
        """
        session = self.get_session(session_id)
        snapshots: Any = None
        snapshot_path = Path(session.snapshot_file)
        if snapshot_path.exists():
            try:
                snapshots = json.loads(snapshot_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"[VIGIL:SESSIONS] Could not read snapshots for {session_id}: {e}")
        return {
            "session": session.model_dump(mode="json"),
            "entries": read_entries(Path(session.log_file)),
            "snapshots": snapshots,
        }

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def cleanup_old_sessions(self) -> List[str]:
        """
        Apply age, count and storage limits.

        Returns:
            Session ids deleted, in deletion order
        """
        active_id = self.active_session.session_id if self.active_session else None
        oldest_first = [s for s in reversed(self.list_sessions()) if s.session_id != active_id]
        sizes = {s.output_dir: _directory_size(Path(s.output_dir)) for s in oldest_first}
        deleted: List[str] = []

        def remove(session: Session) -> None:
            if self._delete_session_dir(Path(session.output_dir)):
                deleted.append(session.session_id)
            oldest_first.remove(session)

        cutoff = self._now() - timedelta(days=self.retention.max_age_days)
        for session in [s for s in oldest_first if s.start_time < cutoff]:
            remove(session)

        protected = 1 if active_id else 0
        while oldest_first and len(oldest_first) + protected > self.retention.max_sessions:
            remove(oldest_first[0])

        total = sum(sizes[s.output_dir] for s in oldest_first)
        if self.active_session is not None:
            total += _directory_size(Path(self.active_session.output_dir))
        while oldest_first and total > self.retention.max_storage_bytes:
            victim = oldest_first[0]
            total -= sizes[victim.output_dir]
            remove(victim)

        if deleted:
            logger.info(f"[VIGIL:SESSIONS] Retention removed {len(deleted)} session(s): {deleted}")
            self._repair_latest_link()
        return deleted

    def _delete_session_dir(self, path: Path) -> bool:
        try:
            for child in path.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            path.rmdir()
            return True
        except OSError as e:
            logger.error(f"[VIGIL:SESSIONS] Failed to delete session directory {path}: {e}")
            return False

    def _repair_latest_link(self) -> None:
        link = self.base_dir / LATEST_LINK
        if link.is_symlink() and not link.exists():
            remaining = self.list_sessions()
            if remaining:
                self.update_latest_link(remaining[0])
            else:
                try:
                    link.unlink()
                except OSError as e:
                    logger.warning(f"[VIGIL:SESSIONS] Could not remove stale latest link: {e}")
