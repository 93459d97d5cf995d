"""
Session data models.

A session is one bounded observation period with its own directory,
log file and metadata. Status transitions are one-way:

    active -> completed
    active -> failed
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


class Session(BaseModel):
    """
    Session metadata, persisted as session.json in the session directory.

    Paths are stored as strings so the file is readable by external tools.
    """

    model_config = ConfigDict(extra="forbid")

    session_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    output_dir: str
    log_file: str
    snapshot_file: str
    report_dir: str
    status: SessionStatus = SessionStatus.ACTIVE
    entry_count: int = 0
    byte_size: int = 0
    failure_reason: Optional[str] = None

    def can_transition_to(self, status: SessionStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


class SessionSummary(BaseModel):
    """Aggregate view across every session on disk."""

    model_config = ConfigDict(extra="forbid")

    total_sessions: int = 0
    active_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    total_entries: int = 0
    total_bytes: int = 0
    oldest_session: Optional[datetime] = None
    newest_session: Optional[datetime] = None
