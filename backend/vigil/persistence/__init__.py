"""
Session lifecycle: creation, finalization, retention and export.
"""

from .errors import SessionError, SessionNotFoundError, SessionStateError
from .models import Session, SessionStatus, SessionSummary
from .sessions import SessionManager

__all__ = [
    "Session",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionStateError",
    "SessionStatus",
    "SessionSummary",
]
