"""
Session persistence errors.
"""


class SessionError(Exception):
    """Base exception for session lifecycle failures."""

    pass


class SessionNotFoundError(SessionError):
    """No session with the requested id exists on disk."""

    pass


class SessionStateError(SessionError):
    """Requested an illegal status transition or a second active session."""

    pass
