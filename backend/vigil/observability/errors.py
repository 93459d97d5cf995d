"""
Observability-specific errors.
"""


class ObservabilityError(Exception):
    """Base exception for logging and interception failures."""

    pass


class LogWriteError(ObservabilityError):
    """Failed to append to or rotate the session log file."""

    pass


class InterceptionError(ObservabilityError):
    """Failed to wrap or restore a diagnostic channel method."""

    pass
