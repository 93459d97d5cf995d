"""
Monitoring-specific errors.
"""


class MonitoringError(Exception):
    """Base exception for monitor lifecycle failures."""

    pass


class MonitorNotRunningError(MonitoringError):
    """Operation requires a started monitor."""

    pass
