"""
Report generation errors.
"""


class ReportingError(Exception):
    """Base exception for report generation failures."""

    pass


class ReportAggregationError(ReportingError):
    """Evidence could not be collected from the logger or monitors."""

    pass


class ReportWriteError(ReportingError):
    """Failed to write a report artifact to disk."""

    pass
