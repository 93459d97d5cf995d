"""
Health reports: aggregation of session evidence and report writers.
"""

from .aggregate import SCENARIOS, aggregate_results
from .errors import ReportAggregationError, ReportingError, ReportWriteError
from .generator import ReportGenerator
from .models import (
    MONITOR_NOT_AVAILABLE,
    AggregatedResult,
    MonitorHealthCard,
    ScenarioResult,
    ScenarioStatus,
)
from .writers import write_reports

__all__ = [
    "AggregatedResult",
    "MONITOR_NOT_AVAILABLE",
    "MonitorHealthCard",
    "ReportAggregationError",
    "ReportGenerator",
    "ReportWriteError",
    "ReportingError",
    "SCENARIOS",
    "ScenarioResult",
    "ScenarioStatus",
    "aggregate_results",
    "write_reports",
]
