"""
State and workflow health monitoring.
"""

from .attribution_monitor import AttributionMonitor
from .errors import MonitoringError, MonitorNotRunningError
from .chat_monitor import ChatMonitor
from .engine_monitor import EngineMonitor
from .failures import Assignee, FailureType, Severity, TypedFailure, classify_failure
from .models import MonitorState, WorkflowStatus, WorkflowValidation
from .state_monitor import NodeTreeStateReader, StateMonitor
from .workflow import WorkflowHealthMonitor

__all__ = [
    "Assignee",
    "AttributionMonitor",
    "ChatMonitor",
    "EngineMonitor",
    "FailureType",
    "MonitorNotRunningError",
    "MonitorState",
    "MonitoringError",
    "NodeTreeStateReader",
    "Severity",
    "StateMonitor",
    "TypedFailure",
    "WorkflowHealthMonitor",
    "WorkflowStatus",
    "WorkflowValidation",
    "classify_failure",
]
