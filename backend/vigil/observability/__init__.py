"""
Evidence capture: structured session log, pattern detectors and
diagnostic channel interception.
"""

from .interceptor import OutputInterceptor
from .logger import StructuredLogger, generate_correlation_id
from .models import (
    DocumentMetrics,
    Highlight,
    LogCategory,
    LogEntry,
    LogLevel,
    StateSnapshot,
)
from .serialization import capture_stack, safe_serialize

__all__ = [
    "DocumentMetrics",
    "Highlight",
    "LogCategory",
    "LogEntry",
    "LogLevel",
    "OutputInterceptor",
    "StateSnapshot",
    "StructuredLogger",
    "capture_stack",
    "generate_correlation_id",
    "safe_serialize",
]
