"""
Report data models.

AggregatedResult is the single input of every report writer. It is built
once from the logger buffer and monitor state and never re-reads live
components, so all artifacts of one generation describe the same data.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..monitoring.failures import Assignee, FailureType, TypedFailure
from ..monitoring.models import WorkflowValidation
from ..observability.models import LogEntry

MONITOR_NOT_AVAILABLE = "monitor not available"


class MonitorHealthCard(BaseModel):
    """
    Per-monitor section of the report.

    A monitor that never initialized has available=False, no score, and
    note set to "monitor not available".
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    available: bool
    health_score: Optional[float] = None
    healthy: Optional[bool] = None
    pending_workflows: int = 0
    total_checks: int = 0
    recent_failures: int = 0
    failure_counts: Dict[str, int] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)
    note: Optional[str] = None


class ScenarioStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    NOT_OBSERVED = "NOT_OBSERVED"
    MONITOR_NOT_AVAILABLE = "MONITOR_NOT_AVAILABLE"


class ScenarioResult(BaseModel):
    """Expected vs. actual stage sequence for one real-world scenario."""

    model_config = ConfigDict(extra="forbid")

    name: str
    monitor: str
    description: str
    status: ScenarioStatus
    expected_stages: List[str] = Field(default_factory=list)
    actual_stages: List[str] = Field(default_factory=list)
    missing_stages: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    workflow_id: Optional[str] = None


class IntegrationPointScore(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    monitor: str
    available: bool
    score: Optional[float] = None


class FailurePattern(BaseModel):
    """A failure type seen more than once in the report window."""

    model_config = ConfigDict(extra="forbid")

    type: FailureType
    count: int
    monitors: List[str] = Field(default_factory=list)


class AggregatedResult(BaseModel):
    """Everything a report renders."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    generated_at: datetime
    window_minutes: float

    # Log evidence
    total_entries: int = 0
    buffered_entries: int = 0
    entries_by_level: Dict[str, int] = Field(default_factory=dict)
    entries_by_category: Dict[str, int] = Field(default_factory=dict)
    notable_entries: List[LogEntry] = Field(default_factory=list)

    # Health
    overall_score: Optional[float] = None
    monitors: List[MonitorHealthCard] = Field(default_factory=list)
    integration_points: List[IntegrationPointScore] = Field(default_factory=list)
    state_summary: Dict[str, Any] = Field(default_factory=dict)

    # Findings
    failures: List[TypedFailure] = Field(default_factory=list)
    checks: List[WorkflowValidation] = Field(default_factory=list)
    scenarios: List[ScenarioResult] = Field(default_factory=list)
    common_patterns: List[FailurePattern] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def needs_review(self) -> List[TypedFailure]:
        return [f for f in self.failures if f.assignee == Assignee.HUMAN_REVIEW]

    @property
    def auto_handled(self) -> List[TypedFailure]:
        return [f for f in self.failures if f.assignee == Assignee.AUTO_FIX]

    @property
    def failed_checks(self) -> List[WorkflowValidation]:
        return [c for c in self.checks if c.issues]
