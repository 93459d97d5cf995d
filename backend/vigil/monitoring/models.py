"""
Monitoring data models.

Workflow validation records, monitor state views and the response models
of the read-only monitoring API.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..persistence.models import Session


class WorkflowStatus(str, Enum):
    TRIGGERED = "TRIGGERED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    STALLED = "STALLED"


FINAL_STATUSES = {WorkflowStatus.COMPLETE, WorkflowStatus.STALLED}


class WorkflowValidation(BaseModel):
    """
    Evaluation of one instance of a multi-stage pipeline.

    INVARIANT: status is COMPLETE only when the terminal stage flag is set.
    A record that times out is finalized as STALLED with a stall issue.
    """

    model_config = ConfigDict(extra="forbid")

    workflow_id: str
    monitor: str
    trigger: str
    started_at: float
    stages: Dict[str, bool]
    status: WorkflowStatus = WorkflowStatus.TRIGGERED
    finished_at: Optional[float] = None
    duration: Optional[float] = None
    issues: List[str] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == WorkflowStatus.COMPLETE

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def observed_stages(self) -> List[str]:
        return [name for name, seen in self.stages.items() if seen]

    @property
    def last_stage(self) -> Optional[str]:
        observed = self.observed_stages
        return observed[-1] if observed else None


class MonitorState(BaseModel):
    """Point-in-time view of one monitor, consumed by reports and the API."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    initialized: bool = False
    running: bool = False
    healthy: bool = True
    health_score: float = 100.0
    pending_workflows: int = 0
    total_checks: int = 0
    total_failures: int = 0
    failure_counts: Dict[str, int] = Field(default_factory=dict)
    last_check_at: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# API responses
# =============================================================================

class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    model_config = ConfigDict(extra="forbid")

    status: str = "ok"


class HarnessStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    active: bool
    session_id: Optional[str] = None
    started_at: Optional[datetime] = None
    entry_count: int = 0
    components: Dict[str, bool] = Field(default_factory=dict)
    interceptor: Dict[str, Any] = Field(default_factory=dict)


class SessionListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sessions: List[Session]
    total_count: int


class MonitorListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    monitors: List[MonitorState]
