"""
Typed Failure Taxonomy

Defines the closed set of anomalies the workflow monitors can report and
the fixed severity/assignee policy for each.

Purpose:
--------
Explain WHAT went wrong in a monitored pipeline and WHO should act on it.
Severity and assignee are derived from the failure type alone, never
chosen at the detection site.

Non-Goals:
----------
- Fixing anything (AUTO_FIX means the harness owners can act without a
  human judging the output, not that Vigil repairs it)
- Raising exceptions: failures are findings, recorded as values
"""

import uuid
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Anomaly classification shared by all workflow monitors.
    """

    CONNECTION_LOST = "CONNECTION_LOST"
    """A capability that was reachable stopped responding"""

    STAGE_BYPASS = "STAGE_BYPASS"
    """A required pipeline stage was skipped"""

    CONSTRAINT_FAILURE = "CONSTRAINT_FAILURE"
    """Constraint processing reported a failure"""

    PROCESSING_FAILURE = "PROCESSING_FAILURE"
    """The processing engine reported or raised an error"""

    INTEGRATION_ERROR = "INTEGRATION_ERROR"
    """A downstream component surfaced an error banner"""

    MISSING_ATTRIBUTION = "MISSING_ATTRIBUTION"
    """A recorded change lacks provenance metadata"""

    STALLED_WORKFLOW = "STALLED_WORKFLOW"
    """A workflow never reached its terminal stage within the timeout"""

    DUPLICATE_VISUAL_EFFECT = "DUPLICATE_VISUAL_EFFECT"
    """The same region is rendered more than once"""

    MODE_MISMATCH = "MODE_MISMATCH"
    """The chat panel shows a different mode than the processing engine"""

    EDIT_NOT_HIGHLIGHTED = "EDIT_NOT_HIGHLIGHTED"
    """A recorded edit never appeared as a highlight"""


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Assignee(str, Enum):
    AUTO_FIX = "AUTO_FIX"
    """Mechanical issue the harness owners can address without review"""

    HUMAN_REVIEW = "HUMAN_REVIEW"
    """Touches attribution or visual correctness; a person must judge"""


# =============================================================================
# Policy
# =============================================================================

FAILURE_POLICY: Dict[FailureType, Tuple[Severity, Assignee]] = {
    FailureType.CONNECTION_LOST: (Severity.CRITICAL, Assignee.AUTO_FIX),
    FailureType.PROCESSING_FAILURE: (Severity.HIGH, Assignee.AUTO_FIX),
    FailureType.CONSTRAINT_FAILURE: (Severity.MEDIUM, Assignee.AUTO_FIX),
    FailureType.INTEGRATION_ERROR: (Severity.MEDIUM, Assignee.AUTO_FIX),
    FailureType.STALLED_WORKFLOW: (Severity.MEDIUM, Assignee.AUTO_FIX),
    FailureType.MODE_MISMATCH: (Severity.MEDIUM, Assignee.AUTO_FIX),
    FailureType.STAGE_BYPASS: (Severity.HIGH, Assignee.HUMAN_REVIEW),
    FailureType.MISSING_ATTRIBUTION: (Severity.HIGH, Assignee.HUMAN_REVIEW),
    FailureType.DUPLICATE_VISUAL_EFFECT: (Severity.HIGH, Assignee.HUMAN_REVIEW),
    FailureType.EDIT_NOT_HIGHLIGHTED: (Severity.MEDIUM, Assignee.HUMAN_REVIEW),
}

def classify_failure(failure_type: FailureType) -> Tuple[Severity, Assignee]:
    """Severity and assignee for a failure type. Deterministic."""
    return FAILURE_POLICY[FailureType(failure_type)]


# =============================================================================
# Failure record
# =============================================================================

class TypedFailure(BaseModel):
    """
    One classified anomaly recorded by a monitor.

    Immutable once created; reports read, never mutate, failures.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    timestamp: float
    monitor: str
    type: FailureType
    severity: Severity
    assignee: Assignee
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    workflow_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        monitor: str,
        failure_type: FailureType,
        message: str,
        timestamp: float,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> "TypedFailure":
        severity, assignee = classify_failure(failure_type)
        return cls(
            id=f"{monitor}_{uuid.uuid4().hex[:12]}",
            timestamp=timestamp,
            monitor=monitor,
            type=failure_type,
            severity=severity,
            assignee=assignee,
            message=message,
            context=context or {},
            workflow_id=workflow_id,
        )

    @property
    def needs_review(self) -> bool:
        return self.assignee == Assignee.HUMAN_REVIEW
