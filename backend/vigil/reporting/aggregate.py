"""
Evidence aggregation.

Merges the logger's buffer with every monitor's current state and recent
failure window into one AggregatedResult. Aggregation only reads: it
never mutates logger or monitor state.

Derivation rules:
- A monitor that never initialized gets a "monitor not available" card
  and is left out of the overall score
- Overall score is the mean of the available monitors' scores
- Recommendations are the deduplicated union of what the monitors
  already computed; nothing new is diagnosed here
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from ..config import ReportSettings
from ..monitoring.failures import TypedFailure
from ..monitoring.state_monitor import StateMonitor
from ..monitoring.workflow import WorkflowHealthMonitor
from ..observability.logger import StructuredLogger
from ..observability.models import LogLevel
from .errors import ReportAggregationError
from .models import (
    MONITOR_NOT_AVAILABLE,
    AggregatedResult,
    FailurePattern,
    IntegrationPointScore,
    MonitorHealthCard,
    ScenarioResult,
    ScenarioStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScenarioDefinition:
    name: str
    monitor: str
    description: str


SCENARIOS = (
    ScenarioDefinition(
        "Document integration request",
        "chat_integration",
        "User asks the chat to add content; it must pass the engine and change tracker before the document changes",
    ),
    ScenarioDefinition(
        "Constraint processing validation",
        "processing_engine",
        "A job submitted to the processing engine returns with constraints applied",
    ),
    ScenarioDefinition(
        "Result visualization",
        "ai_attribution",
        "An AI edit reaches the change tracker with full attribution and renders once",
    ),
)

INTEGRATION_POINTS = (
    ("Chat -> Processing engine", "chat_integration"),
    ("Processing engine -> Constraints", "processing_engine"),
    ("Processing engine -> Change tracker", "ai_attribution"),
)

NOTABLE_LEVELS = {LogLevel.WARN, LogLevel.ERROR}


def _is_available(monitor: Optional[WorkflowHealthMonitor]) -> bool:
    return monitor is not None and monitor.initialized


def build_health_card(name: str, monitor: Optional[WorkflowHealthMonitor], window_minutes: float) -> MonitorHealthCard:
    if not _is_available(monitor):
        return MonitorHealthCard(name=name, available=False, note=MONITOR_NOT_AVAILABLE)
    state = monitor.get_current_state()
    return MonitorHealthCard(
        name=name,
        description=state.description,
        available=True,
        health_score=state.health_score,
        healthy=state.healthy,
        pending_workflows=state.pending_workflows,
        total_checks=state.total_checks,
        recent_failures=len(monitor.get_recent_failures(window_minutes)),
        failure_counts=state.failure_counts,
        details=state.details,
        recommendations=monitor.recommendations(),
    )


def replay_scenario(definition: ScenarioDefinition, monitor: Optional[WorkflowHealthMonitor]) -> ScenarioResult:
    """Compare the monitor's latest workflow against its expected stages."""
    if not _is_available(monitor):
        return ScenarioResult(
            name=definition.name,
            monitor=definition.monitor,
            description=definition.description,
            status=ScenarioStatus.MONITOR_NOT_AVAILABLE,
        )

    expected = list(monitor.STAGES)
    checks = monitor.get_workflow_checks()
    workflow = checks[-1] if checks else monitor.find_open_workflow()
    if workflow is None:
        return ScenarioResult(
            name=definition.name,
            monitor=definition.monitor,
            description=definition.description,
            status=ScenarioStatus.NOT_OBSERVED,
            expected_stages=expected,
        )

    actual = workflow.observed_stages
    missing = [stage for stage in expected if stage not in actual]
    passed = workflow.completed and not missing and not workflow.issues
    return ScenarioResult(
        name=definition.name,
        monitor=definition.monitor,
        description=definition.description,
        status=ScenarioStatus.PASSED if passed else ScenarioStatus.FAILED,
        expected_stages=expected,
        actual_stages=actual,
        missing_stages=missing,
        issues=list(workflow.issues),
        workflow_id=workflow.workflow_id,
    )


def common_failure_patterns(failures: List[TypedFailure], limit: int = 3) -> List[FailurePattern]:
    counts = Counter(f.type for f in failures)
    patterns = []
    for failure_type, count in counts.most_common():
        if count < 2:
            continue
        monitors = sorted({f.monitor for f in failures if f.type == failure_type})
        patterns.append(FailurePattern(type=failure_type, count=count, monitors=monitors))
    return patterns[:limit]


def dedupe_recommendations(cards: List[MonitorHealthCard]) -> List[str]:
    seen = set()
    result = []
    for card in cards:
        for recommendation in card.recommendations:
            text = recommendation.strip()
            if text and text not in seen:
                seen.add(text)
                result.append(text)
    return result


def aggregate_results(
    structured_logger: StructuredLogger,
    monitors: Mapping[str, Optional[WorkflowHealthMonitor]],
    state_monitor: Optional[StateMonitor] = None,
    settings: Optional[ReportSettings] = None,
) -> AggregatedResult:
    """
    Build the AggregatedResult for a report.

    Args:
        structured_logger: Session logger whose buffer is summarized
        monitors: Monitor name -> monitor, None for monitors never created
        state_monitor: Optional state monitor for the capture summary
        settings: Window and entry limits

    Raises:
        ReportAggregationError: No logger to aggregate from
    """
    if structured_logger is None:
        raise ReportAggregationError("Cannot aggregate a report without a session logger")
    settings = settings or ReportSettings()
    window = settings.recent_failure_minutes

    buffer = structured_logger.get_buffer()
    by_level = Counter(e.level.value for e in buffer)
    by_category = Counter(e.category.value for e in buffer)
    notable = [e for e in buffer if e.level in NOTABLE_LEVELS][-settings.recent_entry_limit:]

    cards = [build_health_card(name, monitor, window) for name, monitor in monitors.items()]
    scores = [c.health_score for c in cards if c.available and c.health_score is not None]
    overall = round(sum(scores) / len(scores), 1) if scores else None

    failures: List[TypedFailure] = []
    checks = []
    for monitor in monitors.values():
        if _is_available(monitor):
            failures.extend(monitor.get_recent_failures(window))
            checks.extend(monitor.get_workflow_checks())
    failures.sort(key=lambda f: f.timestamp)
    checks.sort(key=lambda c: c.started_at)

    cards_by_name: Dict[str, MonitorHealthCard] = {c.name: c for c in cards}
    integration_points = []
    for label, monitor_name in INTEGRATION_POINTS:
        card = cards_by_name.get(monitor_name)
        available = card is not None and card.available
        integration_points.append(IntegrationPointScore(
            name=label,
            monitor=monitor_name,
            available=available,
            score=card.health_score if available else None,
        ))

    if state_monitor is not None and state_monitor.initialized:
        state_summary = {"available": True, **state_monitor.export_capture_history()["summary"]}
    else:
        state_summary = {"available": False, "note": MONITOR_NOT_AVAILABLE}

    return AggregatedResult(
        session_id=structured_logger.session_id,
        generated_at=datetime.now(timezone.utc),
        window_minutes=window,
        total_entries=structured_logger.entry_count,
        buffered_entries=len(buffer),
        entries_by_level=dict(by_level),
        entries_by_category=dict(by_category),
        notable_entries=notable,
        overall_score=overall,
        monitors=cards,
        integration_points=integration_points,
        state_summary=state_summary,
        failures=failures,
        checks=checks,
        scenarios=[replay_scenario(s, monitors.get(s.monitor)) for s in SCENARIOS],
        common_patterns=common_failure_patterns(failures),
        recommendations=dedupe_recommendations(cards),
    )
