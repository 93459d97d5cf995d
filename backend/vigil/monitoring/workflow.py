"""
Generic workflow health monitor.

Every monitored pipeline is a fixed, ordered list of stages. The first
stage is the trigger and the last is terminal:

    TRIGGERED -> IN_PROGRESS (stage 2 .. n-1 observed) -> COMPLETE
    TRIGGERED -> ... -> STALLED   (no terminal stage within the timeout)

Stage signals arrive from three sources, any of which may advance a
workflow:
- Periodic polling of named host capabilities (poll())
- Keyword matching on the logger's CONSOLE stream (on_console())
- Mutation text matching (on_mutations())
plus wrap-and-call-through hooks declared in HOOKS.

Design principles:
- Detected anomalies are TypedFailure values, never exceptions
- Every callback runs behind a guard; a failing detector logs and the
  harness keeps going
- The health score is recomputed from the last N finalized checks on each
  periodic check, never adjusted incrementally
- Stalls are finalized by the periodic sweep that observes the timeout,
  not by a cancel call
"""

import logging
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import WorkflowSettings
from ..host import CapabilityRegistry, HookedCall, Mutation, MutationSource
from ..observability.logger import StructuredLogger
from ..observability.models import LogCategory, LogEntry, LogLevel
from ..runtime import Scheduler, TimerHandle
from .failures import FailureType, Severity, TypedFailure
from .models import MonitorState, WorkflowStatus, WorkflowValidation

logger = logging.getLogger(__name__)

SEVERITY_LEVELS = {
    Severity.LOW: LogLevel.INFO,
    Severity.MEDIUM: LogLevel.WARN,
    Severity.HIGH: LogLevel.ERROR,
    Severity.CRITICAL: LogLevel.ERROR,
}

FailureListener = Callable[[TypedFailure], None]


def contains_any(text: str, phrases: Iterable[str]) -> Optional[str]:
    """First phrase found in text (case-insensitive), or None."""
    lowered = text.lower()
    for phrase in phrases:
        if phrase in lowered:
            return phrase
    return None


class WorkflowHealthMonitor:
    """
    Base class for pipeline monitors.

    Subclasses declare NAME, DESCRIPTION, STAGES, HOOKS and
    RECOMMENDATIONS and override the signal handlers they need.
    HOOKS entries are (capability, method, handler_name); the handler
    receives the HookedCall after the wrapped method returns or raises.
    """

    NAME = "workflow"
    DESCRIPTION = ""
    STAGES: Tuple[str, ...] = ("triggered", "complete")
    HOOKS: Tuple[Tuple[str, str, str], ...] = ()
    RECOMMENDATIONS: Dict[FailureType, str] = {}

    def __init__(
        self,
        structured_logger: StructuredLogger,
        scheduler: Scheduler,
        capabilities: Optional[CapabilityRegistry] = None,
        mutation_source: Optional[MutationSource] = None,
        settings: Optional[WorkflowSettings] = None,
    ):
        self.log = structured_logger
        self.scheduler = scheduler
        self.capabilities = capabilities or CapabilityRegistry()
        self.mutation_source = mutation_source
        self.settings = settings or WorkflowSettings()

        self.in_flight: Dict[str, WorkflowValidation] = {}
        self._checks: Deque[WorkflowValidation] = deque(maxlen=self.settings.check_history_cap)
        self._failures: Deque[TypedFailure] = deque(maxlen=self.settings.failure_history_cap)
        self._failure_listeners: List[FailureListener] = []
        self._detachers: List[Callable[[], None]] = []
        self._timer: Optional[TimerHandle] = None

        self.initialized = False
        self.running = False
        self.health_score = 100.0
        self.last_check_at: Optional[float] = None
        self.total_failures = 0

    # -------------------------------------------------------------------------
    # Configuration hooks for subclasses
    # -------------------------------------------------------------------------

    @property
    def poll_interval(self) -> float:
        return self.settings.poll_interval_seconds

    @property
    def stall_timeout(self) -> float:
        return self.settings.stall_timeout_seconds

    @property
    def terminal_stage(self) -> str:
        return self.STAGES[-1]

    def poll(self) -> None:
        """Query host capabilities. Called on every periodic check."""

    def on_console(self, entry: LogEntry, text: str) -> None:
        """Inspect one intercepted diagnostic line (lower-cased text)."""

    def on_mutations(self, mutations: List[Mutation]) -> None:
        """Inspect one batch of node tree mutations."""

    def on_workflow_finalized(self, workflow: WorkflowValidation) -> None:
        """Called once when a workflow completes or stalls."""

    def on_start(self) -> None:
        """Extra setup after the base monitor is wired."""

    def on_stop(self) -> None:
        """Extra teardown before the base monitor is unwired."""

    def describe_state(self) -> Dict[str, Any]:
        return {}

    def cleanup_extra(self, cutoff: float) -> None:
        """Drop subclass-owned in-flight data older than cutoff."""

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def now(self) -> float:
        return self.scheduler.now()

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.initialized = True

        self.log.subscribe(self._on_entry)
        if self.mutation_source is not None:
            try:
                self.mutation_source.subscribe(self._on_mutation_batch)
            except Exception as e:
                logger.warning(f"[VIGIL:{self.NAME}] Could not observe mutations: {e}")
        for capability, method, handler in self.HOOKS:
            self._attach_hook(capability, method, handler)

        self._guard("on_start", self.on_start)
        self._timer = self.scheduler.call_every(self.poll_interval, self.periodic_check)
        self.log.log(LogLevel.INFO, LogCategory.STATE, self.NAME.upper(), "MONITOR_STARTED", {
            "stages": list(self.STAGES),
            "hooks": [f"{c}.{m}" for c, m, _ in self.HOOKS],
            "hooked": len(self._detachers),
        })

    def stop(self) -> None:
        if not self.running:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._guard("on_stop", self.on_stop)
        self.log.unsubscribe(self._on_entry)
        if self.mutation_source is not None:
            try:
                self.mutation_source.unsubscribe(self._on_mutation_batch)
            except Exception as e:
                logger.warning(f"[VIGIL:{self.NAME}] Could not detach mutation observer: {e}")
        for detach in reversed(self._detachers):
            detach()
        self._detachers = []
        self.running = False
        self.health_score = self.compute_health_score()
        self.log.log(LogLevel.INFO, LogCategory.STATE, self.NAME.upper(), "MONITOR_STOPPED", {
            "health_score": self.health_score,
            "pending_workflows": len(self.in_flight),
            "failures": self.total_failures,
        })

    def _attach_hook(self, capability: str, method: str, handler_name: str) -> None:
        handler = getattr(self, handler_name)

        def observer(call: HookedCall) -> None:
            self._guard(handler_name, handler, call)

        detach = self.capabilities.attach(capability, method, observer)
        if detach is None:
            self.log.log(LogLevel.DEBUG, LogCategory.API, self.NAME.upper(), "HOOK_UNAVAILABLE", {
                "capability": capability,
                "operation": method,
            })
            return
        self._detachers.append(detach)

    def _guard(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as e:
            logger.warning(f"[VIGIL:{self.NAME}] {name} failed: {e}")
            self.log.log(LogLevel.WARN, LogCategory.ERROR, self.NAME.upper(), "CALLBACK_FAILED", {
                "message": str(e),
                "error_type": type(e).__name__,
                "details": {"callback": name},
            })
            return None

    def _on_entry(self, entry: LogEntry) -> None:
        if entry.category != LogCategory.CONSOLE:
            return
        self._guard("on_console", self.on_console, entry, entry.data.text())

    def _on_mutation_batch(self, mutations: List[Mutation]) -> None:
        self._guard("on_mutations", self.on_mutations, mutations)

    def periodic_check(self) -> None:
        """Poll, sweep timeouts, drop abandoned entries, rescore."""
        self._guard("poll", self.poll)
        now = self.now()
        self._guard("sweep", self.sweep, now)
        self._guard("cleanup", self.cleanup, now)
        self.health_score = self.compute_health_score()
        self.last_check_at = now

    # -------------------------------------------------------------------------
    # Workflow table
    # -------------------------------------------------------------------------

    def begin_workflow(
        self,
        trigger: str,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowValidation:
        workflow = WorkflowValidation(
            workflow_id=f"{self.NAME}_{uuid.uuid4().hex[:10]}",
            monitor=self.NAME,
            trigger=trigger,
            started_at=self.now(),
            stages={stage: stage == self.STAGES[0] for stage in self.STAGES},
            correlation_id=correlation_id,
            context=context or {},
        )
        self.in_flight[workflow.workflow_id] = workflow
        self.log.log(LogLevel.INFO, LogCategory.EVENT, self.NAME.upper(), "WORKFLOW_TRIGGERED", {
            "workflow_id": workflow.workflow_id,
            "trigger": trigger,
        }, correlation_id=correlation_id)
        return workflow

    def find_open_workflow(self, missing_stage: Optional[str] = None) -> Optional[WorkflowValidation]:
        """Oldest in-flight workflow, optionally one still missing a stage."""
        for workflow in sorted(self.in_flight.values(), key=lambda w: w.started_at):
            if missing_stage is None or not workflow.stages.get(missing_stage, False):
                return workflow
        return None

    def mark_stage(self, stage: str, workflow_id: Optional[str] = None) -> Optional[WorkflowValidation]:
        """
        Record a stage signal.

        Applies to the given workflow, or to the oldest in-flight workflow
        that has not yet seen the stage. Reaching the terminal stage
        finalizes the workflow as COMPLETE.
        """
        if stage not in self.STAGES:
            raise ValueError(f"Unknown stage for {self.NAME}: {stage}")
        workflow = self.in_flight.get(workflow_id) if workflow_id else self.find_open_workflow(stage)
        if workflow is None:
            return None

        workflow.stages[stage] = True
        if stage == self.terminal_stage:
            skipped = [s for s in self.STAGES[:-1] if not workflow.stages[s]]
            for missing in skipped:
                workflow.issues.append(f"stage '{missing}' not observed before '{stage}'")
            self._finalize(workflow, WorkflowStatus.COMPLETE)
        else:
            workflow.status = WorkflowStatus.IN_PROGRESS
        return workflow

    def add_issue(self, issue: str, workflow_id: Optional[str] = None) -> Optional[WorkflowValidation]:
        workflow = self.in_flight.get(workflow_id) if workflow_id else self.find_open_workflow()
        if workflow is not None:
            workflow.issues.append(issue)
        return workflow

    def abandon_workflow(self, workflow: WorkflowValidation, issue: str) -> None:
        """Finalize a workflow that can no longer reach its terminal stage."""
        workflow.issues.append(issue)
        self._finalize(workflow, WorkflowStatus.STALLED)

    def _finalize(self, workflow: WorkflowValidation, status: WorkflowStatus) -> None:
        now = self.now()
        workflow.status = status
        workflow.finished_at = now
        workflow.duration = now - workflow.started_at
        self.in_flight.pop(workflow.workflow_id, None)
        self._checks.append(workflow)
        level = LogLevel.INFO if not workflow.issues else LogLevel.WARN
        self.log.log(level, LogCategory.EVENT, self.NAME.upper(), f"WORKFLOW_{status.value}", {
            "workflow_id": workflow.workflow_id,
            "stages": workflow.stages,
            "duration": workflow.duration,
            "issues": workflow.issues,
        }, correlation_id=workflow.correlation_id)
        self._guard("on_workflow_finalized", self.on_workflow_finalized, workflow)

    def sweep(self, now: float) -> List[WorkflowValidation]:
        """Finalize in-flight workflows older than the stall timeout as STALLED."""
        stalled = []
        for workflow in list(self.in_flight.values()):
            age = now - workflow.started_at
            if age <= self.stall_timeout:
                continue
            workflow.issues.append(
                f"STALLED: no '{self.terminal_stage}' after {self.stall_timeout:.0f}s "
                f"(last stage: {workflow.last_stage})"
            )
            self._finalize(workflow, WorkflowStatus.STALLED)
            self.record_failure(
                FailureType.STALLED_WORKFLOW,
                f"{self.NAME} workflow stalled after '{workflow.last_stage}'",
                {"age_seconds": age, "stages": dict(workflow.stages), "trigger": workflow.trigger},
                workflow_id=workflow.workflow_id,
            )
            stalled.append(workflow)
        return stalled

    def cleanup(self, now: float) -> None:
        cutoff = now - self.settings.cleanup_after_seconds
        for workflow_id, workflow in list(self.in_flight.items()):
            if workflow.started_at < cutoff:
                del self.in_flight[workflow_id]
                logger.debug(f"[VIGIL:{self.NAME}] Dropped abandoned workflow {workflow_id}")
        self.cleanup_extra(cutoff)

    # -------------------------------------------------------------------------
    # Failures
    # -------------------------------------------------------------------------

    def record_failure(
        self,
        failure_type: FailureType,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> TypedFailure:
        failure = TypedFailure.create(
            monitor=self.NAME,
            failure_type=failure_type,
            message=message,
            timestamp=self.now(),
            context=context,
            workflow_id=workflow_id,
        )
        self._failures.append(failure)
        self.total_failures += 1
        self.log.log(SEVERITY_LEVELS[failure.severity], LogCategory.ERROR, self.NAME.upper(), failure.type.value, {
            "message": message,
            "error_type": failure.type.value,
            "details": {
                "failure_id": failure.id,
                "severity": failure.severity.value,
                "assignee": failure.assignee.value,
                "context": context or {},
                "workflow_id": workflow_id,
            },
        })
        for listener in list(self._failure_listeners):
            self._guard("failure_listener", listener, failure)
        return failure

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def get_failures(self) -> List[TypedFailure]:
        return list(self._failures)

    def get_recent_failures(self, minutes: float = 5.0) -> List[TypedFailure]:
        cutoff = self.now() - minutes * 60
        return [f for f in self._failures if f.timestamp >= cutoff]

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def get_workflow_checks(self) -> List[WorkflowValidation]:
        return list(self._checks)

    def pending_workflow_count(self) -> int:
        return len(self.in_flight)

    def compute_health_score(self) -> float:
        """Percentage of the last N finalized checks with no issues; 100 when none."""
        window = list(self._checks)[-self.settings.score_window:]
        if not window:
            return 100.0
        clean = sum(1 for check in window if not check.issues)
        return round(100.0 * clean / len(window), 1)

    def is_healthy(self) -> bool:
        recent = self.get_recent_failures(2)
        if any(f.severity == Severity.CRITICAL for f in recent):
            return False
        return sum(1 for f in recent if f.severity == Severity.HIGH) < 3

    def recommendations(self) -> List[str]:
        seen_types = {f.type for f in self.get_recent_failures(10)}
        recs = [text for ftype, text in self.RECOMMENDATIONS.items() if ftype in seen_types]
        if self.compute_health_score() < 80:
            recs.append(f"{self.DESCRIPTION or self.NAME}: integrity below 80%, review recent workflow checks")
        return recs

    def get_current_state(self) -> MonitorState:
        counts: Dict[str, int] = {}
        for failure in self._failures:
            counts[failure.type.value] = counts.get(failure.type.value, 0) + 1
        return MonitorState(
            name=self.NAME,
            description=self.DESCRIPTION,
            initialized=self.initialized,
            running=self.running,
            healthy=self.is_healthy(),
            health_score=self.compute_health_score(),
            pending_workflows=len(self.in_flight),
            total_checks=len(self._checks),
            total_failures=self.total_failures,
            failure_counts=counts,
            last_check_at=self.last_check_at,
            details=self._guard("describe_state", self.describe_state) or {},
        )

    # -------------------------------------------------------------------------
    # Helpers for subclasses
    # -------------------------------------------------------------------------

    def read_capability(self, name: str, attribute: str, default: Any = None) -> Any:
        """
        Read a status value from a capability: call it if it is a method.

        Missing capability or attribute returns default; errors propagate
        to the caller's guard.
        """
        capability = self.capabilities.get(name)
        if capability is None:
            return default
        value = getattr(capability, attribute, default)
        return value() if callable(value) else value

    @staticmethod
    def mutation_texts(mutations: Sequence[Mutation]) -> List[str]:
        texts = []
        for mutation in mutations:
            text = mutation.added_text().strip()
            if text:
                texts.append(text)
        return texts
