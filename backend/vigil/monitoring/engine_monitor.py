"""
Processing engine health monitor.

Pipeline: job_submitted -> constraints_applied -> result_returned

Signals:
- Poll of the "processing_engine" capability: reachability, current
  mode, active session, active job
- Hook on processing_engine.process_job: opens or advances a workflow
  and inspects the returned result
- Console phrases: processing failures, bypass, constraint failures
- Mutation text: error banners and bypass indicators in the UI
- Chat panel mode indicator: must agree with the engine's current mode
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..host import HookedCall, Mutation, NodeTree
from ..observability.models import LogCategory, LogEntry, LogLevel
from .failures import FailureType
from .models import WorkflowValidation
from .workflow import WorkflowHealthMonitor, contains_any

logger = logging.getLogger(__name__)

ENGINE = "processing_engine"
CHAT_PANEL_CLASS = "chat-panel"
MODE_INDICATOR_CLASS = "mode-indicator"

FAILURE_PHRASES = (
    "editorial engine couldn't do it",
    "editorial engine error",
    "constraint processing failed",
)
BYPASS_PHRASES = (
    "bypassing editorial engine",
    "direct processing",
    "skipping constraints",
)
CONSTRAINT_PHRASES = (
    "constraint validation failed",
    "constraint not applied",
    "mode constraint error",
)
CONSTRAINT_SUCCESS_PHRASES = (
    "constraints applied",
    "constraint processing complete",
)


def result_field(result: Any, name: str, default: Any = None) -> Any:
    if isinstance(result, dict):
        return result.get(name, default)
    return getattr(result, name, default)


class EngineMonitor(WorkflowHealthMonitor):
    NAME = "processing_engine"
    DESCRIPTION = "Processing engine integration"
    STAGES = ("job_submitted", "constraints_applied", "result_returned")
    HOOKS = ((ENGINE, "process_job", "on_process_job"),)
    RECOMMENDATIONS = {
        FailureType.CONNECTION_LOST: "Check that the processing engine is loaded and reachable before routing requests",
        FailureType.STAGE_BYPASS: "Route every edit through the processing engine; direct processing skips constraints",
        FailureType.CONSTRAINT_FAILURE: "Review constraint definitions for the active mode",
        FailureType.PROCESSING_FAILURE: "Inspect processing engine errors in the session log",
        FailureType.STALLED_WORKFLOW: "Engine jobs are not returning results; check for hung processing",
        FailureType.MODE_MISMATCH: "The chat panel and the processing engine disagree on the active mode; resync mode selection",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.connected: Optional[bool] = None
        self.current_mode: Optional[str] = None
        self.current_session: Optional[str] = None
        self.active_job: Optional[str] = None
        self.connection_losses = 0
        self._reported_mismatch: Optional[Tuple[str, str]] = None

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def poll(self) -> None:
        reachable = self.capabilities.has(ENGINE) and bool(self.read_capability(ENGINE, "is_reachable", True))
        if self.connected and not reachable:
            self.connection_losses += 1
            self.record_failure(
                FailureType.CONNECTION_LOST,
                "Processing engine stopped responding",
                {"previous_mode": self.current_mode, "previous_session": self.current_session},
            )
        elif self.connected is False and reachable:
            self.log.log(LogLevel.INFO, LogCategory.API, self.NAME.upper(), "CONNECTION_RESTORED",
                         {"capability": ENGINE, "operation": "is_reachable"})
        self.connected = reachable
        if not reachable:
            return

        mode = self.read_capability(ENGINE, "current_mode")
        if mode != self.current_mode:
            self.log.log(LogLevel.INFO, LogCategory.API, self.NAME.upper(), "MODE_CHANGED", {
                "capability": ENGINE, "operation": "current_mode",
                "from": self.current_mode, "to": mode,
            })
            self.current_mode = mode

        self.check_mode_consistency()

        session = self.read_capability(ENGINE, "active_session")
        if session != self.current_session:
            self.log.log(LogLevel.INFO, LogCategory.API, self.NAME.upper(), "SESSION_CHANGED", {
                "capability": ENGINE, "operation": "active_session",
                "from": self.current_session, "to": session,
            })
            self.current_session = session

        job = self.read_capability(ENGINE, "active_job")
        if job and job != self.active_job and self._workflow_for_job(job) is None:
            self.begin_workflow("poll:active_job", context={"job_id": job})
        self.active_job = job

    def chat_panel_mode(self) -> Optional[str]:
        """Mode shown by the chat panel: a data-mode attribute, else the indicator text."""
        if not isinstance(self.mutation_source, NodeTree):
            return None
        panel = self.mutation_source.query_one(CHAT_PANEL_CLASS)
        if panel is None:
            return None
        for node in panel.iter_self_and_descendants():
            mode = node.get_attribute("data-mode")
            if mode:
                return mode
            if node.has_class(MODE_INDICATOR_CLASS):
                return node.text_content().strip() or None
        return None

    def check_mode_consistency(self) -> None:
        """Record one MODE_MISMATCH per distinct disagreement between panel and engine."""
        panel_mode = self.chat_panel_mode()
        if not panel_mode or not self.current_mode or panel_mode == str(self.current_mode):
            self._reported_mismatch = None
            return
        mismatch = (panel_mode, str(self.current_mode))
        if mismatch == self._reported_mismatch:
            return
        self._reported_mismatch = mismatch
        workflow = self.add_issue(f"mode mismatch: panel={panel_mode!r} engine={self.current_mode!r}")
        self.record_failure(
            FailureType.MODE_MISMATCH,
            f"Chat panel mode {panel_mode!r} does not match engine mode {self.current_mode!r}",
            {"panel_mode": panel_mode, "engine_mode": self.current_mode},
            workflow_id=workflow.workflow_id if workflow else None,
        )

    def _workflow_for_job(self, job_id: Any) -> Optional[WorkflowValidation]:
        for workflow in self.in_flight.values():
            if job_id is not None and workflow.context.get("job_id") == job_id:
                return workflow
        return None

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def on_process_job(self, call: HookedCall) -> None:
        job = call.args[0] if call.args else call.kwargs.get("job")
        job_id = result_field(job, "job_id") if job is not None else None
        workflow = self._workflow_for_job(job_id) or self.begin_workflow(
            "hook:process_job", context={"job_id": job_id}
        )

        if call.error is not None:
            self.record_failure(
                FailureType.PROCESSING_FAILURE,
                f"process_job raised {type(call.error).__name__}: {call.error}",
                {"job_id": job_id},
                workflow_id=workflow.workflow_id,
            )
            self.abandon_workflow(workflow, f"engine raised {type(call.error).__name__}")
            return

        applied = result_field(call.result, "constraints_applied")
        if applied:
            self.mark_stage("constraints_applied", workflow.workflow_id)
        elif applied is not None:
            workflow.issues.append("engine returned without applying constraints")
            self.record_failure(
                FailureType.CONSTRAINT_FAILURE,
                "Processing engine returned a result without applying constraints",
                {"job_id": job_id, "mode": self.current_mode},
                workflow_id=workflow.workflow_id,
            )
        self.mark_stage("result_returned", workflow.workflow_id)

    # -------------------------------------------------------------------------
    # Text signals
    # -------------------------------------------------------------------------

    def on_console(self, entry: LogEntry, text: str) -> None:
        self._inspect_text(text, "console")

    def on_mutations(self, mutations: List[Mutation]) -> None:
        for mutation in mutations:
            for node in mutation.added:
                if node.get_attribute("data-bypass") == "true":
                    self._record_bypass("ui bypass indicator", "mutation")
        for text in self.mutation_texts(mutations):
            self._inspect_text(text, "mutation")

    def _inspect_text(self, text: str, source: str) -> None:
        phrase = contains_any(text, FAILURE_PHRASES)
        if phrase:
            workflow = self.add_issue(f"engine failure reported: {phrase}")
            self.record_failure(
                FailureType.PROCESSING_FAILURE,
                f"Processing engine failure reported ({source}): {phrase}",
                {"source": source, "text": text[:200]},
                workflow_id=workflow.workflow_id if workflow else None,
            )
            return

        phrase = contains_any(text, BYPASS_PHRASES)
        if phrase:
            self._record_bypass(phrase, source, text)
            return

        phrase = contains_any(text, CONSTRAINT_PHRASES)
        if phrase:
            workflow = self.add_issue(f"constraint failure: {phrase}")
            self.record_failure(
                FailureType.CONSTRAINT_FAILURE,
                f"Constraint processing failed ({source}): {phrase}",
                {"source": source, "text": text[:200], "mode": self.current_mode},
                workflow_id=workflow.workflow_id if workflow else None,
            )
            return

        if contains_any(text, CONSTRAINT_SUCCESS_PHRASES):
            self.mark_stage("constraints_applied")

    def _record_bypass(self, phrase: str, source: str, text: str = "") -> None:
        workflow = self.add_issue(f"engine bypassed: {phrase}")
        self.record_failure(
            FailureType.STAGE_BYPASS,
            f"Processing engine bypassed ({source}): {phrase}",
            {"source": source, "text": text[:200]},
            workflow_id=workflow.workflow_id if workflow else None,
        )

    def describe_state(self) -> Dict[str, Any]:
        return {
            "engine_available": self.capabilities.has(ENGINE),
            "connected": self.connected,
            "current_mode": self.current_mode,
            "current_session": self.current_session,
            "active_job": self.active_job,
            "connection_losses": self.connection_losses,
            "mode_mismatch": self._reported_mismatch is not None,
        }
