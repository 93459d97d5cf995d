"""
Chat-to-document integration monitor.

Pipeline: intent_detected -> engine_invoked -> edits_tracked -> document_updated

A user asking the chat to put content into the document must travel
through the processing engine and the change tracker before the document
changes. Anything else is a bypass.

Signals:
- Intent phrases in console output or chat UI text open a workflow
- Hooks on processing_engine.process_job, change_tracker.add_edit and
  document_store.modify advance it
- Bypass phrases in the assistant's reply while a request is open
- Error banner text from the downstream integration
- Poll of change_tracker and document_store reachability
"""

import logging
from typing import Any, Dict, List, Optional

from ..host import HookedCall, Mutation
from ..observability.models import LogEntry
from .failures import FailureType
from .models import WorkflowValidation
from .workflow import WorkflowHealthMonitor, contains_any

logger = logging.getLogger(__name__)

INTENT_PHRASES = (
    "add to document",
    "add that to the document",
    "put that in the doc",
    "integrate this",
    "apply these changes",
    "make these edits",
    "update the document",
    "go ahead and add",
)
BYPASS_PHRASES = (
    "i'll help you directly",
    "here's the content",
    "let me provide",
    "i can assist with that",
)
ERROR_PHRASES = (
    "could not add to document",
    "integration failed",
    "editorial engine unavailable",
    "track edits not responding",
)

# Same intent seen on console and in the UI within this window is one request
INTENT_DEDUP_SECONDS = 2.0

DOWNSTREAM = ("change_tracker", "document_store")


class ChatMonitor(WorkflowHealthMonitor):
    NAME = "chat_integration"
    DESCRIPTION = "Chat to document integration"
    STAGES = ("intent_detected", "engine_invoked", "edits_tracked", "document_updated")
    HOOKS = (
        ("processing_engine", "process_job", "on_engine_call"),
        ("change_tracker", "add_edit", "on_edit_tracked"),
        ("document_store", "modify", "on_document_modified"),
    )
    RECOMMENDATIONS = {
        FailureType.STAGE_BYPASS: "Chat responses are reaching the document without the processing engine",
        FailureType.INTEGRATION_ERROR: "Downstream integration reported errors; check change tracker and engine availability",
        FailureType.CONNECTION_LOST: "A downstream capability disappeared during the session",
        FailureType.STALLED_WORKFLOW: "Chat requests are not reaching the document; check the integration path",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reachable: Dict[str, Optional[bool]] = {name: None for name in DOWNSTREAM}
        self.bypass_count = 0

    @property
    def poll_interval(self) -> float:
        return self.settings.chat_poll_interval_seconds

    def poll(self) -> None:
        for name in DOWNSTREAM:
            available = self.capabilities.has(name)
            if self.reachable[name] and not available:
                self.record_failure(
                    FailureType.CONNECTION_LOST,
                    f"{name} is no longer available to the chat integration",
                    {"capability": name},
                )
            self.reachable[name] = available

    # -------------------------------------------------------------------------
    # Text signals
    # -------------------------------------------------------------------------

    def on_console(self, entry: LogEntry, text: str) -> None:
        self._inspect_text(text, "console", entry.correlation_id)

    def on_mutations(self, mutations: List[Mutation]) -> None:
        for text in self.mutation_texts(mutations):
            self._inspect_text(text, "mutation")

    def _inspect_text(self, text: str, source: str, correlation_id: Optional[str] = None) -> None:
        phrase = contains_any(text, INTENT_PHRASES)
        if phrase and not self._recently_triggered(phrase):
            self.begin_workflow(f"{source}:{phrase}", correlation_id=correlation_id,
                                context={"phrase": phrase, "text": text[:200]})
            return

        phrase = contains_any(text, BYPASS_PHRASES)
        if phrase and "editorial engine" not in text.lower():
            workflow = self.find_open_workflow("engine_invoked")
            if workflow is not None:
                self.bypass_count += 1
                workflow.issues.append(f"assistant answered directly: {phrase}")
                self.record_failure(
                    FailureType.STAGE_BYPASS,
                    f"Chat answered directly instead of routing through the engine ({source}): {phrase}",
                    {"source": source, "text": text[:200]},
                    workflow_id=workflow.workflow_id,
                )
            return

        phrase = contains_any(text, ERROR_PHRASES)
        if phrase:
            workflow = self.add_issue(f"integration error: {phrase}")
            self.record_failure(
                FailureType.INTEGRATION_ERROR,
                f"Integration error surfaced ({source}): {phrase}",
                {"source": source, "text": text[:200]},
                workflow_id=workflow.workflow_id if workflow else None,
            )

    def _recently_triggered(self, phrase: str) -> bool:
        now = self.now()
        for workflow in self.in_flight.values():
            if workflow.context.get("phrase") == phrase and now - workflow.started_at <= INTENT_DEDUP_SECONDS:
                return True
        return False

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def on_engine_call(self, call: HookedCall) -> None:
        if call.error is None:
            self.mark_stage("engine_invoked")

    def on_edit_tracked(self, call: HookedCall) -> None:
        if call.error is None:
            self.mark_stage("edits_tracked")

    def on_document_modified(self, call: HookedCall) -> None:
        if call.error is not None:
            workflow = self.add_issue(f"document update raised {type(call.error).__name__}")
            self.record_failure(
                FailureType.INTEGRATION_ERROR,
                f"document_store.modify raised {type(call.error).__name__}: {call.error}",
                workflow_id=workflow.workflow_id if workflow else None,
            )
            return
        self.mark_stage("document_updated")

    def on_workflow_finalized(self, workflow: WorkflowValidation) -> None:
        if workflow.completed and not workflow.stages["engine_invoked"]:
            self.record_failure(
                FailureType.STAGE_BYPASS,
                "Document updated from chat without invoking the processing engine",
                {"trigger": workflow.trigger, "stages": dict(workflow.stages)},
                workflow_id=workflow.workflow_id,
            )

    def describe_state(self) -> Dict[str, Any]:
        return {
            "downstream_available": {name: self.capabilities.has(name) for name in DOWNSTREAM},
            "bypass_count": self.bypass_count,
        }
