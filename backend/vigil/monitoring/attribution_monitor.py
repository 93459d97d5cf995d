"""
AI edit attribution monitor.

Pipeline: processing_started -> edit_recorded

Every AI-produced edit must reach the change tracker carrying provenance
metadata that names the processing engine. The monitor also watches the
rendered result: the same region highlighted twice means an edit was
applied twice.

Signals:
- "ai processing" console phrases open a pending edit
- Hook on change_tracker.add_edit validates attribution and records the edit
- State monitor snapshots are checked for duplicate highlights and for
  recorded edits that never show up as a highlight

Pending edits time out after the edit timeout (default 15s).
A recorded edit with no highlight carrying its id after the highlight
grace period (default 5s) is reported once.
"""

import logging
from typing import Any, Dict, FrozenSet, List, Optional

from ..host import HookedCall
from ..observability.models import HighlightKey, LogEntry, StateSnapshot
from ..observability.patterns import find_duplicate_highlights
from .engine_monitor import result_field
from .failures import FailureType
from .state_monitor import StateMonitor
from .workflow import WorkflowHealthMonitor, contains_any

logger = logging.getLogger(__name__)

PROCESSING_PHRASES = (
    "ai processing",
    "processing with ai",
    "ai edit started",
)
REQUIRED_METADATA = ("job_id", "mode", "provenance", "author")
EXPECTED_SOURCE = "editorial-engine"


def missing_attribution(metadata: Any) -> List[str]:
    """Required metadata fields absent or empty on an edit."""
    if metadata is None:
        return list(REQUIRED_METADATA)
    return [name for name in REQUIRED_METADATA if not result_field(metadata, name)]


class AttributionMonitor(WorkflowHealthMonitor):
    NAME = "ai_attribution"
    DESCRIPTION = "AI edit attribution"
    STAGES = ("processing_started", "edit_recorded")
    HOOKS = (("change_tracker", "add_edit", "on_edit_added"),)
    RECOMMENDATIONS = {
        FailureType.MISSING_ATTRIBUTION: "Ensure every AI edit carries job_id, mode, provenance and author from the processing engine",
        FailureType.DUPLICATE_VISUAL_EFFECT: "The same change is rendered more than once; check for double application of edits",
        FailureType.STALLED_WORKFLOW: "AI processing started but no edit reached the change tracker",
        FailureType.EDIT_NOT_HIGHLIGHTED: "Edits reach the change tracker but are not rendered; check the highlight renderer",
    }

    def __init__(self, *args, state_monitor: Optional[StateMonitor] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.state_monitor = state_monitor
        self._reported_duplicates: FrozenSet[HighlightKey] = frozenset()
        self._awaiting_highlight: Dict[str, float] = {}
        self.edits_validated = 0
        self.edits_unattributed = 0

    @property
    def stall_timeout(self) -> float:
        return self.settings.edit_timeout_seconds

    def on_start(self) -> None:
        if self.state_monitor is not None:
            self.state_monitor.add_listener(self._on_snapshot)

    def on_stop(self) -> None:
        if self.state_monitor is not None:
            self.state_monitor.remove_listener(self._on_snapshot)

    def poll(self) -> None:
        if self.state_monitor is None:
            return
        last = self.state_monitor.get_last_capture()
        if last is not None:
            self.check_duplicates(last)
            self.match_highlights(last)
        self.check_unhighlighted(self.now())

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def on_console(self, entry: LogEntry, text: str) -> None:
        phrase = contains_any(text, PROCESSING_PHRASES)
        if phrase:
            self.begin_workflow(f"console:{phrase}", correlation_id=entry.correlation_id)

    def on_edit_added(self, call: HookedCall) -> None:
        if call.error is not None:
            return
        edit = call.args[0] if call.args else call.kwargs.get("edit")
        metadata = result_field(edit, "metadata", edit)

        workflow = self.find_open_workflow("edit_recorded") or self.begin_workflow("hook:add_edit")
        missing = missing_attribution(metadata)
        if missing:
            self.edits_unattributed += 1
            workflow.issues.append(f"edit missing attribution fields: {', '.join(missing)}")
            self.record_failure(
                FailureType.MISSING_ATTRIBUTION,
                f"Edit recorded without attribution: missing {', '.join(missing)}",
                {"missing": missing, "edit_id": result_field(edit, "id")},
                workflow_id=workflow.workflow_id,
            )
        else:
            source = result_field(metadata, "provenance")
            author = result_field(metadata, "author")
            if EXPECTED_SOURCE not in (source, author):
                self.edits_unattributed += 1
                workflow.issues.append(f"edit attributed to {author!r}/{source!r}")
                self.record_failure(
                    FailureType.MISSING_ATTRIBUTION,
                    f"Edit not attributed to {EXPECTED_SOURCE}: author={author!r} provenance={source!r}",
                    {"author": author, "provenance": source, "edit_id": result_field(edit, "id")},
                    workflow_id=workflow.workflow_id,
                )
            else:
                self.edits_validated += 1
        edit_id = result_field(edit, "id")
        if edit_id and self.state_monitor is not None:
            self._awaiting_highlight[str(edit_id)] = self.now()
        self.mark_stage("edit_recorded", workflow.workflow_id)

    def _on_snapshot(self, snapshot: StateSnapshot, significant: bool) -> None:
        self._guard("duplicate_check", self.check_duplicates, snapshot)
        self._guard("highlight_check", self.match_highlights, snapshot)

    def check_duplicates(self, snapshot: StateSnapshot) -> None:
        """Record one failure per newly seen set of duplicated regions."""
        duplicates = find_duplicate_highlights(snapshot.highlights)
        keys = frozenset(d.key for d in duplicates)
        if not keys:
            if "highlights" in snapshot.read_errors:
                return
            self._reported_duplicates = frozenset()
            return
        new_keys = keys - self._reported_duplicates
        self._reported_duplicates = keys
        if not new_keys:
            return

        workflow = self.find_open_workflow()
        if workflow is not None:
            workflow.issues.append(f"duplicate visual effect on {len(new_keys)} region(s)")
        self.record_failure(
            FailureType.DUPLICATE_VISUAL_EFFECT,
            f"Same region rendered more than once ({len(new_keys)} region(s))",
            {
                "regions": [{"start": s, "end": e, "text": t} for s, e, t in sorted(new_keys)],
                "snapshot_time": snapshot.timestamp,
                "change_type": snapshot.change_type,
            },
            workflow_id=workflow.workflow_id if workflow else None,
        )

    def match_highlights(self, snapshot: StateSnapshot) -> None:
        """Clear edits whose id appears on a rendered highlight."""
        if "highlights" in snapshot.read_errors:
            return
        for highlight in snapshot.highlights:
            self._awaiting_highlight.pop(highlight.id, None)

    def check_unhighlighted(self, now: float) -> None:
        grace = self.settings.highlight_grace_seconds
        for edit_id, recorded_at in list(self._awaiting_highlight.items()):
            waited = now - recorded_at
            if waited <= grace:
                continue
            del self._awaiting_highlight[edit_id]
            self.record_failure(
                FailureType.EDIT_NOT_HIGHLIGHTED,
                f"Edit {edit_id} recorded but not highlighted after {waited:.0f}s",
                {"edit_id": edit_id, "waited_seconds": waited},
            )

    def describe_state(self) -> Dict[str, Any]:
        return {
            "tracker_available": self.capabilities.has("change_tracker"),
            "watching_state": self.state_monitor is not None,
            "edits_validated": self.edits_validated,
            "edits_unattributed": self.edits_unattributed,
            "duplicate_regions": len(self._reported_duplicates),
            "edits_awaiting_highlight": len(self._awaiting_highlight),
        }
