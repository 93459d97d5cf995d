"""
State monitor: periodic and mutation-triggered snapshots.

Two triggers feed capture_current_state():
- A fixed-interval timer on the host scheduler (default 1s)
- Mutation batches that touch a state-bearing region (side panel,
  indicator, highlight markers, the editable surface)

Each capture is compared with the previous one. Only significant changes
are logged, but every capture is kept in the bounded history. Significant
captures also run the anomaly heuristics (duplicate highlights,
highlights shown while the indicator is off).

Reading host state is done field by field: a failure reading one field
defaults that field and the capture carries on.
"""

import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from ..config import StateMonitorSettings
from ..host import Mutation, MutationSource, NodeTree, UINode
from ..observability.logger import StructuredLogger
from ..observability.models import (
    DocumentMetrics,
    Highlight,
    LogCategory,
    LogLevel,
    StateSnapshot,
)
from ..observability.patterns import find_duplicate_highlights, list_key
from ..runtime import Scheduler, TimerHandle
from .errors import MonitorNotRunningError

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[StateSnapshot, bool], None]


class StateReader(Protocol):
    """Field-level read access to observable host state."""

    def panel_visible(self) -> bool:
        ...

    def indicator_active(self) -> bool:
        ...

    def highlights(self) -> List[Highlight]:
        ...

    def metrics(self) -> DocumentMetrics:
        ...


class NodeTreeStateReader:
    """Reads state from a NodeTree using the configured class names."""

    def __init__(self, tree: NodeTree, settings: Optional[StateMonitorSettings] = None):
        self.tree = tree
        self.settings = settings or StateMonitorSettings()

    def panel_visible(self) -> bool:
        panel = self.tree.query_one(self.settings.panel_class)
        if panel is None:
            return False
        if "hidden" in panel.attributes or panel.has_class("is-hidden"):
            return False
        style = panel.get_attribute("style", "") or ""
        return "display: none" not in style.replace("display:none", "display: none")

    def indicator_active(self) -> bool:
        indicator = self.tree.query_one(self.settings.indicator_class)
        return indicator is not None and indicator.has_class(self.settings.indicator_active_class)

    def highlights(self) -> List[Highlight]:
        return [self._to_highlight(node) for node in self.tree.query_all(self.settings.highlight_class)]

    @staticmethod
    def _to_highlight(node: UINode) -> Highlight:
        return Highlight(
            id=node.get_attribute("data-edit-id", ""),
            type=node.get_attribute("data-edit-type", ""),
            start=int(node.get_attribute("data-from", "0")),
            end=int(node.get_attribute("data-to", "0")),
            text=node.text_content(),
        )

    def metrics(self) -> DocumentMetrics:
        editor = self.tree.query_one(self.settings.editor_class)
        if editor is None:
            return DocumentMetrics()
        text = editor.text_content()
        return DocumentMetrics(
            content_length=len(text),
            line_count=text.count("\n") + 1 if text else 0,
            word_count=len(text.split()),
            scroll_height=float(editor.get_attribute("data-scroll-height", "0")),
        )


class StateMonitor:
    """
    Captures snapshots of observable application state.

    Usage:
        monitor = StateMonitor(log, scheduler, NodeTreeStateReader(tree), mutation_source=tree)
        monitor.start_monitoring()
        ...
        monitor.stop_monitoring()
        history = monitor.get_capture_history()
    """

    COMPONENT = "STATE_MONITOR"

    def __init__(
        self,
        structured_logger: StructuredLogger,
        scheduler: Scheduler,
        reader: StateReader,
        mutation_source: Optional[MutationSource] = None,
        settings: Optional[StateMonitorSettings] = None,
        snapshot_path: Optional[Path] = None,
    ):
        self.log = structured_logger
        self.scheduler = scheduler
        self.reader = reader
        self.mutation_source = mutation_source
        self.settings = settings or StateMonitorSettings()
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None

        self._history: Deque[StateSnapshot] = deque(maxlen=self.settings.history_cap)
        self._listeners: List[SnapshotListener] = []
        self._timer: Optional[TimerHandle] = None
        self.initialized = False
        self.running = False
        self.significant_changes = 0
        self.anomaly_count = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_monitoring(self) -> None:
        if self.running:
            return
        self.running = True
        self.initialized = True
        self._timer = self.scheduler.call_every(self.settings.capture_interval_seconds, self._on_timer)
        if self.mutation_source is not None:
            try:
                self.mutation_source.subscribe(self._on_mutations)
            except Exception as e:
                # Degraded mode: timer captures only
                logger.warning(f"[VIGIL:STATE] Could not observe mutations: {e}")
                self.log.log(LogLevel.WARN, LogCategory.ERROR, self.COMPONENT, "OBSERVER_UNAVAILABLE",
                             {"message": str(e), "error_type": type(e).__name__})
        self.log.log(LogLevel.INFO, LogCategory.STATE, self.COMPONENT, "MONITORING_STARTED", {
            "interval_seconds": self.settings.capture_interval_seconds,
            "observing_mutations": self.mutation_source is not None,
        })
        self.capture_current_state("initial")

    def stop_monitoring(self) -> None:
        if not self.running:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.mutation_source is not None:
            try:
                self.mutation_source.unsubscribe(self._on_mutations)
            except Exception as e:
                logger.warning(f"[VIGIL:STATE] Could not detach mutation observer: {e}")
        self.running = False
        self._persist_history()
        self.log.log(LogLevel.INFO, LogCategory.STATE, self.COMPONENT, "MONITORING_STOPPED", {
            "captures": len(self._history),
            "significant_changes": self.significant_changes,
        })

    def add_listener(self, listener: SnapshotListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def _on_timer(self) -> None:
        self._guarded("interval", self.capture_current_state, "interval")

    def _on_mutations(self, mutations: List[Mutation]) -> None:
        self._guarded("mutation", self._handle_mutations, mutations)

    def _handle_mutations(self, mutations: List[Mutation]) -> None:
        relevant = [m for m in mutations if self.is_relevant(m)]
        if not relevant:
            return
        self.log.log(LogLevel.DEBUG, LogCategory.STATE, self.COMPONENT, "DOM_MUTATIONS", {
            "count": len(relevant),
            "kinds": sorted({m.kind.value for m in relevant}),
        })
        self.capture_current_state("mutation")

    def is_relevant(self, mutation: Mutation) -> bool:
        """True when the mutation touches a state-bearing region."""
        s = self.settings
        marker_classes = (s.panel_class, s.indicator_class, s.highlight_class, s.editor_class)
        for node in mutation.touched_nodes():
            for candidate in node.iter_self_and_descendants():
                if any(candidate.has_class(c) for c in marker_classes):
                    return True
        return any(
            mutation.target.closest(c) is not None
            for c in (s.editor_class, s.panel_class)
        )

    def _guarded(self, trigger: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning(f"[VIGIL:STATE] {trigger} capture failed: {e}")
            self.log.log(LogLevel.WARN, LogCategory.ERROR, self.COMPONENT, "CALLBACK_FAILED", {
                "message": str(e),
                "error_type": type(e).__name__,
                "details": {"trigger": trigger},
            })

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def _read_field(self, name: str, reader: Callable[[], Any], default: Any, errors: List[str]) -> Any:
        try:
            return reader()
        except Exception as e:
            errors.append(name)
            logger.debug(f"[VIGIL:STATE] Reading {name} failed: {e}")
            return default

    def capture_current_state(self, change_type: str, correlation_id: Optional[str] = None) -> StateSnapshot:
        """
        Build a snapshot, diff it against the previous one and record it.

        Returns:
            The new snapshot (always appended to history)
        """
        errors: List[str] = []
        snapshot = StateSnapshot(
            timestamp=self.scheduler.now(),
            change_type=change_type,
            correlation_id=correlation_id,
            panel_visible=self._read_field("panel_visible", self.reader.panel_visible, False, errors),
            indicator_active=self._read_field("indicator_active", self.reader.indicator_active, False, errors),
            highlights=self._read_field("highlights", self.reader.highlights, [], errors),
            metrics=self._read_field("metrics", self.reader.metrics, DocumentMetrics(), errors),
            read_errors=errors,
        )

        previous = self._history[-1] if self._history else None
        self._history.append(snapshot)

        changes = self.describe_changes(previous, snapshot)
        significant = bool(changes)
        if significant:
            self.significant_changes += 1
            self.log.log(
                LogLevel.INFO,
                LogCategory.UI,
                self.COMPONENT,
                "STATE_CHANGE",
                {
                    "highlights": snapshot.highlights,
                    "change_type": change_type,
                    "changes": changes,
                    "read_errors": errors,
                },
                correlation_id=correlation_id,
                visual_state=snapshot,
            )
            self._run_heuristics(snapshot)

        for listener in list(self._listeners):
            try:
                listener(snapshot, significant)
            except Exception as e:
                logger.warning(f"[VIGIL:STATE] Snapshot listener {listener!r} failed: {e}")
        return snapshot

    def describe_changes(self, previous: Optional[StateSnapshot], current: StateSnapshot) -> List[str]:
        """
        Names of the significant differences between two snapshots.

        The first capture is always significant.
        """
        if previous is None:
            return ["initial"]
        changes = []
        if previous.panel_visible != current.panel_visible:
            changes.append("panel_visible")
        if previous.indicator_active != current.indicator_active:
            changes.append("indicator_active")
        if previous.highlight_count != current.highlight_count:
            changes.append("highlight_count")
        if abs(previous.metrics.scroll_height - current.metrics.scroll_height) > self.settings.size_noise_threshold:
            changes.append("scroll_height")
        if abs(previous.metrics.content_length - current.metrics.content_length) > self.settings.text_noise_threshold:
            changes.append("content_length")
        return changes

    def is_significant_change(self, previous: Optional[StateSnapshot], current: StateSnapshot) -> bool:
        return bool(self.describe_changes(previous, current))

    def detect_anomalies(self, snapshot: StateSnapshot) -> List[Dict[str, Any]]:
        anomalies = []
        duplicates = find_duplicate_highlights(snapshot.highlights)
        if duplicates:
            anomalies.append({
                "anomaly": "DUPLICATE_HIGHLIGHTS",
                "level": LogLevel.ERROR,
                "duplicates": [d.model_dump() for d in duplicates],
                "keys": sorted({list_key(d) for d in duplicates}),
            })
        if snapshot.highlights and not snapshot.indicator_active:
            anomalies.append({
                "anomaly": "HIGHLIGHTS_WITH_INACTIVE_INDICATOR",
                "level": LogLevel.WARN,
                "highlight_count": snapshot.highlight_count,
            })
        return anomalies

    def _run_heuristics(self, snapshot: StateSnapshot) -> None:
        for anomaly in self.detect_anomalies(snapshot):
            self.anomaly_count += 1
            level = anomaly.pop("level")
            self.log.log(level, LogCategory.UI, self.COMPONENT, "VISUAL_ANOMALY", anomaly,
                         correlation_id=snapshot.correlation_id)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def get_capture_history(self) -> List[StateSnapshot]:
        return list(self._history)

    def get_last_capture(self) -> Optional[StateSnapshot]:
        return self._history[-1] if self._history else None

    def force_capture_now(self, change_type: str = "manual", correlation_id: Optional[str] = None) -> StateSnapshot:
        """
        Capture immediately, outside the timer and mutation triggers.

        Raises:
            MonitorNotRunningError: start_monitoring() has not been called
        """
        if not self.running:
            raise MonitorNotRunningError("State monitor is not running")
        return self.capture_current_state(change_type, correlation_id)

    def export_capture_history(self) -> Dict[str, Any]:
        captures = list(self._history)
        by_type: Dict[str, int] = {}
        for capture in captures:
            by_type[capture.change_type] = by_type.get(capture.change_type, 0) + 1
        timespan = captures[-1].timestamp - captures[0].timestamp if len(captures) > 1 else 0.0
        return {
            "captures": [c.model_dump(mode="json") for c in captures],
            "summary": {
                "capture_count": len(captures),
                "timespan_seconds": timespan,
                "change_types": by_type,
                "significant_changes": self.significant_changes,
                "anomalies": self.anomaly_count,
            },
        }

    def _persist_history(self) -> None:
        if self.snapshot_path is None:
            return
        try:
            self.snapshot_path.write_text(json.dumps(self.export_capture_history(), indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"[VIGIL:STATE] Failed to write capture history {self.snapshot_path}: {e}")
