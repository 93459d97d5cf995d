"""
Harness orchestrator.

Owns one session end to end:

    start(): session -> logger -> interceptor -> state monitor -> workflow monitors
    stop():  workflow monitors -> state monitor -> interceptor -> reports -> logger -> session

Components stop in reverse start order. The logger is flushed and closed
only after the reports are written so the REPORT_GENERATED entry is
persisted, and the session is finalized last.
"""

import logging
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import HarnessSettings
from .errors import HarnessError, HarnessStateError
from .host import CapabilityRegistry, HookedCall, MutationSource, NodeTree
from .monitoring.attribution_monitor import AttributionMonitor
from .monitoring.chat_monitor import ChatMonitor
from .monitoring.engine_monitor import EngineMonitor
from .monitoring.models import MonitorState
from .monitoring.state_monitor import NodeTreeStateReader, StateMonitor, StateReader
from .monitoring.workflow import WorkflowHealthMonitor
from .observability.errors import InterceptionError
from .observability.interceptor import OutputInterceptor
from .observability.logger import StructuredLogger
from .observability.models import LogCategory, LogEntry, LogLevel
from .observability.serialization import safe_serialize
from .persistence.models import Session
from .persistence.errors import SessionStateError
from .persistence.sessions import SessionManager
from .reporting.errors import ReportingError
from .reporting.generator import ReportGenerator
from .runtime import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

COMPONENT = "HARNESS"

# One frame at 60 fps
PERFORMANCE_THRESHOLD_MS = 16.0

# debug monitor event type -> (level, category)
DEBUG_EVENT_MAP = {
    "error": (LogLevel.ERROR, LogCategory.ERROR),
    "warn": (LogLevel.WARN, LogCategory.EVENT),
    "warning": (LogLevel.WARN, LogCategory.EVENT),
    "performance": (LogLevel.INFO, LogCategory.PERFORMANCE),
    "ui": (LogLevel.INFO, LogCategory.UI),
    "state": (LogLevel.INFO, LogCategory.STATE),
    "api": (LogLevel.INFO, LogCategory.API),
    "debug": (LogLevel.DEBUG, LogCategory.EVENT),
}

MONITOR_CLASSES = (EngineMonitor, ChatMonitor, AttributionMonitor)


def generate_session_id() -> str:
    return f"vigil-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class HarnessOrchestrator:
    """
    Wires the observability components around a live host application.

    Usage:
        harness = HarnessOrchestrator(
            settings,
            channel=logging.getLogger("host"),
            mutation_source=tree,
            capabilities=CapabilityRegistry(processing_engine=engine),
        )
        harness.start()
        ...
        paths = harness.stop()   # {"html": ..., "json": ..., "csv": ..., "markdown": ...}
    """

    def __init__(
        self,
        settings: Optional[HarnessSettings] = None,
        channel: Any = None,
        mutation_source: Optional[MutationSource] = None,
        state_reader: Optional[StateReader] = None,
        capabilities: Optional[CapabilityRegistry] = None,
        scheduler: Optional[Scheduler] = None,
        session_id: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            settings: Harness settings; defaults when None
            channel: Diagnostic channel to intercept (e.g. a logging.Logger)
            mutation_source: UI mutation bus of the host
            state_reader: Reader for snapshots; derived from a NodeTree when None
            capabilities: Named host capabilities the monitors hook and poll
            scheduler: Tick source for timers; asyncio-backed when None
            session_id: Id for the next session; a fresh id is generated
                on every start when None
            clock: Wall clock for session timestamps; scheduler.now when None
        """
        self.settings = settings or HarnessSettings()
        self.channel = channel
        self.mutation_source = mutation_source
        self.capabilities = capabilities or CapabilityRegistry()
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock or self.scheduler.now
        self.next_session_id = session_id
        self.session_id: Optional[str] = session_id

        if state_reader is None and isinstance(mutation_source, NodeTree):
            state_reader = NodeTreeStateReader(mutation_source, self.settings.state)
        self.state_reader = state_reader

        self.session_manager = SessionManager(
            base_dir=Path(self.settings.base_dir),
            retention=self.settings.retention,
            clock=self.clock,
        )

        self.session: Optional[Session] = None
        self.structured_logger: Optional[StructuredLogger] = None
        self.interceptor: Optional[OutputInterceptor] = None
        self.state_monitor: Optional[StateMonitor] = None
        self.monitors: Dict[str, WorkflowHealthMonitor] = {}
        self.report_generator: Optional[ReportGenerator] = None
        self.report_paths: Dict[str, Path] = {}
        self.started_at: Optional[datetime] = None
        self._debug_detachers: List[Callable[[], None]] = []
        self._refresh_timer: Optional[TimerHandle] = None

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.structured_logger is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, session_id: Optional[str] = None) -> Session:
        """
        Create the session and start every component in dependency order.

        Args:
            session_id: Id for this session; defaults to the constructor id,
                else a generated one. Ids are never reused across sessions.

        Raises:
            HarnessStateError: Harness already running, or the session id is taken
            SchedulerUnavailableError: The asyncio scheduler has no running loop
            HarnessError: A component failed to start; the session is marked failed
        """
        if self.is_active:
            raise HarnessStateError(f"Harness already running session {self.session_id}")
        if isinstance(self.scheduler, AsyncioScheduler):
            self.scheduler.bind()
        self._reset()

        self.session_id = session_id or self.next_session_id or generate_session_id()
        self.next_session_id = None
        try:
            session = self.session_manager.create_session(self.session_id)
        except SessionStateError as e:
            raise HarnessStateError(f"Cannot start session {self.session_id}: {e}") from e
        self.session = session
        self.started_at = datetime.fromtimestamp(self.clock(), tz=timezone.utc)

        try:
            self.structured_logger = StructuredLogger(
                session.session_id,
                log_path=Path(session.log_file),
                settings=self.settings.logger,
                clock=self.scheduler.now,
            )

            if self.channel is not None and self.settings.interceptor.enabled:
                self.interceptor = OutputInterceptor(self.channel, self.structured_logger, self.settings.interceptor)
                self.interceptor.start()
                self.interceptor.log_direct("Recording session %s to %s", session.session_id, session.output_dir)

            if self.state_reader is not None and self.settings.state.enabled:
                self.state_monitor = StateMonitor(
                    self.structured_logger,
                    self.scheduler,
                    self.state_reader,
                    mutation_source=self.mutation_source,
                    settings=self.settings.state,
                    snapshot_path=Path(session.snapshot_file),
                )
                self.state_monitor.start_monitoring()

            if self.settings.workflow.enabled:
                for monitor_class in MONITOR_CLASSES:
                    monitor = self._create_monitor(monitor_class)
                    self.monitors[monitor.NAME] = monitor
                    monitor.start()

            self.report_generator = ReportGenerator(
                self.structured_logger,
                self._report_monitors(),
                self.state_monitor,
                self.settings.report,
                clock=self.scheduler.now,
            )
            self._refresh_timer = self.scheduler.call_every(
                self.settings.metadata_refresh_seconds, self.refresh_session_metadata
            )
        except Exception as e:
            logger.error(f"[VIGIL:HARNESS] Start failed for {session.session_id}: {e}")
            self._teardown_components()
            if self.structured_logger is not None:
                self.structured_logger.close()
            self.session_manager.fail_session(session, f"Harness start failed: {type(e).__name__}: {e}")
            self._reset()
            raise HarnessError(f"Failed to start harness: {e}") from e

        self.structured_logger.log(LogLevel.INFO, LogCategory.STATE, COMPONENT, "HARNESS_STARTED", {
            "session_id": session.session_id,
            "output_dir": session.output_dir,
            "interceptor": self.interceptor is not None,
            "state_monitor": self.state_monitor is not None,
            "monitors": sorted(self.monitors),
        })
        logger.info(f"[VIGIL:HARNESS] Started session {session.session_id} with monitors {sorted(self.monitors)}")
        return session

    def _create_monitor(self, monitor_class: type) -> WorkflowHealthMonitor:
        kwargs: Dict[str, Any] = {
            "capabilities": self.capabilities,
            "mutation_source": self.mutation_source,
            "settings": self.settings.workflow,
        }
        if monitor_class is AttributionMonitor:
            kwargs["state_monitor"] = self.state_monitor
        return monitor_class(self.structured_logger, self.scheduler, **kwargs)

    def _report_monitors(self) -> Dict[str, Optional[WorkflowHealthMonitor]]:
        """Every known monitor name; None for monitors never created."""
        return {cls.NAME: self.monitors.get(cls.NAME) for cls in MONITOR_CLASSES}

    def stop(self) -> Dict[str, Path]:
        """
        Stop every component in reverse order, write reports and finalize the session.

        Returns:
            Report paths by format; empty when reports are disabled or failed

        Raises:
            HarnessStateError: Harness not running
        """
        if not self.is_active:
            raise HarnessStateError("Harness is not running")

        session = self.session
        self.structured_logger.log(LogLevel.INFO, LogCategory.STATE, COMPONENT, "HARNESS_STOPPED", {
            "session_id": session.session_id,
            "entry_count": self.structured_logger.entry_count,
        })
        self._teardown_components()

        self.report_paths = {}
        if self.settings.report.auto_generate:
            self.report_paths = self.generate_report()

        self.structured_logger.close()
        session.entry_count = self.structured_logger.entry_count
        self.session_manager.complete_session(session)

        if self.settings.cleanup_on_exit:
            deleted = self.session_manager.cleanup_old_sessions()
            if deleted:
                logger.info(f"[VIGIL:HARNESS] Retention removed {len(deleted)} old sessions")

        logger.info(f"[VIGIL:HARNESS] Stopped session {session.session_id} ({session.entry_count} entries)")
        self.session = None
        return self.report_paths

    def _teardown_components(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

        for detach in reversed(self._debug_detachers):
            detach()
        self._debug_detachers = []

        for name in reversed(list(self.monitors)):
            try:
                self.monitors[name].stop()
            except Exception as e:
                logger.warning(f"[VIGIL:HARNESS] Monitor {name} failed to stop: {e}")

        if self.state_monitor is not None:
            try:
                self.state_monitor.stop_monitoring()
            except Exception as e:
                logger.warning(f"[VIGIL:HARNESS] State monitor failed to stop: {e}")

        if self.interceptor is not None:
            try:
                self.interceptor.stop()
            except InterceptionError as e:
                logger.warning(f"[VIGIL:HARNESS] {e}")
                if self.structured_logger is not None:
                    self.structured_logger.log(LogLevel.WARN, LogCategory.ERROR, COMPONENT, "RESTORE_FAILED", {
                        "message": str(e),
                        "error_type": type(e).__name__,
                    })

    def _reset(self) -> None:
        self.session = None
        self.structured_logger = None
        self.interceptor = None
        self.state_monitor = None
        self.monitors = {}
        self.report_generator = None

    def refresh_session_metadata(self) -> None:
        """Write the live session's entry count and on-disk size to session.json."""
        if not self.is_active:
            return
        self.session.entry_count = self.structured_logger.entry_count
        self.session_manager.update_session(self.session)

    def generate_report(self, output_dir: Optional[Path] = None) -> Dict[str, Path]:
        """
        Write reports for the current evidence.

        Write failures are logged; report generation never fails the session.
        """
        if self.report_generator is None or self.session is None:
            raise HarnessStateError("No session to report on")
        target = Path(output_dir or self.session.report_dir)
        try:
            target.mkdir(parents=True, exist_ok=True)
            return self.report_generator.generate(target)
        except (ReportingError, OSError) as e:
            logger.error(f"[VIGIL:HARNESS] Report generation failed: {e}")
            self.structured_logger.log(LogLevel.ERROR, LogCategory.ERROR, COMPONENT, "REPORT_FAILED", {
                "message": str(e),
                "error_type": type(e).__name__,
            })
            return {}

    # -------------------------------------------------------------------------
    # Host-facing logging helpers
    # -------------------------------------------------------------------------

    def _require_logger(self) -> StructuredLogger:
        if self.structured_logger is None or self.session is None:
            raise HarnessStateError("Harness is not running")
        return self.structured_logger

    def log_plugin_event(self, action: str, data: Any = None, correlation_id: Optional[str] = None) -> LogEntry:
        return self._require_logger().log(LogLevel.INFO, LogCategory.EVENT, "PLUGIN", action, data, correlation_id)

    def log_ui_event(
        self,
        action: str,
        data: Any = None,
        level: LogLevel = LogLevel.INFO,
        correlation_id: Optional[str] = None,
    ) -> LogEntry:
        """UI entry carrying the most recent state snapshot, if any."""
        visual_state = self.state_monitor.get_last_capture() if self.state_monitor else None
        return self._require_logger().log(level, LogCategory.UI, "UI", action, data, correlation_id, visual_state)

    def log_performance_event(
        self,
        operation: str,
        duration_ms: float,
        data: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        """Timing entry; WARN when slower than one frame."""
        level = LogLevel.WARN if duration_ms > PERFORMANCE_THRESHOLD_MS else LogLevel.INFO
        payload = dict(data or {})
        payload.update({
            "operation": operation,
            "duration_ms": duration_ms,
            "threshold_ms": PERFORMANCE_THRESHOLD_MS,
        })
        return self._require_logger().log(level, LogCategory.PERFORMANCE, "PERFORMANCE", "TIMING", payload)

    def log_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None, component: str = "HOST") -> LogEntry:
        payload = dict(context or {})
        payload.update({
            "message": str(error),
            "error_type": type(error).__name__,
            "stack": traceback.format_exception(type(error), error, error.__traceback__),
        })
        return self._require_logger().log(LogLevel.ERROR, LogCategory.ERROR, component, "ERROR", payload)

    def integrate_debug_monitor(self, debug_monitor: Any, name: str = "debug_monitor") -> bool:
        """
        Mirror an existing debug monitor's log(type, message, data) calls.

        The monitor's own log method keeps working; every call is also
        recorded with a level and category derived from its type.

        Returns:
            True when the log method was hooked
        """
        structured_logger = self._require_logger()
        self.capabilities.register(name, debug_monitor)

        def observer(call: HookedCall) -> None:
            event_type = str(call.args[0] if call.args else call.kwargs.get("type", "info")).lower()
            message = call.args[1] if len(call.args) > 1 else call.kwargs.get("message", "")
            data = call.args[2] if len(call.args) > 2 else call.kwargs.get("data")
            level, category = DEBUG_EVENT_MAP.get(event_type, (LogLevel.INFO, LogCategory.EVENT))
            structured_logger.log(level, category, "DEBUG_MONITOR", f"DEBUG_{event_type.upper()}", {
                "message": str(message),
                "data": safe_serialize(data),
            })

        detach = self.capabilities.attach(name, "log", observer)
        if detach is None:
            logger.warning(f"[VIGIL:HARNESS] {name} has no log method to integrate")
            return False
        self._debug_detachers.append(detach)
        structured_logger.log(LogLevel.INFO, LogCategory.STATE, COMPONENT, "DEBUG_MONITOR_INTEGRATED", {"capability": name})
        return True

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        if not self.is_active:
            return {"active": False}
        return {
            "active": True,
            "session_id": self.session.session_id,
            "started_at": self.started_at,
            "entry_count": self.structured_logger.entry_count,
            "components": {
                "logger": True,
                "interceptor": self.interceptor is not None and self.interceptor.is_active,
                "state_monitor": self.state_monitor is not None and self.state_monitor.running,
                **{name: monitor.running for name, monitor in self.monitors.items()},
            },
            "interceptor": self.interceptor.get_stats() if self.interceptor else {},
        }

    def monitor_states(self) -> List[MonitorState]:
        return [monitor.get_current_state() for monitor in self.monitors.values()]
