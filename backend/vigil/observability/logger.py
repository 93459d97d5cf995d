"""
Structured session logger.

Every component of the harness records evidence through one
StructuredLogger per session. An append:

1. Normalizes the partial entry (timestamp, session id, default level
   and category, sequence number)
2. Stores it in the bounded in-memory buffer
3. Persists it to the session's JSONL log
4. Runs the generic pattern detectors
5. Notifies stream listeners (workflow monitors follow CONSOLE here)

Persistence failures never lose the buffered entry; they are reported on
the module's stdlib logger, which is not intercepted.
"""

import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..config import LoggerSettings
from .errors import LogWriteError
from .models import LogCategory, LogEntry, LogLevel, StateSnapshot
from .patterns import (
    PATTERN_COMPONENT,
    DuplicateEffectDetector,
    Finding,
    SuccessFailureGapDetector,
)
from .writer import FLUSH_RECORD, JsonlLogWriter

logger = logging.getLogger(__name__)

EntryListener = Callable[[LogEntry], None]


def generate_correlation_id() -> str:
    """Opaque token linking causally-related entries across components."""
    return f"corr_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class StructuredLogger:
    """
    Append-only, categorized session log.

    Usage:
        log = StructuredLogger("session-1", log_path=Path("run/test-logs.jsonl"))
        log.log(LogLevel.INFO, LogCategory.EVENT, "PLUGIN", "LOADED")
        errors = log.query(category=LogCategory.ERROR)
        log.flush()
    """

    def __init__(
        self,
        session_id: str,
        log_path: Optional[Path] = None,
        settings: Optional[LoggerSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            session_id: Session every entry belongs to
            log_path: Active JSONL file; None keeps the log in memory only
            settings: Buffer, rotation and detector tunables
            clock: Wall-clock source in epoch seconds
        """
        self.session_id = session_id
        self.settings = settings or LoggerSettings()
        self.clock = clock
        self.started_at = clock()

        self._buffer: List[LogEntry] = []
        self._sequence = 0
        self._listeners: List[EntryListener] = []
        self._duplicates = DuplicateEffectDetector()
        self._gaps = SuccessFailureGapDetector(
            window_seconds=self.settings.gap_window_seconds,
            success_keywords=self.settings.success_keywords,
        )
        self.persist_failures = 0

        self.writer: Optional[JsonlLogWriter] = None
        if log_path is not None:
            self.writer = JsonlLogWriter(
                Path(log_path),
                max_bytes=self.settings.max_file_bytes,
                header={"session_id": session_id, "session_start": self.started_at},
            )
            try:
                self.writer.open()
            except OSError as e:
                self.persist_failures += 1
                logger.error(f"[VIGIL:LOGGER] Failed to open log file {log_path}: {e}")

    # -------------------------------------------------------------------------
    # Append
    # -------------------------------------------------------------------------

    def append(self, entry: Union[LogEntry, Mapping[str, Any]]) -> LogEntry:
        """
        Normalize, store, persist and inspect one entry.

        Args:
            entry: Complete LogEntry or a partial mapping of its fields

        Returns:
            The stored entry
        """
        stored = self._store(self._normalize(entry))
        findings = self._run_detectors(stored)
        self._dispatch(stored)
        for finding in findings:
            self.append({
                "level": finding.level,
                "category": LogCategory.ERROR,
                "component": PATTERN_COMPONENT,
                "action": finding.action,
                "data": finding.data,
                "correlation_id": stored.correlation_id,
            })
        return stored

    def log(
        self,
        level: LogLevel,
        category: LogCategory,
        component: str,
        action: str,
        data: Any = None,
        correlation_id: Optional[str] = None,
        visual_state: Optional[StateSnapshot] = None,
    ) -> LogEntry:
        return self.append({
            "level": level,
            "category": category,
            "component": component,
            "action": action,
            "data": data,
            "correlation_id": correlation_id,
            "visual_state": visual_state,
        })

    def _normalize(self, entry: Union[LogEntry, Mapping[str, Any]]) -> LogEntry:
        self._sequence += 1
        if isinstance(entry, LogEntry):
            fields = entry.model_dump(exclude={"data", "visual_state"})
            fields["data"] = entry.data
            fields["visual_state"] = entry.visual_state
        else:
            fields = {k: v for k, v in dict(entry).items() if v is not None}

        fields["sequence"] = self._sequence
        fields["session_id"] = self.session_id
        fields.setdefault("timestamp", self.clock())
        fields.setdefault("level", LogLevel.INFO)
        fields.setdefault("category", LogCategory.EVENT)
        fields.setdefault("component", "UNKNOWN")
        fields.setdefault("action", "LOG")
        return LogEntry.model_validate(fields)

    def _store(self, entry: LogEntry) -> LogEntry:
        self._buffer.append(entry)
        if len(self._buffer) > self.settings.buffer_cap:
            del self._buffer[: self.settings.trim_batch]

        if self.writer is not None:
            try:
                self.writer.write(entry.model_dump(mode="json", exclude_none=True))
            except LogWriteError as e:
                self.persist_failures += 1
                logger.error(f"[VIGIL:LOGGER] {e}")
        return entry

    def _run_detectors(self, entry: LogEntry) -> List[Finding]:
        findings = []
        try:
            duplicate = self._duplicates.inspect(entry)
            if duplicate:
                findings.append(duplicate)
            gap = self._gaps.inspect(entry, self._buffer)
            if gap:
                findings.append(gap)
        except Exception as e:
            logger.warning(f"[VIGIL:LOGGER] Pattern detector failed on entry {entry.sequence}: {e}")
        return findings

    def _dispatch(self, entry: LogEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.warning(f"[VIGIL:LOGGER] Listener {listener!r} failed: {e}")
                if entry.action != "CALLBACK_FAILED":
                    self._store(self._normalize({
                        "level": LogLevel.WARN,
                        "category": LogCategory.ERROR,
                        "component": "STRUCTURED_LOGGER",
                        "action": "CALLBACK_FAILED",
                        "data": {"message": str(e), "error_type": type(e).__name__},
                    }))

    # -------------------------------------------------------------------------
    # Stream
    # -------------------------------------------------------------------------

    def subscribe(self, listener: EntryListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EntryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def query(
        self,
        since: Optional[float] = None,
        category: Optional[LogCategory] = None,
        correlation_id: Optional[str] = None,
        level: Optional[LogLevel] = None,
    ) -> List[LogEntry]:
        """Buffered entries matching every given filter, in write order."""
        results = []
        for entry in self._buffer:
            if since is not None and entry.timestamp < since:
                continue
            if category is not None and entry.category != category:
                continue
            if correlation_id is not None and entry.correlation_id != correlation_id:
                continue
            if level is not None and entry.level != level:
                continue
            results.append(entry)
        return results

    def get_buffer(self) -> List[LogEntry]:
        return list(self._buffer)

    @property
    def entry_count(self) -> int:
        """Total entries appended this session, including trimmed ones."""
        return self._sequence

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def flush(self) -> None:
        if self.writer is None:
            return
        try:
            self.writer.write_meta(FLUSH_RECORD, {
                "session_id": self.session_id,
                "timestamp": self.clock(),
                "entry_count": self.entry_count,
            })
            self.writer.flush()
        except (LogWriteError, OSError) as e:
            self.persist_failures += 1
            logger.error(f"[VIGIL:LOGGER] Flush failed: {e}")

    def close(self) -> None:
        self.flush()
        if self.writer is not None:
            self.writer.close()

    def export_session(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "log_file": str(self.writer.path) if self.writer else None,
            "output_dir": str(self.writer.path.parent) if self.writer else None,
            "entry_count": self.entry_count,
            "buffered": len(self._buffer),
            "rotations": self.writer.rotation_count if self.writer else 0,
            "persist_failures": self.persist_failures,
        }
