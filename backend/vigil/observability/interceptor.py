"""
Diagnostic channel interception.

The host's "print a diagnostic line" capability is passed in as a channel
object exposing one method per severity (a logging.Logger, a console
shim, ...). start() replaces each present method with a capturing
wrapper; stop() puts the exact original back.

Capture rules:
- Every call becomes a CONSOLE entry with safely serialized arguments
- Output is forwarded to the original method unless preserve_output is off
- Calls whose first argument carries a self tag ("[VIGIL...") are not
  captured, so the harness never records its own output
- Calls matching a filter pattern are not captured

Restore rules:
- A method that lived on the channel's class is restored by deleting the
  instance attribute, so lookups resolve to the class again
- A method that lived on the instance is set back to the same object
- Failing to restore one method never prevents restoring the others
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import InterceptorSettings
from .errors import InterceptionError
from .logger import StructuredLogger, generate_correlation_id
from .models import LogCategory, LogLevel
from .serialization import capture_stack, safe_serialize

logger = logging.getLogger(__name__)

METHOD_LEVELS: Dict[str, LogLevel] = {
    "trace": LogLevel.TRACE,
    "debug": LogLevel.DEBUG,
    "log": LogLevel.INFO,
    "info": LogLevel.INFO,
    "warn": LogLevel.WARN,
    "warning": LogLevel.WARN,
    "error": LogLevel.ERROR,
    "critical": LogLevel.ERROR,
    "exception": LogLevel.ERROR,
}

# Frames between the host's call site and capture_stack(): the wrapper and _capture
_WRAPPER_FRAMES = 2


def level_for_method(method: str) -> LogLevel:
    return METHOD_LEVELS.get(method, LogLevel.INFO)


def _level_for_number(number: int) -> LogLevel:
    """Map a stdlib logging level number (Logger.log(level, msg))."""
    if number >= logging.ERROR:
        return LogLevel.ERROR
    if number >= logging.WARNING:
        return LogLevel.WARN
    if number >= logging.INFO:
        return LogLevel.INFO
    if number >= logging.DEBUG:
        return LogLevel.DEBUG
    return LogLevel.TRACE


class _SavedMethod:
    def __init__(self, name: str, original: Any, on_instance: bool):
        self.name = name
        self.original = original
        self.on_instance = on_instance


class OutputInterceptor:
    """
    Wraps a diagnostic channel and mirrors every call into the logger.

    Usage:
        interceptor = OutputInterceptor(logging.getLogger("host"), structured_logger)
        interceptor.start()
        ...
        interceptor.stop()   # channel methods are the originals again
    """

    COMPONENT = "OUTPUT_INTERCEPTOR"

    def __init__(
        self,
        channel: Any,
        structured_logger: StructuredLogger,
        settings: Optional[InterceptorSettings] = None,
    ):
        self.channel = channel
        self.structured_logger = structured_logger
        self.settings = settings or InterceptorSettings()
        self._filters = [re.compile(p) for p in self.settings.filter_patterns]
        self._saved: List[_SavedMethod] = []
        self._active = False
        self._call_depth = 0
        self._stats = {"captured": 0, "self_excluded": 0, "filtered": 0, "capture_errors": 0}

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Wrap every configured method present on the channel. Idempotent."""
        if self._active:
            logger.debug("[VIGIL:INTERCEPTOR] Already active, ignoring start request")
            return

        wrapped = []
        for method in self.settings.methods:
            original = getattr(self.channel, method, None)
            if not callable(original):
                continue
            try:
                on_instance = method in getattr(self.channel, "__dict__", {})
                setattr(self.channel, method, self._make_wrapper(method, original))
            except Exception as e:
                logger.warning(f"[VIGIL:INTERCEPTOR] Could not wrap {method}: {e}")
                continue
            self._saved.append(_SavedMethod(method, original, on_instance))
            wrapped.append(method)

        self._active = True
        self.structured_logger.log(
            LogLevel.INFO,
            LogCategory.STATE,
            self.COMPONENT,
            "INTERCEPTION_STARTED",
            {"methods": wrapped, "preserve_output": self.settings.preserve_output},
        )
        logger.info(f"[VIGIL:INTERCEPTOR] Interception started for {wrapped}")

    def stop(self) -> None:
        """
        Restore every wrapped method. Idempotent.

        Raises:
            InterceptionError: One or more methods could not be restored
                (all others are restored regardless)
        """
        if not self._active:
            return

        failed: List[Tuple[str, Exception]] = []
        for saved in reversed(self._saved):
            try:
                if saved.on_instance:
                    setattr(self.channel, saved.name, saved.original)
                else:
                    delattr(self.channel, saved.name)
            except Exception as e:
                failed.append((saved.name, e))
                logger.warning(f"[VIGIL:INTERCEPTOR] Failed to restore {saved.name}: {e}")

        self._saved = []
        self._active = False
        logger.info("[VIGIL:INTERCEPTOR] Interception stopped")
        if failed:
            names = ", ".join(name for name, _ in failed)
            raise InterceptionError(f"Could not restore channel methods: {names}")

    def _make_wrapper(self, method: str, original: Callable[..., Any]) -> Callable[..., Any]:
        def wrapper(*args, **kwargs):
            # Nested calls (Logger.exception -> Logger.error) are one diagnostic line
            if self._call_depth == 0:
                self._capture(method, args, kwargs)
            if not self.settings.preserve_output:
                return None
            self._call_depth += 1
            try:
                return original(*args, **kwargs)
            finally:
                self._call_depth -= 1

        wrapper.__wrapped__ = original
        wrapper.__name__ = method
        return wrapper

    def _capture(self, method: str, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> None:
        try:
            level = level_for_method(method)
            if method == "log" and args and isinstance(args[0], int) and not isinstance(args[0], bool):
                level = _level_for_number(args[0])
                args = args[1:]
            if self._is_self_originated(args):
                self._stats["self_excluded"] += 1
                return
            message = self._render_message(args)
            if any(f.search(message) for f in self._filters):
                self._stats["filtered"] += 1
                return

            stack = None
            if self.settings.capture_stack:
                stack = capture_stack(self.settings.max_stack_depth, skip=_WRAPPER_FRAMES)

            bounds = (self.settings.max_depth, self.settings.max_keys, self.settings.max_items)
            self.structured_logger.log(
                level,
                LogCategory.CONSOLE,
                self.COMPONENT,
                f"CONSOLE_{method.upper()}",
                {
                    "method": method,
                    "message": message,
                    "args": [safe_serialize(a, *bounds) for a in args],
                    "stack": stack,
                    "kwargs": safe_serialize(kwargs, *bounds) if kwargs else {},
                },
                correlation_id=generate_correlation_id(),
            )
            self._stats["captured"] += 1
        except Exception as e:
            self._stats["capture_errors"] += 1
            logger.warning(f"[VIGIL:INTERCEPTOR] Error capturing {method} call: {e}")

    def _is_self_originated(self, args: Tuple[Any, ...]) -> bool:
        if not args or not isinstance(args[0], str):
            return False
        return any(tag in args[0] for tag in self.settings.self_tags)

    @staticmethod
    def _render_message(args: Tuple[Any, ...]) -> str:
        if not args:
            return ""
        first = args[0]
        if isinstance(first, str) and "%" in first and len(args) > 1:
            try:
                return first % args[1:]
            except (TypeError, ValueError):
                pass
        return " ".join(str(a) for a in args)

    def log_direct(self, message: str, *args: Any) -> None:
        """Write to the original channel, bypassing capture."""
        originals = {saved.name: saved.original for saved in self._saved}
        for name in ("info", "log"):
            target = originals.get(name) or getattr(self.channel, name, None)
            if callable(target):
                target(f"[VIGIL:INTERCEPTOR] {message}", *args)
                return

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "active": self._active,
            "wrapped_methods": [s.name for s in self._saved],
        }
