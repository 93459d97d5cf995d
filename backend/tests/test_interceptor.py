"""
Tests for diagnostic channel interception.

Verifies capture, self-exclusion, filtering, and that stop() leaves the
channel with exactly the methods it had before start().
"""

import logging
from types import SimpleNamespace

import pytest

from vigil.config import InterceptorSettings
from vigil.observability.interceptor import OutputInterceptor, level_for_method
from vigil.observability.models import LogCategory, LogLevel


def make_channel():
    calls = []

    def log(*args):
        calls.append(("log", args))

    def info(*args):
        calls.append(("info", args))

    def warn(*args):
        calls.append(("warn", args))

    def error(*args):
        calls.append(("error", args))

    channel = SimpleNamespace(log=log, info=info, warn=warn, error=error)
    return channel, calls


def console_entries(structured_logger):
    return structured_logger.query(category=LogCategory.CONSOLE)


class TestRestore:
    """Start/stop leave the channel referentially unchanged."""

    def test_instance_methods_restored_to_same_objects(self, structured_logger):
        """
        GIVEN a channel whose methods are plain instance attributes
        WHEN interception starts and stops
        THEN every method is the identical original function object
        """
        channel, _ = make_channel()
        originals = {name: getattr(channel, name) for name in ("log", "info", "warn", "error")}

        interceptor = OutputInterceptor(channel, structured_logger)
        interceptor.start()
        assert channel.log is not originals["log"]
        interceptor.stop()

        for name, original in originals.items():
            assert getattr(channel, name) is original

    def test_class_methods_restored_by_removing_instance_override(self, structured_logger):
        """
        GIVEN a stdlib Logger whose methods live on the class
        WHEN interception starts and stops
        THEN no instance attribute is left behind
        """
        channel = logging.getLogger("vigil-test-host-restore")
        interceptor = OutputInterceptor(channel, structured_logger)

        interceptor.start()
        assert "info" in channel.__dict__
        interceptor.stop()

        for name in ("log", "info", "warning", "error", "exception"):
            assert name not in channel.__dict__
        assert channel.info.__func__ is logging.Logger.info

    def test_start_and_stop_are_idempotent(self, structured_logger):
        channel, _ = make_channel()
        original = channel.info
        interceptor = OutputInterceptor(channel, structured_logger)

        interceptor.start()
        wrapped = channel.info
        interceptor.start()
        assert channel.info is wrapped

        interceptor.stop()
        interceptor.stop()
        assert channel.info is original
        assert not interceptor.is_active

    def test_start_logs_interception_started(self, structured_logger):
        channel, _ = make_channel()
        OutputInterceptor(channel, structured_logger).start()

        started = [e for e in structured_logger.get_buffer() if e.action == "INTERCEPTION_STARTED"]
        assert len(started) == 1
        assert started[0].category == LogCategory.STATE


class TestCapture:
    def test_call_is_captured_and_forwarded(self, structured_logger):
        """
        GIVEN an active interceptor with preserve_output
        WHEN the host calls error("boom", 42)
        THEN one ERROR console entry is logged and the original still runs
        """
        channel, calls = make_channel()
        interceptor = OutputInterceptor(channel, structured_logger)
        interceptor.start()

        channel.error("boom", 42)

        entries = console_entries(structured_logger)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.level == LogLevel.ERROR
        assert entry.action == "CONSOLE_ERROR"
        assert entry.data.method == "error"
        assert entry.data.message == "boom 42"
        assert entry.data.args == ["boom", 42]
        assert entry.correlation_id is not None
        assert calls == [("error", ("boom", 42))]

    def test_log_direct_bypasses_capture(self, structured_logger):
        """
        GIVEN an active interceptor
        WHEN the harness writes through log_direct
        THEN the original info method receives the tagged line and nothing is captured
        """
        channel, calls = make_channel()
        interceptor = OutputInterceptor(channel, structured_logger)
        interceptor.start()

        interceptor.log_direct("Recording session %s", "s1")

        assert calls == [("info", ("[VIGIL:INTERCEPTOR] Recording session %s", "s1"))]
        assert console_entries(structured_logger) == []
        interceptor.stop()

        interceptor.log_direct("stopped")
        assert calls[-1] == ("info", ("[VIGIL:INTERCEPTOR] stopped",))

    def test_output_suppressed_when_not_preserved(self, structured_logger):
        channel, calls = make_channel()
        settings = InterceptorSettings(preserve_output=False)
        OutputInterceptor(channel, structured_logger, settings).start()

        channel.info("quiet")

        assert calls == []
        assert len(console_entries(structured_logger)) == 1

    def test_self_originated_lines_are_dropped(self, structured_logger):
        """
        GIVEN an active interceptor
        WHEN the first argument carries the [VIGIL tag
        THEN nothing is captured but the line still reaches the channel
        """
        channel, calls = make_channel()
        interceptor = OutputInterceptor(channel, structured_logger)
        interceptor.start()

        channel.info("[VIGIL:LOGGER] internal detail")

        assert console_entries(structured_logger) == []
        assert interceptor.get_stats()["self_excluded"] == 1
        assert calls == [("info", ("[VIGIL:LOGGER] internal detail",))]

    def test_filter_patterns_skip_matching_calls(self, structured_logger):
        channel, _ = make_channel()
        settings = InterceptorSettings(filter_patterns=[r"^heartbeat"])
        interceptor = OutputInterceptor(channel, structured_logger, settings)
        interceptor.start()

        channel.log("heartbeat 1")
        channel.log("real message")

        entries = console_entries(structured_logger)
        assert [e.data.message for e in entries] == ["real message"]
        assert interceptor.get_stats()["filtered"] == 1

    def test_unserializable_argument_does_not_break_capture(self, structured_logger):
        channel, _ = make_channel()
        OutputInterceptor(channel, structured_logger).start()
        cyclic = {}
        cyclic["me"] = cyclic

        channel.warn("state", cyclic)

        entry = console_entries(structured_logger)[0]
        assert entry.level == LogLevel.WARN
        assert entry.data.args[1] == {"me": "[Circular]"}

    def test_stack_captured_when_enabled(self, structured_logger):
        channel, _ = make_channel()
        OutputInterceptor(channel, structured_logger).start()

        channel.info("where")

        stack = console_entries(structured_logger)[0].data.stack
        assert stack
        assert len(stack) <= 8


class TestStdlibLoggerChannel:
    """A logging.Logger as the diagnostic channel."""

    @pytest.fixture
    def channel(self):
        channel = logging.getLogger("vigil-test-host-capture")
        yield channel
        for name in ("log", "debug", "info", "warn", "warning", "error", "critical", "exception"):
            channel.__dict__.pop(name, None)

    def test_percent_formatting_rendered(self, channel, structured_logger):
        OutputInterceptor(channel, structured_logger).start()

        channel.warning("retry %s of %s", 2, 5)

        entry = console_entries(structured_logger)[0]
        assert entry.data.message == "retry 2 of 5"
        assert entry.level == LogLevel.WARN

    def test_exception_captured_once(self, channel, structured_logger):
        """
        GIVEN Logger.exception, which calls Logger.error internally
        WHEN it is called inside an except block
        THEN exactly one console entry is captured
        """
        OutputInterceptor(channel, structured_logger).start()

        try:
            raise RuntimeError("bad")
        except RuntimeError:
            channel.exception("operation failed")

        entries = console_entries(structured_logger)
        assert len(entries) == 1
        assert entries[0].action == "CONSOLE_EXCEPTION"
        assert entries[0].level == LogLevel.ERROR

    def test_numeric_level_mapped(self, channel, structured_logger):
        OutputInterceptor(channel, structured_logger).start()

        channel.log(logging.WARNING, "disk nearly full")

        entry = console_entries(structured_logger)[0]
        assert entry.level == LogLevel.WARN
        assert entry.data.message == "disk nearly full"


class TestLevelMapping:
    def test_method_levels(self):
        assert level_for_method("error") == LogLevel.ERROR
        assert level_for_method("warn") == LogLevel.WARN
        assert level_for_method("warning") == LogLevel.WARN
        assert level_for_method("debug") == LogLevel.DEBUG
        assert level_for_method("trace") == LogLevel.TRACE
        assert level_for_method("log") == LogLevel.INFO
        assert level_for_method("anything_else") == LogLevel.INFO
