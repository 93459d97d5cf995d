"""
Tests for the harness orchestrator.

The end-to-end test drives a host made of a stdlib logger (diagnostic
channel) and an in-memory NodeTree (UI), then checks the written report.
"""

import asyncio
import json
import logging
from pathlib import Path

import pytest

from vigil.config import HarnessSettings
from vigil.errors import HarnessError, HarnessStateError, SchedulerUnavailableError
from vigil.harness import HarnessOrchestrator
from vigil.host import CapabilityRegistry, NodeTree
from vigil.monitoring.failures import FailureType
from vigil.observability.models import LogCategory, LogLevel
from vigil.observability.writer import read_entries
from vigil.persistence.models import SessionStatus
from vigil.persistence.sessions import ERROR_FILE
from vigil.runtime import AsyncioScheduler

CHANNEL_METHODS = ("log", "debug", "info", "warn", "warning", "error", "critical", "exception")


def build_host_ui():
    tree = NodeTree()
    tree.append_child(tree.root, tree.create("div", ["side-panel"]))
    tree.append_child(tree.root, tree.create("span", ["ribbon-indicator", "is-active"]))
    editor = tree.append_child(tree.root, tree.create("div", ["editor-content"], text="Hello world"))
    return tree, editor


def highlight_node(tree, edit_id):
    return tree.create(
        "mark", ["edit-highlight"], text="Hello",
        data_edit_id=edit_id, data_edit_type="insert", data_from="0", data_to="5",
    )


class DebugMonitor:
    def __init__(self):
        self.calls = []

    def log(self, type, message, data=None):
        self.calls.append((type, message, data))


class BrokenEngine:
    @property
    def process_job(self):
        raise RuntimeError("engine proxy not ready")


@pytest.fixture
def channel():
    channel = logging.getLogger("vigil-test-host-harness")
    yield channel
    for name in CHANNEL_METHODS:
        channel.__dict__.pop(name, None)


@pytest.fixture
def settings(tmp_path):
    return HarnessSettings(base_dir=tmp_path / "sessions")


@pytest.fixture
def harness(settings, channel, scheduler):
    tree, _ = build_host_ui()
    return HarnessOrchestrator(settings, channel=channel, mutation_source=tree,
                               scheduler=scheduler, session_id="harness-test")


@pytest.mark.e2e
class TestEndToEnd:
    def test_bypass_and_duplicate_render_reported(self, settings, channel, scheduler):
        """
        GIVEN a running harness around a host logger and node tree
        WHEN the host logs an engine bypass and renders one region twice
        THEN the JSON report lists exactly those two failures, both needing review
        """
        tree, editor = build_host_ui()
        harness = HarnessOrchestrator(settings, channel=channel, mutation_source=tree,
                                      scheduler=scheduler, session_id="e2e")
        session = harness.start()

        channel.warning("Bypassing editorial engine for quick edit")
        tree.append_child(editor, highlight_node(tree, "e1"))
        tree.append_child(editor, highlight_node(tree, "e2"))
        scheduler.advance(3)

        paths = harness.stop()

        report = json.loads(Path(paths["json"]).read_text(encoding="utf-8"))
        assert report["failure_count"] == 2
        assert sorted(f["type"] for f in report["needs_review"]) == [
            FailureType.DUPLICATE_VISUAL_EFFECT.value,
            FailureType.STAGE_BYPASS.value,
        ]
        assert report["auto_handled"] == []
        assert set(paths) == {"html", "json", "csv", "markdown"}

        stored = harness.session_manager.get_session("e2e")
        assert stored.status == SessionStatus.COMPLETED
        assert stored.entry_count > 0

        actions = [e["action"] for e in read_entries(Path(session.log_file))]
        assert actions[0] == "INTERCEPTION_STARTED"
        assert "CONSOLE_WARNING" in actions
        assert "DUPLICATE_PROCESSING" in actions
        assert "REPORT_GENERATED" in actions
        assert Path(session.snapshot_file).exists()

    def test_stop_restores_channel(self, harness, channel):
        harness.start()
        assert "warning" in channel.__dict__

        harness.stop()

        for name in CHANNEL_METHODS:
            assert name not in channel.__dict__


class TestLifecycle:
    def test_double_start_rejected(self, harness):
        harness.start()
        with pytest.raises(HarnessStateError):
            harness.start()
        harness.stop()

    def test_stop_without_start_rejected(self, harness):
        with pytest.raises(HarnessStateError):
            harness.stop()

    def test_status_reflects_components(self, harness):
        assert harness.get_status() == {"active": False}

        harness.start()
        status = harness.get_status()

        assert status["active"] is True
        assert status["session_id"] == "harness-test"
        assert status["components"] == {
            "logger": True,
            "interceptor": True,
            "state_monitor": True,
            "processing_engine": True,
            "chat_integration": True,
            "ai_attribution": True,
        }
        assert [m.name for m in harness.monitor_states()] == [
            "processing_engine", "chat_integration", "ai_attribution",
        ]
        harness.stop()
        assert harness.get_status() == {"active": False}

    def test_disabled_components_not_created(self, tmp_path, channel, scheduler):
        settings = HarnessSettings.model_validate({
            "base_dir": tmp_path,
            "interceptor": {"enabled": False},
            "workflow": {"enabled": False},
            "report": {"auto_generate": False},
        })
        harness = HarnessOrchestrator(settings, channel=channel, scheduler=scheduler)
        harness.start()

        status = harness.get_status()
        assert status["components"] == {"logger": True, "interceptor": False, "state_monitor": False}
        assert harness.stop() == {}
        assert "info" not in channel.__dict__

    def test_start_failure_marks_session_failed(self, settings, channel, scheduler):
        """
        GIVEN a capability whose hooked method cannot be read
        WHEN the harness starts
        THEN HarnessError is raised, the channel is restored and the session is failed
        """
        capabilities = CapabilityRegistry(processing_engine=BrokenEngine())
        harness = HarnessOrchestrator(settings, channel=channel, capabilities=capabilities,
                                      scheduler=scheduler, session_id="broken")

        with pytest.raises(HarnessError) as excinfo:
            harness.start()

        assert excinfo.type is HarnessError
        assert not harness.is_active
        assert "info" not in channel.__dict__
        stored = harness.session_manager.get_session("broken")
        assert stored.status == SessionStatus.FAILED
        assert (Path(stored.output_dir) / ERROR_FILE).exists()

    def test_restart_uses_a_fresh_session(self, harness):
        """
        GIVEN a harness built with a fixed session id
        WHEN it is started, stopped and started again
        THEN the second run gets a new id and its own directory
        """
        first = harness.start()
        harness.stop()
        second = harness.start()
        harness.stop()

        assert first.session_id == "harness-test"
        assert second.session_id != first.session_id
        assert second.output_dir != first.output_dir
        stored = harness.session_manager.list_sessions()
        assert sorted(s.session_id for s in stored) == sorted([first.session_id, second.session_id])
        assert all(s.status == SessionStatus.COMPLETED for s in stored)

    def test_reused_session_id_rejected(self, harness):
        harness.start()
        harness.stop()

        with pytest.raises(HarnessStateError):
            harness.start(session_id="harness-test")

        assert not harness.is_active
        assert len(harness.session_manager.list_sessions()) == 1
        assert harness.session_manager.get_session("harness-test").status == SessionStatus.COMPLETED

    def test_live_session_metadata_refreshed(self, harness, scheduler):
        """
        GIVEN a running session that has logged host events
        WHEN the metadata refresh interval elapses
        THEN session.json reports the live entry count and a non-zero size
        """
        harness.start()
        for i in range(5):
            harness.log_plugin_event("LOADED", {"attempt": i})

        scheduler.advance(harness.settings.metadata_refresh_seconds)

        stored = harness.session_manager.get_session("harness-test")
        assert stored.status == SessionStatus.ACTIVE
        assert stored.entry_count >= 5
        assert stored.byte_size > 0
        harness.stop()

    def test_refresh_timer_cancelled_on_stop(self, harness, scheduler):
        harness.start()
        harness.stop()
        assert harness.scheduler.active_timers == 0

    def test_report_failure_does_not_fail_session(self, settings, channel, scheduler, tmp_path):
        harness = HarnessOrchestrator(settings, channel=channel, scheduler=scheduler, session_id="r")
        harness.start()
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")

        assert harness.generate_report(blocker / "reports") == {}
        failed = harness.structured_logger.query(category=LogCategory.ERROR)
        assert [e.action for e in failed] == ["REPORT_FAILED"]
        harness.stop()


class TestHostLogging:
    @pytest.fixture
    def running(self, harness):
        harness.start()
        yield harness
        harness.stop()

    def test_logging_requires_running_harness(self, harness):
        with pytest.raises(HarnessStateError):
            harness.log_plugin_event("LOADED")

    def test_plugin_event(self, running):
        entry = running.log_plugin_event("LOADED", {"version": "2.1"}, correlation_id="c1")
        assert entry.component == "PLUGIN"
        assert entry.category == LogCategory.EVENT
        assert entry.data.details == {"version": "2.1"}
        assert entry.correlation_id == "c1"

    def test_ui_event_carries_last_snapshot(self, running):
        entry = running.log_ui_event("PANEL_OPENED")
        assert entry.visual_state == running.state_monitor.get_last_capture()

    def test_performance_threshold(self, running):
        slow = running.log_performance_event("render", 16.5)
        fast = running.log_performance_event("render", 16.0)

        assert slow.level == LogLevel.WARN
        assert fast.level == LogLevel.INFO
        assert slow.data.threshold_ms == 16.0
        assert slow.action == "TIMING"

    def test_log_error_includes_stack(self, running):
        try:
            raise KeyError("missing")
        except KeyError as e:
            entry = running.log_error(e, {"where": "save"})

        assert entry.level == LogLevel.ERROR
        assert entry.data.error_type == "KeyError"
        assert entry.data.stack
        assert entry.data.details == {"where": "save"}

    def test_debug_monitor_mirrored(self, running):
        """
        GIVEN an existing debug monitor with a log(type, message, data) method
        WHEN it is integrated and called
        THEN the call still reaches it and is recorded with the mapped level and category
        """
        debug = DebugMonitor()

        assert running.integrate_debug_monitor(debug) is True
        debug.log("error", "render failed", {"node": 3})

        assert debug.calls == [("error", "render failed", {"node": 3})]
        entry = [e for e in running.structured_logger.get_buffer() if e.action == "DEBUG_ERROR"][0]
        assert entry.level == LogLevel.ERROR
        assert entry.category == LogCategory.ERROR
        assert entry.data.message == "render failed"
        assert entry.data.details["data"] == {"node": 3}

    def test_debug_monitor_detached_on_stop(self, harness):
        debug = DebugMonitor()
        harness.start()
        harness.integrate_debug_monitor(debug)
        harness.stop()

        assert "log" not in debug.__dict__

    def test_object_without_log_not_integrated(self, running):
        assert running.integrate_debug_monitor(object(), name="nothing") is False


class TestAsyncioScheduling:
    def test_start_outside_a_loop_rejected(self, settings, channel):
        """
        GIVEN a harness on the default asyncio scheduler
        WHEN it is started from plain synchronous code
        THEN SchedulerUnavailableError is raised before any session is created
        """
        harness = HarnessOrchestrator(settings, channel=channel, session_id="no-loop")

        with pytest.raises(SchedulerUnavailableError, match="running event loop"):
            harness.start()

        assert not harness.is_active
        assert harness.session_manager.list_sessions() == []
        assert "info" not in channel.__dict__

    def test_runs_inside_event_loop(self, tmp_path, channel):
        settings = HarnessSettings.model_validate({
            "base_dir": tmp_path,
            "metadata_refresh_seconds": 0.02,
            "state": {"capture_interval_seconds": 0.01},
        })
        tree, _ = build_host_ui()

        async def run():
            harness = HarnessOrchestrator(settings, channel=channel, mutation_source=tree,
                                          scheduler=AsyncioScheduler(), session_id="in-loop")
            harness.start()
            channel.warning("host warning")
            await asyncio.sleep(0.1)
            live = harness.session_manager.get_session("in-loop")
            paths = harness.stop()
            return harness, live, paths

        harness, live, paths = asyncio.run(run())

        assert live.status == SessionStatus.ACTIVE
        assert live.entry_count > 0
        assert not harness.is_active
        assert Path(paths["json"]).exists()
        assert harness.session_manager.get_session("in-loop").status == SessionStatus.COMPLETED
