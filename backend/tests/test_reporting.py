"""
Tests for report aggregation and the report writers.
"""

import csv
import json

import pytest

from vigil.host import CapabilityRegistry
from vigil.monitoring.attribution_monitor import AttributionMonitor
from vigil.monitoring.engine_monitor import EngineMonitor
from vigil.monitoring.failures import FailureType
from vigil.reporting.aggregate import aggregate_results, common_failure_patterns, dedupe_recommendations
from vigil.reporting.errors import ReportAggregationError, ReportWriteError
from vigil.reporting.generator import ReportGenerator
from vigil.reporting.models import MONITOR_NOT_AVAILABLE, MonitorHealthCard, ScenarioStatus
from vigil.reporting.writers import render_dashboard, render_narrative, write_reports


class Engine:
    def __init__(self):
        self.constraints_applied = True

    def process_job(self, job):
        return {"constraints_applied": self.constraints_applied}


@pytest.fixture
def engine():
    return Engine()


@pytest.fixture
def monitors(structured_logger, scheduler, engine):
    """
    Engine monitor with one failed and one clean check, an attribution
    monitor that never started, and no chat monitor at all.
    """
    registry = CapabilityRegistry(processing_engine=engine)
    engine_monitor = EngineMonitor(structured_logger, scheduler, registry)
    engine_monitor.start()

    engine.constraints_applied = False
    engine.process_job({"job_id": "bad"})
    engine.constraints_applied = True
    engine.process_job({"job_id": "good"})

    return {
        "processing_engine": engine_monitor,
        "chat_integration": None,
        "ai_attribution": AttributionMonitor(structured_logger, scheduler),
    }


class TestAggregation:
    def test_unavailable_monitors_marked_and_excluded(self, structured_logger, monitors):
        """
        GIVEN one running monitor, one never started and one missing
        WHEN results are aggregated
        THEN the missing two say "monitor not available" and the score uses only the running one
        """
        result = aggregate_results(structured_logger, monitors)

        cards = {c.name: c for c in result.monitors}
        assert cards["chat_integration"].available is False
        assert cards["chat_integration"].note == MONITOR_NOT_AVAILABLE
        assert cards["ai_attribution"].note == MONITOR_NOT_AVAILABLE
        assert cards["ai_attribution"].health_score is None
        assert cards["processing_engine"].health_score == 50.0
        assert result.overall_score == 50.0

    def test_failures_and_checks_collected(self, structured_logger, monitors):
        result = aggregate_results(structured_logger, monitors)

        assert [f.type for f in result.failures] == [FailureType.CONSTRAINT_FAILURE]
        assert result.failure_count == 1
        assert result.auto_handled == result.failures
        assert result.needs_review == []
        assert len(result.checks) == 2
        assert len(result.failed_checks) == 1

    def test_scenarios_replay_latest_workflow(self, structured_logger, monitors):
        result = aggregate_results(structured_logger, monitors)

        scenarios = {s.monitor: s for s in result.scenarios}
        assert scenarios["processing_engine"].status == ScenarioStatus.PASSED
        assert scenarios["processing_engine"].actual_stages == [
            "job_submitted", "constraints_applied", "result_returned",
        ]
        assert scenarios["chat_integration"].status == ScenarioStatus.MONITOR_NOT_AVAILABLE
        assert scenarios["ai_attribution"].status == ScenarioStatus.MONITOR_NOT_AVAILABLE

    def test_integration_points_and_state_summary(self, structured_logger, monitors):
        result = aggregate_results(structured_logger, monitors)

        points = {p.monitor: p for p in result.integration_points}
        assert points["processing_engine"].score == 50.0
        assert points["chat_integration"].available is False
        assert result.state_summary == {"available": False, "note": MONITOR_NOT_AVAILABLE}

    def test_no_available_monitor_gives_no_score(self, structured_logger):
        result = aggregate_results(structured_logger, {"processing_engine": None})
        assert result.overall_score is None

    def test_missing_logger_rejected(self):
        with pytest.raises(ReportAggregationError):
            aggregate_results(None, {})

    def test_aggregation_does_not_mutate_monitors(self, structured_logger, monitors):
        engine_monitor = monitors["processing_engine"]
        before = engine_monitor.get_current_state()

        aggregate_results(structured_logger, monitors)

        assert engine_monitor.get_current_state() == before

    def test_recommendations_deduplicated(self):
        cards = [
            MonitorHealthCard(name="a", available=True, recommendations=["Check engine", "Restart"]),
            MonitorHealthCard(name="b", available=True, recommendations=["Check engine ", "Review"]),
        ]
        assert dedupe_recommendations(cards) == ["Check engine", "Restart", "Review"]

    def test_patterns_need_two_occurrences(self, structured_logger, scheduler):
        monitor = EngineMonitor(structured_logger, scheduler)
        monitor.record_failure(FailureType.STAGE_BYPASS, "one")
        monitor.record_failure(FailureType.STAGE_BYPASS, "two")
        monitor.record_failure(FailureType.CONSTRAINT_FAILURE, "three")

        patterns = common_failure_patterns(monitor.get_failures())

        assert [(p.type, p.count) for p in patterns] == [(FailureType.STAGE_BYPASS, 2)]
        assert patterns[0].monitors == ["processing_engine"]


class TestWriters:
    def test_write_reports_produces_every_format(self, structured_logger, monitors, tmp_path):
        result = aggregate_results(structured_logger, monitors)

        paths = write_reports(result, tmp_path)

        assert set(paths) == {"html", "json", "csv", "markdown"}
        for path in paths.values():
            assert path.exists()
            assert path.name.startswith("vigil_report_test-session_")

    def test_json_export_counts(self, structured_logger, monitors, tmp_path):
        result = aggregate_results(structured_logger, monitors)
        paths = write_reports(result, tmp_path)

        data = json.loads(paths["json"].read_text(encoding="utf-8"))

        assert data["session_id"] == "test-session"
        assert data["failure_count"] == 1
        assert data["needs_review"] == []
        assert len(data["auto_handled"]) == 1
        assert data["overall_score"] == 50.0

    def test_csv_has_one_row_per_check(self, structured_logger, monitors, tmp_path):
        result = aggregate_results(structured_logger, monitors)
        paths = write_reports(result, tmp_path)

        with open(paths["csv"], newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))

        assert rows[0][0] == "workflow_id"
        assert len(rows) == 3
        assert rows[1][3] == "COMPLETE"
        assert "engine returned without applying constraints" in rows[1][8]

    def test_dashboard_escapes_text(self, structured_logger, scheduler):
        monitor = EngineMonitor(structured_logger, scheduler)
        monitor.start()
        monitor.record_failure(FailureType.PROCESSING_FAILURE, "<script>alert(1)</script>")

        html_text = render_dashboard(aggregate_results(structured_logger, {"processing_engine": monitor}))

        assert "<script>alert(1)</script>" not in html_text
        assert "&lt;script&gt;" in html_text
        assert "toggleDetail" in html_text
        monitor.stop()

    def test_narrative_mentions_unavailable_monitors(self, structured_logger, monitors):
        text = render_narrative(aggregate_results(structured_logger, monitors))

        assert text.startswith("# Integration health summary: test-session")
        assert f"**chat_integration**: {MONITOR_NOT_AVAILABLE}" in text
        assert "1 failures were detected" in text

    def test_missing_output_dir_rejected(self, structured_logger, monitors, tmp_path):
        result = aggregate_results(structured_logger, monitors)
        with pytest.raises(ReportWriteError):
            write_reports(result, tmp_path / "missing")

    def test_file_as_output_dir_rejected(self, structured_logger, monitors, tmp_path):
        result = aggregate_results(structured_logger, monitors)
        target = tmp_path / "file.txt"
        target.write_text("x")
        with pytest.raises(ReportWriteError):
            write_reports(result, target)


class TestGenerator:
    def test_generate_logs_report_entry(self, structured_logger, monitors, tmp_path):
        generator = ReportGenerator(structured_logger, monitors)

        paths = generator.generate(tmp_path)

        assert len(paths) == 4
        assert generator.last_result is not None
        entry = [e for e in structured_logger.get_buffer() if e.action == "REPORT_GENERATED"][-1]
        assert entry.data.details["failure_count"] == 1
        assert entry.data.details["paths"]["json"] == str(paths["json"])
