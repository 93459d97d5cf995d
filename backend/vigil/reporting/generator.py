"""
Report generator.

One bounded, synchronous pass: aggregate the buffered evidence, then
render every artifact from that single AggregatedResult.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from ..config import ReportSettings
from ..monitoring.state_monitor import StateMonitor
from ..monitoring.workflow import WorkflowHealthMonitor
from ..observability.logger import StructuredLogger
from ..observability.models import LogCategory, LogLevel
from .aggregate import aggregate_results
from .models import AggregatedResult
from .writers import write_reports

logger = logging.getLogger(__name__)


class ReportGenerator:
    """
    Turns a session's evidence into dashboard and export files.

    Usage:
        generator = ReportGenerator(log, {"processing_engine": engine}, state_monitor)
        paths = generator.generate(output_dir=session.report_dir)
    """

    COMPONENT = "REPORT_GENERATOR"

    def __init__(
        self,
        structured_logger: StructuredLogger,
        monitors: Mapping[str, Optional[WorkflowHealthMonitor]],
        state_monitor: Optional[StateMonitor] = None,
        settings: Optional[ReportSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.log = structured_logger
        self.monitors = monitors
        self.state_monitor = state_monitor
        self.settings = settings or ReportSettings()
        self.clock = clock
        self.last_result: Optional[AggregatedResult] = None

    def aggregate(self) -> AggregatedResult:
        result = aggregate_results(self.log, self.monitors, self.state_monitor, self.settings)
        self.last_result = result
        return result

    def generate(self, output_dir: Path, result: Optional[AggregatedResult] = None) -> Dict[str, Path]:
        """
        Write every report format for the session.

        Args:
            output_dir: Existing directory receiving the files
            result: Pre-computed aggregation; aggregated now when None

        Returns:
            Dict mapping format name to written filepath

        Raises:
            ReportWriteError: If any report fails to write
        """
        started = self.clock()
        result = result or self.aggregate()
        paths = write_reports(result, Path(output_dir))
        elapsed_ms = (self.clock() - started) * 1000

        logger.info(
            f"[VIGIL:REPORT] Generated {len(paths)} reports for {result.session_id} "
            f"({result.failure_count} failures, score {result.overall_score})"
        )
        self.log.log(
            LogLevel.INFO,
            LogCategory.REPORT,
            self.COMPONENT,
            "REPORT_GENERATED",
            {
                "paths": {name: str(path) for name, path in paths.items()},
                "failure_count": result.failure_count,
                "needs_review": len(result.needs_review),
                "overall_score": result.overall_score,
                "duration_ms": round(elapsed_ms, 2),
            },
        )
        return paths
