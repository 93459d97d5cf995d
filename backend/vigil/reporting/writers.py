"""
Report writers: dashboard HTML plus JSON, CSV and Markdown exports.

- HTML: Self-contained dashboard for people reviewing a session
- JSON: Flat record export of the whole aggregated result
- CSV: One row per workflow check, for spreadsheets
- Markdown: Narrative summary (score, critical issues, recommendations)

All reports written with timestamped filenames to prevent collisions.
"""

import csv
import html
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ReportWriteError
from .models import AggregatedResult, MonitorHealthCard, ScenarioStatus
from ..monitoring.failures import TypedFailure
from ..monitoring.models import WorkflowValidation


def _generate_timestamp() -> str:
    """Generate ISO 8601 timestamp for filenames (e.g., 20251215T143052)."""
    return datetime.now().strftime("%Y%m%dT%H%M%S")


def _format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "N/A"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.1f}s"


def _format_score(score: Optional[float]) -> str:
    return "N/A" if score is None else f"{score:.0f}%"


def _format_time(epoch: Optional[float]) -> str:
    if epoch is None:
        return ""
    return datetime.fromtimestamp(epoch).strftime("%H:%M:%S")


def _score_class(score: Optional[float]) -> str:
    if score is None:
        return "na"
    if score >= 80:
        return "good"
    if score >= 50:
        return "warn"
    return "bad"


def _report_name(result: AggregatedResult, timestamp: str, ext: str) -> str:
    safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in result.session_id)
    return f"vigil_report_{safe_id[:40]}_{timestamp}.{ext}"


def build_json_payload(result: AggregatedResult) -> Dict:
    """Flat, machine-readable form of the aggregated result."""
    payload = result.model_dump(mode="json")
    payload["failure_count"] = result.failure_count
    payload["needs_review"] = [f.model_dump(mode="json") for f in result.needs_review]
    payload["auto_handled"] = [f.model_dump(mode="json") for f in result.auto_handled]
    return payload


# =============================================================================
# HTML dashboard
# =============================================================================

_DASHBOARD_CSS = """
body { font-family: -apple-system, "Segoe UI", sans-serif; margin: 0; background: #f4f5f7; color: #1d2330; }
header { background: #1d2330; color: #fff; padding: 20px 28px; }
header h1 { margin: 0 0 6px 0; font-size: 22px; }
header .meta { font-size: 13px; opacity: 0.75; }
main { padding: 24px 28px; }
h2 { font-size: 17px; margin: 28px 0 12px 0; }
.summary { display: flex; gap: 16px; flex-wrap: wrap; }
.stat { background: #fff; border-radius: 8px; padding: 14px 18px; min-width: 140px; box-shadow: 0 1px 2px rgba(0,0,0,.08); }
.stat .value { font-size: 26px; font-weight: 600; }
.stat .label { font-size: 12px; color: #5c6475; text-transform: uppercase; }
.cards { display: grid; grid-template-columns: repeat(auto-fill, minmax(260px, 1fr)); gap: 16px; }
.card { background: #fff; border-radius: 8px; padding: 16px; box-shadow: 0 1px 2px rgba(0,0,0,.08); }
.card h3 { margin: 0 0 4px 0; font-size: 15px; }
.card .desc { font-size: 12px; color: #5c6475; margin-bottom: 10px; }
.score { font-size: 28px; font-weight: 700; }
.good { color: #1e8e3e; } .warn { color: #b06000; } .bad { color: #c5221f; } .na { color: #80868b; }
.columns { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
.column { background: #fff; border-radius: 8px; padding: 16px; box-shadow: 0 1px 2px rgba(0,0,0,.08); }
.failure { border-left: 4px solid #c5221f; padding: 6px 10px; margin: 8px 0; background: #fdf3f2; font-size: 13px; }
.failure.AUTO_FIX { border-left-color: #b06000; background: #fef7e0; }
.failure .type { font-weight: 600; }
table { border-collapse: collapse; width: 100%; background: #fff; font-size: 13px; }
th, td { text-align: left; padding: 8px 10px; border-bottom: 1px solid #e3e5e8; vertical-align: top; }
th { background: #eceef1; }
tr.check { cursor: pointer; }
tr.detail { display: none; }
tr.detail.open { display: table-row; }
tr.detail td { background: #fafbfc; }
.empty { color: #80868b; font-style: italic; font-size: 13px; }
code { font-size: 12px; }
"""

_DASHBOARD_JS = """
function toggleDetail(id) {
  var row = document.getElementById(id);
  if (row) { row.classList.toggle('open'); }
}
"""


def _render_card(card: MonitorHealthCard) -> str:
    name = html.escape(card.name)
    if not card.available:
        return (
            f'<div class="card"><h3>{name}</h3>'
            f'<div class="score na">N/A</div>'
            f'<div class="desc">{html.escape(card.note or "")}</div></div>'
        )
    counts = "".join(
        f"<li>{html.escape(t)}: {n}</li>" for t, n in sorted(card.failure_counts.items())
    ) or '<li class="empty">no failures</li>'
    status = "healthy" if card.healthy else "unhealthy"
    return (
        f'<div class="card"><h3>{name}</h3>'
        f'<div class="desc">{html.escape(card.description)}</div>'
        f'<div class="score {_score_class(card.health_score)}">{_format_score(card.health_score)}</div>'
        f'<div class="desc">{status} &middot; {card.total_checks} checks &middot; '
        f'{card.pending_workflows} pending &middot; {card.recent_failures} recent failures</div>'
        f"<ul>{counts}</ul></div>"
    )


def _render_failures(failures: List[TypedFailure]) -> str:
    if not failures:
        return '<p class="empty">None</p>'
    items = []
    for f in failures:
        items.append(
            f'<div class="failure {html.escape(f.assignee.value)}">'
            f'<span class="type">{html.escape(f.type.value)}</span> '
            f"[{html.escape(f.severity.value)}] {html.escape(f.monitor)} {_format_time(f.timestamp)}"
            f"<div>{html.escape(f.message)}</div></div>"
        )
    return "".join(items)


def _render_checks(checks: List[WorkflowValidation]) -> str:
    if not checks:
        return '<p class="empty">No workflow checks recorded.</p>'
    rows = []
    for i, check in enumerate(checks):
        detail_id = f"check-{i}"
        stages = ", ".join(
            f"{'+' if seen else '-'}{html.escape(name)}" for name, seen in check.stages.items()
        )
        issues = "".join(f"<li>{html.escape(issue)}</li>" for issue in check.issues) or "<li>none</li>"
        context = html.escape(json.dumps(check.context, default=str, sort_keys=True))
        rows.append(
            f'<tr class="check" onclick="toggleDetail(\'{detail_id}\')">'
            f"<td>{html.escape(check.monitor)}</td>"
            f"<td>{html.escape(check.status.value)}</td>"
            f"<td>{html.escape(check.trigger)}</td>"
            f"<td>{_format_duration(check.duration)}</td>"
            f"<td>{len(check.issues)}</td></tr>"
            f'<tr class="detail" id="{detail_id}"><td colspan="5">'
            f"<div><strong>Workflow:</strong> <code>{html.escape(check.workflow_id)}</code></div>"
            f"<div><strong>Stages:</strong> {stages}</div>"
            f"<div><strong>Issues:</strong><ul>{issues}</ul></div>"
            f"<div><strong>Context:</strong> <code>{context}</code></div>"
            f"</td></tr>"
        )
    return (
        "<table><thead><tr><th>Monitor</th><th>Status</th><th>Trigger</th>"
        "<th>Duration</th><th>Issues</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
    )


def _render_scenarios(result: AggregatedResult) -> str:
    rows = []
    for scenario in result.scenarios:
        css = {
            ScenarioStatus.PASSED: "good",
            ScenarioStatus.FAILED: "bad",
        }.get(scenario.status, "na")
        rows.append(
            f"<tr><td>{html.escape(scenario.name)}</td>"
            f'<td class="{css}">{html.escape(scenario.status.value)}</td>'
            f"<td>{html.escape(' -> '.join(scenario.expected_stages))}</td>"
            f"<td>{html.escape(' -> '.join(scenario.actual_stages))}</td>"
            f"<td>{html.escape('; '.join(scenario.issues))}</td></tr>"
        )
    return (
        "<table><thead><tr><th>Scenario</th><th>Result</th><th>Expected</th>"
        "<th>Observed</th><th>Issues</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
    )


def render_dashboard(result: AggregatedResult) -> str:
    """Render the dashboard as one self-contained HTML document."""
    title = f"Integration health: {result.session_id}"
    generated = result.generated_at.strftime("%Y-%m-%d %H:%M:%S %Z")
    cards = "".join(_render_card(card) for card in result.monitors)
    points = "".join(
        f"<tr><td>{html.escape(p.name)}</td>"
        f'<td class="{_score_class(p.score)}">{_format_score(p.score)}</td></tr>'
        for p in result.integration_points
    )
    recommendations = "".join(f"<li>{html.escape(r)}</li>" for r in result.recommendations) \
        or '<li class="empty">No recommendations.</li>'
    patterns = "".join(
        f"<li>{html.escape(p.type.value)} x{p.count} ({html.escape(', '.join(p.monitors))})</li>"
        for p in result.common_patterns
    ) or '<li class="empty">No repeated failure types.</li>'

    return f"""<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8" />
<title>{html.escape(title)}</title>
<style>{_DASHBOARD_CSS}</style>
<script>{_DASHBOARD_JS}</script>
</head>
<body>
<header>
  <h1>{html.escape(title)}</h1>
  <div class="meta">Generated {html.escape(generated)} &middot; failure window {result.window_minutes:g} min</div>
</header>
<main>
  <section class="summary">
    <div class="stat"><div class="value {_score_class(result.overall_score)}">{_format_score(result.overall_score)}</div><div class="label">Overall health</div></div>
    <div class="stat"><div class="value">{result.failure_count}</div><div class="label">Failures</div></div>
    <div class="stat"><div class="value">{len(result.needs_review)}</div><div class="label">Needs review</div></div>
    <div class="stat"><div class="value">{len(result.checks)}</div><div class="label">Workflow checks</div></div>
    <div class="stat"><div class="value">{result.total_entries}</div><div class="label">Log entries</div></div>
  </section>

  <h2>Monitors</h2>
  <section class="cards">{cards}</section>

  <h2>Failures</h2>
  <section class="columns">
    <div class="column"><h3>Needs human review</h3>{_render_failures(result.needs_review)}</div>
    <div class="column"><h3>Auto-handled</h3>{_render_failures(result.auto_handled)}</div>
  </section>

  <h2>Scenarios</h2>
  {_render_scenarios(result)}

  <h2>Integration points</h2>
  <table><thead><tr><th>Integration</th><th>Score</th></tr></thead><tbody>{points}</tbody></table>

  <h2>Workflow checks</h2>
  {_render_checks(result.checks)}

  <h2>Common patterns</h2>
  <ul>{patterns}</ul>

  <h2>Recommendations</h2>
  <ul>{recommendations}</ul>
</main>
</body>
</html>
"""


def write_dashboard_html(result: AggregatedResult, output_dir: Path) -> Path:
    """
    Write the HTML dashboard.

    Returns path to written HTML file.
    Raises ReportWriteError if write fails.
    """
    filepath = output_dir / _report_name(result, _generate_timestamp(), "html")
    try:
        filepath.write_text(render_dashboard(result), encoding="utf-8")
        return filepath
    except Exception as e:
        raise ReportWriteError(f"Failed to write HTML dashboard: {e}") from e


def write_json_export(result: AggregatedResult, output_dir: Path) -> Path:
    """
    Write the JSON export.

    Format: Full aggregated result plus failure_count and the
    needs_review / auto_handled split.

    Returns path to written JSON file.
    Raises ReportWriteError if write fails.
    """
    filepath = output_dir / _report_name(result, _generate_timestamp(), "json")
    try:
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(build_json_payload(result), f, indent=2, default=str)
        return filepath
    except Exception as e:
        raise ReportWriteError(f"Failed to write JSON report: {e}") from e


def write_csv_export(result: AggregatedResult, output_dir: Path) -> Path:
    """
    Write the CSV export: one row per workflow check.

    Returns path to written CSV file.
    Raises ReportWriteError if write fails.
    """
    filepath = output_dir / _report_name(result, _generate_timestamp(), "csv")
    try:
        with open(filepath, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)

            writer.writerow([
                "workflow_id",
                "monitor",
                "trigger",
                "status",
                "started_at",
                "duration_seconds",
                "stages_observed",
                "stages_missing",
                "issues",
            ])

            for check in result.checks:
                missing = [name for name, seen in check.stages.items() if not seen]
                writer.writerow([
                    check.workflow_id,
                    check.monitor,
                    check.trigger,
                    check.status.value,
                    datetime.fromtimestamp(check.started_at).isoformat(),
                    f"{check.duration:.3f}" if check.duration is not None else "",
                    "; ".join(check.observed_stages),
                    "; ".join(missing),
                    "; ".join(check.issues),
                ])

        return filepath

    except Exception as e:
        raise ReportWriteError(f"Failed to write CSV report: {e}") from e


def render_narrative(result: AggregatedResult) -> str:
    lines = [
        f"# Integration health summary: {result.session_id}",
        "",
        f"Generated {result.generated_at.strftime('%Y-%m-%d %H:%M:%S')}.",
        "",
    ]

    if result.overall_score is None:
        lines.append("No monitor was available, so no overall health score could be computed.")
    else:
        verdict = "healthy" if result.overall_score >= 80 else "degraded"
        lines.append(
            f"Overall integration health is **{_format_score(result.overall_score)}** ({verdict}), "
            f"based on {len(result.checks)} workflow checks and {result.total_entries} log entries."
        )
    lines.append(
        f"{result.failure_count} failures were detected in the last {result.window_minutes:g} minutes: "
        f"{len(result.needs_review)} need human review and {len(result.auto_handled)} can be handled automatically."
    )
    lines.append("")

    lines.append("## Monitors")
    lines.append("")
    for card in result.monitors:
        if card.available:
            lines.append(f"- **{card.name}**: {_format_score(card.health_score)}, "
                         f"{card.recent_failures} recent failures")
        else:
            lines.append(f"- **{card.name}**: {card.note}")
    lines.append("")

    critical = [f for f in result.failures if f.severity.value in ("CRITICAL", "HIGH")]
    lines.append("## Critical issues")
    lines.append("")
    if critical:
        for f in critical:
            lines.append(f"- `{f.type.value}` ({f.severity.value}, {f.monitor}): {f.message}")
    else:
        lines.append("No critical or high severity issues.")
    lines.append("")

    if result.common_patterns:
        lines.append("## Common patterns")
        lines.append("")
        for pattern in result.common_patterns:
            lines.append(f"- `{pattern.type.value}` seen {pattern.count} times in {', '.join(pattern.monitors)}")
        lines.append("")

    lines.append("## Recommendations")
    lines.append("")
    if result.recommendations:
        for recommendation in result.recommendations:
            lines.append(f"- {recommendation}")
    else:
        lines.append("No recommendations.")
    lines.append("")
    return "\n".join(lines)


def write_narrative_summary(result: AggregatedResult, output_dir: Path) -> Path:
    """
    Write the Markdown narrative summary.

    Returns path to written Markdown file.
    Raises ReportWriteError if write fails.
    """
    filepath = output_dir / _report_name(result, _generate_timestamp(), "md")
    try:
        filepath.write_text(render_narrative(result), encoding="utf-8")
        return filepath
    except Exception as e:
        raise ReportWriteError(f"Failed to write narrative summary: {e}") from e


def write_reports(result: AggregatedResult, output_dir: Path) -> dict:
    """
    Write all report formats to output directory.

    Args:
        result: AggregatedResult to write
        output_dir: Directory to write reports to (must exist)

    Returns:
        Dict mapping format name to written filepath:
        {"html": Path, "json": Path, "csv": Path, "markdown": Path}

    Raises:
        ReportWriteError: If any report fails to write
    """
    if not output_dir.exists():
        raise ReportWriteError(f"Output directory does not exist: {output_dir}")

    if not output_dir.is_dir():
        raise ReportWriteError(f"Output path is not a directory: {output_dir}")

    return {
        "html": write_dashboard_html(result, output_dir),
        "json": write_json_export(result, output_dir),
        "csv": write_csv_export(result, output_dir),
        "markdown": write_narrative_summary(result, output_dir),
    }
