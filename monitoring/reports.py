"""HTML bodies for the daily summary and weekly rollup alerts."""
from __future__ import annotations

import html
import logging
from datetime import datetime
from typing import Any, Iterable, Sequence

import config
from monitoring._base import _now_utc, status_symbol
from monitoring.trends import BucketSummary, TrendPoint, WeeklyRollup

log = logging.getLogger(__name__)

SPARK_ERROR_COLOR = "#dc2626"
SPARK_WARN_COLOR = "#facc15"
SPARK_OK_COLOR = "#16a34a"

_FONT = "font-family:system-ui,Segoe UI,Roboto,Helvetica,Arial,sans-serif"

# Finding code -> operator recommendation
_EXACT_RECOMMENDATIONS: dict[str, str] = {
    "sdk.missing_api_key": "Set GOOGLE_API_KEY (or GEMINI_API_KEY) for the deployment.",
    "sdk.timeout": "Live probe timed out; check service status and SELFREPAIR_PROBE_TIMEOUT.",
    "env.placeholder": "Replace placeholder credentials written by repair with real values.",
    "env.file_missing": "Run repair or fix-env to create the local env file.",
    "codebase.legacy_dependency": "Run repair to swap the legacy SDK package in package.json.",
    "codebase.source_dir_missing": "Point SELFREPAIR_SOURCE_DIR at the application source tree.",
}

_PREFIX_RECOMMENDATIONS: list[tuple[str, str]] = [
    ("sdk.", "Investigate failing generative-service calls."),
    ("env.", "Run fix-env to sync credentials between private and public keys."),
    ("codebase.", "Run repair in dry-run mode and review deprecated SDK call sites."),
]


def recommendation_for(code: str) -> str:
    if code in _EXACT_RECOMMENDATIONS:
        return _EXACT_RECOMMENDATIONS[code]
    for prefix, text in _PREFIX_RECOMMENDATIONS:
        if code.startswith(prefix):
            return text
    return "Review the latest self-repair report."


def summary_level(summary: BucketSummary) -> str:
    """error if any error, else warn if any warning, else info."""
    if summary.error_count > 0:
        return "error"
    if summary.warn_count > 0:
        return "warn"
    return "info"


def recommendations(summary: BucketSummary, finding_codes: Iterable[str] = ()) -> list[str]:
    items: list[str] = []
    if summary.error_count > 0:
        items.append(f"{status_symbol('error')} Investigate failing SDK or environment checks.")
    elif summary.warn_count > 0:
        items.append(f"{status_symbol('warn')} Review warnings and run repair soon.")
    else:
        items.append(f"{status_symbol('ok')} All systems healthy.")
    for code in dict.fromkeys(finding_codes):
        text = recommendation_for(code)
        if text not in items:
            items.append(text)
    return items


def build_sparkline(data: Sequence[int], color: str, *, height: int = 40, width: int = 140) -> str:
    """Inline SVG polyline for a small series; empty string for no data."""
    if not data:
        return ""
    hi, lo = max(data), min(data)
    span = (hi - lo) or 1
    step = width / (len(data) - 1) if len(data) > 1 else 0.0
    points = " ".join(
        f"{round(i * step, 1)},{round(height - ((value - lo) / span) * height, 1)}"
        for i, value in enumerate(data)
    )
    return (
        f'<svg width="{width}" height="{height}" xmlns="http://www.w3.org/2000/svg">'
        f'<polyline fill="none" stroke="{color}" stroke-width="2" points="{points}" /></svg>'
    )


def dashboard_url() -> str:
    return f"{config.APP_BASE_URL}/admin/selfrepair"


def _totals_table(summary: BucketSummary) -> str:
    rows = (
        ("Total runs", summary.total),
        (f"{status_symbol('error')} Errors", summary.error_count),
        (f"{status_symbol('warn')} Warnings", summary.warn_count),
        (f"{status_symbol('ok')} OK", summary.ok_count),
        ("Success rate", f"{summary.success_rate}%"),
    )
    cells = "".join(f"<tr><td>{html.escape(label)}</td><td><b>{value}</b></td></tr>" for label, value in rows)
    return f'<table cellspacing="0" cellpadding="6" style="border-collapse:collapse">{cells}</table>'


def daily_summary_subject(now: datetime | None = None) -> str:
    return f"Daily Self-Repair Summary ({(now or _now_utc()).date().isoformat()})"


def daily_summary_html(
    summary: BucketSummary,
    trend: Sequence[TrendPoint],
    *,
    finding_codes: Iterable[str] = (),
    now: datetime | None = None,
) -> str:
    error_spark = build_sparkline([p.error_count for p in trend], SPARK_ERROR_COLOR)
    warn_spark = build_sparkline([p.warn_count for p in trend], SPARK_WARN_COLOR)
    ok_spark = build_sparkline([p.ok_count for p in trend], SPARK_OK_COLOR)
    items = "".join(f"<li>{html.escape(text)}</li>" for text in recommendations(summary, finding_codes))
    link = html.escape(dashboard_url())
    return (
        f'<div style="{_FONT}">'
        f"<h2>{html.escape(daily_summary_subject(now))}</h2>"
        "<p><b>Window:</b> Last 24 hours</p>"
        f"{_totals_table(summary)}"
        f'<h3 style="margin-top:16px">{len(trend)}-Day Trend</h3>'
        '<div style="display:flex;gap:16px;align-items:center;">'
        f"<div><b>Errors</b><br/>{error_spark}</div>"
        f"<div><b>Warnings</b><br/>{warn_spark}</div>"
        f"<div><b>OK</b><br/>{ok_spark}</div>"
        "</div>"
        f'<h3 style="margin-top:16px">Recommendations</h3><ul>{items}</ul>'
        f'<p style="margin-top:16px">View dashboard: <a href="{link}">{link}</a></p>'
        "</div>"
    )


def confidence_band(confidence: int) -> str:
    if confidence >= 90:
        return "healthy"
    if confidence >= 75:
        return "watch"
    return "degraded"


def weekly_rollup_level(rollup: WeeklyRollup) -> str:
    band = confidence_band(rollup.confidence)
    if rollup.this_week.total == 0 or band == "degraded":
        return "warn"
    return "info"


def weekly_rollup_subject(now: datetime | None = None) -> str:
    year, week, _ = (now or _now_utc()).date().isocalendar()
    return f"Weekly Self-Repair Rollup ({year}-W{week:02d})"


def weekly_rollup_html(rollup: WeeklyRollup, *, now: datetime | None = None) -> str:
    change = rollup.confidence_change
    arrow = "▲" if change >= 0 else "▼"
    delta_rows = "".join(
        f"<tr><td>{html.escape(name)}</td><td>{_signed(value)}</td></tr>"
        for name, value in rollup.delta.items()
    )
    link = html.escape(dashboard_url())
    return (
        f'<div style="{_FONT}">'
        f"<h2>{html.escape(weekly_rollup_subject(now))}</h2>"
        f"<p><b>Confidence:</b> {rollup.confidence}% ({confidence_band(rollup.confidence)}) "
        f"{arrow} {abs(change)}% vs last week</p>"
        "<h3>This week</h3>"
        f"{_totals_table(rollup.this_week)}"
        "<h3>Last week</h3>"
        f"{_totals_table(rollup.last_week)}"
        f'<h3>Change</h3><table cellspacing="0" cellpadding="6">{delta_rows}</table>'
        f'<p style="margin-top:16px">View dashboard: <a href="{link}">{link}</a></p>'
        "</div>"
    )


def _signed(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)


# ---------------------------------------------------------------------------
# Narrative summary
# ---------------------------------------------------------------------------

def build_narrative_prompt(summary: BucketSummary, recent: Sequence[Any]) -> str:
    lines = "\n".join(f"[{entry.time}] {entry.overall}" for entry in recent[-25:])
    return (
        "You are a DevOps analyst reviewing self-repair health-check logs.\n"
        "Write a one-sentence executive summary, then three short paragraphs "
        "covering overall stability, notable errors or anomalies, and "
        "recommendations.\n\n"
        f"Total runs: {summary.total}\n"
        f"OK: {summary.ok_count}\n"
        f"Warnings: {summary.warn_count}\n"
        f"Errors: {summary.error_count}\n"
        f"Success rate: {summary.success_rate}%\n\n"
        f"Recent runs (oldest first):\n{lines}"
    )


def narrative_html(text: str) -> str:
    body = "<br/>".join(html.escape(line) for line in text.strip().split("\n"))
    return f'<div style="{_FONT}"><h2>AI System Health Summary</h2><p>{body}</p></div>'
