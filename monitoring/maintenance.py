"""Cron orchestrator: hourly, daily, and weekly self-repair cycles.

Each cycle is triggered externally (HTTP or CLI). Daily and weekly cycles are
gated by a wall-clock guard (UTC hour / weekday) and then by a per-period
claim in the run ledger, so overlapping triggers run the body at most once.
A cycle with a failed step releases its claim so a later trigger can retry.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import config
from monitoring._base import (
    MODE_READ_ONLY,
    LogEntry,
    SelfRepairError,
    _now_utc,
    alert_level_for,
)
from monitoring.alerts import AlertDispatcher
from monitoring.archive import ArchiveManager
from monitoring.event_log import EventLog, HealthStateCache
from monitoring.health import HealthCheckEngine
from monitoring.reports import (
    daily_summary_html,
    daily_summary_subject,
    summary_level,
    weekly_rollup_html,
    weekly_rollup_level,
    weekly_rollup_subject,
)
from monitoring.run_ledger import RunLedger, daily_key, weekly_key
from monitoring.trends import TrendAnalyzer

log = logging.getLogger(__name__)

WEEKDAY_MAP = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def should_run_daily(now: datetime, hour: int | None = None) -> bool:
    target = config.DAILY_HOUR if hour is None else hour
    return _as_utc(now).hour == target


def should_run_weekly(now: datetime, day: str | None = None) -> bool:
    target = str(day or config.WEEKLY_DAY).strip().lower()
    return _as_utc(now).weekday() == WEEKDAY_MAP.get(target, 0)


# ---------------------------------------------------------------------------
# Cycle result
# ---------------------------------------------------------------------------

@dataclass
class CycleResult:
    cycle: str
    status: str = "running"
    started_at: str = ""
    finished_at: str = ""
    reason: str = ""
    period_key: str = ""
    failed_steps: list[str] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)

    @property
    def ran(self) -> bool:
        return self.status not in {"skipped", "running"}

    def record(self, name: str, value: Any, *, failed: bool = False) -> None:
        self.results[name] = value
        if failed and name not in self.failed_steps:
            self.failed_steps.append(name)

    def finish(self) -> None:
        self.finished_at = _now_utc().isoformat()
        if not self.results:
            self.status = "failed"
        elif not self.failed_steps:
            self.status = "success"
        else:
            self.status = "failed" if len(self.failed_steps) >= len(self.results) else "partial"

    def as_dict(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "reason": self.reason,
            "period_key": self.period_key,
            "failed_steps": list(self.failed_steps),
            "results": dict(self.results),
        }


def _skipped(cycle: str, reason: str, period_key: str = "") -> CycleResult:
    now = _now_utc().isoformat()
    log.info("%s cycle skipped: %s", cycle.capitalize(), reason)
    return CycleResult(
        cycle=cycle,
        status="skipped",
        started_at=now,
        finished_at=now,
        reason=reason,
        period_key=period_key,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class CronOrchestrator:
    def __init__(
        self,
        *,
        engine: HealthCheckEngine | None = None,
        event_log: EventLog | None = None,
        archive: ArchiveManager | None = None,
        dispatcher: AlertDispatcher | None = None,
        analyzer: TrendAnalyzer | None = None,
        ledger: RunLedger | None = None,
        now_fn: Callable[[], datetime] = _now_utc,
    ):
        self.now_fn = now_fn
        self.engine = engine or HealthCheckEngine()
        self.event_log = event_log or EventLog(health_cache=HealthStateCache())
        self.archive = archive or ArchiveManager(self.event_log)
        self.dispatcher = dispatcher or AlertDispatcher()
        self.analyzer = analyzer or TrendAnalyzer(self.event_log, self.archive, now_fn=now_fn)
        self.ledger = ledger or RunLedger()

    def _now(self) -> datetime:
        return _as_utc(self.now_fn())

    @staticmethod
    def _run_step(result: CycleResult, name: str, fn: Callable[[], Any]) -> bool:
        try:
            value = fn()
        except Exception as exc:
            log.error("%s cycle step %r failed", result.cycle, name, exc_info=True)
            result.record(name, f"failed: {type(exc).__name__}: {exc}", failed=True)
            return False
        result.record(name, value)
        return True

    def _settle_claim(self, result: CycleResult) -> None:
        if result.failed_steps:
            log.warning(
                "%s cycle %s finished with failures (%s); releasing claim",
                result.cycle,
                result.period_key,
                ", ".join(result.failed_steps),
            )
            self.ledger.release(result.period_key)
        else:
            self.ledger.complete(result.period_key, result.status)

    # ------------------------------------------------------------------
    # Hourly
    # ------------------------------------------------------------------

    def run_hourly(
        self,
        *,
        source_address: str = "unknown",
        caller_key_fingerprint: str = "no-key",
        mode: str = MODE_READ_ONLY,
    ) -> dict[str, Any]:
        """Health check, then append, then dispatch. Log write failures propagate."""
        report = self.engine.run(mode)
        entry = LogEntry.from_report(
            report,
            source_address=source_address,
            caller_key_fingerprint=caller_key_fingerprint,
        )
        stored, total = self.event_log.record(entry)

        level = alert_level_for(report.overall)
        alert = self.dispatcher.dispatch(
            level,
            f"Self-repair check: {report.overall}",
            {
                "overall": report.overall,
                "mode": report.mode,
                "entry_id": stored.id,
                "checks": {name: check.message for name, check in report.checks.items()},
            },
        )
        return {
            "status": "ok",
            "report": report.as_dict(),
            "entry": stored.as_dict(),
            "log_size": total,
            "alert": alert.as_dict(),
        }

    # ------------------------------------------------------------------
    # Daily
    # ------------------------------------------------------------------

    def run_daily(
        self,
        *,
        now: datetime | None = None,
        force: bool = False,
        finding_codes: Iterable[str] = (),
    ) -> CycleResult:
        current = _as_utc(now) if now is not None else self._now()
        if not force and not should_run_daily(current):
            return _skipped("daily", f"current hour {current.hour} is not {config.DAILY_HOUR} UTC")

        key = daily_key(current.date())
        if not self.ledger.claim(key, now=current):
            return _skipped("daily", "already ran for this period", key)

        result = CycleResult(cycle="daily", started_at=current.isoformat(), period_key=key)
        codes = tuple(finding_codes)

        # Snapshot strictly before prune; a failed snapshot skips the prune.
        snapshot_ok = self._run_step(result, "archive_snapshot", lambda: self._snapshot(current))
        self._run_step(result, "daily_summary", lambda: self._daily_summary(current, codes))
        if snapshot_ok:
            self._run_step(result, "prune", lambda: {"dropped": self.event_log.prune()})
        else:
            result.record("prune", "skipped: snapshot failed")
        self._run_step(
            result,
            "archive_cleanup",
            lambda: {"deleted": self.archive.cleanup_older_than(config.RETENTION_DAYS, now=current)},
        )
        if should_run_weekly(current):
            if self._run_step(result, "weekly", lambda: self.run_weekly(now=current, force=True).as_dict()):
                weekly = result.results["weekly"]
                if weekly["status"] in {"failed", "partial"}:
                    result.record("weekly", weekly, failed=True)

        result.finish()
        self._settle_claim(result)
        log.info("Daily cycle %s: %s", key, result.status)
        return result

    def _snapshot(self, now: datetime) -> dict[str, Any]:
        path = self.archive.snapshot_if_missing(now)
        return {"created": path is not None, "file": path.name if path else ""}

    def _daily_summary(self, now: datetime, finding_codes: tuple[str, ...]) -> dict[str, Any]:
        trend = self.analyzer.daily_trend(config.TREND_DAYS, now=now)
        summary = self.analyzer.last_24h(now=now)
        level = summary_level(summary)
        alert = self.dispatcher.dispatch(
            level,
            daily_summary_subject(now),
            {
                "html": daily_summary_html(summary, trend, finding_codes=finding_codes, now=now),
                "window": "last 24h",
                "totals": summary.as_dict(),
                "trend": [point.as_dict() for point in trend],
            },
        )
        return {
            "level": level,
            "totals": summary.as_dict(),
            "trend": [point.as_dict() for point in trend],
            "alert": alert.as_dict(),
        }

    # ------------------------------------------------------------------
    # Weekly
    # ------------------------------------------------------------------

    def run_weekly(self, *, now: datetime | None = None, force: bool = False) -> CycleResult:
        current = _as_utc(now) if now is not None else self._now()
        if not force and not should_run_weekly(current):
            return _skipped("weekly", f"today is not {config.WEEKLY_DAY}")

        key = weekly_key(current.date())
        if not self.ledger.claim(key, now=current):
            return _skipped("weekly", "already ran for this period", key)

        result = CycleResult(cycle="weekly", started_at=current.isoformat(), period_key=key)
        self._run_step(result, "weekly_rollup", lambda: self._weekly_rollup(current))
        result.finish()
        self._settle_claim(result)
        log.info("Weekly cycle %s: %s", key, result.status)
        return result

    def _weekly_rollup(self, now: datetime) -> dict[str, Any]:
        rollup = self.analyzer.weekly_rollup(now=now)
        alert = self.dispatcher.dispatch(
            weekly_rollup_level(rollup),
            weekly_rollup_subject(now),
            {"html": weekly_rollup_html(rollup, now=now), "rollup": rollup.as_dict()},
        )
        return {"rollup": rollup.as_dict(), "alert": alert.as_dict()}

    # ------------------------------------------------------------------
    # Unified (single hourly trigger)
    # ------------------------------------------------------------------

    def run_unified(
        self,
        *,
        source_address: str = "unknown",
        caller_key_fingerprint: str = "no-key",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Hourly check, then the daily cycle (which nests the weekly one).

        A failed hourly append is re-raised after the daily cycle has had
        its chance to run.
        """
        current = _as_utc(now) if now is not None else self._now()
        hourly: dict[str, Any]
        hourly_error: SelfRepairError | None = None
        codes: list[str] = []
        try:
            hourly = self.run_hourly(
                source_address=source_address,
                caller_key_fingerprint=caller_key_fingerprint,
            )
            for check in hourly["report"]["checks"].values():
                codes.extend(f["code"] for f in check.get("findings", []))
        except SelfRepairError as exc:
            log.error("Hourly step of unified cron failed", exc_info=True)
            hourly = {"status": "error", "message": str(exc)}
            hourly_error = exc

        daily = self.run_daily(now=current, finding_codes=codes)
        if hourly_error is not None:
            raise hourly_error
        return {
            "status": "ok",
            "timestamp": current.isoformat(),
            "hour": current.hour,
            "ran_daily": daily.ran,
            "hourly": hourly,
            "daily": daily.as_dict(),
        }


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_default_orchestrator: CronOrchestrator | None = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> CronOrchestrator:
    global _default_orchestrator
    with _orchestrator_lock:
        if _default_orchestrator is None:
            _default_orchestrator = CronOrchestrator()
        return _default_orchestrator
