"""Daily trend series and week-over-week rollups over the event log.

Everything here is derived on demand from the active log and, for days the
active window no longer covers, the daily archive snapshots.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import config
from monitoring._base import LogEntry, _now_utc, normalize_level
from monitoring.archive import ArchiveManager
from monitoring.event_log import EventLog
from utils import parse_timestamp

log = logging.getLogger(__name__)

_ROLLUP_FIELDS = ("total", "ok_count", "warn_count", "error_count", "success_rate")


def success_rate(ok_count: int, total: int) -> int:
    """``round(ok / total * 100)`` with halves rounded up; 0 for an empty bucket."""
    if total <= 0:
        return 0
    rate = (200 * ok_count + total) // (2 * total)
    return max(0, min(100, rate))


def classify(overall: str) -> str | None:
    try:
        level = normalize_level(overall)
    except ValueError:
        return None
    return "ok" if level == "info" else level


@dataclass(frozen=True)
class BucketSummary:
    total: int = 0
    ok_count: int = 0
    warn_count: int = 0
    error_count: int = 0
    success_rate: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class TrendPoint:
    date: str
    error_count: int
    warn_count: int
    ok_count: int
    success_rate: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WeeklyRollup:
    this_week: BucketSummary
    last_week: BucketSummary
    delta: dict[str, int]
    confidence: int
    confidence_change: int
    window_start: str
    window_end: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "this_week": self.this_week.as_dict(),
            "last_week": self.last_week.as_dict(),
            "delta": dict(self.delta),
            "confidence": self.confidence,
            "confidence_change": self.confidence_change,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }


def summarize(entries: Iterable[LogEntry]) -> BucketSummary:
    counts = {"ok": 0, "warn": 0, "error": 0}
    for entry in entries:
        category = classify(entry.overall)
        if category is None:
            log.debug("Ignoring log entry %s with unknown overall %r", entry.id, entry.overall)
            continue
        counts[category] += 1
    total = sum(counts.values())
    return BucketSummary(
        total=total,
        ok_count=counts["ok"],
        warn_count=counts["warn"],
        error_count=counts["error"],
        success_rate=success_rate(counts["ok"], total),
    )


def diff_summaries(current: BucketSummary, previous: BucketSummary) -> dict[str, int]:
    return {name: getattr(current, name) - getattr(previous, name) for name in _ROLLUP_FIELDS}


class TrendAnalyzer:
    def __init__(
        self,
        event_log: EventLog,
        archive: ArchiveManager | None = None,
        *,
        now_fn: Callable[[], datetime] = _now_utc,
    ):
        self.event_log = event_log
        self.archive = archive
        self.now_fn = now_fn

    def _now(self, now: datetime | None = None) -> datetime:
        now = self.now_fn() if now is None else now
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    # ------------------------------------------------------------------
    # Entry collection
    # ------------------------------------------------------------------

    def collect(self, since: datetime) -> list[tuple[datetime, LogEntry]]:
        """Timestamped entries at or after ``since`` from the log and, if needed, snapshots."""
        active = self._timestamped(self.event_log.read_all())
        merged: dict[Any, tuple[datetime, LogEntry]] = {}
        for stamp, entry in active:
            merged[_entry_key(entry)] = (stamp, entry)

        oldest_active = min((stamp for stamp, _ in active), default=None)
        if self.archive is not None and (oldest_active is None or oldest_active > since):
            for day in self.archive.list_snapshots():
                if day < since.date():
                    continue
                for stamp, entry in self._timestamped(self.archive.load_snapshot(day)):
                    merged.setdefault(_entry_key(entry), (stamp, entry))

        rows = [row for row in merged.values() if row[0] >= since]
        rows.sort(key=lambda row: row[0])
        return rows

    @staticmethod
    def _timestamped(entries: Iterable[LogEntry]) -> list[tuple[datetime, LogEntry]]:
        rows = []
        for entry in entries:
            stamp = parse_timestamp(entry.time)
            if stamp is None:
                continue
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=timezone.utc)
            rows.append((stamp.astimezone(timezone.utc), entry))
        return rows

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def daily_trend(self, days: int | None = None, *, now: datetime | None = None) -> list[TrendPoint]:
        """One point per UTC day, oldest first, ending today."""
        span = max(1, int(days or config.TREND_DAYS))
        now = self._now(now)
        first_day = now.date() - timedelta(days=span - 1)
        since = datetime.combine(first_day, datetime.min.time(), tzinfo=timezone.utc)

        buckets: dict[date, list[LogEntry]] = {
            first_day + timedelta(days=offset): [] for offset in range(span)
        }
        for stamp, entry in self.collect(since):
            bucket = buckets.get(stamp.date())
            if bucket is not None:
                bucket.append(entry)

        points = []
        for day, entries in buckets.items():
            summary = summarize(entries)
            points.append(
                TrendPoint(
                    date=day.isoformat(),
                    error_count=summary.error_count,
                    warn_count=summary.warn_count,
                    ok_count=summary.ok_count,
                    success_rate=summary.success_rate,
                )
            )
        return points

    def recent_entries(self, days: int = 7, *, now: datetime | None = None) -> list[LogEntry]:
        since = self._now(now) - timedelta(days=max(1, int(days)))
        return [entry for _stamp, entry in self.collect(since)]

    def last_24h(self, *, now: datetime | None = None) -> BucketSummary:
        since = self._now(now) - timedelta(hours=24)
        return summarize(entry for _stamp, entry in self.collect(since))

    def weekly_rollup(self, *, now: datetime | None = None) -> WeeklyRollup:
        now = self._now(now)
        this_start = now - timedelta(days=7)
        last_start = now - timedelta(days=14)

        this_week: list[LogEntry] = []
        last_week: list[LogEntry] = []
        for stamp, entry in self.collect(last_start):
            if stamp >= now:
                continue
            (this_week if stamp >= this_start else last_week).append(entry)

        current = summarize(this_week)
        previous = summarize(last_week)
        delta = diff_summaries(current, previous)
        return WeeklyRollup(
            this_week=current,
            last_week=previous,
            delta=delta,
            confidence=max(0, min(100, current.success_rate)),
            confidence_change=delta["success_rate"],
            window_start=last_start.isoformat(),
            window_end=now.isoformat(),
        )


def _entry_key(entry: LogEntry) -> Any:
    return entry.id if entry.id else (entry.time, entry.overall, entry.mode)
