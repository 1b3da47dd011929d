"""Daily point-in-time snapshots of the active event log, with retention cleanup."""
from __future__ import annotations

import json
import logging
import os
import re
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import config
from monitoring._base import LogEntry, StorageError, _now_utc, utc_day
from monitoring.event_log import EventLog

log = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "selfrepair-log-"
_SNAPSHOT_RE = re.compile(r"^selfrepair-log-(\d{4}-\d{2}-\d{2})\.json$")


def snapshot_key(day: date | datetime | str | None = None) -> str:
    """Canonical key (UTC calendar day, ``YYYY-MM-DD``) for a snapshot."""
    if day is None:
        return _now_utc().date().isoformat()
    if isinstance(day, datetime):
        resolved = utc_day(day)
    elif isinstance(day, date):
        resolved = day
    else:
        resolved = utc_day(day)
    if resolved is None:
        raise ValueError(f"cannot derive a snapshot key from {day!r}")
    return resolved.isoformat()


class ArchiveManager:
    def __init__(self, event_log: EventLog, archive_dir: Path | None = None):
        self.event_log = event_log
        self.archive_dir = Path(archive_dir or config.ARCHIVE_DIR)

    def snapshot_path(self, key: str) -> Path:
        return self.archive_dir / f"{SNAPSHOT_PREFIX}{key}.json"

    def has_snapshot(self, day: date | datetime | str | None = None) -> bool:
        return self.snapshot_path(snapshot_key(day)).exists()

    def snapshot_if_missing(self, day: date | datetime | str | None = None) -> Path | None:
        """Copy the current active log into today's snapshot unless one exists.

        Must run before any same-cycle prune. Returns the new snapshot path, or
        None when a snapshot for that day already existed (first writer wins).
        """
        key = snapshot_key(day)
        target = self.snapshot_path(key)
        if target.exists():
            log.debug("Snapshot %s already exists", target.name)
            return None

        rows = [entry.as_dict() for entry in self.event_log.read_all()]
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        try:
            tmp_path.write_text(json.dumps(rows, indent=2), encoding="utf-8")
            try:
                # link() refuses to overwrite, so a racing writer cannot replace
                # the first snapshot of the day.
                os.link(tmp_path, target)
            except FileExistsError:
                log.info("Snapshot %s was created concurrently; keeping the first", target.name)
                return None
        except OSError as exc:
            raise StorageError(f"cannot write snapshot {target}: {exc}") from exc
        finally:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                log.debug("Failed removing snapshot temp file %s", tmp_path, exc_info=True)

        log.info("Archived daily snapshot %s (%d entries)", target.name, len(rows))
        return target

    def list_snapshots(self) -> list[date]:
        if not self.archive_dir.is_dir():
            return []
        days: list[date] = []
        for path in self.archive_dir.iterdir():
            match = _SNAPSHOT_RE.match(path.name)
            if not match:
                continue
            try:
                days.append(date.fromisoformat(match.group(1)))
            except ValueError:
                continue
        return sorted(days)

    def load_snapshot(self, day: date | datetime | str) -> list[LogEntry]:
        path = self.snapshot_path(snapshot_key(day))
        if not path.exists():
            return []
        try:
            payload: Any = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            log.warning("Snapshot %s unreadable, skipping", path.name, exc_info=True)
            return []
        if not isinstance(payload, list):
            return []
        return [LogEntry.from_dict(row) for row in payload if isinstance(row, dict)]

    def cleanup_older_than(self, retention_days: int | None = None, *, now: datetime | None = None) -> int:
        """Delete snapshots dated before ``now - retention_days``.

        Files whose name does not carry a valid date are left alone.
        """
        days = max(0, int(config.RETENTION_DAYS if retention_days is None else retention_days))
        current = now or _now_utc()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        cutoff = current.astimezone(timezone.utc).date() - timedelta(days=days)

        if not self.archive_dir.is_dir():
            return 0

        deleted = 0
        for path in sorted(self.archive_dir.iterdir()):
            match = _SNAPSHOT_RE.match(path.name)
            if not match:
                continue
            try:
                snapshot_day = date.fromisoformat(match.group(1))
            except ValueError:
                log.debug("Skipping snapshot with malformed date key: %s", path.name)
                continue
            if snapshot_day >= cutoff:
                continue
            try:
                path.unlink()
                deleted += 1
            except OSError:
                log.warning("Failed to delete old snapshot %s", path.name, exc_info=True)

        if deleted:
            log.info("Cleaned %d archive snapshot(s) older than %d days", deleted, days)
        return deleted
