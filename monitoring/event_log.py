"""Durable, size-bounded, append-only store of health-check log entries.

The active log is a single JSON array (oldest first). Every writer rewrites the
whole array through ``atomic_write_json`` so readers never see a partial file.
Across processes the last writer wins; within one process a lock serializes
read-modify-write cycles.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

import config
from monitoring._base import LogEntry, StorageError, _now_utc, alert_level_for, status_symbol
from utils import atomic_write_json, load_json

log = logging.getLogger(__name__)


class HealthStateCache:
    """Single-slot projection of the most recent health run.

    Updated on every append, independent of whether an alert was sent.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path or config.LAST_HEALTH_FILE)

    def update(self, entry: LogEntry) -> dict[str, Any]:
        level = alert_level_for(entry.overall) if entry.overall else "info"
        data = {
            "overall": entry.overall,
            "level": level,
            "message": f"{status_symbol(entry.overall)} health check {entry.overall or 'unknown'}",
            "time": _now_utc().isoformat(),
            "entry_id": entry.id,
            "entry_time": entry.time,
        }
        atomic_write_json(self.path, data)
        return data

    def read(self) -> dict[str, Any] | None:
        data = load_json(self.path, {})
        return data if isinstance(data, dict) and data else None


class EventLog:
    def __init__(
        self,
        path: Path | None = None,
        *,
        max_active: int | None = None,
        append_limit: int | None = None,
        health_cache: HealthStateCache | None = None,
    ):
        self.path = Path(path or config.ACTIVE_LOG_FILE)
        self.max_active = max(1, int(config.MAX_ACTIVE if max_active is None else max_active))
        self.append_limit = max(self.max_active, int(self.max_active if append_limit is None else append_limit))
        self.health_cache = health_cache
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Raw storage
    # ------------------------------------------------------------------

    def _read_rows(self) -> list[dict[str, Any]]:
        """Read the active log; an unreadable file is reported as StorageError."""
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageError(f"cannot read event log {self.path}: {exc}") from exc
        if not isinstance(payload, list):
            raise StorageError(f"event log {self.path} is not a JSON array")
        return [row for row in payload if isinstance(row, dict)]

    def _read_rows_or_empty(self) -> list[dict[str, Any]]:
        try:
            return self._read_rows()
        except StorageError:
            log.warning("Event log unreadable, treating as empty", exc_info=True)
            self._quarantine()
            return []

    def _quarantine(self) -> None:
        """Move an unreadable log aside so the next write does not destroy it."""
        if not self.path.exists():
            return
        aside = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        try:
            os.replace(self.path, aside)
            log.warning("Moved unreadable event log to %s", aside)
        except OSError:
            log.warning("Could not move unreadable event log aside", exc_info=True)

    def _write_rows(self, rows: list[dict[str, Any]]) -> None:
        try:
            atomic_write_json(self.path, rows)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"cannot write event log {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, entry: LogEntry) -> tuple[LogEntry, int]:
        """Append one entry, assigning a monotonic id. Returns (stored entry, total)."""
        with self._lock:
            rows = self._read_rows_or_empty()
            last_id = 0
            for row in rows:
                try:
                    last_id = max(last_id, int(row.get("id", 0)))
                except (TypeError, ValueError):
                    continue
            entry_id = max(last_id + 1, int(time.time() * 1000))
            stored = replace(entry, id=entry_id)
            rows.append(stored.as_dict())

            overflow = len(rows) - self.append_limit
            if overflow > 0:
                del rows[:overflow]
                log.info("Event log trimmed %d oldest entries on append", overflow)

            self._write_rows(rows)
            total = len(rows)

        if self.health_cache is not None:
            try:
                self.health_cache.update(stored)
            except OSError:
                log.warning("Failed to update last health state", exc_info=True)
        return stored, total

    def append(self, entry: LogEntry) -> int:
        _stored, total = self.record(entry)
        return total

    def read_all(self, *, newest_first: bool = False) -> list[LogEntry]:
        rows = self._read_rows_or_empty_readonly()
        entries = [LogEntry.from_dict(row) for row in rows]
        if newest_first:
            entries.reverse()
        return entries

    def _read_rows_or_empty_readonly(self) -> list[dict[str, Any]]:
        # Readers never move files; only the append path quarantines.
        try:
            return self._read_rows()
        except StorageError:
            log.warning("Event log unreadable on read", exc_info=True)
            return []

    def count(self) -> int:
        return len(self._read_rows_or_empty_readonly())

    def prune(self, max_active: int | None = None) -> int:
        """Trim to the newest ``max_active`` entries. Returns how many were dropped."""
        limit = max(0, int(self.max_active if max_active is None else max_active))
        with self._lock:
            rows = self._read_rows()
            overflow = len(rows) - limit
            if overflow <= 0:
                return 0
            self._write_rows(rows[overflow:])
        log.info("Pruned %d old active log entries (kept %d)", overflow, limit)
        return overflow
