"""Per-period idempotency keys for the cron entry points.

A period is claimed with a single ``INSERT OR IGNORE``: exactly one caller
sees ``rowcount == 1`` for a given key, which gives compare-and-set semantics
without a lock service.
"""
from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime
from pathlib import Path

import config
import db_pool
from monitoring._base import StorageError, _now_utc

log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cron_runs (
    period_key TEXT PRIMARY KEY,
    claimed_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    finished_at TEXT NOT NULL DEFAULT ''
)
"""


def daily_key(day: date) -> str:
    return f"daily:{day.isoformat()}"


def weekly_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"weekly:{year}-W{week:02d}"


class RunLedger:
    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path or config.RUN_LEDGER_DB

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = db_pool.sqlite_connect(self.db_path)
            conn.execute(_SCHEMA)
            return conn
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open run ledger {self.db_path}: {exc}") from exc

    def claim(self, period_key: str, *, now: datetime | None = None) -> bool:
        """Claim a period. True only for the first caller."""
        claimed_at = (now or _now_utc()).isoformat()
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO cron_runs (period_key, claimed_at) VALUES (?, ?)",
                    (period_key, claimed_at),
                )
            won = cur.rowcount == 1
        except sqlite3.Error as exc:
            raise StorageError(f"cannot claim {period_key}: {exc}") from exc
        finally:
            conn.close()
        if not won:
            log.info("Period %s already claimed; skipping", period_key)
        return won

    def complete(self, period_key: str, status: str = "done") -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "UPDATE cron_runs SET status = ?, finished_at = ? WHERE period_key = ?",
                    (status, _now_utc().isoformat(), period_key),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"cannot complete {period_key}: {exc}") from exc
        finally:
            conn.close()

    def release(self, period_key: str) -> None:
        """Drop a claim so a later trigger in the same period can retry."""
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM cron_runs WHERE period_key = ?", (period_key,))
        except sqlite3.Error as exc:
            raise StorageError(f"cannot release {period_key}: {exc}") from exc
        finally:
            conn.close()

    def status(self, period_key: str) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT status FROM cron_runs WHERE period_key = ?", (period_key,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot read {period_key}: {exc}") from exc
        finally:
            conn.close()
        return str(row[0]) if row else None

    def has_run(self, period_key: str) -> bool:
        return self.status(period_key) is not None
