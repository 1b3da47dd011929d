import logging
import sqlite3
from pathlib import Path

log = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def _normalize_db_key(database: str | Path) -> str:
    raw = str(database)
    if raw == ":memory:" or raw.startswith("file:"):
        return raw
    return str(Path(raw).expanduser())


def sqlite_connect(database: str | Path, *, timeout: float = 10.0) -> sqlite3.Connection:
    """Open a short-lived sqlite connection with the shared pragmas applied.

    Callers open one connection per transaction and close it. WAL mode lets
    cron triggers in separate processes claim periods without blocking
    readers of the ledger.
    """
    db_key = _normalize_db_key(database)
    uri = db_key.startswith("file:")
    if db_key != ":memory:" and not uri:
        Path(db_key).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_key, timeout=timeout, uri=uri)
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    if db_key != ":memory:":
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.OperationalError:
            log.debug("WAL unavailable for %s; using default journal", db_key, exc_info=True)
    return conn
