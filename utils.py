import functools
import hashlib
import json
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

log = logging.getLogger(__name__)

_NUMERIC_TS_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def _coerce_unix_epoch(value: float) -> float:
    """Convert unix timestamps in ns/us/ms/sec to seconds."""
    abs_value = abs(value)
    if abs_value >= 1e17:
        return value / 1_000_000_000  # nanoseconds
    if abs_value >= 1e14:
        return value / 1_000_000  # microseconds
    if abs_value >= 1e11:
        return value / 1_000  # milliseconds
    return value  # seconds


def normalize_timestamp(value: Any) -> str:
    """Normalize a log-entry time to a timezone-aware UTC ISO-8601 string.

    Accepts datetimes, ISO strings (``Z`` suffix allowed) and unix epochs in
    any unit. Unparseable input is returned unchanged; empty input is "now".
    """
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return datetime.now(timezone.utc).isoformat()
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            if not _NUMERIC_TS_RE.fullmatch(raw):
                return raw
            try:
                dt = datetime.fromtimestamp(_coerce_unix_epoch(float(raw)), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                return raw

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse any timestamp shape ``normalize_timestamp`` accepts; None if unparseable."""
    if value is None or value == "":
        return None
    normalized = normalize_timestamp(value)
    try:
        return datetime.fromisoformat(normalized.replace("Z", "+00:00"))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def atomic_write(path: str | Path, payload: str | bytes) -> None:
    """Write a sibling temp file, fsync it, then rename over ``path``.

    Readers see either the old file or the new one. The temp file is removed
    if any step fails, and the original error is re-raised.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    data = payload.encode("utf-8") if isinstance(payload, str) else payload

    try:
        with open(tmp_path, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            log.debug("Failed removing temp file %s", tmp_path, exc_info=True)
        raise


def atomic_write_json(path: str | Path, data: Any, *, indent: int = 2) -> None:
    atomic_write(path, json.dumps(data, indent=indent, default=str))


def load_json(path: str | Path, default: Any = None) -> Any:
    target = Path(path)
    if not target.exists():
        return {} if default is None else default
    try:
        return json.loads(target.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError):
        log.warning("Unreadable JSON file %s, using default", target)
        return {} if default is None else default


# ---------------------------------------------------------------------------
# Credentials and text
# ---------------------------------------------------------------------------

def fingerprint_key(key: str) -> str:
    """One-way short fingerprint of a caller credential (never store the raw key)."""
    if not key:
        return "no-key"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def truncate(text: Any, limit: int) -> str:
    raw = str(text or "")
    if len(raw) <= limit:
        return raw
    return raw[: max(0, limit - 3)] + "..."


# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------

def track_latency(service: str, operation: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator that logs wall-clock latency of an outbound call.

    Usage::

        @track_latency("gemini", "generate")
        def generate_text(...):
            ...

    Latency is logged at DEBUG to the ``latency.<service>`` logger, including
    for calls that raise.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        op = operation or fn.__name__
        _logger = logging.getLogger(f"latency.{service}")

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            failed = False
            try:
                return fn(*args, **kwargs)
            except Exception:
                failed = True
                raise
            finally:
                ms = (time.monotonic() - start) * 1000
                _logger.debug("%s.%s latency=%.1fms%s", service, op, ms, " (failed)" if failed else "")

        return wrapper

    return decorator
