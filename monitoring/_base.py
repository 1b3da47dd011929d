"""Shared types, constants, and helpers for the self-repair monitors."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Any, Literal, Mapping, cast

from utils import parse_timestamp

log = logging.getLogger(__name__)

Severity = Literal["ok", "warn", "error"]
AlertLevel = Literal["info", "warn", "error"]
Mode = Literal["read-only", "dry-run", "repair"]

MODE_READ_ONLY: Mode = "read-only"
MODE_DRY_RUN: Mode = "dry-run"
MODE_REPAIR: Mode = "repair"
MODES: tuple[Mode, ...] = (MODE_READ_ONLY, MODE_DRY_RUN, MODE_REPAIR)

PROBE_CODEBASE = "codebase"
PROBE_ENVIRONMENT = "environment"
PROBE_SDK = "sdk"

_SEVERITY_RANK = {"ok": 0, "info": 0, "warn": 1, "error": 2}
_LEVEL_ALIASES = {"warning": "warn", "critical": "error", "fatal": "error"}

# Display only. Severity is never re-parsed from rendered text.
_STATUS_SYMBOL = {"ok": "✅", "info": "✅", "warn": "⚠️", "error": "❌"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SelfRepairError(Exception):
    """Base class for self-repair failures."""


class ConfigurationError(SelfRepairError):
    """Missing or malformed required settings."""


class ProbeFailure(SelfRepairError):
    """An external dependency was unreachable or answered unexpectedly."""


class StorageError(SelfRepairError):
    """A log, archive, or cache file could not be read or written."""


class RewriteError(SelfRepairError):
    """A patch could not be applied to one file."""


# ---------------------------------------------------------------------------
# Severity helpers
# ---------------------------------------------------------------------------

def normalize_level(raw: str) -> str:
    level = str(raw or "").strip().lower()
    level = _LEVEL_ALIASES.get(level, level)
    if level not in _SEVERITY_RANK:
        raise ValueError(f"unsupported severity: {raw!r}")
    return level


def severity_rank(level: str) -> int:
    return _SEVERITY_RANK[normalize_level(level)]


def alert_level_for(overall: str) -> AlertLevel:
    """Map a report severity onto the alert vocabulary (ok -> info)."""
    level = normalize_level(overall)
    return cast(AlertLevel, "info" if level in {"ok", "info"} else level)


def status_symbol(status: str) -> str:
    return _STATUS_SYMBOL.get(str(status or "").lower(), "⚪")


def worst(levels: list[str]) -> Severity:
    if not levels:
        return "ok"
    rank = max(severity_rank(level) for level in levels)
    return cast(Severity, {0: "ok", 1: "warn", 2: "error"}[rank])


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def utc_day(value: Any) -> date | None:
    """Calendar day (UTC) of a timestamp in any accepted shape."""
    dt = value if isinstance(value, datetime) else parse_timestamp(value)
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date()


# ---------------------------------------------------------------------------
# Probe results and reports
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeFinding:
    code: str
    message: str
    severity: Severity = "warn"
    fixable: bool = False
    detail: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "fixable": self.fixable,
            **({"detail": dict(self.detail)} if self.detail else {}),
        }


@dataclass(frozen=True)
class ProbeResult:
    name: str
    status: Severity
    message: str
    findings: tuple[ProbeFinding, ...] = ()
    detail: Mapping[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "ok"

    @property
    def symbol(self) -> str:
        return status_symbol(self.status)

    def as_dict(self) -> dict[str, Any]:
        return {
            **dict(self.detail),
            "status": self.status,
            "symbol": self.symbol,
            "healthy": self.healthy,
            "message": self.message,
            "findings": [f.as_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class Report:
    timestamp: str
    mode: Mode
    checks: Mapping[str, ProbeResult]
    overall: Severity
    repair: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "checks", MappingProxyType(dict(self.checks)))

    def message_for(self, name: str) -> str:
        check = self.checks.get(name)
        return check.message if check else ""

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "mode": self.mode,
            "checks": {name: check.as_dict() for name, check in self.checks.items()},
            "overall": self.overall,
        }
        if self.repair is not None:
            payload["repair"] = dict(self.repair)
        return payload


@dataclass(frozen=True)
class LogEntry:
    id: int
    time: str
    overall: str
    mode: str
    source_address: str = "unknown"
    caller_key_fingerprint: str = "no-key"
    sdk: str = ""
    environment: str = ""
    codebase: str = ""

    @classmethod
    def from_report(
        cls,
        report: Report,
        *,
        entry_id: int = 0,
        source_address: str = "unknown",
        caller_key_fingerprint: str = "no-key",
    ) -> "LogEntry":
        return cls(
            id=entry_id,
            time=report.timestamp,
            overall=report.overall,
            mode=report.mode,
            source_address=source_address or "unknown",
            caller_key_fingerprint=caller_key_fingerprint or "no-key",
            sdk=report.message_for(PROBE_SDK),
            environment=report.message_for(PROBE_ENVIRONMENT),
            codebase=report.message_for(PROBE_CODEBASE),
        )

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "LogEntry":
        try:
            entry_id = int(row.get("id", 0))
        except (TypeError, ValueError):
            entry_id = 0
        return cls(
            id=entry_id,
            time=str(row.get("time", "")),
            overall=str(row.get("overall", "")),
            mode=str(row.get("mode", "")),
            source_address=str(row.get("source_address", "unknown")),
            caller_key_fingerprint=str(row.get("caller_key_fingerprint", "no-key")),
            sdk=str(row.get("sdk", "")),
            environment=str(row.get("environment", "")),
            codebase=str(row.get("codebase", "")),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "time": self.time,
            "overall": self.overall,
            "mode": self.mode,
            "source_address": self.source_address,
            "caller_key_fingerprint": self.caller_key_fingerprint,
            "sdk": self.sdk,
            "environment": self.environment,
            "codebase": self.codebase,
        }
