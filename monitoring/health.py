"""Health check engine: thin orchestrator over the probe agents.

Probe implementations live in monitoring/agents/*.py. This module runs them
in isolation, optionally runs the repair engine, and folds everything into
one immutable Report.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Mapping

import config
from monitoring._base import (
    MODE_DRY_RUN,
    MODE_READ_ONLY,
    MODES,
    PROBE_CODEBASE,
    PROBE_ENVIRONMENT,
    PROBE_SDK,
    Mode,
    ProbeFinding,
    ProbeResult,
    Report,
    Severity,
    _now_utc,
)
from monitoring.remediation import RepairEngine, RepairResult

log = logging.getLogger(__name__)

ProbeFn = Callable[[], ProbeResult]

# Report order of the probes
PROBE_ORDER = (PROBE_CODEBASE, PROBE_ENVIRONMENT, PROBE_SDK)

_MODE_ALIASES = {
    "readonly": MODE_READ_ONLY,
    "read_only": MODE_READ_ONLY,
    "dryrun": MODE_DRY_RUN,
    "dry_run": MODE_DRY_RUN,
}


def normalize_mode(raw: str | None) -> Mode:
    mode = str(raw or MODE_READ_ONLY).strip().lower()
    mode = _MODE_ALIASES.get(mode, mode)
    if mode not in MODES:
        raise ValueError(f"unsupported mode: {raw!r}")
    return mode  # type: ignore[return-value]


def derive_overall(checks: Mapping[str, ProbeResult], repair: RepairResult | None = None) -> Severity:
    """error if the live probe is unhealthy; warn on any other finding or fix; else ok."""
    sdk = checks.get(PROBE_SDK)
    if sdk is None or not sdk.healthy:
        return "error"
    for name in (PROBE_ENVIRONMENT, PROBE_CODEBASE):
        check = checks.get(name)
        if check is None or check.findings or not check.healthy:
            return "warn"
    if repair is not None and repair.fixes:
        return "warn"
    return "ok"


def _crash_result(name: str, exc: BaseException) -> ProbeResult:
    """Structured stand-in for a probe that raised."""
    severity: Severity = "error" if name == PROBE_SDK else "warn"
    message = f"{name} probe crashed: {type(exc).__name__}"
    return ProbeResult(
        name=name,
        status=severity,
        message=message,
        findings=(ProbeFinding(code=f"{name}.probe_crashed", message=message, severity=severity),),
    )


class HealthCheckEngine:
    def __init__(
        self,
        *,
        probes: Mapping[str, ProbeFn] | None = None,
        repair_engine: RepairEngine | None = None,
        source_dir: Path | None = None,
        env_file: Path | None = None,
    ):
        self.source_dir = Path(source_dir or config.SOURCE_DIR)
        self.env_file = Path(env_file or config.ENV_FILE)
        self.probes: dict[str, ProbeFn] = dict(probes) if probes is not None else self._default_probes()
        self.repair_engine = repair_engine or RepairEngine(
            source_dir=self.source_dir, env_file=self.env_file
        )

    def _default_probes(self) -> dict[str, ProbeFn]:
        from monitoring.agents.codebase_scan import scan_codebase
        from monitoring.agents.environment import validate_environment
        from monitoring.agents.sdk_probe import probe_generative_service

        return {
            PROBE_CODEBASE: lambda: scan_codebase(self.source_dir),
            PROBE_ENVIRONMENT: lambda: validate_environment(self.env_file),
            PROBE_SDK: probe_generative_service,
        }

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run(self, mode: str = MODE_READ_ONLY) -> Report:
        resolved = normalize_mode(mode)

        repair: RepairResult | None = None
        if resolved != MODE_READ_ONLY:
            repair = self._run_repair(dry_run=(resolved == MODE_DRY_RUN))

        checks = {name: self.run_probe(name) for name in PROBE_ORDER}
        overall = derive_overall(checks, repair)
        report = Report(
            timestamp=_now_utc().isoformat(),
            mode=resolved,
            checks=checks,
            overall=overall,
            repair=repair.as_dict() if repair is not None else None,
        )
        log.info(
            "Health check (%s): overall=%s %s",
            resolved,
            overall,
            " ".join(f"{name}={check.status}" for name, check in checks.items()),
        )
        return report

    def run_probe(self, name: str) -> ProbeResult:
        probe = self.probes.get(name)
        if probe is None:
            return _crash_result(name, LookupError(name))
        try:
            return probe()
        except Exception as exc:
            log.error("%s probe failed", name, exc_info=True)
            return _crash_result(name, exc)

    def _run_repair(self, *, dry_run: bool) -> RepairResult:
        try:
            return self.repair_engine.apply(dry_run=dry_run)
        except Exception as exc:
            log.error("Repair engine failed", exc_info=True)
            result = RepairResult(dry_run=dry_run)
            result.notes.append(f"repair aborted: {type(exc).__name__}: {exc}")
            return result


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_default_engine: HealthCheckEngine | None = None
_engine_lock = threading.Lock()


def get_health_engine() -> HealthCheckEngine:
    global _default_engine
    with _engine_lock:
        if _default_engine is None:
            _default_engine = HealthCheckEngine()
        return _default_engine

