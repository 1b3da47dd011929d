"""Monitoring package: health checks, repair, event log, alerts, and cron cycles."""

from monitoring._base import (  # noqa: F401
    MODE_DRY_RUN,
    MODE_READ_ONLY,
    MODE_REPAIR,
    ConfigurationError,
    LogEntry,
    ProbeFailure,
    ProbeFinding,
    ProbeResult,
    Report,
    RewriteError,
    SelfRepairError,
    StorageError,
    severity_rank,
)

from monitoring.event_log import EventLog, HealthStateCache  # noqa: F401
from monitoring.archive import ArchiveManager, snapshot_key  # noqa: F401
from monitoring.alerts import AlertDispatcher, AlertRecord, build_provider  # noqa: F401
from monitoring.remediation import RepairEngine, RepairResult  # noqa: F401

from monitoring.health import (  # noqa: F401
    HealthCheckEngine,
    derive_overall,
    get_health_engine,
)

from monitoring.trends import (  # noqa: F401
    BucketSummary,
    TrendAnalyzer,
    TrendPoint,
    WeeklyRollup,
    summarize,
)

from monitoring.maintenance import (  # noqa: F401
    CronOrchestrator,
    CycleResult,
    get_orchestrator,
    should_run_daily,
    should_run_weekly,
)

__all__ = [
    "MODE_DRY_RUN",
    "MODE_READ_ONLY",
    "MODE_REPAIR",
    "AlertDispatcher",
    "AlertRecord",
    "ArchiveManager",
    "BucketSummary",
    "ConfigurationError",
    "CronOrchestrator",
    "CycleResult",
    "EventLog",
    "HealthCheckEngine",
    "HealthStateCache",
    "LogEntry",
    "ProbeFailure",
    "ProbeFinding",
    "ProbeResult",
    "RepairEngine",
    "RepairResult",
    "Report",
    "RewriteError",
    "SelfRepairError",
    "StorageError",
    "TrendAnalyzer",
    "TrendPoint",
    "WeeklyRollup",
    "build_provider",
    "derive_overall",
    "get_health_engine",
    "get_orchestrator",
    "severity_rank",
    "should_run_daily",
    "should_run_weekly",
    "snapshot_key",
    "summarize",
]
