import logging as _logging
import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent

load_dotenv(Path(os.getenv("SELFREPAIR_DOTENV", str(PROJECT_ROOT / ".env"))).expanduser())

_log = _logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    """Parse an integer env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float) -> float:
    """Parse a float env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Paths
DATA_DIR = Path(
    os.getenv("SELFREPAIR_DATA_DIR", str(PROJECT_ROOT / "logs"))
).expanduser()
LOG_DIR = Path(os.getenv("SELFREPAIR_LOG_DIR", str(DATA_DIR))).expanduser()
ACTIVE_LOG_FILE = DATA_DIR / "selfrepair-log.json"
ARCHIVE_DIR = DATA_DIR / "archive"
LAST_ALERT_FILE = DATA_DIR / "lastAlert.json"
LAST_DISPATCHED_FILE = DATA_DIR / "lastDispatched.json"
LAST_HEALTH_FILE = DATA_DIR / "lastHealth.json"
RUN_LEDGER_DB = DATA_DIR / "cron_runs.db"

# Target project inspected by the probes (the web app's own tree by default)
TARGET_ROOT = Path(
    os.getenv("SELFREPAIR_PROJECT_ROOT", os.getcwd())
).expanduser()
SOURCE_DIR = Path(
    os.getenv("SELFREPAIR_SOURCE_DIR", str(TARGET_ROOT / "src"))
).expanduser()
ENV_FILE = Path(
    os.getenv("SELFREPAIR_ENV_FILE", str(TARGET_ROOT / ".env.local"))
).expanduser()
PACKAGE_MANIFEST = Path(
    os.getenv("SELFREPAIR_PACKAGE_MANIFEST", str(TARGET_ROOT / "package.json"))
).expanduser()
PATCH_RULES_FILE = Path(
    os.getenv(
        "SELFREPAIR_PATCH_RULES",
        str(PROJECT_ROOT / "monitoring" / "patch_rules.yaml"),
    )
).expanduser()

# Event log retention
MAX_ACTIVE = _env_int("SELFREPAIR_MAX_ACTIVE", 1000, minimum=1)
APPEND_LIMIT = max(MAX_ACTIVE, _env_int("SELFREPAIR_APPEND_LIMIT", MAX_ACTIVE))
RETENTION_DAYS = _env_int("SELFREPAIR_RETENTION_DAYS", 30, minimum=1)

# Cron guards (UTC)
DAILY_HOUR = min(23, _env_int("SELFREPAIR_DAILY_HOUR", 0, minimum=0))
WEEKLY_DAY = os.getenv("SELFREPAIR_WEEKLY_DAY", "monday").strip().lower()
TREND_DAYS = _env_int("SELFREPAIR_TREND_DAYS", 7, minimum=1)

# Repair engine. Source rewrites stay preview-only unless explicitly enabled.
ALLOW_SOURCE_WRITES = _env_bool("SELFREPAIR_ALLOW_SOURCE_WRITES", False)
SCAN_EXTENSIONS = tuple(
    _env_list("SELFREPAIR_SCAN_EXTENSIONS", ".ts,.tsx,.js,.jsx,.mjs,.cjs")
)
SCAN_SKIP_DIRS = frozenset(
    _env_list("SELFREPAIR_SCAN_SKIP_DIRS", "node_modules,.git,.next,dist,build,__pycache__")
)
LEGACY_SDK_PACKAGE = "@google-ai/generativelanguage"
MODERN_SDK_PACKAGE = "@google/generative-ai"
MODERN_SDK_VERSION = os.getenv("SELFREPAIR_SDK_VERSION", "^0.24.1")

# Environment validation: (private, public) credential pairs; aliases by "|"
CREDENTIAL_PAIRS = [
    ("GOOGLE_API_KEY|GEMINI_API_KEY", "NEXT_PUBLIC_GOOGLE_API_KEY|NEXT_PUBLIC_GEMINI_API_KEY"),
]
REQUIRED_KEYS = _env_list("SELFREPAIR_REQUIRED_KEYS", "")
PLACEHOLDER_VALUE = "YOUR_API_KEY_HERE"

# Live probe
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_API_KEY", "")
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
PROBE_MODEL = os.getenv("SELFREPAIR_PROBE_MODEL", "gemini-1.5-flash").strip()
PROBE_PROMPT = "Return the word 'ok'."
PROBE_EXPECTED_TOKEN = "ok"
PROBE_TIMEOUT = _env_float("SELFREPAIR_PROBE_TIMEOUT", 20.0)
SUMMARY_MODEL = os.getenv("SELFREPAIR_SUMMARY_MODEL", "gemini-1.5-pro").strip()
ERROR_TRUNCATE = _env_int("SELFREPAIR_ERROR_TRUNCATE", 200, minimum=20)

# Alerts
ALERTS_PROVIDER = os.getenv("ALERTS_PROVIDER", "resend").strip().lower()
ALERTS_MIN_LEVEL = os.getenv("ALERTS_MIN_LEVEL", "warn").strip().lower()
ALERTS_TO = os.getenv("ALERTS_TO", "")
ALERTS_FROM = os.getenv("ALERTS_FROM", "Self-Repair <alerts@localhost>")
ALERTS_API_KEY = os.getenv("ALERTS_API_KEY", "") or os.getenv("RESEND_API_KEY", "")
ALERTS_WEBHOOK_URL = os.getenv("ALERTS_WEBHOOK_URL", "")
ALERTS_TIMEOUT = _env_float("ALERTS_TIMEOUT", 15.0)
RESEND_BASE_URL = os.getenv("RESEND_BASE_URL", "https://api.resend.com")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")

# Trigger surface
OPERATOR_KEY = os.getenv("ADMIN_ACCESS_KEY", "")
WEB_HOST = os.getenv("SELFREPAIR_WEB_HOST", "127.0.0.1")
WEB_PORT = _env_int("SELFREPAIR_WEB_PORT", 8080)

if not OPERATOR_KEY:
    _log.warning("ADMIN_ACCESS_KEY is empty; cron endpoints will reject every caller")
