import argparse
import json
import logging
import sys

import config
from monitoring._base import MODES, MODE_READ_ONLY, SelfRepairError

log = logging.getLogger("selfrepair")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(level: int = logging.INFO) -> None:
    config.LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.LOG_DIR / "selfrepair.log"),
        ],
    )


def preflight_checks() -> None:
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    config.ARCHIVE_DIR.mkdir(parents=True, exist_ok=True)
    if not config.SOURCE_DIR.is_dir():
        log.warning("Source directory %s not found; codebase scan will warn", config.SOURCE_DIR)
    if config.ALLOW_SOURCE_WRITES:
        log.warning("SELFREPAIR_ALLOW_SOURCE_WRITES is on; repair mode will rewrite source files")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_report(args) -> int:
    from monitoring.maintenance import get_orchestrator

    outcome = get_orchestrator().run_hourly(source_address="cli", mode=args.mode)
    _print(outcome)
    return 0 if outcome["report"]["overall"] != "error" else 2


def cmd_hourly(args) -> int:
    from monitoring.maintenance import get_orchestrator

    _print(get_orchestrator().run_hourly(source_address="cli", mode=args.mode))
    return 0


def cmd_daily(args) -> int:
    from monitoring.maintenance import get_orchestrator

    result = get_orchestrator().run_daily(force=args.force)
    _print(result.as_dict())
    return 1 if result.status in {"failed", "partial"} else 0


def cmd_weekly(args) -> int:
    from monitoring.maintenance import get_orchestrator

    result = get_orchestrator().run_weekly(force=args.force)
    _print(result.as_dict())
    return 1 if result.status in {"failed", "partial"} else 0


def cmd_unified(args) -> int:
    from monitoring.maintenance import get_orchestrator

    _print(get_orchestrator().run_unified(source_address="cli"))
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from web import create_app

    app = create_app()
    uvicorn_config = uvicorn.Config(
        app,
        host=args.host or config.WEB_HOST,
        port=args.port or config.WEB_PORT,
        log_level="info",
    )
    uvicorn.Server(uvicorn_config).run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="selfrepair", description="Self-repair health monitor")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    report = sub.add_parser("report", help="run a recorded health check and exit 2 on error")
    report.add_argument("--mode", choices=MODES, default=MODE_READ_ONLY)
    report.set_defaults(func=cmd_report)

    hourly = sub.add_parser("hourly", help="health check, append, alert")
    hourly.add_argument("--mode", choices=MODES, default=MODE_READ_ONLY)
    hourly.set_defaults(func=cmd_hourly)

    daily = sub.add_parser("daily", help="snapshot, summary, prune, cleanup")
    daily.add_argument("--force", action="store_true", help="skip the UTC hour guard")
    daily.set_defaults(func=cmd_daily)

    weekly = sub.add_parser("weekly", help="week-over-week rollup")
    weekly.add_argument("--force", action="store_true", help="skip the weekday guard")
    weekly.set_defaults(func=cmd_weekly)

    unified = sub.add_parser("unified", help="hourly, then daily/weekly when due")
    unified.set_defaults(func=cmd_unified)

    serve = sub.add_parser("serve", help="run the HTTP trigger surface")
    serve.add_argument("--host", default="")
    serve.add_argument("--port", type=int, default=0)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    preflight_checks()
    try:
        return args.func(args)
    except SelfRepairError as exc:
        log.error("%s failed: %s", args.command, exc)
        _print({"status": "error", "message": str(exc)})
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
