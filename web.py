"""HTTP trigger surface for the self-repair subsystem.

FastAPI app exposing the cron entry points plus the poll-friendly read
endpoints used by the dashboard. Every route requires the operator bearer key
and every response, including failures, is a JSON body.
"""

import hmac
import logging

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from monitoring._base import (
    MODE_DRY_RUN,
    MODE_READ_ONLY,
    MODE_REPAIR,
    PROBE_SDK,
    ConfigurationError,
    SelfRepairError,
    StorageError,
)
from monitoring.maintenance import CronOrchestrator, get_orchestrator
from utils import fingerprint_key

log = logging.getLogger(__name__)

NO_ALERT_MESSAGE = "No alerts sent yet."


class OperatorAuthError(Exception):
    """Missing or wrong operator bearer key."""


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())[1:]]
        parts.append(f"{'.'.join(loc) or 'request'}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request"


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def require_operator(request: Request) -> str:
    """Return the validated bearer token; an unset operator key rejects everyone."""
    token = _bearer_token(request)
    if not config.OPERATOR_KEY or not token:
        raise OperatorAuthError("Unauthorized")
    if not hmac.compare_digest(token.encode("utf-8"), config.OPERATOR_KEY.encode("utf-8")):
        raise OperatorAuthError("Unauthorized")
    return token


def caller_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    cf_ip = request.headers.get("cf-connecting-ip", "").strip()
    if cf_ip:
        return cf_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _resolve_mode(dryrun: bool, repair: bool) -> str:
    if dryrun:
        return MODE_DRY_RUN
    if repair:
        return MODE_REPAIR
    return MODE_READ_ONLY


def create_app(orchestrator: CronOrchestrator | None = None) -> FastAPI:
    """Create the FastAPI app wired to a cron orchestrator."""
    app = FastAPI(title="Self-Repair", docs_url=None, redoc_url=None)

    def _orch() -> CronOrchestrator:
        return orchestrator or get_orchestrator()

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.exception_handler(OperatorAuthError)
    async def _auth_error(request: Request, exc: OperatorAuthError):
        log.warning("Rejected %s %s from %s", request.method, request.url.path, caller_address(request))
        return _error(401, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        return _error(422, _validation_message(exc))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        response = _error(exc.status_code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(ValueError)
    async def _bad_request(request: Request, exc: ValueError):
        return _error(400, str(exc))

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError):
        log.error("Storage failure on %s", request.url.path, exc_info=exc)
        return _error(500, str(exc))

    @app.exception_handler(SelfRepairError)
    async def _selfrepair_error(request: Request, exc: SelfRepairError):
        log.error("Self-repair failure on %s", request.url.path, exc_info=exc)
        return _error(500, str(exc))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return _error(500, f"{type(exc).__name__}: internal error")

    # ------------------------------------------------------------------
    # Health report
    # ------------------------------------------------------------------

    @app.api_route("/api/selfrepair", methods=["GET", "POST"])
    def selfrepair_run(
        request: Request,
        dryrun: bool = False,
        repair: bool = False,
        token: str = Depends(require_operator),
    ):
        return _orch().run_hourly(
            source_address=caller_address(request),
            caller_key_fingerprint=fingerprint_key(token),
            mode=_resolve_mode(dryrun, repair),
        )

    # ------------------------------------------------------------------
    # Cron entry points
    # ------------------------------------------------------------------

    @app.api_route("/api/selfrepair/cron/hourly", methods=["GET", "POST"])
    def cron_hourly(request: Request, token: str = Depends(require_operator)):
        return _orch().run_hourly(
            source_address=caller_address(request),
            caller_key_fingerprint=fingerprint_key(token),
        )

    @app.api_route("/api/selfrepair/cron/daily", methods=["GET", "POST"])
    def cron_daily(force: bool = False, _token: str = Depends(require_operator)):
        return _orch().run_daily(force=force).as_dict()

    @app.api_route("/api/selfrepair/cron/weekly", methods=["GET", "POST"])
    def cron_weekly(force: bool = False, _token: str = Depends(require_operator)):
        return _orch().run_weekly(force=force).as_dict()

    @app.api_route("/api/selfrepair/cron/unified", methods=["GET", "POST"])
    def cron_unified(request: Request, token: str = Depends(require_operator)):
        return _orch().run_unified(
            source_address=caller_address(request),
            caller_key_fingerprint=fingerprint_key(token),
        )

    # ------------------------------------------------------------------
    # Read endpoints
    # ------------------------------------------------------------------

    @app.get("/api/selfrepair/logs")
    def logs(limit: int = Query(50, ge=1, le=1000), _token: str = Depends(require_operator)):
        entries = _orch().event_log.read_all(newest_first=True)
        return {
            "status": "ok",
            "total": len(entries),
            "entries": [entry.as_dict() for entry in entries[:limit]],
        }

    @app.get("/api/selfrepair/alerts/last")
    def last_alert(_token: str = Depends(require_operator)):
        record = _orch().dispatcher.last_alert()
        if record is None:
            return {"status": "none", "message": NO_ALERT_MESSAGE}
        return {"status": "ok", "alert": record.as_dict()}

    @app.get("/api/selfrepair/alerts/dispatched")
    def last_dispatched(_token: str = Depends(require_operator)):
        record = _orch().dispatcher.last_dispatched()
        if record is None:
            return {"status": "none", "message": NO_ALERT_MESSAGE}
        return {"status": "ok", "alert": record.as_dict()}

    @app.get("/api/selfrepair/health/last")
    def last_health(_token: str = Depends(require_operator)):
        cache = _orch().event_log.health_cache
        state = cache.read() if cache is not None else None
        if state is None:
            return {"status": "none", "message": "No health checks recorded yet."}
        return {"status": "ok", "health": state}

    @app.get("/api/selfrepair/trend")
    def trend(days: int = Query(config.TREND_DAYS, ge=1, le=90), _token: str = Depends(require_operator)):
        points = _orch().analyzer.daily_trend(days)
        return {"status": "ok", "days": days, "trend": [point.as_dict() for point in points]}

    @app.get("/api/selfrepair/rollup")
    def rollup(_token: str = Depends(require_operator)):
        return {"status": "ok", "rollup": _orch().analyzer.weekly_rollup().as_dict()}

    @app.get("/api/selfrepair/status")
    def status(_token: str = Depends(require_operator)):
        """Live probe only; nothing is recorded."""
        result = _orch().engine.run_probe(PROBE_SDK)
        return {"status": "ok" if result.healthy else "error", "sdk": result.as_dict()}

    @app.get("/api/selfrepair/summary")
    def narrative_summary(send_email: bool = False, _token: str = Depends(require_operator)):
        from monitoring.agents.sdk_probe import generate_text
        from monitoring.reports import build_narrative_prompt, narrative_html
        from monitoring.trends import summarize

        orch = _orch()
        recent = orch.analyzer.recent_entries(days=7)
        summary = summarize(recent)
        try:
            text = generate_text(build_narrative_prompt(summary, recent), model=config.SUMMARY_MODEL)
        except ConfigurationError as exc:
            return _error(503, str(exc))
        alert = None
        if send_email:
            alert = orch.dispatcher.send_direct(
                "Weekly AI Health Summary", {"html": narrative_html(text)}
            ).as_dict()
        return {"status": "ok", "stats": summary.as_dict(), "summary": text, "alert": alert}

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    @app.post("/api/selfrepair/fix-env")
    def fix_env(dryrun: bool = False, _token: str = Depends(require_operator)):
        result = _orch().engine.repair_engine.apply_env(dry_run=dryrun)
        return {"status": "ok", **result.as_dict()}

    @app.post("/api/selfrepair/alert-test")
    def alert_test(_token: str = Depends(require_operator)):
        record = _orch().dispatcher.send_test(
            "Self-repair test alert",
            {"message": "Test alert from the self-repair subsystem."},
        )
        return {"status": "ok" if not record.error else "error", "alert": record.as_dict()}

    return app
