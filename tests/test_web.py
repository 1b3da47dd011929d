import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import config
from monitoring._base import (
    PROBE_CODEBASE,
    PROBE_ENVIRONMENT,
    PROBE_SDK,
    ConfigurationError,
    ProbeResult,
    StorageError,
)
from monitoring.alerts import AlertDispatcher, AlertProvider
from monitoring.archive import ArchiveManager
from monitoring.event_log import EventLog, HealthStateCache
from monitoring.health import HealthCheckEngine
from monitoring.maintenance import CronOrchestrator
from monitoring.remediation import Fix, RepairResult
from monitoring.run_ledger import RunLedger
from utils import fingerprint_key
from web import NO_ALERT_MESSAGE, create_app

KEY = "operator-secret"


class _RecordingProvider(AlertProvider):
    name = "recording"

    def __init__(self):
        self.sent = []

    def send(self, level, subject, body):
        self.sent.append((level, subject, dict(body)))
        return "msg"


class _FakeRepair:
    def __init__(self):
        self.calls = []

    def apply(self, dry_run=True):
        self.calls.append(("apply", dry_run))
        return RepairResult(dry_run=dry_run, fixes=[Fix("env", ".env.local", "create .env.local")])

    def apply_env(self, dry_run=True):
        self.calls.append(("apply_env", dry_run))
        return RepairResult(dry_run=dry_run, fixes=[Fix("env", ".env.local", "sync NEXT_PUBLIC_GOOGLE_API_KEY")])


def _ok(name):
    return ProbeResult(name=name, status="ok", message=f"{name} ok")


class WebTriggerTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self._key_patch = patch.object(config, "OPERATOR_KEY", KEY)
        self._key_patch.start()

        self.event_log = EventLog(
            root / "selfrepair-log.json", health_cache=HealthStateCache(root / "lastHealth.json")
        )
        archive = ArchiveManager(self.event_log, root / "archive")
        self.provider = _RecordingProvider()
        dispatcher = AlertDispatcher(
            self.provider,
            min_level="warn",
            last_alert_path=root / "lastAlert.json",
            last_dispatched_path=root / "lastDispatched.json",
        )
        self.repair = _FakeRepair()
        engine = HealthCheckEngine(
            probes={name: (lambda name=name: _ok(name)) for name in (PROBE_CODEBASE, PROBE_ENVIRONMENT, PROBE_SDK)},
            repair_engine=self.repair,
        )
        self.orchestrator = CronOrchestrator(
            engine=engine,
            event_log=self.event_log,
            archive=archive,
            dispatcher=dispatcher,
            ledger=RunLedger(root / "cron_runs.db"),
        )
        self.client = TestClient(create_app(self.orchestrator))

    def tearDown(self):
        self._key_patch.stop()
        self._tmp.cleanup()

    def auth(self, **extra):
        return {"Authorization": f"Bearer {KEY}", **extra}

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def test_missing_or_wrong_key_is_rejected_with_json(self):
        for headers in ({}, {"Authorization": "Bearer nope"}, {"Authorization": KEY}):
            resp = self.client.post("/api/selfrepair/cron/hourly", headers=headers)
            self.assertEqual(resp.status_code, 401)
            self.assertEqual(resp.json(), {"status": "error", "message": "Unauthorized"})
        self.assertEqual(self.event_log.count(), 0)

    def test_unset_operator_key_rejects_everyone(self):
        with patch.object(config, "OPERATOR_KEY", ""):
            resp = self.client.get("/api/selfrepair/logs", headers={"Authorization": "Bearer "})
        self.assertEqual(resp.status_code, 401)

    # ------------------------------------------------------------------
    # Cron triggers
    # ------------------------------------------------------------------

    def test_hourly_records_caller_identity(self):
        resp = self.client.post(
            "/api/selfrepair/cron/hourly",
            headers=self.auth(**{"X-Forwarded-For": "198.51.100.7, 10.0.0.1"}),
        )

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["report"]["overall"], "ok")
        entry = self.event_log.read_all()[0]
        self.assertEqual(entry.source_address, "198.51.100.7")
        self.assertEqual(entry.caller_key_fingerprint, fingerprint_key(KEY))
        self.assertNotIn(KEY, resp.text)

    def test_hourly_accepts_get_and_falls_back_to_client_host(self):
        resp = self.client.get("/api/selfrepair/cron/hourly", headers=self.auth())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.event_log.read_all()[0].source_address, "testclient")

    def test_storage_failure_is_a_500_json_body(self):
        with patch.object(self.event_log, "record", side_effect=StorageError("cannot write event log")):
            resp = self.client.post("/api/selfrepair/cron/hourly", headers=self.auth())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"status": "error", "message": "cannot write event log"})

    def test_daily_and_weekly_force(self):
        daily = self.client.post("/api/selfrepair/cron/daily?force=true", headers=self.auth())
        self.assertEqual(daily.status_code, 200)
        self.assertEqual(daily.json()["cycle"], "daily")
        self.assertIn(daily.json()["status"], {"success", "skipped"})

        weekly = self.client.get("/api/selfrepair/cron/weekly?force=true", headers=self.auth())
        self.assertEqual(weekly.json()["cycle"], "weekly")

    def test_unified(self):
        resp = self.client.post("/api/selfrepair/cron/unified", headers=self.auth())
        self.assertEqual(resp.status_code, 200)
        self.assertIn("ran_daily", resp.json())
        self.assertEqual(self.event_log.count(), 1)

    # ------------------------------------------------------------------
    # Report and read endpoints
    # ------------------------------------------------------------------

    def test_report_modes(self):
        read_only = self.client.get("/api/selfrepair", headers=self.auth()).json()
        self.assertEqual(read_only["report"]["mode"], "read-only")
        self.assertNotIn("repair", read_only["report"])

        dry = self.client.get("/api/selfrepair?dryrun=true", headers=self.auth()).json()
        self.assertEqual(dry["report"]["mode"], "dry-run")
        self.assertEqual(dry["report"]["repair"]["fix_count"], 1)
        self.assertEqual(dry["report"]["overall"], "warn")
        self.assertEqual(self.repair.calls, [("apply", True)])
        self.assertEqual(self.event_log.count(), 2)

    def test_repair_through_get_is_recorded_and_alerted(self):
        resp = self.client.get("/api/selfrepair?repair=true", headers=self.auth())

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["report"]["mode"], "repair")
        self.assertEqual(self.repair.calls, [("apply", False)])
        self.assertEqual(self.event_log.count(), 1)
        entry = self.event_log.read_all()[0]
        self.assertEqual(entry.mode, "repair")
        self.assertEqual(entry.id, body["entry"]["id"])
        self.assertEqual(entry.caller_key_fingerprint, fingerprint_key(KEY))
        # Fixes raise overall to warn, which meets the threshold.
        self.assertTrue(body["alert"]["sent"])
        self.assertEqual(self.provider.sent[0][0], "warn")

    # ------------------------------------------------------------------
    # Error bodies
    # ------------------------------------------------------------------

    def test_invalid_query_values_use_error_body(self):
        for path in ("/api/selfrepair/logs?limit=0", "/api/selfrepair/trend?days=abc"):
            resp = self.client.get(path, headers=self.auth())
            self.assertEqual(resp.status_code, 422)
            body = resp.json()
            self.assertEqual(body["status"], "error")
            self.assertNotIn("detail", body)
        self.assertIn("limit", self.client.get("/api/selfrepair/logs?limit=0", headers=self.auth()).json()["message"])

    def test_unknown_route_and_method_use_error_body(self):
        missing = self.client.get("/api/selfrepair/nope", headers=self.auth())
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json(), {"status": "error", "message": "Not Found"})

        wrong_method = self.client.get("/api/selfrepair/fix-env", headers=self.auth())
        self.assertEqual(wrong_method.status_code, 405)
        self.assertEqual(wrong_method.json()["status"], "error")

    def test_logs_are_newest_first(self):
        for _ in range(3):
            self.client.post("/api/selfrepair/cron/hourly", headers=self.auth())

        body = self.client.get("/api/selfrepair/logs?limit=2", headers=self.auth()).json()

        self.assertEqual(body["total"], 3)
        ids = [entry["id"] for entry in body["entries"]]
        self.assertEqual(len(ids), 2)
        self.assertGreater(ids[0], ids[1])

    def test_alert_caches_before_any_alert(self):
        for path in ("/api/selfrepair/alerts/last", "/api/selfrepair/alerts/dispatched"):
            body = self.client.get(path, headers=self.auth()).json()
            self.assertEqual(body, {"status": "none", "message": NO_ALERT_MESSAGE})

    def test_last_health_after_hourly(self):
        self.client.post("/api/selfrepair/cron/hourly", headers=self.auth())
        body = self.client.get("/api/selfrepair/health/last", headers=self.auth()).json()
        self.assertEqual(body["health"]["overall"], "ok")

        last = self.client.get("/api/selfrepair/alerts/last", headers=self.auth()).json()
        self.assertTrue(last["alert"]["suppressed"])

    def test_trend_and_rollup(self):
        trend = self.client.get("/api/selfrepair/trend?days=3", headers=self.auth()).json()
        self.assertEqual(len(trend["trend"]), 3)

        rollup = self.client.get("/api/selfrepair/rollup", headers=self.auth()).json()
        self.assertEqual(rollup["rollup"]["this_week"]["total"], 0)

    def test_status_probe_only(self):
        body = self.client.get("/api/selfrepair/status", headers=self.auth()).json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["sdk"]["healthy"])
        self.assertEqual(self.event_log.count(), 0)

    def test_narrative_summary(self):
        self.client.post("/api/selfrepair/cron/hourly", headers=self.auth())
        with patch("monitoring.agents.sdk_probe.generate_text", return_value="Stable week.") as gen:
            body = self.client.get("/api/selfrepair/summary?send_email=true", headers=self.auth()).json()

        self.assertEqual(body["summary"], "Stable week.")
        self.assertEqual(body["stats"]["total"], 1)
        self.assertTrue(body["alert"]["sent"])
        self.assertEqual(gen.call_args.kwargs["model"], config.SUMMARY_MODEL)
        self.assertIn("Stable week.", self.provider.sent[-1][2]["html"])

    def test_narrative_summary_without_credentials(self):
        with patch("monitoring.agents.sdk_probe.generate_text", side_effect=ConfigurationError("Missing GOOGLE_API_KEY")):
            resp = self.client.get("/api/selfrepair/summary", headers=self.auth())
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["status"], "error")

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def test_fix_env(self):
        body = self.client.post("/api/selfrepair/fix-env?dryrun=true", headers=self.auth()).json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["dry_run"])
        self.assertEqual(body["fix_count"], 1)
        self.assertEqual(self.repair.calls, [("apply_env", True)])

    def test_alert_test_bypasses_threshold(self):
        body = self.client.post("/api/selfrepair/alert-test", headers=self.auth()).json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["alert"]["sent"])
        self.assertIn("[TEST]", self.provider.sent[0][1])


if __name__ == "__main__":
    unittest.main()
