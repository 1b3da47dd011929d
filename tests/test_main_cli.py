import io
import json
import sys
import tempfile
import unittest
from contextlib import ExitStack, redirect_stdout
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import config
import main
from monitoring._base import PROBE_SDK, ProbeResult, Report, StorageError


def _report(overall: str) -> Report:
    return Report(
        timestamp="2026-03-02T00:10:00+00:00",
        mode="read-only",
        checks={PROBE_SDK: ProbeResult(name=PROBE_SDK, status=overall, message=f"sdk {overall}")},
        overall=overall,
    )


class MainCliTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self._stack = ExitStack()
        self._stack.enter_context(patch.object(config, "DATA_DIR", root))
        self._stack.enter_context(patch.object(config, "ARCHIVE_DIR", root / "archive"))
        self._stack.enter_context(patch.object(config, "SOURCE_DIR", root / "src"))
        self._stack.enter_context(patch.object(main, "setup_logging"))

    def tearDown(self):
        self._stack.close()
        self._tmp.cleanup()

    def _run(self, argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main.main(argv)
        return code, out.getvalue()

    def test_parser_rejects_unknown_mode(self):
        with self.assertRaises(SystemExit):
            with redirect_stdout(io.StringIO()):
                main.build_parser().parse_args(["report", "--mode", "yolo"])

    def test_report_is_recorded_and_exit_code_tracks_overall(self):
        calls = []

        def run_hourly(**kwargs):
            calls.append(kwargs)
            overall = "error" if kwargs["mode"] == "read-only" else "ok"
            return {"status": "ok", "report": _report(overall).as_dict(), "entry": {"id": len(calls)}}

        orchestrator = SimpleNamespace(run_hourly=run_hourly)
        with patch("monitoring.maintenance.get_orchestrator", return_value=orchestrator):
            code, output = self._run(["report"])
            self.assertEqual(code, 2)
            self.assertEqual(json.loads(output)["report"]["overall"], "error")

            code, _output = self._run(["report", "--mode", "dry-run"])
            self.assertEqual(code, 0)

        self.assertEqual(
            calls,
            [{"source_address": "cli", "mode": "read-only"}, {"source_address": "cli", "mode": "dry-run"}],
        )

    def test_storage_failure_returns_error_json(self):
        def explode(**kwargs):
            raise StorageError("cannot write event log")

        orchestrator = SimpleNamespace(run_hourly=explode)
        with patch("monitoring.maintenance.get_orchestrator", return_value=orchestrator):
            code, output = self._run(["hourly"])

        self.assertEqual(code, 1)
        self.assertEqual(json.loads(output), {"status": "error", "message": "cannot write event log"})
        self.assertTrue((Path(self._tmp.name) / "archive").is_dir())

    def test_daily_partial_is_nonzero(self):
        result = SimpleNamespace(status="partial", as_dict=lambda: {"cycle": "daily", "status": "partial"})
        orchestrator = SimpleNamespace(run_daily=lambda force=False: result)
        with patch("monitoring.maintenance.get_orchestrator", return_value=orchestrator):
            code, _output = self._run(["daily", "--force"])
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
