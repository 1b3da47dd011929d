import json
import sys
import tempfile
import unittest
from pathlib import Path

import httpx

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import config
from monitoring.agents.codebase_scan import iter_source_files, manifest_legacy_sections, scan_codebase
from monitoring.agents.environment import (
    ACTION_SET_PLACEHOLDER,
    ACTION_SYNC,
    resolve_key,
    validate_environment,
)
from monitoring.agents.sdk_probe import probe_generative_service

PAIRS = [("GOOGLE_API_KEY|GEMINI_API_KEY", "NEXT_PUBLIC_GOOGLE_API_KEY")]


def _codes(result):
    return [finding.code for finding in result.findings]


class TestCodebaseScan(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.src = self.root / "src"
        (self.src / "lib").mkdir(parents=True)
        (self.src / "node_modules" / "pkg").mkdir(parents=True)
        (self.src / "lib" / "ai.ts").write_text(
            "const a = 1;\nconst r = await client.generateText({ prompt });\n",
            encoding="utf-8",
        )
        (self.src / "page.tsx").write_text("export default function Page() {}\n", encoding="utf-8")
        (self.src / "node_modules" / "pkg" / "index.js").write_text(
            "client.generateText({})\n", encoding="utf-8"
        )
        (self.src / "notes.md").write_text("client.generateText({})\n", encoding="utf-8")
        self.manifest = self.root / "package.json"
        self.manifest.write_text(json.dumps({"dependencies": {"react": "^18"}}), encoding="utf-8")

    def tearDown(self):
        self._tmp.cleanup()

    def test_reports_matches_with_location_and_skips_vendor_dirs(self):
        result = scan_codebase(self.src, manifest_path=self.manifest)

        self.assertEqual(result.status, "warn")
        self.assertEqual(result.detail["deprecated_references"], 1)
        self.assertEqual(result.detail["files_scanned"], 2)
        match = result.detail["matches"][0]
        self.assertEqual(match["file"], "lib/ai.ts")
        self.assertEqual(match["line"], 2)
        self.assertEqual(match["rules"], ["sdk.generate-text"])
        self.assertTrue(all(f.fixable for f in result.findings))

    def test_clean_tree_is_ok(self):
        (self.src / "lib" / "ai.ts").write_text("await model.generateContent('x');\n", encoding="utf-8")
        result = scan_codebase(self.src, manifest_path=self.manifest)
        self.assertEqual(result.status, "ok")
        self.assertEqual(result.findings, ())

    def test_missing_source_dir_warns(self):
        result = scan_codebase(self.root / "nope", manifest_path=self.manifest)
        self.assertEqual(result.status, "warn")
        self.assertEqual(_codes(result), ["codebase.source_dir_missing"])

    def test_legacy_dependency_is_reported(self):
        self.manifest.write_text(
            json.dumps({"devDependencies": {config.LEGACY_SDK_PACKAGE: "^0.1.0"}}), encoding="utf-8"
        )
        self.assertEqual(manifest_legacy_sections(self.manifest), ["devDependencies"])
        result = scan_codebase(self.src, manifest_path=self.manifest)
        self.assertIn("codebase.legacy_dependency", _codes(result))

    def test_iter_source_files_honours_extensions(self):
        names = [p.name for p in iter_source_files(self.src, extensions=(".md",))]
        self.assertEqual(names, ["notes.md"])


class TestEnvironmentValidation(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.env_file = Path(self._tmp.name) / ".env.local"

    def tearDown(self):
        self._tmp.cleanup()

    def _validate(self, environ=None):
        return validate_environment(self.env_file, pairs=PAIRS, required=[], environ=environ or {})

    def test_missing_file_and_keys(self):
        result = self._validate()
        self.assertEqual(result.status, "warn")
        self.assertEqual(_codes(result), ["env.file_missing", "env.missing_private"])
        self.assertEqual(result.findings[1].detail["action"], ACTION_SET_PLACEHOLDER)
        self.assertFalse(result.detail["file_exists"])

    def test_private_without_public_plans_sync(self):
        self.env_file.write_text("GOOGLE_API_KEY=abc\n", encoding="utf-8")
        result = self._validate()
        self.assertEqual(_codes(result), ["env.missing_public"])
        self.assertEqual(result.findings[0].detail["action"], ACTION_SYNC)
        self.assertEqual(result.findings[0].detail["from"], "GOOGLE_API_KEY")

    def test_public_without_private_syncs_back(self):
        self.env_file.write_text("NEXT_PUBLIC_GOOGLE_API_KEY=abc\n", encoding="utf-8")
        result = self._validate()
        self.assertEqual(_codes(result), ["env.missing_private"])
        self.assertEqual(result.findings[0].detail["from"], "NEXT_PUBLIC_GOOGLE_API_KEY")

    def test_mismatch(self):
        self.env_file.write_text(
            "GOOGLE_API_KEY=abc\nNEXT_PUBLIC_GOOGLE_API_KEY=old\n", encoding="utf-8"
        )
        self.assertEqual(_codes(self._validate()), ["env.mismatch"])

    def test_placeholder_is_reported_but_not_fixable(self):
        self.env_file.write_text(f"GOOGLE_API_KEY={config.PLACEHOLDER_VALUE}\n", encoding="utf-8")
        result = self._validate()
        self.assertEqual(_codes(result), ["env.placeholder"])
        self.assertFalse(result.findings[0].fixable)

    def test_process_environment_fills_gaps(self):
        self.env_file.write_text("", encoding="utf-8")
        result = self._validate(
            {"GEMINI_API_KEY": "abc", "NEXT_PUBLIC_GOOGLE_API_KEY": "abc"}
        )
        self.assertEqual(result.status, "ok")
        self.assertEqual(result.message, "Environment healthy.")

    def test_file_layer_wins_over_process(self):
        resolved = resolve_key(("A",), {"A": "from-file"}, {"A": "from-process"})
        self.assertEqual((resolved.value, resolved.source), ("from-file", "file"))

    def test_required_keys(self):
        self.env_file.write_text("GOOGLE_API_KEY=a\nNEXT_PUBLIC_GOOGLE_API_KEY=a\n", encoding="utf-8")
        result = validate_environment(self.env_file, pairs=PAIRS, required=["RESEND_API_KEY"], environ={})
        self.assertEqual(_codes(result), ["env.missing_required"])


class TestGenerativeServiceProbe(unittest.TestCase):
    KEY = "AIza-test-key"

    def _client(self, handler):
        return httpx.Client(transport=httpx.MockTransport(handler))

    def test_healthy_when_response_contains_token(self):
        seen = {}

        def handler(request):
            seen["key"] = request.url.params.get("key")
            seen["path"] = request.url.path
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "OK"}]}}]})

        result = probe_generative_service(api_key=self.KEY, model="gemini-test", client=self._client(handler))

        self.assertEqual(result.status, "ok")
        self.assertEqual(result.detail["response"], "OK")
        self.assertEqual(seen["key"], self.KEY)
        self.assertTrue(seen["path"].endswith("/models/gemini-test:generateContent"))

    def test_http_error_is_scrubbed_and_truncated(self):
        def handler(request):
            return httpx.Response(500, text=f"bad key {self.KEY} " + "x" * 1000)

        result = probe_generative_service(api_key=self.KEY, client=self._client(handler))

        self.assertEqual(result.status, "error")
        self.assertEqual(result.findings[0].code, "sdk.probe_failed")
        error = result.detail["error"]
        self.assertNotIn(self.KEY, error)
        self.assertIn("HTTP 500", error)
        self.assertLessEqual(len(error), config.ERROR_TRUNCATE)

    def test_timeout_is_unhealthy(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        result = probe_generative_service(api_key=self.KEY, client=self._client(handler))
        self.assertEqual(result.status, "error")
        self.assertEqual(result.findings[0].code, "sdk.timeout")

    def test_empty_or_unexpected_text_is_unhealthy(self):
        for body in ({"candidates": []}, {"candidates": [{"content": {"parts": [{"text": "nope"}]}}]}):
            result = probe_generative_service(
                api_key=self.KEY,
                client=self._client(lambda request, body=body: httpx.Response(200, json=body)),
            )
            self.assertEqual(result.status, "error")
            self.assertEqual(result.findings[0].code, "sdk.probe_failed")

    def test_missing_key_is_a_configuration_failure(self):
        result = probe_generative_service(api_key="")
        self.assertEqual(result.status, "error")
        self.assertEqual(result.findings[0].code, "sdk.missing_api_key")


if __name__ == "__main__":
    unittest.main()
