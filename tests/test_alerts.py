import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from monitoring._base import ConfigurationError
from monitoring.alerts import (
    AlertDispatcher,
    AlertProvider,
    LogOnlyProvider,
    ResendProvider,
    build_provider,
    render_html_body,
)


class _RecordingProvider(AlertProvider):
    name = "recording"

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    @property
    def recipient(self) -> str:
        return "ops@example.com"

    def send(self, level, subject, body):
        self.calls.append((level, subject, dict(body)))
        if self.fail:
            raise RuntimeError("provider down " + "x" * 400)
        return "msg-1"


class TestAlertDispatcher(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.provider = _RecordingProvider()
        self.dispatcher = AlertDispatcher(
            self.provider,
            min_level="warn",
            last_alert_path=root / "lastAlert.json",
            last_dispatched_path=root / "lastDispatched.json",
        )

    def tearDown(self):
        self._tmp.cleanup()

    def test_below_threshold_is_suppressed_but_recorded(self):
        record = self.dispatcher.dispatch("ok", "Self-repair check: ok")

        self.assertEqual(self.provider.calls, [])
        self.assertTrue(record.suppressed)
        self.assertFalse(record.sent)
        self.assertEqual(record.level, "info")
        self.assertEqual(self.dispatcher.last_alert().message, "Self-repair check: ok")
        self.assertIsNone(self.dispatcher.last_dispatched())

    def test_at_or_above_threshold_is_sent(self):
        record = self.dispatcher.dispatch("error", "Self-repair check: error", {"overall": "error"})

        self.assertTrue(record.sent)
        self.assertEqual(record.provider_message_id, "msg-1")
        self.assertEqual(record.recipient, "ops@example.com")
        level, subject, body = self.provider.calls[0]
        self.assertEqual(level, "error")
        self.assertIn("[ERROR]", subject)
        self.assertEqual(body, {"overall": "error"})
        self.assertEqual(self.dispatcher.last_dispatched().message, "Self-repair check: error")

    def test_provider_failure_fails_soft(self):
        self.provider.fail = True

        record = self.dispatcher.dispatch("warn", "something odd")

        self.assertFalse(record.sent)
        self.assertIn("provider down", record.error)
        self.assertLessEqual(len(record.error), 300)
        self.assertEqual(self.dispatcher.last_dispatched().error, record.error)

    def test_suppressed_alert_does_not_clobber_last_dispatched(self):
        self.dispatcher.dispatch("error", "broken")
        self.dispatcher.dispatch("info", "fine again")

        self.assertEqual(self.dispatcher.last_alert().message, "fine again")
        self.assertEqual(self.dispatcher.last_dispatched().message, "broken")

    def test_send_test_bypasses_threshold(self):
        record = self.dispatcher.send_test("Alert test", {"note": "manual"})

        self.assertTrue(record.sent)
        self.assertEqual(record.level, "info")
        self.assertIn("[TEST]", self.provider.calls[0][1])

    def test_alias_levels_are_normalized(self):
        record = self.dispatcher.dispatch("critical", "db gone")
        self.assertEqual(record.level, "error")
        with self.assertRaises(ValueError):
            self.dispatcher.dispatch("catastrophic", "nope")


class TestProviders(unittest.TestCase):
    def test_unknown_provider_falls_back_to_log(self):
        self.assertIsInstance(build_provider("carrier-pigeon"), LogOnlyProvider)

    def test_resend_requires_api_key(self):
        provider = ResendProvider(api_key="", to="ops@example.com")
        with self.assertRaises(ConfigurationError):
            provider.send("error", "subject", {})

    def test_resend_posts_email(self):
        response = MagicMock()
        response.content = b'{"id": "email-123"}'
        response.json.return_value = {"id": "email-123"}
        client = MagicMock()
        client.post.return_value = response
        client_cm = MagicMock()
        client_cm.__enter__.return_value = client

        provider = ResendProvider(
            api_key="re_test",
            to="a@example.com, b@example.com",
            sender="Monitor <monitor@example.com>",
            base_url="https://api.resend.test/",
        )
        with patch("monitoring.alerts.httpx.Client", return_value=client_cm):
            message_id = provider.send("error", "Subject", {"html": "<p>hi</p>"})

        self.assertEqual(message_id, "email-123")
        url = client.post.call_args.args[0]
        kwargs = client.post.call_args.kwargs
        self.assertEqual(url, "https://api.resend.test/emails")
        self.assertEqual(kwargs["json"]["to"], ["a@example.com", "b@example.com"])
        self.assertEqual(kwargs["json"]["html"], "<p>hi</p>")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer re_test")

    def test_render_html_body_escapes_values(self):
        html = render_html_body("Subj <x>", {"detail": "<script>"})
        self.assertIn("Subj &lt;x&gt;", html)
        self.assertIn("&lt;script&gt;", html)
        self.assertNotIn("<script>", html)


if __name__ == "__main__":
    unittest.main()
