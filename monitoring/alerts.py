"""Severity-gated alert dispatch with poll-friendly single-slot caches.

Two caches are kept:

- ``last_alert``: the most recent ``dispatch`` call, whether or not the
  provider was invoked (``sent``/``suppressed`` say which).
- ``last_dispatched``: only calls that reached the provider.

Provider failures are logged and recorded, never raised.
"""
from __future__ import annotations

import html
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

import httpx

import config
from monitoring._base import (
    ConfigurationError,
    _now_utc,
    alert_level_for,
    severity_rank,
    status_symbol,
)
from utils import atomic_write_json, load_json, track_latency, truncate

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class AlertProvider(ABC):
    name: str = "base"

    @property
    def recipient(self) -> str:
        return ""

    @abstractmethod
    def send(self, level: str, subject: str, body: Mapping[str, Any]) -> str:
        """Deliver one alert. Returns a provider message id; raises on failure."""


class ResendProvider(AlertProvider):
    """Email via the Resend HTTP API."""

    name = "resend"

    def __init__(
        self,
        api_key: str | None = None,
        to: str | None = None,
        sender: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = config.ALERTS_API_KEY if api_key is None else api_key
        self.to = [addr.strip() for addr in (config.ALERTS_TO if to is None else to).split(",") if addr.strip()]
        self.sender = sender or config.ALERTS_FROM
        self.base_url = (base_url or config.RESEND_BASE_URL).rstrip("/")
        self.timeout = timeout or config.ALERTS_TIMEOUT

    @property
    def recipient(self) -> str:
        return ", ".join(self.to)

    @track_latency("resend", "send")
    def send(self, level: str, subject: str, body: Mapping[str, Any]) -> str:
        if not self.api_key:
            raise ConfigurationError("ALERTS_API_KEY not configured")
        if not self.to:
            raise ConfigurationError("ALERTS_TO not configured")
        payload = {
            "from": self.sender,
            "to": self.to,
            "subject": subject,
            "html": render_html_body(subject, body),
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(f"{self.base_url}/emails", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json() if resp.content else {}
        return str(data.get("id", "")) if isinstance(data, dict) else ""


class WebhookProvider(AlertProvider):
    """POST a JSON alert to an arbitrary webhook (Slack-compatible ``text``)."""

    name = "webhook"

    def __init__(self, url: str | None = None, *, timeout: float | None = None):
        self.url = config.ALERTS_WEBHOOK_URL if url is None else url
        self.timeout = timeout or config.ALERTS_TIMEOUT

    @property
    def recipient(self) -> str:
        return self.url

    @track_latency("webhook", "send")
    def send(self, level: str, subject: str, body: Mapping[str, Any]) -> str:
        if not self.url:
            raise ConfigurationError("ALERTS_WEBHOOK_URL not configured")
        payload = {
            "text": subject,
            "level": level,
            "body": {k: v for k, v in body.items() if k != "html"},
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.url, content=json.dumps(payload, default=str),
                               headers={"Content-Type": "application/json"})
            resp.raise_for_status()
        return str(resp.status_code)


class LogOnlyProvider(AlertProvider):
    """Writes alerts to the application log. Useful locally and in tests."""

    name = "log"

    def send(self, level: str, subject: str, body: Mapping[str, Any]) -> str:
        log.warning("ALERT [%s] %s", level, subject)
        return "logged"


_PROVIDERS: dict[str, type[AlertProvider]] = {
    ResendProvider.name: ResendProvider,
    WebhookProvider.name: WebhookProvider,
    LogOnlyProvider.name: LogOnlyProvider,
}


def build_provider(name: str | None = None) -> AlertProvider:
    key = str(name or config.ALERTS_PROVIDER).strip().lower()
    provider_cls = _PROVIDERS.get(key)
    if provider_cls is None:
        log.warning("Unknown ALERTS_PROVIDER %r, falling back to log", key)
        provider_cls = LogOnlyProvider
    return provider_cls()


def render_html_body(subject: str, body: Mapping[str, Any]) -> str:
    if body.get("html"):
        return str(body["html"])
    rows = "".join(
        f"<tr><td><b>{html.escape(str(key))}</b></td>"
        f"<td><pre>{html.escape(json.dumps(value, indent=2, default=str) if not isinstance(value, str) else value)}</pre></td></tr>"
        for key, value in body.items()
    )
    return (
        '<div style="font-family:system-ui,Segoe UI,Roboto,Helvetica,Arial,sans-serif">'
        f"<h2>{html.escape(subject)}</h2>"
        f'<table cellspacing="0" cellpadding="6">{rows}</table></div>'
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlertRecord:
    level: str
    message: str
    time: str
    provider: str
    recipient: str
    sent: bool = False
    suppressed: bool = False
    provider_message_id: str = ""
    error: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "AlertRecord":
        return cls(
            level=str(row.get("level", "info")),
            message=str(row.get("message", "")),
            time=str(row.get("time", "")),
            provider=str(row.get("provider", "")),
            recipient=str(row.get("recipient", "")),
            sent=bool(row.get("sent", False)),
            suppressed=bool(row.get("suppressed", False)),
            provider_message_id=str(row.get("provider_message_id", "")),
            error=str(row.get("error", "")),
        )


class AlertDispatcher:
    def __init__(
        self,
        provider: AlertProvider | None = None,
        *,
        min_level: str | None = None,
        last_alert_path: Path | None = None,
        last_dispatched_path: Path | None = None,
    ):
        self.provider = provider or build_provider()
        self.min_level = alert_level_for(min_level or config.ALERTS_MIN_LEVEL)
        self.last_alert_path = Path(last_alert_path or config.LAST_ALERT_FILE)
        self.last_dispatched_path = Path(last_dispatched_path or config.LAST_DISPATCHED_FILE)

    def should_send(self, level: str) -> bool:
        return severity_rank(level) >= severity_rank(self.min_level)

    def dispatch(
        self,
        level: str,
        summary: str,
        detail: Mapping[str, Any] | None = None,
    ) -> AlertRecord:
        normalized = alert_level_for(level)
        subject = f"{status_symbol(normalized)} [{normalized.upper()}] {summary}"
        record_kwargs: dict[str, Any] = {
            "level": normalized,
            "message": summary,
            "provider": self.provider.name,
            "recipient": self.provider.recipient,
        }

        if not self.should_send(normalized):
            log.debug("Alert %r below %s threshold; not sent", summary, self.min_level)
            record = AlertRecord(time=_now_utc().isoformat(), suppressed=True, **record_kwargs)
            self._store(self.last_alert_path, record)
            return record

        return self._deliver(normalized, subject, detail or {}, record_kwargs)

    def send_direct(
        self,
        summary: str,
        detail: Mapping[str, Any] | None = None,
        *,
        tag: str = "INFO",
    ) -> AlertRecord:
        """Operator-requested delivery; bypasses the severity threshold."""
        subject = f"{status_symbol('info')} [{tag}] {summary}"
        record_kwargs: dict[str, Any] = {
            "level": "info",
            "message": summary,
            "provider": self.provider.name,
            "recipient": self.provider.recipient,
        }
        return self._deliver("info", subject, detail or {}, record_kwargs)

    def send_test(self, summary: str, detail: Mapping[str, Any] | None = None) -> AlertRecord:
        return self.send_direct(summary, detail, tag="TEST")

    def _deliver(
        self,
        level: str,
        subject: str,
        detail: Mapping[str, Any],
        record_kwargs: dict[str, Any],
    ) -> AlertRecord:
        try:
            message_id = self.provider.send(level, subject, dict(detail))
            record = AlertRecord(
                time=_now_utc().isoformat(),
                sent=True,
                provider_message_id=str(message_id or ""),
                **record_kwargs,
            )
            log.info("Alert sent via %s: %s", self.provider.name, subject)
        except Exception as exc:
            log.warning("Alert provider %s failed", self.provider.name, exc_info=True)
            record = AlertRecord(
                time=_now_utc().isoformat(),
                error=truncate(exc, config.ERROR_TRUNCATE),
                **record_kwargs,
            )

        self._store(self.last_alert_path, record)
        self._store(self.last_dispatched_path, record)
        return record

    def _store(self, path: Path, record: AlertRecord) -> None:
        try:
            atomic_write_json(path, record.as_dict())
        except OSError:
            log.warning("Failed to update %s", path.name, exc_info=True)

    def _load(self, path: Path) -> AlertRecord | None:
        data = load_json(path, {})
        if not isinstance(data, dict) or not data:
            return None
        return AlertRecord.from_dict(data)

    def last_alert(self) -> AlertRecord | None:
        return self._load(self.last_alert_path)

    def last_dispatched(self) -> AlertRecord | None:
        return self._load(self.last_dispatched_path)
