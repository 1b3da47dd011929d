"""Live probe: one small generateContent call against the generative service."""
from __future__ import annotations

import logging
from typing import Any

import httpx

import config
from monitoring._base import (
    PROBE_SDK,
    ConfigurationError,
    ProbeFailure,
    ProbeFinding,
    ProbeResult,
)
from monitoring.agents.environment import read_env_file, resolve_key, split_aliases
from utils import track_latency, truncate

log = logging.getLogger(__name__)


def resolve_api_key() -> str:
    """Service credential from config, else the layered env-file view."""
    if config.GEMINI_API_KEY and config.GEMINI_API_KEY != config.PLACEHOLDER_VALUE:
        return config.GEMINI_API_KEY
    file_values = read_env_file()
    for private_spec, _public_spec in config.CREDENTIAL_PAIRS:
        resolved = resolve_key(split_aliases(private_spec), file_values)
        if resolved.value and resolved.value != config.PLACEHOLDER_VALUE:
            return resolved.value
    return ""


@track_latency("gemini", "generate")
def generate_text(
    prompt: str,
    *,
    api_key: str | None = None,
    model: str | None = None,
    timeout: float | None = None,
    client: httpx.Client | None = None,
) -> str:
    """Single prompt -> text call. Raises on transport, HTTP, or shape errors."""
    key = resolve_api_key() if api_key is None else api_key
    if not key:
        raise ConfigurationError("Missing GOOGLE_API_KEY or GEMINI_API_KEY")
    url = f"{config.GEMINI_BASE_URL.rstrip('/')}/models/{model or config.PROBE_MODEL}:generateContent"
    payload = {"contents": [{"parts": [{"text": prompt}]}]}

    owns_client = client is None
    http = client or httpx.Client(timeout=timeout or config.PROBE_TIMEOUT)
    try:
        resp = http.post(url, params={"key": key}, json=payload)
        if resp.status_code >= 400:
            raise ProbeFailure(f"HTTP {resp.status_code}: {resp.text.strip()}")
        data = resp.json()
    finally:
        if owns_client:
            http.close()
    return _extract_text(data)


def _extract_text(data: Any) -> str:
    if not isinstance(data, dict):
        raise ProbeFailure("unexpected response shape")
    candidates = data.get("candidates") or [{}]
    parts = (candidates[0] or {}).get("content", {}).get("parts", [])
    return str(parts[0].get("text", "")) if parts else ""


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def probe_generative_service(
    *,
    api_key: str | None = None,
    model: str | None = None,
    timeout: float | None = None,
    client: httpx.Client | None = None,
) -> ProbeResult:
    """Healthy only when a 2xx response carries the expected token.

    Every failure, including timeouts, becomes an ``error`` result whose
    message is truncated and scrubbed of the credential.
    """
    key = resolve_api_key() if api_key is None else api_key
    chosen_model = model or config.PROBE_MODEL
    detail: dict[str, Any] = {"model": chosen_model}
    try:
        text = generate_text(
            config.PROBE_PROMPT,
            api_key=key,
            model=chosen_model,
            timeout=timeout,
            client=client,
        )
        if not text.strip():
            raise ProbeFailure("empty response text")
        if config.PROBE_EXPECTED_TOKEN not in text.strip().lower():
            raise ProbeFailure(f"unexpected response: {text.strip()}")
    except ConfigurationError as exc:
        return _unhealthy("sdk.missing_api_key", str(exc), detail)
    except httpx.TimeoutException as exc:
        return _unhealthy("sdk.timeout", f"timed out: {_scrub(exc, key)}", detail)
    except Exception as exc:
        log.warning("Generative service probe failed: %s", type(exc).__name__)
        return _unhealthy("sdk.probe_failed", _scrub(exc, key), detail)

    detail["response"] = truncate(text.strip(), config.ERROR_TRUNCATE)
    return ProbeResult(
        name=PROBE_SDK,
        status="ok",
        message=f"Live probe OK ({chosen_model}).",
        detail=detail,
    )


def _scrub(exc: BaseException, key: str) -> str:
    text = str(exc) or type(exc).__name__
    if key:
        text = text.replace(key, "***")
    return truncate(text, config.ERROR_TRUNCATE)


def _unhealthy(code: str, error: str, detail: dict[str, Any]) -> ProbeResult:
    return ProbeResult(
        name=PROBE_SDK,
        status="error",
        message=f"Live probe failed: {error}",
        findings=(ProbeFinding(code=code, message=error, severity="error"),),
        detail={**detail, "error": error},
    )
