"""Environment validation: credential presence and private/public consistency.

Values resolve from the local override file first, then the process
environment. Findings carry the repair action that would fix them; values
themselves never leave this module.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values

import config
from monitoring._base import PROBE_ENVIRONMENT, ProbeFinding, ProbeResult

log = logging.getLogger(__name__)

ACTION_CREATE_FILE = "create_file"
ACTION_SET_PLACEHOLDER = "set_placeholder"
ACTION_SYNC = "sync"


@dataclass(frozen=True)
class ResolvedKey:
    name: str
    value: str
    source: str  # "file", "process" or "" when unset


def split_aliases(raw: str) -> tuple[str, ...]:
    return tuple(name.strip() for name in raw.split("|") if name.strip())


def read_env_file(env_file: Path | None = None) -> dict[str, str]:
    path = Path(env_file or config.ENV_FILE)
    if not path.exists():
        return {}
    return {key: value for key, value in dotenv_values(path).items() if value is not None}


def resolve_key(
    aliases: Iterable[str],
    file_values: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> ResolvedKey:
    """First non-empty alias, checking the file layer before the process layer."""
    names = tuple(aliases)
    env = os.environ if environ is None else environ
    for name in names:
        if file_values.get(name, "").strip():
            return ResolvedKey(name, file_values[name].strip(), "file")
    for name in names:
        if str(env.get(name, "")).strip():
            return ResolvedKey(name, str(env[name]).strip(), "process")
    return ResolvedKey(names[0] if names else "", "", "")


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def validate_environment(
    env_file: Path | None = None,
    *,
    pairs: Iterable[tuple[str, str]] | None = None,
    required: Iterable[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProbeResult:
    path = Path(env_file or config.ENV_FILE)
    file_exists = path.exists()
    file_values = read_env_file(path)
    findings: list[ProbeFinding] = []
    presence: dict[str, bool] = {}

    if not file_exists:
        findings.append(
            ProbeFinding(
                code="env.file_missing",
                message=f"{path.name} missing",
                fixable=True,
                detail={"action": ACTION_CREATE_FILE, "file": str(path)},
            )
        )

    for private_spec, public_spec in (config.CREDENTIAL_PAIRS if pairs is None else pairs):
        private = resolve_key(split_aliases(private_spec), file_values, environ)
        public = resolve_key(split_aliases(public_spec), file_values, environ)
        presence[private.name] = bool(private.value)
        presence[public.name] = bool(public.value)
        findings.extend(_pair_findings(private, public))

    for name in (config.REQUIRED_KEYS if required is None else required):
        resolved = resolve_key((name,), file_values, environ)
        presence[name] = bool(resolved.value)
        if not resolved.value:
            findings.append(
                ProbeFinding(
                    code="env.missing_required",
                    message=f"Missing {name}",
                    fixable=True,
                    detail={"action": ACTION_SET_PLACEHOLDER, "key": name},
                )
            )
        elif resolved.value == config.PLACEHOLDER_VALUE:
            findings.append(_placeholder_finding(name))

    if findings:
        message = f"Detected {len(findings)} issue(s)."
    else:
        message = "Environment healthy."

    return ProbeResult(
        name=PROBE_ENVIRONMENT,
        status="warn" if findings else "ok",
        message=message,
        findings=tuple(findings),
        detail={"file": str(path), "file_exists": file_exists, "keys": presence},
    )


def _pair_findings(private: ResolvedKey, public: ResolvedKey) -> list[ProbeFinding]:
    if not private.value and not public.value:
        return [
            ProbeFinding(
                code="env.missing_private",
                message=f"Missing {private.name}",
                fixable=True,
                detail={"action": ACTION_SET_PLACEHOLDER, "key": private.name},
            )
        ]
    if not private.value:
        return [
            ProbeFinding(
                code="env.missing_private",
                message=f"{private.name} missing, syncing it from {public.name}",
                fixable=True,
                detail={"action": ACTION_SYNC, "key": private.name, "from": public.name},
            )
        ]

    if private.value == config.PLACEHOLDER_VALUE:
        # Placeholders are never copied into the public key.
        return [_placeholder_finding(private.name)]

    findings: list[ProbeFinding] = []
    if not public.value:
        findings.append(
            ProbeFinding(
                code="env.missing_public",
                message=f"{public.name} missing, syncing it",
                fixable=True,
                detail={"action": ACTION_SYNC, "key": public.name, "from": private.name},
            )
        )
    elif public.value != private.value:
        findings.append(
            ProbeFinding(
                code="env.mismatch",
                message=f"{public.name} does not match {private.name}",
                fixable=True,
                detail={"action": ACTION_SYNC, "key": public.name, "from": private.name},
            )
        )
    return findings


def _placeholder_finding(name: str) -> ProbeFinding:
    # Not fixable: only an operator can supply the real value.
    return ProbeFinding(
        code="env.placeholder",
        message=f"{name} still holds the placeholder value",
        detail={"key": name},
    )
