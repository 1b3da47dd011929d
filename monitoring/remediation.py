"""Repair engine: source rewrites, env-file patches, and the package manifest.

The fix list is computed from the same pure planning step in dry-run and in a
real run; only the final write differs. Source files are written back only
when ``config.ALLOW_SOURCE_WRITES`` is set; otherwise source changes are
reported as previews and never counted as fixes.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from dotenv import set_key

import config
from monitoring._base import RewriteError
from monitoring.agents.codebase_scan import iter_source_files
from monitoring.agents.environment import (
    ACTION_CREATE_FILE,
    ACTION_SET_PLACEHOLDER,
    ACTION_SYNC,
    read_env_file,
    resolve_key,
    validate_environment,
)
from monitoring.patchset import PatchRule, apply_rules, load_rules
from utils import atomic_write

log = logging.getLogger(__name__)

KIND_SOURCE = "source"
KIND_ENV = "env"
KIND_MANIFEST = "manifest"


@dataclass(frozen=True)
class Fix:
    kind: str
    target: str
    description: str
    line: int | None = None
    before: str = ""
    after: str = ""

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "target": self.target,
            "description": self.description,
        }
        if self.line is not None:
            payload.update({"line": self.line, "before": self.before, "after": self.after})
        return payload


@dataclass
class RepairResult:
    dry_run: bool
    fixes: list[Fix] = field(default_factory=list)
    previews: list[Fix] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "fix_count": len(self.fixes),
            "fixes": [fix.as_dict() for fix in self.fixes],
            "previews": [fix.as_dict() for fix in self.previews],
            "notes": list(self.notes),
        }


class RepairEngine:
    def __init__(
        self,
        *,
        source_dir: Path | None = None,
        env_file: Path | None = None,
        manifest_path: Path | None = None,
        rules: Iterable[PatchRule] | None = None,
        allow_source_writes: bool | None = None,
    ):
        self.source_dir = Path(source_dir or config.SOURCE_DIR)
        self.env_file = Path(env_file or config.ENV_FILE)
        self.manifest_path = Path(manifest_path or config.PACKAGE_MANIFEST)
        self._rules = tuple(rules) if rules is not None else None
        self.allow_source_writes = (
            config.ALLOW_SOURCE_WRITES if allow_source_writes is None else allow_source_writes
        )

    @property
    def rules(self) -> tuple[PatchRule, ...]:
        if self._rules is None:
            self._rules = load_rules().rules
        return self._rules

    def apply(self, dry_run: bool = True) -> RepairResult:
        result = RepairResult(dry_run=dry_run)
        self._patch_sources(result)
        self._patch_env(result)
        self._patch_manifest(result)
        log.info(
            "Repair %s: %d fix(es), %d preview(s), %d note(s)",
            "dry-run" if dry_run else "run",
            len(result.fixes),
            len(result.previews),
            len(result.notes),
        )
        return result

    def apply_env(self, dry_run: bool = True) -> RepairResult:
        result = RepairResult(dry_run=dry_run)
        self._patch_env(result)
        return result

    # ------------------------------------------------------------------
    # Source tree
    # ------------------------------------------------------------------

    def _patch_sources(self, result: RepairResult) -> None:
        if not self.source_dir.is_dir():
            result.notes.append(f"Source directory not found: {self.source_dir}")
            return

        previewed = 0
        for path in iter_source_files(self.source_dir):
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                log.debug("Skipping unreadable source file %s", path, exc_info=True)
                continue
            outcome = apply_rules(text, self.rules)
            rel = path.relative_to(self.source_dir).as_posix()
            result.notes.extend(f"{rel} {note}" for note in outcome.notes)
            if not outcome.changed:
                continue

            fixes = [
                Fix(
                    kind=KIND_SOURCE,
                    target=rel,
                    description=f"rewrite ({', '.join(fix.rule_ids)})",
                    line=fix.line,
                    before=fix.before,
                    after=fix.after,
                )
                for fix in outcome.fixes
            ]
            if not self.allow_source_writes:
                result.previews.extend(fixes)
                previewed += len(fixes)
                continue
            if not result.dry_run:
                try:
                    self._write_source(path, outcome.text)
                except RewriteError as exc:
                    result.notes.append(str(exc))
                    continue
            result.fixes.extend(fixes)

        if previewed:
            result.notes.append(
                f"Source rewrites disabled (SELFREPAIR_ALLOW_SOURCE_WRITES); "
                f"{previewed} change(s) previewed only."
            )

    def _write_source(self, path: Path, text: str) -> None:
        try:
            atomic_write(path, text)
        except OSError as exc:
            raise RewriteError(f"cannot rewrite {path}: {exc}") from exc
        log.info("Rewrote deprecated SDK calls in %s", path)

    # ------------------------------------------------------------------
    # Env file
    # ------------------------------------------------------------------

    def _patch_env(self, result: RepairResult) -> None:
        probe = validate_environment(self.env_file)
        target = self.env_file.name
        for finding in probe.findings:
            if not finding.fixable:
                continue
            action = finding.detail.get("action")
            key = str(finding.detail.get("key", ""))
            if action == ACTION_CREATE_FILE:
                fix = Fix(KIND_ENV, target, f"create {target}")
            elif action == ACTION_SET_PLACEHOLDER:
                fix = Fix(KIND_ENV, target, f"append {key} with placeholder value")
            elif action == ACTION_SYNC:
                fix = Fix(KIND_ENV, target, f"sync {key} from {finding.detail.get('from')}")
            else:
                continue

            if not result.dry_run:
                try:
                    self._apply_env_action(action, key, str(finding.detail.get("from", "")))
                except RewriteError as exc:
                    result.notes.append(str(exc))
                    continue
            result.fixes.append(fix)

    def _apply_env_action(self, action: str, key: str, source_key: str) -> None:
        try:
            self.env_file.parent.mkdir(parents=True, exist_ok=True)
            self.env_file.touch(exist_ok=True)
            if action == ACTION_SET_PLACEHOLDER:
                set_key(str(self.env_file), key, config.PLACEHOLDER_VALUE, quote_mode="never")
            elif action == ACTION_SYNC:
                value = resolve_key((source_key,), read_env_file(self.env_file)).value
                if not value:
                    raise RewriteError(f"cannot sync {key}: {source_key} is empty")
                set_key(str(self.env_file), key, value, quote_mode="never")
        except OSError as exc:
            raise RewriteError(f"cannot patch {self.env_file}: {exc}") from exc

    # ------------------------------------------------------------------
    # Package manifest
    # ------------------------------------------------------------------

    def _patch_manifest(self, result: RepairResult) -> None:
        if not self.manifest_path.exists():
            result.notes.append(f"{self.manifest_path.name} not found; manifest left unchanged")
            return
        try:
            manifest = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            result.notes.append(f"cannot parse {self.manifest_path.name}: {exc}")
            return
        if not isinstance(manifest, dict):
            result.notes.append(f"{self.manifest_path.name} is not a JSON object")
            return

        target = self.manifest_path.name
        legacy = config.LEGACY_SDK_PACKAGE
        modern = config.MODERN_SDK_PACKAGE
        fixes: list[Fix] = []
        for section in ("dependencies", "devDependencies"):
            deps = manifest.get(section)
            if isinstance(deps, dict) and legacy in deps:
                del deps[legacy]
                fixes.append(Fix(KIND_MANIFEST, target, f"remove {legacy} from {section}"))
        if not fixes:
            return

        deps = manifest.setdefault("dependencies", {})
        if not isinstance(deps, dict):
            result.notes.append(f"{target}: dependencies is not an object")
            return
        dev_deps = manifest.get("devDependencies") or {}
        if modern not in deps and modern not in dev_deps:
            deps[modern] = config.MODERN_SDK_VERSION
            fixes.append(
                Fix(KIND_MANIFEST, target, f"add {modern}@{config.MODERN_SDK_VERSION} to dependencies")
            )

        if not result.dry_run:
            try:
                atomic_write(self.manifest_path, json.dumps(manifest, indent=2) + "\n")
            except OSError as exc:
                result.notes.append(f"cannot write {self.manifest_path}: {exc}")
                return
        result.fixes.extend(fixes)
