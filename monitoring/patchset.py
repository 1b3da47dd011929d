"""Versioned (matcher, replacement) rules evaluated as pure functions on text.

Nothing here touches the filesystem; ``monitoring.remediation`` decides
whether a rewritten text is ever written back.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal

import yaml

import config
from monitoring._base import RewriteError

log = logging.getLogger(__name__)

RuleMode = Literal["substring", "line"]

_IMPORT_SPEC_RE = re.compile(r"""import\s+\{[^}]+\}\s+from\s+['"][^'"]+['"];?""")


@dataclass(frozen=True)
class PatchRule:
    rule_id: str
    match: str
    replace: str
    mode: RuleMode = "substring"
    legacy_identifiers: tuple[str, ...] = ()
    import_statement: str = ""

    def matches(self, line: str) -> bool:
        return self.match in line

    def outputs(self) -> list[str]:
        return [text for text in (self.replace, self.import_statement) if text]


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: tuple[PatchRule, ...]


@dataclass(frozen=True)
class LineFix:
    line: int
    before: str
    after: str
    rule_ids: tuple[str, ...]


@dataclass
class PatchOutcome:
    text: str
    fixes: list[LineFix] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.fixes)


def validate_rules(rules: Iterable[PatchRule]) -> tuple[PatchRule, ...]:
    """Reject rule sets whose replacement text would itself be matched again."""
    items = tuple(rules)
    seen: set[str] = set()
    for rule in items:
        if not rule.rule_id or not rule.match:
            raise ValueError(f"rule is missing id or match: {rule!r}")
        if rule.rule_id in seen:
            raise ValueError(f"duplicate rule id: {rule.rule_id}")
        seen.add(rule.rule_id)
        if rule.mode not in ("substring", "line"):
            raise ValueError(f"{rule.rule_id}: unsupported mode {rule.mode!r}")
        for output in rule.outputs():
            for other in items:
                if other.match in output:
                    raise ValueError(
                        f"{rule.rule_id}: replacement {output!r} matches rule {other.rule_id}"
                    )
    return items


def load_rules(path: Path | None = None) -> RuleSet:
    target = Path(path or config.PATCH_RULES_FILE)
    try:
        payload = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValueError(f"cannot load patch rules from {target}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"patch rules in {target} must be a mapping")

    rules = []
    for row in payload.get("rules", []) or []:
        if not isinstance(row, dict):
            continue
        rules.append(
            PatchRule(
                rule_id=str(row.get("id", "")).strip(),
                match=str(row.get("match", "")),
                replace=str(row.get("replace", "")),
                mode=str(row.get("mode", "substring")).strip().lower(),  # type: ignore[arg-type]
                legacy_identifiers=tuple(str(x) for x in row.get("legacy_identifiers", []) or []),
                import_statement=str(row.get("import_statement", "") or ""),
            )
        )
    return RuleSet(version=str(payload.get("version", "0")), rules=validate_rules(rules))


def line_matches(line: str, rules: Iterable[PatchRule]) -> list[PatchRule]:
    return [rule for rule in rules if rule.matches(line)]


def rewrite_line(line: str, rules: Iterable[PatchRule]) -> tuple[str, list[str], list[str]]:
    """Apply every matching rule to one line. Returns (new_line, rule_ids, notes)."""
    rule_list = tuple(rules)
    current = line
    applied: list[str] = []
    notes: list[str] = []
    for rule in rule_list:
        if not rule.matches(current):
            continue
        if rule.mode == "line":
            indent = current[: len(current) - len(current.lstrip())]
            current = indent + rule.replace
        else:
            current = current.replace(rule.match, rule.replace)
            if rule.import_statement and any(ident in line for ident in rule.legacy_identifiers):
                current, count = _IMPORT_SPEC_RE.subn(rule.import_statement, current, count=1)
                if count:
                    notes.append(f"{rule.rule_id}: replaced legacy clients with the modern client")
        applied.append(rule.rule_id)

    leftover = line_matches(current, rule_list)
    if leftover:
        raise RewriteError(
            f"rewrite still matches {', '.join(r.rule_id for r in leftover)}: {current.strip()!r}"
        )
    return current, applied, notes


def apply_rules(text: str, rules: Iterable[PatchRule]) -> PatchOutcome:
    """Rewrite every matching line of ``text``. Unrewritable lines are left as-is."""
    rule_list = tuple(rules)
    lines = text.split("\n")
    outcome = PatchOutcome(text=text)
    for index, line in enumerate(lines):
        if not line_matches(line, rule_list):
            continue
        try:
            new_line, applied, notes = rewrite_line(line, rule_list)
        except RewriteError as exc:
            outcome.notes.append(f"line {index + 1}: {exc}")
            continue
        outcome.notes.extend(f"line {index + 1}: {note}" for note in notes)
        if new_line != line:
            lines[index] = new_line
            outcome.fixes.append(
                LineFix(
                    line=index + 1,
                    before=line.strip(),
                    after=new_line.strip(),
                    rule_ids=tuple(applied),
                )
            )
    outcome.text = "\n".join(lines)
    return outcome
