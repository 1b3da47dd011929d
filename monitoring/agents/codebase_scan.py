"""Codebase scan: deprecated generative-AI SDK call patterns in the source tree."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Iterable, Iterator

import config
from monitoring._base import PROBE_CODEBASE, ProbeFinding, ProbeResult
from monitoring.patchset import PatchRule, line_matches, load_rules

log = logging.getLogger(__name__)

_SNIPPET_LIMIT = 160


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def scan_codebase(
    source_dir: Path | None = None,
    *,
    rules: Iterable[PatchRule] | None = None,
    manifest_path: Path | None = None,
) -> ProbeResult:
    """Collect ``(file, line, snippet)`` for every line matching a patch rule."""
    root = Path(source_dir or config.SOURCE_DIR)
    rule_list = tuple(rules) if rules is not None else load_rules().rules
    findings: list[ProbeFinding] = []

    if not root.is_dir():
        findings.append(
            ProbeFinding(
                code="codebase.source_dir_missing",
                message=f"Source directory not found: {root}",
                severity="warn",
            )
        )
        return ProbeResult(
            name=PROBE_CODEBASE,
            status="warn",
            message="Source directory not found; nothing scanned.",
            findings=tuple(findings),
            detail={"deprecated_references": 0, "matches": [], "files_scanned": 0},
        )

    matches: list[dict] = []
    files_scanned = 0
    unreadable = 0
    for path in iter_source_files(root):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            log.debug("Skipping unreadable source file %s", path, exc_info=True)
            unreadable += 1
            continue
        files_scanned += 1
        for line_no, line in enumerate(text.split("\n"), start=1):
            hits = line_matches(line, rule_list)
            if not hits:
                continue
            matches.append(
                {
                    "file": _relative(path, root),
                    "line": line_no,
                    "snippet": line.strip()[:_SNIPPET_LIMIT],
                    "rules": [rule.rule_id for rule in hits],
                }
            )

    for match in matches:
        findings.append(
            ProbeFinding(
                code="codebase.deprecated_pattern",
                message=f"{match['file']}:{match['line']} {match['snippet']}",
                severity="warn",
                fixable=True,
                detail=match,
            )
        )

    legacy_sections = manifest_legacy_sections(manifest_path)
    if legacy_sections:
        findings.append(
            ProbeFinding(
                code="codebase.legacy_dependency",
                message=f"{config.LEGACY_SDK_PACKAGE} declared in {', '.join(legacy_sections)}",
                severity="warn",
                fixable=True,
            )
        )

    files_with_matches = len({m["file"] for m in matches})
    if not findings:
        message = "No legacy SDK references found."
    elif matches:
        message = f"Found {len(matches)} deprecated reference(s) in {files_with_matches} file(s)."
    else:
        message = "Legacy SDK package still declared in the manifest."

    return ProbeResult(
        name=PROBE_CODEBASE,
        status="warn" if findings else "ok",
        message=message,
        findings=tuple(findings),
        detail={
            "deprecated_references": len(matches),
            "matches": matches,
            "files_scanned": files_scanned,
            "unreadable_files": unreadable,
        },
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def iter_source_files(
    root: Path,
    *,
    extensions: Iterable[str] | None = None,
    skip_dirs: Iterable[str] | None = None,
) -> Iterator[Path]:
    exts = tuple(extensions or config.SCAN_EXTENSIONS)
    skipped = frozenset(skip_dirs or config.SCAN_SKIP_DIRS)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skipped)
        for filename in sorted(filenames):
            if filename.endswith(exts):
                yield Path(dirpath) / filename


def manifest_legacy_sections(manifest_path: Path | None = None) -> list[str]:
    """Dependency sections of package.json that still declare the legacy SDK."""
    path = Path(manifest_path or config.PACKAGE_MANIFEST)
    if not path.exists():
        return []
    try:
        manifest = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        log.warning("Could not parse %s", path, exc_info=True)
        return []
    if not isinstance(manifest, dict):
        return []
    return [
        section
        for section in ("dependencies", "devDependencies")
        if isinstance(manifest.get(section), dict) and config.LEGACY_SDK_PACKAGE in manifest[section]
    ]


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()
