"""Remediation hints mined from run-status diagnostics and failed lifecycle steps."""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Final

from delivery_autopilot.constants import RUN_STATUS_FILE
from delivery_autopilot.control_plane.signals import read_lifecycle_steps, read_run_status_blockers
from delivery_autopilot.utils.fs import read_json_object

if TYPE_CHECKING:
    from collections.abc import Iterable

    from delivery_autopilot.utils.fs import PathLike

MAX_DIAGNOSTICS: Final[int] = 20
MAX_HINTS: Final[int] = 8
MAX_FAILED_STEPS: Final[int] = 6
STEP_OUTPUT_PREVIEW_CHARS: Final[int] = 240

_NOT_RECOGNIZED: Final[tuple[str, ...]] = ("not recognized", "no se reconoce")

# (all substrings that must be present, hint)
_SUBSTRING_RULES: Final[tuple[tuple[tuple[str, ...], str], ...]] = (
    (
        ("no matching version found",),
        "Replace dependency versions that do not exist on the registry with published ones.",
    ),
    (
        ("ts-jest",),
        "Add ts-jest and typescript dependencies or convert tests to JavaScript consistently.",
    ),
    (
        ("typescript tests detected",),
        "Add ts-jest and typescript dependencies or convert tests to JavaScript consistently.",
    ),
    (
        ("jest-environment-jsdom",),
        "Add jest-environment-jsdom to devDependencies when testEnvironment is jsdom.",
    ),
    (
        ("missing smoke/e2e",),
        "Add a real smoke/e2e script and keep it cross-platform.",
    ),
    (
        ("shell-only path",),
        "Replace shell-only scripts with portable scripts that run on Windows and macOS.",
    ),
    (("missing readme",), "Add README sections: Features, Run, Testing, Release."),
    (("missing mission.md",), "Add mission.md with a concrete business objective."),
    (("missing vision.md",), "Add vision.md with growth and release direction."),
    (
        ("missing sql schema file",),
        "Add schema.sql documenting the relational model and constraints.",
    ),
    (
        ("provider response unusable",),
        "Provider output contract failed. Return a strict JSON files payload only and keep "
        "the response concise.",
    ),
    (
        ("did not return valid files",),
        "Provider output contract failed. Return a strict JSON files payload only and keep "
        "the response concise.",
    ),
    (
        ("ready for your command",),
        "Provider non-delivery detected. Retry with a compact prompt and a strict JSON-only "
        "contract.",
    ),
    (
        ("empty output",),
        "Provider non-delivery detected. Retry with a compact prompt and a strict JSON-only "
        "contract.",
    ),
)

_TOOL_HINTS: Final[dict[str, str]] = {
    "eslint": "Ensure eslint is installed as a devDependency and the lint script is runnable.",
    "jest": "Ensure jest is installed and configured and the test script runs locally.",
    "vite": "Ensure vite is installed as a devDependency and build scripts are valid.",
}

_MISSING_DEPENDENCY_RE: Final[re.Pattern[str]] = re.compile(
    r"missing dependency '([^']+)'", re.IGNORECASE
)
_QUOTED_MODULE_RE: Final[re.Pattern[str]] = re.compile(r"'([^']+)'|\"([^\"]+)\"")


def hints_from_diagnostics(diagnostics: Iterable[str]) -> list[str]:
    """Map diagnostic lines to de-duplicated hints, capped at ``MAX_HINTS``."""

    hints: dict[str, None] = {}
    for raw in diagnostics:
        line = raw.strip()
        if not line:
            continue
        lower = line.lower()
        for needles, hint in _SUBSTRING_RULES:
            if all(needle in lower for needle in needles):
                hints[hint] = None
        if any(marker in lower for marker in _NOT_RECOGNIZED):
            for tool, hint in _TOOL_HINTS.items():
                if tool in lower:
                    hints[hint] = None
        missing = _MISSING_DEPENDENCY_RE.search(line)
        if missing is not None:
            hints[f"Add missing dependency {missing.group(1)} and align imports."] = None
        if "cannot find module" in lower:
            quoted = _QUOTED_MODULE_RE.search(line)
            if quoted is not None:
                module = (quoted.group(1) or quoted.group(2) or "").strip()
                if module:
                    hint = f"Install or configure module {module} or remove the stale import."
                    hints[hint] = None
    return list(hints)[:MAX_HINTS]


def collect_diagnostics(project_root: PathLike) -> list[str]:
    diagnostics: list[str] = []
    run_status = read_json_object(Path(project_root) / RUN_STATUS_FILE)
    lifecycle = run_status.get("lifecycle") if run_status is not None else None
    if isinstance(lifecycle, dict) and isinstance(lifecycle.get("diagnostics"), list):
        diagnostics.extend(str(item) for item in lifecycle["diagnostics"] if item is not None)
    diagnostics.extend(read_run_status_blockers(project_root))
    failed = [step for step in read_lifecycle_steps(project_root) if step.get("ok") is not True]
    for step in failed[-MAX_FAILED_STEPS:]:
        command = str(step.get("command") or "step")
        output = str(step.get("output") or "")[:STEP_OUTPUT_PREVIEW_CHARS]
        diagnostics.append(f"{command}: {output}")
    return [line.strip() for line in diagnostics if line.strip()][:MAX_DIAGNOSTICS]


def collect_quality_feedback(project_root: PathLike) -> list[str]:
    return hints_from_diagnostics(collect_diagnostics(project_root))


__all__ = [
    "MAX_HINTS",
    "collect_diagnostics",
    "collect_quality_feedback",
    "hints_from_diagnostics",
]
