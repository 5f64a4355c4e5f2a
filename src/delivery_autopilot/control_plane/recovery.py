"""
Recovery planning for the campaign driver.

Maps the failure streak and stall counter to an escalation tier, and a tier plus
current blocking signals to the remediation plan applied on the next cycle.
Root-cause categorization is diagnostic only and never feeds back into tier
selection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

from delivery_autopilot.providers.diagnostics import ProviderIssueType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from delivery_autopilot.control_plane.signals import BlockingSignals


class RecoveryTier(StrEnum):
    NONE = "none"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"
    TIER4 = "tier4"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]


_TIER_LEVELS: Final[dict[RecoveryTier, int]] = {
    RecoveryTier.NONE: 0,
    RecoveryTier.TIER1: 1,
    RecoveryTier.TIER2: 2,
    RecoveryTier.TIER3: 3,
    RecoveryTier.TIER4: 4,
}


class RootCause(StrEnum):
    INVALID_DEPENDENCY_VERSIONS = "invalid_or_unavailable_dependency_versions"
    MISSING_RUNTIME_DEPENDENCIES = "missing_runtime_dependencies_after_failed_install"
    MISSING_SMOKE_VALIDATION = "missing_smoke_validation_script"
    PROVIDER_NON_CONTRACTUAL_RESPONSE = "provider_non_contractual_response"
    PROVIDER_QUOTA_EXHAUSTED = "provider_quota_or_capacity_exhausted"
    PROVIDER_PROMPT_OVERFLOW = "provider_cli_prompt_length_overflow"


@dataclass(frozen=True, slots=True)
class RecoveryPlan:
    tier: RecoveryTier
    additional_instructions: tuple[str, ...] = ()
    force_restart_next_cycle: bool = False
    compact_payloads: bool = False
    action: str = "no-op"

    @property
    def is_empty(self) -> bool:
        return self.tier is RecoveryTier.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "additional_instructions": list(self.additional_instructions),
            "force_restart_next_cycle": self.force_restart_next_cycle,
            "compact_payloads": self.compact_payloads,
            "action": self.action,
        }


def resolve_tier(failure_streak: int, stalled_cycles: int) -> RecoveryTier:
    """Escalation tier; non-decreasing in both arguments."""

    if failure_streak >= 5 or stalled_cycles >= 4:
        return RecoveryTier.TIER4
    if failure_streak >= 4 or stalled_cycles >= 3:
        return RecoveryTier.TIER3
    if failure_streak >= 2 or stalled_cycles >= 2:
        return RecoveryTier.TIER2
    if failure_streak >= 1:
        return RecoveryTier.TIER1
    return RecoveryTier.NONE


_TIER_INSTRUCTIONS: Final[dict[RecoveryTier, tuple[str, ...]]] = {
    RecoveryTier.TIER4: (
        "Recovery tier4: perform a deep rebuild with strict stage gate enforcement and "
        "regenerate artifacts before writing code.",
        "Resolve blockers from the lifecycle report and run status first, then continue "
        "toward release with full quality evidence.",
    ),
    RecoveryTier.TIER3: (
        "Recovery tier3: convert unresolved blockers into prioritized P0/P1 stories and "
        "implement every P0 immediately.",
        "Re-run quality gates after each fix and return a strict JSON-only file payload.",
    ),
    RecoveryTier.TIER2: (
        "Recovery tier2: focus only on failing gates and missing artifacts; do not expand scope.",
        "Deliver minimal high-confidence edits that close blockers.",
    ),
    RecoveryTier.TIER1: (
        "Recovery tier1: fix blocking failures first and keep the release path aligned "
        "with the mandatory stages.",
    ),
}

_TIER_ACTIONS: Final[dict[RecoveryTier, str]] = {
    RecoveryTier.TIER4: "tier4 deep recovery + forced create",
    RecoveryTier.TIER3: "tier3 strict remediation",
    RecoveryTier.TIER2: "tier2 gate-focused remediation",
    RecoveryTier.TIER1: "tier1 recovery prompt boost",
}

_BLOCKER_HINTS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"missing dependency|cannot find module|preset ts-jest not found"
            r"|eslint couldn't find the plugin|eresolve|peer dependency"
        ),
        "Dependency remediation: align declared dependencies with imports and tool presets, "
        "then run a clean install and regenerate the lockfile.",
    ),
    (
        re.compile(
            r'unknown option "collectcoverage"|setupfilesafterenv option was not found'
            r"|jest config uses ts-jest"
        ),
        "Test configuration remediation: match the test runner configuration to the installed "
        "tooling, remove invalid options, and make sure referenced setup files exist.",
    ),
    (
        re.compile(r"missing smoke script|smoke/e2e|npm run smoke"),
        "Quality gate remediation: add a runnable smoke/e2e script and keep it green in "
        "lifecycle validation.",
    ),
    (
        re.compile(r"vision\.md is incomplete|architecture\.md.*incomplete|placeholder content"),
        "Documentation remediation: regenerate missing or incomplete docs with concrete "
        "architecture, mission, vision and integration details (no placeholders).",
    ),
    (
        re.compile(r'"npm" no se reconoce|not recognized as an internal or external command'),
        "Windows runtime remediation: invoke package-manager shims explicitly (npm.cmd) and "
        "avoid scripts that re-enter the same top-level build command.",
    ),
)

_ROOT_CAUSE_PATTERNS: Final[tuple[tuple[re.Pattern[str], RootCause], ...]] = (
    (
        re.compile(r"etarget|no matching version found|npm error 404"),
        RootCause.INVALID_DEPENDENCY_VERSIONS,
    ),
    (
        re.compile(
            r"no se reconoce como un comando interno o externo"
            r"|not recognized as an internal or external command"
        ),
        RootCause.MISSING_RUNTIME_DEPENDENCIES,
    ),
    (re.compile(r"missing smoke|smoke/e2e"), RootCause.MISSING_SMOKE_VALIDATION),
    (
        re.compile(
            r"write_file|cannot directly create or modify files|unable to fulfill this request"
        ),
        RootCause.PROVIDER_NON_CONTRACTUAL_RESPONSE,
    ),
)

_RECOMMENDATIONS: Final[dict[RootCause, str]] = {
    RootCause.PROVIDER_PROMPT_OVERFLOW: (
        "keep provider prompts compact and cap prompt size passed on the command line"
    ),
    RootCause.INVALID_DEPENDENCY_VERSIONS: (
        "replace unavailable package versions and re-run install/test/build gates"
    ),
    RootCause.PROVIDER_NON_CONTRACTUAL_RESPONSE: (
        "retry with strict JSON-only contract and minimal file patch prompt"
    ),
    RootCause.MISSING_RUNTIME_DEPENDENCIES: (
        "block progression until install succeeds and required binaries are available"
    ),
    RootCause.MISSING_SMOKE_VALIDATION: (
        "add a smoke validation script and wire it into the lifecycle gates"
    ),
    RootCause.PROVIDER_QUOTA_EXHAUSTED: (
        "rotate to a fallback model or wait for the provider quota window to reset"
    ),
}


def derive_blocker_hints(blockers: Sequence[str]) -> tuple[str, ...]:
    joined = "\n".join(blockers).lower()
    hints: list[str] = []
    for pattern, hint in _BLOCKER_HINTS:
        if pattern.search(joined) and hint not in hints:
            hints.append(hint)
    return tuple(hints)


def build_plan(tier: RecoveryTier, signals: BlockingSignals) -> RecoveryPlan:
    if tier is RecoveryTier.NONE:
        return RecoveryPlan(tier=tier)
    summary = " | ".join(signals.blockers[:5]) or "none"
    return RecoveryPlan(
        tier=tier,
        additional_instructions=_TIER_INSTRUCTIONS[tier] + derive_blocker_hints(signals.blockers),
        force_restart_next_cycle=tier is RecoveryTier.TIER4,
        compact_payloads=tier.level >= RecoveryTier.TIER2.level,
        action=f"{_TIER_ACTIONS[tier]}. blockers={summary}",
    )


def categorize_root_causes(
    blockers: Sequence[str],
    provider_issue: ProviderIssueType,
) -> tuple[RootCause, ...]:
    """Independent, de-duplicated cause tags; zero or more may apply."""

    joined = "\n".join(blockers).lower()
    causes: list[RootCause] = [
        cause for pattern, cause in _ROOT_CAUSE_PATTERNS if pattern.search(joined)
    ]
    if provider_issue is ProviderIssueType.QUOTA:
        causes.append(RootCause.PROVIDER_QUOTA_EXHAUSTED)
    if provider_issue is ProviderIssueType.COMMAND_TOO_LONG:
        causes.append(RootCause.PROVIDER_PROMPT_OVERFLOW)
    return tuple(dict.fromkeys(causes))


def recommendations_for(causes: Sequence[RootCause]) -> tuple[str, ...]:
    ordered = [cause for cause in _RECOMMENDATIONS if cause in causes]
    return tuple(_RECOMMENDATIONS[cause] for cause in ordered)


__all__ = [
    "RecoveryPlan",
    "RecoveryTier",
    "RootCause",
    "build_plan",
    "categorize_root_causes",
    "derive_blocker_hints",
    "recommendations_for",
    "resolve_tier",
]
