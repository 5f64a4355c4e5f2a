"""
delivery-autopilot — campaign telemetry

Purpose
- Persist the per-project ``CampaignState`` snapshot (atomic rewrite every cycle).
- Append campaign journal events and recovery audit records (JSON lines).
- Render a human-readable YAML debug report with root causes, recommendations
  and a small inventory of the generated project tree.

Functional requirements
- Reading a missing or corrupt state file yields ``None``; telemetry readers never raise.
- Journal entries are ``{at, event, details}``; audit entries carry the cycle,
  tier, action, outcome and a snapshot of the blocking signals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import yaml

from delivery_autopilot.constants import (
    CAMPAIGN_JOURNAL_FILE,
    CAMPAIGN_STATE_FILE,
    CAMPAIGN_STATE_SCHEMA_VERSION,
    DEBUG_REPORT_PATH,
    RECOVERY_AUDIT_FILE,
)
from delivery_autopilot.control_plane.recovery import categorize_root_causes, recommendations_for
from delivery_autopilot.utils.fs import (
    ProjectTree,
    append_json_line,
    atomic_write,
    read_json_lines,
    read_json_object,
    write_json_atomic,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from delivery_autopilot.control_plane.recovery import RecoveryTier
    from delivery_autopilot.control_plane.signals import BlockingSignals
    from delivery_autopilot.providers.diagnostics import ProviderIssueType
    from delivery_autopilot.utils.fs import PathLike

_GENERATED_APP_DIR: Final[str] = "generated-app"
_DOC_SUFFIXES: Final[frozenset[str]] = frozenset({".md", ".rst", ".adoc"})
_TEST_DIR_NAMES: Final[frozenset[str]] = frozenset({"tests", "test", "__tests__", "e2e"})


@dataclass(slots=True)
class CampaignState:
    """Snapshot of one project's campaign, rewritten after every cycle."""

    cycle: int = 0
    elapsed_minutes: float = 0.0
    target_stage: str = ""
    target_passed: bool = False
    stage_flags: dict[str, bool] = field(default_factory=dict)
    stall_count: int = 0
    failure_streak: int = 0
    recovery_tier: str = "none"
    running: bool = False
    owner_pid: int = 0
    phase: str = "idle"
    last_error: str = ""
    last_recovery_action: str = ""
    next_from_step: str = ""
    model: str = ""
    autonomous: bool = True
    updated_at: str = ""
    version: int = CAMPAIGN_STATE_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "cycle": self.cycle,
            "elapsed_minutes": self.elapsed_minutes,
            "target_stage": self.target_stage,
            "target_passed": self.target_passed,
            "stage_flags": dict(self.stage_flags),
            "stall_count": self.stall_count,
            "failure_streak": self.failure_streak,
            "recovery_tier": self.recovery_tier,
            "running": self.running,
            "owner_pid": self.owner_pid,
            "phase": self.phase,
            "last_error": self.last_error,
            "last_recovery_action": self.last_recovery_action,
            "next_from_step": self.next_from_step,
            "model": self.model,
            "autonomous": self.autonomous,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CampaignState:
        raw_flags = payload.get("stage_flags")
        flags = (
            {str(key): value is True for key, value in raw_flags.items()}
            if isinstance(raw_flags, dict)
            else {}
        )
        return cls(
            cycle=_int(payload.get("cycle")),
            elapsed_minutes=_float(payload.get("elapsed_minutes")),
            target_stage=_str(payload.get("target_stage")),
            target_passed=payload.get("target_passed") is True,
            stage_flags=flags,
            stall_count=_int(payload.get("stall_count")),
            failure_streak=_int(payload.get("failure_streak")),
            recovery_tier=_str(payload.get("recovery_tier")) or "none",
            running=payload.get("running") is True,
            owner_pid=_int(payload.get("owner_pid")),
            phase=_str(payload.get("phase")) or "idle",
            last_error=_str(payload.get("last_error")),
            last_recovery_action=_str(payload.get("last_recovery_action")),
            next_from_step=_str(payload.get("next_from_step")),
            model=_str(payload.get("model")),
            autonomous=payload.get("autonomous") is not False,
            updated_at=_str(payload.get("updated_at")),
        )


def _int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return 0


def _float(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    return float(value)


def _str(value: object) -> str:
    return value if isinstance(value, str) else ""


@dataclass(frozen=True, slots=True)
class ProjectInventory:
    total_files: int = 0
    test_files: int = 0
    doc_files: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_files": self.total_files,
            "test_files": self.test_files,
            "doc_files": self.doc_files,
        }


def inventory_project(project_root: PathLike) -> ProjectInventory:
    """Count files, test files and documentation files in the generated application."""

    root = Path(project_root)
    generated = root / _GENERATED_APP_DIR
    tree = ProjectTree(generated if generated.is_dir() else root)
    total = tests = docs = 0
    for record in tree:
        total += 1
        name = record.relative_path.name.lower()
        parents = {part.lower() for part in record.relative_path.parts[:-1]}
        if (
            parents & _TEST_DIR_NAMES
            or name.startswith("test_")
            or ".test." in name
            or ".spec." in name
            or name.endswith("_test.py")
        ):
            tests += 1
        elif record.relative_path.suffix.lower() in _DOC_SUFFIXES:
            docs += 1
    return ProjectInventory(total_files=total, test_files=tests, doc_files=docs)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CampaignTelemetry:
    """Per-project campaign files: state snapshot, journal, audit log and debug report."""

    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock

    def now_iso(self) -> str:
        return self._clock().isoformat()

    @staticmethod
    def state_path(project_root: PathLike) -> Path:
        return Path(project_root) / CAMPAIGN_STATE_FILE

    @staticmethod
    def journal_path(project_root: PathLike) -> Path:
        return Path(project_root) / CAMPAIGN_JOURNAL_FILE

    @staticmethod
    def audit_path(project_root: PathLike) -> Path:
        return Path(project_root) / RECOVERY_AUDIT_FILE

    @staticmethod
    def debug_report_path(project_root: PathLike) -> Path:
        return Path(project_root) / DEBUG_REPORT_PATH

    def read_state(self, project_root: PathLike) -> CampaignState | None:
        payload = read_json_object(self.state_path(project_root))
        if payload is None:
            return None
        return CampaignState.from_dict(payload)

    def write_state(self, project_root: PathLike, state: CampaignState) -> None:
        state.updated_at = self.now_iso()
        write_json_atomic(self.state_path(project_root), state.to_dict())

    def journal(self, project_root: PathLike, event: str, details: str = "") -> None:
        append_json_line(
            self.journal_path(project_root),
            {"at": self.now_iso(), "event": event, "details": details},
        )

    def read_journal(
        self, project_root: PathLike, *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        return read_json_lines(self.journal_path(project_root), limit=limit)

    def audit(
        self,
        project_root: PathLike,
        *,
        cycle: int,
        tier: RecoveryTier,
        action: str,
        outcome: str,
        signals: BlockingSignals,
    ) -> None:
        append_json_line(
            self.audit_path(project_root),
            {
                "at": self.now_iso(),
                "cycle": cycle,
                "tier": tier.value,
                "action": action,
                "outcome": outcome,
                "blocking_signals": list(signals.blockers),
                "lifecycle_fail_count": signals.lifecycle_fail_count,
                "stage_failures": list(signals.stage_failures),
            },
        )

    def write_debug_report(
        self,
        project_root: PathLike,
        *,
        cycle: int,
        elapsed_minutes: float,
        provider_issue: ProviderIssueType,
        signals: BlockingSignals,
        tier: RecoveryTier,
        action: str,
        model: str = "",
        next_from_step: str = "",
    ) -> dict[str, Any]:
        causes = categorize_root_causes(signals.blockers, provider_issue)
        report: dict[str, Any] = {
            "at": self.now_iso(),
            "cycle": cycle,
            "elapsed_minutes": elapsed_minutes,
            "provider_issue": provider_issue.value,
            "model": model,
            "next_from_step": next_from_step,
            "recovery_tier": tier.value,
            "recovery_action": action,
            "blockers": list(signals.blockers),
            "lifecycle_fail_count": signals.lifecycle_fail_count,
            "stage_failures": list(signals.stage_failures),
            "root_causes": [cause.value for cause in causes],
            "recommendations": list(recommendations_for(causes)),
            "inventory": inventory_project(project_root).to_dict(),
        }
        rendered = yaml.safe_dump(
            report,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
            width=120,
        )
        atomic_write(self.debug_report_path(project_root), rendered)
        return report


__all__ = [
    "CampaignState",
    "CampaignTelemetry",
    "ProjectInventory",
    "inventory_project",
]
