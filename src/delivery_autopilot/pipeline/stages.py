"""
delivery-autopilot — stage ledger

Purpose
- Track per-project progress through the fixed nine-stage delivery sequence.
- Gate entry into a stage on every earlier stage having passed.

Functional requirements
- A missing or corrupt ledger file loads as an all-pending ledger; loading never raises.
- ``mark`` records a state transition, appends history trimmed to the newest
  ``STAGE_HISTORY_LIMIT`` entries, and persists atomically.
- ``mark`` does not enforce ordering. Callers consult ``can_enter`` first; the
  ledger stores whatever it is told.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from delivery_autopilot.constants import (
    STAGE_HISTORY_LIMIT,
    STAGE_LEDGER_FILE,
    STAGE_LEDGER_SCHEMA_VERSION,
)
from delivery_autopilot.utils.fs import read_json_object, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from delivery_autopilot.utils.fs import PathLike


class Stage(StrEnum):
    """Fixed delivery stages in pipeline order."""

    DISCOVERY = "discovery"
    FUNCTIONAL_REQUIREMENTS = "functional_requirements"
    TECHNICAL_BACKLOG = "technical_backlog"
    IMPLEMENTATION = "implementation"
    QUALITY_VALIDATION = "quality_validation"
    ROLE_REVIEW = "role_review"
    RELEASE_CANDIDATE = "release_candidate"
    FINAL_RELEASE = "final_release"
    RUNTIME_START = "runtime_start"


class StageState(StrEnum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


class StageGateError(RuntimeError):
    """Raised when a stage is entered before its prerequisites passed."""

    def __init__(self, target: Stage, blocking_stage: Stage, blocking_state: StageState) -> None:
        self.target = target
        self.blocking_stage = blocking_stage
        self.blocking_state = blocking_state
        super().__init__(_gate_reason(target, blocking_stage, blocking_state))


@dataclass(frozen=True, slots=True)
class StageRecord:
    stage: Stage
    state: StageState
    at: str
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage.value,
            "state": self.state.value,
            "at": self.at,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StageRecord | None:
        stage = parse_stage(payload.get("stage"))
        state = _parse_state(payload.get("state"))
        at = payload.get("at")
        if stage is None or state is None or not isinstance(at, str):
            return None
        details = payload.get("details")
        return cls(
            stage=stage,
            state=state,
            at=at,
            details=details if isinstance(details, str) else None,
        )


@dataclass(slots=True)
class StageLedger:
    """Per-project stage states plus a bounded transition history."""

    stages: dict[Stage, StageState] = field(
        default_factory=lambda: {stage: StageState.PENDING for stage in STAGE_ORDER}
    )
    history: list[StageRecord] = field(default_factory=list)
    version: int = STAGE_LEDGER_SCHEMA_VERSION

    def state_of(self, stage: Stage) -> StageState:
        return self.stages.get(stage, StageState.PENDING)

    def passed(self, stage: Stage) -> bool:
        return self.state_of(stage) is StageState.PASSED

    def failed_stages(self) -> tuple[Stage, ...]:
        return tuple(stage for stage in STAGE_ORDER if self.state_of(stage) is StageState.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "stages": {stage.value: self.state_of(stage).value for stage in STAGE_ORDER},
            "history": [record.to_dict() for record in self.history],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StageLedger:
        ledger = cls()
        raw_stages = payload.get("stages")
        if isinstance(raw_stages, dict):
            for key, value in raw_stages.items():
                stage = parse_stage(key)
                state = _parse_state(value)
                if stage is not None and state is not None:
                    ledger.stages[stage] = state
        raw_history = payload.get("history")
        if isinstance(raw_history, list):
            for item in raw_history:
                if not isinstance(item, dict):
                    continue
                record = StageRecord.from_dict(item)
                if record is not None:
                    ledger.history.append(record)
        ledger.history = ledger.history[-STAGE_HISTORY_LIMIT:]
        return ledger


@dataclass(frozen=True, slots=True)
class GateDecision:
    ok: bool
    reason: str | None = None
    blocking_stage: Stage | None = None


def parse_stage(value: object) -> Stage | None:
    """Return the stage named by ``value`` or ``None`` for unknown names."""

    if isinstance(value, Stage):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Stage(value.strip().lower())
    except ValueError:
        return None


def _parse_state(value: object) -> StageState | None:
    if isinstance(value, StageState):
        return value
    if not isinstance(value, str):
        return None
    try:
        return StageState(value.strip().lower())
    except ValueError:
        return None


def _gate_reason(target: Stage, blocking_stage: Stage, blocking_state: StageState) -> str:
    return (
        f"Cannot enter {target.value}; prerequisite stage "
        f"{blocking_stage.value} is {blocking_state.value}."
    )


def can_enter(ledger: StageLedger, target: Stage) -> GateDecision:
    """Check that every stage before ``target`` has passed."""

    for stage in STAGE_ORDER[: STAGE_ORDER.index(target)]:
        state = ledger.state_of(stage)
        if state is not StageState.PASSED:
            return GateDecision(
                ok=False,
                reason=_gate_reason(target, stage, state),
                blocking_stage=stage,
            )
    return GateDecision(ok=True)


def require_entry(ledger: StageLedger, target: Stage) -> None:
    decision = can_enter(ledger, target)
    if not decision.ok and decision.blocking_stage is not None:
        blocking = decision.blocking_stage
        raise StageGateError(target, blocking, ledger.state_of(blocking))


def stage_rank(ledger: StageLedger) -> int:
    """Number of stages passed contiguously from the first stage."""

    rank = 0
    for stage in STAGE_ORDER:
        if not ledger.passed(stage):
            break
        rank += 1
    return rank


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class StageLedgerStore:
    """Load and persist stage ledgers stored at ``<project>/.stage-ledger.json``."""

    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock

    @staticmethod
    def ledger_path(project_root: PathLike) -> Path:
        return Path(project_root) / STAGE_LEDGER_FILE

    def load(self, project_root: PathLike) -> StageLedger:
        payload = read_json_object(self.ledger_path(project_root))
        if payload is None:
            return StageLedger()
        return StageLedger.from_dict(payload)

    def save(self, project_root: PathLike, ledger: StageLedger) -> None:
        write_json_atomic(self.ledger_path(project_root), ledger.to_dict())

    def mark(
        self,
        project_root: PathLike,
        stage: Stage,
        state: StageState,
        details: str | None = None,
    ) -> StageLedger:
        ledger = self.load(project_root)
        ledger.stages[stage] = state
        ledger.history.append(
            StageRecord(
                stage=stage,
                state=state,
                at=self._clock().isoformat(),
                details=details,
            )
        )
        if len(ledger.history) > STAGE_HISTORY_LIMIT:
            ledger.history = ledger.history[-STAGE_HISTORY_LIMIT:]
        self.save(project_root, ledger)
        return ledger


__all__ = [
    "STAGE_ORDER",
    "GateDecision",
    "Stage",
    "StageGateError",
    "StageLedger",
    "StageLedgerStore",
    "StageRecord",
    "StageState",
    "can_enter",
    "parse_stage",
    "require_entry",
    "stage_rank",
]
