"""
delivery-autopilot — unit tests for the campaign driver

Purpose
- Exercise the campaign loop against a scripted delivery increment.

What this test file should cover
- Claiming: live foreign owners block, dead owners do not.
- Stage results flow through the gate; rejected entries are journaled.
- Failure streak, stall counter, recovery tiers and forced restarts.
- Quota detection rotates the model and records the unavailable one.
- Collaborator exceptions are cycle failures; driver failures crash the campaign.
- Minimum runtime keeps the campaign going past ``max_cycles``.

Non-functional requirements
- No real sleeping or wall-clock dependence.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeAlias

import pytest

from delivery_autopilot.constants import REQUIREMENTS_IN_PROGRESS_DIR
from delivery_autopilot.control_plane.driver import (
    STALL_RESTART_INSTRUCTION,
    CampaignAlreadyRunningError,
    CampaignDriver,
    CampaignStatus,
    ModelRoute,
)
from delivery_autopilot.control_plane.increment import (
    IncrementRequest,
    IncrementResult,
    ReportedCheckpoint,
)
from delivery_autopilot.control_plane.instructions import GOAL_ANCHOR_PREFIX, TRUNCATION_MARKER
from delivery_autopilot.control_plane.policy import CampaignPolicy
from delivery_autopilot.control_plane.recovery import RecoveryTier
from delivery_autopilot.control_plane.telemetry import CampaignState, CampaignTelemetry
from delivery_autopilot.locking.workspace_lock import ThreadWorkspaceLock
from delivery_autopilot.pipeline.checkpoint import CheckpointStore, DeliveryStep
from delivery_autopilot.pipeline.stages import Stage, StageLedgerStore, StageState, stage_rank
from delivery_autopilot.providers.availability import ModelAvailabilityCache
from delivery_autopilot.providers.diagnostics import ProviderIssueClassifier

if TYPE_CHECKING:
    from collections.abc import Callable

pytestmark = pytest.mark.unit

_NOW = datetime(2026, 3, 3, 10, 0, tzinfo=UTC)
_NOW_MS = int(_NOW.timestamp() * 1000)
_PID = 4242

Response: TypeAlias = (
    "IncrementResult | BaseException | Callable[[IncrementRequest], IncrementResult]"
)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@dataclass(slots=True)
class ScriptedIncrement:
    """Returns scripted responses in order; the last one repeats."""

    responses: list[Response]
    requests: list[IncrementRequest] = field(default_factory=list)

    def run(self, request: IncrementRequest) -> IncrementResult:
        self.requests.append(request)
        response = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, IncrementResult):
            return response
        return response(request)


class _SteppingClock:
    def __init__(self, step_seconds: float = 0.0) -> None:
        self.now = 0.0
        self.step = step_seconds

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


@dataclass(slots=True)
class Harness:
    workspace: Path
    project_root: Path
    lock: ThreadWorkspaceLock
    telemetry: CampaignTelemetry
    availability: ModelAvailabilityCache
    logger: RecordingLogger
    sleeps: list[float]

    def driver(self, increment: ScriptedIncrement, **overrides: Any) -> CampaignDriver:
        kwargs: dict[str, Any] = {
            "project": "shop",
            "project_root": self.project_root,
            "workspace_root": self.workspace,
            "increment": increment,
            "policy": CampaignPolicy.clamped(max_cycles=3, sleep_seconds=0),
            "goal": "Build an online shop",
            "base_instructions": "Ship the storefront.",
            "telemetry": self.telemetry,
            "classifier": ProviderIssueClassifier(clock=lambda: _NOW),
            "availability": self.availability,
            "lock": self.lock,
            "clock": _SteppingClock(),
            "sleep": self.sleeps.append,
            "pid": _PID,
            "pid_alive": lambda pid: pid == _PID,
            "logger": self.logger,
        }
        kwargs.update(overrides)
        return CampaignDriver(**kwargs)

    def journal_events(self) -> list[str]:
        return [entry["event"] for entry in self.telemetry.read_journal(self.project_root)]


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    workspace = tmp_path / "workspaces"
    lock = ThreadWorkspaceLock()
    return Harness(
        workspace=workspace,
        project_root=workspace / "shop",
        lock=lock,
        telemetry=CampaignTelemetry(clock=lambda: _NOW),
        availability=ModelAvailabilityCache(
            workspace, lock=lock, clock_ms=lambda: _NOW_MS, logger=RecordingLogger()
        ),
        logger=RecordingLogger(),
        sleeps=[],
    )


def _passes(*stages: Stage, ok: bool = True) -> IncrementResult:
    return IncrementResult(ok=ok, stage_results={stage: StageState.PASSED for stage in stages})


def test_campaign_succeeds_when_target_passes(harness: Harness) -> None:
    increment = ScriptedIncrement([_passes(Stage.DISCOVERY)])
    driver = harness.driver(
        increment, policy=CampaignPolicy.clamped(target_stage=Stage.DISCOVERY, sleep_seconds=0)
    )

    result = driver.run()

    assert result.status is CampaignStatus.SUCCEEDED
    assert (result.cycles, result.stage_rank, result.stall_count) == (1, 1, 0)
    assert result.phase == "completed"
    assert driver.status is CampaignStatus.SUCCEEDED
    state = harness.telemetry.read_state(harness.project_root)
    assert state is not None
    assert not state.running
    assert state.owner_pid == _PID
    assert state.target_passed
    assert state.stage_flags["discovery"] is True
    assert harness.journal_events() == [
        "campaign.started",
        "campaign.cycle.completed",
        "campaign.succeeded",
    ]
    assert CampaignTelemetry.debug_report_path(harness.project_root).is_file()
    assert increment.requests[0].resume_step is None
    assert increment.requests[0].instructions.startswith(
        "Primary product objective (do not drift): Build an online shop"
    )
    assert "campaign_finished" in harness.logger.names()


def test_driver_cannot_be_reused(harness: Harness) -> None:
    driver = harness.driver(
        ScriptedIncrement([_passes()]), policy=CampaignPolicy.clamped(max_cycles=1, sleep_seconds=0)
    )
    driver.run()

    with pytest.raises(RuntimeError):
        driver.run()


def test_live_foreign_owner_blocks_claim(harness: Harness) -> None:
    harness.project_root.mkdir(parents=True)
    harness.telemetry.write_state(harness.project_root, CampaignState(running=True, owner_pid=999))
    increment = ScriptedIncrement([_passes()])
    driver = harness.driver(increment, pid_alive=lambda _pid: True)

    with pytest.raises(CampaignAlreadyRunningError) as excinfo:
        driver.run()

    assert excinfo.value.owner_pid == 999
    assert increment.requests == []
    state = harness.telemetry.read_state(harness.project_root)
    assert state is not None and state.owner_pid == 999


def test_dead_foreign_owner_does_not_block(harness: Harness) -> None:
    harness.project_root.mkdir(parents=True)
    harness.telemetry.write_state(harness.project_root, CampaignState(running=True, owner_pid=999))
    driver = harness.driver(
        ScriptedIncrement([_passes()]), policy=CampaignPolicy.clamped(max_cycles=1, sleep_seconds=0)
    )

    result = driver.run()

    assert result.status is CampaignStatus.STOPPED


def test_stage_results_go_through_the_gate(harness: Harness) -> None:
    increment = ScriptedIncrement(
        [
            _passes(Stage.DISCOVERY, Stage.FUNCTIONAL_REQUIREMENTS, Stage.IMPLEMENTATION),
        ]
    )
    driver = harness.driver(increment, policy=CampaignPolicy.clamped(max_cycles=1, sleep_seconds=0))

    result = driver.run()

    ledger = StageLedgerStore().load(harness.project_root)
    assert stage_rank(ledger) == 2
    assert ledger.state_of(Stage.IMPLEMENTATION) is StageState.PENDING
    assert result.stage_rank == 2
    assert "stage.gate.rejected" in harness.journal_events()
    rejected = [kwargs for name, kwargs in harness.logger.events if name == "stage_gate_rejected"]
    assert rejected == [
        {
            "project": "shop",
            "stage": "implementation",
            "reason": (
                "Cannot enter implementation; prerequisite stage technical_backlog is pending."
            ),
        }
    ]


def test_failed_stage_results_are_recorded_without_gate(harness: Harness) -> None:
    increment = ScriptedIncrement(
        [IncrementResult(ok=False, stage_results={Stage.ROLE_REVIEW: StageState.FAILED})]
    )
    harness.driver(increment, policy=CampaignPolicy.clamped(max_cycles=1, sleep_seconds=0)).run()

    ledger = StageLedgerStore().load(harness.project_root)
    assert ledger.failed_stages() == (Stage.ROLE_REVIEW,)


def test_failures_escalate_recovery_tiers(harness: Harness) -> None:
    increment = ScriptedIncrement([IncrementResult(ok=False, message="build broke")])
    driver = harness.driver(
        increment,
        policy=CampaignPolicy.clamped(max_cycles=3, stall_cycles=20, sleep_seconds=0),
    )

    result = driver.run()

    assert result.status is CampaignStatus.STOPPED
    assert result.failure_streak == 3
    assert result.stall_count == 3
    assert result.recovery_tier is RecoveryTier.TIER3
    first, second, third = increment.requests
    assert "Recovery tier" not in first.instructions
    assert "Recovery tier1" in second.instructions
    assert not second.compact_payloads
    assert "Recovery tier2" in third.instructions
    assert third.compact_payloads
    audit_lines = CampaignTelemetry.audit_path(harness.project_root).read_text(encoding="utf-8")
    assert [json.loads(line)["tier"] for line in audit_lines.splitlines()] == [
        "tier1",
        "tier2",
        "tier3",
    ]
    state = harness.telemetry.read_state(harness.project_root)
    assert state is not None
    assert state.last_error == "build broke"


def test_long_base_instructions_keep_recovery_text(harness: Harness) -> None:
    increment = ScriptedIncrement([IncrementResult(ok=False, message="build broke")])
    driver = harness.driver(
        increment,
        policy=CampaignPolicy.clamped(max_cycles=2, stall_cycles=1, sleep_seconds=0),
        base_instructions="Ship every storefront feature with care " * 30,
    )

    driver.run()

    second = increment.requests[1].instructions
    assert second.startswith(GOAL_ANCHOR_PREFIX)
    assert "Recovery tier1" in second
    assert STALL_RESTART_INSTRUCTION.split(".")[0] in second
    assert second.endswith(TRUNCATION_MARKER)


def test_non_autonomous_campaign_skips_recovery_instructions(harness: Harness) -> None:
    increment = ScriptedIncrement([IncrementResult(ok=False, message="build broke")])
    policy = CampaignPolicy.clamped(
        max_cycles=3, stall_cycles=20, sleep_seconds=0, autonomous=False
    )

    result = harness.driver(increment, policy=policy).run()

    assert result.recovery_tier is RecoveryTier.TIER3
    assert all("Recovery tier" not in request.instructions for request in increment.requests)
    assert not any(request.compact_payloads for request in increment.requests)


def test_success_resets_failure_streak(harness: Harness) -> None:
    increment = ScriptedIncrement(
        [
            IncrementResult(ok=False, message="flaky"),
            _passes(Stage.DISCOVERY),
        ]
    )
    driver = harness.driver(increment, policy=CampaignPolicy.clamped(max_cycles=2, sleep_seconds=0))

    result = driver.run()

    assert result.failure_streak == 0
    assert result.stall_count == 0
    assert result.stage_rank == 1


def test_stall_forces_restart_from_create(harness: Harness) -> None:
    checkpoints = CheckpointStore()
    (harness.project_root / REQUIREMENTS_IN_PROGRESS_DIR / "REQ-1").mkdir(parents=True)
    checkpoints.record_step(
        harness.project_root, project="shop", requirement_id="REQ-1", step=DeliveryStep.PLAN
    )
    increment = ScriptedIncrement([_passes()])
    driver = harness.driver(
        increment,
        policy=CampaignPolicy.clamped(max_cycles=3, stall_cycles=2, sleep_seconds=0),
    )

    result = driver.run()

    steps = [request.resume_step for request in increment.requests]
    assert steps == [DeliveryStep.START, DeliveryStep.START, DeliveryStep.CREATE]
    assert "Force deep recovery" in increment.requests[2].instructions
    assert "Force deep recovery" not in increment.requests[1].instructions
    assert STALL_RESTART_INSTRUCTION.startswith("Force deep recovery")
    assert not checkpoints.checkpoint_path(harness.project_root).exists()
    assert result.stall_count == 3


def test_reported_checkpoint_drives_next_resume_step(harness: Harness) -> None:
    def _create_requirement(request: IncrementRequest) -> IncrementResult:
        (request.project_root / REQUIREMENTS_IN_PROGRESS_DIR / "REQ-2").mkdir(
            parents=True, exist_ok=True
        )
        return IncrementResult(
            ok=True,
            checkpoint=ReportedCheckpoint(
                requirement_id="REQ-2", last_completed=DeliveryStep.CREATE
            ),
        )

    increment = ScriptedIncrement([_create_requirement])
    harness.driver(increment, policy=CampaignPolicy.clamped(max_cycles=2, sleep_seconds=0)).run()

    assert [request.resume_step for request in increment.requests] == [None, DeliveryStep.PLAN]


def test_quota_rotates_to_next_model(harness: Harness) -> None:
    def _quota_failure(request: IncrementRequest) -> IncrementResult:
        log_path = ProviderIssueClassifier.log_path(request.project_root)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(
            json.dumps(
                {
                    "at": _NOW.isoformat(),
                    "provider": "gemini",
                    "model": request.model,
                    "error": "TerminalQuotaError: Your quota will reset after 5m.",
                }
            )
            + "\n",
            encoding="utf-8",
        )
        return IncrementResult(ok=False, message="quota exhausted")

    increment = ScriptedIncrement([_quota_failure])
    driver = harness.driver(
        increment,
        policy=CampaignPolicy.clamped(max_cycles=1, sleep_seconds=0),
        route=ModelRoute(provider="gemini", models=("pro", "flash")),
    )

    driver.run()

    assert increment.requests[0].model == "pro"
    assert increment.requests[0].provider == "gemini"
    assert driver.state.model == "flash"
    assert harness.availability.is_unavailable("gemini", "pro")
    assert harness.availability.next_availability_ms("gemini") == 300_000
    assert "campaign.provider.recovery" in harness.journal_events()


def test_initial_model_skips_unavailable(harness: Harness) -> None:
    harness.availability.mark_unavailable("gemini", "pro", "quota will reset after 1h")
    increment = ScriptedIncrement([_passes()])
    harness.driver(
        increment,
        policy=CampaignPolicy.clamped(max_cycles=1, sleep_seconds=0),
        route=ModelRoute(provider="gemini", models=("pro", "flash")),
    ).run()

    assert increment.requests[0].model == "flash"


def test_increment_exception_is_a_failed_cycle(harness: Harness) -> None:
    increment = ScriptedIncrement([RuntimeError("collaborator exploded")])
    driver = harness.driver(increment, policy=CampaignPolicy.clamped(max_cycles=2, sleep_seconds=0))

    result = driver.run()

    assert result.status is CampaignStatus.STOPPED
    assert result.failure_streak == 2
    assert "delivery_increment_raised" in harness.logger.names()
    state = harness.telemetry.read_state(harness.project_root)
    assert state is not None
    assert state.last_error == "RuntimeError: collaborator exploded"


class _ExplodingCollector:
    def collect(self, project_root: Path, *, ledger: object = None) -> object:
        raise OSError("disk gone")


def test_driver_failure_crashes_campaign(harness: Harness) -> None:
    driver = harness.driver(ScriptedIncrement([_passes()]), signal_collector=_ExplodingCollector())

    with pytest.raises(OSError, match="disk gone"):
        driver.run()

    assert driver.status is CampaignStatus.CRASHED
    state = harness.telemetry.read_state(harness.project_root)
    assert state is not None
    assert (state.running, state.phase) == (False, "crashed")
    assert state.last_error == "OSError: disk gone"
    assert harness.journal_events()[-1] == "campaign.crashed"


def test_minimum_runtime_extends_past_max_cycles(harness: Harness) -> None:
    increment = ScriptedIncrement([_passes()])
    driver = harness.driver(
        increment,
        policy=CampaignPolicy.clamped(max_cycles=1, min_runtime_minutes=2, sleep_seconds=1),
        clock=_SteppingClock(step_seconds=30.0),
    )

    result = driver.run()

    assert result.status is CampaignStatus.STOPPED
    assert result.cycles == 2
    assert result.phase == "max_cycles"
    assert harness.sleeps == [1.0]
