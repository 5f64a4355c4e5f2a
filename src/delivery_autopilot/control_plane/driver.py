"""
delivery-autopilot — campaign driver

Purpose
- Drive one project through the delivery pipeline until the target stage has
  passed or the campaign policy says to stop.

Functional requirements
- Lifecycle: idle -> running -> succeeded | stopped | crashed.
- The project is claimed under the workspace lock: a live foreign owner of a
  running campaign state raises ``CampaignAlreadyRunningError``.
- Each cycle resolves the resume step, invokes the delivery increment, applies
  reported stage results through the stage gate, recomputes blocking signals
  and stage rank, updates the stall and failure counters, plans recovery, and
  persists campaign state, a recovery audit record and the debug report.
- Collaborator failures feed the recovery planner and never end the campaign.
  Unexpected driver failures persist ``phase="crashed"`` and re-raise.

Non-functional requirements
- Sequential and blocking. Clock and sleep are injectable so tests never wait.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from delivery_autopilot.constants import WORKSPACE_LOCK_FILE
from delivery_autopilot.control_plane.increment import IncrementRequest, IncrementResult
from delivery_autopilot.control_plane.instructions import compose_instructions
from delivery_autopilot.control_plane.policy import CampaignPolicy
from delivery_autopilot.control_plane.quality_feedback import collect_quality_feedback
from delivery_autopilot.control_plane.recovery import (
    RecoveryPlan,
    RecoveryTier,
    build_plan,
    resolve_tier,
)
from delivery_autopilot.control_plane.signals import BlockingSignalCollector
from delivery_autopilot.control_plane.stale_state import is_pid_running
from delivery_autopilot.control_plane.telemetry import CampaignState, CampaignTelemetry
from delivery_autopilot.locking.workspace_lock import FileWorkspaceLock, held
from delivery_autopilot.pipeline.checkpoint import CheckpointStore, DeliveryStep
from delivery_autopilot.pipeline.stages import (
    STAGE_ORDER,
    StageLedgerStore,
    StageState,
    can_enter,
    stage_rank,
)
from delivery_autopilot.providers.availability import DEFAULT_FALLBACK_MS, ModelAvailabilityCache
from delivery_autopilot.providers.diagnostics import ProviderIssueClassifier, ProviderIssueType

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from delivery_autopilot.control_plane.increment import DeliveryIncrement
    from delivery_autopilot.locking.workspace_lock import WorkspaceLock
    from delivery_autopilot.pipeline.stages import StageLedger
    from delivery_autopilot.utils.fs import PathLike

STALL_RESTART_INSTRUCTION: Final[str] = (
    "Force deep recovery: rebuild from a clean requirement and regenerate a "
    "production-ready project structure."
)


class CampaignStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    STOPPED = "stopped"
    CRASHED = "crashed"


class CampaignPhase(StrEnum):
    STARTED = "started"
    CYCLE_START = "cycle_start"
    CYCLE_ERROR = "cycle_error"
    CYCLE_COMPLETED = "cycle_completed"
    PROVIDER_QUOTA_RECOVERY = "provider_quota_recovery"
    RUNTIME_ENFORCED_CONTINUE = "runtime_enforced_continue"
    COMPLETED = "completed"
    MAX_CYCLES = "max_cycles"
    CRASHED = "crashed"


class CampaignAlreadyRunningError(RuntimeError):
    """Raised when another live process owns the project's running campaign."""

    def __init__(self, project: str, owner_pid: int) -> None:
        self.project = project
        self.owner_pid = owner_pid
        super().__init__(
            f"campaign for project {project!r} is already running (owner_pid={owner_pid})"
        )


@dataclass(frozen=True, slots=True)
class CampaignResult:
    status: CampaignStatus
    cycles: int
    stage_rank: int
    stall_count: int
    failure_streak: int
    recovery_tier: RecoveryTier
    phase: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "cycles": self.cycles,
            "stage_rank": self.stage_rank,
            "stall_count": self.stall_count,
            "failure_streak": self.failure_streak,
            "recovery_tier": self.recovery_tier.value,
            "phase": self.phase,
        }


@dataclass(frozen=True, slots=True)
class ModelRoute:
    """Provider plus ordered fallback models to rotate through on quota exhaustion."""

    provider: str = ""
    models: tuple[str, ...] = ()


class CampaignDriver:
    def __init__(
        self,
        *,
        project: str,
        project_root: PathLike,
        workspace_root: PathLike,
        increment: DeliveryIncrement,
        policy: CampaignPolicy | None = None,
        goal: str = "",
        base_instructions: str = "",
        route: ModelRoute | None = None,
        unavailable_fallback_ms: int = DEFAULT_FALLBACK_MS,
        ledger_store: StageLedgerStore | None = None,
        checkpoint_store: CheckpointStore | None = None,
        signal_collector: BlockingSignalCollector | None = None,
        classifier: ProviderIssueClassifier | None = None,
        availability: ModelAvailabilityCache | None = None,
        telemetry: CampaignTelemetry | None = None,
        lock: WorkspaceLock | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        pid: int | None = None,
        pid_alive: Callable[[int], bool] = is_pid_running,
        logger: Any | None = None,
    ) -> None:
        self._project = project
        self._project_root = Path(project_root)
        self._workspace_root = Path(workspace_root)
        self._increment = increment
        self._policy = policy if policy is not None else CampaignPolicy()
        self._goal = goal
        self._base_instructions = base_instructions
        self._route = route if route is not None else ModelRoute()
        self._fallback_ms = unavailable_fallback_ms
        self._lock = lock if lock is not None else FileWorkspaceLock()
        self._ledger_store = ledger_store if ledger_store is not None else StageLedgerStore()
        self._checkpoints = checkpoint_store if checkpoint_store is not None else CheckpointStore()
        self._signals = (
            signal_collector
            if signal_collector is not None
            else BlockingSignalCollector(ledger_store=self._ledger_store)
        )
        self._classifier = classifier if classifier is not None else ProviderIssueClassifier()
        self._availability = (
            availability
            if availability is not None
            else ModelAvailabilityCache(self._workspace_root, lock=self._lock)
        )
        self._telemetry = telemetry if telemetry is not None else CampaignTelemetry()
        self._clock = clock
        self._sleep = sleep
        self._pid = pid if pid is not None else os.getpid()
        self._pid_alive = pid_alive
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._status = CampaignStatus.IDLE
        self._state = CampaignState(
            target_stage=self._policy.target_stage.value,
            autonomous=self._policy.autonomous,
        )

    @property
    def status(self) -> CampaignStatus:
        return self._status

    @property
    def policy(self) -> CampaignPolicy:
        return self._policy

    @property
    def state(self) -> CampaignState:
        return self._state

    def run(self) -> CampaignResult:
        if self._status is not CampaignStatus.IDLE:
            raise RuntimeError(f"campaign driver already used (status={self._status.value})")
        self._project_root.mkdir(parents=True, exist_ok=True)
        self._claim()
        self._status = CampaignStatus.RUNNING
        try:
            return self._loop()
        except Exception as exc:
            self._status = CampaignStatus.CRASHED
            self._state.running = False
            self._state.phase = CampaignPhase.CRASHED.value
            self._state.last_error = f"{type(exc).__name__}: {exc}"
            self._telemetry.write_state(self._project_root, self._state)
            self._telemetry.journal(self._project_root, "campaign.crashed", self._state.last_error)
            self._logger.info(
                "campaign_crashed",
                project=self._project,
                cycle=self._state.cycle,
                error=self._state.last_error,
            )
            raise

    def _claim(self) -> None:
        """Check-and-set the running flag under the workspace lock."""

        with held(self._lock, self._workspace_root / WORKSPACE_LOCK_FILE):
            existing = self._telemetry.read_state(self._project_root)
            if (
                existing is not None
                and existing.running
                and existing.owner_pid != self._pid
                and self._pid_alive(existing.owner_pid)
            ):
                raise CampaignAlreadyRunningError(self._project, existing.owner_pid)
            self._state.running = True
            self._state.owner_pid = self._pid
            self._state.phase = CampaignPhase.STARTED.value
            self._state.model = self._initial_model()
            self._telemetry.write_state(self._project_root, self._state)
        self._telemetry.journal(
            self._project_root,
            "campaign.started",
            f"policy={self._policy.to_dict()}",
        )
        self._logger.info(
            "campaign_started",
            project=self._project,
            owner_pid=self._pid,
            policy=self._policy.to_dict(),
        )

    def _loop(self) -> CampaignResult:
        policy = self._policy
        started = self._clock()
        ledger = self._ledger_store.load(self._project_root)
        previous_rank = stage_rank(ledger)
        rank = previous_rank
        stall_count = 0
        failure_streak = 0
        tier = RecoveryTier.NONE
        plan = RecoveryPlan(tier=RecoveryTier.NONE)
        force_restart = False
        quality_hints: list[str] = []
        cycle = 0

        while True:
            cycle += 1
            elapsed = self._elapsed_minutes(started)

            # resume point
            if force_restart:
                self._checkpoints.clear(self._project_root)
                resume_step: DeliveryStep | None = DeliveryStep.CREATE
            else:
                resume_step = self._checkpoints.choose_resume_step(self._project_root)
            additions = self._instruction_additions(plan, quality_hints, stall_count)
            instructions = compose_instructions(self._goal, self._base_instructions, additions)
            self._update_state(
                cycle=cycle,
                elapsed=elapsed,
                phase=CampaignPhase.CYCLE_START,
                next_from_step=resume_step,
            )

            # external delivery increment
            result = self._invoke_increment(
                IncrementRequest(
                    project=self._project,
                    project_root=self._project_root,
                    cycle=cycle,
                    resume_step=resume_step,
                    instructions=instructions,
                    compact_payloads=policy.autonomous and plan.compact_payloads,
                    model=self._state.model,
                    provider=self._route.provider,
                )
            )
            ledger = self._apply_stage_results(result)
            self._save_reported_checkpoint(result)
            if not result.ok:
                self._state.phase = CampaignPhase.CYCLE_ERROR.value
                self._state.last_error = result.message or "delivery increment reported failure"
                self._telemetry.write_state(self._project_root, self._state)

            # progress and blocking signals
            signals = self._signals.collect(self._project_root, ledger=ledger)
            rank = stage_rank(ledger)

            # counters
            stall_count = 0 if rank > previous_rank else stall_count + 1
            previous_rank = rank
            failure_streak = failure_streak + 1 if not result.ok else 0

            provider_issue = self._classifier.classify(self._project_root)
            if provider_issue is ProviderIssueType.QUOTA:
                self._rotate_model()

            # recovery decision
            tier = resolve_tier(failure_streak, stall_count)
            plan = build_plan(tier, signals)
            force_restart = stall_count >= policy.stall_cycles or (
                policy.autonomous and plan.force_restart_next_cycle
            )
            quality_hints = collect_quality_feedback(self._project_root)
            if quality_hints:
                self._telemetry.journal(
                    self._project_root, "campaign.quality.feedback", " | ".join(quality_hints)
                )

            # persist
            elapsed = self._elapsed_minutes(started)
            target_passed = ledger.passed(policy.target_stage)
            self._state.stage_flags = {stage.value: ledger.passed(stage) for stage in STAGE_ORDER}
            self._state.target_passed = target_passed
            self._state.stall_count = stall_count
            self._state.failure_streak = failure_streak
            self._state.recovery_tier = tier.value
            self._state.last_recovery_action = plan.action
            outcome = "ok" if result.ok else "error"
            self._telemetry.audit(
                self._project_root,
                cycle=cycle,
                tier=tier,
                action=plan.action,
                outcome=outcome,
                signals=signals,
            )
            self._telemetry.write_debug_report(
                self._project_root,
                cycle=cycle,
                elapsed_minutes=elapsed,
                provider_issue=provider_issue,
                signals=signals,
                tier=tier,
                action=plan.action,
                model=self._state.model,
                next_from_step=resume_step.value if resume_step else "",
            )
            minimum_runtime_met = (
                policy.min_runtime_minutes <= 0 or elapsed >= policy.min_runtime_minutes
            )
            if not result.ok:
                last_error = self._state.last_error
            elif minimum_runtime_met:
                last_error = ""
            else:
                last_error = (
                    f"minimum runtime pending ({elapsed:.1f}/{policy.min_runtime_minutes}m)"
                )
            self._update_state(
                cycle=cycle,
                elapsed=elapsed,
                phase=CampaignPhase.CYCLE_COMPLETED,
                next_from_step=resume_step,
                last_error=last_error,
            )
            self._telemetry.journal(
                self._project_root,
                "campaign.cycle.completed",
                (
                    f"cycle={cycle}; elapsed_min={elapsed:.1f}; rank={rank}; "
                    f"target={policy.target_stage.value}; target_passed={target_passed}; "
                    f"stall={stall_count}; streak={failure_streak}; tier={tier.value}"
                ),
            )
            self._logger.info(
                "campaign_cycle_completed",
                project=self._project,
                cycle=cycle,
                outcome=outcome,
                stage_rank=rank,
                stall_count=stall_count,
                failure_streak=failure_streak,
                recovery_tier=tier.value,
                provider_issue=provider_issue.value,
                blocking=signals.blocking,
            )

            # stop conditions
            if target_passed:
                return self._finish(
                    CampaignStatus.SUCCEEDED,
                    CampaignPhase.COMPLETED,
                    cycle=cycle,
                    rank=rank,
                    stall_count=stall_count,
                    failure_streak=failure_streak,
                    tier=tier,
                )
            if cycle >= policy.max_cycles:
                if minimum_runtime_met:
                    return self._finish(
                        CampaignStatus.STOPPED,
                        CampaignPhase.MAX_CYCLES,
                        cycle=cycle,
                        rank=rank,
                        stall_count=stall_count,
                        failure_streak=failure_streak,
                        tier=tier,
                    )
                self._update_state(
                    cycle=cycle,
                    elapsed=elapsed,
                    phase=CampaignPhase.RUNTIME_ENFORCED_CONTINUE,
                    next_from_step=resume_step,
                    last_error=(
                        "reached max cycles before minimum runtime "
                        f"({elapsed:.1f}/{policy.min_runtime_minutes}m); continuing"
                    ),
                )
            if policy.sleep_seconds > 0:
                self._sleep(float(policy.sleep_seconds))

    def _invoke_increment(self, request: IncrementRequest) -> IncrementResult:
        try:
            return self._increment.run(request)
        except Exception as exc:  # noqa: BLE001
            self._logger.info(
                "delivery_increment_raised",
                project=self._project,
                cycle=request.cycle,
                error=f"{type(exc).__name__}: {exc}",
            )
            return IncrementResult(ok=False, message=f"{type(exc).__name__}: {exc}")

    def _apply_stage_results(self, result: IncrementResult) -> StageLedger:
        ledger = self._ledger_store.load(self._project_root)
        details = result.message or None
        for stage in STAGE_ORDER:
            state = result.stage_results.get(stage)
            if state is None:
                continue
            if state is StageState.PASSED:
                decision = can_enter(ledger, stage)
                if not decision.ok:
                    reason = decision.reason or f"cannot enter {stage.value}"
                    self._telemetry.journal(self._project_root, "stage.gate.rejected", reason)
                    self._logger.info(
                        "stage_gate_rejected",
                        project=self._project,
                        stage=stage.value,
                        reason=reason,
                    )
                    continue
            ledger = self._ledger_store.mark(self._project_root, stage, state, details)
        return ledger

    def _save_reported_checkpoint(self, result: IncrementResult) -> None:
        reported = result.checkpoint
        if reported is None:
            return
        self._checkpoints.record_step(
            self._project_root,
            project=self._project,
            requirement_id=reported.requirement_id,
            step=reported.last_completed,
            seed_text=reported.seed_text,
            flow=reported.flow,
            domain=reported.domain,
        )

    def _instruction_additions(
        self,
        plan: RecoveryPlan,
        quality_hints: Sequence[str],
        stall_count: int,
    ) -> list[str]:
        additions: list[str] = []
        if stall_count >= self._policy.stall_cycles:
            additions.append(STALL_RESTART_INSTRUCTION)
        if self._policy.autonomous:
            additions.extend(plan.additional_instructions)
            additions.extend(quality_hints)
        return additions

    def _initial_model(self) -> str:
        models = self._route.models
        if not models:
            return ""
        available = self._availability.first_available(self._route.provider, models)
        return available if available is not None else models[0]

    def _rotate_model(self) -> None:
        current = self._state.model
        models = self._route.models
        if not current or not models:
            return
        hint = self._classifier.quota_reset_hint(self._project_root)
        self._availability.mark_unavailable(self._route.provider, current, hint, self._fallback_ms)
        start = models.index(current) + 1 if current in models else 0
        rotation = models[start:] + models[:start]
        replacement = self._availability.first_available(self._route.provider, rotation)
        if replacement is None:
            replacement = rotation[0]
        self._state.model = replacement
        self._state.phase = CampaignPhase.PROVIDER_QUOTA_RECOVERY.value
        self._state.last_error = (
            f"quota/capacity issue detected for {current}; switched to {replacement}"
        )
        self._telemetry.write_state(self._project_root, self._state)
        self._telemetry.journal(
            self._project_root,
            "campaign.provider.recovery",
            f"quota detected; model {current} -> {replacement}",
        )
        self._logger.info(
            "provider_model_rotated",
            project=self._project,
            provider=self._route.provider,
            previous_model=current,
            model=replacement,
            reset_hint=hint,
        )

    def _elapsed_minutes(self, started: float) -> float:
        return round(max(0.0, self._clock() - started) / 60.0, 2)

    def _update_state(
        self,
        *,
        cycle: int,
        elapsed: float,
        phase: CampaignPhase,
        next_from_step: DeliveryStep | None,
        last_error: str | None = None,
    ) -> None:
        self._state.cycle = cycle
        self._state.elapsed_minutes = elapsed
        self._state.phase = phase.value
        self._state.next_from_step = next_from_step.value if next_from_step else ""
        if last_error is not None:
            self._state.last_error = last_error
        self._telemetry.write_state(self._project_root, self._state)

    def _finish(
        self,
        status: CampaignStatus,
        phase: CampaignPhase,
        *,
        cycle: int,
        rank: int,
        stall_count: int,
        failure_streak: int,
        tier: RecoveryTier,
    ) -> CampaignResult:
        self._status = status
        self._state.running = False
        self._state.phase = phase.value
        self._telemetry.write_state(self._project_root, self._state)
        self._telemetry.journal(
            self._project_root,
            f"campaign.{status.value}",
            f"cycle={cycle}; rank={rank}; phase={phase.value}",
        )
        self._logger.info(
            "campaign_finished",
            project=self._project,
            status=status.value,
            cycles=cycle,
            stage_rank=rank,
        )
        return CampaignResult(
            status=status,
            cycles=cycle,
            stage_rank=rank,
            stall_count=stall_count,
            failure_streak=failure_streak,
            recovery_tier=tier,
            phase=phase.value,
        )


__all__ = [
    "CampaignAlreadyRunningError",
    "CampaignDriver",
    "CampaignPhase",
    "CampaignResult",
    "CampaignStatus",
    "ModelRoute",
]
