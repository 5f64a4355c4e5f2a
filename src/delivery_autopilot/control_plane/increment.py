"""
delivery-autopilot — delivery increment adapters

Purpose
- Define the contract between the campaign driver and the external delivery
  increment (the collaborator that generates content and runs build/test steps).
- Provide a subprocess-backed increment for operators who drive an external tool.

Functional requirements
- The request carries the resume step, composed instructions, the compact
  payload flag, and the project context (name, root, cycle, model).
- The command receives the request in ``AUTOPILOT_*`` environment variables and
  the instructions on stdin.
- Its stdout may contain a JSON summary ``{"ok", "message", "stages", "checkpoint"}``.
  The summary is extracted with the tagged-variant payload parser; when none is
  parseable the exit status alone decides ``ok``.
- Launch failures and timeouts come back as failed results, never as exceptions.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from delivery_autopilot.pipeline.checkpoint import is_valid_requirement_id, normalize_step
from delivery_autopilot.pipeline.stages import StageState, parse_stage
from delivery_autopilot.utils.payload import Parsed, extract_json_object

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from delivery_autopilot.pipeline.checkpoint import DeliveryStep
    from delivery_autopilot.pipeline.stages import Stage

_OUTPUT_TAIL_CHARS = 400


@dataclass(frozen=True, slots=True)
class IncrementRequest:
    project: str
    project_root: Path
    cycle: int
    resume_step: DeliveryStep | None
    instructions: str
    compact_payloads: bool = False
    model: str = ""
    provider: str = ""

    def to_env(self) -> dict[str, str]:
        return {
            "AUTOPILOT_PROJECT": self.project,
            "AUTOPILOT_PROJECT_ROOT": str(self.project_root),
            "AUTOPILOT_CYCLE": str(self.cycle),
            "AUTOPILOT_RESUME_STEP": self.resume_step.value if self.resume_step else "",
            "AUTOPILOT_COMPACT_PAYLOADS": "1" if self.compact_payloads else "0",
            "AUTOPILOT_MODEL": self.model,
            "AUTOPILOT_PROVIDER": self.provider,
        }


@dataclass(frozen=True, slots=True)
class ReportedCheckpoint:
    requirement_id: str
    last_completed: DeliveryStep
    seed_text: str = ""
    flow: str = ""
    domain: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ReportedCheckpoint | None:
        requirement_id = payload.get("requirement_id")
        step = normalize_step(payload.get("last_completed"))
        if not isinstance(requirement_id, str) or step is None:
            return None
        clean_id = requirement_id.strip()
        if not is_valid_requirement_id(clean_id):
            return None
        return cls(
            requirement_id=clean_id,
            last_completed=step,
            seed_text=str(payload.get("seed_text") or ""),
            flow=str(payload.get("flow") or ""),
            domain=str(payload.get("domain") or ""),
        )


@dataclass(frozen=True, slots=True)
class IncrementResult:
    ok: bool
    message: str = ""
    stage_results: Mapping[Stage, StageState] = field(default_factory=dict)
    checkpoint: ReportedCheckpoint | None = None

    @classmethod
    def from_summary(cls, summary: Mapping[str, Any], *, default_ok: bool) -> IncrementResult:
        """Build a result from a collaborator summary; unknown stages and states are dropped."""

        raw_ok = summary.get("ok")
        stages: dict[Stage, StageState] = {}
        raw_stages = summary.get("stages")
        if isinstance(raw_stages, dict):
            for key, value in raw_stages.items():
                stage = parse_stage(key)
                if stage is None or not isinstance(value, str):
                    continue
                try:
                    stages[stage] = StageState(value.strip().lower())
                except ValueError:
                    continue
        raw_checkpoint = summary.get("checkpoint")
        return cls(
            ok=raw_ok if isinstance(raw_ok, bool) else default_ok,
            message=str(summary.get("message") or ""),
            stage_results=stages,
            checkpoint=(
                ReportedCheckpoint.from_dict(raw_checkpoint)
                if isinstance(raw_checkpoint, dict)
                else None
            ),
        )


@runtime_checkable
class DeliveryIncrement(Protocol):
    def run(self, request: IncrementRequest) -> IncrementResult: ...


class CommandDeliveryIncrement:
    """Run an external command once per cycle."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._command = tuple(str(part) for part in command)
        self._timeout = timeout_seconds
        self._env = dict(env or {})

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    def run(self, request: IncrementRequest) -> IncrementResult:
        run_env = dict(os.environ)
        run_env.update(self._env)
        run_env.update(request.to_env())
        try:
            completed = subprocess.run(
                list(self._command),
                cwd=request.project_root,
                check=False,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self._timeout,
                env=run_env,
                input=request.instructions,
            )
        except subprocess.TimeoutExpired:
            return IncrementResult(
                ok=False, message=f"delivery increment timed out after {self._timeout}s"
            )
        except OSError as exc:
            return IncrementResult(ok=False, message=f"delivery increment failed to start: {exc}")

        exited_ok = completed.returncode == 0
        outcome = extract_json_object(completed.stdout or "")
        if isinstance(outcome, Parsed):
            return IncrementResult.from_summary(outcome.value, default_ok=exited_ok)
        tail = (completed.stderr or completed.stdout or "").strip()[-_OUTPUT_TAIL_CHARS:]
        return IncrementResult(
            ok=exited_ok,
            message=tail if tail else f"exit status {completed.returncode}",
        )


__all__ = [
    "CommandDeliveryIncrement",
    "DeliveryIncrement",
    "IncrementRequest",
    "IncrementResult",
    "ReportedCheckpoint",
]
