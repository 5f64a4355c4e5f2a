"""Checkpoint persistence and resume-step selection for delivery increments."""

from __future__ import annotations

import contextlib
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from delivery_autopilot.constants import CHECKPOINT_FILE, REQUIREMENTS_IN_PROGRESS_DIR
from delivery_autopilot.utils.fs import read_json_object, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Mapping

    from delivery_autopilot.utils.fs import PathLike


class DeliveryStep(StrEnum):
    """Steps of one delivery increment, in execution order."""

    CREATE = "create"
    PLAN = "plan"
    START = "start"
    TEST = "test"
    FINISH = "finish"


DELIVERY_STEPS: tuple[DeliveryStep, ...] = tuple(DeliveryStep)

_REQUIREMENT_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_STEP_ALIASES: dict[str, DeliveryStep] = {
    "test-plan": DeliveryStep.TEST,
    "test_plan": DeliveryStep.TEST,
}


def normalize_step(value: object) -> DeliveryStep | None:
    """Map free-form step text (including aliases) onto a ``DeliveryStep``."""

    if isinstance(value, DeliveryStep):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip().lower()
    if not raw:
        return None
    if raw in _STEP_ALIASES:
        return _STEP_ALIASES[raw]
    try:
        return DeliveryStep(raw)
    except ValueError:
        return None


def is_valid_requirement_id(value: str) -> bool:
    """True for a single path segment: no separators, no ``.`` or ``..``."""

    return bool(_REQUIREMENT_ID_RE.fullmatch(value)) and value not in {".", ".."}


def next_step(step: DeliveryStep) -> DeliveryStep | None:
    """Return the step after ``step`` or ``None`` past the end."""

    index = DELIVERY_STEPS.index(step)
    if index + 1 >= len(DELIVERY_STEPS):
        return None
    return DELIVERY_STEPS[index + 1]


@dataclass(frozen=True, slots=True)
class Checkpoint:
    project: str
    requirement_id: str
    last_completed: DeliveryStep
    updated_at: str
    seed_text: str = ""
    flow: str = ""
    domain: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "requirement_id": self.requirement_id,
            "seed_text": self.seed_text,
            "flow": self.flow,
            "domain": self.domain,
            "last_completed": self.last_completed.value,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Checkpoint | None:
        """Build a checkpoint from persisted data, or ``None`` when required fields are bad."""

        project = payload.get("project")
        requirement_id = payload.get("requirement_id")
        last_completed = normalize_step(payload.get("last_completed"))
        if not isinstance(project, str) or not isinstance(requirement_id, str):
            return None
        if not requirement_id.strip() or last_completed is None:
            return None
        updated_at = payload.get("updated_at")
        return cls(
            project=project,
            requirement_id=requirement_id.strip(),
            last_completed=last_completed,
            updated_at=updated_at if isinstance(updated_at, str) else "",
            seed_text=_as_text(payload.get("seed_text")),
            flow=_as_text(payload.get("flow")),
            domain=_as_text(payload.get("domain")),
        )


def _as_text(value: object) -> str:
    return value if isinstance(value, str) else ""


class CheckpointStore:
    """
    Checkpoint file at ``<project>/.autopilot-checkpoint.json``.

    A checkpoint is only trusted while its requirement directory still exists
    under ``requirements/in-progress``; otherwise resumption restarts at
    ``create`` and the checkpoint is cleared.
    """

    @staticmethod
    def checkpoint_path(project_root: PathLike) -> Path:
        return Path(project_root) / CHECKPOINT_FILE

    def load(self, project_root: PathLike) -> Checkpoint | None:
        payload = read_json_object(self.checkpoint_path(project_root))
        if payload is None:
            return None
        return Checkpoint.from_dict(payload)

    def save(self, project_root: PathLike, checkpoint: Checkpoint) -> None:
        write_json_atomic(self.checkpoint_path(project_root), checkpoint.to_dict())

    def clear(self, project_root: PathLike) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.checkpoint_path(project_root).unlink()

    def requirement_in_progress(self, project_root: PathLike, requirement_id: str) -> bool:
        if not is_valid_requirement_id(requirement_id):
            return False
        return (Path(project_root) / REQUIREMENTS_IN_PROGRESS_DIR / requirement_id).is_dir()

    def choose_resume_step(self, project_root: PathLike) -> DeliveryStep | None:
        checkpoint = self.load(project_root)
        if checkpoint is None:
            return None
        if not self.requirement_in_progress(project_root, checkpoint.requirement_id):
            self.clear(project_root)
            return DeliveryStep.CREATE
        following = next_step(checkpoint.last_completed)
        return following if following is not None else DeliveryStep.FINISH

    def record_step(
        self,
        project_root: PathLike,
        *,
        project: str,
        requirement_id: str,
        step: DeliveryStep,
        seed_text: str = "",
        flow: str = "",
        domain: str = "",
        now: datetime | None = None,
    ) -> Checkpoint:
        """Persist ``step`` as the last completed step for ``requirement_id``."""

        if not is_valid_requirement_id(requirement_id):
            raise ValueError(f"invalid requirement id: {requirement_id!r}")
        stamp = (now if now is not None else datetime.now(tz=UTC)).isoformat()
        checkpoint = Checkpoint(
            project=project,
            requirement_id=requirement_id,
            last_completed=step,
            updated_at=stamp,
            seed_text=seed_text,
            flow=flow,
            domain=domain,
        )
        self.save(project_root, checkpoint)
        return checkpoint


__all__ = [
    "DELIVERY_STEPS",
    "Checkpoint",
    "CheckpointStore",
    "DeliveryStep",
    "is_valid_requirement_id",
    "next_step",
    "normalize_step",
]
