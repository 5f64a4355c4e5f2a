"""Campaign policy with range clamping."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from delivery_autopilot.pipeline.stages import Stage, parse_stage

if TYPE_CHECKING:
    from collections.abc import Mapping

MIN_RUNTIME_MINUTES_RANGE: Final[tuple[int, int]] = (0, 24 * 60)
MAX_CYCLES_RANGE: Final[tuple[int, int]] = (1, 500)
SLEEP_SECONDS_RANGE: Final[tuple[int, int]] = (0, 300)
STALL_CYCLES_RANGE: Final[tuple[int, int]] = (1, 20)

DEFAULT_MIN_RUNTIME_MINUTES: Final[int] = 0
DEFAULT_MAX_CYCLES: Final[int] = 24
DEFAULT_SLEEP_SECONDS: Final[int] = 5
DEFAULT_STALL_CYCLES: Final[int] = 4
DEFAULT_TARGET_STAGE: Final[Stage] = Stage.RUNTIME_START


def clamp_int(value: object, fallback: int, bounds: tuple[int, int]) -> int:
    """Truncate ``value`` to an int inside ``bounds``; non-numeric input yields ``fallback``."""

    low, high = bounds
    if isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return fallback
    if not isinstance(value, int | float) or not math.isfinite(value):
        return fallback
    return max(low, min(high, math.trunc(value)))


@dataclass(frozen=True, slots=True)
class CampaignPolicy:
    min_runtime_minutes: int = DEFAULT_MIN_RUNTIME_MINUTES
    max_cycles: int = DEFAULT_MAX_CYCLES
    sleep_seconds: int = DEFAULT_SLEEP_SECONDS
    target_stage: Stage = DEFAULT_TARGET_STAGE
    stall_cycles: int = DEFAULT_STALL_CYCLES
    autonomous: bool = True

    @classmethod
    def clamped(
        cls,
        *,
        min_runtime_minutes: object = DEFAULT_MIN_RUNTIME_MINUTES,
        max_cycles: object = DEFAULT_MAX_CYCLES,
        sleep_seconds: object = DEFAULT_SLEEP_SECONDS,
        target_stage: object = DEFAULT_TARGET_STAGE,
        stall_cycles: object = DEFAULT_STALL_CYCLES,
        autonomous: bool = True,
    ) -> CampaignPolicy:
        """Build a policy, forcing each value into its allowed range."""

        stage = parse_stage(target_stage)
        return cls(
            min_runtime_minutes=clamp_int(
                min_runtime_minutes, DEFAULT_MIN_RUNTIME_MINUTES, MIN_RUNTIME_MINUTES_RANGE
            ),
            max_cycles=clamp_int(max_cycles, DEFAULT_MAX_CYCLES, MAX_CYCLES_RANGE),
            sleep_seconds=clamp_int(sleep_seconds, DEFAULT_SLEEP_SECONDS, SLEEP_SECONDS_RANGE),
            target_stage=stage if stage is not None else DEFAULT_TARGET_STAGE,
            stall_cycles=clamp_int(stall_cycles, DEFAULT_STALL_CYCLES, STALL_CYCLES_RANGE),
            autonomous=bool(autonomous),
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> CampaignPolicy:
        return cls.clamped(
            min_runtime_minutes=values.get("min_runtime_minutes", DEFAULT_MIN_RUNTIME_MINUTES),
            max_cycles=values.get("max_cycles", DEFAULT_MAX_CYCLES),
            sleep_seconds=values.get("sleep_seconds", DEFAULT_SLEEP_SECONDS),
            target_stage=values.get("target_stage", DEFAULT_TARGET_STAGE),
            stall_cycles=values.get("stall_cycles", DEFAULT_STALL_CYCLES),
            autonomous=bool(values.get("autonomous", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_runtime_minutes": self.min_runtime_minutes,
            "max_cycles": self.max_cycles,
            "sleep_seconds": self.sleep_seconds,
            "target_stage": self.target_stage.value,
            "stall_cycles": self.stall_cycles,
            "autonomous": self.autonomous,
        }


__all__ = [
    "CampaignPolicy",
    "clamp_int",
]
