"""Blocking-signal collection from run status, lifecycle report and stage ledger."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from delivery_autopilot.constants import (
    BLOCKER_REPORT_LIMIT,
    LIFECYCLE_REPORT_PATH,
    RUN_STATUS_FILE,
)
from delivery_autopilot.pipeline.stages import StageLedgerStore
from delivery_autopilot.utils.fs import read_json_object

if TYPE_CHECKING:
    from delivery_autopilot.pipeline.stages import StageLedger
    from delivery_autopilot.utils.fs import PathLike

TRANSIENT_SIGNAL_RE: Final[re.Pattern[str]] = re.compile(
    r"provider temporarily unavailable|terminalquotaerror|quota|capacity|429"
    r"|timed out|etimedout|\bdep0040\b|punycode|loaded cached credentials"
    r"|hook registry initialized",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class BlockingSignals:
    blocking: bool = False
    blockers: tuple[str, ...] = ()
    lifecycle_fail_count: int = 0
    stage_failures: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "blocking": self.blocking,
            "blockers": list(self.blockers),
            "lifecycle_fail_count": self.lifecycle_fail_count,
            "stage_failures": list(self.stage_failures),
        }


def is_transient_signal(value: str) -> bool:
    return TRANSIENT_SIGNAL_RE.search(value) is not None


def read_run_status_blockers(project_root: PathLike) -> list[str]:
    """Non-empty blocker strings from ``run-status.json``, transient noise included."""

    payload = read_json_object(Path(project_root) / RUN_STATUS_FILE)
    if payload is None:
        return []
    raw = payload.get("blockers")
    if not isinstance(raw, list):
        return []
    return [str(item).strip() for item in raw if item is not None and str(item).strip()]


def read_lifecycle_steps(project_root: PathLike) -> list[dict[str, Any]]:
    payload = read_json_object(Path(project_root) / LIFECYCLE_REPORT_PATH)
    if payload is None:
        return []
    steps = payload.get("steps")
    if not isinstance(steps, list):
        return []
    return [step if isinstance(step, dict) else {} for step in steps]


class BlockingSignalCollector:
    def __init__(self, *, ledger_store: StageLedgerStore | None = None) -> None:
        self._ledger_store = ledger_store if ledger_store is not None else StageLedgerStore()

    def collect(
        self,
        project_root: PathLike,
        *,
        ledger: StageLedger | None = None,
    ) -> BlockingSignals:
        blockers = [
            value
            for value in read_run_status_blockers(project_root)
            if not is_transient_signal(value)
        ]
        lifecycle_fail_count = sum(
            1 for step in read_lifecycle_steps(project_root) if step.get("ok") is not True
        )
        current = ledger if ledger is not None else self._ledger_store.load(project_root)
        stage_failures = tuple(stage.value for stage in current.failed_stages())
        return BlockingSignals(
            blocking=bool(blockers) or lifecycle_fail_count > 0 or bool(stage_failures),
            blockers=tuple(blockers[:BLOCKER_REPORT_LIMIT]),
            lifecycle_fail_count=lifecycle_fail_count,
            stage_failures=stage_failures,
        )


__all__ = [
    "TRANSIENT_SIGNAL_RE",
    "BlockingSignalCollector",
    "BlockingSignals",
    "is_transient_signal",
    "read_lifecycle_steps",
    "read_run_status_blockers",
]
