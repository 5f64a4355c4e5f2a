"""
delivery-autopilot — unit tests for campaign telemetry and stale-state sweeping

Purpose
- Validate state snapshot persistence, journal and audit appends, the YAML
  debug report, project inventory, and sanitizing of orphaned running states.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest
import yaml

from delivery_autopilot.constants import WORKSPACE_LOCK_FILE
from delivery_autopilot.control_plane.recovery import RecoveryTier
from delivery_autopilot.control_plane.signals import BlockingSignals
from delivery_autopilot.control_plane.stale_state import (
    SANITIZED_EVENT,
    STALE_ERROR,
    STALE_PHASE,
    is_pid_running,
    sweep_stale_states,
)
from delivery_autopilot.control_plane.telemetry import (
    CampaignState,
    CampaignTelemetry,
    inventory_project,
)
from delivery_autopilot.locking.workspace_lock import ThreadWorkspaceLock, held
from delivery_autopilot.providers.diagnostics import ProviderIssueType

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit

_NOW = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def _telemetry() -> CampaignTelemetry:
    return CampaignTelemetry(clock=lambda: _NOW)


def test_state_round_trip_stamps_updated_at(tmp_path: Path) -> None:
    telemetry = _telemetry()
    state = CampaignState(cycle=3, running=True, owner_pid=42, stage_flags={"discovery": True})

    telemetry.write_state(tmp_path, state)
    loaded = telemetry.read_state(tmp_path)

    assert loaded is not None
    assert loaded.to_dict() == state.to_dict()
    assert loaded.updated_at == _NOW.isoformat()


def test_corrupt_state_reads_as_none(tmp_path: Path) -> None:
    telemetry = _telemetry()
    telemetry.state_path(tmp_path).write_text("[1, 2]", encoding="utf-8")

    assert telemetry.read_state(tmp_path) is None


def test_state_from_dict_tolerates_bad_types() -> None:
    state = CampaignState.from_dict(
        {"cycle": "3", "running": "yes", "owner_pid": True, "recovery_tier": 4, "autonomous": 0}
    )

    assert state.cycle == 0
    assert state.running is False
    assert state.owner_pid == 0
    assert state.recovery_tier == "none"
    assert state.autonomous is True


def test_journal_and_audit_append_lines(tmp_path: Path) -> None:
    telemetry = _telemetry()
    telemetry.journal(tmp_path, "campaign.started", "policy={}")
    telemetry.journal(tmp_path, "campaign.cycle.completed")
    telemetry.audit(
        tmp_path,
        cycle=1,
        tier=RecoveryTier.TIER2,
        action="tier2 gate-focused remediation. blockers=lint",
        outcome="error",
        signals=BlockingSignals(blocking=True, blockers=("lint",), lifecycle_fail_count=2),
    )

    journal = telemetry.read_journal(tmp_path)
    assert [entry["event"] for entry in journal] == ["campaign.started", "campaign.cycle.completed"]
    assert telemetry.read_journal(tmp_path, limit=1)[0]["event"] == "campaign.cycle.completed"

    audit_line = telemetry.audit_path(tmp_path).read_text(encoding="utf-8").strip()
    audit = json.loads(audit_line)
    assert audit["tier"] == "tier2"
    assert audit["blocking_signals"] == ["lint"]
    assert audit["lifecycle_fail_count"] == 2


def test_debug_report_is_yaml_with_root_causes(tmp_path: Path) -> None:
    app = tmp_path / "generated-app"
    (app / "tests").mkdir(parents=True)
    (app / "tests" / "app.test.js").write_text("", encoding="utf-8")
    (app / "README.md").write_text("", encoding="utf-8")
    (app / "index.js").write_text("", encoding="utf-8")

    report = _telemetry().write_debug_report(
        tmp_path,
        cycle=2,
        elapsed_minutes=1.5,
        provider_issue=ProviderIssueType.QUOTA,
        signals=BlockingSignals(blocking=True, blockers=("npm error 404 not found",)),
        tier=RecoveryTier.TIER1,
        action="tier1 recovery prompt boost. blockers=npm error 404 not found",
        model="flash",
    )

    rendered = yaml.safe_load(
        CampaignTelemetry.debug_report_path(tmp_path).read_text(encoding="utf-8")
    )
    assert rendered == report
    assert rendered["root_causes"] == [
        "invalid_or_unavailable_dependency_versions",
        "provider_quota_or_capacity_exhausted",
    ]
    assert len(rendered["recommendations"]) == 2
    assert rendered["inventory"] == {"total_files": 3, "test_files": 1, "doc_files": 1}


def test_inventory_falls_back_to_project_root(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("", encoding="utf-8")
    (tmp_path / "test_app.py").write_text("", encoding="utf-8")

    inventory = inventory_project(tmp_path)

    assert inventory.to_dict() == {"total_files": 2, "test_files": 1, "doc_files": 1}


def _write_running_state(telemetry: CampaignTelemetry, project_root: Path, pid: int) -> None:
    project_root.mkdir(parents=True, exist_ok=True)
    telemetry.write_state(project_root, CampaignState(running=True, owner_pid=pid, cycle=4))


def test_sweep_sanitizes_only_dead_owners(tmp_path: Path) -> None:
    telemetry = _telemetry()
    logger = RecordingLogger()
    _write_running_state(telemetry, tmp_path / "alive", 100)
    _write_running_state(telemetry, tmp_path / "dead", 200)
    (tmp_path / "empty").mkdir()

    sanitized = sweep_stale_states(
        tmp_path, telemetry=telemetry, pid_alive=lambda pid: pid == 100, logger=logger
    )

    assert sanitized == ["dead"]
    dead = telemetry.read_state(tmp_path / "dead")
    assert dead is not None
    assert (dead.running, dead.phase, dead.last_error) == (False, STALE_PHASE, STALE_ERROR)
    assert dead.cycle == 4
    alive = telemetry.read_state(tmp_path / "alive")
    assert alive is not None and alive.running
    assert telemetry.read_journal(tmp_path / "dead")[-1]["event"] == SANITIZED_EVENT
    assert logger.events == [("campaign_state_sanitized", {"project": "dead", "owner_pid": 200})]


def test_sweep_keeps_existing_last_error(tmp_path: Path) -> None:
    telemetry = _telemetry()
    project_root = tmp_path / "shop"
    project_root.mkdir()
    telemetry.write_state(
        project_root, CampaignState(running=True, owner_pid=5, last_error="cycle failed")
    )

    sweep_stale_states(tmp_path, telemetry=telemetry, pid_alive=lambda _pid: False)

    state = telemetry.read_state(project_root)
    assert state is not None
    assert state.last_error == "cycle failed"


def test_sweep_cannot_overwrite_a_concurrent_claim(tmp_path: Path) -> None:
    telemetry = _telemetry()
    lock = ThreadWorkspaceLock()
    project_root = tmp_path / "shop"
    _write_running_state(telemetry, project_root, 200)
    claimed = threading.Event()

    def claim() -> None:
        with held(lock, tmp_path / WORKSPACE_LOCK_FILE):
            telemetry.write_state(project_root, CampaignState(running=True, owner_pid=300))
        claimed.set()

    claimer = threading.Thread(target=claim)

    def owner_is_dead(_pid: int) -> bool:
        claimer.start()
        claimed.wait(timeout=0.2)
        return False

    sanitized = sweep_stale_states(
        tmp_path, telemetry=telemetry, pid_alive=owner_is_dead, lock=lock
    )
    claimer.join(timeout=5)

    assert sanitized == ["shop"]
    assert claimed.is_set()
    state = telemetry.read_state(project_root)
    assert state is not None
    assert (state.running, state.owner_pid) == (True, 300)


def test_sweep_of_missing_workspace_is_empty(tmp_path: Path) -> None:
    assert sweep_stale_states(tmp_path / "missing", logger=RecordingLogger()) == []


def test_is_pid_running() -> None:
    assert is_pid_running(os.getpid())
    assert not is_pid_running(0)
    assert not is_pid_running(-3)
