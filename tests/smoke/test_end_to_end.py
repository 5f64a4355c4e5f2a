"""
delivery-autopilot — end-to-end smoke test

Purpose
- Drive a real campaign against a subprocess delivery increment and check the
  persisted side effects: stage ledger, checkpoint resume, campaign state,
  journal, recovery audit, debug report, workspace index and structured log.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

from delivery_autopilot.control_plane.driver import CampaignDriver, CampaignStatus
from delivery_autopilot.control_plane.increment import CommandDeliveryIncrement
from delivery_autopilot.control_plane.policy import CampaignPolicy
from delivery_autopilot.control_plane.telemetry import CampaignTelemetry
from delivery_autopilot.locking.project_index import ProjectIndex
from delivery_autopilot.locking.workspace_lock import FileWorkspaceLock
from delivery_autopilot.observability import (
    LoggingConfig,
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from delivery_autopilot.pipeline.checkpoint import CheckpointStore, DeliveryStep
from delivery_autopilot.pipeline.stages import Stage, StageLedgerStore, StageState, stage_rank

_DELIVERY_TOOL = """
import json
import os
import pathlib

root = pathlib.Path(os.environ["AUTOPILOT_PROJECT_ROOT"])
cycle = int(os.environ["AUTOPILOT_CYCLE"])
with open(root / "steps.log", "a", encoding="utf-8") as handle:
    handle.write(os.environ["AUTOPILOT_RESUME_STEP"] + "\\n")
(root / "requirements" / "in-progress" / "REQ-1").mkdir(parents=True, exist_ok=True)
stages = ["discovery", "functional_requirements", "technical_backlog"]
print("delivering cycle", cycle)
summary = {
    "ok": True,
    "message": "cycle %d" % cycle,
    "stages": {stages[cycle - 1]: "passed"},
    "checkpoint": {
        "requirement_id": "REQ-1",
        "last_completed": "plan" if cycle == 1 else "start",
    },
}
print(json.dumps(summary))
"""


@pytest.mark.smoke
def test_campaign_reaches_target_stage_through_subprocess_increment(tmp_path: Path) -> None:
    workspace_root = tmp_path / "workspaces"
    lock = FileWorkspaceLock()
    index = ProjectIndex(workspace_root, lock=lock)
    index.register_project("shop")
    project_root = index.require_project("shop")
    tool = tmp_path / "deliver.py"
    tool.write_text(_DELIVERY_TOOL, encoding="utf-8")

    handle = setup_structured_logging(
        LoggingConfig(run_id="shop-smoke", base_log_dir=tmp_path / "logs")
    )
    try:
        with correlation_scope(run_id="shop-smoke", project="shop"):
            driver = CampaignDriver(
                project="shop",
                project_root=project_root,
                workspace_root=workspace_root,
                increment=CommandDeliveryIncrement([sys.executable, str(tool)], timeout_seconds=60),
                policy=CampaignPolicy(
                    max_cycles=5, sleep_seconds=0, target_stage=Stage.TECHNICAL_BACKLOG
                ),
                goal="Online shop with checkout",
                lock=lock,
            )
            result = driver.run()
    finally:
        shutdown_logging(handle)

    assert result.status is CampaignStatus.SUCCEEDED
    assert result.cycles == 3
    assert result.stage_rank == 3
    assert result.stall_count == 0
    assert result.failure_streak == 0

    ledger = StageLedgerStore().load(project_root)
    assert stage_rank(ledger) == 3
    assert ledger.state_of(Stage.IMPLEMENTATION) is StageState.PENDING

    steps = (project_root / "steps.log").read_text(encoding="utf-8").splitlines()
    assert steps == ["", DeliveryStep.START.value, DeliveryStep.TEST.value]
    assert CheckpointStore().choose_resume_step(project_root) is DeliveryStep.TEST

    telemetry = CampaignTelemetry()
    state = telemetry.read_state(project_root)
    assert state is not None
    assert not state.running
    assert state.phase == "completed"
    assert state.target_passed
    events = [entry["event"] for entry in telemetry.read_journal(project_root)]
    assert events[0] == "campaign.started"
    assert events.count("campaign.cycle.completed") == 3
    assert events[-1] == "campaign.succeeded"

    audit_lines = telemetry.audit_path(project_root).read_text(encoding="utf-8").splitlines()
    assert len(audit_lines) == 3
    report = yaml.safe_load(telemetry.debug_report_path(project_root).read_text(encoding="utf-8"))
    assert isinstance(report, dict)

    log_records = [
        json.loads(line) for line in handle.log_path.read_text(encoding="utf-8").splitlines()
    ]
    messages = [record["message"] for record in log_records]
    assert "campaign_started" in messages
    assert "campaign_finished" in messages
    assert all(record["project"] == "shop" for record in log_records)
