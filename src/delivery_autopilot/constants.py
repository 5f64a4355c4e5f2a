"""Stable constants shared across the autopilot control core."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STAGE_LEDGER_SCHEMA_VERSION: Final[int] = 1
AVAILABILITY_CACHE_SCHEMA_VERSION: Final[int] = 1
CAMPAIGN_STATE_SCHEMA_VERSION: Final[int] = 1

# Per-project files written by the control core.
STAGE_LEDGER_FILE: Final[str] = ".stage-ledger.json"
CHECKPOINT_FILE: Final[str] = ".autopilot-checkpoint.json"
CAMPAIGN_STATE_FILE: Final[str] = "campaign-state.json"
CAMPAIGN_JOURNAL_FILE: Final[str] = "campaign-journal.jsonl"
RECOVERY_AUDIT_FILE: Final[str] = "recovery-audit.jsonl"
DEBUG_REPORT_PATH: Final[PurePosixPath] = PurePosixPath("debug/campaign-debug-report.yaml")
PROJECT_METADATA_FILE: Final[str] = "metadata.json"

# Per-project files read from external collaborators.
RUN_STATUS_FILE: Final[str] = "run-status.json"
LIFECYCLE_REPORT_PATH: Final[PurePosixPath] = PurePosixPath(
    "generated-app/deploy/lifecycle-report.json"
)
CALL_OUTCOME_LOG_PATH: Final[PurePosixPath] = PurePosixPath("debug/provider-calls.jsonl")
REQUIREMENTS_IN_PROGRESS_DIR: Final[PurePosixPath] = PurePosixPath("requirements/in-progress")

# Workspace-level files.
WORKSPACE_INDEX_FILE: Final[str] = "workspaces.json"
WORKSPACE_LOCK_FILE: Final[str] = ".workspaces.lock"
AVAILABILITY_CACHE_PATH: Final[PurePosixPath] = PurePosixPath("state/model-availability.json")

# Bounds.
STAGE_HISTORY_LIMIT: Final[int] = 300
BLOCKER_REPORT_LIMIT: Final[int] = 12
CALL_OUTCOME_SCAN_LIMIT: Final[int] = 240

# Workspace lock timing.
LOCK_STALE_AFTER_SECONDS: Final[float] = 30.0
LOCK_RETRY_INTERVAL_SECONDS: Final[float] = 0.05
LOCK_WAIT_BUDGET_SECONDS: Final[float] = 5.0

# Provider signal window.
DEFAULT_SIGNAL_WINDOW_MINUTES: Final[int] = 30
MAX_SIGNAL_WINDOW_MINUTES: Final[int] = 240
MIN_UNAVAILABLE_FALLBACK_MS: Final[int] = 1_000

__all__ = [
    "AVAILABILITY_CACHE_PATH",
    "AVAILABILITY_CACHE_SCHEMA_VERSION",
    "BLOCKER_REPORT_LIMIT",
    "CALL_OUTCOME_LOG_PATH",
    "CALL_OUTCOME_SCAN_LIMIT",
    "CAMPAIGN_JOURNAL_FILE",
    "CAMPAIGN_STATE_FILE",
    "CAMPAIGN_STATE_SCHEMA_VERSION",
    "CHECKPOINT_FILE",
    "CONFIG_SCHEMA_VERSION",
    "DEBUG_REPORT_PATH",
    "DEFAULT_SIGNAL_WINDOW_MINUTES",
    "LIFECYCLE_REPORT_PATH",
    "LOCK_RETRY_INTERVAL_SECONDS",
    "LOCK_STALE_AFTER_SECONDS",
    "LOCK_WAIT_BUDGET_SECONDS",
    "MAX_SIGNAL_WINDOW_MINUTES",
    "MIN_UNAVAILABLE_FALLBACK_MS",
    "PROJECT_METADATA_FILE",
    "RECOVERY_AUDIT_FILE",
    "REQUIREMENTS_IN_PROGRESS_DIR",
    "RUN_STATUS_FILE",
    "STAGE_HISTORY_LIMIT",
    "STAGE_LEDGER_FILE",
    "STAGE_LEDGER_SCHEMA_VERSION",
    "WORKSPACE_INDEX_FILE",
    "WORKSPACE_LOCK_FILE",
]
