"""Clear campaign states left ``running`` by processes that no longer exist."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import psutil
import structlog

from delivery_autopilot.constants import WORKSPACE_LOCK_FILE
from delivery_autopilot.control_plane.telemetry import CampaignTelemetry
from delivery_autopilot.locking.workspace_lock import FileWorkspaceLock, held
from delivery_autopilot.utils.fs import read_json_object, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Callable

    from delivery_autopilot.locking.workspace_lock import WorkspaceLock
    from delivery_autopilot.utils.fs import PathLike

STALE_PHASE: Final[str] = "stale_state_sanitized"
STALE_ERROR: Final[str] = "campaign marked stale because owner_pid is no longer running"
SANITIZED_EVENT: Final[str] = "campaign.state.sanitized"


def is_pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        return psutil.pid_exists(pid)
    except (OSError, psutil.Error):
        return False


def sweep_stale_states(
    workspace_root: PathLike,
    *,
    telemetry: CampaignTelemetry | None = None,
    pid_alive: Callable[[int], bool] = is_pid_running,
    lock: WorkspaceLock | None = None,
    logger: Any | None = None,
) -> list[str]:
    """
    Rewrite orphaned running states under ``workspace_root``.

    Each project directory whose campaign state says ``running=true`` while the
    recorded owner pid is dead gets ``running=false``, ``phase`` set to
    ``stale_state_sanitized`` and a ``last_error`` (kept if already set). The
    correction is journaled. Each read-check-write runs under the workspace
    lock so it cannot overwrite a concurrent campaign claim. Returns the names
    of sanitized projects.
    """

    root = Path(workspace_root)
    writer = telemetry if telemetry is not None else CampaignTelemetry()
    log = logger if logger is not None else structlog.get_logger(__name__)
    guard = lock if lock is not None else FileWorkspaceLock()
    if not root.is_dir():
        return []

    sanitized: list[str] = []
    for project_root in sorted(path for path in root.iterdir() if path.is_dir()):
        with held(guard, root / WORKSPACE_LOCK_FILE):
            owner_pid = _sanitize(project_root, writer, pid_alive)
        if owner_pid is None:
            continue
        writer.journal(
            project_root,
            SANITIZED_EVENT,
            f"stale running=true cleared (owner_pid={owner_pid})",
        )
        log.info("campaign_state_sanitized", project=project_root.name, owner_pid=owner_pid)
        sanitized.append(project_root.name)
    return sanitized


def _sanitize(
    project_root: Path,
    writer: CampaignTelemetry,
    pid_alive: Callable[[int], bool],
) -> int | None:
    """Rewrite one orphaned state; return its dead owner pid, or ``None`` when untouched."""

    state_path = writer.state_path(project_root)
    payload = read_json_object(state_path)
    if payload is None or payload.get("running") is not True:
        return None
    owner_pid = _pid(payload.get("owner_pid"))
    if pid_alive(owner_pid):
        return None
    payload["running"] = False
    payload["phase"] = STALE_PHASE
    if not payload.get("last_error"):
        payload["last_error"] = STALE_ERROR
    payload["updated_at"] = writer.now_iso()
    write_json_atomic(state_path, payload)
    return owner_pid


def _pid(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


__all__ = [
    "SANITIZED_EVENT",
    "STALE_ERROR",
    "STALE_PHASE",
    "is_pid_running",
    "sweep_stale_states",
]
