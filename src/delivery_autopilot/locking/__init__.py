"""Advisory workspace locking and the lock-guarded project index."""

from delivery_autopilot.locking.project_index import (
    ProjectIndex,
    ProjectNotFoundError,
    ProjectSummary,
    validate_project_name,
)
from delivery_autopilot.locking.workspace_lock import (
    FileWorkspaceLock,
    LockContentionError,
    LockHandle,
    ThreadWorkspaceLock,
    WorkspaceLock,
    held,
)

__all__ = [
    "FileWorkspaceLock",
    "LockContentionError",
    "LockHandle",
    "ProjectIndex",
    "ProjectNotFoundError",
    "ProjectSummary",
    "ThreadWorkspaceLock",
    "WorkspaceLock",
    "held",
    "validate_project_name",
]
