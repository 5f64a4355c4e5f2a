"""Shared workspace project index guarded by the workspace lock."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from delivery_autopilot.constants import (
    PROJECT_METADATA_FILE,
    WORKSPACE_INDEX_FILE,
    WORKSPACE_LOCK_FILE,
)
from delivery_autopilot.locking.workspace_lock import FileWorkspaceLock, held
from delivery_autopilot.utils.fs import read_json_object, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Callable

    from delivery_autopilot.locking.workspace_lock import WorkspaceLock
    from delivery_autopilot.utils.fs import PathLike

_PROJECT_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_INITIAL_STATUS: Final[str] = "backlog"


class ProjectNotFoundError(LookupError):
    """Raised when a project name is not registered in the workspace."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"project not found in workspace index: {name!r}")


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    name: str
    status: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "status": self.status}


def validate_project_name(name: str) -> str:
    candidate = name.strip()
    if not _PROJECT_NAME_RE.fullmatch(candidate) or candidate in {".", ".."}:
        raise ValueError(f"invalid project name: {name!r}")
    return candidate


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ProjectIndex:
    """
    ``<workspace>/workspaces.json`` plus per-project ``metadata.json``.

    Every read-modify-write of the index happens under the workspace lock.
    """

    def __init__(
        self,
        workspace_root: PathLike,
        *,
        lock: WorkspaceLock | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._root = Path(workspace_root)
        self._lock = lock if lock is not None else FileWorkspaceLock()
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    @property
    def index_path(self) -> Path:
        return self._root / WORKSPACE_INDEX_FILE

    @property
    def lock_path(self) -> Path:
        return self._root / WORKSPACE_LOCK_FILE

    @property
    def lock(self) -> WorkspaceLock:
        return self._lock

    def project_root(self, name: str) -> Path:
        return self._root / validate_project_name(name)

    def list_projects(self) -> list[ProjectSummary]:
        return _summaries(read_json_object(self.index_path))

    def require_project(self, name: str) -> Path:
        """Return the project's root directory or raise ``ProjectNotFoundError``."""

        clean = validate_project_name(name)
        if not any(item.name == clean for item in self.list_projects()):
            raise ProjectNotFoundError(clean)
        return self._root / clean

    def register_project(self, name: str, *, domain: str = "software") -> dict[str, Any]:
        """Create the project directory, metadata and index entry; existing entries are kept."""

        clean = validate_project_name(name)
        project_root = self._root / clean
        now = self._clock().isoformat()
        with held(self._lock, self.lock_path):
            summaries = _summaries(read_json_object(self.index_path))
            existing = next((item for item in summaries if item.name == clean), None)
            (project_root / "requirements" / "backlog").mkdir(parents=True, exist_ok=True)
            metadata_path = project_root / PROJECT_METADATA_FILE
            metadata = read_json_object(metadata_path)
            if metadata is None:
                metadata = {
                    "name": clean,
                    "status": existing.status if existing is not None else _INITIAL_STATUS,
                    "domain": domain,
                    "created_at": now,
                    "updated_at": now,
                }
                write_json_atomic(metadata_path, metadata)
            if existing is None:
                summaries.append(ProjectSummary(name=clean, status=str(metadata["status"])))
                self._write_index(summaries)
        return metadata

    def update_status(self, name: str, status: str) -> None:
        clean = validate_project_name(name)
        with held(self._lock, self.lock_path):
            summaries = _summaries(read_json_object(self.index_path))
            updated = [
                ProjectSummary(name=item.name, status=status) if item.name == clean else item
                for item in summaries
            ]
            if not any(item.name == clean for item in summaries):
                updated.append(ProjectSummary(name=clean, status=status))
            self._write_index(updated)

            metadata_path = self._root / clean / PROJECT_METADATA_FILE
            metadata = read_json_object(metadata_path)
            if metadata is not None:
                metadata["status"] = status
                metadata["updated_at"] = self._clock().isoformat()
                write_json_atomic(metadata_path, metadata)

    def _write_index(self, summaries: list[ProjectSummary]) -> None:
        write_json_atomic(self.index_path, {"projects": [item.to_dict() for item in summaries]})


def _summaries(payload: dict[str, Any] | None) -> list[ProjectSummary]:
    if payload is None:
        return []
    raw_projects = payload.get("projects")
    if not isinstance(raw_projects, list):
        return []
    summaries: list[ProjectSummary] = []
    for item in raw_projects:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        status = item.get("status")
        if not isinstance(name, str) or not name.strip():
            continue
        summaries.append(
            ProjectSummary(
                name=name.strip(),
                status=status if isinstance(status, str) and status else "unknown",
            )
        )
    return summaries


__all__ = [
    "ProjectIndex",
    "ProjectNotFoundError",
    "ProjectSummary",
    "validate_project_name",
]
