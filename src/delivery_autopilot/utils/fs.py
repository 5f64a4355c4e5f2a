"""
delivery-autopilot — filesystem utilities

Purpose
- Provide atomic writes for per-project state records.
- Provide tolerant JSON readers: a missing or malformed file reads as ``None``.
- Provide append-only JSON-lines helpers for journals and audit logs.
- Provide a bounded-depth, lazy, restartable walk over project trees.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

PathLike = str | os.PathLike[str]

_DEFAULT_EXCLUDED_DIRS: frozenset[str] = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "dist", "build", ".cache"}
)

__all__ = [
    "FileRecord",
    "ProjectTree",
    "append_json_line",
    "atomic_write",
    "read_json_lines",
    "read_json_object",
    "write_json_atomic",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            with os.fdopen(fd, "w", encoding=encoding) as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def write_json_atomic(path: PathLike, payload: Mapping[str, Any]) -> None:
    """Serialize ``payload`` as indented, key-sorted JSON and write it atomically."""

    text = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
    atomic_write(path, text)


def read_json_object(path: PathLike) -> dict[str, Any] | None:
    """Return the JSON object stored at ``path`` or ``None`` when missing or malformed."""

    target = Path(path)
    try:
        raw = target.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def append_json_line(path: PathLike, payload: Mapping[str, Any]) -> None:
    """Append one compact JSON object as a line to ``path``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")


def read_json_lines(path: PathLike, *, limit: int | None = None) -> list[dict[str, Any]]:
    """
    Return JSON objects from a JSON-lines file, oldest first.

    Blank and malformed lines are skipped. When ``limit`` is set only the last
    ``limit`` physical lines are considered.
    """

    target = Path(path)
    try:
        with target.open("r", encoding="utf-8", errors="replace") as handle:
            lines: list[str] | deque[str]
            lines = deque(handle, maxlen=limit) if limit is not None else list(handle)
    except OSError:
        return []

    records: list[dict[str, Any]] = []
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            records.append(parsed)
    return records


@dataclass(frozen=True, slots=True)
class FileRecord:
    """One file yielded by ``ProjectTree``."""

    relative_path: PurePosixPath
    depth: int
    size_bytes: int


class ProjectTree:
    """
    Lazy, bounded-depth view of the files below ``root``.

    Iteration walks breadth-first with ``os.scandir`` and never descends past
    ``max_depth`` directory levels or into excluded directory names. Each call
    to ``iter()`` starts a fresh walk, so the same instance can be reused.
    Symlinked directories are not followed.
    """

    __slots__ = ("_excluded", "_max_depth", "_max_files", "_root")

    def __init__(
        self,
        root: PathLike,
        *,
        max_depth: int = 6,
        max_files: int = 20_000,
        excluded_dirs: frozenset[str] = _DEFAULT_EXCLUDED_DIRS,
    ) -> None:
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        if max_files <= 0:
            raise ValueError("max_files must be > 0")
        self._root = Path(root)
        self._max_depth = max_depth
        self._max_files = max_files
        self._excluded = excluded_dirs

    @property
    def root(self) -> Path:
        return self._root

    def __iter__(self) -> Iterator[FileRecord]:
        if not self._root.is_dir():
            return
        emitted = 0
        pending: deque[tuple[Path, int]] = deque([(self._root, 0)])
        while pending:
            directory, depth = pending.popleft()
            try:
                with os.scandir(directory) as entries:
                    ordered = sorted(entries, key=lambda entry: entry.name)
            except OSError:
                continue
            for entry in ordered:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if depth < self._max_depth and entry.name not in self._excluded:
                            pending.append((Path(entry.path), depth + 1))
                        continue
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    size = entry.stat(follow_symlinks=False).st_size
                except OSError:
                    continue
                relative = PurePosixPath(Path(entry.path).relative_to(self._root).as_posix())
                yield FileRecord(relative_path=relative, depth=depth, size_bytes=size)
                emitted += 1
                if emitted >= self._max_files:
                    return


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
