"""
delivery-autopilot — workspace lock

Purpose
- Serialize read-modify-write cycles on shared workspace files (project index,
  availability cache, campaign claims) across processes on one machine.

Functional requirements
- The lock is an exclusively-created marker file holding ``{pid, token, created_at}``.
- A contender that finds a marker older than the staleness threshold (by mtime)
  deletes it and retries immediately; otherwise it backs off and retries until
  the wait budget is spent, then raises ``LockContentionError``.
- Release removes the marker only when it still carries the releasing owner's token.

Non-functional requirements
- This is an advisory, same-machine spinlock. Staleness is judged against file
  mtime, so correctness relies on a coherent clock between participants. It is
  not a lease protocol and gives no guarantees on network filesystems.
"""

from __future__ import annotations

import contextlib
import json
import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from delivery_autopilot.constants import (
    LOCK_RETRY_INTERVAL_SECONDS,
    LOCK_STALE_AFTER_SECONDS,
    LOCK_WAIT_BUDGET_SECONDS,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from delivery_autopilot.utils.fs import PathLike


class LockContentionError(TimeoutError):
    """Raised when a lock cannot be acquired within the wait budget."""

    def __init__(self, lock_path: Path, waited_seconds: float) -> None:
        self.lock_path = lock_path
        self.waited_seconds = waited_seconds
        super().__init__(
            f"could not acquire workspace lock {lock_path} within {waited_seconds:.2f}s"
        )


@dataclass(frozen=True, slots=True)
class LockHandle:
    path: Path
    pid: int
    token: str


@runtime_checkable
class WorkspaceLock(Protocol):
    def acquire(self, path: PathLike) -> LockHandle: ...

    def release(self, handle: LockHandle) -> None: ...


@contextlib.contextmanager
def held(lock: WorkspaceLock, path: PathLike) -> Iterator[LockHandle]:
    """Hold ``lock`` on ``path`` for the duration of the ``with`` block."""

    handle = lock.acquire(path)
    try:
        yield handle
    finally:
        lock.release(handle)


class FileWorkspaceLock:
    """Marker-file spinlock created with ``O_CREAT | O_EXCL``."""

    def __init__(
        self,
        *,
        stale_after_seconds: float = LOCK_STALE_AFTER_SECONDS,
        retry_interval_seconds: float = LOCK_RETRY_INTERVAL_SECONDS,
        wait_budget_seconds: float = LOCK_WAIT_BUDGET_SECONDS,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")
        if retry_interval_seconds < 0:
            raise ValueError("retry_interval_seconds must be >= 0")
        if wait_budget_seconds < 0:
            raise ValueError("wait_budget_seconds must be >= 0")
        self._stale_after = stale_after_seconds
        self._retry_interval = retry_interval_seconds
        self._wait_budget = wait_budget_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    def acquire(self, path: PathLike) -> LockHandle:
        lock_path = Path(path)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = self._monotonic()
        while True:
            handle = self._try_create(lock_path)
            if handle is not None:
                return handle
            if self._break_if_stale(lock_path):
                continue
            waited = self._monotonic() - started
            if waited >= self._wait_budget:
                raise LockContentionError(lock_path, waited)
            self._sleep(self._retry_interval)

    def release(self, handle: LockHandle) -> None:
        try:
            raw = handle.path.read_text(encoding="utf-8")
        except OSError:
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return
        if not isinstance(payload, dict) or payload.get("token") != handle.token:
            return
        with contextlib.suppress(FileNotFoundError):
            handle.path.unlink()

    def _try_create(self, lock_path: Path) -> LockHandle | None:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return None
        handle = LockHandle(path=lock_path, pid=os.getpid(), token=secrets.token_hex(16))
        marker = {
            "pid": handle.pid,
            "token": handle.token,
            "created_at": datetime.fromtimestamp(self._clock(), tz=UTC).isoformat(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as file_handle:
            file_handle.write(json.dumps(marker, sort_keys=True))
            file_handle.flush()
        return handle

    def _break_if_stale(self, lock_path: Path) -> bool:
        """Delete the marker when it is older than the threshold; report whether to retry now."""

        try:
            modified = lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if self._clock() - modified <= self._stale_after:
            return False
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()
        return True


class ThreadWorkspaceLock:
    """In-process lock keyed by path, for single-process deployments and tests."""

    def __init__(
        self,
        *,
        wait_budget_seconds: float = LOCK_WAIT_BUDGET_SECONDS,
    ) -> None:
        self._wait_budget = wait_budget_seconds
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}
        self._owners: dict[Path, str] = {}

    def acquire(self, path: PathLike) -> LockHandle:
        lock_path = Path(path)
        with self._guard:
            lock = self._locks.setdefault(lock_path, threading.Lock())
        if not lock.acquire(timeout=self._wait_budget):
            raise LockContentionError(lock_path, self._wait_budget)
        token = secrets.token_hex(16)
        with self._guard:
            self._owners[lock_path] = token
        return LockHandle(path=lock_path, pid=os.getpid(), token=token)

    def release(self, handle: LockHandle) -> None:
        with self._guard:
            if self._owners.get(handle.path) != handle.token:
                return
            del self._owners[handle.path]
            lock = self._locks[handle.path]
        lock.release()


__all__ = [
    "FileWorkspaceLock",
    "LockContentionError",
    "LockHandle",
    "ThreadWorkspaceLock",
    "WorkspaceLock",
    "held",
]
