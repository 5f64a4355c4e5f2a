"""
delivery-autopilot — unit tests for the workspace lock

Purpose
- Validate marker-file exclusivity, stale marker recovery, contention timeouts
  and owner-token checks on release.

Non-functional requirements
- No real sleeping: time and sleep are injected.
"""

from __future__ import annotations

import json
import os
import threading
from typing import TYPE_CHECKING

import pytest

from delivery_autopilot.locking.workspace_lock import (
    FileWorkspaceLock,
    LockContentionError,
    LockHandle,
    ThreadWorkspaceLock,
    held,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


class _FakeTime:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_acquire_writes_marker_and_release_removes_it(tmp_path: Path) -> None:
    lock = FileWorkspaceLock()
    lock_path = tmp_path / "nested" / ".workspaces.lock"

    handle = lock.acquire(lock_path)
    marker = json.loads(lock_path.read_text(encoding="utf-8"))
    assert marker["pid"] == os.getpid()
    assert marker["token"] == handle.token
    assert "created_at" in marker

    lock.release(handle)
    assert not lock_path.exists()


def test_contention_raises_after_wait_budget(tmp_path: Path) -> None:
    fake = _FakeTime()
    lock_path = tmp_path / ".workspaces.lock"
    owner = FileWorkspaceLock()
    owner.acquire(lock_path)
    contender = FileWorkspaceLock(
        retry_interval_seconds=0.5,
        wait_budget_seconds=2.0,
        monotonic=fake.monotonic,
        sleep=fake.sleep,
    )

    with pytest.raises(LockContentionError) as excinfo:
        contender.acquire(lock_path)

    assert isinstance(excinfo.value, TimeoutError)
    assert excinfo.value.lock_path == lock_path
    assert excinfo.value.waited_seconds >= 2.0
    assert fake.sleeps == [0.5, 0.5, 0.5, 0.5]
    assert lock_path.exists()


def test_stale_marker_is_broken_and_reacquired(tmp_path: Path) -> None:
    lock_path = tmp_path / ".workspaces.lock"
    lock_path.write_text('{"pid": 1, "token": "dead"}', encoding="utf-8")
    old = lock_path.stat().st_mtime - 120
    os.utime(lock_path, (old, old))
    lock = FileWorkspaceLock(stale_after_seconds=30.0, wait_budget_seconds=0.0)

    handle = lock.acquire(lock_path)

    assert json.loads(lock_path.read_text(encoding="utf-8"))["token"] == handle.token
    lock.release(handle)


def test_fresh_marker_is_not_broken(tmp_path: Path) -> None:
    lock_path = tmp_path / ".workspaces.lock"
    lock_path.write_text('{"pid": 1, "token": "live"}', encoding="utf-8")
    fake = _FakeTime()
    lock = FileWorkspaceLock(
        wait_budget_seconds=0.0, monotonic=fake.monotonic, sleep=fake.sleep
    )

    with pytest.raises(LockContentionError):
        lock.acquire(lock_path)
    assert json.loads(lock_path.read_text(encoding="utf-8"))["token"] == "live"


def test_release_with_foreign_token_keeps_marker(tmp_path: Path) -> None:
    lock = FileWorkspaceLock()
    lock_path = tmp_path / ".workspaces.lock"
    handle = lock.acquire(lock_path)

    lock.release(LockHandle(path=lock_path, pid=handle.pid, token="someone-else"))

    assert lock_path.exists()
    lock.release(handle)
    assert not lock_path.exists()


def test_held_releases_on_error(tmp_path: Path) -> None:
    lock = FileWorkspaceLock()
    lock_path = tmp_path / ".workspaces.lock"

    with pytest.raises(RuntimeError), held(lock, lock_path):
        raise RuntimeError("boom")

    assert not lock_path.exists()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"stale_after_seconds": 0},
        {"retry_interval_seconds": -1},
        {"wait_budget_seconds": -0.1},
    ],
)
def test_invalid_timing_is_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        FileWorkspaceLock(**kwargs)


def test_thread_lock_serializes_critical_sections(tmp_path: Path) -> None:
    lock = ThreadWorkspaceLock(wait_budget_seconds=5.0)
    lock_path = tmp_path / ".workspaces.lock"
    counter = {"value": 0}

    def _bump() -> None:
        for _ in range(200):
            with held(lock, lock_path):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 800


def test_thread_lock_times_out(tmp_path: Path) -> None:
    lock = ThreadWorkspaceLock(wait_budget_seconds=0.01)
    lock_path = tmp_path / ".workspaces.lock"
    handle = lock.acquire(lock_path)
    errors: list[BaseException] = []

    def _contend() -> None:
        try:
            lock.acquire(lock_path)
        except LockContentionError as exc:
            errors.append(exc)

    worker = threading.Thread(target=_contend)
    worker.start()
    worker.join()
    lock.release(handle)

    assert len(errors) == 1
