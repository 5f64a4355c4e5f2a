"""
delivery-autopilot — unit tests for the model availability cache

Purpose
- Validate reset-hint parsing, passive expiry, sweeping, persistence and
  provider-key normalization.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from delivery_autopilot.locking.workspace_lock import ThreadWorkspaceLock
from delivery_autopilot.providers.availability import (
    ModelAvailabilityCache,
    parse_reset_hint_ms,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


class _Clock:
    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def _cache(tmp_path: Path, clock: _Clock, logger: RecordingLogger | None = None):
    return ModelAvailabilityCache(
        tmp_path, lock=ThreadWorkspaceLock(), clock_ms=clock, logger=logger or RecordingLogger()
    )


@pytest.mark.parametrize(
    ("hint", "expected"),
    [
        ("Your quota will reset after 1h 30m.", 5_400_000),
        ("quota will reset after 45s", 45_000),
        ("2 hours 5 minutes", 7_500_000),
        ("Quota will reset after 10m, retry later in 3h", 600_000),
        ("try again soon", None),
        ("", None),
        ("0m", None),
        ("Your quota will reset after 5h7m56s.", 18_476_000),
        ("quota will reset after 1h30m", 5_400_000),
        ("wait 5 more minutes", None),
        ("3 mins 2 secs", 182_000),
    ],
)
def test_parse_reset_hint(hint: str, expected: int | None) -> None:
    assert parse_reset_hint_ms(hint) == expected


def test_mark_uses_parsed_hint_then_expires(tmp_path: Path) -> None:
    clock = _Clock()
    logger = RecordingLogger()
    cache = _cache(tmp_path, clock, logger)

    entry = cache.mark_unavailable("Gemini", "pro", "quota will reset after 2m")

    assert entry is not None
    assert entry.unavailable_until_ms == clock.now_ms + 120_000
    assert cache.is_unavailable("gemini", "pro")
    assert cache.list_unavailable("GEMINI") == ["pro"]
    assert cache.next_availability_ms("gemini") == 120_000
    assert logger.events[-1][0] == "provider_model_marked_unavailable"
    assert logger.events[-1][1]["hint_parsed"] is True

    clock.now_ms += 120_000
    assert not cache.is_unavailable("gemini", "pro")
    assert cache.list_unavailable("gemini") == []
    assert cache.next_availability_ms("gemini") is None


def test_fallback_window_has_a_floor(tmp_path: Path) -> None:
    clock = _Clock()
    cache = _cache(tmp_path, clock)

    entry = cache.mark_unavailable("gemini", "flash", "", fallback_ms=10)

    assert entry is not None
    assert entry.unavailable_until_ms == clock.now_ms + 1_000


def test_blank_keys_are_ignored(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _Clock())

    assert cache.mark_unavailable(" ", "pro") is None
    assert cache.mark_unavailable("gemini", "") is None
    assert not cache.path.exists()
    assert not cache.is_unavailable("", "pro")


def test_first_available_skips_unavailable_models(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _Clock())
    cache.mark_unavailable("gemini", "pro", fallback_ms=60_000)

    assert cache.first_available("gemini", ("pro", "flash")) == "flash"
    cache.mark_unavailable("gemini", "flash", fallback_ms=60_000)
    assert cache.first_available("gemini", ("pro", "flash")) is None


def test_sweep_removes_expired_entries_and_empty_providers(tmp_path: Path) -> None:
    clock = _Clock()
    cache = _cache(tmp_path, clock)
    cache.mark_unavailable("gemini", "pro", fallback_ms=5_000)
    cache.mark_unavailable("gemini", "flash", fallback_ms=60_000)
    cache.mark_unavailable("claude", "sonnet", fallback_ms=5_000)

    clock.now_ms += 10_000
    removed = cache.sweep_expired()

    assert removed == 2
    persisted = json.loads(cache.path.read_text(encoding="utf-8"))
    assert persisted["providers"] == {
        "gemini": {"flash": persisted["providers"]["gemini"]["flash"]}
    }
    assert cache.sweep_expired() == 0


def test_cache_is_shared_through_the_file(tmp_path: Path) -> None:
    clock = _Clock()
    lock = ThreadWorkspaceLock()
    writer = ModelAvailabilityCache(tmp_path, lock=lock, clock_ms=clock, logger=RecordingLogger())
    reader = ModelAvailabilityCache(tmp_path, lock=lock, clock_ms=clock, logger=RecordingLogger())

    writer.mark_unavailable("gemini", "pro", fallback_ms=60_000)

    assert reader.is_unavailable("gemini", "pro")


def test_version_mismatch_loads_empty(tmp_path: Path) -> None:
    clock = _Clock()
    cache = _cache(tmp_path, clock)
    cache.path.parent.mkdir(parents=True)
    cache.path.write_text(
        json.dumps(
            {
                "version": 99,
                "providers": {"gemini": {"pro": {"unavailable_until_ms": clock.now_ms + 1}}},
            }
        ),
        encoding="utf-8",
    )

    assert not cache.is_unavailable("gemini", "pro")
