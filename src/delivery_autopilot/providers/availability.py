"""
Model availability cache.

Records provider/model pairs that recently hit quota or capacity limits so that
callers can rotate to a fallback model until the reset time passes. Entries
expire passively: an entry whose ``unavailable_until_ms`` is not in the future
is treated as absent, and ``sweep_expired`` physically removes such entries.

The cache file lives at ``<workspace>/state/model-availability.json``. Each
read-modify-write runs under the workspace lock.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from delivery_autopilot.constants import (
    AVAILABILITY_CACHE_PATH,
    AVAILABILITY_CACHE_SCHEMA_VERSION,
    MIN_UNAVAILABLE_FALLBACK_MS,
    WORKSPACE_LOCK_FILE,
)
from delivery_autopilot.locking.workspace_lock import FileWorkspaceLock, held
from delivery_autopilot.utils.fs import read_json_object, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Callable

    from delivery_autopilot.locking.workspace_lock import WorkspaceLock
    from delivery_autopilot.utils.fs import PathLike

_RESET_PHRASE_RE: Final[re.Pattern[str]] = re.compile(
    r"quota will reset after\s+([^.,\n]+)", re.IGNORECASE
)
_DURATION_TOKEN_RE: Final[re.Pattern[str]] = re.compile(
    r"(\d+)\s*(hours|hour|hrs|hr|h|minutes|minute|mins|min|m|seconds|second|secs|sec|s)(?![a-z])",
    re.IGNORECASE,
)
_UNIT_MS: Final[dict[str, int]] = {"h": 3_600_000, "m": 60_000, "s": 1_000}

UNAVAILABLE_REASON: Final[str] = "quota_or_capacity"
DEFAULT_FALLBACK_MS: Final[int] = 60_000


def parse_reset_hint_ms(hint: str) -> int | None:
    """
    Sum the duration tokens in ``hint`` into milliseconds.

    When the text contains a "quota will reset after ..." phrase only that
    phrase is read. Returns ``None`` when no positive duration is found.
    """

    text = hint.strip()
    if not text:
        return None
    phrase = _RESET_PHRASE_RE.search(text)
    scope = phrase.group(1) if phrase is not None else text
    total = 0
    for match in _DURATION_TOKEN_RE.finditer(scope):
        total += int(match.group(1)) * _UNIT_MS[match.group(2)[0].lower()]
    return total if total > 0 else None


@dataclass(frozen=True, slots=True)
class ModelAvailabilityEntry:
    unavailable_until_ms: int
    reason: str
    hint: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "unavailable_until_ms": self.unavailable_until_ms,
            "reason": self.reason,
            "hint": self.hint,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: object) -> ModelAvailabilityEntry | None:
        if not isinstance(payload, dict):
            return None
        until = payload.get("unavailable_until_ms")
        if isinstance(until, bool) or not isinstance(until, int | float):
            return None
        return cls(
            unavailable_until_ms=int(until),
            reason=str(payload.get("reason", "")),
            hint=str(payload.get("hint", "")),
            updated_at=str(payload.get("updated_at", "")),
        )


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _provider_key(provider: str) -> str:
    return provider.strip().lower()


class ModelAvailabilityCache:
    """Persisted per-(provider, model) unavailability windows."""

    def __init__(
        self,
        workspace_root: PathLike,
        *,
        lock: WorkspaceLock | None = None,
        clock_ms: Callable[[], int] = _wall_clock_ms,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(workspace_root)
        self._lock = lock if lock is not None else FileWorkspaceLock()
        self._clock_ms = clock_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._root / AVAILABILITY_CACHE_PATH

    @property
    def lock_path(self) -> Path:
        return self._root / WORKSPACE_LOCK_FILE

    def mark_unavailable(
        self,
        provider: str,
        model: str,
        hint: str = "",
        fallback_ms: int = DEFAULT_FALLBACK_MS,
    ) -> ModelAvailabilityEntry | None:
        provider_key = _provider_key(provider)
        model_key = model.strip()
        if not provider_key or not model_key:
            return None
        parsed = parse_reset_hint_ms(hint)
        wait_ms = parsed if parsed is not None else max(MIN_UNAVAILABLE_FALLBACK_MS, fallback_ms)
        now_ms = self._clock_ms()
        entry = ModelAvailabilityEntry(
            unavailable_until_ms=now_ms + wait_ms,
            reason=UNAVAILABLE_REASON,
            hint=hint.strip(),
            updated_at=datetime.fromtimestamp(now_ms / 1000, tz=UTC).isoformat(),
        )
        with held(self._lock, self.lock_path):
            providers = self._load()
            providers.setdefault(provider_key, {})[model_key] = entry
            self._save(providers)
        self._logger.info(
            "provider_model_marked_unavailable",
            provider=provider_key,
            model=model_key,
            wait_ms=wait_ms,
            hint_parsed=parsed is not None,
        )
        return entry

    def is_unavailable(self, provider: str, model: str) -> bool:
        provider_key = _provider_key(provider)
        model_key = model.strip()
        if not provider_key or not model_key:
            return False
        entry = self._load().get(provider_key, {}).get(model_key)
        return entry is not None and entry.unavailable_until_ms > self._clock_ms()

    def list_unavailable(self, provider: str) -> list[str]:
        provider_key = _provider_key(provider)
        if not provider_key:
            return []
        now_ms = self._clock_ms()
        entries = self._load().get(provider_key, {})
        return sorted(
            name for name, entry in entries.items() if entry.unavailable_until_ms > now_ms
        )

    def next_availability_ms(self, provider: str) -> int | None:
        """Milliseconds until the soonest unavailable model for ``provider`` frees up."""

        provider_key = _provider_key(provider)
        if not provider_key:
            return None
        now_ms = self._clock_ms()
        deltas = [
            entry.unavailable_until_ms - now_ms
            for entry in self._load().get(provider_key, {}).values()
            if entry.unavailable_until_ms > now_ms
        ]
        return min(deltas) if deltas else None

    def first_available(self, provider: str, models: tuple[str, ...]) -> str | None:
        for model in models:
            if model.strip() and not self.is_unavailable(provider, model):
                return model
        return None

    def sweep_expired(self) -> int:
        """Remove expired entries and empty providers; return the number of removed entries."""

        with held(self._lock, self.lock_path):
            providers = self._load()
            now_ms = self._clock_ms()
            removed = 0
            touched = False
            for provider_key in list(providers):
                entries = providers[provider_key]
                for model_key in list(entries):
                    if entries[model_key].unavailable_until_ms <= now_ms:
                        del entries[model_key]
                        removed += 1
                        touched = True
                if not entries:
                    del providers[provider_key]
                    touched = True
            if touched:
                self._save(providers)
        return removed

    def _load(self) -> dict[str, dict[str, ModelAvailabilityEntry]]:
        payload = read_json_object(self.path)
        if payload is None or payload.get("version") != AVAILABILITY_CACHE_SCHEMA_VERSION:
            return {}
        raw_providers = payload.get("providers")
        if not isinstance(raw_providers, dict):
            return {}
        providers: dict[str, dict[str, ModelAvailabilityEntry]] = {}
        for provider_key, raw_models in raw_providers.items():
            if not isinstance(raw_models, dict):
                continue
            models: dict[str, ModelAvailabilityEntry] = {}
            for model_key, raw_entry in raw_models.items():
                entry = ModelAvailabilityEntry.from_dict(raw_entry)
                if entry is not None:
                    models[str(model_key)] = entry
            providers[str(provider_key).lower()] = models
        return providers

    def _save(self, providers: dict[str, dict[str, ModelAvailabilityEntry]]) -> None:
        write_json_atomic(
            self.path,
            {
                "version": AVAILABILITY_CACHE_SCHEMA_VERSION,
                "providers": {
                    provider_key: {
                        model_key: entry.to_dict() for model_key, entry in models.items()
                    }
                    for provider_key, models in providers.items()
                },
            },
        )


__all__ = [
    "DEFAULT_FALLBACK_MS",
    "UNAVAILABLE_REASON",
    "ModelAvailabilityCache",
    "ModelAvailabilityEntry",
    "parse_reset_hint_ms",
]
