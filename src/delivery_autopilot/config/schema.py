"""
delivery-autopilot — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and type validation rules.
- Materialize validated config into the ``RuntimeSettings`` passed to components.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Range limits for campaign policy values are clamped by ``CampaignPolicy``,
  not rejected here; unknown target stage names fall back to the last stage.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal, TypedDict

from delivery_autopilot.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_SIGNAL_WINDOW_MINUTES,
    LOCK_RETRY_INTERVAL_SECONDS,
    LOCK_STALE_AFTER_SECONDS,
    LOCK_WAIT_BUDGET_SECONDS,
)
from delivery_autopilot.control_plane.policy import CampaignPolicy

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)
REDACTED_VALUE: Final[str] = "***REDACTED***"

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "log_dir"),
)

LOCK_BACKENDS: Final[tuple[str, ...]] = ("file", "thread")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    workspace_root: str
    log_dir: str


class CampaignConfig(TypedDict):
    min_runtime_minutes: int
    max_cycles: int
    sleep_seconds: int
    target_stage: str
    stall_cycles: int
    autonomous: bool


class LockingConfig(TypedDict):
    backend: Literal["file", "thread"]
    stale_after_seconds: float
    retry_interval_seconds: float
    wait_budget_seconds: float


class ProvidersConfig(TypedDict):
    name: str
    models: list[str]
    signal_window_minutes: int
    unavailable_fallback_seconds: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_to_stderr: bool
    redact_secrets: bool


class AutopilotConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    campaign: CampaignConfig
    locking: LockingConfig
    providers: ProvidersConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[AutopilotConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "paths": {
        "workspace_root": "workspaces",
        "log_dir": "logs",
    },
    "campaign": {
        "min_runtime_minutes": 0,
        "max_cycles": 24,
        "sleep_seconds": 5,
        "target_stage": "runtime_start",
        "stall_cycles": 4,
        "autonomous": True,
    },
    "locking": {
        "backend": "file",
        "stale_after_seconds": LOCK_STALE_AFTER_SECONDS,
        "retry_interval_seconds": LOCK_RETRY_INTERVAL_SECONDS,
        "wait_budget_seconds": LOCK_WAIT_BUDGET_SECONDS,
    },
    "providers": {
        "name": "default",
        "models": [],
        "signal_window_minutes": DEFAULT_SIGNAL_WINDOW_MINUTES,
        "unavailable_fallback_seconds": 60,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_to_stderr": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Validated, typed view of the effective config handed to components."""

    workspace_root: Path
    log_dir: Path
    policy: CampaignPolicy
    lock_backend: str
    lock_stale_after_seconds: float
    lock_retry_interval_seconds: float
    lock_wait_budget_seconds: float
    provider: str
    models: tuple[str, ...]
    signal_window_minutes: int
    unavailable_fallback_ms: int
    log_level: str
    log_format: str
    log_to_stderr: bool
    redact_secrets: bool

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RuntimeSettings:
        validated = assert_valid_config(merge_config(default_config(), config))
        paths = validated["paths"]
        campaign = validated["campaign"]
        locking = validated["locking"]
        providers = validated["providers"]
        observability = validated["observability"]
        return cls(
            workspace_root=Path(paths["workspace_root"]),
            log_dir=Path(paths["log_dir"]),
            policy=CampaignPolicy.from_mapping(campaign),
            lock_backend=locking["backend"],
            lock_stale_after_seconds=locking["stale_after_seconds"],
            lock_retry_interval_seconds=locking["retry_interval_seconds"],
            lock_wait_budget_seconds=locking["wait_budget_seconds"],
            provider=providers["name"],
            models=tuple(providers["models"]),
            signal_window_minutes=providers["signal_window_minutes"],
            unavailable_fallback_ms=providers["unavailable_fallback_seconds"] * 1000,
            log_level=observability["log_level"],
            log_format=observability["log_format"],
            log_to_stderr=observability["log_to_stderr"],
            redact_secrets=observability["redact_secrets"],
        )


def default_config() -> AutopilotConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade autopilot.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the delivery-autopilot runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config or raise ``ConfigValidationError``."""

    result = validate_config(config)
    if not result.is_valid or result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a deep copy with values under sensitive-looking keys replaced."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, None)
    return redacted if isinstance(redacted, dict) else {}


_SECTION_KEYS: Final[dict[str, set[str]]] = {
    "meta": {"schema_version"},
    "paths": {"workspace_root", "log_dir"},
    "campaign": {
        "min_runtime_minutes",
        "max_cycles",
        "sleep_seconds",
        "target_stage",
        "stall_cycles",
        "autonomous",
    },
    "locking": {
        "backend",
        "stale_after_seconds",
        "retry_interval_seconds",
        "wait_budget_seconds",
    },
    "providers": {"name", "models", "signal_window_minutes", "unavailable_fallback_seconds"},
    "observability": {"log_level", "log_format", "log_to_stderr", "redact_secrets"},
}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_SECTION_KEYS), "", issues)
    _require_keys(payload, set(_SECTION_KEYS), "", issues)

    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "paths": _validate_paths,
        "campaign": _validate_campaign,
        "locking": _validate_locking,
        "providers": _validate_providers,
        "observability": _validate_observability,
    }
    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        _reject_unknown_keys(section, _SECTION_KEYS[key], key, issues)
        _require_keys(section, _SECTION_KEYS[key], key, issues)
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in ("workspace_root", "log_dir"):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_campaign(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in ("min_runtime_minutes", "max_cycles", "sleep_seconds", "stall_cycles"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    if "target_stage" in payload:
        parsed_stage = _as_str(payload["target_stage"], _join(path, "target_stage"), issues)
        if parsed_stage is not None:
            out["target_stage"] = parsed_stage
    if "autonomous" in payload:
        parsed_flag = _as_bool(payload["autonomous"], _join(path, "autonomous"), issues)
        if parsed_flag is not None:
            out["autonomous"] = parsed_flag
    return out


def _validate_locking(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "backend" in payload:
        parsed_backend = _as_enum(
            payload["backend"], _join(path, "backend"), issues, allowed_values=LOCK_BACKENDS
        )
        if parsed_backend is not None:
            out["backend"] = parsed_backend
    if "stale_after_seconds" in payload:
        parsed_stale = _as_float(
            payload["stale_after_seconds"],
            _join(path, "stale_after_seconds"),
            issues,
            minimum=0.001,
        )
        if parsed_stale is not None:
            out["stale_after_seconds"] = parsed_stale
    for key in ("retry_interval_seconds", "wait_budget_seconds"):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, minimum=0.0)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_providers(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "name" in payload:
        parsed_name = _as_str(payload["name"], _join(path, "name"), issues)
        if parsed_name is not None:
            out["name"] = parsed_name.lower()
    if "models" in payload:
        parsed_models = _as_str_list(payload["models"], _join(path, "models"), issues)
        if parsed_models is not None:
            out["models"] = parsed_models
    for key in ("signal_window_minutes", "unavailable_fallback_seconds"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_format" in payload:
        parsed_format = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=LOG_FORMATS
        )
        if parsed_format is not None:
            out["log_format"] = parsed_format
    for key in ("log_to_stderr", "redact_secrets"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, list | tuple):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None and parsed not in out:
            out.append(parsed)
    return out


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in config files")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _deep_copy_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_deep_copy_value(item) for item in value]
    return value


def _redact_value(value: object, parent_key: str | None) -> object:
    if parent_key is not None and _looks_sensitive_key(parent_key):
        return REDACTED_VALUE
    if isinstance(value, Mapping):
        return {str(key): _redact_value(item, str(key)) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_redact_value(item, None) for item in value]
    return value


__all__ = [
    "DEFAULT_CONFIG",
    "LOCK_BACKENDS",
    "PATH_FIELDS",
    "REDACTED_VALUE",
    "AutopilotConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "RuntimeSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
