"""
delivery-autopilot — unit tests for config schema validation

Purpose
- Validate structured issues for unknown, missing, mistyped and secret-looking
  fields, schema version guidance, redaction and the typed settings view.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from delivery_autopilot.config.schema import (
    REDACTED_VALUE,
    ConfigValidationError,
    RuntimeSettings,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from delivery_autopilot.pipeline.stages import Stage

pytestmark = pytest.mark.unit


def _issues(config: object) -> dict[str, str]:
    return {issue.path: issue.message for issue in validate_config(config).issues}


def test_defaults_are_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config == default_config()


def test_default_config_is_a_copy() -> None:
    first = default_config()
    first["providers"]["models"].append("pro")

    assert default_config()["providers"]["models"] == []


def test_unknown_and_secret_fields_are_reported() -> None:
    config = merge_config(
        default_config(),
        {"providers": {"apiKey": "sk-123", "region": "eu"}, "extras": {}},
    )

    issues = _issues(config)

    assert issues["providers.apiKey"] == "embedded secret values are forbidden in config files"
    assert issues["providers.region"] == "unknown field"
    assert issues["extras"] == "unknown field"


def test_missing_fields_are_reported() -> None:
    config = default_config()
    del config["campaign"]["max_cycles"]  # type: ignore[misc]
    del config["locking"]  # type: ignore[misc]

    issues = _issues(config)

    assert issues["campaign.max_cycles"] == "missing required field"
    assert issues["locking"] == "missing required field"


def test_type_errors_are_reported() -> None:
    config = merge_config(
        default_config(),
        {
            "campaign": {"max_cycles": "many", "autonomous": "yes"},
            "locking": {"backend": "redis", "wait_budget_seconds": -1},
            "providers": {"models": ["pro", 3], "signal_window_minutes": 0},
            "observability": {"log_level": "TRACE"},
        },
    )

    issues = _issues(config)

    assert issues["campaign.max_cycles"] == "expected integer, got str"
    assert issues["campaign.autonomous"] == "expected boolean, got str"
    assert issues["locking.backend"] == "invalid value 'redis'; expected one of: file, thread"
    assert issues["locking.wait_budget_seconds"] == "must be >= 0.0"
    assert issues["providers.models[1]"] == "expected string, got int"
    assert issues["providers.signal_window_minutes"] == "must be >= 1"
    assert issues["observability.log_level"].startswith("invalid value 'TRACE'")


def test_out_of_range_campaign_values_pass_schema() -> None:
    config = merge_config(default_config(), {"campaign": {"max_cycles": 100000}})

    assert validate_config(config).is_valid


def test_schema_version_mismatch_gives_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 2}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert excinfo.value.issues[0].path == "meta.schema_version"
    assert "upgrade the delivery-autopilot runtime" in str(excinfo.value)
    assert "older than supported" in migration_guidance(0)
    assert migration_guidance(1) == "schema version is current"


def test_non_mapping_root_is_rejected() -> None:
    assert _issues(["not", "a", "mapping"]) == {"<root>": "expected object, got list"}


def test_provider_name_and_models_are_normalized() -> None:
    config = merge_config(
        default_config(), {"providers": {"name": " Gemini ", "models": ["pro", "pro", "flash"]}}
    )

    validated = assert_valid_config(config)

    assert validated["providers"]["name"] == "gemini"
    assert validated["providers"]["models"] == ["pro", "flash"]


def test_redact_config_masks_sensitive_keys() -> None:
    redacted = redact_config({"providers": {"access_token": "abc", "name": "gemini"}})

    assert redacted == {"providers": {"access_token": REDACTED_VALUE, "name": "gemini"}}


def test_runtime_settings_clamp_campaign_policy() -> None:
    config = merge_config(
        default_config(),
        {
            "campaign": {"max_cycles": 100000, "target_stage": "role_review"},
            "providers": {"name": "gemini", "models": ["pro"], "unavailable_fallback_seconds": 90},
        },
    )

    settings = RuntimeSettings.from_config(config)

    assert settings.policy.max_cycles == 500
    assert settings.policy.target_stage is Stage.ROLE_REVIEW
    assert settings.models == ("pro",)
    assert settings.unavailable_fallback_ms == 90_000
    assert settings.workspace_root == Path("workspaces")
    assert settings.lock_backend == "file"
