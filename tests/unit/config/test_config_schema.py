"""Unit tests for config schema validation, merging, and redaction."""

from __future__ import annotations

from typing import Any

import pytest

from phasegate.config import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issues(config: dict[str, Any], **kwargs: Any) -> dict[str, str]:
    result = validate_config(config, **kwargs)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_default_config_is_valid_for_every_builtin_profile() -> None:
    config = default_config()

    assert validate_config(config).is_valid
    for profile in BUILTIN_PROFILE_NAMES:
        assert validate_config(config, active_profile=profile).is_valid


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["engine"]["max_parallel_checks"] = 99

    assert default_config()["engine"]["max_parallel_checks"] == 4


def test_unknown_fields_and_embedded_secrets_are_reported() -> None:
    config = merge_config(default_config(), {"engine": {"turbo": True}, "gates": {"slack_token": "x"}})

    issues = _issues(config)

    assert issues["engine.turbo"] == "unknown field"
    assert issues["gates.slack_token"] == (
        "embedded secret values are forbidden; pass credentials through the environment"
    )


def test_missing_sections_and_wrong_types() -> None:
    config = default_config()
    del config["risk"]  # type: ignore[misc]
    config["engine"]["max_parallel_checks"] = "four"  # type: ignore[typeddict-item]
    config["engine"]["default_check_timeout_seconds"] = 0  # type: ignore[typeddict-item]

    issues = _issues(config)

    assert issues["risk"] == "missing required field"
    assert issues["engine.max_parallel_checks"] == "expected integer, got str"
    assert issues["engine.default_check_timeout_seconds"] == "must be > 0"


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    config = default_config()
    config["meta"]["schema_version"] = ConfigSchemaVersion + 1

    issues = _issues(config)

    assert issues["meta.schema_version"] == migration_guidance(ConfigSchemaVersion + 1)
    assert "upgrade the phasegate runtime" in issues["meta.schema_version"]


def test_enum_kind_and_profile_name_rules() -> None:
    config = merge_config(
        default_config(),
        {
            "observability": {"log_level": "TRACE"},
            "gates": {"override_timeouts": {"bad kind!": 10.0}},
            "profiles": {"Nightly": {}},
        },
    )

    issues = _issues(config)

    assert issues["observability.log_level"] == (
        "invalid value 'TRACE'; expected one of: DEBUG, ERROR, INFO, WARNING"
    )
    assert issues["gates.override_timeouts.bad kind!"] == "pipeline kind must be an identifier"
    assert issues["profiles.Nightly"] == "profile name must match ^[a-z][a-z0-9_-]*$"


def test_profile_overlays_are_validated_partially() -> None:
    config = merge_config(default_config(), {"profiles": {"local": {"risk": {"rollback_weight": -1}}}})

    issues = _issues(config)

    assert issues == {"profiles.local.risk.rollback_weight": "must be >= 0.0"}


def test_active_profile_must_exist() -> None:
    assert _issues(default_config(), active_profile="nightly") == {
        "profiles": "profile 'nightly' is not defined"
    }


def test_apply_profile_overlay_merges_and_revalidates() -> None:
    strict = apply_profile_overlay(default_config(), "strict")

    assert strict["engine"]["max_parallel_checks"] == 2
    assert strict["gates"]["override_timeout_seconds"] == 300.0
    assert apply_profile_overlay(default_config(), None) == default_config()

    with pytest.raises(ConfigValidationError) as excinfo:
        apply_profile_overlay(default_config(), "nightly")
    assert str(excinfo.value) == "invalid config:\n- profiles: profile 'nightly' is not defined"


def test_merge_config_does_not_mutate_inputs() -> None:
    base = {"engine": {"max_parallel_checks": 4, "auto_rollback": False}}
    overlay = {"engine": {"auto_rollback": True}}

    merged = merge_config(base, overlay)
    merged["engine"]["max_parallel_checks"] = 1

    assert merged == {"engine": {"max_parallel_checks": 1, "auto_rollback": True}}
    assert base == {"engine": {"max_parallel_checks": 4, "auto_rollback": False}}
    assert overlay == {"engine": {"auto_rollback": True}}


def test_assert_valid_config_lists_every_issue() -> None:
    config = merge_config(default_config(), {"engine": {"max_parallel_checks": 0, "auto_rollback": "no"}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert {issue.path for issue in excinfo.value.issues} == {
        "engine.auto_rollback",
        "engine.max_parallel_checks",
    }
    assert "- engine.max_parallel_checks: must be >= 1" in str(excinfo.value)


def test_redaction_masks_sensitive_keys_but_keeps_known_flags() -> None:
    redacted = redact_config(
        {
            "observability": {"redact_secrets": True},
            "hooks": {"clientSecret": "abc", "password_env": "DEPLOY_PASSWORD", "url": "https://x"},
        }
    )

    assert redacted == {
        "hooks": {"clientSecret": "<redacted>", "password_env": "DEPLOY_PASSWORD", "url": "https://x"},
        "observability": {"redact_secrets": True},
    }
    assert redact_config(["not", "a", "mapping"]) == {}
