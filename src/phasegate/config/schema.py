"""
phasegate — configuration schema and validation.

File: src/phasegate/config/schema.py
Last updated: 2026-10-18

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays including strict/ci/hotfix.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from phasegate.constants import CONFIG_SCHEMA_VERSION, LOG_DIR, PIPELINES_DIR, STATE_DB_PATH

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "ci", "hotfix")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_PIPELINE_KIND_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)
# Known keys whose names trip the sensitivity heuristics.
_NON_SECRET_KEYS: Final[frozenset[str]] = frozenset({"redact_secrets"})

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "pipelines_dir"),
    ("observability", "log_dir"),
)

_SECTIONS: Final[tuple[str, ...]] = ("engine", "gates", "risk", "paths", "observability")


class MetaConfig(TypedDict):
    schema_version: int


class EngineConfig(TypedDict):
    max_parallel_checks: int
    default_check_timeout_seconds: float
    auto_rollback: bool


class GatesConfig(TypedDict):
    override_timeout_seconds: float
    default_weighted_threshold: float
    override_timeouts: dict[str, float]


class RiskConfig(TypedDict):
    advisory_failure_weight: float
    manual_override_weight: float
    rollback_weight: float


class PathsConfig(TypedDict):
    state_db: str
    pipelines_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    engine: dict[str, object]
    gates: dict[str, object]
    risk: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class PhasegateConfig(TypedDict):
    meta: MetaConfig
    engine: EngineConfig
    gates: GatesConfig
    risk: RiskConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[PhasegateConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "engine": {
        "max_parallel_checks": 4,
        "default_check_timeout_seconds": 300.0,
        "auto_rollback": True,
    },
    "gates": {
        "override_timeout_seconds": 900.0,
        "default_weighted_threshold": 0.0,
        "override_timeouts": {
            "hotfix": 300.0,
        },
    },
    "risk": {
        "advisory_failure_weight": 1.0,
        "manual_override_weight": 2.0,
        "rollback_weight": 5.0,
    },
    "paths": {
        "state_db": str(STATE_DB_PATH),
        "pipelines_dir": str(PIPELINES_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "engine": {"max_parallel_checks": 2},
            "gates": {"default_weighted_threshold": 0.0, "override_timeout_seconds": 300.0},
        },
        "ci": {
            "gates": {"override_timeout_seconds": 60.0},
            "observability": {"log_to_stdout": True},
        },
        "hotfix": {
            "engine": {"auto_rollback": True},
            "gates": {"override_timeouts": {"hotfix": 120.0}},
        },
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


def default_config() -> PhasegateConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade phasegate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the phasegate runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None:
        return materialized

    selected = profile.strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )

    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    merged = merge_config(materialized, overlay_raw)
    return assert_valid_config(merged, active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues, partial=False)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping):
            issues.add("profiles", "profiles section is required")
        elif selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")
        else:
            overlay = profiles[selected_profile]
            if isinstance(overlay, Mapping):
                effective = merge_config(normalized, overlay)
                _validate_root(effective, "", issues, partial=False)
            else:
                issues.add(f"profiles.{selected_profile}", "profile overlay must be an object")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())

    return ConfigValidationResult(config=normalized, issues=issues.items())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and ``phasegate config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"meta", "profiles", *_SECTIONS}, path, issues)
    if not partial:
        _require_keys(payload, {"meta", *_SECTIONS}, path, issues)

    out: dict[str, Any] = {}
    _section(
        payload,
        key="meta",
        path=path,
        issues=issues,
        validator=lambda section, section_path: _validate_meta(
            section, section_path, issues, partial=partial
        ),
        out=out,
    )
    for key in _SECTIONS:
        validator = _SECTION_VALIDATORS[key]
        _section(
            payload,
            key=key,
            path=path,
            issues=issues,
            validator=lambda section, section_path, validator=validator: validator(
                section, section_path, issues, partial=partial
            ),
            out=out,
        )

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_path = _join(path, "profiles")
        profiles_obj = _as_object(profiles_raw, profiles_path, issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, profiles_path, issues)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, section_path)


def _validate_meta(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

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


def _validate_engine(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"max_parallel_checks", "default_check_timeout_seconds", "auto_rollback"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_parallel_checks" in payload:
        parsed_parallel = _as_int(
            payload["max_parallel_checks"], _join(path, "max_parallel_checks"), issues, minimum=1
        )
        if parsed_parallel is not None:
            out["max_parallel_checks"] = parsed_parallel

    if "default_check_timeout_seconds" in payload:
        parsed_timeout = _as_positive_float(
            payload["default_check_timeout_seconds"],
            _join(path, "default_check_timeout_seconds"),
            issues,
        )
        if parsed_timeout is not None:
            out["default_check_timeout_seconds"] = parsed_timeout

    if "auto_rollback" in payload:
        parsed_auto = _as_bool(payload["auto_rollback"], _join(path, "auto_rollback"), issues)
        if parsed_auto is not None:
            out["auto_rollback"] = parsed_auto
    return out


def _validate_gates(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"override_timeout_seconds", "default_weighted_threshold", "override_timeouts"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, {"override_timeout_seconds", "default_weighted_threshold"}, path, issues)

    out: dict[str, Any] = {}
    if "override_timeout_seconds" in payload:
        parsed_timeout = _as_positive_float(
            payload["override_timeout_seconds"], _join(path, "override_timeout_seconds"), issues
        )
        if parsed_timeout is not None:
            out["override_timeout_seconds"] = parsed_timeout

    if "default_weighted_threshold" in payload:
        parsed_threshold = _as_float(
            payload["default_weighted_threshold"],
            _join(path, "default_weighted_threshold"),
            issues,
            minimum=0.0,
        )
        if parsed_threshold is not None:
            out["default_weighted_threshold"] = parsed_threshold

    if "override_timeouts" in payload:
        timeouts_path = _join(path, "override_timeouts")
        timeouts = _as_object(payload["override_timeouts"], timeouts_path, issues)
        if timeouts is not None:
            parsed_timeouts: dict[str, float] = {}
            for kind in sorted(timeouts):
                kind_path = _join(timeouts_path, kind)
                if not _PIPELINE_KIND_PATTERN.fullmatch(kind):
                    issues.add(kind_path, "pipeline kind must be an identifier")
                    continue
                parsed = _as_positive_float(timeouts[kind], kind_path, issues)
                if parsed is not None:
                    parsed_timeouts[kind] = parsed
            out["override_timeouts"] = parsed_timeouts
    return out


def _validate_risk(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"advisory_failure_weight", "manual_override_weight", "rollback_weight"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, minimum=0.0)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_paths(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"state_db", "pipelines_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_log_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if parsed_log_level is not None:
            out["log_level"] = parsed_log_level

    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir

    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag
    return out


_SECTION_VALIDATORS: Final[
    dict[str, Callable[..., dict[str, Any]]]
] = {
    "engine": _validate_engine,
    "gates": _validate_gates,
    "risk": _validate_risk,
    "paths": _validate_paths,
    "observability": _validate_observability,
}


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        raw = payload[profile_name]
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(raw, profile_path, issues)
        if profile_obj is None:
            continue
        out[profile_name] = _validate_profile_overlay(profile_obj, profile_path, issues)
    return out


def _validate_profile_overlay(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_SECTIONS), path, issues)

    out: dict[str, Any] = {}
    for section in _SECTIONS:
        raw = payload.get(section)
        if raw is None:
            continue
        section_path = _join(path, section)
        section_obj = _as_object(raw, section_path, issues)
        if section_obj is None:
            continue
        out[section] = _SECTION_VALIDATORS[section](
            section_obj, section_path, issues, partial=True
        )
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
    if isinstance(value, bool) or not isinstance(value, (int, float)):
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


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues)
    if parsed is not None and parsed <= 0:
        issues.add(path, "must be > 0")
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
            issues.add(
                key_path,
                "embedded secret values are forbidden; pass credentials through the environment",
            )
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
    if normalized in _NON_SECRET_KEYS or normalized.endswith("_env"):
        return False
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
            elif isinstance(existing, Mapping):
                nested = _deep_copy_mapping(existing)
                _merge_into(nested, value)
                target[key] = nested
            else:
                nested_new: dict[str, Any] = {}
                _merge_into(nested_new, value)
                target[key] = nested_new
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        out[key] = _deep_copy_value(value[key])
    return out


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if isinstance(key, str):
                out[key] = _deep_copy_value(item)
        return out
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_deep_copy_value(item) for item in value)
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "PhasegateConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
