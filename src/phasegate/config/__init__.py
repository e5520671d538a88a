"""
phasegate config package public API.

File: src/phasegate/config/__init__.py
Last updated: 2026-10-18

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``phasegate.toml`` + ``PHASEGATE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from phasegate.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROFILE_ENV,
    ConfigLoadError,
    discover_config_file,
    dump_effective_config,
    effective_config,
    load_config,
)
from phasegate.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    LOG_LEVELS,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    PhasegateConfig,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PROFILE_ENV",
    "PhasegateConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "discover_config_file",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
