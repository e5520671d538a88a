"""Stable constants shared across the engine, persistence, and CLI."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
PIPELINE_DEFINITION_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".phasegate")
STATE_DB_PATH: Final[PurePosixPath] = STATE_DIR / "state.sqlite3"
LOG_DIR: Final[PurePosixPath] = STATE_DIR / "logs"
PIPELINES_DIR: Final[PurePosixPath] = PurePosixPath("pipelines")

# Pipeline kinds shipped as built-in templates.
PIPELINE_KINDS: Final[tuple[str, ...]] = ("commit", "release", "hotfix")

# Environment variable passed to revert hooks.
CHECKPOINT_REF_ENV: Final[str] = "PHASEGATE_CHECKPOINT_REF"

__all__ = [
    "CHECKPOINT_REF_ENV",
    "CONFIG_SCHEMA_VERSION",
    "LOG_DIR",
    "PIPELINES_DIR",
    "PIPELINE_DEFINITION_VERSION",
    "PIPELINE_KINDS",
    "STATE_DB_PATH",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
