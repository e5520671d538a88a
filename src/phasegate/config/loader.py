"""
phasegate — runtime config loader.

File: src/phasegate/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective config for one CLI invocation from built-in defaults,
  ``phasegate.toml``, ``PHASEGATE_*`` variables and command-line overrides.

Layering
- defaults, then the nearest ``phasegate.toml``, then the selected profile,
  then the environment, then dotted CLI overrides (``engine.max_parallel_checks``).
- Every scalar setting has exactly one variable: ``PHASEGATE_<SECTION>_<KEY>``;
  per-kind override timeouts are ``PHASEGATE_GATES_OVERRIDE_TIMEOUTS_<KIND>``.
- ``PHASEGATE_PROFILE`` selects a profile when ``--profile`` is not given.
- ``paths.*`` and ``observability.log_dir`` resolve against the config file's
  directory (or the search directory when there is no file).
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from phasegate.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from phasegate.constants import PIPELINE_KINDS

DEFAULT_CONFIG_FILE: Final[str] = "phasegate.toml"
ENV_PREFIX: Final[str] = "PHASEGATE_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_BOOLEAN_WORDS: Final[dict[str, bool]] = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}

ConfigPath = tuple[str, ...]
_Coercer = Callable[[str], object]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    search_from: str | Path | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    An explicit ``config_path`` must exist. Without one, the nearest
    ``phasegate.toml`` at or above ``search_from`` (default: the working
    directory) is used if there is one.
    """

    env_map = os.environ if environ is None else environ
    if config_path is not None:
        source = Path(config_path).expanduser().resolve()
        file_payload = _read_toml(source)
        base_dir = source.parent
    else:
        discovered = discover_config_file(search_from)
        file_payload = _read_toml(discovered) if discovered is not None else {}
        base_dir = discovered.parent if discovered is not None else _search_root(search_from)

    config = assert_valid_config(merge_config(default_config(), file_payload))

    selected = _selected_profile(profile, env_map)
    if selected is not None:
        config = apply_profile_overlay(config, selected)

    config = merge_config(config, _env_overrides(config, env_map))
    config = merge_config(config, _cli_overrides(cli_overrides or {}))
    config = _resolve_paths(config, base_dir)
    return assert_valid_config(config, active_profile=selected)


def discover_config_file(start: str | Path | None = None) -> Path | None:
    """Return the nearest ``phasegate.toml`` at or above ``start``, if any."""

    origin = _search_root(start)
    for directory in (origin, *origin.parents):
        candidate = directory / DEFAULT_CONFIG_FILE
        if candidate.is_file():
            return candidate
    return None


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` for logs and ``phasegate config``."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _env_name(path: ConfigPath) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _search_root(start: str | Path | None) -> Path:
    origin = Path.cwd() if start is None else Path(start).expanduser()
    return origin.resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigLoadError(f"config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(profile: str | None, environ: Mapping[str, str]) -> str | None:
    raw = profile if profile is not None else environ.get(PROFILE_ENV)
    if raw is None:
        return None
    return raw.strip() or None


def _env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for path, coerce in sorted(_env_bindings(config).items()):
        name = _env_name(path)
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _set_path(overrides, path, value)
    return overrides


def _env_bindings(config: Mapping[str, object]) -> dict[ConfigPath, _Coercer]:
    """One coercer per settable scalar; the current value's type decides how to parse."""

    bindings: dict[ConfigPath, _Coercer] = {}
    for section, body in config.items():
        if section in ("meta", "profiles") or not isinstance(body, Mapping):
            continue
        for key, value in body.items():
            if key == "override_timeouts" and isinstance(value, Mapping):
                for kind in {*PIPELINE_KINDS, *value}:
                    bindings[(section, key, str(kind))] = _parse_float
                continue
            coerce = _coercer_for(value)
            if coerce is not None:
                bindings[(section, key)] = coerce
    return bindings


def _coercer_for(value: object) -> _Coercer | None:
    if isinstance(value, bool):
        return _parse_bool
    if isinstance(value, int):
        return _parse_int
    if isinstance(value, float):
        return _parse_float
    if isinstance(value, str):
        return str
    return None


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _parse_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _parse_bool(raw: str) -> bool:
    parsed = _BOOLEAN_WORDS.get(raw.lower())
    if parsed is None:
        raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")
    return parsed


def _cli_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(overrides):
        path = tuple(part for part in key.split(".") if part)
        if len(path) < 2:
            raise ConfigLoadError(f"CLI override {key!r} must be a dotted <section>.<key> path")
        _set_path(payload, path, overrides[key])
    return payload


def _resolve_paths(config: Mapping[str, object], base_dir: Path) -> dict[str, Any]:
    resolved = merge_config({}, config)
    for section, key in PATH_FIELDS:
        body = resolved.get(section)
        if isinstance(body, dict) and isinstance(body.get(key), str):
            body[key] = _resolve_path(body[key], base_dir)
    return resolved


def _resolve_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _set_path(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    cursor = target
    for part in path[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[path[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "discover_config_file",
    "dump_effective_config",
    "effective_config",
    "load_config",
]
