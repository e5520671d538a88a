"""
phasegate — pipeline definition loader

File: src/phasegate/pipelines/loader.py
Last updated: 2026-10-18

Purpose
- Parse YAML (or already-decoded mapping) pipeline definitions into Pipeline
  objects ready for :meth:`PipelineEngine.start`.

Definition shape
- ``version`` (optional, must be 1), ``name``, ``kind``, ``description``.
- ``phases``: list of ``{name, gate, deployment_boundary, checks, description}``.
  ``gate`` is a policy name or ``{policy, threshold, override_timeout_seconds}``.
- Checks take exactly one invocation form: ``run``/``command`` (shell string),
  ``argv`` (shell list), ``http`` (URL or mapping), ``python`` (callable
  name), or an explicit ``invocation`` mapping.
- ``deployment``: ``{snapshot, revert, timeout_seconds}`` hook commands.
- ``rollback_checks``: checks that verify a rollback.

Errors are raised as PipelineDefinitionError naming the offending path.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import structlog
import yaml

from phasegate.constants import PIPELINE_DEFINITION_VERSION
from phasegate.domain.errors import PipelineDefinitionError
from phasegate.domain.models import (
    CheckDefinition,
    GatePolicy,
    GatePolicyKind,
    JSONValue,
    PhaseDefinition,
    Pipeline,
)
from phasegate.engine.commands import CommandSpec
from phasegate.engine.invokers import HTTP_KIND, PYTHON_KIND, SHELL_KIND
from phasegate.engine.state_machine import DEPLOYMENT_METADATA_KEY

PIPELINE_FILE_SUFFIXES: Final[tuple[str, ...]] = (".yaml", ".yml")

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset(
    {
        "version",
        "name",
        "kind",
        "description",
        "phases",
        "deployment",
        "rollback_checks",
        "metadata",
    }
)
_PHASE_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "description", "gate", "deployment_boundary", "checks"}
)
_GATE_KEYS: Final[frozenset[str]] = frozenset(
    {"policy", "kind", "threshold", "override_timeout_seconds"}
)
_INVOCATION_FORMS: Final[tuple[str, ...]] = ("run", "command", "argv", "http", "python", "invocation")
_SHELL_OPTION_KEYS: Final[frozenset[str]] = frozenset(
    {"cwd", "env", "allowed_exit_codes", "stdin", "inherit_env"}
)
_CHECK_KEYS: Final[frozenset[str]] = frozenset(
    {"id", "required", "timeout_seconds", "weight", "retries", "description"}
    | set(_INVOCATION_FORMS)
    | _SHELL_OPTION_KEYS
)
_HOOK_KEYS: Final[frozenset[str]] = frozenset({"snapshot", "revert", "timeout_seconds"})

logger = structlog.get_logger(__name__)


def load_pipeline(
    path: str | Path,
    *,
    default_check_timeout_seconds: float | None = None,
) -> Pipeline:
    """Read and parse a YAML pipeline definition file."""
    source = Path(path).expanduser()
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise PipelineDefinitionError(f"cannot read file: {exc}", source=str(source)) from exc
    return parse_pipeline_text(
        text,
        source=str(source),
        base_dir=source.resolve().parent,
        default_check_timeout_seconds=default_check_timeout_seconds,
    )


def parse_pipeline_text(
    text: str,
    *,
    source: str | None = None,
    base_dir: Path | None = None,
    default_check_timeout_seconds: float | None = None,
) -> Pipeline:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PipelineDefinitionError(f"invalid YAML: {exc}", source=source) from exc
    if not isinstance(data, Mapping):
        raise PipelineDefinitionError("definition root must be a mapping", source=source)
    return parse_pipeline(
        data,
        source=source,
        base_dir=base_dir,
        default_check_timeout_seconds=default_check_timeout_seconds,
    )


def parse_pipeline(
    data: Mapping[str, Any],
    *,
    source: str | None = None,
    base_dir: Path | None = None,
    default_check_timeout_seconds: float | None = None,
) -> Pipeline:
    """Validate a decoded definition and build a pending Pipeline."""
    parser = _DefinitionParser(
        source=source,
        base_dir=base_dir,
        default_timeout=default_check_timeout_seconds,
    )
    return parser.pipeline(data)


def discover_pipelines(directory: str | Path) -> dict[str, Path]:
    """Map definition stem to path for every YAML file directly under ``directory``."""
    root = Path(directory).expanduser()
    if not root.is_dir():
        return {}
    return {
        entry.stem: entry
        for entry in sorted(root.iterdir())
        if entry.is_file() and entry.suffix in PIPELINE_FILE_SUFFIXES
    }


def resolve_pipeline_path(reference: str, pipelines_dir: str | Path | None = None) -> Path:
    """Accept a file path or the stem of a definition inside ``pipelines_dir``."""
    candidate = Path(reference).expanduser()
    if candidate.is_file():
        return candidate
    if pipelines_dir is not None:
        known = discover_pipelines(pipelines_dir)
        if reference in known:
            return known[reference]
    raise PipelineDefinitionError("no such pipeline file or named definition", source=reference)


class _DefinitionParser:
    def __init__(
        self,
        *,
        source: str | None,
        base_dir: Path | None,
        default_timeout: float | None,
    ) -> None:
        self._source = source
        self._base_dir = base_dir
        self._default_timeout = default_timeout

    def fail(self, path: str, message: str) -> PipelineDefinitionError:
        return PipelineDefinitionError(f"{path}: {message}", source=self._source)

    def pipeline(self, data: Mapping[str, Any]) -> Pipeline:
        self._reject_unknown(data, _TOP_LEVEL_KEYS, "pipeline")
        version = data.get("version", PIPELINE_DEFINITION_VERSION)
        if version != PIPELINE_DEFINITION_VERSION:
            raise self.fail(
                "version", f"unsupported definition version {version!r}; expected {PIPELINE_DEFINITION_VERSION}"
            )

        phases_raw = data.get("phases")
        if not isinstance(phases_raw, list) or not phases_raw:
            raise self.fail("phases", "must be a non-empty list")
        phases = [self.phase(item, f"phases[{index}]") for index, item in enumerate(phases_raw)]

        rollback_raw = data.get("rollback_checks", [])
        if not isinstance(rollback_raw, list):
            raise self.fail("rollback_checks", "must be a list")
        rollback_checks = [
            self.check(item, f"rollback_checks[{index}]")
            for index, item in enumerate(rollback_raw)
        ]

        metadata_raw = data.get("metadata", {})
        if not isinstance(metadata_raw, Mapping):
            raise self.fail("metadata", "must be a mapping")
        metadata: dict[str, JSONValue] = dict(metadata_raw)
        if "description" in data:
            metadata["description"] = data["description"]
        if "deployment" in data:
            metadata[DEPLOYMENT_METADATA_KEY] = self.deployment(data["deployment"])
        elif any(phase.deployment_boundary for phase in phases):
            logger.warning(
                "pipeline_without_deployment_hooks",
                pipeline=data.get("name"),
                source=self._source,
            )

        try:
            return Pipeline(
                name=data.get("name") or "",
                kind=data.get("kind", "commit"),
                phases=tuple(phases),
                rollback_checks=tuple(rollback_checks),
                metadata=metadata,
            )
        except ValueError as exc:
            raise PipelineDefinitionError(str(exc), source=self._source) from exc

    def phase(self, raw: object, path: str) -> PhaseDefinition:
        if not isinstance(raw, Mapping):
            raise self.fail(path, "must be a mapping")
        self._reject_unknown(raw, _PHASE_KEYS, path)
        checks_raw = raw.get("checks", [])
        if not isinstance(checks_raw, list):
            raise self.fail(f"{path}.checks", "must be a list")
        checks = tuple(
            self.check(item, f"{path}.checks[{index}]") for index, item in enumerate(checks_raw)
        )
        try:
            return PhaseDefinition(
                name=raw.get("name"),
                checks=checks,
                gate=self.gate(raw.get("gate", GatePolicyKind.STRICT_ALL.value), f"{path}.gate"),
                deployment_boundary=raw.get("deployment_boundary", False),
                description=raw.get("description"),
            )
        except ValueError as exc:
            raise self.fail(path, str(exc)) from exc

    def gate(self, raw: object, path: str) -> GatePolicy:
        if isinstance(raw, str):
            raw = {"policy": raw}
        if not isinstance(raw, Mapping):
            raise self.fail(path, "must be a policy name or a mapping")
        self._reject_unknown(raw, _GATE_KEYS, path)
        if "policy" in raw and "kind" in raw:
            raise self.fail(path, "set either 'policy' or 'kind', not both")
        try:
            return GatePolicy(
                kind=raw.get("policy", raw.get("kind", GatePolicyKind.STRICT_ALL.value)),
                threshold=raw.get("threshold"),
                override_timeout_seconds=raw.get("override_timeout_seconds"),
            )
        except ValueError as exc:
            raise self.fail(path, str(exc)) from exc

    def check(self, raw: object, path: str) -> CheckDefinition:
        if not isinstance(raw, Mapping):
            raise self.fail(path, "must be a mapping")
        self._reject_unknown(raw, _CHECK_KEYS, path)
        forms = [form for form in _INVOCATION_FORMS if form in raw]
        if len(forms) != 1:
            raise self.fail(
                path, f"exactly one of {', '.join(_INVOCATION_FORMS)} is required (got {forms or 'none'})"
            )
        invocation = self.invocation(forms[0], raw, path)

        timeout = raw.get("timeout_seconds", self._default_timeout)
        optional: dict[str, Any] = {}
        if timeout is not None:
            optional["timeout_seconds"] = timeout
        for key in ("required", "weight", "retries", "description"):
            if key in raw:
                optional[key] = raw[key]
        try:
            return CheckDefinition(id=raw.get("id"), invocation=invocation, **optional)
        except (TypeError, ValueError) as exc:
            raise self.fail(path, str(exc)) from exc

    def invocation(self, form: str, raw: Mapping[str, Any], path: str) -> dict[str, JSONValue]:
        value = raw[form]
        shell_options = {key: raw[key] for key in _SHELL_OPTION_KEYS if key in raw}
        if form in ("run", "command"):
            if not isinstance(value, str) or not value.strip():
                raise self.fail(f"{path}.{form}", "must be a non-empty command string")
            invocation: dict[str, JSONValue] = {"kind": SHELL_KIND, "command": value, **shell_options}
        elif form == "argv":
            if not isinstance(value, list) or not value:
                raise self.fail(f"{path}.argv", "must be a non-empty list")
            invocation = {"kind": SHELL_KIND, "argv": [str(part) for part in value], **shell_options}
        elif shell_options:
            raise self.fail(path, f"{', '.join(sorted(shell_options))} only apply to shell checks")
        elif form == "http":
            if isinstance(value, str):
                value = {"url": value}
            if not isinstance(value, Mapping) or not isinstance(value.get("url"), str):
                raise self.fail(f"{path}.http", "must be a URL or a mapping with 'url'")
            invocation = {"kind": HTTP_KIND, **value}
        elif form == "python":
            if not isinstance(value, str) or not value:
                raise self.fail(f"{path}.python", "must be a registered callable name")
            invocation = {"kind": PYTHON_KIND, "callable": value}
        else:
            if not isinstance(value, Mapping) or not isinstance(value.get("kind"), str):
                raise self.fail(f"{path}.invocation", "must be a mapping with a 'kind'")
            invocation = dict(value)

        if invocation.get("kind") == SHELL_KIND:
            self._resolve_cwd(invocation)
            try:
                CommandSpec.from_invocation(invocation)
            except ValueError as exc:
                raise self.fail(path, str(exc)) from exc
        return invocation

    def deployment(self, raw: object) -> dict[str, JSONValue]:
        if not isinstance(raw, Mapping):
            raise self.fail("deployment", "must be a mapping")
        self._reject_unknown(raw, _HOOK_KEYS, "deployment")
        hooks: dict[str, JSONValue] = {}
        for name in ("snapshot", "revert"):
            value = raw.get(name)
            if isinstance(value, str):
                hook: dict[str, JSONValue] = {"command": value}
            elif isinstance(value, list):
                hook = {"argv": [str(part) for part in value]}
            elif isinstance(value, Mapping):
                hook = dict(value)
            else:
                raise self.fail(f"deployment.{name}", "must be a command string, argv list, or mapping")
            self._resolve_cwd(hook)
            try:
                CommandSpec.from_invocation(hook)
            except ValueError as exc:
                raise self.fail(f"deployment.{name}", str(exc)) from exc
            hooks[name] = hook
        timeout = raw.get("timeout_seconds")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise self.fail("deployment.timeout_seconds", "must be a positive number")
            hooks["timeout_seconds"] = float(timeout)
        return hooks

    def _resolve_cwd(self, invocation: dict[str, JSONValue]) -> None:
        cwd = invocation.get("cwd")
        if isinstance(cwd, str) and self._base_dir is not None and not Path(cwd).is_absolute():
            invocation["cwd"] = str((self._base_dir / cwd).resolve())

    def _reject_unknown(self, raw: Mapping[str, Any], allowed: frozenset[str], path: str) -> None:
        unknown = sorted(str(key) for key in raw if key not in allowed)
        if unknown:
            raise self.fail(path, f"unknown keys: {', '.join(unknown)}")


__all__ = [
    "PIPELINE_FILE_SUFFIXES",
    "discover_pipelines",
    "load_pipeline",
    "parse_pipeline",
    "parse_pipeline_text",
    "resolve_pipeline_path",
]
