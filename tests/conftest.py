"""Shared fakes and builders for phasegate tests.

The fakes are exposed as fixtures so test modules never import each other.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import pytest
import structlog

from phasegate.domain.models import (
    CheckDefinition,
    GatePolicy,
    GatePolicyKind,
    PhaseDefinition,
    Pipeline,
)
from phasegate.engine.collaborators import CheckContext


@dataclass(frozen=True, slots=True)
class Sleep:
    """Scripted step: wait, then produce ``then``."""

    seconds: float
    then: object = "pass"


class ScriptedInvoker:
    """Check invoker that replays a per-check script.

    Each check id maps to one output or a list of outputs. Lists are consumed
    one entry per invocation; the last entry repeats. Exceptions are raised,
    :class:`Sleep` steps wait first, anything else is returned verbatim.
    """

    def __init__(self, script: Mapping[str, object] | None = None, *, default: object = "pass") -> None:
        self._script: dict[str, list[object]] = {}
        for check_id, steps in (script or {}).items():
            self.set(check_id, steps)
        self._default = default
        self.calls: list[tuple[str, str, int]] = []
        self.active = 0
        self.peak = 0

    def set(self, check_id: str, steps: object) -> None:
        self._script[check_id] = list(steps) if isinstance(steps, list) else [steps]

    def calls_for(self, check_id: str) -> int:
        return sum(1 for call in self.calls if call[0] == check_id)

    async def invoke(self, check: CheckDefinition, context: CheckContext) -> object:
        self.calls.append((check.id, context.phase_name, context.attempt))
        steps = self._script.get(check.id)
        step = self._default if not steps else (steps.pop(0) if len(steps) > 1 else steps[0])
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if isinstance(step, Sleep):
                await asyncio.sleep(step.seconds)
                step = step.then
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1
        if isinstance(step, BaseException):
            raise step
        return step


def _check(check_id: str, **kwargs: Any) -> CheckDefinition:
    kwargs.setdefault("invocation", {"kind": "python", "callable": check_id})
    kwargs.setdefault("timeout_seconds", 5.0)
    return CheckDefinition(id=check_id, **kwargs)


def _phase(
    name: str,
    checks: Sequence[CheckDefinition | str] = (),
    *,
    gate: GatePolicy | GatePolicyKind | str = GatePolicyKind.STRICT_ALL,
    boundary: bool = False,
) -> PhaseDefinition:
    policy = gate if isinstance(gate, GatePolicy) else GatePolicy(kind=gate)
    return PhaseDefinition(
        name=name,
        checks=tuple(_check(item) if isinstance(item, str) else item for item in checks),
        gate=policy,
        deployment_boundary=boundary,
    )


def _context(**overrides: Any) -> CheckContext:
    fields: dict[str, Any] = {
        "run_id": "run-01J9ZQ4V8E6K2M3N4P5Q6R7S8T",
        "pipeline_name": "release",
        "pipeline_kind": "release",
        "phase_name": "build",
        "phase_index": 0,
    }
    fields.update(overrides)
    return CheckContext(**fields)


@pytest.fixture()
def scripted_invoker() -> type[ScriptedInvoker]:
    return ScriptedInvoker


@pytest.fixture()
def sleep_step() -> type[Sleep]:
    return Sleep


@pytest.fixture()
def make_check() -> Callable[..., CheckDefinition]:
    return _check


@pytest.fixture()
def make_phase() -> Callable[..., PhaseDefinition]:
    return _phase


@pytest.fixture()
def make_context() -> Callable[..., CheckContext]:
    return _context


@pytest.fixture()
def release_pipeline() -> Callable[..., Pipeline]:
    """Builder for the four-phase pipeline used by the engine scenarios."""

    def _build(**overrides: Any) -> Pipeline:
        fields: dict[str, Any] = {
            "name": "release",
            "kind": "release",
            "phases": (
                _phase("build", ["compile", _check("docs", required=False)]),
                _phase("test", ["unit", "integration"]),
                _phase("deploy", ["deploy-staging"], boundary=True),
                _phase("verify", ["smoke"], boundary=True),
            ),
            "rollback_checks": (_check("health"),),
        }
        fields.update(overrides)
        return Pipeline(**fields)

    return _build


@pytest.fixture(autouse=True)
def _reset_structlog_context() -> Iterator[None]:
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
