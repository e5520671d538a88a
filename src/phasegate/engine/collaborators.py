"""
phasegate — external collaborator contracts

File: src/phasegate/engine/collaborators.py
Last updated: 2026-10-18

Purpose
- Narrow interfaces the engine consumes: check invocation, deployment
  snapshot/revert, and manual gate overrides.
- The invocation context handed to every check and hook.

Functional requirements
- Collaborators are async. Check-level problems may surface as exceptions;
  the check runner converts them into outcomes.
- ``await_override`` may block indefinitely; the gate evaluator bounds it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from phasegate.domain.models import (
    CheckDefinition,
    Checkpoint,
    CheckResult,
    JSONValue,
    OverrideDecision,
)
from phasegate.utils.concurrency import CancellationToken

ENV_RUN_ID = "PHASEGATE_RUN_ID"
ENV_PIPELINE = "PHASEGATE_PIPELINE"
ENV_PIPELINE_KIND = "PHASEGATE_PIPELINE_KIND"
ENV_PHASE = "PHASEGATE_PHASE"
ENV_ATTEMPT = "PHASEGATE_ATTEMPT"


@dataclass(frozen=True, slots=True)
class CheckContext:
    """Where a check or hook runs: which run, pipeline, phase, and attempt."""

    run_id: str
    pipeline_name: str
    pipeline_kind: str
    phase_name: str
    phase_index: int
    attempt: int = 1
    cancel_token: CancellationToken | None = field(default=None, compare=False)
    metadata: Mapping[str, JSONValue] = field(default_factory=dict)

    def env(self) -> dict[str, str]:
        return {
            ENV_RUN_ID: self.run_id,
            ENV_PIPELINE: self.pipeline_name,
            ENV_PIPELINE_KIND: self.pipeline_kind,
            ENV_PHASE: self.phase_name,
            ENV_ATTEMPT: str(self.attempt),
        }

    def log_fields(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "phase": self.phase_name,
            "phase_index": self.phase_index,
            "attempt": self.attempt,
        }


@runtime_checkable
class CheckInvoker(Protocol):
    """Performs one verification and returns a raw outcome.

    Accepted raw outcomes: ``CheckResult``, ``bool``, a ``CheckOutcome`` or its
    string value, or a mapping with ``outcome``/``status`` and optional
    ``summary``, ``details``, ``metadata``.
    """

    async def invoke(self, check: CheckDefinition, context: CheckContext) -> object: ...


@runtime_checkable
class DeploymentStateProvider(Protocol):
    async def deployment_snapshot(self, context: CheckContext) -> str:
        """Capture externally visible state; the return value is an opaque reference."""
        ...

    async def deployment_revert(self, checkpoint: Checkpoint) -> bool:
        """Restore the state captured in ``checkpoint``. ``False`` or raising means failure."""
        ...


@dataclass(frozen=True, slots=True)
class OverrideRequest:
    run_id: str
    pipeline_name: str
    pipeline_kind: str
    phase_name: str
    phase_index: int
    results: tuple[CheckResult, ...]
    failing_check_ids: tuple[str, ...]
    timeout_seconds: float


@runtime_checkable
class OverrideChannel(Protocol):
    async def await_override(
        self, request: OverrideRequest, timeout_seconds: float
    ) -> OverrideDecision: ...


class StaticOverrideChannel:
    """Answers every override request the same way, optionally after a delay."""

    def __init__(
        self,
        *,
        approved: bool,
        approver: str = "static",
        justification: str | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self._approved = approved
        self._approver = approver
        self._justification = justification
        self._delay_seconds = delay_seconds
        self.requests: list[OverrideRequest] = []

    async def await_override(
        self, request: OverrideRequest, timeout_seconds: float
    ) -> OverrideDecision:
        self.requests.append(request)
        if self._delay_seconds > 0:
            await asyncio.sleep(self._delay_seconds)
        return OverrideDecision(
            approved=self._approved,
            approver=self._approver,
            justification=self._justification,
        )


class UnattendedOverrideChannel:
    """No human is listening: waits until the gate's timeout fires."""

    async def await_override(
        self, request: OverrideRequest, timeout_seconds: float
    ) -> OverrideDecision:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


__all__ = [
    "ENV_ATTEMPT",
    "ENV_PHASE",
    "ENV_PIPELINE",
    "ENV_PIPELINE_KIND",
    "ENV_RUN_ID",
    "CheckContext",
    "CheckInvoker",
    "DeploymentStateProvider",
    "OverrideChannel",
    "OverrideRequest",
    "StaticOverrideChannel",
    "UnattendedOverrideChannel",
]
