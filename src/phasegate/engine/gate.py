"""
phasegate — gate evaluator

File: src/phasegate/engine/gate.py
Last updated: 2026-10-18

Purpose
- Aggregate the CheckResults of one phase into a single GO/NO_GO GateDecision.

Policies
- strict_all: NO_GO iff any required check did not pass. Advisory checks are
  recorded but never block.
- weighted_threshold: the weights of non-passing required checks are summed;
  NO_GO iff the sum exceeds the threshold.
- manual_override: required ``error``/``timeout`` outcomes are NO_GO without
  asking. Otherwise an operator decides through the override channel, bounded
  by a hard timeout; expiry yields NO_GO with ``gate_timeout``.

Tie-breaks
- ``error`` and ``timeout`` on required checks always count as non-passing.
- A required check with no result counts as non-passing.
- Required-ness comes from the phase definition, not from the result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from phasegate.domain.models import (
    CheckOutcome,
    CheckResult,
    ErrorKind,
    GateDecision,
    GatePolicyKind,
    PhaseDefinition,
    Verdict,
)
from phasegate.engine.collaborators import CheckContext, OverrideChannel, OverrideRequest
from phasegate.engine.settings import EngineSettings
from phasegate.utils.concurrency import OperationCancelled, run_with_timeout


@dataclass(frozen=True, slots=True)
class _Tally:
    failing_required: tuple[str, ...]
    infra_required: tuple[str, ...]
    missing_required: tuple[str, ...]
    advisory_failures: tuple[str, ...]
    failing_weight: float

    @property
    def blocking_kind(self) -> ErrorKind:
        # A genuine ``fail`` outranks infrastructure noise in the same phase.
        if len(self.infra_required) + len(self.missing_required) < len(self.failing_required):
            return ErrorKind.CHECK_FAILURE
        return ErrorKind.CHECK_INFRA


class GateEvaluator:
    def __init__(
        self,
        *,
        override_channel: OverrideChannel | None = None,
        settings: EngineSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._override_channel = override_channel
        self._settings = settings or EngineSettings()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def evaluate(
        self,
        phase: PhaseDefinition,
        results: Sequence[CheckResult],
        context: CheckContext | None = None,
    ) -> GateDecision:
        tally = _tally(phase, results)
        policy = phase.gate.kind
        if policy is GatePolicyKind.STRICT_ALL:
            decision = self._strict_all(tally)
        elif policy is GatePolicyKind.WEIGHTED_THRESHOLD:
            decision = self._weighted_threshold(phase, tally)
        else:
            decision = await self._manual_override(phase, results, tally, context)

        self._logger.info(
            "gate_decided",
            phase=phase.name,
            policy=str(policy),
            verdict=str(decision.verdict),
            error_kind=str(decision.error_kind) if decision.error_kind else None,
            blocking=list(decision.blocking_check_ids),
            run_id=context.run_id if context is not None else None,
        )
        return decision

    def _strict_all(self, tally: _Tally) -> GateDecision:
        if not tally.failing_required:
            return GateDecision(
                verdict=Verdict.GO,
                policy=GatePolicyKind.STRICT_ALL,
                reasons=_advisory_reasons(tally),
                advisory_failure_ids=tally.advisory_failures,
            )
        return GateDecision(
            verdict=Verdict.NO_GO,
            policy=GatePolicyKind.STRICT_ALL,
            reasons=(
                f"required checks not passing: {', '.join(tally.failing_required)}",
                *_advisory_reasons(tally),
            ),
            blocking_check_ids=tally.failing_required,
            advisory_failure_ids=tally.advisory_failures,
            error_kind=tally.blocking_kind,
        )

    def _weighted_threshold(self, phase: PhaseDefinition, tally: _Tally) -> GateDecision:
        threshold = (
            phase.gate.threshold
            if phase.gate.threshold is not None
            else self._settings.default_weighted_threshold
        )
        score = round(tally.failing_weight, 6)
        if score <= threshold:
            reasons: tuple[str, ...] = ()
            if tally.failing_required:
                reasons = (
                    f"failure weight {score:g} within threshold {threshold:g} "
                    f"({', '.join(tally.failing_required)})",
                )
            return GateDecision(
                verdict=Verdict.GO,
                policy=GatePolicyKind.WEIGHTED_THRESHOLD,
                reasons=reasons + _advisory_reasons(tally),
                advisory_failure_ids=tally.advisory_failures,
                weighted_score=score,
            )
        return GateDecision(
            verdict=Verdict.NO_GO,
            policy=GatePolicyKind.WEIGHTED_THRESHOLD,
            reasons=(
                f"failure weight {score:g} exceeds threshold {threshold:g}",
                *_advisory_reasons(tally),
            ),
            blocking_check_ids=tally.failing_required,
            advisory_failure_ids=tally.advisory_failures,
            error_kind=tally.blocking_kind,
            weighted_score=score,
        )

    async def _manual_override(
        self,
        phase: PhaseDefinition,
        results: Sequence[CheckResult],
        tally: _Tally,
        context: CheckContext | None,
    ) -> GateDecision:
        infra = tally.infra_required + tally.missing_required
        if infra:
            return self._no_go_override(
                tally,
                ErrorKind.CHECK_INFRA,
                f"required checks did not produce a verdict: {', '.join(infra)}",
                blocking=infra,
            )
        if self._override_channel is None:
            return self._no_go_override(
                tally, ErrorKind.CHECK_INFRA, "no override channel configured"
            )

        pipeline_kind = context.pipeline_kind if context is not None else ""
        timeout = self._settings.override_timeout_for(
            pipeline_kind, phase.gate.override_timeout_seconds
        )
        request = OverrideRequest(
            run_id=context.run_id if context is not None else "",
            pipeline_name=context.pipeline_name if context is not None else "",
            pipeline_kind=pipeline_kind,
            phase_name=phase.name,
            phase_index=context.phase_index if context is not None else 0,
            results=tuple(results),
            failing_check_ids=tally.failing_required,
            timeout_seconds=timeout,
        )
        self._logger.info(
            "override_requested",
            phase=phase.name,
            timeout_seconds=timeout,
            failing=list(tally.failing_required),
        )
        try:
            decision = await run_with_timeout(
                self._override_channel.await_override(request, timeout),
                timeout,
                context.cancel_token if context is not None else None,
            )
        except TimeoutError:
            return self._no_go_override(
                tally,
                ErrorKind.GATE_TIMEOUT,
                f"no override decision within {timeout:g}s",
            )
        except OperationCancelled as exc:
            return self._no_go_override(
                tally, ErrorKind.CHECK_INFRA, f"aborted while awaiting override: {exc.reason}"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            return self._no_go_override(
                tally,
                ErrorKind.CHECK_INFRA,
                f"override channel failed: {type(exc).__name__}: {exc}",
            )

        actor = decision.approver or "unknown"
        note = f" ({decision.justification})" if decision.justification else ""
        if decision.approved:
            return GateDecision(
                verdict=Verdict.GO,
                policy=GatePolicyKind.MANUAL_OVERRIDE,
                reasons=(f"approved by {actor}{note}", *_advisory_reasons(tally)),
                advisory_failure_ids=tally.advisory_failures,
                override=decision,
            )
        return GateDecision(
            verdict=Verdict.NO_GO,
            policy=GatePolicyKind.MANUAL_OVERRIDE,
            reasons=(f"rejected by {actor}{note}", *_advisory_reasons(tally)),
            blocking_check_ids=tally.failing_required,
            advisory_failure_ids=tally.advisory_failures,
            error_kind=ErrorKind.OVERRIDE_REJECTED,
            override=decision,
        )

    def _no_go_override(
        self,
        tally: _Tally,
        kind: ErrorKind,
        reason: str,
        *,
        blocking: tuple[str, ...] | None = None,
    ) -> GateDecision:
        return GateDecision(
            verdict=Verdict.NO_GO,
            policy=GatePolicyKind.MANUAL_OVERRIDE,
            reasons=(reason, *_advisory_reasons(tally)),
            blocking_check_ids=blocking if blocking is not None else tally.failing_required,
            advisory_failure_ids=tally.advisory_failures,
            error_kind=kind,
        )


def _tally(phase: PhaseDefinition, results: Sequence[CheckResult]) -> _Tally:
    by_id = {result.check_id: result for result in results}
    failing: list[str] = []
    infra: list[str] = []
    missing: list[str] = []
    advisory: list[str] = []
    weight = 0.0
    for check in phase.checks:
        result = by_id.get(check.id)
        if not check.required:
            if result is not None and result.outcome is not CheckOutcome.PASS:
                advisory.append(check.id)
            continue
        if result is None:
            missing.append(check.id)
        elif result.outcome is CheckOutcome.PASS:
            continue
        elif result.outcome.is_infra:
            infra.append(check.id)
        failing.append(check.id)
        weight += check.weight
    return _Tally(
        failing_required=tuple(failing),
        infra_required=tuple(infra),
        missing_required=tuple(missing),
        advisory_failures=tuple(advisory),
        failing_weight=weight,
    )


def _advisory_reasons(tally: _Tally) -> tuple[str, ...]:
    if not tally.advisory_failures:
        return ()
    return (f"advisory checks not passing: {', '.join(tally.advisory_failures)}",)


__all__ = ["GateEvaluator"]
