"""
phasegate — check runner

File: src/phasegate/engine/check_runner.py
Last updated: 2026-10-18

Purpose
- Execute one CheckDefinition through the configured invoker and return a
  structured CheckResult.

Behavior
- Never raises for check-level problems. Invoker exceptions become ``error``,
  an exceeded timeout becomes ``timeout``, and an operator abort becomes
  ``error`` with an ``aborted`` summary.
- The in-flight invocation is cancelled on timeout and abort.
- ``error``/``timeout`` are re-attempted up to ``CheckDefinition.retries``
  times; ``fail`` is final. The result reports the number of attempts.
- Logs once when a check starts and once when it finishes.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Mapping
from typing import Any, Final

import structlog

from phasegate.domain.models import CheckDefinition, CheckOutcome, CheckResult
from phasegate.engine.collaborators import CheckContext, CheckInvoker
from phasegate.engine.invokers import UnknownInvokerError
from phasegate.utils.concurrency import OperationCancelled, run_with_timeout

SUMMARY_TIMEOUT: Final[str] = "check_timeout"
SUMMARY_ABORTED: Final[str] = "aborted"
SUMMARY_ERROR: Final[str] = "check_error"
SUMMARY_NOT_REGISTERED: Final[str] = "invoker_not_registered"
SUMMARY_INVALID_OUTPUT: Final[str] = "invalid_check_output"

_MAX_DETAILS_CHARS: Final[int] = 60_000


class CheckRunner:
    def __init__(self, invoker: CheckInvoker, *, logger: Any | None = None) -> None:
        self._invoker = invoker
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, check: CheckDefinition, context: CheckContext) -> CheckResult:
        start = time.perf_counter()
        self._logger.info(
            "check_started",
            check_id=check.id,
            required=check.required,
            timeout_seconds=check.timeout_seconds,
            **context.log_fields(),
        )

        attempts = 0
        while True:
            attempts += 1
            result = await self._attempt(check, context)
            if not result.outcome.is_infra or attempts > check.retries:
                break
            if context.cancel_token is not None and context.cancel_token.is_cancelled:
                break

        final = CheckResult(
            check_id=check.id,
            outcome=result.outcome,
            duration_ms=_duration_ms(start),
            required=check.required,
            weight=check.weight,
            attempts=attempts,
            summary=result.summary,
            details=result.details,
            metadata=result.metadata,
        )
        self._logger.info(
            "check_finished",
            check_id=check.id,
            outcome=str(final.outcome),
            duration_ms=final.duration_ms,
            attempts=attempts,
            summary=final.summary,
            **context.log_fields(),
        )
        return final

    async def _attempt(self, check: CheckDefinition, context: CheckContext) -> CheckResult:
        start = time.perf_counter()
        try:
            raw_output = await run_with_timeout(
                self._invoke(check, context),
                check.timeout_seconds,
                context.cancel_token,
            )
        except TimeoutError:
            return _infra_result(
                check,
                CheckOutcome.TIMEOUT,
                start,
                SUMMARY_TIMEOUT,
                f"check timed out after {check.timeout_seconds:.3f}s",
            )
        except OperationCancelled as exc:
            return _infra_result(
                check,
                CheckOutcome.ERROR,
                start,
                SUMMARY_ABORTED,
                exc.reason,
                metadata={"aborted": True},
            )
        except asyncio.CancelledError:
            raise
        except UnknownInvokerError as exc:
            return _infra_result(check, CheckOutcome.ERROR, start, SUMMARY_NOT_REGISTERED, str(exc))
        except Exception as exc:  # noqa: BLE001
            return _infra_result(
                check,
                CheckOutcome.ERROR,
                start,
                SUMMARY_ERROR,
                f"{type(exc).__name__}: {exc}",
            )

        try:
            return normalize_check_output(raw_output, check, default_duration_ms=_duration_ms(start))
        except (TypeError, ValueError) as exc:
            return _infra_result(check, CheckOutcome.ERROR, start, SUMMARY_INVALID_OUTPUT, str(exc))

    async def _invoke(self, check: CheckDefinition, context: CheckContext) -> object:
        candidate = self._invoker.invoke(check, context)
        if inspect.isawaitable(candidate):
            return await candidate
        return candidate


def normalize_check_output(
    output: object,
    check: CheckDefinition,
    *,
    default_duration_ms: int = 0,
) -> CheckResult:
    """Coerce an invoker's raw output into a :class:`CheckResult` for ``check``."""
    if isinstance(output, CheckResult):
        return CheckResult(
            check_id=check.id,
            outcome=output.outcome,
            duration_ms=output.duration_ms or default_duration_ms,
            required=check.required,
            weight=check.weight,
            summary=output.summary,
            details=_truncate(output.details),
            metadata=output.metadata,
        )

    if isinstance(output, bool):
        return CheckResult(
            check_id=check.id,
            outcome=CheckOutcome.PASS if output else CheckOutcome.FAIL,
            duration_ms=default_duration_ms,
            required=check.required,
            weight=check.weight,
        )

    if isinstance(output, str):
        return CheckResult(
            check_id=check.id,
            outcome=_coerce_outcome(output),
            duration_ms=default_duration_ms,
            required=check.required,
            weight=check.weight,
        )

    if isinstance(output, Mapping):
        raw_outcome = output.get("outcome", output.get("status", CheckOutcome.PASS))
        duration = output.get("duration_ms")
        if duration is not None and (isinstance(duration, bool) or not isinstance(duration, (int, float))):
            raise TypeError("duration_ms must be an int/float when provided")
        summary = output.get("summary")
        details = output.get("details")
        metadata = output.get("metadata", {})
        return CheckResult(
            check_id=check.id,
            outcome=_coerce_outcome(raw_outcome),
            duration_ms=max(0, round(duration)) if duration is not None else default_duration_ms,
            required=check.required,
            weight=check.weight,
            summary=summary if isinstance(summary, str) else "",
            details=_truncate(details if isinstance(details, str) else None),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )

    raise TypeError(
        "check output must be CheckResult, bool, outcome string, or Mapping[str, object]; "
        f"got {type(output).__name__}"
    )


def _coerce_outcome(value: object) -> CheckOutcome:
    if isinstance(value, CheckOutcome):
        return value
    if isinstance(value, str):
        return CheckOutcome(value.strip().lower())
    raise ValueError(f"invalid check outcome value: {value!r}")


def _infra_result(
    check: CheckDefinition,
    outcome: CheckOutcome,
    start: float,
    summary: str,
    details: str,
    *,
    metadata: dict[str, Any] | None = None,
) -> CheckResult:
    return CheckResult(
        check_id=check.id,
        outcome=outcome,
        duration_ms=_duration_ms(start),
        required=check.required,
        weight=check.weight,
        summary=summary,
        details=_truncate(details),
        metadata=metadata or {},
    )


def _truncate(text: str | None) -> str | None:
    if text is None or len(text) <= _MAX_DETAILS_CHARS:
        return text
    omitted = len(text) - _MAX_DETAILS_CHARS
    return f"{text[:_MAX_DETAILS_CHARS]}\n...[truncated {omitted} chars]"


def _duration_ms(start: float) -> int:
    elapsed_seconds = max(time.perf_counter() - start, 0.0)
    return int(round(elapsed_seconds * 1000))


__all__ = [
    "SUMMARY_ABORTED",
    "SUMMARY_ERROR",
    "SUMMARY_INVALID_OUTPUT",
    "SUMMARY_NOT_REGISTERED",
    "SUMMARY_TIMEOUT",
    "CheckRunner",
    "normalize_check_output",
]
