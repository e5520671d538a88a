"""
phasegate — unit tests for the check runner

File: tests/unit/engine/test_check_runner.py
Last updated: 2026-10-18

Purpose
- Validate that every invoker behavior ends as exactly one CheckResult.

What this test file should cover
- pass/fail passthrough and output normalization.
- Timeouts, invoker exceptions, unknown invokers, and malformed output as
  infrastructure outcomes.
- Retries for infrastructure outcomes only; operator aborts stop retrying.

Functional requirements
- No subprocesses; scripted invokers only.
"""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from phasegate.domain.models import CheckOutcome, CheckResult
from phasegate.engine.check_runner import (
    SUMMARY_ABORTED,
    SUMMARY_ERROR,
    SUMMARY_INVALID_OUTPUT,
    SUMMARY_NOT_REGISTERED,
    SUMMARY_TIMEOUT,
    CheckRunner,
    normalize_check_output,
)
from phasegate.engine.invokers import CallableInvoker, InvokerRegistry
from phasegate.utils.concurrency import CancellationToken


@pytest.mark.asyncio
async def test_pass_and_fail_are_passed_through(scripted_invoker, make_check, make_context) -> None:
    invoker = scripted_invoker({"lint": "pass", "tests": {"outcome": "fail", "summary": "3 failed"}})
    runner = CheckRunner(invoker)

    lint = await runner.run(make_check("lint"), make_context())
    tests = await runner.run(make_check("tests", weight=2.5), make_context())

    assert lint.outcome is CheckOutcome.PASS
    assert lint.attempts == 1
    assert tests.outcome is CheckOutcome.FAIL
    assert tests.summary == "3 failed"
    assert tests.weight == 2.5
    assert tests.required is True


@pytest.mark.asyncio
async def test_timeout_becomes_timeout_outcome(scripted_invoker, sleep_step, make_check, make_context) -> None:
    invoker = scripted_invoker({"slow": sleep_step(5.0)})
    runner = CheckRunner(invoker)

    result = await runner.run(make_check("slow", timeout_seconds=0.05), make_context())

    assert result.outcome is CheckOutcome.TIMEOUT
    assert result.summary == SUMMARY_TIMEOUT
    assert result.details is not None and "timed out after 0.050s" in result.details


@pytest.mark.asyncio
async def test_invoker_exception_becomes_error_outcome(scripted_invoker, make_check, make_context) -> None:
    invoker = scripted_invoker({"flaky": ConnectionError("registry unreachable")})
    result = await CheckRunner(invoker).run(make_check("flaky"), make_context())

    assert result.outcome is CheckOutcome.ERROR
    assert result.summary == SUMMARY_ERROR
    assert result.details == "ConnectionError: registry unreachable"


@pytest.mark.asyncio
async def test_unknown_invoker_kind_is_reported_as_error(make_check, make_context) -> None:
    check = make_check("lint", invocation={"kind": "carrier-pigeon"})
    result = await CheckRunner(InvokerRegistry()).run(check, make_context())

    assert result.outcome is CheckOutcome.ERROR
    assert result.summary == SUMMARY_NOT_REGISTERED
    assert "carrier-pigeon" in (result.details or "")


@pytest.mark.asyncio
async def test_malformed_output_is_reported_as_error(scripted_invoker, make_check, make_context) -> None:
    invoker = scripted_invoker({"odd": 42, "bogus": "maybe"})
    runner = CheckRunner(invoker)

    odd = await runner.run(make_check("odd"), make_context())
    bogus = await runner.run(make_check("bogus"), make_context())

    assert odd.outcome is CheckOutcome.ERROR
    assert odd.summary == SUMMARY_INVALID_OUTPUT
    assert bogus.outcome is CheckOutcome.ERROR
    assert bogus.summary == SUMMARY_INVALID_OUTPUT


@pytest.mark.asyncio
async def test_retries_apply_to_infra_outcomes_only(scripted_invoker, make_check, make_context) -> None:
    invoker = scripted_invoker(
        {
            "network": [RuntimeError("blip"), RuntimeError("blip"), "pass"],
            "lint": ["fail", "pass"],
        }
    )
    runner = CheckRunner(invoker)

    network = await runner.run(make_check("network", retries=2), make_context())
    lint = await runner.run(make_check("lint", retries=3), make_context())

    assert network.outcome is CheckOutcome.PASS
    assert network.attempts == 3
    assert lint.outcome is CheckOutcome.FAIL
    assert lint.attempts == 1
    assert invoker.calls_for("lint") == 1


@pytest.mark.asyncio
async def test_retries_exhausted_reports_last_infra_outcome(scripted_invoker, make_check, make_context) -> None:
    invoker = scripted_invoker({"network": RuntimeError("down")})
    result = await CheckRunner(invoker).run(make_check("network", retries=1), make_context())

    assert result.outcome is CheckOutcome.ERROR
    assert result.attempts == 2
    assert invoker.calls_for("network") == 2


@pytest.mark.asyncio
async def test_abort_reports_error_and_skips_retries(scripted_invoker, sleep_step, make_check, make_context) -> None:
    token = CancellationToken()
    invoker = scripted_invoker({"deploy": sleep_step(5.0)})
    runner = CheckRunner(invoker)

    async def _abort_soon() -> None:
        await asyncio.sleep(0.02)
        token.cancel("operator abort")

    aborting = asyncio.create_task(_abort_soon())
    result = await runner.run(make_check("deploy", retries=3), make_context(cancel_token=token))
    await aborting

    assert result.outcome is CheckOutcome.ERROR
    assert result.summary == SUMMARY_ABORTED
    assert result.metadata == {"aborted": True}
    assert result.details == "operator abort"
    assert invoker.calls_for("deploy") == 1


@pytest.mark.asyncio
async def test_synchronous_invoker_results_are_accepted(make_check, make_context) -> None:
    class _SyncInvoker:
        def invoke(self, check, context):  # noqa: ANN001, ANN202
            return True

    result = await CheckRunner(_SyncInvoker()).run(make_check("lint"), make_context())  # type: ignore[arg-type]
    assert result.outcome is CheckOutcome.PASS


@pytest.mark.asyncio
async def test_blocking_python_callable_still_times_out(make_check, make_context) -> None:
    release = threading.Event()

    def _hang(check, context):  # noqa: ANN001, ANN202
        release.wait(5.0)
        return "pass"

    async def _quick(check, context):  # noqa: ANN001, ANN202
        await asyncio.sleep(0.01)
        return "pass"

    runner = CheckRunner(CallableInvoker({"hang": _hang, "quick": _quick}))
    started = time.perf_counter()
    try:
        hang, quick = await asyncio.gather(
            runner.run(make_check("hang", timeout_seconds=0.2), make_context()),
            runner.run(make_check("quick"), make_context()),
        )
    finally:
        release.set()

    assert time.perf_counter() - started < 2.0
    assert hang.outcome is CheckOutcome.TIMEOUT
    assert hang.summary == SUMMARY_TIMEOUT
    assert quick.outcome is CheckOutcome.PASS
    assert quick.duration_ms < 1000


def test_normalize_check_output_accepts_supported_shapes(make_check) -> None:
    check = make_check("lint", required=False, weight=0.5)

    from_bool = normalize_check_output(False, check)
    from_string = normalize_check_output(" Timeout ", check)
    from_mapping = normalize_check_output(
        {"status": "pass", "duration_ms": 12.4, "details": "ok", "metadata": {"files": 3}}, check
    )
    from_result = normalize_check_output(
        CheckResult(check_id="other", outcome=CheckOutcome.FAIL, summary="nope"), check
    )

    assert from_bool.outcome is CheckOutcome.FAIL
    assert from_string.outcome is CheckOutcome.TIMEOUT
    assert from_mapping.outcome is CheckOutcome.PASS
    assert from_mapping.duration_ms == 12
    assert from_mapping.metadata == {"files": 3}
    assert from_result.check_id == "lint"
    assert from_result.summary == "nope"
    for result in (from_bool, from_string, from_mapping, from_result):
        assert result.required is False
        assert result.weight == 0.5


def test_normalize_check_output_rejects_bad_duration(make_check) -> None:
    with pytest.raises(TypeError, match="duration_ms"):
        normalize_check_output({"outcome": "pass", "duration_ms": "fast"}, make_check("lint"))
