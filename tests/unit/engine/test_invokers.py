"""
phasegate — unit tests for the check invokers

File: tests/unit/engine/test_invokers.py
Last updated: 2026-10-18

Purpose
- Validate shell, HTTP, and Python-callable invokers and the kind registry.

What this test file should cover
- Shell: exit-code mapping, allowed exit codes, executor errors.
- HTTP: expected status list, expected text, request shape.
- Python: sync and async callables, unregistered names.
- Registry: routing by kind, duplicate registration, unknown kinds.

Functional requirements
- No network: the requests session is a stub.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Any

import pytest

from phasegate.domain.models import CheckOutcome
from phasegate.engine.commands import CommandResult, CommandSpec
from phasegate.engine.invokers import (
    CallableInvoker,
    HttpProbeInvoker,
    InvocationError,
    InvokerRegistry,
    ShellCommandInvoker,
    UnknownInvokerError,
    default_invoker_registry,
)


@dataclass
class _Response:
    status_code: int
    text: str = ""


@dataclass
class _StubSession:
    response: _Response
    calls: list[dict[str, Any]] = field(default_factory=list)

    def request(self, method: str, url: str, **kwargs: Any) -> _Response:
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.response


class _FailingExecutor:
    async def run(self, spec: CommandSpec) -> CommandResult:
        return CommandResult(
            argv=spec.argv,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=0,
            error="[Errno 2] No such file or directory",
        )


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.mark.asyncio
async def test_shell_exit_codes_map_to_outcomes(make_check, make_context) -> None:
    invoker = ShellCommandInvoker()
    passing = make_check("ok", invocation={"kind": "shell", "argv": _python("print('fine')")})
    failing = make_check(
        "bad", invocation={"kind": "shell", "argv": _python("import sys; sys.stderr.write('boom'); sys.exit(3)")}
    )

    ok = await invoker.invoke(passing, make_context())
    bad = await invoker.invoke(failing, make_context())

    assert ok["outcome"] is CheckOutcome.PASS
    assert ok["summary"] == "exit 0"
    assert ok["details"] == "fine"
    assert bad["outcome"] is CheckOutcome.FAIL
    assert bad["summary"] == "exit 3"
    assert bad["details"] == "boom"
    assert bad["metadata"]["exit_code"] == 3


@pytest.mark.asyncio
async def test_shell_allowed_exit_codes_and_context_env(make_check, make_context) -> None:
    check = make_check(
        "lint",
        invocation={
            "kind": "shell",
            "argv": _python("import os, sys; print(os.environ['PHASEGATE_PHASE']); sys.exit(1)"),
            "allowed_exit_codes": [0, 1],
        },
    )

    result = await ShellCommandInvoker().invoke(check, make_context(phase_name="test"))

    assert result["outcome"] is CheckOutcome.PASS
    assert result["details"] == "test"


@pytest.mark.asyncio
async def test_shell_executor_error_is_invocation_error(make_check, make_context) -> None:
    check = make_check("lint", invocation={"kind": "shell", "command": "definitely-not-a-binary"})

    with pytest.raises(InvocationError, match="No such file"):
        await ShellCommandInvoker(_FailingExecutor()).invoke(check, make_context())


@pytest.mark.asyncio
async def test_shell_rejects_malformed_invocation(make_check, make_context) -> None:
    check = make_check("lint", invocation={"kind": "shell"})

    with pytest.raises(InvocationError, match="invalid shell invocation"):
        await ShellCommandInvoker(_FailingExecutor()).invoke(check, make_context())


@pytest.mark.asyncio
async def test_http_probe_passes_on_expected_status(make_check, make_context) -> None:
    session = _StubSession(_Response(204))
    check = make_check(
        "health",
        invocation={"kind": "http", "url": "https://svc.internal/health", "expected_status": [200, 204]},
        timeout_seconds=3.0,
    )
    context = make_context()

    result = await HttpProbeInvoker(session).invoke(check, context)  # type: ignore[arg-type]

    assert result["outcome"] is CheckOutcome.PASS
    assert result["summary"] == "GET https://svc.internal/health -> 204"
    assert result["metadata"] == {"url": "https://svc.internal/health", "method": "GET", "status_code": 204}
    [call] = session.calls
    assert call["method"] == "GET"
    assert call["timeout"] == 3.0
    assert call["headers"]["X-Phasegate-Run"] == context.run_id


@pytest.mark.asyncio
async def test_http_probe_fails_on_status_or_missing_text(make_check, make_context) -> None:
    wrong_status = make_check("health", invocation={"kind": "http", "url": "https://svc/health"})
    wrong_text = make_check(
        "ready", invocation={"kind": "http", "url": "https://svc/ready", "expect_text": "ready"}
    )

    status_result = await HttpProbeInvoker(_StubSession(_Response(503, "unavailable"))).invoke(  # type: ignore[arg-type]
        wrong_status, make_context()
    )
    text_result = await HttpProbeInvoker(_StubSession(_Response(200, "starting"))).invoke(  # type: ignore[arg-type]
        wrong_text, make_context()
    )

    assert status_result["outcome"] is CheckOutcome.FAIL
    assert status_result["summary"] == "status 503 not in [200]"
    assert status_result["details"] == "unavailable"
    assert text_result["outcome"] is CheckOutcome.FAIL
    assert text_result["summary"] == "response body does not contain 'ready'"


@pytest.mark.asyncio
async def test_http_probe_rejects_bad_configuration(make_check, make_context) -> None:
    invoker = HttpProbeInvoker(_StubSession(_Response(200)))  # type: ignore[arg-type]

    with pytest.raises(InvocationError, match="requires a 'url'"):
        await invoker.invoke(make_check("a", invocation={"kind": "http"}), make_context())
    with pytest.raises(InvocationError, match="unsupported HTTP method"):
        await invoker.invoke(
            make_check("b", invocation={"kind": "http", "url": "https://svc", "method": "DELETE"}),
            make_context(),
        )
    with pytest.raises(InvocationError, match="expected_status"):
        await invoker.invoke(
            make_check("c", invocation={"kind": "http", "url": "https://svc", "expected_status": 42}),
            make_context(),
        )


@pytest.mark.asyncio
async def test_callable_invoker_supports_sync_and_async(make_check, make_context) -> None:
    async def _smoke(check, context):  # noqa: ANN001, ANN202
        return {"outcome": "pass", "summary": f"{check.id}@{context.phase_name}"}

    invoker = CallableInvoker({"smoke": _smoke})
    invoker.register("lint", lambda check, context: False)

    smoke = await invoker.invoke(make_check("smoke"), make_context(phase_name="verify"))
    lint = await invoker.invoke(make_check("lint"), make_context())

    assert smoke == {"outcome": "pass", "summary": "smoke@verify"}
    assert lint is False
    with pytest.raises(InvocationError, match="'missing' is not registered"):
        await invoker.invoke(make_check("missing"), make_context())
    with pytest.raises(TypeError):
        invoker.register("broken", "not callable")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_registry_routes_by_kind(scripted_invoker, make_check, make_context) -> None:
    registry = InvokerRegistry()
    fake = scripted_invoker({"smoke": "fail"})
    registry.register("python", fake)

    assert registry.kinds() == ("python",)
    assert await registry.invoke(make_check("smoke"), make_context()) == "fail"
    with pytest.raises(ValueError, match="already registered"):
        registry.register("python", fake)
    registry.register("python", scripted_invoker(), replace=True)
    with pytest.raises(UnknownInvokerError, match="no invoker registered for kind 'ftp'"):
        registry.resolve(make_check("upload", invocation={"kind": "ftp"}))


def test_default_registry_knows_every_builtin_kind() -> None:
    registry = default_invoker_registry(session=_StubSession(_Response(200)))  # type: ignore[arg-type]
    assert registry.kinds() == ("http", "python", "shell")
