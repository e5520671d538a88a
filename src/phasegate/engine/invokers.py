"""Check invokers: shell commands, HTTP probes, and registered Python callables.

Every check's ``invocation`` mapping carries a ``kind`` that selects the
invoker. Invokers report a raw outcome; anything they raise is turned into an
``error`` outcome by the check runner.

Invocation shapes::

    {"kind": "shell", "argv": ["pytest", "-q"], "cwd": ".", "env": {...},
     "allowed_exit_codes": [0]}
    {"kind": "shell", "command": "make lint"}
    {"kind": "http", "url": "https://svc/health", "method": "GET",
     "expected_status": [200, 204], "expect_text": "ok", "headers": {...}}
    {"kind": "python", "callable": "smoke"}
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping
from typing import Final

import requests

from phasegate.domain.models import CheckDefinition, CheckOutcome, JSONValue
from phasegate.engine.collaborators import CheckContext, CheckInvoker
from phasegate.engine.commands import (
    CommandExecutor,
    CommandSpec,
    LocalSubprocessExecutor,
    format_argv,
)

SHELL_KIND: Final[str] = "shell"
HTTP_KIND: Final[str] = "http"
PYTHON_KIND: Final[str] = "python"

_HTTP_METHODS: Final[frozenset[str]] = frozenset({"GET", "HEAD", "POST", "PUT", "OPTIONS"})
_HTTP_BODY_PREVIEW: Final[int] = 2000

CheckCallable = Callable[[CheckDefinition, CheckContext], object]


class UnknownInvokerError(LookupError):
    def __init__(self, kind: str | None, known: tuple[str, ...]) -> None:
        self.kind = kind
        super().__init__(
            f"no invoker registered for kind {kind!r}; registered: [{', '.join(known)}]"
        )


class InvocationError(RuntimeError):
    """The check could not be carried out (as opposed to carried out and failed)."""


class ShellCommandInvoker:
    """Exit code in ``allowed_exit_codes`` is ``pass``; anything else is ``fail``."""

    def __init__(self, executor: CommandExecutor | None = None) -> None:
        self._executor = executor or LocalSubprocessExecutor()

    async def invoke(self, check: CheckDefinition, context: CheckContext) -> object:
        try:
            spec = CommandSpec.from_invocation(check.invocation, extra_env=context.env())
        except ValueError as exc:
            raise InvocationError(f"invalid shell invocation: {exc}") from exc

        result = await self._executor.run(spec)
        if result.error is not None:
            raise InvocationError(f"{format_argv(spec.argv)}: {result.error}")

        passed = result.is_success(spec)
        return {
            "outcome": CheckOutcome.PASS if passed else CheckOutcome.FAIL,
            "summary": f"exit {result.exit_code}",
            "details": result.tail() or None,
            "metadata": {
                "argv": list(spec.argv),
                "exit_code": result.exit_code,
                "command_duration_ms": result.duration_ms,
            },
        }


class HttpProbeInvoker:
    """Probe an HTTP endpoint; the blocking ``requests`` call runs in a worker thread."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()

    async def invoke(self, check: CheckDefinition, context: CheckContext) -> object:
        invocation = check.invocation
        url = invocation.get("url")
        if not isinstance(url, str) or not url:
            raise InvocationError("http invocation requires a 'url'")
        method = str(invocation.get("method", "GET")).upper()
        if method not in _HTTP_METHODS:
            raise InvocationError(f"unsupported HTTP method {method!r}")
        expected = _expected_statuses(invocation.get("expected_status", 200))
        headers = _string_mapping(invocation.get("headers", {}), "headers")
        headers.setdefault("X-Phasegate-Run", context.run_id)
        body = invocation.get("body")

        response = await asyncio.to_thread(
            self._session.request,
            method,
            url,
            headers=headers,
            data=body if isinstance(body, str) else None,
            timeout=check.timeout_seconds,
        )
        text = response.text or ""
        failures: list[str] = []
        if response.status_code not in expected:
            failures.append(f"status {response.status_code} not in {sorted(expected)}")
        expect_text = invocation.get("expect_text")
        if isinstance(expect_text, str) and expect_text not in text:
            failures.append(f"response body does not contain {expect_text!r}")

        return {
            "outcome": CheckOutcome.FAIL if failures else CheckOutcome.PASS,
            "summary": "; ".join(failures) or f"{method} {url} -> {response.status_code}",
            "details": text[:_HTTP_BODY_PREVIEW] or None,
            "metadata": {"url": url, "method": method, "status_code": response.status_code},
        }


class CallableInvoker:
    """Dispatch ``{"kind": "python", "callable": name}`` to a registered function."""

    def __init__(self, callables: Mapping[str, CheckCallable] | None = None) -> None:
        self._callables: dict[str, CheckCallable] = dict(callables or {})

    def register(self, name: str, func: CheckCallable) -> None:
        if not name:
            raise ValueError("callable name must be non-empty")
        if not callable(func):
            raise TypeError(f"{name!r} is not callable")
        self._callables[name] = func

    async def invoke(self, check: CheckDefinition, context: CheckContext) -> object:
        name = check.invocation.get("callable")
        if not isinstance(name, str):
            raise InvocationError("python invocation requires a 'callable' name")
        func = self._callables.get(name)
        if func is None:
            raise InvocationError(f"python callable {name!r} is not registered")
        if inspect.iscoroutinefunction(func):
            return await func(check, context)
        # Plain functions run in a worker thread so a blocking check cannot
        # starve its timeout or sibling checks; an overrun thread is abandoned.
        candidate = await asyncio.to_thread(func, check, context)
        if inspect.isawaitable(candidate):
            return await candidate
        return candidate


class InvokerRegistry(CheckInvoker):
    """Routes each check to the invoker registered for its ``invocation["kind"]``."""

    def __init__(self, invokers: Mapping[str, CheckInvoker] | None = None) -> None:
        self._invokers: dict[str, CheckInvoker] = dict(invokers or {})

    def register(self, kind: str, invoker: CheckInvoker, *, replace: bool = False) -> None:
        if not kind:
            raise ValueError("invoker kind must be non-empty")
        if kind in self._invokers and not replace:
            raise ValueError(f"invoker kind {kind!r} already registered")
        self._invokers[kind] = invoker

    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._invokers))

    def resolve(self, check: CheckDefinition) -> CheckInvoker:
        invoker = self._invokers.get(check.kind or "")
        if invoker is None:
            raise UnknownInvokerError(check.kind, self.kinds())
        return invoker

    async def invoke(self, check: CheckDefinition, context: CheckContext) -> object:
        return await self.resolve(check).invoke(check, context)


def default_invoker_registry(
    *,
    executor: CommandExecutor | None = None,
    session: requests.Session | None = None,
    callables: Mapping[str, CheckCallable] | None = None,
) -> InvokerRegistry:
    return InvokerRegistry(
        {
            SHELL_KIND: ShellCommandInvoker(executor),
            HTTP_KIND: HttpProbeInvoker(session),
            PYTHON_KIND: CallableInvoker(callables),
        }
    )


def _expected_statuses(value: JSONValue) -> frozenset[int]:
    raw = value if isinstance(value, list) else [value]
    statuses: set[int] = set()
    for item in raw:
        if isinstance(item, bool) or not isinstance(item, int) or not 100 <= item <= 599:
            raise InvocationError(f"expected_status entries must be HTTP status codes, got {item!r}")
        statuses.add(item)
    if not statuses:
        raise InvocationError("expected_status must not be empty")
    return frozenset(statuses)


def _string_mapping(value: JSONValue, name: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise InvocationError(f"http invocation '{name}' must be an object")
    return {key: str(item) for key, item in value.items()}


__all__ = [
    "HTTP_KIND",
    "PYTHON_KIND",
    "SHELL_KIND",
    "CallableInvoker",
    "CheckCallable",
    "HttpProbeInvoker",
    "InvocationError",
    "InvokerRegistry",
    "ShellCommandInvoker",
    "UnknownInvokerError",
    "default_invoker_registry",
]
