"""Console override channel: asks the operator at the terminal to approve a manual gate.

Each channel reads its stdin on one daemon thread, so an unanswered question
never keeps the process alive after the gate times out and a later prompt does
not compete with an orphaned reader. Lines typed while no prompt is pending are
discarded.
"""

from __future__ import annotations

import asyncio
import getpass
import sys
import threading
from typing import TextIO

from phasegate.domain.models import OverrideDecision
from phasegate.engine.collaborators import OverrideRequest

_APPROVE_WORDS = frozenset({"y", "yes", "approve", "go"})


class ConsoleOverrideChannel:
    def __init__(
        self,
        *,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        approver: str | None = None,
    ) -> None:
        self._reader = _LineReader(stdin if stdin is not None else sys.stdin)
        self._stdout = stdout if stdout is not None else sys.stderr
        self._approver = approver if approver is not None else _current_user()

    async def await_override(
        self, request: OverrideRequest, timeout_seconds: float
    ) -> OverrideDecision:
        pending = self._reader.listen()
        try:
            self._write(_describe(request, timeout_seconds))
            answer = await pending
        finally:
            self._reader.forget(pending)
        verb, _, justification = answer.strip().partition(" ")
        approved = verb.lower() in _APPROVE_WORDS
        return OverrideDecision(
            approved=approved,
            approver=f"console:{self._approver}",
            justification=justification.strip() or None,
        )

    def _write(self, text: str) -> None:
        self._stdout.write(text)
        self._stdout.flush()


def _describe(request: OverrideRequest, timeout_seconds: float) -> str:
    failing = ", ".join(request.failing_check_ids) or "(none)"
    lines = [
        "",
        f"Manual gate: {request.pipeline_name} / {request.phase_name} (run {request.run_id})",
        f"  failing checks: {failing}",
    ]
    for result in request.results:
        marker = "ok " if result.outcome.value == "pass" else "!! "
        suffix = "" if result.required else " (advisory)"
        lines.append(f"  {marker}{result.check_id}: {result.outcome.value}{suffix}")
    lines.append(
        f"Approve phase? answer 'y [justification]' within {timeout_seconds:g}s [y/N]: "
    )
    return "\n".join(lines)


class _LineReader:
    """Hands each line read from ``stream`` to whichever prompt is listening."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._listener: tuple[asyncio.AbstractEventLoop, asyncio.Future[str]] | None = None
        self._thread: threading.Thread | None = None
        self._exhausted = False

    def listen(self) -> asyncio.Future[str]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        with self._lock:
            if self._exhausted:
                future.set_result("")
                return future
            self._listener = (loop, future)
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run, name="phasegate-override-prompt", daemon=True
                )
                self._thread.start()
        return future

    def forget(self, future: asyncio.Future[str]) -> None:
        with self._lock:
            if self._listener is not None and self._listener[1] is future:
                self._listener = None

    def _run(self) -> None:
        while True:
            try:
                line: str | BaseException = self._stream.readline()
            except (OSError, ValueError) as exc:
                line = exc
            finished = isinstance(line, BaseException) or line == ""
            with self._lock:
                listener, self._listener = self._listener, None
                if finished:
                    self._exhausted = True
            if listener is not None:
                loop, future = listener
                try:
                    loop.call_soon_threadsafe(_deliver, future, line)
                except RuntimeError:
                    # Loop already closed: the gate gave up waiting.
                    pass
            if finished:
                return


def _deliver(future: asyncio.Future[str], value: str | BaseException) -> None:
    if future.done():
        return
    if isinstance(value, BaseException):
        future.set_exception(value)
    else:
        future.set_result(value)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "operator"


__all__ = ["ConsoleOverrideChannel"]
