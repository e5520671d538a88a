"""Unit tests for the console override channel and its stdin reader."""

from __future__ import annotations

import asyncio
import io
import queue

import pytest

from phasegate.domain.models import CheckOutcome, CheckResult
from phasegate.engine.collaborators import OverrideChannel, OverrideRequest
from phasegate.ui.prompt import ConsoleOverrideChannel


def _request() -> OverrideRequest:
    return OverrideRequest(
        run_id="run-01J9ZQ4V8E6K2M3N4P5Q6R7S8T",
        pipeline_name="hotfix",
        pipeline_kind="hotfix",
        phase_name="verify",
        phase_index=0,
        results=(
            CheckResult(check_id="unit", outcome=CheckOutcome.PASS),
            CheckResult(check_id="flaky-e2e", outcome=CheckOutcome.FAIL),
            CheckResult(check_id="docs", outcome=CheckOutcome.TIMEOUT, required=False),
        ),
        failing_check_ids=("flaky-e2e",),
        timeout_seconds=600.0,
    )


def test_console_channel_satisfies_protocol() -> None:
    assert isinstance(ConsoleOverrideChannel(stdin=io.StringIO(), stdout=io.StringIO()), OverrideChannel)


@pytest.mark.asyncio
async def test_approval_with_justification() -> None:
    stdout = io.StringIO()
    channel = ConsoleOverrideChannel(
        stdin=io.StringIO("yes known flake, tracked upstream\n"), stdout=stdout, approver="oncall"
    )

    decision = await channel.await_override(_request(), 600.0)

    assert decision.approved is True
    assert decision.approver == "console:oncall"
    assert decision.justification == "known flake, tracked upstream"

    prompt = stdout.getvalue()
    assert "Manual gate: hotfix / verify (run run-01J9ZQ4V8E6K2M3N4P5Q6R7S8T)" in prompt
    assert "failing checks: flaky-e2e" in prompt
    assert "ok unit: pass" in prompt
    assert "!! flaky-e2e: fail" in prompt
    assert "!! docs: timeout (advisory)" in prompt
    assert "within 600s [y/N]: " in prompt


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", ["\n", "n\n", "nope\n", ""])
async def test_anything_but_approval_rejects(answer: str) -> None:
    channel = ConsoleOverrideChannel(stdin=io.StringIO(answer), stdout=io.StringIO(), approver="oncall")

    decision = await channel.await_override(_request(), 30.0)

    assert decision.approved is False
    assert decision.justification is None


class _Terminal:
    """Blocking line source; ``readline`` waits until a line is typed."""

    def __init__(self) -> None:
        self._lines: queue.Queue[str] = queue.Queue()

    def type(self, line: str) -> None:
        self._lines.put(line)

    def readline(self) -> str:
        return self._lines.get()


class _Screen(io.StringIO):
    """Types the scripted answer as soon as the matching prompt is shown."""

    def __init__(self, terminal: _Terminal, answers: dict[int, str]) -> None:
        super().__init__()
        self._terminal = terminal
        self._answers = answers
        self.prompts = 0

    def write(self, text: str) -> int:
        if text.endswith("[y/N]: "):
            self.prompts += 1
            answer = self._answers.get(self.prompts)
            if answer is not None:
                self._terminal.type(answer)
        return super().write(text)


@pytest.mark.asyncio
async def test_prompt_after_timeout_gets_the_next_answer() -> None:
    terminal = _Terminal()
    screen = _Screen(terminal, {2: "yes retried by hand\n"})
    channel = ConsoleOverrideChannel(stdin=terminal, stdout=screen, approver="oncall")  # type: ignore[arg-type]

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(channel.await_override(_request(), 0.05), 0.05)
    decision = await asyncio.wait_for(channel.await_override(_request(), 5.0), 5.0)
    terminal.type("")

    assert screen.prompts == 2
    assert decision.approved is True
    assert decision.justification == "retried by hand"


@pytest.mark.asyncio
async def test_exhausted_input_rejects_every_later_prompt() -> None:
    channel = ConsoleOverrideChannel(stdin=io.StringIO(""), stdout=io.StringIO(), approver="oncall")

    first = await channel.await_override(_request(), 5.0)
    second = await asyncio.wait_for(channel.await_override(_request(), 5.0), 5.0)

    assert first.approved is False
    assert second.approved is False
