"""Async subprocess execution shared by shell checks and deployment hooks."""

from __future__ import annotations

import asyncio
import os
import shlex
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from phasegate.domain.models import JSONValue

_MAX_OUTPUT_CHARS = 200_000


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation contract."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    inherit_env: bool = True

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv or not all(isinstance(part, str) and part for part in argv):
            raise ValueError("CommandSpec.argv: must be a non-empty list of non-empty strings")
        self.argv = argv
        if any(not isinstance(key, str) or not isinstance(value, str) for key, value in self.env.items()):
            raise ValueError("CommandSpec.env: keys and values must be strings")
        self.env = dict(self.env)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds: must be > 0")
        codes = tuple(self.allowed_exit_codes)
        if not codes or any(isinstance(code, bool) or not isinstance(code, int) for code in codes):
            raise ValueError("CommandSpec.allowed_exit_codes: must be a non-empty list of integers")
        self.allowed_exit_codes = codes

    @classmethod
    def from_invocation(
        cls,
        invocation: Mapping[str, JSONValue],
        *,
        extra_env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandSpec:
        """Build from a check or hook descriptor (``argv`` list or ``command`` string)."""
        argv_raw = invocation.get("argv")
        command_raw = invocation.get("command")
        if argv_raw is not None and command_raw is not None:
            raise ValueError("invocation: set either 'argv' or 'command', not both")
        if isinstance(argv_raw, list):
            argv = tuple(str(part) for part in argv_raw)
        elif isinstance(command_raw, str):
            argv = tuple(shlex.split(command_raw))
        else:
            raise ValueError("invocation: 'argv' (list) or 'command' (string) is required")

        env: dict[str, str] = {}
        env_raw = invocation.get("env", {})
        if not isinstance(env_raw, dict):
            raise ValueError("invocation.env: expected object")
        for key, value in env_raw.items():
            env[key] = str(value)
        if extra_env:
            env.update(extra_env)

        cwd = invocation.get("cwd")
        codes_raw = invocation.get("allowed_exit_codes", [0])
        if not isinstance(codes_raw, list):
            raise ValueError("invocation.allowed_exit_codes: expected array")
        return cls(
            argv=argv,
            cwd=cwd if isinstance(cwd, str) else None,
            env=env,
            stdin_text=invocation.get("stdin") if isinstance(invocation.get("stdin"), str) else None,
            timeout_seconds=timeout_seconds,
            allowed_exit_codes=tuple(codes_raw),  # type: ignore[arg-type]
            inherit_env=bool(invocation.get("inherit_env", True)),
        )

    def build_env(self) -> dict[str, str] | None:
        if self.inherit_env:
            env = dict(os.environ)
            env.update(self.env)
            return env
        return dict(self.env)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "argv": list(self.argv),
            "cwd": self.cwd,
            "env_keys": sorted(self.env),
            "timeout_seconds": self.timeout_seconds,
            "allowed_exit_codes": list(self.allowed_exit_codes),
            "inherit_env": self.inherit_env,
        }


@dataclass(slots=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def is_success(self, spec: CommandSpec | None = None) -> bool:
        if self.timed_out or self.error is not None or self.exit_code is None:
            return False
        if spec is None:
            return self.exit_code == 0
        return self.exit_code in spec.allowed_exit_codes

    def tail(self, max_chars: int = 4000) -> str:
        """Combined stdout/stderr tail for diagnostics."""
        combined = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        if len(combined) <= max_chars:
            return combined
        return f"...[truncated {len(combined) - max_chars} chars]\n{combined[-max_chars:]}"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "argv": list(self.argv),
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "error": self.error,
        }


@runtime_checkable
class CommandExecutor(Protocol):
    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Run commands as local subprocesses; cancellation kills the child."""

    def __init__(self, *, max_output_chars: int = _MAX_OUTPUT_CHARS) -> None:
        if max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        self._max_output_chars = max_output_chars

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=(
                    asyncio.subprocess.PIPE
                    if spec.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=str(exc),
            )

        stdin_bytes = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None
        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process,
                stdin_bytes=stdin_bytes,
                timeout_seconds=spec.timeout_seconds,
            )
            timed_out = False
            error_text: str | None = None
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes = exc.stdout
            stderr_bytes = exc.stderr
            timed_out = True
            error_text = f"command timed out after {spec.timeout_seconds:.3f}s"
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=_truncate_text(_normalize_output_text(stdout_bytes), self._max_output_chars),
            stderr=_truncate_text(_normalize_output_text(stderr_bytes), self._max_output_chars),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            error=error_text,
        )


class _CommandTimeoutError(Exception):
    def __init__(self, stdout: bytes, stderr: bytes) -> None:
        super().__init__("command timed out")
        self.stdout = stdout
        self.stderr = stderr


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    stdin_bytes: bytes | None,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate(stdin_bytes)
        return await asyncio.wait_for(process.communicate(stdin_bytes), timeout=timeout_seconds)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


def _normalize_output_text(raw: bytes | None) -> str:
    if not raw:
        return ""
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


def format_argv(argv: Sequence[str]) -> str:
    return shlex.join(argv)


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "format_argv",
]
