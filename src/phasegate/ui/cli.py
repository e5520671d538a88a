"""Command-line interface router for phasegate."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import structlog

from phasegate.config import (
    ConfigLoadError,
    ConfigValidationError,
    discover_config_file,
    effective_config,
    load_config,
)
from phasegate.constants import STATE_DB_PATH
from phasegate.domain.errors import InvalidTransition, RollbackIncomplete, RunNotFound
from phasegate.domain.models import PipelineStatus, RunReport
from phasegate.engine import (
    EngineSettings,
    OverrideChannel,
    PipelineEngine,
    StaticOverrideChannel,
    UnattendedOverrideChannel,
    default_invoker_registry,
)
from phasegate.observability import configure_run_logging, shutdown_logging
from phasegate.persistence import SqliteRunStore, StateDB
from phasegate.pipelines import (
    load_pipeline,
    render_template,
    resolve_pipeline_path,
    template_names,
)
from phasegate.ui.prompt import ConsoleOverrideChannel
from phasegate.ui.render import CLIRenderer, create_renderer

EXIT_SUCCESS: Final[int] = 0
EXIT_HALTED: Final[int] = 1
EXIT_USAGE: Final[int] = 2
EXIT_ROLLBACK_INCOMPLETE: Final[int] = 3

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_USAGE

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="phasegate",
        description=(
            "phasegate: quality-gated pipeline orchestration.\n\n"
            "Common workflows:\n"
            "  phasegate template release > pipelines/release.yaml\n"
            "  phasegate run release          Run a pipeline definition\n"
            "  phasegate resume <RUN_ID>      Re-run the phase a run halted at\n"
            "  phasegate rollback <RUN_ID>    Revert to a deployment checkpoint\n"
            "  phasegate status               Show the latest run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to phasegate TOML config (default: nearest phasegate.toml).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show per-check detail for every phase.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    approval = argparse.ArgumentParser(add_help=False)
    answer = approval.add_mutually_exclusive_group()
    answer.add_argument(
        "--auto-approve",
        action="store_true",
        default=False,
        help="Approve every manual-override gate without prompting.",
    )
    answer.add_argument(
        "--auto-reject",
        action="store_true",
        default=False,
        help="Reject every manual-override gate without prompting.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common, approval],
        help="Run a pipeline definition from its first phase",
        description=(
            "Load a YAML pipeline definition and drive it phase by phase.\n\n"
            "Examples:\n"
            "  phasegate run pipelines/release.yaml\n"
            "  phasegate run release --profile ci --auto-reject\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "pipeline", help="Definition file, or a name under paths.pipelines_dir"
    )
    run_parser.set_defaults(handler=_cmd_run)

    # resume --------------------------------------------------------------
    resume_parser = subparsers.add_parser(
        "resume",
        parents=[common, approval],
        help="Resume a halted run from the phase it halted at",
    )
    resume_parser.add_argument("run_id", help="Run ID to resume")
    resume_parser.set_defaults(handler=_cmd_resume)

    # rollback ------------------------------------------------------------
    rollback_parser = subparsers.add_parser(
        "rollback",
        parents=[common],
        help="Revert a run to a deployment checkpoint",
        description=(
            "Revert deployment state to a checkpoint and verify it.\n\n"
            "Examples:\n"
            "  phasegate rollback <RUN_ID>                 Earliest checkpoint\n"
            "  phasegate rollback <RUN_ID> --checkpoint ID  A specific checkpoint\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    rollback_parser.add_argument("run_id", help="Run ID to roll back")
    rollback_parser.add_argument(
        "--checkpoint", default=None, help="Checkpoint ID (default: the earliest)"
    )
    rollback_parser.set_defaults(handler=_cmd_rollback)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show the report for a run (default: the latest)",
    )
    status_parser.add_argument("run_id", nargs="?", default=None, help="Run ID to inspect")
    status_parser.set_defaults(handler=_cmd_status)

    # runs ----------------------------------------------------------------
    runs_parser = subparsers.add_parser(
        "runs",
        parents=[common],
        help="List recorded runs, newest first",
    )
    runs_parser.add_argument(
        "--status",
        dest="status_filter",
        choices=[status.value for status in PipelineStatus],
        default=None,
        help="Only list runs in this status",
    )
    runs_parser.add_argument("--limit", type=int, default=20, help="Maximum rows (default: 20)")
    runs_parser.set_defaults(handler=_cmd_runs)

    # template ------------------------------------------------------------
    template_parser = subparsers.add_parser(
        "template",
        parents=[common],
        help="Print a built-in pipeline definition",
    )
    template_parser.add_argument(
        "name",
        nargs="?",
        default=None,
        help=f"Template name ({', '.join(template_names())}); omit to list",
    )
    template_parser.add_argument(
        "--output", default=None, help="Write the definition to this file instead of stdout"
    )
    template_parser.set_defaults(handler=_cmd_template)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging()
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    reference = _require_str(getattr(args, "pipeline", None), "pipeline")
    path = resolve_pipeline_path(reference, _config_str(config, "paths", "pipelines_dir"))
    pipeline = load_pipeline(
        path,
        default_check_timeout_seconds=_config_float(
            config, "engine", "default_check_timeout_seconds"
        ),
    )

    _start_logging(config, pipeline.run_id)
    engine = _build_engine(args, config)
    return _finish(args, "run", lambda: _drive(engine, pipeline.run_id, engine.start(pipeline)))


def _cmd_resume(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")

    _start_logging(config, run_id)
    engine = _build_engine(args, config)
    return _finish(args, "resume", lambda: _drive(engine, run_id, engine.resume(run_id)))


def _cmd_rollback(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")
    checkpoint_id = _optional_str(getattr(args, "checkpoint", None))

    _start_logging(config, run_id)
    engine = _build_engine(args, config)
    return _finish(
        args, "rollback", lambda: asyncio.run(engine.rollback(run_id, checkpoint_id))
    )


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = _open_store(config)
    engine = PipelineEngine(default_invoker_registry(), store=store)

    run_id = _optional_str(getattr(args, "run_id", None))
    if run_id is None:
        latest = store.list(limit=1)
        if not latest:
            if _flag(args, "json"):
                _emit_json({"command": "status", "run": None})
                return EXIT_SUCCESS
            renderer = _get_renderer(args)
            renderer.text(f"No runs recorded in {store.db.path}")
            renderer.next_steps(["phasegate template commit", "phasegate run <PIPELINE>"])
            return EXIT_SUCCESS
        run_id = latest[0].run_id

    try:
        pipeline = engine.status(run_id)
    except RunNotFound as exc:
        raise CLIError(str(exc)) from exc
    report = engine.report(run_id)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "status",
                "run": {
                    "status": pipeline.status.value,
                    "current_index": pipeline.current_index,
                    "current_phase": pipeline.current_phase.name
                    if pipeline.current_phase is not None
                    else None,
                    "report": report.to_dict(),
                },
            }
        )
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.run_report(report)
    renderer.kv("Current phase", _phase_position(pipeline.current_index, len(pipeline.phases)))
    renderer.next_steps(_next_steps_for(report))
    return EXIT_SUCCESS


def _cmd_runs(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = _open_store(config)
    limit = getattr(args, "limit", 20)
    if not isinstance(limit, int) or limit <= 0:
        raise CLIError("--limit must be a positive integer")
    status_raw = _optional_str(getattr(args, "status_filter", None))
    status = PipelineStatus(status_raw) if status_raw is not None else None

    summaries = store.list(status=status, limit=limit)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "runs",
                "runs": [
                    {
                        "run_id": item.run_id,
                        "name": item.name,
                        "kind": item.kind,
                        "status": item.status.value,
                        "current_index": item.current_index,
                        "escalated": item.escalated,
                        "created_at": item.created_at,
                        "updated_at": item.updated_at,
                    }
                    for item in summaries
                ],
            }
        )
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    if not summaries:
        renderer.text("No runs recorded.")
        return EXIT_SUCCESS
    renderer.table(
        ("Run ID", "Pipeline", "Kind", "Status", "Phase", "Updated"),
        [
            (
                item.run_id,
                item.name,
                item.kind,
                item.status.value,
                str(item.current_index),
                item.updated_at,
            )
            for item in summaries
        ],
    )
    return EXIT_SUCCESS


def _cmd_template(args: argparse.Namespace) -> int:
    name = _optional_str(getattr(args, "name", None))
    if name is None:
        if _flag(args, "json"):
            _emit_json({"command": "template", "templates": list(template_names())})
        else:
            _get_renderer(args).items(list(template_names()))
        return EXIT_SUCCESS

    text = render_template(name)
    output = _optional_str(getattr(args, "output", None))
    if output is None:
        sys.stdout.write(text)
        return EXIT_SUCCESS

    target = Path(output).expanduser()
    if target.exists():
        raise CLIError(f"refusing to overwrite existing file: {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    _get_renderer(args).kv("Wrote", target)
    return EXIT_SUCCESS


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    config_path = _optional_str(getattr(args, "config_path", None))
    source = Path(config_path) if config_path is not None else discover_config_file()
    redacted = effective_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "source": source.as_posix() if source is not None else None,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Config file", source if source is not None else "(defaults only)")
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Helpers: engine wiring
# ---------------------------------------------------------------------------


def _finish(
    args: argparse.Namespace, command: str, operation: Callable[[], RunReport]
) -> int:
    """Run an engine operation and render its report, including failed rollbacks."""

    try:
        report = operation()
    except (InvalidTransition, RunNotFound) as exc:
        raise CLIError(str(exc)) from exc
    except RollbackIncomplete as exc:
        _emit_report(args, command, exc.report)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ROLLBACK_INCOMPLETE
    return _emit_report(args, command, report)


def _build_engine(args: argparse.Namespace, config: Mapping[str, object]) -> PipelineEngine:
    return PipelineEngine(
        default_invoker_registry(),
        store=_open_store(config),
        override_channel=_override_channel(args),
        settings=EngineSettings.from_config(config),
    )


def _open_store(config: Mapping[str, object]) -> SqliteRunStore:
    state_db = _config_str(config, "paths", "state_db") or STATE_DB_PATH.as_posix()
    return SqliteRunStore(StateDB(state_db))


def _override_channel(args: argparse.Namespace) -> OverrideChannel:
    if _flag(args, "auto_approve"):
        return StaticOverrideChannel(approved=True, approver="cli:auto-approve")
    if _flag(args, "auto_reject"):
        return StaticOverrideChannel(approved=False, approver="cli:auto-reject")
    if sys.stdin.isatty():
        return ConsoleOverrideChannel()
    return UnattendedOverrideChannel()


def _drive(
    engine: PipelineEngine,
    run_id: str,
    operation: Awaitable[RunReport],
) -> RunReport:
    """Run ``operation`` with SIGINT/SIGTERM wired to ``engine.abort``."""

    async def _main() -> RunReport:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, _abort_on_signal(engine, run_id, signum))
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(signum)
        try:
            return await operation
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    return asyncio.run(_main())


def _abort_on_signal(
    engine: PipelineEngine, run_id: str, signum: signal.Signals
) -> Callable[[], None]:
    def _handler() -> None:
        reason = f"interrupted by {signum.name}"
        if engine.abort(run_id, reason):
            logger.warning("abort_signal_received", run_id=run_id, signal=signum.name)

    return _handler


def _start_logging(config: Mapping[str, object], run_id: str) -> None:
    observability = config.get("observability")
    configure_run_logging(
        observability if isinstance(observability, Mapping) else None,
        run_id=run_id,
    )


def _emit_report(args: argparse.Namespace, command: str, report: RunReport) -> int:
    exit_code = _exit_code_for(report, command)
    if _flag(args, "json"):
        _emit_json({"command": command, "exit_code": exit_code, "report": report.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.run_report(report)
    renderer.next_steps(_next_steps_for(report))
    return exit_code


def _exit_code_for(report: RunReport, command: str) -> int:
    if report.escalated and report.outcome is not PipelineStatus.ROLLED_BACK:
        return EXIT_ROLLBACK_INCOMPLETE
    if report.outcome is PipelineStatus.HALTED:
        return EXIT_HALTED
    # run/resume that ended in an automatic rollback did not complete.
    if report.outcome is PipelineStatus.ROLLED_BACK and command != "rollback":
        return EXIT_HALTED
    return EXIT_SUCCESS


def _next_steps_for(report: RunReport) -> list[str]:
    if report.outcome is PipelineStatus.HALTED:
        steps = [f"phasegate resume {report.run_id}"]
        if report.checkpoints:
            steps.append(f"phasegate rollback {report.run_id}")
        return steps
    if report.outcome is PipelineStatus.COMPLETED and report.checkpoints:
        return [f"phasegate rollback {report.run_id}"]
    return []


def _phase_position(index: int, total: int) -> str:
    if index >= total:
        return f"{total}/{total} (done)"
    return f"{index + 1}/{total}"


# ---------------------------------------------------------------------------
# Helpers: config and output
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        loaded = load_config(config_path, profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc

    return {key: value for key, value in loaded.items()}


def _config_section(config: Mapping[str, object], section: str) -> Mapping[str, object]:
    value = config.get(section)
    return value if isinstance(value, Mapping) else {}


def _config_str(config: Mapping[str, object], section: str, key: str) -> str | None:
    value = _config_section(config, section).get(key)
    return value if isinstance(value, str) and value.strip() else None


def _config_float(config: Mapping[str, object], section: str, key: str) -> float | None:
    value = _config_section(config, section).get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string")
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty")
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument")
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = [
    "CLIError",
    "build_parser",
    "run_cli",
]


if __name__ == "__main__":
    raise SystemExit(run_cli())
