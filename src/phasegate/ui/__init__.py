"""UI package exports for the CLI and its rendering."""

from phasegate.ui.cli import CLIError, build_parser, run_cli
from phasegate.ui.prompt import ConsoleOverrideChannel
from phasegate.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "ConsoleOverrideChannel",
    "build_parser",
    "create_renderer",
    "run_cli",
]
