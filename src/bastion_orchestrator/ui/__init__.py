"""UI package exports for the command line and its plain-text rendering."""

from bastion_orchestrator.ui.cli import build_parser, run_cli
from bastion_orchestrator.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIRenderer", "build_parser", "create_renderer", "run_cli"]
