"""UI package exports for the CLI and its plain-text renderer."""

from nexus_verifier.ui.cli import CLIError, build_parser, main, run_cli
from nexus_verifier.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "main", "run_cli"]
