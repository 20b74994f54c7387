"""UI package exports for the CLI router and plain-text rendering."""

from prefab.ui.cli import CLIError, build_parser, manifest_document, run_cli
from prefab.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "manifest_document",
    "run_cli",
]
