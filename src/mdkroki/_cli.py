"""Shared typer helpers for the mdkroki command line."""

from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console

__all__ = ["create_cli", "version_callback"]


def create_cli(name: str, help_text: str, **kwargs: object) -> typer.Typer:
    """Create a typer app with the project's defaults.

    Args:
        name: Command name shown in usage lines.
        help_text: Top-level help text.
        **kwargs: Extra ``typer.Typer`` options (e.g. ``no_args_is_help``).
    """
    options: dict[str, object] = {
        "add_completion": False,
        "context_settings": {"help_option_names": ["-h", "--help"]},
        "pretty_exceptions_enable": False,
    }
    options.update(kwargs)
    return typer.Typer(name=name, help=help_text, **options)  # type: ignore[arg-type]


def version_callback(name: str, version: str) -> Callable[[bool | None], None]:
    """Build an eager ``--version`` option callback."""

    def callback(value: bool | None) -> None:
        if value:
            Console().print(f"{name} [bold]{version}[/bold]")
            raise typer.Exit()

    return callback
