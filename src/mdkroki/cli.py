"""mdkroki CLI entry point.

Run without a subcommand, mdkroki speaks the mdBook preprocessor protocol:
book JSON in on stdin, book JSON out on stdout. The subcommands are for use
outside mdBook.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

import mdkroki
from mdkroki._cli import create_cli, version_callback
from mdkroki.book import Book
from mdkroki.config import KrokiConfig, load_config
from mdkroki.errors import (
    ConfigurationError,
    DocumentScanError,
    MdKrokiError,
    PathResolutionError,
    ScanError,
)
from mdkroki.logging import configure_logging
from mdkroki.models import DiagramSource, FileSource, InlineSource
from mdkroki.preprocessor import KrokiPreprocessor, parse_input
from mdkroki.resolver import process_book
from mdkroki.scanner import scan_markdown

app = create_cli(
    "mdkroki",
    "mdBook preprocessor that renders diagrams through a Kroki service.",
)

# Console for stderr output (stdout is reserved for the mdBook protocol)
_stderr_console = Console(stderr=True)


def _fail(error: Exception) -> NoReturn:
    """Print one error with its notes to stderr and exit with status 1."""
    _stderr_console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    for note in getattr(error, "__notes__", []):
        _stderr_console.print(f"  [dim]{escape(note)}[/dim]")
    raise typer.Exit(1)


def _with_endpoint(config: KrokiConfig, endpoint: str) -> KrokiConfig:
    try:
        return KrokiConfig.model_validate({**config.model_dump(), "endpoint": endpoint})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid --endpoint: {e}") from e


def _configure_from(ctx: typer.Context, config: KrokiConfig) -> None:
    # An explicit --log-level wins over the configured level
    if ctx.obj is None:
        configure_logging(config.log_level)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    _version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback("mdkroki", mdkroki.__version__),
        is_eager=True,
        help="Show version and exit.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level for stderr output (overrides configuration).",
    ),
) -> None:
    """Render kroki diagrams in an mdBook book.

    Without a subcommand, reads the [context, book] JSON that mdBook writes to
    stdin and prints the processed book JSON to stdout.

    Examples:
        mdkroki supports html
        mdkroki scan src/
        mdkroki render src --out rendered
    """
    ctx.obj = log_level
    configure_logging(log_level or "WARNING")

    if ctx.invoked_subcommand is not None:
        return

    preprocessor = KrokiPreprocessor()
    try:
        context, book = parse_input(sys.stdin.read())
        config = preprocessor.load_config(context)
        _configure_from(ctx, config)
        result = preprocessor.run(context, book, config=config)
    except MdKrokiError as e:
        _fail(e)

    sys.stdout.write(json.dumps(result.to_mdbook()))
    sys.stdout.flush()


@app.command()
def supports(
    renderer: str = typer.Argument(..., help="Renderer mdBook is about to run."),
) -> None:
    """Exit with status 0 if the renderer is supported, 1 otherwise."""
    if not KrokiPreprocessor().supports_renderer(renderer):
        raise typer.Exit(1)


def _markdown_files(paths: list[Path]) -> Iterator[Path]:
    for path in paths:
        if path.is_dir():
            yield from sorted(path.rglob("*.md"))
        else:
            yield path


def _describe_source(source: DiagramSource) -> str:
    if isinstance(source, InlineSource):
        lines = len(source.text.splitlines())
        return f"inline ({lines} line{'s' if lines != 1 else ''})"
    assert isinstance(source, FileSource)
    return f"{source.root.value}: {source.path}"


@app.command()
def scan(
    paths: list[Path] = typer.Argument(
        ...,
        exists=True,
        help="Markdown files or directories to scan.",
    ),
) -> None:
    """List the diagrams in markdown files without rendering them.

    Examples:
        mdkroki scan src/
        mdkroki scan src/chapter_1.md src/chapter_2.md
    """
    table = Table(title="Diagrams")
    table.add_column("File", style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Type", style="green")
    table.add_column("Format")
    table.add_column("Source")

    files = 0
    found = 0
    for file_path in _markdown_files(paths):
        files += 1
        try:
            _content, directives = scan_markdown(
                file_path.read_text(encoding="utf-8"), document_path=file_path
            )
        except (ScanError, PathResolutionError) as e:
            _fail(DocumentScanError(file_path.name, file_path, e))
        for directive in directives:
            table.add_row(
                str(file_path),
                str(directive.index),
                directive.diagram_type,
                directive.output_format.value,
                _describe_source(directive.source),
            )
        found += len(directives)

    console = Console()
    if found:
        console.print(table)
    console.print(
        f"Found {found} diagram{'s' if found != 1 else ''} "
        f"in {files} file{'s' if files != 1 else ''}"
    )


@app.command()
def render(
    ctx: typer.Context,
    src_dir: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=False,
        help="Directory of markdown files (the book's source directory).",
    ),
    out: Path = typer.Option(
        ...,
        "--out",
        "-o",
        file_okay=False,
        help="Directory the processed files are written to.",
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="Path to mdkroki.yaml configuration file.",
    ),
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        "-e",
        help="Kroki service URL (overrides configuration).",
    ),
) -> None:
    """Render the diagrams in a directory of markdown files.

    Every *.md file under SRC_DIR is processed and written to the same
    relative path under --out. File references with root="book" are relative
    to SRC_DIR's parent directory.

    Examples:
        mdkroki render src --out rendered
        mdkroki render docs --out build/docs --endpoint http://localhost:8000
    """
    src_dir = src_dir.resolve()
    try:
        config = load_config(config_path)
        if endpoint:
            config = _with_endpoint(config, endpoint)
        _configure_from(ctx, config)
        book = Book.from_directory(src_dir)
        asyncio.run(
            process_book(book, config, book_root=src_dir.parent, source_dir=src_dir.name)
        )
    except MdKrokiError as e:
        _fail(e)

    written = book.write_chapters(out)
    _stderr_console.print(f"[green]Wrote {len(written)} files to {out}[/green]")


def cli() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    cli()
