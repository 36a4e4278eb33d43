"""mdBook preprocessor protocol.

mdBook runs a preprocessor twice:

1. ``<command> supports <renderer>``: exit status 0 if the renderer is
   supported, 1 otherwise.
2. ``<command>``: a ``[context, book]`` JSON array arrives on stdin and the
   processed book JSON is expected on stdout.

Reference: https://rust-lang.github.io/mdBook/for_developers/preprocessors.html
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mdkroki.book import Book
from mdkroki.config import PREPROCESSOR_NAME, KrokiConfig, config_from_preprocessor_table
from mdkroki.errors import ConfigurationError
from mdkroki.render import Renderer
from mdkroki.resolver import process_book

__all__ = [
    "SUPPORTED_RENDERERS",
    "KrokiPreprocessor",
    "PreprocessorContext",
    "parse_input",
]

# Rendered diagrams are raw HTML, so only the HTML renderer can show them
SUPPORTED_RENDERERS = frozenset({"html"})

DEFAULT_SOURCE_DIR = "src"


class PreprocessorContext(BaseModel):
    """The context object mdBook sends alongside the book."""

    model_config = ConfigDict(extra="allow")

    root: Path
    config: dict[str, Any] = Field(default_factory=dict)
    renderer: str = "html"
    mdbook_version: str = ""

    @property
    def source_dir(self) -> Path:
        """Source directory relative to the book root (``book.src``)."""
        book = self.config.get("book") or {}
        return Path(book.get("src") or DEFAULT_SOURCE_DIR)

    def preprocessor_table(self, name: str = PREPROCESSOR_NAME) -> dict[str, Any]:
        """Return the ``[preprocessor.<name>]`` table from ``book.toml``."""
        tables = self.config.get("preprocessor") or {}
        return dict(tables.get(name) or {})


def parse_input(raw: str) -> tuple[PreprocessorContext, Book]:
    """Parse the ``[context, book]`` array mdBook writes to stdin.

    Raises:
        ConfigurationError: If the input isn't valid preprocessor input.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON from mdBook: {e}") from e

    if not isinstance(data, list) or len(data) != 2:
        raise ConfigurationError("Expected a [context, book] JSON array from mdBook")

    try:
        ctx = PreprocessorContext.model_validate(data[0])
    except ValidationError as e:
        raise ConfigurationError(f"Invalid preprocessor context from mdBook: {e}") from e
    return ctx, Book.from_mdbook(data[1])


class KrokiPreprocessor:
    """Renders diagram directives in a book through a Kroki service."""

    name = PREPROCESSOR_NAME

    def supports_renderer(self, renderer: str) -> bool:
        return renderer in SUPPORTED_RENDERERS

    def load_config(self, ctx: PreprocessorContext) -> KrokiConfig:
        return config_from_preprocessor_table(ctx.preprocessor_table(self.name))

    def run(
        self,
        ctx: PreprocessorContext,
        book: Book,
        *,
        config: KrokiConfig | None = None,
        renderer: Renderer | None = None,
    ) -> Book:
        """Process a book handed over by mdBook.

        Args:
            ctx: Preprocessor context (book root, book.toml, mdBook version).
            book: Book to process; modified in place.
            config: Settings to use instead of the book.toml table.
            renderer: Render client to use instead of the configured endpoint.

        Returns:
            The processed book.
        """
        if config is None:
            config = self.load_config(ctx)
        logger.debug(
            f"Running {self.name} under mdBook {ctx.mdbook_version or 'unknown'} "
            f"for renderer {ctx.renderer!r}"
        )
        return asyncio.run(
            process_book(
                book,
                config,
                book_root=ctx.root,
                source_dir=ctx.source_dir,
                renderer=renderer,
            )
        )
