"""Concurrent resolution of extracted diagrams and write-back into the book.

Resolution runs in three steps:

1. ``extract_diagrams`` scans every chapter (synchronous, single pass).
2. ``resolve_all`` reads sources and renders every diagram concurrently. Units
   never touch the book; each one returns a ``Resolution``.
3. ``apply_resolutions`` merges all results in one pass. Every placeholder is
   replaced or, on error, no chapter is changed.
"""

from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import aiofiles
from loguru import logger

from mdkroki.book import Book, Chapter, extract_diagrams
from mdkroki.config import DEFAULT_MAX_CONCURRENCY, KrokiConfig
from mdkroki.errors import (
    PathResolutionError,
    ResolutionError,
    SourceFileUnreadableError,
    StaleAddressError,
)
from mdkroki.logging import LogSpan
from mdkroki.models import Address, DiagramDirective, FileSource, InlineSource
from mdkroki.paths import resolve_diagram_path
from mdkroki.render import KrokiClient, Renderer

__all__ = [
    "Resolution",
    "SourceLocations",
    "apply_resolutions",
    "process_book",
    "read_source",
    "resolve_all",
    "resolve_directive",
]


@dataclass(frozen=True)
class SourceLocations:
    """Directories file references are resolved against."""

    book_root: Path
    source_dir: Path


@dataclass(frozen=True)
class Resolution:
    """Rendered content for one placeholder in one chapter."""

    address: Address
    placeholder: str
    content: str


# ==================== Resolution units ====================


async def read_source(path: Path) -> str:
    """Read a diagram source file without blocking the event loop.

    Raises:
        SourceFileUnreadableError: If the file can't be read as UTF-8 text.
    """
    with LogSpan(span="source.read", path=str(path)) as span:
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise SourceFileUnreadableError(f"failed to read {path}: {e}") from e
        span.add(chars=len(text))
        return text


async def _load_source(directive: DiagramDirective, locations: SourceLocations) -> str:
    source = directive.source
    if isinstance(source, InlineSource):
        return source.text
    assert isinstance(source, FileSource)
    document_dir = directive.document_path.parent if directive.document_path else None
    path = resolve_diagram_path(
        source.root,
        source.path,
        book_root=locations.book_root,
        source_dir=locations.source_dir,
        document_dir=document_dir,
    )
    return await read_source(path)


async def resolve_directive(
    directive: DiagramDirective,
    renderer: Renderer,
    locations: SourceLocations,
) -> Resolution:
    """Obtain the source of one diagram and render it.

    Args:
        directive: Diagram to resolve.
        renderer: Render service client.
        locations: Book directories for file references.

    Returns:
        The rendered content keyed by address and placeholder.

    Raises:
        PathResolutionError: The file reference can't be turned into a path.
        ResolutionError: Reading or rendering failed; ``directive`` is set.
    """
    try:
        source = await _load_source(directive, locations)
        content = await renderer.render(
            source, directive.diagram_type, directive.output_format
        )
    except ResolutionError as e:
        if e.directive is None:
            e.directive = directive
        raise
    except PathResolutionError as e:
        e.add_note(f"while resolving {directive.describe()}")
        raise
    return Resolution(directive.address, directive.placeholder, content)


async def resolve_all(
    directives: Sequence[DiagramDirective],
    renderer: Renderer,
    locations: SourceLocations,
    *,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    fail_fast: bool = True,
) -> list[Resolution]:
    """Resolve every directive concurrently.

    With ``fail_fast`` the first failure cancels every unit still running and
    is raised. Without it every unit runs to completion and the failure of the
    earliest directive (in discovery order) is raised.

    Args:
        directives: Directives in discovery order.
        renderer: Render service client shared by all units.
        locations: Book directories for file references.
        max_concurrency: Maximum units resolving at the same time.
        fail_fast: Cancel outstanding units on the first failure.

    Returns:
        One resolution per directive, in the order of ``directives``.
    """
    if not directives:
        return []

    semaphore = asyncio.Semaphore(max_concurrency)

    async def bounded(directive: DiagramDirective) -> Resolution:
        async with semaphore:
            return await resolve_directive(directive, renderer, locations)

    tasks = [asyncio.create_task(bounded(directive)) for directive in directives]
    try:
        if fail_fast:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        else:
            await asyncio.wait(tasks)
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.debug(f"Cancelled {len(pending)} outstanding diagrams")
            await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        error = None if task.cancelled() else task.exception()
        if error is not None:
            raise error
    return [task.result() for task in tasks]


# ==================== Write-back ====================


def apply_resolutions(book: Book, resolutions: Sequence[Resolution]) -> None:
    """Replace every placeholder with its rendered content.

    All chapters are located and all placeholders checked before any content
    is changed, so on error the book is left exactly as it was.

    Raises:
        AddressingError: An address names no chapter, or a placeholder doesn't
            occur exactly once in its chapter.
    """
    grouped: dict[Address, dict[str, str]] = defaultdict(dict)
    for resolution in resolutions:
        replacements = grouped[resolution.address]
        if resolution.placeholder in replacements:
            raise StaleAddressError(
                f"placeholder {resolution.placeholder} resolved twice "
                f"for address {list(resolution.address)}"
            )
        replacements[resolution.placeholder] = resolution.content

    with LogSpan(span="resolve.merge", chapters=len(grouped)) as span:
        updates: list[tuple[Chapter, str]] = []
        for address, replacements in grouped.items():
            chapter = book.get_chapter(address)
            for placeholder in replacements:
                count = chapter.content.count(placeholder)
                if count != 1:
                    raise StaleAddressError(
                        f"placeholder {placeholder} occurs {count} times in chapter "
                        f"{chapter.name!r} at address {list(address)}"
                    )
            pattern = re.compile("|".join(re.escape(p) for p in replacements))
            content = pattern.sub(lambda m: replacements[m.group(0)], chapter.content)
            updates.append((chapter, content))

        for chapter, content in updates:
            chapter.content = content
        span.add(replaced=len(resolutions))


# ==================== Whole book ====================


async def process_book(
    book: Book,
    config: KrokiConfig,
    *,
    book_root: Path | str,
    source_dir: Path | str,
    renderer: Renderer | None = None,
) -> Book:
    """Render every diagram in the book and write the results back.

    Args:
        book: Book to process; chapter content is modified in place.
        config: Endpoint, timeout and concurrency settings.
        book_root: Book root directory.
        source_dir: Source directory relative to the book root.
        renderer: Render client to use instead of a KrokiClient for the
            configured endpoint.

    Returns:
        The same book, with every diagram rendered.

    Raises:
        DocumentScanError: A chapter holds a malformed directive.
        PathResolutionError: A file reference can't be resolved.
        ResolutionError: A diagram couldn't be read or rendered.
    """
    directives = extract_diagrams(book)
    logger.info(f"Found {len(directives)} diagrams")
    if not directives:
        return book

    locations = SourceLocations(Path(book_root), Path(source_dir))
    if renderer is not None:
        resolutions = await resolve_all(
            directives,
            renderer,
            locations,
            max_concurrency=config.max_concurrency,
            fail_fast=config.fail_fast,
        )
    else:
        async with KrokiClient(
            config.endpoint,
            timeout=config.timeout,
            max_connections=config.max_concurrency,
        ) as client:
            resolutions = await resolve_all(
                directives,
                client,
                locations,
                max_concurrency=config.max_concurrency,
                fail_fast=config.fail_fast,
            )

    apply_resolutions(book, resolutions)
    return book
