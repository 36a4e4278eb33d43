"""mdBook book model, chapter addressing and diagram extraction.

The book arrives from mdBook as JSON: an ordered list of sections, each one a
chapter (with nested sub-chapters), a separator or a part title. Every chapter
is identified by its address, the list of indices leading to it from the root:

    sections[1].sub_items[0].sub_items[2]  ->  (1, 0, 2)

Addresses stay valid for a whole run because only chapter content changes
after extraction, never the structure.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, TypeAlias

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mdkroki.errors import (
    ConfigurationError,
    DocumentScanError,
    NotADocumentNodeError,
    PathResolutionError,
    ScanError,
    StaleAddressError,
)
from mdkroki.logging import LogSpan
from mdkroki.models import Address, DiagramDirective
from mdkroki.scanner import scan_markdown

__all__ = [
    "Book",
    "BookItem",
    "Chapter",
    "PartTitle",
    "Separator",
    "extract_diagrams",
    "get_chapter",
]


class Separator(BaseModel):
    """Horizontal separator in the table of contents."""


class PartTitle(BaseModel):
    """Part heading in the table of contents."""

    title: str


def _parse_items(raw: Any) -> Any:
    """Convert mdBook's externally tagged item JSON into model instances."""
    if not isinstance(raw, list):
        return raw
    items: list[Any] = []
    for item in raw:
        if isinstance(item, BaseModel):
            items.append(item)
        elif item == "Separator":
            items.append(Separator())
        elif isinstance(item, Mapping) and "Chapter" in item:
            items.append(Chapter.model_validate(item["Chapter"]))
        elif isinstance(item, Mapping) and "PartTitle" in item:
            items.append(PartTitle(title=item["PartTitle"]))
        else:
            raise ValueError(f"unrecognized book item: {item!r}")
    return items


def _dump_item(item: BookItem) -> Any:
    if isinstance(item, Chapter):
        return item.to_mdbook()
    if isinstance(item, PartTitle):
        return {"PartTitle": item.title}
    return "Separator"


class Chapter(BaseModel):
    """A chapter: the unit of content the scanner works on.

    Unknown keys mdBook sends are kept so they survive the round-trip.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    content: str = ""
    number: list[int] | None = None
    sub_items: list[BookItem] = Field(default_factory=list)
    path: Path | None = None
    source_path: Path | None = None
    parent_names: list[str] = Field(default_factory=list)

    @field_validator("sub_items", mode="before")
    @classmethod
    def _parse_sub_items(cls, value: Any) -> Any:
        return _parse_items(value)

    def to_mdbook(self) -> dict[str, Any]:
        """Serialize to mdBook's ``{"Chapter": {...}}`` JSON shape."""
        data = self.model_dump(mode="json", exclude={"sub_items"})
        data["sub_items"] = [_dump_item(item) for item in self.sub_items]
        return {"Chapter": data}


BookItem: TypeAlias = Chapter | Separator | PartTitle

Chapter.model_rebuild()


class Book(BaseModel):
    """The document tree handed over by mdBook."""

    model_config = ConfigDict(extra="allow")

    sections: list[BookItem] = Field(default_factory=list)

    @field_validator("sections", mode="before")
    @classmethod
    def _parse_sections(cls, value: Any) -> Any:
        return _parse_items(value)

    @classmethod
    def from_mdbook(cls, data: Any) -> Book:
        """Validate mdBook book JSON.

        Raises:
            ConfigurationError: If the data is not a valid book.
        """
        try:
            return cls.model_validate(data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid book data from mdBook: {e}") from e

    @classmethod
    def from_directory(cls, src_dir: Path) -> Book:
        """Build a flat book with one chapter per markdown file under src_dir."""
        sections: list[BookItem] = []
        for number, file_path in enumerate(sorted(src_dir.rglob("*.md")), start=1):
            relative = file_path.relative_to(src_dir)
            sections.append(
                Chapter(
                    name=relative.stem,
                    content=file_path.read_text(encoding="utf-8"),
                    number=[number],
                    path=relative,
                    source_path=relative,
                )
            )
        logger.debug(f"Loaded {len(sections)} chapters from {src_dir}")
        return cls(sections=sections)

    def to_mdbook(self) -> dict[str, Any]:
        """Serialize to mdBook book JSON."""
        data = self.model_dump(mode="json", exclude={"sections"})
        data["sections"] = [_dump_item(item) for item in self.sections]
        return data

    def iter_chapters(self) -> Iterator[tuple[Address, Chapter]]:
        """Yield every chapter with its address, depth-first, parents first."""
        yield from _walk(self.sections, ())

    def get_chapter(self, address: Sequence[int]) -> Chapter:
        return get_chapter(self.sections, address)

    def write_chapters(self, out_dir: Path) -> list[Path]:
        """Write every chapter with a source path under out_dir.

        Returns:
            Paths of the written files.
        """
        written: list[Path] = []
        for _address, chapter in self.iter_chapters():
            if chapter.source_path is None:
                continue
            target = out_dir / chapter.source_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(chapter.content, encoding="utf-8")
            written.append(target)
        return written


def _walk(items: Sequence[BookItem], prefix: Address) -> Iterator[tuple[Address, Chapter]]:
    for index, item in enumerate(items):
        if isinstance(item, Chapter):
            address = (*prefix, index)
            yield address, item
            yield from _walk(item.sub_items, address)


def get_chapter(sections: Sequence[BookItem], address: Sequence[int]) -> Chapter:
    """Locate the chapter an address points to.

    Args:
        sections: Top-level book items.
        address: Child indices from the root.

    Returns:
        The addressed chapter.

    Raises:
        StaleAddressError: The address is empty or an index is out of range.
        NotADocumentNodeError: The address passes through or ends on an item
            that is not a chapter.
    """
    if not address:
        raise StaleAddressError("empty address names no chapter")

    items = sections
    chapter: Chapter | None = None
    for depth, index in enumerate(address):
        if index < 0 or index >= len(items):
            raise StaleAddressError(
                f"index {index} at depth {depth} of address {list(address)} is out of range"
            )
        item = items[index]
        if not isinstance(item, Chapter):
            raise NotADocumentNodeError(
                f"address {list(address)} names a {type(item).__name__} at depth {depth}, "
                "not a chapter"
            )
        chapter = item
        items = item.sub_items
    assert chapter is not None
    return chapter


def extract_diagrams(book: Book) -> list[DiagramDirective]:
    """Scan every chapter and replace its diagrams with placeholders.

    Chapters are visited depth-first, parents before children. Each chapter's
    content is rewritten in place.

    Args:
        book: Book to scan; chapter content is modified.

    Returns:
        All directives, each stamped with its chapter's address.

    Raises:
        DocumentScanError: A chapter holds a malformed directive.
    """
    diagrams: list[DiagramDirective] = []
    for address, chapter in book.iter_chapters():
        with LogSpan(span="scan.chapter", chapter=chapter.name, address=list(address)) as span:
            try:
                content, found = scan_markdown(
                    chapter.content,
                    address=address,
                    document_path=chapter.source_path,
                )
            except (ScanError, PathResolutionError) as e:
                raise DocumentScanError(chapter.name, chapter.source_path, e) from e
            chapter.content = content
            span.add(diagrams=len(found))
        diagrams.extend(found)
    return diagrams
