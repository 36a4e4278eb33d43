"""Directive records produced by the scanner and consumed by the resolver."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TypeAlias

from mdkroki.errors import UnknownRootKindError, UnsupportedOutputFormatError

__all__ = [
    "Address",
    "DiagramDirective",
    "DiagramSource",
    "FileSource",
    "InlineSource",
    "OutputFormat",
    "RootKind",
]

# Child indices from the book root down to one chapter
Address: TypeAlias = tuple[int, ...]


class RootKind(Enum):
    """Base directory a file reference is relative to."""

    SYSTEM = "system"
    BOOK = "book"
    SOURCE = "source"
    THIS = "this"

    @classmethod
    def parse(cls, value: str | None) -> RootKind:
        """Parse the ``root`` attribute of a ``<kroki>`` tag.

        Args:
            value: Attribute value, or None when the attribute is absent.

        Returns:
            The matching root kind (``THIS`` when absent).

        Raises:
            UnknownRootKindError: If the value names no root kind.
        """
        if value is None or value in ("this", "."):
            return cls.THIS
        if value == "system":
            return cls.SYSTEM
        if value == "book":
            return cls.BOOK
        if value in ("source", "src"):
            return cls.SOURCE
        raise UnknownRootKindError(value)


class OutputFormat(Enum):
    """Output formats the render service is asked for."""

    SVG = "svg"
    PNG = "png"
    JPEG = "jpeg"
    PDF = "pdf"

    @classmethod
    def parse(cls, value: str | None) -> OutputFormat:
        if value is None:
            return cls.SVG
        try:
            return cls(value.lower())
        except ValueError:
            raise UnsupportedOutputFormatError(value) from None


@dataclass(frozen=True)
class InlineSource:
    """Diagram source written literally in the chapter."""

    text: str


@dataclass(frozen=True)
class FileSource:
    """Diagram source that has to be read from disk."""

    root: RootKind
    path: Path


DiagramSource: TypeAlias = InlineSource | FileSource


@dataclass(frozen=True)
class DiagramDirective:
    """One diagram found in a chapter, waiting to be rendered.

    ``placeholder`` occurs exactly once in the owning chapter's content after
    the scan. ``document_path`` is the owning chapter's source path, captured
    during extraction so resolution never has to look at the book.
    """

    diagram_type: str
    placeholder: str
    source: DiagramSource
    output_format: OutputFormat = OutputFormat.SVG
    index: int = 0
    address: Address = ()
    document_path: Path | None = None

    def describe(self) -> str:
        """Short human-readable identity used in error messages."""
        where = f" in {self.document_path}" if self.document_path is not None else ""
        return (
            f"diagram #{self.index} ({self.diagram_type}){where} "
            f"at address {list(self.address)}"
        )
