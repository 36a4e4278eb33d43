"""Exception hierarchy for diagram extraction, path resolution and rendering.

A run goes through two phases: a synchronous scan of every chapter, then a
concurrent resolution of every diagram found. Errors are grouped by the phase
that raises them so callers can tell a malformed document apart from an
unreachable render service, while the concrete subclasses keep the details.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mdkroki.models import DiagramDirective

__all__ = [
    "AbsolutePathRequiresExplicitRootError",
    "AddressingError",
    "ConfigurationError",
    "DocumentScanError",
    "InvalidPathForRootError",
    "MalformedDirectiveTagError",
    "MdKrokiError",
    "MissingDirectiveAttributeError",
    "NoSourcePathForDocumentError",
    "NotADocumentNodeError",
    "PathResolutionError",
    "RenderServiceError",
    "ResolutionError",
    "ScanError",
    "SourceFileUnreadableError",
    "StaleAddressError",
    "UnexpectedRenderResponseError",
    "UnknownRootKindError",
    "UnsupportedOutputFormatError",
    "UnterminatedDirectiveTagError",
]


class MdKrokiError(RuntimeError):
    """Base exception for every failure raised by mdkroki."""


class ConfigurationError(MdKrokiError):
    """Raised when preprocessor or YAML configuration is invalid."""


# ==================== Scan errors ====================


class ScanError(MdKrokiError):
    """Raised when a chapter contains a directive that cannot be extracted."""


class MalformedDirectiveTagError(ScanError):
    """Raised when a ``<kroki>`` tag cannot be parsed."""


class MissingDirectiveAttributeError(ScanError):
    """Raised when a ``<kroki>`` tag lacks a required attribute."""

    def __init__(self, attribute: str) -> None:
        super().__init__(f"<kroki> tag is missing the required '{attribute}' attribute")
        self.attribute = attribute


class UnknownRootKindError(ScanError):
    """Raised when the ``root`` attribute names no known root kind."""

    def __init__(self, value: str) -> None:
        super().__init__(
            f"unrecognized root type: {value!r} "
            "(expected 'system', 'book', 'source', 'src', 'this' or '.')"
        )
        self.value = value


class UnsupportedOutputFormatError(ScanError):
    """Raised when the ``format`` attribute names no supported output format."""

    def __init__(self, value: str) -> None:
        super().__init__(
            f"unsupported output format: {value!r} (expected svg, png, jpeg or pdf)"
        )
        self.value = value


class UnterminatedDirectiveTagError(ScanError):
    """Raised when an opening ``<kroki>`` tag is never closed."""


class DocumentScanError(ScanError):
    """Wraps a scan failure with the identity of the chapter that caused it."""

    def __init__(self, name: str, source_path: Path | None, cause: Exception) -> None:
        location = f" ({source_path})" if source_path is not None else ""
        super().__init__(
            f"error occurred while processing chapter {name!r}{location}: {cause}"
        )
        self.name = name
        self.source_path = source_path
        self.cause = cause


# ==================== Path resolution errors ====================


class PathResolutionError(MdKrokiError):
    """Raised when a file reference cannot be turned into a concrete path."""


class InvalidPathForRootError(PathResolutionError):
    """Raised when a relative path is declared with ``root="system"``."""

    def __init__(self, path: Path) -> None:
        super().__init__(f'cannot use relative path {str(path)!r} with root="system"')
        self.path = path


class AbsolutePathRequiresExplicitRootError(PathResolutionError):
    """Raised when an absolute path is declared without an explicit root."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            f"cannot use absolute path {str(path)!r} without setting the `root` "
            'attribute to "system", "book", or "source"'
        )
        self.path = path


class NoSourcePathForDocumentError(PathResolutionError):
    """Raised when a document-relative path is used in a chapter without a file."""


# ==================== Resolution errors ====================


class ResolutionError(MdKrokiError):
    """Raised when a single diagram cannot be resolved to rendered content.

    The directive may be attached after the error is raised (the render client
    doesn't know which directive it is rendering); once set it prefixes the
    message.
    """

    def __init__(self, message: str, directive: DiagramDirective | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.directive = directive

    def __str__(self) -> str:
        if self.directive is None:
            return self.message
        return f"{self.directive.describe()}: {self.message}"


class SourceFileUnreadableError(ResolutionError):
    """Raised when a referenced diagram source file cannot be read."""


class RenderServiceError(ResolutionError):
    """Raised when the render service is unreachable or answers with an error."""


class UnexpectedRenderResponseError(ResolutionError):
    """Raised when the render service answer lacks the rendered-content marker."""


# ==================== Addressing errors ====================


class AddressingError(MdKrokiError):
    """Raised when an address no longer names a chapter.

    Addresses are computed during extraction and the book structure is never
    changed afterwards, so this always points to a bug rather than bad input.
    """


class StaleAddressError(AddressingError):
    """Raised when an address index is out of range."""


class NotADocumentNodeError(AddressingError):
    """Raised when an address lands on a separator or part title."""
