"""Path resolution for file-referenced diagrams.

A ``<kroki>`` tag or image link names a diagram source file together with a
root kind that decides which directory the path is relative to:

- ``system``: the path must be absolute and is used unchanged
- ``book``: relative to the book root (a leading ``/`` is stripped)
- ``source``: relative to the book's source directory (leading ``/`` stripped)
- ``this``: relative to the directory of the chapter that contains the tag

No I/O happens here; these functions only compute paths.
"""

from __future__ import annotations

from pathlib import Path
from typing import assert_never

from mdkroki.errors import (
    AbsolutePathRequiresExplicitRootError,
    InvalidPathForRootError,
    NoSourcePathForDocumentError,
)
from mdkroki.models import RootKind

__all__ = ["normalize_declared_path", "resolve_diagram_path"]


def _strip_anchor(path: Path) -> Path:
    """Reinterpret an absolute path as relative by dropping its anchor."""
    if path.is_absolute():
        return path.relative_to(path.anchor)
    return path


def normalize_declared_path(root: RootKind, path: Path | str) -> Path:
    """Validate a declared path against its root kind.

    Args:
        root: Root kind the path was declared with.
        path: Path as written in the document.

    Returns:
        The path to join onto the root directory (absolute only for ``system``).

    Raises:
        InvalidPathForRootError: Relative path with ``system`` root.
        AbsolutePathRequiresExplicitRootError: Absolute path with ``this`` root.
    """
    path = Path(path)
    if root is RootKind.SYSTEM:
        if not path.is_absolute():
            raise InvalidPathForRootError(path)
        return path
    elif root is RootKind.BOOK or root is RootKind.SOURCE:
        return _strip_anchor(path)
    elif root is RootKind.THIS:
        if path.is_absolute():
            raise AbsolutePathRequiresExplicitRootError(path)
        return path
    else:
        assert_never(root)


def resolve_diagram_path(
    root: RootKind,
    declared_path: Path | str,
    *,
    book_root: Path,
    source_dir: Path | str,
    document_dir: Path | None,
) -> Path:
    """Compute the file system path of a diagram source file.

    Args:
        root: Root kind the path was declared with.
        declared_path: Path as written in the document.
        book_root: Book root directory.
        source_dir: Source directory, relative to the book root.
        document_dir: Directory of the owning chapter relative to the source
            directory, or None when the chapter has no file on disk.

    Returns:
        Concrete path to read the diagram source from.

    Raises:
        InvalidPathForRootError: Relative path with ``system`` root.
        AbsolutePathRequiresExplicitRootError: Absolute path with ``this`` root.
        NoSourcePathForDocumentError: ``this`` root in a chapter without a file.
    """
    path = normalize_declared_path(root, declared_path)

    if root is RootKind.SYSTEM:
        return path
    elif root is RootKind.BOOK:
        return book_root / path
    elif root is RootKind.SOURCE:
        return book_root / source_dir / path
    elif root is RootKind.THIS:
        if document_dir is None:
            raise NoSourcePathForDocumentError(
                f"cannot resolve {str(path)!r} relative to a chapter with no source path"
            )
        return book_root / source_dir / _strip_anchor(Path(document_dir)) / path
    else:
        assert_never(root)
