"""Diagram directive scanner.

Walks the markup events of one chapter, extracts every diagram directive and
replaces it with a placeholder that the resolver later swaps for the rendered
diagram. Three directive syntaxes are recognized:

    ```kroki-mermaid                    fenced block, body is the source
    graph TD; A-->B;
    ```

    <kroki type="plantuml" path="seq.puml" root="source" format="svg" />

    ![alt text](kroki-ditaa:diagrams/box.ditaa)

Anything inside ``<pre>`` ... ``</pre>`` is passed through untouched, so
examples of the syntax can be shown literally.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, TypeAlias
from urllib.parse import unquote

from mdkroki.errors import (
    MalformedDirectiveTagError,
    MissingDirectiveAttributeError,
    UnterminatedDirectiveTagError,
)
from mdkroki.markdown import Event, EventKind, parse_events, render_events
from mdkroki.models import (
    Address,
    DiagramDirective,
    DiagramSource,
    FileSource,
    InlineSource,
    OutputFormat,
    RootKind,
)
from mdkroki.paths import normalize_declared_path

__all__ = [
    "PLACEHOLDER_FORMAT",
    "PLACEHOLDER_PREFIX",
    "DirectiveScanner",
    "InsideCustomTagDirective",
    "InsideFencedDirectiveBlock",
    "InsideImageDirective",
    "InsideRawPassthrough",
    "Outside",
    "ScanState",
    "placeholder_prefix_for",
    "scan_markdown",
]

PLACEHOLDER_PREFIX = "%%kroki-diagram-"
PLACEHOLDER_FORMAT = "{prefix}{index}%%"

_FENCE_LANGUAGE = re.compile(r"^kroki-(?P<type>\S+)$", re.IGNORECASE)
_IMAGE_TARGET = re.compile(r"^kroki-(?P<type>[^:]+):(?P<path>.+)$", re.IGNORECASE | re.DOTALL)

# Markers looked for inside raw HTML, in document order
_ATTRS = r"""(?:[^>"']|"[^"]*"|'[^']*')*"""
_HTML_MARKER = re.compile(
    rf"(?P<pre_open><pre\b{_ATTRS}>)"
    r"|(?P<pre_close></pre\s*>)"
    rf"|(?P<tag_open><kroki\b{_ATTRS}>)"
    r"|(?P<tag_close></kroki\s*>)",
    re.IGNORECASE,
)


# ==================== Scanner states ====================


@dataclass(frozen=True)
class Outside:
    """Default state; directive syntax is recognized here."""


@dataclass(frozen=True)
class InsideRawPassthrough:
    """Inside ``<pre>``; everything passes through verbatim."""

    depth: int


@dataclass(frozen=True)
class InsideCustomTagDirective:
    """Between ``<kroki ...>`` and ``</kroki>``; content is discarded."""


@dataclass(frozen=True)
class InsideFencedDirectiveBlock:
    """Inside a ``kroki-<type>`` fenced block."""

    diagram_type: str


@dataclass(frozen=True)
class InsideImageDirective:
    """Inside a ``kroki-<type>:<path>`` image; alt text is discarded."""

    depth: int


ScanState: TypeAlias = (
    Outside
    | InsideRawPassthrough
    | InsideCustomTagDirective
    | InsideFencedDirectiveBlock
    | InsideImageDirective
)


def _start(tag: str, token: Any = None) -> Event:
    return Event(EventKind.START, tag, token=token)


def _end(tag: str) -> Event:
    return Event(EventKind.END, tag)


def _reopen(event: Event) -> Event:
    # A fresh inline container has its leading whitespace trimmed on output
    if event.tag == "inline":
        return _start("inline")
    return event


class DirectiveScanner:
    """Single-pass rewriter of one chapter's event stream.

    Use ``rewrite`` to transform the events; the directives found are
    collected in ``directives`` in discovery order.
    """

    def __init__(
        self,
        *,
        address: Address = (),
        document_path: Path | None = None,
        placeholder_prefix: str = PLACEHOLDER_PREFIX,
    ) -> None:
        self.address = address
        self.document_path = document_path
        self.placeholder_prefix = placeholder_prefix
        self.state: ScanState = Outside()
        self.directives: list[DiagramDirective] = []
        # START events of the containers enclosing the current event
        self._open: list[Event] = []
        # START events dropped inside a custom tag that are still open
        self._dropped: list[Event] = []

    def rewrite(self, events: Iterable[Event]) -> Iterator[Event]:
        """Lazily rewrite events, replacing each directive with its placeholder.

        Raises:
            UnterminatedDirectiveTagError: A ``<kroki>`` tag is never closed.
            ScanError: A ``<kroki>`` tag is malformed.
            PathResolutionError: A ``<kroki>`` path does not fit its root.
        """
        for event in events:
            if event.kind is EventKind.END and self._open:
                self._open.pop()
            yield from self._step(event)
            if event.kind is EventKind.START:
                self._open.append(event)
        if isinstance(self.state, InsideCustomTagDirective):
            raise UnterminatedDirectiveTagError(
                "<kroki> tag was opened but never closed with </kroki>"
            )

    def _step(self, event: Event) -> list[Event]:
        if event.kind is EventKind.HTML and not isinstance(self.state, InsideImageDirective):
            return self._on_html(event)

        state = self.state
        if isinstance(state, InsideRawPassthrough):
            return [event]
        if isinstance(state, InsideCustomTagDirective):
            return self._discard(event)
        if isinstance(state, InsideFencedDirectiveBlock):
            return self._in_fence(event, state)
        if isinstance(state, InsideImageDirective):
            return self._in_image(event, state)

        if event.kind is EventKind.START and event.tag == "image":
            match = _IMAGE_TARGET.match(event.text)
            if match:
                return self._enter_image(match)
        if event.kind is EventKind.START and event.tag == "fence":
            words = event.text.split()
            match = _FENCE_LANGUAGE.match(words[0]) if words else None
            if match:
                self.state = InsideFencedDirectiveBlock(match["type"].lower())
                return [_start("paragraph"), _start("inline")]
        return [event]

    # ==================== Raw HTML ====================

    def _on_html(self, event: Event) -> list[Event]:
        """Track ``<pre>`` depth and extract ``<kroki>`` tags from raw HTML."""
        text = event.text
        pieces: list[str] = []
        reopened: list[Event] = []
        position = 0

        for match in _HTML_MARKER.finditer(text):
            if not isinstance(self.state, InsideCustomTagDirective):
                pieces.append(text[position : match.start()])
            position = match.end()
            marker = match.group(0)
            state = self.state

            if isinstance(state, InsideCustomTagDirective):
                if match["tag_close"]:
                    self.state = Outside()
                    reopened.extend(_reopen(dropped) for dropped in self._dropped)
                    self._dropped.clear()
                continue

            if match["pre_open"]:
                if not marker.rstrip(">").rstrip().endswith("/"):
                    depth = state.depth if isinstance(state, InsideRawPassthrough) else 0
                    self.state = InsideRawPassthrough(depth + 1)
            elif match["pre_close"]:
                if isinstance(state, InsideRawPassthrough):
                    depth = state.depth - 1
                    self.state = InsideRawPassthrough(depth) if depth else Outside()
            elif isinstance(state, InsideRawPassthrough):
                pass
            elif match["tag_open"]:
                marker = self._custom_tag(marker)
            pieces.append(marker)

        if not isinstance(self.state, InsideCustomTagDirective):
            pieces.append(text[position:])

        rewritten = "".join(pieces)
        if rewritten == text:
            return [*reopened, event]
        if not rewritten.strip():
            return reopened
        return [*reopened, replace(event, text=rewritten)]

    def _custom_tag(self, tag: str) -> str:
        """Extract a directive from a ``<kroki>`` tag and return its placeholder."""
        self_closing = tag.rstrip(">").rstrip().endswith("/")
        try:
            element = ET.fromstring(tag if self_closing else tag + "</kroki>")
        except ET.ParseError as e:
            raise MalformedDirectiveTagError(f"cannot parse {tag!r}: {e}") from e

        diagram_type = element.attrib.get("type")
        if not diagram_type:
            raise MissingDirectiveAttributeError("type")
        declared_path = element.attrib.get("path")
        if not declared_path:
            raise MissingDirectiveAttributeError("path")
        root = RootKind.parse(element.attrib.get("root"))
        path = normalize_declared_path(root, declared_path)
        output_format = OutputFormat.parse(element.attrib.get("format"))

        if not self_closing:
            self.state = InsideCustomTagDirective()
        return self._add(diagram_type, FileSource(root, path), output_format)

    def _discard(self, event: Event) -> list[Event]:
        """Drop content between ``<kroki ...>`` and ``</kroki>``.

        Containers opened before the tag and closed inside it keep their end
        event; containers opened inside are re-emitted if the tag closes
        before they do.
        """
        if event.kind is EventKind.START:
            self._dropped.append(event)
            return []
        if event.kind is EventKind.END and not self._dropped:
            return [event]
        if event.kind is EventKind.END:
            self._dropped.pop()
        return []

    # ==================== Fenced blocks ====================

    def _in_fence(self, event: Event, state: InsideFencedDirectiveBlock) -> list[Event]:
        if event.kind is EventKind.TEXT:
            placeholder = self._add(state.diagram_type, InlineSource(event.text))
            return [Event(EventKind.TEXT, text=placeholder)]
        if event.kind is EventKind.END and event.tag == "fence":
            self.state = Outside()
            return [_end("inline"), _end("paragraph")]
        return []

    # ==================== Images ====================

    def _in_paragraph(self) -> bool:
        tags = [event.tag for event in self._open[-2:]]
        return tags == ["paragraph", "inline"]

    def _enter_image(self, match: re.Match[str]) -> list[Event]:
        path = Path(unquote(match["path"]))
        root = RootKind.SYSTEM if path.is_absolute() else RootKind.THIS
        placeholder = self._add(match["type"], FileSource(root, path))
        self.state = InsideImageDirective(depth=len(self._open))

        text = Event(EventKind.TEXT, text=placeholder)
        if not self._in_paragraph():
            return [text]
        paragraph = self._open[-2].token
        return [
            _end("inline"),
            _end("paragraph"),
            _start("paragraph", paragraph),
            _start("inline"),
            text,
        ]

    def _in_image(self, event: Event, state: InsideImageDirective) -> list[Event]:
        if event.kind is EventKind.END and event.tag == "image" and len(self._open) == state.depth:
            self.state = Outside()
            if not self._in_paragraph():
                return []
            paragraph = self._open[-2].token
            return [
                _end("inline"),
                _end("paragraph"),
                _start("paragraph", paragraph),
                _start("inline"),
            ]
        return []

    # ==================== Directives ====================

    def _add(
        self,
        diagram_type: str,
        source: DiagramSource,
        output_format: OutputFormat = OutputFormat.SVG,
    ) -> str:
        index = len(self.directives)
        placeholder = PLACEHOLDER_FORMAT.format(prefix=self.placeholder_prefix, index=index)
        self.directives.append(
            DiagramDirective(
                diagram_type=diagram_type.lower(),
                placeholder=placeholder,
                source=source,
                output_format=output_format,
                index=index,
                address=self.address,
                document_path=self.document_path,
            )
        )
        return placeholder


def placeholder_prefix_for(text: str) -> str:
    """Pick a placeholder prefix that doesn't already occur in ``text``.

    A chapter may show the placeholder syntax literally (in a code span, for
    instance); those occurrences must never be mistaken for a directive.
    """
    prefix = PLACEHOLDER_PREFIX
    salt = 0
    while prefix in text:
        salt += 1
        prefix = f"{PLACEHOLDER_PREFIX}{salt}-"
    return prefix


def scan_markdown(
    text: str, *, address: Address = (), document_path: Path | None = None
) -> tuple[str, list[DiagramDirective]]:
    """Extract diagram directives from one chapter.

    Args:
        text: Markdown source of the chapter.
        address: Address of the chapter in the book.
        document_path: Chapter source path relative to the source directory.

    Returns:
        Tuple of (rewritten markdown containing placeholders, directives in
        discovery order).
    """
    env: dict[str, Any] = {}
    events = parse_events(text, env)
    scanner = DirectiveScanner(
        address=address,
        document_path=document_path,
        placeholder_prefix=placeholder_prefix_for(text),
    )
    content = render_events(scanner.rewrite(events), env)
    return content, scanner.directives
