"""Markdown event stream on top of markdown-it-py and mdformat.

markdown-it-py turns a chapter into a flat list of block tokens whose
``inline`` tokens carry nested children. This module flattens that structure
into a lazy sequence of ``Event``s that a single-pass state machine can walk,
and rebuilds a token stream from (possibly rewritten) events so mdformat can
serialize it back to markdown.

Event shapes:
    START/END  container tokens (paragraph, list, inline, em, link, ...)
    TEXT       a text run
    HTML       raw HTML, block or inline
    ATOM       any other leaf (code span, break, rule, indented code)

A fenced code block becomes START fence (text = info string), TEXT body,
END fence. An image becomes START image (text = target URL), its alt-text
events, END image.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator, MutableMapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from markdown_it import MarkdownIt
from markdown_it.token import Token
from mdformat.renderer import MDRenderer

__all__ = ["Event", "EventKind", "parse_events", "render_events"]

# Options mdformat's renderer reads from the parser options
MDFORMAT_OPTIONS: dict[str, Any] = {
    "number": False,
    "wrap": "keep",
    "end_of_line": "lf",
    "validate": True,
}

# HTML tag names for tokens the writer has to synthesize
_SYNTHETIC_TAGS = {"paragraph": "p"}

# Shared parser instance (lazy initialized)
_parser: MarkdownIt | None = None


def _get_parser() -> MarkdownIt:
    """Get or create the shared CommonMark parser with the mdformat renderer."""
    global _parser
    if _parser is None:
        parser = MarkdownIt("commonmark", renderer_cls=MDRenderer)
        parser.options["store_labels"] = True
        parser.options["mdformat"] = dict(MDFORMAT_OPTIONS)
        _parser = parser
    return _parser


class EventKind(Enum):
    START = "start"
    END = "end"
    TEXT = "text"
    HTML = "html"
    ATOM = "atom"


@dataclass(frozen=True)
class Event:
    """One structural markup event.

    ``token`` is the markdown-it token the event came from; events created
    by a rewrite may leave it empty and the writer synthesizes one.
    """

    kind: EventKind
    tag: str = ""
    text: str = ""
    token: Token | None = field(default=None, compare=False, repr=False)


def _iter_events(tokens: Iterable[Token]) -> Iterator[Event]:
    for token in tokens:
        if token.type == "inline":
            yield Event(EventKind.START, "inline", token=token)
            yield from _iter_events(token.children or [])
            yield Event(EventKind.END, "inline", token=token)
        elif token.type == "fence":
            yield Event(EventKind.START, "fence", token.info, token)
            yield Event(EventKind.TEXT, "fence", token.content)
            yield Event(EventKind.END, "fence", token=token)
        elif token.type == "image":
            src = token.attrGet("src")
            yield Event(EventKind.START, "image", str(src or ""), token)
            yield from _iter_events(token.children or [])
            yield Event(EventKind.END, "image", token=token)
        elif token.type == "text":
            yield Event(EventKind.TEXT, text=token.content, token=token)
        elif token.type in ("html_block", "html_inline"):
            yield Event(EventKind.HTML, token.type, token.content, token)
        elif token.nesting == 1:
            yield Event(EventKind.START, token.type.removesuffix("_open"), token=token)
        elif token.nesting == -1:
            yield Event(EventKind.END, token.type.removesuffix("_close"), token=token)
        else:
            yield Event(EventKind.ATOM, token.type, token=token)


def parse_events(
    text: str, env: MutableMapping[str, Any] | None = None
) -> Iterator[Event]:
    """Parse markdown and return a lazy iterator over its events.

    Args:
        text: Markdown source.
        env: Parser environment; collects link reference definitions that
            ``render_events`` needs to write them back.

    Returns:
        Iterator of events in document order.
    """
    tokens = _get_parser().parse(text, env if env is not None else {})
    return _iter_events(tokens)


@dataclass
class _Frame:
    tag: str
    open_token: Token
    output: list[Token]
    start: int
    synthetic: bool = False


def _is_blank(tokens: list[Token]) -> bool:
    """True if a paragraph body holds nothing visible."""
    for token in tokens:
        if token.type != "inline":
            return False
        for child in token.children or []:
            if child.type in ("softbreak", "hardbreak"):
                continue
            if child.type == "text" and not child.content.strip():
                continue
            return False
    return True


def _trim_inline(children: list[Token], *, leading: bool, trailing: bool) -> None:
    """Drop whitespace at the edges of an inline container a rewrite created.

    mdformat would otherwise encode it as character references.
    """
    breaks = ("softbreak", "hardbreak")
    if leading:
        while children and children[0].type in breaks:
            del children[0]
        if children and children[0].type == "text":
            children[0].content = children[0].content.lstrip()
    if trailing:
        while children and children[-1].type in breaks:
            children.pop()
        if children and children[-1].type == "text":
            children[-1].content = children[-1].content.rstrip()


class _TokenWriter:
    """Rebuilds a markdown-it token stream from events."""

    def __init__(self) -> None:
        self.tokens: list[Token] = []
        self._frames: list[_Frame] = []
        self._targets: list[list[Token]] = [self.tokens]
        self._fence: Token | None = None

    @property
    def _inline(self) -> bool:
        return len(self._targets) > 1

    def write(self, event: Event) -> None:
        if event.kind is EventKind.START:
            self._start(event)
        elif event.kind is EventKind.END:
            self._end(event)
        elif event.kind is EventKind.TEXT:
            self._text(event)
        elif event.kind is EventKind.HTML:
            self._html(event)
        elif event.token is not None:
            self._targets[-1].append(event.token)

    def _start(self, event: Event) -> None:
        target = self._targets[-1]
        if event.tag in ("inline", "image"):
            if event.token is not None:
                token = dataclasses.replace(event.token, children=[])
            else:
                token = Token("inline", "", 0, children=[])
            target.append(token)
            self._targets.append(token.children)
        elif event.tag == "fence":
            if event.token is not None:
                token = dataclasses.replace(event.token)
            else:
                token = Token("fence", "code", 0, info=event.text, markup="```", block=True)
            target.append(token)
            self._fence = token
        else:
            if event.token is not None:
                token = dataclasses.replace(event.token)
            else:
                token = Token(
                    f"{event.tag}_open",
                    _SYNTHETIC_TAGS.get(event.tag, ""),
                    1,
                    block=not self._inline,
                )
        self._frames.append(
            _Frame(event.tag, token, target, len(target), synthetic=event.token is None)
        )
        if event.tag not in ("inline", "image", "fence"):
            target.append(token)

    def _end(self, event: Event) -> None:
        frame = self._frames.pop()
        if frame.tag != event.tag:
            raise ValueError(f"unbalanced markup events: {event.tag!r} closes {frame.tag!r}")
        if frame.tag in ("inline", "image"):
            if frame.tag == "inline":
                _trim_inline(
                    frame.open_token.children or [],
                    leading=frame.synthetic,
                    trailing=event.token is None,
                )
            self._targets.pop()
            return
        if frame.tag == "fence":
            self._fence = None
            return
        if frame.tag == "paragraph" and _is_blank(frame.output[frame.start + 1 :]):
            del frame.output[frame.start :]
            return
        if event.token is not None:
            close = dataclasses.replace(event.token)
        else:
            opened = frame.open_token
            close = Token(
                f"{frame.tag}_close",
                opened.tag,
                -1,
                block=opened.block,
                hidden=opened.hidden,
            )
        frame.output.append(close)

    def _text(self, event: Event) -> None:
        if self._fence is not None:
            self._fence.content = event.text
            return
        if event.token is not None:
            token = dataclasses.replace(event.token, content=event.text)
        else:
            token = Token("text", "", 0, content=event.text)
        self._targets[-1].append(token)

    def _html(self, event: Event) -> None:
        if event.token is not None:
            token = dataclasses.replace(event.token, content=event.text)
        elif self._inline:
            token = Token("html_inline", "", 0, content=event.text)
        else:
            token = Token("html_block", "", 0, content=event.text, block=True)
        self._targets[-1].append(token)

    def finish(self) -> list[Token]:
        if self._frames:
            raise ValueError(f"unclosed markup events: {[f.tag for f in self._frames]}")
        return self.tokens


def render_events(
    events: Iterable[Event], env: MutableMapping[str, Any] | None = None
) -> str:
    """Serialize events back to markdown.

    Args:
        events: Events to write, in document order.
        env: The environment ``parse_events`` filled for the same document.

    Returns:
        Markdown text as formatted by mdformat.
    """
    writer = _TokenWriter()
    for event in events:
        writer.write(event)
    parser = _get_parser()
    return parser.renderer.render(
        writer.finish(), parser.options, env if env is not None else {}
    )
