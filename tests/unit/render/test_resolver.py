"""Unit tests for concurrent diagram resolution and write-back."""

from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest


class TaggingRenderer:
    """Fake render service that echoes the source it was asked to render."""

    def __init__(self, seed: int = 0, max_delay: float = 0.01) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self._random = random.Random(seed)
        self._max_delay = max_delay

    async def render(self, source, diagram_type, output_format) -> str:
        self.calls.append((source, diagram_type, output_format.value))
        await asyncio.sleep(self._random.uniform(0, self._max_delay))
        return f"<pre><svg>{diagram_type}:{source.strip()}</svg></pre>"


class ScriptedRenderer:
    """Fake render service whose behavior depends on the diagram source.

    Sources look like ``"<delay>:ok"`` or ``"<delay>:fail"``.
    """

    def __init__(self) -> None:
        self.completed: list[str] = []

    async def render(self, source, diagram_type, output_format) -> str:
        from mdkroki.errors import RenderServiceError

        delay, outcome = source.strip().split(":")
        await asyncio.sleep(float(delay))
        if outcome == "fail":
            raise RenderServiceError("HTTP error (500): boom")
        self.completed.append(source.strip())
        return f"<pre>{source.strip()}</pre>"


def _directive(index: int, source: str, address: tuple[int, ...] = (0,)):
    from mdkroki.models import DiagramDirective, InlineSource

    return DiagramDirective(
        diagram_type="mermaid",
        placeholder=f"%%kroki-diagram-{index}%%",
        source=InlineSource(source),
        index=index,
        address=address,
        document_path=Path("chapter.md"),
    )


def _locations(root: Path = Path("/book")):
    from mdkroki.resolver import SourceLocations

    return SourceLocations(book_root=root, source_dir=Path("src"))


def _book(*chapters: tuple[str, str | None, str]):
    """Book with one top-level chapter per (name, source_path, content)."""
    from mdkroki.book import Book, Chapter

    return Book(
        sections=[
            Chapter(name=name, content=content, path=path, source_path=path)
            for name, path, content in chapters
        ]
    )


def _config(**overrides):
    from mdkroki.config import KrokiConfig

    return KrokiConfig(**overrides)


# ==================== Concurrent write-back ====================


@pytest.mark.unit
@pytest.mark.render
@pytest.mark.parametrize("seed", [1, 2, 3])
def test_concurrent_write_back(seed: int) -> None:
    """Verify every placeholder gets its own directive's content in any order."""
    from mdkroki.book import Book, Chapter, Separator
    from mdkroki.resolver import process_book

    def body(chapter: int) -> str:
        return "".join(
            f"Para {j}.\n\n```kroki-mermaid\nchapter {chapter} diagram {j}\n```\n\n"
            for j in range(4)
        )

    book = Book(
        sections=[
            Chapter(name="One", content=body(0), source_path=Path("one.md")),
            Separator(),
            Chapter(
                name="Two",
                content=body(1),
                source_path=Path("two.md"),
                sub_items=[Chapter(name="Three", content=body(2), source_path=Path("three.md"))],
            ),
        ]
    )
    renderer = TaggingRenderer(seed=seed)

    asyncio.run(
        process_book(
            book,
            _config(max_concurrency=5),
            book_root="/book",
            source_dir="src",
            renderer=renderer,
        )
    )

    assert len(renderer.calls) == 12
    for chapter_number, (_address, chapter) in enumerate(book.iter_chapters()):
        content = chapter.content
        assert "%%kroki-diagram" not in content
        positions = []
        for j in range(4):
            rendered = f"<pre><svg>mermaid:chapter {chapter_number} diagram {j}</svg></pre>"
            assert content.count(rendered) == 1
            positions.append(content.index(rendered))
        assert positions == sorted(positions)
        assert f"chapter {(chapter_number + 1) % 3} diagram" not in content


@pytest.mark.unit
@pytest.mark.render
def test_resolve_all_keeps_discovery_order() -> None:
    from mdkroki.resolver import resolve_all

    directives = [_directive(i, f"diagram {i}") for i in range(20)]
    renderer = TaggingRenderer(seed=7)

    resolutions = asyncio.run(
        resolve_all(directives, renderer, _locations(), max_concurrency=3)
    )

    assert [r.placeholder for r in resolutions] == [d.placeholder for d in directives]
    assert [r.content for r in resolutions] == [
        f"<pre><svg>mermaid:diagram {i}</svg></pre>" for i in range(20)
    ]


@pytest.mark.unit
@pytest.mark.render
def test_resolve_all_respects_concurrency_limit() -> None:
    from mdkroki.resolver import resolve_all

    class CountingRenderer:
        def __init__(self) -> None:
            self.active = 0
            self.peak = 0

        async def render(self, source, diagram_type, output_format) -> str:
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.005)
            self.active -= 1
            return source

    renderer = CountingRenderer()
    directives = [_directive(i, str(i)) for i in range(12)]

    asyncio.run(resolve_all(directives, renderer, _locations(), max_concurrency=3))

    assert renderer.peak == 3


@pytest.mark.unit
@pytest.mark.render
def test_resolve_all_empty() -> None:
    from mdkroki.resolver import resolve_all

    assert asyncio.run(resolve_all([], TaggingRenderer(), _locations())) == []


# ==================== Failure policies ====================


@pytest.mark.unit
@pytest.mark.render
def test_fail_fast_scan_issues_no_render_calls() -> None:
    """Verify a malformed tag fails the run before anything is rendered."""
    from mdkroki.errors import DocumentScanError, MissingDirectiveAttributeError
    from mdkroki.resolver import process_book

    book = _book(
        ("Good", "good.md", "```kroki-mermaid\ngraph TD; A-->B;\n```\n"),
        ("Bad", "bad.md", '<kroki path="seq.puml" />\n'),
    )
    renderer = TaggingRenderer()

    with pytest.raises(DocumentScanError) as exc_info:
        asyncio.run(
            process_book(book, _config(), book_root="/b", source_dir="src", renderer=renderer)
        )

    assert isinstance(exc_info.value.cause, MissingDirectiveAttributeError)
    assert renderer.calls == []


@pytest.mark.unit
@pytest.mark.render
def test_fail_fast_cancels_outstanding_units() -> None:
    from mdkroki.errors import RenderServiceError
    from mdkroki.resolver import resolve_all

    directives = [
        _directive(0, "0.05:ok"),
        _directive(1, "0:fail"),
        _directive(2, "0.05:ok"),
    ]
    renderer = ScriptedRenderer()

    with pytest.raises(RenderServiceError) as exc_info:
        asyncio.run(resolve_all(directives, renderer, _locations(), fail_fast=True))

    assert exc_info.value.directive == directives[1]
    assert renderer.completed == []


@pytest.mark.unit
@pytest.mark.render
def test_run_to_completion_raises_first_in_discovery_order() -> None:
    """Verify every unit finishes and the earliest directive's error wins."""
    from mdkroki.errors import RenderServiceError
    from mdkroki.resolver import resolve_all

    directives = [
        _directive(0, "0.01:ok"),
        _directive(1, "0.02:fail"),
        _directive(2, "0.01:ok"),
        _directive(3, "0:fail"),
    ]
    renderer = ScriptedRenderer()

    with pytest.raises(RenderServiceError) as exc_info:
        asyncio.run(resolve_all(directives, renderer, _locations(), fail_fast=False))

    assert exc_info.value.directive == directives[1]
    assert sorted(renderer.completed) == ["0.01:ok", "0.01:ok"]


@pytest.mark.unit
@pytest.mark.render
def test_resolution_error_names_directive() -> None:
    from mdkroki.errors import RenderServiceError
    from mdkroki.resolver import resolve_directive

    with pytest.raises(RenderServiceError) as exc_info:
        asyncio.run(resolve_directive(_directive(4, "0:fail"), ScriptedRenderer(), _locations()))

    message = str(exc_info.value)
    assert message.startswith("diagram #4 (mermaid) in chapter.md at address [0]")
    assert message.endswith("HTTP error (500): boom")


@pytest.mark.unit
@pytest.mark.render
def test_process_book_failure_leaves_placeholders_unresolved() -> None:
    """Verify a failed run writes no rendered content into any chapter."""
    from mdkroki.errors import RenderServiceError
    from mdkroki.resolver import process_book

    book = _book(
        ("One", "one.md", "```kroki-mermaid\n0:ok\n```\n"),
        ("Two", "two.md", "```kroki-mermaid\n0.01:fail\n```\n"),
    )

    with pytest.raises(RenderServiceError):
        asyncio.run(
            process_book(
                book,
                _config(fail_fast=False),
                book_root="/b",
                source_dir="src",
                renderer=ScriptedRenderer(),
            )
        )

    assert "<pre>" not in book.get_chapter((0,)).content
    assert "%%kroki-diagram-0%%" in book.get_chapter((0,)).content


# ==================== File sources ====================


@pytest.mark.unit
@pytest.mark.render
def test_file_sources_are_read_from_their_root(tmp_path: Path) -> None:
    from mdkroki.resolver import process_book

    (tmp_path / "src" / "guide").mkdir(parents=True)
    (tmp_path / "diagrams").mkdir()
    (tmp_path / "src" / "guide" / "local.puml").write_text("local source")
    (tmp_path / "src" / "shared.puml").write_text("shared source")
    (tmp_path / "diagrams" / "book.puml").write_text("book source")
    absolute = tmp_path / "absolute.puml"
    absolute.write_text("absolute source")

    content = (
        '<kroki type="plantuml" path="local.puml" />\n\n'
        '<kroki type="plantuml" path="/shared.puml" root="source" />\n\n'
        '<kroki type="plantuml" path="/diagrams/book.puml" root="book" />\n\n'
        f"![abs](kroki-plantuml:{absolute})\n"
    )
    book = _book(("Guide", "guide/index.md", content))
    renderer = TaggingRenderer()

    asyncio.run(
        process_book(book, _config(), book_root=tmp_path, source_dir="src", renderer=renderer)
    )

    assert [call[0] for call in renderer.calls] == [
        "local source",
        "shared source",
        "book source",
        "absolute source",
    ]
    assert "plantuml:book source" in book.get_chapter((0,)).content


@pytest.mark.unit
@pytest.mark.render
def test_missing_source_file(tmp_path: Path) -> None:
    from mdkroki.errors import SourceFileUnreadableError
    from mdkroki.resolver import process_book

    book = _book(("Guide", "index.md", '<kroki type="plantuml" path="missing.puml" />\n'))

    with pytest.raises(SourceFileUnreadableError) as exc_info:
        asyncio.run(
            process_book(
                book, _config(), book_root=tmp_path, source_dir="src", renderer=TaggingRenderer()
            )
        )

    assert exc_info.value.directive is not None
    assert exc_info.value.directive.document_path == Path("index.md")
    assert "missing.puml" in str(exc_info.value)


@pytest.mark.unit
@pytest.mark.render
def test_relative_file_in_chapter_without_source_path() -> None:
    from mdkroki.errors import NoSourcePathForDocumentError
    from mdkroki.resolver import process_book

    book = _book(("Generated", None, '<kroki type="plantuml" path="seq.puml" />\n'))

    with pytest.raises(NoSourcePathForDocumentError) as exc_info:
        asyncio.run(
            process_book(
                book, _config(), book_root="/b", source_dir="src", renderer=TaggingRenderer()
            )
        )

    assert any("diagram #0 (plantuml)" in note for note in exc_info.value.__notes__)


# ==================== Merge pass ====================


@pytest.mark.unit
@pytest.mark.render
def test_apply_resolutions_single_pass() -> None:
    """Verify rendered content is never scanned for further placeholders."""
    from mdkroki.resolver import Resolution, apply_resolutions

    book = _book(("One", "one.md", "A %%kroki-diagram-0%% B %%kroki-diagram-1%%\n"))

    apply_resolutions(
        book,
        [
            Resolution((0,), "%%kroki-diagram-0%%", "<pre>%%kroki-diagram-1%%</pre>"),
            Resolution((0,), "%%kroki-diagram-1%%", "<pre>one</pre>"),
        ],
    )

    assert book.get_chapter((0,)).content == (
        "A <pre>%%kroki-diagram-1%%</pre> B <pre>one</pre>\n"
    )


@pytest.mark.unit
@pytest.mark.render
def test_literal_placeholder_text_is_preserved() -> None:
    """Verify a chapter quoting the placeholder syntax still resolves."""
    from mdkroki.resolver import process_book

    book = _book(
        (
            "Docs",
            "docs.md",
            "Docs: the placeholder looks like `%%kroki-diagram-0%%`.\n\n"
            "```kroki-mermaid\ngraph TD;\n```\n",
        )
    )

    asyncio.run(
        process_book(book, _config(), book_root="/b", source_dir="src", renderer=TaggingRenderer())
    )

    content = book.get_chapter((0,)).content
    assert content.count("<pre><svg>mermaid:graph TD;</svg></pre>") == 1
    assert content.count("`%%kroki-diagram-0%%`") == 1


@pytest.mark.unit
@pytest.mark.render
def test_apply_resolutions_is_all_or_nothing() -> None:
    from mdkroki.errors import StaleAddressError
    from mdkroki.resolver import Resolution, apply_resolutions

    book = _book(
        ("One", "one.md", "%%kroki-diagram-0%%\n"),
        ("Two", "two.md", "no placeholder here\n"),
    )

    with pytest.raises(StaleAddressError, match="occurs 0 times"):
        apply_resolutions(
            book,
            [
                Resolution((0,), "%%kroki-diagram-0%%", "<pre>one</pre>"),
                Resolution((1,), "%%kroki-diagram-0%%", "<pre>two</pre>"),
            ],
        )

    assert book.get_chapter((0,)).content == "%%kroki-diagram-0%%\n"
    assert book.get_chapter((1,)).content == "no placeholder here\n"


@pytest.mark.unit
@pytest.mark.render
def test_apply_resolutions_bad_address() -> None:
    from mdkroki.book import Book, Chapter, Separator
    from mdkroki.errors import NotADocumentNodeError, StaleAddressError
    from mdkroki.resolver import Resolution, apply_resolutions

    book = Book(sections=[Chapter(name="One", content="%%kroki-diagram-0%%\n"), Separator()])
    good = Resolution((0,), "%%kroki-diagram-0%%", "<pre>one</pre>")

    with pytest.raises(NotADocumentNodeError):
        apply_resolutions(book, [good, Resolution((1,), "%%kroki-diagram-0%%", "x")])
    with pytest.raises(StaleAddressError):
        apply_resolutions(book, [good, Resolution((5,), "%%kroki-diagram-0%%", "x")])
    with pytest.raises(StaleAddressError, match="twice"):
        apply_resolutions(book, [good, good])

    assert book.get_chapter((0,)).content == "%%kroki-diagram-0%%\n"


# ==================== End to end ====================


@pytest.mark.unit
@pytest.mark.render
def test_end_to_end_fenced_mermaid() -> None:
    """Verify a kroki-mermaid fence is rendered through the Kroki client."""
    from mdkroki.render import KrokiClient
    from mdkroki.resolver import process_book

    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, content=b'<?xml version="1.0"?><svg id="mock">A-B</svg>')

    book = _book(("Flow", "flow.md", "# Flow\n\n```kroki-mermaid\ngraph TD; A-->B;\n```\n"))
    created: list[KrokiClient] = []

    def make_client(endpoint: str, **kwargs) -> KrokiClient:
        client = KrokiClient(endpoint, transport=httpx.MockTransport(handler), **kwargs)
        created.append(client)
        return client

    with patch("mdkroki.resolver.KrokiClient", side_effect=make_client):
        asyncio.run(
            process_book(
                book,
                _config(endpoint="http://kroki.local:8000"),
                book_root="/b",
                source_dir="src",
            )
        )

    content = book.get_chapter((0,)).content
    assert content.count('<pre><svg id="mock">A-B</svg></pre>') == 1
    assert "%%kroki-diagram" not in content
    assert "# Flow" in content
    assert requests == [
        {
            "diagram_source": "graph TD; A-->B;\n",
            "diagram_type": "mermaid",
            "output_format": "svg",
        }
    ]
    assert [client.endpoint for client in created] == ["http://kroki.local:8000/"]


@pytest.mark.unit
@pytest.mark.render
def test_book_without_diagrams_opens_no_client() -> None:
    from mdkroki.resolver import process_book

    book = _book(("Plain", "plain.md", "Just text.\n"))

    with patch("mdkroki.resolver.KrokiClient") as client_class:
        asyncio.run(process_book(book, _config(), book_root="/b", source_dir="src"))

    client_class.assert_not_called()
    assert book.get_chapter((0,)).content.strip() == "Just text."
