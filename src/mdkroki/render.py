"""Kroki render service client.

Diagrams are rendered with Kroki's JSON POST API:

    POST <endpoint>
    {"diagram_source": "...", "diagram_type": "mermaid", "output_format": "svg"}

The rendered result is wrapped in ``<pre>`` ... ``</pre>`` before it is put
into a chapter, so mdBook passes the markup through untouched.

Reference: https://docs.kroki.io/kroki/setup/http-clients/
"""

from __future__ import annotations

import base64
from types import TracebackType
from typing import Protocol

import httpx

from mdkroki.config import (
    DEFAULT_ENDPOINT,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_TIMEOUT,
    normalize_endpoint,
)
from mdkroki.errors import RenderServiceError, UnexpectedRenderResponseError
from mdkroki.logging import LogSpan
from mdkroki.models import OutputFormat

__all__ = [
    "FORMAT_MIME_TYPES",
    "KrokiClient",
    "Renderer",
    "extract_rendered",
    "wrap_literal_block",
]

USER_AGENT = "mdkroki/1.0"

SVG_MARKER = "<svg"

FORMAT_MIME_TYPES = {
    OutputFormat.SVG: "image/svg+xml",
    OutputFormat.PNG: "image/png",
    OutputFormat.JPEG: "image/jpeg",
    OutputFormat.PDF: "application/pdf",
}

# Leading bytes every valid binary response starts with
BINARY_SIGNATURES = {
    OutputFormat.PNG: b"\x89PNG\r\n\x1a\n",
    OutputFormat.JPEG: b"\xff\xd8\xff",
    OutputFormat.PDF: b"%PDF",
}


class Renderer(Protocol):
    """Anything that turns diagram source into chapter-ready markup."""

    async def render(
        self, source: str, diagram_type: str, output_format: OutputFormat
    ) -> str: ...


def wrap_literal_block(content: str) -> str:
    """Wrap rendered output so markdown renderers leave it alone."""
    return f"<pre>{content}</pre>"


def extract_rendered(body: bytes, output_format: OutputFormat) -> str:
    """Turn a render service response body into embeddable markup.

    SVG output is trimmed to start at the ``<svg`` element. Binary formats are
    checked for their file signature and embedded as a base64 data URI.

    Args:
        body: Raw response body.
        output_format: Format that was requested.

    Returns:
        Markup to substitute for the diagram (not yet wrapped).

    Raises:
        UnexpectedRenderResponseError: If the body isn't the requested format.
    """
    if output_format is OutputFormat.SVG:
        text = body.decode("utf-8", errors="replace")
        start = text.find(SVG_MARKER)
        if start < 0:
            raise UnexpectedRenderResponseError(
                f"didn't find '{SVG_MARKER}' in kroki response: {text[:200]}"
            )
        return text[start:]

    signature = BINARY_SIGNATURES[output_format]
    if not body.startswith(signature):
        raise UnexpectedRenderResponseError(
            f"kroki response is not a {output_format.value} file "
            f"(starts with {body[:8]!r})"
        )
    encoded = base64.b64encode(body).decode("ascii")
    data_uri = f"data:{FORMAT_MIME_TYPES[output_format]};base64,{encoded}"
    if output_format is OutputFormat.PDF:
        return f'<object data="{data_uri}" type="application/pdf"></object>'
    return f'<img src="{data_uri}" alt="">'


class KrokiClient:
    """Async Kroki client sharing one connection pool across renders.

    Use as an async context manager so the pool is closed:

        async with KrokiClient("https://kroki.io/") as client:
            markup = await client.render(source, "mermaid", OutputFormat.SVG)
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_connections: int = DEFAULT_MAX_CONCURRENCY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = normalize_endpoint(endpoint)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            limits=httpx.Limits(
                max_keepalive_connections=max_connections,
                max_connections=max_connections,
                keepalive_expiry=30.0,
            ),
            transport=transport,
        )

    async def __aenter__(self) -> KrokiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def render(
        self, source: str, diagram_type: str, output_format: OutputFormat
    ) -> str:
        """Render one diagram.

        Args:
            source: Diagram source code.
            diagram_type: Kroki diagram type (mermaid, plantuml, ...).
            output_format: Requested output format.

        Returns:
            Rendered markup wrapped in ``<pre>`` ... ``</pre>``.

        Raises:
            RenderServiceError: Transport failure or non-success status.
            UnexpectedRenderResponseError: Response lacks the expected content.
        """
        payload = {
            "diagram_source": source,
            "diagram_type": diagram_type,
            "output_format": output_format.value,
        }
        with LogSpan(
            span="kroki.render",
            type=diagram_type,
            format=output_format.value,
            url=self.endpoint,
        ) as span:
            try:
                response = await self._client.post(self.endpoint, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                span.add(status=e.response.status_code)
                raise RenderServiceError(
                    f"HTTP error ({e.response.status_code}): {e.response.text[:200]}"
                ) from e
            except httpx.RequestError as e:
                raise RenderServiceError(f"Request failed: {e}") from e

            span.add(status=response.status_code, responseLen=len(response.content))
            return wrap_literal_block(extract_rendered(response.content, output_format))
