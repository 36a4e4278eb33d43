"""Logging for mdkroki, built on loguru.

stdout carries the mdBook JSON protocol, so every log line goes to stderr.

Example:
    >>> with LogSpan(span="kroki.render", type="mermaid") as span:
    ...     body = await client.post(url, json=payload)
    ...     span.add(status=body.status_code)
"""

from __future__ import annotations

import json
import sys
import time
from types import TracebackType
from typing import Any

from loguru import logger

__all__ = ["LOG_FORMAT", "LogSpan", "configure_logging"]

LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "WARNING") -> None:
    """Route loguru output to stderr at the given level.

    Removes loguru's default handler first so repeated calls don't duplicate
    output.

    Args:
        level: Minimum level name (e.g. "DEBUG", "INFO", "WARNING").
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


class LogSpan:
    """A structured logging span with timing and attributes.

    Emits one JSON line when the span closes: DEBUG on success, ERROR with the
    exception type and message on failure. Exceptions are never suppressed.
    """

    def __init__(self, span: str, **attrs: Any) -> None:
        """Initialize a log span.

        Args:
            span: Span name (e.g., "kroki.render")
            **attrs: Initial attributes to log
        """
        self.span = span
        self.attrs: dict[str, Any] = dict(attrs)
        self.start_time = time.perf_counter()
        self.error: str | None = None

    def add(self, key: str | None = None, value: Any = None, **attrs: Any) -> LogSpan:
        """Add attributes to the span.

        Supports both positional and keyword argument styles.

        Returns:
            Self for method chaining
        """
        if key is not None:
            self.attrs[key] = value
        self.attrs.update(attrs)
        return self

    def __enter__(self) -> LogSpan:
        self.start_time = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.error = f"{exc_type.__name__}: {exc}"
        self._emit()

    def _emit(self) -> None:
        elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        entry = {
            "span": self.span,
            "elapsed_ms": round(elapsed_ms, 2),
            **self.attrs,
        }
        if self.error:
            entry["error"] = self.error
            logger.error(json.dumps(entry, default=str))
        else:
            logger.debug(json.dumps(entry, default=str))
