"""
Range Streaming
===============

Serves stored objects whole or in part, in constant memory.

- ObjectStream: async byte-chunk iterator bounded to exactly one span,
  releasing its file handle or HTTP body on exhaustion, aclose(), or
  cancellation.
- ReadResult: stream plus the response metadata a web layer needs
  (status, Content-Range, Accept-Ranges, Content-Length).
- RangeStreamer: parses the Range header and delegates to the backend's
  native range read.

Range policy:
    Malformed, multi-range, or inverted headers are ignored (full object).
    Syntactically valid ranges that fall outside the object are ignored too:
    the full object is served with status 200 on every backend.
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional
from urllib.parse import quote

from mediavault.core.errors import VaultError
from mediavault.core.types import ObjectKey, RangeRequest, Result, Visibility

if TYPE_CHECKING:
    from mediavault.storage.backends import StorageBackend

logger = logging.getLogger(__name__)

# Quoted `filename` must stay latin-1 encodable; `filename*` keeps Unicode letters
_UNSAFE_ASCII_RE = re.compile(r"[^\w.\- ]", re.ASCII)
_UNSAFE_FILENAME_RE = re.compile(r"[^\w.\- ]")


# =============================================================================
# BOUNDED STREAM
# =============================================================================

class ObjectStream:
    """
    Async iterator over one object's bytes.

    Wraps a chunk generator and an optional release callback. The callback
    runs exactly once, whichever way iteration ends.

    Example:
        >>> async with result.stream as stream:
        ...     async for chunk in stream:
        ...         await response.write(chunk)
    """

    __slots__ = ("_chunks", "_release", "_closed", "length")

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        length: int,
        release: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._chunks = chunks
        self._release = release
        self._closed = False
        self.length = length

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ObjectStream:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._chunks.__anext__()
        except BaseException:
            # Exhaustion, failure, and cancellation all end the stream
            await self.aclose()
            raise

    async def aclose(self) -> None:
        """Release the underlying handle. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._release is not None:
            released = self._release()
            if inspect.isawaitable(released):
                await released

    async def read(self) -> bytes:
        """Drain the remaining span into memory. Intended for small objects."""
        return b"".join([chunk async for chunk in self])

    async def __aenter__(self) -> ObjectStream:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


# =============================================================================
# READ RESULT
# =============================================================================

@dataclass(slots=True)
class ReadResult:
    """
    An opened object, ready to be written to an HTTP response.

    `content_range` is set only for partial responses; a full-object
    response carries no Content-Range.
    """
    key: ObjectKey
    stream: ObjectStream
    content_type: str
    content_length: int
    total_size: int
    content_range: Optional[str] = None
    accept_ranges: str = "bytes"
    etag: str = ""
    last_modified: Optional[datetime] = None

    @property
    def is_partial(self) -> bool:
        return self.content_range is not None

    @property
    def status(self) -> int:
        return 206 if self.is_partial else 200

    def headers(
        self,
        disposition: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Response headers for this read.

        Args:
            disposition: "inline" or "attachment"; omitted when None.
            filename: Download name; defaults to the key's last segment.
        """
        headers = {
            "Content-Type": self.content_type,
            "Content-Length": str(self.content_length),
            "Accept-Ranges": self.accept_ranges,
        }
        if self.content_range is not None:
            headers["Content-Range"] = self.content_range
        if self.etag:
            headers["ETag"] = f'"{self.etag}"'
        if disposition:
            headers["Content-Disposition"] = content_disposition(
                disposition, filename or self.key.name,
            )
        return headers


def content_disposition(kind: str, filename: str) -> str:
    """
    Build a Content-Disposition value safe for any filename.

    Characters outside word characters, dot, dash and space become "_".
    The quoted `filename` is ASCII only; the RFC 5987 `filename*` form
    carries the Unicode name percent-encoded.

    >>> content_disposition("attachment", "résumé v2.pdf")
    'attachment; filename="r_sum_ v2.pdf"; filename*=UTF-8\\'\\'r%C3%A9sum%C3%A9%20v2.pdf'
    """
    if kind not in ("inline", "attachment"):
        raise ValueError(f"disposition must be 'inline' or 'attachment', got {kind!r}")
    name = _UNSAFE_FILENAME_RE.sub("_", filename or "download") or "download"
    fallback = _UNSAFE_ASCII_RE.sub("_", name)
    return f"{kind}; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


# =============================================================================
# RANGE STREAMER
# =============================================================================

class RangeStreamer:
    """Maps a request's Range header onto a backend read."""

    __slots__ = ("_backend",)

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    @staticmethod
    def parse_range(header: Optional[str]) -> Optional[RangeRequest]:
        """Parse a Range header; anything unusable means no range."""
        if header is None or not header.strip():
            return None
        parsed = RangeRequest.from_http_header(header)
        if parsed.is_err():
            logger.debug("Ignoring range header %r: %s", header, parsed.error)
            return None
        return parsed.unwrap()

    async def read(
        self,
        key: ObjectKey,
        range_header: Optional[str] = None,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[ReadResult, VaultError]:
        """Open `key`, honoring a satisfiable single byte range."""
        return await self._backend.read(key, self.parse_range(range_header), visibility)
