"""
Core Type Definitions for mediavault

Implements Result/Either monads for zero-exception control flow, plus the
value types shared by every storage component:

- ObjectKey: normalized, namespaced identity of a stored object
- Visibility: public vs private placement
- RangeRequest / RangeSpec: parsed and resolved HTTP byte ranges
- Payload: closed union of the three content sources a caller may hand over

Design Principles:
- Never use null for absence of an error (use Result)
- Switch on closed unions explicitly instead of sniffing shapes downstream
- Value types are frozen; nothing here performs I/O
"""

from __future__ import annotations

import os
import re
from collections import abc
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    Optional,
    TypeVar,
    Union,
)

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD: ZERO-EXCEPTION CONTROL FLOW
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries full error context for exhaustive handling.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        """No-op on error variant - propagates error unchanged."""
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        """Propagate error through monadic chain."""
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# OBJECT IDENTITY
# =============================================================================
class Visibility(Enum):
    """Placement class of an object; drives bucket choice and URL signing."""

    PUBLIC = "public"
    PRIVATE = "private"

    @classmethod
    def parse(cls, value: Union[str, Visibility, None]) -> Visibility:
        if isinstance(value, Visibility):
            return value
        if value is None:
            return cls.PRIVATE
        return cls(str(value).strip().lower())


@dataclass(frozen=True, slots=True, order=True)
class ObjectKey:
    """
    Canonical namespaced path identifying a stored object.

    Only KeyNormalizer should construct these from caller input; the
    value is already safe to join under a root or send to a bucket.
    """

    value: str

    @property
    def namespace(self) -> str:
        """First path segment (the content category)."""
        return self.value.split("/", 1)[0]

    @property
    def name(self) -> str:
        """Final path segment, used as the default download filename."""
        return self.value.rsplit("/", 1)[-1]

    @property
    def extension(self) -> str:
        """Lower-cased extension including the dot, or empty string."""
        return os.path.splitext(self.name)[1].lower()

    @property
    def parts(self) -> tuple[str, ...]:
        return tuple(self.value.split("/"))

    def __str__(self) -> str:
        return self.value


# =============================================================================
# BYTE RANGES
# =============================================================================
_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class RangeRequest:
    """
    A parsed `Range: bytes=<start>-<end>` request header.

    Either bound may be absent. A missing start means a suffix request
    for the last `end` bytes. Not yet checked against any object size.
    """

    start: Optional[int]
    end: Optional[int]

    @classmethod
    def from_http_header(cls, header: Optional[str]) -> Result[RangeRequest, str]:
        """
        Parse HTTP Range header.

        Supports: bytes=START-END, bytes=START-, bytes=-SUFFIX.
        Multi-range sets are rejected.
        """
        if header is None or not header.strip():
            return Err("empty range header")
        match = _RANGE_RE.match(header)
        if match is None:
            return Err(f"unsupported range header: {header!r}")
        start_str, end_str = match.groups()
        if not start_str and not end_str:
            return Err(f"range header has no bounds: {header!r}")
        start = int(start_str) if start_str else None
        end = int(end_str) if end_str else None
        if start is not None and end is not None and end < start:
            return Err(f"range end ({end}) precedes start ({start})")
        if start is None and end == 0:
            return Err("zero-length suffix range")
        return Ok(cls(start=start, end=end))

    def resolve(self, total_size: int) -> Optional[RangeSpec]:
        """
        Clip this request against the true object size.

        Returns None when the range cannot be satisfied (start beyond
        the last byte, or an empty object).
        """
        if total_size <= 0:
            return None
        if self.start is None:
            # Suffix request: last N bytes
            length = min(self.end or 0, total_size)
            return RangeSpec(start=total_size - length, end=total_size - 1, total_size=total_size)
        if self.start >= total_size:
            return None
        end = total_size - 1 if self.end is None else min(self.end, total_size - 1)
        return RangeSpec(start=self.start, end=end, total_size=total_size)

    def to_http_header(self) -> str:
        """Convert back to a normalized HTTP Range header value."""
        start = "" if self.start is None else str(self.start)
        end = "" if self.end is None else str(self.end)
        return f"bytes={start}-{end}"


@dataclass(frozen=True, slots=True)
class RangeSpec:
    """
    A byte range resolved against an object's true size.

    Invariant: 0 <= start <= end < total_size
    """

    start: int
    end: int
    total_size: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError(f"start must be >= 0, got {self.start}")
        if self.end < self.start:
            raise ValueError(f"end ({self.end}) must be >= start ({self.start})")
        if self.end >= self.total_size:
            raise ValueError(f"end ({self.end}) must be < total_size ({self.total_size})")

    @property
    def length(self) -> int:
        """Number of bytes in range (inclusive)."""
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        """Value for the Content-Range response header."""
        return f"bytes {self.start}-{self.end}/{self.total_size}"

    @property
    def is_full(self) -> bool:
        return self.start == 0 and self.end == self.total_size - 1

    def __repr__(self) -> str:
        return f"RangeSpec({self.start}-{self.end}/{self.total_size})"


# =============================================================================
# UPLOAD PAYLOADS (CLOSED UNION)
# =============================================================================
@dataclass(frozen=True, slots=True)
class BytesPayload:
    """Content already held in memory."""

    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class FilePayload:
    """Content in a local file; streamed from disk, never loaded whole."""

    path: Path

    @property
    def size(self) -> int:
        return self.path.stat().st_size


@dataclass(frozen=True, slots=True)
class StreamPayload:
    """
    Content produced by a readable stream.

    `source` is a binary file-like object (sync `read(n)` or async
    `read(n)`), an async iterable of byte chunks, or an iterable of
    byte chunks. `size` is optional; when absent the stream is read
    until exhausted.
    """

    source: Any
    size: Optional[int] = None


Payload = Union[BytesPayload, FilePayload, StreamPayload]


def payload_of(content: Any, size: Optional[int] = None) -> Payload:
    """
    Tag raw caller content with its payload variant.

    Raises:
        TypeError: content is none of bytes, path, or stream.
    """
    if isinstance(content, (BytesPayload, FilePayload, StreamPayload)):
        return content
    if isinstance(content, (bytes, bytearray, memoryview)):
        return BytesPayload(data=bytes(content))
    if isinstance(content, (str, os.PathLike)):
        return FilePayload(path=Path(content))
    if hasattr(content, "read"):
        return StreamPayload(source=content, size=size)
    if isinstance(content, (abc.AsyncIterable, abc.Iterable)):
        return StreamPayload(source=content, size=size)
    raise TypeError(f"unsupported payload type: {type(content).__name__}")


@dataclass(frozen=True, slots=True)
class UploadRequest:
    """A single write call: where, what, and how visible."""

    key: ObjectKey
    payload: Payload
    content_type: str
    visibility: Visibility = Visibility.PRIVATE
    metadata: dict[str, str] = field(default_factory=dict)
