"""
Storage Backends: abstract driver interface and local filesystem driver.

Provides abstract interface for:
- Put object (bytes or a chunk stream)
- Read object (with byte range support, streamed)
- Head object
- Delete object
- Multipart primitives (object store only)

Every operation returns a Result; exceptions are reserved for programming
errors. Switching drivers requires a new process: the driver is chosen
once from StorageConfig.
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import os
import stat as stat_mode
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

from mediavault.core import constants as C
from mediavault.core.config import BackendKind, LocalConfig
from mediavault.core.errors import (
    BackendError,
    ErrorCode,
    InvalidKeyError,
    NotFoundError,
    VaultError,
)
from mediavault.core.types import (
    Err,
    ObjectKey,
    Ok,
    RangeRequest,
    Result,
    UploadRequest,
    Visibility,
)
from mediavault.storage.streamer import ObjectStream, ReadResult

logger = logging.getLogger(__name__)

# What a single put accepts: whole content, or chunks produced by the planner
PutBody = Union[bytes, AsyncIterable[bytes]]


# =============================================================================
# OBJECT METADATA
# =============================================================================

@dataclass(frozen=True, slots=True)
class StoredObject:
    """
    Immutable metadata for a stored object.

    Attributes:
        key: Normalized object key.
        size_bytes: Object size in bytes.
        content_type: MIME content type.
        last_modified: Last modification timestamp.
        etag: Entity tag (MD5 or multipart hash); empty on the local driver.
        visibility: Placement the object was written with.
    """
    key: ObjectKey
    size_bytes: int
    content_type: str
    last_modified: datetime
    etag: str = ""
    visibility: Visibility = Visibility.PRIVATE


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

@dataclass(slots=True)
class StorageMetrics:
    """
    Nanosecond-precision counters for backend operations.

    Tracks upload/download volume and latency per driver.
    """
    # Operation counters
    put_count: int = 0
    get_count: int = 0
    head_count: int = 0
    delete_count: int = 0
    multipart_count: int = 0
    multipart_aborts: int = 0

    # Byte counters
    bytes_uploaded: int = 0
    bytes_downloaded: int = 0

    # Latency accumulators (nanoseconds)
    put_latency_sum_ns: int = 0
    get_latency_sum_ns: int = 0

    # Error counters
    errors: int = 0
    timeout_errors: int = 0

    def record_upload(self, size_bytes: int, latency_ns: int) -> None:
        """Record upload operation."""
        self.put_count += 1
        self.bytes_uploaded += size_bytes
        self.put_latency_sum_ns += latency_ns

    def record_download(self, size_bytes: int, latency_ns: int) -> None:
        """Record download operation (bytes served, time to open)."""
        self.get_count += 1
        self.bytes_downloaded += size_bytes
        self.get_latency_sum_ns += latency_ns

    def record_error(self, error: VaultError) -> None:
        self.errors += 1
        if error.code is ErrorCode.STORAGE_TIMEOUT:
            self.timeout_errors += 1

    def get_upload_throughput_mbps(self) -> float:
        """Calculate average upload throughput in MB/s."""
        if self.put_latency_sum_ns == 0:
            return 0.0
        seconds = self.put_latency_sum_ns / 1_000_000_000
        return (self.bytes_uploaded / 1_000_000) / seconds

    def snapshot(self) -> dict[str, Any]:
        return {
            "put_count": self.put_count,
            "get_count": self.get_count,
            "head_count": self.head_count,
            "delete_count": self.delete_count,
            "multipart_count": self.multipart_count,
            "multipart_aborts": self.multipart_aborts,
            "bytes_uploaded": self.bytes_uploaded,
            "bytes_downloaded": self.bytes_downloaded,
            "errors": self.errors,
            "timeout_errors": self.timeout_errors,
            "upload_throughput_mbps": self.get_upload_throughput_mbps(),
        }


# =============================================================================
# DRIVER INTERFACE
# =============================================================================

class StorageBackend(ABC):
    """Abstract storage driver interface."""

    kind: BackendKind
    supports_multipart: bool = False

    def __init__(self) -> None:
        self._metrics = StorageMetrics()

    @property
    def metrics(self) -> StorageMetrics:
        """Get current metrics snapshot."""
        return self._metrics

    @abstractmethod
    async def put(
        self,
        request: UploadRequest,
        body: PutBody,
    ) -> Result[StoredObject, VaultError]:
        """Store an object in one request."""

    @abstractmethod
    async def read(
        self,
        key: ObjectKey,
        range_request: Optional[RangeRequest] = None,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[ReadResult, VaultError]:
        """
        Open an object for streaming.

        A range that cannot be satisfied yields the full object.
        """

    @abstractmethod
    async def head(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[StoredObject, VaultError]:
        """Get object metadata without body."""

    @abstractmethod
    async def delete(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[bool, VaultError]:
        """Delete object. Ok(False) when it was already absent."""

    async def close(self) -> None:
        """Release connections. Safe to call multiple times."""

    # -------------------------------------------------------------------------
    # MULTIPART PRIMITIVES
    # -------------------------------------------------------------------------

    async def create_multipart(self, request: UploadRequest) -> Result[str, VaultError]:
        """Start a multipart upload; returns its upload id."""
        return Err(BackendError.unsupported("multipart upload", self.kind.value))

    async def upload_part(
        self,
        request: UploadRequest,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> Result[dict[str, Any], VaultError]:
        """Upload one part; returns {"PartNumber", "ETag"}."""
        return Err(BackendError.unsupported("multipart upload", self.kind.value))

    async def complete_multipart(
        self,
        request: UploadRequest,
        upload_id: str,
        parts: list[dict[str, Any]],
        size_bytes: int,
    ) -> Result[StoredObject, VaultError]:
        """Assemble uploaded parts into the final object."""
        return Err(BackendError.unsupported("multipart upload", self.kind.value))

    async def abort_multipart(
        self,
        request: UploadRequest,
        upload_id: str,
    ) -> Result[None, VaultError]:
        """Discard an upload's parts."""
        return Err(BackendError.unsupported("multipart upload", self.kind.value))



# =============================================================================
# LOCAL FILESYSTEM DRIVER
# =============================================================================

# Sidecar tree, kept outside the public/private trees the web layer serves
META_DIR = ".meta"


class LocalBackend(StorageBackend):
    """
    Local filesystem storage driver.

    Objects stored at: {root}/{visibility}/{key}
    Declared metadata: {root}/.meta/{visibility}/{key}.json

    Public and private objects live in separate trees so a statically served
    public tree never exposes private media. Writes land in hidden siblings
    first and are renamed into place, so a partially written file is never
    visible under its key.
    """

    kind = BackendKind.LOCAL
    supports_multipart = False

    def __init__(self, config: LocalConfig) -> None:
        super().__init__()
        self._config = config
        self._root = config.root.resolve()
        for visibility in Visibility:
            (self._root / visibility.value).mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def tree(self, visibility: Visibility) -> Path:
        """Directory holding objects of one visibility."""
        return self._root / visibility.value

    def _key_to_path(self, key: ObjectKey, visibility: Visibility) -> Result[Path, InvalidKeyError]:
        """Convert key to filesystem path, refusing anything outside its tree."""
        tree = self.tree(visibility)
        path = (tree / key.value).resolve()
        if path == tree or not path.is_relative_to(tree):
            return Err(InvalidKeyError.rejected(key.value, "resolves outside the storage root"))
        return Ok(path)

    def _meta_path(self, path: Path, visibility: Visibility) -> Path:
        relative = path.relative_to(self.tree(visibility))
        return self._root / META_DIR / visibility.value / f"{relative}.json"

    async def put(
        self,
        request: UploadRequest,
        body: PutBody,
    ) -> Result[StoredObject, VaultError]:
        """Store object and its declared metadata (write-then-rename)."""
        path_result = self._key_to_path(request.key, request.visibility)
        if path_result.is_err():
            return path_result
        path = path_result.unwrap()
        meta = self._meta_path(path, request.visibility)

        start_ns = time.perf_counter_ns()
        suffix = uuid.uuid4().hex
        tmp = path.with_name(f".{path.name}.{suffix}.part")
        meta_tmp = meta.with_name(f".{meta.name}.{suffix}.part")
        document = json.dumps({"content_type": request.content_type, "metadata": request.metadata})
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(meta.parent.mkdir, parents=True, exist_ok=True)
            if isinstance(body, (bytes, bytearray, memoryview)):
                size = await asyncio.to_thread(tmp.write_bytes, bytes(body))
            else:
                size = await self._write_chunks(tmp, body)
            await asyncio.to_thread(meta_tmp.write_text, document, "utf-8")
            await asyncio.to_thread(os.replace, meta_tmp, meta)
            await asyncio.to_thread(os.replace, tmp, path)
        except OSError as e:
            await asyncio.to_thread(_discard, tmp, meta_tmp)
            error = BackendError.operation_failed("put", request.key.value, cause=e)
            self._metrics.record_error(error)
            return Err(error)
        except BaseException:
            # Cancellation or a failing source stream: leave nothing behind
            await asyncio.shield(asyncio.to_thread(_discard, tmp, meta_tmp))
            raise

        self._metrics.record_upload(size, time.perf_counter_ns() - start_ns)
        logger.debug("Wrote %s (%d bytes)", path, size)
        return Ok(StoredObject(
            key=request.key,
            size_bytes=size,
            content_type=request.content_type,
            last_modified=datetime.now(timezone.utc),
            visibility=request.visibility,
        ))

    @staticmethod
    async def _write_chunks(tmp: Path, chunks: AsyncIterable[bytes]) -> int:
        handle = await asyncio.to_thread(open, tmp, "wb")
        size = 0
        try:
            async for chunk in chunks:
                await asyncio.to_thread(handle.write, chunk)
                size += len(chunk)
        finally:
            await asyncio.to_thread(handle.close)
        return size

    async def _stat_object(
        self,
        key: ObjectKey,
        visibility: Visibility,
        operation: str,
    ) -> Result[tuple[Path, os.stat_result, str], VaultError]:
        """Locate a regular file for `key` with its stored content type."""
        path_result = self._key_to_path(key, visibility)
        if path_result.is_err():
            return path_result
        path = path_result.unwrap()

        try:
            stat = await asyncio.to_thread(path.stat)
            if not stat_mode.S_ISREG(stat.st_mode):
                return Err(NotFoundError.for_key(key.value))
            content_type = await asyncio.to_thread(
                _load_content_type, self._meta_path(path, visibility), key,
            )
        except FileNotFoundError as e:
            return Err(NotFoundError.for_key(key.value, cause=e))
        except OSError as e:
            error = BackendError.operation_failed(operation, key.value, cause=e)
            self._metrics.record_error(error)
            return Err(error)
        return Ok((path, stat, content_type))

    async def read(
        self,
        key: ObjectKey,
        range_request: Optional[RangeRequest] = None,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[ReadResult, VaultError]:
        """Open object for streaming; unsatisfiable ranges serve the full file."""
        start_ns = time.perf_counter_ns()
        found = await self._stat_object(key, visibility, "read")
        if found.is_err():
            return found
        path, stat, content_type = found.unwrap()

        total = stat.st_size
        span = range_request.resolve(total) if range_request is not None else None
        if range_request is not None and span is None:
            logger.debug("Range %s unsatisfiable for %s (%d bytes), serving full object",
                         range_request.to_http_header(), key, total)

        if span is not None:
            offset, length, content_range = span.start, span.length, span.content_range
        else:
            offset, length, content_range = 0, total, None

        self._metrics.record_download(length, time.perf_counter_ns() - start_ns)
        return Ok(ReadResult(
            key=key,
            stream=ObjectStream(_read_file_span(path, offset, length), length),
            content_type=content_type,
            content_length=length,
            total_size=total,
            content_range=content_range,
            last_modified=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
        ))

    async def head(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[StoredObject, VaultError]:
        """Get object metadata."""
        self._metrics.head_count += 1
        found = await self._stat_object(key, visibility, "head")
        if found.is_err():
            return found
        _, stat, content_type = found.unwrap()
        return Ok(StoredObject(
            key=key,
            size_bytes=stat.st_size,
            content_type=content_type,
            last_modified=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
            visibility=visibility,
        ))

    async def delete(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[bool, VaultError]:
        """Delete object and its metadata; an absent file is not an error."""
        path_result = self._key_to_path(key, visibility)
        if path_result.is_err():
            return path_result
        path = path_result.unwrap()

        removed = True
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            removed = False
        except OSError as e:
            error = BackendError.operation_failed("delete", key.value, cause=e)
            self._metrics.record_error(error)
            return Err(error)

        try:
            await asyncio.to_thread(self._meta_path(path, visibility).unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Metadata for %s not removed: %s", key, e)

        if removed:
            self._metrics.delete_count += 1
        return Ok(removed)


async def _read_file_span(path: Path, offset: int, length: int) -> AsyncIterator[bytes]:
    """Yield exactly `length` bytes from `offset`, in fixed-size chunks."""
    handle = await asyncio.to_thread(open, path, "rb")
    try:
        if offset:
            await asyncio.to_thread(handle.seek, offset)
        remaining = length
        while remaining > 0:
            chunk = await asyncio.to_thread(handle.read, min(C.STREAM_CHUNK_BYTES, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


def _discard(*paths: Path) -> None:
    for path in paths:
        path.unlink(missing_ok=True)


def _load_content_type(meta: Path, key: ObjectKey) -> str:
    """Declared content type from the sidecar; guessed from the name when none was stored."""
    try:
        document = json.loads(meta.read_text("utf-8"))
        stored = document.get("content_type") if isinstance(document, dict) else None
    except FileNotFoundError:
        stored = None
    except ValueError:
        logger.warning("Unreadable metadata for %s, guessing content type", key)
        stored = None
    return stored or _guess_content_type(key)


def _guess_content_type(key: ObjectKey) -> str:
    guessed, _ = mimetypes.guess_type(key.name)
    return guessed or C.DEFAULT_CONTENT_TYPE
