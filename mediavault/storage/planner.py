"""
Upload Planning and Execution
=============================

Chooses how a payload is written and drives the chosen strategy.

Strategy Table:
---------------
| Payload        | Driver multipart | Size            | Strategy            |
|----------------|------------------|-----------------|---------------------|
| bytes          | any              | any             | SINGLE_PUT          |
| file / stream  | no               | any             | SINGLE_PUT (streamed)|
| file / stream  | yes              | <= part size    | SINGLE_PUT          |
| file / stream  | yes              | > part size     | MULTIPART           |
| stream         | yes              | unknown         | MULTIPART*          |

* A stream of unknown size whose first part is also its last is written
  with one request; no multipart upload is ever opened for it.

Memory Model:
-------------
A semaphore slot is taken before each part is read, so at most
`max_concurrency` parts are buffered and in flight at once
(4 x 8 MiB = 32 MiB by default).

Atomicity:
----------
Any part failure (after retries) or cancellation cancels the other parts
and aborts the upload; S3 discards the uploaded parts and the key never
becomes readable.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional

from mediavault.core import constants as C
from mediavault.core.errors import (
    BackendError,
    InvalidKeyError,
    NotFoundError,
    UploadAbortedError,
    VaultError,
)
from mediavault.core.types import (
    BytesPayload,
    Err,
    FilePayload,
    Ok,
    Payload,
    Result,
    StreamPayload,
    UploadRequest,
)
from mediavault.reliability.retry import RetryExhausted, RetryPolicy, retry_with_backoff
from mediavault.storage.backends import StorageBackend, StoredObject

logger = logging.getLogger(__name__)


class Strategy(Enum):
    SINGLE_PUT = "single_put"
    MULTIPART = "multipart"


@dataclass(frozen=True, slots=True)
class UploadPlan:
    """
    How a payload will be written.

    `part_sizes` lists every planned part when the size is known up front
    and the strategy is MULTIPART; otherwise None.
    """
    strategy: Strategy
    part_size: int
    total_size: Optional[int] = None
    part_sizes: Optional[tuple[int, ...]] = None

    @property
    def part_count(self) -> Optional[int]:
        if self.strategy is Strategy.SINGLE_PUT:
            return 1
        return len(self.part_sizes) if self.part_sizes is not None else None


def split_parts(total_size: int, part_size: int) -> tuple[int, ...]:
    """Sizes of consecutive parts covering `total_size` bytes."""
    full, rest = divmod(total_size, part_size)
    return (part_size,) * full + ((rest,) if rest else ())


# =============================================================================
# PAYLOAD READER
# =============================================================================

class PayloadReader:
    """
    Uniform async `read(n)` over every payload variant.

    Blocking reads (files, sync file-likes) run in worker threads. Files
    opened here are closed by `aclose()`; caller-owned streams are not.
    """

    __slots__ = ("_payload", "_handle", "_offset", "_iterator", "_buffer", "_eof")

    def __init__(self, payload: Payload) -> None:
        self._payload = payload
        self._handle: Any = None
        self._offset = 0
        self._iterator: Any = None
        self._buffer = bytearray()
        self._eof = False

    async def read(self, size: int) -> bytes:
        """Read up to `size` bytes; short only at end of payload."""
        if size <= 0:
            return b""
        payload = self._payload
        if isinstance(payload, BytesPayload):
            chunk = payload.data[self._offset:self._offset + size]
            self._offset += len(chunk)
            return chunk

        while len(self._buffer) < size and not self._eof:
            chunk = await self._read_raw(size - len(self._buffer))
            if not chunk:
                self._eof = True
                break
            self._buffer += chunk

        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def chunks(self, chunk_size: int = C.STREAM_CHUNK_BYTES) -> AsyncIterator[bytes]:
        """Iterate the remaining payload in chunks of at most `chunk_size`."""
        while True:
            chunk = await self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    async def _read_raw(self, size: int) -> bytes:
        payload = self._payload
        if isinstance(payload, FilePayload):
            if self._handle is None:
                self._handle = await asyncio.to_thread(open, payload.path, "rb")
            return await asyncio.to_thread(self._handle.read, size)

        assert isinstance(payload, StreamPayload)
        source = payload.source
        read = getattr(source, "read", None)
        if read is not None:
            if inspect.iscoroutinefunction(read):
                data = await read(size)
            else:
                data = await asyncio.to_thread(read, size)
            return bytes(data or b"")

        if self._iterator is None:
            self._iterator = source.__aiter__() if hasattr(source, "__aiter__") else iter(source)
        if hasattr(self._iterator, "__anext__"):
            try:
                return bytes(await self._iterator.__anext__())
            except StopAsyncIteration:
                return b""
        return bytes(next(self._iterator, b""))

    async def aclose(self) -> None:
        if self._handle is not None:
            await asyncio.to_thread(self._handle.close)
            self._handle = None


# =============================================================================
# PLANNER
# =============================================================================

class UploadPlanner:
    """
    Plans and executes uploads against one driver.

    Example:
        >>> planner = UploadPlanner(part_size=8 * MB, max_concurrency=4)
        >>> planner.plan(FilePayload(Path("movie.mp4")), supports_multipart=True)
        UploadPlan(strategy=<Strategy.MULTIPART: 'multipart'>, ...)
    """

    __slots__ = ("_part_size", "_max_concurrency", "_retry_policy")

    def __init__(
        self,
        part_size: int = C.MULTIPART_PART_SIZE_BYTES,
        max_concurrency: int = C.MULTIPART_MAX_CONCURRENCY,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        if part_size <= 0:
            raise ValueError(f"part_size must be > 0, got {part_size}")
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {max_concurrency}")
        self._part_size = part_size
        self._max_concurrency = max_concurrency
        self._retry_policy = retry_policy or RetryPolicy(
            retryable_exceptions=(BackendError,),
            non_retryable_exceptions=(NotFoundError, InvalidKeyError),
        )

    @property
    def part_size(self) -> int:
        return self._part_size

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def plan(self, payload: Payload, supports_multipart: bool) -> UploadPlan:
        """
        Choose a strategy for `payload`.

        Raises:
            OSError: a file payload cannot be stat'ed.
        """
        if isinstance(payload, BytesPayload):
            return UploadPlan(Strategy.SINGLE_PUT, self._part_size, total_size=payload.size)

        if isinstance(payload, FilePayload):
            size: Optional[int] = payload.size
        elif isinstance(payload, StreamPayload):
            size = payload.size
        else:
            raise TypeError(f"unsupported payload type: {type(payload).__name__}")

        if not supports_multipart or (size is not None and size <= self._part_size):
            return UploadPlan(Strategy.SINGLE_PUT, self._part_size, total_size=size)

        part_sizes = split_parts(size, self._part_size) if size is not None else None
        return UploadPlan(Strategy.MULTIPART, self._part_size, total_size=size, part_sizes=part_sizes)

    async def execute(
        self,
        backend: StorageBackend,
        request: UploadRequest,
    ) -> Result[StoredObject, VaultError]:
        """Write `request` using the planned strategy."""
        try:
            plan = self.plan(request.payload, backend.supports_multipart)
        except OSError as e:
            return Err(BackendError.operation_failed("upload", request.key.value, cause=e))

        logger.debug("Upload plan for %s: %s", request.key, plan)
        payload = request.payload
        if plan.strategy is Strategy.SINGLE_PUT and isinstance(payload, BytesPayload):
            return await backend.put(request, payload.data)

        reader = PayloadReader(payload)
        try:
            if plan.strategy is Strategy.SINGLE_PUT:
                return await backend.put(request, reader.chunks())
            return await self._multipart(backend, request, reader)
        except OSError as e:
            return Err(BackendError.operation_failed("upload", request.key.value, cause=e))
        finally:
            await reader.aclose()

    # -------------------------------------------------------------------------
    # MULTIPART
    # -------------------------------------------------------------------------

    async def _multipart(
        self,
        backend: StorageBackend,
        request: UploadRequest,
        reader: PayloadReader,
    ) -> Result[StoredObject, VaultError]:
        first = await reader.read(self._part_size)
        second = await reader.read(self._part_size) if len(first) == self._part_size else b""
        if not second:
            # Whole payload fits in one part
            return await backend.put(request, first)

        created = await backend.create_multipart(request)
        if created.is_err():
            return created
        upload_id = created.unwrap()

        semaphore = asyncio.Semaphore(self._max_concurrency)
        failed = asyncio.Event()
        tasks: list[asyncio.Task] = []
        total = 0
        pending = [first, second]

        try:
            while not failed.is_set():
                await semaphore.acquire()
                if failed.is_set():
                    semaphore.release()
                    break
                try:
                    data = pending.pop(0) if pending else await reader.read(self._part_size)
                except BaseException:
                    semaphore.release()
                    raise
                if not data:
                    semaphore.release()
                    break
                total += len(data)
                tasks.append(asyncio.create_task(self._send_part(
                    backend, request, upload_id, len(tasks) + 1, data, semaphore, failed,
                )))

            if failed.is_set():
                await _cancel_all(tasks)
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except OSError as e:
            await _cancel_all(tasks)
            await self._abort(backend, request, upload_id)
            return Err(UploadAbortedError.after_part(
                request.key.value, upload_id, len(tasks) + 1, _count_ok(tasks), cause=e,
            ))
        except BaseException:
            # Cancellation or a failing caller stream: discard parts, then propagate
            await _cancel_all(tasks)
            await self._abort(backend, request, upload_id)
            raise

        parts = [outcome.unwrap() for outcome in outcomes if isinstance(outcome, Ok)]
        # A part that failed outright outranks the parts cancelled because of it
        failure: Optional[tuple[int, BaseException]] = next(
            (outcome.error for outcome in outcomes if isinstance(outcome, Err)), None,
        )
        if failure is None:
            failure = next(
                ((number, outcome) for number, outcome in enumerate(outcomes, start=1)
                 if isinstance(outcome, BaseException)),
                None,
            )

        if failure is not None:
            part_number, cause = failure
            await self._abort(backend, request, upload_id)
            return Err(UploadAbortedError.after_part(
                request.key.value, upload_id, part_number, len(parts), cause=cause,
            ))

        completed = await backend.complete_multipart(request, upload_id, parts, total)
        if completed.is_err():
            await self._abort(backend, request, upload_id)
            return Err(UploadAbortedError.after_part(
                request.key.value, upload_id, len(parts), len(parts), cause=completed.error,
            ))

        logger.info("Multipart upload of %s complete (%d parts, %d bytes)",
                    request.key, len(parts), total)
        return completed

    async def _send_part(
        self,
        backend: StorageBackend,
        request: UploadRequest,
        upload_id: str,
        part_number: int,
        data: bytes,
        semaphore: asyncio.Semaphore,
        failed: asyncio.Event,
    ) -> Result[dict[str, Any], tuple[int, BaseException]]:
        async def attempt() -> dict[str, Any]:
            result = await backend.upload_part(request, upload_id, part_number, data)
            if result.is_err():
                raise result.error
            return result.unwrap()

        try:
            outcome = await retry_with_backoff(
                attempt, self._retry_policy, operation=f"upload_part[{part_number}]",
            )
            if outcome.is_err():
                exhausted: RetryExhausted = outcome.error
                failed.set()
                logger.warning("Part %d of %s failed: %s", part_number, request.key, exhausted)
                return Err((part_number, exhausted.last_error))
            return outcome
        finally:
            semaphore.release()

    async def _abort(self, backend: StorageBackend, request: UploadRequest, upload_id: str) -> None:
        aborted = await asyncio.shield(backend.abort_multipart(request, upload_id))
        if aborted.is_err():
            logger.error("Abort of upload %s for %s failed: %s", upload_id, request.key, aborted.error)
        else:
            logger.error("Multipart upload of %s aborted", request.key,
                         extra={"event": "storage.multipart_aborted", "upload_id": upload_id})


async def _cancel_all(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def _count_ok(tasks: list[asyncio.Task]) -> int:
    return sum(
        1 for task in tasks
        if task.done() and not task.cancelled() and task.exception() is None and task.result().is_ok()
    )
