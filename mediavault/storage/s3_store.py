"""
S3-Compatible Object Store Driver
=================================

Backend driver for AWS S3 and S3-compatible services (Lightsail buckets,
Cloudflare R2, MinIO) built on aioboto3.

Design Principles:
------------------
1. **Streaming**: Range reads return the HTTP body unbuffered
2. **Multipart Primitives**: create/upload/complete/abort, driven by UploadPlanner
3. **Result Monad**: No exceptions for control flow
4. **Presigned URLs**: Direct client uploads/downloads
5. **Two Buckets**: Private bucket required; optional public bucket

Bucket Selection:
-----------------
| Visibility | Public bucket configured | Bucket  |
|------------|--------------------------|---------|
| PUBLIC     | yes                      | public  |
| PUBLIC     | no                       | private |
| PRIVATE    | either                   | private |

Error Mapping:
--------------
NoSuchKey / 404 / NotFound -> NotFoundError
InvalidRange               -> retried once without a range (full object)
timeouts                   -> BackendError(STORAGE_TIMEOUT)
anything else from botocore-> BackendError(STORAGE_BACKEND_FAILURE)
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import aioboto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from mediavault.core import constants as C
from mediavault.core.config import BackendKind, EncryptionConfig, ObjectStoreConfig
from mediavault.core.errors import (
    BackendError,
    NotFoundError,
    RangeUnsatisfiableError,
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
from mediavault.storage.backends import PutBody, StorageBackend, StoredObject
from mediavault.storage.streamer import ObjectStream, ReadResult

logger = logging.getLogger(__name__)

# Failures surfaced by aiobotocore calls
S3_FAILURES = (BotoCoreError, ClientError, asyncio.TimeoutError, OSError)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound", "NoSuchUpload"})


def map_s3_error(error: BaseException, operation: str, key: str) -> VaultError:
    """Translate a botocore failure into the mediavault error hierarchy."""
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _NOT_FOUND_CODES or (status == 404 and operation in ("read", "head")):
            return NotFoundError.for_key(key, cause=error)
        if code == "InvalidRange" or status == 416:
            return RangeUnsatisfiableError.for_key(key, "", cause=error)
        return BackendError.operation_failed(operation, key, cause=error)
    if isinstance(error, (asyncio.TimeoutError, ConnectTimeoutError, ReadTimeoutError)):
        return BackendError.timeout(operation, key, cause=error)
    return BackendError.operation_failed(operation, key, cause=error)


def _total_from_content_range(content_range: Optional[str], fallback: int) -> int:
    """Object size from a `bytes a-b/N` header, else `fallback`."""
    if content_range and "/" in content_range:
        total = content_range.rsplit("/", 1)[1]
        if total.isdigit():
            return int(total)
    return fallback


class S3Backend(StorageBackend):
    """
    S3-compatible storage driver.

    Example:
        >>> backend = S3Backend(config.object_store, config.encryption)
        >>> await backend.connect()
        >>> result = await backend.head(ObjectKey("posts/a.jpg"))
        >>> await backend.close()

    A ready client may be injected (tests use an in-memory fake); otherwise
    the aioboto3 client is created on first use.
    """

    kind = BackendKind.S3
    supports_multipart = True

    def __init__(
        self,
        config: ObjectStoreConfig,
        encryption: Optional[EncryptionConfig] = None,
        client: Any = None,
    ) -> None:
        super().__init__()
        if not config.private_bucket:
            raise ValueError("S3Backend requires a private bucket")
        self._config = config
        self._encryption = encryption or EncryptionConfig()
        self._client: Any = client
        self._owns_client = client is None
        self._session: Any = None
        self._connect_lock = asyncio.Lock()

    @property
    def config(self) -> ObjectStoreConfig:
        return self._config

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, VaultError]:
        """
        Initialize the aioboto3 client with a bounded connection pool.

        Safe to call repeatedly; later calls are no-ops.
        """
        async with self._connect_lock:
            if self._client is not None:
                return Ok(None)
            try:
                self._session = aioboto3.Session()

                client_config = Config(
                    max_pool_connections=max(self._config.max_concurrency * 2, 10),
                    connect_timeout=self._config.connect_timeout_seconds,
                    read_timeout=self._config.read_timeout_seconds,
                    retries={"max_attempts": self._config.max_retries},
                    s3={"addressing_style": "path" if self._config.path_style else "auto"},
                )
                client = self._session.client("s3", config=client_config, **self._config.get_boto_config())
                self._client = await client.__aenter__()
            except S3_FAILURES as e:
                error = BackendError.operation_failed("connect", self._config.private_bucket or "", cause=e)
                self._metrics.record_error(error)
                return Err(error)
        logger.info("Connected to object store (private=%s, public=%s)",
                    self._config.private_bucket, self._config.public_bucket)
        return Ok(None)

    async def close(self) -> None:
        """Close the client and release pooled connections."""
        if self._client is not None and self._owns_client:
            await self._client.__aexit__(None, None, None)
            self._client = None

    async def _get_client(self) -> Result[Any, VaultError]:
        if self._client is None:
            connected = await self.connect()
            if connected.is_err():
                return connected
        return Ok(self._client)

    # -------------------------------------------------------------------------
    # ADDRESSING
    # -------------------------------------------------------------------------

    def bucket_for(self, visibility: Visibility) -> str:
        if visibility is Visibility.PUBLIC and self._config.public_bucket:
            return self._config.public_bucket
        return self._config.private_bucket  # type: ignore[return-value]

    def uses_public_acl(self, visibility: Visibility) -> bool:
        """Public objects without a public bucket are published by ACL, when allowed."""
        return (
            visibility is Visibility.PUBLIC
            and not self._config.public_bucket
            and self._config.allow_public_acl
        )

    def object_url(self, key: ObjectKey, visibility: Visibility) -> str:
        """Unsigned URL of the object in its bucket."""
        return self._config.object_url(self.bucket_for(visibility), key.value)

    def _write_params(self, request: UploadRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "Bucket": self.bucket_for(request.visibility),
            "Key": request.key.value,
            "ContentType": request.content_type,
        }
        if request.metadata:
            params["Metadata"] = dict(request.metadata)
        if self.uses_public_acl(request.visibility):
            params["ACL"] = "public-read"
        params.update(self._encryption.put_params())
        return params

    # -------------------------------------------------------------------------
    # CORE OPERATIONS
    # -------------------------------------------------------------------------

    async def put(
        self,
        request: UploadRequest,
        body: PutBody,
    ) -> Result[StoredObject, VaultError]:
        """
        Upload object in a single PutObject call.

        Chunk streams are joined first; the planner only routes streams here
        when they fit in one part.
        """
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        client = client_result.unwrap()

        if not isinstance(body, (bytes, bytearray, memoryview)):
            body = b"".join([chunk async for chunk in body])
        data = bytes(body)

        start_ns = time.perf_counter_ns()
        try:
            response = await client.put_object(Body=data, **self._write_params(request))
        except S3_FAILURES as e:
            error = map_s3_error(e, "put", request.key.value)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.record_upload(len(data), time.perf_counter_ns() - start_ns)
        return Ok(StoredObject(
            key=request.key,
            size_bytes=len(data),
            content_type=request.content_type,
            last_modified=datetime.now(timezone.utc),
            etag=response.get("ETag", "").strip('"'),
            visibility=request.visibility,
        ))

    async def read(
        self,
        key: ObjectKey,
        range_request: Optional[RangeRequest] = None,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[ReadResult, VaultError]:
        """
        Open object for streaming with a native range read.

        ContentLength, ContentRange and AcceptRanges are passed through
        unmodified. An InvalidRange answer is retried without a range.
        """
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        client = client_result.unwrap()

        start_ns = time.perf_counter_ns()
        get_kwargs: dict[str, Any] = {"Bucket": self.bucket_for(visibility), "Key": key.value}
        if range_request is not None:
            get_kwargs["Range"] = range_request.to_http_header()

        try:
            response = await client.get_object(**get_kwargs)
        except S3_FAILURES as e:
            error = map_s3_error(e, "read", key.value)
            if isinstance(error, RangeUnsatisfiableError) and "Range" in get_kwargs:
                logger.debug("Range %s unsatisfiable for %s, serving full object",
                             get_kwargs["Range"], key)
                return await self.read(key, None, visibility)
            if not error.is_not_found:
                self._metrics.record_error(error)
            return Err(error)

        body = response["Body"]
        length = int(response.get("ContentLength", 0))
        content_range = response.get("ContentRange") or None
        self._metrics.record_download(length, time.perf_counter_ns() - start_ns)

        return Ok(ReadResult(
            key=key,
            stream=ObjectStream(_iter_body(body), length, release=body.close),
            content_type=response.get("ContentType") or C.DEFAULT_CONTENT_TYPE,
            content_length=length,
            total_size=_total_from_content_range(content_range, length),
            content_range=content_range,
            accept_ranges=response.get("AcceptRanges") or "bytes",
            etag=response.get("ETag", "").strip('"'),
            last_modified=response.get("LastModified"),
        ))

    async def head(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[StoredObject, VaultError]:
        """Get object metadata without downloading content."""
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        client = client_result.unwrap()

        try:
            response = await client.head_object(Bucket=self.bucket_for(visibility), Key=key.value)
        except S3_FAILURES as e:
            return Err(map_s3_error(e, "head", key.value))

        self._metrics.head_count += 1
        return Ok(StoredObject(
            key=key,
            size_bytes=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or C.DEFAULT_CONTENT_TYPE,
            last_modified=response.get("LastModified") or datetime.now(timezone.utc),
            etag=response.get("ETag", "").strip('"'),
            visibility=visibility,
        ))

    async def delete(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Result[bool, VaultError]:
        """
        Delete object from its bucket.

        S3 acknowledges deletes of absent keys, so this returns Ok(True)
        whether or not the object existed.
        """
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        client = client_result.unwrap()

        try:
            await client.delete_object(Bucket=self.bucket_for(visibility), Key=key.value)
        except S3_FAILURES as e:
            error = map_s3_error(e, "delete", key.value)
            if error.is_not_found:
                return Ok(False)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.delete_count += 1
        return Ok(True)

    # -------------------------------------------------------------------------
    # MULTIPART PRIMITIVES
    # -------------------------------------------------------------------------

    async def create_multipart(self, request: UploadRequest) -> Result[str, VaultError]:
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        try:
            response = await client_result.unwrap().create_multipart_upload(
                **self._write_params(request),
            )
        except S3_FAILURES as e:
            error = map_s3_error(e, "create_multipart", request.key.value)
            self._metrics.record_error(error)
            return Err(error)
        return Ok(response["UploadId"])

    async def upload_part(
        self,
        request: UploadRequest,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> Result[dict[str, Any], VaultError]:
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        try:
            response = await client_result.unwrap().upload_part(
                Bucket=self.bucket_for(request.visibility),
                Key=request.key.value,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
        except S3_FAILURES as e:
            return Err(map_s3_error(e, f"upload_part[{part_number}]", request.key.value))
        return Ok({"PartNumber": part_number, "ETag": response["ETag"]})

    async def complete_multipart(
        self,
        request: UploadRequest,
        upload_id: str,
        parts: list[dict[str, Any]],
        size_bytes: int,
    ) -> Result[StoredObject, VaultError]:
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result

        start_ns = time.perf_counter_ns()
        try:
            response = await client_result.unwrap().complete_multipart_upload(
                Bucket=self.bucket_for(request.visibility),
                Key=request.key.value,
                UploadId=upload_id,
                # S3 requires ascending part numbers
                MultipartUpload={"Parts": sorted(parts, key=lambda p: p["PartNumber"])},
            )
        except S3_FAILURES as e:
            error = map_s3_error(e, "complete_multipart", request.key.value)
            self._metrics.record_error(error)
            return Err(error)

        self._metrics.multipart_count += 1
        self._metrics.record_upload(size_bytes, time.perf_counter_ns() - start_ns)
        return Ok(StoredObject(
            key=request.key,
            size_bytes=size_bytes,
            content_type=request.content_type,
            last_modified=datetime.now(timezone.utc),
            etag=response.get("ETag", "").strip('"'),
            visibility=request.visibility,
        ))

    async def abort_multipart(
        self,
        request: UploadRequest,
        upload_id: str,
    ) -> Result[None, VaultError]:
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result
        try:
            await client_result.unwrap().abort_multipart_upload(
                Bucket=self.bucket_for(request.visibility),
                Key=request.key.value,
                UploadId=upload_id,
            )
        except S3_FAILURES as e:
            return Err(map_s3_error(e, "abort_multipart", request.key.value))
        self._metrics.multipart_aborts += 1
        return Ok(None)

    # -------------------------------------------------------------------------
    # PRESIGNED URLS
    # -------------------------------------------------------------------------

    async def presign(
        self,
        key: ObjectKey,
        visibility: Visibility,
        expires_in: int,
        method: str = "get_object",
        content_type: Optional[str] = None,
    ) -> Result[str, VaultError]:
        """
        Generate a presigned URL for direct client access.

        Args:
            method: "get_object" or "put_object".
            content_type: Bound into put_object signatures; the client must
                send the same Content-Type.
        """
        client_result = await self._get_client()
        if client_result.is_err():
            return client_result

        params: dict[str, Any] = {"Bucket": self.bucket_for(visibility), "Key": key.value}
        if method == "put_object" and content_type:
            params["ContentType"] = content_type
        try:
            url = await client_result.unwrap().generate_presigned_url(
                ClientMethod=method,
                Params=params,
                ExpiresIn=expires_in,
            )
        except S3_FAILURES as e:
            return Err(BackendError.signing_failed(key.value, method, cause=e))
        return Ok(url)


async def _iter_body(body: Any) -> AsyncIterator[bytes]:
    """Yield an S3 response body in fixed-size chunks."""
    async with body as stream:
        while True:
            chunk = await stream.read(C.STREAM_CHUNK_BYTES)
            if not chunk:
                break
            yield chunk


__all__ = [
    "S3Backend",
    "S3_FAILURES",
    "map_s3_error",
]
