"""
Content Store Facade
====================

Single entry point for the routing layer. Wires KeyNormalizer,
UploadPlanner, URLSigner and RangeStreamer around one backend driver.

Usage:
    config = StorageConfig.from_env().unwrap()
    store = create_store(config)            # raises ConfigurationError

    saved = await store.upload("posts/clip.mp4", Path("/tmp/clip.mp4"))
    read = await store.read("posts/clip.mp4", range_header="bytes=0-99")
    link = await store.url_for("posts/clip.mp4")
    await store.delete("posts/clip.mp4")    # never raises
    await store.close()

Every operation except `delete` and `sign_reference` returns a Result.
"""

from __future__ import annotations

import mimetypes
from typing import Any, Mapping, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm

from mediavault.core import constants as C
from mediavault.core.config import BackendKind, StorageConfig
from mediavault.core.errors import (
    BackendError,
    ConfigurationError,
    InvalidKeyError,
    NotFoundError,
    VaultError,
)
from mediavault.core.types import (
    FilePayload,
    ObjectKey,
    Result,
    UploadRequest,
    Visibility,
    payload_of,
)
from mediavault.observability.logging import StructuredLogger
from mediavault.reliability.retry import RetryPolicy
from mediavault.storage.backends import LocalBackend, StorageBackend, StoredObject
from mediavault.storage.keys import KeyNormalizer
from mediavault.storage.planner import UploadPlanner
from mediavault.storage.s3_store import S3Backend
from mediavault.storage.signer import AccessCapability, CDNSigner, Clock, URLSigner, utcnow
from mediavault.storage.streamer import RangeStreamer, ReadResult

_log = StructuredLogger(__name__)

KeyLike = Union[str, ObjectKey]


class ContentStore:
    """Content storage and delivery for one process."""

    __slots__ = ("_config", "_backend", "_normalizer", "_planner", "_signer", "_streamer")

    def __init__(
        self,
        config: StorageConfig,
        backend: StorageBackend,
        normalizer: KeyNormalizer,
        planner: UploadPlanner,
        signer: URLSigner,
        streamer: RangeStreamer,
    ) -> None:
        self._config = config
        self._backend = backend
        self._normalizer = normalizer
        self._planner = planner
        self._signer = signer
        self._streamer = streamer

    @property
    def config(self) -> StorageConfig:
        return self._config

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def normalizer(self) -> KeyNormalizer:
        return self._normalizer

    def new_key(
        self,
        namespace: str = C.DEFAULT_NAMESPACE,
        original_name: str = "",
        owner: Optional[Union[str, int]] = None,
    ) -> ObjectKey:
        """Fresh unique key, e.g. products/<owner>/<hex>.jpg"""
        return self._normalizer.generate(namespace, original_name, owner)

    # -------------------------------------------------------------------------
    # WRITE
    # -------------------------------------------------------------------------

    async def upload(
        self,
        key: KeyLike,
        content: Any,
        content_type: Optional[str] = None,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
        *,
        size: Optional[int] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> Result[StoredObject, VaultError]:
        """
        Store `content` under `key`.

        `content` may be bytes, a filesystem path, a binary stream, or an
        (async) iterable of byte chunks. The content type defaults to a guess
        from the key or file name.

        Raises:
            TypeError: content is none of the accepted shapes.
        """
        normalized = self._normalizer.normalize(key)
        if normalized.is_err():
            return normalized
        object_key = normalized.unwrap()
        payload = payload_of(content, size)
        visibility = Visibility.parse(visibility)

        if content_type is None:
            content_type = _guess_type(object_key.name)
            if content_type is None and isinstance(payload, FilePayload):
                content_type = _guess_type(payload.path.name)
        request = UploadRequest(
            key=object_key,
            payload=payload,
            content_type=content_type or C.DEFAULT_CONTENT_TYPE,
            visibility=visibility,
            metadata=dict(metadata or {}),
        )

        with _log.context(op="upload", key=object_key.value, backend=self._backend.kind.value):
            result = await self._planner.execute(self._backend, request)
            if result.is_err():
                _log.error("Upload failed", event="storage.upload_failed", error=result.error.to_dict())
            else:
                _log.info("Stored object", event="storage.put", size_bytes=result.unwrap().size_bytes)
        return result

    # -------------------------------------------------------------------------
    # READ
    # -------------------------------------------------------------------------

    async def read(
        self,
        key: KeyLike,
        range_header: Optional[str] = None,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
    ) -> Result[ReadResult, VaultError]:
        """Open an object, honoring a single satisfiable byte range."""
        normalized = self._normalizer.normalize(key)
        if normalized.is_err():
            return normalized
        object_key = normalized.unwrap()

        with _log.context(op="read", key=object_key.value):
            result = await self._streamer.read(object_key, range_header, Visibility.parse(visibility))
            if result.is_ok():
                opened = result.unwrap()
                _log.debug("Opened object", event="storage.read", status=opened.status,
                           content_length=opened.content_length)
            elif not result.error.is_not_found:
                _log.error("Read failed", event="storage.read_failed", error=result.error.to_dict())
        return result

    async def head(
        self,
        key: KeyLike,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
    ) -> Result[StoredObject, VaultError]:
        normalized = self._normalizer.normalize(key)
        if normalized.is_err():
            return normalized
        return await self._backend.head(normalized.unwrap(), Visibility.parse(visibility))

    # -------------------------------------------------------------------------
    # LINKS
    # -------------------------------------------------------------------------

    async def url_for(
        self,
        key: KeyLike,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
        ttl: Optional[int] = None,
    ) -> Result[AccessCapability, VaultError]:
        """Read URL for `key`; see URLSigner for the decision table."""
        normalized = self._normalizer.normalize(key)
        if normalized.is_err():
            return normalized
        return await self._signer.url_for(normalized.unwrap(), Visibility.parse(visibility), ttl)

    async def upload_url_for(
        self,
        key: KeyLike,
        content_type: str,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
        ttl: Optional[int] = None,
    ) -> Result[AccessCapability, VaultError]:
        """Presigned PUT for direct client uploads (object store only)."""
        normalized = self._normalizer.normalize(key)
        if normalized.is_err():
            return normalized
        return await self._signer.upload_url_for(
            normalized.unwrap(), content_type, Visibility.parse(visibility), ttl,
        )

    async def sign_reference(
        self,
        ref: Any,
        ttl: Optional[int] = None,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
    ) -> Optional[AccessCapability]:
        """Sign a stored media reference; None when it cannot be signed."""
        return await self._signer.sign_reference(ref, ttl, Visibility.parse(visibility))

    # -------------------------------------------------------------------------
    # DELETE
    # -------------------------------------------------------------------------

    async def delete(
        self,
        key: KeyLike,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
    ) -> bool:
        """
        Remove an object. Never raises.

        Invalid keys and backend failures are logged at WARNING and reported
        as False. A key that never existed is a silent no-op (DEBUG, False).
        True means an object was removed.
        """
        normalized = self._normalizer.normalize(key)
        if normalized.is_err():
            _log.warning("Delete skipped", event="storage.delete_failed",
                         key=str(key), reason="invalid_key", error=normalized.error.to_dict())
            return False
        object_key = normalized.unwrap()

        result = await self._backend.delete(object_key, Visibility.parse(visibility))
        if result.is_err():
            _log.warning("Delete failed", event="storage.delete_failed",
                         key=object_key.value, reason="backend_error", error=result.error.to_dict())
            return False
        if not result.unwrap():
            _log.debug("Nothing to delete", event="storage.delete_noop", key=object_key.value)
            return False
        _log.info("Deleted object", event="storage.delete", key=object_key.value)
        return True

    async def close(self) -> None:
        await self._backend.close()

    async def __aenter__(self) -> ContentStore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _guess_type(name: str) -> Optional[str]:
    guessed, _ = mimetypes.guess_type(name)
    return guessed


# =============================================================================
# FACTORY
# =============================================================================

def create_store(
    config: StorageConfig,
    *,
    client: Any = None,
    retry_policy: Optional[RetryPolicy] = None,
    clock: Clock = utcnow,
) -> ContentStore:
    """
    Build the process-wide ContentStore.

    Args:
        config: Validated here; switching drivers needs a new process.
        client: Pre-built S3 client (tests inject an in-memory fake).
        retry_policy: Per-part retry policy for multipart uploads.
        clock: Time source for capability expiry.

    Raises:
        ConfigurationError: configuration is invalid or incomplete.
    """
    validated = config.validate()
    if validated.is_err():
        raise validated.error

    backend: StorageBackend
    if config.backend is BackendKind.S3:
        backend = S3Backend(config.object_store, config.encryption, client=client)
    else:
        try:
            backend = LocalBackend(config.local)
        except OSError as e:
            raise ConfigurationError.invalid("local_root", config.local.root, str(e)) from e

    cdn: Optional[CDNSigner] = None
    if config.backend is BackendKind.S3 and config.cdn.enabled:
        try:
            cdn = CDNSigner(config.cdn)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise ConfigurationError.invalid("cdn_private_key", "<redacted>", str(e)) from e

    normalizer = KeyNormalizer(config.namespaces)
    planner = UploadPlanner(
        part_size=config.object_store.part_size,
        max_concurrency=config.object_store.max_concurrency,
        retry_policy=retry_policy or RetryPolicy(
            max_retries=config.object_store.max_retries,
            retryable_exceptions=(BackendError,),
            non_retryable_exceptions=(NotFoundError, InvalidKeyError),
        ),
    )
    signer = URLSigner(config, backend, normalizer=normalizer, cdn=cdn, clock=clock)

    _log.info("Content store ready", event="storage.ready", backend=config.backend.value,
              cdn=cdn is not None)
    return ContentStore(
        config=config,
        backend=backend,
        normalizer=normalizer,
        planner=planner,
        signer=signer,
        streamer=RangeStreamer(backend),
    )
