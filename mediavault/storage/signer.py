"""
URL Signing
===========

Issues time-limited (or explicitly non-expiring) access URLs for stored
objects. Raw credentials never appear in a produced capability.

Decision Table (first match wins):
----------------------------------
| # | Driver | Visibility | Condition                         | Kind       | Default TTL |
|---|--------|------------|-----------------------------------|------------|-------------|
| 1 | local  | any        |                                   | LOCAL_PATH | none        |
| 2 | s3     | public     | public bucket configured          | PUBLIC     | none        |
| 3 | s3     | public     | no public bucket, ACL allowed     | PUBLIC_ACL | none        |
| 4 | s3     | public     | no public bucket, ACL disallowed  | PRESIGNED  | 24 h        |
| 5 | s3     | private    | CDN namespace and CDN configured  | CDN_SIGNED | 15 min      |
| 6 | s3     | private    | otherwise                         | PRESIGNED  | 15 min      |

Presigned TTLs are capped at 7 days (SigV4 limit); `expires_at` always
reflects the lifetime actually signed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union
from urllib.parse import quote

from botocore.signers import CloudFrontSigner
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mediavault.core import constants as C
from mediavault.core.config import BackendKind, CDNConfig, StorageConfig
from mediavault.core.errors import BackendError, VaultError
from mediavault.core.types import Err, ObjectKey, Ok, Result, Visibility
from mediavault.storage.backends import StorageBackend
from mediavault.storage.keys import KeyNormalizer

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CapabilityKind(Enum):
    LOCAL_PATH = "local_path"
    PUBLIC = "public"
    PUBLIC_ACL = "public_acl"
    PRESIGNED = "presigned"
    CDN_SIGNED = "cdn_signed"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True, slots=True)
class AccessCapability:
    """
    A URL granting access to one object.

    `expires_at` is None for non-expiring URLs. `key` is the normalized
    object key, or the stored URL itself for passthrough references.
    """
    key: str
    url: str
    expires_at: Optional[datetime]
    kind: CapabilityKind
    method: str = "GET"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Wire shape handed to clients."""
        return {
            "key": self.key,
            "url": self.url,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


# =============================================================================
# CLOUDFRONT
# =============================================================================

class CDNSigner:
    """
    CloudFront canned-policy signer (RSA-SHA1 over the policy).

    Raises:
        ValueError: the private key is not a PEM-encoded RSA key.
    """

    __slots__ = ("_config", "_private_key", "_signer")

    def __init__(self, config: CDNConfig) -> None:
        if not config.enabled:
            raise ValueError("CDN signing needs domain, key pair id and private key")
        self._config = config
        private_key = serialization.load_pem_private_key(
            config.private_key_pem.encode("utf-8"),  # type: ignore[union-attr]
            password=None,
        )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("CloudFront signing requires an RSA private key")
        self._private_key = private_key
        self._signer = CloudFrontSigner(config.key_pair_id, self._rsa_sign)

    def _rsa_sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message, padding.PKCS1v15(), hashes.SHA1())

    def covers(self, key: ObjectKey) -> bool:
        return key.namespace in self._config.namespaces

    def sign(self, key: ObjectKey, expires_at: datetime) -> str:
        url = f"{self._config.base_url}/{quote(key.value, safe='/')}"
        return self._signer.generate_presigned_url(url, date_less_than=expires_at)


# =============================================================================
# URL SIGNER
# =============================================================================

class URLSigner:
    """Produces AccessCapabilities according to the decision table above."""

    __slots__ = ("_config", "_backend", "_normalizer", "_cdn", "_clock")

    def __init__(
        self,
        config: StorageConfig,
        backend: StorageBackend,
        normalizer: Optional[KeyNormalizer] = None,
        cdn: Optional[CDNSigner] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config
        self._backend = backend
        self._normalizer = normalizer or KeyNormalizer(config.namespaces)
        self._cdn = cdn
        self._clock = clock

    async def url_for(
        self,
        key: ObjectKey,
        visibility: Visibility = Visibility.PRIVATE,
        ttl: Optional[int] = None,
    ) -> Result[AccessCapability, VaultError]:
        """Issue a read URL for `key`."""
        if ttl is not None and ttl <= 0:
            return Err(BackendError.signing_failed(
                key.value, "get_object", cause=ValueError(f"ttl must be > 0, got {ttl}"),
            ))

        # Case 1: local driver
        if self._backend.kind is BackendKind.LOCAL:
            local = self._config.local
            url = f"{local.public_base_url}{local.url_for(key.value, visibility)}"
            return Ok(AccessCapability(key.value, url, None, CapabilityKind.LOCAL_PATH))

        store = self._config.object_store
        signing = self._config.signing

        if visibility is Visibility.PUBLIC:
            # Case 2: dedicated public bucket
            if store.public_bucket:
                if store.public_url_base:
                    url = f"{store.public_url_base}/{quote(key.value, safe='/')}"
                else:
                    url = store.object_url(store.public_bucket, key.value)
                return Ok(AccessCapability(key.value, url, None, CapabilityKind.PUBLIC))
            # Case 3: published in the private bucket by ACL
            if store.allow_public_acl:
                url = store.object_url(store.private_bucket or "", key.value)
                return Ok(AccessCapability(key.value, url, None, CapabilityKind.PUBLIC_ACL))
            # Case 4: public intent, private placement
            return await self._presign(key, visibility, ttl or signing.public_ttl_s)

        # Case 5: CDN-fronted namespaces
        if self._cdn is not None and self._cdn.covers(key):
            expires_at = self._clock() + timedelta(seconds=ttl or signing.private_ttl_s)
            try:
                url = self._cdn.sign(key, expires_at)
            except (ValueError, TypeError) as e:
                return Err(BackendError.signing_failed(key.value, "cloudfront", cause=e))
            return Ok(AccessCapability(key.value, url, expires_at, CapabilityKind.CDN_SIGNED))

        # Case 6
        return await self._presign(key, visibility, ttl or signing.private_ttl_s)

    async def upload_url_for(
        self,
        key: ObjectKey,
        content_type: str,
        visibility: Visibility = Visibility.PRIVATE,
        ttl: Optional[int] = None,
    ) -> Result[AccessCapability, VaultError]:
        """Issue a presigned PUT so a client can upload `key` directly."""
        if self._backend.kind is BackendKind.LOCAL:
            return Err(BackendError.unsupported("direct upload URLs", BackendKind.LOCAL.value))
        if ttl is not None and ttl <= 0:
            return Err(BackendError.signing_failed(
                key.value, "put_object", cause=ValueError(f"ttl must be > 0, got {ttl}"),
            ))
        return await self._presign(
            key, visibility, ttl or self._config.signing.upload_ttl_s,
            method="put_object", content_type=content_type,
        )

    async def _presign(
        self,
        key: ObjectKey,
        visibility: Visibility,
        ttl: int,
        method: str = "get_object",
        content_type: Optional[str] = None,
    ) -> Result[AccessCapability, VaultError]:
        effective = min(ttl, C.MAX_PRESIGN_TTL_S)
        if effective < ttl:
            logger.debug("Capping presign TTL for %s from %ds to %ds", key, ttl, effective)
        issued_at = self._clock()
        presigned = await self._backend.presign(  # type: ignore[attr-defined]
            key, visibility, effective, method=method, content_type=content_type,
        )
        if presigned.is_err():
            return presigned
        return Ok(AccessCapability(
            key=key.value,
            url=presigned.unwrap(),
            expires_at=issued_at + timedelta(seconds=effective),
            kind=CapabilityKind.PRESIGNED,
            method="PUT" if method == "put_object" else "GET",
        ))

    # -------------------------------------------------------------------------
    # STORED REFERENCES
    # -------------------------------------------------------------------------

    async def sign_reference(
        self,
        ref: Union[str, Mapping[str, Any], ObjectKey, Any, None],
        ttl: Optional[int] = None,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> Optional[AccessCapability]:
        """
        Sign whatever a record stored for its media.

        Accepts absolute http(s) URLs (returned unchanged), JSON strings or
        mappings carrying a "key", objects with a `key` attribute, and raw
        keys. Anything unusable is logged and yields None so one bad record
        never fails a listing.
        """
        raw = _extract_key(ref)
        if raw is None:
            return None
        if raw.startswith(("http://", "https://")):
            return AccessCapability(raw, raw, None, CapabilityKind.PASSTHROUGH)

        normalized = self._normalizer.normalize(raw)
        if normalized.is_err():
            logger.warning("Unsignable media reference %r: %s", raw, normalized.error)
            return None

        signed = await self.url_for(normalized.unwrap(), visibility, ttl)
        if signed.is_err():
            logger.warning("Signing %s failed: %s", normalized.unwrap(), signed.error)
            return None
        return signed.unwrap()


def _extract_key(ref: Any) -> Optional[str]:
    if ref is None:
        return None
    if isinstance(ref, ObjectKey):
        return ref.value
    if isinstance(ref, Mapping):
        value = ref.get("key")
        if isinstance(value, (str, ObjectKey)):
            return _extract_key(value)
        return None
    if isinstance(ref, str):
        text = ref.strip()
        if text.startswith("{"):
            try:
                decoded = json.loads(text)
            except ValueError:
                logger.warning("Media reference is not valid JSON: %.80r", text)
                return None
            return _extract_key(decoded) if isinstance(decoded, Mapping) else None
        return text or None
    value = getattr(ref, "key", None)
    return _extract_key(value) if isinstance(value, (str, ObjectKey)) else None
