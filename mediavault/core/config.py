"""
Configuration Management for mediavault

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
- One config object built at startup and injected into every component
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from mediavault.core import constants as C
from mediavault.core.errors import ConfigurationError
from mediavault.core.types import Err, Ok, Result, Visibility


class BackendKind(Enum):
    """Physical backend selected for the process."""

    LOCAL = "local"
    S3 = "s3"


SSE_MODES = ("AES256", "aws:kms")


@dataclass(frozen=True)
class LocalConfig:
    """Local filesystem backend configuration."""

    root: Path = field(default_factory=lambda: Path("./uploads"))
    # Path under which the web layer serves the root
    url_prefix: str = "/uploads"
    # Origin prepended to local URLs; empty yields root-relative paths
    public_base_url: str = ""

    def url_for(self, key: str, visibility: Visibility) -> str:
        """Root-relative path of an object: {url_prefix}/{visibility}/{key}."""
        return f"{self.url_prefix}/{visibility.value}/{quote(key, safe='/')}"


@dataclass(frozen=True)
class ObjectStoreConfig:
    """
    S3-compatible object store configuration.

    Supports AWS S3 and S3-compatible stores (Lightsail, R2, MinIO) through
    `endpoint_url`. One credential set serves both buckets.
    """

    private_bucket: Optional[str] = None
    public_bucket: Optional[str] = None
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    force_path_style: bool = False
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    # Origin for public objects, e.g. a CDN in front of the public bucket
    public_url_base: Optional[str] = None
    # Publish public objects with the public-read ACL when no public bucket exists
    allow_public_acl: bool = False
    part_size: int = C.MULTIPART_PART_SIZE_BYTES
    max_concurrency: int = C.MULTIPART_MAX_CONCURRENCY
    connect_timeout_seconds: int = 5
    read_timeout_seconds: int = 60
    max_retries: int = C.RETRY_MAX_ATTEMPTS

    @property
    def path_style(self) -> bool:
        """Custom endpoints are addressed path-style."""
        return self.force_path_style or bool(self.endpoint_url)

    def get_boto_config(self) -> dict[str, Any]:
        """
        Generate client keyword arguments for aioboto3.

        Returns:
            Dict suitable for session.client('s3', **config).
        """
        config: dict[str, Any] = {"region_name": self.region}
        if self.endpoint_url:
            config["endpoint_url"] = self.endpoint_url
        if self.access_key_id and self.secret_access_key:
            config["aws_access_key_id"] = self.access_key_id
            config["aws_secret_access_key"] = self.secret_access_key
        if self.session_token:
            config["aws_session_token"] = self.session_token
        return config

    def object_url(self, bucket: str, key: str) -> str:
        """Unsigned default endpoint URL for an object."""
        key = quote(key, safe="/")
        if self.path_style:
            base = (self.endpoint_url or f"https://s3.{self.region}.amazonaws.com").rstrip("/")
            return f"{base}/{bucket}/{key}"
        return f"https://{bucket}.s3.{self.region}.amazonaws.com/{key}"


@dataclass(frozen=True)
class CDNConfig:
    """CloudFront signed-URL configuration; all or nothing."""

    domain: Optional[str] = None
    key_pair_id: Optional[str] = None
    private_key_pem: Optional[str] = None
    namespaces: tuple[str, ...] = C.CDN_NAMESPACES

    @property
    def enabled(self) -> bool:
        return bool(self.domain and self.key_pair_id and self.private_key_pem)

    @property
    def base_url(self) -> str:
        domain = (self.domain or "").rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"


@dataclass(frozen=True)
class EncryptionConfig:
    """Server-side encryption applied to every write."""

    mode: Optional[str] = None  # None, "AES256" or "aws:kms"
    kms_key_id: Optional[str] = None

    def put_params(self) -> dict[str, str]:
        """Extra arguments for PutObject/CreateMultipartUpload."""
        if not self.mode:
            return {}
        params = {"ServerSideEncryption": self.mode}
        if self.mode == "aws:kms" and self.kms_key_id:
            params["SSEKMSKeyId"] = self.kms_key_id
        return params


@dataclass(frozen=True)
class SigningConfig:
    """Default lifetimes (seconds) for issued URLs."""

    public_ttl_s: int = C.PUBLIC_PRESIGN_TTL_S
    private_ttl_s: int = C.PRIVATE_PRESIGN_TTL_S
    upload_ttl_s: int = C.UPLOAD_PRESIGN_TTL_S


@dataclass(frozen=True)
class NamespaceConfig:
    """Recognized first path segments of object keys."""

    allowed: tuple[str, ...] = C.NAMESPACES
    default: str = C.DEFAULT_NAMESPACE


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class StorageConfig:
    """Root configuration for mediavault."""

    backend: BackendKind = BackendKind.LOCAL
    local: LocalConfig = field(default_factory=LocalConfig)
    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    cdn: CDNConfig = field(default_factory=CDNConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    namespaces: NamespaceConfig = field(default_factory=NamespaceConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls, prefix: str = "MEDIAVAULT") -> Result[StorageConfig, ConfigurationError]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with `prefix`.
        Example: MEDIAVAULT_DRIVER, MEDIAVAULT_S3_PRIVATE_BUCKET

        Credentials fall back to AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY /
        AWS_SESSION_TOKEN.
        """

        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"{prefix}_{key}", default).strip()

        def _get_int(key: str, default: int) -> int:
            val = _get(key)
            return int(val) if val else default

        def _get_bool(key: str, default: bool) -> bool:
            val = _get(key).lower()
            if val in ("true", "1", "yes"):
                return True
            if val in ("false", "0", "no"):
                return False
            return default

        def _get_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
            val = _get(key)
            if not val:
                return default
            return tuple(item.strip().strip("/") for item in val.split(",") if item.strip())

        driver = _get("DRIVER", BackendKind.LOCAL.value).lower()
        try:
            backend = BackendKind(driver)
        except ValueError:
            return Err(ConfigurationError.invalid(f"{prefix}_DRIVER", driver, "expected 'local' or 's3'"))

        private_key = _get("CDN_PRIVATE_KEY").replace("\\n", "\n") or None
        key_path = _get("CDN_PRIVATE_KEY_PATH")
        if private_key is None and key_path:
            try:
                private_key = Path(key_path).read_text(encoding="utf-8")
            except OSError as e:
                return Err(ConfigurationError.invalid(f"{prefix}_CDN_PRIVATE_KEY_PATH", key_path, str(e)))

        try:
            local = LocalConfig(
                root=Path(_get("LOCAL_ROOT", "./uploads")),
                url_prefix="/" + _get("URL_PREFIX", "/uploads").strip("/"),
                public_base_url=_get("PUBLIC_BASE_URL").rstrip("/"),
            )
            object_store = ObjectStoreConfig(
                private_bucket=_get("S3_PRIVATE_BUCKET") or None,
                public_bucket=_get("S3_PUBLIC_BUCKET") or None,
                region=_get("S3_REGION") or os.environ.get("AWS_REGION", "us-east-1"),
                endpoint_url=_get("S3_ENDPOINT_URL").rstrip("/") or None,
                force_path_style=_get_bool("S3_FORCE_PATH_STYLE", False),
                access_key_id=_get("S3_ACCESS_KEY_ID") or os.environ.get("AWS_ACCESS_KEY_ID"),
                secret_access_key=(
                    _get("S3_SECRET_ACCESS_KEY") or os.environ.get("AWS_SECRET_ACCESS_KEY")
                ),
                session_token=os.environ.get("AWS_SESSION_TOKEN"),
                public_url_base=_get("S3_PUBLIC_URL_BASE").rstrip("/") or None,
                allow_public_acl=_get_bool("S3_ALLOW_PUBLIC_ACL", False),
                part_size=_get_int("S3_PART_SIZE", C.MULTIPART_PART_SIZE_BYTES),
                max_concurrency=_get_int("S3_MAX_CONCURRENCY", C.MULTIPART_MAX_CONCURRENCY),
            )
            cdn = CDNConfig(
                domain=_get("CDN_DOMAIN") or None,
                key_pair_id=_get("CDN_KEY_PAIR_ID") or None,
                private_key_pem=private_key,
                namespaces=_get_list("CDN_NAMESPACES", C.CDN_NAMESPACES),
            )
            encryption = EncryptionConfig(
                mode=_get("SSE") or None,
                kms_key_id=_get("SSE_KMS_KEY_ID") or None,
            )
            signing = SigningConfig(
                public_ttl_s=_get_int("PUBLIC_TTL", C.PUBLIC_PRESIGN_TTL_S),
                private_ttl_s=_get_int("PRIVATE_TTL", C.PRIVATE_PRESIGN_TTL_S),
                upload_ttl_s=_get_int("UPLOAD_TTL", C.UPLOAD_PRESIGN_TTL_S),
            )
            observability = ObservabilityConfig(
                log_level=_get("LOG_LEVEL", "INFO").upper(),
                log_json=_get_bool("LOG_JSON", True),
            )
        except (ValueError, TypeError) as e:
            return Err(ConfigurationError.invalid(prefix, "", f"unparseable value: {e}"))

        config = cls(
            backend=backend,
            local=local,
            object_store=object_store,
            cdn=cdn,
            encryption=encryption,
            signing=signing,
            observability=observability,
        )
        return config.validate().map(lambda _: config)

    def validate(self) -> Result[None, ConfigurationError]:
        """Validate configuration invariants."""
        store = self.object_store
        if self.backend is BackendKind.S3:
            if not store.private_bucket:
                return Err(ConfigurationError.missing("private_bucket", "s3"))
            if store.part_size < C.MIN_MULTIPART_PART_BYTES:
                return Err(ConfigurationError.invalid(
                    "part_size", store.part_size,
                    f"must be >= {C.MIN_MULTIPART_PART_BYTES} bytes",
                ))
        if store.part_size <= 0:
            return Err(ConfigurationError.invalid("part_size", store.part_size, "must be > 0"))
        if store.max_concurrency <= 0:
            return Err(ConfigurationError.invalid(
                "max_concurrency", store.max_concurrency, "must be > 0",
            ))

        for name in ("public_ttl_s", "private_ttl_s", "upload_ttl_s"):
            ttl = getattr(self.signing, name)
            if ttl <= 0:
                return Err(ConfigurationError.invalid(name, ttl, "must be > 0"))

        cdn_fields = (self.cdn.domain, self.cdn.key_pair_id, self.cdn.private_key_pem)
        if any(cdn_fields) and not all(cdn_fields):
            return Err(ConfigurationError.invalid(
                "cdn", "partial",
                "domain, key_pair_id and private key must be set together",
            ))

        enc = self.encryption
        if enc.mode is not None and enc.mode not in SSE_MODES:
            return Err(ConfigurationError.invalid("sse", enc.mode, f"expected one of {SSE_MODES}"))
        if enc.kms_key_id and enc.mode != "aws:kms":
            return Err(ConfigurationError.invalid(
                "sse_kms_key_id", enc.kms_key_id, "only valid with sse=aws:kms",
            ))

        ns = self.namespaces
        if not ns.allowed or ns.default not in ns.allowed:
            return Err(ConfigurationError.invalid(
                "namespaces", ns.default, "default namespace must be among the allowed ones",
            ))
        return Ok(None)
