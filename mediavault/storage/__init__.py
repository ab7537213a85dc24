"""
Storage Module: content storage and delivery
============================================

Provides:
- KeyNormalizer: safe, namespaced object keys
- Backend drivers: local filesystem and S3-compatible object store
- UploadPlanner: single-put vs multipart, bounded concurrency, abort on failure
- URLSigner: public, presigned and CloudFront-signed access URLs
- RangeStreamer: partial-content delivery in constant memory
- ContentStore: the facade wiring all of the above

Example:
    >>> store = create_store(StorageConfig.from_env().unwrap())
    >>> result = await store.upload("posts/a.jpg", b"...")
"""

from mediavault.storage.backends import (
    LocalBackend,
    StorageBackend,
    StorageMetrics,
    StoredObject,
)
from mediavault.storage.keys import KeyNormalizer
from mediavault.storage.planner import PayloadReader, Strategy, UploadPlan, UploadPlanner
from mediavault.storage.s3_store import S3Backend
from mediavault.storage.signer import AccessCapability, CapabilityKind, CDNSigner, URLSigner
from mediavault.storage.store import ContentStore, create_store
from mediavault.storage.streamer import (
    ObjectStream,
    RangeStreamer,
    ReadResult,
    content_disposition,
)

__all__ = [
    "LocalBackend",
    "StorageBackend",
    "StorageMetrics",
    "StoredObject",
    "KeyNormalizer",
    "PayloadReader",
    "Strategy",
    "UploadPlan",
    "UploadPlanner",
    "S3Backend",
    "AccessCapability",
    "CapabilityKind",
    "CDNSigner",
    "URLSigner",
    "ContentStore",
    "create_store",
    "ObjectStream",
    "RangeStreamer",
    "ReadResult",
    "content_disposition",
]
