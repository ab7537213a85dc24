"""
mediavault: content storage and delivery

Accepts uploaded binary content (documents, images, audio, video), persists
it behind an interchangeable backend (local filesystem or S3-compatible
object store), and serves it back:

- Partial-content (range) delivery for large media
- Multipart uploads with bounded memory and all-or-nothing semantics
- Time-limited access URLs for private objects (presigned or CDN-signed)

Authorization, metadata persistence and media processing live elsewhere.
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from mediavault.core.types import (
    Result,
    Ok,
    Err,
    ObjectKey,
    Visibility,
)
from mediavault.core.errors import (
    VaultError,
    ConfigurationError,
    InvalidKeyError,
    NotFoundError,
    BackendError,
    UploadAbortedError,
)
from mediavault.core.config import BackendKind, StorageConfig
from mediavault.storage.signer import AccessCapability
from mediavault.storage.store import ContentStore, create_store
from mediavault.storage.streamer import ReadResult

__all__ = [
    "__version__",
    "Result",
    "Ok",
    "Err",
    "ObjectKey",
    "Visibility",
    "VaultError",
    "ConfigurationError",
    "InvalidKeyError",
    "NotFoundError",
    "BackendError",
    "UploadAbortedError",
    "BackendKind",
    "StorageConfig",
    "AccessCapability",
    "ContentStore",
    "create_store",
    "ReadResult",
]
