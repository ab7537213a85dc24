"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for mediavault:
- Result/Either monads for zero-exception control flow
- Object keys, visibility, byte ranges and upload payloads
- Exhaustive error hierarchy with pattern matching support
- Configuration management with validation
"""

from mediavault.core.types import (
    Result,
    Ok,
    Err,
    ObjectKey,
    Visibility,
    RangeRequest,
    RangeSpec,
    BytesPayload,
    FilePayload,
    StreamPayload,
    Payload,
    UploadRequest,
    payload_of,
)
from mediavault.core.errors import (
    ErrorCode,
    VaultError,
    ConfigurationError,
    InvalidKeyError,
    NotFoundError,
    RangeUnsatisfiableError,
    BackendError,
    UploadAbortedError,
)
from mediavault.core.config import BackendKind, StorageConfig

__all__ = [
    "Result",
    "Ok",
    "Err",
    "ObjectKey",
    "Visibility",
    "RangeRequest",
    "RangeSpec",
    "BytesPayload",
    "FilePayload",
    "StreamPayload",
    "Payload",
    "UploadRequest",
    "payload_of",
    "ErrorCode",
    "VaultError",
    "ConfigurationError",
    "InvalidKeyError",
    "NotFoundError",
    "RangeUnsatisfiableError",
    "BackendError",
    "UploadAbortedError",
    "BackendKind",
    "StorageConfig",
]
