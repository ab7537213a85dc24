"""
Error Hierarchy for mediavault

Design Principles:
- Forbid exceptions for control flow (operations return Result types)
- Carry full error context for debugging and audit trails
- Only configuration errors are raised; they are fatal at startup

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause chain for root cause analysis
- Timestamp for correlation with request logs

Usage:
    result = await store.read(key, range_header)
    match result:
        case Ok(read):
            stream(read)
        case Err(error) if error.is_not_found:
            respond_404()
        case Err(error):
            respond_502(error)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Storage backend errors
    - 2xxx: Request (caller input) errors
    - 3xxx: Signing errors
    - 9xxx: Internal/configuration errors
    """

    # Storage errors (1xxx)
    STORAGE_NOT_FOUND = 1001
    STORAGE_BACKEND_FAILURE = 1002
    STORAGE_TIMEOUT = 1003
    STORAGE_UPLOAD_ABORTED = 1004
    STORAGE_UNSUPPORTED = 1005

    # Request errors (2xxx)
    REQUEST_INVALID_KEY = 2001
    REQUEST_RANGE_UNSATISFIABLE = 2002

    # Signing errors (3xxx)
    SIGNING_FAILED = 3001

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass(eq=False)
class VaultError(Exception):
    """
    Base class for all mediavault errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp for correlation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Initialize Exception base class with message
        super().__init__(self.message)

    @property
    def is_not_found(self) -> bool:
        return self.code is ErrorCode.STORAGE_NOT_FOUND

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize error to dictionary for logging/API responses.

        Note: Excludes the cause so backend internals and credentials
        never leak into responses.
        """
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# CONFIGURATION ERRORS (FATAL AT STARTUP)
# =============================================================================
@dataclass(eq=False)
class ConfigurationError(VaultError):
    """
    Invalid or incomplete startup configuration.

    Never recovered: the process must not serve requests.
    """

    @classmethod
    def missing(cls, setting: str, backend: str) -> ConfigurationError:
        """A setting required by the selected backend is absent."""
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"'{setting}' is required for the {backend} backend",
            context={"setting": setting, "backend": backend},
        )

    @classmethod
    def invalid(cls, setting: str, value: Any, reason: str) -> ConfigurationError:
        """A setting has an unusable value."""
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"Invalid value for '{setting}': {reason}",
            context={"setting": setting, "value": str(value)[:100], "reason": reason},
        )


# =============================================================================
# REQUEST ERRORS
# =============================================================================
@dataclass(eq=False)
class InvalidKeyError(VaultError):
    """Caller supplied an unsafe or empty key; no backend was touched."""

    @classmethod
    def rejected(cls, raw: Any, reason: str) -> InvalidKeyError:
        return cls(
            code=ErrorCode.REQUEST_INVALID_KEY,
            message=f"Invalid object key: {reason}",
            context={"key": str(raw)[:200], "reason": reason},
        )


@dataclass(eq=False)
class RangeUnsatisfiableError(VaultError):
    """
    A syntactically valid range falls outside the object.

    Handled inside the read path by serving the full object.
    """

    @classmethod
    def for_key(
        cls,
        key: str,
        range_header: str,
        cause: Optional[BaseException] = None,
    ) -> RangeUnsatisfiableError:
        return cls(
            code=ErrorCode.REQUEST_RANGE_UNSATISFIABLE,
            message=f"Range '{range_header}' not satisfiable for '{key}'",
            cause=cause,
            context={"key": key, "range": range_header},
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass(eq=False)
class NotFoundError(VaultError):
    """No object exists under the key."""

    @classmethod
    def for_key(cls, key: str, cause: Optional[BaseException] = None) -> NotFoundError:
        return cls(
            code=ErrorCode.STORAGE_NOT_FOUND,
            message=f"Object not found: {key}",
            cause=cause,
            context={"key": key},
        )


@dataclass(eq=False)
class BackendError(VaultError):
    """
    Transient or permanent failure from the underlying store.

    Propagated to the caller for put/get; swallowed with logging for
    delete.
    """

    @classmethod
    def operation_failed(
        cls,
        operation: str,
        key: str,
        cause: Optional[BaseException] = None,
    ) -> BackendError:
        """Backend rejected or failed an operation."""
        detail = f": {cause}" if cause is not None else ""
        return cls(
            code=ErrorCode.STORAGE_BACKEND_FAILURE,
            message=f"Backend {operation} failed for '{key}'{detail}",
            cause=cause,
            context={"operation": operation, "key": key},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        key: str,
        cause: Optional[BaseException] = None,
    ) -> BackendError:
        """Backend call did not complete in time."""
        return cls(
            code=ErrorCode.STORAGE_TIMEOUT,
            message=f"Backend {operation} timed out for '{key}'",
            cause=cause,
            context={"operation": operation, "key": key},
        )

    @classmethod
    def unsupported(cls, operation: str, backend: str) -> BackendError:
        """Operation has no meaning for this backend."""
        return cls(
            code=ErrorCode.STORAGE_UNSUPPORTED,
            message=f"{operation} is not supported by the {backend} backend",
            context={"operation": operation, "backend": backend},
        )

    @classmethod
    def signing_failed(
        cls,
        key: str,
        method: str,
        cause: Optional[BaseException] = None,
    ) -> BackendError:
        """URL signing failed."""
        return cls(
            code=ErrorCode.SIGNING_FAILED,
            message=f"Could not sign {method} URL for '{key}'",
            cause=cause,
            context={"key": key, "method": method},
        )


@dataclass(eq=False)
class UploadAbortedError(VaultError):
    """
    A multipart upload failed partway and was aborted.

    Uploaded parts were discarded; the key is not readable.
    """

    @classmethod
    def after_part(
        cls,
        key: str,
        upload_id: str,
        part_number: int,
        parts_uploaded: int,
        cause: Optional[BaseException] = None,
    ) -> UploadAbortedError:
        return cls(
            code=ErrorCode.STORAGE_UPLOAD_ABORTED,
            message=f"Upload of '{key}' aborted at part {part_number}",
            cause=cause,
            context={
                "key": key,
                "upload_id": upload_id,
                "part_number": part_number,
                "parts_uploaded": parts_uploaded,
            },
        )
