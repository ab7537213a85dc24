"""
System-Wide Constants for mediavault

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB
GB: Final[int] = 1024 * MB

MINUTE_S: Final[int] = 60
HOUR_S: Final[int] = 60 * MINUTE_S
DAY_S: Final[int] = 24 * HOUR_S

# =============================================================================
# KEY NAMESPACES
# =============================================================================
DEFAULT_NAMESPACE: Final[str] = "uploads"
NAMESPACES: Final[tuple[str, ...]] = (
    "uploads",
    "posts",
    "products",
    "creators",
    "requests",
)
# Categories fronted by the CDN when one is configured
CDN_NAMESPACES: Final[tuple[str, ...]] = ("posts", "products")

# =============================================================================
# MULTIPART UPLOAD
# =============================================================================
# S3 rejects non-final parts smaller than 5 MiB
MIN_MULTIPART_PART_BYTES: Final[int] = 5 * MB
MULTIPART_PART_SIZE_BYTES: Final[int] = 8 * MB
MULTIPART_MAX_CONCURRENCY: Final[int] = 4

# =============================================================================
# SIGNED URLS
# =============================================================================
PUBLIC_PRESIGN_TTL_S: Final[int] = DAY_S
PRIVATE_PRESIGN_TTL_S: Final[int] = 15 * MINUTE_S
UPLOAD_PRESIGN_TTL_S: Final[int] = HOUR_S
# SigV4 presigned URLs cannot outlive 7 days
MAX_PRESIGN_TTL_S: Final[int] = 7 * DAY_S

# =============================================================================
# STREAMING
# =============================================================================
STREAM_CHUNK_BYTES: Final[int] = 64 * KB
DEFAULT_CONTENT_TYPE: Final[str] = "application/octet-stream"

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_ATTEMPTS: Final[int] = 3
