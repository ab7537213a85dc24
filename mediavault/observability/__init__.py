"""
Observability module: structured logging.
"""

from mediavault.observability.logging import (
    JsonFormatter,
    LogLevel,
    StructuredLogger,
    current_context,
    setup_logging,
)

__all__ = [
    "JsonFormatter",
    "LogLevel",
    "StructuredLogger",
    "current_context",
    "setup_logging",
]
