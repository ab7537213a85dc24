"""
Reliability module: retry with exponential backoff.
"""

from mediavault.reliability.retry import RetryExhausted, RetryPolicy, calculate_backoff, retry_with_backoff

__all__ = [
    "RetryExhausted",
    "RetryPolicy",
    "calculate_backoff",
    "retry_with_backoff",
]
