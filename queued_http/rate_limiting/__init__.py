"""
Rate Limiting Module

Rate-limited consumption of the shared request queue.
"""

from queued_http.rate_limiting.rate_limited_queue import (
    QueuedJob,
    RateLimitConfig,
    RateLimitedQueueClient,
    SpillMethod,
    WindowCounter,
)

__all__ = [
    "QueuedJob",
    "RateLimitConfig",
    "RateLimitedQueueClient",
    "SpillMethod",
    "WindowCounter",
]
