"""
Infrastructure module exports.

Leaf building blocks only: storage, safe fetch, rate limiting, dedup and
debounce. Configuration lives in infra.config and the runtime in
infra.bootstrap; import those directly.
"""

from .debounce import DebounceCoordinator, DebounceItem, DebounceRegistry
from .dedup import MessageDeduplicator, build_dedup_key
from .rate_limit import FixedWindowRateLimiter, RateLimitDecision
from .safe_fetch import (
    FetchTimeoutError,
    ResponseTooLargeError,
    SafeFetcher,
    SafeFetchError,
    UnsafeUrlError,
    validate_external_url,
)
from .storage import JsonDocumentStore, LockTimeoutError, file_lock, read_json, write_json

__all__ = [
    "DebounceCoordinator",
    "DebounceItem",
    "DebounceRegistry",
    "MessageDeduplicator",
    "build_dedup_key",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "FetchTimeoutError",
    "ResponseTooLargeError",
    "SafeFetcher",
    "SafeFetchError",
    "UnsafeUrlError",
    "validate_external_url",
    "JsonDocumentStore",
    "LockTimeoutError",
    "file_lock",
    "read_json",
    "write_json",
]
