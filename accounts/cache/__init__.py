"""
Read-through cache with single-flight refresh and stale fallback.
"""

from accounts.cache.freshness import is_stale
from accounts.cache.orchestrator import CachedResource, cache_key
from accounts.cache.service import AccountCache
from accounts.cache.single_flight import SingleFlight, single_flight, with_single_flight

__all__ = [
    "AccountCache",
    "CachedResource",
    "SingleFlight",
    "cache_key",
    "is_stale",
    "single_flight",
    "with_single_flight",
]
