"""
Caching policies for readings.

Provides the cache key mapping, JSON helpers for cached readings, the policy
engine implementing cache-aside, read-through, write-through, write-behind
and TTL reads, and the scheduler that performs write-behind persistence.
"""

from .engine import CachePolicyEngine, ReadThroughCache
from .flush import FlushJob, FlushScheduler
from .keys import to_cache_key
from .models import FlushState, LookupField, Strategy

__all__ = [
    "CachePolicyEngine",
    "ReadThroughCache",
    "FlushJob",
    "FlushScheduler",
    "FlushState",
    "LookupField",
    "Strategy",
    "to_cache_key",
]
