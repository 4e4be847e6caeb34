"""
Cache package for the Readings Service.

Provides a Redis-backed key/value store holding serialized readings, with
optional per-key expiration for the TTL policy.
"""

from .redis_cache import RedisCacheStore

__all__ = ["RedisCacheStore"]
