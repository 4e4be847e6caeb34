"""
Caching policy engine for readings.

The engine decides when a reading moves between the cache and the persistent
store. It owns no connections; both adapters are injected at construction.

Strategies:

- cache-aside: read the cache, fall back to the store, populate on miss.
- read-through: same contract, but the fetch on miss is performed by a
  ``ReadThroughCache`` provider that owns the loader.
- write-through: insert into the store, then populate the cache, then return.
- write-behind: populate the cache under a provisional id, return, and let the
  ``FlushScheduler`` persist later. A failed flush is lost, not rolled back.
- ttl: cache-aside with an expiration on every population, returning the
  remaining time-to-live.
"""

import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from shared.errors import CachePopulationError, SerializationError, ValidationError
from shared.logging import get_logger
from .flush import FlushJob, FlushScheduler
from .keys import to_cache_key, to_lookup_key
from .models import (
    BenchmarkResult, LookupField, ReadResult, Reading, Strategy, TTLReadResult,
    WriteBehindResult, WriteResult, new_provisional_id, strip_id, with_id,
)
from .ports import CacheStore, ReadingStore
from .serialization import deserialize_entity, serialize_entity

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Loader = Callable[[str], Awaitable[Optional[Reading]]]


def cache_key_for(value: str, lookup: LookupField = LookupField.ID) -> str:
    """Cache key for a read; attribute lookups get their own namespace."""
    if lookup is LookupField.ID:
        return to_cache_key(value)
    return to_lookup_key(lookup.value, value)


async def _cache_get(
    cache: CacheStore,
    key: str,
    strategy: Strategy,
    logger,
    metrics: Optional["MetricsCollector"] = None,
) -> Optional[Reading]:
    """Read and decode a cache entry; a corrupt entry reads as a miss."""
    raw = await cache.get(key)
    if raw is None:
        return None
    try:
        return deserialize_entity(raw)
    except SerializationError as e:
        logger.warning("Discarding corrupt cache entry", cache_key=key, strategy=strategy.value, error=e.message)
        if metrics:
            metrics.increment_counter("cache_deserialize_failures_total", strategy=strategy.value)
        return None


class ReadThroughCache:
    """Cache provider that loads missing entries itself.

    Callers only ever ask the provider for a reading; on a miss the provider
    calls its loader and stores the result before returning it.
    """

    def __init__(
        self,
        cache: CacheStore,
        loader: Loader,
        *,
        key_for: Callable[[str], str] = to_cache_key,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache = cache
        self.loader = loader
        self.key_for = key_for
        self.metrics = metrics
        self.logger = get_logger("readings.read_through")

    async def get(self, reading_id: str) -> Tuple[Optional[Reading], bool]:
        """Return ``(reading, warm)`` for an identifier."""
        key = self.key_for(reading_id)
        cached = await _cache_get(self.cache, key, Strategy.READ_THROUGH, self.logger, self.metrics)
        if cached is not None:
            return cached, True

        loaded = await self.loader(reading_id)
        if loaded is not None:
            await self.cache.set(key, serialize_entity(loaded))
        return loaded, False


class CachePolicyEngine:
    """Implements the five caching strategies over a cache and a store."""

    def __init__(
        self,
        cache: CacheStore,
        store: ReadingStore,
        *,
        scheduler: Optional[FlushScheduler] = None,
        default_ttl_seconds: int = 60,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache = cache
        self.store = store
        self.metrics = metrics
        self.scheduler = scheduler or FlushScheduler(metrics=metrics)
        self.default_ttl_seconds = default_ttl_seconds
        self.logger = get_logger("readings.policy_engine")

        self._providers = {
            lookup: ReadThroughCache(
                cache,
                self._loader_for(lookup),
                metrics=metrics,
                key_for=partial(cache_key_for, lookup=lookup)
            )
            for lookup in LookupField
        }

    # ------------------------------------------------------------------
    # Store lookups

    def _loader_for(self, lookup: LookupField) -> Loader:
        async def load(reading_id: str) -> Optional[Reading]:
            return await self._find(reading_id, lookup)
        return load

    async def _find(self, reading_id: str, lookup: LookupField) -> Optional[Reading]:
        if lookup is LookupField.SENSOR_ID:
            return await self.store.find_by_attribute(LookupField.SENSOR_ID.value, reading_id)
        return await self.store.find_by_id(reading_id)

    def _record_lookup(self, strategy: Strategy, warm: bool):
        if self.metrics:
            self.metrics.record_cache_lookup(strategy.value, warm)

    async def _read_aside(
        self,
        reading_id: str,
        lookup: LookupField,
        strategy: Strategy,
        expire_seconds: Optional[int] = None,
    ) -> Tuple[Optional[Reading], bool]:
        key = cache_key_for(reading_id, lookup)
        cached = await _cache_get(self.cache, key, strategy, self.logger, self.metrics)
        if cached is not None:
            return cached, True

        reading = await self._find(reading_id, lookup)
        if reading is not None:
            await self.cache.set(key, serialize_entity(reading), expire_seconds)
        return reading, False

    # ------------------------------------------------------------------
    # Reads

    async def read_cache_aside(self, reading_id: str, lookup: LookupField = LookupField.ID) -> ReadResult:
        """Cache-aside read: at most one store lookup, never a store write."""
        reading, warm = await self._read_aside(reading_id, lookup, Strategy.CACHE_ASIDE)
        self._record_lookup(Strategy.CACHE_ASIDE, warm)
        return ReadResult(strategy=Strategy.CACHE_ASIDE, warm=warm, data=reading)

    async def read_through(self, reading_id: str, lookup: LookupField = LookupField.ID) -> ReadResult:
        """Read via the cache provider, which fetches from the store on a miss."""
        reading, warm = await self._providers[lookup].get(reading_id)
        self._record_lookup(Strategy.READ_THROUGH, warm)
        return ReadResult(strategy=Strategy.READ_THROUGH, warm=warm, data=reading)

    async def read_with_ttl(
        self,
        reading_id: str,
        ttl_seconds: Optional[int] = None,
        lookup: LookupField = LookupField.ID,
    ) -> TTLReadResult:
        """Cache-aside read whose populations expire after ``ttl_seconds``.

        The remaining TTL is reported exactly as the cache reports it,
        including the "no such key" and "no expiry" sentinels.
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ValidationError("ttl_seconds must be a positive integer", {"ttl_seconds": ttl})

        reading, warm = await self._read_aside(reading_id, lookup, Strategy.TTL, expire_seconds=ttl)
        ttl_left = await self.cache.ttl(cache_key_for(reading_id, lookup))
        self._record_lookup(Strategy.TTL, warm)
        return TTLReadResult(warm=warm, ttl_left=ttl_left, data=reading)

    # ------------------------------------------------------------------
    # Writes

    @staticmethod
    def _validate_payload(payload: Any) -> Dict[str, Any]:
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationError("Reading payload must be a JSON object", {"type": type(payload).__name__})
        return strip_id(payload)

    async def write_through(self, payload: Dict[str, Any]) -> WriteResult:
        """Persist, then cache, then return.

        A failed insert leaves the cache untouched. A failed cache write after
        a successful insert raises ``CachePopulationError``; the stored record
        remains.
        """
        fields = self._validate_payload(payload)
        reading_id = await self.store.insert(fields)
        reading = with_id(reading_id, fields)

        try:
            await self.cache.set(to_cache_key(reading_id), serialize_entity(reading))
        except Exception as e:
            self.logger.error("Write-through cache population failed", reading_id=reading_id, error=str(e))
            raise CachePopulationError(reading_id) from e

        self.logger.info("Write-through persisted", reading_id=reading_id)
        return WriteResult(doc=reading)

    async def write_behind(self, payload: Dict[str, Any]) -> WriteBehindResult:
        """Cache under a provisional id and defer persistence.

        Until the flush finishes, the cached reading may not exist in the
        store; if the process dies in that window the write is gone.
        """
        fields = self._validate_payload(payload)
        provisional_id = new_provisional_id()
        reading = with_id(provisional_id, fields)

        await self.cache.set(to_cache_key(provisional_id), serialize_entity(reading))
        job = self.scheduler.schedule(provisional_id, reading, self._flush)

        self.logger.info("Write-behind queued", provisional_id=provisional_id, job_id=job.job_id)
        return WriteBehindResult(doc=reading, job_id=job.job_id)

    async def _flush(self, job: FlushJob) -> str:
        fields = strip_id(job.reading)
        reading_id = await self.store.insert(fields)

        # The reading is durable from here on; cache trouble must not mark it lost.
        try:
            await self.cache.delete(to_cache_key(job.provisional_id))
            await self.cache.set(to_cache_key(reading_id), serialize_entity(with_id(reading_id, fields)))
        except Exception as e:
            job.error = f"cache swap failed: {e}"
            self.logger.warning(
                "Write-behind cache swap failed",
                job_id=job.job_id,
                provisional_id=job.provisional_id,
                persisted_id=reading_id,
                error=str(e)
            )
        return reading_id

    # ------------------------------------------------------------------
    # Diagnostics

    async def ping_cache(self) -> Any:
        """Round-trip the cache store."""
        return await self.cache.ping()

    async def ping_store(self) -> Any:
        """Round-trip the persistent store."""
        return await self.store.ping()

    async def benchmark(self, reading_id: str) -> BenchmarkResult:
        """Time a cold cache-aside read against the warm read that follows it."""
        await self.cache.delete(to_cache_key(reading_id))

        started = time.perf_counter()
        cold = await self._read_aside(reading_id, LookupField.ID, Strategy.CACHE_ASIDE)
        cold_done = time.perf_counter()
        await self._read_aside(reading_id, LookupField.ID, Strategy.CACHE_ASIDE)
        warm_done = time.perf_counter()

        return BenchmarkResult(
            reading_id=reading_id,
            cold_ms=round((cold_done - started) * 1000, 3),
            warm_ms=round((warm_done - cold_done) * 1000, 3),
            found=cold[0] is not None,
        )
