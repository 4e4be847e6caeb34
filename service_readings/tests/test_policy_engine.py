"""
Unit tests for the caching policy engine.
"""

import asyncio
import json
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import CachePopulationError, PersistenceError, StoreUnavailableError, ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import InMemoryCacheStore, InMemoryReadingStore, ManualClock, ReadingFactory
from service_readings.app.policies.engine import CachePolicyEngine
from service_readings.app.policies.flush import FlushScheduler
from service_readings.app.policies.keys import to_cache_key, to_lookup_key
from service_readings.app.policies.models import (
    FlushState, LookupField, Strategy, TTL_NO_EXPIRY, TTL_NO_SUCH_KEY, is_persistent_id, is_provisional_id,
)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def store():
    return InMemoryReadingStore()


@pytest.fixture
def metrics():
    return MetricsCollector("readings")


@pytest.fixture
def engine(cache, store, metrics):
    return CachePolicyEngine(
        cache,
        store,
        scheduler=FlushScheduler(0, metrics=metrics),
        default_ttl_seconds=60,
        metrics=metrics
    )


@pytest.fixture
def reading():
    return ReadingFactory.create_reading("sensor-7", 21.5, "°C")


def counter_value(metrics, name, **labels):
    return metrics.registry.get_sample_value(f"{name}_total", labels)


class TestCacheAside:
    """Test cases for cache-aside reads."""

    @pytest.mark.asyncio
    async def test_cold_then_warm(self, engine, store, cache, reading):
        """First read misses and populates; the next read hits with the same reading."""
        reading_id = store.seed(reading)

        first = await engine.read_cache_aside(reading_id)
        second = await engine.read_cache_aside(reading_id)

        assert first.strategy is Strategy.CACHE_ASIDE
        assert first.warm is False
        assert first.data == {"_id": reading_id, **reading}
        assert second.warm is True
        assert second.data == first.data
        assert store.lookups == 1

    @pytest.mark.asyncio
    async def test_population_has_no_expiry(self, engine, store, cache, reading):
        """Cache-aside populations never expire on their own."""
        reading_id = store.seed(reading)
        await engine.read_cache_aside(reading_id)

        assert await cache.ttl(to_cache_key(reading_id)) == TTL_NO_EXPIRY

    @pytest.mark.asyncio
    async def test_missing_reading(self, engine, store, cache):
        """A reading absent from both stores is an empty cold result, not an error."""
        result = await engine.read_cache_aside("999")

        assert result.warm is False
        assert result.data is None
        assert to_cache_key("999") not in cache.entries
        assert store.lookups == 1

    @pytest.mark.asyncio
    async def test_warm_reads_never_touch_store(self, engine, store, reading):
        """Repeated warm reads neither look up nor write the store."""
        reading_id = store.seed(reading)
        await engine.read_cache_aside(reading_id)

        for _ in range(5):
            result = await engine.read_cache_aside(reading_id)
            assert result.warm is True

        assert store.lookups == 1
        assert store.inserts == 0

    @pytest.mark.asyncio
    async def test_corrupt_entry_falls_through(self, engine, store, cache, metrics, reading):
        """A corrupt cache entry reads as a miss and gets replaced."""
        reading_id = store.seed(reading)
        cache.put_raw(to_cache_key(reading_id), "{corrupt")

        result = await engine.read_cache_aside(reading_id)

        assert result.warm is False
        assert result.data["_id"] == reading_id
        assert json.loads(cache.entries[to_cache_key(reading_id)][0]) == result.data
        assert counter_value(metrics, "cache_deserialize_failures", strategy="cache-aside") == 1.0

    @pytest.mark.asyncio
    async def test_lookup_by_sensor_id(self, engine, store, cache, reading):
        """Secondary lookups use the attribute operation and their own key namespace."""
        reading_id = store.seed(reading)

        result = await engine.read_cache_aside("sensor-7", LookupField.SENSOR_ID)

        assert result.data["_id"] == reading_id
        assert to_lookup_key("sensorId", "sensor-7") in cache.entries
        assert to_cache_key("sensor-7") not in cache.entries

    @pytest.mark.asyncio
    async def test_sensor_lookup_does_not_shadow_primary_id(self, engine, store):
        """A sensor value that equals another reading's id leaves that reading's entry alone."""
        for value in range(4):
            store.seed({"sensorId": f"sensor-{value}", "reading": value})
        numeric_sensor_id = store.seed({"sensorId": "1", "reading": 99})

        by_sensor = await engine.read_cache_aside("1", LookupField.SENSOR_ID)
        by_id = await engine.read_cache_aside("1")

        assert by_sensor.data["_id"] == numeric_sensor_id
        assert by_id.warm is False
        assert by_id.data["_id"] == "1"
        assert by_id.data["sensorId"] == "sensor-0"

    @pytest.mark.asyncio
    async def test_sensor_id_is_not_a_primary_id(self, engine, store, reading):
        """Primary lookups do not fall back to attribute lookups."""
        store.seed(reading)

        result = await engine.read_cache_aside("sensor-7")

        assert result.data is None

    @pytest.mark.asyncio
    async def test_cache_unavailable_aborts(self, engine, cache, store, reading):
        """A cache outage surfaces to the caller."""
        reading_id = store.seed(reading)
        cache.available = False

        with pytest.raises(StoreUnavailableError):
            await engine.read_cache_aside(reading_id)

    @pytest.mark.asyncio
    async def test_store_unavailable_aborts(self, engine, store, reading):
        """A store outage on a miss surfaces to the caller."""
        reading_id = store.seed(reading)
        store.available = False

        with pytest.raises(StoreUnavailableError):
            await engine.read_cache_aside(reading_id)

    @pytest.mark.asyncio
    async def test_hits_and_misses_are_counted(self, engine, store, metrics, reading):
        """Cache lookups are counted per strategy."""
        reading_id = store.seed(reading)
        await engine.read_cache_aside(reading_id)
        await engine.read_cache_aside(reading_id)
        await engine.read_cache_aside(reading_id)

        assert counter_value(metrics, "cache_misses", strategy="cache-aside") == 1.0
        assert counter_value(metrics, "cache_hits", strategy="cache-aside") == 2.0


class TestReadThrough:
    """Test cases for read-through reads."""

    @pytest.mark.asyncio
    async def test_cold_then_warm(self, engine, store, reading):
        """Read-through has the cache-aside contract."""
        reading_id = store.seed(reading)

        first = await engine.read_through(reading_id)
        second = await engine.read_through(reading_id)

        assert first.strategy is Strategy.READ_THROUGH
        assert (first.warm, second.warm) == (False, True)
        assert first.data == second.data
        assert store.lookups == 1

    @pytest.mark.asyncio
    async def test_shares_cache_with_cache_aside(self, engine, store, reading):
        """Both read paths use the same cache key."""
        reading_id = store.seed(reading)
        await engine.read_cache_aside(reading_id)

        result = await engine.read_through(reading_id)

        assert result.warm is True
        assert store.lookups == 1

    @pytest.mark.asyncio
    async def test_missing_reading(self, engine):
        """Read-through returns an empty cold result for unknown ids."""
        result = await engine.read_through("12345")
        assert result.warm is False
        assert result.data is None

    @pytest.mark.asyncio
    async def test_sensor_lookup_does_not_shadow_primary_id(self, engine, store, cache):
        """Read-through attribute lookups are cached apart from entity keys."""
        first_id = store.seed({"sensorId": "sensor-0", "reading": 0})
        numeric_sensor_id = store.seed({"sensorId": first_id, "reading": 99})

        by_sensor = await engine.read_through(first_id, LookupField.SENSOR_ID)
        by_id = await engine.read_through(first_id)

        assert by_sensor.data["_id"] == numeric_sensor_id
        assert by_id.warm is False
        assert by_id.data["_id"] == first_id
        assert json.loads(cache.entries[to_cache_key(first_id)][0])["_id"] == first_id


class TestWriteThrough:
    """Test cases for write-through writes."""

    @pytest.mark.asyncio
    async def test_example_reading(self, engine, store):
        """The assigned id comes back with the same fields and is warm for read-through."""
        result = await engine.write_through({"sensorId": "s1", "reading": 42})

        reading_id = result.doc["_id"]
        assert is_persistent_id(reading_id)
        assert result.doc == {"_id": reading_id, "sensorId": "s1", "reading": 42}

        read = await engine.read_through(reading_id)
        assert read.warm is True
        assert read.data == result.doc
        assert store.lookups == 0

    @pytest.mark.asyncio
    async def test_client_identifier_is_ignored(self, engine, store):
        """A client-supplied _id never reaches the store."""
        result = await engine.write_through({"_id": "mine", "sensorId": "s1"})

        assert result.doc["_id"] != "mine"
        assert "_id" not in store.documents[result.doc["_id"]]

    @pytest.mark.asyncio
    async def test_insert_failure_leaves_cache_untouched(self, engine, store, cache):
        """A rejected insert aborts before the cache is written."""
        store.reject_inserts = True

        with pytest.raises(PersistenceError):
            await engine.write_through({"sensorId": "s1"})

        assert cache.entries == {}

    @pytest.mark.asyncio
    async def test_cache_failure_after_insert_is_reported(self, engine, store, cache):
        """The caller learns the record exists even though caching failed."""
        cache.fail_on_set = True

        with pytest.raises(CachePopulationError) as exc_info:
            await engine.write_through({"sensorId": "s1"})

        persisted_id = exc_info.value.details["persisted_id"]
        assert persisted_id in store.documents
        assert exc_info.value.code == "CACHE_POPULATION_FAILED"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_rejects_non_object_payload(self, engine, store):
        """Payloads must be JSON objects."""
        with pytest.raises(ValidationError):
            await engine.write_through(["not", "a", "reading"])
        assert store.inserts == 0


class TestWriteBehind:
    """Test cases for write-behind writes."""

    @pytest.mark.asyncio
    async def test_accepted_before_persisting(self, cache, store, reading):
        """The write is cached under a provisional id and not yet in the store."""
        engine = CachePolicyEngine(cache, store, scheduler=FlushScheduler(60))

        result = await engine.write_behind(reading)

        provisional_id = result.doc["_id"]
        assert result.accepted is True
        assert result.strategy is Strategy.WRITE_BEHIND
        assert is_provisional_id(provisional_id)
        assert to_cache_key(provisional_id) in cache.entries
        assert store.inserts == 0
        assert engine.scheduler.get_job(result.job_id).state is FlushState.QUEUED

        # Pre-flush, the provisional reading is readable from the cache
        read = await engine.read_cache_aside(provisional_id)
        assert read.warm is True
        assert read.data == result.doc

        # The flush is 60s away; cancel it so no task outlives the loop
        flush_task = next(t for t in asyncio.all_tasks() if t.get_name() == f"write-behind-{result.job_id}")
        flush_task.cancel()
        await asyncio.gather(flush_task, return_exceptions=True)
        assert engine.scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_flush_swaps_keys(self, engine, cache, store, reading):
        """After the flush the real key resolves and the provisional one does not."""
        result = await engine.write_behind(reading)
        job = await engine.scheduler.wait(result.job_id, timeout=1)

        assert job.state is FlushState.PERSISTED
        assert is_persistent_id(job.persisted_id)
        assert store.documents[job.persisted_id] == reading

        real = await engine.read_through(job.persisted_id)
        assert real.warm is True
        assert real.data == {"_id": job.persisted_id, **reading}

        stale = await engine.read_cache_aside(job.provisional_id)
        assert stale.warm is False
        assert stale.data is None

    @pytest.mark.asyncio
    async def test_failed_flush_is_lost_and_not_rolled_back(self, engine, cache, store, metrics, reading):
        """A rejected flush leaves the provisional entry behind and never raises to the caller."""
        store.reject_inserts = True

        result = await engine.write_behind(reading)
        job = await engine.scheduler.wait(result.job_id, timeout=1)

        assert result.accepted is True
        assert job.state is FlushState.LOST
        assert "rejected" in job.error
        assert to_cache_key(result.doc["_id"]) in cache.entries
        assert store.documents == {}
        assert counter_value(metrics, "write_behind_flushes", outcome="lost") == 1.0

    @pytest.mark.asyncio
    async def test_cache_swap_failure_keeps_job_persisted(self, engine, cache, store, reading):
        """Once the insert succeeds the reading is durable even if the swap fails."""
        result = await engine.write_behind(reading)
        cache.fail_on_set = True

        job = await engine.scheduler.wait(result.job_id, timeout=1)

        assert job.state is FlushState.PERSISTED
        assert job.persisted_id in store.documents
        assert job.error.startswith("cache swap failed")

    @pytest.mark.asyncio
    async def test_cache_unavailable_rejects_write(self, engine, cache, store, reading):
        """If the provisional entry cannot be cached nothing is queued."""
        cache.available = False

        with pytest.raises(StoreUnavailableError):
            await engine.write_behind(reading)

        assert engine.scheduler.pending == 0
        assert store.inserts == 0

    @pytest.mark.asyncio
    async def test_independent_flushes(self, engine, store):
        """Concurrent write-behind writes each get their own store record."""
        payloads = ReadingFactory.create_readings(5)
        results = [await engine.write_behind(payload) for payload in payloads]

        remaining = await engine.scheduler.drain(timeout=1)

        assert remaining == 0
        assert store.inserts == 5
        persisted = {engine.scheduler.get_job(r.job_id).persisted_id for r in results}
        assert len(persisted) == 5


class TestTTL:
    """Test cases for expiration-based reads."""

    @pytest.mark.asyncio
    async def test_remaining_ttl_after_population(self, engine, store, reading):
        """Right after population the TTL is positive and within the configured value."""
        reading_id = store.seed(reading)

        result = await engine.read_with_ttl(reading_id, 30)

        assert result.strategy is Strategy.TTL
        assert result.warm is False
        assert 0 < result.ttl_left <= 30
        assert result.data["_id"] == reading_id

    @pytest.mark.asyncio
    async def test_expires(self, engine, store, clock, reading):
        """After the TTL elapses the next read is cold again."""
        reading_id = store.seed(reading)
        await engine.read_with_ttl(reading_id, 30)

        clock.advance(10)
        warm = await engine.read_with_ttl(reading_id, 30)
        assert warm.warm is True
        assert warm.ttl_left == 20

        clock.advance(21)
        cold = await engine.read_with_ttl(reading_id, 30)
        assert cold.warm is False
        assert store.lookups == 2

    @pytest.mark.asyncio
    async def test_default_ttl(self, engine, store, reading):
        """Without an explicit TTL the engine default applies."""
        reading_id = store.seed(reading)
        result = await engine.read_with_ttl(reading_id)
        assert result.ttl_left == 60

    @pytest.mark.asyncio
    async def test_missing_key_sentinel(self, engine):
        """An absent reading reports the no-such-key sentinel, not zero."""
        result = await engine.read_with_ttl("404")

        assert result.data is None
        assert result.ttl_left == TTL_NO_SUCH_KEY

    @pytest.mark.asyncio
    async def test_no_expiry_sentinel(self, engine, store, reading):
        """A key populated without expiry by another policy reports the no-expiry sentinel."""
        reading_id = store.seed(reading)
        await engine.read_cache_aside(reading_id)

        result = await engine.read_with_ttl(reading_id)

        assert result.warm is True
        assert result.ttl_left == TTL_NO_EXPIRY

    @pytest.mark.asyncio
    async def test_sensor_lookup_reports_its_own_ttl(self, engine, store, cache):
        """TTL attribute lookups populate and report the lookup key, not an entity key."""
        first_id = store.seed({"sensorId": "sensor-0", "reading": 0})
        store.seed({"sensorId": first_id, "reading": 99})

        result = await engine.read_with_ttl(first_id, 30, LookupField.SENSOR_ID)

        assert result.ttl_left == 30
        assert to_lookup_key("sensorId", first_id) in cache.entries
        assert await cache.ttl(to_cache_key(first_id)) == TTL_NO_SUCH_KEY

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5, 1.5, True])
    async def test_rejects_bad_ttl(self, engine, ttl):
        """TTL values must be positive integers."""
        with pytest.raises(ValidationError):
            await engine.read_with_ttl("1", ttl)


class TestDiagnostics:
    """Test cases for health probes and the benchmark."""

    @pytest.mark.asyncio
    async def test_probes_do_not_touch_readings(self, engine, cache, store):
        """Both probes answer without creating or reading readings."""
        assert await engine.ping_cache() is True
        assert await engine.ping_store() == 1
        assert cache.entries == {}
        assert store.lookups == 0

    @pytest.mark.asyncio
    async def test_probes_are_independent(self, engine, cache):
        """A cache outage does not affect the store probe."""
        cache.available = False

        with pytest.raises(StoreUnavailableError):
            await engine.ping_cache()
        assert await engine.ping_store() == 1

    @pytest.mark.asyncio
    async def test_benchmark_forces_cold_read(self, engine, store, cache, reading):
        """The benchmark evicts the key first, so the store is consulted once."""
        reading_id = store.seed(reading)
        await engine.read_cache_aside(reading_id)

        result = await engine.benchmark(reading_id)

        assert result.found is True
        assert result.cold_ms >= 0
        assert result.warm_ms >= 0
        assert store.lookups == 2
        assert ("delete", to_cache_key(reading_id)) in cache.calls
