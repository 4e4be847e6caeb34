"""
Readings service: caching-policy demonstration for sensor readings.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import Body, HTTPException, Query

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .cache.redis_cache import RedisCacheStore
from .persistence.postgres import PostgresReadingStore
from .policies.engine import CachePolicyEngine
from .policies.flush import FlushScheduler
from .policies.models import (
    BenchmarkResponse, FlushJobResponse, LookupField, ReadResponse, TTLReadResponse,
    WriteBehindResponse, WriteThroughResponse,
)
from .policies.ports import CacheStore, ReadingStore


class ReadingsService(BaseService):
    """Readings service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        cache: Optional[CacheStore] = None,
        store: Optional[ReadingStore] = None,
    ):
        super().__init__("readings", 3000, config)

        # Adapters are shared by every request for the life of the process
        self.cache = cache or RedisCacheStore(
            self.config.redis_url,
            socket_timeout=self.config.redis_socket_timeout
        )
        self.store = store or PostgresReadingStore(
            self.config.postgres_dsn,
            self.config.readings_table,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool,
            command_timeout=self.config.postgres_command_timeout
        )
        self.scheduler = FlushScheduler(
            self.config.write_behind_delay_seconds,
            history_size=self.config.write_behind_history_size,
            metrics=self.metrics
        )
        self.engine = CachePolicyEngine(
            self.cache,
            self.store,
            scheduler=self.scheduler,
            default_ttl_seconds=self.config.default_ttl_seconds,
            metrics=self.metrics
        )

        self._setup_readings_routes()

    def _setup_readings_routes(self):
        """Set up caching-policy routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "readings",
                "message": "Readings Cache Service",
                "version": "1.0.0",
                "strategies": ["cache-aside", "read-through", "write-through", "write-behind", "ttl"],
                "write_behind": self.scheduler.stats()
            }

        @self.app.get("/v1/cache-aside/readings/{reading_id}", response_model=ReadResponse)
        async def read_cache_aside(
            reading_id: str,
            by: LookupField = Query(LookupField.ID, description="Look up by id or sensorId")
        ):
            """Cache-aside read."""
            return asdict(await self.engine.read_cache_aside(reading_id, by))

        @self.app.get("/v1/read-through/readings/{reading_id}", response_model=ReadResponse)
        async def read_through(
            reading_id: str,
            by: LookupField = Query(LookupField.ID, description="Look up by id or sensorId")
        ):
            """Read-through read."""
            return asdict(await self.engine.read_through(reading_id, by))

        @self.app.post("/v1/write-through/readings", status_code=201, response_model=WriteThroughResponse)
        async def write_through(payload: Optional[Dict[str, Any]] = Body(None)):
            """Persist a reading and cache it before responding."""
            result = await self.engine.write_through(payload)
            return {"strategy": result.strategy, "doc": result.doc}

        @self.app.post("/v1/write-behind/readings", status_code=202, response_model=WriteBehindResponse)
        async def write_behind(payload: Optional[Dict[str, Any]] = Body(None)):
            """Cache a reading now and persist it later."""
            result = await self.engine.write_behind(payload)
            return {
                "strategy": result.strategy,
                "queued": result.accepted,
                "job_id": result.job_id,
                "doc": result.doc
            }

        @self.app.get("/v1/write-behind/jobs/{job_id}", response_model=FlushJobResponse)
        async def get_flush_job(
            job_id: str,
            wait: bool = Query(False, description="Block until the flush has finished"),
            timeout: float = Query(5.0, gt=0, le=60, description="Maximum seconds to wait")
        ):
            """Inspect a write-behind flush job."""
            job = self.scheduler.get_job(job_id)
            if job is None:
                raise HTTPException(status_code=404, detail="Flush job not found")

            if wait and not job.done:
                try:
                    await self.scheduler.wait(job_id, timeout)
                except asyncio.TimeoutError:
                    self.logger.info("Flush job still running", job_id=job_id)

            return asdict(job.to_record())

        @self.app.get("/v1/ttl/readings/{reading_id}", response_model=TTLReadResponse)
        async def read_with_ttl(
            reading_id: str,
            ttl: Optional[int] = Query(None, gt=0, description="Expiration for populated entries"),
            by: LookupField = Query(LookupField.ID, description="Look up by id or sensorId")
        ):
            """Expiration-based read."""
            result = await self.engine.read_with_ttl(reading_id, ttl, by)
            return {
                "strategy": result.strategy,
                "warm": result.warm,
                "ttl_left_seconds": result.ttl_left,
                "data": result.data
            }

        @self.app.get("/bench/{reading_id}", response_model=BenchmarkResponse)
        async def bench(reading_id: str):
            """Compare a cold cache-aside read with the warm one after it."""
            result = await self.engine.benchmark(reading_id)
            return {
                "id": result.reading_id,
                "cold_ms": result.cold_ms,
                "warm_ms": result.warm_ms,
                "found": result.found
            }

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check readings service dependencies."""
        dependencies = {}

        try:
            await self.engine.ping_cache()
            dependencies["redis"] = "ok"
        except Exception as e:
            self.logger.warning("Redis probe failed", error=str(e))
            dependencies["redis"] = "error"

        try:
            await self.engine.ping_store()
            dependencies["postgres"] = "ok"
        except Exception as e:
            self.logger.warning("PostgreSQL probe failed", error=str(e))
            dependencies["postgres"] = "error"

        return dependencies

    async def start(self):
        """Start readings service components."""
        await self.store.start()
        await self.cache.start()
        self.logger.info(
            "Readings service started",
            default_ttl_seconds=self.config.default_ttl_seconds,
            write_behind_delay_seconds=self.config.write_behind_delay_seconds
        )

    async def stop(self):
        """Stop readings service components."""
        await self.scheduler.stop(self.config.shutdown_drain_timeout_seconds)
        await self.cache.stop()
        await self.store.stop()

        self.logger.info("Readings service stopped")


def create_app():
    """Create readings service application."""
    service = ReadingsService()
    return service.app


if __name__ == "__main__":
    service = ReadingsService()
    service.run()
