"""
PostgreSQL persistence layer for the Readings Service.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import PersistenceError, StoreUnavailableError
from ..policies.models import LookupField, is_persistent_id, with_id

_UNAVAILABLE = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)


class PostgresReadingStore:
    """PostgreSQL document store for readings."""

    def __init__(
        self,
        dsn: str,
        table: str = "readings",
        *,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.dsn = dsn
        self.table = table
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("readings.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        """Open the connection pool and create the readings table."""
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                    init=self._init_connection
                )

            await self._create_tables()

        except _UNAVAILABLE as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StoreUnavailableError("postgres", str(e)) from e

        self.logger.info("PostgreSQL persistence started", table=self.table)

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )

    async def _create_tables(self):
        """Create the readings table and its sensor index."""
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id BIGSERIAL PRIMARY KEY,
                    sensor_id TEXT,
                    document JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_sensor_id ON {self.table}(sensor_id);
            """)

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreUnavailableError("postgres", "store not started")
        return self.pool

    async def insert(self, document: Dict[str, Any]) -> str:
        """Insert a reading document and return its assigned identifier."""
        sensor_id = document.get(LookupField.SENSOR_ID.value)
        try:
            async with self._require_pool().acquire() as conn:
                reading_id = await conn.fetchval(
                    f"INSERT INTO {self.table} (sensor_id, document) VALUES ($1, $2) RETURNING id",
                    str(sensor_id) if sensor_id is not None else None,
                    document
                )
        except _UNAVAILABLE as e:
            self.logger.error("PostgreSQL unavailable on insert", error=str(e))
            raise StoreUnavailableError("postgres", str(e)) from e
        except (asyncpg.exceptions.PostgresError, TypeError, ValueError) as e:
            self.logger.error("Reading insert rejected", error=str(e))
            raise PersistenceError("Reading insert rejected", {"error": str(e)}) from e

        self.logger.info("Reading inserted", reading_id=reading_id)
        return str(reading_id)

    async def find_by_id(self, reading_id: str) -> Optional[Dict[str, Any]]:
        """Look a reading up by its primary identifier.

        Identifiers that cannot be primary keys, such as provisional ones,
        simply do not match.
        """
        if not is_persistent_id(reading_id):
            return None
        row = await self._fetchrow(
            f"SELECT id, document FROM {self.table} WHERE id = $1",
            int(reading_id)
        )
        return self._row_to_reading(row)

    async def find_by_attribute(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        """Look a reading up by a document attribute; the oldest match wins."""
        if field == LookupField.SENSOR_ID.value:
            row = await self._fetchrow(
                f"SELECT id, document FROM {self.table} WHERE sensor_id = $1 ORDER BY id LIMIT 1",
                str(value)
            )
        else:
            row = await self._fetchrow(
                f"SELECT id, document FROM {self.table} WHERE document->>$1 = $2 ORDER BY id LIMIT 1",
                field,
                str(value)
            )
        return self._row_to_reading(row)

    async def _fetchrow(self, query: str, *args):
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchrow(query, *args)
        except _UNAVAILABLE as e:
            self.logger.error("PostgreSQL unavailable on lookup", error=str(e))
            raise StoreUnavailableError("postgres", str(e)) from e

    @staticmethod
    def _row_to_reading(row) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        return with_id(str(row["id"]), document)

    async def ping(self):
        """Run a trivial query and return its result."""
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchval("SELECT 1")
        except _UNAVAILABLE as e:
            raise StoreUnavailableError("postgres", str(e)) from e
