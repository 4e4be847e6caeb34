"""
Data models for the caching policy engine.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

ID_FIELD = "_id"
PROVISIONAL_PREFIX = "pending-"
# BIGSERIAL upper bound
MAX_PERSISTENT_ID = 2 ** 63 - 1

# Redis TTL sentinels, surfaced to callers unchanged
TTL_NO_SUCH_KEY = -2
TTL_NO_EXPIRY = -1

Reading = Dict[str, Any]


class Strategy(str, Enum):
    """Caching strategies served by the engine."""
    CACHE_ASIDE = "cache-aside"
    READ_THROUGH = "read-through"
    WRITE_THROUGH = "write-through"
    WRITE_BEHIND = "write-behind"
    TTL = "ttl"


class LookupField(str, Enum):
    """How a read locates a reading in the persistent store."""
    ID = "id"
    SENSOR_ID = "sensorId"


class FlushState(str, Enum):
    """Write-behind flush lifecycle."""
    QUEUED = "queued"
    FLUSHING = "flushing"
    PERSISTED = "persisted"
    LOST = "lost"


def new_provisional_id() -> str:
    """Generate an identifier the persistent store will never assign."""
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"


def is_provisional_id(reading_id: str) -> bool:
    return str(reading_id).startswith(PROVISIONAL_PREFIX)


def is_persistent_id(reading_id: str) -> bool:
    """Persistent identifiers are the canonical decimal form of a positive integer key."""
    text = str(reading_id)
    if not (text.isascii() and text.isdigit()) or text.startswith("0"):
        return False
    return int(text) <= MAX_PERSISTENT_ID


def strip_id(reading: Reading) -> Reading:
    """Return the application fields of a reading without its identifier."""
    return {k: v for k, v in reading.items() if k != ID_FIELD}


def with_id(reading_id: str, fields: Reading) -> Reading:
    """Merge an identifier with application fields, identifier first."""
    return {ID_FIELD: str(reading_id), **strip_id(fields)}


@dataclass
class ReadResult:
    """Outcome of a cache-aside or read-through read."""
    strategy: Strategy
    warm: bool
    data: Optional[Reading] = None


@dataclass
class TTLReadResult:
    """Outcome of a TTL read."""
    warm: bool
    ttl_left: int
    data: Optional[Reading] = None
    strategy: Strategy = Strategy.TTL


@dataclass
class WriteResult:
    """Outcome of a write-through write."""
    doc: Reading
    strategy: Strategy = Strategy.WRITE_THROUGH


@dataclass
class WriteBehindResult:
    """Outcome of a write-behind write: queued, not durable."""
    doc: Reading
    job_id: str
    accepted: bool = True
    strategy: Strategy = Strategy.WRITE_BEHIND


@dataclass
class BenchmarkResult:
    """Cold versus warm cache-aside timings for one reading."""
    reading_id: str
    cold_ms: float
    warm_ms: float
    found: bool


@dataclass
class FlushRecord:
    """Snapshot of a write-behind flush job."""
    job_id: str
    provisional_id: str
    state: FlushState
    queued_at: datetime
    finished_at: Optional[datetime] = None
    persisted_id: Optional[str] = None
    error: Optional[str] = None


class ReadResponse(BaseModel):
    """Response model for cache-aside and read-through reads."""
    strategy: Strategy
    warm: bool
    data: Optional[Dict[str, Any]] = None


class TTLReadResponse(BaseModel):
    """Response model for TTL reads."""
    strategy: Strategy = Strategy.TTL
    warm: bool
    ttl_left_seconds: int = Field(..., description="Remaining TTL; -2 no such key, -1 no expiry")
    data: Optional[Dict[str, Any]] = None


class WriteThroughResponse(BaseModel):
    """Response model for write-through writes."""
    strategy: Strategy = Strategy.WRITE_THROUGH
    doc: Dict[str, Any]


class WriteBehindResponse(BaseModel):
    """Response model for write-behind writes."""
    strategy: Strategy = Strategy.WRITE_BEHIND
    queued: bool
    job_id: str
    doc: Dict[str, Any]


class FlushJobResponse(BaseModel):
    """Response model for write-behind job inspection."""
    job_id: str
    provisional_id: str
    state: FlushState
    queued_at: datetime
    finished_at: Optional[datetime] = None
    persisted_id: Optional[str] = None
    error: Optional[str] = None


class BenchmarkResponse(BaseModel):
    """Response model for the cold/warm benchmark."""
    id: str
    cold_ms: float
    warm_ms: float
    found: bool
