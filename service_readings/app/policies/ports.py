"""
Adapter protocols the policy engine depends on.
"""

from typing import Any, Dict, Optional, Protocol


class CacheStore(Protocol):
    """Key/value cache with optional per-entry expiration."""

    async def get(self, key: str) -> Optional[str]:
        """Return the serialized value or None."""
        ...

    async def set(self, key: str, value: str, expire_seconds: Optional[int] = None) -> bool:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def ttl(self, key: str) -> int:
        """Return seconds remaining, -2 for a missing key, -1 for no expiry."""
        ...

    async def ping(self) -> Any:
        ...


class ReadingStore(Protocol):
    """Durable storage of readings keyed by a store-assigned identifier."""

    async def insert(self, document: Dict[str, Any]) -> str:
        """Insert a document and return its assigned identifier."""
        ...

    async def find_by_id(self, reading_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def find_by_attribute(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        ...

    async def ping(self) -> Any:
        ...
