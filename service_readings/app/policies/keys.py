"""
Cache key mapping for readings.
"""

from typing import Any, Union

CACHE_KEY_PREFIX = "readings:"
LOOKUP_KEY_PREFIX = "readings-by-"


def to_cache_key(reading_id: Union[str, int]) -> str:
    """Map a reading identifier to its cache key.

    The prefix is fixed and the identifier is kept whole, so distinct
    identifiers always produce distinct keys.
    """
    return f"{CACHE_KEY_PREFIX}{reading_id}"


def to_lookup_key(field: str, value: Any) -> str:
    """Map a secondary-attribute lookup to its cache key.

    Lookup keys never start with ``readings:``, so an attribute value cannot
    occupy the entry of an entity identifier.
    """
    return f"{LOOKUP_KEY_PREFIX}{field}:{value}"
