"""
JSON serialization helpers for cached readings.
"""

import json
from datetime import date, datetime
from typing import Any, Dict

from shared.errors import SerializationError


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_entity(entity: Dict[str, Any]) -> str:
    """Serialize a reading for storage in the cache."""
    try:
        return json.dumps(entity, default=_default, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationError("Reading is not JSON serializable", {"error": str(e)}) from e


def deserialize_entity(raw: str) -> Dict[str, Any]:
    """Decode a cached reading.

    Raises SerializationError for anything that is not a JSON object.
    """
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise SerializationError("Cached reading is not valid JSON", {"error": str(e)}) from e

    if not isinstance(value, dict):
        raise SerializationError(
            "Cached reading is not a JSON object",
            {"type": type(value).__name__}
        )
    return value
