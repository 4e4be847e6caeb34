"""
Shared error handling for the Readings Cache service.

Lookup misses are not errors: they are returned as absent results. Everything
else that can go wrong between the policy engine and its two stores is one of
the exceptions below.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from .logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class CacheLayerException(Exception):
    """Base exception for the readings cache layer."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class StoreUnavailableError(CacheLayerException):
    """A cache or persistent store could not be reached."""

    status_code = 503

    def __init__(self, store: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        self.store = store
        super().__init__("STORE_UNAVAILABLE", f"{store}: {message}", details)


class CachePopulationError(StoreUnavailableError):
    """The store write succeeded but the cache could not be populated.

    The persisted identifier is kept in ``details`` so the caller knows the
    record exists even though the cache does not hold it.
    """

    def __init__(self, reading_id: str, message: str = "Cache population failed after persisting"):
        super().__init__("cache", message, {"persisted_id": reading_id})
        self.code = "CACHE_POPULATION_FAILED"
        self.reading_id = reading_id


class SerializationError(CacheLayerException):
    """A cached payload is corrupt or an entity cannot be serialized."""

    status_code = 500

    def __init__(self, message: str = "Serialization failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_FAILURE", message, details)


class PersistenceError(CacheLayerException):
    """The persistent store rejected a write."""

    status_code = 500

    def __init__(self, message: str = "Persistence failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERSISTENCE_FAILURE", message, details)


class ValidationError(CacheLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)
