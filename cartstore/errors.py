"""
Cart store error types and shared messages.

Storage-level failures are exceptions; business-rule rejections from the
reconciler are plain values (see cartstore.cart.reconciler.RejectionReason).
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Storage-level failure kinds."""
    CHECKSUM_MISMATCH = "ChecksumMismatch"
    EXPIRED = "Expired"
    SCHEMA_INVALID = "SchemaInvalid"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


# Messages (kept in one place so log lines and results stay consistent)
ERROR_CHECKSUM_MISMATCH = "Stored record failed its integrity check"
ERROR_EXPIRED = "Stored record has expired"
ERROR_SCHEMA_INVALID = "Record does not match its schema"
ERROR_CAPACITY_EXCEEDED = "Storage capacity exceeded"
ERROR_STORAGE_UNAVAILABLE = "Storage medium unavailable"
ERROR_UNKNOWN_SCHEMA = "Unknown schema"


class CartStoreError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class CorruptionError(CartStoreError):
    """Envelope could not be trusted: checksum mismatch or expiry."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        if message is None:
            message = ERROR_EXPIRED if kind == ErrorKind.EXPIRED else ERROR_CHECKSUM_MISMATCH
        super().__init__(kind.value, message, details)
        self.kind = kind


class SchemaInvalidError(CartStoreError):
    def __init__(self, schema_name: str, result: Any = None, message: Optional[str] = None):
        super().__init__(
            ErrorKind.SCHEMA_INVALID.value,
            message or f"{ERROR_SCHEMA_INVALID}: {schema_name}",
            {"schema": schema_name},
        )
        self.kind = ErrorKind.SCHEMA_INVALID
        self.schema_name = schema_name
        self.result = result


class CapacityExceededError(CartStoreError):
    def __init__(self, key: str, size: int = 0, message: Optional[str] = None):
        super().__init__(
            ErrorKind.CAPACITY_EXCEEDED.value,
            message or ERROR_CAPACITY_EXCEEDED,
            {"key": key, "size": size},
        )
        self.kind = ErrorKind.CAPACITY_EXCEEDED
        self.key = key


class StorageUnavailableError(CartStoreError):
    def __init__(self, message: str = ERROR_STORAGE_UNAVAILABLE):
        super().__init__(ErrorKind.STORAGE_UNAVAILABLE.value, message)
        self.kind = ErrorKind.STORAGE_UNAVAILABLE
