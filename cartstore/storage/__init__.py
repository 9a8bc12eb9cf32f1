"""Storage layer: media, backend, envelopes, schemas and the record store."""
from .backend import StorageBackend, StorageUsage
from .envelope import VersionedEnvelope, unwrap, wrap
from .keys import MaxAge, StorageKeys
from .medium import MemoryMedium, RedisMedium, StorageEvent, StorageMedium
from .records import ImportReport, RecordStore
from .schemas import SchemaRegistry, default_registry

__all__ = [
    "StorageBackend",
    "StorageUsage",
    "VersionedEnvelope",
    "wrap",
    "unwrap",
    "MaxAge",
    "StorageKeys",
    "MemoryMedium",
    "RedisMedium",
    "StorageEvent",
    "StorageMedium",
    "ImportReport",
    "RecordStore",
    "SchemaRegistry",
    "default_registry",
]
