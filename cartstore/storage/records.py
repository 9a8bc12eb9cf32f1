"""
Record Store - schema-aware envelope persistence.

Every persisted entity goes through this one code path:
validate -> wrap -> write, and read -> unwrap -> max-age -> validate.
One canonical key per schema: {namespace}:{schema}.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from cartstore.clock import Clock, now_ms
from cartstore.config import StoreSettings, get_settings
from cartstore.errors import (
    CapacityExceededError,
    CartStoreError,
    CorruptionError,
    ErrorKind,
    SchemaInvalidError,
)
from cartstore.logging import get_logger, sanitize_string_for_logging
from cartstore.storage.backend import StorageBackend
from cartstore.storage.codec import Codec
from cartstore.storage.envelope import VersionedEnvelope, unwrap, wrap
from cartstore.storage.keys import StorageKeys
from cartstore.storage.schemas import SchemaRegistry, default_registry

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = "3.0"


@dataclass
class StoredRecord:
    """A record that passed every read-time check."""
    payload: Any
    raw: str
    envelope: VersionedEnvelope


@dataclass
class ImportReport:
    imported: int = 0
    errors: int = 0


class RecordStore:
    """
    Read and write validated envelopes.

    Usage:
        records = RecordStore(backend)
        records.put("preferences", {"theme": "dark", ...})
        prefs = records.get("preferences")
    """

    def __init__(
        self,
        backend: StorageBackend,
        registry: Optional[SchemaRegistry] = None,
        settings: Optional[StoreSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.backend = backend
        self.registry = registry or default_registry()
        self.settings = settings or get_settings()
        self._clock = clock or now_ms
        self.codec = Codec(self.settings.compression_threshold)

    def key_for(self, schema_name: str) -> str:
        return StorageKeys.canonical(self.settings.namespace, schema_name)

    def _schema_for_key(self, key: str) -> Optional[str]:
        prefix = StorageKeys.namespace_prefix(self.settings.namespace)
        if not key.startswith(prefix):
            return None
        return key[len(prefix):]

    def _namespace_keys(self) -> list[str]:
        return [k for k in self.backend.keys() if self._schema_for_key(k) is not None]

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def encode(self, schema_name: str, payload: Any, ttl: Optional[int] = None) -> str:
        """Validate and wrap a payload; returns the serialized envelope."""
        descriptor = self.registry.get(schema_name)
        result = self.registry.validate(schema_name, payload)
        if not result.valid:
            raise SchemaInvalidError(schema_name, result)

        envelope = wrap(
            payload,
            schema_name,
            descriptor.version,
            ttl=descriptor.max_age if ttl is None else ttl,
            now=self._clock(),
            codec=self.codec,
        )
        return envelope.dumps()

    def put(self, schema_name: str, payload: Any, ttl: Optional[int] = None) -> str:
        """
        Validate, wrap and persist a payload.

        On CapacityExceeded, frees space once and retries once.

        Returns:
            The serialized envelope that was written

        Raises:
            SchemaInvalidError: Payload does not match its schema
            CapacityExceededError: Still no room after eviction
        """
        raw = self.encode(schema_name, payload, ttl)
        key = self.key_for(schema_name)
        try:
            self.backend.set(key, raw)
        except CapacityExceededError:
            logger.warning(f"Capacity exceeded writing {schema_name}, evicting and retrying once")
            self.free_space(protect=(key,))
            self.backend.set(key, raw)
        return raw

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def decode(self, schema_name: str, raw: str) -> StoredRecord:
        """
        Run every read-time check on a serialized envelope.

        Raises:
            CorruptionError: Checksum mismatch, malformed envelope, or expired
            SchemaInvalidError: Wrong schema/version or payload shape
        """
        envelope = VersionedEnvelope.loads(raw)
        if envelope.schema_name != schema_name:
            raise SchemaInvalidError(schema_name, message=f"Expected schema {schema_name}, found {envelope.schema_name}")

        now = self._clock()
        payload = unwrap(envelope, now=now, codec=self.codec)

        descriptor = self.registry.get(schema_name)
        if envelope.schema_version != descriptor.version:
            raise SchemaInvalidError(
                schema_name,
                message=f"Unsupported {schema_name} version {envelope.schema_version}",
            )
        if now - envelope.written_at > descriptor.max_age:
            raise CorruptionError(ErrorKind.EXPIRED, details={"schema": schema_name, "writtenAt": envelope.written_at})

        result = self.registry.validate(schema_name, payload)
        if not result.valid:
            raise SchemaInvalidError(schema_name, result)

        return StoredRecord(payload=payload, raw=raw, envelope=envelope)

    def read(self, schema_name: str) -> Optional[StoredRecord]:
        """Stored record, or None if the key is empty. Failures are raised, not discarded."""
        raw = self.backend.get(self.key_for(schema_name))
        if raw is None:
            return None
        return self.decode(schema_name, raw)

    def get(self, schema_name: str) -> Optional[Any]:
        """Payload of a valid record. Corrupt, expired or invalid records are removed."""
        try:
            record = self.read(schema_name)
        except (CorruptionError, SchemaInvalidError) as e:
            logger.warning(f"Discarding {schema_name} record: {e.code} ({e})")
            self.remove(schema_name)
            return None
        return record.payload if record else None

    def remove(self, schema_name: str) -> None:
        self.backend.remove(self.key_for(schema_name))

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_expired(self) -> int:
        """Remove expired and unreadable records across all schemas."""
        removed = 0
        for key in self._namespace_keys():
            schema_name = self._schema_for_key(key)
            raw = self.backend.get(key)
            if raw is None:
                continue
            try:
                self.decode(schema_name, raw)
            except CartStoreError as e:
                logger.info(f"Evicting {sanitize_string_for_logging(key)}: {e.code}")
                self.backend.remove(key)
                removed += 1
        return removed

    def evict_oldest(self, fraction: Optional[float] = None, protect: Iterable[str] = ()) -> int:
        """
        Remove the oldest records by write time.

        At least one record goes when any is eligible; unreadable records
        count as oldest.
        """
        fraction = self.settings.eviction_fraction if fraction is None else fraction
        protected = set(protect)

        candidates: list[tuple[int, str]] = []
        for key in self._namespace_keys():
            if key in protected:
                continue
            raw = self.backend.get(key)
            if raw is None:
                continue
            try:
                written_at = VersionedEnvelope.loads(raw).written_at
            except CorruptionError:
                written_at = 0
            candidates.append((written_at, key))

        if not candidates:
            return 0

        candidates.sort()
        to_remove = max(1, math.floor(len(candidates) * fraction))
        for _written_at, key in candidates[:to_remove]:
            self.backend.remove(key)
        logger.info(f"Evicted {to_remove} oldest records")
        return to_remove

    def free_space(self, protect: Iterable[str] = ()) -> int:
        """Eviction cycle: expired first, then oldest if nothing expired."""
        protect = tuple(protect)
        removed = self.evict_expired()
        if removed == 0:
            removed = self.evict_oldest(protect=protect)
        return removed

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_all(self) -> dict[str, Any]:
        """Every valid record, keyed by schema."""
        data: dict[str, Any] = {}
        for schema_name in self.registry.names():
            payload = self.get(schema_name)
            if payload is not None:
                data[schema_name] = payload

        return {
            "data": data,
            "metadata": {
                "exportedAt": datetime.now(timezone.utc).isoformat(),
                "version": EXPORT_FORMAT_VERSION,
                "namespace": self.settings.namespace,
                "totalKeys": len(data),
            },
        }

    def import_all(self, exported: dict[str, Any]) -> ImportReport:
        """
        Restore records produced by export_all().

        Unknown schemas and invalid payloads are counted as errors; valid
        entries are still written.
        """
        if not isinstance(exported, dict) or not isinstance(exported.get("data"), dict):
            raise CartStoreError("invalid_export", "Export data must contain a 'data' object")

        report = ImportReport()
        for schema_name, payload in exported["data"].items():
            if schema_name not in self.registry:
                logger.warning(f"Skipping unknown schema on import: {sanitize_string_for_logging(schema_name)}")
                report.errors += 1
                continue
            try:
                self.put(schema_name, payload)
                report.imported += 1
            except (SchemaInvalidError, CapacityExceededError) as e:
                logger.warning(f"Failed to import {schema_name}: {e}")
                report.errors += 1

        logger.info(f"Import finished: {report.imported} imported, {report.errors} errors")
        return report

    def stats(self) -> dict[str, Any]:
        keys = self._namespace_keys()
        usage = self.backend.usage()
        return {
            "total_keys": len(keys),
            "schemas": sorted(self._schema_for_key(k) for k in keys),
            "usage": usage,
            "is_persistent": self.backend.is_persistent,
            "namespace": self.settings.namespace,
        }
