"""
Storage Backend - the only component that touches a storage medium.

Wraps a StorageMedium with:
- capacity failures surfaced as CapacityExceededError (never swallowed)
- transparent in-memory fallback when the medium is unavailable
- a per-context identity, so change events can skip their writer
"""

import uuid
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from cartstore.errors import StorageUnavailableError
from cartstore.logging import get_logger, sanitize_id_for_logging
from cartstore.storage.medium import MemoryMedium, StorageListener, StorageMedium

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class StorageUsage:
    """Space used by everything in the medium."""
    total_size: int
    max_size: Optional[int]
    usage_percentage: float
    key_count: int


class StorageBackend:
    """
    Get/set/remove over a storage medium.

    Usage:
        backend = StorageBackend(MemoryMedium(persistent=True))
        backend.set("store:cart", raw)
        raw = backend.get("store:cart")
    """

    def __init__(
        self,
        medium: StorageMedium,
        context_id: Optional[str] = None,
        fallback_capacity: Optional[int] = None,
    ):
        self.context_id = context_id or uuid.uuid4().hex
        self._medium = medium
        self._fallback_capacity = fallback_capacity
        self._using_fallback = False

        try:
            medium.probe()
        except StorageUnavailableError as e:
            self._switch_to_fallback(e)

    @property
    def medium(self) -> StorageMedium:
        return self._medium

    @property
    def using_fallback(self) -> bool:
        return self._using_fallback

    @property
    def is_persistent(self) -> bool:
        """False when data will not survive a reload (fallback map in use)."""
        return not self._using_fallback and self._medium.persistent

    def _switch_to_fallback(self, error: Exception) -> None:
        logger.warning(
            f"Storage medium unavailable for context {sanitize_id_for_logging(self.context_id)}, "
            f"using in-memory fallback: {error}"
        )
        self._medium = MemoryMedium(capacity=self._fallback_capacity, persistent=False)
        self._using_fallback = True

    def _call(self, operation: Callable[[StorageMedium], T]) -> T:
        try:
            return operation(self._medium)
        except StorageUnavailableError as e:
            if self._using_fallback:
                raise
            self._switch_to_fallback(e)
            return operation(self._medium)

    def get(self, key: str) -> Optional[str]:
        """Raw value or None."""
        return self._call(lambda m: m.get(key))

    def set(self, key: str, raw: str) -> bool:
        """
        Write a raw value.

        Raises:
            CapacityExceededError: The medium is full. Callers decide whether
                to evict and retry.
        """
        self._call(lambda m: m.set(key, raw, origin=self.context_id))
        return True

    def remove(self, key: str) -> None:
        self._call(lambda m: m.remove(key, origin=self.context_id))

    def keys(self) -> list[str]:
        return self._call(lambda m: m.keys())

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Listen for changes made by other contexts. Returns an unsubscribe function."""
        return self._medium.subscribe(self.context_id, listener)

    def usage(self) -> StorageUsage:
        """Measure space used (keys + values, in characters)."""
        total = 0
        keys = self.keys()
        for key in keys:
            value = self.get(key)
            total += len(key) + (len(value) if value else 0)

        max_size = self._medium.capacity
        percentage = (total / max_size * 100) if max_size else 0.0
        return StorageUsage(
            total_size=total,
            max_size=max_size,
            usage_percentage=round(percentage, 2),
            key_count=len(keys),
        )
