"""
Storage media - the flat string key-value stores the backend sits on.

Two implementations:
- MemoryMedium: in-process map. Several backends (contexts) can share one
  instance, in which case it behaves like a browser origin's local storage:
  writes fire change events in every *other* context.
- RedisMedium: Redis-backed, for hosts where contexts live in different
  processes. Change events go through a Redis stream that each process
  drains with poll_events().
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis
from redis.exceptions import RedisError, ResponseError

from cartstore.errors import CapacityExceededError, StorageUnavailableError
from cartstore.logging import get_logger, sanitize_string_for_logging
from cartstore.storage.keys import StorageKeys

logger = get_logger(__name__)


@dataclass(frozen=True)
class StorageEvent:
    """A change to one key, as seen by contexts other than the writer."""
    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    origin: str


StorageListener = Callable[[StorageEvent], None]


class StorageMedium(ABC):
    """Raw key-value medium. Values are strings, nothing is validated."""

    persistent: bool = True

    def __init__(self) -> None:
        self._listeners: list[tuple[str, StorageListener]] = []

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, origin: str = "") -> None:
        ...

    @abstractmethod
    def remove(self, key: str, origin: str = "") -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...

    @abstractmethod
    def probe(self) -> None:
        """Raise StorageUnavailableError if the medium cannot be used."""

    @property
    def capacity(self) -> Optional[int]:
        return None

    def subscribe(self, context_id: str, listener: StorageListener) -> Callable[[], None]:
        """Receive change events written by other contexts. Returns an unsubscribe function."""
        entry = (context_id, listener)
        self._listeners.append(entry)

        def remove() -> None:
            try:
                self._listeners.remove(entry)
            except ValueError:
                pass
        return remove

    def _dispatch(self, event: StorageEvent) -> None:
        for context_id, listener in list(self._listeners):
            if context_id == event.origin:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Storage listener failed for {sanitize_string_for_logging(event.key)}: {e}", exc_info=True)


class MemoryMedium(StorageMedium):
    """
    In-memory medium.

    Args:
        capacity: Max bytes (keys + values), None for unbounded
        persistent: Whether data is considered to survive a reload. Shared
            instances standing in for a real origin storage pass True; the
            backend's own fallback map is not persistent.
        available: False simulates storage disabled by the host
    """

    def __init__(self, capacity: Optional[int] = None, persistent: bool = False, available: bool = True):
        super().__init__()
        self._data: dict[str, str] = {}
        self._capacity = capacity
        self.persistent = persistent
        self.available = available

    @property
    def capacity(self) -> Optional[int]:
        return self._capacity

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailableError()

    def size(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def probe(self) -> None:
        self._check_available()
        self._data[StorageKeys.PROBE] = StorageKeys.PROBE
        del self._data[StorageKeys.PROBE]

    def get(self, key: str) -> Optional[str]:
        self._check_available()
        return self._data.get(key)

    def set(self, key: str, value: str, origin: str = "") -> None:
        self._check_available()
        old_value = self._data.get(key)
        if self._capacity is not None:
            current = self.size()
            if old_value is not None:
                current -= len(key) + len(old_value)
            new_size = current + len(key) + len(value)
            if new_size > self._capacity:
                raise CapacityExceededError(key, new_size)
        self._data[key] = value
        if old_value != value:
            self._dispatch(StorageEvent(key, old_value, value, origin))

    def remove(self, key: str, origin: str = "") -> None:
        self._check_available()
        old_value = self._data.pop(key, None)
        if old_value is not None:
            self._dispatch(StorageEvent(key, old_value, None, origin))

    def keys(self) -> list[str]:
        self._check_available()
        return list(self._data.keys())


class RedisMedium(StorageMedium):
    """
    Redis-backed medium.

    Keys live under StorageKeys.REDIS_PREFIX. Every write also appends a
    change event to a capped stream so sibling processes can replay it.
    """

    persistent = True

    def __init__(
        self,
        client: Any,
        prefix: str = StorageKeys.REDIS_PREFIX,
        stream: str = StorageKeys.REDIS_EVENTS_STREAM,
        stream_maxlen: int = 1000,
    ):
        super().__init__()
        self._client = client
        self._prefix = prefix
        self._stream = stream
        self._stream_maxlen = stream_maxlen
        self._last_event_id: Optional[str] = None

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisMedium":
        """Create a medium from a redis:// URL."""
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def _translate(self, error: RedisError, key: str = "", size: int = 0) -> Exception:
        # Redis refuses writes past maxmemory with an OOM ResponseError
        if isinstance(error, ResponseError) and "OOM" in str(error):
            return CapacityExceededError(key, size, message=str(error))
        return StorageUnavailableError(f"Redis error: {error}")

    def probe(self) -> None:
        try:
            self._client.ping()
        except RedisError as e:
            raise StorageUnavailableError(f"Redis not reachable: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            return self._text(self._client.get(self._full_key(key)))
        except RedisError as e:
            raise self._translate(e, key) from e

    def set(self, key: str, value: str, origin: str = "") -> None:
        try:
            old_value = self._text(self._client.get(self._full_key(key)))
            self._client.set(self._full_key(key), value)
        except RedisError as e:
            raise self._translate(e, key, len(value)) from e
        if old_value != value:
            self._publish(StorageEvent(key, old_value, value, origin))

    def remove(self, key: str, origin: str = "") -> None:
        try:
            old_value = self._text(self._client.get(self._full_key(key)))
            self._client.delete(self._full_key(key))
        except RedisError as e:
            raise self._translate(e, key) from e
        if old_value is not None:
            self._publish(StorageEvent(key, old_value, None, origin))

    def keys(self) -> list[str]:
        try:
            found = [self._text(k) for k in self._client.scan_iter(match=f"{self._prefix}*")]
        except RedisError as e:
            raise self._translate(e) from e
        return [k[len(self._prefix):] for k in found if k]

    def _publish(self, event: StorageEvent) -> None:
        payload = {
            "key": event.key,
            "old": event.old_value,
            "new": event.new_value,
            "origin": event.origin,
        }
        try:
            self._client.xadd(
                self._stream,
                {"data": json.dumps(payload)},
                maxlen=self._stream_maxlen,
                approximate=True,
            )
        except RedisError as e:
            # The value itself was written; siblings converge on their next read
            logger.warning(f"Failed to publish storage event: {e}")
        # Same-process contexts get the event right away
        self._dispatch(event)

    def _resolve_last_event_id(self) -> str:
        if self._last_event_id is None:
            latest = self._client.xrevrange(self._stream, count=1)
            self._last_event_id = self._text(latest[0][0]) if latest else "0-0"
        return self._last_event_id

    def poll_events(self, count: int = 100) -> int:
        """
        Read change events other processes appended since the last poll.

        Returns:
            Number of events dispatched
        """
        try:
            last_id = self._resolve_last_event_id()
            response = self._client.xread({self._stream: last_id}, count=count)
        except RedisError as e:
            logger.warning(f"Failed to read storage events: {e}")
            return 0

        # Writes from this process were already dispatched by _publish
        local_contexts = {context_id for context_id, _ in self._listeners}
        dispatched = 0
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                self._last_event_id = self._text(entry_id)
                try:
                    data = json.loads(self._text(fields.get("data")) or "")
                    event = StorageEvent(data["key"], data.get("old"), data.get("new"), data.get("origin", ""))
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping malformed storage event {self._last_event_id}: {e}")
                    continue
                if event.origin in local_contexts:
                    continue
                self._dispatch(event)
                dispatched += 1
        return dispatched
