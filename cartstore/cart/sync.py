"""
Cross-Tab Synchronizer - keep a context's cart in step with its siblings.

Listens for storage change events on the canonical cart key. A sibling's
write replaces the local record only if it decodes cleanly; a corrupted
write is logged and ignored so it can never spread into a healthy context.
"""
from typing import Callable, Optional

from cartstore.cart.models import CartRecord
from cartstore.errors import CartStoreError
from cartstore.logging import get_logger, sanitize_string_for_logging
from cartstore.storage.backend import StorageBackend
from cartstore.storage.medium import StorageEvent

logger = get_logger(__name__)

CartListener = Callable[[CartRecord], None]
CartDecoder = Callable[[str], CartRecord]


class CrossTabSynchronizer:
    """
    Usage:
        sync = CrossTabSynchronizer(backend, "store:cart", decode)
        remove = sync.add_listener(lambda record: render(record))
    """

    def __init__(self, backend: StorageBackend, key: str, decode: CartDecoder):
        self.key = key
        self._decode = decode
        self._listeners: list[CartListener] = []
        self._last_raw: Optional[str] = None
        self.current: Optional[CartRecord] = None
        self._unsubscribe: Optional[Callable[[], None]] = backend.subscribe(self.handle_event)

    def add_listener(self, listener: CartListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def reset(self, record: CartRecord, raw: Optional[str]) -> None:
        """Record what this context loaded, without notifying anyone."""
        self.current = record
        self._last_raw = raw

    def handle_event(self, event: StorageEvent) -> bool:
        """
        Process a change written by another context.

        Returns:
            True if the local record was replaced
        """
        if event.key != self.key:
            return False
        if event.new_value is None:
            # Removal: the sibling's next write will carry the new state
            return False
        if event.new_value == self._last_raw:
            return False

        try:
            record = self._decode(event.new_value)
        except CartStoreError as e:
            logger.warning(
                f"Ignoring cart change from context {sanitize_string_for_logging(event.origin)}: {e.code}"
            )
            return False

        self._last_raw = event.new_value
        self.current = record
        self._notify(record)
        return True

    def publish_local(self, record: CartRecord, raw: Optional[str]) -> None:
        """Same-context broadcast; storage events only reach other contexts."""
        self._last_raw = raw
        self.current = record
        self._notify(record)

    def _notify(self, record: CartRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"Cart listener failed: {e}", exc_info=True)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()
