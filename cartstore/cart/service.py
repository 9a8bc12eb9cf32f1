"""
Cart Store - the facade hosts talk to.

Every mutation is read -> reconcile -> write: the persisted record is
re-read first so a sibling context's last write is never clobbered by stale
in-memory state. Storage corruption is handled here: a load sees an empty
cart, a mutation keeps the cart held in memory. Business rejections are
returned to the caller untouched.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional

from cartstore.cart.catalog import CatalogProvider, CatalogSnapshot, fetch_snapshot
from cartstore.cart.migration import MigrationEngine, MigrationReport
from cartstore.cart.models import CartRecord, VariantSelector
from cartstore.cart.reconciler import (
    CartIntent,
    CartReconciler,
    CleanupReport,
    Rejection,
)
from cartstore.cart.sync import CartListener, CrossTabSynchronizer
from cartstore.clock import Clock, now_ms
from cartstore.config import StoreSettings, get_settings
from cartstore.errors import (
    CapacityExceededError,
    CartStoreError,
    CorruptionError,
    ErrorKind,
    SchemaInvalidError,
)
from cartstore.logging import get_logger, sanitize_id_for_logging
from cartstore.storage.backend import StorageBackend
from cartstore.storage.keys import StorageKeys
from cartstore.storage.medium import MemoryMedium, RedisMedium
from cartstore.storage.records import RecordStore
from cartstore.storage.schemas import SchemaRegistry

logger = get_logger(__name__)


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    VALID = "valid"
    EMPTY = "empty"


@dataclass
class CartOperationResult:
    """Result of a cart mutation. `record` is the cart after the call."""
    success: bool
    record: CartRecord
    rejection: Optional[Rejection] = None
    error: Optional[ErrorKind] = None
    action: str = ""


@dataclass
class CartStats:
    total_items: int
    unique_items: int
    estimated_total: Optional[Decimal]
    unresolved_product_ids: List[str] = field(default_factory=list)
    is_persistent: bool = True
    last_modified_at: int = 0


class CartStore:
    """
    Persistent shopping cart.

    Usage:
        store = create_store()
        store.load(snapshot)
        result = store.add_item("7", 2, snapshot)
        if result.rejection:
            ...
    """

    def __init__(
        self,
        backend: StorageBackend,
        registry: Optional[SchemaRegistry] = None,
        settings: Optional[StoreSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self._clock = clock or now_ms
        self.backend = backend
        self.records = RecordStore(backend, registry, self.settings, self._clock)
        self.reconciler = CartReconciler(
            max_unique_items=self.settings.max_unique_items,
            max_quantity_per_item=self.settings.max_quantity_per_item,
            clock=self._clock,
        )
        self.migration = MigrationEngine(self.records, clock=self._clock)
        self.key = self.records.key_for(StorageKeys.CART)

        self.state = StoreState.UNINITIALIZED
        self.last_migration: Optional[MigrationReport] = None
        self.last_cleanup: Optional[CleanupReport] = None
        self._empty = CartRecord.empty(self._clock())
        self._sync = CrossTabSynchronizer(backend, self.key, self._decode)
        self._sync.add_listener(self._set_state)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def record(self) -> CartRecord:
        """Current in-memory cart."""
        return self._sync.current or self._empty

    @property
    def is_persistent(self) -> bool:
        """False when the cart will not survive a reload."""
        return self.backend.is_persistent

    def on_cart_changed(self, listener: CartListener) -> Callable[[], None]:
        """Called with the new record after local mutations and sibling writes."""
        return self._sync.add_listener(listener)

    def stats(self) -> CartStats:
        """Derived metadata of the in-memory cart; no storage I/O."""
        record = self.record
        return CartStats(
            total_items=record.metadata.total_items,
            unique_items=record.unique_items,
            estimated_total=record.metadata.estimated_total,
            unresolved_product_ids=list(record.metadata.unresolved_product_ids),
            is_persistent=self.is_persistent,
            last_modified_at=record.metadata.last_modified_at,
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _decode(self, raw: str) -> CartRecord:
        stored = self.records.decode(StorageKeys.CART, raw)
        record = CartRecord.from_dict(stored.payload)
        problems = record.problems()
        if problems:
            raise SchemaInvalidError(StorageKeys.CART, problems, message=f"Unsound cart: {'; '.join(problems)}")
        return record

    def _ensure_migrated(self) -> None:
        if self.last_migration is not None:
            return
        try:
            self.last_migration = self.migration.run()
        except CartStoreError as e:
            logger.error(f"Legacy migration failed: {e}")
            self.last_migration = MigrationReport()

    def _read_persisted(self) -> tuple[Optional[CartRecord], Optional[str], Optional[ErrorKind]]:
        """(record, raw, failure); failure is set when a stored record was discarded."""
        try:
            stored = self.records.read(StorageKeys.CART)
        except (CorruptionError, SchemaInvalidError) as e:
            logger.warning(f"Discarding stored cart: {e.code}")
            return None, None, e.kind
        if stored is None:
            return None, None, None
        return CartRecord.from_dict(stored.payload), stored.raw, None

    def _current_for_mutation(self) -> CartRecord:
        record, _raw, failure = self._read_persisted()
        if record is not None:
            return self.reconciler.normalize(record).record
        if failure in (ErrorKind.CHECKSUM_MISMATCH, ErrorKind.SCHEMA_INVALID) and self._sync.current is not None:
            # Unreadable storage never wipes a healthy in-memory cart; the next write repairs it
            logger.warning("Stored cart unreadable, mutating the in-memory cart")
            return self._sync.current
        return CartRecord.empty(self._clock())

    def _persist(self, record: CartRecord) -> str:
        return self.records.put(StorageKeys.CART, record.to_dict())

    def _set_state(self, record: CartRecord) -> None:
        self.state = StoreState.VALID if record.items else StoreState.EMPTY

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self, catalog: Optional[CatalogSnapshot] = None) -> CartRecord:
        """
        Load the cart, migrating legacy data on first use.

        A missing, corrupted, expired or invalid record yields (and persists)
        an empty cart. With a catalog snapshot the cleanup pass runs, without one
        the record is normalized; the result is persisted when it changed.
        """
        self.state = StoreState.LOADING
        self._ensure_migrated()

        record, raw, _failure = self._read_persisted()
        if record is None:
            record = CartRecord.empty(self._clock())
            raw = self._try_persist(record)
        else:
            if catalog is not None:
                report = self.reconciler.cleanup(record, catalog)
            else:
                report = self.reconciler.normalize(record)
            self.last_cleanup = report
            if report.record.to_dict() != record.to_dict():
                record = report.record
                raw = self._try_persist(record) or raw

        self._sync.reset(record, raw)
        self._set_state(record)
        return record

    async def load_from(self, provider: CatalogProvider) -> CartRecord:
        """load() with a snapshot fetched for the stored items."""
        self._ensure_migrated()
        current, _raw, _failure = self._read_persisted()
        ids = [item.product_id for item in current.items] if current else []
        snapshot = await fetch_snapshot(provider, ids)
        return self.load(snapshot)

    def _try_persist(self, record: CartRecord) -> Optional[str]:
        try:
            return self._persist(record)
        except CapacityExceededError as e:
            logger.error(f"Could not persist cart on load: {e}")
            return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _apply(self, intent: CartIntent, catalog: Optional[CatalogSnapshot]) -> CartOperationResult:
        self._ensure_migrated()
        current = self._current_for_mutation()

        result = self.reconciler.apply(intent, current, catalog)
        if not result.success:
            return CartOperationResult(False, current, rejection=result.rejection, action=intent.kind.value)
        if result.action == "noop":
            return CartOperationResult(True, current, action=result.action)

        try:
            raw = self._persist(result.record)
        except CapacityExceededError:
            logger.error(f"Cart {intent.kind.value} failed: storage full after eviction")
            return CartOperationResult(
                False, self.record, error=ErrorKind.CAPACITY_EXCEEDED, action=intent.kind.value,
            )

        self._sync.publish_local(result.record, raw)
        self._set_state(result.record)
        return CartOperationResult(True, result.record, action=result.action)

    def add_item(
        self,
        product_id: str,
        quantity: int,
        catalog: Optional[CatalogSnapshot],
        variant_selector: VariantSelector = None,
    ) -> CartOperationResult:
        """Add units of a product (merged with an existing line of the same variant)."""
        logger.debug(f"add_item product={sanitize_id_for_logging(product_id)} quantity={quantity}")
        return self._apply(CartIntent.add(product_id, quantity, variant_selector), catalog)

    def update_quantity(
        self,
        product_id: str,
        quantity: int,
        catalog: Optional[CatalogSnapshot],
        variant_selector: VariantSelector = None,
    ) -> CartOperationResult:
        """Set a line's quantity; 0 or less removes the line."""
        return self._apply(CartIntent.update(product_id, quantity, variant_selector), catalog)

    def remove_item(
        self,
        product_id: str,
        catalog: Optional[CatalogSnapshot] = None,
        variant_selector: VariantSelector = None,
    ) -> CartOperationResult:
        return self._apply(CartIntent.remove(product_id, variant_selector), catalog)

    def clear(self) -> CartOperationResult:
        """Replace the cart with an empty one."""
        return self._apply(CartIntent.clear(), None)

    # ------------------------------------------------------------------
    # Async provider variants
    # ------------------------------------------------------------------

    def _snapshot_ids(self, product_id: str) -> list[str]:
        # Every stored line, so the recomputed total covers the whole cart
        self._ensure_migrated()
        record = self._current_for_mutation()
        return [item.product_id for item in record.items] + [str(product_id)]

    async def add_item_from(
        self,
        provider: CatalogProvider,
        product_id: str,
        quantity: int,
        variant_selector: VariantSelector = None,
    ) -> CartOperationResult:
        snapshot = await fetch_snapshot(provider, self._snapshot_ids(product_id))
        return self.add_item(product_id, quantity, snapshot, variant_selector)

    async def update_quantity_from(
        self,
        provider: CatalogProvider,
        product_id: str,
        quantity: int,
        variant_selector: VariantSelector = None,
    ) -> CartOperationResult:
        snapshot = await fetch_snapshot(provider, self._snapshot_ids(product_id))
        return self.update_quantity(product_id, quantity, snapshot, variant_selector)

    async def remove_item_from(
        self,
        provider: CatalogProvider,
        product_id: str,
        variant_selector: VariantSelector = None,
    ) -> CartOperationResult:
        snapshot = await fetch_snapshot(provider, self._snapshot_ids(product_id))
        return self.remove_item(product_id, snapshot, variant_selector)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def poll(self) -> int:
        """Drain sibling-process events (Redis medium only)."""
        medium = self.backend.medium
        if isinstance(medium, RedisMedium):
            return medium.poll_events()
        return 0

    def close(self) -> None:
        self._sync.close()


def create_store(
    settings: Optional[StoreSettings] = None,
    context_id: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> CartStore:
    """Build a store on Redis when CART_STORE_REDIS_URL is set, in memory otherwise."""
    settings = settings or get_settings()
    if settings.redis_url:
        medium = RedisMedium.from_url(settings.redis_url)
    else:
        medium = MemoryMedium(capacity=settings.memory_capacity)
    backend = StorageBackend(medium, context_id=context_id, fallback_capacity=settings.memory_capacity)
    return CartStore(backend, settings=settings, clock=clock)


# Singleton instance
_cart_store: Optional[CartStore] = None


def get_cart_store() -> CartStore:
    """Get CartStore singleton."""
    global _cart_store
    if _cart_store is None:
        _cart_store = create_store()
    return _cart_store

