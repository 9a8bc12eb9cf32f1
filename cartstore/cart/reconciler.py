"""
Cart Reconciler - pure merge logic for cart intents.

Applies one intent to a CartRecord against a catalog snapshot and returns a
new record or a typed rejection. Never performs I/O and never mutates its
input. Requested quantities are never silently truncated: the caller gets
the rejection plus the maximum it could add instead.
"""
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from cartstore.cart.catalog import CatalogProduct, CatalogSnapshot
from cartstore.cart.models import (
    CartItem,
    CartMetadata,
    CartRecord,
    VariantSelector,
    normalize_variant,
)
from cartstore.clock import Clock, now_ms
from cartstore.config import CART_STORE_MAX_QUANTITY_PER_ITEM, CART_STORE_MAX_UNIQUE_ITEMS
from cartstore.logging import get_logger, sanitize_id_for_logging
from cartstore.money import multiply, round_money, to_decimal

logger = get_logger(__name__)


class IntentKind(str, Enum):
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    CLEAR = "clear"


@dataclass(frozen=True)
class CartIntent:
    """A requested cart change."""
    kind: IntentKind
    product_id: str = ""
    quantity: int = 0
    variant_selector: VariantSelector = None

    @classmethod
    def add(cls, product_id: str, quantity: int, variant_selector: VariantSelector = None) -> "CartIntent":
        return cls(IntentKind.ADD, str(product_id), quantity, normalize_variant(variant_selector))

    @classmethod
    def update(cls, product_id: str, quantity: int, variant_selector: VariantSelector = None) -> "CartIntent":
        return cls(IntentKind.UPDATE, str(product_id), quantity, normalize_variant(variant_selector))

    @classmethod
    def remove(cls, product_id: str, variant_selector: VariantSelector = None) -> "CartIntent":
        return cls(IntentKind.REMOVE, str(product_id), 0, normalize_variant(variant_selector))

    @classmethod
    def clear(cls) -> "CartIntent":
        return cls(IntentKind.CLEAR)


class RejectionReason(str, Enum):
    """Business-rule rejections, surfaced verbatim to the caller."""
    OUT_OF_STOCK = "OutOfStock"
    STOCK_EXCEEDED = "StockExceeded"
    CART_FULL = "CartFull"
    PRODUCT_NOT_FOUND = "ProductNotFound"
    ITEM_NOT_FOUND = "ItemNotFound"
    INVALID_QUANTITY = "InvalidQuantity"
    QUANTITY_LIMIT_EXCEEDED = "QuantityLimitExceeded"
    INVALID_PRICE = "InvalidPrice"


@dataclass
class Rejection:
    reason: RejectionReason
    message: str
    max_can_add: Optional[int] = None
    available_stock: Optional[int] = None


@dataclass
class ReconcileResult:
    """Outcome of one intent. On rejection `record` is the unchanged input."""
    success: bool
    record: CartRecord
    rejection: Optional[Rejection] = None
    action: str = ""


class AdjustmentReason(str, Enum):
    MERGED_DUPLICATE = "merged_duplicate"
    PRODUCT_REMOVED = "product_removed"
    OUT_OF_STOCK = "out_of_stock"
    CLAMPED_TO_STOCK = "clamped_to_stock"
    CLAMPED_TO_LIMIT = "clamped_to_limit"
    INVALID_QUANTITY = "invalid_quantity"


@dataclass
class CartAdjustment:
    """A quantity change made without an explicit user intent."""
    product_id: str
    variant_selector: VariantSelector
    previous_quantity: int
    new_quantity: int
    reason: AdjustmentReason


@dataclass
class CleanupReport:
    record: CartRecord
    adjustments: List[CartAdjustment] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.adjustments)


def _is_valid_quantity(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class CartReconciler:
    """
    Stock-aware merge of cart intents.

    Usage:
        reconciler = CartReconciler()
        result = reconciler.apply(CartIntent.add("7", 2), record, snapshot)
        if not result.success:
            show(result.rejection.reason, result.rejection.max_can_add)
    """

    def __init__(
        self,
        max_unique_items: int = CART_STORE_MAX_UNIQUE_ITEMS,
        max_quantity_per_item: int = CART_STORE_MAX_QUANTITY_PER_ITEM,
        clock: Optional[Clock] = None,
    ):
        self.max_unique_items = max_unique_items
        self.max_quantity_per_item = max_quantity_per_item
        self._clock = clock or now_ms

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def apply(
        self,
        intent: CartIntent,
        record: CartRecord,
        catalog: Optional[CatalogSnapshot] = None,
    ) -> ReconcileResult:
        if intent.kind == IntentKind.CLEAR:
            return ReconcileResult(True, CartRecord.empty(self._clock()), action="cleared")
        if intent.kind == IntentKind.REMOVE:
            return self._remove(intent, record, catalog)
        if intent.kind == IntentKind.UPDATE:
            return self._update(intent, record, catalog)
        if intent.kind == IntentKind.ADD:
            return self._add(intent, record, catalog)
        raise ValueError(f"Unknown intent kind: {intent.kind}")

    @staticmethod
    def _reject(record: CartRecord, reason: RejectionReason, message: str, **extra) -> ReconcileResult:
        logger.info(f"Cart intent rejected: {reason.value} ({message})")
        return ReconcileResult(False, record, Rejection(reason, message, **extra))

    @staticmethod
    def _lookup(catalog: Optional[CatalogSnapshot], product_id: str) -> Optional[CatalogProduct]:
        return catalog.lookup(product_id) if catalog is not None else None

    def _add(self, intent: CartIntent, record: CartRecord, catalog: Optional[CatalogSnapshot]) -> ReconcileResult:
        if not _is_valid_quantity(intent.quantity) or intent.quantity < 1:
            return self._reject(record, RejectionReason.INVALID_QUANTITY, "Quantity must be a positive integer")

        product = self._lookup(catalog, intent.product_id)
        if product is None:
            return self._reject(
                record,
                RejectionReason.PRODUCT_NOT_FOUND,
                f"Product {sanitize_id_for_logging(intent.product_id)} not found",
            )
        if product.price <= 0:
            return self._reject(record, RejectionReason.INVALID_PRICE, "Product has no valid price")
        if not product.in_stock:
            return self._reject(
                record, RejectionReason.OUT_OF_STOCK, "Product is out of stock",
                max_can_add=0, available_stock=product.stock_count,
            )

        index = record.find(intent.product_id, intent.variant_selector)
        existing = record.items[index].quantity if index is not None else 0
        proposed = existing + intent.quantity

        if proposed > product.stock_count:
            max_can_add = max(0, product.stock_count - existing)
            return self._reject(
                record, RejectionReason.STOCK_EXCEEDED,
                f"Only {product.stock_count} available, {existing} already in cart",
                max_can_add=max_can_add, available_stock=product.stock_count,
            )
        if index is None and len(record.items) >= self.max_unique_items:
            return self._reject(
                record, RejectionReason.CART_FULL,
                f"Cart already holds {self.max_unique_items} different products",
            )
        if proposed > self.max_quantity_per_item:
            return self._reject(
                record, RejectionReason.QUANTITY_LIMIT_EXCEEDED,
                f"At most {self.max_quantity_per_item} units per product",
                max_can_add=max(0, self.max_quantity_per_item - existing),
                available_stock=product.stock_count,
            )

        now = self._clock()
        new_record = copy.deepcopy(record)
        if index is not None:
            item = new_record.items[index]
            item.quantity = proposed
            item.last_updated_at = now
            action = "incremented"
        else:
            new_record.items.append(
                CartItem(
                    product_id=intent.product_id,
                    quantity=proposed,
                    added_at=now,
                    last_updated_at=now,
                    variant_selector=intent.variant_selector,
                )
            )
            action = "added"

        new_record.metadata = self.recompute_metadata(new_record, catalog)
        return ReconcileResult(True, new_record, action=action)

    def _update(self, intent: CartIntent, record: CartRecord, catalog: Optional[CatalogSnapshot]) -> ReconcileResult:
        if not _is_valid_quantity(intent.quantity):
            return self._reject(record, RejectionReason.INVALID_QUANTITY, "Quantity must be an integer")
        if intent.quantity <= 0:
            return self._remove(intent, record, catalog)

        index = record.find(intent.product_id, intent.variant_selector)
        if index is None:
            return self._reject(record, RejectionReason.ITEM_NOT_FOUND, "Item is not in the cart")

        product = self._lookup(catalog, intent.product_id)
        if product is None:
            return self._reject(
                record,
                RejectionReason.PRODUCT_NOT_FOUND,
                f"Product {sanitize_id_for_logging(intent.product_id)} not found",
            )
        existing = record.items[index].quantity
        if not product.in_stock:
            return self._reject(
                record, RejectionReason.OUT_OF_STOCK, "Product is out of stock",
                max_can_add=0, available_stock=product.stock_count,
            )
        if intent.quantity > product.stock_count:
            return self._reject(
                record, RejectionReason.STOCK_EXCEEDED,
                f"Only {product.stock_count} available",
                max_can_add=max(0, product.stock_count - existing),
                available_stock=product.stock_count,
            )
        if intent.quantity > self.max_quantity_per_item:
            return self._reject(
                record, RejectionReason.QUANTITY_LIMIT_EXCEEDED,
                f"At most {self.max_quantity_per_item} units per product",
                max_can_add=max(0, self.max_quantity_per_item - existing),
                available_stock=product.stock_count,
            )

        new_record = copy.deepcopy(record)
        item = new_record.items[index]
        item.quantity = intent.quantity
        item.last_updated_at = self._clock()
        new_record.metadata = self.recompute_metadata(new_record, catalog)
        return ReconcileResult(True, new_record, action="updated")

    def _remove(self, intent: CartIntent, record: CartRecord, catalog: Optional[CatalogSnapshot]) -> ReconcileResult:
        index = record.find(intent.product_id, intent.variant_selector)
        if index is None:
            return ReconcileResult(True, record, action="noop")

        new_record = copy.deepcopy(record)
        del new_record.items[index]
        new_record.metadata = self.recompute_metadata(new_record, catalog)
        return ReconcileResult(True, new_record, action="removed")

    # ------------------------------------------------------------------
    # Derived data
    # ------------------------------------------------------------------

    def recompute_metadata(self, record: CartRecord, catalog: Optional[CatalogSnapshot] = None) -> CartMetadata:
        """
        Derive metadata from the items.

        Totals only cover products the snapshot resolves; the others stay in
        the cart and are listed as unresolved. Without a snapshot the last
        computed total is carried over.
        """
        previous = record.metadata
        last_modified = max([previous.created_at] + [item.last_updated_at for item in record.items])
        metadata = CartMetadata(
            created_at=previous.created_at,
            last_modified_at=last_modified,
            total_items=sum(item.quantity for item in record.items),
        )

        product_ids = {item.product_id for item in record.items}
        if catalog is None:
            metadata.estimated_total = previous.estimated_total
            metadata.unresolved_product_ids = [
                pid for pid in previous.unresolved_product_ids if pid in product_ids
            ]
            return metadata

        total = to_decimal(0)
        unresolved: list[str] = []
        for item in record.items:
            product = catalog.lookup(item.product_id)
            if product is None:
                if item.product_id not in unresolved:
                    unresolved.append(item.product_id)
                continue
            total += multiply(product.price, item.quantity)

        metadata.estimated_total = round_money(total)
        metadata.unresolved_product_ids = unresolved
        return metadata

    def _merge_lines(self, record: CartRecord) -> tuple[list[CartItem], list[CartAdjustment]]:
        # Drops non-positive quantities first so they never offset a valid line
        adjustments: list[CartAdjustment] = []
        merged: dict[tuple, CartItem] = {}
        for item in record.items:
            if item.quantity < 1:
                adjustments.append(CartAdjustment(
                    item.product_id, item.variant_selector, item.quantity, 0, AdjustmentReason.INVALID_QUANTITY,
                ))
                continue
            current = merged.get(item.identity)
            if current is None:
                merged[item.identity] = copy.deepcopy(item)
                continue
            previous_quantity = current.quantity
            current.quantity += item.quantity
            current.added_at = min(current.added_at, item.added_at)
            current.last_updated_at = max(current.last_updated_at, item.last_updated_at)
            adjustments.append(CartAdjustment(
                current.product_id, current.variant_selector,
                previous_quantity, current.quantity, AdjustmentReason.MERGED_DUPLICATE,
            ))
        return list(merged.values()), adjustments

    def normalize(self, record: CartRecord) -> CleanupReport:
        """Catalog-free repair: merge duplicate identities, drop lines below one unit."""
        items, adjustments = self._merge_lines(record)
        if not adjustments:
            return CleanupReport(record=record)
        normalized = CartRecord(items=items, metadata=record.metadata)
        normalized.metadata = self.recompute_metadata(normalized)
        logger.warning(f"Cart normalization made {len(adjustments)} adjustments")
        return CleanupReport(record=normalized, adjustments=adjustments)

    def cleanup(self, record: CartRecord, catalog: CatalogSnapshot) -> CleanupReport:
        """
        Repair a loaded cart against current catalog data.

        Drops lines below one unit, merges duplicate identities, drops
        vanished or unavailable products, clamps quantities to stock and to
        the per-item limit. Running it again on its own output changes nothing.
        """
        items, adjustments = self._merge_lines(record)

        kept: list[CartItem] = []
        for item in items:
            product = catalog.lookup(item.product_id)
            if product is None:
                adjustments.append(CartAdjustment(
                    item.product_id, item.variant_selector, item.quantity, 0, AdjustmentReason.PRODUCT_REMOVED,
                ))
                continue
            if not product.in_stock:
                adjustments.append(CartAdjustment(
                    item.product_id, item.variant_selector, item.quantity, 0, AdjustmentReason.OUT_OF_STOCK,
                ))
                continue
            if item.quantity > product.stock_count:
                adjustments.append(CartAdjustment(
                    item.product_id, item.variant_selector,
                    item.quantity, product.stock_count, AdjustmentReason.CLAMPED_TO_STOCK,
                ))
                item.quantity = product.stock_count
            if item.quantity > self.max_quantity_per_item:
                adjustments.append(CartAdjustment(
                    item.product_id, item.variant_selector,
                    item.quantity, self.max_quantity_per_item, AdjustmentReason.CLAMPED_TO_LIMIT,
                ))
                item.quantity = self.max_quantity_per_item
            kept.append(item)

        cleaned = CartRecord(items=kept, metadata=record.metadata)
        cleaned.metadata = self.recompute_metadata(cleaned, catalog)

        if adjustments:
            logger.info(f"Cart cleanup made {len(adjustments)} adjustments")
        return CleanupReport(record=cleaned, adjustments=adjustments)
