"""
Tests for the cart reconciler
"""

import copy
from decimal import Decimal

from cartstore.cart.catalog import CatalogProduct, CatalogSnapshot
from cartstore.cart.models import CartItem, CartMetadata, CartRecord, variants_equal
from cartstore.cart.reconciler import (
    AdjustmentReason,
    CartIntent,
    CartReconciler,
    RejectionReason,
)

T0 = 1_700_000_000_000


def make_reconciler(**kwargs):
    return CartReconciler(clock=lambda: T0, **kwargs)


def record_with(*items):
    return CartRecord(
        items=list(items),
        metadata=CartMetadata(created_at=T0, last_modified_at=T0, total_items=sum(i.quantity for i in items)),
    )


def item(product_id, quantity, variant=None):
    return CartItem(product_id=product_id, quantity=quantity, added_at=T0, last_updated_at=T0, variant_selector=variant)


class TestVariants:
    """Tests for variant identity."""

    def test_order_independent(self):
        """Test variant comparison ignores key order."""
        assert variants_equal({"color": "red", "size": "M"}, {"size": "M", "color": "red"})

    def test_empty_is_none(self):
        """Test an empty selector means no variant."""
        assert variants_equal({}, None)
        assert item("7", 1, {}).variant_selector is None

    def test_different_values(self):
        """Test different values are different variants."""
        assert not variants_equal({"color": "red"}, {"color": "blue"})


class TestAdd:
    """Tests for add intents."""

    def test_add_new_item(self, snapshot):
        """Test adding to an empty cart."""
        result = make_reconciler().apply(CartIntent.add("7", 2), CartRecord.empty(T0), snapshot)

        assert result.success is True
        assert result.action == "added"
        assert [(i.product_id, i.quantity) for i in result.record.items] == [("7", 2)]
        assert result.record.metadata.total_items == 2
        assert result.record.metadata.estimated_total == Decimal("20.00")

    def test_add_merges_same_identity(self, snapshot):
        """Test repeated adds increment one line."""
        reconciler = make_reconciler()
        first = reconciler.apply(CartIntent.add("12", 2, {"size": "M", "color": "red"}), CartRecord.empty(T0), snapshot)
        second = reconciler.apply(CartIntent.add("12", 3, {"color": "red", "size": "M"}), first.record, snapshot)

        assert second.action == "incremented"
        assert len(second.record.items) == 1
        assert second.record.items[0].quantity == 5

    def test_different_variants_are_separate_lines(self, snapshot):
        """Test variants distinguish lines."""
        reconciler = make_reconciler()
        first = reconciler.apply(CartIntent.add("12", 1, {"color": "red"}), CartRecord.empty(T0), snapshot)
        second = reconciler.apply(CartIntent.add("12", 1, {"color": "blue"}), first.record, snapshot)
        assert len(second.record.items) == 2

    def test_stock_exceeded_reports_max_can_add(self, snapshot):
        """Test stock 4: add 3 then 3 is rejected with max_can_add 1."""
        reconciler = make_reconciler()
        first = reconciler.apply(CartIntent.add("7", 3), CartRecord.empty(T0), snapshot)
        second = reconciler.apply(CartIntent.add("7", 3), first.record, snapshot)

        assert second.success is False
        assert second.rejection.reason == RejectionReason.STOCK_EXCEEDED
        assert second.rejection.max_can_add == 1
        assert second.rejection.available_stock == 4
        assert second.record.items[0].quantity == 3

    def test_out_of_stock(self, snapshot):
        """Test zero stock and unavailable products."""
        reconciler = make_reconciler()
        for product_id in ("sold-out", "hidden"):
            result = reconciler.apply(CartIntent.add(product_id, 1), CartRecord.empty(T0), snapshot)
            assert result.rejection.reason == RejectionReason.OUT_OF_STOCK

    def test_product_not_found(self, snapshot):
        """Test unknown products are rejected."""
        result = make_reconciler().apply(CartIntent.add("404", 1), CartRecord.empty(T0), snapshot)
        assert result.rejection.reason == RejectionReason.PRODUCT_NOT_FOUND

    def test_invalid_price(self, snapshot):
        """Test products without a positive price."""
        result = make_reconciler().apply(CartIntent.add("free", 1), CartRecord.empty(T0), snapshot)
        assert result.rejection.reason == RejectionReason.INVALID_PRICE

    def test_invalid_quantity(self, snapshot):
        """Test non-positive or non-integer quantities."""
        reconciler = make_reconciler()
        for quantity in (0, -1, 1.5, True):
            result = reconciler.apply(CartIntent.add("7", quantity), CartRecord.empty(T0), snapshot)
            assert result.rejection.reason == RejectionReason.INVALID_QUANTITY

    def test_cart_full(self):
        """Test the unique item limit."""
        products = [CatalogProduct(id=str(i), price=1, stock_count=10) for i in range(4)]
        snapshot = CatalogSnapshot(products)
        record = record_with(item("0", 1), item("1", 1), item("2", 1))

        reconciler = make_reconciler(max_unique_items=3)
        result = reconciler.apply(CartIntent.add("3", 1), record, snapshot)
        assert result.rejection.reason == RejectionReason.CART_FULL

        # Existing lines can still grow
        assert reconciler.apply(CartIntent.add("0", 1), record, snapshot).success is True

    def test_quantity_limit(self):
        """Test the per-item quantity limit."""
        snapshot = CatalogSnapshot([CatalogProduct(id="1", price=1, stock_count=500)])
        result = make_reconciler(max_quantity_per_item=99).apply(
            CartIntent.add("1", 100), CartRecord.empty(T0), snapshot
        )
        assert result.rejection.reason == RejectionReason.QUANTITY_LIMIT_EXCEEDED
        assert result.rejection.max_can_add == 99

    def test_input_not_mutated(self, snapshot):
        """Test apply never mutates its input."""
        record = record_with(item("7", 1))
        before = copy.deepcopy(record)

        make_reconciler().apply(CartIntent.add("7", 1), record, snapshot)

        assert record == before

    def test_add_order_commutes(self, snapshot):
        """Test adds of different identities commute up to item order."""
        reconciler = make_reconciler()
        a, b = CartIntent.add("7", 1), CartIntent.add("12", 2)

        ab = reconciler.apply(b, reconciler.apply(a, CartRecord.empty(T0), snapshot).record, snapshot).record
        ba = reconciler.apply(a, reconciler.apply(b, CartRecord.empty(T0), snapshot).record, snapshot).record

        assert sorted(i.to_dict()["productId"] for i in ab.items) == sorted(i.to_dict()["productId"] for i in ba.items)
        assert ab.metadata.total_items == ba.metadata.total_items
        assert ab.metadata.estimated_total == ba.metadata.estimated_total

    def test_uniqueness_after_many_adds(self, snapshot):
        """Test no two lines share an identity."""
        reconciler = make_reconciler()
        record = CartRecord.empty(T0)
        for product_id, variant in [("12", None), ("12", {}), ("12", {"c": 1}), ("7", None), ("12", {"c": 1})]:
            record = reconciler.apply(CartIntent.add(product_id, 1, variant), record, snapshot).record

        identities = [i.identity for i in record.items]
        assert len(identities) == len(set(identities)) == 3


class TestUpdateRemove:
    """Tests for update, remove and clear."""

    def test_update_replaces_quantity(self, snapshot):
        """Test update sets the quantity."""
        result = make_reconciler().apply(CartIntent.update("7", 4), record_with(item("7", 1)), snapshot)
        assert result.success is True
        assert result.record.items[0].quantity == 4

    def test_update_zero_removes(self, snapshot):
        """Test update to 0 is a remove."""
        result = make_reconciler().apply(CartIntent.update("7", 0), record_with(item("7", 1)), snapshot)
        assert result.success is True
        assert result.action == "removed"
        assert result.record.items == []

    def test_update_absent_item(self, snapshot):
        """Test updating an item not in the cart."""
        result = make_reconciler().apply(CartIntent.update("7", 2), CartRecord.empty(T0), snapshot)
        assert result.rejection.reason == RejectionReason.ITEM_NOT_FOUND

    def test_update_over_stock(self, snapshot):
        """Test update never truncates."""
        result = make_reconciler().apply(CartIntent.update("7", 5), record_with(item("7", 1)), snapshot)
        assert result.rejection.reason == RejectionReason.STOCK_EXCEEDED
        assert result.rejection.max_can_add == 3

    def test_remove_absent_is_noop(self, snapshot):
        """Test removing a missing item succeeds without change."""
        record = record_with(item("7", 1))
        result = make_reconciler().apply(CartIntent.remove("12"), record, snapshot)
        assert result.success is True
        assert result.action == "noop"
        assert result.record == record

    def test_remove_matches_variant(self, snapshot):
        """Test remove targets one variant."""
        record = record_with(item("12", 1, {"c": "red"}), item("12", 1, {"c": "blue"}))
        result = make_reconciler().apply(CartIntent.remove("12", {"c": "red"}), record, snapshot)
        assert [i.variant_selector for i in result.record.items] == [{"c": "blue"}]

    def test_clear(self, snapshot):
        """Test clear empties the cart."""
        result = make_reconciler().apply(CartIntent.clear(), record_with(item("7", 1)), snapshot)
        assert result.success is True
        assert result.record.items == []
        assert result.record.metadata.total_items == 0


class TestMetadata:
    """Tests for derived metadata."""

    def test_unresolved_products_kept_but_excluded(self, snapshot):
        """Test products missing from the snapshot stay in items but not in the total."""
        record = record_with(item("7", 2), item("404", 5))

        metadata = make_reconciler().recompute_metadata(record, snapshot)

        assert metadata.total_items == 7
        assert metadata.estimated_total == Decimal("20.00")
        assert metadata.unresolved_product_ids == ["404"]

    def test_mutation_keeps_unresolved_items(self, snapshot):
        """Test a mutation path never drops unresolved items."""
        record = record_with(item("404", 5))
        result = make_reconciler().apply(CartIntent.add("7", 1), record, snapshot)

        assert [i.product_id for i in result.record.items] == ["404", "7"]
        assert result.record.metadata.estimated_total == Decimal("10.00")
        assert result.record.metadata.unresolved_product_ids == ["404"]

    def test_without_catalog_total_is_carried(self):
        """Test totals are carried over when no snapshot is available."""
        record = record_with(item("7", 2), item("12", 1))
        record.metadata.estimated_total = Decimal("119.99")
        record.metadata.unresolved_product_ids = ["12"]

        result = make_reconciler().apply(CartIntent.remove("12"), record, None)

        assert result.record.metadata.total_items == 2
        assert result.record.metadata.estimated_total == Decimal("119.99")
        assert result.record.metadata.unresolved_product_ids == []

    def test_last_modified(self):
        """Test lastModifiedAt follows the newest item."""
        record = record_with(item("7", 1))
        record.items[0].last_updated_at = T0 + 500
        assert make_reconciler().recompute_metadata(record).last_modified_at == T0 + 500


class TestCleanup:
    """Tests for the load-time cleanup pass."""

    def test_clamps_over_stock(self, snapshot):
        """Test quantity 10 with stock 2 is clamped and reported."""
        report = make_reconciler().cleanup(record_with(item("9", 10)), snapshot)

        assert report.record.items[0].quantity == 2
        assert len(report.adjustments) == 1
        adjustment = report.adjustments[0]
        assert (adjustment.product_id, adjustment.previous_quantity, adjustment.new_quantity) == ("9", 10, 2)
        assert adjustment.reason == AdjustmentReason.CLAMPED_TO_STOCK

    def test_removes_vanished_and_unavailable(self, snapshot):
        """Test products gone from the catalog or out of stock are removed."""
        record = record_with(item("7", 1), item("404", 1), item("sold-out", 1), item("hidden", 1))

        report = make_reconciler().cleanup(record, snapshot)

        assert [i.product_id for i in report.record.items] == ["7"]
        reasons = {a.product_id: a.reason for a in report.adjustments}
        assert reasons == {
            "404": AdjustmentReason.PRODUCT_REMOVED,
            "sold-out": AdjustmentReason.OUT_OF_STOCK,
            "hidden": AdjustmentReason.OUT_OF_STOCK,
        }

    def test_merges_duplicates(self, snapshot):
        """Test duplicate identities written by a foreign writer are merged."""
        record = record_with(item("12", 2, {"c": 1}), item("7", 1), item("12", 3, {"c": 1}))

        report = make_reconciler().cleanup(record, snapshot)

        assert [(i.product_id, i.quantity) for i in report.record.items] == [("12", 5), ("7", 1)]
        assert report.adjustments[0].reason == AdjustmentReason.MERGED_DUPLICATE

    def test_idempotent(self, snapshot):
        """Test a second cleanup changes nothing."""
        reconciler = make_reconciler()
        first = reconciler.cleanup(record_with(item("9", 10), item("404", 1), item("7", 2), item("7", 1)), snapshot)
        second = reconciler.cleanup(first.record, snapshot)

        assert second.adjustments == []
        assert second.record == first.record

    def test_clean_record_unchanged(self, snapshot):
        """Test nothing is reported for a healthy cart."""
        report = make_reconciler().cleanup(record_with(item("7", 2)), snapshot)
        assert report.changed is False

    def test_drops_non_positive_quantities(self, snapshot):
        """Test lines at zero or below are removed, never summed into totals."""
        record = record_with(item("7", 0), item("12", -3), item("9", 1))

        report = make_reconciler().cleanup(record, snapshot)

        assert [(i.product_id, i.quantity) for i in report.record.items] == [("9", 1)]
        assert report.record.metadata.total_items == 1
        assert report.record.metadata.estimated_total == Decimal("2.50")
        dropped = {a.product_id: (a.previous_quantity, a.new_quantity, a.reason) for a in report.adjustments}
        assert dropped == {
            "7": (0, 0, AdjustmentReason.INVALID_QUANTITY),
            "12": (-3, 0, AdjustmentReason.INVALID_QUANTITY),
        }

    def test_negative_line_does_not_offset_duplicate(self, snapshot):
        """Test a negative duplicate is dropped before merging."""
        report = make_reconciler().cleanup(record_with(item("12", 5), item("12", -4)), snapshot)

        assert [(i.product_id, i.quantity) for i in report.record.items] == [("12", 5)]


class TestNormalize:
    """Tests for the catalog-free repair."""

    def test_merges_and_drops(self):
        """Test duplicates merge and empty lines go without a catalog."""
        record = record_with(item("7", 1), item("7", 2), item("9", 0))

        report = make_reconciler().normalize(record)

        assert [(i.product_id, i.quantity) for i in report.record.items] == [("7", 3)]
        assert report.record.metadata.total_items == 3
        assert report.record.problems() == []
        assert [a.reason for a in report.adjustments] == [
            AdjustmentReason.MERGED_DUPLICATE,
            AdjustmentReason.INVALID_QUANTITY,
        ]

    def test_sound_record_returned_as_is(self):
        """Test a healthy record is not rebuilt."""
        record = record_with(item("7", 2), item("7", 1, {"size": "M"}))

        report = make_reconciler().normalize(record)

        assert report.changed is False
        assert report.record is record
