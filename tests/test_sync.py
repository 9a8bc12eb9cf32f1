"""
Tests for cross-tab synchronization
"""

import json
from unittest.mock import Mock

from cartstore.cart.models import CartItem, CartMetadata, CartRecord
from cartstore.cart.service import StoreState
from cartstore.cart.sync import CrossTabSynchronizer
from cartstore.storage.backend import StorageBackend
from cartstore.storage.medium import MemoryMedium, StorageEvent


class TestCrossTabSynchronizer:
    """Tests for the synchronizer against real stores."""

    def test_convergence(self, make_store, snapshot):
        """Test tab B ends with the record tab A persisted."""
        tab_a = make_store("tab-a")
        tab_b = make_store("tab-b")
        tab_a.load()
        tab_b.load()
        received = []
        tab_b.on_cart_changed(received.append)

        result = tab_a.add_item("7", 2, snapshot)

        assert tab_b.record == result.record
        assert tab_b.record.to_dict() == tab_a.record.to_dict()
        assert received == [result.record]

    def test_corrupted_write_ignored(self, make_store, snapshot, shared_medium):
        """Test a corrupted sibling write never replaces a healthy record."""
        tab_a = make_store("tab-a")
        tab_b = make_store("tab-b")
        tab_b.load()
        tab_a.add_item("7", 1, snapshot)
        before = tab_b.record
        listener = Mock()
        tab_b.on_cart_changed(listener)

        raw = shared_medium.get("store:cart")
        data = json.loads(raw)
        data["payload"]["items"][0]["quantity"] = 4
        StorageBackend(shared_medium, context_id="tab-c").set("store:cart", json.dumps(data))

        assert tab_b.record == before
        listener.assert_not_called()

    def test_local_listener_notified_on_own_write(self, store, snapshot):
        """Test the same-context broadcast path."""
        store.load()
        received = []
        store.on_cart_changed(received.append)

        store.add_item("7", 1, snapshot)

        assert len(received) == 1
        assert received[0].items[0].product_id == "7"

    def test_failing_listener_isolated(self, make_store, snapshot):
        """Test one failing listener does not stop the others."""
        store = make_store("tab-a")
        store.load()
        received = []
        store.on_cart_changed(Mock(side_effect=RuntimeError("boom")))
        store.on_cart_changed(received.append)

        store.add_item("7", 1, snapshot)

        assert len(received) == 1

    def test_remove_listener(self, store, snapshot):
        """Test unsubscribing a listener."""
        store.load()
        received = []
        remove = store.on_cart_changed(received.append)
        remove()

        store.add_item("7", 1, snapshot)

        assert received == []


class TestSynchronizerUnit:
    """Tests for event filtering."""

    def make_sync(self, decode=None):
        backend = StorageBackend(MemoryMedium(), context_id="me")
        decode = decode or Mock(return_value="decoded")
        return CrossTabSynchronizer(backend, "store:cart", decode), decode

    def test_other_keys_ignored(self):
        """Test only the cart key is watched."""
        sync, decode = self.make_sync()
        assert sync.handle_event(StorageEvent("store:user", None, "x", "other")) is False
        decode.assert_not_called()

    def test_removal_ignored(self):
        """Test removal events keep local state."""
        sync, decode = self.make_sync()
        assert sync.handle_event(StorageEvent("store:cart", "old", None, "other")) is False
        decode.assert_not_called()

    def test_same_raw_ignored(self):
        """Test already-processed values are skipped."""
        sync, decode = self.make_sync()
        assert sync.handle_event(StorageEvent("store:cart", None, "raw-1", "other")) is True
        assert sync.handle_event(StorageEvent("store:cart", "raw-1", "raw-1", "other")) is False
        assert decode.call_count == 1

    def test_close_unsubscribes(self):
        """Test close stops delivery."""
        medium = MemoryMedium()
        decode = Mock()
        sync = CrossTabSynchronizer(StorageBackend(medium, context_id="me"), "store:cart", decode)
        sync.close()

        medium.set("store:cart", "raw", origin="other")

        decode.assert_not_called()


class TestUnsoundSiblingWrites:
    """Tests for sibling writes that must not reach a healthy context."""

    def test_mutation_after_corrupted_write_keeps_cart(self, make_store, snapshot, shared_medium, records):
        """Test a corrupted sibling write does not wipe this context's cart on the next mutation."""
        tab_b = make_store("tab-b")
        tab_b.load()
        tab_b.add_item("7", 2, snapshot)
        StorageBackend(shared_medium, context_id="tab-c").set("store:cart", "{garbage")

        result = tab_b.add_item("12", 1, snapshot)

        assert result.success is True
        assert [(i.product_id, i.quantity) for i in result.record.items] == [("7", 2), ("12", 1)]
        assert [i["productId"] for i in records.get("cart")["items"]] == ["7", "12"]

    def test_duplicate_lines_ignored(self, make_store, records):
        """Test a cleanly decoding write with repeated identities is rejected."""
        tab_b = make_store("tab-b")
        tab_b.load()
        listener = Mock()
        tab_b.on_cart_changed(listener)
        record = CartRecord(
            items=[CartItem("7", 1, 1, 1), CartItem("7", 2, 1, 1)],
            metadata=CartMetadata(created_at=1, last_modified_at=1, total_items=3),
        )

        records.put("cart", record.to_dict())

        assert tab_b.record.items == []
        listener.assert_not_called()

    def test_non_positive_quantity_ignored(self, make_store, records):
        """Test a write with a zero-quantity line is rejected."""
        tab_b = make_store("tab-b")
        tab_b.load()
        record = CartRecord(
            items=[CartItem("7", 0, 1, 1)],
            metadata=CartMetadata(created_at=1, last_modified_at=1, total_items=0),
        )

        records.put("cart", record.to_dict())

        assert tab_b.record.items == []

    def test_state_follows_sibling_write(self, make_store, snapshot):
        """Test an accepted sibling write updates the load state."""
        tab_a = make_store("tab-a")
        tab_b = make_store("tab-b")
        tab_a.load()
        tab_b.load()
        assert tab_b.state == StoreState.EMPTY

        tab_a.add_item("7", 1, snapshot)
        assert tab_b.state == StoreState.VALID

        tab_a.clear()
        assert tab_b.state == StoreState.EMPTY
