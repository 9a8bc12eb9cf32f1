"""Pytest configuration and fixtures"""
import os
import pytest
from unittest.mock import Mock

# Set test environment variables
os.environ.setdefault("CART_STORE_NAMESPACE", "store")
os.environ.setdefault("CART_STORE_REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from cartstore.cart.catalog import CatalogProduct, CatalogSnapshot, InMemoryCatalog
from cartstore.cart.service import CartStore
from cartstore.config import StoreSettings
from cartstore.storage.backend import StorageBackend
from cartstore.storage.medium import MemoryMedium
from cartstore.storage.records import RecordStore

T0 = 1_700_000_000_000  # 2023-11-14, epoch ms


class FakeClock:
    """Manually advanced clock returning epoch milliseconds."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    """Fake clock starting at a fixed instant"""
    return FakeClock()


@pytest.fixture
def settings():
    """Store settings independent of the environment"""
    return StoreSettings(
        namespace="store",
        redis_url="",
        max_unique_items=50,
        max_quantity_per_item=99,
        memory_capacity=5 * 1024 * 1024,
        compression_threshold=1000,
        eviction_fraction=0.2,
    )


@pytest.fixture
def shared_medium():
    """One medium shared by several contexts, like a browser origin's storage"""
    return MemoryMedium(capacity=5 * 1024 * 1024, persistent=True)


@pytest.fixture
def backend(shared_medium):
    """Backend for a single context"""
    return StorageBackend(shared_medium, context_id="tab-a")


@pytest.fixture
def records(backend, settings, clock):
    """Record store over the shared medium"""
    return RecordStore(backend, settings=settings, clock=clock)


@pytest.fixture
def catalog():
    """Catalog provider with a few products"""
    return InMemoryCatalog([
        CatalogProduct(id="7", price="10.00", stock_count=4),
        CatalogProduct(id="9", price="2.50", stock_count=2),
        CatalogProduct(id="12", price=99.99, stock_count=100),
        CatalogProduct(id="sold-out", price="5.00", stock_count=0),
        CatalogProduct(id="hidden", price="5.00", stock_count=10, is_available=False),
        CatalogProduct(id="free", price="0", stock_count=10),
    ])


@pytest.fixture
def snapshot(catalog) -> CatalogSnapshot:
    """Snapshot of the sample catalog"""
    return catalog.snapshot()


@pytest.fixture
def make_store(shared_medium, settings, clock):
    """Factory for stores (contexts) over the shared medium"""
    created = []

    def _make(context_id: str = "tab-a", medium=None) -> CartStore:
        backend = StorageBackend(medium or shared_medium, context_id=context_id)
        store = CartStore(backend, settings=settings, clock=clock)
        created.append(store)
        return store

    yield _make

    for store in created:
        store.close()


@pytest.fixture
def store(make_store):
    """A single cart store"""
    return make_store()


@pytest.fixture
def mock_redis_client():
    """Mock redis-py client"""
    client = Mock()
    client.ping.return_value = True
    client.get.return_value = None
    client.set.return_value = True
    client.delete.return_value = 1
    client.scan_iter.return_value = iter([])
    client.xadd.return_value = "1-0"
    client.xrevrange.return_value = []
    client.xread.return_value = []
    return client
