"""
Catalog snapshot - the product facts cart decisions are made against.

The reconciler is synchronous and works on an immutable snapshot; the only
async surface is the provider that produces one.
"""
from collections.abc import Mapping
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Iterator, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, field_validator

from cartstore.logging import get_logger
from cartstore.money import to_decimal

logger = get_logger(__name__)


class CatalogProduct(BaseModel):
    """Product as seen by the cart."""
    id: str
    price: Decimal
    stock_count: int = 0
    is_available: bool = True
    name: Optional[str] = None

    model_config = {"extra": "ignore", "frozen": True}

    @field_validator("id", mode="before")
    @classmethod
    def convert_id_to_str(cls, v):
        return str(v)

    @field_validator("price", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        return to_decimal(v)

    @property
    def in_stock(self) -> bool:
        return self.is_available and self.stock_count > 0


class CatalogSnapshot(Mapping):
    """Read-only mapping of product id -> CatalogProduct."""

    def __init__(self, products: Iterable[CatalogProduct] = ()):
        self._products = MappingProxyType({p.id: p for p in products})

    def __getitem__(self, product_id: str) -> CatalogProduct:
        return self._products[str(product_id)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._products)

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: object) -> bool:
        return str(product_id) in self._products

    def __repr__(self) -> str:
        return f"CatalogSnapshot({sorted(self._products)})"

    def lookup(self, product_id: str) -> Optional[CatalogProduct]:
        return self._products.get(str(product_id))


@runtime_checkable
class CatalogProvider(Protocol):
    """Async source of catalog data (database, HTTP API, ...)."""

    async def lookup_product(self, product_id: str) -> Optional[CatalogProduct]:
        ...

    async def lookup_many(self, product_ids: list[str]) -> list[CatalogProduct]:
        ...


async def fetch_snapshot(provider: CatalogProvider, product_ids: Iterable[str]) -> CatalogSnapshot:
    """Build a snapshot for the given ids. Ids the provider does not know are simply absent."""
    ids = list(dict.fromkeys(str(pid) for pid in product_ids))
    if not ids:
        return CatalogSnapshot()
    products = await provider.lookup_many(ids)
    snapshot = CatalogSnapshot(products)
    missing = len(ids) - len(snapshot)
    if missing > 0:
        logger.debug(f"Catalog could not resolve {missing} of {len(ids)} products")
    return snapshot


class InMemoryCatalog:
    """
    Catalog provider backed by a dict.

    Usage:
        catalog = InMemoryCatalog([CatalogProduct(id="7", price="10.00", stock_count=4)])
        snapshot = catalog.snapshot()
    """

    def __init__(self, products: Iterable[CatalogProduct] = ()):
        self._products: dict[str, CatalogProduct] = {p.id: p for p in products}

    def put(self, product: CatalogProduct) -> None:
        self._products[product.id] = product

    def delete(self, product_id: str) -> None:
        self._products.pop(str(product_id), None)

    def snapshot(self) -> CatalogSnapshot:
        return CatalogSnapshot(self._products.values())

    async def lookup_product(self, product_id: str) -> Optional[CatalogProduct]:
        return self._products.get(str(product_id))

    async def lookup_many(self, product_ids: list[str]) -> list[CatalogProduct]:
        return [self._products[pid] for pid in product_ids if pid in self._products]
