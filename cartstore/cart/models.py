"""Cart data model with Decimal-based totals. Wire names are camelCase."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Optional

from cartstore.money import round_money, to_decimal
from cartstore.storage.codec import canonical_json

VariantSelector = Optional[dict[str, Any]]


def normalize_variant(variant_selector: VariantSelector) -> VariantSelector:
    """An empty mapping means "no variant"."""
    if not variant_selector:
        return None
    return dict(variant_selector)


def variants_equal(a: VariantSelector, b: VariantSelector) -> bool:
    """Structural, order-independent comparison of two variant selectors."""
    return normalize_variant(a) == normalize_variant(b)


def item_identity(product_id: str, variant_selector: VariantSelector) -> tuple[str, Optional[str]]:
    """Hashable (productId, variant) key."""
    variant = normalize_variant(variant_selector)
    return str(product_id), canonical_json(variant) if variant is not None else None


@dataclass
class CartItem:
    """Single line in the cart."""
    product_id: str
    quantity: int
    added_at: int
    last_updated_at: int
    variant_selector: VariantSelector = None

    def __post_init__(self):
        # Legacy carts used numeric ids
        self.product_id = str(self.product_id)
        self.variant_selector = normalize_variant(self.variant_selector)

    @property
    def identity(self) -> tuple[str, Optional[str]]:
        return item_identity(self.product_id, self.variant_selector)

    def matches(self, product_id: str, variant_selector: VariantSelector = None) -> bool:
        return self.product_id == str(product_id) and variants_equal(self.variant_selector, variant_selector)

    def to_dict(self) -> dict:
        data = {
            "productId": self.product_id,
            "quantity": self.quantity,
            "addedAt": self.added_at,
            "lastUpdatedAt": self.last_updated_at,
        }
        if self.variant_selector is not None:
            data["variantSelector"] = dict(self.variant_selector)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CartItem":
        return cls(
            product_id=data["productId"],
            quantity=int(data["quantity"]),
            added_at=data["addedAt"],
            last_updated_at=data["lastUpdatedAt"],
            variant_selector=data.get("variantSelector"),
        )


@dataclass
class CartMetadata:
    """Derived cache over the items; never a source of truth."""
    created_at: int
    last_modified_at: int
    total_items: int = 0
    estimated_total: Optional[Decimal] = None
    unresolved_product_ids: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.estimated_total is not None:
            self.estimated_total = round_money(to_decimal(self.estimated_total))

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "createdAt": self.created_at,
            "lastModifiedAt": self.last_modified_at,
            "totalItems": self.total_items,
        }
        if self.estimated_total is not None:
            data["estimatedTotal"] = str(self.estimated_total)
        if self.unresolved_product_ids:
            data["unresolvedProductIds"] = list(self.unresolved_product_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CartMetadata":
        estimated = data.get("estimatedTotal")
        return cls(
            created_at=data["createdAt"],
            last_modified_at=data["lastModifiedAt"],
            total_items=int(data["totalItems"]),
            estimated_total=to_decimal(estimated) if estimated is not None else None,
            unresolved_product_ids=list(data.get("unresolvedProductIds") or []),
        )


@dataclass
class CartRecord:
    """The whole cart: ordered items plus metadata."""
    items: List[CartItem]
    metadata: CartMetadata

    @classmethod
    def empty(cls, now: int) -> "CartRecord":
        return cls(items=[], metadata=CartMetadata(created_at=now, last_modified_at=now))

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def unique_items(self) -> int:
        return len(self.items)

    def find(self, product_id: str, variant_selector: VariantSelector = None) -> Optional[int]:
        """Index of the item with this identity, or None."""
        for index, item in enumerate(self.items):
            if item.matches(product_id, variant_selector):
                return index
        return None

    def problems(self) -> List[str]:
        """Lines below one unit and repeated identities; empty when the record is sound."""
        problems = []
        seen = set()
        for item in self.items:
            if item.quantity < 1:
                problems.append(f"{item.product_id}: quantity {item.quantity}")
            if item.identity in seen:
                problems.append(f"{item.product_id}: duplicate line")
            seen.add(item.identity)
        return problems

    def to_dict(self) -> dict:
        """Convert to the stored payload."""
        return {
            "items": [item.to_dict() for item in self.items],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartRecord":
        return cls(
            items=[CartItem.from_dict(item) for item in data.get("items", [])],
            metadata=CartMetadata.from_dict(data["metadata"]),
        )
