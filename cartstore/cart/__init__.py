"""Cart package: models, reconciler, migration, sync, and store facade."""
from .catalog import CatalogProduct, CatalogProvider, CatalogSnapshot, InMemoryCatalog
from .models import CartItem, CartMetadata, CartRecord
from .reconciler import CartIntent, CartReconciler, RejectionReason
from .service import CartOperationResult, CartStats, CartStore, StoreState, create_store, get_cart_store

__all__ = [
    "CatalogProduct",
    "CatalogProvider",
    "CatalogSnapshot",
    "InMemoryCatalog",
    "CartItem",
    "CartMetadata",
    "CartRecord",
    "CartIntent",
    "CartReconciler",
    "RejectionReason",
    "CartOperationResult",
    "CartStats",
    "CartStore",
    "StoreState",
    "create_store",
    "get_cart_store",
]
