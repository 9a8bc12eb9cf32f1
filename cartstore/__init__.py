"""
Cart State Store

This package persists a shopping cart (plus user, preferences and session
records) in a flat key-value medium:
- storage: media, backend, envelopes, schemas, record store
- cart: data model, reconciler, migration, cross-tab sync, facade

Note: Imports are lazy so that `cartstore.logging` configuration and the
storage layer can be used without pulling in the whole cart stack.
"""

__all__ = [
    "CartStore",
    "create_store",
    "get_cart_store",
    "CatalogProduct",
    "CatalogSnapshot",
    "get_settings",
]


def __getattr__(name):
    """Lazy attribute access."""
    if name == "CartStore":
        from cartstore.cart.service import CartStore
        return CartStore
    elif name == "create_store":
        from cartstore.cart.service import create_store
        return create_store
    elif name == "get_cart_store":
        from cartstore.cart.service import get_cart_store
        return get_cart_store
    elif name == "CatalogProduct":
        from cartstore.cart.catalog import CatalogProduct
        return CatalogProduct
    elif name == "CatalogSnapshot":
        from cartstore.cart.catalog import CatalogSnapshot
        return CatalogSnapshot
    elif name == "get_settings":
        from cartstore.config import get_settings
        return get_settings
    raise AttributeError(f"module 'cartstore' has no attribute '{name}'")
