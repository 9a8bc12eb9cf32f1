"""
Cart store configuration.

Values come from the environment with safe defaults; `StoreSettings` can
also be built directly (tests, or a host that manages its own config).
"""

import os
from functools import cache

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    return float(raw) if raw.strip() else default


# Environment variables
CART_STORE_NAMESPACE = os.environ.get("CART_STORE_NAMESPACE", "store")
CART_STORE_REDIS_URL = os.environ.get("CART_STORE_REDIS_URL", "")

CART_STORE_MAX_UNIQUE_ITEMS = _env_int("CART_STORE_MAX_UNIQUE_ITEMS", 50)
CART_STORE_MAX_QUANTITY_PER_ITEM = _env_int("CART_STORE_MAX_QUANTITY_PER_ITEM", 99)

# 5 MiB, the usual per-origin browser quota
CART_STORE_MEMORY_CAPACITY = _env_int("CART_STORE_MEMORY_CAPACITY", 5 * 1024 * 1024)
CART_STORE_COMPRESSION_THRESHOLD = _env_int("CART_STORE_COMPRESSION_THRESHOLD", 1000)
CART_STORE_EVICTION_FRACTION = _env_float("CART_STORE_EVICTION_FRACTION", 0.2)


class StoreSettings(BaseModel):
    """Tunables for the cart store."""
    namespace: str = CART_STORE_NAMESPACE
    redis_url: str = CART_STORE_REDIS_URL
    max_unique_items: int = Field(default=CART_STORE_MAX_UNIQUE_ITEMS, ge=1)
    max_quantity_per_item: int = Field(default=CART_STORE_MAX_QUANTITY_PER_ITEM, ge=1)
    memory_capacity: int = Field(default=CART_STORE_MEMORY_CAPACITY, ge=0)
    compression_threshold: int = Field(default=CART_STORE_COMPRESSION_THRESHOLD, ge=0)
    eviction_fraction: float = Field(default=CART_STORE_EVICTION_FRACTION, gt=0, le=1)

    model_config = {"frozen": True}


@cache
def get_settings() -> StoreSettings:
    """Get settings built from the environment (cached)."""
    return StoreSettings()
