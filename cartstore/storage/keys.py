"""Storage key layout and record max-age constants."""


class StorageKeys:
    """Canonical and legacy key names."""

    # Canonical keys: {namespace}:{schema}
    SEPARATOR = ":"

    # Schemas with one canonical key each
    CART = "cart"
    USER = "user"
    PREFERENCES = "preferences"
    SESSION = "session"

    # Used by the availability probe, removed right after
    PROBE = "__storage_test__"

    # Unversioned keys written by older storefront builds, in scan order
    LEGACY_CART = ("carrito", "cart", "patagonia_carrito", "store_carrito", "carrito_v2")
    LEGACY_USER = ("currentUser", "patagonia_user")

    # Redis medium
    REDIS_PREFIX = "localstore:"  # localstore:{key}
    REDIS_EVENTS_STREAM = "stream:localstore:events"

    @staticmethod
    def canonical(namespace: str, schema_name: str) -> str:
        return f"{namespace}{StorageKeys.SEPARATOR}{schema_name}"

    @staticmethod
    def namespace_prefix(namespace: str) -> str:
        return f"{namespace}{StorageKeys.SEPARATOR}"


# Max record age (in milliseconds)
class MaxAge:
    """How long a record of each schema stays valid after it was written."""

    DAY = 24 * 60 * 60 * 1000

    CART = 7 * DAY
    USER = 30 * DAY
    PREFERENCES = 365 * DAY
    SESSION = DAY
