"""
Migration Engine - move legacy unversioned keys into canonical records.

Older storefront builds wrote raw JSON under several ad-hoc keys. For each
schema the keys are scanned in a fixed order; the first payload that
transforms into a valid record wins. The winner is written and read back
before any legacy key is removed, so a crash mid-migration can only leave
extra legacy data behind, never lose it. Losers are discarded, not merged.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from cartstore.cart.models import CartItem, CartMetadata, CartRecord, item_identity
from cartstore.clock import Clock, now_ms
from cartstore.errors import CartStoreError
from cartstore.logging import get_logger, sanitize_string_for_logging
from cartstore.storage.codec import canonical_json
from cartstore.storage.keys import StorageKeys
from cartstore.storage.records import RecordStore

logger = get_logger(__name__)

LegacyTransform = Callable[[Any, int], Optional[dict]]


@dataclass(frozen=True)
class LegacySource:
    """Legacy keys of one schema, in scan order, and how to convert them."""
    schema: str
    keys: tuple[str, ...]
    transform: LegacyTransform


@dataclass
class MigrationReport:
    migrated: dict[str, str] = field(default_factory=dict)  # schema -> winning legacy key
    discarded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.migrated or self.discarded)


def _first(data: dict, *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value:
            return value
    return None


def _as_timestamp(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def transform_legacy_cart(data: Any, now: int) -> Optional[dict]:
    """
    Convert a legacy cart to the current payload shape.

    Accepts a bare list of items or an object with an `items` list. Items
    look like {id, cantidad} or {productId, quantity}. Returns None when
    there is nothing to migrate.
    """
    raw_items = data.get("items") if isinstance(data, dict) else data
    if not isinstance(raw_items, list):
        return None

    items: dict[tuple, CartItem] = {}
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        product_id = raw.get("id", raw.get("productId"))
        if product_id is None or product_id == "":
            continue
        try:
            quantity = int(_first(raw, "cantidad", "quantity") or 1)
        except (TypeError, ValueError):
            continue
        if quantity < 1:
            continue

        variant = _first(raw, "variante", "selectedVariants", "variant")
        if not isinstance(variant, dict):
            variant = None
        added_at = _as_timestamp(_first(raw, "timestamp", "addedAt"), now)

        identity = item_identity(str(product_id), variant)
        existing = items.get(identity)
        if existing is not None:
            existing.quantity += quantity
            continue
        items[identity] = CartItem(
            product_id=str(product_id),
            quantity=quantity,
            added_at=added_at,
            last_updated_at=added_at,
            variant_selector=variant,
        )

    if not items:
        return None

    cart_items = list(items.values())
    record = CartRecord(
        items=cart_items,
        metadata=CartMetadata(
            created_at=now,
            last_modified_at=max([now] + [item.last_updated_at for item in cart_items]),
            total_items=sum(item.quantity for item in cart_items),
        ),
    )
    return record.to_dict()


def transform_legacy_user(data: Any, now: int) -> Optional[dict]:
    """Convert a legacy user profile (Spanish field names allowed)."""
    if not isinstance(data, dict) or not data:
        return None

    user = {
        "id": str(data["id"]) if data.get("id") is not None else None,
        "email": data.get("email"),
        "firstName": _first(data, "firstName", "nombre") or "",
        "lastName": _first(data, "lastName", "apellido") or "",
        "preferences": data.get("preferences") if isinstance(data.get("preferences"), dict) else {},
        "lastLogin": _as_timestamp(data.get("lastLogin"), now),
    }
    # Missing fields are left out so validation reports them
    return {k: v for k, v in user.items() if v is not None}


LEGACY_SOURCES = (
    LegacySource(StorageKeys.CART, StorageKeys.LEGACY_CART, transform_legacy_cart),
    LegacySource(StorageKeys.USER, StorageKeys.LEGACY_USER, transform_legacy_user),
)


class MigrationEngine:
    """
    Runs legacy-key migration for every configured schema.

    Usage:
        engine = MigrationEngine(records)
        report = engine.run()
    """

    def __init__(
        self,
        records: RecordStore,
        sources: tuple[LegacySource, ...] = LEGACY_SOURCES,
        clock: Optional[Clock] = None,
    ):
        self.records = records
        self.backend = records.backend
        self.registry = records.registry
        self.sources = sources
        self._clock = clock or now_ms

    def run(self) -> MigrationReport:
        report = MigrationReport()
        for source in self.sources:
            self._migrate_source(source, report)

        if report.changed:
            logger.info(
                f"Legacy migration: migrated={report.migrated} "
                f"discarded={len(report.discarded)} skipped={len(report.skipped)}"
            )
        return report

    def _remove_keys(self, keys: list[str]) -> None:
        for key in keys:
            self.backend.remove(key)

    def _migrate_source(self, source: LegacySource, report: MigrationReport) -> None:
        present = [key for key in source.keys if self.backend.get(key) is not None]
        if not present:
            return

        if self.records.get(source.schema) is not None:
            # Current data is authoritative; legacy leftovers are stale
            self._remove_keys(present)
            report.discarded.extend(present)
            return

        now = self._clock()
        winner: Optional[tuple[str, dict]] = None
        for key in present:
            raw = self.backend.get(key)
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning(f"Legacy key {sanitize_string_for_logging(key)} is not valid JSON")
                continue

            candidate = source.transform(data, now)
            if candidate is None:
                continue
            result = self.registry.validate(source.schema, candidate)
            if not result.valid:
                logger.warning(
                    f"Legacy key {sanitize_string_for_logging(key)} failed {source.schema} validation: "
                    f"missing={result.missing_fields} type_errors={result.type_errors}"
                )
                continue
            winner = (key, candidate)
            break

        if winner is None:
            report.skipped.extend(present)
            return

        winning_key, payload = winner
        try:
            self.records.put(source.schema, payload)
            stored = self.records.read(source.schema)
        except CartStoreError as e:
            logger.error(f"Failed to persist migrated {source.schema}: {e}")
            report.skipped.extend(present)
            return

        if stored is None or canonical_json(stored.payload) != canonical_json(payload):
            logger.error(f"Migrated {source.schema} did not read back intact, keeping legacy keys")
            report.skipped.extend(present)
            return

        self._remove_keys(present)
        report.migrated[source.schema] = winning_key
        report.discarded.extend(key for key in present if key != winning_key)
