"""
Schema Registry - structural descriptors for every persisted entity.

Validation is structural only: required fields present, types match, nested
objects and arrays checked recursively. A candidate that fails is rejected
as a whole; callers fall back to a schema-conformant default.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from cartstore.errors import ERROR_UNKNOWN_SCHEMA, CartStoreError
from cartstore.storage.keys import MaxAge, StorageKeys

FIELD_TYPES = ("string", "number", "integer", "boolean", "object", "array")


@dataclass(frozen=True)
class FieldSpec:
    """
    One field of a descriptor.

    `fields` describes the members of an `object` field, `items` the
    elements of an `array` field. Both are optional: without them only the
    container type is checked.
    """
    type: str
    required: bool = True
    fields: Optional[Mapping[str, "FieldSpec"]] = None
    items: Optional["FieldSpec"] = None

    def __post_init__(self):
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unknown field type: {self.type}")
        if self.fields is not None:
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))


@dataclass(frozen=True)
class SchemaDescriptor:
    version: int
    fields: Mapping[str, FieldSpec]
    max_age: int  # milliseconds

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def required_fields(self) -> list[str]:
        return [name for name, spec in self.fields.items() if spec.required]

    @property
    def field_types(self) -> dict[str, str]:
        return {name: spec.type for name, spec in self.fields.items()}


@dataclass
class ValidationResult:
    valid: bool
    missing_fields: list[str] = field(default_factory=list)
    type_errors: list[str] = field(default_factory=list)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def _matches(expected: str, value: Any) -> bool:
    actual = _type_name(value)
    if expected == "number":
        return actual in ("number", "integer")
    return actual == expected


def _check_object(
    fields: Mapping[str, FieldSpec],
    candidate: dict,
    path: str,
    result: ValidationResult,
) -> None:
    for name, spec in fields.items():
        field_path = f"{path}.{name}" if path else name
        if name not in candidate:
            if spec.required:
                result.missing_fields.append(field_path)
            continue
        value = candidate[name]
        if value is None and not spec.required:
            continue
        _check_value(spec, value, field_path, result)


def _check_value(spec: FieldSpec, value: Any, path: str, result: ValidationResult) -> None:
    if not _matches(spec.type, value):
        result.type_errors.append(f"{path}: expected {spec.type}, got {_type_name(value)}")
        return
    if spec.type == "object" and spec.fields is not None:
        _check_object(spec.fields, value, path, result)
    elif spec.type == "array" and spec.items is not None:
        for index, element in enumerate(value):
            _check_value(spec.items, element, f"{path}[{index}]", result)


class SchemaRegistry:
    """
    Fixed table of schema descriptors.

    Usage:
        registry = default_registry()
        result = registry.validate("cart", payload)
        if not result.valid:
            ...
    """

    def __init__(self):
        self._schemas: dict[str, SchemaDescriptor] = {}

    def register(self, name: str, descriptor: SchemaDescriptor) -> None:
        if name in self._schemas:
            raise ValueError(f"Schema already registered: {name}")
        self._schemas[name] = descriptor

    def get(self, name: str) -> SchemaDescriptor:
        try:
            return self._schemas[name]
        except KeyError:
            raise CartStoreError("unknown_schema", f"{ERROR_UNKNOWN_SCHEMA}: {name}") from None

    def names(self) -> list[str]:
        return list(self._schemas)

    def __contains__(self, name: object) -> bool:
        return name in self._schemas

    def validate(self, name: str, candidate: Any) -> ValidationResult:
        descriptor = self.get(name)
        result = ValidationResult(valid=False)
        if not isinstance(candidate, dict):
            result.type_errors.append(f"<root>: expected object, got {_type_name(candidate)}")
            return result
        _check_object(descriptor.fields, candidate, "", result)
        result.valid = not result.missing_fields and not result.type_errors
        return result


CART_ITEM_FIELDS = {
    "productId": FieldSpec("string"),
    "quantity": FieldSpec("integer"),
    "addedAt": FieldSpec("number"),
    "lastUpdatedAt": FieldSpec("number"),
    "variantSelector": FieldSpec("object", required=False),
}

CART_METADATA_FIELDS = {
    "createdAt": FieldSpec("number"),
    "lastModifiedAt": FieldSpec("number"),
    "totalItems": FieldSpec("number"),
    "estimatedTotal": FieldSpec("string", required=False),
    "unresolvedProductIds": FieldSpec("array", required=False, items=FieldSpec("string")),
}

CART_SCHEMA = SchemaDescriptor(
    version=2,
    fields={
        "items": FieldSpec("array", items=FieldSpec("object", fields=CART_ITEM_FIELDS)),
        "metadata": FieldSpec("object", fields=CART_METADATA_FIELDS),
    },
    max_age=MaxAge.CART,
)

USER_SCHEMA = SchemaDescriptor(
    version=1,
    fields={
        "id": FieldSpec("string"),
        "email": FieldSpec("string"),
        "firstName": FieldSpec("string"),
        "lastName": FieldSpec("string"),
        "preferences": FieldSpec("object"),
        "lastLogin": FieldSpec("number"),
    },
    max_age=MaxAge.USER,
)

PREFERENCES_SCHEMA = SchemaDescriptor(
    version=1,
    fields={
        "theme": FieldSpec("string"),
        "backgroundColor": FieldSpec("string"),
        "notifications": FieldSpec("boolean"),
        "language": FieldSpec("string"),
        "currency": FieldSpec("string"),
    },
    max_age=MaxAge.PREFERENCES,
)

SESSION_SCHEMA = SchemaDescriptor(
    version=1,
    fields={
        "token": FieldSpec("string"),
        "userId": FieldSpec("string"),
        "expiresAt": FieldSpec("number"),
    },
    max_age=MaxAge.SESSION,
)


def default_registry() -> SchemaRegistry:
    """Registry with the cart, user, preferences and session schemas."""
    registry = SchemaRegistry()
    registry.register(StorageKeys.CART, CART_SCHEMA)
    registry.register(StorageKeys.USER, USER_SCHEMA)
    registry.register(StorageKeys.PREFERENCES, PREFERENCES_SCHEMA)
    registry.register(StorageKeys.SESSION, SESSION_SCHEMA)
    return registry
