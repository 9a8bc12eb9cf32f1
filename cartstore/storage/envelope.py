"""
Versioned Envelope - the wrapper every stored record travels in.

Wire format (one JSON object per key):
    {"schemaName", "schemaVersion", "payload", "checksum",
     "writtenAt", "expiresAt"?, "compressed"}

The checksum binds the stored body to the header fields, so a change to any
byte of the serialized envelope is detected at read time.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cartstore.clock import now_ms
from cartstore.errors import CorruptionError, ErrorKind
from cartstore.storage.codec import Codec, fingerprint

_DEFAULT_CODEC = Codec()


class VersionedEnvelope(BaseModel):
    schema_name: str = Field(alias="schemaName")
    schema_version: int = Field(alias="schemaVersion")
    payload: Any
    checksum: str
    written_at: int = Field(alias="writtenAt")
    expires_at: Optional[int] = Field(default=None, alias="expiresAt")
    compressed: bool = False

    model_config = ConfigDict(populate_by_name=True, extra="forbid", strict=True)

    def dumps(self) -> str:
        """Serialize for storage."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def loads(cls, raw: str) -> "VersionedEnvelope":
        """Parse a stored envelope. Any malformed input counts as corruption."""
        try:
            return cls.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            raise CorruptionError(ErrorKind.CHECKSUM_MISMATCH, f"Malformed envelope: {e.__class__.__name__}") from e

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now > self.expires_at


def _compute_checksum(
    schema_name: str,
    schema_version: int,
    body: Any,
    written_at: int,
    expires_at: Optional[int],
    compressed: bool,
) -> str:
    return fingerprint({
        "schemaName": schema_name,
        "schemaVersion": schema_version,
        "payload": body,
        "writtenAt": written_at,
        "expiresAt": expires_at,
        "compressed": compressed,
    })


def wrap(
    payload: Any,
    schema_name: str,
    schema_version: int,
    ttl: Optional[int] = None,
    now: Optional[int] = None,
    codec: Optional[Codec] = None,
) -> VersionedEnvelope:
    """
    Wrap a payload in a checksummed envelope.

    Args:
        payload: JSON-compatible data
        schema_name: Registry name of the payload's schema
        schema_version: Schema version the payload was written with
        ttl: Milliseconds until the record expires (optional)
        now: Write time in epoch ms (defaults to the wall clock)
        codec: Codec used to encode the body

    Returns:
        VersionedEnvelope ready to be serialized with dumps()
    """
    codec = codec or _DEFAULT_CODEC
    written_at = now_ms() if now is None else now
    expires_at = written_at + ttl if ttl is not None else None
    body, compressed = codec.encode(payload)

    return VersionedEnvelope(
        schema_name=schema_name,
        schema_version=schema_version,
        payload=body,
        checksum=_compute_checksum(schema_name, schema_version, body, written_at, expires_at, compressed),
        written_at=written_at,
        expires_at=expires_at,
        compressed=compressed,
    )


def unwrap(envelope: VersionedEnvelope, now: Optional[int] = None, codec: Optional[Codec] = None) -> Any:
    """
    Verify an envelope and return its payload.

    Raises:
        CorruptionError: kind ChecksumMismatch if the checksum does not match
            or the body cannot be decoded, kind Expired if expiresAt passed.
    """
    codec = codec or _DEFAULT_CODEC
    expected = _compute_checksum(
        envelope.schema_name,
        envelope.schema_version,
        envelope.payload,
        envelope.written_at,
        envelope.expires_at,
        envelope.compressed,
    )
    if expected != envelope.checksum:
        raise CorruptionError(ErrorKind.CHECKSUM_MISMATCH, details={"schema": envelope.schema_name})

    payload = codec.decode(envelope.payload, envelope.compressed)

    current = now_ms() if now is None else now
    if envelope.is_expired(current):
        raise CorruptionError(ErrorKind.EXPIRED, details={"schema": envelope.schema_name, "expiresAt": envelope.expires_at})

    return payload
