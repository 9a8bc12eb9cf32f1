"""
Codec - canonical serialization, integrity fingerprints and compression.

The fingerprint is order-independent for object keys: two payloads that
differ only in key order hash to the same value.
"""

import base64
import binascii
import hashlib
import json
import zlib
from decimal import Decimal
from typing import Any

from cartstore.errors import CorruptionError, ErrorKind


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Key-sorted compact JSON."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of the canonical form."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


class Codec:
    """
    Encodes payload bodies for storage.

    Bodies whose canonical form exceeds `compression_threshold` characters
    are stored zlib-compressed and base64-encoded; the envelope carries the
    flag. A threshold of 0 disables compression.
    """

    def __init__(self, compression_threshold: int = 1000):
        self.compression_threshold = compression_threshold

    def encode(self, payload: Any) -> tuple[Any, bool]:
        """Returns (body, compressed)."""
        text = canonical_json(payload)
        if self.compression_threshold and len(text) > self.compression_threshold:
            packed = base64.b64encode(zlib.compress(text.encode("utf-8"))).decode("ascii")
            return packed, True
        # Round-trip through JSON so the stored body is plain JSON data
        return json.loads(text), False

    def decode(self, body: Any, compressed: bool) -> Any:
        if not compressed:
            return body
        if not isinstance(body, str):
            raise CorruptionError(ErrorKind.CHECKSUM_MISMATCH, "Compressed body is not a string")
        try:
            text = zlib.decompress(base64.b64decode(body, validate=True)).decode("utf-8")
            return json.loads(text)
        except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError) as e:
            raise CorruptionError(ErrorKind.CHECKSUM_MISMATCH, f"Compressed body could not be decoded: {e}") from e
