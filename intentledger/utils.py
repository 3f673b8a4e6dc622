"""
Hashing and encoding helpers shared across intentledger.
"""
import hashlib
import json
from typing import Any, Union


def canonical_json(obj: Any) -> bytes:
    """
    Serialize ``obj`` to canonical JSON bytes.

    Keys are sorted and no insignificant whitespace is emitted, so equal
    objects always produce identical bytes (and identical hashes).
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_hex(data: Union[str, bytes]) -> str:
    """Return the hex SHA-256 digest of ``data`` (text is UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def short(identifier: str, length: int = 8) -> str:
    """Truncate an identifier for log output."""
    if len(identifier) <= length:
        return identifier
    return identifier[:length] + "…"


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division for non-negative numerators."""
    return -(-numerator // denominator)
