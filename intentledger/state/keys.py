"""
Storage key layout and value codec.

Every key belongs to exactly one account: ``#<address>/<segment>/...``.
Reserved segments start with ``?`` so they cannot collide with
application data.
"""
import json
from typing import Any, Optional

from ..utils import canonical_json

KEY_SEP = "/"
ACCOUNT_MARK = "#"

VP_SEGMENT = "?vp"
PK_SEGMENT = "?pk"
BALANCE_SEGMENT = "balance"
FILL_SEGMENT = "fill"

# Internal account that records how much of each intent has been consumed
INTENT_ACCOUNT = "intents"


def account_prefix(address: str) -> str:
    if KEY_SEP in address or not address:
        raise ValueError(f"Invalid address: {address!r}")
    return f"{ACCOUNT_MARK}{address}{KEY_SEP}"


def vp_key(address: str) -> str:
    return account_prefix(address) + VP_SEGMENT


def pk_key(address: str) -> str:
    return account_prefix(address) + PK_SEGMENT


def balance_key(address: str, asset: str) -> str:
    if KEY_SEP in asset or not asset:
        raise ValueError(f"Invalid asset name: {asset!r}")
    return account_prefix(address) + BALANCE_SEGMENT + KEY_SEP + asset


def fill_key(intent_id: str) -> str:
    return account_prefix(INTENT_ACCOUNT) + FILL_SEGMENT + KEY_SEP + intent_id


def owner_of(key: str) -> Optional[str]:
    """Return the address owning ``key``, or None for keys outside any account."""
    if not key.startswith(ACCOUNT_MARK):
        return None
    address, sep, _ = key[1:].partition(KEY_SEP)
    if not sep or not address:
        return None
    return address


def split_key(key: str):
    """Split a key into (owner, [segments])."""
    owner = owner_of(key)
    if owner is None:
        return None, []
    rest = key[len(account_prefix(owner)):]
    return owner, rest.split(KEY_SEP) if rest else []


def balance_asset(key: str, address: Optional[str] = None) -> Optional[str]:
    """Return the asset if ``key`` is a balance key (of ``address`` when given)."""
    owner, segments = split_key(key)
    if owner is None or len(segments) != 2 or segments[0] != BALANCE_SEGMENT:
        return None
    if address is not None and owner != address:
        return None
    return segments[1]


def fill_intent_id(key: str) -> Optional[str]:
    owner, segments = split_key(key)
    if owner != INTENT_ACCOUNT or len(segments) != 2 or segments[0] != FILL_SEGMENT:
        return None
    return segments[1]


def encode_value(value: Any) -> bytes:
    return canonical_json(value)


def decode_value(raw: Optional[bytes], default: Any = None) -> Any:
    if raw is None:
        return default
    return json.loads(raw.decode("utf-8"))


def decode_amount(raw: Optional[bytes]) -> int:
    """Decode a stored integer amount; absent keys read as zero."""
    value = decode_value(raw, 0)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Stored amount is not an integer: {value!r}")
    return value
