"""
Built-in transaction programs.

A program reads and writes state through a TxContext; the writes it
leaves in the staged view become the transaction's diff. Programs raise a
RejectionError subclass for expected failures (stale intent, insufficient
balance); any other exception is a trap.
"""
import logging
from collections import defaultdict
from typing import Dict, List

from pydantic import ValidationError

from ..exceptions import ExpiredError, MalformedError, StaleMatchError, TxProgramError
from ..identity.crypto import decode_key, derive_address
from ..models import Fill, SignedIntent
from ..state import keys
from ..vp.builtin import INVALIDATE_CODE, SETTLE_CODE, VP_USER, vp_spec
from ..vp.context import TxContext
from ..vp.sandbox import LocalSandbox

logger = logging.getLogger(__name__)

TRANSFER_CODE = "transfer"
RAW_WRITES_CODE = "raw_writes"
INIT_ACCOUNT_CODE = "init_account"
UPDATE_VP_CODE = "update_vp"


def _require(data: Dict, field: str, kind: type):
    value = data.get(field)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise MalformedError(f"field {field!r} must be {kind.__name__}")
    return value


def _move(ctx: TxContext, source: str, target: str, asset: str, amount: int) -> None:
    if amount <= 0:
        raise MalformedError("amount must be positive")
    source_key = keys.balance_key(source, asset)
    balance = ctx.read_amount(source_key)
    if balance < amount:
        raise TxProgramError(f"insufficient {asset} balance of {source}: {balance} < {amount}", account=source)
    ctx.write_value(source_key, balance - amount)
    target_key = keys.balance_key(target, asset)
    ctx.write_value(target_key, ctx.read_amount(target_key) + amount)


def tx_transfer(ctx: TxContext) -> None:
    data = ctx.data
    _move(
        ctx,
        _require(data, "source", str),
        _require(data, "target", str),
        _require(data, "asset", str),
        _require(data, "amount", int),
    )


def tx_raw_writes(ctx: TxContext) -> None:
    """Write ``data['writes']``, a list of ``[key, value]`` pairs (None deletes)."""
    writes = ctx.data.get("writes")
    if not isinstance(writes, list):
        raise MalformedError("field 'writes' must be a list of [key, value] pairs")
    for item in writes:
        if not isinstance(item, (list, tuple)) or len(item) != 2 or not isinstance(item[0], str):
            raise MalformedError(f"invalid write entry {item!r}")
        key, value = item
        if value is None:
            ctx.delete(key)
        else:
            ctx.write_value(key, value)


def tx_init_account(ctx: TxContext) -> str:
    public_key = _require(ctx.data, "public_key", str)
    try:
        address = derive_address(decode_key(public_key))
    except ValueError as e:
        raise MalformedError(f"invalid public key: {e}") from e
    if ctx.read(keys.pk_key(address)) is not None:
        raise TxProgramError(f"account {address} already exists", account=address)
    vp = ctx.data.get("vp") or vp_spec(VP_USER)
    if not isinstance(vp, dict) or not isinstance(vp.get("code"), str):
        raise MalformedError("field 'vp' must be a predicate spec")
    ctx.write_value(keys.pk_key(address), public_key)
    ctx.write_value(keys.vp_key(address), vp)
    return address


def tx_update_vp(ctx: TxContext) -> None:
    address = _require(ctx.data, "address", str)
    vp = _require(ctx.data, "vp", dict)
    if not isinstance(vp.get("code"), str):
        raise MalformedError("predicate spec needs a 'code' name")
    ctx.write_value(keys.vp_key(address), vp)


def _parse_fills(data: Dict) -> List[Fill]:
    raw_fills = data.get("fills")
    if not isinstance(raw_fills, list) or not raw_fills:
        raise MalformedError("settlement needs a non-empty 'fills' list")
    try:
        return [Fill.model_validate(raw) for raw in raw_fills]
    except ValidationError as e:
        raise MalformedError(f"invalid fill: {e}") from e


def _signed_intent(raw) -> SignedIntent:
    try:
        return SignedIntent.model_validate(raw)
    except ValidationError as e:
        raise MalformedError(f"invalid signed intent: {e}") from e


def tx_settle_match(ctx: TxContext) -> None:
    """
    Apply a match set: record every intent's fill and move the assets.

    Raises StaleMatchError when an intent was consumed by an earlier
    transaction, so the matcher can rebuild from fresh pool state.
    """
    fills = _parse_fills(ctx.data)
    intents = ctx.data.get("intents")
    if not isinstance(intents, dict):
        raise MalformedError("settlement needs an 'intents' mapping")

    given: Dict[str, int] = defaultdict(int)
    received: Dict[str, int] = defaultdict(int)
    for fill in fills:
        given[fill.give_asset] += fill.give_amount
        received[fill.receive_asset] += fill.receive_amount
    if dict(given) != dict(received):
        raise MalformedError("settlement is not balanced")

    for fill in fills:
        if fill.intent_id not in intents:
            raise MalformedError(f"fill references unknown intent {fill.intent_id[:8]}")
        intent = _signed_intent(intents[fill.intent_id]).intent
        if intent.intent_id != fill.intent_id:
            raise MalformedError(f"intent content does not hash to {fill.intent_id[:8]}")
        if fill.owner != intent.owner:
            raise MalformedError(f"fill of intent {fill.intent_id[:8]} is not paid by its owner")
        if fill.give_asset != intent.give_asset or fill.receive_asset != intent.want_asset:
            raise MalformedError(f"fill assets do not match intent {fill.intent_id[:8]}")
        if intent.is_expired(ctx.block.timestamp_ms):
            raise ExpiredError(f"intent {fill.intent_id[:8]} expired", account=intent.owner)

        fill_key = keys.fill_key(fill.intent_id)
        filled = ctx.read_amount(fill_key)
        remaining = intent.give_max - filled
        if (not intent.allow_partial and filled > 0) or fill.give_amount > remaining:
            raise StaleMatchError(
                f"intent {fill.intent_id[:8]} already consumed ({filled}/{intent.give_max})",
                account=intent.owner,
            )
        new_fill = filled + fill.give_amount if intent.allow_partial else intent.give_max
        ctx.write_value(fill_key, new_fill)
        _move(ctx, fill.owner, fill.recipient, fill.give_asset, fill.give_amount)


def tx_invalidate_intent(ctx: TxContext) -> None:
    """Burn the remaining quantity of an intent so it can never be settled."""
    intent = _signed_intent(ctx.data.get("intent")).intent
    fill_key = keys.fill_key(intent.intent_id)
    if ctx.read_amount(fill_key) >= intent.give_max:
        raise StaleMatchError(f"intent {intent.intent_id[:8]} is already consumed", account=intent.owner)
    ctx.write_value(fill_key, intent.give_max)


BUILTIN_PROGRAMS = {
    TRANSFER_CODE: tx_transfer,
    RAW_WRITES_CODE: tx_raw_writes,
    INIT_ACCOUNT_CODE: tx_init_account,
    UPDATE_VP_CODE: tx_update_vp,
    SETTLE_CODE: tx_settle_match,
    INVALIDATE_CODE: tx_invalidate_intent,
}


def default_program_sandbox() -> LocalSandbox:
    """A LocalSandbox preloaded with the built-in transaction programs."""
    return LocalSandbox(dict(BUILTIN_PROGRAMS))
