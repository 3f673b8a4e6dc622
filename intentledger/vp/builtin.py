"""
Built-in validity predicates.

Each predicate takes a PredicateContext and returns True to accept. A
rejection reason is recorded with ``ctx.reject(...)``. Accounts select a
predicate by storing ``{"code": <name>, "params": {...}}`` under their
``?vp`` key.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..models import Fill
from ..state import keys
from .context import PredicateContext

logger = logging.getLogger(__name__)

VP_DEFAULT = "vp_default"
VP_USER = "vp_user"
VP_DEBIT_LIMIT = "vp_debit_limit"
VP_ACCEPT_ALL = "vp_accept_all"
VP_INTENTS = "vp_intents"

SETTLE_CODE = "settle_match"
INVALIDATE_CODE = "invalidate_intent"


def vp_spec(code: str, **params) -> Dict:
    """Build the value stored under an account's ``?vp`` key."""
    return {"code": code, "params": params}


def vp_default(ctx: PredicateContext) -> bool:
    """
    Predicate in force for accounts that never installed one: only an
    owner-signed change of the account's own ``?vp`` / ``?pk`` is accepted.
    """
    own = ctx.own_changes()
    allowed = {keys.vp_key(ctx.address), keys.pk_key(ctx.address)}
    for key in own:
        if key not in allowed:
            return ctx.reject(f"default predicate only accepts key or predicate updates, got {key}")
    if not ctx.is_signed_by(ctx.address):
        return ctx.reject("default predicate requires the owner's signature")
    return True


def vp_accept_all(ctx: PredicateContext) -> bool:
    return True


def _settlement_fills(ctx: PredicateContext) -> Optional[List[Fill]]:
    if ctx.tx.code != SETTLE_CODE:
        return []
    try:
        return [Fill.model_validate(raw) for raw in ctx.tx.data.get("fills", [])]
    except (ValidationError, TypeError):
        return None


def _intent_floors(ctx: PredicateContext) -> Optional[Dict[str, int]]:
    """
    Minimum net balance change per asset authorised by this account's
    intents consumed in the transaction. None means a consumed intent
    failed verification (reason already recorded).
    """
    floors: Dict[str, int] = defaultdict(int)
    fills = _settlement_fills(ctx)
    if fills is None:
        ctx.reject("malformed settlement fills")
        return None
    signed_intents = ctx.tx.data.get("intents", {}) if ctx.tx.code == SETTLE_CODE else {}
    for fill in fills:
        if fill.owner != ctx.address:
            continue
        signed = ctx.verify_intent(signed_intents.get(fill.intent_id))
        if signed is None or signed.intent_id != fill.intent_id or signed.intent.owner != ctx.address:
            ctx.reject(f"intent {fill.intent_id[:8]} is not a valid intent of this account")
            return None
        entry = ctx.diff.get(keys.fill_key(fill.intent_id))
        if entry is None or keys.decode_amount(entry.new) <= keys.decode_amount(entry.old):
            ctx.reject(f"intent {fill.intent_id[:8]} is used but its fill is not recorded")
            return None
        intent = signed.intent
        if fill.give_asset != intent.give_asset or fill.receive_asset != intent.want_asset:
            ctx.reject(f"fill assets do not match intent {fill.intent_id[:8]}")
            return None
        floors[intent.give_asset] -= fill.give_amount
        floors[intent.want_asset] += intent.min_receive(fill.give_amount)
    return dict(floors)


def vp_user(ctx: PredicateContext) -> bool:
    """
    Standard user account predicate.

    Anything signed by the owner is accepted. Without the owner's signature
    only balance changes are allowed, and each asset's net change must be at
    least what the account's consumed intents authorise (zero when no
    intent is involved, so unsigned credits pass and unsigned debits fail).
    """
    if ctx.is_signed_by(ctx.address):
        return True

    for key in ctx.own_changes():
        if keys.balance_asset(key, ctx.address) is None:
            return ctx.reject(f"change to {key} requires the owner's signature")

    floors = _intent_floors(ctx)
    if floors is None:
        return False

    changes = ctx.balance_changes()
    for asset in set(changes) | set(floors):
        delta = changes.get(asset, 0)
        floor = floors.get(asset, 0)
        if delta < floor:
            return ctx.reject(
                f"balance of {asset} changed by {delta}, authorised minimum is {floor}"
            )
    return True


def vp_debit_limit(ctx: PredicateContext) -> bool:
    """
    Cap how much any balance (or only ``params['asset']``) may decrease in
    a single transaction, then apply the user predicate.
    """
    max_debit = ctx.params.get("max_debit")
    if not isinstance(max_debit, int) or max_debit < 0:
        return ctx.reject("predicate parameter max_debit must be a non-negative integer")
    only_asset = ctx.params.get("asset")
    for asset, delta in ctx.balance_changes().items():
        if only_asset is not None and asset != only_asset:
            continue
        if -delta > max_debit:
            return ctx.reject(f"balance of {asset} decreased by {-delta}, limit is {max_debit}")
    return vp_user(ctx)


def vp_intents(ctx: PredicateContext) -> bool:
    """
    Predicate of the internal intent account.

    Fill counters only grow, never past the signed intent's ``give_max``,
    only through a settlement that carries exactly one matching fill paid
    by the intent's owner in the intent's assets (or an owner-signed
    invalidation), never for expired intents, and all-or-nothing intents
    are consumed in a single step.
    """
    fills = _settlement_fills(ctx)
    if fills is None:
        return ctx.reject("malformed settlement fills")
    fills_by_id: Dict[str, List[Fill]] = defaultdict(list)
    for fill in fills:
        fills_by_id[fill.intent_id].append(fill)

    data = ctx.tx.data
    own = ctx.own_changes()
    for key, entry in own.items():
        intent_id = keys.fill_intent_id(key)
        if intent_id is None:
            return ctx.reject(f"unexpected key {key} in intent account")
        if entry.new is None:
            return ctx.reject(f"fill record of {intent_id[:8]} cannot be deleted")
        old, new = keys.decode_amount(entry.old), keys.decode_amount(entry.new)
        if new <= old:
            return ctx.reject(f"fill of {intent_id[:8]} can only grow")

        if ctx.tx.code == INVALIDATE_CODE:
            raw = data.get("intent")
        else:
            raw = data.get("intents", {}).get(intent_id)
        signed = ctx.verify_intent(raw)
        if signed is None or signed.intent_id != intent_id:
            return ctx.reject(f"no valid signed intent for {intent_id[:8]}")
        intent = signed.intent
        if new > intent.give_max:
            return ctx.reject(f"fill of {intent_id[:8]} exceeds give_max {intent.give_max}")

        if ctx.tx.code == INVALIDATE_CODE:
            if not ctx.is_signed_by(intent.owner):
                return ctx.reject("invalidation requires the intent owner's signature")
            if new != intent.give_max:
                return ctx.reject("invalidation must consume the whole intent")
            continue

        if ctx.tx.code != SETTLE_CODE:
            return ctx.reject(f"fills cannot change in a {ctx.tx.code} transaction")
        if intent.is_expired(ctx.block.timestamp_ms):
            return ctx.reject(f"intent {intent_id[:8]} expired")
        matching = fills_by_id.get(intent_id, [])
        if len(matching) != 1:
            return ctx.reject(f"intent {intent_id[:8]} must appear in exactly one fill")
        fill = matching[0]
        if fill.owner != intent.owner:
            return ctx.reject(f"fill of intent {intent_id[:8]} is not paid by its owner")
        if fill.give_asset != intent.give_asset or fill.receive_asset != intent.want_asset:
            return ctx.reject(f"fill assets do not match intent {intent_id[:8]}")
        give = fill.give_amount
        if intent.allow_partial:
            if new - old != give:
                return ctx.reject(f"fill of {intent_id[:8]} grew by {new - old}, settlement gives {give}")
        elif old != 0 or new != intent.give_max or give > intent.give_max:
            return ctx.reject(f"all-or-nothing intent {intent_id[:8]} must be consumed in one fill")

    for intent_id in fills_by_id:
        if keys.fill_key(intent_id) not in own:
            return ctx.reject(f"settlement uses intent {intent_id[:8]} without recording its fill")
    return True


BUILTIN_PREDICATES = {
    VP_DEFAULT: vp_default,
    VP_USER: vp_user,
    VP_DEBIT_LIMIT: vp_debit_limit,
    VP_ACCEPT_ALL: vp_accept_all,
    VP_INTENTS: vp_intents,
}
