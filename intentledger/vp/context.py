"""
Host interfaces exposed to sandboxed predicates and transaction programs.

Both contexts only reach state through a StagedView, and every call is
charged to the run's GasMeter.
"""
import logging
from typing import Any, Dict, FrozenSet, Iterator, Optional, Tuple

from pydantic import ValidationError

from ..exceptions import MalformedError
from ..identity.crypto import decode_key, derive_address
from ..models import BlockInfo, SignedIntent, Transaction
from ..state import keys
from ..state.store import StagedView, StateDiff
from .sandbox import MeteredContext

logger = logging.getLogger(__name__)


class TxContext(MeteredContext):
    """Read/write access for a transaction program running against a staged view."""

    def __init__(self, view: StagedView, tx: Transaction, block: BlockInfo,
                 signers: FrozenSet[str] = frozenset()):
        self._view = view
        self.tx = tx
        self.block = block
        self.signers = signers

    @property
    def data(self) -> Dict[str, Any]:
        return self.tx.data

    def read(self, key: str) -> Optional[bytes]:
        self._charge()
        return self._view.read(key)

    def read_value(self, key: str, default: Any = None) -> Any:
        return keys.decode_value(self.read(key), default)

    def read_amount(self, key: str) -> int:
        return keys.decode_amount(self.read(key))

    def _check_key(self, key: str) -> None:
        if keys.owner_of(key) is None:
            raise MalformedError(f"key {key!r} does not belong to any account")

    def write(self, key: str, value: bytes) -> None:
        self._charge()
        self._check_key(key)
        self._view.write(key, value)

    def write_value(self, key: str, value: Any) -> None:
        self.write(key, keys.encode_value(value))

    def delete(self, key: str) -> None:
        self._charge()
        self._check_key(key)
        self._view.delete(key)

    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        for item in self._view.iter_prefix(prefix):
            self._charge()
            yield item


class PredicateContext(MeteredContext):
    """
    Read-only inputs of one validity predicate run.

    Exposes the account's pre-state and post-state, the full diff (so a
    predicate can inspect changes to other accounts), the transaction and
    the predicate's own parameters.
    """

    def __init__(
        self,
        address: str,
        view: StagedView,
        diff: StateDiff,
        tx: Transaction,
        signers: FrozenSet[str],
        block: BlockInfo,
        params: Optional[Dict[str, Any]] = None,
    ):
        self.address = address
        self._view = view
        self.diff = diff
        self.tx = tx
        self.signers = signers
        self.block = block
        self.params = params or {}
        self.rejection_reason = ""

    # state access

    def read_pre(self, key: str) -> Optional[bytes]:
        self._charge()
        return self._view.pre_read(key)

    def read_post(self, key: str) -> Optional[bytes]:
        self._charge()
        return self._view.read(key)

    def own_changes(self) -> StateDiff:
        self._charge(len(self.diff))
        return self.diff.for_account(self.address)

    def balance_changes(self, address: Optional[str] = None) -> Dict[str, int]:
        """Net change per asset of ``address``'s balances (defaults to this account)."""
        address = address or self.address
        changes: Dict[str, int] = {}
        for key, entry in self.diff.items():
            self._charge()
            asset = keys.balance_asset(key, address)
            if asset is None:
                continue
            changes[asset] = keys.decode_amount(entry.new) - keys.decode_amount(entry.old)
        return changes

    # authorization

    def is_signed_by(self, address: str) -> bool:
        """
        True if the transaction carries a valid signature of ``address``.

        The stored public key of the account (pre-state) wins; accounts
        without one are self-certifying through their derived address.
        """
        self._charge()
        stored = keys.decode_value(self._view.pre_read(keys.pk_key(address)))
        if stored is not None:
            return stored in self.signers
        for public_key in self.signers:
            try:
                if derive_address(decode_key(public_key)) == address:
                    return True
            except ValueError:
                continue
        return False

    def verify_intent(self, raw: Any) -> Optional[SignedIntent]:
        """
        Parse and check a signed intent carried in the transaction data.

        Returns:
            The SignedIntent when its signature is valid and made with the
            owner's key, otherwise None
        """
        self._charge(10)
        try:
            signed = SignedIntent.model_validate(raw)
        except ValidationError:
            return None
        if not signed.signature_valid():
            return None
        owner = signed.intent.owner
        stored = keys.decode_value(self._view.pre_read(keys.pk_key(owner)))
        if stored is not None:
            return signed if stored == signed.public_key else None
        return signed if signed.owner_key_matches() else None

    def reject(self, reason: str) -> bool:
        """Record a rejection reason and return False, for ``return ctx.reject(...)``."""
        self.rejection_reason = reason
        return False
