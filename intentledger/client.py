"""
Account-facing client for a LedgerNode.
"""
import logging
import time
from typing import Callable, Dict, Optional

from .identity.crypto import Keypair
from .ledger.programs import TRANSFER_CODE, UPDATE_VP_CODE
from .models import Intent, IntentStatus, SignedIntent, Transaction, TxReceipt
from .node import LedgerNode

logger = logging.getLogger(__name__)


class AccountClient:
    """
    Signs intents and transactions for one account and submits them to a node.

    Example:
        client = AccountClient(node, Keypair.generate())
        intent_id = client.submit_intent("X", 100, "Y", 90, ttl_ms=60_000)
    """

    def __init__(self, node: LedgerNode, keypair: Keypair, clock: Optional[Callable[[], int]] = None):
        self.node = node
        self.keypair = keypair
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._nonce = 0

    @property
    def address(self) -> str:
        return self.keypair.address

    def _next_nonce(self) -> int:
        self._nonce += 1
        return self._nonce

    def balance(self, asset: str) -> int:
        return self.node.balance(self.address, asset)

    def sign_intent(
        self,
        give_asset: str,
        give_max: int,
        want_asset: str,
        want_min: int,
        ttl_ms: int = 3_600_000,
        allow_partial: bool = False,
        created_ms: Optional[int] = None,
    ) -> SignedIntent:
        """Build and sign an intent without submitting it."""
        created = self._clock() if created_ms is None else created_ms
        intent = Intent(
            owner=self.address,
            give_asset=give_asset,
            give_max=give_max,
            want_asset=want_asset,
            want_min=want_min,
            allow_partial=allow_partial,
            expiry_ms=created + ttl_ms,
            created_ms=created,
            nonce=self._next_nonce(),
        )
        return SignedIntent.create(intent, self.keypair)

    def submit_intent(self, give_asset: str, give_max: int, want_asset: str, want_min: int, **kwargs) -> str:
        """
        Sign and submit "give up to ``give_max`` of ``give_asset`` for at
        least ``want_min`` of ``want_asset``".

        Returns:
            The intent id
        """
        signed = self.sign_intent(give_asset, give_max, want_asset, want_min, **kwargs)
        return self.node.submit_intent(signed)

    def query_intent_status(self, intent_id: str) -> Optional[IntentStatus]:
        return self.node.query_intent_status(intent_id)

    def subscribe(self, intent_id: str, callback: Callable[[IntentStatus], None]) -> None:
        self.node.subscribe(intent_id, callback)

    def cancel_intent(self, intent_id: str, on_ledger: bool = True) -> Optional[str]:
        return self.node.cancel_intent(intent_id, self.keypair, on_ledger=on_ledger)

    def send(self, code: str, data: Dict) -> str:
        """Sign a transaction running program ``code`` and submit it. Returns the tx id."""
        tx = Transaction(code=code, data=data, submitter=self.address, nonce=self._next_nonce())
        return self.node.submit_transaction(tx.sign(self.keypair))

    def transfer(self, target: str, asset: str, amount: int) -> str:
        return self.send(TRANSFER_CODE, {
            "source": self.address, "target": target, "asset": asset, "amount": amount,
        })

    def update_vp(self, vp: Dict) -> str:
        return self.send(UPDATE_VP_CODE, {"address": self.address, "vp": vp})

    def receipt(self, tx_id: str) -> Optional[TxReceipt]:
        return self.node.receipt(tx_id)
