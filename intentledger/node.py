"""
LedgerNode: wires the store, validator, guard, gossip and matcher together.

A node processes blocks from its ordering service. Commitments are recorded
with the guard and their reveals are queued for the next block; transactions
go through the validator. Settlement receipts flow back into the intent pool
and from there to intent owners as status updates.
"""
import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from cachetools import LRUCache
from pydantic import BaseModel, ConfigDict, Field

from .config import LedgerConfig
from .exceptions import (
    ExpiredError, MalformedError, RejectReason, RejectionError, SignatureInvalidError
)
from .gossip.pool import InsertResult, IntentPool
from .gossip.propagator import GossipPropagator
from .gossip.transport import LocalNetwork, PeerTransport
from .guard import Commitment, CommitmentRegistry, SealedMatch, seal
from .identity.crypto import Keypair, decode_key, derive_address
from .ledger.ordering import Block, InMemoryOrderingService, OrderingService
from .ledger.validator import TransactionValidator
from .matchmaker.engine import MatchingEngine
from .matchmaker.graph import MatchSet
from .models import (
    IntentState, IntentStatus, SignedIntent, Transaction, TxReceipt
)
from .state import keys
from .state.store import StateStore
from .utils import short
from .vp.builtin import INVALIDATE_CODE, SETTLE_CODE, VP_INTENTS, VP_USER, vp_spec

logger = logging.getLogger(__name__)

StatusCallback = Callable[[IntentStatus], None]


class GenesisAccount(BaseModel):
    """Initial state of one account."""
    public_key: str
    balances: Dict[str, int] = Field(default_factory=dict)
    vp: Optional[Dict] = None

    model_config = ConfigDict(frozen=True)

    @property
    def address(self) -> str:
        return derive_address(decode_key(self.public_key))


class LedgerNode:
    """
    One ledger participant.

    Args:
        name: Peer name used for gossip
        config: Node configuration
        store: State store (defaults to an in-memory one)
        ordering: Ordering service (defaults to an in-memory FIFO)
        network: In-process gossip network to join
        transport: Explicit gossip transport (overrides ``network``)
        neighbours: Initial gossip neighbours
        keypair: Key used to sign and seal settlements this node builds
        clock: Millisecond clock for the pool, matcher and ordering
    """

    def __init__(
        self,
        name: str = "node",
        config: Optional[LedgerConfig] = None,
        store: Optional[StateStore] = None,
        ordering: Optional[OrderingService] = None,
        network: Optional[LocalNetwork] = None,
        transport: Optional[PeerTransport] = None,
        neighbours: Iterable[str] = (),
        keypair: Optional[Keypair] = None,
        clock: Optional[Callable[[], int]] = None,
        receipt_cache_size: int = 10_000,
    ):
        self.name = name
        self.config = config or LedgerConfig()
        self._clock = clock or (lambda: int(time.time() * 1000))
        self.keypair = keypair or Keypair.generate()

        self.store = store or StateStore(retention=self.config.snapshot_retention)
        self.guard = CommitmentRegistry(self.config)
        self.validator = TransactionValidator(self.store, guard=self.guard, config=self.config)
        self.ordering = ordering or InMemoryOrderingService(clock=self._clock)

        self.pool = IntentPool(self.config, clock=self._clock)
        if transport is None:
            transport = (network or LocalNetwork()).transport(name)
        self.gossip = GossipPropagator(name, self.pool, transport, neighbours, self.config)
        if network is not None:
            network.register(name, self.gossip.receive)

        self.matcher = MatchingEngine(self.pool, self.config, on_match=self._on_match, clock=self._clock)

        self.validator.add_listener(self.matcher.on_receipt)
        self.validator.add_listener(self._on_receipt)
        self.pool.subscribe(self._on_status)
        self.pool.subscribe(self.matcher.notify)

        self._receipts = LRUCache(maxsize=receipt_cache_size)
        self._pending_reveals: Dict[str, Transaction] = {}
        self._subscribers: Dict[str, List[StatusCallback]] = {}
        self._tx_nonce = itertools.count(1)
        self._lock = threading.RLock()
        self._height = 0

    @property
    def height(self) -> int:
        """Height of the last processed block."""
        return self._height

    # Genesis

    def genesis(self, accounts: Iterable[GenesisAccount]) -> int:
        """
        Write initial accounts directly into the store.

        This is the only write path that bypasses the validator. It also
        installs the predicate of the internal intent account.

        Returns:
            The committed store version
        """
        writes = {keys.vp_key(keys.INTENT_ACCOUNT): keys.encode_value(vp_spec(VP_INTENTS))}
        for account in accounts:
            if not isinstance(account, GenesisAccount):
                account = GenesisAccount.model_validate(account)
            address = account.address
            writes[keys.pk_key(address)] = keys.encode_value(account.public_key)
            writes[keys.vp_key(address)] = keys.encode_value(account.vp or vp_spec(VP_USER))
            for asset, amount in account.balances.items():
                if amount < 0:
                    raise MalformedError(f"negative genesis balance for {address}")
                writes[keys.balance_key(address, asset)] = keys.encode_value(amount)
        view = self.store.speculative_write(writes)
        version = self.store.commit(view)
        logger.info("Genesis committed with %d keys at version %d", len(writes), version)
        return version

    # Account API

    def balance(self, address: str, asset: str) -> int:
        return keys.decode_amount(self.store.read(keys.balance_key(address, asset)))

    def submit_intent(self, signed: SignedIntent) -> str:
        """
        Accept a locally submitted intent and gossip it.

        Re-submitting a known intent is a no-op.

        Returns:
            The intent id

        Raises:
            SignatureInvalidError: If the signature or owner key is invalid
            ExpiredError: If the intent is already expired
        """
        result = self.gossip.publish(signed)
        if result == InsertResult.INVALID_SIGNATURE:
            raise SignatureInvalidError(f"intent {short(signed.intent_id)} has an invalid signature",
                                        account=signed.intent.owner)
        if result == InsertResult.EXPIRED:
            raise ExpiredError(f"intent {short(signed.intent_id)} is expired", account=signed.intent.owner)
        return signed.intent_id

    def query_intent_status(self, intent_id: str) -> Optional[IntentStatus]:
        """Status of an intent this node knows about, None otherwise."""
        return self.pool.status(intent_id)

    def subscribe(self, intent_id: str, callback: StatusCallback) -> None:
        """Call ``callback`` on every status change of ``intent_id``."""
        with self._lock:
            self._subscribers.setdefault(intent_id, []).append(callback)

    def cancel_intent(self, intent_id: str, keypair: Keypair, on_ledger: bool = True) -> Optional[str]:
        """
        Cancel an intent owned by ``keypair``.

        The intent leaves the local pool at once. With ``on_ledger`` an
        ``invalidate_intent`` transaction is also submitted so no peer can
        settle it later.

        Returns:
            The invalidation transaction id, if one was submitted

        Raises:
            MalformedError: If the intent is not pooled here
            SignatureInvalidError: If ``keypair`` does not own the intent
        """
        entry = self.pool.get(intent_id)
        if entry is None:
            raise MalformedError(f"intent {short(intent_id)} is not pending on this node")
        if entry.intent.owner != keypair.address:
            raise SignatureInvalidError(f"only the owner may cancel intent {short(intent_id)}")
        self.matcher.release([intent_id])
        self.pool.cancel(intent_id)
        if not on_ledger:
            return None
        tx = Transaction(
            code=INVALIDATE_CODE,
            data={"intent": entry.signed.model_dump(mode="json")},
            submitter=keypair.address,
            nonce=next(self._tx_nonce),
        ).sign(keypair)
        return self.submit_transaction(tx)

    def submit_transaction(self, tx: Transaction) -> str:
        """Hand a transaction to the ordering service. Returns its id."""
        self.ordering.submit(tx)
        logger.debug("Submitted tx %s (%s)", short(tx.tx_id), tx.code)
        return tx.tx_id

    def submit_sealed(self, sealed: SealedMatch) -> str:
        """Order a commitment now; its reveal follows once the commitment is ordered."""
        commitment = sealed.commitment
        with self._lock:
            self._pending_reveals[commitment.commitment_id] = sealed.transaction
        self.ordering.submit(commitment)
        return commitment.commitment_id

    def receipt(self, tx_id: str) -> Optional[TxReceipt]:
        with self._lock:
            return self._receipts.get(tx_id)

    # Block processing

    def process_block(self) -> Optional[Block]:
        """
        Pull one block from the ordering service and apply it.

        Returns:
            The processed block, or None when there was nothing to process
        """
        block = self.ordering.next_block()
        if block is None:
            return None
        info = block.info
        reveals: List[Transaction] = []
        for item in block.items:
            if isinstance(item, Commitment):
                reveal = self._record_commitment(item, block.height)
                if reveal is not None:
                    reveals.append(reveal)
            else:
                receipt = self.validator.validate(item, info)
                with self._lock:
                    self._receipts[receipt.tx_id] = receipt
        self._height = block.height
        self.pool.expire(block.timestamp_ms)
        self.guard.prune(block.height)
        for tx in reveals:
            self.submit_transaction(tx)
        return block

    def _record_commitment(self, commitment: Commitment, height: int) -> Optional[Transaction]:
        try:
            self.guard.record(commitment, height)
        except RejectionError as e:
            logger.warning("Dropped commitment %s: %s", short(commitment.digest), e)
            with self._lock:
                tx = self._pending_reveals.pop(commitment.commitment_id, None)
            if tx is not None:
                self.matcher.on_receipt(tx, TxReceipt(tx_id=tx.tx_id, error=str(e),
                                                      error_code=e.reason.value))
            return None
        with self._lock:
            return self._pending_reveals.pop(commitment.commitment_id, None)

    # Matching

    def run_matching(self) -> List[MatchSet]:
        """Run one matching round; matches are sealed and their commitments ordered."""
        return self.matcher.run_once()

    def _on_match(self, match: MatchSet) -> bool:
        tx = match.to_transaction(self.keypair.address, nonce=next(self._tx_nonce)).sign(self.keypair)
        trial = self.validator.prestage(tx)
        if not trial.success:
            logger.info("Dropping candidate %s: %s %s", short(tx.tx_id), trial.error_code, trial.error)
            if trial.error_code == RejectReason.STALE_MATCH.value:
                self._sync_fills(match.intent_ids)
            return False
        if tx.code in self.config.require_commitment_for:
            self.submit_sealed(seal(tx, self.keypair, self._height))
        else:
            self.submit_transaction(tx)
        return True

    # Receipts and status updates

    def _sync_fills(self, intent_ids: Iterable[str]) -> None:
        for intent_id in intent_ids:
            entry = self.pool.get(intent_id)
            if entry is None:
                continue
            filled = keys.decode_amount(self.store.read(keys.fill_key(intent_id)))
            if filled > entry.filled:
                self.pool.record_fill(intent_id, filled - entry.filled, total_filled=filled)

    def _on_receipt(self, tx: Transaction, receipt: TxReceipt) -> None:
        if tx.code == SETTLE_CODE:
            ids = [raw.get("intent_id") for raw in tx.data.get("fills", []) if isinstance(raw, dict)]
            self._sync_fills(i for i in ids if i)
        elif tx.code == INVALIDATE_CODE and receipt.success:
            intent_id = SignedIntent.model_validate(tx.data["intent"]).intent_id
            self.pool.remove(intent_id, IntentState.CANCELLED, "invalidated on ledger")

    def _on_status(self, status: IntentStatus) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(status.intent_id, ()))
        for callback in callbacks:
            try:
                callback(status)
            except Exception as e:
                logger.error("Status subscriber for %s failed: %s", short(status.intent_id), e)

    # Lifecycle

    def start(self) -> None:
        """Start the gossip worker and the background matcher."""
        self.gossip.start()
        self.matcher.start()

    def stop(self) -> None:
        self.matcher.stop()
        self.gossip.stop()

    def close(self) -> None:
        self.stop()
        self.validator.close()
        self.gossip.transport.close()
        self.store.backend.close()
