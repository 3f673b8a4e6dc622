"""
Transaction Validator.

Per transaction: PROPOSED -> STAGED -> ACCEPTED | REJECTED. The
transaction program runs against a fresh staged view, every touched
account's predicate judges the resulting diff, and the view is committed
only if all of them accept. A view that went stale before commit is
re-staged against the current state.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from ..config import LedgerConfig
from ..exceptions import (
    CommitmentMismatchError, MalformedError, RejectReason, RejectionError,
    SignatureInvalidError, StaleViewError, TxProgramError
)
from ..identity.crypto import verify_signature
from ..models import BlockInfo, Transaction, TxReceipt, TxStatus
from ..state.store import StagedView, StateDiff, StateStore
from ..utils import short
from ..vp.context import TxContext
from ..vp.executor import PredicateExecutor, PredicateVerdict
from ..vp.sandbox import Quota, Sandbox, SandboxStatus
from .programs import default_program_sandbox

logger = logging.getLogger(__name__)

ReceiptListener = Callable[[Transaction, TxReceipt], None]


class TransactionValidator:
    """
    Validates and commits transactions against a StateStore.

    Commit is serialized by the store; predicate evaluation for one
    transaction fans out over a thread pool.
    """

    def __init__(
        self,
        store: StateStore,
        executor: Optional[PredicateExecutor] = None,
        programs: Optional[Sandbox] = None,
        guard=None,
        config: Optional[LedgerConfig] = None,
    ):
        self.store = store
        self.config = config or LedgerConfig()
        self.executor = executor or PredicateExecutor(config=self.config)
        self.programs = programs or default_program_sandbox()
        self.guard = guard
        self._workers = ThreadPoolExecutor(
            max_workers=self.config.vp_workers, thread_name_prefix="vp-worker"
        )
        self._listeners: List[ReceiptListener] = []
        self._listeners_lock = threading.RLock()

    def add_listener(self, listener: ReceiptListener) -> None:
        """Register a callback receiving (transaction, receipt) after every validation."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def close(self) -> None:
        self._workers.shutdown(wait=True)

    @property
    def quota(self) -> Quota:
        return Quota(steps=self.config.vp_step_quota, time_ms=self.config.vp_time_quota_ms)

    def verify_signatures(self, tx: Transaction) -> FrozenSet[str]:
        """
        Verify every signature attached to ``tx``.

        Returns:
            The set of public keys (base58) that signed

        Raises:
            SignatureInvalidError: If any signature does not verify
        """
        message = tx.signing_bytes()
        signers = set()
        for entry in tx.signatures:
            if not verify_signature(entry.public_key, entry.signature, message):
                raise SignatureInvalidError(
                    f"invalid signature by key {short(entry.public_key, 10)} on tx {short(tx.tx_id)}"
                )
            signers.add(entry.public_key)
        return frozenset(signers)

    def _check_commitment(self, tx: Transaction, block: BlockInfo) -> None:
        if tx.code not in self.config.require_commitment_for:
            return
        if self.guard is None or tx.reveal is None:
            raise CommitmentMismatchError(f"{tx.code} transactions must reveal an ordered commitment")
        self.guard.check_reveal(tx, block.height)

    def stage(self, tx: Transaction, block: BlockInfo, signers: FrozenSet[str]) -> Tuple[StagedView, StateDiff, int]:
        """
        Run the transaction program against a fresh view over current state.

        Returns:
            (view, diff, steps_used); the caller owns the view

        Raises:
            RejectionError: If the program aborts, traps or exceeds its quota
        """
        if not self.programs.has_code(tx.code):
            raise MalformedError(f"unknown transaction program {tx.code!r}")
        view = self.store.stage()
        ctx = TxContext(view, tx, block, signers)
        outcome = self.programs.run(tx.code, ctx, self.quota)
        if outcome.status == SandboxStatus.ABORTED:
            self.store.discard(view)
            raise outcome.abort
        if not outcome.ok:
            self.store.discard(view)
            raise TxProgramError(f"transaction program {tx.code} failed: {outcome.status.value} {outcome.error}")
        return view, view.diff(), outcome.steps_used

    def _evaluate_one(self, address, diff, view, tx, signers, block) -> PredicateVerdict:
        try:
            return self.executor.evaluate(address, diff, view, tx, signers, block)
        except Exception as e:
            logger.error("Predicate evaluation for %s failed unexpectedly: %s", short(address, 10), e)
            return PredicateVerdict(address, False, "", f"evaluation error: {e}", RejectReason.SANDBOX_FAULT.value)

    def evaluate_predicates(
        self,
        touched: List[str],
        diff: StateDiff,
        view: StagedView,
        tx: Transaction,
        signers: FrozenSet[str],
        block: BlockInfo,
    ) -> List[PredicateVerdict]:
        """
        Evaluate every touched account's predicate.

        Returns verdicts in touched-account order. With short_circuit, the
        list may stop short after a rejection; an all-accept result always
        covers the whole touched set.
        """
        if not touched:
            return []
        short_circuit = self.config.short_circuit

        if len(touched) == 1 or self.config.vp_workers == 1:
            verdicts = []
            for address in touched:
                verdict = self._evaluate_one(address, diff, view, tx, signers, block)
                verdicts.append(verdict)
                if not verdict.accepted and short_circuit:
                    break
            return verdicts

        futures = {
            self._workers.submit(self._evaluate_one, address, diff, view, tx, signers, block): address
            for address in touched
        }
        results: Dict[str, PredicateVerdict] = {}
        try:
            for future in as_completed(futures):
                verdict = future.result()
                results[verdict.address] = verdict
                if not verdict.accepted and short_circuit:
                    for pending in futures:
                        pending.cancel()
                    break
        finally:
            # Running predicates still read the view; let them finish before it is discarded
            wait(futures)
        for future, address in futures.items():
            if address not in results and future.done() and not future.cancelled():
                results[address] = future.result()
        return [results[a] for a in touched if a in results]

    def prestage(self, tx: Transaction, block: Optional[BlockInfo] = None) -> TxReceipt:
        """
        Dry-run ``tx`` against the current state without committing.

        Used to vet candidates before they reach the ordering service; it
        never takes the commit lock.
        """
        block = block or BlockInfo(height=0, timestamp_ms=0)
        receipt = TxReceipt(tx_id=tx.tx_id, height=block.height)
        view = None
        try:
            signers = self.verify_signatures(tx)
            view, diff, steps = self.stage(tx, block, signers)
            receipt.status = TxStatus.STAGED
            touched = diff.touched_accounts()
            verdicts = self.evaluate_predicates(touched, diff, view, tx, signers, block)
            self._apply_verdicts(receipt, touched, verdicts, steps)
        except RejectionError as e:
            self._reject(receipt, e.reason.value, str(e), e.account)
        finally:
            if view is not None:
                self.store.discard(view)
        return receipt

    def validate(self, tx: Transaction, block: Optional[BlockInfo] = None) -> TxReceipt:
        """
        Validate ``tx`` and commit it if every touched predicate accepts.

        Returns:
            TxReceipt with ACCEPTED or REJECTED status and the reason

        Raises:
            StoreCorruptionError / StoreHaltedError: Fatal store failures
        """
        block = block or BlockInfo(height=0, timestamp_ms=0)
        receipt = TxReceipt(tx_id=tx.tx_id, height=block.height)
        logger.debug("Validating tx %s (%s) at height %d", short(tx.tx_id), tx.code, block.height)
        try:
            signers = self.verify_signatures(tx)
            self._check_commitment(tx, block)
            self._stage_and_commit(tx, block, signers, receipt)
        except RejectionError as e:
            self._reject(receipt, e.reason.value, str(e), e.account)

        if receipt.success:
            logger.info("Accepted tx %s (%s), touched %d accounts", short(tx.tx_id), tx.code, len(receipt.touched))
        else:
            logger.info("Rejected tx %s (%s): %s %s", short(tx.tx_id), tx.code, receipt.error_code, receipt.error)
        self._notify(tx, receipt)
        return receipt

    def _stage_and_commit(self, tx, block, signers, receipt: TxReceipt) -> None:
        for attempt in range(1, self.config.max_restage_attempts + 1):
            receipt.attempts = attempt
            view, diff, steps = self.stage(tx, block, signers)
            receipt.status = TxStatus.STAGED
            touched = diff.touched_accounts()
            try:
                verdicts = self.evaluate_predicates(touched, diff, view, tx, signers, block)
                if not self._apply_verdicts(receipt, touched, verdicts, steps):
                    return
                receipt.success = False
                receipt.status = TxStatus.STAGED
                try:
                    receipt.version = self.store.commit(view)
                except StaleViewError as e:
                    logger.debug("Tx %s went stale on attempt %d: %s", short(tx.tx_id), attempt, e)
                    continue
                receipt.success = True
                receipt.status = TxStatus.ACCEPTED
                return
            finally:
                self.store.discard(view)
        self._reject(
            receipt, RejectReason.TX_FAULT.value,
            f"state kept changing; gave up after {self.config.max_restage_attempts} attempts",
        )

    def _apply_verdicts(self, receipt: TxReceipt, touched: List[str], verdicts: List[PredicateVerdict],
                        program_steps: int) -> bool:
        """
        Record the verdicts on ``receipt``.

        Raises:
            PredicateRejectedError / SandboxFaultError: For the first rejecting account
        """
        receipt.touched = tuple(touched)
        receipt.steps_used = program_steps + sum(v.steps_used for v in verdicts)
        for verdict in verdicts:
            if not verdict.accepted:
                raise verdict.as_error()
        if len(verdicts) != len(touched):
            self._reject(receipt, RejectReason.PREDICATE_REJECTED.value, "not every touched predicate accepted")
            return False
        receipt.success = True
        receipt.status = TxStatus.ACCEPTED
        return True

    @staticmethod
    def _reject(receipt: TxReceipt, code: str, error: str, account: Optional[str] = None) -> None:
        receipt.success = False
        receipt.status = TxStatus.REJECTED
        receipt.error_code = code
        receipt.error = error
        receipt.account = account

    def _notify(self, tx: Transaction, receipt: TxReceipt) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(tx, receipt)
            except Exception as e:
                logger.error("Receipt listener failed for tx %s: %s", short(tx.tx_id), e)
