"""
Front-Running Guard: commit-reveal sealing of settlement transactions.

A settlement is first ordered as an opaque commitment
``sha256(submitter || transaction body || nonce)``. Only once the
commitment is ordered, in an earlier block, is the revealing transaction
submitted; observers therefore cannot build a competing settlement from
its contents ahead of it.
"""
import hashlib
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import nacl.utils
from pydantic import BaseModel, ConfigDict, Field

from .config import LedgerConfig
from .exceptions import (
    CommitmentMismatchError, ExpiredError, MalformedError, SignatureInvalidError
)
from .identity.crypto import Keypair, decode_key, derive_address, verify_signature
from .models import Reveal, Transaction
from .utils import canonical_json, short

logger = logging.getLogger(__name__)

NONCE_BYTES = 32


def commitment_digest(submitter: str, body: bytes, nonce: str) -> str:
    """
    Digest binding a submitter to a transaction body.

    Raises:
        ValueError: If ``nonce`` is not hex
    """
    h = hashlib.sha256()
    h.update(submitter.encode("utf-8"))
    h.update(b"\x00")
    h.update(body)
    h.update(b"\x00")
    h.update(bytes.fromhex(nonce))
    return h.hexdigest()


class Commitment(BaseModel):
    """Signed, content-free announcement of a future settlement."""
    digest: str
    submitter: str
    public_key: str
    created_height: int = Field(0, ge=0)
    signature: str

    model_config = ConfigDict(frozen=True)

    @property
    def commitment_id(self) -> str:
        return self.digest

    def signing_bytes(self) -> bytes:
        return canonical_json({
            "digest": self.digest,
            "submitter": self.submitter,
            "created_height": self.created_height,
        })

    def verify(self) -> bool:
        """Check the signature and that the key belongs to the submitter."""
        try:
            if derive_address(decode_key(self.public_key)) != self.submitter:
                return False
        except ValueError:
            return False
        return verify_signature(self.public_key, self.signature, self.signing_bytes())


@dataclass(frozen=True)
class SealedMatch:
    """A commitment and the transaction that will later reveal it."""
    commitment: Commitment
    transaction: Transaction


def seal(tx: Transaction, keypair: Keypair, height: int = 0) -> SealedMatch:
    """
    Seal ``tx`` behind a fresh commitment.

    Args:
        tx: Transaction without a reveal; its submitter must be ``keypair``
        keypair: Submitter key signing the commitment
        height: Current ledger height, recorded in the commitment

    Returns:
        SealedMatch whose transaction carries the matching reveal
    """
    if tx.submitter != keypair.address:
        raise ValueError("Transaction submitter does not match the sealing key")
    if tx.reveal is not None:
        raise ValueError("Transaction is already sealed")
    nonce = nacl.utils.random(NONCE_BYTES).hex()
    digest = commitment_digest(keypair.address, tx.signing_bytes(), nonce)
    unsigned = Commitment(
        digest=digest,
        submitter=keypair.address,
        public_key=keypair.public_key,
        created_height=height,
        signature="",
    )
    commitment = unsigned.model_copy(update={"signature": keypair.sign(unsigned.signing_bytes())})
    revealed = tx.with_reveal(Reveal(commitment_id=digest, nonce=nonce))
    return SealedMatch(commitment=commitment, transaction=revealed)


class CommitmentState(str, Enum):
    ORDERED = "ORDERED"
    CONSUMED = "CONSUMED"
    BURNED = "BURNED"
    EXPIRED = "EXPIRED"


@dataclass
class CommitmentRecord:
    commitment: Commitment
    height: int
    state: CommitmentState = CommitmentState.ORDERED


class CommitmentRegistry:
    """
    Ordered commitments and their reveal state.

    A commitment is usable from ``reveal_delay_blocks`` after the block it
    was ordered in until ``commitment_ttl_blocks`` after it. It is consumed
    by the first matching reveal and burned by a mismatching one.
    """

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or LedgerConfig()
        self._records: Dict[str, CommitmentRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, commitment_id: str) -> Optional[CommitmentRecord]:
        with self._lock:
            return self._records.get(commitment_id)

    def record(self, commitment: Commitment, height: int) -> CommitmentRecord:
        """
        Record a commitment ordered at ``height``.

        Raises:
            SignatureInvalidError: If the commitment is not signed by its submitter
            MalformedError: If the commitment was already recorded
        """
        if not commitment.verify():
            raise SignatureInvalidError(
                f"commitment {short(commitment.digest)} is not signed by its submitter",
                account=commitment.submitter,
            )
        with self._lock:
            if commitment.commitment_id in self._records:
                raise MalformedError(f"commitment {short(commitment.digest)} already ordered")
            record = CommitmentRecord(commitment=commitment, height=height)
            self._records[commitment.commitment_id] = record
        logger.debug("Recorded commitment %s at height %d", short(commitment.digest), height)
        return record

    def check_reveal(self, tx: Transaction, height: int) -> CommitmentRecord:
        """
        Check that ``tx`` opens a usable commitment and consume it.

        Raises:
            CommitmentMismatchError: Unknown, foreign, premature, consumed,
                burned or mismatching reveal (a mismatch burns the commitment)
            ExpiredError: If the commitment is past its TTL
        """
        reveal = tx.reveal
        if reveal is None:
            raise CommitmentMismatchError("transaction carries no reveal", account=tx.submitter)
        with self._lock:
            record = self._records.get(reveal.commitment_id)
            if record is None:
                raise CommitmentMismatchError(
                    f"no ordered commitment {short(reveal.commitment_id)}", account=tx.submitter
                )
            commitment = record.commitment
            if commitment.submitter != tx.submitter:
                raise CommitmentMismatchError(
                    f"commitment {short(commitment.digest)} belongs to another submitter",
                    account=tx.submitter,
                )
            if record.state == CommitmentState.CONSUMED:
                raise CommitmentMismatchError(f"commitment {short(commitment.digest)} was already revealed")
            if record.state == CommitmentState.BURNED:
                raise CommitmentMismatchError(f"commitment {short(commitment.digest)} was burned")
            age = height - record.height
            if record.state == CommitmentState.EXPIRED or age > self.config.commitment_ttl_blocks:
                record.state = CommitmentState.EXPIRED
                raise ExpiredError(f"commitment {short(commitment.digest)} expired", account=tx.submitter)
            if age < self.config.reveal_delay_blocks:
                raise CommitmentMismatchError(
                    f"commitment {short(commitment.digest)} cannot be revealed before height "
                    f"{record.height + self.config.reveal_delay_blocks}",
                    account=tx.submitter,
                )
            try:
                digest = commitment_digest(tx.submitter, tx.signing_bytes(), reveal.nonce)
            except ValueError:
                digest = None
            if digest != commitment.digest:
                record.state = CommitmentState.BURNED
                logger.warning("Reveal does not match commitment %s; burned", short(commitment.digest))
                raise CommitmentMismatchError(
                    f"revealed content does not match commitment {short(commitment.digest)}",
                    account=tx.submitter,
                )
            record.state = CommitmentState.CONSUMED
        logger.debug("Commitment %s revealed at height %d", short(commitment.digest), height)
        return record

    def prune(self, height: int) -> int:
        """Forget commitments older than the TTL. Returns how many were dropped."""
        with self._lock:
            stale = [
                cid for cid, record in self._records.items()
                if height - record.height > self.config.commitment_ttl_blocks
            ]
            for cid in stale:
                del self._records[cid]
        return len(stale)
