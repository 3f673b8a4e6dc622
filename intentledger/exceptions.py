"""
Exceptions and rejection codes for intentledger.
"""
from enum import Enum
from typing import Optional


class RejectReason(str, Enum):
    """
    Rejection codes reported in transaction receipts and status updates.

    Values are stable strings so they can travel over the gossip wire and
    be compared against plain text in logs.
    """
    UNKNOWN_UNSPECIFIED = "UNKNOWN_UNSPECIFIED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    EXPIRED = "EXPIRED"
    PREDICATE_REJECTED = "PREDICATE_REJECTED"
    SANDBOX_FAULT = "SANDBOX_FAULT"
    STALE_MATCH = "STALE_MATCH"
    COMMITMENT_MISMATCH = "COMMITMENT_MISMATCH"
    TX_FAULT = "TX_FAULT"
    MALFORMED = "MALFORMED"


class IntentLedgerError(Exception):
    """Base exception for all intentledger errors."""
    pass


class RejectionError(IntentLedgerError):
    """Base class for local, non-fatal rejections that carry a reason code."""

    reason = RejectReason.UNKNOWN_UNSPECIFIED

    def __init__(self, message: str, account: Optional[str] = None):
        self.account = account
        super().__init__(message)


class SignatureInvalidError(RejectionError):
    """Raised when an intent, commitment or transaction fails signature verification."""
    reason = RejectReason.SIGNATURE_INVALID


class ExpiredError(RejectionError):
    """Raised when an intent or commitment is past its validity window."""
    reason = RejectReason.EXPIRED


class PredicateRejectedError(RejectionError):
    """Raised when an account's validity predicate rejects a diff."""
    reason = RejectReason.PREDICATE_REJECTED

    def __init__(self, account: str, predicate_reason: str = ""):
        self.predicate_reason = predicate_reason
        super().__init__(
            f"Predicate of {account} rejected the transaction: {predicate_reason}",
            account=account,
        )


class SandboxFaultError(RejectionError):
    """Raised when sandboxed code exceeds its quota or traps."""
    reason = RejectReason.SANDBOX_FAULT


class StaleMatchError(RejectionError):
    """Raised when a settlement refers to an intent consumed by an earlier transaction."""
    reason = RejectReason.STALE_MATCH


class CommitmentMismatchError(RejectionError):
    """Raised when a reveal does not match an ordered commitment."""
    reason = RejectReason.COMMITMENT_MISMATCH


class TxProgramError(RejectionError):
    """Raised by transaction programs when their input cannot be applied."""
    reason = RejectReason.TX_FAULT


class MalformedError(RejectionError):
    """Raised when a message or transaction is structurally invalid."""
    reason = RejectReason.MALFORMED


class StoreError(IntentLedgerError):
    """Base class for State Store errors."""
    pass


class StaleViewError(StoreError):
    """Raised when committing a staged view whose base snapshot is no longer current."""
    pass


class SnapshotExpiredError(StoreError):
    """Raised when a staged view reads a snapshot older than the retention window."""
    pass


class InvalidViewError(StoreError):
    """Raised when using a staged view handle that was already committed or discarded."""
    pass


class StoreCorruptionError(StoreError):
    """Raised when an atomic batch commit fails. Fatal: the store halts."""
    pass


class StoreHaltedError(StoreError):
    """Raised when committing to a store halted after corruption."""
    pass


class ConfigError(IntentLedgerError):
    """Raised when configuration values are missing or invalid."""
    pass


class TransportError(IntentLedgerError):
    """Raised when a peer transport cannot deliver a gossip message."""
    pass
