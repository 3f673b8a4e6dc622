"""
Data models for intentledger.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .identity.crypto import Keypair, decode_key, derive_address, verify_signature
from .utils import canonical_json, ceil_div, sha256_hex


def _check_name(value: str, what: str) -> str:
    if not value or "/" in value or value.startswith("#"):
        raise ValueError(f"{what} must be non-empty and must not contain '/' or start with '#'")
    return value


class Intent(BaseModel):
    """
    A partially specified trade: give up to ``give_max`` of ``give_asset``
    for at least ``want_min`` of ``want_asset``.

    Without ``allow_partial`` the intent is settled in one fill that must
    deliver ``want_min``. With it, every fill giving ``g`` must deliver at
    least ``ceil(g * want_min / give_max)``.
    """
    owner: str
    give_asset: str
    give_max: int = Field(..., gt=0)
    want_asset: str
    want_min: int = Field(..., gt=0)
    allow_partial: bool = False
    expiry_ms: int = Field(..., gt=0)
    created_ms: int = Field(..., ge=0)
    nonce: int = Field(0, ge=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("owner")
    @classmethod
    def validate_owner(cls, v: str) -> str:
        return _check_name(v, "owner")

    @field_validator("give_asset", "want_asset")
    @classmethod
    def validate_asset(cls, v: str) -> str:
        return _check_name(v, "asset")

    @model_validator(mode="after")
    def validate_distinct_assets(self) -> "Intent":
        if self.give_asset == self.want_asset:
            raise ValueError("give_asset and want_asset must differ")
        if self.expiry_ms <= self.created_ms:
            raise ValueError("expiry_ms must be after created_ms")
        return self

    def canonical_bytes(self) -> bytes:
        return canonical_json(self.model_dump())

    @property
    def intent_id(self) -> str:
        return sha256_hex(self.canonical_bytes())

    def min_receive(self, give_amount: int) -> int:
        """Smallest amount of ``want_asset`` acceptable in exchange for ``give_amount``."""
        proportional = ceil_div(give_amount * self.want_min, self.give_max)
        if self.allow_partial:
            return proportional
        return max(proportional, self.want_min)

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expiry_ms


class SignedIntent(BaseModel):
    """An intent together with its owner's Ed25519 signature."""
    intent: Intent
    public_key: str
    signature: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def create(cls, intent: Intent, keypair: Keypair) -> "SignedIntent":
        if keypair.address != intent.owner:
            raise ValueError("Intent owner does not match the signing key")
        return cls(
            intent=intent,
            public_key=keypair.public_key,
            signature=keypair.sign(intent.canonical_bytes()),
        )

    @property
    def intent_id(self) -> str:
        return self.intent.intent_id

    def signature_valid(self) -> bool:
        """Check the signature over the canonical intent bytes."""
        return verify_signature(self.public_key, self.signature, self.intent.canonical_bytes())

    def owner_key_matches(self) -> bool:
        """Check that the signing key is the self-certifying key of the owner address."""
        try:
            return derive_address(decode_key(self.public_key)) == self.intent.owner
        except ValueError:
            return False

    def verify(self) -> bool:
        return self.owner_key_matches() and self.signature_valid()


class Fill(BaseModel):
    """
    One leg of a settlement: ``owner`` gives ``give_amount`` of
    ``give_asset`` to ``recipient`` under intent ``intent_id`` and is owed
    ``receive_amount`` of ``receive_asset`` by the rest of the ring.
    """
    intent_id: str
    owner: str
    give_asset: str
    give_amount: int = Field(..., gt=0)
    receive_asset: str
    receive_amount: int = Field(..., gt=0)
    recipient: str

    model_config = ConfigDict(frozen=True)


class SignatureEntry(BaseModel):
    public_key: str
    signature: str

    model_config = ConfigDict(frozen=True)


class Reveal(BaseModel):
    """Opening of a front-running commitment attached to a transaction."""
    commitment_id: str
    nonce: str

    model_config = ConfigDict(frozen=True)


class Transaction(BaseModel):
    """
    A transaction: a program name plus its input data.

    The program runs against a staged view to produce the writes; the
    signatures cover ``signing_bytes`` (everything except the reveal and
    the signatures themselves).
    """
    code: str
    data: Dict[str, Any] = Field(default_factory=dict)
    submitter: Optional[str] = None
    nonce: int = 0
    reveal: Optional[Reveal] = None
    signatures: Tuple[SignatureEntry, ...] = ()

    model_config = ConfigDict(frozen=True)

    def body(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "data": self.data,
            "submitter": self.submitter,
            "nonce": self.nonce,
        }

    def signing_bytes(self) -> bytes:
        return canonical_json(self.body())

    @property
    def tx_id(self) -> str:
        return sha256_hex(canonical_json(self.model_dump(mode="json")))

    def sign(self, *keypairs: Keypair) -> "Transaction":
        """Return a copy with signatures from ``keypairs`` appended."""
        message = self.signing_bytes()
        entries = tuple(
            SignatureEntry(public_key=kp.public_key, signature=kp.sign(message))
            for kp in keypairs
        )
        return self.model_copy(update={"signatures": self.signatures + entries})

    def with_reveal(self, reveal: Reveal) -> "Transaction":
        return self.model_copy(update={"reveal": reveal})


@dataclass(frozen=True)
class BlockInfo:
    """Height and timestamp of the block a transaction is validated in."""
    height: int
    timestamp_ms: int


class TxStatus(str, Enum):
    """Lifecycle of a transaction inside the validator."""
    PROPOSED = "PROPOSED"
    STAGED = "STAGED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class TxReceipt:
    """
    Outcome of validating one transaction.

    ``error_code`` is a RejectReason value; it stays UNKNOWN_UNSPECIFIED for
    accepted transactions.
    """
    tx_id: str
    status: TxStatus = TxStatus.PROPOSED
    success: bool = False
    error: str = ""
    error_code: str = "UNKNOWN_UNSPECIFIED"
    account: Optional[str] = None
    height: Optional[int] = None
    version: Optional[int] = None
    steps_used: int = 0
    touched: Tuple[str, ...] = ()
    attempts: int = 0

    @classmethod
    def validate(cls, receipt: "TxReceipt") -> bool:
        """
        Validate that a TxReceipt has consistent success and error_code values.

        Returns:
            True if valid, raises ValueError otherwise
        """
        if receipt.success and receipt.error_code != "UNKNOWN_UNSPECIFIED":
            raise ValueError(f"Invalid receipt: success=True with error code {receipt.error_code}")
        if receipt.success != (receipt.status == TxStatus.ACCEPTED):
            raise ValueError(f"Invalid receipt: success={receipt.success} with status {receipt.status}")
        return True


class IntentState(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class IntentStatus:
    """Status reported to intent owners; ``remaining`` is the unfilled give quantity."""
    intent_id: str
    state: IntentState
    remaining: int = 0
    reason: str = ""
