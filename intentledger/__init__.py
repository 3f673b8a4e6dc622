"""
intentledger: a validity-predicate ledger with intent gossip, ring matching
and commit-reveal settlement.
"""
from .version import __version__
from .config import LedgerConfig
from .exceptions import (
    IntentLedgerError, RejectReason, RejectionError, SignatureInvalidError, ExpiredError,
    PredicateRejectedError, SandboxFaultError, StaleMatchError, CommitmentMismatchError,
    TxProgramError, MalformedError, StoreError, StaleViewError, SnapshotExpiredError,
    InvalidViewError, StoreCorruptionError, StoreHaltedError, ConfigError, TransportError
)
from .identity import Keypair
from .models import (
    Intent, SignedIntent, Fill, Transaction, Reveal, BlockInfo, TxStatus, TxReceipt,
    IntentState, IntentStatus
)
from .state import StateStore, MemoryBackend, JsonFileBackend
from .vp import PredicateExecutor, LocalSandbox, vp_spec
from .ledger import TransactionValidator, InMemoryOrderingService
from .gossip import IntentPool, GossipPropagator, LocalNetwork, HttpPeerTransport
from .matchmaker import MatchingEngine, MatchSet
from .guard import Commitment, CommitmentRegistry, seal
from .node import LedgerNode, GenesisAccount
from .client import AccountClient

__all__ = [
    "__version__",
    "LedgerConfig",
    "IntentLedgerError", "RejectReason", "RejectionError", "SignatureInvalidError", "ExpiredError",
    "PredicateRejectedError", "SandboxFaultError", "StaleMatchError", "CommitmentMismatchError",
    "TxProgramError", "MalformedError", "StoreError", "StaleViewError", "SnapshotExpiredError",
    "InvalidViewError", "StoreCorruptionError", "StoreHaltedError", "ConfigError", "TransportError",
    "Keypair",
    "Intent", "SignedIntent", "Fill", "Transaction", "Reveal", "BlockInfo", "TxStatus", "TxReceipt",
    "IntentState", "IntentStatus",
    "StateStore", "MemoryBackend", "JsonFileBackend",
    "PredicateExecutor", "LocalSandbox", "vp_spec",
    "TransactionValidator", "InMemoryOrderingService",
    "IntentPool", "GossipPropagator", "LocalNetwork", "HttpPeerTransport",
    "MatchingEngine", "MatchSet",
    "Commitment", "CommitmentRegistry", "seal",
    "LedgerNode", "GenesisAccount",
    "AccountClient",
]
