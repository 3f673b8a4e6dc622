"""
Pytest fixtures for the intentledger tests.
"""
import pytest

from intentledger.config import LedgerConfig
from intentledger.identity.crypto import Keypair
from intentledger.ledger.ordering import InMemoryOrderingService
from intentledger.models import Intent, SignedIntent, Transaction
from intentledger.node import GenesisAccount, LedgerNode
from intentledger.state import StateStore, keys
from intentledger.vp.builtin import VP_INTENTS, VP_USER, vp_spec

START_MS = 1_700_000_000_000
DAY_MS = 86_400_000


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> int:
        self.now_ms += ms
        return self.now_ms


def make_intent(
    keypair: Keypair,
    give_asset: str,
    give_max: int,
    want_asset: str,
    want_min: int,
    allow_partial: bool = False,
    created_ms: int = START_MS,
    ttl_ms: int = DAY_MS,
    nonce: int = 0,
) -> SignedIntent:
    """Build and sign an intent owned by ``keypair``."""
    intent = Intent(
        owner=keypair.address,
        give_asset=give_asset,
        give_max=give_max,
        want_asset=want_asset,
        want_min=want_min,
        allow_partial=allow_partial,
        expiry_ms=created_ms + ttl_ms,
        created_ms=created_ms,
        nonce=nonce,
    )
    return SignedIntent.create(intent, keypair)


def seed_store(store: StateStore, accounts, balances=None, vps=None) -> None:
    """Write keys, predicates and balances for ``accounts`` straight into ``store``."""
    balances = balances or {}
    vps = vps or {}
    writes = {keys.vp_key(keys.INTENT_ACCOUNT): keys.encode_value(vp_spec(VP_INTENTS))}
    for kp in accounts:
        writes[keys.pk_key(kp.address)] = keys.encode_value(kp.public_key)
        writes[keys.vp_key(kp.address)] = keys.encode_value(vps.get(kp.address, vp_spec(VP_USER)))
        for asset, amount in balances.get(kp.address, {}).items():
            writes[keys.balance_key(kp.address, asset)] = keys.encode_value(amount)
    store.commit(store.speculative_write(writes))


def transfer_tx(keypair: Keypair, target: str, asset: str, amount: int, nonce: int = 1, source=None) -> Transaction:
    tx = Transaction(
        code="transfer",
        data={"source": source or keypair.address, "target": target, "asset": asset, "amount": amount},
        submitter=keypair.address,
        nonce=nonce,
    )
    return tx.sign(keypair)


@pytest.fixture
def alice():
    return Keypair.from_seed(b"alice")


@pytest.fixture
def bob():
    return Keypair.from_seed(b"bob")


@pytest.fixture
def carol():
    return Keypair.from_seed(b"carol")


@pytest.fixture
def matcher_key():
    return Keypair.from_seed(b"matcher")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return LedgerConfig(vp_workers=2, vp_time_quota_ms=10_000)


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def node(alice, bob, carol, matcher_key, clock, config):
    """A node with alice, bob and carol holding X, Y and Z."""
    ledger = LedgerNode(
        name="n1",
        config=config,
        keypair=matcher_key,
        clock=clock,
        ordering=InMemoryOrderingService(clock=clock),
    )
    ledger.genesis([
        GenesisAccount(public_key=alice.public_key, balances={"X": 1000}),
        GenesisAccount(public_key=bob.public_key, balances={"Y": 1000}),
        GenesisAccount(public_key=carol.public_key, balances={"X": 1000, "Z": 1000}),
    ])
    yield ledger
    ledger.close()


def drain(node: LedgerNode, blocks: int = 3) -> None:
    """Process ``blocks`` blocks (commitments, then reveals, then slack)."""
    for _ in range(blocks):
        node.process_block()
