"""
Replays JSON traces of tagged steps against a live LedgerNode.

A trace is a list of steps such as ``{"tag": "transfer", "from": "alice",
"to": "bob", "asset": "X", "amount": 5}``. Step functions are registered per
tag; a sequence is a named list of steps that expands in place. After every
step all invariants must hold and every state invariant must return the
value it had after ``init``.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from intentledger.config import LedgerConfig
from intentledger.identity.crypto import Keypair
from intentledger.ledger.ordering import InMemoryOrderingService
from intentledger.models import Intent, IntentState, SignedIntent, Transaction
from intentledger.node import GenesisAccount, LedgerNode
from intentledger.state import keys

START_MS = 1_700_000_000_000


@dataclass
class TraceState:
    """Everything a step may look at or change."""
    node: Optional[LedgerNode] = None
    now_ms: int = START_MS
    accounts: Dict[str, Keypair] = field(default_factory=dict)
    assets: List[str] = field(default_factory=list)
    intents: Dict[str, SignedIntent] = field(default_factory=dict)
    txs: Dict[str, str] = field(default_factory=dict)
    nonce: int = 0

    def clock(self) -> int:
        return self.now_ms

    def next_nonce(self) -> int:
        self.nonce += 1
        return self.nonce

    def address(self, name: str) -> str:
        return self.accounts[name].address


Step = Callable[[TraceState, Dict[str, Any]], None]


class TraceError(AssertionError):
    """A step or invariant failed; carries the step index."""


class Reactor:
    def __init__(self):
        self._steps: Dict[str, Step] = {}
        self._sequences: Dict[str, List[Dict[str, Any]]] = {}
        self._invariants: Dict[str, Callable[[TraceState], bool]] = {}
        self._state_invariants: Dict[str, Callable[[TraceState], Any]] = {}

    def step(self, tag: str):
        def register(fn: Step) -> Step:
            self._steps[tag] = fn
            return fn
        return register

    def sequence(self, name: str, steps: List[Dict[str, Any]]) -> None:
        self._sequences[name] = steps

    def invariant(self, name: str):
        def register(fn):
            self._invariants[name] = fn
            return fn
        return register

    def state_invariant(self, name: str):
        def register(fn):
            self._state_invariants[name] = fn
            return fn
        return register

    def _expand(self, trace: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        expanded = []
        for item in trace:
            if item["tag"] in self._sequences:
                expanded.extend(self._expand(self._sequences[item["tag"]]))
            else:
                expanded.append(item)
        return expanded

    def run(self, trace: List[Dict[str, Any]], state: Optional[TraceState] = None) -> TraceState:
        state = state or TraceState()
        baseline: Dict[str, Any] = {}
        try:
            for index, item in enumerate(self._expand(trace)):
                tag = item["tag"]
                if tag not in self._steps:
                    raise TraceError(f"step {index}: no step function for tag {tag!r}")
                self._steps[tag](state, item)
                if state.node is None:
                    continue
                for name, check in self._invariants.items():
                    if not check(state):
                        raise TraceError(f"step {index} ({tag}): invariant {name} violated")
                for name, fn in self._state_invariants.items():
                    value = fn(state)
                    if name not in baseline:
                        baseline[name] = value
                    elif value != baseline[name]:
                        raise TraceError(
                            f"step {index} ({tag}): {name} changed from {baseline[name]!r} to {value!r}"
                        )
        finally:
            if state.node is not None:
                state.node.close()
        return state

    def run_file(self, path: str) -> TraceState:
        with open(path, "r", encoding="utf-8") as f:
            return self.run(json.load(f))


def ledger_reactor() -> Reactor:
    """A Reactor with step functions for the ledger node."""
    reactor = Reactor()

    @reactor.step("init")
    def init(state: TraceState, item):
        config = LedgerConfig(vp_workers=2, vp_time_quota_ms=10_000)
        node = LedgerNode(
            name="trace", config=config, clock=state.clock,
            keypair=Keypair.from_seed(b"trace-matcher"),
            ordering=InMemoryOrderingService(clock=state.clock),
        )
        genesis = []
        for name, balances in item["accounts"].items():
            kp = Keypair.from_seed(name.encode("utf-8"))
            state.accounts[name] = kp
            genesis.append(GenesisAccount(public_key=kp.public_key, balances=balances))
            for asset in balances:
                if asset not in state.assets:
                    state.assets.append(asset)
        node.genesis(genesis)
        state.node = node

    @reactor.step("transfer")
    def transfer(state: TraceState, item):
        kp = state.accounts[item["from"]]
        tx = Transaction(
            code="transfer",
            data={"source": kp.address, "target": state.address(item["to"]),
                  "asset": item["asset"], "amount": item["amount"]},
            submitter=kp.address,
            nonce=state.next_nonce(),
        ).sign(kp)
        state.txs[item.get("name", tx.tx_id)] = state.node.submit_transaction(tx)

    @reactor.step("submit_intent")
    def submit_intent(state: TraceState, item):
        kp = state.accounts[item["owner"]]
        intent = Intent(
            owner=kp.address,
            give_asset=item["give"],
            give_max=item["give_max"],
            want_asset=item["want"],
            want_min=item["want_min"],
            allow_partial=item.get("partial", False),
            expiry_ms=state.now_ms + item.get("ttl_ms", 3_600_000),
            created_ms=state.now_ms,
            nonce=state.next_nonce(),
        )
        signed = SignedIntent.create(intent, kp)
        state.node.submit_intent(signed)
        state.intents[item["name"]] = signed

    @reactor.step("cancel_intent")
    def cancel_intent(state: TraceState, item):
        signed = state.intents[item["name"]]
        owner = next(kp for kp in state.accounts.values() if kp.address == signed.intent.owner)
        state.node.cancel_intent(signed.intent_id, owner)

    @reactor.step("match")
    def match(state: TraceState, item):
        found = state.node.run_matching()
        if "expect_matches" in item and len(found) != item["expect_matches"]:
            raise TraceError(f"expected {item['expect_matches']} matches, got {len(found)}")

    @reactor.step("produce_block")
    def produce_block(state: TraceState, item):
        for _ in range(item.get("count", 1)):
            state.node.process_block()

    @reactor.step("advance_time")
    def advance_time(state: TraceState, item):
        state.now_ms += item["ms"]

    @reactor.step("expect_balance")
    def expect_balance(state: TraceState, item):
        actual = state.node.balance(state.address(item["account"]), item["asset"])
        low, high = item.get("min", item.get("amount")), item.get("max", item.get("amount"))
        if not low <= actual <= high:
            raise TraceError(f"{item['account']} holds {actual} {item['asset']}, expected {low}..{high}")

    @reactor.step("expect_status")
    def expect_status(state: TraceState, item):
        status = state.node.query_intent_status(state.intents[item["name"]].intent_id)
        if status is None or status.state != IntentState(item["state"]):
            raise TraceError(f"intent {item['name']} is {status}, expected {item['state']}")

    @reactor.step("expect_receipt")
    def expect_receipt(state: TraceState, item):
        receipt = state.node.receipt(state.txs[item["name"]])
        if receipt is None or receipt.error_code != item["error_code"]:
            raise TraceError(f"tx {item['name']} receipt {receipt}, expected {item['error_code']}")

    reactor.sequence("settle", [
        {"tag": "match"},
        {"tag": "produce_block", "count": 3},
    ])

    @reactor.state_invariant("total_supply")
    def total_supply(state: TraceState):
        totals = {asset: 0 for asset in state.assets}
        for key, value in state.node.store.iter_prefix(keys.ACCOUNT_MARK):
            asset = keys.balance_asset(key)
            if asset is not None:
                totals[asset] = totals.get(asset, 0) + keys.decode_amount(value)
        return totals

    @reactor.invariant("no_negative_balances")
    def no_negative_balances(state: TraceState):
        return all(
            keys.decode_amount(value) >= 0
            for key, value in state.node.store.iter_prefix(keys.ACCOUNT_MARK)
            if keys.balance_asset(key) is not None
        )

    @reactor.invariant("fills_within_give_max")
    def fills_within_give_max(state: TraceState):
        for signed in state.intents.values():
            filled = keys.decode_amount(state.node.store.read(keys.fill_key(signed.intent_id)))
            if filled > signed.intent.give_max:
                return False
        return True

    return reactor
