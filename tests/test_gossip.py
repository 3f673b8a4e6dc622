"""
Tests for the Gossip Propagator over the in-process network.
"""
import random
import time
from unittest.mock import MagicMock

import pytest

from intentledger.config import LedgerConfig
from intentledger.exceptions import TransportError
from intentledger.gossip import (
    GossipMessage, GossipPropagator, GossipReply, InsertResult, IntentPool, LocalNetwork
)
from intentledger.gossip import _rate_limited_log
from conftest import DAY_MS, START_MS, FakeClock, make_intent


@pytest.fixture(autouse=True)
def _reset_log_cache():
    _rate_limited_log.reset()
    yield
    _rate_limited_log.reset()


def _mesh(names, edges, config=None, clock=None):
    """Build propagators on a LocalNetwork with undirected ``edges``."""
    network = LocalNetwork()
    clock = clock or FakeClock()
    nodes = {}
    for name in names:
        neighbours = [b for a, b in edges if a == name] + [a for a, b in edges if b == name]
        nodes[name] = GossipPropagator(
            name, IntentPool(config, clock=clock), network.transport(name), neighbours,
            config=config, rng=random.Random(7),
        )
        network.register(name, nodes[name].receive)
    return network, nodes


def _settle(nodes, rounds=10):
    for _ in range(rounds):
        if not sum(node.flush() for node in nodes.values()):
            return


class TestPropagation:
    """Intents reach every connected node exactly once."""

    def test_line_topology(self, alice):
        _, nodes = _mesh(["a", "b", "c", "d"], [("a", "b"), ("b", "c"), ("c", "d")])
        signed = make_intent(alice, "X", 10, "Y", 10)
        assert nodes["a"].publish(signed) == InsertResult.ACCEPTED
        _settle(nodes)
        for node in nodes.values():
            assert signed.intent_id in node.pool

    def test_no_echo_to_sender(self, alice):
        _, nodes = _mesh(["a", "b"], [("a", "b")])
        signed = make_intent(alice, "X", 10, "Y", 10)
        nodes["a"].publish(signed)
        assert nodes["a"].flush() == 1
        # b received it from a and must not send it back
        assert nodes["b"].queued("a") == 0
        assert nodes["b"].flush() == 0

    def test_never_resent_on_cycle(self, alice):
        network, nodes = _mesh(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "a")])
        received = MagicMock(wraps=nodes["a"].receive)
        network.register("a", received)
        signed = make_intent(alice, "X", 10, "Y", 10)
        nodes["a"].publish(signed)
        _settle(nodes)
        # a originated the intent, so neither b nor c sends it back
        assert received.call_count == 0
        assert all(signed.intent_id in node.pool for node in nodes.values())

    def test_fan_out_limit(self, alice):
        config = LedgerConfig(gossip_fan_out=2)
        _, nodes = _mesh(["hub", "p1", "p2", "p3", "p4"],
                         [("hub", "p1"), ("hub", "p2"), ("hub", "p3"), ("hub", "p4")], config=config)
        nodes["hub"].publish(make_intent(alice, "X", 10, "Y", 10))
        assert sum(nodes["hub"].queued(p) for p in ["p1", "p2", "p3", "p4"]) == 2


class TestReceive:
    """Validation of incoming messages."""

    def test_duplicate_reply(self, alice):
        _, nodes = _mesh(["a", "b"], [("a", "b")])
        message = GossipMessage.from_signed(make_intent(alice, "X", 10, "Y", 10))
        assert nodes["b"].receive(message, "a") == GossipReply.ACCEPT
        assert nodes["b"].receive(message, "a") == GossipReply.DUPLICATE

    def test_id_mismatch_rejected(self, alice):
        _, nodes = _mesh(["a", "b"], [("a", "b")])
        signed = make_intent(alice, "X", 10, "Y", 10)
        message = GossipMessage(intent_id="0" * 64, signed_payload=signed, expiry_ms=signed.intent.expiry_ms)
        assert nodes["b"].receive(message, "a") == GossipReply.REJECT
        assert len(nodes["b"].pool) == 0

    def test_expired_rejected_and_not_forwarded(self, alice):
        _, nodes = _mesh(["a", "b", "c"], [("a", "b"), ("b", "c")], clock=FakeClock(START_MS + DAY_MS))
        message = GossipMessage.from_signed(make_intent(alice, "X", 10, "Y", 10))
        assert nodes["b"].receive(message, "a") == GossipReply.REJECT
        assert nodes["b"].queued("c") == 0

    def test_bad_signature_rejected(self, alice, bob):
        _, nodes = _mesh(["a", "b"], [("a", "b")])
        signed = make_intent(alice, "X", 10, "Y", 10)
        forged = signed.model_copy(update={"signature": bob.sign(b"other")})
        assert nodes["b"].receive(GossipMessage.from_signed(forged), "a") == GossipReply.REJECT


class TestQueues:
    """Bounded outbound queues and transport failures."""

    def test_drop_oldest_when_full(self, alice):
        config = LedgerConfig(gossip_queue_size=2)
        _, nodes = _mesh(["a", "b"], [("a", "b")], config=config)
        intents = [make_intent(alice, "X", 10, "Y", 10, nonce=i) for i in range(3)]
        for signed in intents:
            nodes["a"].publish(signed)
        assert nodes["a"].queued("b") == 2
        assert nodes["a"].dropped == 1
        nodes["a"].flush()
        assert intents[0].intent_id not in nodes["b"].pool
        assert intents[2].intent_id in nodes["b"].pool

    def test_unreachable_peer_can_be_retried(self, alice):
        network, nodes = _mesh(["a", "b"], [("a", "b")])
        network.unregister("b")
        signed = make_intent(alice, "X", 10, "Y", 10)
        nodes["a"].publish(signed)
        assert nodes["a"].flush() == 0
        network.register("b", nodes["b"].receive)
        nodes["a"]._enqueue(GossipMessage.from_signed(signed), exclude=None)
        assert nodes["a"].flush() == 1
        assert signed.intent_id in nodes["b"].pool

    def test_transport_error_raised_for_unknown_peer(self, alice):
        network = LocalNetwork()
        with pytest.raises(TransportError):
            network.transport("a").send("ghost", GossipMessage.from_signed(make_intent(alice, "X", 1, "Y", 1)))

    def test_neighbour_management(self):
        prop = GossipPropagator("a", IntentPool(), LocalNetwork().transport("a"), ["b"])
        prop.add_neighbour("a")
        prop.add_neighbour("b")
        prop.add_neighbour("c")
        assert prop.neighbours == ["b", "c"]
        prop.remove_neighbour("b")
        assert prop.neighbours == ["c"]
        assert prop.queued("b") == 0

    def test_background_worker_flushes(self, alice):
        _, nodes = _mesh(["a", "b"], [("a", "b")])
        received = []
        nodes["b"].pool.subscribe(received.append)
        nodes["a"].start(interval_s=0.01)
        try:
            nodes["a"].publish(make_intent(alice, "X", 10, "Y", 10))
            for _ in range(200):
                if received:
                    break
                time.sleep(0.01)
        finally:
            nodes["a"].stop()
        assert len(received) == 1
