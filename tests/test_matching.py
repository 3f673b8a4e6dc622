"""
Tests for ring detection, fill computation and the Matching Engine.
"""
from unittest.mock import MagicMock

from hypothesis import HealthCheck, given, settings, strategies as st

from intentledger.config import LedgerConfig
from intentledger.gossip import IntentPool
from intentledger.identity.crypto import Keypair
from intentledger.matchmaker import AssetGraph, Leg, MatchingEngine, solve_cycle
from intentledger.models import Transaction, TxReceipt, TxStatus
from conftest import START_MS, FakeClock, make_intent


def _pool(*signed):
    pool = IntentPool(clock=FakeClock())
    for s in signed:
        pool.insert(s)
    return pool


def _engine(*signed, **kwargs):
    return MatchingEngine(_pool(*signed), clock=FakeClock(), **kwargs)


def _fill_for(match, intent_id):
    return next(f for f in match.fills if f.intent_id == intent_id)


class TestTwoPartyRing:
    """A offers <=100 X for >=90 Y; B offers <=95 Y for >=100 X."""

    def test_match_satisfies_both_minimums(self, alice, bob):
        i1 = make_intent(alice, "X", 100, "Y", 90)
        i2 = make_intent(bob, "Y", 95, "X", 100)
        matches = _engine(i1, i2).find_matches()
        assert len(matches) == 1
        match = matches[0]
        a_fill = _fill_for(match, i1.intent_id)
        b_fill = _fill_for(match, i2.intent_id)
        assert a_fill.give_amount == 100
        assert a_fill.recipient == bob.address
        assert 90 <= b_fill.give_amount <= 95
        assert b_fill.recipient == alice.address
        assert a_fill.receive_amount == b_fill.give_amount
        assert match.is_balanced()
        assert match.rates_satisfied()

    def test_small_offer_never_matches(self, bob, carol):
        i2 = make_intent(bob, "Y", 95, "X", 100)
        i3 = make_intent(carol, "X", 50, "Y", 45)
        assert _engine(i2, i3).find_matches() == []

    def test_small_offer_ignored_when_large_one_exists(self, alice, bob, carol):
        i1 = make_intent(alice, "X", 100, "Y", 90)
        i2 = make_intent(bob, "Y", 95, "X", 100)
        i3 = make_intent(carol, "X", 50, "Y", 45)
        matches = _engine(i1, i2, i3).find_matches()
        assert len(matches) == 1
        assert set(matches[0].intent_ids) == {i1.intent_id, i2.intent_id}

    def test_same_asset_pair_without_ring(self, alice, bob):
        assert _engine(make_intent(alice, "X", 10, "Y", 10), make_intent(bob, "X", 10, "Y", 10)).find_matches() == []


class TestRings:
    def test_three_party_ring(self, alice, bob, carol):
        a = make_intent(alice, "X", 100, "Y", 100)
        b = make_intent(bob, "Y", 100, "Z", 100)
        c = make_intent(carol, "Z", 100, "X", 100)
        matches = _engine(a, b, c).find_matches()
        assert len(matches) == 1
        match = matches[0]
        assert _fill_for(match, a.intent_id).recipient == carol.address
        assert _fill_for(match, b.intent_id).recipient == alice.address
        assert _fill_for(match, c.intent_id).recipient == bob.address
        assert match.volume == 300

    def test_cycle_length_bound(self, alice, bob, carol):
        a = make_intent(alice, "X", 100, "Y", 100)
        b = make_intent(bob, "Y", 100, "Z", 100)
        c = make_intent(carol, "Z", 100, "X", 100)
        engine = MatchingEngine(_pool(a, b, c), config=LedgerConfig(max_cycle_length=2), clock=FakeClock())
        assert engine.find_matches() == []

    def test_partial_fill(self, alice, bob):
        a = make_intent(alice, "X", 100, "Y", 100, allow_partial=True)
        b = make_intent(bob, "Y", 40, "X", 40)
        match = _engine(a, b).find_matches()[0]
        assert _fill_for(match, a.intent_id).give_amount == 40
        assert _fill_for(match, b.intent_id).give_amount == 40

    def test_cycles_are_canonical(self, alice, bob):
        a = make_intent(alice, "X", 10, "Y", 10)
        b = make_intent(bob, "Y", 10, "X", 10)
        graph = AssetGraph([Leg(a, 10), Leg(b, 10)])
        cycles = graph.find_cycles(max_length=4, limit=10)
        assert len(cycles) == 1
        assert cycles[0][0].intent_id == min(a.intent_id, b.intent_id)

    def test_solve_rejects_single_leg(self, alice):
        assert solve_cycle((Leg(make_intent(alice, "X", 10, "Y", 10), 10),)) is None

    def test_transaction_payload(self, alice, bob, matcher_key):
        a = make_intent(alice, "X", 10, "Y", 10)
        b = make_intent(bob, "Y", 10, "X", 10)
        match = _engine(a, b).find_matches()[0]
        tx = match.to_transaction(matcher_key.address, nonce=4)
        assert tx.code == "settle_match"
        assert tx.submitter == matcher_key.address
        assert len(tx.data["fills"]) == 2
        assert set(tx.data["intents"]) == {a.intent_id, b.intent_id}


class TestSelection:
    """Greedy choice of non-overlapping candidates."""

    def test_prefers_volume(self, alice, bob, carol):
        small = make_intent(carol, "X", 50, "Y", 50, created_ms=START_MS)
        large = make_intent(alice, "X", 100, "Y", 100, created_ms=START_MS + 5)
        taker = make_intent(bob, "Y", 100, "X", 100, allow_partial=True, created_ms=START_MS + 10)
        matches = _engine(small, large, taker).find_matches()
        assert len(matches) == 1
        assert set(matches[0].intent_ids) == {large.intent_id, taker.intent_id}

    def test_equal_volume_prefers_earliest(self, alice, bob, carol):
        first = make_intent(alice, "X", 100, "Y", 100, created_ms=START_MS)
        taker = make_intent(bob, "Y", 100, "X", 100, created_ms=START_MS + 10)
        later = make_intent(carol, "X", 100, "Y", 100, created_ms=START_MS + 20)
        matches = _engine(first, taker, later).find_matches()
        assert [set(m.intent_ids) for m in matches] == [{first.intent_id, taker.intent_id}]

    def test_disjoint_rings_all_chosen(self, alice, bob, carol, matcher_key):
        rings = [
            make_intent(alice, "X", 10, "Y", 10), make_intent(bob, "Y", 10, "X", 10),
            make_intent(carol, "Z", 10, "W", 10), make_intent(matcher_key, "W", 10, "Z", 10),
        ]
        assert len(_engine(*rings).find_matches()) == 2

    def test_expired_intents_skipped(self, alice, bob):
        a = make_intent(alice, "X", 10, "Y", 10, ttl_ms=1_000)
        b = make_intent(bob, "Y", 10, "X", 10)
        assert _engine(a, b).find_matches(now_ms=START_MS + 1_000) == []


class TestReservations:
    """Reserved intents are not matched again until released."""

    def _ring(self, alice, bob):
        return make_intent(alice, "X", 10, "Y", 10), make_intent(bob, "Y", 10, "X", 10)

    def test_reserved_until_released(self, alice, bob):
        a, b = self._ring(alice, bob)
        handler = MagicMock(return_value=True)
        engine = _engine(a, b, on_match=handler)
        assert len(engine.run_once()) == 1
        assert engine.reserved() == sorted([a.intent_id, b.intent_id])
        assert engine.run_once() == []
        engine.release([a.intent_id, b.intent_id])
        assert len(engine.run_once()) == 1
        assert handler.call_count == 2

    def test_declined_match_released(self, alice, bob):
        a, b = self._ring(alice, bob)
        engine = _engine(a, b, on_match=lambda match: False)
        assert engine.run_once() == []
        assert engine.reserved() == []

    def test_failing_handler_released(self, alice, bob):
        a, b = self._ring(alice, bob)
        engine = _engine(a, b, on_match=MagicMock(side_effect=RuntimeError("boom")))
        assert engine.run_once() == []
        assert engine.reserved() == []

    def test_receipt_releases(self, alice, bob, matcher_key):
        a, b = self._ring(alice, bob)
        engine = _engine(a, b)
        match = engine.run_once()[0]
        tx = match.to_transaction(matcher_key.address)
        engine.on_receipt(tx, TxReceipt(tx_id=tx.tx_id, status=TxStatus.REJECTED, error_code="STALE_MATCH"))
        assert engine.reserved() == []
        assert engine._wake.is_set()

    def test_other_receipts_ignored(self, alice, bob):
        a, b = self._ring(alice, bob)
        engine = _engine(a, b)
        engine.run_once()
        engine.on_receipt(Transaction(code="transfer"), TxReceipt(tx_id="t"))
        assert len(engine.reserved()) == 2


KEYS = [Keypair.from_seed(f"prop-{i}".encode()) for i in range(4)]
ASSETS = ["X", "Y", "Z"]

intent_params = st.tuples(
    st.integers(0, len(KEYS) - 1),
    st.sampled_from([(a, b) for a in ASSETS for b in ASSETS if a != b]),
    st.integers(1, 200),
    st.integers(1, 200),
    st.booleans(),
)


@settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(st.lists(intent_params, min_size=2, max_size=7))
def test_matches_conserve_assets_and_respect_limits(params):
    signed = [
        make_intent(KEYS[k], give, give_max, want, want_min, allow_partial=partial, nonce=n)
        for n, (k, (give, want), give_max, want_min, partial) in enumerate(params)
    ]
    matches = MatchingEngine(_pool(*signed), clock=FakeClock()).find_matches()
    used = set()
    for match in matches:
        assert match.is_balanced()
        assert match.rates_satisfied()
        assert not used.intersection(match.intent_ids)
        used.update(match.intent_ids)
        for fill in match.fills:
            intent = match.intents[fill.intent_id].intent
            assert 0 < fill.give_amount <= intent.give_max
            assert fill.receive_amount >= intent.min_receive(fill.give_amount)
