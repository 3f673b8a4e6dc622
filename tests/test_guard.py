"""
Tests for the Front-Running Guard (commit-reveal).
"""
import pytest
from hypothesis import given, settings, strategies as st

from intentledger.config import LedgerConfig
from intentledger.exceptions import (
    CommitmentMismatchError, ExpiredError, MalformedError, RejectReason, SignatureInvalidError
)
from intentledger.guard import (
    CommitmentRegistry, CommitmentState, commitment_digest, seal
)
from intentledger.identity.crypto import Keypair
from intentledger.models import Reveal, Transaction

MATCHER = Keypair.from_seed(b"matcher")
RIVAL = Keypair.from_seed(b"rival")


def _tx(submitter=MATCHER, **data):
    return Transaction(code="settle_match", data=data or {"fills": []}, submitter=submitter.address).sign(submitter)


@pytest.fixture
def registry():
    return CommitmentRegistry(LedgerConfig(reveal_delay_blocks=1, commitment_ttl_blocks=4))


class TestSeal:
    """Sealing binds a commitment to its transaction."""

    def test_digest_matches_reveal(self):
        sealed = seal(_tx(), MATCHER, height=3)
        reveal = sealed.transaction.reveal
        assert reveal.commitment_id == sealed.commitment.digest
        assert commitment_digest(MATCHER.address, sealed.transaction.signing_bytes(), reveal.nonce) == reveal.commitment_id
        assert sealed.commitment.created_height == 3
        assert sealed.commitment.verify()

    def test_fresh_nonce_every_time(self):
        tx = _tx()
        assert seal(tx, MATCHER).commitment.digest != seal(tx, MATCHER).commitment.digest

    def test_commitment_hides_content(self):
        sealed = seal(_tx(secret="route"), MATCHER)
        assert "route" not in sealed.commitment.model_dump_json()

    def test_submitter_must_match_key(self):
        with pytest.raises(ValueError):
            seal(_tx(), RIVAL)

    def test_cannot_seal_twice(self):
        sealed = seal(_tx(), MATCHER)
        with pytest.raises(ValueError):
            seal(sealed.transaction, MATCHER)

    def test_tampered_commitment_fails_verification(self):
        commitment = seal(_tx(), MATCHER).commitment
        assert not commitment.model_copy(update={"created_height": 9}).verify()
        assert not commitment.model_copy(update={"submitter": RIVAL.address}).verify()


class TestCommitmentRegistry:
    """Reveal checks: ordering, delay, matching content and single use."""

    def test_record_rejects_bad_signature(self, registry):
        commitment = seal(_tx(), MATCHER).commitment
        with pytest.raises(SignatureInvalidError):
            registry.record(commitment.model_copy(update={"signature": RIVAL.sign(b"x")}), 1)

    def test_record_rejects_duplicate(self, registry):
        commitment = seal(_tx(), MATCHER).commitment
        registry.record(commitment, 1)
        with pytest.raises(MalformedError):
            registry.record(commitment, 2)

    def test_matching_reveal_consumes(self, registry):
        sealed = seal(_tx(), MATCHER)
        registry.record(sealed.commitment, 1)
        record = registry.check_reveal(sealed.transaction, 2)
        assert record.state == CommitmentState.CONSUMED
        with pytest.raises(CommitmentMismatchError):
            registry.check_reveal(sealed.transaction, 3)

    def test_premature_reveal_does_not_burn(self, registry):
        sealed = seal(_tx(), MATCHER)
        registry.record(sealed.commitment, 5)
        with pytest.raises(CommitmentMismatchError, match="before height 6"):
            registry.check_reveal(sealed.transaction, 5)
        assert registry.get(sealed.commitment.digest).state == CommitmentState.ORDERED
        registry.check_reveal(sealed.transaction, 6)

    def test_unknown_commitment(self, registry):
        sealed = seal(_tx(), MATCHER)
        with pytest.raises(CommitmentMismatchError) as excinfo:
            registry.check_reveal(sealed.transaction, 2)
        assert excinfo.value.reason == RejectReason.COMMITMENT_MISMATCH

    def test_missing_reveal(self, registry):
        with pytest.raises(CommitmentMismatchError):
            registry.check_reveal(_tx(), 2)

    def test_mismatched_content_burns(self, registry):
        sealed = seal(_tx(fills=[1]), MATCHER)
        registry.record(sealed.commitment, 1)
        swapped = _tx(fills=[2]).with_reveal(sealed.transaction.reveal)
        with pytest.raises(CommitmentMismatchError):
            registry.check_reveal(swapped, 2)
        assert registry.get(sealed.commitment.digest).state == CommitmentState.BURNED
        # The honest reveal is now useless as well
        with pytest.raises(CommitmentMismatchError, match="burned"):
            registry.check_reveal(sealed.transaction, 2)

    def test_foreign_submitter_cannot_burn(self, registry):
        sealed = seal(_tx(), MATCHER)
        registry.record(sealed.commitment, 1)
        hijack = _tx(RIVAL).with_reveal(sealed.transaction.reveal)
        with pytest.raises(CommitmentMismatchError, match="another submitter"):
            registry.check_reveal(hijack, 2)
        assert registry.check_reveal(sealed.transaction, 2).state == CommitmentState.CONSUMED

    def test_bad_nonce_burns(self, registry):
        sealed = seal(_tx(), MATCHER)
        registry.record(sealed.commitment, 1)
        bogus = sealed.transaction.with_reveal(Reveal(commitment_id=sealed.commitment.digest, nonce="zz"))
        with pytest.raises(CommitmentMismatchError):
            registry.check_reveal(bogus, 2)
        assert registry.get(sealed.commitment.digest).state == CommitmentState.BURNED

    def test_expired_commitment(self, registry):
        sealed = seal(_tx(), MATCHER)
        registry.record(sealed.commitment, 1)
        with pytest.raises(ExpiredError):
            registry.check_reveal(sealed.transaction, 6)
        assert registry.get(sealed.commitment.digest).state == CommitmentState.EXPIRED

    def test_prune(self, registry):
        old = seal(_tx(), MATCHER).commitment
        fresh = seal(_tx(), MATCHER).commitment
        registry.record(old, 1)
        registry.record(fresh, 8)
        assert registry.prune(10) == 1
        assert len(registry) == 1
        assert registry.get(fresh.digest) is not None

    @settings(max_examples=40, deadline=None)
    @given(st.dictionaries(st.text(min_size=1, max_size=6), st.integers(), min_size=1, max_size=4))
    def test_any_other_payload_is_rejected(self, payload):
        registry = CommitmentRegistry(LedgerConfig(reveal_delay_blocks=1))
        sealed = seal(_tx(fills=["original"]), MATCHER)
        registry.record(sealed.commitment, 1)
        other = _tx(**payload).with_reveal(sealed.transaction.reveal)
        with pytest.raises(CommitmentMismatchError):
            registry.check_reveal(other, 2)
