"""
Receipt Verifier Test Suite

Strict verification of challenge/receipt pairs, guarding against:
- Forged witnesses (predicate failures, tampered bodies)
- Timestamp manipulation (pre-issuance responses, late responses)
- Replay of an accepted receipt (nonce reuse)
- Cross-node witness reuse (mismatched nodeId)
- Misconfiguration (missing witness predicates, short nonce TTL)

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import make_challenge, make_receipt
from poseguard.config import ConfigError, PoseConfig
from poseguard.hardening import Digest, ValidationError
from poseguard.messages import ChallengeType
from poseguard.nonce import NonceRegistry
from poseguard.verifier import Reason, ReceiptRejected, ReceiptVerifier, VerifierPredicates


def _always(result):
    return lambda *args: result


def _predicates(**overrides):
    fields = dict(
        verify_challenger_sig=_always(True),
        verify_node_sig=_always(True),
        verify_relay_result=_always(True),
    )
    fields.update(overrides)
    return VerifierPredicates(**fields)


def _verifier(registry=None, **overrides):
    return ReceiptVerifier(_predicates(**overrides), nonce_registry=registry)


# =============================================================================
# ACCEPTANCE
# =============================================================================

class TestValidReceipt:
    """Well-formed pairs are accepted."""

    def test_accepts_properly_formed_relay_receipt(self):
        """A relay receipt whose witness names target, method and result verifies."""
        verifier = _verifier(
            verify_relay_result=lambda ch, r: bool(
                r.response_body.get("relayTarget")
                and r.response_body.get("relayMethod")
                and r.response_body.get("relayResult")
            ),
        )
        result = verifier.verify(make_challenge(), make_receipt())
        assert result.ok is True
        assert result.reason is None
        assert result.response_body_hash.startswith("0x")
        assert len(result.response_body_hash) == 66

    def test_body_hash_is_deterministic(self):
        """Identical bodies fingerprint identically across independent calls."""
        a = _verifier().verify(make_challenge(), make_receipt())
        b = _verifier().verify(make_challenge(), make_receipt())
        assert a.response_body_hash == b.response_body_hash

    def test_body_hash_ignores_key_order(self):
        """Canonical encoding sorts keys before hashing."""
        body = {"b": 2, "a": 1}
        reordered = {"a": 1, "b": 2}
        a = _verifier().verify(make_challenge(), make_receipt(response_body=body))
        b = _verifier().verify(make_challenge(), make_receipt(response_body=reordered))
        assert a.response_body_hash == b.response_body_hash

    def test_any_body_change_changes_hash(self):
        """A single changed value yields a different fingerprint."""
        a = _verifier().verify(make_challenge(), make_receipt(response_body={"relayLatencyMs": 45}))
        b = _verifier().verify(make_challenge(), make_receipt(response_body={"relayLatencyMs": 46}))
        assert a.response_body_hash != b.response_body_hash

    def test_digest_algorithm_is_injectable(self):
        """The body fingerprint follows the configured digest."""
        sha = ReceiptVerifier(_predicates()).verify(make_challenge(), make_receipt())
        blake = ReceiptVerifier(_predicates(), digest=Digest("blake2s")).verify(make_challenge(), make_receipt())
        assert sha.ok and blake.ok
        assert sha.response_body_hash != blake.response_body_hash

    def test_verification_without_registry_is_stateless(self):
        """With no registry configured, the same pair verifies repeatedly."""
        verifier = _verifier()
        assert verifier.verify(make_challenge(), make_receipt()).ok
        assert verifier.verify(make_challenge(), make_receipt()).ok

    def test_unencodable_body_is_a_precondition_error(self):
        """A lone surrogate in the body aborts with ValidationError and burns no nonce."""
        registry = NonceRegistry()
        body = json.loads('{"relayResult": "\\ud800"}')
        with pytest.raises(ValidationError, match="UTF-8"):
            _verifier(registry).verify(make_challenge(), make_receipt(response_body=body))
        assert registry.size() == 0


# =============================================================================
# IDENTITY
# =============================================================================

class TestIdentityMatch:
    """Receipts must answer the exact challenge they claim to."""

    def test_rejects_cross_node_witness_reuse(self):
        """A valid receipt from node A cannot be presented as node B's."""
        receipt = make_receipt(node_id="0x" + "99" * 32)
        result = _verifier().verify(make_challenge(), receipt)
        assert result.ok is False
        assert result.reason == Reason.MISMATCH == "challenge/receipt mismatch"

    def test_rejects_mismatched_challenge_id(self):
        receipt = make_receipt(challenge_id="0x" + "88" * 32)
        result = _verifier().verify(make_challenge(), receipt)
        assert result.reason == "challenge/receipt mismatch"

    def test_mismatch_checked_before_signatures(self):
        """Signature predicates are never consulted for a mismatched pair."""
        calls = []

        def challenger_sig(ch):
            calls.append("challenger")
            return True

        verifier = _verifier(verify_challenger_sig=challenger_sig)
        verifier.verify(make_challenge(), make_receipt(node_id="0x" + "99" * 32))
        assert calls == []


# =============================================================================
# SIGNATURES
# =============================================================================

class TestSignatures:
    """Signature predicates gate acceptance."""

    def test_rejects_invalid_challenger_signature(self):
        result = _verifier(verify_challenger_sig=_always(False)).verify(make_challenge(), make_receipt())
        assert result.reason == "invalid challenger signature"

    def test_rejects_invalid_node_signature(self):
        result = _verifier(verify_node_sig=_always(False)).verify(make_challenge(), make_receipt())
        assert result.reason == "invalid node signature"

    def test_node_predicate_receives_body_hash(self):
        """The node signature covers the body fingerprint returned on success."""
        seen = {}

        def node_sig(challenge, receipt, body_hash):
            seen["hash"] = body_hash
            return True

        result = _verifier(verify_node_sig=node_sig).verify(make_challenge(), make_receipt())
        assert result.ok
        assert seen["hash"] == result.response_body_hash

    def test_truthy_non_bool_does_not_pass(self):
        """Only a literal True passes a predicate."""
        result = _verifier(verify_challenger_sig=_always("yes")).verify(make_challenge(), make_receipt())
        assert result.reason == "invalid challenger signature"

    def test_raising_predicate_fails_closed(self):
        """A predicate that raises counts as a failed check."""
        def explode(*args):
            raise RuntimeError("key store unavailable")

        result = _verifier(verify_node_sig=explode).verify(make_challenge(), make_receipt())
        assert result.ok is False
        assert result.reason == "invalid node signature"


# =============================================================================
# TIMING
# =============================================================================

class TestTimingWindow:
    """Response timestamps must fall inside [issuedAtMs, issuedAtMs + deadlineMs]."""

    def test_rejects_response_before_issuance(self):
        result = _verifier().verify(make_challenge(), make_receipt(response_at_ms=500))
        assert result.reason == "receipt timestamp before challenge issuance"

    def test_early_response_rejected_regardless_of_signatures(self):
        """A pre-issuance timestamp is reported even when signatures are bad."""
        verifier = _verifier(verify_challenger_sig=_always(False), verify_node_sig=_always(False))
        result = verifier.verify(make_challenge(), make_receipt(response_at_ms=999))
        assert result.reason == "receipt timestamp before challenge issuance"

    def test_rejects_response_after_deadline(self):
        result = _verifier().verify(make_challenge(), make_receipt(response_at_ms=7000))
        assert result.reason == "receipt timeout"

    def test_accepts_response_exactly_at_deadline(self):
        """The deadline is inclusive."""
        result = _verifier().verify(make_challenge(), make_receipt(response_at_ms=6000))
        assert result.ok is True

    def test_rejects_one_millisecond_past_deadline(self):
        result = _verifier().verify(make_challenge(), make_receipt(response_at_ms=6001))
        assert result.reason == "receipt timeout"

    def test_accepts_response_at_issuance(self):
        result = _verifier().verify(make_challenge(), make_receipt(response_at_ms=1000))
        assert result.ok is True


# =============================================================================
# WITNESS DISPATCH
# =============================================================================

class TestWitnessDispatch:
    """Each challenge type dispatches to its own predicate."""

    def test_rejects_forged_relay_result(self):
        result = _verifier(verify_relay_result=_always(False)).verify(make_challenge(), make_receipt())
        assert result.reason == "relay witness invalid"

    def test_rejects_empty_relay_body(self):
        verifier = _verifier(
            verify_relay_result=lambda ch, r: bool(r.response_body) and bool(r.response_body.get("relayResult")),
        )
        result = verifier.verify(make_challenge(), make_receipt(response_body={}))
        assert result.reason == "relay witness invalid"

    def test_rejects_missing_relay_target(self):
        verifier = _verifier(verify_relay_result=lambda ch, r: bool(r.response_body.get("relayTarget")))
        receipt = make_receipt(response_body={"relayMethod": "eth_getBlockByNumber", "relayResult": {"number": "0xa"}})
        result = verifier.verify(make_challenge(), receipt)
        assert result.reason == "relay witness invalid"

    @pytest.mark.parametrize("challenge_type,label", [
        (ChallengeType.UPTIME, "uptime"),
        (ChallengeType.STORAGE, "storage"),
        (ChallengeType.RELAY, "relay"),
    ])
    def test_unconfigured_type_fails_closed(self, challenge_type, label):
        """A type without a predicate is rejected, never waved through."""
        verifier = ReceiptVerifier(VerifierPredicates(
            verify_challenger_sig=_always(True),
            verify_node_sig=_always(True),
        ))
        result = verifier.verify(make_challenge(challenge_type=challenge_type), make_receipt())
        assert result.reason == f"{label} verifier not configured"

    def test_dispatches_by_type(self):
        """Only the predicate for the challenge's type is consulted."""
        calls = []
        verifier = ReceiptVerifier(VerifierPredicates(
            verify_challenger_sig=_always(True),
            verify_node_sig=_always(True),
            verify_uptime_result=lambda ch, r: calls.append("uptime") or True,
            verify_storage_result=lambda ch, r: calls.append("storage") or True,
            verify_relay_result=lambda ch, r: calls.append("relay") or True,
        ))
        assert verifier.verify(make_challenge(challenge_type=ChallengeType.STORAGE), make_receipt()).ok
        assert calls == ["storage"]


# =============================================================================
# NONCE REPLAY
# =============================================================================

class TestNonceReplay:
    """Accepted receipts cannot be presented again."""

    def test_rejects_replayed_receipt(self):
        """The identical pair verifies once, then is a replay."""
        verifier = _verifier(NonceRegistry())
        assert verifier.verify(make_challenge(), make_receipt()).ok is True
        second = verifier.verify(make_challenge(), make_receipt())
        assert second.ok is False
        assert second.reason == "nonce replay detected"

    def test_distinct_nonces_both_accepted(self):
        """Different nonces for the same node verify independently."""
        verifier = _verifier(NonceRegistry())
        assert verifier.verify(make_challenge(nonce="0x" + "aa" * 32), make_receipt()).ok
        assert verifier.verify(make_challenge(nonce="0x" + "bb" * 32), make_receipt()).ok

    def test_failed_verification_does_not_consume_nonce(self):
        """A malformed receipt never burns the challenge's nonce."""
        registry = NonceRegistry()
        failing = _verifier(registry, verify_relay_result=_always(False))
        assert failing.verify(make_challenge(), make_receipt()).ok is False

        passing = _verifier(registry)
        assert passing.verify(make_challenge(), make_receipt()).ok is True

    def test_colliding_nonce_for_other_node_is_independent(self):
        """The same nonce issued to two nodes does not collide."""
        verifier = _verifier(NonceRegistry())
        other = "0x" + "77" * 32
        assert verifier.verify(make_challenge(), make_receipt()).ok
        assert verifier.verify(make_challenge(node_id=other), make_receipt(node_id=other)).ok

    def test_nonce_expires_after_ttl(self, clock):
        """After the TTL the nonce is indistinguishable from a fresh one."""
        registry = NonceRegistry(ttl_ms=10_000, clock=clock)
        verifier = ReceiptVerifier(_predicates(), nonce_registry=registry, clock=clock)
        assert verifier.verify(make_challenge(), make_receipt()).ok
        clock.advance(10_001)
        assert verifier.verify(make_challenge(), make_receipt()).ok

    @pytest.mark.concurrency
    def test_concurrent_presentations_accept_exactly_once(self):
        """Racing presentations of one pair produce a single acceptance."""
        verifier = _verifier(NonceRegistry())
        challenge, receipt = make_challenge(), make_receipt()

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: verifier.verify(challenge, receipt), range(64)))

        accepted = [r for r in results if r.ok]
        assert len(accepted) == 1
        assert all(r.reason == "nonce replay detected" for r in results if not r.ok)

    def test_independent_registries_do_not_interfere(self):
        """Two verifiers with their own registries each accept the pair once."""
        a = _verifier(NonceRegistry())
        b = _verifier(NonceRegistry())
        assert a.verify(make_challenge(), make_receipt()).ok
        assert b.verify(make_challenge(), make_receipt()).ok


# =============================================================================
# CONSTRUCTION
# =============================================================================

class TestConstruction:
    """Misconfiguration is caught when the verifier is built."""

    def test_required_type_without_predicate(self):
        with pytest.raises(ConfigError, match="storage"):
            ReceiptVerifier(_predicates(), required_types=[ChallengeType.STORAGE])

    def test_required_type_with_predicate(self):
        verifier = ReceiptVerifier(_predicates(), required_types=[ChallengeType.RELAY])
        assert verifier.verify(make_challenge(), make_receipt()).ok

    def test_ttl_must_exceed_max_deadline(self):
        with pytest.raises(ConfigError, match="TTL"):
            ReceiptVerifier(_predicates(), nonce_registry=NonceRegistry(ttl_ms=300_000), max_deadline_ms=300_000)

    def test_from_config(self, clock):
        config = PoseConfig()
        config.verifier.required_types.set(["relay"])
        verifier = ReceiptVerifier.from_config(config, _predicates(), clock=clock)
        assert verifier.nonce_registry.ttl_ms == 600_000
        assert verifier.max_deadline_ms == 300_000
        assert verifier.verify(make_challenge(), make_receipt()).ok
        assert verifier.verify(make_challenge(), make_receipt()).reason == "nonce replay detected"

    def test_from_config_rejects_missing_required_type(self):
        config = PoseConfig()
        config.verifier.required_types.set(["uptime"])
        with pytest.raises(ConfigError):
            ReceiptVerifier.from_config(config, _predicates())


# =============================================================================
# VERIFIED RECEIPTS
# =============================================================================

class TestVerifiedReceipt:
    """to_verified_receipt wraps accepted pairs for scoring."""

    def test_returns_verified_receipt(self, clock):
        verifier = ReceiptVerifier(_predicates(), clock=clock)
        verified = verifier.to_verified_receipt(make_challenge(), make_receipt())
        assert verified.challenge_id == make_challenge().challenge_id
        assert verified.epoch_id == 1
        assert verified.challenge_type is ChallengeType.RELAY
        assert verified.verified_at_ms == clock.now_ms
        assert verified.response_body_hash.startswith("0x")
        assert verified.to_dict()["challengeType"] == "R"

    def test_explicit_verified_at(self):
        verified = _verifier().to_verified_receipt(make_challenge(), make_receipt(), verified_at_ms=42)
        assert verified.verified_at_ms == 42

    def test_raises_with_reason(self):
        with pytest.raises(ReceiptRejected) as excinfo:
            _verifier(verify_relay_result=_always(False)).to_verified_receipt(make_challenge(), make_receipt())
        assert excinfo.value.reason == "relay witness invalid"
