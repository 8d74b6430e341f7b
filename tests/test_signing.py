"""Tests for the Ed25519 key ring and signature predicates."""

import dataclasses

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from conftest import make_challenge, make_receipt
from poseguard.canonical import response_body_hash
from poseguard.hardening import Digest, ValidationError
from poseguard.signing import (
    KeyRing,
    challenge_sign_message,
    decode_signature,
    key_id,
    raw_public_key,
    receipt_sign_message,
    relay_sign_message,
    sign_challenge,
    sign_receipt,
    sign_relay,
)


@pytest.fixture
def challenger_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def node_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def keyring(challenger_key, node_key):
    ring = KeyRing()
    ring.register(challenger_key.public_key())
    ring.register(node_key.public_key())
    return ring


def _signed_pair(challenger_key, node_key):
    challenger_id = key_id(challenger_key)
    node_id = key_id(node_key)
    challenge = sign_challenge(make_challenge(challenger_id=challenger_id, node_id=node_id), challenger_key)
    receipt = sign_receipt(make_receipt(node_id=node_id), node_key)
    return challenge, receipt


class TestKeyIds:
    def test_key_id_is_digest_of_raw_key(self, node_key):
        raw = raw_public_key(node_key)
        assert len(raw) == 32
        assert key_id(node_key) == Digest().hex32(raw)

    def test_register_returns_key_id(self, node_key):
        ring = KeyRing()
        assert ring.register(node_key.public_key()) == key_id(node_key)
        assert key_id(node_key) in ring
        assert len(ring) == 1

    def test_register_accepts_hex(self, node_key):
        ring = KeyRing()
        kid = ring.register(raw_public_key(node_key).hex())
        assert kid == key_id(node_key)

    def test_lookup_is_case_insensitive(self, node_key):
        ring = KeyRing()
        kid = ring.register(node_key)
        assert ring.get(kid.upper().replace("0X", "0x")) is not None

    @pytest.mark.parametrize("bad", [b"\x00" * 31, "0x1234", 42])
    def test_malformed_public_key(self, bad):
        with pytest.raises(ValidationError):
            raw_public_key(bad)


class TestSignatureDecoding:
    def test_round_trip_length(self):
        assert decode_signature("0x" + "00" * 64) == b"\x00" * 64

    @pytest.mark.parametrize("bad", ["0xabc", "0x" + "00" * 63, "zz" * 64, ""])
    def test_rejects_malformed(self, bad):
        assert decode_signature(bad) is None


class TestSignMessages:
    def test_receipt_message_layout(self):
        receipt = make_receipt()
        msg = receipt_sign_message(receipt, "0x" + "ee" * 32)
        assert msg == (
            f"pose:receipt:{receipt.challenge_id}:{receipt.node_id}:0x{'ee' * 32}:1200"
        ).encode()

    def test_relay_message_layout(self):
        assert relay_sign_message("0x01", "tag", 5) == b"pose:relay:0x01:tag:5"

    def test_challenge_message_excludes_signature(self):
        a = make_challenge(challenger_sig="0x01")
        b = make_challenge(challenger_sig="0x02")
        assert challenge_sign_message(a) == challenge_sign_message(b)
        assert challenge_sign_message(a).startswith(b"pose:challenge:{")

    def test_challenge_message_covers_fields(self):
        assert challenge_sign_message(make_challenge(deadline_ms=1)) != challenge_sign_message(make_challenge())


class TestPredicates:
    """Signature predicates accept genuine signatures only."""

    def test_signed_pair_verifies(self, keyring, challenger_key, node_key):
        challenge, receipt = _signed_pair(challenger_key, node_key)
        body_hash = response_body_hash(receipt.response_body)
        assert keyring.verify_challenger_sig(challenge) is True
        assert keyring.verify_node_sig(challenge, receipt, body_hash) is True

    def test_tampered_challenge_fails(self, keyring, challenger_key, node_key):
        challenge, _ = _signed_pair(challenger_key, node_key)
        tampered = dataclasses.replace(challenge, deadline_ms=challenge.deadline_ms + 1)
        assert keyring.verify_challenger_sig(tampered) is False

    def test_tampered_body_fails(self, keyring, challenger_key, node_key):
        challenge, receipt = _signed_pair(challenger_key, node_key)
        tampered = dataclasses.replace(receipt, response_body={"relayLatencyMs": 1})
        assert keyring.verify_node_sig(challenge, tampered, response_body_hash(tampered.response_body)) is False

    def test_signature_by_wrong_key_fails(self, keyring, challenger_key, node_key):
        challenge = make_challenge(challenger_id=key_id(challenger_key))
        forged = sign_challenge(challenge, node_key)
        assert keyring.verify_challenger_sig(forged) is False

    def test_unknown_signer_fails(self, challenger_key, node_key):
        challenge, _ = _signed_pair(challenger_key, node_key)
        assert KeyRing().verify_challenger_sig(challenge) is False

    def test_malformed_signature_fails(self, keyring, challenger_key):
        challenge = make_challenge(challenger_id=key_id(challenger_key), challenger_sig="0xabc")
        assert keyring.verify_challenger_sig(challenge) is False

    def test_relay_signature(self, keyring, node_key):
        sig = sign_relay(node_key, "0x01", "route-1", 1200)
        msg = relay_sign_message("0x01", "route-1", 1200)
        assert keyring.verify_relay_sig(msg, sig, key_id(node_key)) is True
        assert keyring.verify_relay_sig(relay_sign_message("0x01", "route-2", 1200), sig, key_id(node_key)) is False

    def test_signing_does_not_mutate(self, challenger_key):
        challenge = make_challenge(challenger_sig="")
        signed = sign_challenge(challenge, challenger_key)
        assert challenge.challenger_sig == ""
        assert signed.challenger_sig.startswith("0x")
        assert len(signed.challenger_sig) == 2 + 128
