"""
PoSe Signature Capability (Ed25519)

Signature predicates for the Receipt Verifier, backed by a key ring of
Ed25519 public keys. Participants are identified by the 32-byte digest of
their raw public key, so `challengerId` and `nodeId` are key fingerprints.

Sign messages:
    challenge  b"pose:challenge:" + canonical JSON of the challenge
               without challengerSig
    receipt    "pose:receipt:<challengeId>:<nodeId>:<responseBodyHash>:<responseAtMs>"
    relay      "pose:relay:<challengeId>:<routeTag>:<responseAtMs>"

Signatures travel as `0x` + 128 hex (the raw 64-byte Ed25519 signature).
Unknown signers and malformed signatures verify as False; they never raise.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Callable, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from poseguard.canonical import canonical_bytes, response_body_hash
from poseguard.hardening import Digest, ValidationError, Validators, strip_0x
from poseguard.messages import ChallengeMessage, ReceiptMessage
from poseguard.observability import PoseLayer, get_logger

logger = get_logger("signing", PoseLayer.VERIFIER)

PublicKeyLike = Union[Ed25519PublicKey, Ed25519PrivateKey, bytes, str]
RelaySigPredicate = Callable[[bytes, str, str], bool]


# =============================================================================
# SIGN MESSAGES
# =============================================================================

def challenge_sign_message(challenge: ChallengeMessage) -> bytes:
    return b"pose:challenge:" + canonical_bytes(challenge.to_dict(include_signature=False))


def receipt_sign_message(receipt: ReceiptMessage, body_hash: str) -> bytes:
    return (
        f"pose:receipt:{receipt.challenge_id}:{receipt.node_id}:"
        f"{body_hash}:{receipt.response_at_ms}"
    ).encode("utf-8")


def relay_sign_message(challenge_id: str, route_tag: str, response_at_ms: int) -> bytes:
    return f"pose:relay:{challenge_id}:{route_tag}:{response_at_ms}".encode("utf-8")


# =============================================================================
# KEY HANDLING
# =============================================================================

def raw_public_key(key: PublicKeyLike) -> bytes:
    """Raw 32-byte public key from a key object, raw bytes or hex."""
    if isinstance(key, Ed25519PrivateKey):
        key = key.public_key()
    if isinstance(key, Ed25519PublicKey):
        return key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
    if isinstance(key, str):
        result = Validators.validate_hex32(key, "publicKey")
        result.raise_if_invalid()
        key = bytes.fromhex(strip_0x(result.sanitized_value))
    if not isinstance(key, bytes) or len(key) != 32:
        raise ValidationError("publicKey", "Ed25519 public key must be 32 bytes", key)
    return key


def key_id(key: PublicKeyLike, digest: Optional[Digest] = None) -> str:
    """The 32-byte participant id of a public key (`0x` + 64 hex)."""
    return (digest or Digest()).hex32(raw_public_key(key))


def encode_signature(sig: bytes) -> str:
    return "0x" + sig.hex()


def decode_signature(value: str) -> Optional[bytes]:
    """Raw signature bytes, or None when the value is not a 64-byte hex string."""
    result = Validators.validate_hex(value, "signature")
    if not result.is_valid:
        return None
    raw = bytes.fromhex(strip_0x(result.sanitized_value))
    return raw if len(raw) == 64 else None


# =============================================================================
# KEY RING
# =============================================================================

class KeyRing:
    """
    Registry of trusted Ed25519 public keys, indexed by participant id.

    Registration is thread-safe; verification reads a consistent mapping.
    """

    def __init__(self, digest: Optional[Digest] = None):
        self._digest = digest or Digest()
        self._keys: Dict[str, Ed25519PublicKey] = {}
        self._lock = threading.Lock()

    def register(self, key: PublicKeyLike) -> str:
        """Trust a public key. Returns its participant id."""
        raw = raw_public_key(key)
        kid = self._digest.hex32(raw)
        with self._lock:
            self._keys[kid] = Ed25519PublicKey.from_public_bytes(raw)
        logger.debug("Public key registered", operation="register", key_id=kid)
        return kid

    def get(self, participant_id: str) -> Optional[Ed25519PublicKey]:
        with self._lock:
            return self._keys.get(participant_id.lower())

    def __contains__(self, participant_id: str) -> bool:
        return self.get(participant_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def verify(self, message: bytes, signature: str, signer_id: str) -> bool:
        """True iff `signature` is a valid signature of `message` by `signer_id`."""
        public_key = self.get(signer_id) if isinstance(signer_id, str) else None
        if public_key is None:
            return False
        sig = decode_signature(signature) if isinstance(signature, str) else None
        if sig is None:
            return False
        try:
            public_key.verify(sig, message)
        except InvalidSignature:
            return False
        return True

    # -------------------------------------------------------------------------
    # Predicates
    # -------------------------------------------------------------------------

    def verify_challenger_sig(self, challenge: ChallengeMessage) -> bool:
        return self.verify(
            challenge_sign_message(challenge),
            challenge.challenger_sig,
            challenge.challenger_id,
        )

    def verify_node_sig(self, challenge: ChallengeMessage, receipt: ReceiptMessage, body_hash: str) -> bool:
        return self.verify(
            receipt_sign_message(receipt, body_hash),
            receipt.node_sig,
            receipt.node_id,
        )

    def verify_relay_sig(self, message: bytes, signature: str, relayer_id: str) -> bool:
        return self.verify(message, signature, relayer_id)


# =============================================================================
# SIGNING HELPERS
# =============================================================================

def sign_challenge(challenge: ChallengeMessage, private_key: Ed25519PrivateKey) -> ChallengeMessage:
    """Return a copy of `challenge` carrying the challenger's signature."""
    sig = private_key.sign(challenge_sign_message(challenge))
    return dataclasses.replace(challenge, challenger_sig=encode_signature(sig))


def sign_receipt(
    receipt: ReceiptMessage,
    private_key: Ed25519PrivateKey,
    digest: Optional[Digest] = None,
) -> ReceiptMessage:
    """Return a copy of `receipt` carrying the node's signature over the body fingerprint."""
    body_hash = response_body_hash(receipt.response_body, digest)
    sig = private_key.sign(receipt_sign_message(receipt, body_hash))
    return dataclasses.replace(receipt, node_sig=encode_signature(sig))


def sign_relay(
    private_key: Ed25519PrivateKey,
    challenge_id: str,
    route_tag: str,
    response_at_ms: int,
) -> str:
    return encode_signature(private_key.sign(relay_sign_message(challenge_id, route_tag, response_at_ms)))
