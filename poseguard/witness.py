"""
PoSe Standard Witness Predicates

Type-specific checks of a receipt's response body, one per challenge
type. Each predicate is a callable `(challenge, receipt) -> bool` that
returns False on any malformed or inconsistent witness; none of them
raises on untrusted input.

    UptimeWitness   body.ok, positive blockNumber >= querySpec.minBlockNumber
    StorageWitness  Merkle path from the chunk hash folds to merkleRoot
    RelayWitness    signed relay witness bound to this challenge and node

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from poseguard.hardening import Digest, Validators, strip_0x
from poseguard.messages import ChallengeMessage, ReceiptMessage
from poseguard.observability import PoseLayer, get_logger
from poseguard.signing import KeyRing, RelaySigPredicate, relay_sign_message
from poseguard.verifier import VerifierPredicates

logger = get_logger("predicates", PoseLayer.WITNESS)

MAX_RELAY_LATENCY_MS = 300_000


def _as_int(value: Any) -> Optional[int]:
    """Integer from an int, a decimal string or a 0x hex string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.startswith(("0x", "0X")):
                return int(text, 16)
            if text.isascii() and text.isdigit():
                return int(text)
        except ValueError:
            return None
    return None


def _hex32(value: Any) -> Optional[str]:
    result = Validators.validate_hex32(value)
    return result.sanitized_value if result.is_valid else None


def _rejected(kind: str, check: str, challenge: ChallengeMessage) -> bool:
    logger.debug(
        f"{kind} witness check failed",
        operation="witness",
        check=check,
        challenge_id=challenge.challenge_id,
    )
    return False


# =============================================================================
# UPTIME
# =============================================================================

class UptimeWitness:
    """The node answered a block-height query with a recent block."""

    def __call__(self, challenge: ChallengeMessage, receipt: ReceiptMessage) -> bool:
        body = receipt.response_body
        if not body.get("ok"):
            return _rejected("uptime", "ok", challenge)

        block_number = _as_int(body.get("blockNumber"))
        if block_number is None or block_number <= 0:
            return _rejected("uptime", "blockNumber", challenge)

        min_block = _as_int(challenge.query_spec.get("minBlockNumber", 0)) or 0
        if min_block > 0 and block_number < min_block:
            return _rejected("uptime", "minBlockNumber", challenge)
        return True


# =============================================================================
# STORAGE
# =============================================================================

class StorageWitness:
    """
    The node proved custody of a chunk with a Merkle path.

    Folding: at each level the running hash is paired with the sibling,
    running hash on the left when the index bit is 0, and the pair's
    64 raw bytes are digested.
    """

    def __init__(self, digest: Optional[Digest] = None):
        self._digest = digest or Digest()

    def merkle_root(self, leaf_hash: str, path: List[str], index: int) -> str:
        node = bytes.fromhex(strip_0x(leaf_hash))
        for sibling_hex in path:
            sibling = bytes.fromhex(strip_0x(sibling_hex))
            if index % 2 == 0:
                node = self._digest.digest(node + sibling)
            else:
                node = self._digest.digest(sibling + node)
            index //= 2
        return "0x" + node.hex()

    def __call__(self, challenge: ChallengeMessage, receipt: ReceiptMessage) -> bool:
        body = receipt.response_body
        leaf = _hex32(body.get("chunkDataHash", body.get("leafHash")))
        if leaf is None:
            return _rejected("storage", "chunkDataHash", challenge)

        root = _hex32(body.get("merkleRoot"))
        if root is None:
            return _rejected("storage", "merkleRoot", challenge)

        raw_path = body.get("merklePath")
        if not isinstance(raw_path, list):
            return _rejected("storage", "merklePath", challenge)
        path = [_hex32(p) for p in raw_path]
        if any(p is None for p in path):
            return _rejected("storage", "merklePath", challenge)

        index = _as_int(body.get("chunkIndex", 0))
        if index is None or index < 0:
            return _rejected("storage", "chunkIndex", challenge)

        expected_root = challenge.query_spec.get("merkleRoot")
        if expected_root and _hex32(expected_root) != root:
            return _rejected("storage", "expectedRoot", challenge)

        if self.merkle_root(leaf, path, index) != root:
            return _rejected("storage", "merkleFold", challenge)
        return True


# =============================================================================
# RELAY
# =============================================================================

class RelayWitness:
    """
    The node relayed an RPC call and signed a witness of it.

    Expected body:
        {"ok": true, "witness": {"routeTag", "challengeId", "relayer",
         "signature", "responseAtMs", "txHash"?}, ...}
    """

    def __init__(
        self,
        verify_signature: RelaySigPredicate,
        max_latency_ms: int = MAX_RELAY_LATENCY_MS,
    ):
        self._verify_signature = verify_signature
        self.max_latency_ms = max_latency_ms

    def __call__(self, challenge: ChallengeMessage, receipt: ReceiptMessage) -> bool:
        body = receipt.response_body
        if not body.get("ok"):
            return _rejected("relay", "ok", challenge)

        witness = body.get("witness")
        if not isinstance(witness, Mapping):
            return _rejected("relay", "witness", challenge)

        route_tag = witness.get("routeTag")
        signature = witness.get("signature")
        challenge_id = _hex32(witness.get("challengeId"))
        relayer = _hex32(witness.get("relayer"))
        response_at_ms = _as_int(witness.get("responseAtMs"))
        if not route_tag or not isinstance(route_tag, str) or not signature or not isinstance(signature, str):
            return _rejected("relay", "fields", challenge)
        if challenge_id is None or relayer is None or response_at_ms is None:
            return _rejected("relay", "fields", challenge)

        if challenge_id != challenge.challenge_id:
            return _rejected("relay", "challengeId", challenge)

        expected_route = str(challenge.query_spec.get("routeTag") or "")
        if expected_route and route_tag != expected_route:
            return _rejected("relay", "routeTag", challenge)

        if relayer != receipt.node_id:
            return _rejected("relay", "relayer", challenge)

        if response_at_ms != receipt.response_at_ms:
            return _rejected("relay", "responseAtMs", challenge)

        latency = response_at_ms - challenge.issued_at_ms
        if latency < 0 or latency > self.max_latency_ms:
            return _rejected("relay", "latency", challenge)

        tx_hash = witness.get("txHash")
        if tx_hash and (not isinstance(tx_hash, str) or not tx_hash.startswith("0x") or _hex32(tx_hash) is None):
            return _rejected("relay", "txHash", challenge)

        message = relay_sign_message(challenge.challenge_id, route_tag, response_at_ms)
        if not self._verify_signature(message, signature, relayer):
            return _rejected("relay", "signature", challenge)
        return True


def build_standard_predicates(
    keyring: KeyRing,
    digest: Optional[Digest] = None,
    max_relay_latency_ms: int = MAX_RELAY_LATENCY_MS,
) -> VerifierPredicates:
    """Predicate set with Ed25519 signatures and all three standard witnesses."""
    return VerifierPredicates(
        verify_challenger_sig=keyring.verify_challenger_sig,
        verify_node_sig=keyring.verify_node_sig,
        verify_uptime_result=UptimeWitness(),
        verify_storage_result=StorageWitness(digest),
        verify_relay_result=RelayWitness(keyring.verify_relay_sig, max_relay_latency_ms),
    )
