"""
PoSe Message Types

Immutable value types exchanged between challengers, service nodes and
relayers, together with their JSON wire form.

    ChallengeMessage    issued by a challenger, answered exactly once
    ReceiptMessage      the node's signed answer to one challenge
    VerificationResult  verdict of the Receipt Verifier
    VerifiedReceipt     accepted receipt, the unit handed to scoring
    CrossLayerEnvelope  relayed cross-chain message header
    ReplayCheck         verdict of the Replay Guard

Identifiers are normalized to `0x` + 64 lowercase hex on parsing. Direct
construction does not validate; the encoders that consume the fields do.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from poseguard.hardening import ValidationError, Validators, normalize_hex32


# =============================================================================
# CHALLENGE TYPES
# =============================================================================

class ChallengeType(Enum):
    """Service classes a node can be challenged on."""
    UPTIME = "U"
    STORAGE = "S"
    RELAY = "R"

    @property
    def label(self) -> str:
        """Lowercase name used in rejection reasons, e.g. "relay"."""
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "ChallengeType":
        """Accept the enum, its one-letter code or its name in any case."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            for member in cls:
                if text == member.value or text.upper() == member.name:
                    return member
        raise ValidationError("challengeType", "Unknown challenge type", value)


def _u64(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, str) and value.isascii() and value.isdigit():
        value = int(value)
    Validators.validate_u64(value, key).raise_if_invalid()
    return value


def _require(data: Mapping[str, Any], key: str) -> Any:
    if key not in data:
        raise ValidationError(key, "Missing required field")
    return data[key]


# =============================================================================
# CHALLENGE / RECEIPT
# =============================================================================

@dataclass(frozen=True)
class ChallengeMessage:
    """A single-use service challenge."""
    challenge_id: str
    epoch_id: int
    node_id: str
    challenge_type: ChallengeType
    nonce: str
    rand_seed: str
    issued_at_ms: int
    deadline_ms: int
    query_spec: Dict[str, Any]
    challenger_id: str
    challenger_sig: str = ""

    @property
    def deadline_at_ms(self) -> int:
        """Last instant (inclusive) at which a response is on time."""
        return self.issued_at_ms + self.deadline_ms

    def to_dict(self, include_signature: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "challengeId": self.challenge_id,
            "epochId": str(self.epoch_id),
            "nodeId": self.node_id,
            "challengeType": self.challenge_type.value,
            "nonce": self.nonce,
            "randSeed": self.rand_seed,
            "issuedAtMs": str(self.issued_at_ms),
            "deadlineMs": str(self.deadline_ms),
            "querySpec": dict(self.query_spec),
            "challengerId": self.challenger_id,
        }
        if include_signature:
            d["challengerSig"] = self.challenger_sig
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChallengeMessage":
        nonce = Validators.validate_hex(_require(data, "nonce"), "nonce")
        nonce.raise_if_invalid()
        query_spec = data.get("querySpec") or {}
        if not isinstance(query_spec, Mapping):
            raise ValidationError("querySpec", "Expected object", query_spec)
        return cls(
            challenge_id=normalize_hex32(_require(data, "challengeId"), "challengeId"),
            epoch_id=_u64(data, "epochId"),
            node_id=normalize_hex32(_require(data, "nodeId"), "nodeId"),
            challenge_type=ChallengeType.parse(_require(data, "challengeType")),
            nonce=nonce.sanitized_value,
            rand_seed=normalize_hex32(_require(data, "randSeed"), "randSeed"),
            issued_at_ms=_u64(data, "issuedAtMs"),
            deadline_ms=_u64(data, "deadlineMs"),
            query_spec=dict(query_spec),
            challenger_id=normalize_hex32(_require(data, "challengerId"), "challengerId"),
            challenger_sig=str(data.get("challengerSig") or ""),
        )


@dataclass(frozen=True)
class ReceiptMessage:
    """A node's answer to one challenge."""
    challenge_id: str
    node_id: str
    response_at_ms: int
    response_body: Dict[str, Any] = field(default_factory=dict)
    node_sig: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challengeId": self.challenge_id,
            "nodeId": self.node_id,
            "responseAtMs": str(self.response_at_ms),
            "responseBody": dict(self.response_body),
            "nodeSig": self.node_sig,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReceiptMessage":
        body = data.get("responseBody") or {}
        if not isinstance(body, Mapping):
            raise ValidationError("responseBody", "Expected object", body)
        return cls(
            challenge_id=normalize_hex32(_require(data, "challengeId"), "challengeId"),
            node_id=normalize_hex32(_require(data, "nodeId"), "nodeId"),
            response_at_ms=_u64(data, "responseAtMs"),
            response_body=dict(body),
            node_sig=str(data.get("nodeSig") or ""),
        )


# =============================================================================
# VERDICTS
# =============================================================================

@dataclass(frozen=True)
class VerificationResult:
    """Outcome of judging one challenge/receipt pair."""
    ok: bool
    reason: Optional[str] = None
    response_body_hash: Optional[str] = None

    @classmethod
    def accept(cls, response_body_hash: str) -> "VerificationResult":
        return cls(ok=True, response_body_hash=response_body_hash)

    @classmethod
    def reject(cls, reason: str) -> "VerificationResult":
        return cls(ok=False, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "responseBodyHash": self.response_body_hash}
        return {"ok": False, "reason": self.reason}


@dataclass(frozen=True)
class VerifiedReceipt:
    """An accepted receipt, ready for downstream scoring."""
    challenge_id: str
    epoch_id: int
    node_id: str
    challenge_type: ChallengeType
    response_body_hash: str
    verified_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challengeId": self.challenge_id,
            "epochId": str(self.epoch_id),
            "nodeId": self.node_id,
            "challengeType": self.challenge_type.value,
            "responseBodyHash": self.response_body_hash,
            "verifiedAtMs": str(self.verified_at_ms),
        }


# =============================================================================
# CROSS-LAYER ENVELOPE
# =============================================================================

@dataclass(frozen=True)
class CrossLayerEnvelope:
    """Header of a relayed cross-chain message."""
    src_chain_id: int
    dst_chain_id: int
    channel_id: str
    nonce: int
    payload_hash: str

    @property
    def channel_key(self) -> str:
        """`srcChainId:channelId`, the scope of nonce monotonicity."""
        return f"{self.src_chain_id}:{normalize_hex32(self.channel_id, 'channelId')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "srcChainId": str(self.src_chain_id),
            "dstChainId": str(self.dst_chain_id),
            "channelId": self.channel_id,
            "nonce": str(self.nonce),
            "payloadHash": self.payload_hash,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CrossLayerEnvelope":
        return cls(
            src_chain_id=_u64(data, "srcChainId"),
            dst_chain_id=_u64(data, "dstChainId"),
            channel_id=normalize_hex32(_require(data, "channelId"), "channelId"),
            nonce=_u64(data, "nonce"),
            payload_hash=normalize_hex32(_require(data, "payloadHash"), "payloadHash"),
        )


@dataclass(frozen=True)
class ReplayCheck:
    """Outcome of Replay Guard validation."""
    ok: bool
    replay_key: str = ""
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": self.ok, "replayKey": self.replay_key}
        if self.reason is not None:
            d["reason"] = self.reason
        return d
