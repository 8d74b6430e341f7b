"""
PoSe Receipt Verifier

Decides whether a (ChallengeMessage, ReceiptMessage) pair is valid proof
that a node performed the challenged service.

Pipeline (short-circuits on the first failure):

    1. identity      receipt.challengeId / nodeId match the challenge
    2. not early     responseAtMs >= issuedAtMs
    3. challenger    challenger signature predicate
    4. node          node signature predicate (sees the body fingerprint)
    5. not late      responseAtMs <= issuedAtMs + deadlineMs (inclusive)
    6. witness       type-specific predicate, fail-closed when missing
    7. replay        nonce consumed in the registry (only after 1-6 pass)

A response claiming to predate its challenge is rejected before any
signature work, whatever the signatures say. Only step 7 mutates shared
state, so a malformed receipt never burns the challenge's nonce.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from poseguard.canonical import response_body_hash
from poseguard.config import ConfigError
from poseguard.hardening import Digest
from poseguard.messages import (
    ChallengeMessage,
    ChallengeType,
    ReceiptMessage,
    VerificationResult,
    VerifiedReceipt,
)
from poseguard.nonce import Clock, NonceRegistry, wall_clock_ms
from poseguard.observability import PoseLayer, get_logger

logger = get_logger("receipt", PoseLayer.VERIFIER)

ChallengerSigPredicate = Callable[[ChallengeMessage], bool]
NodeSigPredicate = Callable[[ChallengeMessage, ReceiptMessage, str], bool]
WitnessPredicate = Callable[[ChallengeMessage, ReceiptMessage], bool]


# =============================================================================
# REJECTION REASONS
# =============================================================================

class Reason:
    """Closed taxonomy of receipt rejection reasons."""
    MISMATCH = "challenge/receipt mismatch"
    CHALLENGER_SIG = "invalid challenger signature"
    NODE_SIG = "invalid node signature"
    BEFORE_ISSUANCE = "receipt timestamp before challenge issuance"
    TIMEOUT = "receipt timeout"
    NONCE_REPLAY = "nonce replay detected"

    @staticmethod
    def witness_invalid(challenge_type: ChallengeType) -> str:
        return f"{challenge_type.label} witness invalid"

    @staticmethod
    def not_configured(challenge_type: ChallengeType) -> str:
        return f"{challenge_type.label} verifier not configured"


class ReceiptRejected(Exception):
    """Raised by to_verified_receipt when the pair does not verify."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# =============================================================================
# PREDICATE CAPABILITIES
# =============================================================================

@dataclass(frozen=True)
class VerifierPredicates:
    """
    Capabilities supplied by the embedding node.

    Key material and chain-specific witness logic live outside the core;
    each predicate is a pure function. Only a literal True passes a check.
    """
    verify_challenger_sig: ChallengerSigPredicate
    verify_node_sig: NodeSigPredicate
    verify_uptime_result: Optional[WitnessPredicate] = None
    verify_storage_result: Optional[WitnessPredicate] = None
    verify_relay_result: Optional[WitnessPredicate] = None

    def witness_for(self, challenge_type: ChallengeType) -> Optional[WitnessPredicate]:
        return {
            ChallengeType.UPTIME: self.verify_uptime_result,
            ChallengeType.STORAGE: self.verify_storage_result,
            ChallengeType.RELAY: self.verify_relay_result,
        }[challenge_type]

    def configured_types(self) -> Iterable[ChallengeType]:
        return [t for t in ChallengeType if self.witness_for(t) is not None]


# =============================================================================
# VERIFIER
# =============================================================================

class ReceiptVerifier:
    """
    Judges challenge/receipt pairs.

    Safe to share across threads: the only shared mutable state is the
    nonce registry, whose check-and-record is atomic.
    """

    def __init__(
        self,
        predicates: VerifierPredicates,
        nonce_registry: Optional[NonceRegistry] = None,
        digest: Optional[Digest] = None,
        required_types: Iterable[ChallengeType] = (),
        max_deadline_ms: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        self.predicates = predicates
        self.nonce_registry = nonce_registry
        self._digest = digest or Digest()
        self._clock = clock or wall_clock_ms
        self.max_deadline_ms = max_deadline_ms

        missing = [t.label for t in required_types if predicates.witness_for(t) is None]
        if missing:
            raise ConfigError(f"Witness predicate required but not configured: {', '.join(missing)}")

        if (
            nonce_registry is not None
            and max_deadline_ms is not None
            and nonce_registry.ttl_ms <= max_deadline_ms
        ):
            raise ConfigError(
                f"Nonce TTL ({nonce_registry.ttl_ms} ms) must exceed the maximum "
                f"challenge deadline ({max_deadline_ms} ms)"
            )

    @classmethod
    def from_config(
        cls,
        config,
        predicates: VerifierPredicates,
        nonce_registry: Optional[NonceRegistry] = None,
        clock: Optional[Clock] = None,
    ) -> "ReceiptVerifier":
        """Build from a PoseConfig; a registry is created when none is passed."""
        if nonce_registry is None:
            nonce_registry = NonceRegistry.from_config(config, clock=clock)
        return cls(
            predicates,
            nonce_registry=nonce_registry,
            digest=Digest(config.digest.algorithm.get()),
            required_types=[ChallengeType.parse(t) for t in config.verifier.required_types.get()],
            max_deadline_ms=config.verifier.max_deadline_ms.get(),
            clock=clock,
        )

    def verify(self, challenge: ChallengeMessage, receipt: ReceiptMessage) -> VerificationResult:
        """Run the validation pipeline and return a structured verdict."""
        if receipt.challenge_id != challenge.challenge_id or receipt.node_id != challenge.node_id:
            return self._reject(challenge, receipt, Reason.MISMATCH)

        if receipt.response_at_ms < challenge.issued_at_ms:
            return self._reject(challenge, receipt, Reason.BEFORE_ISSUANCE)

        if not self._call("challenger_sig", self.predicates.verify_challenger_sig, challenge):
            return self._reject(challenge, receipt, Reason.CHALLENGER_SIG)

        body_hash = response_body_hash(receipt.response_body, self._digest)

        if not self._call("node_sig", self.predicates.verify_node_sig, challenge, receipt, body_hash):
            return self._reject(challenge, receipt, Reason.NODE_SIG)

        if receipt.response_at_ms > challenge.deadline_at_ms:
            return self._reject(challenge, receipt, Reason.TIMEOUT)

        witness = self.predicates.witness_for(challenge.challenge_type)
        if witness is None:
            return self._reject(challenge, receipt, Reason.not_configured(challenge.challenge_type))
        if not self._call("witness", witness, challenge, receipt):
            return self._reject(challenge, receipt, Reason.witness_invalid(challenge.challenge_type))

        if self.nonce_registry is not None:
            if not self.nonce_registry.consume(challenge, self._clock()):
                return self._reject(challenge, receipt, Reason.NONCE_REPLAY)

        logger.debug(
            "Receipt accepted",
            operation="verify",
            challenge_id=challenge.challenge_id,
            node_id=challenge.node_id,
            challenge_type=challenge.challenge_type.label,
            response_body_hash=body_hash,
        )
        return VerificationResult.accept(body_hash)

    def to_verified_receipt(
        self,
        challenge: ChallengeMessage,
        receipt: ReceiptMessage,
        verified_at_ms: Optional[int] = None,
    ) -> VerifiedReceipt:
        """Verify and wrap the result for scoring; raises ReceiptRejected on failure."""
        result = self.verify(challenge, receipt)
        if not result.ok:
            raise ReceiptRejected(result.reason or "")
        return VerifiedReceipt(
            challenge_id=challenge.challenge_id,
            epoch_id=challenge.epoch_id,
            node_id=challenge.node_id,
            challenge_type=challenge.challenge_type,
            response_body_hash=result.response_body_hash or "",
            verified_at_ms=self._clock() if verified_at_ms is None else verified_at_ms,
        )

    def _call(self, name: str, predicate: Callable[..., bool], *args) -> bool:
        # A predicate that raises is a failed check.
        try:
            return predicate(*args) is True
        except Exception:
            logger.warning(
                f"Predicate {name} raised; treating as failed",
                error_code="PREDICATE_ERROR",
                exc_info=True,
                predicate=name,
            )
            return False

    def _reject(
        self,
        challenge: ChallengeMessage,
        receipt: ReceiptMessage,
        reason: str,
    ) -> VerificationResult:
        logger.info(
            "Receipt rejected",
            operation="verify",
            reason=reason,
            challenge_id=challenge.challenge_id,
            node_id=receipt.node_id,
        )
        return VerificationResult.reject(reason)
