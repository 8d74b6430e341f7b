"""
PoSe Guard: proof-of-service receipt verification and replay protection

The anti-fraud core of a proof-of-service node. It judges whether a
challenge/receipt pair proves that a node really performed a service
(uptime polling, storage custody, RPC relaying), and makes every witness
and every relayed cross-chain message strictly single-use.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          VERIFICATION CORE                               │
    │                                                                          │
    │  JUDGMENT                                                                │
    │    verifier.py    Receipt pipeline: identity, signatures, timing,       │
    │                   witness, nonce replay                                  │
    │    witness.py     Standard uptime / storage / relay witnesses           │
    │    signing.py     Ed25519 key ring and canonical sign messages          │
    │                                                                          │
    │  SINGLE-USE STATE                                                        │
    │    nonce.py       Time-bounded registry of consumed challenge nonces    │
    │    replay.py      Per-channel watermarks and durable replay-key set     │
    │                                                                          │
    │  FOUNDATIONS                                                             │
    │    messages.py    Challenge, receipt, envelope and verdict types        │
    │    canonical.py   Canonical JSON and response body fingerprints         │
    │    hardening.py   Validators, wire encoders, digest, atomic writes      │
    │    schema.py      JSON Schemas for wire documents and snapshots         │
    │    config.py      YAML / environment configuration                      │
    │    observability.py  Structured logging                                 │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Verdicts, not exceptions: expected failures come back as a closed set
    of reason strings. Malformed shapes (out-of-range integers, short hex)
    raise ValidationError before any key is derived.

    Commit last: the only mutation, consuming the nonce, happens after every
    other check has passed.

    Fail open on storage: an unreadable snapshot starts empty and a failed
    write keeps in-memory protection. Both are logged with an error code.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy import modules on first access."""

    if name in ("ChallengeType", "ChallengeMessage", "ReceiptMessage", "VerificationResult",
                "VerifiedReceipt", "CrossLayerEnvelope", "ReplayCheck"):
        from poseguard import messages
        return getattr(messages, name)

    if name in ("ReceiptVerifier", "VerifierPredicates", "Reason", "ReceiptRejected"):
        from poseguard import verifier
        return getattr(verifier, name)

    if name in ("NonceRegistry",):
        from poseguard import nonce
        return getattr(nonce, name)

    if name in ("ReplayGuard", "ReplayReason", "Durability", "build_replay_key"):
        from poseguard import replay
        return getattr(replay, name)

    if name in ("UptimeWitness", "StorageWitness", "RelayWitness", "build_standard_predicates"):
        from poseguard import witness
        return getattr(witness, name)

    if name in ("KeyRing", "sign_challenge", "sign_receipt", "sign_relay"):
        from poseguard import signing
        return getattr(signing, name)

    if name in ("Digest", "ValidationError"):
        from poseguard import hardening
        return getattr(hardening, name)

    if name in ("response_body_hash", "canonical_bytes"):
        from poseguard import canonical
        return getattr(canonical, name)

    if name in ("ConfigError", "PoseConfig", "get_config"):
        from poseguard import config
        return getattr(config, name)

    if name in ("configure_logging",):
        from poseguard import observability
        return getattr(observability, name)

    raise AttributeError(f"module 'poseguard' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Messages
    "ChallengeType",
    "ChallengeMessage",
    "ReceiptMessage",
    "VerificationResult",
    "VerifiedReceipt",
    "CrossLayerEnvelope",
    "ReplayCheck",
    # Verifier
    "ReceiptVerifier",
    "VerifierPredicates",
    "Reason",
    "ReceiptRejected",
    # Replay protection
    "NonceRegistry",
    "ReplayGuard",
    "ReplayReason",
    "Durability",
    "build_replay_key",
    # Witnesses and signatures
    "UptimeWitness",
    "StorageWitness",
    "RelayWitness",
    "build_standard_predicates",
    "KeyRing",
    "sign_challenge",
    "sign_receipt",
    "sign_relay",
    # Foundations
    "Digest",
    "ValidationError",
    "response_body_hash",
    "canonical_bytes",
    "ConfigError",
    "PoseConfig",
    "get_config",
    "configure_logging",
]
