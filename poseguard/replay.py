"""
PoSe Cross-Chain Replay Guard

Gives every relayed cross-layer envelope an idempotent, monotonic
acceptance test that survives process restarts.

Acceptance:
    1. srcChainId != dstChainId                   else "invalid chain route"
    2. nonce > last accepted nonce for the channel else "nonce not monotonic"
    3. replay key not previously accepted          else "replay key already seen"

Replay key (wire contract, bit-exact across nodes):

    digest( u64be(srcChainId) || u64be(dstChainId) || channelId[32]
            || u64be(nonce) || payloadHash[32] )

State:
    lastNonceByChannel  "srcChainId:channelId" -> highest accepted nonce
    replayKeys          every replay key ever accepted

Both only grow; there is no eviction. Long-running deployments should
checkpoint or compact the snapshot out of band.

Durability:
    sync      temp file fsynced, then atomically renamed (default)
    write     atomic rename without fsync
    deferred  commits only mark state dirty; the embedder calls flush().
              Envelopes accepted after the last flush can be replayed
              after a crash.

A missing or corrupt snapshot starts the guard empty (fail-open on read);
a failed write keeps in-memory protection and is logged (fail-open on
write).

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import json
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from poseguard.hardening import Digest, atomic_write_text, encode_bytes32, encode_u64, normalize_hex32
from poseguard.messages import CrossLayerEnvelope, ReplayCheck
from poseguard.observability import PoseLayer, get_logger
from poseguard.schema import SNAPSHOT_VERSION, validate_with_schema

logger = get_logger("guard", PoseLayer.REPLAY)


class ReplayReason:
    """Closed taxonomy of envelope rejection reasons."""
    INVALID_ROUTE = "invalid chain route"
    NONCE_NOT_MONOTONIC = "nonce not monotonic"
    REPLAY_KEY_SEEN = "replay key already seen"


class Durability(Enum):
    """How commits reach durable storage."""
    SYNC = "sync"
    WRITE = "write"
    DEFERRED = "deferred"


def build_replay_key(envelope: CrossLayerEnvelope, digest: Optional[Digest] = None) -> str:
    """Hex digest (no prefix) of the fixed-layout envelope encoding."""
    digest = digest or Digest()
    encoded = b"".join([
        encode_u64(envelope.src_chain_id, "srcChainId"),
        encode_u64(envelope.dst_chain_id, "dstChainId"),
        encode_bytes32(envelope.channel_id, "channelId"),
        encode_u64(envelope.nonce, "nonce"),
        encode_bytes32(envelope.payload_hash, "payloadHash"),
    ])
    return digest.hex(encoded)


class ReplayGuard:
    """
    Validates and commits cross-layer envelopes.

    validate() and commit() each hold the guard's lock; callers that
    validate and commit from several threads should use check_and_commit(),
    which runs both under one critical section.
    """

    def __init__(
        self,
        persistence_path: Optional[Union[str, Path]] = None,
        durability: Union[Durability, str] = Durability.SYNC,
        digest: Optional[Digest] = None,
    ):
        self.persistence_path = Path(persistence_path) if persistence_path else None
        self.durability = Durability(durability)
        self._digest = digest or Digest()
        self._last_nonce_by_channel: Dict[str, int] = {}
        self._replay_keys: Set[str] = set()
        self._lock = threading.RLock()
        self._dirty = False
        self._load_persisted()

    @classmethod
    def from_config(cls, config) -> "ReplayGuard":
        """Build from a PoseConfig."""
        path = config.replay.persistence_path.get()
        return cls(
            persistence_path=path or None,
            durability=config.replay.durability.get(),
            digest=Digest(config.digest.algorithm.get()),
        )

    # -------------------------------------------------------------------------
    # Acceptance
    # -------------------------------------------------------------------------

    def build_replay_key(self, envelope: CrossLayerEnvelope) -> str:
        return build_replay_key(envelope, self._digest)

    def validate(self, envelope: CrossLayerEnvelope) -> ReplayCheck:
        """Judge an envelope without mutating state."""
        with self._lock:
            return self._validate(envelope)

    def commit(self, envelope: CrossLayerEnvelope, replay_key: str) -> None:
        """
        Record an envelope accepted by validate().

        No re-validation happens here; calling it for an envelope that did
        not validate corrupts the watermark.
        """
        with self._lock:
            self._commit(envelope, replay_key)

    def check_and_commit(self, envelope: CrossLayerEnvelope) -> ReplayCheck:
        """Validate and, on success, commit under a single lock."""
        with self._lock:
            check = self._validate(envelope)
            if check.ok:
                self._commit(envelope, check.replay_key)
            return check

    def _validate(self, envelope: CrossLayerEnvelope) -> ReplayCheck:
        if envelope.src_chain_id == envelope.dst_chain_id:
            return self._reject(envelope, ReplayReason.INVALID_ROUTE)

        last = self._last_nonce_by_channel.get(envelope.channel_key)
        if last is not None and envelope.nonce <= last:
            return self._reject(envelope, ReplayReason.NONCE_NOT_MONOTONIC, last_nonce=last)

        replay_key = self.build_replay_key(envelope)
        if replay_key in self._replay_keys:
            return self._reject(envelope, ReplayReason.REPLAY_KEY_SEEN, replay_key=replay_key)

        return ReplayCheck(ok=True, replay_key=replay_key)

    def _commit(self, envelope: CrossLayerEnvelope, replay_key: str) -> None:
        self._last_nonce_by_channel[envelope.channel_key] = envelope.nonce
        self._replay_keys.add(replay_key)
        self._dirty = True
        logger.debug(
            "Envelope committed",
            operation="commit",
            channel=envelope.channel_key,
            nonce=envelope.nonce,
            replay_key=replay_key,
        )
        if self.durability is not Durability.DEFERRED:
            self._persist()

    def _reject(self, envelope: CrossLayerEnvelope, reason: str, replay_key: str = "", **context: Any) -> ReplayCheck:
        logger.info(
            "Envelope rejected",
            operation="validate",
            reason=reason,
            src_chain_id=envelope.src_chain_id,
            dst_chain_id=envelope.dst_chain_id,
            nonce=envelope.nonce,
            **context,
        )
        return ReplayCheck(ok=False, replay_key=replay_key, reason=reason)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def last_nonce(self, src_chain_id: int, channel_id: str) -> Optional[int]:
        key = f"{src_chain_id}:{normalize_hex32(channel_id, 'channelId')}"
        with self._lock:
            return self._last_nonce_by_channel.get(key)

    @property
    def replay_key_count(self) -> int:
        with self._lock:
            return len(self._replay_keys)

    @property
    def dirty(self) -> bool:
        """True when committed state has not reached the snapshot yet."""
        with self._lock:
            return self._dirty

    def snapshot(self) -> Dict[str, Any]:
        """The persisted document for the current state."""
        with self._lock:
            return {
                "version": SNAPSHOT_VERSION,
                "lastNonceByChannel": [
                    [k, str(v)] for k, v in sorted(self._last_nonce_by_channel.items())
                ],
                "replayKeys": sorted(self._replay_keys),
            }

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def flush(self) -> bool:
        """Persist pending state. Returns True when the snapshot is current."""
        with self._lock:
            if not self._dirty:
                return True
            return self._persist()

    def _persist(self) -> bool:
        if self.persistence_path is None:
            self._dirty = False
            return True
        start = time.monotonic()
        try:
            atomic_write_text(
                self.persistence_path,
                json.dumps(self.snapshot()),
                fsync=self.durability is not Durability.WRITE,
            )
        except OSError as e:
            logger.error(
                "Replay snapshot write failed; protection continues in memory only",
                error_code="REPLAY_PERSIST_FAILED",
                path=str(self.persistence_path),
                error=str(e),
            )
            return False
        self._dirty = False
        logger.operation(
            "persist",
            (time.monotonic() - start) * 1000,
            path=str(self.persistence_path),
            replay_keys=len(self._replay_keys),
        )
        return True

    def _load_persisted(self) -> None:
        if self.persistence_path is None or not self.persistence_path.exists():
            return
        try:
            data = json.loads(self.persistence_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as e:
            self._corrupt(f"unreadable: {e}")
            return

        errors = validate_with_schema(data, "replay-snapshot")
        if errors:
            self._corrupt("; ".join(errors[:3]))
            return

        nonces: List[Tuple[str, int]] = []
        for channel_key, nonce_str in data["lastNonceByChannel"]:
            chain_id, channel_id = channel_key.split(":", 1)
            nonces.append((f"{int(chain_id)}:{normalize_hex32(channel_id)}", int(nonce_str)))

        self._last_nonce_by_channel.update(nonces)
        self._replay_keys.update(data["replayKeys"])
        logger.info(
            "Replay snapshot loaded",
            path=str(self.persistence_path),
            channels=len(self._last_nonce_by_channel),
            replay_keys=len(self._replay_keys),
        )

    def _corrupt(self, detail: str) -> None:
        logger.warning(
            "Replay snapshot corrupt, starting empty",
            error_code="REPLAY_SNAPSHOT_CORRUPT",
            path=str(self.persistence_path),
            detail=detail,
        )
