"""
PoSe Nonce Registry

Tracks consumed single-use challenge nonces inside a bounded recency
window. A nonce that is present can never be reported as unseen until it
expires; after expiry it is indistinguishable from a fresh nonce, which is
acceptable because challenge nonces are high-entropy random values.

Keys:
    Receipts are keyed on digest(challengerId || nodeId || nonce || type ||
    u64(epochId)), so colliding nonces issued to different nodes, by
    different challengers or in different epochs never interfere.

Eviction:
    Lazy. Expired entries are purged as a side effect of lookups and
    inserts; there is no background task. When `max_entries` is exceeded
    the oldest entries are dropped first.

Persistence (optional):
    An append-only log with one `key<TAB>firstSeenMs` line per consumed
    nonce. Unreadable logs are treated as empty; failed appends keep the
    in-memory protection for the running process.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional, Union

from poseguard.hardening import (
    Digest,
    atomic_write_text,
    encode_bytes32,
    encode_hex,
    encode_u64,
)
from poseguard.messages import ChallengeMessage
from poseguard.observability import PoseLayer, get_logger

logger = get_logger("registry", PoseLayer.NONCE)

Clock = Callable[[], int]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class NonceRegistry:
    """
    Time-bounded set of consumed nonces.

    `ttl_ms` must exceed the largest `deadlineMs` of any challenge type so
    that no in-flight receipt's nonce expires before it is replay-checked.
    """

    def __init__(
        self,
        ttl_ms: int = 600_000,
        max_entries: int = 100_000,
        persistence_path: Optional[Union[str, Path]] = None,
        clock: Optional[Clock] = None,
        digest: Optional[Digest] = None,
    ):
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self.persistence_path = Path(persistence_path) if persistence_path else None
        self._clock = clock or wall_clock_ms
        self._digest = digest or Digest()
        # key -> first-seen ms, oldest first
        self._entries: "OrderedDict[str, int]" = OrderedDict()
        self._lock = threading.RLock()
        self._load_persisted()

    @classmethod
    def from_config(cls, config, clock: Optional[Clock] = None) -> "NonceRegistry":
        """Build from a PoseConfig."""
        path = config.nonce.persistence_path.get()
        return cls(
            ttl_ms=config.nonce.ttl_ms.get(),
            max_entries=config.nonce.max_entries.get(),
            persistence_path=path or None,
            clock=clock,
            digest=Digest(config.digest.algorithm.get()),
        )

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def build_key(self, challenge: ChallengeMessage) -> str:
        """Replay key of a challenge (lowercase hex, no prefix)."""
        raw = b"".join([
            encode_bytes32(challenge.challenger_id, "challengerId"),
            encode_bytes32(challenge.node_id, "nodeId"),
            encode_hex(challenge.nonce, "nonce"),
            challenge.challenge_type.value.encode("utf-8"),
            encode_u64(challenge.epoch_id, "epochId"),
        ])
        return self._digest.hex(raw)

    # -------------------------------------------------------------------------
    # Registry operations
    # -------------------------------------------------------------------------

    def seen(self, key: str, now_ms: Optional[int] = None) -> bool:
        """True iff `key` was recorded and has not yet expired."""
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            self._evict_expired(now_ms)
            return key in self._entries

    def record(self, key: str, now_ms: Optional[int] = None) -> None:
        """Insert `key`, or refresh its first-seen timestamp if present."""
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            self._evict_expired(now_ms)
            self._insert(key, now_ms)
        self._append(key, now_ms)

    def consume(self, challenge: ChallengeMessage, now_ms: Optional[int] = None) -> bool:
        """
        Atomically check and record the challenge's nonce.

        Returns True if the nonce was fresh, False on replay.
        """
        return self.consume_key(self.build_key(challenge), now_ms)

    def consume_key(self, key: str, now_ms: Optional[int] = None) -> bool:
        """Atomic check-then-record for an opaque key."""
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            self._evict_expired(now_ms)
            if key in self._entries:
                return False
            self._insert(key, now_ms)
        self._append(key, now_ms)
        return True

    def size(self, now_ms: Optional[int] = None) -> int:
        """Number of live (non-expired) entries."""
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            self._evict_expired(now_ms)
            return len(self._entries)

    def _insert(self, key: str, now_ms: int) -> None:
        self._entries.pop(key, None)
        # A timestamp older than the newest entry (explicit now_ms, clock
        # step back) is slotted in so the dict stays ordered by first-seen.
        newer = []
        for existing in reversed(self._entries):
            if self._entries[existing] <= now_ms:
                break
            newer.append(existing)
        self._entries[key] = now_ms
        for existing in reversed(newer):
            self._entries.move_to_end(existing)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.warning(
                "Nonce registry at capacity, evicting oldest entry",
                error_code="NONCE_CAPACITY",
                evicted=evicted,
                max_entries=self.max_entries,
            )

    def _evict_expired(self, now_ms: int) -> None:
        # Entries are ordered by first-seen time, so stop at the first live one.
        while self._entries:
            key, first_seen = next(iter(self._entries.items()))
            if now_ms - first_seen <= self.ttl_ms:
                break
            del self._entries[key]

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_persisted(self) -> None:
        if self.persistence_path is None or not self.persistence_path.exists():
            return
        now_ms = self._clock()
        try:
            lines = self.persistence_path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(
                "Nonce log unreadable, starting empty",
                error_code="NONCE_LOAD_FAILED",
                path=str(self.persistence_path),
                error=str(e),
            )
            return

        loaded: list = []
        for line in lines:
            parts = line.strip().split("\t")
            if not parts[0]:
                continue
            first_seen = now_ms
            if len(parts) > 1 and parts[1].isascii() and parts[1].isdigit():
                first_seen = int(parts[1])
            if now_ms - first_seen <= self.ttl_ms:
                loaded.append((first_seen, parts[0]))

        with self._lock:
            for first_seen, key in sorted(loaded):
                self._insert(key, first_seen)
        logger.info(
            "Nonce log loaded",
            path=str(self.persistence_path),
            entries=len(self._entries),
            lines=len(lines),
        )

    def _append(self, key: str, now_ms: int) -> None:
        if self.persistence_path is None:
            return
        try:
            self.persistence_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.persistence_path, "a", encoding="utf-8") as f:
                f.write(f"{key}\t{now_ms}\n")
        except OSError as e:
            logger.error(
                "Nonce log append failed; replay protection continues in memory only",
                error_code="NONCE_PERSIST_FAILED",
                path=str(self.persistence_path),
                error=str(e),
            )

    def compact(self, now_ms: Optional[int] = None) -> int:
        """Atomically rewrite the log with live entries only. Returns their count."""
        if self.persistence_path is None:
            return 0
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            self._evict_expired(now_ms)
            text = "".join(f"{k}\t{v}\n" for k, v in self._entries.items())
            atomic_write_text(self.persistence_path, text)
            return len(self._entries)
