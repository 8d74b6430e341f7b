"""
PoSe Validation and Hardening Module

Defensive primitives shared by the verification core:

1. Error types for precondition violations
2. Input validators for 32-byte hex ids and unsigned 64-bit integers
3. Bit-exact wire encoders (big-endian u64, raw bytes32)
4. The digest primitive used for replay keys and body fingerprints
5. Crash-safe file replacement and cross-process locks for persisted state

Security Model:
    - All inputs are untrusted until validated
    - Malformed shapes abort encoding; nothing is truncated or coerced
    - Digest comparisons use constant-time equality

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import hmac
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, List, Union


# =============================================================================
# ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """Precondition violation: a value has the wrong shape or range."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the single error, or ValidationErrors for several."""
        if self.is_valid:
            return
        if len(self.errors) == 1:
            raise self.errors[0]
        raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

U64_MAX = 0xFFFFFFFFFFFFFFFF


class Validators:
    """Collection of input validators."""

    HEX32_PATTERN = re.compile(r'(0x)?[0-9a-fA-F]{64}')
    HEX_PATTERN = re.compile(r'(0x)?([0-9a-fA-F]{2})*')

    @classmethod
    def validate_u64(cls, value: Any, field_name: str = "value") -> ValidationResult:
        """Validate an unsigned 64-bit integer (bool is rejected)."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])
        if value < 0 or value > U64_MAX:
            return ValidationResult.failure([
                ValidationError(field_name, "u64 out of range", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_hex32(cls, value: Any, field_name: str = "hex32") -> ValidationResult:
        """Validate a 32-byte hex string, returning the 0x-prefixed lowercase form."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])
        if not cls.HEX32_PATTERN.fullmatch(value):
            return ValidationResult.failure([
                ValidationError(field_name, "bytes32 hex required (64 hex characters)", value)
            ])
        return ValidationResult.success("0x" + strip_0x(value).lower())

    @classmethod
    def validate_hex(cls, value: Any, field_name: str = "hex") -> ValidationResult:
        """Validate an even-length hex string of any size."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])
        if not cls.HEX_PATTERN.fullmatch(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Invalid hex string", value)
            ])
        return ValidationResult.success("0x" + strip_0x(value).lower())


def strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def normalize_hex32(value: Any, field_name: str = "hex32") -> str:
    """Return the canonical `0x` + 64 lowercase hex form or raise ValidationError."""
    result = Validators.validate_hex32(value, field_name)
    result.raise_if_invalid()
    return result.sanitized_value


# =============================================================================
# WIRE ENCODERS
# =============================================================================

def encode_u64(value: Any, field_name: str = "u64") -> bytes:
    """Big-endian 8-byte encoding of an unsigned 64-bit integer."""
    Validators.validate_u64(value, field_name).raise_if_invalid()
    return value.to_bytes(8, "big")


def encode_bytes32(value: Any, field_name: str = "bytes32") -> bytes:
    """Raw 32 bytes of a 64-character hex string (optional 0x prefix)."""
    return bytes.fromhex(strip_0x(normalize_hex32(value, field_name)))


def encode_hex(value: Any, field_name: str = "hex") -> bytes:
    """Raw bytes of an even-length hex string (optional 0x prefix)."""
    result = Validators.validate_hex(value, field_name)
    result.raise_if_invalid()
    return bytes.fromhex(strip_0x(result.sanitized_value))


# =============================================================================
# DIGEST PRIMITIVE
# =============================================================================

DEFAULT_DIGEST = "sha256"
SUPPORTED_DIGESTS = ("sha256", "sha3_256", "blake2s")


class Digest:
    """
    256-bit collision-resistant digest over arbitrary bytes.

    The algorithm is fixed at construction. Every node that exchanges
    replay keys must run the same algorithm.
    """

    def __init__(self, algorithm: str = DEFAULT_DIGEST):
        if algorithm not in SUPPORTED_DIGESTS:
            raise ValidationError(
                "digest.algorithm",
                f"Unsupported digest, expected one of {', '.join(SUPPORTED_DIGESTS)}",
                algorithm,
            )
        self.algorithm = algorithm

    def digest(self, data: bytes) -> bytes:
        return hashlib.new(self.algorithm, data).digest()

    def hex(self, data: bytes) -> str:
        """Lowercase hex digest without prefix."""
        return hashlib.new(self.algorithm, data).hexdigest()

    def hex32(self, data: bytes) -> str:
        """Lowercase hex digest with the `0x` prefix used for 32-byte fields."""
        return "0x" + self.hex(data)

    def __repr__(self) -> str:
        return f"Digest({self.algorithm!r})"


def secure_compare_str(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())


# =============================================================================
# CRASH-SAFE PERSISTENCE
# =============================================================================

def atomic_write_text(path: Union[str, Path], text: str, fsync: bool = True) -> None:
    """
    Replace `path` with `text` so readers never observe a partial file.

    The content goes to a temporary file in the same directory (same
    volume) and is renamed over the target with os.replace.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            if fsync:
                os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    if fsync:
        _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    # Directory fsync is unsupported on some platforms (Windows).
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextmanager
def exclusive_file_lock(path: Union[str, Path]) -> Iterator[Path]:
    """
    Hold an exclusive advisory lock on `<path>.lock` (Unix flock).

    Serializes read-modify-write cycles on `path` across processes. Blocks
    until the lock is free; it is released when the block exits.
    """
    import fcntl  # Unix only

    path = Path(path)
    lock_path = path.with_name(path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a+") as fp:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX)
        try:
            yield lock_path
        finally:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
