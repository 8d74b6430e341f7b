"""Canonical JSON encoding and response body fingerprints.

Receipts carry a free-form `responseBody` mapping. Its fingerprint must be
identical on every node that re-verifies the receipt, so bodies are encoded
with sorted keys, compact separators and UTF-8 before hashing.
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional

from poseguard.hardening import Digest, ValidationError


def _coerce_json_types(obj: Any, path: str = "$") -> Any:
    """Coerce Python objects into strict JSON types.

    - datetime/date become ISO strings (UTC, second precision).
    - Non-finite floats are rejected; finite floats keep their shortest repr.
    - Mapping keys are stringified.
    """
    if obj is None:
        return None
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValidationError(path, "Non-finite numbers cannot be canonicalized", obj)
        if obj.is_integer():
            return int(obj)
        return obj
    if isinstance(obj, (datetime, date)):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x, f"{path}[{i}]") for i, x in enumerate(obj)]
    if isinstance(obj, Mapping):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = _coerce_json_types(v, f"{path}.{k}")
        return out
    if isinstance(obj, bytes):
        return "0x" + obj.hex()
    return str(obj)


def canonical_bytes(obj: Any) -> bytes:
    """Canonicalize JSON using a JCS-like subset (sorted keys, no whitespace, UTF-8)."""
    clean = _coerce_json_types(obj)
    text = json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as e:
        # Lone surrogates survive json.loads but have no UTF-8 form.
        raise ValidationError("$", "String not encodable as UTF-8", text[e.start:e.end]) from e


def response_body_hash(body: Mapping[str, Any], digest: Optional[Digest] = None) -> str:
    """Audit fingerprint of a receipt body as `0x` + 64 hex."""
    digest = digest or Digest()
    return digest.hex32(canonical_bytes(body))
