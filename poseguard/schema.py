"""JSON Schema validation for PoSe documents.

Schemas for the wire documents accepted by the CLI and for the persisted
Replay Guard snapshot. Validators are built once and cached.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

# `$` also matches before a final newline: fixed-width strings cap their
# length, the rest reject a trailing newline explicitly.
_NO_TRAILING_NEWLINE = {"not": {"pattern": "\\n$"}}

HEX32 = {"type": "string", "pattern": "^(0x)?[0-9a-fA-F]{64}$", "maxLength": 66}
HEX = {"type": "string", "pattern": "^(0x)?([0-9a-fA-F]{2})*$", **_NO_TRAILING_NEWLINE}
U64 = {
    "oneOf": [
        {"type": "integer", "minimum": 0, "maximum": 18446744073709551615},
        {"type": "string", "pattern": "^[0-9]{1,20}$", "maxLength": 20},
    ]
}

SNAPSHOT_VERSION = 1

SCHEMAS: Dict[str, Dict[str, Any]] = {
    "replay-snapshot": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "Replay Guard snapshot",
        "type": "object",
        "properties": {
            "version": {"const": SNAPSHOT_VERSION},
            "lastNonceByChannel": {
                "type": "array",
                "items": {
                    "type": "array",
                    "prefixItems": [
                        {"type": "string", "pattern": "^[0-9]{1,20}:(0x)?[0-9a-fA-F]{64}$", **_NO_TRAILING_NEWLINE},
                        {"type": "string", "pattern": "^[0-9]{1,20}$", "maxLength": 20},
                    ],
                    "minItems": 2,
                    "maxItems": 2,
                },
            },
            "replayKeys": {
                "type": "array",
                "items": {"type": "string", "pattern": "^[0-9a-f]{64}$", "maxLength": 64},
            },
        },
        "required": ["lastNonceByChannel", "replayKeys"],
    },
    "envelope": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "Cross-layer envelope",
        "type": "object",
        "properties": {
            "srcChainId": U64,
            "dstChainId": U64,
            "channelId": HEX32,
            "nonce": U64,
            "payloadHash": HEX32,
        },
        "required": ["srcChainId", "dstChainId", "channelId", "nonce", "payloadHash"],
    },
    "challenge": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "PoSe challenge",
        "type": "object",
        "properties": {
            "challengeId": HEX32,
            "epochId": U64,
            "nodeId": HEX32,
            "challengeType": {"type": "string"},
            "nonce": HEX,
            "randSeed": HEX32,
            "issuedAtMs": U64,
            "deadlineMs": U64,
            "querySpec": {"type": "object"},
            "challengerId": HEX32,
            "challengerSig": {"type": "string"},
        },
        "required": [
            "challengeId", "epochId", "nodeId", "challengeType", "nonce",
            "randSeed", "issuedAtMs", "deadlineMs", "challengerId",
        ],
    },
    "receipt": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "PoSe receipt",
        "type": "object",
        "properties": {
            "challengeId": HEX32,
            "nodeId": HEX32,
            "responseAtMs": U64,
            "responseBody": {"type": "object"},
            "nodeSig": {"type": "string"},
        },
        "required": ["challengeId", "nodeId", "responseAtMs", "responseBody"],
    },
}


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Cached validator for one of the named schemas."""
    if name not in SCHEMAS:
        raise KeyError(f"Unknown schema: {name}")
    return Draft202012Validator(SCHEMAS[name])


def validate_with_schema(obj: Any, name: str) -> List[str]:
    """Validate `obj` against a named schema. Returns error messages (empty if valid)."""
    validator = schema_validator(name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=str)
    ]
