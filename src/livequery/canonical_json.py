"""
canonical_json.py — Deterministic JSON encoding for livequery

Every key the engine compares or persists goes through this module:
query descriptor keys, record keys, and the bodies of persisted rows.

Canonical form (JCS-like, reference: RFC 8785):
- UTF-8 encoding
- Object keys sorted lexicographically by Unicode codepoint
- No insignificant whitespace
- No NaN/Infinity (raises ValueError)

Two objects that are logically equal MUST produce identical canonical
bytes, otherwise two equal queries would be treated as different views.
"""

from __future__ import annotations
import json
from typing import Any


def canonical_dumps(obj: Any) -> str:
    """Return canonical JSON string with sorted keys and no whitespace."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def record_key(collection: str, identity: Any) -> str:
    """Return the persisted key ``collection:identity`` for a record.

    The identity is JSON-encoded so ``1`` and ``"1"`` never collide.
    """
    return f"{collection}:{canonical_dumps(identity)}"
