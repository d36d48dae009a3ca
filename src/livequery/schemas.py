"""
schemas.py — JSON Schemas for everything that crosses a trust boundary

Push events arrive from the network, persisted rows come back from disk,
and configuration comes from a file; each is checked with ``jsonschema``
before the engine acts on it.
"""

from __future__ import annotations
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

IDENTITY = {"type": ["string", "integer"]}

RECORD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["collection", "identity", "fields"],
    "properties": {
        "collection": {"type": "string", "minLength": 1},
        "identity": IDENTITY,
        "fields": {"type": "object"},
    },
}

GROUND_TRUTH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["identities", "total", "as_of"],
    "properties": {
        "identities": {"type": "array", "items": IDENTITY},
        "total": {"type": "integer", "minimum": 0},
        "as_of": {"type": "number"},
    },
}

OPERATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["correlation_id", "kind", "collection", "payload", "created_at", "state"],
    "properties": {
        "correlation_id": {"type": "string", "minLength": 1},
        "kind": {"enum": ["create", "update", "delete"]},
        "collection": {"type": "string", "minLength": 1},
        "payload": {"type": "object"},
        "created_at": {"type": "number"},
        "seq": {"type": "integer", "minimum": 0},
        "target_identity": {"type": ["string", "integer", "null"]},
        "temp_identity": {"type": ["string", "null"]},
        # Terminal operations are never persisted.
        "state": {"enum": ["optimistic", "submitted"]},
        "idempotency_key": {"type": ["string", "null"]},
    },
}

PUSH_EVENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["collection", "identity", "kind"],
    "properties": {
        "collection": {"type": "string", "minLength": 1},
        "identity": IDENTITY,
        "kind": {"enum": ["create", "update", "delete"]},
        "correlation_id": {"type": ["string", "null"]},
        "record": {
            "anyOf": [
                {"type": "null"},
                {
                    "type": "object",
                    "required": ["fields"],
                    "properties": {"fields": {"type": "object"}},
                },
            ]
        },
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "staleness_seconds": {"type": "number", "minimum": 0},
        "fetch_retries": {"type": "integer", "minimum": 0},
        "submit_retries": {"type": "integer", "minimum": 0},
        "retry_backoff_base": {"type": "number", "minimum": 0},
        "retry_backoff_max": {"type": "number", "minimum": 0},
        "insert_policy": {"enum": ["auto", "prepend", "append"]},
        "persistence_path": {"type": ["string", "null"]},
        "encryption_key_b64": {"type": ["string", "null"]},
        "fetch_window_padding": {"type": "integer", "minimum": 0},
        "collection_schemas": {
            "type": "object",
            "additionalProperties": {"type": "object"},
        },
    },
}


def validation_errors(instance: Any, schema: Dict[str, Any]) -> List[str]:
    """Return human-readable schema violations (empty when valid)."""
    validator = Draft202012Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(instance), key=lambda e: list(e.path)):
        path = ".".join(str(p) for p in error.path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


def field_errors(instance: Any, schema: Dict[str, Any]) -> Dict[str, List[str]]:
    """Group schema violations by top-level field name ("__all__" for the object)."""
    validator = Draft202012Validator(schema)
    grouped: Dict[str, List[str]] = {}
    for error in validator.iter_errors(instance):
        name = str(error.path[0]) if error.path else "__all__"
        grouped.setdefault(name, []).append(error.message)
    return grouped
