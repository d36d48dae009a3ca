"""
errors.py — livequery Error Taxonomy

Standardized error codes for operation outcomes, fetch failures, and
engine misuse. Rejections are the terminal outcomes handed back through
``await_confirmation``; everything else is raised at the call site.
"""

from typing import Any, Dict, List, Optional

__all__ = [
    "LiveQueryError",
    "Rejection",
    "ValidationRejection",
    "ConflictRejection",
    "TransportFailure",
    "CorruptPersistedState",
    "IllegalTransitionError",
    "UnknownOperationError",
    "RecordStoreError",
    "QueryDescriptorError",
    "ConfigError",
]


class LiveQueryError(Exception):
    """Base class for all livequery errors."""
    def __init__(
        self,
        code: str,
        message: str,
        context: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.context = context

        full_msg = f"[{code}] {message}"
        if context:
            full_msg += f" Context: {context}"

        super().__init__(full_msg)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# Operation rejections (E1xx, E2xx)
class Rejection(LiveQueryError):
    """Terminal rejection of a pending operation. Always rolls back."""
    kind = "rejection"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind
        return data


class ValidationRejection(Rejection):
    kind = "validation"

    def __init__(
        self,
        context: Optional[str] = None,
        field_errors: Optional[Dict[str, List[str]]] = None,
    ):
        self.field_errors = dict(field_errors or {})
        super().__init__("LQ_E100", "The operation payload failed validation.", context)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field_errors"] = self.field_errors
        return data


class ConflictRejection(Rejection):
    kind = "conflict"

    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E101", "Remote state diverged from the state the operation assumed.", context)


class TransportFailure(Rejection):
    kind = "transport"

    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E200", "The remote store could not be reached or returned no usable answer.", context)


# Persistence errors (E3xx)
class CorruptPersistedState(LiveQueryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E300", "A persisted entry could not be decoded.", context)


# Engine misuse (E4xx)
class IllegalTransitionError(LiveQueryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E400", "Operation state transition is not allowed.", context)


class UnknownOperationError(LiveQueryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E401", "No operation is known under this correlation id.", context)


class RecordStoreError(LiveQueryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E402", "Record store invariant violated.", context)


class QueryDescriptorError(LiveQueryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E403", "Query descriptor is malformed.", context)


# Configuration (E5xx)
class ConfigError(LiveQueryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LQ_E500", "Engine configuration is invalid.", context)
