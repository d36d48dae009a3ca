"""
remote.py — Remote store and push channel seams

The engine consumes two external collaborators:

  RemoteStore.fetch(descriptor, window) -> FetchResult
  RemoteStore.submit(operation)         -> confirmed Record (None for deletes)
      raising ValidationRejection / ConflictRejection on rejection and
      TransportFailure when the store cannot be reached

  PushChannel.events() -> async iterator of PushEvent (or raw dicts)

Raw push payloads are validated against ``PUSH_EVENT_SCHEMA`` by
``PushEvent.from_dict``.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Protocol, Tuple, Union

from .errors import ValidationRejection
from .operation_log import PendingOperation
from .record_store import Record
from .reducer import GroundTruthPage
from .schemas import PUSH_EVENT_SCHEMA, validation_errors


@dataclass(frozen=True)
class Window:
    """Rows requested from the remote store: ``limit`` None means all."""
    offset: int = 0
    limit: Optional[int] = None


@dataclass(frozen=True)
class FetchResult:
    identities: Tuple[Any, ...]
    records: Tuple[Record, ...]
    total: int
    as_of: float

    def to_page(self) -> GroundTruthPage:
        return GroundTruthPage(
            identities=tuple(self.identities),
            total=int(self.total),
            as_of=float(self.as_of),
        )


class PushKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class PushEvent:
    """Change confirmed by the remote store.

    ``record`` None means the new field values are unknown. A
    ``correlation_id`` naming one of our own submitted operations marks the
    event as the echo of that operation.
    """
    collection: str
    identity: Any
    kind: PushKind
    record: Optional[Record] = None
    correlation_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PushEvent":
        """Validate and decode a raw push payload.

        Raises:
            ValidationRejection: If the payload does not match the push schema.
        """
        errors = validation_errors(dict(data), PUSH_EVENT_SCHEMA)
        if errors:
            raise ValidationRejection("malformed push event: " + "; ".join(errors))
        raw_record = data.get("record")
        record = None
        if raw_record is not None:
            record = Record(data["collection"], data["identity"], raw_record["fields"])
        return cls(
            collection=data["collection"],
            identity=data["identity"],
            kind=PushKind(data["kind"]),
            record=record,
            correlation_id=data.get("correlation_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "identity": self.identity,
            "kind": self.kind.value,
            "record": None if self.record is None else {"fields": dict(self.record.fields)},
            "correlation_id": self.correlation_id,
        }


class RemoteStore(Protocol):
    """Client for the remote store.

    Raise ``TransportFailure`` (or let an ``OSError`` such as
    ``ConnectionError`` escape) when the call did not get an answer; both are
    retried. Raise a ``Rejection`` when the server refused the operation.
    """

    async def fetch(self, descriptor: Any, window: Window) -> FetchResult:
        ...

    async def submit(self, operation: PendingOperation) -> Optional[Record]:
        ...


class PushChannel(Protocol):
    def events(self) -> AsyncIterator[Union[PushEvent, Mapping[str, Any]]]:
        ...
