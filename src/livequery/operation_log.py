"""
operation_log.py — Ordered log of pending mutations

Every local create/update/delete becomes a ``PendingOperation`` that moves
through a small state machine:

    OPTIMISTIC ──> SUBMITTED ──> CONFIRMED
        │              │
        └──────────────┴──────> REJECTED

CONFIRMED and REJECTED are terminal. Reaching one removes the operation
from the log and records its ``Outcome``; a correlation id that reached a
terminal state can never be appended or transitioned again.

Ordering is ``(created_at, seq)``: ``created_at`` comes from a clock that
is forced to be non-decreasing, ``seq`` is the insertion counter and
breaks ties. Every view folds operations in exactly this order.
"""

from __future__ import annotations
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import IllegalTransitionError, Rejection, UnknownOperationError
from .record_store import Record, new_temp_identity

logger = logging.getLogger(__name__)

MAX_RETAINED_OUTCOMES = 4096


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(str, Enum):
    OPTIMISTIC = "optimistic"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"

    @property
    def terminal(self) -> bool:
        return self in (OperationState.CONFIRMED, OperationState.REJECTED)


_ALLOWED_TRANSITIONS = {
    OperationState.OPTIMISTIC: frozenset({OperationState.SUBMITTED, OperationState.REJECTED}),
    OperationState.SUBMITTED: frozenset({OperationState.CONFIRMED, OperationState.REJECTED}),
    OperationState.CONFIRMED: frozenset(),
    OperationState.REJECTED: frozenset(),
}


@dataclass
class PendingOperation:
    correlation_id: str
    kind: OperationKind
    collection: str
    payload: Dict[str, Any]
    created_at: float
    seq: int = 0
    target_identity: Any = None
    temp_identity: Optional[str] = None
    state: OperationState = OperationState.OPTIMISTIC
    idempotency_key: Optional[str] = None

    @property
    def identity(self) -> Any:
        """Identity the operation acts on: the server identity, else the temporary one."""
        if self.target_identity is not None:
            return self.target_identity
        return self.temp_identity

    @property
    def order_key(self) -> Tuple[float, int]:
        return (self.created_at, self.seq)

    def optimistic_record(self) -> Record:
        """Snapshot of the record as a pending Create would produce it."""
        return Record(self.collection, self.identity, self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "kind": self.kind.value,
            "collection": self.collection,
            "payload": dict(self.payload),
            "created_at": self.created_at,
            "seq": self.seq,
            "target_identity": self.target_identity,
            "temp_identity": self.temp_identity,
            "state": self.state.value,
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingOperation":
        return cls(
            correlation_id=str(data["correlation_id"]),
            kind=OperationKind(data["kind"]),
            collection=str(data["collection"]),
            payload=dict(data.get("payload") or {}),
            created_at=float(data["created_at"]),
            seq=int(data.get("seq", 0)),
            target_identity=data.get("target_identity"),
            temp_identity=data.get("temp_identity"),
            state=OperationState(data.get("state", OperationState.OPTIMISTIC.value)),
            idempotency_key=data.get("idempotency_key"),
        )


@dataclass(frozen=True)
class Outcome:
    """Terminal result of an operation, kept so late awaiters still get an answer."""
    correlation_id: str
    state: OperationState
    record: Optional[Record] = None
    error: Optional[Rejection] = None


OperationCallback = Callable[[PendingOperation], None]


class OperationLog:
    """Ordered set of non-terminal operations plus a bounded outcome history."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._ops: Dict[str, PendingOperation] = {}
        self._outcomes: "OrderedDict[str, Outcome]" = OrderedDict()
        self._subscribers: List[OperationCallback] = []
        self._seq = 0
        self._last_created_at = float("-inf")
        self.version = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._ops

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[PendingOperation]:
        return iter(self.pending())

    def get(self, correlation_id: str) -> PendingOperation:
        try:
            return self._ops[correlation_id]
        except KeyError:
            raise UnknownOperationError(correlation_id) from None

    def pending(self, collection: Optional[str] = None) -> List[PendingOperation]:
        """Non-terminal operations in fold order."""
        ops = [
            op for op in self._ops.values()
            if collection is None or op.collection == collection
        ]
        ops.sort(key=lambda op: op.order_key)
        return ops

    def outcome(self, correlation_id: str) -> Optional[Outcome]:
        return self._outcomes.get(correlation_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def new_operation(
        self,
        kind: OperationKind,
        collection: str,
        payload: Dict[str, Any],
        *,
        identity: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> PendingOperation:
        """Create an OPTIMISTIC operation, stamp its order key and append it."""
        kind = OperationKind(kind)
        created_at = max(float(self._clock()), self._last_created_at)
        op = PendingOperation(
            correlation_id=uuid.uuid4().hex,
            kind=kind,
            collection=collection,
            payload=dict(payload),
            created_at=created_at,
            target_identity=None if kind is OperationKind.CREATE else identity,
            temp_identity=new_temp_identity() if kind is OperationKind.CREATE else None,
            idempotency_key=idempotency_key,
        )
        self.append(op)
        return op

    def append(self, op: PendingOperation) -> None:
        """Append an operation; hydrated operations keep their stamps.

        Raises:
            IllegalTransitionError: If the correlation id is already live or terminal.
        """
        if op.correlation_id in self._ops or op.correlation_id in self._outcomes:
            raise IllegalTransitionError(f"correlation id {op.correlation_id} already used")
        if op.state.terminal:
            raise IllegalTransitionError(f"cannot append operation in terminal state {op.state.value}")

        self._seq = max(self._seq, op.seq) + 1
        if not op.seq:
            op.seq = self._seq
        self._last_created_at = max(self._last_created_at, op.created_at)
        self._ops[op.correlation_id] = op
        self._changed(op)

    def transition(
        self,
        correlation_id: str,
        new_state: OperationState,
        *,
        record: Optional[Record] = None,
        error: Optional[Rejection] = None,
    ) -> PendingOperation:
        """Move an operation along the state machine.

        A terminal transition removes the operation and records its outcome.

        Raises:
            UnknownOperationError: If the operation is not live and never finished.
            IllegalTransitionError: If the transition is not allowed.
        """
        new_state = OperationState(new_state)
        op = self._ops.get(correlation_id)
        if op is None:
            done = self._outcomes.get(correlation_id)
            if done is not None:
                raise IllegalTransitionError(
                    f"{correlation_id} already {done.state.value}; cannot move to {new_state.value}"
                )
            raise UnknownOperationError(correlation_id)

        if new_state not in _ALLOWED_TRANSITIONS[op.state]:
            raise IllegalTransitionError(
                f"{correlation_id}: {op.state.value} -> {new_state.value}"
            )

        logger.debug("Operation %s: %s -> %s", correlation_id, op.state.value, new_state.value)
        op.state = new_state
        if new_state.terminal:
            del self._ops[correlation_id]
            self._outcomes[correlation_id] = Outcome(correlation_id, new_state, record, error)
            while len(self._outcomes) > MAX_RETAINED_OUTCOMES:
                self._outcomes.popitem(last=False)
        self._changed(op)
        return op

    def retarget(self, collection: str, old_identity: Any, new_identity: Any) -> int:
        """Point pending operations at a confirmed record's server identity."""
        count = 0
        for op in self._ops.values():
            if op.collection == collection and op.target_identity == old_identity:
                op.target_identity = new_identity
                count += 1
        if count:
            self.version += 1
        return count

    # ------------------------------------------------------------------
    # Subscriptions / persistence
    # ------------------------------------------------------------------

    def subscribe(self, callback: OperationCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> List[Dict[str, Any]]:
        return [op.to_dict() for op in self.pending()]

    def _changed(self, op: PendingOperation) -> None:
        self.version += 1
        for callback in list(self._subscribers):
            try:
                callback(op)
            except Exception:
                logger.error("Operation log subscriber failed for %s", op.correlation_id, exc_info=True)
