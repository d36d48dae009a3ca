"""
reducer.py — Deterministic view reducer

Core invariants:
  1. A view is a pure fold: (ground truth page, pending operations) -> snapshot.
     Nothing is mutated incrementally between passes.
  2. Deterministic: the same page and the same operations produce an equal
     snapshot on every pass, whatever order the operations were handed in
     (they are sorted by ``(created_at, seq)`` first).
  3. Rollback is removal: dropping an operation from the input reproduces
     the snapshot that would exist had it never been made.
  4. The window (limit) is applied after the fold, so pending inserts can
     push rows out of view and pending removals can pull rows in.
  5. An identity that resolves to no record is dropped, never raised.

``patch_page`` applies one confirmed change (a local confirmation or a
push from another actor) to a ground truth page with the same placement
rules the fold uses, so confirmed rows do not disappear while waiting for
the next refetch.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .descriptor import (
    InsertPolicy,
    local_comparator,
    local_predicate,
    resolve_insert_policy,
    sort_fields,
)
from .operation_log import OperationKind, PendingOperation
from .record_store import Record

Resolver = Callable[[str, Any], Optional[Record]]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GroundTruthPage:
    """Last confirmed result for one descriptor: ordered identities + total."""
    identities: Tuple[Any, ...]
    total: int
    as_of: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identities": list(self.identities),
            "total": self.total,
            "as_of": self.as_of,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GroundTruthPage":
        return cls(
            identities=tuple(data.get("identities") or ()),
            total=int(data.get("total", 0)),
            as_of=float(data.get("as_of", 0.0)),
        )


@dataclass(frozen=True)
class ViewSnapshot:
    """Materialized contents of a live view at one instant.

    Behaves like a read-only sequence of ``Record``.
    """
    records: Tuple[Record, ...]
    total: int
    as_of: Optional[float]
    pending: Tuple[str, ...] = ()
    has_ground_truth: bool = False

    @property
    def identities(self) -> Tuple[Any, ...]:
        return tuple(record.identity for record in self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def __getitem__(self, index):
        return self.records[index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": [record.to_dict() for record in self.records],
            "total": self.total,
            "as_of": self.as_of,
            "pending": list(self.pending),
            "has_ground_truth": self.has_ground_truth,
        }


EMPTY_SNAPSHOT = ViewSnapshot(records=(), total=0, as_of=None)


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------

class _Fold:
    """Working state of one pass. Built fresh each time; never reused."""

    def __init__(
        self,
        descriptor: Any,
        identities: Iterable[Any],
        resolve: Resolver,
        default_policy: InsertPolicy,
    ):
        self.collection: str = descriptor.collection
        self.predicate = local_predicate(descriptor)
        self.compare = local_comparator(descriptor)
        self.sort_fields = sort_fields(descriptor)
        self.policy = resolve_insert_policy(descriptor, default_policy)
        self.resolve = resolve

        self.ids: List[Any] = []
        self.present: Set[Any] = set()
        for identity in identities:
            if identity not in self.present:
                self.ids.append(identity)
                self.present.add(identity)

        self.overlay: Dict[Any, Record] = {}
        self.deleted: Set[Any] = set()
        self.delta = 0
        self.affecting: List[str] = []

    def current(self, identity: Any) -> Optional[Record]:
        if identity in self.deleted:
            return None
        record = self.overlay.get(identity)
        if record is not None:
            return record
        return self.resolve(self.collection, identity)

    def insert(self, identity: Any, record: Record) -> None:
        if identity in self.present:
            return
        if self.compare is not None:
            position = len(self.ids)
            for index, other_id in enumerate(self.ids):
                other = self.current(other_id)
                if other is None:
                    continue
                if self.compare(record, other) < 0:
                    position = index
                    break
            self.ids.insert(position, identity)
        elif self.policy is InsertPolicy.PREPEND:
            self.ids.insert(0, identity)
        else:
            self.ids.append(identity)
        self.present.add(identity)
        self.delta += 1

    def remove(self, identity: Any) -> bool:
        if identity not in self.present:
            return False
        self.ids.remove(identity)
        self.present.discard(identity)
        self.delta -= 1
        return True

    def reposition(self, identity: Any, record: Record) -> None:
        if self.remove(identity):
            self.insert(identity, record)

    def place(self, identity: Any, record: Record, changed_fields: Iterable[str]) -> bool:
        """Apply membership rules for a new snapshot of ``identity``.

        Returns True when the view changed.
        """
        if self.predicate is None:
            return identity in self.present
        member = identity in self.present
        matches = bool(self.predicate(record))
        if member and not matches:
            self.remove(identity)
            return True
        if not member and matches:
            self.insert(identity, record)
            return True
        if member and self.compare is not None and self.sort_fields.intersection(changed_fields):
            self.reposition(identity, record)
            return True
        return member

    def apply(self, op: PendingOperation) -> None:
        if op.collection != self.collection:
            return
        identity = op.identity
        changed = False

        if op.kind is OperationKind.CREATE:
            record = op.optimistic_record()
            self.overlay[identity] = record
            self.deleted.discard(identity)
            if self.predicate is not None and identity not in self.present and self.predicate(record):
                self.insert(identity, record)
                changed = True

        elif op.kind is OperationKind.UPDATE:
            base = self.current(identity)
            if base is None:
                return
            record = base.merged(op.payload)
            self.overlay[identity] = record
            changed = self.place(identity, record, op.payload.keys())

        elif op.kind is OperationKind.DELETE:
            changed = self.remove(identity)
            self.deleted.add(identity)
            self.overlay.pop(identity, None)

        if changed:
            self.affecting.append(op.correlation_id)


def fold_order(operations: Iterable[PendingOperation]) -> List[PendingOperation]:
    return sorted(operations, key=lambda op: op.order_key)


def reduce_view(
    descriptor: Any,
    page: Optional[GroundTruthPage],
    operations: Iterable[PendingOperation],
    resolve: Resolver,
    default_policy: InsertPolicy = InsertPolicy.AUTO,
) -> ViewSnapshot:
    """Materialize one view from its ground truth and the pending operations."""
    fold = _Fold(descriptor, page.identities if page else (), resolve, default_policy)
    for op in fold_order(operations):
        fold.apply(op)

    visible = fold.ids
    limit = getattr(descriptor, "limit", None)
    if limit is not None:
        visible = visible[:limit]

    records: List[Record] = []
    for identity in visible:
        record = fold.current(identity)
        if record is not None:
            records.append(record)

    total = (page.total if page else 0) + fold.delta
    return ViewSnapshot(
        records=tuple(records),
        total=max(total, len(records)),
        as_of=page.as_of if page else None,
        pending=tuple(fold.affecting),
        has_ground_truth=page is not None,
    )


# ---------------------------------------------------------------------------
# Ground truth patching
# ---------------------------------------------------------------------------

def patch_page(
    descriptor: Any,
    page: GroundTruthPage,
    identity: Any,
    record: Optional[Record],
    resolve: Resolver,
    previous: Optional[Record] = None,
    default_policy: InsertPolicy = InsertPolicy.AUTO,
    capacity: Optional[int] = None,
) -> GroundTruthPage:
    """Apply one confirmed change to ``page``.

    ``record`` None means the identity was deleted. ``previous`` is the
    snapshot before the change; only sort fields that differ from it move
    the row. ``capacity`` bounds the stored identities.

    Callers must refetch instead when the descriptor has no local predicate.
    """
    fold = _Fold(descriptor, page.identities, resolve, default_policy)
    if record is None:
        fold.remove(identity)
    else:
        fold.overlay[identity] = record
        if previous is None:
            changed_fields = record.fields.keys()
        else:
            changed_fields = [
                name for name in set(record.fields) | set(previous.fields)
                if record.value(name) != previous.value(name)
            ]
        fold.place(identity, record, changed_fields)

    identities = fold.ids
    if capacity is not None:
        identities = identities[:capacity]
    return GroundTruthPage(
        identities=tuple(identities),
        total=max(page.total + fold.delta, 0),
        as_of=page.as_of,
    )
