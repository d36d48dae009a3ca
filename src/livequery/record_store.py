"""
record_store.py — Keyed storage of entity snapshots

Records are immutable snapshots keyed by ``(collection, identity)``.
A change is always a new ``Record`` put over the old one; holders of the
old snapshot never see it change underneath them.

Records created locally and not yet confirmed live under a temporary
identity (``tmp_<hex>``). At confirmation the store rekeys the record to
the server identity; each temporary identity can be rekeyed exactly once.
The most recent MAX_REKEY_ALIASES rekeys are remembered so a caller still
holding a temporary identity reaches the confirmed record.

Notifications are synchronous. Inside ``batch()`` they are queued and
delivered once, with the final value per key, when the outermost batch
exits, so a reconciliation pass never exposes a half-applied state.
"""

from __future__ import annotations
import contextlib
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from .errors import RecordStoreError

logger = logging.getLogger(__name__)

TEMP_IDENTITY_PREFIX = "tmp_"
MAX_REKEY_ALIASES = 4096

RecordKey = Tuple[str, Any]
RecordCallback = Callable[[str, Any, Optional["Record"]], None]


def new_temp_identity() -> str:
    return f"{TEMP_IDENTITY_PREFIX}{uuid.uuid4().hex}"


def is_temp_identity(identity: Any) -> bool:
    return isinstance(identity, str) and identity.startswith(TEMP_IDENTITY_PREFIX)


# ---------------------------------------------------------------------------
# Record snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Record:
    """Immutable entity snapshot.

    ``fields`` is exposed as a read-only mapping. ``value("pk")`` returns
    the identity so filters and orderings can address it like a field.
    """
    collection: str
    identity: Any
    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def key(self) -> RecordKey:
        return (self.collection, self.identity)

    @property
    def is_temporary(self) -> bool:
        return is_temp_identity(self.identity)

    def value(self, name: str, default: Any = None) -> Any:
        if name == "pk":
            return self.identity
        return self.fields.get(name, default)

    def merged(self, diff: Mapping[str, Any]) -> "Record":
        """Return a new snapshot with ``diff`` applied over these fields."""
        combined = dict(self.fields)
        combined.update(diff)
        return Record(self.collection, self.identity, combined)

    def with_identity(self, identity: Any) -> "Record":
        return Record(self.collection, identity, self.fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "identity": self.identity,
            "fields": dict(self.fields),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        return cls(
            collection=str(data["collection"]),
            identity=data["identity"],
            fields=dict(data.get("fields") or {}),
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class RecordStore:
    """Process-local record cache. One instance per engine."""

    def __init__(self) -> None:
        self._records: Dict[RecordKey, Record] = {}
        self._subscribers: Dict[RecordKey, List[RecordCallback]] = {}
        self._collection_subscribers: Dict[str, List[RecordCallback]] = {}
        # Keys changed since the last drain_touched(); None marks a removal.
        self._touched: Dict[RecordKey, Optional[Record]] = {}
        self._rekeyed: "OrderedDict[RecordKey, Any]" = OrderedDict()
        self._batch_depth = 0
        self._queued: Dict[RecordKey, Optional[Record]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: str, identity: Any) -> Optional[Record]:
        return self._records.get((collection, identity))

    def __contains__(self, key: RecordKey) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self, collection: Optional[str] = None) -> Iterator[Record]:
        for (coll, _), record in list(self._records.items()):
            if collection is None or coll == collection:
                yield record

    def resolve_identity(self, collection: str, identity: Any) -> Any:
        """Follow a rekey alias: a confirmed temporary identity maps to its server identity."""
        return self._rekeyed.get((collection, identity), identity)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, record: Record) -> None:
        """Store ``record``, overwriting any previous snapshot unconditionally."""
        self._records[record.key] = record
        self._changed(record.key, record)

    def remove(self, collection: str, identity: Any) -> bool:
        key = (collection, identity)
        if self._records.pop(key, None) is None:
            return False
        self._changed(key, None)
        return True

    def rekey(self, collection: str, old_identity: Any, new_identity: Any) -> Optional[Record]:
        """Move a temporary record to its server-assigned identity.

        Returns the record now stored under ``new_identity`` (None when
        neither identity holds a record).

        Raises:
            RecordStoreError: If ``old_identity`` was already rekeyed.
        """
        old_key = (collection, old_identity)
        if old_key in self._rekeyed:
            raise RecordStoreError(
                f"identity {old_identity!r} in {collection!r} was already rekeyed "
                f"to {self._rekeyed[old_key]!r}"
            )
        self._rekeyed[old_key] = new_identity
        while len(self._rekeyed) > MAX_REKEY_ALIASES:
            self._rekeyed.popitem(last=False)

        with self.batch():
            existing = self._records.pop(old_key, None)
            if existing is not None:
                self._changed(old_key, None)
                new_key = (collection, new_identity)
                if new_key not in self._records:
                    self.put(existing.with_identity(new_identity))
        return self.get(collection, new_identity)

    def load(self, records: List[Record]) -> None:
        """Seed the store from persisted state without notifying or marking dirty."""
        for record in records:
            self._records[record.key] = record

    def drain_touched(self) -> Dict[RecordKey, Optional[Record]]:
        """Return and reset the keys changed since the previous call."""
        touched, self._touched = self._touched, {}
        return touched

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, collection: str, identity: Any, callback: RecordCallback) -> Callable[[], None]:
        key = (collection, identity)
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(key, None)

        return unsubscribe

    def subscribe_collection(self, collection: str, callback: RecordCallback) -> Callable[[], None]:
        self._collection_subscribers.setdefault(collection, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._collection_subscribers.get(collection, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._collection_subscribers.pop(collection, None)

        return unsubscribe

    @contextlib.contextmanager
    def batch(self) -> Iterator[None]:
        """Defer notifications until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                queued, self._queued = self._queued, {}
                for key, record in queued.items():
                    self._notify(key, record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _changed(self, key: RecordKey, record: Optional[Record]) -> None:
        self._touched[key] = record
        if self._batch_depth:
            self._queued[key] = record
        else:
            self._notify(key, record)

    def _notify(self, key: RecordKey, record: Optional[Record]) -> None:
        collection, identity = key
        callbacks = list(self._subscribers.get(key, []))
        callbacks.extend(self._collection_subscribers.get(collection, []))
        for callback in callbacks:
            try:
                callback(collection, identity, record)
            except Exception:
                logger.error(
                    "Record subscriber failed for %s:%r", collection, identity, exc_info=True
                )
