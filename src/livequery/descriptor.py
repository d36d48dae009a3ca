"""
descriptor.py — Query descriptor seam

The engine never interprets a query itself. It talks to descriptors
through the small ``QueryDescriptor`` protocol below and the accessor
helpers, which tolerate descriptors that omit the optional parts:

  canonical_key()  required — equal keys mean the same live view
  matches          optional — local predicate, None when the filter needs
                   server-only fields (forces the refetch fallback)
  compare          optional — sort comparator, None when unordered or when
                   ordering depends on server-only fields
  sort_fields      optional — fields the comparator reads
  descending       optional — primary ordering is descending
  insert_policy    optional — where unsorted optimistic inserts land

``Query`` is a reference descriptor with Django-style lookups so the
engine is usable without an external query compiler.

Example:
    from livequery.descriptor import describe

    open_tasks = describe("task", status="open", order_by=("-created_at",), limit=20)
    open_tasks.canonical_key()
"""

from __future__ import annotations
from enum import Enum
from types import MappingProxyType
from collections.abc import Iterable
from typing import Any, Callable, FrozenSet, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .canonical_json import canonical_dumps
from .errors import QueryDescriptorError
from .record_store import Record

Predicate = Callable[[Record], bool]
Comparator = Callable[[Record, Record], int]


class InsertPolicy(str, Enum):
    """Position of an optimistic insert when the view has no comparator."""
    AUTO = "auto"
    PREPEND = "prepend"
    APPEND = "append"


@runtime_checkable
class QueryDescriptor(Protocol):
    collection: str
    offset: int
    limit: Optional[int]

    def canonical_key(self) -> str:
        ...


# ---------------------------------------------------------------------------
# Accessors for optional descriptor capabilities
# ---------------------------------------------------------------------------

def local_predicate(descriptor: Any) -> Optional[Predicate]:
    return getattr(descriptor, "matches", None)


def local_comparator(descriptor: Any) -> Optional[Comparator]:
    return getattr(descriptor, "compare", None)


def sort_fields(descriptor: Any) -> FrozenSet[str]:
    return frozenset(getattr(descriptor, "sort_fields", None) or ())


def resolve_insert_policy(descriptor: Any, default: InsertPolicy = InsertPolicy.AUTO) -> InsertPolicy:
    """Turn AUTO into a concrete PREPEND/APPEND for this descriptor."""
    policy = InsertPolicy(getattr(descriptor, "insert_policy", None) or InsertPolicy.AUTO)
    if policy is InsertPolicy.AUTO:
        policy = InsertPolicy(default)
    if policy is InsertPolicy.AUTO:
        return InsertPolicy.PREPEND if getattr(descriptor, "descending", False) else InsertPolicy.APPEND
    return policy


# ---------------------------------------------------------------------------
# Reference descriptor
# ---------------------------------------------------------------------------

LOOKUPS = frozenset({
    "exact", "in", "gt", "gte", "lt", "lte",
    "contains", "icontains", "startswith", "isnull",
})


def _split_lookup(expr: str) -> Tuple[str, str]:
    parts = expr.split("__")
    if len(parts) == 1:
        return parts[0], "exact"
    if len(parts) == 2 and parts[1] in LOOKUPS and parts[0]:
        return parts[0], parts[1]
    raise QueryDescriptorError(f"unsupported filter expression {expr!r}")


def _normalize_filter_value(op: str, value: Any) -> Any:
    if op == "in":
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise QueryDescriptorError(f"'in' lookup needs a collection of values, got {value!r}")
        # Membership order is irrelevant; sort so equal queries share a key.
        try:
            return sorted(value)
        except TypeError:
            return list(value)
    return value


def _evaluate(value: Any, op: str, expected: Any) -> bool:
    if op == "exact":
        return value == expected
    if op == "in":
        return value in expected
    if op == "isnull":
        return (value is None) == bool(expected)
    if value is None:
        return False
    try:
        if op == "gt":
            return value > expected
        if op == "gte":
            return value >= expected
        if op == "lt":
            return value < expected
        if op == "lte":
            return value <= expected
        if op == "contains":
            return expected in value
        if op == "icontains":
            return str(expected).lower() in str(value).lower()
        if op == "startswith":
            return str(value).startswith(str(expected))
    except TypeError:
        return False
    return False


def _compare_values(a: Any, b: Any) -> int:
    # None sorts after every value, as SQL does for ascending NULLS LAST.
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    try:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    except TypeError:
        sa, sb = str(a), str(b)
        return (sa > sb) - (sa < sb)


class Query:
    """Value-comparable reference query descriptor.

    Two ``Query`` objects built independently from the same collection,
    filters, ordering and window compare equal, hash equal, and share a
    ``canonical_key()``. ``server_fields`` and ``insert_policy`` tune local
    evaluation only and are not part of the key.
    """

    def __init__(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Iterable[str] | str = (),
        offset: int = 0,
        limit: Optional[int] = None,
        server_fields: Iterable[str] = (),
        insert_policy: InsertPolicy | str = InsertPolicy.AUTO,
    ):
        if not collection:
            raise QueryDescriptorError("collection must be a non-empty string")
        if offset < 0:
            raise QueryDescriptorError(f"offset must be >= 0, got {offset}")
        if limit is not None and limit < 0:
            raise QueryDescriptorError(f"limit must be >= 0, got {limit}")

        if isinstance(order_by, str):
            order_by = (order_by,)

        self.collection = collection
        self.offset = int(offset)
        self.limit = None if limit is None else int(limit)
        self.order_by: Tuple[str, ...] = tuple(order_by)
        self.server_fields: FrozenSet[str] = frozenset(server_fields)
        self.insert_policy = InsertPolicy(insert_policy)

        conditions = []
        normalized = {}
        for expr, value in sorted((filters or {}).items()):
            field_name, op = _split_lookup(expr)
            value = _normalize_filter_value(op, value)
            conditions.append((field_name, op, value))
            normalized[expr] = value
        self.filters: Mapping[str, Any] = MappingProxyType(normalized)
        self._conditions = tuple(conditions)

        try:
            self._key = canonical_dumps({
                "collection": self.collection,
                "filters": normalized,
                "order_by": list(self.order_by),
                "offset": self.offset,
                "limit": self.limit,
            })
        except (TypeError, ValueError) as exc:
            raise QueryDescriptorError(f"filter values must be JSON-serializable: {exc}") from exc

    def canonical_key(self) -> str:
        return self._key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Query):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        return f"Query({self._key})"

    @property
    def filter_fields(self) -> FrozenSet[str]:
        return frozenset(name for name, _, _ in self._conditions)

    @property
    def sort_fields(self) -> FrozenSet[str]:
        return frozenset(name.lstrip("-") for name in self.order_by)

    @property
    def descending(self) -> bool:
        return bool(self.order_by) and self.order_by[0].startswith("-")

    @property
    def matches(self) -> Optional[Predicate]:
        if self.filter_fields & self.server_fields:
            return None
        return self._matches

    @property
    def compare(self) -> Optional[Comparator]:
        if not self.order_by or self.sort_fields & self.server_fields:
            return None
        return self._compare

    def _matches(self, record: Record) -> bool:
        if record.collection != self.collection:
            return False
        return all(
            _evaluate(record.value(name), op, expected)
            for name, op, expected in self._conditions
        )

    def _compare(self, a: Record, b: Record) -> int:
        for term in self.order_by:
            name = term.lstrip("-")
            result = _compare_values(a.value(name), b.value(name))
            if result:
                return -result if term.startswith("-") else result
        return 0


def describe(
    collection: str,
    *,
    order_by: Iterable[str] | str = (),
    offset: int = 0,
    limit: Optional[int] = None,
    server_fields: Iterable[str] = (),
    insert_policy: InsertPolicy | str = InsertPolicy.AUTO,
    **filters: Any,
) -> Query:
    """Build a reference ``Query`` from keyword lookups."""
    return Query(
        collection,
        filters=filters,
        order_by=order_by,
        offset=offset,
        limit=limit,
        server_fields=server_fields,
        insert_policy=insert_policy,
    )
