"""
fake_remote.py — Scripted in-memory remote store and push channel for tests

FakeRemote keeps server rows per collection and answers fetches by
evaluating the reference ``Query`` against them. Tests steer it with:

  fetch_gate / submit_gate   asyncio.Event the call waits on (None = no wait)
  fetch_failures             raise fetch_error this many times first
  fetch_error                exception type a failing fetch raises (TransportFailure)
  submit_script              queue of exceptions to raise from submit, in order
  server_fields              extra fields the server stamps on creates
"""

from __future__ import annotations
import asyncio
import collections
import functools
from typing import Any, Deque, Dict, List, Optional, Type

from livequery.errors import TransportFailure
from livequery.operation_log import OperationKind, PendingOperation
from livequery.record_store import Record
from livequery.remote import FetchResult, PushEvent, Window


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def settle(rounds: int = 20) -> None:
    """Let every ready task run a few steps."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeRemote:
    def __init__(self, clock: Optional[FakeClock] = None, next_id: int = 100):
        self.clock = clock or FakeClock()
        self.rows: Dict[str, Dict[Any, Dict[str, Any]]] = collections.defaultdict(dict)
        self.next_id = next_id
        self.fetch_calls: Dict[str, int] = collections.Counter()
        self.submitted: List[PendingOperation] = []
        self.fetch_gate: Optional[asyncio.Event] = None
        self.submit_gate: Optional[asyncio.Event] = None
        self.fetch_failures = 0
        self.fetch_error: Type[BaseException] = TransportFailure
        self.submit_script: Deque[BaseException] = collections.deque()
        self.server_fields: Dict[str, Any] = {}

    def seed(self, collection: str, rows: Dict[Any, Dict[str, Any]]) -> None:
        for identity, fields in rows.items():
            self.rows[collection][identity] = dict(fields)

    def total_fetches(self) -> int:
        return sum(self.fetch_calls.values())

    async def fetch(self, descriptor: Any, window: Window) -> FetchResult:
        self.fetch_calls[descriptor.canonical_key()] += 1
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise self.fetch_error("connection reset")

        # The answer reflects server state when the request arrived.
        records = [
            Record(descriptor.collection, identity, fields)
            for identity, fields in self.rows[descriptor.collection].items()
        ]
        records = [r for r in records if descriptor._matches(r)]
        if descriptor.order_by:
            records.sort(key=functools.cmp_to_key(descriptor._compare))
        total = len(records)
        end = None if window.limit is None else window.offset + window.limit
        records = records[window.offset:end]
        as_of = self.clock()

        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        return FetchResult(
            identities=tuple(r.identity for r in records),
            records=tuple(records),
            total=total,
            as_of=as_of,
        )

    async def submit(self, operation: PendingOperation) -> Optional[Record]:
        self.submitted.append(operation)
        if self.submit_script:
            raise self.submit_script.popleft()

        table = self.rows[operation.collection]
        if operation.kind is OperationKind.CREATE:
            identity = self.next_id
            self.next_id += 1
            table[identity] = {**operation.payload, **self.server_fields}
        elif operation.kind is OperationKind.UPDATE:
            identity = operation.target_identity
            table.setdefault(identity, {}).update(operation.payload)
        else:
            identity = operation.target_identity
            table.pop(identity, None)

        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if operation.kind is OperationKind.DELETE:
            return None
        return Record(operation.collection, identity, table[identity])


class FakePushChannel:
    """Push channel fed by ``send``; ``close`` ends the stream."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def send(self, event: Any) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def push_update(collection: str, identity: Any, **fields: Any) -> Dict[str, Any]:
    return PushEvent.from_dict({
        "collection": collection,
        "identity": identity,
        "kind": "update",
        "record": {"fields": fields},
    }).to_dict()
