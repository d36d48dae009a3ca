"""
synchronizer.py — Drives views, mutations and push events to consistency

Responsibilities:
  1. Ground truth: fetch a page when a view is acquired without a fresh
     one; at most one fetch per descriptor key is in flight, later callers
     attach to it. Fetches retry transport failures with capped backoff.
  2. Mutations: append an OPTIMISTIC operation, validate it locally,
     submit it, then confirm (merge server values, rekey creates, patch
     ground truth) or reject (remove it; the fold does the rollback).
  3. Push events: treated as confirmations made by another actor. Views
     that cannot evaluate their filter locally are refetched instead.
  4. Reconciliation passes: every state change runs inside one pass;
     affected views are refolded once at the end of the outermost pass,
     and the persistence snapshot is captured at that stable point.

Scheduling is single-threaded asyncio. Nothing here blocks on I/O: the
only suspension points are the remote calls and the persistence write,
and views always render the best merge currently available.
"""

from __future__ import annotations
import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .canonical_json import record_key
from .config import EngineConfig
from .descriptor import local_predicate
from .errors import (
    ConflictRejection,
    LiveQueryError,
    Rejection,
    TransportFailure,
    UnknownOperationError,
    ValidationRejection,
)
from .operation_log import OperationKind, OperationLog, OperationState, Outcome, PendingOperation
from .persistence import HydrateReport, PersistenceAdapter, PersistSnapshot
from .record_store import Record, RecordStore, is_temp_identity
from .reducer import GroundTruthPage, ViewSnapshot, patch_page
from .registry import ViewRegistry
from .remote import FetchResult, PushChannel, PushEvent, PushKind, RemoteStore, Window
from .schemas import field_errors
from .view import QueryView

logger = logging.getLogger(__name__)

# Pages of views that are not live, kept so a re-acquire renders at once.
MAX_RETAINED_PAGES = 256


def _transport_failure(exc: BaseException) -> TransportFailure:
    """Connection-level errors from a remote client count as transport failures."""
    if isinstance(exc, TransportFailure):
        return exc
    return TransportFailure(f"{type(exc).__name__}: {exc}")


Validator = Callable[[Record], None]
Sleep = Callable[[float], Awaitable[None]]

# (identity, record or None for a deletion, previous record)
_Change = Tuple[Any, Optional[Record], Optional[Record]]


@dataclass
class _Fetch:
    task: "asyncio.Task[Union[ViewSnapshot, LiveQueryError]]"
    collection: str
    replay: List[_Change] = field(default_factory=list)
    rerun: bool = False


class Synchronizer:
    def __init__(
        self,
        store: RecordStore,
        log: OperationLog,
        remote: RemoteStore,
        *,
        push: Optional[PushChannel] = None,
        persistence: Optional[PersistenceAdapter] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.log = log
        self.remote = remote
        self.push = push
        self.persistence = persistence
        self.config = config or EngineConfig()
        self._clock = clock
        self._sleep = sleep

        self.registry = ViewRegistry(self._make_view)
        self.registry.on_dispose(self._on_view_disposed)

        self._inflight: Dict[str, _Fetch] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._validators: Dict[str, List[Validator]] = {}
        self._hydrated_pages: "OrderedDict[str, GroundTruthPage]" = OrderedDict()
        self._evicted_pages: Set[str] = set()
        self._watched: Dict[str, Tuple[int, Callable[[], None]]] = {}
        self._push_task: Optional[asyncio.Task] = None

        self._pass_depth = 0
        self._dirty: Set[str] = set()
        self._dirty_pages: Set[str] = set()
        self._persisted_log_version = log.version
        self._snapshots_suspended = False
        self._closed = False

        self._unsubscribe_log = log.subscribe(self._on_operation_changed)

    # ------------------------------------------------------------------
    # Reconciliation passes
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def reconciliation(self) -> Iterator[None]:
        """Group changes; views refold once when the outermost pass ends."""
        self._pass_depth += 1
        try:
            with self.store.batch():
                yield
        finally:
            self._pass_depth -= 1
            if self._pass_depth == 0:
                self._finish_pass()

    def _mark_dirty(self, collection: str) -> None:
        self._dirty.add(collection)
        if self._pass_depth == 0:
            self._finish_pass()

    def _finish_pass(self) -> None:
        dirty, self._dirty = self._dirty, set()
        if dirty:
            for view in self.registry.views():
                if view.collection in dirty:
                    view.recompute()
            self.registry.sweep()
        self._schedule_snapshot()

    def _on_record_changed(self, collection: str, identity: Any, record: Optional[Record]) -> None:
        self._mark_dirty(collection)

    def _on_operation_changed(self, op: PendingOperation) -> None:
        if op.state.terminal:
            self._resolve_waiters(op.correlation_id)
        self._mark_dirty(op.collection)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _make_view(self, descriptor: Any) -> QueryView:
        return QueryView(descriptor, self.store, self.log, self.config.insert_policy)

    def acquire(self, descriptor: Any) -> QueryView:
        """Return the shared view for ``descriptor`` and fetch if it is stale."""
        view, created = self.registry.acquire(descriptor)
        if created:
            self._watch(view.collection)
            self._evicted_pages.discard(view.key)
            seed = self._hydrated_pages.pop(view.key, None)
            if seed is not None:
                view.set_page(seed)
                view.recompute()
        if view.is_stale(self._clock(), self.config.staleness_seconds):
            self.refresh(view)
        return view

    def release(self, view: QueryView) -> bool:
        return self.registry.release(view)

    def _watch(self, collection: str) -> None:
        count, unsubscribe = self._watched.get(collection, (0, None))
        if unsubscribe is None:
            unsubscribe = self.store.subscribe_collection(collection, self._on_record_changed)
        self._watched[collection] = (count + 1, unsubscribe)

    def _on_view_disposed(self, view: QueryView) -> None:
        count, unsubscribe = self._watched.get(view.collection, (0, None))
        if count <= 1:
            self._watched.pop(view.collection, None)
            if unsubscribe is not None:
                unsubscribe()
        else:
            self._watched[view.collection] = (count - 1, unsubscribe)
        if view.page is not None:
            self._retain_page(view.key, view.page)

    def _retain_page(self, key: str, page: GroundTruthPage) -> None:
        self._evicted_pages.discard(key)
        self._hydrated_pages[key] = page
        self._hydrated_pages.move_to_end(key)
        while len(self._hydrated_pages) > MAX_RETAINED_PAGES:
            evicted, _ = self._hydrated_pages.popitem(last=False)
            self._evicted_pages.add(evicted)

    # ------------------------------------------------------------------
    # Ground truth fetches
    # ------------------------------------------------------------------

    def refresh(self, view: QueryView, *, force: bool = False) -> "asyncio.Task[Union[ViewSnapshot, LiveQueryError]]":
        """Start (or join) the fetch for ``view``.

        With ``force`` a fetch already in flight is followed by one more,
        so the result reflects changes made after it was sent.
        """
        entry = self._inflight.get(view.key)
        if entry is not None and not entry.task.done():
            if force:
                entry.rerun = True
            return entry.task
        task = asyncio.get_running_loop().create_task(self._fetch(view.descriptor))
        self._inflight[view.key] = _Fetch(task=task, collection=view.collection)
        logger.debug("Fetching ground truth for %s", view.key)
        return task

    async def fetch_now(self, view: QueryView) -> ViewSnapshot:
        """Refresh ``view`` and wait for the result.

        Raises:
            LiveQueryError: If the fetch failed after its retries.
        """
        result = await self.refresh(view, force=True)
        if isinstance(result, LiveQueryError):
            raise result
        return result

    def _window(self, descriptor: Any) -> Window:
        limit = getattr(descriptor, "limit", None)
        if limit is not None:
            limit += self.config.fetch_window_padding
        return Window(offset=getattr(descriptor, "offset", 0), limit=limit)

    def _capacity(self, descriptor: Any) -> Optional[int]:
        return self._window(descriptor).limit

    async def _fetch_with_retry(self, descriptor: Any) -> FetchResult:
        window = self._window(descriptor)
        attempts = self.config.fetch_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.remote.fetch(descriptor, window)
            except (TransportFailure, OSError) as exc:
                if attempt == attempts:
                    raise _transport_failure(exc) from None
                delay = self.config.backoff_delay(attempt)
                logger.warning(
                    "Fetch of %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    descriptor.canonical_key(), attempt, attempts, delay, exc,
                )
                await self._sleep(delay)
        raise TransportFailure(f"fetch of {descriptor.canonical_key()} made no attempt")

    async def _fetch(self, descriptor: Any) -> Union[ViewSnapshot, LiveQueryError]:
        key = descriptor.canonical_key()
        error: Optional[LiveQueryError] = None
        result: Optional[FetchResult] = None
        try:
            result = await self._fetch_with_retry(descriptor)
        except LiveQueryError as exc:
            error = exc
        except Exception as exc:
            logger.error("Remote fetch raised unexpectedly for %s", key, exc_info=True)
            error = TransportFailure(f"{type(exc).__name__}: {exc}")

        entry = self._inflight.pop(key, None)
        view = self.registry.get(key)
        if view is None:
            # Nobody holds the view any more: the result is discarded.
            logger.debug("Discarding fetch result for released view %s", key)
            return error if error is not None else ViewSnapshot(records=(), total=0, as_of=None)

        if error is not None:
            logger.warning("Fetch of %s failed: %s", key, error)
            view.release_waiters(error)
            return error

        self._land(view, result, entry)
        if entry is not None and entry.rerun and not self._closed:
            self.refresh(view)
        return view.snapshot

    def _land(self, view: QueryView, result: FetchResult, entry: Optional[_Fetch]) -> None:
        replay = entry.replay if entry is not None else []
        confirmed_during_flight = {identity for identity, _, _ in replay}
        page = result.to_page()
        for identity, record, previous in replay:
            page = self._patch(view, page, identity, record, previous)

        with self.reconciliation():
            for record in result.records:
                if record.identity not in confirmed_during_flight:
                    self.store.put(record)
            view.set_page(page)
            view.fetched_at = self._clock()
            self._dirty_pages.add(view.key)
            self._dirty.add(view.collection)
        view.release_waiters()

    def _patch(
        self,
        view: QueryView,
        page: GroundTruthPage,
        identity: Any,
        record: Optional[Record],
        previous: Optional[Record],
    ) -> GroundTruthPage:
        return patch_page(
            view.descriptor,
            page,
            identity,
            record,
            self.store.get,
            previous=previous,
            default_policy=self.config.insert_policy,
            capacity=self._capacity(view.descriptor),
        )

    def _apply_confirmed_change(
        self,
        collection: str,
        identity: Any,
        record: Optional[Record],
        previous: Optional[Record],
    ) -> None:
        """Patch the ground truth of every view of ``collection`` for one confirmed change."""
        for view in self.registry.views(collection):
            entry = self._inflight.get(view.key)
            if entry is not None:
                entry.replay.append((identity, record, previous))
            if local_predicate(view.descriptor) is None:
                if record is None and view.page is not None and identity in view.page.identities:
                    view.set_page(self._patch(view, view.page, identity, None, previous))
                    self._dirty_pages.add(view.key)
                self.refresh(view, force=True)
                continue
            if view.page is not None:
                view.set_page(self._patch(view, view.page, identity, record, previous))
                self._dirty_pages.add(view.key)
        self._dirty.add(collection)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_validator(self, collection: str, validator: Validator) -> None:
        """Run ``validator(record)`` before submitting creates/updates in ``collection``.

        The validator raises ``ValidationRejection`` to reject.
        """
        self._validators.setdefault(collection, []).append(validator)

    def mutate(
        self,
        kind: OperationKind | str,
        collection: str,
        payload: Mapping[str, Any],
        *,
        identity: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Apply a mutation optimistically and submit it. Returns the correlation id.

        Must be called from a running event loop.

        Raises:
            ValueError: If an update/delete names no identity.
        """
        kind = OperationKind(kind)
        if kind is not OperationKind.CREATE and identity is None:
            raise ValueError(f"{kind.value} needs the identity of the record to change")
        if identity is not None:
            identity = self.store.resolve_identity(collection, identity)

        loop = asyncio.get_running_loop()
        with self.reconciliation():
            op = self.log.new_operation(
                kind, collection, dict(payload),
                identity=identity, idempotency_key=idempotency_key,
            )
            if kind is OperationKind.CREATE:
                self.store.put(op.optimistic_record())
            rejection = self._validate_locally(op)
            if rejection is not None:
                self._reject(op, rejection)

        if rejection is None:
            self._spawn(loop, self._submit(op))
        return op.correlation_id

    def _validate_locally(self, op: PendingOperation) -> Optional[ValidationRejection]:
        if op.kind is OperationKind.DELETE:
            return None
        base: Optional[Record] = None
        if op.kind is OperationKind.CREATE:
            candidate = op.optimistic_record()
        else:
            base = self.store.get(op.collection, op.target_identity)
            candidate = (base or Record(op.collection, op.target_identity, {})).merged(op.payload)

        schema = self.config.collection_schemas.get(op.collection)
        # An update to a record we have never seen cannot be checked as a whole.
        if schema is not None and (op.kind is OperationKind.CREATE or base is not None):
            errors = field_errors(dict(candidate.fields), schema)
            if errors:
                return ValidationRejection(f"{op.collection} failed schema validation", errors)

        for validator in self._validators.get(op.collection, []):
            try:
                validator(candidate)
            except ValidationRejection as exc:
                return exc
        return None

    def _spawn(self, loop: asyncio.AbstractEventLoop, coro: Awaitable[None]) -> asyncio.Task:
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _await_parent_create(self, op: PendingOperation) -> bool:
        """Wait for the Create that owns ``op``'s temporary target. False if it failed."""
        while is_temp_identity(op.target_identity):
            parent = next(
                (p for p in self.log.pending(op.collection)
                 if p.kind is OperationKind.CREATE and p.temp_identity == op.target_identity),
                None,
            )
            if parent is None:
                return False
            try:
                await self.await_confirmation(parent.correlation_id)
            except Rejection:
                return False
        return True

    async def _submit(self, op: PendingOperation) -> None:
        cid = op.correlation_id
        if cid not in self.log:
            return

        if not await self._await_parent_create(op):
            self._reject(op, ConflictRejection(f"{cid}: the record it targets was never created"))
            return
        if cid not in self.log:
            return

        if self.log.get(cid).state is OperationState.OPTIMISTIC:
            self.log.transition(cid, OperationState.SUBMITTED)

        attempts = 1 + (self.config.submit_retries if op.idempotency_key else 0)
        for attempt in range(1, attempts + 1):
            try:
                record = await self.remote.submit(op)
            except (TransportFailure, OSError) as exc:
                if attempt < attempts and cid in self.log:
                    delay = self.config.backoff_delay(attempt)
                    logger.warning(
                        "Submit of %s failed (attempt %d/%d), retrying with idempotency key in %.2fs: %s",
                        cid, attempt, attempts, delay, exc,
                    )
                    await self._sleep(delay)
                    continue
                self._reject(op, _transport_failure(exc))
                return
            except Rejection as exc:
                self._reject(op, exc)
                return
            except LiveQueryError as exc:
                self._reject(op, TransportFailure(str(exc)))
                return
            except Exception as exc:
                logger.error("Remote submit raised unexpectedly for %s", cid, exc_info=True)
                self._reject(op, TransportFailure(f"{type(exc).__name__}: {exc}"))
                return
            self._confirm(op, record)
            return

    def _confirm(self, op: PendingOperation, server_record: Optional[Record]) -> None:
        cid = op.correlation_id
        if cid not in self.log:
            return  # already settled, e.g. by its push echo
        collection = op.collection

        if op.kind is OperationKind.CREATE and server_record is None:
            self._reject(op, TransportFailure(f"{cid}: remote confirmed a create without returning the record"))
            return

        with self.reconciliation():
            if op.kind is OperationKind.CREATE:
                new_identity = server_record.identity
                final = op.optimistic_record().with_identity(new_identity).merged(server_record.fields)
                self.store.rekey(collection, op.temp_identity, new_identity)
                self.store.put(final)
                op.target_identity = new_identity
                self.log.retarget(collection, op.temp_identity, new_identity)
                self._apply_confirmed_change(collection, new_identity, final, None)
            elif op.kind is OperationKind.UPDATE:
                identity = op.target_identity
                previous = self.store.get(collection, identity)
                final = (previous or Record(collection, identity, {})).merged(op.payload)
                if server_record is not None:
                    final = final.merged(server_record.fields)
                self.store.put(final)
                self._apply_confirmed_change(collection, identity, final, previous)
            else:
                identity = op.target_identity
                previous = self.store.get(collection, identity)
                final = previous
                self.store.remove(collection, identity)
                self._apply_confirmed_change(collection, identity, None, previous)
            self.log.transition(cid, OperationState.CONFIRMED, record=final)
        logger.debug("Operation %s confirmed", cid)

    def _reject(self, op: PendingOperation, error: Rejection) -> None:
        cid = op.correlation_id
        if cid not in self.log:
            return
        refetch: List[QueryView] = []
        if isinstance(error, (ConflictRejection, TransportFailure)):
            # Local re-evaluation can no longer be trusted for views showing this record.
            for view in self.registry.views(op.collection):
                shown = op.identity in view.snapshot.identities
                confirmed = view.page is not None and op.identity in view.page.identities
                if shown or confirmed:
                    refetch.append(view)

        with self.reconciliation():
            if op.kind is OperationKind.CREATE:
                self.store.remove(op.collection, op.temp_identity)
            self.log.transition(cid, OperationState.REJECTED, error=error)
        logger.warning("Operation %s (%s %s) rejected: %s", cid, op.kind.value, op.collection, error)

        if refetch and not self._closed:
            for view in refetch:
                self.refresh(view, force=True)

    # ------------------------------------------------------------------
    # Confirmation waiters
    # ------------------------------------------------------------------

    async def await_confirmation(self, correlation_id: str) -> Optional[Record]:
        """Wait for the operation's terminal outcome.

        Returns:
            The confirmed record (the deleted record's last snapshot for deletes).

        Raises:
            Rejection: The rejection that rolled the operation back.
            UnknownOperationError: If the id was never issued or its outcome expired.
        """
        outcome = self.log.outcome(correlation_id)
        if outcome is not None:
            return self._unwrap(outcome)
        if correlation_id not in self.log:
            raise UnknownOperationError(correlation_id)
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(correlation_id, []).append(future)
        return await future

    def _resolve_waiters(self, correlation_id: str) -> None:
        outcome = self.log.outcome(correlation_id)
        for future in self._waiters.pop(correlation_id, []):
            if future.done() or outcome is None:
                continue
            if outcome.state is OperationState.CONFIRMED:
                future.set_result(outcome.record)
            else:
                future.set_exception(outcome.error or Rejection("LQ_E199", "Operation rejected."))

    @staticmethod
    def _unwrap(outcome: Outcome) -> Optional[Record]:
        if outcome.state is OperationState.CONFIRMED:
            return outcome.record
        raise outcome.error or Rejection("LQ_E199", "Operation rejected.")

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def apply_push(self, raw: Union[PushEvent, Mapping[str, Any]]) -> bool:
        """Apply one push event. Malformed events are logged and ignored.

        Returns:
            True if the event was applied.
        """
        try:
            event = raw if isinstance(raw, PushEvent) else PushEvent.from_dict(raw)
        except (ValidationRejection, KeyError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed push event: %s", exc)
            return False
        try:
            self._apply_push_event(event)
        except LiveQueryError as exc:
            logger.warning("Push event for %s:%r not applied: %s", event.collection, event.identity, exc)
            return False
        return True

    def _apply_push_event(self, event: PushEvent) -> None:
        collection = event.collection
        identity = self.store.resolve_identity(collection, event.identity)

        if event.correlation_id and event.correlation_id in self.log:
            own = self.log.get(event.correlation_id)
            if own.state is OperationState.SUBMITTED:
                logger.debug("Push event is the echo of %s", own.correlation_id)
                echoed = None if event.record is None else Record(collection, identity, event.record.fields)
                if echoed is not None or own.kind is OperationKind.DELETE:
                    self._confirm(own, echoed)
                    return

        previous = self.store.get(collection, identity)
        with self.reconciliation():
            if event.kind is PushKind.DELETE:
                self.store.remove(collection, identity)
                self._apply_confirmed_change(collection, identity, None, previous)
            elif event.record is None:
                for view in self.registry.views(collection):
                    self.refresh(view, force=True)
            else:
                if previous is not None and event.kind is PushKind.UPDATE:
                    record = previous.merged(event.record.fields)
                else:
                    record = Record(collection, identity, event.record.fields)
                self.store.put(record)
                self._apply_confirmed_change(collection, identity, record, previous)

    async def _consume_push(self) -> None:
        assert self.push is not None
        try:
            async for raw in self.push.events():
                self.apply_push(raw)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Push channel stopped", exc_info=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def hydrate(self) -> Optional[HydrateReport]:
        """Load persisted state synchronously. Call before the first acquire."""
        if self.persistence is None:
            return None
        state = self.persistence.hydrate()
        self._snapshots_suspended = True
        try:
            with self.reconciliation():
                self.store.load(state.records)
                for key, page in sorted(state.pages.items(), key=lambda item: item[1].as_of):
                    self._retain_page(key, page)
                for op in state.operations:
                    try:
                        self.log.append(op)
                    except LiveQueryError as exc:
                        logger.warning("Dropping persisted operation %s: %s", op.correlation_id, exc)
                        state.report.dropped.append(f"operation_log:{op.correlation_id}")
        finally:
            self._snapshots_suspended = False
        self.store.drain_touched()
        self._persisted_log_version = self.log.version
        return state.report

    def _schedule_snapshot(self) -> None:
        if self.persistence is None or self._snapshots_suspended:
            return
        snapshot = PersistSnapshot()
        for (collection, identity), record in self.store.drain_touched().items():
            snapshot.records[record_key(collection, identity)] = None if record is None else record.to_dict()
        evicted, self._evicted_pages = self._evicted_pages, set()
        for key in evicted:
            snapshot.pages[key] = None
        dirty_pages, self._dirty_pages = self._dirty_pages, set()
        for key in dirty_pages:
            view = self.registry.get(key)
            if view is not None and view.page is not None:
                snapshot.pages[key] = view.page.to_dict()
        if self.log.version != self._persisted_log_version:
            snapshot.operations = self.log.snapshot()
            self._persisted_log_version = self.log.version
        self.persistence.schedule(snapshot)

    async def flush(self) -> None:
        if self.persistence is not None:
            self._schedule_snapshot()
            await self.persistence.flush()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the push consumer and resume operations left by a previous run."""
        loop = asyncio.get_running_loop()
        if self.push is not None and self._push_task is None:
            self._push_task = loop.create_task(self._consume_push())

        for op in self.log.pending():
            if op.state is OperationState.OPTIMISTIC:
                self._spawn(loop, self._submit(op))
            elif op.idempotency_key:
                self._spawn(loop, self._submit(op))
            else:
                self._reject(op, TransportFailure(
                    f"{op.correlation_id}: submitted before restart without an idempotency key; outcome unknown"
                ))
                for view in self.registry.views(op.collection):
                    self.refresh(view, force=True)

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        tasks.extend(entry.task for entry in self._inflight.values())
        if self._push_task is not None:
            tasks.append(self._push_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._inflight.clear()
        self._unsubscribe_log()
        await self.flush()
        self.registry.dispose_all()
        for futures in self._waiters.values():
            for future in futures:
                future.cancel()
        self._waiters.clear()
