"""
view.py — Live query view

One ``QueryView`` exists per canonical descriptor key (the registry
enforces this). A view owns nothing but its ground truth page: records
come from the record store and pending changes from the operation log,
and every recompute is a fresh ``reduce_view`` pass over them.

Consumers get two capabilities:
  - ``view.snapshot`` — the current materialized records, synchronously
  - ``await view.wait_for_ground_truth()`` — resolves once the first
    confirmed page has landed (immediately if one already has)

Subscribers receive the same ``ViewSnapshot`` object per pass; when a
pass yields equal contents the previous object is kept and nobody is
notified, so consumers can compare by identity to skip re-rendering.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Callable, List, Optional

from .descriptor import InsertPolicy
from .operation_log import OperationLog
from .record_store import RecordStore
from .reducer import EMPTY_SNAPSHOT, GroundTruthPage, ViewSnapshot, reduce_view

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[ViewSnapshot], None]


class QueryView:
    """Materialized, observable result of one query descriptor."""

    def __init__(
        self,
        descriptor: Any,
        store: RecordStore,
        log: OperationLog,
        default_policy: InsertPolicy = InsertPolicy.AUTO,
    ):
        self.descriptor = descriptor
        self.key: str = descriptor.canonical_key()
        self.collection: str = descriptor.collection
        self.default_policy = default_policy
        self.disposed = False
        self.fetched_at: Optional[float] = None

        self._store = store
        self._log = log
        self._page: Optional[GroundTruthPage] = None
        self._subscribers: List[SnapshotCallback] = []
        self._waiters: List[asyncio.Future] = []
        self._snapshot: ViewSnapshot = EMPTY_SNAPSHOT
        self._snapshot = self._compute()

    def __repr__(self) -> str:
        return f"QueryView({self.key}, rows={len(self._snapshot)})"

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> ViewSnapshot:
        return self._snapshot

    @property
    def page(self) -> Optional[GroundTruthPage]:
        return self._page

    @property
    def has_ground_truth(self) -> bool:
        return self._page is not None

    @property
    def depends_on_pending(self) -> bool:
        """True while some unsettled operation changes what this view shows."""
        return bool(self._snapshot.pending)

    def is_stale(self, now: float, staleness_seconds: float) -> bool:
        """A page restored from the local cache is shown but always refetched."""
        if self._page is None or self.fetched_at is None:
            return True
        return (now - self.fetched_at) > staleness_seconds

    async def wait_for_ground_truth(self) -> ViewSnapshot:
        """Wait until a confirmed page exists, then return the current snapshot."""
        if self._page is not None:
            return self._snapshot
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future
        return self._snapshot

    # ------------------------------------------------------------------
    # Updates (called by the synchronizer inside a reconciliation pass)
    # ------------------------------------------------------------------

    def set_page(self, page: Optional[GroundTruthPage]) -> None:
        self._page = page

    def recompute(self) -> bool:
        """Refold and notify subscribers if the contents changed."""
        if self.disposed:
            return False
        snapshot = self._compute()
        if snapshot == self._snapshot:
            return False
        self._snapshot = snapshot
        logger.debug("View %s recomputed: %d rows", self.key, len(snapshot))
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.error("View subscriber failed for %s", self.key, exc_info=True)
        return True

    def release_waiters(self, error: Optional[BaseException] = None) -> None:
        """Wake ``wait_for_ground_truth`` callers, optionally with a fetch error."""
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if future.done():
                continue
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

    def _compute(self) -> ViewSnapshot:
        return reduce_view(
            self.descriptor,
            self._page,
            self._log.pending(self.collection),
            self._store.get,
            self.default_policy,
        )

    # ------------------------------------------------------------------
    # Subscriptions / lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def dispose(self) -> None:
        self.disposed = True
        self._subscribers.clear()
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.cancel()
