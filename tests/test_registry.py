import asyncio
import unittest

from livequery.descriptor import describe
from livequery.operation_log import OperationKind, OperationLog, OperationState
from livequery.reducer import GroundTruthPage
from livequery.record_store import Record, RecordStore
from livequery.registry import ViewRegistry
from livequery.view import QueryView


class RegistryCase(unittest.TestCase):
    def setUp(self):
        self.store = RecordStore()
        self.log = OperationLog(clock=lambda: 1.0)
        self.registry = ViewRegistry(lambda d: QueryView(d, self.store, self.log))
        self.disposed = []
        self.registry.on_dispose(self.disposed.append)


class TestViewRegistry(RegistryCase):
    def test_equal_descriptors_share_one_view(self):
        first, created_first = self.registry.acquire(describe("task", status="open", limit=5))
        second, created_second = self.registry.acquire(describe("task", limit=5, status="open"))
        self.assertIs(first, second)
        self.assertTrue(created_first)
        self.assertFalse(created_second)
        self.assertEqual(self.registry.refcount(first), 2)
        self.assertEqual(len(self.registry), 1)

    def test_release_disposes_at_zero(self):
        view, _ = self.registry.acquire(describe("task"))
        self.registry.acquire(describe("task"))
        self.assertFalse(self.registry.release(view))
        self.assertTrue(self.registry.release(view))
        self.assertTrue(view.disposed)
        self.assertNotIn(view.key, self.registry)
        self.assertEqual(self.disposed, [view])

    def test_release_of_unknown_view_is_logged(self):
        view, _ = self.registry.acquire(describe("task"))
        self.registry.release(view)
        with self.assertLogs("livequery.registry", level="WARNING"):
            self.assertFalse(self.registry.release(view))

    def test_view_with_pending_operations_is_orphaned(self):
        self.store.put(Record("task", 1, {"status": "open"}))
        view, _ = self.registry.acquire(describe("task", status="open"))
        view.set_page(GroundTruthPage((1,), 1, 1.0))
        op = self.log.new_operation(OperationKind.UPDATE, "task", {"title": "x"}, identity=1)
        view.recompute()
        self.assertTrue(view.depends_on_pending)

        self.assertFalse(self.registry.release(view))
        self.assertIn(view.key, self.registry)
        self.assertFalse(self.registry.is_live(view.key))
        self.assertEqual(self.registry.sweep(), [])

        self.log.transition(op.correlation_id, OperationState.REJECTED)
        view.recompute()
        self.assertEqual(self.registry.sweep(), [view])
        self.assertTrue(view.disposed)

    def test_orphan_revived_by_acquire(self):
        view, _ = self.registry.acquire(describe("task"))
        self.log.new_operation(OperationKind.CREATE, "task", {})
        view.recompute()
        self.registry.release(view)
        again, created = self.registry.acquire(describe("task"))
        self.assertIs(again, view)
        self.assertFalse(created)
        self.assertTrue(self.registry.is_live(view.key))

    def test_dispose_all(self):
        a, _ = self.registry.acquire(describe("task"))
        b, _ = self.registry.acquire(describe("note"))
        self.registry.dispose_all()
        self.assertEqual(len(self.registry), 0)
        self.assertTrue(a.disposed and b.disposed)

    def test_views_by_collection(self):
        a, _ = self.registry.acquire(describe("task"))
        self.registry.acquire(describe("note"))
        self.assertEqual(self.registry.views("task"), [a])


class TestQueryView(RegistryCase):
    def test_recompute_notifies_only_on_change(self):
        self.store.put(Record("task", 1, {}))
        view, _ = self.registry.acquire(describe("task"))
        seen = []
        view.subscribe(seen.append)
        view.set_page(GroundTruthPage((1,), 1, 1.0))
        self.assertTrue(view.recompute())
        snapshot = view.snapshot
        self.assertFalse(view.recompute())
        self.assertIs(view.snapshot, snapshot)
        self.assertEqual(seen, [snapshot])

    def test_staleness_uses_fetch_time(self):
        view, _ = self.registry.acquire(describe("task"))
        self.assertTrue(view.is_stale(100.0, 30.0))
        view.set_page(GroundTruthPage((), 0, 1.0))
        # A page without a fetch this session (restored from cache) is stale.
        self.assertTrue(view.is_stale(100.0, 30.0))
        view.fetched_at = 90.0
        self.assertFalse(view.is_stale(100.0, 30.0))
        self.assertTrue(view.is_stale(121.0, 30.0))


class TestWaitForGroundTruth(unittest.IsolatedAsyncioTestCase):
    async def test_resolves_when_page_lands(self):
        store = RecordStore()
        view = QueryView(describe("task"), store, OperationLog())
        waiter = asyncio.ensure_future(view.wait_for_ground_truth())
        await asyncio.sleep(0)
        self.assertFalse(waiter.done())
        view.set_page(GroundTruthPage((), 0, 1.0))
        view.recompute()
        view.release_waiters()
        snapshot = await waiter
        self.assertTrue(snapshot.has_ground_truth)
        # Already landed: returns at once.
        self.assertIs(await view.wait_for_ground_truth(), view.snapshot)

    async def test_fetch_error_propagates(self):
        view = QueryView(describe("task"), RecordStore(), OperationLog())
        waiter = asyncio.ensure_future(view.wait_for_ground_truth())
        await asyncio.sleep(0)
        view.release_waiters(RuntimeError("down"))
        with self.assertRaises(RuntimeError):
            await waiter


if __name__ == "__main__":
    unittest.main()
