import unittest

from livequery.errors import ConflictRejection, IllegalTransitionError, UnknownOperationError
from livequery.operation_log import (
    MAX_RETAINED_OUTCOMES,
    OperationKind,
    OperationLog,
    OperationState,
    PendingOperation,
)
from livequery.record_store import Record, is_temp_identity


class SteppingClock:
    def __init__(self, *values):
        self.values = list(values)

    def __call__(self):
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


class TestOperationLog(unittest.TestCase):
    def setUp(self):
        self.log = OperationLog(clock=lambda: 10.0)

    def test_create_gets_temp_identity(self):
        op = self.log.new_operation(OperationKind.CREATE, "task", {"title": "a"})
        self.assertIsNone(op.target_identity)
        self.assertTrue(is_temp_identity(op.temp_identity))
        self.assertEqual(op.identity, op.temp_identity)
        self.assertEqual(op.state, OperationState.OPTIMISTIC)
        self.assertEqual(op.optimistic_record().value("title"), "a")

    def test_update_targets_identity(self):
        op = self.log.new_operation("update", "task", {"rank": 2}, identity=5)
        self.assertEqual(op.kind, OperationKind.UPDATE)
        self.assertEqual(op.identity, 5)
        self.assertIsNone(op.temp_identity)

    def test_pending_order_uses_created_at_then_seq(self):
        log = OperationLog(clock=SteppingClock(5.0, 3.0, 3.0))
        a = log.new_operation("update", "task", {}, identity=1)
        b = log.new_operation("update", "task", {}, identity=2)
        c = log.new_operation("update", "task", {}, identity=3)
        # The clock went backwards; created_at is clamped so order is insertion order.
        self.assertEqual(b.created_at, 5.0)
        self.assertEqual([op.correlation_id for op in log.pending()], [a.correlation_id, b.correlation_id, c.correlation_id])

    def test_pending_filters_by_collection(self):
        self.log.new_operation("update", "task", {}, identity=1)
        self.log.new_operation("update", "note", {}, identity=1)
        self.assertEqual([op.collection for op in self.log.pending("note")], ["note"])

    def test_full_lifecycle(self):
        op = self.log.new_operation("create", "task", {})
        cid = op.correlation_id
        self.log.transition(cid, OperationState.SUBMITTED)
        record = Record("task", 9, {})
        self.log.transition(cid, OperationState.CONFIRMED, record=record)

        self.assertNotIn(cid, self.log)
        outcome = self.log.outcome(cid)
        self.assertEqual(outcome.state, OperationState.CONFIRMED)
        self.assertEqual(outcome.record, record)

    def test_optimistic_can_be_rejected_directly(self):
        op = self.log.new_operation("update", "task", {}, identity=1)
        error = ConflictRejection("x")
        self.log.transition(op.correlation_id, OperationState.REJECTED, error=error)
        self.assertIs(self.log.outcome(op.correlation_id).error, error)

    def test_no_resurrection_after_terminal(self):
        op = self.log.new_operation("update", "task", {}, identity=1)
        self.log.transition(op.correlation_id, OperationState.REJECTED)
        with self.assertRaises(IllegalTransitionError):
            self.log.transition(op.correlation_id, OperationState.SUBMITTED)
        with self.assertRaises(IllegalTransitionError):
            self.log.append(op)

    def test_illegal_transitions(self):
        op = self.log.new_operation("update", "task", {}, identity=1)
        with self.assertRaises(IllegalTransitionError):
            self.log.transition(op.correlation_id, OperationState.CONFIRMED)
        with self.assertRaises(IllegalTransitionError):
            self.log.transition(op.correlation_id, OperationState.OPTIMISTIC)

    def test_unknown_operation(self):
        with self.assertRaises(UnknownOperationError) as ctx:
            self.log.get("nope")
        self.assertEqual(ctx.exception.code, "LQ_E401")
        with self.assertRaises(UnknownOperationError):
            self.log.transition("nope", OperationState.SUBMITTED)

    def test_duplicate_append_rejected(self):
        op = self.log.new_operation("update", "task", {}, identity=1)
        with self.assertRaises(IllegalTransitionError):
            self.log.append(op)

    def test_terminal_state_cannot_be_appended(self):
        op = PendingOperation("cid", OperationKind.UPDATE, "task", {}, 1.0, state=OperationState.CONFIRMED)
        with self.assertRaises(IllegalTransitionError):
            self.log.append(op)

    def test_retarget(self):
        create = self.log.new_operation("create", "task", {})
        update = self.log.new_operation("update", "task", {"a": 1}, identity=create.temp_identity)
        version = self.log.version
        self.assertEqual(self.log.retarget("task", create.temp_identity, 77), 1)
        self.assertEqual(update.target_identity, 77)
        self.assertGreater(self.log.version, version)

    def test_subscribers_get_each_change(self):
        seen = []
        unsubscribe = self.log.subscribe(lambda op: seen.append(op.state))
        op = self.log.new_operation("update", "task", {}, identity=1)
        self.log.transition(op.correlation_id, OperationState.SUBMITTED)
        unsubscribe()
        self.log.transition(op.correlation_id, OperationState.CONFIRMED)
        self.assertEqual(seen, [OperationState.OPTIMISTIC, OperationState.SUBMITTED])

    def test_outcomes_are_bounded(self):
        first = None
        for _ in range(MAX_RETAINED_OUTCOMES + 1):
            op = self.log.new_operation("update", "task", {}, identity=1)
            first = first or op.correlation_id
            self.log.transition(op.correlation_id, OperationState.REJECTED)
        self.assertIsNone(self.log.outcome(first))

    def test_snapshot_round_trip(self):
        op = self.log.new_operation("create", "task", {"t": 1}, idempotency_key="k")
        restored = OperationLog()
        for data in self.log.snapshot():
            restored.append(PendingOperation.from_dict(data))
        copy = restored.get(op.correlation_id)
        self.assertEqual(copy.to_dict(), op.to_dict())
        # New operations order after restored ones.
        later = restored.new_operation("update", "task", {}, identity=1)
        self.assertGreater(later.seq, copy.seq)


if __name__ == "__main__":
    unittest.main()
