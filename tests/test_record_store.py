import unittest
import unittest.mock as mock

from livequery.errors import RecordStoreError
from livequery.record_store import (
    TEMP_IDENTITY_PREFIX,
    Record,
    RecordStore,
    is_temp_identity,
    new_temp_identity,
)


class TestRecord(unittest.TestCase):
    def test_fields_are_read_only(self):
        record = Record("task", 1, {"title": "a"})
        with self.assertRaises(TypeError):
            record.fields["title"] = "b"

    def test_merged_returns_new_snapshot(self):
        record = Record("task", 1, {"title": "a", "rank": 1})
        changed = record.merged({"rank": 2})
        self.assertEqual(record.value("rank"), 1)
        self.assertEqual(changed.value("rank"), 2)
        self.assertEqual(changed.value("title"), "a")

    def test_pk_resolves_to_identity(self):
        self.assertEqual(Record("task", 7, {}).value("pk"), 7)

    def test_dict_round_trip(self):
        record = Record("task", "abc", {"n": [1, 2]})
        self.assertEqual(Record.from_dict(record.to_dict()), record)

    def test_temp_identity(self):
        temp = new_temp_identity()
        self.assertTrue(temp.startswith(TEMP_IDENTITY_PREFIX))
        self.assertTrue(is_temp_identity(temp))
        self.assertFalse(is_temp_identity(12))
        self.assertTrue(Record("task", temp, {}).is_temporary)


class TestRecordStore(unittest.TestCase):
    def setUp(self):
        self.store = RecordStore()

    def test_put_overwrites_unconditionally(self):
        self.store.put(Record("task", 1, {"v": 1}))
        self.store.put(Record("task", 1, {"v": 2}))
        self.assertEqual(self.store.get("task", 1).value("v"), 2)
        self.assertEqual(len(self.store), 1)

    def test_collections_are_separate(self):
        self.store.put(Record("task", 1, {}))
        self.assertIsNone(self.store.get("note", 1))
        self.assertEqual([r.identity for r in self.store.records("task")], [1])

    def test_remove(self):
        self.store.put(Record("task", 1, {}))
        self.assertTrue(self.store.remove("task", 1))
        self.assertFalse(self.store.remove("task", 1))
        self.assertIsNone(self.store.get("task", 1))

    def test_subscribers_see_every_change(self):
        seen = []
        self.store.subscribe("task", 1, lambda c, i, r: seen.append(r))
        self.store.put(Record("task", 1, {"v": 1}))
        self.store.remove("task", 1)
        self.assertEqual(seen[0].value("v"), 1)
        self.assertIsNone(seen[1])

    def test_batch_delivers_final_value_once(self):
        seen = []
        unsubscribe = self.store.subscribe_collection("task", lambda c, i, r: seen.append((i, r)))
        with self.store.batch():
            self.store.put(Record("task", 1, {"v": 1}))
            self.store.put(Record("task", 1, {"v": 2}))
            self.assertEqual(seen, [])
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0][1].value("v"), 2)

        unsubscribe()
        self.store.put(Record("task", 2, {}))
        self.assertEqual(len(seen), 1)

    def test_failing_subscriber_does_not_block_others(self):
        seen = []

        def broken(collection, identity, record):
            raise RuntimeError("boom")

        self.store.subscribe_collection("task", broken)
        self.store.subscribe_collection("task", lambda c, i, r: seen.append(i))
        with self.assertLogs("livequery.record_store", level="ERROR"):
            self.store.put(Record("task", 1, {}))
        self.assertEqual(seen, [1])

    def test_rekey_moves_record_once(self):
        temp = new_temp_identity()
        self.store.put(Record("task", temp, {"title": "x"}))
        moved = self.store.rekey("task", temp, 42)
        self.assertEqual(moved.identity, 42)
        self.assertEqual(moved.value("title"), "x")
        self.assertIsNone(self.store.get("task", temp))
        self.assertEqual(self.store.resolve_identity("task", temp), 42)

        with self.assertRaises(RecordStoreError) as ctx:
            self.store.rekey("task", temp, 43)
        self.assertEqual(ctx.exception.code, "LQ_E402")

    def test_rekey_aliases_are_bounded(self):
        temps = []
        with mock.patch("livequery.record_store.MAX_REKEY_ALIASES", 2):
            for server_id in (41, 42, 43):
                temp = new_temp_identity()
                self.store.put(Record("task", temp, {}))
                self.store.rekey("task", temp, server_id)
                temps.append(temp)
        self.assertEqual(self.store.resolve_identity("task", temps[0]), temps[0])
        self.assertEqual(self.store.resolve_identity("task", temps[1]), 42)
        self.assertEqual(self.store.resolve_identity("task", temps[2]), 43)

    def test_rekey_keeps_existing_server_record(self):
        temp = new_temp_identity()
        self.store.put(Record("task", temp, {"title": "local"}))
        self.store.put(Record("task", 42, {"title": "server"}))
        self.store.rekey("task", temp, 42)
        self.assertEqual(self.store.get("task", 42).value("title"), "server")

    def test_load_does_not_notify_or_touch(self):
        seen = []
        self.store.subscribe_collection("task", lambda c, i, r: seen.append(i))
        self.store.load([Record("task", 1, {}), Record("task", 2, {})])
        self.assertEqual(seen, [])
        self.assertEqual(self.store.drain_touched(), {})
        self.assertEqual(len(self.store), 2)

    def test_drain_touched_tracks_removals(self):
        self.store.put(Record("task", 1, {}))
        self.store.remove("task", 1)
        self.store.put(Record("task", 2, {}))
        touched = self.store.drain_touched()
        self.assertIsNone(touched[("task", 1)])
        self.assertEqual(touched[("task", 2)].identity, 2)
        self.assertEqual(self.store.drain_touched(), {})


if __name__ == "__main__":
    unittest.main()
