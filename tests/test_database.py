import os
import sys
import tempfile
import unittest
from datetime import datetime, timezone

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import CrawlerConfig
from core.models import CONNECTION_KEY, StateWrite
from database import MemoryStateStore, StateStore


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestSqliteStateStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        path = os.path.join(self._tmp.name, "states.db")
        self.store = StateStore.from_config(CrawlerConfig(database_path=path))

    def tearDown(self):
        self._tmp.cleanup()

    def test_write_then_read_round_trips_value_ack_and_timestamp(self):
        self.store.write("station1.temperature", 21.5, ack=True, timestamp=T0, station_id="70:ee:01")

        state = self.store.read("station1.temperature")

        self.assertEqual(state.value, 21.5)
        self.assertTrue(state.ack)
        self.assertEqual(state.timestamp, T0)
        self.assertEqual(state.name, "temperature")
        self.assertEqual(state.station_id, "70:ee:01")

    def test_read_missing_key_returns_none(self):
        self.assertIsNone(self.store.read("station9.rain"))

    def test_write_many_upserts_and_snapshot_filters_by_key(self):
        writes = [
            StateWrite("station1.temperature", "70:ee:01", "temperature", 20.0, True, T0),
            StateWrite("station1.temperature", "70:ee:01", "temperature", 20.5, True, T0),
            StateWrite("station2.humidity", "70:ee:02", "humidity", 61.0, True, T0),
        ]
        self.store.write_many(writes)
        self.store.write(CONNECTION_KEY, True, timestamp=T0, name="connection")

        snapshot = self.store.snapshot(["station1.temperature", "station9.rain"])
        everything = self.store.snapshot()

        self.assertEqual(list(snapshot), ["station1.temperature"])
        self.assertEqual(snapshot["station1.temperature"].value, 20.5)
        self.assertEqual(snapshot["station1.temperature"].station_id, "70:ee:01")
        self.assertEqual(len(everything), 2)
        self.assertIs(self.store.read(CONNECTION_KEY).value, True)
        self.assertEqual(self.store.snapshot([]), {})


class TestMemoryStateStore(unittest.TestCase):
    def test_memory_store_matches_sqlite_interface(self):
        store = MemoryStateStore()
        store.write_many([StateWrite("station1.rain", "70:ee:01", "rain", 0.2, True, T0)])
        store.write(CONNECTION_KEY, False, timestamp=T0, name="connection")

        self.assertEqual(store.read("station1.rain").value, 0.2)
        self.assertEqual(list(store.snapshot()), ["station1.rain"])
        self.assertEqual(list(store.snapshot(["station1.rain", CONNECTION_KEY])), ["station1.rain", CONNECTION_KEY])
        self.assertEqual(len(store.history), 2)


if __name__ == "__main__":
    unittest.main()
