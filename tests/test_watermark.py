import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from festive_bot import (
    FileWatermarkStore,
    MemoryWatermarkStore,
    PersistenceError,
    Watermark,
    format_rfc3339,
    parse_rfc3339,
)

LEADERBOARD = "123456"


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestRfc3339(unittest.TestCase):
    def test_zulu_and_offsets(self):
        self.assertEqual(parse_rfc3339("2023-12-01T05:00:00Z"), _utc(2023, 12, 1, 5))
        self.assertEqual(parse_rfc3339(" 2023-12-01T06:00:00+01:00\n"), _utc(2023, 12, 1, 5))

    def test_rejects_naive_and_garbage(self):
        self.assertIsNone(parse_rfc3339("2023-12-01T05:00:00"))
        self.assertIsNone(parse_rfc3339("yesterday"))
        self.assertIsNone(parse_rfc3339(""))

    def test_format(self):
        self.assertEqual(format_rfc3339(_utc(2023, 12, 1, 5, 6, 7)), "2023-12-01T05:06:07Z")


class TestFileWatermarkStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.state_dir = Path(self._tmp.name)
        self.store = FileWatermarkStore(self.state_dir)

    def tearDown(self):
        self._tmp.cleanup()

    def test_absent_file_means_no_watermark(self):
        mark = self.store.load(2023, LEADERBOARD)
        self.assertEqual(mark, Watermark(2023, LEADERBOARD, None))

    def test_store_then_load(self):
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 2, 7, 30)))
        self.assertEqual(self.store.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 2, 7, 30))

    def test_survives_a_new_store_instance(self):
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 2, 7, 30)))
        reopened = FileWatermarkStore(self.state_dir)
        self.assertEqual(reopened.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 2, 7, 30))

    def test_file_is_human_readable(self):
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 2, 7, 30)))
        text = (self.state_dir / f"timestamp_2023_{LEADERBOARD}").read_text(encoding="utf-8")
        self.assertEqual(text.strip(), "2023-12-02T07:30:00Z")

    def test_keys_are_independent(self):
        self.store.store(Watermark(2022, LEADERBOARD, _utc(2022, 12, 9)))
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 3)))
        self.assertEqual(self.store.load(2022, LEADERBOARD).last_seen, _utc(2022, 12, 9))
        self.assertIsNone(self.store.load(2023, "999").last_seen)

    def test_hand_edited_offset_is_accepted(self):
        (self.state_dir / f"timestamp_2023_{LEADERBOARD}").write_text("2023-12-01T00:00:00-05:00\n", encoding="utf-8")
        self.assertEqual(self.store.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 1, 5))

    def test_corrupt_file_is_moved_aside(self):
        path = self.state_dir / f"timestamp_2023_{LEADERBOARD}"
        path.write_text("not a timestamp", encoding="utf-8")
        mark = self.store.load(2023, LEADERBOARD)
        self.assertIsNone(mark.last_seen)
        self.assertFalse(path.exists())
        self.assertEqual(len(list(self.state_dir.glob(f"timestamp_2023_{LEADERBOARD}.corrupt.*"))), 1)
        self.assertEqual(len(self.store.corrupt_files), 1)

    def test_no_temp_files_left_behind(self):
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 2)))
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 3)))
        self.assertEqual(list(self.state_dir.glob("*.tmp")), [])

    def test_older_value_does_not_overwrite_newer(self):
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 5)))
        self.store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 4)))
        self.assertEqual(self.store.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 5))
        reopened = FileWatermarkStore(self.state_dir)
        self.assertEqual(reopened.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 5))

    def test_empty_watermark_is_not_written(self):
        self.store.store(Watermark(2023, LEADERBOARD, None))
        self.assertEqual(list(self.state_dir.iterdir()), [])

    def test_write_failure_raises_and_keeps_nothing_partial(self):
        blocker = self.state_dir / "not_a_dir"
        blocker.write_text("", encoding="utf-8")
        store = FileWatermarkStore(blocker)
        with self.assertRaises(PersistenceError):
            store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 2)))


class TestMemoryWatermarkStore(unittest.TestCase):
    def test_round_trip_and_absent(self):
        store = MemoryWatermarkStore()
        self.assertIsNone(store.load(2023, LEADERBOARD).last_seen)
        store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 5)))
        self.assertEqual(store.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 5))

    def test_never_returns_older_value(self):
        store = MemoryWatermarkStore()
        store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 5)))
        store.store(Watermark(2023, LEADERBOARD, _utc(2023, 12, 4)))
        self.assertEqual(store.load(2023, LEADERBOARD).last_seen, _utc(2023, 12, 5))


if __name__ == "__main__":
    unittest.main()
