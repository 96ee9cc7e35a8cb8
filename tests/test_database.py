"""
Tests for the SQLite sample store.

Tests:
- Append and most-recent-first reads
- Duplicate (channel_id, observed_at) is rejected, never overwritten
- In-memory databases
- Fee change audit log
"""

import pytest

from feeder.database import Database, StoreError
from feeder.trend import Sample


class TestSamples:
    """Sample append/read behaviour."""

    def test_empty_channel(self, database, sample_channel_id):
        assert database.get_recent_samples(sample_channel_id, 5) == []
        assert database.get_last_sample(sample_channel_id) is None

    def test_recent_is_most_recent_first(self, database, sample_channel_id):
        database.append_sample(sample_channel_id, fee=100, revenue=10, observed_at=1_000)
        database.append_sample(sample_channel_id, fee=200, revenue=20, observed_at=3_000)
        database.append_sample(sample_channel_id, fee=150, revenue=15, observed_at=2_000)

        samples = database.get_recent_samples(sample_channel_id, 10)

        assert [s.observed_at for s in samples] == [3_000, 2_000, 1_000]
        assert samples[0] == Sample(channel_id=sample_channel_id, fee=200, revenue=20,
                                    observed_at=3_000)

    def test_limit(self, database, sample_channel_id):
        for i in range(5):
            database.append_sample(sample_channel_id, fee=i, revenue=i, observed_at=1_000 + i)

        samples = database.get_recent_samples(sample_channel_id, 2)

        assert [s.observed_at for s in samples] == [1_004, 1_003]

    def test_zero_limit(self, database, sample_channel_id):
        database.append_sample(sample_channel_id, fee=1, revenue=1, observed_at=1_000)
        assert database.get_recent_samples(sample_channel_id, 0) == []

    def test_channels_are_independent(self, database):
        database.append_sample("1x1x1", fee=100, revenue=1, observed_at=1_000)
        database.append_sample("2x2x2", fee=200, revenue=2, observed_at=1_000)

        assert database.get_last_sample("1x1x1").fee == 100
        assert database.get_last_sample("2x2x2").fee == 200

    def test_duplicate_key_fails(self, database, sample_channel_id):
        database.append_sample(sample_channel_id, fee=100, revenue=10, observed_at=1_000)

        with pytest.raises(StoreError):
            database.append_sample(sample_channel_id, fee=999, revenue=99, observed_at=1_000)

        # First write survives untouched
        assert database.get_last_sample(sample_channel_id).fee == 100
        assert database.get_sample_count(sample_channel_id) == 1

    def test_tracked_channels(self, database):
        database.append_sample("1x1x1", fee=100, revenue=1, observed_at=1_000)
        database.append_sample("1x1x1", fee=100, revenue=1, observed_at=2_000)
        database.append_sample("2x2x2", fee=200, revenue=2, observed_at=1_500)

        tracked = database.get_tracked_channels()

        assert tracked == [
            {"channel_id": "1x1x1", "samples": 2, "last_observed_at": 2_000},
            {"channel_id": "2x2x2", "samples": 1, "last_observed_at": 1_500},
        ]
        assert database.get_sample_count() == 3

    def test_persists_across_connections(self, temp_db_path, mock_plugin, sample_channel_id):
        db = Database(temp_db_path, mock_plugin)
        db.initialize()
        db.append_sample(sample_channel_id, fee=100, revenue=10, observed_at=1_000)
        db.close()

        reopened = Database(temp_db_path, mock_plugin)
        reopened.initialize()
        assert reopened.get_last_sample(sample_channel_id).revenue == 10
        reopened.close()


class TestMemoryDatabase:
    """':memory:' keeps everything on one connection."""

    def test_memory_round_trip(self, mock_plugin, sample_channel_id):
        db = Database(":memory:", mock_plugin)
        db.initialize()

        db.append_sample(sample_channel_id, fee=100, revenue=10, observed_at=1_000)

        assert db.db_path == ":memory:"
        assert db.get_last_sample(sample_channel_id).fee == 100
        db.close()

    def test_creates_parent_directory(self, tmp_path, mock_plugin):
        path = tmp_path / "nested" / "feeder.sqlite"
        db = Database(str(path), mock_plugin)
        db.initialize()

        assert path.exists()
        db.close()


class TestFeeChanges:
    """Fee change audit log."""

    def test_record_and_read(self, database, sample_channel_id):
        database.record_fee_change(sample_channel_id, old_fee_ppm=1000, new_fee_ppm=1100,
                                   action="step+", reason="revenue rising, fee rising")
        database.record_fee_change("9x9x9", old_fee_ppm=50, new_fee_ppm=25,
                                   action="halve", reason="no revenue", dry_run=True)

        changes = database.get_recent_fee_changes(limit=10)
        assert len(changes) == 2
        assert changes[0]["channel_id"] == "9x9x9"
        assert changes[0]["dry_run"] == 1

        only = database.get_recent_fee_changes(limit=10, channel_id=sample_channel_id)
        assert len(only) == 1
        assert only[0]["new_fee_ppm"] == 1100
        assert only[0]["action"] == "step+"


class TestStoreErrors:

    def test_fee_change_write_failure_is_store_error(self, database, sample_channel_id):
        database._get_connection().execute("DROP TABLE fee_changes")

        with pytest.raises(StoreError):
            database.record_fee_change(sample_channel_id, 500, 250, "halve", "no revenue")

    def test_read_failures_are_store_errors(self, database):
        conn = database._get_connection()
        conn.execute("DROP TABLE fee_changes")
        conn.execute("DROP TABLE samples")

        with pytest.raises(StoreError):
            database.get_sample_count()
        with pytest.raises(StoreError):
            database.get_tracked_channels()
        with pytest.raises(StoreError):
            database.get_recent_fee_changes()

    def test_closed_database_is_not_reopened(self, database, sample_channel_id):
        database.close()

        with pytest.raises(StoreError):
            database.append_sample(sample_channel_id, fee=1, revenue=1, observed_at=1)
        assert database._conn is None
