"""
Unit tests for storage layer.

Tests schema creation, atomic counter and ledger upserts, purging, the
usage archive and error translation.
"""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone

import pytest

from usage_governor.storage.base import StorageUnavailableError
from usage_governor.storage.db import DEFAULT_DB_PATH, get_connection
from usage_governor.storage.memory import InMemoryStore
from usage_governor.storage.models import CostLedgerEntry, UsageRecord, WindowEntry
from usage_governor.storage.repository import SQLiteStore, get_store, initialize_schema

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)
HOUR = timedelta(hours=1)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
                tables = {row[0] for row in cursor.fetchall()}
                assert {"rate_window", "cost_ledger", "usage_record"} <= tables

                cursor = conn.execute("PRAGMA table_info(rate_window)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    "subject", "action", "count", "window_start", "expires_at"
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_unwritable_path_raises_storage_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "missing", "test.db")
            with pytest.raises(StorageUnavailableError):
                initialize_schema(db_path)


class TestWindowUpsert:
    """Test the atomic window increment on both stores."""

    def test_first_upsert_creates_window(self, store):
        entry = store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)

        assert entry == WindowEntry("alice", "ai_api_call", 1, T0, T0 + HOUR)
        assert store.get_window("alice", "ai_api_call") == entry

    def test_upsert_inside_window_increments(self, store):
        store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)
        entry = store.upsert_window("alice", "ai_api_call", T0 + timedelta(seconds=59), MINUTE, HOUR)

        assert entry.count == 2
        assert entry.window_start == T0
        assert entry.expires_at == T0 + HOUR

    def test_upsert_after_window_starts_fresh(self, store):
        store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)
        store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)
        entry = store.upsert_window("alice", "ai_api_call", T0 + MINUTE, MINUTE, HOUR)

        assert entry.count == 1
        assert entry.window_start == T0 + MINUTE
        assert entry.expires_at == T0 + MINUTE + HOUR

    def test_expiry_covers_long_windows(self, store):
        """A window longer than the retention is kept until it ends."""
        entry = store.upsert_window("alice", "game_generation", T0, 2 * HOUR, HOUR)

        assert entry.expires_at == T0 + 2 * HOUR

    def test_delete_window(self, store):
        store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)
        store.delete_window("alice", "ai_api_call")

        assert store.get_window("alice", "ai_api_call") is None

    def test_purge_expired_windows(self, store):
        store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)
        store.upsert_window("bob", "ai_api_call", T0 + 30 * MINUTE, MINUTE, HOUR)

        assert store.purge_expired_windows(T0 + HOUR) == 1
        assert store.get_window("alice", "ai_api_call") is None
        assert store.get_window("bob", "ai_api_call") is not None

    def test_concurrent_increments_are_not_lost(self, store):
        """Parallel upserts on one key all land."""
        threads_count, per_thread = 4, 25

        def worker():
            for _ in range(per_thread):
                store.upsert_window("alice", "ai_api_call", T0, MINUTE, HOUR)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get_window("alice", "ai_api_call").count == threads_count * per_thread


class TestLedgerUpsert:
    """Test cost ledger accumulation on both stores."""

    def test_upsert_creates_and_accumulates(self, store):
        store.upsert_ledger("alice", "text_generation", "free", T0, 0.10)
        entry = store.upsert_ledger("alice", "text_generation", "free", T0, 0.05)

        assert entry.cost_used == pytest.approx(0.15)
        assert store.get_ledger("alice", "text_generation", T0).cost_used == pytest.approx(0.15)

    def test_latest_tier_is_kept(self, store):
        store.upsert_ledger("alice", "text_generation", "free", T0, 0.10)
        entry = store.upsert_ledger("alice", "text_generation", "premium", T0, 0.10)

        assert entry.tier == "premium"
        assert entry.cost_used == pytest.approx(0.20)

    def test_periods_are_separate_entries(self, store):
        store.upsert_ledger("alice", "text_generation", "free", T0, 0.10)
        store.upsert_ledger("alice", "text_generation", "free", T0 + HOUR, 0.30)

        assert store.get_ledger("alice", "text_generation", T0).cost_used == pytest.approx(0.10)
        assert store.get_ledger("alice", "text_generation", T0 + HOUR).cost_used == pytest.approx(0.30)

    def test_missing_entry_is_none(self, store):
        assert store.get_ledger("alice", "text_generation", T0) is None

    def test_purge_ledger(self, store):
        store.upsert_ledger("alice", "text_generation", "free", T0, 0.10)
        store.upsert_ledger("alice", "text_generation", "free", T0 + HOUR, 0.10)

        assert store.purge_ledger(T0 + HOUR) == 1
        assert store.get_ledger("alice", "text_generation", T0) is None

    def test_concurrent_costs_are_not_lost(self, store):
        def worker():
            for _ in range(20):
                store.upsert_ledger("alice", "text_generation", "free", T0, 0.25)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get_ledger("alice", "text_generation", T0).cost_used == pytest.approx(20.0)

    def test_list_ledger_newest_first(self, sqlite_store):
        sqlite_store.upsert_ledger("alice", "text_generation", "free", T0, 0.10)
        sqlite_store.upsert_ledger("alice", "image_generation", "free", T0 + HOUR, 0.20)

        entries = sqlite_store.list_ledger("alice")

        assert [e.period_start for e in entries] == [T0 + HOUR, T0]
        assert isinstance(entries[0], CostLedgerEntry)


class TestInMemoryLocking:
    """Test the in-process store's lock stripes."""

    def test_lock_count_does_not_grow_with_keys(self):
        """Many subjects share a fixed set of locks, before and after purging."""
        store = InMemoryStore(lock_stripes=8)
        for i in range(1000):
            store.upsert_window(f"user-{i}", "ai_api_call", T0, MINUTE, HOUR)
            store.upsert_ledger(f"user-{i}", "text_generation", "free", T0, 0.01)

        assert store.purge_expired_windows(T0 + 2 * HOUR) == 1000
        assert store.purge_ledger(T0 + HOUR) == 1000
        assert len(store._key_locks) == 8

    def test_same_key_maps_to_same_lock(self):
        store = InMemoryStore()

        assert store._lock_for(("window", "alice", "x")) is store._lock_for(("window", "alice", "x"))

    def test_invalid_stripe_count_rejected(self):
        with pytest.raises(ValueError):
            InMemoryStore(lock_stripes=0)


class TestUsageArchive:
    """Test the append-only usage archive."""

    def _record(self, timestamp, **overrides) -> UsageRecord:
        values = dict(
            subject="alice",
            endpoint="/api/ai/text",
            method="POST",
            timestamp=timestamp,
            response_time_ms=120.5,
            status_code=200,
            cached=True,
            model="nova-fast",
            tokens=400,
            cost=0.0008,
            user_agent="pytest",
            ip_address="127.0.0.1",
        )
        values.update(overrides)
        return UsageRecord(**values)

    def test_round_trip_preserves_fields(self, store):
        record = self._record(T0)
        store.append_usage(record)

        assert store.fetch_usage(T0, T0) == [record]

    def test_fetch_is_inclusive_and_ordered(self, store):
        for minutes in [2, 0, 3, 1]:
            store.append_usage(self._record(T0 + minutes * MINUTE, endpoint=f"/e{minutes}"))

        fetched = store.fetch_usage(T0 + MINUTE, T0 + 2 * MINUTE)

        assert [r.endpoint for r in fetched] == ["/e1", "/e2"]

    def test_batch_append(self, sqlite_store):
        records = [self._record(T0 + i * MINUTE) for i in range(3)]
        sqlite_store.append_usage_batch(records)
        sqlite_store.append_usage_batch([])

        assert len(sqlite_store.fetch_usage(T0, T0 + HOUR)) == 3

    def test_naive_timestamps_are_utc(self, sqlite_store):
        sqlite_store.append_usage(self._record(datetime(2024, 1, 1, 12, 0, 0)))

        fetched = sqlite_store.fetch_usage(T0, T0)

        assert fetched[0].timestamp == T0
        assert fetched[0].timestamp.tzinfo is not None

    def test_naive_record_timestamp_is_normalized(self):
        record = self._record(datetime(2024, 1, 1, 12, 0, 0))

        assert record.timestamp == T0
        assert record.timestamp.tzinfo is timezone.utc

    def test_no_update_methods_exist(self):
        """The archive only appends and reads."""
        for method in ("update_usage", "delete_usage"):
            assert not hasattr(SQLiteStore, method)
            assert not hasattr(InMemoryStore, method)


class TestStorageErrors:
    """Test translation of SQLite failures."""

    def test_missing_schema_raises_storage_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SQLiteStore(os.path.join(temp_dir, "empty.db"))

            with pytest.raises(StorageUnavailableError) as exc_info:
                store.get_window("alice", "ai_api_call")

            assert exc_info.value.__cause__ is not None

    def test_get_store_default_is_shared(self):
        assert get_store() is get_store(DEFAULT_DB_PATH)

    def test_get_store_custom_path_is_fresh(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "custom.db")
            assert get_store(db_path) is not get_store(db_path)
            assert get_store(db_path).db_path == db_path
