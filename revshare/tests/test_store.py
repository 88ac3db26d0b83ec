"""
Unit Tests for the document store

Tests cover:
1. Buffered writes and atomic commit
2. Optimistic conflict detection and retry
3. Atomic increments
4. Unavailability
"""

import pytest

from revshare.exceptions import TransientStoreError
from revshare.store import InMemoryStore


class TestTransactions:
    """Tests for run_transaction."""

    def test_writes_visible_after_commit(self):
        """Test that a committed transaction's writes can be read back."""
        store = InMemoryStore()

        store.run_transaction(lambda txn: txn.create("things", "t1", {"name": "first"}))

        assert store.get("things", "t1") == {"name": "first"}

    def test_exception_in_body_writes_nothing(self):
        """Test that a failing body leaves no partial state."""
        store = InMemoryStore()

        def body(txn):
            txn.create("things", "t1", {"n": 1})
            txn.increment("counters", "c1", {"value": 5})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run_transaction(body)

        assert store.get("things", "t1") is None
        assert store.get("counters", "c1") is None

    def test_conflicting_read_is_retried(self):
        """Test that a body re-runs when a document it read changed before commit."""
        store = InMemoryStore(retry_delay=0)
        store.run_transaction(lambda txn: txn.set("counters", "c1", {"value": 1}))
        attempts = []

        def body(txn):
            doc = txn.get("counters", "c1")
            attempts.append(doc["value"])
            if len(attempts) == 1:
                # Someone else commits between our read and our commit
                store.run_transaction(lambda other: other.set("counters", "c1", {"value": 10}))
            txn.set("counters", "c1", {"value": doc["value"] + 1})

        store.run_transaction(body)

        assert attempts == [1, 10]
        assert store.get("counters", "c1") == {"value": 11}

    def test_persistent_conflict_raises_transient_error(self):
        """Test that a transaction that never commits surfaces as TransientStoreError."""
        store = InMemoryStore(max_attempts=3, retry_delay=0)
        store.run_transaction(lambda txn: txn.set("things", "t1", {"n": 0}))

        def body(txn):
            txn.get("things", "t1")
            store.run_transaction(lambda other: other.set("things", "t1", {"n": 1}))

        with pytest.raises(TransientStoreError):
            store.run_transaction(body)

    def test_reads_after_writes_rejected(self):
        """Test that all reads must precede writes."""
        store = InMemoryStore()

        def body(txn):
            txn.set("things", "t1", {})
            txn.get("things", "t2")

        with pytest.raises(RuntimeError):
            store.run_transaction(body)

    def test_delete(self):
        store = InMemoryStore()
        store.run_transaction(lambda txn: txn.set("things", "t1", {"n": 1}))

        store.run_transaction(lambda txn: txn.delete("things", "t1"))

        assert store.get("things", "t1") is None
        assert store.list("things") == []


class TestIncrement:
    """Tests for atomic numeric increments."""

    def test_increment_creates_from_defaults(self):
        """Test that incrementing a missing document starts from the defaults."""
        store = InMemoryStore()

        store.run_transaction(lambda txn: txn.increment(
            "balances", "b1", {"pending_cents": 250}, defaults={"owner": "b1", "pending_cents": 0}
        ))

        assert store.get("balances", "b1") == {"owner": "b1", "pending_cents": 250}

    def test_increments_accumulate_within_and_across_transactions(self):
        """Test that several increments to one document all land."""
        store = InMemoryStore()

        def body(txn):
            txn.increment("balances", "b1", {"pending_cents": 100})
            txn.increment("balances", "b1", {"pending_cents": 50})

        store.run_transaction(body)
        store.run_transaction(lambda txn: txn.increment("balances", "b1", {"pending_cents": 1}))

        assert store.get("balances", "b1")["pending_cents"] == 151


class TestAvailability:
    """Tests for storage outages."""

    def test_unavailable_store_raises_transient_error(self):
        store = InMemoryStore()
        store.available = False

        with pytest.raises(TransientStoreError):
            store.get("things", "t1")
        with pytest.raises(TransientStoreError):
            store.run_transaction(lambda txn: txn.get("things", "t1"))

    def test_list_filters_by_field(self):
        store = InMemoryStore()
        store.run_transaction(lambda txn: txn.set("things", "a", {"kind": "x"}))
        store.run_transaction(lambda txn: txn.set("things", "b", {"kind": "y"}))

        assert store.list("things", kind="y") == [{"kind": "y"}]
