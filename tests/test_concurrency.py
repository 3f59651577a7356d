"""
Test suite for locking and concurrent posting

Posts over overlapping accounts must serialize without lost updates; the
cached balance must always equal the balance derived from posted entries.
"""

import tempfile
import threading
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_engine.accounts import AccountType, OwnerScope
from ledger_engine.concurrency import (
    BalanceCache, BalanceDelta, LockManager, account_lock_key, transaction_lock_key
)
from ledger_engine.config import LedgerConfig
from ledger_engine.currency import Currency
from ledger_engine.errors import ConcurrencyConflictError
from ledger_engine.storage import InMemoryStorage, SQLiteStorage
from ledger_engine.system import LedgerSystem


ORG = OwnerScope.for_org("acme")


class TestLockManager:
    """Test named lock acquisition"""

    def test_lock_keys(self):
        assert account_lock_key("A1") == "account:A1"
        assert transaction_lock_key("T1") == "txn:T1"

    def test_acquire_ordered_sorts_and_dedupes(self):
        locks = LockManager()
        with locks.acquire_ordered(["b", "a", "b", "c"]) as held:
            assert held == ["a", "b", "c"]

    def test_reentrant_within_thread(self):
        locks = LockManager()
        with locks.acquire("a"):
            with locks.acquire_ordered(["a", "b"]):
                pass

    def test_timeout_raises_conflict_and_releases(self):
        locks = LockManager(timeout=0.05)
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with locks.acquire("b"):
                holding.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        assert holding.wait(timeout=5)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            with locks.acquire_ordered(["a", "b"]):
                pass
        assert exc_info.value.retryable

        # "a" must have been released on the way out
        acquired = []

        def take_a():
            with locks.acquire("a", timeout=1):
                acquired.append(True)

        other = threading.Thread(target=take_a)
        other.start()
        other.join()
        assert acquired == [True]

        release.set()
        thread.join(timeout=5)
        assert locks.get_lock_count() == 0

    def test_released_locks_are_dropped(self):
        locks = LockManager()
        with locks.acquire("a"):
            with locks.acquire_ordered(["a", "b"]):
                assert locks.get_lock_count() == 2
            assert locks.get_lock_count() == 1
        assert locks.get_lock_count() == 0

        for i in range(200):
            with locks.acquire(f"txn:{i}"):
                pass
        assert locks.get_lock_count() == 0


class TestBalanceCache:
    """Test versioned balance records"""

    def setup_method(self):
        self.cache = BalanceCache(InMemoryStorage())
        self.cache.initialize("A", Currency.USD)

    def test_apply_increments_version(self):
        delta = BalanceDelta(Decimal('10.00'), Decimal('0'), -1)
        updated = self.cache.apply({"A": delta}, "T1", {"A": 0})

        assert updated[0].balance == Decimal('-10.00')
        assert updated[0].version == 1
        assert updated[0].last_transaction_id == "T1"
        assert self.cache.get("A").debit_total == Decimal('10.00')

    def test_stale_version_conflicts(self):
        delta = BalanceDelta(Decimal('1.00'), Decimal('0'), 1)
        self.cache.apply({"A": delta}, "T1", {"A": 0})

        with pytest.raises(ConcurrencyConflictError, match="changed concurrently"):
            self.cache.apply({"A": delta}, "T2", {"A": 0})
        assert self.cache.get("A").balance == Decimal('1.00')


def post_transfers(system, debit_account, credit_account, count, amount, errors):
    manager = system.transactions
    try:
        for i in range(count):
            txn = manager.open_draft("acme", "payment", f"{debit_account.code}-{i}")
            manager.append_entry(txn.id, debit_account.id, "debit", amount, "USD")
            manager.append_entry(txn.id, credit_account.id, "credit", amount, "USD")
            manager.post_with_retry(txn.id)
    except Exception as e:  # surfaced by the asserting thread
        errors.append(e)


class ConcurrentPostingCase:
    """Concurrent posting properties shared by the storage backends"""

    def make_system(self):
        raise NotImplementedError

    def setup_method(self):
        self.system = self.make_system()
        self.accounts = self.system.accounts
        self.pool = self.accounts.create_account(ORG, "pool", AccountType.ASSET, Currency.USD)
        self.sources = [
            self.accounts.create_account(ORG, f"source-{i}", AccountType.EQUITY, Currency.USD)
            for i in range(4)
        ]

    def test_no_lost_updates_on_shared_account(self):
        errors = []
        threads = [
            threading.Thread(target=post_transfers, args=(self.system, self.pool, source, 10, "1.25", errors))
            for source in self.sources
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        cached = self.accounts.get_balance(self.pool.id)
        assert cached.balance == Decimal('50.00')
        assert cached.version == 40
        assert self.accounts.get_derived_balance(self.pool.id).amount == Decimal('50.00')
        for source in self.sources:
            assert self.accounts.get_balance(source.id).balance == Decimal('12.50')

    def test_disjoint_posts_all_commit(self):
        pairs = []
        for i in range(3):
            left = self.accounts.create_account(ORG, f"left-{i}", AccountType.ASSET, Currency.USD)
            right = self.accounts.create_account(ORG, f"right-{i}", AccountType.REVENUE, Currency.USD)
            pairs.append((left, right))

        errors = []
        threads = [
            threading.Thread(target=post_transfers, args=(self.system, left, right, 5, "2.00", errors))
            for left, right in pairs
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        for left, right in pairs:
            assert self.accounts.get_balance(left.id).balance == Decimal('10.00')
            assert self.accounts.get_balance(right.id).balance == Decimal('10.00')
        assert self.accounts.reconcile_balances() == []

    def test_audit_chain_survives_concurrency(self):
        errors = []
        threads = [
            threading.Thread(target=post_transfers, args=(self.system, self.pool, source, 3, "1.00", errors))
            for source in self.sources
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert self.system.audit_trail.verify_integrity()["valid"]

    def test_lock_table_empty_after_posting(self):
        errors = []
        post_transfers(self.system, self.pool, self.sources[0], 100, "1.00", errors)

        assert errors == []
        assert self.system.lock_manager.get_lock_count() == 0


class TestConcurrentPostingInMemory(ConcurrentPostingCase):

    def make_system(self):
        return LedgerSystem(LedgerConfig(database_url="memory://"))


class TestConcurrentPostingSQLite(ConcurrentPostingCase):

    def make_system(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        storage = SQLiteStorage(Path(self.temp_dir.name) / "ledger.db")
        return LedgerSystem(LedgerConfig(database_url="memory://"), storage=storage)

    def teardown_method(self):
        self.system.close()
        self.temp_dir.cleanup()
