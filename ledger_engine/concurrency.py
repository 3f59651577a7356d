"""
Concurrency and Isolation Module

Serializes posts that touch overlapping accounts and owns the cached
per-account balance relation, the only mutable state shared between
transactions.

Locks are always taken in one global order: the transaction's own lock first,
then account locks sorted by key. Two posts sharing accounts therefore queue
instead of deadlocking, and posts over disjoint accounts never wait on each
other.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
import threading

from .currency import Currency, Money, exact_arithmetic
from .errors import ConcurrencyConflictError, NotFoundError
from .storage import StorageInterface, parse_timestamp


def account_lock_key(account_id: str) -> str:
    return f"account:{account_id}"


def transaction_lock_key(transaction_id: str) -> str:
    return f"txn:{transaction_id}"


class LockManager:
    """
    Named re-entrant locks with bounded waits.

    A lock exists only while some caller holds or waits on it; the last
    release drops it, so the table stays as small as the set of contended keys.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._refs[key] = self._refs.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def get_lock_count(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def acquire(self, key: str, timeout: Optional[float] = None) -> Iterator[str]:
        """Hold a single named lock"""
        with self.acquire_ordered([key], timeout=timeout):
            yield key

    @contextmanager
    def acquire_ordered(self, keys: Iterable[str], timeout: Optional[float] = None) -> Iterator[List[str]]:
        """
        Hold every named lock in ``keys``, acquired in sorted order.

        Raises:
            ConcurrencyConflictError: If any lock is not obtained within the
                timeout; locks already taken are released first
        """
        wait = self.timeout if timeout is None else timeout
        ordered = sorted(set(keys))
        acquired: List[Tuple[str, threading.RLock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                if not lock.acquire(timeout=wait):
                    self._checkin(key)
                    raise ConcurrencyConflictError(f"Timed out after {wait}s waiting for lock on {key}")
                acquired.append((key, lock))
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


@dataclass
class BalanceDelta:
    """Posted movement on one account; sign is +1 for debit-normal accounts"""
    debit: Decimal
    credit: Decimal
    sign: int

    @property
    def net(self) -> Decimal:
        with exact_arithmetic():
            return self.sign * (self.debit - self.credit)


@dataclass
class AccountBalance:
    """Cached balance record, keyed by account id"""
    account_id: str
    currency: Currency
    balance: Decimal
    debit_total: Decimal
    credit_total: Decimal
    version: int
    last_transaction_id: Optional[str]
    updated_at: datetime

    @property
    def money(self) -> Money:
        return Money(self.balance, self.currency)

    def to_dict(self) -> Dict:
        return {
            'account_id': self.account_id,
            'currency': self.currency.code,
            'balance': str(self.balance),
            'debit_total': str(self.debit_total),
            'credit_total': str(self.credit_total),
            'version': self.version,
            'last_transaction_id': self.last_transaction_id,
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AccountBalance':
        return cls(
            account_id=data['account_id'],
            currency=Currency[data['currency']],
            balance=Decimal(data['balance']),
            debit_total=Decimal(data['debit_total']),
            credit_total=Decimal(data['credit_total']),
            version=data['version'],
            last_transaction_id=data.get('last_transaction_id'),
            updated_at=parse_timestamp(data['updated_at'])
        )


class BalanceCache:
    """
    Per-account cached balances.

    Writes happen only inside the posting unit of work while the caller holds
    the account locks; each write checks the version read under those locks.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "account_balances"

    def initialize(self, account_id: str, currency: Currency) -> AccountBalance:
        record = AccountBalance(
            account_id=account_id,
            currency=currency,
            balance=Decimal('0'),
            debit_total=Decimal('0'),
            credit_total=Decimal('0'),
            version=0,
            last_transaction_id=None,
            updated_at=datetime.now(timezone.utc)
        )
        self.storage.save(self.table_name, account_id, record.to_dict())
        return record

    def get(self, account_id: str) -> AccountBalance:
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise NotFoundError("account balance", account_id)
        return AccountBalance.from_dict(data)

    def read_versions(self, account_ids: Iterable[str]) -> Dict[str, int]:
        return {account_id: self.get(account_id).version for account_id in account_ids}

    def apply(
        self,
        deltas: Dict[str, BalanceDelta],
        transaction_id: str,
        expected_versions: Dict[str, int]
    ) -> List[AccountBalance]:
        """
        Apply posted deltas; must run inside the posting unit of work.

        Raises:
            ConcurrencyConflictError: If a record changed since its version
                was read
        """
        now = datetime.now(timezone.utc)
        updated = []
        for account_id in sorted(deltas):
            delta = deltas[account_id]
            record = self.get(account_id)
            if record.version != expected_versions[account_id]:
                raise ConcurrencyConflictError(
                    f"Balance of account {account_id} changed concurrently "
                    f"(expected version {expected_versions[account_id]}, found {record.version})"
                )
            with exact_arithmetic():
                record.debit_total += delta.debit
                record.credit_total += delta.credit
                record.balance += delta.net
            record.version += 1
            record.last_transaction_id = transaction_id
            record.updated_at = now
            self.storage.save(self.table_name, account_id, record.to_dict())
            updated.append(record)
        return updated

    def overwrite(self, account_id: str, currency: Currency, debit_total: Decimal,
                  credit_total: Decimal, sign: int) -> AccountBalance:
        """Replace a cached record with recomputed totals (used by rebuilds)"""
        record = self.get(account_id)
        record.currency = currency
        record.debit_total = debit_total
        record.credit_total = credit_total
        with exact_arithmetic():
            record.balance = sign * (debit_total - credit_total)
        record.version += 1
        record.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account_id, record.to_dict())
        return record
