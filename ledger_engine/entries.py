"""
Entry Store Module

Append-only container of signed line items, each scoped to one ledger
transaction. While the owning transaction is a draft its entries may be added
and removed freely and need not balance; balance is checked only at posting.
Posting freezes every entry, after which the store only reads them.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .errors import NotDraftError, NotFoundError, StateError
from .storage import StorageInterface, StorageRecord, parse_timestamp


class EntryDirection(Enum):
    """Side of the ledger an entry lands on"""
    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def opposite(self) -> 'EntryDirection':
        return EntryDirection.CREDIT if self is EntryDirection.DEBIT else EntryDirection.DEBIT


class EntryStatus(Enum):
    DRAFT = "draft"      # Owning transaction is still a draft
    POSTED = "posted"    # Frozen by posting


@dataclass
class LedgerEntry(StorageRecord):
    """
    One debit or credit line of a ledger transaction.
    Amounts are always positive; direction carries the sign.
    """
    transaction_id: str
    account_id: str
    direction: EntryDirection
    amount: Money
    sequence: int
    status: EntryStatus = EntryStatus.DRAFT
    asset_id: Optional[str] = None
    memo: str = ""

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def is_debit(self) -> bool:
        return self.direction == EntryDirection.DEBIT

    @property
    def signed_amount(self) -> Decimal:
        """+amount for debits, -amount for credits"""
        return self.amount.amount if self.is_debit else -self.amount.amount

    @property
    def is_frozen(self) -> bool:
        return self.status == EntryStatus.POSTED

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'transaction_id': self.transaction_id,
            'account_id': self.account_id,
            'direction': self.direction.value,
            'amount': str(self.amount.amount),
            'currency': self.currency.code,
            'sequence': self.sequence,
            'status': self.status.value,
            'asset_id': self.asset_id,
            'memo': self.memo
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            transaction_id=data['transaction_id'],
            account_id=data['account_id'],
            direction=EntryDirection(data['direction']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            sequence=data['sequence'],
            status=EntryStatus(data['status']),
            asset_id=data.get('asset_id'),
            memo=data.get('memo', "")
        )


class EntryStore:
    """
    Persists ledger entries. Callers pass the owning transaction so the store
    can refuse writes once it has left the draft state.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_entries"

    @staticmethod
    def _require_draft(transaction) -> None:
        if not transaction.is_draft:
            raise NotDraftError(transaction.id, transaction.status.value)

    def add(
        self,
        transaction,
        account_id: str,
        direction: EntryDirection,
        amount: Money,
        asset_id: Optional[str] = None,
        memo: str = ""
    ) -> LedgerEntry:
        """Append an entry to a draft transaction"""
        self._require_draft(transaction)

        existing = self.list_for_transaction(transaction.id)
        sequence = max((e.sequence for e in existing), default=0) + 1

        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=transaction.id,
            account_id=account_id,
            direction=direction,
            amount=amount,
            sequence=sequence,
            asset_id=asset_id,
            memo=memo
        )
        self._save(entry)
        return entry

    def get(self, entry_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return LedgerEntry.from_dict(data)
        return None

    def remove(self, transaction, entry_id: str) -> LedgerEntry:
        """Remove one entry from a draft transaction"""
        self._require_draft(transaction)

        entry = self.get(entry_id)
        if not entry or entry.transaction_id != transaction.id:
            raise NotFoundError("entry", entry_id)
        if entry.is_frozen:
            raise StateError(f"Entry {entry_id} is posted and cannot be removed")

        self.storage.delete(self.table_name, entry_id)
        return entry

    def list_for_transaction(self, transaction_id: str) -> List[LedgerEntry]:
        """Entries of one transaction in append order"""
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'transaction_id': transaction_id})
        ]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def list_for_account(self, account_id: str, posted_only: bool = True) -> List[LedgerEntry]:
        filters = {'account_id': account_id}
        if posted_only:
            filters['status'] = EntryStatus.POSTED.value
        return [LedgerEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def freeze(self, entries: List[LedgerEntry], posted_at: datetime) -> None:
        """Mark entries posted; runs inside the posting unit of work"""
        for entry in entries:
            entry.status = EntryStatus.POSTED
            entry.updated_at = posted_at
            self._save(entry)

    def discard_all(self, transaction) -> int:
        """Permanently delete every entry of a draft transaction"""
        self._require_draft(transaction)
        entries = self.list_for_transaction(transaction.id)
        for entry in entries:
            self.storage.delete(self.table_name, entry.id)
        return len(entries)

    def _save(self, entry: LedgerEntry) -> None:
        self.storage.save(self.table_name, entry.id, entry.to_dict())
