"""
Ledger Transaction Manager

Owns the draft -> posted | void state machine and the two-phase posting
protocol: validate the complete entry set first, then make the transition,
the entry freeze and the balance-cache update visible in one unit of work.
Posted history is append-only; a posted transaction is undone only by a new
compensating transaction with every direction swapped.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Union
from enum import Enum
import time
import uuid

from .accounts import Account, AccountRegistry
from .audit import AuditTrail, AuditEventType
from .concurrency import (
    BalanceCache, BalanceDelta, LockManager, account_lock_key, transaction_lock_key
)
from .currency import Currency, exact_arithmetic, parse_amount
from .entries import EntryDirection, EntryStore, LedgerEntry
from .errors import (
    ConcurrencyConflictError, CurrencyMismatchError, LedgerError, NotDraftError,
    NotFoundError, StateError, ValidationError
)
from .events import EventDispatcher, LedgerEvent, create_transaction_event
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .validator import BalanceCheck, BalanceValidator


class TransactionStatus(Enum):
    """Lifecycle of a ledger transaction"""
    DRAFT = "draft"    # Entries may change; may be unbalanced
    POSTED = "posted"  # Terminal, balanced and immutable
    VOID = "void"      # Terminal, entries discarded


class ReferenceType(Enum):
    """Kinds of business events a ledger transaction can trace back to"""
    ORDER = "order"
    PAYMENT = "payment"
    SETTLEMENT = "settlement"
    TASK_BILLING = "task_billing"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    REVERSAL = "reversal"
    SYSTEM = "system"


@dataclass(frozen=True)
class TransactionReference:
    """
    Tagged pointer to the originating business event. The ledger never
    dereferences it; the caller's domain resolves the id.
    """
    reference_type: ReferenceType
    reference_id: str

    def __post_init__(self):
        if not isinstance(self.reference_id, str) or not self.reference_id.strip():
            raise ValidationError("Reference id must be a non-empty string")

    @classmethod
    def of(cls, reference_type: Union[str, ReferenceType], reference_id: str) -> 'TransactionReference':
        if not isinstance(reference_type, ReferenceType):
            try:
                reference_type = ReferenceType(reference_type)
            except ValueError:
                raise ValidationError(f"Unknown reference type {reference_type!r}") from None
        return cls(reference_type, reference_id)


@dataclass
class LedgerTransaction(StorageRecord):
    """
    Atomic unit grouping entries that must jointly balance
    """
    organization_id: Optional[str]  # None for system-level transactions
    reference: TransactionReference
    occurred_at: datetime
    created_by: Optional[str]
    status: TransactionStatus = TransactionStatus.DRAFT
    description: str = ""
    posted_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    reverses: Optional[str] = None     # ID of the transaction this one compensates
    reversed_by: Optional[str] = None  # ID of the compensating transaction

    @property
    def is_draft(self) -> bool:
        return self.status == TransactionStatus.DRAFT

    @property
    def is_posted(self) -> bool:
        return self.status == TransactionStatus.POSTED

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'reference_type': self.reference.reference_type.value,
            'reference_id': self.reference.reference_id,
            'occurred_at': self.occurred_at.isoformat(),
            'created_by': self.created_by,
            'status': self.status.value,
            'description': self.description,
            'posted_at': self.posted_at.isoformat() if self.posted_at else None,
            'voided_at': self.voided_at.isoformat() if self.voided_at else None,
            'reverses': self.reverses,
            'reversed_by': self.reversed_by
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerTransaction':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            organization_id=data.get('organization_id'),
            reference=TransactionReference(ReferenceType(data['reference_type']), data['reference_id']),
            occurred_at=parse_timestamp(data['occurred_at']),
            created_by=data.get('created_by'),
            status=TransactionStatus(data['status']),
            description=data.get('description', ""),
            posted_at=parse_timestamp(data.get('posted_at')),
            voided_at=parse_timestamp(data.get('voided_at')),
            reverses=data.get('reverses'),
            reversed_by=data.get('reversed_by')
        )


class LedgerTransactionManager:
    """
    Opens drafts, edits their entries and drives them to a terminal state.

    Draft edits lock only their own transaction. post() additionally locks
    every referenced account, in sorted order, for the duration of its commit.
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountRegistry,
        entry_store: EntryStore,
        validator: BalanceValidator,
        balance_cache: BalanceCache,
        lock_manager: LockManager,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        max_post_attempts: int = 3,
        retry_backoff_seconds: float = 0.05
    ):
        self.storage = storage
        self.accounts = accounts
        self.entries = entry_store
        self.validator = validator
        self.balances = balance_cache
        self.locks = lock_manager
        self.audit_trail = audit_trail
        self.max_post_attempts = max_post_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.table_name = "ledger_transactions"
        self.logger = get_logger("ledger.transactions")
        self._event_dispatcher = event_dispatcher

    def _publish_event(self, event_type: LedgerEvent, transaction: LedgerTransaction) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish(create_transaction_event(event_type, transaction))

    # Draft lifecycle

    def open_draft(
        self,
        organization_id: Optional[str],
        reference_type: Union[str, ReferenceType],
        reference_id: str,
        occurred_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
        description: str = ""
    ) -> LedgerTransaction:
        """
        Open a new draft transaction

        Args:
            organization_id: Owning organization, None for system-level
            reference_type: Kind of originating business event
            reference_id: Opaque id of that event in its own domain
            occurred_at: When the business event happened (defaults to now)
            created_by: Actor opening the draft
            description: Free-text description

        Returns:
            LedgerTransaction in DRAFT status
        """
        reference = TransactionReference.of(reference_type, reference_id)

        now = datetime.now(timezone.utc)
        if occurred_at is None:
            occurred_at = now
        elif occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)

        transaction = LedgerTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            reference=reference,
            occurred_at=occurred_at,
            created_by=created_by,
            description=description
        )
        self._save(transaction)

        log_action(
            self.logger, "info", "Draft transaction opened",
            user_id=created_by, action="open_draft", resource=f"ledger_transaction:{transaction.id}",
            extra={
                "organization_id": organization_id,
                "reference_type": reference.reference_type.value,
                "reference_id": reference.reference_id
            }
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_OPENED,
            entity_type="ledger_transaction",
            entity_id=transaction.id,
            user_id=created_by,
            metadata={
                "organization_id": organization_id,
                "reference_type": reference.reference_type.value,
                "reference_id": reference.reference_id,
                "occurred_at": occurred_at
            }
        )

        self._publish_event(LedgerEvent.TRANSACTION_OPENED, transaction)

        return transaction

    def append_entry(
        self,
        transaction_id: str,
        account_id: str,
        direction: Union[str, EntryDirection],
        amount: Union[str, Decimal],
        currency: Union[str, Currency],
        asset_id: Optional[str] = None,
        memo: str = "",
        actor: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append one entry to a draft. Balance is not checked here.

        Raises:
            NotDraftError: Transaction is posted or void
            InvalidAmountError: Amount <= 0 or finer than the currency allows
            CurrencyMismatchError: Currency differs from the account's
            AccountClosedError / AccountSuspendedError: Account refuses entries
        """
        with self.locks.acquire(transaction_lock_key(transaction_id)):
            transaction = self.resolve(transaction_id)
            if not transaction.is_draft:
                raise NotDraftError(transaction.id, transaction.status.value)

            direction = self._parse_direction(direction)
            currency = Currency.from_code(currency)
            money = parse_amount(amount, currency)

            account = self.accounts.resolve(account_id)
            if account.currency != currency:
                raise CurrencyMismatchError(
                    f"Entry currency {currency.code} does not match account currency {account.currency.code}"
                )
            account.ensure_accepts_entries()

            entry = self.entries.add(transaction, account_id, direction, money, asset_id=asset_id, memo=memo)

        self.logger.debug(
            f"Entry {entry.id} appended to {transaction_id}: {direction.value} {money.to_string()} on {account_id}"
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.ENTRY_APPENDED,
            entity_type="ledger_transaction",
            entity_id=transaction_id,
            user_id=actor,
            metadata={
                "entry_id": entry.id,
                "account_id": account_id,
                "direction": direction.value,
                "amount": str(money.amount),
                "currency": currency.code
            }
        )

        return entry

    def remove_entry(self, transaction_id: str, entry_id: str, actor: Optional[str] = None) -> LedgerEntry:
        """Remove one entry from a draft"""
        with self.locks.acquire(transaction_lock_key(transaction_id)):
            transaction = self.resolve(transaction_id)
            entry = self.entries.remove(transaction, entry_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.ENTRY_REMOVED,
            entity_type="ledger_transaction",
            entity_id=transaction_id,
            user_id=actor,
            metadata={"entry_id": entry_id, "account_id": entry.account_id}
        )

        return entry

    def list_entries(self, transaction_id: str) -> List[LedgerEntry]:
        """Entries of a transaction in append order (empty once voided)"""
        self.resolve(transaction_id)
        return self.entries.list_for_transaction(transaction_id)

    def preview_balance(self, transaction_id: str) -> BalanceCheck:
        """Run the validator on a transaction without changing anything"""
        self.resolve(transaction_id)
        return self.validator.check(self.entries.list_for_transaction(transaction_id))

    # Terminal transitions

    def post(self, transaction_id: str, actor: Optional[str] = None) -> LedgerTransaction:
        """
        Post a draft transaction.

        Phase one validates the full entry set; an unbalanced draft stays a
        draft with its entries intact. Phase two locks every referenced
        account in sorted order and commits, as one unit of work, the status
        change, the entry freeze and the balance-cache deltas.

        Raises:
            NotDraftError: Transaction already posted or void
            UnbalancedTransactionError: A currency group does not net to zero
            AccountClosedError / AccountSuspendedError: An account stopped
                accepting entries after they were appended
            ConcurrencyConflictError: Locks not obtained in time; safe to retry
        """
        with self.locks.acquire(transaction_lock_key(transaction_id)):
            transaction = self.resolve(transaction_id)
            if not transaction.is_draft:
                raise NotDraftError(transaction.id, transaction.status.value)

            entries = self.entries.list_for_transaction(transaction_id)
            check = self.validator.check(entries)
            if not check.balanced:
                self._record_rejection(transaction, check, actor)
                check.raise_if_unbalanced()

            account_ids = {entry.account_id for entry in entries}
            with self.locks.acquire_ordered(account_lock_key(a) for a in account_ids):
                accounts = {a: self.accounts.resolve(a) for a in account_ids}
                for account in accounts.values():
                    account.ensure_accepts_entries()

                deltas = self._build_deltas(entries, accounts)
                versions = self.balances.read_versions(account_ids)
                now = datetime.now(timezone.utc)

                with self.storage.atomic():
                    transaction.status = TransactionStatus.POSTED
                    transaction.posted_at = now
                    transaction.updated_at = now
                    self._save(transaction)
                    self.entries.freeze(entries, now)
                    self.balances.apply(deltas, transaction.id, versions)
                    if transaction.reverses:
                        self._link_reversal(transaction)

        log_action(
            self.logger, "info", "Transaction posted",
            user_id=actor, action="post_transaction", resource=f"ledger_transaction:{transaction.id}",
            extra={
                "entry_count": len(entries),
                "accounts": sorted(account_ids),
                "totals": check.to_dict()['totals']
            }
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_POSTED,
            entity_type="ledger_transaction",
            entity_id=transaction.id,
            user_id=actor,
            metadata={
                "entry_count": len(entries),
                "accounts": sorted(account_ids),
                "totals": check.to_dict()['totals'],
                "posted_at": transaction.posted_at
            }
        )

        self._publish_event(LedgerEvent.TRANSACTION_POSTED, transaction)

        return transaction

    def post_with_retry(
        self,
        transaction_id: str,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        actor: Optional[str] = None
    ) -> LedgerTransaction:
        """
        post() retried on ConcurrencyConflictError only, with exponential
        backoff. Any other error propagates on the first attempt.
        """
        attempts = attempts or self.max_post_attempts
        backoff = self.retry_backoff_seconds if backoff_seconds is None else backoff_seconds

        for attempt in range(1, attempts + 1):
            try:
                return self.post(transaction_id, actor=actor)
            except ConcurrencyConflictError as e:
                if attempt == attempts:
                    raise
                self.logger.warning(
                    f"Post of {transaction_id} conflicted (attempt {attempt}/{attempts}): {e}"
                )
                time.sleep(backoff * (2 ** (attempt - 1)))

    def void(self, transaction_id: str, reason: str = "", actor: Optional[str] = None) -> LedgerTransaction:
        """
        Void a draft: its entries are discarded permanently.

        Raises:
            NotDraftError: Transaction already posted or void
        """
        with self.locks.acquire(transaction_lock_key(transaction_id)):
            transaction = self.resolve(transaction_id)
            if not transaction.is_draft:
                raise NotDraftError(transaction.id, transaction.status.value)

            now = datetime.now(timezone.utc)
            with self.storage.atomic():
                discarded = self.entries.discard_all(transaction)
                transaction.status = TransactionStatus.VOID
                transaction.voided_at = now
                transaction.updated_at = now
                self._save(transaction)

        log_action(
            self.logger, "info", "Transaction voided",
            user_id=actor, action="void_transaction", resource=f"ledger_transaction:{transaction.id}",
            extra={"discarded_entries": discarded, "reason": reason}
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_VOIDED,
            entity_type="ledger_transaction",
            entity_id=transaction.id,
            user_id=actor,
            metadata={"discarded_entries": discarded, "reason": reason}
        )

        self._publish_event(LedgerEvent.TRANSACTION_VOIDED, transaction)

        return transaction

    def reverse(
        self,
        transaction_id: str,
        reason: str = "",
        actor: Optional[str] = None,
        occurred_at: Optional[datetime] = None
    ) -> LedgerTransaction:
        """
        Compensate a posted transaction with a new one whose entries mirror
        the original with directions swapped. The original stays posted and
        records the id of its reversal.

        Returns:
            The posted compensating transaction

        Raises:
            StateError: Original is not posted or is already reversed
        """
        with self.locks.acquire(transaction_lock_key(transaction_id)):
            original = self.resolve(transaction_id)
            if not original.is_posted:
                raise StateError(f"Can only reverse posted transactions, {transaction_id} is {original.status.value}")
            if original.reversed_by:
                raise StateError(f"Transaction {transaction_id} already reversed by {original.reversed_by}")

            reversal = self.open_draft(
                original.organization_id,
                ReferenceType.REVERSAL,
                original.id,
                occurred_at=occurred_at,
                created_by=actor,
                description=f"REVERSAL: {reason}" if reason else f"REVERSAL of {original.id}"
            )
            reversal.reverses = original.id
            self._save(reversal)

            try:
                for entry in self.entries.list_for_transaction(original.id):
                    self.append_entry(
                        reversal.id,
                        entry.account_id,
                        entry.direction.opposite,
                        entry.amount.amount,
                        entry.currency,
                        asset_id=entry.asset_id,
                        memo=f"REVERSAL: {entry.memo}" if entry.memo else "REVERSAL",
                        actor=actor
                    )
                posted = self.post(reversal.id, actor=actor)
            except LedgerError:
                self.void(reversal.id, reason="reversal failed", actor=actor)
                raise

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_REVERSED,
            entity_type="ledger_transaction",
            entity_id=original.id,
            user_id=actor,
            metadata={"reversing_transaction_id": posted.id, "reason": reason}
        )

        self._publish_event(LedgerEvent.TRANSACTION_REVERSED, self.resolve(original.id))

        return posted

    # Queries

    def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return LedgerTransaction.from_dict(data)
        return None

    def resolve(self, transaction_id: str) -> LedgerTransaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError("transaction", transaction_id)
        return transaction

    def find_by_reference(self, reference_type: Union[str, ReferenceType],
                          reference_id: str) -> List[LedgerTransaction]:
        reference = TransactionReference.of(reference_type, reference_id)
        found = self.storage.find(self.table_name, {
            'reference_type': reference.reference_type.value,
            'reference_id': reference.reference_id
        })
        return [LedgerTransaction.from_dict(data) for data in found]

    def list_transactions(self, organization_id: Optional[str] = None,
                          status: Optional[TransactionStatus] = None) -> List[LedgerTransaction]:
        filters = {}
        if organization_id:
            filters['organization_id'] = organization_id
        if status:
            filters['status'] = status.value
        return [LedgerTransaction.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    # Helpers

    @staticmethod
    def _parse_direction(direction: Union[str, EntryDirection]) -> EntryDirection:
        if isinstance(direction, EntryDirection):
            return direction
        try:
            return EntryDirection(str(direction).lower())
        except ValueError:
            raise ValidationError(f"Direction must be 'debit' or 'credit', got {direction!r}") from None

    @staticmethod
    def _build_deltas(entries: List[LedgerEntry], accounts: Dict[str, Account]) -> Dict[str, BalanceDelta]:
        deltas: Dict[str, BalanceDelta] = {}
        for entry in entries:
            account = accounts[entry.account_id]
            delta = deltas.setdefault(
                entry.account_id,
                BalanceDelta(Decimal('0'), Decimal('0'), account.account_type.sign)
            )
            with exact_arithmetic():
                if entry.is_debit:
                    delta.debit += entry.amount.amount
                else:
                    delta.credit += entry.amount.amount
        return deltas

    def _link_reversal(self, reversal: LedgerTransaction) -> None:
        original = self.resolve(reversal.reverses)
        original.reversed_by = reversal.id
        original.updated_at = reversal.posted_at
        self._save(original)

    def _record_rejection(self, transaction: LedgerTransaction, check: BalanceCheck,
                          actor: Optional[str]) -> None:
        log_action(
            self.logger, "warning", "Transaction rejected: unbalanced",
            user_id=actor, action="post_transaction", resource=f"ledger_transaction:{transaction.id}",
            extra=check.to_dict()
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_REJECTED,
            entity_type="ledger_transaction",
            entity_id=transaction.id,
            user_id=actor,
            metadata=check.to_dict()
        )

    def _save(self, transaction: LedgerTransaction) -> None:
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
