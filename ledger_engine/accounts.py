"""
Account Registry Module

Owns the chart of accounts: typed, currency-scoped ledger buckets owned by a
user or an organization and arranged in a per-owner tree. Accounts change only
through status transitions and are never deleted; closed accounts stay
readable for history.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import re
import uuid

from .currency import Money, Currency, exact_arithmetic
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .audit import AuditTrail, AuditEventType
from .concurrency import AccountBalance, BalanceCache, LockManager, account_lock_key
from .entries import EntryDirection, EntryStore
from .errors import (
    AccountClosedError, AccountSuspendedError, DuplicateCodeError, InvalidParentError,
    NonZeroBalanceError, NotFoundError, StateError, ValidationError
)
from .events import EventDispatcher, LedgerEvent, create_account_event
from .logging_config import get_logger, log_action


ACCOUNT_CODE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]{0,63}$")


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance

    @property
    def normal_direction(self) -> EntryDirection:
        if self in (AccountType.ASSET, AccountType.EXPENSE):
            return EntryDirection.DEBIT
        return EntryDirection.CREDIT

    @property
    def sign(self) -> int:
        """+1 when debits increase the balance, -1 when credits do"""
        return 1 if self.normal_direction == EntryDirection.DEBIT else -1


class AccountStatus(Enum):
    """Account lifecycle states"""
    OPEN = "open"
    SUSPENDED = "suspended"  # Temporarily refuses new entries
    CLOSED = "closed"        # Terminal


@dataclass(frozen=True)
class OwnerScope:
    """Exactly one of a user or an organization"""
    user_id: Optional[str] = None
    org_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.org_id):
            raise ValidationError("Account owner must be exactly one of user or organization")

    @classmethod
    def for_user(cls, user_id: str) -> 'OwnerScope':
        return cls(user_id=user_id)

    @classmethod
    def for_org(cls, org_id: str) -> 'OwnerScope':
        return cls(org_id=org_id)

    @property
    def key(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"org:{self.org_id}"


@dataclass
class Account(StorageRecord):
    """
    Ledger account. Currency and parent are fixed at creation.
    """
    owner: OwnerScope
    code: str
    account_type: AccountType
    currency: Currency
    status: AccountStatus = AccountStatus.OPEN
    parent_id: Optional[str] = None
    name: str = ""

    @property
    def is_open(self) -> bool:
        return self.status == AccountStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED

    def ensure_accepts_entries(self) -> None:
        """Raise unless new entries may reference this account"""
        if self.status == AccountStatus.CLOSED:
            raise AccountClosedError(self.id)
        if self.status == AccountStatus.SUSPENDED:
            raise AccountSuspendedError(self.id)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'owner_user_id': self.owner.user_id,
            'owner_org_id': self.owner.org_id,
            'owner_key': self.owner.key,
            'code': self.code,
            'account_type': self.account_type.value,
            'currency': self.currency.code,
            'status': self.status.value,
            'parent_id': self.parent_id,
            'name': self.name
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            owner=OwnerScope(user_id=data.get('owner_user_id'), org_id=data.get('owner_org_id')),
            code=data['code'],
            account_type=AccountType(data['account_type']),
            currency=Currency[data['currency']],
            status=AccountStatus(data['status']),
            parent_id=data.get('parent_id'),
            name=data.get('name', "")
        )


class AccountRegistry:
    """
    Manages account creation, lifecycle and balance lookups
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        lock_manager: LockManager,
        balance_cache: BalanceCache,
        entry_store: EntryStore,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = lock_manager
        self.balances = balance_cache
        self.entries = entry_store
        self.accounts_table = "accounts"
        self.logger = get_logger("ledger.accounts")
        self._event_dispatcher = event_dispatcher

    def _publish_event(self, event_type: LedgerEvent, account: Account) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish(create_account_event(event_type, account))

    def create_account(
        self,
        owner: OwnerScope,
        code: str,
        account_type: AccountType,
        currency: Currency,
        parent_id: Optional[str] = None,
        name: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Account:
        """
        Create a new account

        Args:
            owner: Owning user or organization
            code: Code unique within the owner scope
            account_type: Accounting type, fixes the normal balance side
            currency: Account currency; every entry must use it
            parent_id: Optional parent in the same scope and currency
            name: Display name, defaults to the code
            created_by: Actor recorded in the audit trail

        Returns:
            Created Account in OPEN status

        Raises:
            ValidationError: If the code is malformed
            DuplicateCodeError: If the code already exists in the scope
            InvalidParentError: If the parent is unusable
        """
        if not isinstance(code, str) or not ACCOUNT_CODE_PATTERN.match(code):
            raise ValidationError(f"Invalid account code {code!r}")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner=owner,
            code=code,
            account_type=account_type,
            currency=currency,
            parent_id=parent_id,
            name=name or code
        )

        with self.locks.acquire(f"code:{owner.key}:{code}"):
            if self.find_by_code(owner, code):
                raise DuplicateCodeError(f"Account code {code!r} already exists for {owner.key}")

            if parent_id:
                self._validate_parent(account, parent_id)

            with self.storage.atomic():
                self._save_account(account)
                self.balances.initialize(account.id, currency)

        log_action(
            self.logger, "info", f"Account created: {code}",
            user_id=created_by, action="create_account", resource=f"account:{account.id}",
            extra={
                "owner": owner.key,
                "account_type": account_type.value,
                "currency": currency.code,
                "parent_id": parent_id
            }
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id=account.id,
            user_id=created_by,
            metadata={
                "owner": owner.key,
                "code": code,
                "account_type": account_type.value,
                "currency": currency.code,
                "parent_id": parent_id
            }
        )

        self._publish_event(LedgerEvent.ACCOUNT_CREATED, account)

        return account

    def _validate_parent(self, account: Account, parent_id: str) -> None:
        parent = self.get_account(parent_id)
        if not parent:
            raise InvalidParentError(f"Parent account {parent_id} not found")
        if parent.owner != account.owner:
            raise InvalidParentError("Parent account belongs to a different owner scope")
        if parent.currency != account.currency:
            raise InvalidParentError(
                f"Parent currency {parent.currency.code} differs from {account.currency.code}"
            )
        if parent.is_closed:
            raise InvalidParentError(f"Parent account {parent_id} is closed")

        # The chain above the parent must terminate without revisiting anything
        seen = {account.id}
        current: Optional[Account] = parent
        while current is not None:
            if current.id in seen:
                raise InvalidParentError(f"Account hierarchy cycle through {current.id}")
            seen.add(current.id)
            current = self.get_account(current.parent_id) if current.parent_id else None

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def resolve(self, account_id: str) -> Account:
        """Get account by ID, raising NotFoundError if unknown"""
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError("account", account_id)
        return account

    def find_by_code(self, owner: OwnerScope, code: str) -> Optional[Account]:
        found = self.storage.find(self.accounts_table, {"owner_key": owner.key, "code": code})
        if found:
            return Account.from_dict(found[0])
        return None

    def list_accounts(self, owner: Optional[OwnerScope] = None,
                      status: Optional[AccountStatus] = None) -> List[Account]:
        filters = {}
        if owner:
            filters["owner_key"] = owner.key
        if status:
            filters["status"] = status.value
        return [Account.from_dict(data) for data in self.storage.find(self.accounts_table, filters)]

    def get_children(self, account_id: str) -> List[Account]:
        return [
            Account.from_dict(data)
            for data in self.storage.find(self.accounts_table, {"parent_id": account_id})
        ]

    def get_ancestors(self, account_id: str) -> List[Account]:
        """Parent chain, nearest first"""
        ancestors = []
        account = self.resolve(account_id)
        while account.parent_id:
            account = self.resolve(account.parent_id)
            ancestors.append(account)
        return ancestors

    def suspend_account(self, account_id: str, reason: str = "", actor: Optional[str] = None) -> Account:
        """Suspend an open account"""
        return self._transition(
            account_id, {AccountStatus.OPEN}, AccountStatus.SUSPENDED,
            AuditEventType.ACCOUNT_SUSPENDED, LedgerEvent.ACCOUNT_SUSPENDED, reason, actor
        )

    def reopen_account(self, account_id: str, reason: str = "", actor: Optional[str] = None) -> Account:
        """Return a suspended account to service"""
        return self._transition(
            account_id, {AccountStatus.SUSPENDED}, AccountStatus.OPEN,
            AuditEventType.ACCOUNT_REOPENED, LedgerEvent.ACCOUNT_REOPENED, reason, actor
        )

    def close_account(self, account_id: str, reason: str = "", actor: Optional[str] = None) -> Account:
        """
        Close an account permanently.

        Held under the account lock so no post can land between the balance
        check and the status change.

        Raises:
            NonZeroBalanceError: If the derived balance is not zero
        """
        with self.locks.acquire(account_lock_key(account_id)):
            account = self.resolve(account_id)
            if account.is_closed:
                raise StateError(f"Account {account_id} is already closed")

            balance = self.get_derived_balance(account_id)
            if not balance.is_zero():
                raise NonZeroBalanceError(account_id, balance.amount, balance.currency.code)

            return self._transition(
                account_id, {AccountStatus.OPEN, AccountStatus.SUSPENDED}, AccountStatus.CLOSED,
                AuditEventType.ACCOUNT_CLOSED, LedgerEvent.ACCOUNT_CLOSED, reason, actor
            )

    def _transition(
        self,
        account_id: str,
        allowed_from: set,
        new_status: AccountStatus,
        audit_type: AuditEventType,
        event_type: LedgerEvent,
        reason: str,
        actor: Optional[str]
    ) -> Account:
        with self.locks.acquire(account_lock_key(account_id)):
            account = self.resolve(account_id)
            if account.status not in allowed_from:
                raise StateError(
                    f"Cannot move account {account_id} from {account.status.value} to {new_status.value}"
                )

            old_status = account.status
            account.status = new_status
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

        log_action(
            self.logger, "info", f"Account {new_status.value}: {account.code}",
            user_id=actor, action=f"{new_status.value}_account", resource=f"account:{account_id}",
            extra={"old_status": old_status.value, "reason": reason}
        )

        self.audit_trail.log_event(
            event_type=audit_type,
            entity_type="account",
            entity_id=account_id,
            user_id=actor,
            metadata={
                "old_status": old_status.value,
                "new_status": new_status.value,
                "reason": reason
            }
        )

        self._publish_event(event_type, account)

        return account

    def get_balance(self, account_id: str) -> AccountBalance:
        """Cached balance, updated atomically by every post"""
        self.resolve(account_id)
        return self.balances.get(account_id)

    def get_derived_balance(self, account_id: str) -> Money:
        """
        Balance recomputed from posted entries, signed by the account's
        normal side. This is the source of truth the cache must match.
        """
        account = self.resolve(account_id)
        net = Decimal('0')
        with exact_arithmetic():
            for entry in self.entries.list_for_account(account_id, posted_only=True):
                net += entry.signed_amount
            return Money(account.account_type.sign * net, account.currency)

    def reconcile_balances(self, repair: bool = False, actor: Optional[str] = None) -> List[Dict]:
        """
        Compare every cached balance with its derived balance.

        Args:
            repair: Overwrite drifted cache records with recomputed totals
            actor: Actor recorded in the audit trail for repairs

        Returns:
            One dict per drifted account (empty when consistent)
        """
        drifts = []
        for account in self.list_accounts():
            with self.locks.acquire(account_lock_key(account.id)):
                debit_total = Decimal('0')
                credit_total = Decimal('0')
                with exact_arithmetic():
                    for entry in self.entries.list_for_account(account.id, posted_only=True):
                        if entry.direction == EntryDirection.DEBIT:
                            debit_total += entry.amount.amount
                        else:
                            credit_total += entry.amount.amount

                cached = self.balances.get(account.id)
                if cached.debit_total == debit_total and cached.credit_total == credit_total:
                    continue

                drift = {
                    "account_id": account.id,
                    "cached_balance": str(cached.balance),
                    "derived_balance": str(account.account_type.sign * (debit_total - credit_total)),
                    "repaired": repair
                }
                drifts.append(drift)

                if repair:
                    with self.storage.atomic():
                        self.balances.overwrite(
                            account.id, account.currency, debit_total, credit_total,
                            account.account_type.sign
                        )

            self.logger.warning(f"Balance cache drift on account {account.id}: {drift}")
            if repair:
                self.audit_trail.log_event(
                    event_type=AuditEventType.BALANCE_CACHE_REBUILT,
                    entity_type="account",
                    entity_id=account.id,
                    user_id=actor,
                    metadata=drift
                )

        return drifts

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())
