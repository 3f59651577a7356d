"""
Test suite for the account registry

Tests account creation, code uniqueness, hierarchy rules, lifecycle
transitions and balance lookups.
"""

import pytest
from decimal import Decimal

from ledger_engine.accounts import AccountType, AccountStatus, OwnerScope
from ledger_engine.audit import AuditEventType
from ledger_engine.config import LedgerConfig
from ledger_engine.currency import Currency
from ledger_engine.entries import EntryDirection
from ledger_engine.errors import (
    AccountClosedError, AccountSuspendedError, DuplicateCodeError, InvalidParentError,
    NonZeroBalanceError, NotFoundError, StateError, ValidationError
)
from ledger_engine.events import LedgerEvent
from ledger_engine.system import LedgerSystem


ACME = OwnerScope.for_org("acme")


class TestOwnerScope:
    """Test owner scope validation"""

    def test_exactly_one_owner(self):
        assert OwnerScope.for_user("u1").key == "user:u1"
        assert OwnerScope.for_org("o1").key == "org:o1"

        with pytest.raises(ValidationError):
            OwnerScope()

        with pytest.raises(ValidationError):
            OwnerScope(user_id="u1", org_id="o1")


class TestAccountType:
    """Test normal balance sides"""

    def test_signs(self):
        assert AccountType.ASSET.sign == 1
        assert AccountType.EXPENSE.sign == 1
        assert AccountType.LIABILITY.sign == -1
        assert AccountType.EQUITY.sign == -1
        assert AccountType.REVENUE.sign == -1
        assert AccountType.ASSET.normal_direction == EntryDirection.DEBIT
        assert AccountType.REVENUE.normal_direction == EntryDirection.CREDIT


class TestAccountRegistry:
    """Test account management"""

    def setup_method(self):
        self.system = LedgerSystem(LedgerConfig(database_url="memory://"))
        self.registry = self.system.accounts

    def create(self, code, account_type=AccountType.ASSET, currency=Currency.USD, owner=ACME, **kwargs):
        return self.registry.create_account(owner, code, account_type, currency, **kwargs)

    def post_pair(self, debit_account, credit_account, amount):
        txns = self.system.transactions
        txn = txns.open_draft("acme", "adjustment", f"adj-{amount}")
        txns.append_entry(txn.id, debit_account.id, "debit", amount, "USD")
        txns.append_entry(txn.id, credit_account.id, "credit", amount, "USD")
        return txns.post(txn.id)

    def test_create_account(self):
        account = self.create("cash", name="Operating cash", created_by="admin")

        assert account.status == AccountStatus.OPEN
        assert account.name == "Operating cash"
        assert self.registry.get_account(account.id) == account

        balance = self.registry.get_balance(account.id)
        assert balance.balance == Decimal('0')
        assert balance.version == 0

        events = self.system.audit_trail.get_events_for_entity("account", account.id)
        assert [e.event_type for e in events] == [AuditEventType.ACCOUNT_CREATED]
        assert events[0].user_id == "admin"

    def test_name_defaults_to_code(self):
        assert self.create("fees").name == "fees"

    @pytest.mark.parametrize("code", ["", " cash", "-cash", "cash flow", "x" * 65])
    def test_invalid_code(self, code):
        with pytest.raises(ValidationError, match="Invalid account code"):
            self.create(code)

    def test_duplicate_code_within_scope(self):
        self.create("cash")
        with pytest.raises(DuplicateCodeError):
            self.create("cash", account_type=AccountType.LIABILITY)

    def test_same_code_in_other_scope(self):
        self.create("cash")
        other = self.create("cash", owner=OwnerScope.for_user("bob"))
        assert other.owner.user_id == "bob"

    def test_parent_rules(self):
        parent = self.create("assets")
        child = self.create("assets.cash", parent_id=parent.id)

        assert [a.id for a in self.registry.get_children(parent.id)] == [child.id]
        assert [a.id for a in self.registry.get_ancestors(child.id)] == [parent.id]

        with pytest.raises(InvalidParentError, match="not found"):
            self.create("orphan", parent_id="missing")

        with pytest.raises(InvalidParentError, match="owner scope"):
            self.create("foreign", owner=OwnerScope.for_user("bob"), parent_id=parent.id)

        with pytest.raises(InvalidParentError, match="currency"):
            self.create("euro", currency=Currency.EUR, parent_id=parent.id)

    def test_closed_parent_rejected(self):
        parent = self.create("old")
        self.registry.close_account(parent.id)

        with pytest.raises(InvalidParentError, match="closed"):
            self.create("new", parent_id=parent.id)

    def test_find_and_list(self):
        cash = self.create("cash")
        self.create("fees", account_type=AccountType.REVENUE)
        self.create("wallet", owner=OwnerScope.for_user("bob"))

        assert self.registry.find_by_code(ACME, "cash").id == cash.id
        assert self.registry.find_by_code(ACME, "nope") is None
        assert len(self.registry.list_accounts(ACME)) == 2
        assert len(self.registry.list_accounts()) == 3

        self.registry.suspend_account(cash.id)
        assert [a.id for a in self.registry.list_accounts(ACME, AccountStatus.SUSPENDED)] == [cash.id]

    def test_resolve_unknown(self):
        with pytest.raises(NotFoundError, match="Account missing not found"):
            self.registry.resolve("missing")

    def test_suspend_and_reopen(self):
        account = self.create("cash")
        received = []
        self.system.event_dispatcher.subscribe_all(received.append)

        suspended = self.registry.suspend_account(account.id, reason="review")
        assert suspended.status == AccountStatus.SUSPENDED
        with pytest.raises(AccountSuspendedError):
            suspended.ensure_accepts_entries()

        with pytest.raises(StateError):
            self.registry.suspend_account(account.id)

        reopened = self.registry.reopen_account(account.id)
        assert reopened.status == AccountStatus.OPEN

        with pytest.raises(StateError):
            self.registry.reopen_account(account.id)

        assert [e.event_type for e in received] == [
            LedgerEvent.ACCOUNT_SUSPENDED, LedgerEvent.ACCOUNT_REOPENED
        ]

    def test_close_zero_balance_account(self):
        account = self.create("cash")
        closed = self.registry.close_account(account.id, reason="unused")

        assert closed.is_closed
        with pytest.raises(AccountClosedError):
            closed.ensure_accepts_entries()
        with pytest.raises(StateError, match="already closed"):
            self.registry.close_account(account.id)
        with pytest.raises(StateError):
            self.registry.reopen_account(account.id)

        # Closed accounts stay readable
        assert self.registry.get_account(account.id).status == AccountStatus.CLOSED

    def test_close_requires_zero_balance(self):
        cash = self.create("cash")
        equity = self.create("capital", account_type=AccountType.EQUITY)
        self.post_pair(cash, equity, "25.00")

        with pytest.raises(NonZeroBalanceError) as exc_info:
            self.registry.close_account(cash.id)
        assert exc_info.value.balance == Decimal('25.00')
        assert self.registry.resolve(cash.id).status == AccountStatus.OPEN

        # Zero again after an offsetting post
        self.post_pair(equity, cash, "25.00")
        assert self.registry.close_account(cash.id).is_closed

    def test_suspended_account_can_be_closed(self):
        account = self.create("cash")
        self.registry.suspend_account(account.id)
        assert self.registry.close_account(account.id).is_closed

    def test_derived_balance_sign_follows_account_type(self):
        cash = self.create("cash")
        revenue = self.create("sales", account_type=AccountType.REVENUE)
        self.post_pair(cash, revenue, "40.00")

        assert self.registry.get_derived_balance(cash.id).amount == Decimal('40.00')
        assert self.registry.get_derived_balance(revenue.id).amount == Decimal('40.00')
        assert self.registry.get_balance(revenue.id).balance == Decimal('40.00')
        assert self.registry.get_balance(revenue.id).credit_total == Decimal('40.00')

    def test_reconcile_balances(self):
        cash = self.create("cash")
        revenue = self.create("sales", account_type=AccountType.REVENUE)
        self.post_pair(cash, revenue, "40.00")

        assert self.registry.reconcile_balances() == []

        # Corrupt the cache behind the registry's back
        record = self.system.storage.load("account_balances", cash.id)
        record["balance"] = "0.00"
        record["debit_total"] = "0.00"
        self.system.storage.save("account_balances", cash.id, record)

        drifts = self.registry.reconcile_balances()
        assert [d["account_id"] for d in drifts] == [cash.id]
        assert not drifts[0]["repaired"]
        assert self.registry.get_balance(cash.id).balance == Decimal('0.00')

        repaired = self.registry.reconcile_balances(repair=True, actor="ops")
        assert repaired[0]["repaired"]
        assert self.registry.get_balance(cash.id).balance == Decimal('40.00')
        assert self.registry.reconcile_balances() == []
        assert len(self.system.audit_trail.get_events_by_type(AuditEventType.BALANCE_CACHE_REBUILT)) == 1
