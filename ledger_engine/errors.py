"""
Ledger Error Taxonomy

Every failure the engine reports is a LedgerError subclass. Only
ConcurrencyConflictError is safe to retry without caller correction.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger errors"""
    retryable = False


class ValidationError(LedgerError, ValueError):
    """Malformed amount, currency, code or reference"""


class InvalidAmountError(ValidationError):
    """Amount is not a positive value at the currency's precision"""


class CurrencyMismatchError(ValidationError):
    """Entry currency differs from its account's currency"""


class DuplicateCodeError(ValidationError):
    """Account code already used within the owner scope"""


class InvalidParentError(ValidationError):
    """Parent account is in another scope or currency, closed, or cyclic"""


class NotFoundError(LedgerError, LookupError):
    """Unknown account, transaction or entry"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class StateError(LedgerError):
    """Operation is invalid for the current lifecycle state"""


class NotDraftError(StateError):
    """Transaction is no longer a draft"""

    def __init__(self, transaction_id: str, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Transaction {transaction_id} is {status}, not draft")


class AccountSuspendedError(StateError):
    """Account is suspended and accepts no new entries"""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is suspended")


class AccountClosedError(LedgerError):
    """Account is closed and accepts no new entries"""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is closed")


class UnbalancedTransactionError(LedgerError):
    """Posting refused because a currency group does not net to zero"""

    def __init__(self, currency: Optional[str], residual: Decimal, message: Optional[str] = None):
        self.currency = currency
        self.residual = residual
        if message is None:
            message = f"Transaction not balanced for {currency}: residual {residual}"
        super().__init__(message)


class NonZeroBalanceError(LedgerError):
    """Account cannot be closed with an outstanding balance"""

    def __init__(self, account_id: str, balance: Decimal, currency: str):
        self.account_id = account_id
        self.balance = balance
        self.currency = currency
        super().__init__(f"Cannot close account {account_id} with non-zero balance: {currency} {balance}")


class ConcurrencyConflictError(LedgerError):
    """Lock or version contention; nothing was committed"""
    retryable = True
