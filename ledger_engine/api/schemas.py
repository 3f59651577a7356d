"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..accounts import Account
from ..concurrency import AccountBalance
from ..currency import Money
from ..entries import LedgerEntry
from ..transactions import LedgerTransaction


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Account schemas
class CreateAccountRequest(BaseModel):
    owner_user_id: Optional[str] = None
    owner_org_id: Optional[str] = None
    code: str
    account_type: str = Field(..., description="asset, liability, equity, revenue or expense")
    currency: str = Field(..., description="Currency code")
    parent_id: Optional[str] = None
    name: Optional[str] = None
    actor: Optional[str] = None


class AccountStatusRequest(BaseModel):
    reason: str = ""
    actor: Optional[str] = None


# Transaction schemas
class OpenTransactionRequest(BaseModel):
    organization_id: Optional[str] = None
    reference_type: str = Field(..., description="order, payment, settlement, task_billing, refund, adjustment, reversal or system")
    reference_id: str
    occurred_at: Optional[datetime] = None
    description: str = ""
    actor: Optional[str] = None


class AppendEntryRequest(BaseModel):
    account_id: str
    direction: str = Field(..., description="debit or credit")
    amount: str = Field(..., description="Positive decimal amount as string")
    currency: str
    asset_id: Optional[str] = None
    memo: str = ""
    actor: Optional[str] = None


class TransitionRequest(BaseModel):
    reason: str = ""
    actor: Optional[str] = None


# Response helpers
def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "owner_user_id": account.owner.user_id,
        "owner_org_id": account.owner.org_id,
        "code": account.code,
        "name": account.name,
        "account_type": account.account_type.value,
        "currency": account.currency.code,
        "status": account.status.value,
        "parent_id": account.parent_id,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat()
    }


def balance_to_dict(balance: AccountBalance) -> Dict[str, Any]:
    return {
        "account_id": balance.account_id,
        "balance": MoneyModel.from_money(balance.money).model_dump(),
        "debit_total": str(balance.debit_total),
        "credit_total": str(balance.credit_total),
        "version": balance.version,
        "last_transaction_id": balance.last_transaction_id,
        "updated_at": balance.updated_at.isoformat()
    }


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "transaction_id": entry.transaction_id,
        "account_id": entry.account_id,
        "direction": entry.direction.value,
        "amount": MoneyModel.from_money(entry.amount).model_dump(),
        "sequence": entry.sequence,
        "status": entry.status.value,
        "asset_id": entry.asset_id,
        "memo": entry.memo
    }


def transaction_to_dict(transaction: LedgerTransaction,
                        entries: Optional[List[LedgerEntry]] = None) -> Dict[str, Any]:
    result = {
        "id": transaction.id,
        "organization_id": transaction.organization_id,
        "reference_type": transaction.reference.reference_type.value,
        "reference_id": transaction.reference.reference_id,
        "occurred_at": transaction.occurred_at.isoformat(),
        "created_by": transaction.created_by,
        "status": transaction.status.value,
        "description": transaction.description,
        "posted_at": transaction.posted_at.isoformat() if transaction.posted_at else None,
        "voided_at": transaction.voided_at.isoformat() if transaction.voided_at else None,
        "reverses": transaction.reverses,
        "reversed_by": transaction.reversed_by
    }
    if entries is not None:
        result["entries"] = [entry_to_dict(e) for e in entries]
    return result
