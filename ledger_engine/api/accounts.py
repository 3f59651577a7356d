"""
Account management endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_ledger_system, to_http_exception
from .schemas import (
    AccountStatusRequest, CreateAccountRequest, MoneyModel, account_to_dict, balance_to_dict
)
from ..accounts import AccountType, OwnerScope
from ..currency import Currency
from ..errors import LedgerError, ValidationError
from ..system import LedgerSystem


router = APIRouter()


def _parse_account_type(value: str) -> AccountType:
    try:
        return AccountType(value.lower())
    except ValueError:
        raise ValidationError(f"Unknown account type {value!r}") from None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a new account"""
    try:
        account = system.accounts.create_account(
            owner=OwnerScope(user_id=request.owner_user_id, org_id=request.owner_org_id),
            code=request.code,
            account_type=_parse_account_type(request.account_type),
            currency=Currency.from_code(request.currency),
            parent_id=request.parent_id,
            name=request.name,
            created_by=request.actor
        )
        return account_to_dict(account)

    except LedgerError as e:
        raise to_http_exception(e)


@router.get("/{account_id}")
async def get_account(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get account details"""
    account = system.accounts.get_account(account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account_to_dict(account)


@router.get("/{account_id}/balance")
async def get_account_balance(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get the cached balance alongside the balance derived from posted entries"""
    try:
        cached = system.accounts.get_balance(account_id)
        derived = system.accounts.get_derived_balance(account_id)
        result = balance_to_dict(cached)
        result["derived_balance"] = MoneyModel.from_money(derived).model_dump()
        return result

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{account_id}/suspend")
async def suspend_account(
    account_id: str,
    request: AccountStatusRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Suspend an open account"""
    try:
        account = system.accounts.suspend_account(account_id, reason=request.reason, actor=request.actor)
        return account_to_dict(account)

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{account_id}/reopen")
async def reopen_account(
    account_id: str,
    request: AccountStatusRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Reopen a suspended account"""
    try:
        account = system.accounts.reopen_account(account_id, reason=request.reason, actor=request.actor)
        return account_to_dict(account)

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{account_id}/close")
async def close_account(
    account_id: str,
    request: AccountStatusRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Close an account with a zero balance"""
    try:
        account = system.accounts.close_account(account_id, reason=request.reason, actor=request.actor)
        return account_to_dict(account)

    except LedgerError as e:
        raise to_http_exception(e)
