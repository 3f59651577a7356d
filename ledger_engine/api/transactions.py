"""
Ledger transaction endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_ledger_system, to_http_exception
from .schemas import (
    AppendEntryRequest, OpenTransactionRequest, TransitionRequest,
    entry_to_dict, transaction_to_dict
)
from ..errors import LedgerError
from ..system import LedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_transaction(
    request: OpenTransactionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open a draft transaction"""
    try:
        transaction = system.transactions.open_draft(
            organization_id=request.organization_id,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            occurred_at=request.occurred_at,
            created_by=request.actor,
            description=request.description
        )
        return transaction_to_dict(transaction)

    except LedgerError as e:
        raise to_http_exception(e)


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get a transaction with its entries"""
    try:
        transaction = system.transactions.resolve(transaction_id)
        entries = system.transactions.list_entries(transaction_id)
        return transaction_to_dict(transaction, entries)

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{transaction_id}/entries", status_code=status.HTTP_201_CREATED)
async def append_entry(
    transaction_id: str,
    request: AppendEntryRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Append a debit or credit to a draft"""
    try:
        entry = system.transactions.append_entry(
            transaction_id,
            account_id=request.account_id,
            direction=request.direction,
            amount=request.amount,
            currency=request.currency,
            asset_id=request.asset_id,
            memo=request.memo,
            actor=request.actor
        )
        return entry_to_dict(entry)

    except LedgerError as e:
        raise to_http_exception(e)


@router.delete("/{transaction_id}/entries/{entry_id}")
async def remove_entry(
    transaction_id: str,
    entry_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Remove an entry from a draft"""
    try:
        entry = system.transactions.remove_entry(transaction_id, entry_id)
        return {"entry_id": entry.id, "message": "Entry removed"}

    except LedgerError as e:
        raise to_http_exception(e)


@router.get("/{transaction_id}/entries")
async def list_entries(
    transaction_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List entries in append order"""
    try:
        entries = system.transactions.list_entries(transaction_id)
        return {"entries": [entry_to_dict(e) for e in entries]}

    except LedgerError as e:
        raise to_http_exception(e)


@router.get("/{transaction_id}/balance-check")
async def preview_balance(
    transaction_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Run the balance check without posting"""
    try:
        return system.transactions.preview_balance(transaction_id).to_dict()

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{transaction_id}/post")
async def post_transaction(
    transaction_id: str,
    request: TransitionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a balanced draft"""
    try:
        transaction = system.transactions.post_with_retry(transaction_id, actor=request.actor)
        return transaction_to_dict(transaction)

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{transaction_id}/void")
async def void_transaction(
    transaction_id: str,
    request: TransitionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Void a draft and discard its entries"""
    try:
        transaction = system.transactions.void(transaction_id, reason=request.reason, actor=request.actor)
        return transaction_to_dict(transaction)

    except LedgerError as e:
        raise to_http_exception(e)


@router.post("/{transaction_id}/reverse")
async def reverse_transaction(
    transaction_id: str,
    request: TransitionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a compensating transaction for a posted one"""
    try:
        reversal = system.transactions.reverse(transaction_id, reason=request.reason, actor=request.actor)
        return transaction_to_dict(reversal, system.transactions.list_entries(reversal.id))

    except LedgerError as e:
        raise to_http_exception(e)
