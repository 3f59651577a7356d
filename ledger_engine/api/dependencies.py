"""
Shared API dependencies: the ledger system instance and error translation
"""

from typing import Optional

from fastapi import HTTPException

from ..errors import (
    AccountClosedError, ConcurrencyConflictError, LedgerError, NonZeroBalanceError,
    NotFoundError, StateError, UnbalancedTransactionError, ValidationError
)
from ..logging_config import get_logger
from ..system import LedgerSystem


logger = get_logger("ledger.api")

# Global ledger system instance, created on first use
ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem()
    return ledger_system


def set_ledger_system(system: Optional[LedgerSystem]) -> None:
    """Replace the global instance (tests use an in-memory system)"""
    global ledger_system
    ledger_system = system


def close_ledger_system() -> None:
    """Release the storage of the global instance, if one was created"""
    global ledger_system
    if ledger_system is not None:
        ledger_system.close()
        logger.info("Ledger system closed")
        ledger_system = None


def to_http_exception(exc: LedgerError) -> HTTPException:
    """Translate a ledger error into the matching HTTP response"""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, UnbalancedTransactionError):
        return HTTPException(
            status_code=422,
            detail={
                "message": str(exc),
                "currency": exc.currency,
                "residual": str(exc.residual)
            }
        )
    if isinstance(exc, NonZeroBalanceError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "balance": str(exc.balance), "currency": exc.currency}
        )
    if isinstance(exc, (StateError, AccountClosedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConcurrencyConflictError):
        return HTTPException(
            status_code=503,
            detail=str(exc),
            headers={"Retry-After": "1"}
        )
    logger.error(f"Unmapped ledger error: {exc!r}")
    return HTTPException(status_code=500, detail=str(exc))
