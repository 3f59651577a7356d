"""
Balance Validator Module

The fundamental rule of double-entry bookkeeping: for every currency present,
total debits equal total credits. Checked exactly at the currency's fixed-point
precision, with no rounding tolerance. Pure functions only; safe to run on a
draft as a preview.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .currency import Currency, exact_arithmetic
from .entries import LedgerEntry
from .errors import UnbalancedTransactionError


@dataclass(frozen=True)
class CurrencyTotals:
    """Debit and credit sums of one currency group"""
    currency: Currency
    debits: Decimal
    credits: Decimal

    @property
    def net(self) -> Decimal:
        with exact_arithmetic():
            return self.debits - self.credits

    @property
    def is_balanced(self) -> bool:
        return self.net == 0


@dataclass
class BalanceCheck:
    """Outcome of a validator run"""
    balanced: bool
    totals: List[CurrencyTotals] = field(default_factory=list)
    currency: Optional[Currency] = None  # First offending currency
    residual: Decimal = Decimal('0')
    message: Optional[str] = None

    def raise_if_unbalanced(self) -> None:
        if not self.balanced:
            raise UnbalancedTransactionError(
                self.currency.code if self.currency else None,
                self.residual,
                self.message
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'balanced': self.balanced,
            'currency': self.currency.code if self.currency else None,
            'residual': str(self.residual),
            'message': self.message,
            'totals': [
                {
                    'currency': t.currency.code,
                    'debits': str(t.debits),
                    'credits': str(t.credits),
                    'net': str(t.net)
                }
                for t in self.totals
            ]
        }


def summarize(entries: Iterable[LedgerEntry]) -> List[CurrencyTotals]:
    """
    Group entries by currency, in order of first appearance.

    Raises:
        InvalidAmountError: If a total cannot be represented exactly
    """
    debits: Dict[Currency, Decimal] = {}
    credits: Dict[Currency, Decimal] = {}
    with exact_arithmetic():
        for entry in entries:
            debits.setdefault(entry.currency, Decimal('0'))
            credits.setdefault(entry.currency, Decimal('0'))
            if entry.is_debit:
                debits[entry.currency] += entry.amount.amount
            else:
                credits[entry.currency] += entry.amount.amount
        return [CurrencyTotals(c, debits[c], credits[c]) for c in debits]


class BalanceValidator:
    """
    Validates that a set of entries nets to zero per currency.

    With ``require_both_sides`` an empty entry set is refused; otherwise it is
    treated as balanced (sum of the empty set is zero).
    """

    def __init__(self, require_both_sides: bool = True):
        self.require_both_sides = require_both_sides

    def check(self, entries: Iterable[LedgerEntry]) -> BalanceCheck:
        totals = summarize(entries)

        for group in totals:
            if not group.is_balanced:
                return BalanceCheck(
                    balanced=False,
                    totals=totals,
                    currency=group.currency,
                    residual=group.net,
                    message=(
                        f"Transaction not balanced for {group.currency.code}: "
                        f"debits={group.debits}, credits={group.credits}, residual={group.net}"
                    )
                )

        # Non-empty groups that net to zero necessarily hold both a debit and a credit
        if not totals and self.require_both_sides:
            return BalanceCheck(
                balanced=False,
                totals=totals,
                message="Transaction has no entries; posting requires at least one debit and one credit"
            )

        return BalanceCheck(balanced=True, totals=totals)

    def enforce(self, entries: Iterable[LedgerEntry]) -> BalanceCheck:
        """
        Raises:
            UnbalancedTransactionError: Carrying the first offending currency
                and its residual
        """
        result = self.check(entries)
        result.raise_if_unbalanced()
        return result
