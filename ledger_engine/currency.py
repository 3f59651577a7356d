"""
Currency and Money Module

ISO 4217 style currency codes with their working precision, and an immutable
Money value. NEVER uses float for monetary values.

Entry amounts are capped at NUMERIC(20,8): at most 12 integer digits. Sums
are taken under exact_arithmetic(), where any rounding raises instead of
silently changing a total.
"""

from contextlib import contextmanager
from decimal import Decimal, Inexact, InvalidOperation, ROUND_HALF_UP, getcontext, localcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Union

from .errors import InvalidAmountError, ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

MAX_INTEGER_DIGITS = 12


class Currency(Enum):
    """Currency codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen
    CAD = ("CAD", 2)  # Canadian Dollar
    CHF = ("CHF", 2)  # Swiss Franc
    AUD = ("AUD", 2)  # Australian Dollar
    BTC = ("BTC", 8)  # Bitcoin
    ETH = ("ETH", 8)  # Ether, ledger keeps 8 places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit"""
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: Union[str, "Currency"]) -> "Currency":
        """Resolve a 3-letter code, raising ValidationError if unknown"""
        if isinstance(code, Currency):
            return code
        if not isinstance(code, str) or len(code.strip()) != 3:
            raise ValidationError(f"Currency must be a 3-letter code, got {code!r}")
        try:
            return cls[code.strip().upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency {code!r}") from None


@contextmanager
def exact_arithmetic() -> Iterator:
    """
    Decimal context for ledger sums. An inexact result raises
    InvalidAmountError rather than being rounded.
    """
    with localcontext() as ctx:
        ctx.prec = 28
        ctx.traps[Inexact] = True
        try:
            yield ctx
        except Inexact:
            raise InvalidAmountError("Total exceeds exact decimal precision") from None


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Union[str, int, Decimal], currency: Currency) -> Money:
    """
    Convert a caller-supplied amount into a positive Money value.

    Unlike Money(), this never rounds: an amount finer than the currency's
    precision is rejected so that posted sums are exact.

    Raises:
        InvalidAmountError: If the value is not a finite number > 0 at the
            currency's precision, or has more than 12 integer digits
    """
    if isinstance(value, float):
        raise InvalidAmountError("Amounts must be given as Decimal or string, not float")

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Cannot convert {value!r} to an amount") from None

    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value!r}")

    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")

    if amount.adjusted() >= MAX_INTEGER_DIGITS:
        raise InvalidAmountError(
            f"Amount {amount} is too large, at most {MAX_INTEGER_DIGITS} integer digits"
        )

    if amount != amount.quantize(currency.quantum):
        raise InvalidAmountError(
            f"Amount {amount} exceeds {currency.code} precision of {currency.precision} places"
        )

    return Money(amount, currency)
