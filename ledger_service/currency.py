"""
Currency and Money Module

ISO 4217 currency codes with their minor-unit precision and an immutable
Money value type. Monetary arithmetic uses Decimal with ROUND_HALF_UP;
float is never used for money.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    INR = ("INR", 2)  # Indian Rupee
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit for this currency"""
        return Decimal('0.1') ** self.precision


def to_decimal(value: Union[Decimal, int, str]) -> Decimal:
    """
    Convert a value to Decimal without going through float.

    Raises:
        ValueError: If the value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats")
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def round_money(value: Decimal, places: int = 2) -> Decimal:
    """Round half-up to a fixed number of decimal places"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = to_decimal(self.amount)
        if not amount.is_finite():
            raise ValueError("Money amount must be a finite number")

        # Round to currency precision
        object.__setattr__(
            self, 'amount',
            amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        )

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Union[Decimal, int, str]) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
