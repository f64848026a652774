"""
Currency and Rounding Module

ISO 4217 currency codes with precision info and the rounding helpers used by
every ledger calculation. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0.00')
CENT = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert a number, string or Decimal to Decimal without passing through float

    Args:
        value: Value to convert
        field_name: Name used in the error message

    Returns:
        Decimal value

    Raises:
        ValueError: If value cannot be converted or is not finite
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field_name} must be a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValueError(f"Cannot convert {field_name} {value!r} to Decimal")
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite, got {value!r}")
    return result


def round_money(value: Decimal, currency: Optional[Currency] = None) -> Decimal:
    """Round to currency precision (2 places when no currency given)"""
    places = currency.precision if currency else 2
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def is_zero(value: Decimal, tolerance: Decimal = CENT) -> bool:
    """True when value is within tolerance of zero"""
    return abs(value) <= tolerance


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Used when amounts leave the engine (notifications, quotes, logs).
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        object.__setattr__(self, 'amount', round_money(self.amount, self.currency))

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
