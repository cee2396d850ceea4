"""
Money Module

Fixed-point money representation used by every ledger calculation.
Amounts are Decimal quantized to the currency's minor unit. NEVER uses
float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Union
from enum import Enum

from .exceptions import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with the number of minor-unit digits tracked"""
    NGN = ("NGN", 0)  # Nigerian Naira, ledger kept in whole naira
    KES = ("KES", 2)  # Kenyan Shilling
    GHS = ("GHS", 2)  # Ghanaian Cedi
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    JPY = ("JPY", 0)  # Japanese Yen

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')"""
        return Decimal('1').scaleb(-self.precision)


def quantize(value: Decimal, currency: Currency, rounding: str = ROUND_HALF_UP) -> Decimal:
    """
    Round a Decimal to the currency's minor unit

    Args:
        value: Amount to round
        currency: Currency defining precision
        rounding: decimal rounding mode (half-up unless stated)

    Returns:
        Rounded Decimal
    """
    return value.quantize(currency.quantum, rounding=rounding)


@dataclass(frozen=True)
class Money:
    """
    Immutable money value. Arithmetic between different currencies is an
    error; results are always re-quantized to the currency's minor unit.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount, float):
            raise TypeError("Money amounts must not be floats; pass a Decimal, int or str")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        if not self.amount.is_finite():
            raise InvalidAmountError(f"Money amounts must be finite, got {self.amount}",
                                     {"amount": str(self.amount)})
        object.__setattr__(self, 'amount', quantize(self.amount, self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def sum(cls, values: Iterable['Money'], currency: Currency) -> 'Money':
        """Add up an iterable of Money, starting from zero in ``currency``"""
        total = cls.zero(currency)
        for value in values:
            total = total + value
        return total

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

    def __mul__(self, multiplier: Union[Decimal, int]) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

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

    def to_dict(self) -> Dict[str, str]:
        return {"amount": str(self.amount), "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Money':
        return cls(Decimal(data["amount"]), Currency[data["currency"]])


def parse_amount(value: Union[Decimal, int, str], currency: Currency) -> Money:
    """
    Parse an amount received from outside the ledger.

    Unlike ``Money(...)``, nothing is rounded: an amount finer than the
    currency's minor unit is refused.

    Raises:
        InvalidAmountError: float, not a number, not finite or too precise
    """
    if isinstance(value, float):
        raise InvalidAmountError("Amounts must not be floats", {"amount": str(value)})
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Invalid amount {value!r}", {"amount": str(value)})
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount {value!r}", {"amount": str(value)})
    if amount.normalize().as_tuple().exponent < -currency.precision:
        raise InvalidAmountError(
            f"{currency.code} amounts allow at most {currency.precision} decimal places, got {value}",
            {"amount": str(value), "currency": currency.code, "precision": currency.precision}
        )
    return Money(amount, currency)
