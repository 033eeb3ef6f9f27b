"""
Currency and Money Module

ISO 4217 currency codes with their minor-unit precision, and an immutable
Money value for every amount in the ledger. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places
    XOF = ("XOF", 0)  # CFA Franc BCEAO, no minor unit
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code (case-insensitive)"""
        try:
            return cls[code.strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code!r}")


AmountLike = Union['Money', Decimal, int, str]


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.

    Amounts are rounded half-up to the currency's minor unit on creation, so
    sums of Money values never accumulate sub-cent noise.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount, float):
            raise TypeError("Money amounts must not be floats; pass a Decimal or a string")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        if not self.amount.is_finite():
            raise ValueError(f"Money amounts must be finite, got {self.amount}")

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def of(cls, value: AmountLike, currency: Currency) -> 'Money':
        """
        Coerce a Money, Decimal, int or numeric string into Money

        Args:
            value: Amount to coerce
            currency: Currency expected for the result

        Returns:
            Money in the given currency

        Raises:
            ValueError: If value is a Money in another currency or is not numeric
            TypeError: If value is a float or of an unsupported type
        """
        if isinstance(value, Money):
            if value.currency != currency:
                raise ValueError(f"Expected {currency.code} amount, got {value.currency.code}")
            return value
        if isinstance(value, bool) or isinstance(value, float):
            raise TypeError(f"Unsupported amount type: {type(value).__name__}")
        if isinstance(value, (Decimal, int)):
            return cls(Decimal(value), currency)
        if isinstance(value, str):
            try:
                return cls(Decimal(value.strip()), currency)
            except InvalidOperation:
                raise ValueError(f"Cannot convert {value!r} to an amount")
        raise TypeError(f"Unsupported amount type: {type(value).__name__}")

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

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
        """Plain code-and-amount form for logs and audit metadata"""
        return f"{self.currency.code} {self.amount:.{self.currency.precision}f}"


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total
