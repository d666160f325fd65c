"""
Money — Exact fixed-point currency values in integer minor units.

Every amount the policy engine compares against a role limit or a governance
threshold is a Money value. Amounts are Python ints counting cents, so
repeated additions never drift and there is no upper bound on magnitude.

Rules:
- Arithmetic and comparison between different currencies raise
  CurrencyMismatch. There is no implicit conversion.
- Conversion from a decimal input and multiplication by a factor both round
  ROUND_HALF_UP (ties away from zero) to the nearest minor unit.
- Floats are refused at every entry point.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import (
    MAX_EMAX,
    MAX_PREC,
    MIN_EMIN,
    ROUND_HALF_UP,
    Decimal,
    InvalidOperation,
    localcontext,
)

from treasury_policy.errors import CurrencyMismatch

MINOR_UNITS_PER_MAJOR = 100
_MINOR_EXPONENT = Decimal(1).scaleb(-2)


class Currency(str, enum.Enum):
    """Settlement currencies supported by the treasury."""

    USD = "USD"
    USDC = "USDC"


def _to_decimal(value: Decimal | int | str) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(
            f"Money requires an exact decimal input, got {type(value).__name__}"
        )
    try:
        result = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid decimal amount: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def _scale_to_minor(value: Decimal, factor: Decimal) -> int:
    """Exact product of two decimals, rounded half-up to an integer once."""
    with localcontext() as ctx:
        ctx.prec = MAX_PREC
        ctx.Emax = MAX_EMAX
        ctx.Emin = MIN_EMIN
        return int((value * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Money:
    """
    An amount of a currency, held as an integer count of minor units.

    Money values are immutable and hashable. Use ``from_decimal`` to build one
    from a dollar amount, or pass minor units directly.
    """

    amount: int
    currency: Currency

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError(
                f"Money.amount must be an int of minor units, got {type(self.amount).__name__}"
            )
        if not isinstance(self.currency, Currency):
            object.__setattr__(self, "currency", Currency(self.currency))

    # ── Construction ───────────────────────────────────────────

    @classmethod
    def from_decimal(
        cls,
        value: Decimal | int | str,
        currency: Currency | str = Currency.USD,
    ) -> Money:
        """Build Money from a major-unit amount, rounding half-up to the cent."""
        cents = _scale_to_minor(_to_decimal(value), Decimal(MINOR_UNITS_PER_MAJOR))
        return cls(amount=cents, currency=Currency(currency))

    @classmethod
    def zero(cls, currency: Currency | str = Currency.USD) -> Money:
        return cls(amount=0, currency=Currency(currency))

    def to_decimal(self) -> Decimal:
        """Major-unit value with exactly two decimal places."""
        return Decimal(self.amount).scaleb(-2).quantize(_MINOR_EXPONENT)

    # ── Predicates ─────────────────────────────────────────────

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    @property
    def is_negative(self) -> bool:
        return self.amount < 0

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    # ── Arithmetic ─────────────────────────────────────────────

    def _require_same_currency(self, other: Money, operation: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {operation} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatch(
                f"Cannot {operation} {self.currency.value} and {other.currency.value}",
                left=self.currency.value,
                right=other.currency.value,
            )

    def add(self, other: Money) -> Money:
        self._require_same_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: Money) -> Money:
        self._require_same_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def multiply(self, factor: Decimal | int | str) -> Money:
        """Scale by an exact factor, rounding the product half-up to the cent."""
        return Money(_scale_to_minor(Decimal(self.amount), _to_decimal(factor)), self.currency)

    def negate(self) -> Money:
        return Money(-self.amount, self.currency)

    def compare(self, other: Money) -> int:
        """Return -1, 0 or 1. Raises CurrencyMismatch across currencies."""
        self._require_same_currency(other, "compare")
        if self.amount > other.amount:
            return 1
        if self.amount < other.amount:
            return -1
        return 0

    __add__ = add
    __sub__ = subtract
    __mul__ = multiply
    __neg__ = negate

    def __lt__(self, other: Money) -> bool:
        return self.compare(other) < 0

    def __le__(self, other: Money) -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: Money) -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: Money) -> bool:
        return self.compare(other) >= 0

    # ── Presentation ───────────────────────────────────────────

    def format(self) -> str:
        """'$1234.56' for USD, '1234.56 USDC' for USDC."""
        sign = "-" if self.amount < 0 else ""
        magnitude = Money(abs(self.amount), self.currency).to_decimal()
        if self.currency == Currency.USDC:
            return f"{sign}{magnitude} USDC"
        return f"{sign}${magnitude}"

    def __str__(self) -> str:
        return self.format()


# Functional aliases used by callers that prefer free functions.

def add(a: Money, b: Money) -> Money:
    return a.add(b)


def subtract(a: Money, b: Money) -> Money:
    return a.subtract(b)


def multiply(money: Money, factor: Decimal | int | str) -> Money:
    return money.multiply(factor)


def compare(a: Money, b: Money) -> int:
    return a.compare(b)


def from_decimal(value: Decimal | int | str, currency: Currency | str = Currency.USD) -> Money:
    return Money.from_decimal(value, currency)


def to_decimal(money: Money) -> Decimal:
    return money.to_decimal()


def format_money(money: Money) -> str:
    return money.format()
