"""Fixed-precision money arithmetic.

Amounts are held as integer minor units (cents) so repeated additions never
drift. Everything crossing the public boundary is a ``Decimal`` with two
decimal places.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_FLOOR
from functools import total_ordering

from restobill.exceptions import InvalidAmount

CENT = Decimal('0.01')
HUNDRED = Decimal('100')


def to_decimal(value, field='amount', allow_negative=False) -> Decimal:
    """
    Parse a user supplied number into a Decimal.

    Floats go through ``str`` first so 0.1 stays 0.1.

    Raises:
        InvalidAmount: if the value is empty, not a number or negative.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f'{field} is required')

    if isinstance(value, float):
        value = str(value)

    try:
        decimal_value = Decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f'{field} is not a valid number: {value!r}')

    if not decimal_value.is_finite():
        raise InvalidAmount(f'{field} is not a valid number: {value!r}')

    if decimal_value < 0 and not allow_negative:
        raise InvalidAmount(f'{field} cannot be negative')

    return decimal_value


def parse_rate(value, field='rate') -> Decimal:
    """Parse a percentage between 0 and 100."""
    rate = to_decimal(value, field)
    if rate > HUNDRED:
        raise InvalidAmount(f'{field} cannot exceed 100%')
    return rate


def parse_quantity(value, field='quantity') -> int:
    """Quantities are whole units, at least one."""
    if isinstance(value, bool):
        raise InvalidAmount(f'{field} must be a whole number')
    try:
        quantity = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f'{field} must be a whole number')
    if not quantity.is_finite() or quantity != quantity.to_integral_value():
        raise InvalidAmount(f'{field} must be a whole number')
    if quantity < 1:
        raise InvalidAmount(f'{field} must be at least 1')
    return int(quantity)


@total_ordering
class Money:
    """Non-negative-by-default currency amount stored in cents."""

    __slots__ = ('_cents',)

    def __init__(self, cents: int = 0):
        if isinstance(cents, bool) or not isinstance(cents, int):
            raise TypeError('Money is built from integer cents; use Money.of() for decimals')
        self._cents = cents

    @classmethod
    def of(cls, value, field='amount', allow_negative=False) -> 'Money':
        """Build from a Decimal, int, str or float with at most two decimals."""
        if isinstance(value, Money):
            if value._cents < 0 and not allow_negative:
                raise InvalidAmount(f'{field} cannot be negative')
            return value

        decimal_value = to_decimal(value, field, allow_negative=allow_negative)
        if decimal_value != decimal_value.quantize(CENT):
            raise InvalidAmount(f'{field} has more than two decimal places: {value}')

        return cls(int(decimal_value.quantize(CENT) * 100))

    @classmethod
    def zero(cls) -> 'Money':
        return cls(0)

    @classmethod
    def sum(cls, amounts) -> 'Money':
        total = 0
        for amount in amounts:
            total += amount._cents
        return cls(total)

    @property
    def cents(self) -> int:
        return self._cents

    @property
    def amount(self) -> Decimal:
        """Decimal with scale 2, the public representation."""
        return (Decimal(self._cents) / 100).quantize(CENT)

    def __add__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self._cents + other._cents)

    def __sub__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self._cents - other._cents)

    def minus_clamped(self, other: 'Money') -> 'Money':
        """Subtract, never going below zero."""
        return Money(max(self._cents - other._cents, 0))

    def times(self, quantity: int) -> 'Money':
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidAmount('quantity must be a whole number')
        if quantity < 0:
            raise InvalidAmount('quantity cannot be negative')
        return Money(self._cents * quantity)

    def percent(self, rate) -> 'Money':
        """Apply a percentage, rounding half-up to the cent."""
        rate = to_decimal(rate, 'rate')
        cents = (Decimal(self._cents) * rate / HUNDRED).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        return Money(int(cents))

    def scaled_floor(self, factor) -> int:
        """Whole units of ``amount * factor`` rounded down (used for points)."""
        factor = to_decimal(factor, 'factor')
        return int((self.amount * factor).to_integral_value(rounding=ROUND_FLOOR))

    def is_zero(self) -> bool:
        return self._cents == 0

    def __eq__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self._cents == other._cents

    def __lt__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self._cents < other._cents

    def __hash__(self):
        return hash(self._cents)

    def __bool__(self):
        return self._cents != 0

    def __repr__(self):
        return f"<Money({self.amount})>"

    def __str__(self):
        return f"{self.amount}"
