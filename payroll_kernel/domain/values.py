"""
Value objects shared by payroll services.

``PayPeriod`` is the canonical representation of a calendar-month period
(``YYYY-MM``).  ``quantize_money`` is the single rounding rule for every
monetary result: two decimal places, ROUND_HALF_UP.  NEVER use float for
monetary amounts.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from payroll_kernel.exceptions import InvalidPeriodError

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


def to_decimal(value: Decimal | int | str | float | None) -> Decimal:
    """Convert a stored or configured number to Decimal (via str for floats)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary amount to cents (ROUND_HALF_UP)."""
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, order=True)
class PayPeriod:
    """A calendar month identified by year and month."""

    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise InvalidPeriodError(self.code_for(self.year, self.month), "month must be 1-12")
        if not 1900 <= self.year <= 9999:
            raise InvalidPeriodError(self.code_for(self.year, self.month), "year out of range")

    @staticmethod
    def code_for(year: int, month: int) -> str:
        return f"{year:04d}-{month:02d}"

    @classmethod
    def parse(cls, text: str) -> PayPeriod:
        """Parse ``YYYY-MM`` (month may be a single digit)."""
        if not isinstance(text, str):
            raise InvalidPeriodError(repr(text), "period must be a string")
        match = _PERIOD_RE.match(text.strip())
        if match is None:
            raise InvalidPeriodError(text, "expected format YYYY-MM")
        return cls(year=int(match.group(1)), month=int(match.group(2)))

    @property
    def code(self) -> str:
        return self.code_for(self.year, self.month)

    @property
    def start_date(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end_date(self) -> date:
        last_day = calendar.monthrange(self.year, self.month)[1]
        return date(self.year, self.month, last_day)

    def __str__(self) -> str:
        return self.code


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from a store without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
