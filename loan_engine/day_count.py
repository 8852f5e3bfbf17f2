"""
Day Count and Periodic Rate Module

Converts an annual percentage rate into the rate charged for one schedule
period. The 30/360 family fixes every monthly period to exactly 1/12 of a
year, so each installment carries the same periodic rate regardless of the
calendar. The actual/360 and actual/365 conventions use real day counts
between due dates.
"""

from decimal import Decimal
from datetime import date
from enum import Enum
from typing import Optional, Union
import calendar

from .exceptions import InvalidLoanTerms


HUNDRED = Decimal('100')
MONTHLY_PERIODS = 12


class DayCountConvention(Enum):
    """Supported day count conventions"""
    THIRTY_360 = "30/360"        # Every month is 30 days, year is 360
    THIRTY_E_360 = "30E/360"     # European 30/360, same fixed monthly fraction
    ACT_360 = "ACT/360"          # Actual days / 360 (money market)
    ACT_365 = "ACT/365"          # Actual days / 365 (UK)

    @property
    def is_fixed_period(self) -> bool:
        """True when every period has the same year fraction"""
        return self in (DayCountConvention.THIRTY_360, DayCountConvention.THIRTY_E_360)

    @property
    def days_in_year(self) -> int:
        return 365 if self == DayCountConvention.ACT_365 else 360


def parse_convention(value: Union[str, DayCountConvention]) -> DayCountConvention:
    """
    Resolve a convention from its enum member or its label

    Raises:
        InvalidLoanTerms: If the label is not a supported convention
    """
    if isinstance(value, DayCountConvention):
        return value
    normalized = str(value).strip().upper()
    for convention in DayCountConvention:
        if convention.value == normalized:
            return convention
    raise InvalidLoanTerms(f"Unsupported day count convention: {value}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def nominal_periodic_rate(annual_rate_percent: Decimal, periods_per_year: int = MONTHLY_PERIODS) -> Decimal:
    """Annual percentage divided evenly across the periods of a year"""
    return annual_rate_percent / HUNDRED / Decimal(periods_per_year)


def periodic_rate(
    annual_rate_percent: Decimal,
    convention: DayCountConvention,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    periods_per_year: int = MONTHLY_PERIODS
) -> Decimal:
    """
    Rate charged on the outstanding balance for one period

    For 6.00% under 30/360 with monthly periods this is exactly 0.005.
    """
    if convention.is_fixed_period:
        return nominal_periodic_rate(annual_rate_percent, periods_per_year)

    if period_start is None or period_end is None:
        raise ValueError(f"{convention.value} needs period start and end dates")

    # Multiply before dividing so exact day ratios stay exact
    days = abs((period_end - period_start).days)
    return annual_rate_percent * Decimal(days) / (HUNDRED * Decimal(convention.days_in_year))


def annuity_payment(principal: Decimal, rate: Decimal, periods: int) -> Decimal:
    """
    Level payment that amortizes ``principal`` over ``periods``

    Standard formula A = P * r / (1 - (1 + r)^-n). The formula is singular at
    r = 0, where the payment degenerates to P / n.
    """
    if periods <= 0:
        raise ValueError("Number of periods must be positive")
    if rate == Decimal('0'):
        return principal / Decimal(periods)
    return principal * rate / (Decimal('1') - (Decimal('1') + rate) ** -periods)
