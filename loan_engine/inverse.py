"""
Inverse Calculator Module

Solves loan terms backwards: the annual rate implied by a known payment, or
the number of months a given payment needs to clear a loan. Payments are the
full monthly amount; recurring fees and insurance are deducted before solving
and the setup fee is treated as borrowed on top of the principal.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Optional

from .currency import Money
from .day_count import HUNDRED, MONTHLY_PERIODS, nominal_periodic_rate, annuity_payment
from .schedule import LoanType, parse_loan_type
from .exceptions import InvalidLoanTerms
from .config import get_config


PAYMENT_TOLERANCE = Decimal('0.00001')
MAX_MONTHLY_RATE = Decimal('0.5')
MAX_ITERATIONS = 200


def _net_amounts(
    principal: Money,
    payment: Money,
    fee_setup: Optional[Money],
    fee_monthly: Optional[Money],
    insurance_monthly: Optional[Money]
):
    currency = principal.currency
    zero = Money.zero(currency)
    if not principal.is_positive():
        raise InvalidLoanTerms("Principal must be positive")

    borrowed = principal + (fee_setup or zero)
    net_payment = payment - (fee_monthly or zero) - (insurance_monthly or zero)
    if not net_payment.is_positive():
        raise InvalidLoanTerms("Monthly payment must be greater than the monthly fees")
    return borrowed.amount, net_payment.amount


def _annual_percent(monthly_rate: Decimal) -> Decimal:
    return (monthly_rate * MONTHLY_PERIODS * HUNDRED).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def rate_from_payment(
    principal: Money,
    payment: Money,
    term_months: int,
    loan_type: LoanType = LoanType.ANNUITY,
    fee_setup: Optional[Money] = None,
    fee_monthly: Optional[Money] = None,
    insurance_monthly: Optional[Money] = None
) -> Decimal:
    """
    Annual rate in percent implied by a monthly payment

    For fixed principal loans ``payment`` is the average installment, since
    the installments decline over the term.

    Raises:
        InvalidLoanTerms: If the payment cannot amortize the loan
    """
    loan_type = parse_loan_type(loan_type)
    if term_months <= 0:
        raise InvalidLoanTerms("Term must be a positive number of months")
    borrowed, net_payment = _net_amounts(principal, payment, fee_setup, fee_monthly, insurance_monthly)
    periods = Decimal(term_months)

    if loan_type == LoanType.INTEREST_ONLY:
        return _annual_percent(net_payment / borrowed)

    if net_payment * periods < borrowed:
        raise InvalidLoanTerms("Monthly payment is too low to repay the principal within the term")

    if loan_type == LoanType.FIXED_PRINCIPAL:
        # Average installment = P/n + r * P * (n + 1) / (2n)
        portion = borrowed / periods
        monthly_rate = (net_payment - portion) * 2 * periods / (borrowed * (periods + 1))
        return _annual_percent(monthly_rate)

    return _annual_percent(_annuity_rate(borrowed, net_payment, term_months))


def _annuity_rate(principal: Decimal, payment: Decimal, periods: int) -> Decimal:
    """Monthly rate whose level payment equals ``payment``; Newton-Raphson with bisection fallback"""
    total_interest = payment * periods - principal
    if total_interest == 0:
        return Decimal('0')

    # Average interest over average balance as the starting point
    rate = min(total_interest / periods / (principal / 2), MAX_MONTHLY_RATE)
    step = Decimal('0.000001')
    last_diff = None

    for _ in range(MAX_ITERATIONS):
        rate = max(rate, step)
        current = annuity_payment(principal, rate, periods)
        diff = current - payment
        if abs(diff) < PAYMENT_TOLERANCE:
            return rate

        if last_diff is not None and abs(diff) > abs(last_diff) * Decimal('1.5'):
            break
        last_diff = diff

        derivative = (annuity_payment(principal, rate + step, periods) - current) / step
        if derivative < Decimal('0.0001'):
            break
        rate = min(rate - diff / derivative, MAX_MONTHLY_RATE)

    return _bisect_annuity_rate(principal, payment, periods)


def _bisect_annuity_rate(principal: Decimal, payment: Decimal, periods: int) -> Decimal:
    low, high = Decimal('0'), MAX_MONTHLY_RATE
    for _ in range(MAX_ITERATIONS):
        middle = (low + high) / 2
        diff = annuity_payment(principal, middle, periods) - payment
        if abs(diff) < PAYMENT_TOLERANCE or high - low < Decimal('1e-12'):
            return middle
        if diff > 0:
            high = middle
        else:
            low = middle
    return (low + high) / 2


def term_from_payment(
    principal: Money,
    annual_rate_percent: Decimal,
    payment: Money,
    loan_type: LoanType = LoanType.ANNUITY,
    fee_setup: Optional[Money] = None,
    fee_monthly: Optional[Money] = None,
    insurance_monthly: Optional[Money] = None
) -> int:
    """
    Months needed for a monthly payment to clear a loan, rounded up

    For fixed principal loans ``payment`` caps the first (largest)
    installment. Interest-only loans never amortize, so they have no such
    term.

    Raises:
        InvalidLoanTerms: For interest-only loans, or when the payment does
            not even cover the first month's interest
    """
    loan_type = parse_loan_type(loan_type)
    if loan_type == LoanType.INTEREST_ONLY:
        raise InvalidLoanTerms("An interest-only loan needs an explicit term")

    annual_rate_percent = Decimal(str(annual_rate_percent))
    if annual_rate_percent < 0:
        raise InvalidLoanTerms("Annual rate cannot be negative")

    borrowed, net_payment = _net_amounts(principal, payment, fee_setup, fee_monthly, insurance_monthly)
    rate = nominal_periodic_rate(annual_rate_percent)
    first_interest = borrowed * rate

    if net_payment <= first_interest:
        raise InvalidLoanTerms("Monthly payment is too low to ever repay the loan")

    if loan_type == LoanType.FIXED_PRINCIPAL:
        months = borrowed / (net_payment - first_interest)
    elif rate == 0:
        months = borrowed / net_payment
    else:
        # n = -ln(1 - P*r/A) / ln(1 + r)
        months = -(Decimal('1') - first_interest / net_payment).ln() / (Decimal('1') + rate).ln()

    # A payment rounded to cents leaves a fraction of a month that is not a real period
    months = months.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    term = int(months.to_integral_value(rounding=ROUND_CEILING))
    if term > get_config().max_term_months:
        raise InvalidLoanTerms(f"Payment needs {term} months, more than the maximum term")
    return term
