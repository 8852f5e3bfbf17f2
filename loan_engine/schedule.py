"""
Schedule Generator Module

Builds amortization schedules for annuity, fixed principal and interest-only
loans. Each method is an AmortizationStrategy that produces one period at a
time; the ScheduleGenerator walks the periods, dates them and attaches fees.
Generation is pure: identical terms always yield an identical schedule.
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from datetime import date
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Type, Union
from abc import ABC, abstractmethod
from enum import Enum

from .currency import Money, Currency, sum_money, round_money
from .day_count import (
    DayCountConvention, parse_convention, add_months, periodic_rate,
    nominal_periodic_rate, annuity_payment
)
from .exceptions import InvalidLoanTerms
from .config import get_config
from .logging_config import get_logger, log_action


logger = get_logger("loan_engine.schedule")


class LoanType(Enum):
    """Amortization methods"""
    ANNUITY = "annuity"                  # Level payment, shifting principal/interest mix
    FIXED_PRINCIPAL = "fixed_principal"  # Constant principal, declining payment
    INTEREST_ONLY = "interest_only"      # Interest each period, balloon at the end


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


def parse_loan_type(value: Union[str, LoanType]) -> LoanType:
    """Resolve a loan type, raising InvalidLoanTerms for unknown values"""
    if isinstance(value, LoanType):
        return value
    try:
        return LoanType(str(value).strip().lower())
    except ValueError:
        raise InvalidLoanTerms(f"Unsupported loan type: {value}")


def _to_decimal(value, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise InvalidLoanTerms(f"{field_name} must be a Decimal, int or string, not float")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidLoanTerms(f"{field_name} is not a number: {value!r}")


@dataclass(frozen=True)
class LoanTerms:
    """
    Commercial terms of a loan.

    Validated on construction; invalid terms never reach the generator.
    ``fee_setup`` is paid once up front and is not part of any installment.
    ``balloon_amount`` applies to interest-only loans and defaults to the
    full principal.
    """
    principal: Money
    annual_rate_percent: Decimal
    term_months: int
    loan_type: LoanType
    start_date: date
    day_count_convention: DayCountConvention = DayCountConvention.THIRTY_360
    fee_setup: Optional[Money] = None
    fee_monthly: Optional[Money] = None
    insurance_monthly: Optional[Money] = None
    balloon_amount: Optional[Money] = None

    def __post_init__(self):
        if not isinstance(self.principal, Money):
            raise InvalidLoanTerms("Principal must be a Money amount")
        currency = self.principal.currency

        object.__setattr__(self, 'annual_rate_percent',
                           _to_decimal(self.annual_rate_percent, "Annual rate"))
        object.__setattr__(self, 'loan_type', parse_loan_type(self.loan_type))
        object.__setattr__(self, 'day_count_convention',
                           parse_convention(self.day_count_convention))

        if isinstance(self.start_date, str):
            try:
                object.__setattr__(self, 'start_date', date.fromisoformat(self.start_date))
            except ValueError:
                raise InvalidLoanTerms(f"Start date is not an ISO date: {self.start_date}")
        if not isinstance(self.start_date, date):
            raise InvalidLoanTerms("Start date must be a date")

        for name in ('fee_setup', 'fee_monthly', 'insurance_monthly'):
            value = getattr(self, name)
            if value is None:
                object.__setattr__(self, name, Money.zero(currency))
            elif not isinstance(value, Money):
                raise InvalidLoanTerms(f"{name} must be a Money amount")

        self._validate()

    def _validate(self) -> None:
        currency = self.principal.currency

        if not self.principal.is_positive():
            raise InvalidLoanTerms("Principal must be positive")

        if self.annual_rate_percent < Decimal('0'):
            raise InvalidLoanTerms("Annual rate cannot be negative")

        config = get_config()
        if self.annual_rate_percent > Decimal(config.high_rate_warning_percent):
            # Some consumer credit carries very high APR; accepted but flagged
            logger.warning(f"Very high annual rate ({self.annual_rate_percent}%)")

        if isinstance(self.term_months, bool) or not isinstance(self.term_months, int):
            raise InvalidLoanTerms("Term must be a positive integer number of months")
        if self.term_months <= 0:
            raise InvalidLoanTerms("Term must be a positive integer number of months")
        if self.term_months > config.max_term_months:
            raise InvalidLoanTerms(f"Term cannot exceed {config.max_term_months} months")

        for name in ('fee_setup', 'fee_monthly', 'insurance_monthly'):
            value = getattr(self, name)
            if value.currency != currency:
                raise InvalidLoanTerms(f"{name} currency must match principal currency")
            if value.is_negative():
                raise InvalidLoanTerms(f"{name} cannot be negative")

        if self.balloon_amount is not None:
            if self.loan_type != LoanType.INTEREST_ONLY:
                raise InvalidLoanTerms("Balloon amount only applies to interest-only loans")
            if not isinstance(self.balloon_amount, Money):
                raise InvalidLoanTerms("Balloon amount must be a Money amount")
            if self.balloon_amount.currency != currency:
                raise InvalidLoanTerms("Balloon currency must match principal currency")
            if self.balloon_amount.is_negative():
                raise InvalidLoanTerms("Balloon amount cannot be negative")
            if self.balloon_amount > self.principal:
                raise InvalidLoanTerms("Balloon amount cannot exceed principal")

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def fees_per_installment(self) -> Money:
        """Recurring fee plus insurance added to every installment"""
        return self.fee_monthly + self.insurance_monthly

    @property
    def effective_balloon(self) -> Money:
        return self.balloon_amount if self.balloon_amount is not None else self.principal

    @property
    def unpaid_residual(self) -> Money:
        """Principal left outstanding after an interest-only balloon smaller than principal"""
        if self.loan_type != LoanType.INTEREST_ONLY:
            return Money.zero(self.currency)
        return self.principal - self.effective_balloon

    @property
    def nominal_rate(self) -> Decimal:
        """Periodic rate used for closed-form payment calculation"""
        return nominal_periodic_rate(self.annual_rate_percent)

    def with_changes(self, **changes) -> 'LoanTerms':
        """Copy of these terms with fields replaced; the copy is validated again"""
        return replace(self, **changes)


@dataclass(frozen=True)
class Installment:
    """One row of a payment schedule"""
    installment_no: int
    due_date: date
    principal_due: Money
    interest_due: Money
    fees_due: Money
    total_due: Money
    principal_balance_after: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    loan_id: Optional[str] = None
    prepaid_principal: Optional[Money] = None  # Early repayment applied after this row
    paid_date: Optional[date] = None

    def __post_init__(self):
        if self.prepaid_principal is None:
            object.__setattr__(self, 'prepaid_principal', Money.zero(self.principal_due.currency))

        # Validate that total equals principal + interest + fees
        calculated = self.principal_due + self.interest_due + self.fees_due
        if calculated != self.total_due:
            raise ValueError(f"Total due {self.total_due.to_string()} does not equal "
                             f"principal {self.principal_due.to_string()} + "
                             f"interest {self.interest_due.to_string()} + "
                             f"fees {self.fees_due.to_string()}")

        if self.principal_balance_after.is_negative():
            raise ValueError(f"Installment {self.installment_no} has a negative balance")

    @property
    def installment_payment(self) -> Money:
        """Principal plus interest, without fees"""
        return self.principal_due + self.interest_due

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID


@dataclass(frozen=True)
class PeriodState:
    """Inputs for computing one period"""
    number: int              # 1-based position within the run
    balance_before: Money
    rate: Decimal            # Periodic rate for this period
    period_start: date
    due_date: date


class AmortizationStrategy(ABC):
    """
    One amortization method.

    ``next_period`` is the only capability the generator relies on. In fixed
    term mode a run always has exactly ``periods`` rows; the last row absorbs
    any rounding residual. In open term mode the run ends as soon as the
    scheduled principal clears the balance, with ``periods`` as the cap.
    """

    loan_type: LoanType

    def __init__(
        self,
        terms: LoanTerms,
        fixed_amount: Optional[Money] = None,
        open_term: bool = False,
        extra_principal: Optional[Money] = None,
        one_time_payments: Optional[Dict[int, Money]] = None
    ):
        self.terms = terms
        self.currency = terms.currency
        self.periods = terms.term_months
        self.open_term = open_term
        self.extra_principal = extra_principal or Money.zero(self.currency)
        self.one_time_payments = dict(one_time_payments or {})
        self.fixed_amount = fixed_amount

    def interest_for(self, state: PeriodState) -> Money:
        return Money(state.balance_before.amount * state.rate, self.currency)

    @abstractmethod
    def scheduled_principal(self, state: PeriodState, interest: Money) -> Money:
        """Principal the method itself calls for in a non-final period"""

    def extra_for(self, state: PeriodState) -> Money:
        extra = self.extra_principal
        one_time = self.one_time_payments.get(state.number)
        if one_time is not None:
            extra = extra + one_time
        return extra

    def is_last_period(self, state: PeriodState) -> bool:
        return state.number >= self.periods

    def final_principal(self, state: PeriodState) -> Money:
        """Residual correction: the last row clears whatever balance remains"""
        return state.balance_before

    def next_period(self, state: PeriodState) -> Tuple[Money, Money, bool]:
        """
        Compute one period

        Returns:
            (principal due, interest due, whether this row closes the schedule)
        """
        interest = self.interest_for(state)

        if self.is_last_period(state):
            return self.final_principal(state), interest, True

        zero = Money.zero(self.currency)
        principal = max(self.scheduled_principal(state, interest), zero) + self.extra_for(state)

        if principal >= state.balance_before:
            return state.balance_before, interest, self.open_term

        return principal, interest, False


class AnnuityStrategy(AmortizationStrategy):
    """Level payment; ``fixed_amount`` holds the payment (principal + interest)"""

    loan_type = LoanType.ANNUITY

    def __init__(self, terms: LoanTerms, **options):
        super().__init__(terms, **options)
        if self.fixed_amount is None:
            self.fixed_amount = Money(
                annuity_payment(terms.principal.amount, terms.nominal_rate, terms.term_months),
                self.currency
            )

    @property
    def payment(self) -> Money:
        return self.fixed_amount

    def scheduled_principal(self, state: PeriodState, interest: Money) -> Money:
        return self.payment - interest


class FixedPrincipalStrategy(AmortizationStrategy):
    """
    Constant principal portion; ``fixed_amount`` holds that portion

    The default portion is rounded down so every installment repays some
    principal and the last one absorbs the remainder.
    """

    loan_type = LoanType.FIXED_PRINCIPAL

    def __init__(self, terms: LoanTerms, **options):
        super().__init__(terms, **options)
        if self.fixed_amount is None:
            portion = terms.principal.amount / Decimal(terms.term_months)
            self.fixed_amount = Money(round_money(portion, self.currency, ROUND_DOWN), self.currency)

    @property
    def portion(self) -> Money:
        return self.fixed_amount

    def scheduled_principal(self, state: PeriodState, interest: Money) -> Money:
        return self.portion


class InterestOnlyStrategy(AmortizationStrategy):
    """Interest every period, balloon principal in the last period"""

    loan_type = LoanType.INTEREST_ONLY

    def scheduled_principal(self, state: PeriodState, interest: Money) -> Money:
        return Money.zero(self.currency)

    def final_principal(self, state: PeriodState) -> Money:
        remaining = state.balance_before - self.terms.unpaid_residual
        return max(remaining, Money.zero(self.currency))


STRATEGIES: Dict[LoanType, Type[AmortizationStrategy]] = {
    LoanType.ANNUITY: AnnuityStrategy,
    LoanType.FIXED_PRINCIPAL: FixedPrincipalStrategy,
    LoanType.INTEREST_ONLY: InterestOnlyStrategy,
}


def strategy_for(terms: LoanTerms, **options) -> AmortizationStrategy:
    """Select the amortization strategy for a loan's type"""
    try:
        strategy_class = STRATEGIES[terms.loan_type]
    except KeyError:
        raise InvalidLoanTerms(f"Unsupported loan type: {terms.loan_type}")
    return strategy_class(terms, **options)


class ScheduleGenerator:
    """Walks an amortization strategy period by period"""

    def generate(
        self,
        terms: LoanTerms,
        loan_id: Optional[str] = None,
        start_number: int = 1
    ) -> List[Installment]:
        """
        Generate the full fixed-term schedule for a loan

        Args:
            terms: Validated loan terms
            loan_id: Optional loan id stamped on every installment
            start_number: Installment number of the first row

        Returns:
            List of Installment objects, ``terms.term_months`` long
        """
        schedule = self.run(strategy_for(terms), loan_id=loan_id, start_number=start_number)

        log_action(
            logger, "debug", "Schedule generated",
            action="schedule_generated", loan_id=loan_id,
            extra={
                "loan_type": terms.loan_type.value,
                "principal": terms.principal.to_decimal_string(),
                "installments": len(schedule)
            }
        )
        return schedule

    def run(
        self,
        strategy: AmortizationStrategy,
        loan_id: Optional[str] = None,
        start_number: int = 1
    ) -> List[Installment]:
        """
        Generate rows from an already configured strategy

        Installment ``n`` is always due ``n`` months after the start date, so a
        run starting at a later number stays on the original calendar.
        """
        terms = strategy.terms
        fees = terms.fees_per_installment
        balance = terms.principal
        period_start = add_months(terms.start_date, start_number - 1)
        schedule = []

        for offset in range(1, strategy.periods + 1):
            due_date = add_months(terms.start_date, start_number + offset - 1)
            state = PeriodState(
                number=offset,
                balance_before=balance,
                rate=self._period_rate(terms, period_start, due_date),
                period_start=period_start,
                due_date=due_date
            )

            principal_due, interest_due, closes = strategy.next_period(state)
            balance = balance - principal_due

            schedule.append(Installment(
                installment_no=start_number + offset - 1,
                due_date=due_date,
                principal_due=principal_due,
                interest_due=interest_due,
                fees_due=fees,
                total_due=principal_due + interest_due + fees,
                principal_balance_after=balance,
                loan_id=loan_id
            ))

            if closes:
                break
            period_start = due_date

        return schedule

    def _period_rate(self, terms: LoanTerms, period_start: date, due_date: date) -> Decimal:
        return periodic_rate(
            terms.annual_rate_percent,
            terms.day_count_convention,
            period_start=period_start,
            period_end=due_date
        )


default_generator = ScheduleGenerator()


def generate_schedule(terms: LoanTerms, loan_id: Optional[str] = None) -> List[Installment]:
    """Generate the schedule for loan terms with the default generator"""
    return default_generator.generate(terms, loan_id=loan_id)


@dataclass(frozen=True)
class ScheduleSummary:
    """Totals over a schedule, including the one-time setup fee"""
    installment_count: int
    total_principal: Money
    total_interest: Money
    total_fees: Money
    total_payment: Money
    monthly_payment: Money
    last_payment: Money
    end_date: Optional[date]
    effective_rate: Decimal


def summarize_schedule(terms: LoanTerms, schedule: List[Installment]) -> ScheduleSummary:
    """
    Aggregate a schedule

    ``total_payment`` is every installment's total due plus the setup fee and
    is the loan's total cost. ``monthly_payment`` is the first installment's
    total due.
    """
    currency = terms.currency
    zero = Money.zero(currency)
    monthly_fees = sum_money((entry.fees_due for entry in schedule), currency)
    has_fees = terms.fee_setup.is_positive() or monthly_fees.is_positive()

    if has_fees:
        rate = effective_annual_rate(terms, schedule)
    else:
        rate = terms.annual_rate_percent.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    return ScheduleSummary(
        installment_count=len(schedule),
        total_principal=sum_money((entry.principal_due for entry in schedule), currency),
        total_interest=sum_money((entry.interest_due for entry in schedule), currency),
        total_fees=monthly_fees + terms.fee_setup,
        total_payment=sum_money((entry.total_due for entry in schedule), currency) + terms.fee_setup,
        monthly_payment=schedule[0].total_due if schedule else zero,
        last_payment=schedule[-1].total_due if schedule else zero,
        end_date=schedule[-1].due_date if schedule else None,
        effective_rate=rate
    )


def effective_annual_rate(terms: LoanTerms, schedule: List[Installment]) -> Decimal:
    """
    Effective annual rate (APR) in percent, the IRR of the borrower's cash flows

    At t=0 the borrower receives the principal and pays the setup fee; at each
    due date the borrower pays the installment's total due. Solved with
    Newton-Raphson on the monthly rate; falls back to the average balance
    approximation when the iteration does not converge.
    """
    if not schedule:
        return Decimal('0')

    config = get_config()
    tolerance = Decimal(config.effective_rate_tolerance)
    one = Decimal('1')
    cash_at_start = terms.principal.amount - terms.fee_setup.amount
    payments = [entry.total_due.amount for entry in schedule]
    # Principal left unpaid by a partial balloon is still owed at maturity
    payments[-1] += schedule[-1].principal_balance_after.amount

    rate = Decimal('0.008')
    for _ in range(config.effective_rate_max_iterations):
        npv = cash_at_start
        derivative = Decimal('0')
        discount = one
        for month, payment in enumerate(payments, start=1):
            discount *= (one + rate)
            npv -= payment / discount
            derivative += month * payment / (discount * (one + rate))

        if abs(npv) < tolerance:
            return _percent(rate * 12)

        if derivative < Decimal('0.0001'):
            break

        rate = rate - npv / derivative
        if rate < Decimal('0'):
            rate = Decimal('0.0001')
        if rate > Decimal('0.5'):
            rate = Decimal('0.5')

    total_paid = sum(payments) + terms.fee_setup.amount
    years = Decimal(len(payments)) / Decimal('12')
    average_balance = terms.principal.amount / Decimal('2')
    return _percent((total_paid - terms.principal.amount) / average_balance / years)


def _percent(annual_fraction: Decimal) -> Decimal:
    return (annual_fraction * Decimal('100')).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
