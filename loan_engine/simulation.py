"""
Simulation Module

What-if analysis on a loan: changed rate, changed term, extra monthly or
one-time principal payments. Overrides apply from loan origination, and the
baseline is the schedule the loan's own terms produce. Simulation never writes
to storage.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .currency import Money
from .schedule import LoanTerms, Installment, ScheduleSummary, strategy_for, summarize_schedule
from .loans import LoanManager
from .exceptions import InvalidLoanTerms, InvalidSimulationParameters
from .config import get_config
from .logging_config import get_logger, log_action


logger = get_logger("loan_engine.simulation")


@dataclass(frozen=True)
class SimulationParameters:
    """Overrides for a what-if run; None means keep the loan's value"""
    new_rate: Optional[Decimal] = None
    new_term: Optional[int] = None
    extra_payment_monthly: Optional[Money] = None
    one_time_payments: Dict[int, Money] = field(default_factory=dict)

    def __post_init__(self):
        if self.new_rate is not None:
            if not isinstance(self.new_rate, Decimal):
                try:
                    object.__setattr__(self, 'new_rate', Decimal(str(self.new_rate)))
                except InvalidOperation:
                    raise InvalidSimulationParameters(f"Simulated rate is not a number: {self.new_rate!r}")
            if self.new_rate < Decimal('0'):
                raise InvalidSimulationParameters("Simulated rate cannot be negative")

        if self.new_term is not None:
            if isinstance(self.new_term, bool) or not isinstance(self.new_term, int) or self.new_term <= 0:
                raise InvalidSimulationParameters("Simulated term must be a positive number of months")
            if self.new_term > get_config().max_term_months:
                raise InvalidSimulationParameters(
                    f"Simulated term cannot exceed {get_config().max_term_months} months"
                )

        if self.extra_payment_monthly is not None and self.extra_payment_monthly.is_negative():
            raise InvalidSimulationParameters("Extra monthly payment cannot be negative")

        for installment_no, amount in self.one_time_payments.items():
            if installment_no < 1:
                raise InvalidSimulationParameters("One-time payments must target installment 1 or later")
            if amount.is_negative():
                raise InvalidSimulationParameters("One-time payment cannot be negative")

    @property
    def has_extra_payments(self) -> bool:
        if self.extra_payment_monthly is not None and self.extra_payment_monthly.is_positive():
            return True
        return any(amount.is_positive() for amount in self.one_time_payments.values())


@dataclass(frozen=True)
class SimulationRun:
    """Headline figures of one schedule"""
    monthly_payment: Money
    total_interest: Money
    total_cost: Money
    installment_count: int
    summary: ScheduleSummary
    schedule: List[Installment]

    @classmethod
    def from_schedule(cls, terms: LoanTerms, schedule: List[Installment]) -> 'SimulationRun':
        summary = summarize_schedule(terms, schedule)
        return cls(
            monthly_payment=summary.monthly_payment,
            total_interest=summary.total_interest,
            total_cost=summary.total_payment,
            installment_count=summary.installment_count,
            summary=summary,
            schedule=schedule
        )


@dataclass(frozen=True)
class SimulationResult:
    original: SimulationRun
    simulated: SimulationRun
    interest_saved: Money
    time_saved_months: int

    @property
    def savings(self) -> Dict[str, Any]:
        return {
            "interest_saved": self.interest_saved,
            "time_saved_months": self.time_saved_months
        }


@dataclass(frozen=True)
class SimulationScenario:
    name: str
    params: SimulationParameters


@dataclass(frozen=True)
class ScenarioOutcome:
    name: str
    monthly_payment: Money
    total_interest: Money
    total_payment: Money
    installment_count: int
    months_saved: int
    total_saved: Money


@dataclass(frozen=True)
class MetricRange:
    minimum: Any
    maximum: Any


@dataclass(frozen=True)
class ComparisonResult:
    baseline: SimulationRun
    scenarios: List[ScenarioOutcome]
    ranges: Dict[str, MetricRange]
    best_scenario: str


COMPARED_METRICS = ("monthly_payment", "total_interest", "total_payment", "months_saved", "total_saved")


class SimulationEngine:
    """
    Runs what-if simulations against stored loans
    """

    def __init__(self, loan_manager: LoanManager):
        self.loan_manager = loan_manager

    def simulate(self, loan_id: str, params: SimulationParameters) -> SimulationResult:
        """
        Compare a loan's own schedule with one under changed parameters

        Args:
            loan_id: Loan ID
            params: Overrides applied from origination

        Returns:
            SimulationResult with both runs and the savings

        Raises:
            InvalidSimulationParameters: If the overrides are invalid
        """
        terms = self.loan_manager.get_loan(loan_id).terms
        result = self.simulate_terms(terms, params)

        log_action(
            logger, "debug", "Simulation run",
            action="simulation_run", loan_id=loan_id,
            extra={
                "interest_saved": result.interest_saved.to_decimal_string(),
                "time_saved_months": result.time_saved_months
            }
        )
        return result

    def simulate_terms(self, terms: LoanTerms, params: SimulationParameters) -> SimulationResult:
        """Simulation against bare terms, without a stored loan"""
        original = self._run(terms, SimulationParameters())
        simulated = self._run(terms, params)

        return SimulationResult(
            original=original,
            simulated=simulated,
            interest_saved=original.total_interest - simulated.total_interest,
            time_saved_months=original.installment_count - simulated.installment_count
        )

    def compare_scenarios(self, loan_id: str, scenarios: List[SimulationScenario]) -> ComparisonResult:
        """
        Run several named scenarios against the same baseline

        The best scenario saves the most in total; ties go to the one with
        the lowest total interest.
        """
        if not scenarios:
            raise InvalidSimulationParameters("At least one scenario is required")

        names = [scenario.name for scenario in scenarios]
        if len(set(names)) != len(names):
            raise InvalidSimulationParameters("Scenario names must be unique")

        terms = self.loan_manager.get_loan(loan_id).terms
        baseline = self._run(terms, SimulationParameters())

        outcomes = []
        for scenario in scenarios:
            run = self._run(terms, scenario.params)
            outcomes.append(ScenarioOutcome(
                name=scenario.name,
                monthly_payment=run.monthly_payment,
                total_interest=run.total_interest,
                total_payment=run.total_cost,
                installment_count=run.installment_count,
                months_saved=baseline.installment_count - run.installment_count,
                total_saved=baseline.total_cost - run.total_cost
            ))

        ranges = {}
        for metric in COMPARED_METRICS:
            values = [getattr(outcome, metric) for outcome in outcomes]
            ranges[metric] = MetricRange(minimum=min(values), maximum=max(values))

        best = min(outcomes, key=lambda outcome: (-outcome.total_saved.amount, outcome.total_interest.amount))

        log_action(
            logger, "debug", "Scenarios compared",
            action="scenarios_compared", loan_id=loan_id,
            extra={"scenarios": len(outcomes), "best_scenario": best.name}
        )

        return ComparisonResult(
            baseline=baseline,
            scenarios=outcomes,
            ranges=ranges,
            best_scenario=best.name
        )

    def _run(self, terms: LoanTerms, params: SimulationParameters) -> SimulationRun:
        changes = {}
        if params.new_rate is not None:
            changes['annual_rate_percent'] = params.new_rate
        if params.new_term is not None:
            changes['term_months'] = params.new_term

        try:
            simulated_terms = terms.with_changes(**changes) if changes else terms
        except InvalidLoanTerms as e:
            raise InvalidSimulationParameters(str(e)) from e

        currency = terms.currency
        for amount in [params.extra_payment_monthly, *params.one_time_payments.values()]:
            if amount is not None and amount.currency != currency:
                raise InvalidSimulationParameters(f"Extra payments must be in {currency.code}")

        strategy = strategy_for(
            simulated_terms,
            open_term=params.has_extra_payments,
            extra_principal=params.extra_payment_monthly,
            one_time_payments=params.one_time_payments
        )
        schedule = self.loan_manager.generator.run(strategy)
        return SimulationRun.from_schedule(simulated_terms, schedule)
