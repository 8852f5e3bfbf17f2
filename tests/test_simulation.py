"""
Test suite for what-if simulation

Simulations compare a loan's own schedule with one under changed terms or
extra payments. They never touch the stored loan.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.currency import Money, Currency
from loan_engine.storage import InMemoryStorage
from loan_engine.schedule import LoanTerms, LoanType, generate_schedule
from loan_engine.loans import LoanManager
from loan_engine.simulation import (
    SimulationEngine, SimulationParameters, SimulationScenario, COMPARED_METRICS
)
from loan_engine.exceptions import InvalidSimulationParameters, LoanNotFound


class TestSimulationParameters:
    """Test override validation"""

    def test_defaults_keep_everything(self):
        params = SimulationParameters()
        assert params.new_rate is None
        assert params.new_term is None
        assert not params.has_extra_payments

    def test_rate_parsed(self):
        assert SimulationParameters(new_rate="4.5").new_rate == Decimal('4.5')

    def test_invalid_values(self):
        with pytest.raises(InvalidSimulationParameters):
            SimulationParameters(new_rate=Decimal('-1'))
        with pytest.raises(InvalidSimulationParameters):
            SimulationParameters(new_rate="abc")
        with pytest.raises(InvalidSimulationParameters):
            SimulationParameters(new_term=0)
        with pytest.raises(InvalidSimulationParameters):
            SimulationParameters(new_term=601)
        with pytest.raises(InvalidSimulationParameters):
            SimulationParameters(extra_payment_monthly=Money(Decimal('-10')))
        with pytest.raises(InvalidSimulationParameters):
            SimulationParameters(one_time_payments={0: Money(Decimal('100'))})

    def test_zero_extras_are_not_extra_payments(self):
        params = SimulationParameters(extra_payment_monthly=Money(Decimal('0')))
        assert not params.has_extra_payments
        assert SimulationParameters(one_time_payments={3: Money(Decimal('1'))}).has_extra_payments


class TestSimulate:
    """Test single simulations"""

    def setup_method(self):
        self.loan_manager = LoanManager(InMemoryStorage())
        self.engine = SimulationEngine(self.loan_manager)
        self.terms = LoanTerms(
            principal=Money(Decimal('10000.00'), Currency.EUR),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            loan_type=LoanType.ANNUITY,
            start_date=date(2024, 1, 15)
        )
        self.loan = self.loan_manager.create_loan(self.terms, "Test Bank")

    def test_no_overrides_matches_loan(self):
        result = self.engine.simulate(self.loan.id, SimulationParameters())

        assert result.original.schedule == generate_schedule(self.terms)
        assert result.simulated.total_interest == result.original.total_interest
        assert result.interest_saved.is_zero()
        assert result.time_saved_months == 0

    def test_extra_monthly_payment_shortens_loan(self):
        result = self.engine.simulate(
            self.loan.id, SimulationParameters(extra_payment_monthly=Money(Decimal('200')))
        )

        assert result.simulated.installment_count < 12
        assert result.time_saved_months == 12 - result.simulated.installment_count
        assert result.interest_saved.is_positive()
        assert result.simulated.schedule[-1].principal_balance_after.is_zero()
        assert result.savings["interest_saved"] == result.interest_saved

    def test_one_time_payment(self):
        result = self.engine.simulate(
            self.loan.id, SimulationParameters(one_time_payments={2: Money(Decimal('5000'))})
        )
        assert result.simulated.installment_count < 12
        assert result.interest_saved.is_positive()

    def test_lower_rate(self):
        result = self.engine.simulate(self.loan.id, SimulationParameters(new_rate=Decimal('4')))

        assert result.simulated.installment_count == 12
        assert result.simulated.monthly_payment < result.original.monthly_payment
        assert result.interest_saved.is_positive()

    def test_longer_term_costs_more(self):
        result = self.engine.simulate(self.loan.id, SimulationParameters(new_term=24))

        assert result.simulated.installment_count == 24
        assert result.time_saved_months == -12
        assert result.interest_saved.is_negative()
        assert result.simulated.monthly_payment < result.original.monthly_payment

    def test_simulation_does_not_write(self):
        before = self.loan_manager.get_schedule(self.loan.id)
        self.engine.simulate(self.loan.id, SimulationParameters(
            new_rate=Decimal('3'), extra_payment_monthly=Money(Decimal('100'))
        ))

        assert self.loan_manager.get_schedule(self.loan.id) == before
        assert self.loan_manager.get_schedule_revision(self.loan.id) == 1

    def test_currency_mismatch(self):
        with pytest.raises(InvalidSimulationParameters, match="EUR"):
            self.engine.simulate(self.loan.id, SimulationParameters(
                extra_payment_monthly=Money(Decimal('100'), Currency.USD)
            ))

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.engine.simulate("missing", SimulationParameters())

    def test_simulate_terms_without_loan(self):
        result = self.engine.simulate_terms(self.terms, SimulationParameters(new_term=6))
        assert result.simulated.installment_count == 6


class TestCompareScenarios:
    """Test scenario comparison"""

    def setup_method(self):
        self.loan_manager = LoanManager(InMemoryStorage())
        self.engine = SimulationEngine(self.loan_manager)
        terms = LoanTerms(
            principal=Money(Decimal('10000.00'), Currency.EUR),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            loan_type=LoanType.ANNUITY,
            start_date=date(2024, 1, 15)
        )
        self.loan = self.loan_manager.create_loan(terms, "Test Bank")

    def test_best_scenario(self):
        comparison = self.engine.compare_scenarios(self.loan.id, [
            SimulationScenario("extra", SimulationParameters(extra_payment_monthly=Money(Decimal('500')))),
            SimulationScenario("cheaper", SimulationParameters(new_rate=Decimal('5.5'))),
            SimulationScenario("longer", SimulationParameters(new_term=24)),
        ])

        assert [outcome.name for outcome in comparison.scenarios] == ["extra", "cheaper", "longer"]
        assert comparison.best_scenario == "extra"
        assert comparison.baseline.installment_count == 12

        longer = comparison.scenarios[2]
        assert longer.months_saved == -12
        assert longer.total_saved.is_negative()

    def test_ranges(self):
        comparison = self.engine.compare_scenarios(self.loan.id, [
            SimulationScenario("shorter", SimulationParameters(new_term=6)),
            SimulationScenario("longer", SimulationParameters(new_term=24)),
        ])

        assert set(comparison.ranges) == set(COMPARED_METRICS)
        months = comparison.ranges["months_saved"]
        assert (months.minimum, months.maximum) == (-12, 6)
        payments = comparison.ranges["monthly_payment"]
        assert payments.minimum == comparison.scenarios[1].monthly_payment
        assert payments.maximum == comparison.scenarios[0].monthly_payment

    def test_tie_goes_to_first_listed(self):
        params = SimulationParameters(new_rate=Decimal('5'))
        comparison = self.engine.compare_scenarios(self.loan.id, [
            SimulationScenario("a", params),
            SimulationScenario("b", params),
        ])
        assert comparison.best_scenario == "a"

    def test_empty_and_duplicate_lists(self):
        with pytest.raises(InvalidSimulationParameters):
            self.engine.compare_scenarios(self.loan.id, [])
        with pytest.raises(InvalidSimulationParameters, match="unique"):
            self.engine.compare_scenarios(self.loan.id, [
                SimulationScenario("a", SimulationParameters()),
                SimulationScenario("a", SimulationParameters(new_term=24)),
            ])
