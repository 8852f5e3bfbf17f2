"""
Test suite for installment status lifecycle

Statuses are derived from an explicit "today"; paid is terminal.
"""

from decimal import Decimal
from datetime import date
from dataclasses import replace

from loan_engine.currency import Money, Currency
from loan_engine.schedule import LoanTerms, LoanType, InstallmentStatus, generate_schedule
from loan_engine.lifecycle import (
    derive_status, classify_schedule, summarize_loan, mark_paid, mark_paid_until,
    current_balance
)


class TestStatusDerivation:
    """Test derived installment status"""

    def setup_method(self):
        self.terms = LoanTerms(
            principal=Money(Decimal('10000.00'), Currency.EUR),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            loan_type=LoanType.ANNUITY,
            start_date=date(2024, 1, 15)
        )
        self.schedule = generate_schedule(self.terms, loan_id="loan-1")

    def test_pending_before_and_on_due_date(self):
        first = self.schedule[0]
        assert derive_status(first, date(2024, 2, 1)) == InstallmentStatus.PENDING
        assert derive_status(first, date(2024, 2, 15)) == InstallmentStatus.PENDING

    def test_overdue_after_due_date(self):
        first = self.schedule[0]
        assert derive_status(first, date(2024, 2, 16)) == InstallmentStatus.OVERDUE

    def test_paid_is_terminal(self):
        paid = mark_paid(self.schedule[0], date(2024, 2, 10))
        assert derive_status(paid, date(2030, 1, 1)) == InstallmentStatus.PAID

    def test_classify_does_not_mutate(self):
        classified = classify_schedule(self.schedule, date(2024, 4, 1))
        assert [entry.status for entry in classified[:3]] == [
            InstallmentStatus.OVERDUE, InstallmentStatus.OVERDUE, InstallmentStatus.PENDING
        ]
        assert all(entry.status == InstallmentStatus.PENDING for entry in self.schedule)


class TestMarkPaid:
    """Test paying installments"""

    def setup_method(self):
        terms = LoanTerms(
            principal=Money(Decimal('10000.00'), Currency.EUR),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            loan_type=LoanType.ANNUITY,
            start_date=date(2024, 1, 15)
        )
        self.schedule = generate_schedule(terms)

    def test_mark_paid_sets_date(self):
        paid = mark_paid(self.schedule[0], date(2024, 2, 14))
        assert paid.status == InstallmentStatus.PAID
        assert paid.paid_date == date(2024, 2, 14)
        assert paid.total_due == self.schedule[0].total_due

    def test_mark_paid_twice_is_noop(self):
        paid = mark_paid(self.schedule[0], date(2024, 2, 14))
        again = mark_paid(paid, date(2024, 3, 1))
        assert again is paid
        assert again.paid_date == date(2024, 2, 14)

    def test_mark_paid_until(self):
        updated = mark_paid_until(self.schedule, date(2024, 4, 15))
        assert [entry.is_paid for entry in updated[:4]] == [True, True, True, False]
        assert updated[0].paid_date == date(2024, 4, 15)


class TestLoanBalances:
    """Test loan level balances"""

    def setup_method(self):
        self.terms = LoanTerms(
            principal=Money(Decimal('10000.00'), Currency.EUR),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            loan_type=LoanType.ANNUITY,
            start_date=date(2024, 1, 15)
        )
        self.schedule = generate_schedule(self.terms)

    def test_fresh_loan(self):
        balances = summarize_loan(self.terms.principal, self.schedule, date(2024, 1, 20))
        assert balances.current_balance == Money(Decimal('10000.00'))
        assert balances.paid_count == 0
        assert balances.overdue_count == 0
        assert balances.paid_amount.is_zero()
        assert balances.next_installment.installment_no == 1

    def test_balance_matches_last_paid_row(self):
        schedule = mark_paid_until(self.schedule, date(2024, 3, 15))
        balances = summarize_loan(self.terms.principal, schedule, date(2024, 3, 20))

        assert balances.paid_count == 2
        assert balances.current_balance == schedule[1].principal_balance_after
        assert balances.current_balance == Money(Decimal('8374.63'))
        assert balances.paid_amount == Money(Decimal('1721.32'))
        assert balances.next_installment.installment_no == 3

    def test_overdue_amounts(self):
        balances = summarize_loan(self.terms.principal, self.schedule, date(2024, 3, 16))
        assert balances.overdue_count == 2
        assert balances.overdue_amount == Money(Decimal('1721.32'))
        # Next installment is the oldest unpaid one
        assert balances.next_installment.installment_no == 1

    def test_fully_paid(self):
        schedule = mark_paid_until(self.schedule, date(2025, 1, 15))
        balances = summarize_loan(self.terms.principal, schedule, date(2025, 2, 1))
        assert balances.current_balance.is_zero()
        assert balances.remaining_amount.is_zero()
        assert balances.next_installment is None

    def test_balance_after_out_of_order_payment(self):
        """Paying installment 3 alone leaves its balance outstanding"""
        schedule = list(self.schedule)
        schedule[2] = mark_paid(schedule[2], date(2024, 4, 15))
        balances = summarize_loan(self.terms.principal, schedule, date(2024, 4, 20))

        assert balances.paid_count == 1
        assert balances.current_balance == Money(Decimal('7555.84'))
        assert current_balance(self.terms.principal, schedule) == Money(Decimal('7555.84'))

    def test_balance_with_early_repayment_on_unpaid_row(self):
        schedule = list(self.schedule)
        schedule[0] = mark_paid(schedule[0], date(2024, 2, 15))
        schedule[1] = replace(schedule[1], prepaid_principal=Money(Decimal('2000.00')))

        assert current_balance(self.terms.principal, schedule) == Money(Decimal('7189.34'))

    def test_balance_with_early_repayment_and_nothing_paid(self):
        schedule = list(self.schedule)
        schedule[0] = replace(schedule[0], prepaid_principal=Money(Decimal('2000.00')))

        assert current_balance(self.terms.principal, schedule) == Money(Decimal('8000.00'))
