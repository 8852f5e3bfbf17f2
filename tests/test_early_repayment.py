"""
Test suite for early repayment

Tests anchor selection, both recalculation policies, the penalty and the
persisted schedule after a confirmed repayment.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.currency import Money, Currency, sum_money
from loan_engine.storage import InMemoryStorage
from loan_engine.schedule import LoanTerms, LoanType
from loan_engine.loans import LoanManager, LoanStatus
from loan_engine.early_repayment import EarlyRepaymentProcessor, RepaymentPolicy, parse_policy
from loan_engine.exceptions import InvalidRepaymentAmount, ConcurrentModification


def make_terms(**overrides):
    values = dict(
        principal=Money(Decimal('10000.00'), Currency.EUR),
        annual_rate_percent=Decimal('6'),
        term_months=12,
        loan_type=LoanType.ANNUITY,
        start_date=date(2024, 1, 15)
    )
    values.update(overrides)
    return LoanTerms(**values)


class EarlyRepaymentTestCase:
    """Shared setup: one loan, one processor"""

    terms_overrides = {}
    penalty_pct = Decimal('0')

    def setup_method(self):
        self.loan_manager = LoanManager(InMemoryStorage())
        self.processor = EarlyRepaymentProcessor(self.loan_manager)
        self.loan = self.loan_manager.create_loan(
            make_terms(**self.terms_overrides), "Test Bank",
            early_repayment_penalty_pct=self.penalty_pct
        )


class TestPolicies(EarlyRepaymentTestCase):
    """Test policy parsing and the default"""

    def test_default_policy_is_reduce_term(self):
        assert self.processor.policy == RepaymentPolicy.REDUCE_TERM

    def test_parse_policy(self):
        assert parse_policy("reduce_payment") == RepaymentPolicy.REDUCE_PAYMENT
        assert parse_policy(" REDUCE_TERM ") == RepaymentPolicy.REDUCE_TERM
        with pytest.raises(ValueError):
            parse_policy("skip_installment")


class TestAnchor(EarlyRepaymentTestCase):
    """Test which installment a repayment attaches to"""

    def test_anchor_is_next_due_installment(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('1000')), date(2024, 3, 1))
        assert preview.anchor_installment_no == 2
        assert preview.remaining_principal == Money(Decimal('8374.63'))

    def test_payment_on_due_date_anchors_that_installment(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('1000')), date(2024, 2, 15))
        assert preview.anchor_installment_no == 1
        assert preview.remaining_principal == Money(Decimal('9189.34'))

    def test_anchor_never_before_paid_rows(self):
        self.loan_manager.mark_paid_until(self.loan.id, date(2024, 4, 15))
        preview = self.processor.preview(self.loan.id, Money(Decimal('1000')), date(2024, 2, 1))
        assert preview.anchor_installment_no == 3

    def test_past_maturity_has_nothing_to_repay(self):
        with pytest.raises(InvalidRepaymentAmount, match="exceeds remaining principal"):
            self.processor.preview(self.loan.id, Money(Decimal('1')), date(2026, 1, 1))


class TestValidation(EarlyRepaymentTestCase):
    """Test rejected amounts"""

    def test_non_positive_amount(self):
        with pytest.raises(InvalidRepaymentAmount, match="positive"):
            self.processor.preview(self.loan.id, Money(Decimal('0')), date(2024, 2, 1))
        with pytest.raises(InvalidRepaymentAmount):
            self.processor.preview(self.loan.id, Money(Decimal('-5')), date(2024, 2, 1))

    def test_amount_above_balance(self):
        with pytest.raises(InvalidRepaymentAmount):
            self.processor.preview(self.loan.id, Money(Decimal('9189.35')), date(2024, 2, 1))

    def test_currency_mismatch(self):
        with pytest.raises(InvalidRepaymentAmount, match="EUR"):
            self.processor.preview(self.loan.id, Money(Decimal('100'), Currency.USD), date(2024, 2, 1))

    def test_rejected_confirm_changes_nothing(self):
        with pytest.raises(InvalidRepaymentAmount):
            self.processor.confirm(self.loan.id, Money(Decimal('0')), date(2024, 2, 1))
        assert self.loan_manager.get_schedule_revision(self.loan.id) == 1


class TestAnnuityRepayment(EarlyRepaymentTestCase):
    """Test annuity loans under both policies"""

    def test_reduce_term_keeps_payment(self):
        preview = self.processor.preview(
            self.loan.id, Money(Decimal('2000')), date(2024, 2, 1), RepaymentPolicy.REDUCE_TERM
        )

        assert preview.new_remaining_principal == Money(Decimal('7189.34'))
        assert preview.original_installment_count == 11
        assert preview.new_installment_count == 9
        assert preview.new_monthly_payment == Money(Decimal('860.66'))
        assert preview.saved_interest.is_positive()
        assert preview.net_saving == preview.saved_interest

        tail = preview.schedule
        assert sum_money((entry.principal_due for entry in tail), Currency.EUR) == Money(Decimal('7189.34'))
        assert tail[-1].principal_balance_after.is_zero()
        assert tail[-1].installment_payment <= Money(Decimal('860.66'))

    def test_reduce_payment_keeps_term(self):
        preview = self.processor.preview(
            self.loan.id, Money(Decimal('2000')), date(2024, 2, 1), "reduce_payment"
        )

        assert preview.new_installment_count == 11
        assert preview.new_monthly_payment < Money(Decimal('860.66'))
        assert preview.saved_interest.is_positive()
        assert preview.schedule[-1].principal_balance_after.is_zero()

    def test_reduce_term_saves_more_interest(self):
        term = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1), "reduce_term")
        payment = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1), "reduce_payment")
        assert term.saved_interest > payment.saved_interest

    def test_tail_stays_on_calendar(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1))
        assert preview.schedule[0].installment_no == 2
        assert preview.schedule[0].due_date == date(2024, 3, 15)
        assert [entry.installment_no for entry in preview.schedule] == list(range(2, 11))

    def test_preview_is_pure(self):
        before = self.loan_manager.get_schedule(self.loan.id)
        self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1))
        assert self.loan_manager.get_schedule(self.loan.id) == before
        assert self.loan_manager.get_schedule_revision(self.loan.id) == 1


class TestConfirm(EarlyRepaymentTestCase):
    """Test persisted early repayments"""

    def test_confirm_persists_schedule(self):
        result = self.processor.confirm(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1))

        schedule = self.loan_manager.get_schedule(self.loan.id)
        assert len(schedule) == 1 + result.new_installment_count
        assert schedule[0].prepaid_principal == Money(Decimal('2000.00'))
        assert schedule[0].principal_balance_after == Money(Decimal('7189.34'))
        assert schedule[1:] == result.schedule

        total_principal = sum_money((entry.principal_due for entry in schedule), Currency.EUR)
        prepaid = sum_money((entry.prepaid_principal for entry in schedule), Currency.EUR)
        assert total_principal + prepaid == Money(Decimal('10000.00'))

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.early_repaid == Money(Decimal('2000.00'))
        assert loan.current_balance == Money(Decimal('8000.00'))
        assert loan.schedule_revision == 2

    def test_second_repayment_on_same_anchor(self):
        self.processor.confirm(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1))
        preview = self.processor.confirm(self.loan.id, Money(Decimal('1000')), date(2024, 2, 1))

        assert preview.remaining_principal == Money(Decimal('7189.34'))
        schedule = self.loan_manager.get_schedule(self.loan.id)
        assert schedule[0].prepaid_principal == Money(Decimal('3000.00'))
        assert self.loan_manager.get_loan(self.loan.id).early_repaid == Money(Decimal('3000.00'))

    def test_full_repayment_pays_off_loan(self):
        result = self.processor.confirm(self.loan.id, Money(Decimal('9189.34')), date(2024, 2, 1))

        assert result.new_installment_count == 0
        assert result.new_monthly_payment is None
        assert len(self.loan_manager.get_schedule(self.loan.id)) == 1

        self.loan_manager.mark_installment_paid(self.loan.id, 1, date(2024, 2, 15))
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.current_balance.is_zero()
        assert loan.status == LoanStatus.PAID_OFF

    def test_stale_preview_rejected(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1))
        self.loan_manager.mark_installment_paid(self.loan.id, 1, date(2024, 2, 15))

        with pytest.raises(ConcurrentModification):
            self.processor.confirm(
                self.loan.id, Money(Decimal('2000')), date(2024, 2, 1),
                expected_revision=preview.revision
            )
        assert self.loan_manager.get_loan(self.loan.id).early_repaid.is_zero()


class TestPenalty(EarlyRepaymentTestCase):
    """Test the early repayment penalty"""

    penalty_pct = Decimal('1.5')

    def test_penalty_reduces_net_saving(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1))
        assert preview.penalty_amount == Money(Decimal('30.00'))
        assert preview.net_saving == preview.saved_interest - Money(Decimal('30.00'))


class TestFixedPrincipalRepayment(EarlyRepaymentTestCase):
    """Test fixed principal loans"""

    terms_overrides = {'loan_type': LoanType.FIXED_PRINCIPAL}

    def test_reduce_term_keeps_portion(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1), "reduce_term")

        assert preview.new_remaining_principal == Money(Decimal('7166.67'))
        assert preview.new_installment_count == 9
        assert all(entry.principal_due == Money(Decimal('833.33')) for entry in preview.schedule[:-1])
        assert preview.schedule[-1].principal_due == Money(Decimal('500.03'))

    def test_repayment_at_half_balance(self):
        """2000.00 against a remaining 5000.00 leaves 3000.00"""
        loan = self.loan_manager.create_loan(make_terms(
            loan_type=LoanType.FIXED_PRINCIPAL, term_months=10
        ), "Test Bank")
        self.loan_manager.mark_paid_until(loan.id, date(2024, 5, 15))

        preview = self.processor.preview(loan.id, Money(Decimal('2000.00')), date(2024, 6, 15))

        assert preview.anchor_installment_no == 5
        assert preview.remaining_principal == Money(Decimal('5000.00'))
        assert preview.new_remaining_principal == Money(Decimal('3000.00'))
        assert preview.saved_interest.is_positive()
        assert preview.original_installment_count == 5
        assert preview.new_installment_count == 3

    def test_reduce_payment_lowers_portion(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('2000')), date(2024, 2, 1), "reduce_payment")

        assert preview.new_installment_count == 11
        assert preview.schedule[0].principal_due == Money(Decimal('651.51'))
        assert preview.schedule[-1].principal_balance_after.is_zero()


class TestInterestOnlyRepayment(EarlyRepaymentTestCase):
    """Interest-only tails keep their length and shrink the balloon"""

    terms_overrides = {'loan_type': LoanType.INTEREST_ONLY}

    def test_balloon_shrinks(self):
        preview = self.processor.preview(self.loan.id, Money(Decimal('4000')), date(2024, 2, 1), "reduce_term")

        assert preview.new_installment_count == 11
        assert preview.new_monthly_payment == Money(Decimal('30.00'))
        assert preview.schedule[-1].principal_due == Money(Decimal('6000.00'))
        assert preview.saved_interest == Money(Decimal('220.00'))
