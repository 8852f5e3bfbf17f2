"""
Test suite for inverse calculators
"""

import pytest
from decimal import Decimal

from loan_engine.currency import Money
from loan_engine.schedule import LoanType
from loan_engine.inverse import rate_from_payment, term_from_payment
from loan_engine.exceptions import InvalidLoanTerms


class TestRateFromPayment:
    """Test solving the annual rate"""

    def test_annuity(self):
        rate = rate_from_payment(Money(Decimal('10000')), Money(Decimal('860.66')), 12)
        assert rate == Decimal('6.00')

    def test_annuity_long_term(self):
        # 200 000 over 30 years at 4.5% pays 1013.37 a month
        rate = rate_from_payment(Money(Decimal('200000')), Money(Decimal('1013.37')), 360)
        assert rate == Decimal('4.50')

    def test_zero_interest(self):
        assert rate_from_payment(Money(Decimal('1200')), Money(Decimal('100')), 12) == Decimal('0.00')

    def test_monthly_fees_deducted(self):
        rate = rate_from_payment(
            Money(Decimal('10000')), Money(Decimal('870.66')), 12,
            fee_monthly=Money(Decimal('7.50')), insurance_monthly=Money(Decimal('2.50'))
        )
        assert rate == Decimal('6.00')

    def test_fixed_principal_uses_average_installment(self):
        rate = rate_from_payment(
            Money(Decimal('10000')), Money(Decimal('860.42')), 12, LoanType.FIXED_PRINCIPAL
        )
        assert rate == Decimal('6.00')

    def test_interest_only(self):
        rate = rate_from_payment(Money(Decimal('10000')), Money(Decimal('50')), 12, "interest_only")
        assert rate == Decimal('6.00')

    def test_payment_too_low(self):
        with pytest.raises(InvalidLoanTerms, match="too low"):
            rate_from_payment(Money(Decimal('10000')), Money(Decimal('800')), 12)

    def test_payment_below_fees(self):
        with pytest.raises(InvalidLoanTerms, match="fees"):
            rate_from_payment(Money(Decimal('10000')), Money(Decimal('5')), 12,
                              fee_monthly=Money(Decimal('5')))

    def test_invalid_term(self):
        with pytest.raises(InvalidLoanTerms):
            rate_from_payment(Money(Decimal('10000')), Money(Decimal('900')), 0)


class TestTermFromPayment:
    """Test solving the number of months"""

    def test_annuity_exact_payment(self):
        assert term_from_payment(Money(Decimal('10000')), Decimal('6'), Money(Decimal('860.66'))) == 12

    def test_annuity_rounds_up(self):
        assert term_from_payment(Money(Decimal('10000')), Decimal('6'), Money(Decimal('1000'))) == 11

    def test_zero_rate(self):
        assert term_from_payment(Money(Decimal('10000')), Decimal('0'), Money(Decimal('1000'))) == 10

    def test_fixed_principal_first_installment(self):
        term = term_from_payment(
            Money(Decimal('10000')), Decimal('6'), Money(Decimal('883.33')), LoanType.FIXED_PRINCIPAL
        )
        assert term == 12

    def test_interest_only_has_no_term(self):
        with pytest.raises(InvalidLoanTerms, match="interest-only"):
            term_from_payment(Money(Decimal('10000')), Decimal('6'), Money(Decimal('100')),
                              LoanType.INTEREST_ONLY)

    def test_payment_only_covers_interest(self):
        with pytest.raises(InvalidLoanTerms, match="ever repay"):
            term_from_payment(Money(Decimal('10000')), Decimal('6'), Money(Decimal('50')))

    def test_term_above_maximum(self):
        with pytest.raises(InvalidLoanTerms, match="maximum term"):
            term_from_payment(Money(Decimal('10000')), Decimal('0'), Money(Decimal('10')))

    def test_negative_rate(self):
        with pytest.raises(InvalidLoanTerms):
            term_from_payment(Money(Decimal('10000')), Decimal('-1'), Money(Decimal('1000')))
