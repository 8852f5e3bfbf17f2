"""
Loan Engine

Deterministic loan amortization schedules with installment tracking, partial
early repayment and what-if simulation. All money math uses Decimal.
"""

__version__ = "1.0.0"
