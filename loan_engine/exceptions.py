"""
Loan Engine Exceptions

Error hierarchy for schedule generation, early repayment and simulation.
Every engine error is a deterministic failure of the call that raised it.
"""


class LoanEngineError(Exception):
    """Base exception for all loan engine errors"""


class InvalidLoanTerms(LoanEngineError, ValueError):
    """Raised when loan terms are rejected before any schedule is generated"""


class InvalidRepaymentAmount(LoanEngineError, ValueError):
    """Raised when an early repayment amount is not positive or exceeds the balance"""


class InvalidSimulationParameters(LoanEngineError, ValueError):
    """Raised when simulation overrides or scenario lists are unusable"""


class LoanNotFound(LoanEngineError):
    """Raised when a loan id does not exist in storage"""


class ScheduleNotFound(LoanEngineError):
    """Raised when a loan has no stored schedule or lacks the requested installment"""


class ConcurrentModification(LoanEngineError):
    """Raised when a write was based on a schedule revision that is no longer current"""

    def __init__(self, loan_id: str, expected_revision: int, actual_revision: int):
        self.loan_id = loan_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        super().__init__(
            f"Schedule of loan {loan_id} changed: expected revision "
            f"{expected_revision}, found {actual_revision}"
        )
