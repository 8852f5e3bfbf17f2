"""
Installment Status Lifecycle Module

Derives installment status and loan-level balances from a schedule and an
explicit "today". Nothing here reads the system clock.
"""

from datetime import date
from dataclasses import dataclass, replace
from typing import List, Optional

from .currency import Money, Currency, sum_money
from .schedule import Installment, InstallmentStatus


def derive_status(installment: Installment, today: date) -> InstallmentStatus:
    """
    Effective status of an installment on ``today``

    Paid is terminal. An unpaid installment is overdue strictly after its due
    date; on the due date itself it is still pending.
    """
    if installment.status == InstallmentStatus.PAID:
        return InstallmentStatus.PAID
    if installment.due_date < today:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def classify_schedule(schedule: List[Installment], today: date) -> List[Installment]:
    """Copy of the schedule with every installment's status derived for ``today``"""
    classified = []
    for installment in schedule:
        status = derive_status(installment, today)
        if status != installment.status:
            installment = replace(installment, status=status)
        classified.append(installment)
    return classified


@dataclass(frozen=True)
class LoanBalances:
    """Balance snapshot of a loan on a given day"""
    as_of: date
    current_balance: Money
    paid_principal: Money
    paid_amount: Money
    total_interest: Money
    remaining_amount: Money
    overdue_amount: Money
    paid_count: int
    overdue_count: int
    next_installment: Optional[Installment]


def current_balance(principal: Money, schedule: List[Installment]) -> Money:
    """
    Outstanding principal of a loan

    The principal_balance_after of the highest-numbered paid installment, or
    the full principal when nothing is paid. Early repayments attached to
    unpaid rows after that installment are subtracted as well; a paid anchor
    row already carries the reduced balance.
    """
    paid = [entry for entry in schedule if entry.is_paid]
    if paid:
        latest = max(paid, key=lambda entry: entry.installment_no)
        balance = latest.principal_balance_after
        later = [entry for entry in schedule if entry.installment_no > latest.installment_no]
    else:
        balance = principal
        later = schedule
    return balance - sum_money((entry.prepaid_principal for entry in later), principal.currency)


def summarize_loan(principal: Money, schedule: List[Installment], today: date) -> LoanBalances:
    """Loan balances derived from its schedule"""
    currency: Currency = principal.currency
    classified = classify_schedule(schedule, today)

    paid = [entry for entry in classified if entry.status == InstallmentStatus.PAID]
    unpaid = [entry for entry in classified if entry.status != InstallmentStatus.PAID]
    overdue = [entry for entry in unpaid if entry.status == InstallmentStatus.OVERDUE]

    paid_principal = sum_money((entry.principal_due for entry in paid), currency)

    next_installment = None
    if unpaid:
        next_installment = min(unpaid, key=lambda entry: (entry.due_date, entry.installment_no))

    return LoanBalances(
        as_of=today,
        current_balance=current_balance(principal, classified),
        paid_principal=paid_principal,
        paid_amount=sum_money((entry.total_due for entry in paid), currency),
        total_interest=sum_money((entry.interest_due for entry in classified), currency),
        remaining_amount=sum_money((entry.total_due for entry in unpaid), currency),
        overdue_amount=sum_money((entry.total_due for entry in overdue), currency),
        paid_count=len(paid),
        overdue_count=len(overdue),
        next_installment=next_installment
    )


def mark_paid(installment: Installment, paid_on: date) -> Installment:
    """Paid copy of an installment; paying a paid installment is a no-op"""
    if installment.status == InstallmentStatus.PAID:
        return installment
    return replace(installment, status=InstallmentStatus.PAID, paid_date=paid_on)


def mark_paid_until(schedule: List[Installment], as_of: date) -> List[Installment]:
    """Mark every installment due on or before ``as_of`` as paid"""
    return [
        mark_paid(entry, as_of) if entry.due_date <= as_of else entry
        for entry in schedule
    ]
