"""
Early Repayment Module

Applies a partial early repayment to a loan. The repayment attaches to the
installment period containing the payment date (the anchor); the anchor row
stays and every row after it is regenerated from the reduced balance.

Two policies decide how the tail shrinks:

* reduce_term keeps the periodic payment (annuity) or principal portion
  (fixed principal) and shortens the tail
* reduce_payment keeps the tail length and recomputes the payment

Interest-only tails always keep their length; the balloon shrinks instead.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, replace
from typing import List, Optional, Union
from enum import Enum

from .currency import Money, sum_money
from .day_count import HUNDRED
from .schedule import (
    LoanTerms, LoanType, Installment, AnnuityStrategy, FixedPrincipalStrategy,
    strategy_for
)
from .loans import Loan, LoanManager
from .exceptions import InvalidRepaymentAmount
from .config import get_config
from .logging_config import get_logger, log_action


logger = get_logger("loan_engine.early_repayment")


class RepaymentPolicy(Enum):
    """How an early repayment changes the remaining schedule"""
    REDUCE_TERM = "reduce_term"
    REDUCE_PAYMENT = "reduce_payment"


def parse_policy(value: Union[str, RepaymentPolicy]) -> RepaymentPolicy:
    if isinstance(value, RepaymentPolicy):
        return value
    try:
        return RepaymentPolicy(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported early repayment policy: {value}")


@dataclass(frozen=True)
class RepaymentPreview:
    """Outcome of an early repayment; ``schedule`` is the new tail after the anchor"""
    loan_id: str
    amount: Money
    payment_date: date
    policy: RepaymentPolicy
    anchor_installment_no: int
    remaining_principal: Money
    new_remaining_principal: Money
    saved_interest: Money
    penalty_amount: Money
    net_saving: Money
    original_installment_count: int
    new_installment_count: int
    new_monthly_payment: Optional[Money]
    schedule: List[Installment]
    revision: int


class EarlyRepaymentProcessor:
    """
    Previews and confirms partial early repayments
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        policy: Optional[Union[str, RepaymentPolicy]] = None
    ):
        self.loan_manager = loan_manager
        self.policy = parse_policy(policy or get_config().early_repayment_policy)

    def preview(
        self,
        loan_id: str,
        amount: Money,
        payment_date: date,
        policy: Optional[Union[str, RepaymentPolicy]] = None
    ) -> RepaymentPreview:
        """
        Compute the effect of an early repayment without storing anything

        Args:
            loan_id: Loan ID
            amount: Principal paid early
            payment_date: Date of the payment
            policy: Overrides the processor's default policy

        Returns:
            RepaymentPreview with the new tail and the interest saved

        Raises:
            InvalidRepaymentAmount: If amount is not positive or exceeds the
                principal outstanding at the anchor
        """
        loan = self.loan_manager.get_loan(loan_id)
        schedule, revision = self.loan_manager.load_schedule(loan_id)
        return self._plan(loan, schedule, revision, amount, payment_date, policy)

    def confirm(
        self,
        loan_id: str,
        amount: Money,
        payment_date: date,
        policy: Optional[Union[str, RepaymentPolicy]] = None,
        expected_revision: Optional[int] = None
    ) -> RepaymentPreview:
        """
        Apply an early repayment and persist the recomputed schedule

        Recomputes under the loan's lock so the stored result always matches
        the schedule it was computed from. With ``expected_revision`` set (the
        revision a preview was based on) the write is rejected with
        ConcurrentModification if the schedule changed in between.
        """
        manager = self.loan_manager

        with manager.loan_lock(loan_id):
            loan = manager.get_loan(loan_id)
            schedule, revision = manager.load_schedule(loan_id)
            result = self._plan(loan, schedule, revision, amount, payment_date, policy)

            anchor_index = self._position(schedule, result.anchor_installment_no)
            anchor = schedule[anchor_index]
            new_anchor = replace(
                anchor,
                prepaid_principal=anchor.prepaid_principal + amount,
                principal_balance_after=result.new_remaining_principal
            )
            new_schedule = schedule[:anchor_index] + [new_anchor] + result.schedule

            loan.early_repaid = loan.early_repaid + amount
            manager.commit_schedule(
                loan, new_schedule,
                expected_revision if expected_revision is not None else revision,
                action="early_repayment_confirmed",
                extra={
                    "amount": amount.to_decimal_string(),
                    "payment_date": payment_date.isoformat(),
                    "policy": result.policy.value,
                    "anchor_installment_no": result.anchor_installment_no,
                    "saved_interest": result.saved_interest.to_decimal_string(),
                    "penalty": result.penalty_amount.to_decimal_string()
                }
            )

        return result

    def _plan(
        self,
        loan: Loan,
        schedule: List[Installment],
        revision: int,
        amount: Money,
        payment_date: date,
        policy: Optional[Union[str, RepaymentPolicy]]
    ) -> RepaymentPreview:
        policy = parse_policy(policy) if policy is not None else self.policy
        currency = loan.currency

        if not isinstance(amount, Money) or amount.currency != currency:
            raise InvalidRepaymentAmount(f"Early repayment must be a {currency.code} amount")
        if not amount.is_positive():
            raise InvalidRepaymentAmount("Early repayment amount must be positive")

        anchor_index = self._anchor_index(schedule, payment_date)
        anchor = schedule[anchor_index]
        remaining = anchor.principal_balance_after

        if amount > remaining:
            raise InvalidRepaymentAmount(
                f"Early repayment {amount.to_string()} exceeds remaining principal "
                f"{remaining.to_string()} after installment {anchor.installment_no}"
            )

        tail = schedule[anchor_index + 1:]
        new_remaining = remaining - amount
        new_tail = self._rebuild_tail(loan, anchor, tail, new_remaining, policy)

        original_interest = sum_money((entry.interest_due for entry in tail), currency)
        new_interest = sum_money((entry.interest_due for entry in new_tail), currency)
        saved_interest = original_interest - new_interest
        penalty = Money(amount.amount * loan.early_repayment_penalty_pct / HUNDRED, currency)

        preview = RepaymentPreview(
            loan_id=loan.id,
            amount=amount,
            payment_date=payment_date,
            policy=policy,
            anchor_installment_no=anchor.installment_no,
            remaining_principal=remaining,
            new_remaining_principal=new_remaining,
            saved_interest=saved_interest,
            penalty_amount=penalty,
            net_saving=saved_interest - penalty,
            original_installment_count=len(tail),
            new_installment_count=len(new_tail),
            new_monthly_payment=new_tail[0].total_due if new_tail else None,
            schedule=new_tail,
            revision=revision
        )

        log_action(
            logger, "debug", "Early repayment computed",
            action="early_repayment_previewed", loan_id=loan.id,
            extra={
                "amount": amount.to_decimal_string(),
                "policy": policy.value,
                "anchor_installment_no": anchor.installment_no,
                "new_installment_count": len(new_tail)
            }
        )
        return preview

    def _anchor_index(self, schedule: List[Installment], payment_date: date) -> int:
        """
        Index of the installment the repayment attaches to

        The first installment due on or after the payment date, or the last
        one when the date is past maturity. Never earlier than the last paid
        installment, since settled rows are not rewritten.
        """
        anchor_index = len(schedule) - 1
        for index, entry in enumerate(schedule):
            if entry.due_date >= payment_date:
                anchor_index = index
                break

        paid_indexes = [index for index, entry in enumerate(schedule) if entry.is_paid]
        if paid_indexes:
            anchor_index = max(anchor_index, paid_indexes[-1])
        return anchor_index

    def _rebuild_tail(
        self,
        loan: Loan,
        anchor: Installment,
        tail: List[Installment],
        new_remaining: Money,
        policy: RepaymentPolicy
    ) -> List[Installment]:
        if not tail or new_remaining.is_zero():
            return []

        terms = loan.terms
        tail_terms = self._tail_terms(terms, len(tail), new_remaining)

        if policy == RepaymentPolicy.REDUCE_TERM and terms.loan_type == LoanType.ANNUITY:
            strategy = AnnuityStrategy(
                tail_terms, fixed_amount=tail[0].installment_payment, open_term=True
            )
        elif policy == RepaymentPolicy.REDUCE_TERM and terms.loan_type == LoanType.FIXED_PRINCIPAL:
            strategy = FixedPrincipalStrategy(
                tail_terms, fixed_amount=tail[0].principal_due, open_term=True
            )
        else:
            strategy = strategy_for(tail_terms)

        return self.loan_manager.generator.run(
            strategy, loan_id=loan.id, start_number=anchor.installment_no + 1
        )

    def _tail_terms(
        self,
        terms: LoanTerms,
        periods: int,
        new_remaining: Money
    ) -> LoanTerms:
        changes = {
            'principal': new_remaining,
            'term_months': periods,
            'fee_setup': Money.zero(terms.currency)
        }
        if terms.loan_type == LoanType.INTEREST_ONLY:
            # Principal the balloon was never meant to cover stays outstanding
            residual = terms.unpaid_residual
            changes['balloon_amount'] = max(new_remaining - residual, Money.zero(terms.currency))
        return terms.with_changes(**changes)

    @staticmethod
    def _position(schedule: List[Installment], installment_no: int) -> int:
        for index, entry in enumerate(schedule):
            if entry.installment_no == installment_no:
                return index
        raise ValueError(f"Installment {installment_no} is not in the schedule")
