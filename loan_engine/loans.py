"""
Loan Module

Loan records, schedule persistence and payment status updates.

A loan's whole schedule is stored as a single record together with a
revision number. Every write takes the loan's lock, opens a storage
transaction, compares the stored revision with the one the caller expects and
only then replaces the schedule and bumps the revision. Readers therefore see
either the schedule before a write or the one after it.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from contextlib import contextmanager
from enum import Enum
import threading
import uuid

from .currency import Money, Currency, sum_money
from .storage import StorageInterface, StorageRecord
from .schedule import (
    LoanTerms, Installment, InstallmentStatus, ScheduleGenerator
)
from .lifecycle import (
    LoanBalances, summarize_loan, classify_schedule, mark_paid, current_balance,
    mark_paid_until as mark_schedule_paid_until
)
from .exceptions import (
    InvalidLoanTerms, LoanNotFound, ScheduleNotFound, ConcurrentModification
)
from .logging_config import get_logger, log_action


logger = get_logger("loan_engine.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # Repayment in progress
    PAID_OFF = "paid_off"      # Every installment paid, no principal left
    DEFAULTED = "defaulted"    # Set by the collaborator tracking defaults


@dataclass
class Loan(StorageRecord):
    """Loan with its terms and running totals"""
    lender_name: str
    terms: LoanTerms
    status: LoanStatus = LoanStatus.ACTIVE
    asset_id: Optional[str] = None

    # Running totals, derived from the schedule on every write
    current_balance: Money = None
    principal_paid: Money = None
    interest_paid: Money = None
    total_paid: Money = None
    early_repaid: Money = None

    early_repayment_penalty_pct: Decimal = Decimal('0')
    schedule_revision: int = 0

    def __post_init__(self):
        zero_amount = Money.zero(self.terms.currency)
        if self.current_balance is None:
            self.current_balance = self.terms.principal
        if self.principal_paid is None:
            self.principal_paid = zero_amount
        if self.interest_paid is None:
            self.interest_paid = zero_amount
        if self.total_paid is None:
            self.total_paid = zero_amount
        if self.early_repaid is None:
            self.early_repaid = zero_amount

        if not isinstance(self.early_repayment_penalty_pct, Decimal):
            self.early_repayment_penalty_pct = Decimal(str(self.early_repayment_penalty_pct))
        if not Decimal('0') <= self.early_repayment_penalty_pct <= Decimal('100'):
            raise InvalidLoanTerms("Early repayment penalty must be between 0 and 100 percent")

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def is_paid_off(self) -> bool:
        return self.status == LoanStatus.PAID_OFF


@dataclass(frozen=True)
class LoanView:
    """Read model for one loan as of a given day"""
    loan: Loan
    schedule: List[Installment]
    balances: LoanBalances
    revision: int

    @property
    def current_balance(self) -> Money:
        return self.balances.current_balance

    @property
    def next_installment(self) -> Optional[Installment]:
        return self.balances.next_installment

    @property
    def overdue_count(self) -> int:
        return self.balances.overdue_count


class LoanManager:
    """
    Manages loans and their persisted schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        generator: Optional[ScheduleGenerator] = None
    ):
        self.storage = storage
        self.generator = generator or ScheduleGenerator()

        self.loans_table = "loans"
        self.schedules_table = "loan_schedules"

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def loan_lock(self, loan_id: str):
        """Serialize writers of one loan; writers of different loans do not block each other"""
        with self._locks_guard:
            lock = self._locks.setdefault(loan_id, threading.Lock())
        with lock:
            yield

    def create_loan(
        self,
        terms: LoanTerms,
        lender_name: str,
        asset_id: Optional[str] = None,
        early_repayment_penalty_pct: Decimal = Decimal('0')
    ) -> Loan:
        """
        Create a loan and persist its generated schedule

        Args:
            terms: Validated loan terms
            lender_name: Name of the lending institution
            asset_id: Optional asset the loan finances
            early_repayment_penalty_pct: Percentage charged on early repayments

        Returns:
            Created Loan object
        """
        if not lender_name or not lender_name.strip():
            raise InvalidLoanTerms("Lender name is required")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lender_name=lender_name.strip(),
            terms=terms,
            asset_id=asset_id,
            early_repayment_penalty_pct=early_repayment_penalty_pct,
            schedule_revision=1
        )
        schedule = self.generator.generate(terms, loan_id=loan.id)

        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))
            self._save_schedule(loan.id, schedule, loan.schedule_revision, loan.currency)

        log_action(
            logger, "info", "Loan created",
            action="loan_created", loan_id=loan.id,
            extra={
                "lender_name": loan.lender_name,
                "loan_type": terms.loan_type.value,
                "principal": terms.principal.to_decimal_string(),
                "annual_rate_percent": str(terms.annual_rate_percent),
                "term_months": terms.term_months,
                "installments": len(schedule)
            }
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Load a loan, raising LoanNotFound if it does not exist"""
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return self._loan_from_dict(data)

    def list_loans(self) -> List[Loan]:
        return [self._loan_from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def delete_loan(self, loan_id: str) -> None:
        """Delete a loan together with its schedule"""
        with self.loan_lock(loan_id):
            with self.storage.atomic():
                if not self.storage.delete(self.loans_table, loan_id):
                    raise LoanNotFound(f"Loan {loan_id} not found")
                self.storage.delete(self.schedules_table, loan_id)

        log_action(logger, "info", "Loan deleted", action="loan_deleted", loan_id=loan_id)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Persisted schedule of a loan, ordered by installment number"""
        return self.load_schedule(loan_id)[0]

    def get_schedule_revision(self, loan_id: str) -> int:
        return self.load_schedule(loan_id)[1]

    def get_loan_view(self, loan_id: str, today: date) -> LoanView:
        """
        Loan, schedule with derived statuses and balances as of ``today``

        Raises:
            LoanNotFound: If the loan does not exist
            ScheduleNotFound: If the loan has no persisted schedule
        """
        loan = self.get_loan(loan_id)
        schedule, revision = self.load_schedule(loan_id)

        return LoanView(
            loan=loan,
            schedule=classify_schedule(schedule, today),
            balances=summarize_loan(loan.terms.principal, schedule, today),
            revision=revision
        )

    def update_terms(
        self,
        loan_id: str,
        terms: LoanTerms,
        expected_revision: Optional[int] = None
    ) -> List[Installment]:
        """
        Replace a loan's terms and regenerate its schedule

        Only allowed while nothing has been paid or prepaid, since the new
        schedule starts again from the full principal.
        """
        with self.loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            schedule, _ = self.load_schedule(loan_id)

            if any(entry.is_paid or entry.prepaid_principal.is_positive() for entry in schedule):
                raise InvalidLoanTerms("Cannot change terms of a loan with recorded payments")

            loan.terms = terms
            new_schedule = self.generator.generate(terms, loan_id=loan_id)
            self.commit_schedule(loan, new_schedule, expected_revision, action="schedule_regenerated")

        return new_schedule

    def mark_installment_paid(
        self,
        loan_id: str,
        installment_no: int,
        paid_on: date,
        expected_revision: Optional[int] = None
    ) -> Installment:
        """Mark one installment as paid; marking a paid installment again changes nothing"""
        with self.loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            schedule, _ = self.load_schedule(loan_id)

            position = next(
                (index for index, entry in enumerate(schedule) if entry.installment_no == installment_no),
                None
            )
            if position is None:
                raise ScheduleNotFound(f"Loan {loan_id} has no installment {installment_no}")

            updated = list(schedule)
            updated[position] = mark_paid(schedule[position], paid_on)
            self.commit_schedule(
                loan, updated, expected_revision,
                action="installment_paid", extra={"installment_no": installment_no}
            )

        return updated[position]

    def mark_paid_until(
        self,
        loan_id: str,
        as_of: date,
        expected_revision: Optional[int] = None
    ) -> int:
        """
        Mark every installment due on or before ``as_of`` as paid

        Returns:
            Number of installments newly marked as paid
        """
        with self.loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            schedule, _ = self.load_schedule(loan_id)

            updated = mark_schedule_paid_until(schedule, as_of)
            newly_paid = sum(1 for before, after in zip(schedule, updated) if before is not after)

            if newly_paid:
                self.commit_schedule(
                    loan, updated, expected_revision,
                    action="installments_paid", extra={"as_of": as_of.isoformat(), "count": newly_paid}
                )

        return newly_paid

    def commit_schedule(
        self,
        loan: Loan,
        schedule: List[Installment],
        expected_revision: Optional[int] = None,
        action: str = "schedule_replaced",
        extra: Optional[Dict] = None
    ) -> int:
        """
        Atomically replace a loan's schedule

        The caller must hold ``loan_lock(loan.id)``. Running totals and the
        loan status are recomputed from the new schedule.

        Returns:
            The new schedule revision

        Raises:
            ConcurrentModification: If the stored revision is not ``expected_revision``
        """
        with self.storage.atomic():
            _, stored_revision = self.load_schedule(loan.id)
            if expected_revision is not None and expected_revision != stored_revision:
                log_action(
                    logger, "warning", "Concurrent schedule modification rejected",
                    action="concurrency_conflict", loan_id=loan.id,
                    extra={"expected_revision": expected_revision, "actual_revision": stored_revision}
                )
                raise ConcurrentModification(loan.id, expected_revision, stored_revision)

            self._refresh_totals(loan, schedule)
            loan.schedule_revision = stored_revision + 1
            loan.updated_at = datetime.now(timezone.utc)

            self._save_schedule(loan.id, schedule, loan.schedule_revision, loan.currency)
            self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

        log_action(
            logger, "info", "Schedule updated",
            action=action, loan_id=loan.id,
            extra=dict(extra or {}, revision=loan.schedule_revision)
        )
        return loan.schedule_revision

    def _refresh_totals(self, loan: Loan, schedule: List[Installment]) -> None:
        currency = loan.currency
        paid = [entry for entry in schedule if entry.is_paid]

        loan.principal_paid = sum_money((entry.principal_due for entry in paid), currency)
        loan.interest_paid = sum_money((entry.interest_due for entry in paid), currency)
        loan.total_paid = sum_money((entry.total_due for entry in paid), currency)
        loan.current_balance = current_balance(loan.terms.principal, schedule)

        if len(paid) == len(schedule) and loan.current_balance.is_zero():
            loan.status = LoanStatus.PAID_OFF
        elif loan.status == LoanStatus.PAID_OFF:
            loan.status = LoanStatus.ACTIVE

    def load_schedule(self, loan_id: str) -> Tuple[List[Installment], int]:
        """Persisted schedule and its revision, read as one record"""
        data = self.storage.load(self.schedules_table, loan_id)
        if data is None:
            if not self.storage.exists(self.loans_table, loan_id):
                raise LoanNotFound(f"Loan {loan_id} not found")
            raise ScheduleNotFound(f"No schedule stored for loan {loan_id}")

        currency = Currency[data['currency']]
        schedule = [self._installment_from_dict(entry, loan_id, currency) for entry in data['installments']]
        schedule.sort(key=lambda entry: entry.installment_no)
        return schedule, data['revision']

    def _save_schedule(self, loan_id: str, schedule: List[Installment], revision: int,
                       currency: Currency) -> None:
        self.storage.save(self.schedules_table, loan_id, {
            'loan_id': loan_id,
            'revision': revision,
            'currency': currency.code,
            'installments': [self._installment_to_dict(entry) for entry in schedule]
        })

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = loan.to_dict()
        result['status'] = loan.status.value
        result['currency'] = loan.currency.code

        terms = loan.terms
        result['terms'] = {
            'principal': terms.principal.to_decimal_string(),
            'annual_rate_percent': str(terms.annual_rate_percent),
            'term_months': terms.term_months,
            'loan_type': terms.loan_type.value,
            'start_date': terms.start_date.isoformat(),
            'day_count_convention': terms.day_count_convention.value,
            'fee_setup': terms.fee_setup.to_decimal_string(),
            'fee_monthly': terms.fee_monthly.to_decimal_string(),
            'insurance_monthly': terms.insurance_monthly.to_decimal_string(),
            'balloon_amount': (terms.balloon_amount.to_decimal_string()
                               if terms.balloon_amount is not None else None)
        }

        for field in ['current_balance', 'principal_paid', 'interest_paid', 'total_paid', 'early_repaid']:
            result[field] = getattr(loan, field).to_decimal_string()

        result['early_repayment_penalty_pct'] = str(loan.early_repayment_penalty_pct)
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]
        terms_data = data['terms']

        def get_money(value: Optional[str]) -> Optional[Money]:
            return Money(Decimal(value), currency) if value is not None else None

        terms = LoanTerms(
            principal=get_money(terms_data['principal']),
            annual_rate_percent=Decimal(terms_data['annual_rate_percent']),
            term_months=terms_data['term_months'],
            loan_type=terms_data['loan_type'],
            start_date=date.fromisoformat(terms_data['start_date']),
            day_count_convention=terms_data['day_count_convention'],
            fee_setup=get_money(terms_data['fee_setup']),
            fee_monthly=get_money(terms_data['fee_monthly']),
            insurance_monthly=get_money(terms_data['insurance_monthly']),
            balloon_amount=get_money(terms_data.get('balloon_amount'))
        )

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            lender_name=data['lender_name'],
            terms=terms,
            status=LoanStatus(data['status']),
            asset_id=data.get('asset_id'),
            current_balance=get_money(data['current_balance']),
            principal_paid=get_money(data['principal_paid']),
            interest_paid=get_money(data['interest_paid']),
            total_paid=get_money(data['total_paid']),
            early_repaid=get_money(data['early_repaid']),
            early_repayment_penalty_pct=Decimal(data['early_repayment_penalty_pct']),
            schedule_revision=data['schedule_revision']
        )

    def _installment_to_dict(self, entry: Installment) -> Dict:
        return {
            'installment_no': entry.installment_no,
            'due_date': entry.due_date.isoformat(),
            'principal_due': entry.principal_due.to_decimal_string(),
            'interest_due': entry.interest_due.to_decimal_string(),
            'fees_due': entry.fees_due.to_decimal_string(),
            'total_due': entry.total_due.to_decimal_string(),
            'principal_balance_after': entry.principal_balance_after.to_decimal_string(),
            'prepaid_principal': entry.prepaid_principal.to_decimal_string(),
            # Overdue is derived on read; only paid is a stored state
            'status': (InstallmentStatus.PAID if entry.is_paid else InstallmentStatus.PENDING).value,
            'paid_date': entry.paid_date.isoformat() if entry.paid_date else None
        }

    def _installment_from_dict(self, data: Dict, loan_id: str, currency: Currency) -> Installment:
        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return Installment(
            installment_no=data['installment_no'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=get_money('principal_due'),
            interest_due=get_money('interest_due'),
            fees_due=get_money('fees_due'),
            total_due=get_money('total_due'),
            principal_balance_after=get_money('principal_balance_after'),
            status=InstallmentStatus(data['status']),
            loan_id=loan_id,
            prepaid_principal=get_money('prepaid_principal'),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None
        )
