"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency
from ..schedule import LoanTerms, Installment, ScheduleSummary
from ..simulation import SimulationParameters, SimulationScenario, SimulationRun
from ..exceptions import InvalidLoanTerms
from ..config import get_config


def parse_decimal(value: str, field_name: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise ValueError(f"{field_name} is not a decimal number: {value!r}")


def parse_date(value: str, field_name: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{field_name} is not an ISO date: {value!r}")


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(default_factory=lambda: get_config().default_currency,
                          description="Currency code (EUR, USD, etc.)")

    def to_money(self) -> Money:
        try:
            currency = Currency[self.currency.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {self.currency}")
        return Money(parse_decimal(self.amount, "amount"), currency)

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=money.to_decimal_string(), currency=money.currency.code)


# Loan schemas
class LoanTermsModel(BaseModel):
    principal: MoneyModel
    annual_rate_percent: str  # Decimal as string
    term_months: int
    loan_type: str = "annuity"
    start_date: str  # ISO date string
    day_count_convention: Optional[str] = None
    fee_setup: Optional[MoneyModel] = None
    fee_monthly: Optional[MoneyModel] = None
    insurance_monthly: Optional[MoneyModel] = None
    balloon_amount: Optional[MoneyModel] = None

    def to_loan_terms(self) -> LoanTerms:
        try:
            rate = parse_decimal(self.annual_rate_percent, "annual_rate_percent")
            start_date = parse_date(self.start_date, "start_date")
        except ValueError as e:
            raise InvalidLoanTerms(str(e))

        return LoanTerms(
            principal=self.principal.to_money(),
            annual_rate_percent=rate,
            term_months=self.term_months,
            loan_type=self.loan_type,
            start_date=start_date,
            day_count_convention=self.day_count_convention or get_config().default_day_count,
            fee_setup=self.fee_setup.to_money() if self.fee_setup else None,
            fee_monthly=self.fee_monthly.to_money() if self.fee_monthly else None,
            insurance_monthly=self.insurance_monthly.to_money() if self.insurance_monthly else None,
            balloon_amount=self.balloon_amount.to_money() if self.balloon_amount else None
        )


class CreateLoanRequest(BaseModel):
    lender_name: str
    terms: LoanTermsModel
    asset_id: Optional[str] = None
    early_repayment_penalty_pct: str = "0"


class EarlyRepaymentRequest(BaseModel):
    amount: MoneyModel
    payment_date: str  # ISO date string
    policy: Optional[str] = Field(None, description="reduce_term or reduce_payment")
    expected_revision: Optional[int] = Field(None, description="Schedule revision the preview was based on")


# Simulation schemas
class SimulationRequest(BaseModel):
    new_rate: Optional[str] = None
    new_term: Optional[int] = None
    extra_payment_monthly: Optional[MoneyModel] = None
    one_time_payments: Dict[int, MoneyModel] = Field(default_factory=dict,
                                                     description="Installment number to extra amount")

    def to_parameters(self) -> SimulationParameters:
        return SimulationParameters(
            new_rate=parse_decimal(self.new_rate, "new_rate") if self.new_rate is not None else None,
            new_term=self.new_term,
            extra_payment_monthly=(self.extra_payment_monthly.to_money()
                                   if self.extra_payment_monthly else None),
            one_time_payments={number: amount.to_money() for number, amount in self.one_time_payments.items()}
        )


class ScenarioModel(BaseModel):
    name: str
    params: SimulationRequest

    def to_scenario(self) -> SimulationScenario:
        return SimulationScenario(name=self.name, params=self.params.to_parameters())


class CompareScenariosRequest(BaseModel):
    scenarios: List[ScenarioModel]


# Inverse calculator schemas
class RateFromPaymentRequest(BaseModel):
    principal: MoneyModel
    payment: MoneyModel
    term_months: int
    loan_type: str = "annuity"
    fee_setup: Optional[MoneyModel] = None
    fee_monthly: Optional[MoneyModel] = None
    insurance_monthly: Optional[MoneyModel] = None


class TermFromPaymentRequest(BaseModel):
    principal: MoneyModel
    annual_rate_percent: str
    payment: MoneyModel
    loan_type: str = "annuity"
    fee_setup: Optional[MoneyModel] = None
    fee_monthly: Optional[MoneyModel] = None
    insurance_monthly: Optional[MoneyModel] = None


def money_dict(money: Optional[Money]) -> Optional[dict]:
    return MoneyModel.from_money(money).model_dump() if money is not None else None


def installment_dict(entry: Installment) -> dict:
    return {
        "installment_no": entry.installment_no,
        "due_date": entry.due_date.isoformat(),
        "principal_due": money_dict(entry.principal_due),
        "interest_due": money_dict(entry.interest_due),
        "fees_due": money_dict(entry.fees_due),
        "total_due": money_dict(entry.total_due),
        "principal_balance_after": money_dict(entry.principal_balance_after),
        "prepaid_principal": money_dict(entry.prepaid_principal),
        "status": entry.status.value,
        "paid_date": entry.paid_date.isoformat() if entry.paid_date else None
    }


def summary_dict(summary: ScheduleSummary) -> dict:
    return {
        "installment_count": summary.installment_count,
        "total_principal": money_dict(summary.total_principal),
        "total_interest": money_dict(summary.total_interest),
        "total_fees": money_dict(summary.total_fees),
        "total_payment": money_dict(summary.total_payment),
        "monthly_payment": money_dict(summary.monthly_payment),
        "last_payment": money_dict(summary.last_payment),
        "end_date": summary.end_date.isoformat() if summary.end_date else None,
        "effective_rate": str(summary.effective_rate)
    }


def run_dict(run: SimulationRun) -> dict:
    return {
        "monthly_payment": money_dict(run.monthly_payment),
        "total_interest": money_dict(run.total_interest),
        "total_cost": money_dict(run.total_cost),
        "installment_count": run.installment_count,
        "end_date": run.summary.end_date.isoformat() if run.summary.end_date else None
    }
