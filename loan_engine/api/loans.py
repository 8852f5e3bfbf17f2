"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .deps import LoanSystem, get_loan_system
from .schemas import (
    LoanTermsModel, CreateLoanRequest, EarlyRepaymentRequest, SimulationRequest,
    CompareScenariosRequest, RateFromPaymentRequest, TermFromPaymentRequest,
    parse_date, parse_decimal, money_dict, installment_dict, summary_dict, run_dict
)
from ..schedule import generate_schedule, summarize_schedule
from ..early_repayment import RepaymentPreview
from ..inverse import rate_from_payment, term_from_payment
from ..exceptions import LoanEngineError, LoanNotFound, ScheduleNotFound, ConcurrentModification


router = APIRouter()


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, (LoanNotFound, ScheduleNotFound)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConcurrentModification):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _today(value: Optional[str]) -> date:
    return parse_date(value, "today") if value else date.today()


def _preview_dict(preview: RepaymentPreview) -> dict:
    return {
        "loan_id": preview.loan_id,
        "amount": money_dict(preview.amount),
        "payment_date": preview.payment_date.isoformat(),
        "policy": preview.policy.value,
        "anchor_installment_no": preview.anchor_installment_no,
        "remaining_principal": money_dict(preview.remaining_principal),
        "new_remaining_principal": money_dict(preview.new_remaining_principal),
        "saved_interest": money_dict(preview.saved_interest),
        "penalty_amount": money_dict(preview.penalty_amount),
        "net_saving": money_dict(preview.net_saving),
        "original_installment_count": preview.original_installment_count,
        "new_installment_count": preview.new_installment_count,
        "new_monthly_payment": money_dict(preview.new_monthly_payment),
        "revision": preview.revision,
        "schedule": [installment_dict(entry) for entry in preview.schedule]
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Create a loan and generate its schedule"""
    try:
        loan = system.loan_manager.create_loan(
            terms=request.terms.to_loan_terms(),
            lender_name=request.lender_name,
            asset_id=request.asset_id,
            early_repayment_penalty_pct=parse_decimal(
                request.early_repayment_penalty_pct, "early_repayment_penalty_pct"
            )
        )
        summary = summarize_schedule(loan.terms, system.loan_manager.get_schedule(loan.id))

        return {
            "loan_id": loan.id,
            "status": loan.status.value,
            "revision": loan.schedule_revision,
            "summary": summary_dict(summary),
            "message": "Loan created successfully"
        }

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/schedule/preview")
async def preview_schedule(terms: LoanTermsModel):
    """Generate a schedule for terms without storing a loan"""
    try:
        loan_terms = terms.to_loan_terms()
        schedule = generate_schedule(loan_terms)

        return {
            "summary": summary_dict(summarize_schedule(loan_terms, schedule)),
            "schedule": [installment_dict(entry) for entry in schedule]
        }

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/calculator/rate")
async def calculate_rate(request: RateFromPaymentRequest):
    """Annual rate implied by a monthly payment"""
    try:
        rate = rate_from_payment(
            principal=request.principal.to_money(),
            payment=request.payment.to_money(),
            term_months=request.term_months,
            loan_type=request.loan_type,
            fee_setup=request.fee_setup.to_money() if request.fee_setup else None,
            fee_monthly=request.fee_monthly.to_money() if request.fee_monthly else None,
            insurance_monthly=request.insurance_monthly.to_money() if request.insurance_monthly else None
        )
        return {"annual_rate_percent": str(rate)}

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/calculator/term")
async def calculate_term(request: TermFromPaymentRequest):
    """Months a monthly payment needs to clear a loan"""
    try:
        term = term_from_payment(
            principal=request.principal.to_money(),
            annual_rate_percent=parse_decimal(request.annual_rate_percent, "annual_rate_percent"),
            payment=request.payment.to_money(),
            loan_type=request.loan_type,
            fee_setup=request.fee_setup.to_money() if request.fee_setup else None,
            fee_monthly=request.fee_monthly.to_money() if request.fee_monthly else None,
            insurance_monthly=request.insurance_monthly.to_money() if request.insurance_monthly else None
        )
        return {"term_months": term}

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    today: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan details with balances as of today"""
    try:
        view = system.loan_manager.get_loan_view(loan_id, _today(today))
    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)

    loan = view.loan
    balances = view.balances
    return {
        "id": loan.id,
        "lender_name": loan.lender_name,
        "asset_id": loan.asset_id,
        "status": loan.status.value,
        "loan_type": loan.terms.loan_type.value,
        "principal": money_dict(loan.terms.principal),
        "annual_rate_percent": str(loan.terms.annual_rate_percent),
        "term_months": loan.terms.term_months,
        "start_date": loan.terms.start_date.isoformat(),
        "day_count_convention": loan.terms.day_count_convention.value,
        "early_repayment_penalty_pct": str(loan.early_repayment_penalty_pct),
        "current_balance": money_dict(view.current_balance),
        "paid_principal": money_dict(balances.paid_principal),
        "paid_amount": money_dict(balances.paid_amount),
        "remaining_amount": money_dict(balances.remaining_amount),
        "early_repaid": money_dict(loan.early_repaid),
        "overdue_count": view.overdue_count,
        "overdue_amount": money_dict(balances.overdue_amount),
        "next_installment": installment_dict(view.next_installment) if view.next_installment else None,
        "revision": view.revision
    }


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    today: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get the loan's schedule with statuses derived for today"""
    try:
        view = system.loan_manager.get_loan_view(loan_id, _today(today))
    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)

    return {
        "loan_id": loan_id,
        "revision": view.revision,
        "summary": summary_dict(summarize_schedule(view.loan.terms, view.schedule)),
        "schedule": [installment_dict(entry) for entry in view.schedule]
    }


@router.post("/{loan_id}/installments/{installment_no}/mark-paid")
async def mark_installment_paid(
    loan_id: str,
    installment_no: int,
    paid_on: Optional[str] = None,
    expected_revision: Optional[int] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Mark one installment as paid"""
    try:
        installment = system.loan_manager.mark_installment_paid(
            loan_id, installment_no,
            paid_on=_today(paid_on),
            expected_revision=expected_revision
        )
        return {
            "installment": installment_dict(installment),
            "revision": system.loan_manager.get_schedule_revision(loan_id)
        }

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/{loan_id}/mark-paid-until-today")
async def mark_paid_until_today(
    loan_id: str,
    today: Optional[str] = None,
    expected_revision: Optional[int] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Mark every installment due up to today as paid"""
    try:
        count = system.loan_manager.mark_paid_until(
            loan_id, _today(today), expected_revision=expected_revision
        )
        return {
            "marked_paid": count,
            "revision": system.loan_manager.get_schedule_revision(loan_id)
        }

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/{loan_id}/early-repayment/preview")
async def preview_early_repayment(
    loan_id: str,
    request: EarlyRepaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Show the effect of an early repayment without applying it"""
    try:
        preview = system.repayment_processor.preview(
            loan_id,
            amount=request.amount.to_money(),
            payment_date=parse_date(request.payment_date, "payment_date"),
            policy=request.policy
        )
        return _preview_dict(preview)

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/{loan_id}/early-repayment/confirm")
async def confirm_early_repayment(
    loan_id: str,
    request: EarlyRepaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Apply an early repayment and store the recomputed schedule"""
    try:
        result = system.repayment_processor.confirm(
            loan_id,
            amount=request.amount.to_money(),
            payment_date=parse_date(request.payment_date, "payment_date"),
            policy=request.policy,
            expected_revision=request.expected_revision
        )
        response = _preview_dict(result)
        response["revision"] = system.loan_manager.get_schedule_revision(loan_id)
        response["message"] = "Early repayment applied successfully"
        return response

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/{loan_id}/simulate")
async def simulate_loan(
    loan_id: str,
    request: SimulationRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """What-if simulation against the loan's own schedule"""
    try:
        result = system.simulation_engine.simulate(loan_id, request.to_parameters())
        return {
            "original": run_dict(result.original),
            "simulated": run_dict(result.simulated),
            "savings": {
                "interest_saved": money_dict(result.interest_saved),
                "time_saved_months": result.time_saved_months
            }
        }

    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)


@router.post("/{loan_id}/compare")
async def compare_scenarios(
    loan_id: str,
    request: CompareScenariosRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Compare named what-if scenarios"""
    try:
        comparison = system.simulation_engine.compare_scenarios(
            loan_id, [scenario.to_scenario() for scenario in request.scenarios]
        )
    except (LoanEngineError, ValueError) as e:
        raise _http_error(e)

    def metric_value(value):
        return value if isinstance(value, int) else money_dict(value)

    return {
        "baseline": run_dict(comparison.baseline),
        "scenarios": [
            {
                "name": outcome.name,
                "monthly_payment": money_dict(outcome.monthly_payment),
                "total_interest": money_dict(outcome.total_interest),
                "total_payment": money_dict(outcome.total_payment),
                "installment_count": outcome.installment_count,
                "months_saved": outcome.months_saved,
                "total_saved": money_dict(outcome.total_saved)
            }
            for outcome in comparison.scenarios
        ],
        "ranges": {
            metric: {"min": metric_value(metric_range.minimum), "max": metric_value(metric_range.maximum)}
            for metric, metric_range in comparison.ranges.items()
        },
        "best_scenario": comparison.best_scenario
    }
