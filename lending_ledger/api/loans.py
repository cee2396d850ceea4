"""
Loan endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, status

from .dependencies import get_ledger, get_caller_id, ensure_owner_or
from .schemas import (
    SubmitLoanRequest, DecisionRequest, RepaymentRequest, LoanResponse, PaymentResponse,
    StatementResponse, ScheduleResponse, StatusChangeResponse, MoneyModel
)
from ..service import LedgerService
from ..rbac import Permission


router = APIRouter()
users_router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LoanResponse)
def submit_loan(
    request: SubmitLoanRequest,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Apply for a loan as the calling user"""
    loan = ledger.submit_application(caller_id, request.amount, request.purpose, request.term)
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/decision", response_model=LoanResponse)
def decide_loan(
    loan_id: str,
    request: DecisionRequest,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Approve (and disburse) or reject a pending loan"""
    loan = ledger.decide(
        loan_id,
        approver_id=caller_id,
        approve=request.approve,
        score=request.score,
        rate=request.rate,
        reason=request.reason
    )
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/repayments", status_code=status.HTTP_201_CREATED, response_model=PaymentResponse)
def repay_loan(
    loan_id: str,
    request: RepaymentRequest,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Apply a repayment; resending the same reference returns the original payment"""
    if request.source_account_id:
        account = ledger.get_account(request.source_account_id)
        ensure_owner_or(ledger, caller_id, account.user_id, Permission.MANAGE_BALANCES)
    payment = ledger.repay(
        loan_id,
        request.amount,
        request.reference,
        gateway=request.gateway,
        source_account_id=request.source_account_id
    )
    return PaymentResponse.from_payment(payment)


@router.get("/{loan_id}", response_model=LoanResponse)
def get_loan(
    loan_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Get loan details"""
    loan = ledger.get_loan(loan_id)
    ensure_owner_or(ledger, caller_id, loan.user_id, Permission.READ_REPORTS)
    return LoanResponse.from_loan(loan)


@router.get("/{loan_id}/statement", response_model=StatementResponse)
def get_statement(
    loan_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Every payment recorded against the loan"""
    loan = ledger.get_loan(loan_id)
    ensure_owner_or(ledger, caller_id, loan.user_id, Permission.READ_REPORTS)
    payments = ledger.get_statement(loan_id)
    return StatementResponse(
        loan_id=loan_id,
        outstanding=MoneyModel.from_money(ledger.get_outstanding_balance(loan_id)),
        payments=[PaymentResponse.from_payment(p) for p in payments]
    )


@router.get("/{loan_id}/schedule", response_model=ScheduleResponse)
def get_schedule(
    loan_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Get loan repayment schedule"""
    loan = ledger.get_loan(loan_id)
    ensure_owner_or(ledger, caller_id, loan.user_id, Permission.READ_REPORTS)
    return ScheduleResponse.from_schedule(loan_id, ledger.get_schedule(loan_id))


@router.get("/{loan_id}/history", response_model=List[StatusChangeResponse])
def get_history(
    loan_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Status changes of a loan, oldest first"""
    loan = ledger.get_loan(loan_id)
    ensure_owner_or(ledger, caller_id, loan.user_id, Permission.READ_REPORTS)
    return [StatusChangeResponse.from_change(c) for c in ledger.get_loan_history(loan_id)]


@users_router.get("/{user_id}/loans", response_model=List[LoanResponse])
def list_user_loans(
    user_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """All loans of a user"""
    ensure_owner_or(ledger, caller_id, user_id, Permission.READ_REPORTS)
    return [LoanResponse.from_loan(loan) for loan in ledger.list_loans_for_user(user_id)]
