"""
Virtual account endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_ledger, get_caller_id, ensure_owner_or
from .schemas import (
    OpenAccountRequest, DepositRequest, AccountResponse, PaymentResponse, ReconciliationResponse
)
from ..service import LedgerService
from ..rbac import Permission


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=AccountResponse)
def open_account(
    request: OpenAccountRequest,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Open a virtual account for the calling user"""
    account = ledger.open_account(caller_id, request.display_name)
    return AccountResponse.from_account(account)


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Get account details and balance"""
    account = ledger.get_account(account_id)
    ensure_owner_or(ledger, caller_id, account.user_id, Permission.READ_REPORTS)
    return AccountResponse.from_account(account)


@router.post("/{account_id}/deposits", status_code=status.HTTP_201_CREATED, response_model=PaymentResponse)
def deposit(
    account_id: str,
    request: DepositRequest,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Credit an account from a bank transfer or card top-up"""
    account = ledger.get_account(account_id)
    ensure_owner_or(ledger, caller_id, account.user_id, Permission.MANAGE_BALANCES)
    payment = ledger.deposit(account_id, request.amount, request.reference, gateway=request.gateway)
    return PaymentResponse.from_payment(payment)


@router.get("/{account_id}/reconciliation", response_model=ReconciliationResponse)
def reconcile_account(
    account_id: str,
    caller_id: str = Depends(get_caller_id),
    ledger: LedgerService = Depends(get_ledger)
):
    """Compare the stored balance with a replay of completed payments"""
    account = ledger.get_account(account_id)
    ensure_owner_or(ledger, caller_id, account.user_id, Permission.READ_REPORTS)
    return ReconciliationResponse.from_report(ledger.reconcile_account(account_id))
