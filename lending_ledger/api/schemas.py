"""
Pydantic schemas for API requests and responses
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from ..currency import Money
from ..models import Loan, LoanStatusChange, Payment, VirtualAccount
from ..amortization import Schedule
from ..accounts import ReconciliationReport


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (NGN, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan schemas
class SubmitLoanRequest(BaseModel):
    amount: str = Field(..., description="Principal as a decimal string")
    purpose: str
    term: int = Field(..., description="Number of monthly installments")


class DecisionRequest(BaseModel):
    approve: bool
    score: Optional[int] = None
    rate: Optional[str] = Field(None, description="Interest rate for the term, e.g. '0.12'")
    reason: Optional[str] = Field(None, description="Required when rejecting")


class RepaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    reference: str = Field(..., description="Gateway reference; resending it is idempotent")
    gateway: str = "card"
    source_account_id: Optional[str] = None


class LoanResponse(BaseModel):
    id: str
    user_id: str
    status: str
    principal: MoneyModel
    purpose: str
    term: int
    rate: str
    monthly_payment: MoneyModel
    final_installment: MoneyModel
    total_amount: MoneyModel
    amount_repaid: MoneyModel
    outstanding: MoneyModel
    score: Optional[int] = None
    approver_id: Optional[str] = None
    approved_at: Optional[str] = None
    reviewer_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    disbursed_at: Optional[str] = None
    closed_at: Optional[str] = None
    created_at: str

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanResponse':
        return cls(
            id=loan.id,
            user_id=loan.user_id,
            status=loan.status.value,
            principal=MoneyModel.from_money(loan.principal),
            purpose=loan.purpose,
            term=loan.term,
            rate=str(loan.rate),
            monthly_payment=MoneyModel.from_money(loan.monthly_payment),
            final_installment=MoneyModel.from_money(loan.final_installment),
            total_amount=MoneyModel.from_money(loan.total_amount),
            amount_repaid=MoneyModel.from_money(loan.amount_repaid),
            outstanding=MoneyModel.from_money(loan.outstanding),
            score=loan.score,
            approver_id=loan.approver_id,
            approved_at=loan.approved_at.isoformat() if loan.approved_at else None,
            reviewer_id=loan.reviewer_id,
            rejection_reason=loan.rejection_reason,
            disbursed_at=loan.disbursed_at.isoformat() if loan.disbursed_at else None,
            closed_at=loan.closed_at.isoformat() if loan.closed_at else None,
            created_at=loan.created_at.isoformat()
        )


class StatusChangeResponse(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    at: str

    @classmethod
    def from_change(cls, change: LoanStatusChange) -> 'StatusChangeResponse':
        return cls(
            from_status=change.from_status.value if change.from_status else None,
            to_status=change.to_status.value,
            actor_id=change.actor_id,
            reason=change.reason,
            at=change.created_at.isoformat()
        )


class InstallmentModel(BaseModel):
    number: int
    amount: MoneyModel
    due_date: Optional[str] = None


class ScheduleResponse(BaseModel):
    loan_id: str
    installment: MoneyModel
    final_installment: MoneyModel
    total_amount: MoneyModel
    total_interest: MoneyModel
    installments: List[InstallmentModel]

    @classmethod
    def from_schedule(cls, loan_id: str, schedule: Schedule) -> 'ScheduleResponse':
        return cls(
            loan_id=loan_id,
            installment=MoneyModel.from_money(schedule.installment),
            final_installment=MoneyModel.from_money(schedule.final_installment),
            total_amount=MoneyModel.from_money(schedule.total_amount),
            total_interest=MoneyModel.from_money(schedule.total_interest),
            installments=[
                InstallmentModel(
                    number=entry.number,
                    amount=MoneyModel.from_money(entry.amount),
                    due_date=entry.due_date.isoformat() if entry.due_date else None
                )
                for entry in schedule.installments
            ]
        )


# Payment schemas
class PaymentResponse(BaseModel):
    id: str
    loan_id: Optional[str] = None
    type: str
    status: str
    amount: MoneyModel
    reference: str
    gateway: str
    debit_account_id: Optional[str] = None
    credit_account_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: str

    @classmethod
    def from_payment(cls, payment: Payment) -> 'PaymentResponse':
        return cls(
            id=payment.id,
            loan_id=payment.loan_id,
            type=payment.payment_type.value,
            status=payment.status.value,
            amount=MoneyModel.from_money(payment.amount),
            reference=payment.reference,
            gateway=payment.gateway,
            debit_account_id=payment.debit_account_id,
            credit_account_id=payment.credit_account_id,
            failure_reason=payment.failure_reason,
            processed_at=payment.processed_at.isoformat() if payment.processed_at else None,
            created_at=payment.created_at.isoformat()
        )


class StatementResponse(BaseModel):
    loan_id: str
    outstanding: MoneyModel
    payments: List[PaymentResponse]


# Account schemas
class OpenAccountRequest(BaseModel):
    display_name: Optional[str] = None


class DepositRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    reference: str
    gateway: str = "bank_transfer"


class AccountResponse(BaseModel):
    id: str
    user_id: str
    account_number: str
    bank_name: str
    display_name: str
    balance: MoneyModel
    is_active: bool

    @classmethod
    def from_account(cls, account: VirtualAccount) -> 'AccountResponse':
        return cls(
            id=account.id,
            user_id=account.user_id,
            account_number=account.account_number,
            bank_name=account.bank_name,
            display_name=account.display_name,
            balance=MoneyModel.from_money(account.balance),
            is_active=account.is_active
        )


class ReconciliationResponse(BaseModel):
    account_id: str
    stored_balance: MoneyModel
    computed_balance: MoneyModel
    difference: MoneyModel
    payment_count: int
    is_balanced: bool

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> 'ReconciliationResponse':
        return cls(
            account_id=report.account_id,
            stored_balance=MoneyModel.from_money(report.stored_balance),
            computed_balance=MoneyModel.from_money(report.computed_balance),
            difference=MoneyModel.from_money(report.difference),
            payment_count=report.payment_count,
            is_balanced=report.is_balanced
        )
