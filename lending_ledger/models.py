"""
Domain Records

Loans, payments, virtual accounts and loan status history as stored by the
ledger. Money fields are persisted as ``<field>_amount`` strings next to a
single ``currency`` code; timestamps as ISO-8601 strings.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application submitted, awaiting decision
    APPROVED = "approved"      # Transient: recorded in history, disbursed at once
    ACTIVE = "active"          # Disbursed and in repayment
    CLOSED = "closed"          # Fully repaid
    REJECTED = "rejected"      # Declined by a reviewer

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.CLOSED, LoanStatus.REJECTED)

    @property
    def is_open(self) -> bool:
        return self in (LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE)


class PaymentType(Enum):
    """Kinds of money movement recorded in the payment ledger"""
    LOAN_REPAYMENT = "loan_repayment"
    DISBURSEMENT = "disbursement"
    FEE = "fee"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != PaymentStatus.PENDING


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Loan(StorageRecord):
    """Loan application and its repayment position"""
    user_id: str
    principal: Money
    purpose: str
    term: int
    rate: Decimal
    monthly_payment: Money
    final_installment: Money
    total_amount: Money
    status: LoanStatus = LoanStatus.PENDING
    score: Optional[int] = None

    approver_id: Optional[str] = None
    approved_at: Optional[datetime] = None
    reviewer_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    disbursement_payment_id: Optional[str] = None
    closed_at: Optional[datetime] = None

    amount_repaid: Money = None   # Cached sum of completed repayments
    version: int = 1

    def __post_init__(self):
        if self.amount_repaid is None:
            self.amount_repaid = Money.zero(self.principal.currency)

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def outstanding(self) -> Money:
        """Total amount still owed"""
        return self.total_amount - self.amount_repaid

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'currency': self.currency.code,
            'principal_amount': str(self.principal.amount),
            'purpose': self.purpose,
            'term': self.term,
            'rate': str(self.rate),
            'monthly_payment_amount': str(self.monthly_payment.amount),
            'final_installment_amount': str(self.final_installment.amount),
            'total_amount': str(self.total_amount.amount),
            'amount_repaid_amount': str(self.amount_repaid.amount),
            'status': self.status.value,
            'score': self.score,
            'approver_id': self.approver_id,
            'approved_at': _iso(self.approved_at),
            'reviewer_id': self.reviewer_id,
            'rejection_reason': self.rejection_reason,
            'rejected_at': _iso(self.rejected_at),
            'disbursed_at': _iso(self.disbursed_at),
            'disbursement_payment_id': self.disbursement_payment_id,
            'closed_at': _iso(self.closed_at),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            principal=Money(Decimal(data['principal_amount']), currency),
            purpose=data['purpose'],
            term=data['term'],
            rate=Decimal(data['rate']),
            monthly_payment=Money(Decimal(data['monthly_payment_amount']), currency),
            final_installment=Money(Decimal(data['final_installment_amount']), currency),
            total_amount=Money(Decimal(data['total_amount']), currency),
            amount_repaid=Money(Decimal(data['amount_repaid_amount']), currency),
            status=LoanStatus(data['status']),
            score=data.get('score'),
            approver_id=data.get('approver_id'),
            approved_at=_parse(data.get('approved_at')),
            reviewer_id=data.get('reviewer_id'),
            rejection_reason=data.get('rejection_reason'),
            rejected_at=_parse(data.get('rejected_at')),
            disbursed_at=_parse(data.get('disbursed_at')),
            disbursement_payment_id=data.get('disbursement_payment_id'),
            closed_at=_parse(data.get('closed_at')),
            version=data.get('version', 1),
        )


@dataclass
class LoanStatusChange(StorageRecord):
    """One entry in a loan's status history"""
    loan_id: str
    from_status: Optional[LoanStatus]
    to_status: LoanStatus
    actor_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'from_status': self.from_status.value if self.from_status else None,
            'to_status': self.to_status.value,
            'actor_id': self.actor_id,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanStatusChange':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            from_status=LoanStatus(data['from_status']) if data.get('from_status') else None,
            to_status=LoanStatus(data['to_status']),
            actor_id=data.get('actor_id'),
            reason=data.get('reason'),
        )


@dataclass
class Payment(StorageRecord):
    """
    A single money movement. ``debit_account_id`` is the virtual account
    money leaves, ``credit_account_id`` the one it enters; None means the
    other side is outside the ledger (a card gateway, a bank transfer).
    """
    amount: Money
    payment_type: PaymentType
    reference: str
    gateway: str
    status: PaymentStatus = PaymentStatus.PENDING
    loan_id: Optional[str] = None
    debit_account_id: Optional[str] = None
    credit_account_id: Optional[str] = None
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'type': self.payment_type.value,
            'reference': self.reference,
            'gateway': self.gateway,
            'status': self.status.value,
            'loan_id': self.loan_id,
            'debit_account_id': self.debit_account_id,
            'credit_account_id': self.credit_account_id,
            'description': self.description,
            'failure_reason': self.failure_reason,
            'processed_at': _iso(self.processed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            payment_type=PaymentType(data['type']),
            reference=data['reference'],
            gateway=data['gateway'],
            status=PaymentStatus(data['status']),
            loan_id=data.get('loan_id'),
            debit_account_id=data.get('debit_account_id'),
            credit_account_id=data.get('credit_account_id'),
            description=data.get('description'),
            failure_reason=data.get('failure_reason'),
            processed_at=_parse(data.get('processed_at')),
        )


@dataclass
class VirtualAccount(StorageRecord):
    """Per-user wallet held at the partner bank"""
    user_id: str
    account_number: str
    bank_name: str
    display_name: str
    balance: Money
    is_active: bool = True
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'account_number': self.account_number,
            'bank_name': self.bank_name,
            'display_name': self.display_name,
            'balance_amount': str(self.balance.amount),
            'currency': self.balance.currency.code,
            'is_active': self.is_active,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VirtualAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_number=data['account_number'],
            bank_name=data['bank_name'],
            display_name=data['display_name'],
            balance=Money(Decimal(data['balance_amount']), Currency[data['currency']]),
            is_active=data.get('is_active', True),
            version=data.get('version', 1),
        )
