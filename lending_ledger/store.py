"""
Ledger Store Module

Typed repository over a StorageInterface. Maps stored documents to Loan,
Payment, VirtualAccount and LoanStatusChange records, enforces the
uniqueness rules the ledger relies on, and retries transactions that lose
a concurrency race.
"""

from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, TypeVar

from .storage import StorageInterface
from .models import (
    Loan, LoanStatus, LoanStatusChange, Payment, PaymentStatus, VirtualAccount
)
from .exceptions import (
    LoanNotFoundError, AccountNotFoundError, PaymentNotFoundError,
    InvalidTransitionError, PersistenceConflictError
)
from .logging_config import component_logger, log_action

T = TypeVar('T')


class LedgerStore:
    """
    Owns all durable ledger state. Components receive a LedgerStore in
    their constructor and never touch the backend directly.
    """

    LOANS = "loans"
    LOAN_HISTORY = "loan_status_history"
    APPLICANTS = "loan_applicants"
    PAYMENTS = "payments"
    PAYMENT_REFERENCES = "payment_references"   # (gateway, reference) -> payment id
    ACCOUNTS = "virtual_accounts"
    ACCOUNT_OWNERS = "account_owners"           # user id -> account id
    ACCOUNT_NUMBERS = "account_numbers"         # account number -> account id

    def __init__(self, storage: StorageInterface, max_conflict_retries: int = 3):
        self.storage = storage
        self.max_conflict_retries = max_conflict_retries
        self.logger = component_logger("store")

    # Transactions

    def atomic(self):
        return self.storage.atomic()

    def in_transaction(self) -> bool:
        return self.storage.in_transaction()

    def run_in_transaction(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run ``fn`` inside one transaction, retrying it from scratch when the
        transaction loses a race. Joins an already open transaction without
        retrying; the outermost caller owns the retry loop.

        Raises:
            PersistenceConflictError: every attempt conflicted
        """
        if self.storage.in_transaction():
            return fn(*args, **kwargs)

        attempt = 0
        while True:
            try:
                with self.storage.atomic():
                    return fn(*args, **kwargs)
            except PersistenceConflictError as e:
                if attempt >= self.max_conflict_retries:
                    log_action(self.logger, "error", "Transaction conflict retries exhausted",
                               action="transaction_conflict",
                               resource=getattr(fn, '__name__', repr(fn)),
                               extra={"attempts": attempt + 1, "error": str(e)})
                    raise
                attempt += 1
                self.logger.warning(
                    f"Retrying {getattr(fn, '__name__', repr(fn))} after conflict "
                    f"(attempt {attempt} of {self.max_conflict_retries}): {e}"
                )

    # Loans

    def insert_loan(self, loan: Loan) -> None:
        self.storage.insert(self.LOANS, loan.id, loan.to_dict())

    def save_loan(self, loan: Loan) -> None:
        """Persist a changed loan, bumping its version"""
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.LOANS, loan.id, loan.to_dict())

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.LOANS, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return Loan.from_dict(data)

    def get_loan_for_update(self, loan_id: str) -> Loan:
        """Load a loan holding its row lock until the transaction ends"""
        data = self.storage.load_for_update(self.LOANS, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return Loan.from_dict(data)

    def find_loans(self, user_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {}
        if user_id is not None:
            filters['user_id'] = user_id
        if status is not None:
            filters['status'] = status.value
        loans = [Loan.from_dict(data) for data in self.storage.find(self.LOANS, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def lock_applicant(self, user_id: str) -> None:
        """
        Serialize loan applications per user. The marker row is locked and
        rewritten, so two concurrent applications cannot both pass the
        open-loan check.
        """
        self.storage.load_for_update(self.APPLICANTS, user_id)
        self.storage.save(self.APPLICANTS, user_id, {
            'user_id': user_id,
            'updated_at': datetime.now(timezone.utc).isoformat()
        })

    def add_status_change(self, change: LoanStatusChange) -> None:
        self.storage.insert(self.LOAN_HISTORY, change.id, change.to_dict())

    def get_status_history(self, loan_id: str) -> List[LoanStatusChange]:
        changes = [LoanStatusChange.from_dict(data)
                   for data in self.storage.find(self.LOAN_HISTORY, {'loan_id': loan_id})]
        changes.sort(key=lambda change: change.created_at)
        return changes

    # Payments

    def insert_payment(self, payment: Payment) -> None:
        """
        Insert a new payment and claim its (gateway, reference) key.
        A concurrent insert of the same key conflicts at commit.
        """
        self.storage.insert(self.PAYMENT_REFERENCES, self._reference_key(payment.gateway, payment.reference),
                            {'payment_id': payment.id})
        self.storage.insert(self.PAYMENTS, payment.id, payment.to_dict())

    def save_payment(self, payment: Payment) -> None:
        """
        Persist a payment status change. Terminal payments are immutable.

        Raises:
            InvalidTransitionError: the stored payment is already completed or failed
        """
        existing = self.storage.load_for_update(self.PAYMENTS, payment.id)
        if not existing:
            raise PaymentNotFoundError(payment.id)
        current = PaymentStatus(existing['status'])
        if current.is_terminal:
            raise InvalidTransitionError("payment", current.value, payment.status.value)

        payment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.PAYMENTS, payment.id, payment.to_dict())

    def get_payment(self, payment_id: str) -> Payment:
        data = self.storage.load(self.PAYMENTS, payment_id)
        if not data:
            raise PaymentNotFoundError(payment_id)
        return Payment.from_dict(data)

    def get_payment_for_update(self, payment_id: str) -> Payment:
        data = self.storage.load_for_update(self.PAYMENTS, payment_id)
        if not data:
            raise PaymentNotFoundError(payment_id)
        return Payment.from_dict(data)

    def find_payment_by_reference(self, gateway: str, reference: str) -> Optional[Payment]:
        index = self.storage.load(self.PAYMENT_REFERENCES, self._reference_key(gateway, reference))
        if not index:
            return None
        return self.get_payment(index['payment_id'])

    def payments_for_loan(self, loan_id: str) -> List[Payment]:
        return self._sorted_payments(self.storage.find(self.PAYMENTS, {'loan_id': loan_id}))

    def payments_for_account(self, account_id: str) -> List[Payment]:
        """Every payment that debits or credits the account"""
        data = self.storage.find(self.PAYMENTS, {'debit_account_id': account_id})
        data += [p for p in self.storage.find(self.PAYMENTS, {'credit_account_id': account_id})
                 if p.get('debit_account_id') != account_id]
        return self._sorted_payments(data)

    def payments_with_status(self, status: PaymentStatus) -> List[Payment]:
        return self._sorted_payments(self.storage.find(self.PAYMENTS, {'status': status.value}))

    @staticmethod
    def _sorted_payments(data: List[dict]) -> List[Payment]:
        payments = [Payment.from_dict(d) for d in data]
        payments.sort(key=lambda payment: payment.created_at)
        return payments

    @staticmethod
    def _reference_key(gateway: str, reference: str) -> str:
        return f"{gateway}:{reference}"

    # Virtual accounts

    def insert_account(self, account: VirtualAccount) -> None:
        """Insert an account; a second account for the same user or number conflicts"""
        self.storage.insert(self.ACCOUNT_OWNERS, account.user_id, {'account_id': account.id})
        self.storage.insert(self.ACCOUNT_NUMBERS, account.account_number, {'account_id': account.id})
        self.storage.insert(self.ACCOUNTS, account.id, account.to_dict())

    def save_account(self, account: VirtualAccount) -> None:
        account.version += 1
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.ACCOUNTS, account.id, account.to_dict())

    def get_account(self, account_id: str) -> VirtualAccount:
        data = self.storage.load(self.ACCOUNTS, account_id)
        if not data:
            raise AccountNotFoundError(account_id)
        return VirtualAccount.from_dict(data)

    def get_account_for_update(self, account_id: str) -> VirtualAccount:
        data = self.storage.load_for_update(self.ACCOUNTS, account_id)
        if not data:
            raise AccountNotFoundError(account_id)
        return VirtualAccount.from_dict(data)

    def find_account_for_user(self, user_id: str) -> Optional[VirtualAccount]:
        index = self.storage.load(self.ACCOUNT_OWNERS, user_id)
        if not index:
            return None
        return self.get_account(index['account_id'])

    def account_number_taken(self, account_number: str) -> bool:
        return self.storage.exists(self.ACCOUNT_NUMBERS, account_number)

    def all_accounts(self) -> List[VirtualAccount]:
        return [VirtualAccount.from_dict(data) for data in self.storage.load_all(self.ACCOUNTS)]
