"""
Virtual Account Module

Per-user wallets held at the partner bank, plus the lender float account
that funds disbursements and receives repayments and fees. Every balance
change is backed by a completed Payment, so any stored balance can be
recomputed by replaying the payment ledger.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import secrets
import uuid

from .currency import Money, Currency
from .models import VirtualAccount, Payment, PaymentType, PaymentStatus
from .store import LedgerStore
from .exceptions import (
    AccountNotFoundError, InsufficientFundsError, InvalidAmountError, ValidationError
)
from .logging_config import component_logger, log_action


@dataclass(frozen=True)
class ReconciliationReport:
    """Stored balance compared against a replay of completed payments"""
    account_id: str
    stored_balance: Money
    computed_balance: Money
    payment_count: int

    @property
    def difference(self) -> Money:
        return self.stored_balance - self.computed_balance

    @property
    def is_balanced(self) -> bool:
        return self.difference.is_zero()

    def to_dict(self) -> Dict[str, object]:
        return {
            'account_id': self.account_id,
            'stored_balance': str(self.stored_balance.amount),
            'computed_balance': str(self.computed_balance.amount),
            'difference': str(self.difference.amount),
            'currency': self.stored_balance.currency.code,
            'payment_count': self.payment_count,
            'is_balanced': self.is_balanced
        }


class VirtualAccountManager:
    """
    Opens virtual accounts and posts credits and debits to them.

    ``credit`` and ``debit`` are standalone operations that run in their own
    transaction and write a deposit or withdrawal Payment. ``post_credit``
    and ``post_debit`` only move the balance and must be called inside the
    caller's transaction, after ``lock`` has taken the account row locks.
    """

    def __init__(
        self,
        store: LedgerStore,
        currency: Currency,
        bank_name: str = "QuickFund Bank",
        account_number_prefix: str = "QF",
        lender_owner_id: str = "__lender__"
    ):
        self.store = store
        self.currency = currency
        self.bank_name = bank_name
        self.account_number_prefix = account_number_prefix
        self.lender_owner_id = lender_owner_id
        self.logger = component_logger("accounts")

    # Opening and lookup

    def open_account(self, user_id: str, display_name: Optional[str] = None) -> VirtualAccount:
        """
        Open a virtual account for a user

        Raises:
            ValidationError: the user already has an account
        """
        if not user_id:
            raise ValidationError("User id is required to open an account")

        def _open():
            if self.store.find_account_for_user(user_id):
                raise ValidationError(f"User '{user_id}' already has a virtual account",
                                      {"user_id": user_id})
            return self._create(user_id, display_name)

        account = self.store.run_in_transaction(_open)
        log_action(self.logger, "info", "Virtual account opened", user_id=user_id,
                   action="open_account", resource=account.id,
                   extra={"account_number": account.account_number})
        return account

    def ensure_account(self, user_id: str) -> VirtualAccount:
        """Return the user's account, opening one if missing (joins the open transaction)"""
        def _ensure():
            return self.store.find_account_for_user(user_id) or self._create(user_id, None)
        return self.store.run_in_transaction(_ensure)

    def lender_float(self) -> VirtualAccount:
        """The system account that funds loans and collects repayments"""
        return self.ensure_account(self.lender_owner_id)

    def get_account(self, account_id: str) -> VirtualAccount:
        return self.store.get_account(account_id)

    def get_account_for_user(self, user_id: str) -> VirtualAccount:
        account = self.store.find_account_for_user(user_id)
        if not account:
            raise AccountNotFoundError(user_id)
        return account

    def set_active(self, account_id: str, is_active: bool) -> VirtualAccount:
        """Activate or deactivate an account; inactive accounts refuse postings"""
        def _set():
            account = self.store.get_account_for_update(account_id)
            account.is_active = is_active
            self.store.save_account(account)
            return account
        return self.store.run_in_transaction(_set)

    def _create(self, user_id: str, display_name: Optional[str]) -> VirtualAccount:
        now = datetime.now(timezone.utc)
        account = VirtualAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=self._generate_account_number(),
            bank_name=self.bank_name,
            display_name=display_name or (
                f"{self.bank_name} Lender Float" if user_id == self.lender_owner_id
                else f"{self.bank_name} / {user_id}"
            ),
            balance=Money.zero(self.currency)
        )
        self.store.insert_account(account)
        return account

    def _generate_account_number(self) -> str:
        """Prefix followed by 12 random digits"""
        for _ in range(10):
            number = f"{self.account_number_prefix}{secrets.randbelow(10 ** 12):012d}"
            if not self.store.account_number_taken(number):
                return number
        raise ValidationError("Could not allocate a unique account number")

    # Postings inside an enclosing transaction

    def lock(self, account_ids: Iterable[str]) -> Dict[str, VirtualAccount]:
        """Take row locks on accounts in id order and return them by id"""
        locked = {}
        for account_id in sorted(set(a for a in account_ids if a)):
            locked[account_id] = self.store.get_account_for_update(account_id)
        return locked

    def post_credit(self, account_id: str, amount: Money) -> VirtualAccount:
        self._check_amount(amount)
        account = self.store.get_account_for_update(account_id)
        self._check_active(account)
        account.balance = account.balance + amount
        self.store.save_account(account)
        return account

    def post_debit(self, account_id: str, amount: Money, allow_overdraft: bool = False) -> VirtualAccount:
        """
        Raises:
            InsufficientFundsError: amount exceeds the balance read under the row lock
        """
        self._check_amount(amount)
        account = self.store.get_account_for_update(account_id)
        self._check_active(account)
        if not allow_overdraft and amount > account.balance:
            raise InsufficientFundsError(account_id, str(amount.amount), str(account.balance.amount))
        account.balance = account.balance - amount
        self.store.save_account(account)
        return account

    # Standalone deposits and withdrawals

    def credit(self, account_id: str, amount: Money, reference: str,
               gateway: str = "bank_transfer") -> Payment:
        """Deposit into an account from outside the ledger"""
        payment, _ = self.process_transfer(PaymentType.DEPOSIT, account_id, amount, reference, gateway)
        return payment

    def debit(self, account_id: str, amount: Money, reference: str,
              gateway: str = "bank_transfer") -> Payment:
        """Withdraw from an account to outside the ledger"""
        payment, _ = self.process_transfer(PaymentType.WITHDRAWAL, account_id, amount, reference, gateway)
        return payment

    def process_transfer(self, payment_type: PaymentType, account_id: str, amount: Money,
                         reference: str, gateway: str) -> Tuple[Payment, bool]:
        """
        Post a deposit or withdrawal, idempotent on (gateway, reference).
        The flag is False when the reference was already posted.
        """
        self._check_amount(amount)
        if not reference:
            raise ValidationError("A payment reference is required")

        def _post():
            existing = self.store.find_payment_by_reference(gateway, reference)
            if existing:
                if (existing.payment_type != payment_type or existing.amount != amount
                        or account_id not in (existing.credit_account_id, existing.debit_account_id)):
                    raise ValidationError(
                        f"Reference '{reference}' was already used for a different payment",
                        {"reference": reference, "payment_id": existing.id}
                    )
                return existing, False

            if payment_type == PaymentType.DEPOSIT:
                self.post_credit(account_id, amount)
                debit_id, credit_id = None, account_id
            else:
                self.post_debit(account_id, amount)
                debit_id, credit_id = account_id, None

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                amount=amount,
                payment_type=payment_type,
                reference=reference,
                gateway=gateway,
                status=PaymentStatus.COMPLETED,
                debit_account_id=debit_id,
                credit_account_id=credit_id,
                processed_at=now
            )
            self.store.insert_payment(payment)
            return payment, True

        payment, posted = self.store.run_in_transaction(_post)
        if posted:
            log_action(self.logger, "info", f"Account {payment_type.value} posted",
                       action=payment_type.value, resource=account_id,
                       extra={"payment_id": payment.id, "amount": str(amount.amount), "reference": reference})
        return payment, posted

    # Reconciliation

    def recompute_balance(self, account_id: str) -> Money:
        """Replay completed payments touching the account"""
        self.store.get_account(account_id)
        balance = Money.zero(self.currency)
        for payment in self.store.payments_for_account(account_id):
            if payment.status != PaymentStatus.COMPLETED:
                continue
            if payment.credit_account_id == account_id:
                balance = balance + payment.amount
            if payment.debit_account_id == account_id:
                balance = balance - payment.amount
        return balance

    def reconcile(self, account_id: str) -> ReconciliationReport:
        account = self.store.get_account(account_id)
        payments = [p for p in self.store.payments_for_account(account_id)
                    if p.status == PaymentStatus.COMPLETED]
        report = ReconciliationReport(
            account_id=account_id,
            stored_balance=account.balance,
            computed_balance=self.recompute_balance(account_id),
            payment_count=len(payments)
        )
        if not report.is_balanced:
            self.logger.error(
                f"Account {account_id} out of balance: stored {report.stored_balance.to_string()}, "
                f"replayed {report.computed_balance.to_string()}"
            )
        return report

    def reconcile_all(self) -> List[ReconciliationReport]:
        return [self.reconcile(account.id) for account in self.store.all_accounts()]

    # Validation

    def _check_amount(self, amount: Money) -> None:
        if not isinstance(amount, Money) or amount.currency != self.currency:
            raise InvalidAmountError(f"Amount must be {self.currency.code} money",
                                     {"amount": str(amount)})
        if not amount.is_positive():
            raise InvalidAmountError(f"Amount must be positive, got {amount.to_string()}",
                                     {"amount": str(amount.amount)})

    @staticmethod
    def _check_active(account: VirtualAccount) -> None:
        if not account.is_active:
            raise ValidationError(f"Virtual account {account.account_number} is inactive",
                                  {"account_id": account.id})
