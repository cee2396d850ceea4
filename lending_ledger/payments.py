"""
Payment Processing Module

Applies repayments, disbursements and fees to loans. Each operation runs in
one store transaction: the loan row is locked first, then the virtual
accounts involved in id order, and a failure anywhere rolls back every
write including the Payment itself.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import uuid

from .currency import Money
from .models import Loan, LoanStatus, Payment, PaymentType, PaymentStatus
from .store import LedgerStore
from .accounts import VirtualAccountManager
from .loans import close_loan
from .exceptions import (
    AlreadyDisbursedError, AuthorizationError, InvalidAmountError, InvalidTransitionError,
    LoanNotActiveError, OverpaymentError, ValidationError
)
from .logging_config import component_logger, log_action

VIRTUAL_ACCOUNT_GATEWAY = "virtual_account"
LEDGER_GATEWAY = "ledger"


class PaymentProcessor:
    """
    Moves money for loans.

    Repayments are idempotent on (gateway, reference): resending a
    reference returns the Payment it created the first time. The
    ``process_*`` variants also report whether the call moved money, so
    callers can skip notifications on a replay.
    """

    def __init__(self, store: LedgerStore, accounts: VirtualAccountManager,
                 overpayment_tolerance: Decimal = Decimal('0')):
        self.store = store
        self.accounts = accounts
        self.currency = accounts.currency
        self.tolerance = Money(overpayment_tolerance, self.currency)
        self.logger = component_logger("payments")

    # Repayments

    def apply_repayment(self, loan_id: str, amount: Money, gateway_ref: str,
                        gateway: str = "card", source_account_id: Optional[str] = None) -> Payment:
        """Apply a repayment to an ACTIVE loan and return the completed Payment"""
        payment, _ = self.process_repayment(loan_id, amount, gateway_ref, gateway, source_account_id)
        return payment

    def process_repayment(self, loan_id: str, amount: Money, gateway_ref: str, gateway: str = "card",
                          source_account_id: Optional[str] = None) -> Tuple[Payment, bool]:
        """
        Apply a repayment to an ACTIVE loan

        Args:
            loan_id: Loan being repaid
            amount: Amount paid, must be positive
            gateway_ref: Gateway's reference, the idempotency key
            gateway: "card", "bank_transfer" or "virtual_account"
            source_account_id: Account to debit for virtual_account payments
                (defaults to the borrower's own account)

        Returns:
            (Payment, applied). ``applied`` is False when the reference
            was already settled and nothing moved.

        Raises:
            LoanNotActiveError, OverpaymentError, InsufficientFundsError,
            AuthorizationError, ValidationError
        """
        self._validate_request(amount, gateway_ref, gateway)

        def _apply():
            existing = self.store.find_payment_by_reference(gateway, gateway_ref)
            if existing:
                self._check_same_request(existing, loan_id, amount)
                if existing.status == PaymentStatus.PENDING:
                    return self._confirm(existing.id)
                return existing, False

            loan = self.store.get_loan_for_update(loan_id)
            self._check_active(loan)
            applied = self._applicable_amount(loan, amount)

            payment = self._new_payment(
                amount=applied,
                payment_type=PaymentType.LOAN_REPAYMENT,
                reference=gateway_ref,
                gateway=gateway,
                loan_id=loan.id,
                debit_account_id=self._source_account(loan, gateway, source_account_id)
            )
            self.store.insert_payment(payment)
            self._settle(loan, payment)
            return payment, True

        payment, applied = self.store.run_in_transaction(_apply)
        if not applied:
            self.logger.info(f"Repayment {gateway}/{gateway_ref} already settled as {payment.id}")
            return payment, False
        log_action(self.logger, "info", "Repayment applied", action="apply_repayment",
                   resource=loan_id, extra={"payment_id": payment.id, "amount": str(payment.amount.amount),
                                            "gateway": gateway, "reference": gateway_ref})
        return payment, True

    def initiate_repayment(self, loan_id: str, amount: Money, gateway_ref: str,
                           gateway: str = "card", source_account_id: Optional[str] = None) -> Payment:
        payment, _ = self.process_initiation(loan_id, amount, gateway_ref, gateway, source_account_id)
        return payment

    def process_initiation(self, loan_id: str, amount: Money, gateway_ref: str, gateway: str = "card",
                           source_account_id: Optional[str] = None) -> Tuple[Payment, bool]:
        """
        Record a repayment the gateway has not settled yet. The PENDING
        Payment does not reduce the outstanding balance until confirmed.
        The flag is False when the reference was already recorded.
        """
        self._validate_request(amount, gateway_ref, gateway)

        def _initiate():
            existing = self.store.find_payment_by_reference(gateway, gateway_ref)
            if existing:
                self._check_same_request(existing, loan_id, amount)
                return existing, False

            loan = self.store.get_loan(loan_id)
            self._check_active(loan)
            payment = self._new_payment(
                amount=amount,
                payment_type=PaymentType.LOAN_REPAYMENT,
                reference=gateway_ref,
                gateway=gateway,
                loan_id=loan.id,
                debit_account_id=self._source_account(loan, gateway, source_account_id)
            )
            self.store.insert_payment(payment)
            return payment, True

        payment, created = self.store.run_in_transaction(_initiate)
        if created:
            self.logger.info(f"Repayment {payment.id} pending at {gateway} ({gateway_ref})")
        return payment, created

    def confirm_repayment(self, payment_id: str) -> Payment:
        payment, _ = self.process_confirmation(payment_id)
        return payment

    def process_confirmation(self, payment_id: str) -> Tuple[Payment, bool]:
        """
        Settle a PENDING repayment with the full repayment checks. The flag
        is False when the payment had already completed.

        Raises:
            InvalidTransitionError: the payment already failed
        """
        payment, settled = self.store.run_in_transaction(self._confirm, payment_id)
        if settled:
            self.logger.info(f"Repayment {payment_id} confirmed")
        return payment, settled

    def _confirm(self, payment_id: str) -> Tuple[Payment, bool]:
        payment = self.store.get_payment_for_update(payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            return payment, False
        if payment.status == PaymentStatus.FAILED:
            raise InvalidTransitionError("payment", payment.status.value, PaymentStatus.COMPLETED.value)
        if payment.payment_type != PaymentType.LOAN_REPAYMENT:
            raise ValidationError(f"Payment {payment_id} is not a loan repayment",
                                  {"payment_id": payment_id, "type": payment.payment_type.value})

        loan = self.store.get_loan_for_update(payment.loan_id)
        self._check_active(loan)
        payment.amount = self._applicable_amount(loan, payment.amount)
        self._settle(loan, payment)
        return payment, True

    def fail_payment(self, payment_id: str, reason: str) -> Payment:
        payment, _ = self.process_failure(payment_id, reason)
        return payment

    def process_failure(self, payment_id: str, reason: str) -> Tuple[Payment, bool]:
        """
        Mark a PENDING payment failed. Failing an already failed payment is
        a no-op and reports False.

        Raises:
            InvalidTransitionError: the payment already completed
        """
        if not reason or not reason.strip():
            raise ValidationError("A failure reason is required", {"payment_id": payment_id})

        def _fail():
            payment = self.store.get_payment_for_update(payment_id)
            if payment.status == PaymentStatus.FAILED:
                return payment, False
            if payment.status == PaymentStatus.COMPLETED:
                raise InvalidTransitionError("payment", payment.status.value, PaymentStatus.FAILED.value)
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = reason.strip()
            payment.processed_at = datetime.now(timezone.utc)
            self.store.save_payment(payment)
            return payment, True

        payment, failed = self.store.run_in_transaction(_fail)
        if failed:
            self.logger.warning(f"Payment {payment_id} failed: {payment.failure_reason}")
        return payment, failed

    def list_pending_payments(self) -> List[Payment]:
        return self.store.payments_with_status(PaymentStatus.PENDING)

    # Disbursement and fees

    def disburse(self, loan: Loan) -> Payment:
        """
        Pay a loan's principal from the lender float into the borrower's
        account, opening the account if needed. Runs inside the approval
        transaction; the caller saves the loan.

        Raises:
            AlreadyDisbursedError: the loan was already paid out
        """
        def _disburse():
            if loan.disbursement_payment_id:
                raise AlreadyDisbursedError(loan.id, loan.disbursement_payment_id)
            existing = self.store.find_payment_by_reference(LEDGER_GATEWAY, self._disbursement_ref(loan))
            if existing:
                raise AlreadyDisbursedError(loan.id, existing.id)

            borrower = self.accounts.ensure_account(loan.user_id)
            lender = self.accounts.lender_float()
            self.accounts.lock([borrower.id, lender.id])
            # The float may run negative: it is the lender's capital deployed
            self.accounts.post_debit(lender.id, loan.principal, allow_overdraft=True)
            self.accounts.post_credit(borrower.id, loan.principal)

            now = datetime.now(timezone.utc)
            payment = self._new_payment(
                amount=loan.principal,
                payment_type=PaymentType.DISBURSEMENT,
                reference=self._disbursement_ref(loan),
                gateway=LEDGER_GATEWAY,
                loan_id=loan.id,
                debit_account_id=lender.id,
                credit_account_id=borrower.id,
                status=PaymentStatus.COMPLETED,
                processed_at=now
            )
            self.store.insert_payment(payment)
            loan.disbursed_at = now
            loan.disbursement_payment_id = payment.id
            return payment

        return self.store.run_in_transaction(_disburse)

    def charge_fee(self, loan_id: str, amount: Money, reference: str, reason: str) -> Payment:
        payment, _ = self.process_fee(loan_id, amount, reference, reason)
        return payment

    def process_fee(self, loan_id: str, amount: Money, reference: str, reason: str) -> Tuple[Payment, bool]:
        """
        Debit a fee from the borrower's account into the lender float. Fees
        do not count toward repayment of the loan. The flag is False when
        the reference was already charged.
        """
        self._validate_request(amount, reference, LEDGER_GATEWAY)
        if not reason or not reason.strip():
            raise ValidationError("A fee reason is required")

        def _charge():
            existing = self.store.find_payment_by_reference(LEDGER_GATEWAY, reference)
            if existing:
                if existing.payment_type != PaymentType.FEE:
                    raise ValidationError(f"Reference '{reference}' was already used",
                                          {"reference": reference, "payment_id": existing.id})
                self._check_same_request(existing, loan_id, amount)
                return existing, False

            loan = self.store.get_loan_for_update(loan_id)
            self._check_active(loan)
            borrower = self.accounts.get_account_for_user(loan.user_id)
            lender = self.accounts.lender_float()
            self.accounts.lock([borrower.id, lender.id])
            self.accounts.post_debit(borrower.id, amount)
            self.accounts.post_credit(lender.id, amount)

            payment = self._new_payment(
                amount=amount,
                payment_type=PaymentType.FEE,
                reference=reference,
                gateway=LEDGER_GATEWAY,
                loan_id=loan.id,
                debit_account_id=borrower.id,
                credit_account_id=lender.id,
                status=PaymentStatus.COMPLETED,
                processed_at=datetime.now(timezone.utc),
                description=reason.strip()
            )
            self.store.insert_payment(payment)
            return payment, True

        payment, charged = self.store.run_in_transaction(_charge)
        if charged:
            log_action(self.logger, "info", "Fee charged", action="charge_fee", resource=loan_id,
                       extra={"payment_id": payment.id, "amount": str(amount.amount), "reason": reason})
        return payment, charged

    # Balances

    def repaid_total(self, loan_id: str) -> Money:
        """Sum of completed repayments"""
        return Money.sum(
            (p.amount for p in self.store.payments_for_loan(loan_id)
             if p.payment_type == PaymentType.LOAN_REPAYMENT and p.status == PaymentStatus.COMPLETED),
            self.currency
        )

    def outstanding_for(self, loan: Loan) -> Money:
        return loan.total_amount - self.repaid_total(loan.id)

    def outstanding_balance(self, loan_id: str) -> Money:
        loan = self.store.get_loan(loan_id)
        if loan.status in (LoanStatus.PENDING, LoanStatus.REJECTED):
            return Money.zero(self.currency)
        return self.outstanding_for(loan)

    # Internals

    def _settle(self, loan: Loan, payment: Payment) -> None:
        """Move the money for a repayment, complete it and close the loan when repaid"""
        lender = self.accounts.lender_float()
        payment.credit_account_id = lender.id
        self.accounts.lock([payment.debit_account_id, lender.id])
        if payment.debit_account_id:
            self.accounts.post_debit(payment.debit_account_id, payment.amount)
        self.accounts.post_credit(lender.id, payment.amount)

        payment.status = PaymentStatus.COMPLETED
        payment.processed_at = datetime.now(timezone.utc)
        self.store.save_payment(payment)

        loan.amount_repaid = loan.amount_repaid + payment.amount
        if not self.outstanding_for(loan).is_positive():
            close_loan(self.store, loan)
        self.store.save_loan(loan)

    def _applicable_amount(self, loan: Loan, amount: Money) -> Money:
        """
        Amount to record against the loan. Anything within the overpayment
        tolerance above the outstanding balance is not collected.
        """
        outstanding = self.outstanding_for(loan)
        if amount > outstanding + self.tolerance:
            raise OverpaymentError(loan.id, str(amount.amount), str(outstanding.amount))
        return min(amount, outstanding)

    def _source_account(self, loan: Loan, gateway: str, source_account_id: Optional[str]) -> Optional[str]:
        """Borrower's account to debit; a loan is only ever repaid from its own borrower's account"""
        if gateway != VIRTUAL_ACCOUNT_GATEWAY:
            return None
        if not source_account_id:
            return self.accounts.get_account_for_user(loan.user_id).id
        account = self.accounts.get_account(source_account_id)
        if account.user_id != loan.user_id:
            raise AuthorizationError(
                f"Account {account.id} does not belong to the borrower of loan {loan.id}",
                {"account_id": account.id, "loan_id": loan.id}
            )
        return account.id

    def _new_payment(self, amount: Money, payment_type: PaymentType, reference: str, gateway: str,
                     loan_id: Optional[str] = None, debit_account_id: Optional[str] = None,
                     credit_account_id: Optional[str] = None,
                     status: PaymentStatus = PaymentStatus.PENDING,
                     processed_at: Optional[datetime] = None,
                     description: Optional[str] = None) -> Payment:
        now = datetime.now(timezone.utc)
        return Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            amount=amount,
            payment_type=payment_type,
            reference=reference,
            gateway=gateway,
            status=status,
            loan_id=loan_id,
            debit_account_id=debit_account_id,
            credit_account_id=credit_account_id,
            description=description,
            processed_at=processed_at
        )

    def _validate_request(self, amount: Money, reference: str, gateway: str) -> None:
        if not isinstance(amount, Money) or amount.currency != self.currency:
            raise InvalidAmountError(f"Amount must be {self.currency.code} money", {"amount": str(amount)})
        if not amount.is_positive():
            raise InvalidAmountError(f"Amount must be positive, got {amount.to_string()}",
                                     {"amount": str(amount.amount)})
        if not reference or not reference.strip():
            raise ValidationError("A gateway reference is required")
        if not gateway:
            raise ValidationError("A gateway is required")

    @staticmethod
    def _check_active(loan: Loan) -> None:
        if loan.status != LoanStatus.ACTIVE:
            raise LoanNotActiveError(loan.id, loan.status.value)

    def _check_same_request(self, existing: Payment, loan_id: str, amount: Money) -> None:
        # A repayment clamped to the outstanding balance was recorded for less than requested
        clamped = existing.amount < amount <= existing.amount + self.tolerance
        if existing.loan_id != loan_id or (existing.amount != amount and not clamped):
            raise ValidationError(
                f"Reference '{existing.reference}' was already used for a different payment",
                {"reference": existing.reference, "payment_id": existing.id,
                 "loan_id": existing.loan_id, "amount": str(existing.amount.amount)}
            )

    @staticmethod
    def _disbursement_ref(loan: Loan) -> str:
        return f"DISB-{loan.id}"
