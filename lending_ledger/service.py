"""
Ledger Service

Entry point for every ledger operation. Checks permissions, delegates to
the state machine, payment processor and account manager, then records
audit events and publishes domain events once the work has committed.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .currency import Money, parse_amount
from .config import LedgerConfig, get_config
from .storage import StorageInterface, create_storage
from .store import LedgerStore
from .models import Loan, LoanStatus, LoanStatusChange, Payment, PaymentType, VirtualAccount
from .amortization import Schedule, remaining_balance, repayment_progress
from .accounts import VirtualAccountManager, ReconciliationReport
from .loans import LoanStateMachine
from .payments import PaymentProcessor
from .audit import AuditTrail, AuditEventType
from .events import (
    EventDispatcher, DomainEvent, create_loan_event, create_payment_event, create_account_event
)
from .rbac import Permission, PrincipalProvider, StaticPrincipalProvider
from .scoring import CreditScorer, FixedScoreCreditScorer
from .logging_config import component_logger, log_action


class LedgerService:
    """
    Loan lifecycle and repayment ledger.

    Components share one LedgerStore passed in at construction. Audit and
    event side effects happen only after the transaction commits, so a
    rolled-back operation leaves no trace in either.
    """

    def __init__(
        self,
        store: LedgerStore,
        state_machine: LoanStateMachine,
        processor: PaymentProcessor,
        accounts: VirtualAccountManager,
        principals: PrincipalProvider,
        scorer: CreditScorer,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.store = store
        self.state_machine = state_machine
        self.processor = processor
        self.accounts = accounts
        self.principals = principals
        self.scorer = scorer
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.currency = accounts.currency
        self.logger = component_logger("service")

    # Loans

    def submit_application(self, user_id: str, amount: Union[Money, Decimal, int, str],
                           purpose: str, term: int) -> Loan:
        loan = self.state_machine.submit(user_id, amount, purpose, term)
        self._audit(AuditEventType.LOAN_SUBMITTED, "loan", loan.id, user_id, {
            "principal": loan.principal.amount,
            "term": loan.term,
            "purpose": loan.purpose
        })
        self._publish(create_loan_event(DomainEvent.LOAN_SUBMITTED, loan, user_id))
        return loan

    def decide(self, loan_id: str, approver_id: str, approve: bool,
               score: Optional[int] = None, rate: Optional[Union[Decimal, str]] = None,
               reason: Optional[str] = None) -> Loan:
        """
        Approve (and disburse) or reject a PENDING loan

        When approving without a score or rate, the credit scorer is
        consulted for whichever is missing.

        Raises:
            AuthorizationError: the approver lacks approve:loans / reject:loans
        """
        principal = self.principals.get_principal(approver_id)

        if not approve:
            principal.require(Permission.REJECT_LOANS)
            loan = self.state_machine.reject(loan_id, approver_id, reason)
            self._audit(AuditEventType.LOAN_REJECTED, "loan", loan.id, approver_id,
                        {"reason": loan.rejection_reason})
            self._publish(create_loan_event(DomainEvent.LOAN_REJECTED, loan, approver_id))
            return loan

        principal.require(Permission.APPROVE_LOANS)
        if score is None or rate is None:
            pending = self.store.get_loan(loan_id)
            assessment = self.scorer.assess(pending.user_id, pending.principal, pending.term)
            log_action(self.logger, "info", "Credit assessment obtained", user_id=approver_id,
                       action="credit_assessment", resource=loan_id, extra=assessment.to_dict())
            score = assessment.score if score is None else score
            rate = assessment.rate if rate is None else rate

        loan = self.state_machine.approve(loan_id, approver_id, score, rate)
        self._audit(AuditEventType.LOAN_APPROVED, "loan", loan.id, approver_id, {
            "score": loan.score,
            "rate": loan.rate,
            "total_amount": loan.total_amount.amount
        })
        self._audit(AuditEventType.LOAN_DISBURSED, "loan", loan.id, approver_id, {
            "payment_id": loan.disbursement_payment_id,
            "amount": loan.principal.amount
        })
        self._publish(create_loan_event(DomainEvent.LOAN_APPROVED, loan, approver_id))
        self._publish(create_loan_event(DomainEvent.LOAN_DISBURSED, loan, approver_id))
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        return self.store.get_loan(loan_id)

    def list_loans_for_user(self, user_id: str) -> List[Loan]:
        return self.state_machine.list_loans_for_user(user_id)

    def get_loan_history(self, loan_id: str) -> List[LoanStatusChange]:
        return self.state_machine.get_history(loan_id)

    def get_schedule(self, loan_id: str) -> Schedule:
        return self.state_machine.schedule_for(self.store.get_loan(loan_id))

    def get_outstanding_balance(self, loan_id: str) -> Money:
        return self.processor.outstanding_balance(loan_id)

    def get_statement(self, loan_id: str) -> List[Payment]:
        """Every payment recorded against the loan, oldest first"""
        self.store.get_loan(loan_id)
        return self.store.payments_for_loan(loan_id)

    def loan_summary(self, loan_id: str) -> Dict[str, Any]:
        """Repayment position of a loan for dashboards"""
        loan = self.store.get_loan(loan_id)
        schedule = self.state_machine.schedule_for(loan)
        active = loan.status == LoanStatus.ACTIVE
        return {
            "loan": loan,
            "outstanding": remaining_balance(loan.total_amount, loan.amount_repaid) if active
            else self.processor.outstanding_balance(loan_id),
            "amount_repaid": loan.amount_repaid,
            "progress": repayment_progress(loan.total_amount, loan.amount_repaid),
            "next_installment": schedule.next_installment(loan.amount_repaid) if active else None
        }

    def loan_statistics(self) -> Dict[str, Any]:
        """Portfolio counts and totals by status"""
        loans = self.store.find_loans()
        stats: Dict[str, Any] = {
            "total_loans": len(loans),
            "by_status": {status.value: 0 for status in LoanStatus if status != LoanStatus.APPROVED},
            "total_disbursed": Money.zero(self.currency),
            "total_repaid": Money.zero(self.currency),
            "total_outstanding": Money.zero(self.currency)
        }
        for loan in loans:
            stats["by_status"][loan.status.value] = stats["by_status"].get(loan.status.value, 0) + 1
            if loan.status in (LoanStatus.ACTIVE, LoanStatus.CLOSED):
                stats["total_disbursed"] = stats["total_disbursed"] + loan.principal
                stats["total_repaid"] = stats["total_repaid"] + loan.amount_repaid
                stats["total_outstanding"] = stats["total_outstanding"] + loan.outstanding
        return stats

    # Payments

    def repay(self, loan_id: str, amount: Union[Money, Decimal, int, str], gateway_ref: str,
              gateway: str = "card", source_account_id: Optional[str] = None) -> Payment:
        before = self.store.get_loan(loan_id).status
        payment, applied = self.processor.process_repayment(loan_id, self._to_money(amount), gateway_ref,
                                                            gateway, source_account_id)
        if applied:
            self._after_repayment(payment, before)
        return payment

    def initiate_repayment(self, loan_id: str, amount: Union[Money, Decimal, int, str], gateway_ref: str,
                           gateway: str = "card", source_account_id: Optional[str] = None) -> Payment:
        payment, created = self.processor.process_initiation(loan_id, self._to_money(amount), gateway_ref,
                                                             gateway, source_account_id)
        if not created:
            return payment
        self._audit(AuditEventType.REPAYMENT_INITIATED, "payment", payment.id, None, {
            "loan_id": loan_id, "amount": payment.amount.amount, "gateway": gateway, "reference": gateway_ref
        })
        self._publish(create_payment_event(DomainEvent.PAYMENT_PENDING, payment))
        return payment

    def confirm_repayment(self, payment_id: str) -> Payment:
        pending = self.store.get_payment(payment_id)
        before = self.store.get_loan(pending.loan_id).status if pending.loan_id else None
        payment, settled = self.processor.process_confirmation(payment_id)
        if settled:
            self._after_repayment(payment, before)
        return payment

    def fail_payment(self, payment_id: str, reason: str) -> Payment:
        payment, failed = self.processor.process_failure(payment_id, reason)
        if failed:
            self._audit(AuditEventType.PAYMENT_FAILED, "payment", payment.id, None,
                        {"loan_id": payment.loan_id, "reason": payment.failure_reason})
            self._publish(create_payment_event(DomainEvent.PAYMENT_FAILED, payment))
        return payment

    def list_pending_payments(self) -> List[Payment]:
        return self.processor.list_pending_payments()

    def charge_fee(self, loan_id: str, amount: Union[Money, Decimal, int, str], reference: str,
                   reason: str) -> Payment:
        payment, charged = self.processor.process_fee(loan_id, self._to_money(amount), reference, reason)
        if not charged:
            return payment
        self._audit(AuditEventType.FEE_CHARGED, "payment", payment.id, None,
                    {"loan_id": loan_id, "amount": payment.amount.amount, "reason": reason})
        self._publish(create_payment_event(DomainEvent.PAYMENT_COMPLETED, payment))
        return payment

    # Virtual accounts

    def open_account(self, user_id: str, display_name: Optional[str] = None) -> VirtualAccount:
        account = self.accounts.open_account(user_id, display_name)
        self._audit(AuditEventType.ACCOUNT_CREATED, "account", account.id, user_id,
                    {"account_number": account.account_number})
        self._publish(create_account_event(DomainEvent.ACCOUNT_CREATED, account))
        return account

    def get_account_for_user(self, user_id: str) -> VirtualAccount:
        return self.accounts.get_account_for_user(user_id)

    def get_account(self, account_id: str) -> VirtualAccount:
        return self.accounts.get_account(account_id)

    def deposit(self, account_id: str, amount: Union[Money, Decimal, int, str], reference: str,
                gateway: str = "bank_transfer") -> Payment:
        payment, posted = self.accounts.process_transfer(PaymentType.DEPOSIT, account_id, self._to_money(amount),
                                                         reference, gateway)
        if not posted:
            return payment
        account = self.accounts.get_account(account_id)
        self._audit(AuditEventType.ACCOUNT_CREDITED, "account", account_id, account.user_id,
                    {"payment_id": payment.id, "amount": payment.amount.amount, "reference": reference})
        self._publish(create_account_event(DomainEvent.ACCOUNT_CREDITED, account, payment.amount))
        return payment

    def withdraw(self, account_id: str, amount: Union[Money, Decimal, int, str], reference: str,
                 gateway: str = "bank_transfer") -> Payment:
        payment, posted = self.accounts.process_transfer(PaymentType.WITHDRAWAL, account_id, self._to_money(amount),
                                                         reference, gateway)
        if not posted:
            return payment
        account = self.accounts.get_account(account_id)
        self._audit(AuditEventType.ACCOUNT_DEBITED, "account", account_id, account.user_id,
                    {"payment_id": payment.id, "amount": payment.amount.amount, "reference": reference})
        self._publish(create_account_event(DomainEvent.ACCOUNT_DEBITED, account, payment.amount))
        return payment

    def reconcile_account(self, account_id: str) -> ReconciliationReport:
        report = self.accounts.reconcile(account_id)
        if not report.is_balanced:
            self._audit(AuditEventType.RECONCILIATION_MISMATCH, "account", account_id, None, {
                "stored_balance": report.stored_balance.amount,
                "computed_balance": report.computed_balance.amount
            })
        return report

    # Internals

    def _after_repayment(self, payment: Payment, status_before: Optional[LoanStatus]) -> None:
        loan = self.store.get_loan(payment.loan_id)
        self._audit(AuditEventType.REPAYMENT_APPLIED, "payment", payment.id, loan.user_id, {
            "loan_id": loan.id,
            "amount": payment.amount.amount,
            "gateway": payment.gateway,
            "reference": payment.reference,
            "outstanding": loan.outstanding.amount
        })
        self._publish(create_payment_event(DomainEvent.PAYMENT_COMPLETED, payment))
        if loan.status == LoanStatus.CLOSED and status_before != LoanStatus.CLOSED:
            self._audit(AuditEventType.LOAN_CLOSED, "loan", loan.id, loan.user_id,
                        {"total_amount": loan.total_amount.amount})
            self._publish(create_loan_event(DomainEvent.LOAN_CLOSED, loan))

    def _to_money(self, amount: Union[Money, Decimal, int, str]) -> Money:
        if isinstance(amount, Money):
            return amount
        return parse_amount(amount, self.currency)

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               user_id: Optional[str], metadata: Dict[str, Any]) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata, user_id=user_id)

    def _publish(self, event) -> None:
        if self.event_dispatcher is not None:
            self.event_dispatcher.publish(event)


def build_ledger(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    principals: Optional[PrincipalProvider] = None,
    scorer: Optional[CreditScorer] = None,
    event_dispatcher: Optional[EventDispatcher] = None
) -> LedgerService:
    """
    Wire a LedgerService from configuration

    Args:
        config: Settings (defaults to the global configuration)
        storage: Backend to use instead of the one named by config.database_url
        principals: Role lookup (defaults to every user being a plain USER)
        scorer: Credit scorer (defaults to a fixed-score scorer)
        event_dispatcher: Dispatcher for domain events (a fresh one by default)
    """
    config = config or get_config()
    storage = storage or create_storage(config.database_url, lock_timeout=config.lock_timeout_seconds)
    store = LedgerStore(storage, max_conflict_retries=config.max_conflict_retries)

    accounts = VirtualAccountManager(
        store,
        config.ledger_currency,
        bank_name=config.bank_name,
        account_number_prefix=config.account_number_prefix,
        lender_owner_id=config.lender_owner_id
    )
    processor = PaymentProcessor(store, accounts, overpayment_tolerance=config.tolerance)
    state_machine = LoanStateMachine(store, processor, config)
    audit_trail = AuditTrail(storage) if config.enable_audit_logging else None

    return LedgerService(
        store=store,
        state_machine=state_machine,
        processor=processor,
        accounts=accounts,
        principals=principals or StaticPrincipalProvider(),
        scorer=scorer or FixedScoreCreditScorer(),
        audit_trail=audit_trail,
        event_dispatcher=event_dispatcher or EventDispatcher()
    )
