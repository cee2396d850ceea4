"""
Loan Module

Loan lifecycle state machine. Loans move PENDING -> APPROVED -> ACTIVE ->
CLOSED, or PENDING -> REJECTED. Every transition goes through
``apply_transition``, which enforces the allowed moves and appends to the
loan's status history; nothing else writes ``Loan.status``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Union
import uuid

from .currency import Money, parse_amount
from .amortization import compute_schedule, add_months, validate_rate, Schedule
from .config import LedgerConfig
from .models import Loan, LoanStatus, LoanStatusChange
from .store import LedgerStore
from .exceptions import (
    InvalidAmountError, InvalidTermError, InvalidTransitionError, ValidationError
)
from .logging_config import component_logger, log_action


ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.CLOSED}),
    LoanStatus.CLOSED: frozenset(),
    LoanStatus.REJECTED: frozenset(),
}


def _history_entry(loan: Loan, from_status: Optional[LoanStatus], to_status: LoanStatus,
                   actor_id: Optional[str], reason: Optional[str]) -> LoanStatusChange:
    now = datetime.now(timezone.utc)
    return LoanStatusChange(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        reason=reason
    )


def apply_transition(store: LedgerStore, loan: Loan, to_status: LoanStatus,
                     actor_id: Optional[str] = None, reason: Optional[str] = None) -> LoanStatusChange:
    """
    Move a loan to ``to_status`` and record the change. Must run inside the
    transaction that holds the loan's row lock; the caller saves the loan.

    Raises:
        InvalidTransitionError: the move is not allowed from the current status
    """
    if to_status not in ALLOWED_TRANSITIONS[loan.status]:
        raise InvalidTransitionError("loan", loan.status.value, to_status.value)

    change = _history_entry(loan, loan.status, to_status, actor_id, reason)
    loan.status = to_status
    store.add_status_change(change)
    return change


def close_loan(store: LedgerStore, loan: Loan, actor_id: Optional[str] = None) -> None:
    """ACTIVE -> CLOSED once the outstanding balance reaches zero"""
    apply_transition(store, loan, LoanStatus.CLOSED, actor_id, reason="Repaid in full")
    loan.closed_at = datetime.now(timezone.utc)


class LoanStateMachine:
    """
    Governs loan applications and decisions.

    Approval disburses through the payment processor in the same
    transaction, so an approved loan is always funded and ACTIVE.
    """

    def __init__(self, store: LedgerStore, processor, config: LedgerConfig):
        self.store = store
        self.processor = processor
        self.config = config
        self.currency = config.ledger_currency
        self.logger = component_logger("loans")

    def submit(self, user_id: str, amount: Union[Money, Decimal, int, str], purpose: str,
               term: int) -> Loan:
        """
        Create a PENDING loan application priced at the default rate

        Args:
            user_id: Applicant
            amount: Principal requested
            purpose: What the loan is for
            term: Number of monthly installments

        Returns:
            Created Loan

        Raises:
            InvalidAmountError, InvalidTermError, ValidationError
        """
        principal = self._to_money(amount)
        self._validate_application(user_id, principal, purpose, term)
        schedule = compute_schedule(principal, self.config.default_rate, term)

        def _create():
            if not self.config.allow_multiple_open_loans:
                self.store.lock_applicant(user_id)
                open_loans = [l for l in self.store.find_loans(user_id=user_id) if l.status.is_open]
                if open_loans:
                    raise ValidationError(
                        "You already have an active loan application. "
                        "Please wait for approval or complete your current loan.",
                        {"user_id": user_id, "loan_id": open_loans[0].id,
                         "status": open_loans[0].status.value}
                    )

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                principal=principal,
                purpose=purpose.strip(),
                term=term,
                rate=schedule.rate,
                monthly_payment=schedule.installment,
                final_installment=schedule.final_installment,
                total_amount=schedule.total_amount
            )
            self.store.insert_loan(loan)
            self.store.add_status_change(_history_entry(loan, None, LoanStatus.PENDING, user_id, None))
            return loan

        loan = self.store.run_in_transaction(_create)
        log_action(self.logger, "info", "Loan application submitted", user_id=user_id,
                   action="submit_loan", resource=loan.id,
                   extra={"principal": str(principal.amount), "term": term})
        return loan

    def approve(self, loan_id: str, approver_id: str, score: Optional[int],
                rate: Union[Decimal, str]) -> Loan:
        """
        Approve a PENDING loan at ``rate`` and disburse it

        Raises:
            InvalidTransitionError: the loan is not PENDING
            InvalidRateError: rate outside [0, 1]
        """
        if not approver_id:
            raise ValidationError("An approver is required")
        rate = validate_rate(rate)
        if score is not None and (isinstance(score, bool) or not isinstance(score, int) or score < 0):
            raise ValidationError(f"Credit score must be a non-negative integer, got {score!r}",
                                  {"score": str(score)})

        def _approve():
            loan = self.store.get_loan_for_update(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidTransitionError("loan", loan.status.value, LoanStatus.APPROVED.value)

            schedule = compute_schedule(loan.principal, rate, loan.term)
            loan.rate = schedule.rate
            loan.monthly_payment = schedule.installment
            loan.final_installment = schedule.final_installment
            loan.total_amount = schedule.total_amount
            loan.score = score
            loan.approver_id = approver_id
            loan.approved_at = datetime.now(timezone.utc)

            apply_transition(self.store, loan, LoanStatus.APPROVED, approver_id)
            self.processor.disburse(loan)
            apply_transition(self.store, loan, LoanStatus.ACTIVE, approver_id, reason="Disbursed")
            self.store.save_loan(loan)
            return loan

        loan = self.store.run_in_transaction(_approve)
        log_action(self.logger, "info", "Loan approved and disbursed", user_id=approver_id,
                   action="approve_loan", resource=loan.id,
                   extra={"rate": str(loan.rate), "score": score,
                          "total_amount": str(loan.total_amount.amount)})
        return loan

    def reject(self, loan_id: str, reviewer_id: str, reason: str) -> Loan:
        """
        Reject a PENDING loan

        Raises:
            ValidationError: empty reason
            InvalidTransitionError: the loan is not PENDING
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"loan_id": loan_id})
        if not reviewer_id:
            raise ValidationError("A reviewer is required")

        def _reject():
            loan = self.store.get_loan_for_update(loan_id)
            apply_transition(self.store, loan, LoanStatus.REJECTED, reviewer_id, reason.strip())
            loan.reviewer_id = reviewer_id
            loan.rejection_reason = reason.strip()
            loan.rejected_at = datetime.now(timezone.utc)
            self.store.save_loan(loan)
            return loan

        loan = self.store.run_in_transaction(_reject)
        log_action(self.logger, "info", "Loan rejected", user_id=reviewer_id,
                   action="reject_loan", resource=loan.id, extra={"reason": loan.rejection_reason})
        return loan

    def close(self, loan: Loan, actor_id: Optional[str] = None) -> None:
        close_loan(self.store, loan, actor_id)

    def schedule_for(self, loan: Loan) -> Schedule:
        """Repayment schedule of a loan, due dates running monthly from disbursement"""
        first_due = None
        if loan.disbursed_at:
            first_due = add_months(loan.disbursed_at.date(), 1)
        return compute_schedule(loan.principal, loan.rate, loan.term, first_due)

    def get_loan(self, loan_id: str) -> Loan:
        return self.store.get_loan(loan_id)

    def list_loans_for_user(self, user_id: str) -> List[Loan]:
        return self.store.find_loans(user_id=user_id)

    def get_history(self, loan_id: str) -> List[LoanStatusChange]:
        self.store.get_loan(loan_id)
        return self.store.get_status_history(loan_id)

    def _to_money(self, amount: Union[Money, Decimal, int, str]) -> Money:
        if isinstance(amount, Money):
            if amount.currency != self.currency:
                raise InvalidAmountError(f"Loans are issued in {self.currency.code}",
                                         {"currency": amount.currency.code})
            return amount
        return parse_amount(amount, self.currency)

    def _validate_application(self, user_id: str, principal: Money, purpose: str, term: int) -> None:
        if not user_id:
            raise ValidationError("An applicant is required")

        minimum = Money(Decimal(self.config.min_loan_amount), self.currency)
        maximum = Money(Decimal(self.config.max_loan_amount), self.currency)
        if principal < minimum or principal > maximum:
            raise InvalidAmountError(
                f"Loan amount must be between {minimum.to_string()} and {maximum.to_string()}",
                {"amount": str(principal.amount), "min": str(minimum.amount), "max": str(maximum.amount)}
            )

        if isinstance(term, bool) or not isinstance(term, int):
            raise InvalidTermError(f"Term must be a whole number of months, got {term!r}",
                                   {"term": str(term)})
        if term < self.config.min_term_months or term > self.config.max_term_months:
            raise InvalidTermError(
                f"Loan term must be between {self.config.min_term_months} and "
                f"{self.config.max_term_months} months",
                {"term": term}
            )

        if not purpose or not purpose.strip():
            raise ValidationError("Loan purpose is required", {"purpose": purpose})
