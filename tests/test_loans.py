"""
Test suite for the loan state machine

Tests application validation, the one-open-loan rule, approval with
disbursement, rejection, and the transition guard.
"""

import pytest
import threading
from decimal import Decimal

from lending_ledger.config import LedgerConfig
from lending_ledger.currency import Money, Currency
from lending_ledger.storage import InMemoryStorage
from lending_ledger.service import build_ledger
from lending_ledger.models import LoanStatus, PaymentType, PaymentStatus
from lending_ledger.loans import apply_transition, ALLOWED_TRANSITIONS
from lending_ledger.exceptions import (
    InvalidAmountError, InvalidTermError, InvalidRateError, InvalidTransitionError,
    LoanNotFoundError, ValidationError
)


def ngn(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.NGN)


class TestLoanApplication:
    """Test submitting loan applications"""

    def setup_method(self):
        self.ledger = build_ledger(LedgerConfig(database_url="memory://"), storage=InMemoryStorage())
        self.machine = self.ledger.state_machine

    def test_submit_creates_pending_loan(self):
        """A valid application is PENDING and priced at the default rate"""
        loan = self.machine.submit("user-1", "100000", "Working capital", 12)

        assert loan.status == LoanStatus.PENDING
        assert loan.principal == ngn(100000)
        assert loan.rate == Decimal('0.15')
        assert loan.total_amount == ngn(115000)
        assert loan.monthly_payment == ngn(9583)
        assert loan.final_installment == ngn(9587)
        assert loan.amount_repaid.is_zero()
        assert self.machine.get_loan(loan.id).status == LoanStatus.PENDING

    def test_submit_records_history(self):
        """The first history entry has no previous status"""
        loan = self.machine.submit("user-1", 50000, "School fees", 6)
        history = self.machine.get_history(loan.id)

        assert len(history) == 1
        assert history[0].from_status is None
        assert history[0].to_status == LoanStatus.PENDING
        assert history[0].actor_id == "user-1"

    def test_amount_bounds(self):
        """Amounts outside the configured bounds are refused"""
        with pytest.raises(InvalidAmountError):
            self.machine.submit("user-1", "9999", "Too small", 12)
        with pytest.raises(InvalidAmountError):
            self.machine.submit("user-1", "1000001", "Too large", 12)
        with pytest.raises(InvalidAmountError):
            self.machine.submit("user-1", 100000.0, "Float", 12)
        assert self.machine.list_loans_for_user("user-1") == []

    def test_term_bounds(self):
        """Terms outside the configured bounds are refused"""
        for term in (2, 61, 0, True):
            with pytest.raises(InvalidTermError):
                self.machine.submit("user-1", "50000", "Rent", term)

    def test_purpose_required(self):
        """A blank purpose is refused"""
        with pytest.raises(ValidationError):
            self.machine.submit("user-1", "50000", "   ", 12)

    def test_one_open_loan_per_user(self):
        """A second application while one is open is refused"""
        self.machine.submit("user-1", "50000", "First", 12)
        with pytest.raises(ValidationError, match="already have an active loan"):
            self.machine.submit("user-1", "20000", "Second", 6)
        assert len(self.machine.list_loans_for_user("user-1")) == 1

    def test_new_application_after_rejection(self):
        """Rejected loans do not block a new application"""
        loan = self.machine.submit("user-1", "50000", "First", 12)
        self.machine.reject(loan.id, "officer", "Insufficient income")

        second = self.machine.submit("user-1", "20000", "Second", 6)
        assert second.status == LoanStatus.PENDING

    def test_multiple_open_loans_when_allowed(self):
        """The rule can be relaxed by configuration"""
        ledger = build_ledger(
            LedgerConfig(database_url="memory://", allow_multiple_open_loans=True),
            storage=InMemoryStorage()
        )
        ledger.state_machine.submit("user-1", "50000", "First", 12)
        ledger.state_machine.submit("user-1", "20000", "Second", 6)
        assert len(ledger.list_loans_for_user("user-1")) == 2

    def test_concurrent_applications_admit_one(self):
        """Racing applications from one user create exactly one loan"""
        barrier = threading.Barrier(5)
        outcomes = []

        def apply(n):
            barrier.wait()
            try:
                self.machine.submit("user-1", "50000", f"Attempt {n}", 12)
                outcomes.append("ok")
            except ValidationError:
                outcomes.append("refused")

        threads = [threading.Thread(target=apply, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("refused") == 4
        assert len(self.machine.list_loans_for_user("user-1")) == 1


class TestLoanDecisions:
    """Test approval, disbursement and rejection"""

    def setup_method(self):
        self.ledger = build_ledger(LedgerConfig(database_url="memory://"), storage=InMemoryStorage())
        self.machine = self.ledger.state_machine
        self.loan = self.machine.submit("user-1", "50000", "Stock", 12)

    def test_approve_disburses_and_activates(self):
        """Approval reprices, disburses and leaves the loan ACTIVE"""
        loan = self.machine.approve(self.loan.id, "officer", 720, "0.2")

        assert loan.status == LoanStatus.ACTIVE
        assert loan.rate == Decimal('0.2')
        assert loan.total_amount == ngn(60000)
        assert loan.monthly_payment == ngn(5000)
        assert loan.score == 720
        assert loan.approver_id == "officer"
        assert loan.approved_at is not None
        assert loan.disbursed_at is not None

        payment = self.ledger.store.get_payment(loan.disbursement_payment_id)
        assert payment.payment_type == PaymentType.DISBURSEMENT
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.amount == ngn(50000)

        borrower = self.ledger.accounts.get_account_for_user("user-1")
        assert borrower.balance == ngn(50000)
        assert self.ledger.accounts.lender_float().balance == ngn(-50000)

    def test_approval_history(self):
        """History records PENDING, APPROVED and ACTIVE in order"""
        self.machine.approve(self.loan.id, "officer", 720, "0.2")
        statuses = [c.to_status for c in self.machine.get_history(self.loan.id)]
        assert statuses == [LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE]

    def test_approve_twice_refused(self):
        """A loan is disbursed at most once"""
        self.machine.approve(self.loan.id, "officer", 720, "0.2")
        with pytest.raises(InvalidTransitionError):
            self.machine.approve(self.loan.id, "officer", 720, "0.2")

        disbursements = [p for p in self.ledger.store.payments_for_loan(self.loan.id)
                         if p.payment_type == PaymentType.DISBURSEMENT]
        assert len(disbursements) == 1

    def test_approve_invalid_rate(self):
        """An out-of-range rate leaves the loan untouched"""
        with pytest.raises(InvalidRateError):
            self.machine.approve(self.loan.id, "officer", 720, "1.2")
        assert self.machine.get_loan(self.loan.id).status == LoanStatus.PENDING

    def test_approve_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.machine.approve("missing", "officer", 720, "0.2")

    def test_reject(self):
        """Rejection records the reviewer and reason"""
        loan = self.machine.reject(self.loan.id, "officer", "  Incomplete documents ")

        assert loan.status == LoanStatus.REJECTED
        assert loan.reviewer_id == "officer"
        assert loan.rejection_reason == "Incomplete documents"
        assert loan.rejected_at is not None
        history = self.machine.get_history(self.loan.id)
        assert history[-1].reason == "Incomplete documents"

    def test_reject_requires_reason(self):
        with pytest.raises(ValidationError):
            self.machine.reject(self.loan.id, "officer", "")

    def test_reject_after_approval_refused(self):
        """Only PENDING loans can be rejected"""
        self.machine.approve(self.loan.id, "officer", 720, "0.2")
        with pytest.raises(InvalidTransitionError):
            self.machine.reject(self.loan.id, "officer", "Changed my mind")

    def test_schedule_due_dates_follow_disbursement(self):
        """Installments fall due monthly starting a month after disbursement"""
        loan = self.machine.approve(self.loan.id, "officer", 720, "0.2")
        schedule = self.machine.schedule_for(loan)

        assert schedule.installments[0].due_date is not None
        assert schedule.installments[0].due_date > loan.disbursed_at.date()
        assert len(schedule.installments) == 12


class TestTransitionGuard:
    """Test the transition table"""

    def setup_method(self):
        self.ledger = build_ledger(LedgerConfig(database_url="memory://"), storage=InMemoryStorage())
        self.loan = self.ledger.state_machine.submit("user-1", "50000", "Stock", 12)

    def test_terminal_states_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[LoanStatus.CLOSED] == frozenset()
        assert ALLOWED_TRANSITIONS[LoanStatus.REJECTED] == frozenset()

    def test_pending_cannot_close(self):
        """Skipping states is refused"""
        with pytest.raises(InvalidTransitionError) as exc_info:
            apply_transition(self.ledger.store, self.loan, LoanStatus.CLOSED)
        assert exc_info.value.current == "pending"
        assert exc_info.value.requested == "closed"
        assert self.loan.status == LoanStatus.PENDING

    def test_close_requires_active_loan(self):
        """close() on a pending loan fails and leaves it untouched"""
        with pytest.raises(InvalidTransitionError):
            with self.ledger.store.storage.atomic():
                self.ledger.state_machine.close(self.loan, "officer")
        assert self.loan.closed_at is None
        assert self.ledger.state_machine.get_loan(self.loan.id).status == LoanStatus.PENDING
