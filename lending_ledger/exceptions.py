"""Typed failures raised by the lending ledger.

Every error is scoped to a single request. Callers (the HTTP adapter in
particular) map each class to a distinct user-facing message, so nothing
here is ever re-raised as a bare ``Exception``.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all lending ledger errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(LedgerError, ValueError):
    """Bad input shape or range, rejected before any transaction opens."""


class InvalidAmountError(ValidationError):
    """An amount is zero, negative or outside the allowed bounds."""


class InvalidTermError(ValidationError):
    """A repayment term is not a positive whole number of periods."""


class InvalidRateError(ValidationError):
    """An interest rate lies outside [0, 1]."""


class NotFoundError(LedgerError):
    """A referenced record does not exist."""


class LoanNotFoundError(NotFoundError):

    def __init__(self, loan_id: str):
        super().__init__(f"Loan '{loan_id}' not found", {"loan_id": loan_id})


class AccountNotFoundError(NotFoundError):

    def __init__(self, account_ref: str):
        super().__init__(f"Virtual account '{account_ref}' not found", {"account": account_ref})


class PaymentNotFoundError(NotFoundError):

    def __init__(self, payment_id: str):
        super().__init__(f"Payment '{payment_id}' not found", {"payment_id": payment_id})


class AuthorizationError(LedgerError):
    """The calling principal lacks the permission the operation requires."""


class InvalidTransitionError(LedgerError):
    """A state machine guard refused the requested transition."""

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            f"Cannot move {entity} from {current} to {requested}",
            {"entity": entity, "current": current, "requested": requested}
        )
        self.current = current
        self.requested = requested


class LoanNotActiveError(LedgerError):
    """A repayment or fee targeted a loan that is not ACTIVE."""

    def __init__(self, loan_id: str, status: str):
        super().__init__(
            f"Loan '{loan_id}' is {status}, not active for payments",
            {"loan_id": loan_id, "status": status}
        )
        self.status = status


class OverpaymentError(LedgerError):
    """A repayment exceeds the outstanding balance."""

    def __init__(self, loan_id: str, amount: str, outstanding: str):
        super().__init__(
            f"Payment of {amount} exceeds outstanding balance {outstanding}",
            {"loan_id": loan_id, "amount": amount, "outstanding": outstanding}
        )


class InsufficientFundsError(LedgerError):
    """A debit exceeds the account's current balance."""

    def __init__(self, account_id: str, requested: str, available: str):
        super().__init__(
            f"Insufficient funds: requested {requested}, available {available}",
            {"account_id": account_id, "requested": requested, "available": available}
        )


class AlreadyDisbursedError(LedgerError):
    """A loan's principal has already been paid out."""

    def __init__(self, loan_id: str, payment_id: str):
        super().__init__(
            f"Loan '{loan_id}' was already disbursed",
            {"loan_id": loan_id, "payment_id": payment_id}
        )


class PersistenceConflictError(LedgerError):
    """A transaction lost a concurrency race; the caller must retry."""
