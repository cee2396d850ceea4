"""
Event System Module

Publish/subscribe dispatcher for domain events. This is the seam where
notification delivery (email, push, SMS) plugs in: the ledger publishes
after each commit and never waits on, or fails because of, a subscriber.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import component_logger


class DomainEvent(Enum):
    """Domain events raised by the ledger"""

    # Loan events
    LOAN_SUBMITTED = "loan.submitted"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_DISBURSED = "loan.disbursed"
    LOAN_CLOSED = "loan.closed"

    # Payment events
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_FAILED = "payment.failed"

    # Account events
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_CREDITED = "account.credited"
    ACCOUNT_DEBITED = "account.debited"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = component_logger("events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers. Handler errors are logged, never raised."""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def create_loan_event(event_type: DomainEvent, loan, actor_id: Optional[str] = None) -> EventPayload:
    """Create a loan-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data={
            "user_id": loan.user_id,
            "status": loan.status.value,
            "principal": str(loan.principal.amount),
            "total_amount": str(loan.total_amount.amount),
            "amount_repaid": str(loan.amount_repaid.amount),
            "currency": loan.currency.code,
            "actor_id": actor_id
        }
    )


def create_payment_event(event_type: DomainEvent, payment) -> EventPayload:
    """Create a payment-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="payment",
        entity_id=payment.id,
        data={
            "loan_id": payment.loan_id,
            "type": payment.payment_type.value,
            "amount": str(payment.amount.amount),
            "currency": payment.amount.currency.code,
            "reference": payment.reference,
            "gateway": payment.gateway,
            "status": payment.status.value
        }
    )


def create_account_event(event_type: DomainEvent, account, amount=None) -> EventPayload:
    """Create an account-related event"""
    data = {
        "user_id": account.user_id,
        "account_number": account.account_number,
        "balance": str(account.balance.amount),
        "currency": account.balance.currency.code
    }
    if amount is not None:
        data["amount"] = str(amount.amount)
    return EventPayload(
        event_type=event_type,
        entity_type="account",
        entity_id=account.id,
        data=data
    )
