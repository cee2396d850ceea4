"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Events are appended after the business transaction commits, so the chain
only ever records work that actually happened.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_SUBMITTED = "loan_submitted"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_CLOSED = "loan_closed"

    # Payment events
    REPAYMENT_APPLIED = "repayment_applied"
    REPAYMENT_INITIATED = "repayment_initiated"
    PAYMENT_FAILED = "payment_failed"
    FEE_CHARGED = "fee_charged"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_CREDITED = "account_credited"
    ACCOUNT_DEBITED = "account_debited"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, payment, account
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail. Appends are serialized by a lock so two
    writers never chain onto the same previous hash.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            self._last_hash = events[-1].get('current_hash')

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash

            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Return only the most recent N events
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]

        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        return [AuditEvent.from_dict(data) for data in events_data]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        return self._last_hash
