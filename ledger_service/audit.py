"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change in the ledger is logged here.

Events raised inside an atomic unit are written only after the unit
commits; a rolled-back operation leaves no audit entry.
"""

import hashlib
import json
import threading
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .currency import Money
from .identifiers import new_id
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Customer events
    CUSTOMER_CREATED = "customer_created"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_FROZEN = "account_frozen"
    ACCOUNT_UNFROZEN = "account_unfrozen"
    ACCOUNT_DORMANT = "account_dormant"
    ACCOUNT_REACTIVATED = "account_reactivated"
    ACCOUNT_CLOSED = "account_closed"

    # Journal events
    TRANSACTION_POSTED = "transaction_posted"
    TRANSACTION_REVERSED = "transaction_reversed"

    # Transfer events
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_FAILED = "transfer_failed"

    # Loan events
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_PAYMENT_MADE = "loan_payment_made"
    LOAN_PENALTY_ASSESSED = "loan_penalty_assessed"
    LOAN_PAID_OFF = "loan_paid_off"
    LOAN_DEFAULTED = "loan_defaulted"

    # Interest events
    INTEREST_POSTED = "interest_posted"

    # Batch events
    BATCH_COMPLETED = "batch_completed"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int       # Position in the chain, starting at 1
    event_type: AuditEventType
    entity_type: str    # account, transaction, transfer, loan, batch, ...
    entity_id: str
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from its stored dictionary"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: str = ""
        self._sequence = 0
        self._lock = threading.Lock()  # Serialises chaining across threads
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda e: e.get('sequence', 0))
            self._last_hash = latest.get('current_hash', "")
            self._sequence = latest.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: Actor who initiated the action

        Returns:
            The created AuditEvent, or None when the event is deferred until
            the enclosing atomic unit commits
        """
        if self.storage.in_atomic():
            self.storage.on_commit(
                lambda: self._append(event_type, entity_type, entity_id, metadata, user_id)
            )
            return None
        return self._append(event_type, entity_type, entity_id, metadata, user_id)

    def _append(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]],
        user_id: Optional[str]
    ) -> AuditEvent:
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=new_id(),
                created_at=now,
                updated_at=now,
                sequence=self._sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",  # Calculated below
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())

            self._sequence = event.sequence
            self._last_hash = event.current_hash
            return event

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

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
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        events = [e for e in self._all_events() if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

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

        events = self._all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent audit event"""
        return self._last_hash
