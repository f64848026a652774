"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every mutation of a repayment ledger is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, encode_value


class AuditEventType(Enum):
    """Types of audit events"""
    # Ledger lifecycle
    LEDGER_CREATED = "ledger_created"
    LEDGER_REFRESHED = "ledger_refreshed"
    LEDGER_CLOSED = "ledger_closed"

    # Money movements
    PAYMENT_APPLIED = "payment_applied"
    ADMIN_TRANSACTION_RECORDED = "admin_transaction_recorded"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"
    FORECLOSURE_CONFIRMED = "foreclosure_confirmed"

    # Adjustments
    WAIVER_APPLIED = "waiver_applied"
    LATE_FEES_APPLIED = "late_fees_applied"
    LEDGER_RESTRUCTURED = "ledger_restructured"

    # Status
    STATUS_OVERRIDDEN = "status_overridden"
    LEDGER_WRITTEN_OFF = "ledger_written_off"

    # Servicing records
    INTERNAL_NOTE_ADDED = "internal_note_added"
    COMMUNICATION_LOGGED = "communication_logged"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # Type of entity (ledger, transaction, ...)
    entity_id: str    # ID of the affected entity
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]  # Additional event-specific data
    user_id: Optional[str] = None  # Actor who initiated the action
    sequence: int = 0  # Position in the chain

    def __post_init__(self):
        # Decimal, date and enum values are stored as strings
        if self.metadata:
            self.metadata = encode_value(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'sequence': self.sequence,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """Append-only, hash-chained log of ledger events"""

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Tuple[str, int]:
        """Hash and sequence of the latest committed event"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return "", 0
        latest = max(events, key=lambda data: data.get('sequence', 0))
        return latest.get('current_hash', ""), latest.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        The parent is read from storage on every call, so an event saved
        inside a transaction that later rolled back is never linked to.

        Args:
            event_type: What happened
            entity_type: Kind of record affected ("ledger")
            entity_id: Record id
            metadata: Event details; Decimals, dates and enums are stringified
            user_id: Actor, when known

        Returns:
            The stored AuditEvent
        """
        with self._lock:
            previous_hash, last_sequence = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                user_id=user_id,
                metadata=metadata or {},
                sequence=last_sequence + 1
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def _query(self, filters: Dict[str, Any]) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Events for one entity in chain order

        With a limit only the most recent events are returned.
        """
        events = self._query({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._query({'event_type': event_type.value})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain in sequence order

        Reports events whose stored hash no longer matches their content,
        events whose parent hash is not the preceding event's hash, and
        missing sequence numbers.
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'sequence_gaps': [],
        }

        events = sorted(
            (AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)),
            key=lambda e: e.sequence
        )
        result['total_events'] = len(events)

        previous: Optional[AuditEvent] = None
        for event in events:
            if not event.verify_hash():
                result['hash_errors'].append({
                    'event_id': event.id,
                    'sequence': event.sequence,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })

            expected_parent = previous.current_hash if previous else ""
            if event.previous_hash != expected_parent:
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'sequence': event.sequence,
                    'expected_previous_hash': expected_parent,
                    'actual_previous_hash': event.previous_hash
                })

            expected_sequence = previous.sequence + 1 if previous else 1
            if event.sequence != expected_sequence:
                result['sequence_gaps'].append({
                    'event_id': event.id,
                    'expected_sequence': expected_sequence,
                    'actual_sequence': event.sequence
                })
            previous = event

        result['valid'] = not (result['hash_errors'] or result['chain_breaks'] or result['sequence_gaps'])
        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
