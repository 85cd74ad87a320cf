"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every balance change, restriction edit and transaction state change is
logged here.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .storage import StorageInterface, StorageRecord, to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    ACCOUNT_CANCELLED = "account_cancelled"
    BALANCE_ADJUSTED = "balance_adjusted"
    MOVEMENT_RECORDED = "movement_recorded"

    # Restriction events
    RESTRICTION_ADDED = "restriction_added"
    RESTRICTION_UPDATED = "restriction_updated"
    RESTRICTION_REMOVED = "restriction_removed"

    # Transaction events
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_AUTHORIZED = "transaction_authorized"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_CANCELLED = "transaction_cancelled"
    AUTHORIZATION_REJECTED = "authorization_rejected"
    PARTIAL_SETTLEMENT = "partial_settlement"
    RECONCILIATION_RESOLVED = "reconciliation_resolved"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # account, transaction, reconciliation...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = to_storable(self.metadata or {})

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

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id')
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()
        self._sequence = 0
        self._last_hash = ""
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the sequence number and hash of the most recent event"""
        events = self.storage.load_all(self.table_name)
        if events:
            head = max(events, key=lambda e: e.get('sequence', 0))
            self._sequence = head.get('sequence', 0)
            self._last_hash = head.get('current_hash', "")

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

        Returns:
            Created AuditEvent, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self._sequence += 1
            record = event.to_dict()
            record['sequence'] = self._sequence
            self.storage.save(self.table_name, event.id, record)

            self._last_hash = event.current_hash
            return event

    def _ordered_events(self) -> List[AuditEvent]:
        records = sorted(self.storage.load_all(self.table_name), key=lambda e: e.get('sequence', 0))
        return [AuditEvent.from_dict(record) for record in records]

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        return [
            event for event in self._ordered_events()
            if event.entity_type == entity_type and event.entity_id == entity_id
        ]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get all audit events of one type, oldest first"""
        return [event for event in self._ordered_events() if event.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain and verify every hash and back-link

        Returns:
            Dict with ``valid``, ``events_checked`` and the ids of broken events
        """
        broken = []
        previous_hash = ""
        events = self._ordered_events()
        for event in events:
            if not event.verify_hash() or event.previous_hash != previous_hash:
                broken.append(event.id)
            previous_hash = event.current_hash

        return {
            "valid": not broken,
            "events_checked": len(events),
            "broken_events": broken
        }
