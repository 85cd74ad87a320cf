"""
Reconciliation Queue

Settlement crosses service boundaries without a distributed transaction, so
a settlement can be left half done in three ways:

* MOVEMENT: balances moved but a statement movement was not written.
  Movement recording is idempotent, so these are retried.
* CREDIT: the origin was debited but the destination credit failed. No
  automatic reversal is attempted; these wait for an operator.
* DEBIT: the debit call timed out, so whether it applied is unknown.
  Also left to an operator.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .account_service import AccountsClient
from .audit import AuditTrail, AuditEventType
from .errors import BankingError, NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_datetime


class ReconciliationKind(Enum):
    MOVEMENT = "movement"
    CREDIT = "credit"
    DEBIT = "debit"  # Debit timed out, outcome unknown


class ReconciliationStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass
class ReconciliationItem(StorageRecord):
    kind: ReconciliationKind
    transaction_id: str
    transaction_number: str
    account_id: str
    delta: Decimal
    movement_ref: str
    error: str
    status: ReconciliationStatus = ReconciliationStatus.OPEN
    attempts: int = 0
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationItem':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            kind=ReconciliationKind(data['kind']),
            transaction_id=data['transaction_id'],
            transaction_number=data['transaction_number'],
            account_id=data['account_id'],
            delta=Decimal(data['delta']),
            movement_ref=data['movement_ref'],
            error=data['error'],
            status=ReconciliationStatus(data['status']),
            attempts=data.get('attempts', 0),
            resolved_at=parse_datetime(data.get('resolved_at')),
            resolution_note=data.get('resolution_note')
        )


class ReconciliationQueue:
    """Persistent queue of half-applied settlements"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 accounts: Optional[AccountsClient] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts = accounts
        self.table_name = "reconciliation_items"
        self.logger = get_logger("banking.reconciliation")

    def enqueue(
        self,
        kind: ReconciliationKind,
        transaction_id: str,
        transaction_number: str,
        account_id: str,
        delta: Decimal,
        movement_ref: str,
        error: str
    ) -> ReconciliationItem:
        """Queue an item; one item per (kind, transaction, account)"""
        item_id = f"{kind.value}:{transaction_id}:{account_id}"
        existing = self.storage.load(self.table_name, item_id)
        if existing:
            return ReconciliationItem.from_dict(existing)

        now = datetime.now(timezone.utc)
        item = ReconciliationItem(
            id=item_id,
            created_at=now,
            updated_at=now,
            kind=kind,
            transaction_id=transaction_id,
            transaction_number=transaction_number,
            account_id=account_id,
            delta=delta,
            movement_ref=movement_ref,
            error=error
        )
        self.storage.save(self.table_name, item.id, item.to_dict())
        log_action(self.logger, "error",
                   f"Queued {kind.value} reconciliation for {transaction_number}: {error}",
                   action="reconciliation_enqueued", resource=transaction_number,
                   extra={"account_id": account_id, "delta": str(delta)})
        return item

    def get(self, item_id: str) -> ReconciliationItem:
        data = self.storage.load(self.table_name, item_id)
        if not data:
            raise NotFoundError(f"Reconciliation item {item_id} not found")
        return ReconciliationItem.from_dict(data)

    def list_open(self, kind: Optional[ReconciliationKind] = None) -> List[ReconciliationItem]:
        filters = {"status": ReconciliationStatus.OPEN.value}
        if kind:
            filters["kind"] = kind.value
        items = [ReconciliationItem.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        return sorted(items, key=lambda i: i.created_at)

    def _mark_resolved(self, item: ReconciliationItem, note: str) -> ReconciliationItem:
        now = datetime.now(timezone.utc)
        item.status = ReconciliationStatus.RESOLVED
        item.resolved_at = now
        item.updated_at = now
        item.resolution_note = note
        self.storage.save(self.table_name, item.id, item.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.RECONCILIATION_RESOLVED,
            entity_type="reconciliation",
            entity_id=item.id,
            metadata={
                "kind": item.kind.value,
                "transaction_number": item.transaction_number,
                "note": note
            }
        )
        return item

    def retry_movements(self) -> Dict[str, int]:
        """
        Re-send every open MOVEMENT item. Safe to repeat: the accounts
        service ignores a movement_ref it already has.
        """
        if self.accounts is None:
            raise BankingError("Reconciliation queue has no accounts client")

        retried = resolved = 0
        for item in self.list_open(ReconciliationKind.MOVEMENT):
            retried += 1
            try:
                self.accounts.record_movement(
                    item.account_id,
                    item.delta,
                    item.movement_ref,
                    transaction_id=item.transaction_id,
                    description=f"Reconciled movement for {item.transaction_number}"
                )
            except BankingError as e:
                item.attempts += 1
                item.error = e.message
                item.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.table_name, item.id, item.to_dict())
                self.logger.warning(f"Movement retry for {item.transaction_number} failed: {e.message}")
                continue

            item.attempts += 1
            self._mark_resolved(item, "movement recorded on retry")
            resolved += 1

        return {"retried": retried, "resolved": resolved, "still_open": retried - resolved}

    def resolve(self, item_id: str, note: str) -> ReconciliationItem:
        """Close an item by hand (e.g. after an operator re-credits an account)"""
        item = self.get(item_id)
        if item.status == ReconciliationStatus.RESOLVED:
            return item
        resolved = self._mark_resolved(item, note)
        log_action(self.logger, "info", f"Reconciliation {item_id} resolved: {note}",
                   action="reconciliation_resolved", resource=item.transaction_number)
        return resolved
