"""
Transaction Ledger Module

Owns transaction records and their state machine. This is the only place a
transaction's state changes; each change is an atomic read-modify-write
that re-checks the current state, so two callers racing on the same record
cannot both win.

    PENDING ──> AUTORIZADA ──> COMPLETADA
       │            └────────> FALLIDA
       ├──> CANCELADA
       └──> FALLIDA            (collaborator timeout while authorizing)

COMPLETADA, FALLIDA, CANCELADA and REVERSADA are terminal.
"""

import math
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import (
    InvalidStateTransition, NotAuthorized, NotPending, TransactionNotFound,
    ValidationError
)
from .logging_config import get_logger, log_action
from .messaging import EventPublisher
from .money import to_positive_amount
from .storage import (
    KeyedLocks, StorageInterface, StorageRecord, ensure_utc, parse_datetime, to_storable
)


class TransactionType(Enum):
    TRANSFER = "TRANSFERENCIA"
    DEPOSIT = "DEPOSITO"
    WITHDRAWAL = "RETIRO"


class TransactionState(Enum):
    PENDING = "PENDIENTE"        # Waiting for pattern authorization
    AUTORIZADA = "AUTORIZADA"    # Cleared to settle
    COMPLETADA = "COMPLETADA"    # Balances moved
    FALLIDA = "FALLIDA"          # Settlement refused or collaborator failed
    CANCELADA = "CANCELADA"      # Withdrawn before authorization
    REVERSADA = "REVERSADA"      # Reserved; nothing transitions here yet

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS = {
    TransactionState.PENDING: {
        TransactionState.AUTORIZADA, TransactionState.CANCELADA, TransactionState.FALLIDA
    },
    TransactionState.AUTORIZADA: {TransactionState.COMPLETADA, TransactionState.FALLIDA},
    TransactionState.COMPLETADA: set(),
    TransactionState.FALLIDA: set(),
    TransactionState.CANCELADA: set(),
    TransactionState.REVERSADA: set(),
}

# Raised when a transition is requested from a state the caller did not expect
_EXPECTATION_ERRORS = {
    TransactionState.PENDING: NotPending,
    TransactionState.AUTORIZADA: NotAuthorized,
}

_STATE_AUDIT_EVENTS = {
    TransactionState.AUTORIZADA: AuditEventType.TRANSACTION_AUTHORIZED,
    TransactionState.COMPLETADA: AuditEventType.TRANSACTION_COMPLETED,
    TransactionState.FALLIDA: AuditEventType.TRANSACTION_FAILED,
    TransactionState.CANCELADA: AuditEventType.TRANSACTION_CANCELLED,
}


@dataclass
class Transaction(StorageRecord):
    """
    Money movement between accounts

    Deposits only have a destination, withdrawals only an origin.
    ``prior_balance`` is the balance of the debited (or, for deposits,
    credited) account when the record was created; ``settlement_balance``
    is the same balance re-read at settlement.
    """
    transaction_number: str
    transaction_type: TransactionType
    amount: Decimal
    executor_user_id: str
    state: TransactionState
    requires_authentication: bool
    prior_balance: Decimal
    origin_account_id: Optional[str] = None
    origin_account_number: Optional[str] = None
    destination_account_id: Optional[str] = None
    destination_account_number: Optional[str] = None
    restriction_id: Optional[str] = None
    required_pattern: Optional[str] = None
    description: Optional[str] = None
    external_reference: Optional[str] = None
    verification_code: Optional[str] = None
    settlement_balance: Optional[Decimal] = None
    authorized_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    state_history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.state == TransactionState.PENDING

    @property
    def is_completed(self) -> bool:
        return self.state == TransactionState.COMPLETADA

    def involves(self, account_id: str) -> bool:
        return account_id in (self.origin_account_id, self.destination_account_id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        settlement_balance = data.get('settlement_balance')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_number=data['transaction_number'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            executor_user_id=data['executor_user_id'],
            state=TransactionState(data['state']),
            requires_authentication=data['requires_authentication'],
            prior_balance=Decimal(data['prior_balance']),
            origin_account_id=data.get('origin_account_id'),
            origin_account_number=data.get('origin_account_number'),
            destination_account_id=data.get('destination_account_id'),
            destination_account_number=data.get('destination_account_number'),
            restriction_id=data.get('restriction_id'),
            required_pattern=data.get('required_pattern'),
            description=data.get('description'),
            external_reference=data.get('external_reference'),
            verification_code=data.get('verification_code'),
            settlement_balance=Decimal(settlement_balance) if settlement_balance is not None else None,
            authorized_at=parse_datetime(data.get('authorized_at')),
            settled_at=parse_datetime(data.get('settled_at')),
            cancelled_at=parse_datetime(data.get('cancelled_at')),
            failure_reason=data.get('failure_reason'),
            state_history=data.get('state_history', [])
        )


@dataclass
class TransactionPage:
    items: List[Transaction]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class TransactionLedger:
    """
    Creates transactions and drives their state machine
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_publisher: Optional[EventPublisher] = None,
        number_prefix: str = "TXN"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.event_publisher = event_publisher
        self.number_prefix = number_prefix
        self.table_name = "transactions"
        self.logger = get_logger("banking.transactions")
        self._random = random.SystemRandom()
        self._locks = KeyedLocks()
        self._number_lock = threading.Lock()

    def lock_for(self, transaction_id: str):
        """Per-transaction lock, held by the orchestrator across a settlement"""
        return self._locks.hold(transaction_id)

    def _generate_number(self) -> str:
        while True:
            number = f"{self.number_prefix}-{int(time.time() * 1000)}-{self._random.randint(0, 9999):04d}"
            if not self.storage.find(self.table_name, {"transaction_number": number}):
                return number

    def create(
        self,
        transaction_type: TransactionType,
        amount: Decimal,
        executor_user_id: str,
        prior_balance: Decimal,
        requires_authentication: bool = False,
        origin_account_id: Optional[str] = None,
        origin_account_number: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        destination_account_number: Optional[str] = None,
        restriction_id: Optional[str] = None,
        required_pattern: Optional[str] = None,
        description: Optional[str] = None,
        external_reference: Optional[str] = None
    ) -> Transaction:
        """
        Create a transaction record

        The record starts PENDING when authentication is required and
        AUTORIZADA otherwise. ``requires_authentication`` is never changed
        after this call.
        """
        amount = to_positive_amount(amount)
        if not origin_account_id and not destination_account_id:
            raise ValidationError("Transaction must reference at least one account")

        now = datetime.now(timezone.utc)
        state = TransactionState.PENDING if requires_authentication else TransactionState.AUTORIZADA

        with self._number_lock:
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                transaction_number=self._generate_number(),
                transaction_type=transaction_type,
                amount=amount,
                executor_user_id=executor_user_id,
                state=state,
                requires_authentication=requires_authentication,
                prior_balance=prior_balance,
                origin_account_id=origin_account_id,
                origin_account_number=origin_account_number,
                destination_account_id=destination_account_id,
                destination_account_number=destination_account_number,
                restriction_id=restriction_id,
                required_pattern=required_pattern,
                description=description,
                external_reference=external_reference,
                state_history=[{"state": state.value, "at": now.isoformat(), "reason": "created"}]
            )
            self.storage.save(self.table_name, transaction.id, transaction.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_CREATED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "transaction_number": transaction.transaction_number,
                "transaction_type": transaction_type.value,
                "amount": amount,
                "state": state.value,
                "requires_authentication": requires_authentication,
                "origin_account_id": origin_account_id,
                "destination_account_id": destination_account_id
            },
            user_id=executor_user_id
        )
        log_action(self.logger, "info",
                   f"Created {transaction_type.value} {transaction.transaction_number} in {state.value}",
                   user_id=executor_user_id, action="create_transaction",
                   resource=transaction.transaction_number)

        if self.event_publisher:
            self.event_publisher.transaction_created(transaction)
        return transaction

    def get(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data)

    def find(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return Transaction.from_dict(data) if data else None

    def get_by_number(self, transaction_number: str) -> Transaction:
        matches = self.storage.find(self.table_name, {"transaction_number": transaction_number})
        if not matches:
            raise TransactionNotFound(f"Transaction {transaction_number} not found")
        return Transaction.from_dict(matches[0])

    def transition(
        self,
        transaction_id: str,
        new_state: TransactionState,
        reason: Optional[str] = None,
        expected: Optional[TransactionState] = None,
        **fields: Any
    ) -> Transaction:
        """
        Move a transaction to a new state

        Args:
            transaction_id: Transaction to move
            new_state: Target state
            reason: Stored as failure_reason for FALLIDA and kept in the history
            expected: If given, the current state must be this one
            **fields: Extra fields stamped in the same update (verification_code...)

        Raises:
            TransactionNotFound: If the transaction does not exist
            NotPending / NotAuthorized: If ``expected`` does not match
            InvalidStateTransition: If the state machine does not allow the move
        """
        now = datetime.now(timezone.utc)
        previous = {}

        def mutate(record):
            current = TransactionState(record['state'])
            if expected is not None and current != expected:
                error_cls = _EXPECTATION_ERRORS.get(expected, InvalidStateTransition)
                raise error_cls(
                    f"Transaction {record['transaction_number']} is {current.value}, "
                    f"expected {expected.value}"
                )
            if new_state not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateTransition(
                    f"Transaction {record['transaction_number']} cannot move from "
                    f"{current.value} to {new_state.value}"
                )
            previous['state'] = current

            record['state'] = new_state.value
            record['updated_at'] = now.isoformat()
            if new_state == TransactionState.AUTORIZADA:
                record['authorized_at'] = now.isoformat()
            elif new_state == TransactionState.COMPLETADA:
                record['settled_at'] = now.isoformat()
            elif new_state == TransactionState.CANCELADA:
                record['cancelled_at'] = now.isoformat()
            elif new_state == TransactionState.FALLIDA:
                record['failure_reason'] = reason
            record.update(to_storable(fields))
            record.setdefault('state_history', []).append(
                {"state": new_state.value, "at": now.isoformat(), "reason": reason}
            )
            return record

        with self.lock_for(transaction_id):
            updated = self.storage.update(self.table_name, transaction_id, mutate)
        if updated is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        transaction = Transaction.from_dict(updated)

        metadata = {
            "transaction_number": transaction.transaction_number,
            "from_state": previous['state'].value,
            "to_state": new_state.value
        }
        if reason:
            metadata["reason"] = reason
        self.audit_trail.log_event(
            event_type=_STATE_AUDIT_EVENTS[new_state],
            entity_type="transaction",
            entity_id=transaction.id,
            metadata=metadata,
            user_id=transaction.executor_user_id
        )
        level = "warning" if new_state == TransactionState.FALLIDA else "info"
        log_action(self.logger, level,
                   f"{transaction.transaction_number} {previous['state'].value} -> {new_state.value}"
                   + (f": {reason}" if reason else ""),
                   action="transition", resource=transaction.transaction_number)

        if self.event_publisher:
            if new_state == TransactionState.COMPLETADA:
                self.event_publisher.transaction_completed(transaction)
            elif new_state == TransactionState.FALLIDA:
                self.event_publisher.transaction_failed(transaction)
            elif new_state == TransactionState.CANCELADA:
                self.event_publisher.transaction_cancelled(transaction)
        return transaction

    def list_transactions(
        self,
        executor_user_id: Optional[str] = None,
        account_id: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        state: Optional[TransactionState] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20
    ) -> TransactionPage:
        """Filtered, newest-first, paginated listing"""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        start, end = ensure_utc(start), ensure_utc(end)

        filters = {}
        if executor_user_id:
            filters['executor_user_id'] = executor_user_id
        if transaction_type:
            filters['transaction_type'] = transaction_type.value
        if state:
            filters['state'] = state.value

        transactions = [Transaction.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if account_id:
            transactions = [t for t in transactions if t.involves(account_id)]
        if start:
            transactions = [t for t in transactions if t.created_at >= start]
        if end:
            transactions = [t for t in transactions if t.created_at <= end]

        transactions.sort(key=lambda t: t.created_at, reverse=True)
        offset = (page - 1) * limit
        return TransactionPage(
            items=transactions[offset:offset + limit],
            total=len(transactions),
            page=page,
            limit=limit
        )

    def account_history(self, account_id: str, states: Optional[List[TransactionState]] = None,
                        limit: Optional[int] = None) -> List[Transaction]:
        """Transactions touching an account, newest first"""
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.load_all(self.table_name)
        ]
        transactions = [t for t in transactions if t.involves(account_id)]
        if states:
            transactions = [t for t in transactions if t.state in states]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions[:limit] if limit else transactions

    def pending_older_than(self, cutoff: datetime) -> List[Transaction]:
        cutoff = ensure_utc(cutoff)
        return [
            Transaction.from_dict(data)
            for data in self.storage.find(self.table_name, {"state": TransactionState.PENDING.value})
            if datetime.fromisoformat(data['created_at']) < cutoff
        ]
