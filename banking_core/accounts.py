"""
Account Store Module

Owns account balances, statuses and each account's set of monetary
restrictions. This module is the only place that mutates a balance; every
mutation goes through an atomic read-modify-write on storage while holding
the account's lock, so concurrent debits cannot interleave.

Restrictions are stored inside the account record itself so the overlap
check and the append happen in the same atomic update.
"""

import random
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .errors import (
    AccountLimitExceeded, AccountNotFound, BankingError, InsufficientFunds, InvalidAmount,
    InvalidRange, InvalidStateTransition, OverlappingRange, OwnerNotFound, PositiveBalance,
    RestrictionNotFound, ValidationError
)
from .logging_config import get_logger, log_action
from .messaging import EventPublisher
from .money import ZERO, AmountLike, format_amount, quantize, to_amount
from .storage import KeyedLocks, StorageInterface, StorageRecord, parse_datetime, to_storable

if TYPE_CHECKING:
    from .users import UserDirectory


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVA"
    BLOCKED = "BLOQUEADA"
    INACTIVE = "INACTIVA"
    CANCELLED = "CANCELADA"  # Terminal, only reachable with a zero balance


class AccountType(Enum):
    CHECKING = "CORRIENTE"
    SAVINGS = "AHORROS"


@dataclass
class Restriction:
    """
    Monetary band on an account. Transactions whose amount falls inside
    [amount_from, amount_to] (both inclusive) need pattern authorization.
    """
    id: str
    amount_from: Decimal
    amount_to: Decimal
    pattern_ref: Optional[str] = None
    created_at: Optional[datetime] = None

    def contains(self, amount: Decimal) -> bool:
        return self.amount_from <= amount <= self.amount_to

    def overlaps(self, amount_from: Decimal, amount_to: Decimal) -> bool:
        return ranges_overlap(self.amount_from, self.amount_to, amount_from, amount_to)

    def to_dict(self) -> Dict[str, Any]:
        return to_storable({
            'id': self.id,
            'amount_from': self.amount_from,
            'amount_to': self.amount_to,
            'pattern_ref': self.pattern_ref,
            'created_at': self.created_at
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Restriction':
        return cls(
            id=data['id'],
            amount_from=Decimal(data['amount_from']),
            amount_to=Decimal(data['amount_to']),
            pattern_ref=data.get('pattern_ref'),
            created_at=parse_datetime(data.get('created_at'))
        )


def ranges_overlap(a_from: Decimal, a_to: Decimal, b_from: Decimal, b_to: Decimal) -> bool:
    """Inclusive on both ends: [0, 100] and [100, 200] overlap"""
    return b_from <= a_to and b_to >= a_from


@dataclass
class Account(StorageRecord):
    """Customer account with its balance and restriction bands"""
    account_number: str
    owner_id: str  # Opaque reference into the users service, never changes
    account_type: str
    status: AccountStatus = AccountStatus.ACTIVE
    balance: Decimal = ZERO
    last_movement_at: Optional[datetime] = None
    restrictions: List[Restriction] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_cancelled(self) -> bool:
        return self.status == AccountStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['restrictions'] = [r.to_dict() for r in self.restrictions]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            account_type=data['account_type'],
            status=AccountStatus(data['status']),
            balance=Decimal(data['balance']),
            last_movement_at=parse_datetime(data.get('last_movement_at')),
            restrictions=[Restriction.from_dict(r) for r in data.get('restrictions', [])]
        )


@dataclass
class Movement(StorageRecord):
    """Append-only record of one balance change on one account"""
    account_id: str
    delta: Decimal
    movement_ref: str
    transaction_id: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Movement':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            delta=Decimal(data['delta']),
            movement_ref=data['movement_ref'],
            transaction_id=data.get('transaction_id'),
            description=data.get('description')
        )


class AccountStore:
    """
    Account lifecycle, balance adjustment, movements and restrictions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        users: 'UserDirectory',
        event_publisher: Optional[EventPublisher] = None,
        max_accounts_per_owner: int = 2,
        number_max_attempts: int = 100,
        default_account_type: str = AccountType.CHECKING.value,
        rng: Optional[random.Random] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users = users
        self.event_publisher = event_publisher
        self.max_accounts_per_owner = max_accounts_per_owner
        self.number_max_attempts = number_max_attempts
        self.default_account_type = default_account_type
        self.accounts_table = "accounts"
        self.movements_table = "account_movements"
        self.logger = get_logger("banking.accounts")

        self._random = rng or random.SystemRandom()
        self._locks = KeyedLocks()
        self._creation_lock = threading.Lock()

    def _lock_for(self, key: str):
        return self._locks.hold(key)

    # Lookups

    def find_by_id(self, account_id: str) -> Account:
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise AccountNotFound(f"Account {account_id} not found")
        return Account.from_dict(data)

    def find_by_number(self, account_number: str) -> Account:
        matches = self.storage.find(self.accounts_table, {"account_number": account_number})
        if not matches:
            raise AccountNotFound(f"Account number {account_number} not found")
        return Account.from_dict(matches[0])

    def get_account(self, account_id: str) -> Optional[Account]:
        """Like find_by_id but returns None when absent"""
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def list_for_owner(self, owner_id: str, include_cancelled: bool = False) -> List[Account]:
        accounts = [
            Account.from_dict(data)
            for data in self.storage.find(self.accounts_table, {"owner_id": owner_id})
        ]
        if not include_cancelled:
            accounts = [a for a in accounts if not a.is_cancelled]
        return sorted(accounts, key=lambda a: a.created_at)

    # Lifecycle

    def _generate_account_number(self) -> str:
        for _ in range(self.number_max_attempts):
            candidate = str(self._random.randint(10 ** 9, 10 ** 10 - 1))
            if not self.storage.find(self.accounts_table, {"account_number": candidate}):
                return candidate
        raise BankingError(
            f"Could not allocate a unique account number after {self.number_max_attempts} attempts"
        )

    def create_account(self, owner_id: str, account_type: Optional[str] = None) -> Account:
        """
        Open a new account for an owner

        Args:
            owner_id: User id of the owner, checked against the users service
            account_type: CORRIENTE or AHORROS, defaults to the configured type

        Returns:
            The new ACTIVE account with a zero balance

        Raises:
            OwnerNotFound: If the owner does not exist
            AccountLimitExceeded: If the owner already holds the maximum number of open accounts
        """
        account_type = account_type or self.default_account_type
        try:
            AccountType(account_type)
        except ValueError:
            raise ValidationError(f"Unknown account type {account_type}") from None

        if not self.users.exists(owner_id):
            raise OwnerNotFound(f"Owner {owner_id} not found")

        # Count check and insert must not interleave for the same owner
        with self._lock_for(f"owner:{owner_id}"):
            open_accounts = self.list_for_owner(owner_id)
            if len(open_accounts) >= self.max_accounts_per_owner:
                raise AccountLimitExceeded(
                    f"Owner {owner_id} already has {len(open_accounts)} open accounts "
                    f"(maximum {self.max_accounts_per_owner})"
                )

            with self._creation_lock:
                now = datetime.now(timezone.utc)
                account = Account(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    account_number=self._generate_account_number(),
                    owner_id=owner_id,
                    account_type=account_type
                )
                self.storage.save(self.accounts_table, account.id, account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "account_number": account.account_number,
                "owner_id": owner_id,
                "account_type": account_type
            },
            user_id=owner_id
        )
        log_action(self.logger, "info", f"Opened account {account.account_number}",
                   user_id=owner_id, action="create_account", resource=account.account_number)

        if self.event_publisher:
            self.event_publisher.account_created(account)

        return account

    def _mutate(self, account_id: str, mutator) -> Account:
        """Atomic read-modify-write of one account record"""
        updated = self.storage.update(self.accounts_table, account_id, mutator)
        if updated is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return Account.from_dict(updated)

    def update_status(self, account_id: str, status: AccountStatus, reason: str = "") -> Account:
        """
        Move an account between ACTIVE, BLOCKED and INACTIVE

        Cancellation has its own operation because it carries a balance
        precondition, and a cancelled account never comes back.
        """
        if status == AccountStatus.CANCELLED:
            raise InvalidStateTransition("Use cancel_account to cancel an account")

        previous = {}

        def mutate(record):
            old_status = AccountStatus(record['status'])
            if old_status == AccountStatus.CANCELLED:
                raise InvalidStateTransition(f"Account {record['account_number']} is cancelled")
            previous['status'] = old_status
            record['status'] = status.value
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return record

        with self._lock_for(account_id):
            account = self._mutate(account_id, mutate)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_STATUS_CHANGED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "old_status": previous['status'].value,
                "new_status": status.value,
                "reason": reason
            }
        )
        log_action(self.logger, "info",
                   f"Account {account.account_number} {previous['status'].value} -> {status.value}",
                   action="update_status", resource=account.account_number)

        if self.event_publisher:
            self.event_publisher.account_updated(account)
        return account

    def cancel_account(self, account_id: str) -> Account:
        """
        Cancel an account. Soft: the record stays, only the status flips.

        Raises:
            PositiveBalance: If the balance is not zero
            InvalidStateTransition: If the account is already cancelled
        """
        def mutate(record):
            if record['status'] == AccountStatus.CANCELLED.value:
                raise InvalidStateTransition(f"Account {record['account_number']} is already cancelled")
            balance = Decimal(record['balance'])
            if balance != ZERO:
                raise PositiveBalance(
                    f"Account {record['account_number']} still holds {format_amount(balance)}"
                )
            record['status'] = AccountStatus.CANCELLED.value
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return record

        with self._lock_for(account_id):
            account = self._mutate(account_id, mutate)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CANCELLED,
            entity_type="account",
            entity_id=account.id,
            metadata={"account_number": account.account_number}
        )
        log_action(self.logger, "info", f"Cancelled account {account.account_number}",
                   action="cancel_account", resource=account.account_number)

        if self.event_publisher:
            self.event_publisher.account_updated(account)
        return account

    # Balances and movements

    def adjust_balance(
        self,
        account_id: str,
        delta: AmountLike,
        minimum_balance: Optional[AmountLike] = None
    ) -> Account:
        """
        Apply a signed delta to an account balance

        Without ``minimum_balance`` this is a plain primitive with no business
        checks, usable for both debits and credits. With it, the update is a
        conditional decrement: the balance is left untouched and
        InsufficientFunds is raised if the result would fall below the floor.
        """
        delta = to_amount(delta)
        if delta == ZERO:
            raise InvalidAmount("Balance adjustment must be non-zero")
        floor = to_amount(minimum_balance) if minimum_balance is not None else None
        now = datetime.now(timezone.utc)
        before = {}

        def mutate(record):
            balance = Decimal(record['balance'])
            new_balance = quantize(balance + delta)
            if floor is not None and new_balance < floor:
                raise InsufficientFunds(
                    f"Account {record['account_number']} has {format_amount(balance)}, "
                    f"cannot apply {format_amount(delta)}"
                )
            before['balance'] = balance
            record['balance'] = str(new_balance)
            record['last_movement_at'] = now.isoformat()
            record['updated_at'] = now.isoformat()
            return record

        with self._lock_for(account_id):
            account = self._mutate(account_id, mutate)

        self.audit_trail.log_event(
            event_type=AuditEventType.BALANCE_ADJUSTED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "delta": delta,
                "balance_before": before['balance'],
                "balance_after": account.balance
            }
        )
        log_action(self.logger, "debug",
                   f"Adjusted {account.account_number} by {format_amount(delta)}",
                   action="adjust_balance", resource=account.account_number,
                   extra={"balance": str(account.balance)})
        return account

    def record_movement(
        self,
        account_id: str,
        delta: AmountLike,
        movement_ref: str,
        transaction_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> Tuple[Movement, bool]:
        """
        Append a movement to an account's statement. Does not touch the balance.

        Idempotent on (account_id, movement_ref): recording the same reference
        twice returns the existing movement.

        Returns:
            (movement, created) where created is False for a repeat
        """
        delta = to_amount(delta)
        movement_id = f"{account_id}:{movement_ref}"

        with self._lock_for(account_id):
            if not self.storage.exists(self.accounts_table, account_id):
                raise AccountNotFound(f"Account {account_id} not found")

            existing = self.storage.load(self.movements_table, movement_id)
            if existing:
                return Movement.from_dict(existing), False

            now = datetime.now(timezone.utc)
            movement = Movement(
                id=movement_id,
                created_at=now,
                updated_at=now,
                account_id=account_id,
                delta=delta,
                movement_ref=movement_ref,
                transaction_id=transaction_id,
                description=description
            )
            self.storage.save(self.movements_table, movement.id, movement.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.MOVEMENT_RECORDED,
            entity_type="account",
            entity_id=account_id,
            metadata={"movement_ref": movement_ref, "delta": delta, "transaction_id": transaction_id}
        )
        return movement, True

    def get_movements(self, account_id: str, limit: Optional[int] = None) -> List[Movement]:
        """Movements for an account, newest first"""
        self.find_by_id(account_id)
        movements = [
            Movement.from_dict(data)
            for data in self.storage.find(self.movements_table, {"account_id": account_id})
        ]
        movements.sort(key=lambda m: m.created_at, reverse=True)
        return movements[:limit] if limit else movements

    # Restrictions

    def get_restrictions(self, account_id: str) -> List[Restriction]:
        account = self.find_by_id(account_id)
        return sorted(account.restrictions, key=lambda r: r.amount_from)

    @staticmethod
    def _validate_range(amount_from: Decimal, amount_to: Decimal) -> None:
        if amount_from < ZERO:
            raise InvalidRange(f"Restriction cannot start below zero ({amount_from})")
        if amount_from >= amount_to:
            raise InvalidRange(
                f"Restriction lower bound {amount_from} must be below upper bound {amount_to}"
            )

    @staticmethod
    def _check_overlap(restrictions: List[Dict[str, Any]], amount_from: Decimal,
                       amount_to: Decimal, skip_id: Optional[str] = None) -> None:
        for data in restrictions:
            if data['id'] == skip_id:
                continue
            existing = Restriction.from_dict(data)
            if existing.overlaps(amount_from, amount_to):
                raise OverlappingRange(
                    f"Range [{amount_from}, {amount_to}] overlaps existing restriction "
                    f"[{existing.amount_from}, {existing.amount_to}]"
                )

    def add_restriction(
        self,
        account_id: str,
        amount_from: AmountLike,
        amount_to: AmountLike,
        pattern_ref: Optional[str] = None
    ) -> Account:
        """
        Register a restriction band

        Raises:
            InvalidRange: If amount_from >= amount_to or amount_from is negative
            OverlappingRange: If the band touches or overlaps an existing one
        """
        amount_from = to_amount(amount_from)
        amount_to = to_amount(amount_to)
        self._validate_range(amount_from, amount_to)

        restriction = Restriction(
            id=str(uuid.uuid4()),
            amount_from=amount_from,
            amount_to=amount_to,
            pattern_ref=pattern_ref,
            created_at=datetime.now(timezone.utc)
        )

        def mutate(record):
            self._check_overlap(record.get('restrictions', []), amount_from, amount_to)
            record.setdefault('restrictions', []).append(restriction.to_dict())
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return record

        with self._lock_for(account_id):
            account = self._mutate(account_id, mutate)

        self.audit_trail.log_event(
            event_type=AuditEventType.RESTRICTION_ADDED,
            entity_type="account",
            entity_id=account.id,
            metadata=restriction.to_dict()
        )
        log_action(self.logger, "info",
                   f"Restriction [{amount_from}, {amount_to}] added to {account.account_number}",
                   action="add_restriction", resource=account.account_number)
        return account

    def update_restriction(self, account_id: str, restriction_id: str, patch: Dict[str, Any]) -> Account:
        """
        Change a restriction's bounds and/or pattern. Keys absent from
        ``patch`` keep their current value.
        """
        unknown = set(patch) - {'amount_from', 'amount_to', 'pattern_ref'}
        if unknown:
            raise InvalidRange(f"Cannot update restriction fields: {', '.join(sorted(unknown))}")

        changes = {}

        def mutate(record):
            restrictions = record.get('restrictions', [])
            for index, data in enumerate(restrictions):
                if data['id'] == restriction_id:
                    break
            else:
                raise RestrictionNotFound(
                    f"Restriction {restriction_id} not found on account {record['account_number']}"
                )

            current = Restriction.from_dict(data)
            amount_from = to_amount(patch['amount_from']) if 'amount_from' in patch else current.amount_from
            amount_to = to_amount(patch['amount_to']) if 'amount_to' in patch else current.amount_to
            self._validate_range(amount_from, amount_to)
            self._check_overlap(restrictions, amount_from, amount_to, skip_id=restriction_id)

            current.amount_from = amount_from
            current.amount_to = amount_to
            if 'pattern_ref' in patch:
                current.pattern_ref = patch['pattern_ref']
            restrictions[index] = current.to_dict()
            changes.update(current.to_dict())
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return record

        with self._lock_for(account_id):
            account = self._mutate(account_id, mutate)

        self.audit_trail.log_event(
            event_type=AuditEventType.RESTRICTION_UPDATED,
            entity_type="account",
            entity_id=account.id,
            metadata=changes
        )
        log_action(self.logger, "info", f"Restriction {restriction_id} updated on {account.account_number}",
                   action="update_restriction", resource=account.account_number)
        return account

    def remove_restriction(self, account_id: str, restriction_id: str) -> Account:
        def mutate(record):
            restrictions = record.get('restrictions', [])
            remaining = [r for r in restrictions if r['id'] != restriction_id]
            if len(remaining) == len(restrictions):
                raise RestrictionNotFound(
                    f"Restriction {restriction_id} not found on account {record['account_number']}"
                )
            record['restrictions'] = remaining
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return record

        with self._lock_for(account_id):
            account = self._mutate(account_id, mutate)

        self.audit_trail.log_event(
            event_type=AuditEventType.RESTRICTION_REMOVED,
            entity_type="account",
            entity_id=account.id,
            metadata={"restriction_id": restriction_id}
        )
        log_action(self.logger, "info", f"Restriction {restriction_id} removed from {account.account_number}",
                   action="remove_restriction", resource=account.account_number)
        return account
