"""
Accounts service boundary

AccountCommandHandler serves the account store on the command bus.
AccountsClient is what the transactions side holds: every call is a
timeout-bound request over the bus, and lookups return None instead of
assuming the reference is valid.
"""

from decimal import Decimal
from typing import List, Optional

from .accounts import Account, AccountStore, Restriction
from .commands import (
    Ack, AccountSnapshot, AdjustBalance, FindAccountById, FindAccountByNumber, GetRestrictions,
    RecordMovement, RestrictionList, RestrictionSnapshot
)
from .errors import AccountNotFound
from .messaging import CommandBus, Topics


def snapshot_of(account: Account) -> AccountSnapshot:
    return AccountSnapshot(
        id=account.id,
        account_number=account.account_number,
        owner_id=account.owner_id,
        account_type=account.account_type,
        status=account.status.value,
        balance=account.balance,
        last_movement_at=account.last_movement_at
    )


class AccountCommandHandler:
    """Exposes an AccountStore on the command bus"""

    def __init__(self, store: AccountStore):
        self.store = store

    def register(self, bus: CommandBus) -> None:
        bus.register(Topics.ACCOUNTS_FIND_BY_NUMBER.value, FindAccountByNumber, self.find_by_number)
        bus.register(Topics.ACCOUNTS_FIND_BY_ID.value, FindAccountById, self.find_by_id)
        bus.register(Topics.ACCOUNTS_ADJUST_BALANCE.value, AdjustBalance, self.adjust_balance)
        bus.register(Topics.ACCOUNTS_RECORD_MOVEMENT.value, RecordMovement, self.record_movement)
        bus.register(Topics.ACCOUNTS_GET_RESTRICTIONS.value, GetRestrictions, self.get_restrictions)

    def find_by_number(self, request: FindAccountByNumber) -> AccountSnapshot:
        return snapshot_of(self.store.find_by_number(request.number))

    def find_by_id(self, request: FindAccountById) -> AccountSnapshot:
        return snapshot_of(self.store.find_by_id(request.account_id))

    def adjust_balance(self, request: AdjustBalance) -> AccountSnapshot:
        account = self.store.adjust_balance(request.account_id, request.delta, request.minimum_balance)
        return snapshot_of(account)

    def record_movement(self, request: RecordMovement) -> Ack:
        _, created = self.store.record_movement(
            request.account_id,
            request.delta,
            request.movement_ref,
            transaction_id=request.transaction_id,
            description=request.description
        )
        return Ack(ok=True, duplicate=not created)

    def get_restrictions(self, request: GetRestrictions) -> RestrictionList:
        return RestrictionList(restrictions=[
            RestrictionSnapshot(
                id=r.id,
                amount_from=r.amount_from,
                amount_to=r.amount_to,
                pattern_ref=r.pattern_ref
            )
            for r in self.store.get_restrictions(request.account_id)
        ])


class AccountsClient:
    """Calls the accounts service over the command bus"""

    def __init__(self, bus: CommandBus, timeout: Optional[float] = None):
        self.bus = bus
        self.timeout = timeout

    def _request(self, topic: Topics, payload):
        return self.bus.request(topic.value, payload, self.timeout)

    def find_by_number(self, number: str) -> Optional[AccountSnapshot]:
        try:
            data = self._request(Topics.ACCOUNTS_FIND_BY_NUMBER, FindAccountByNumber(number=number))
        except AccountNotFound:
            return None
        return AccountSnapshot.model_validate(data)

    def find_by_id(self, account_id: str) -> Optional[AccountSnapshot]:
        try:
            data = self._request(Topics.ACCOUNTS_FIND_BY_ID, FindAccountById(account_id=account_id))
        except AccountNotFound:
            return None
        return AccountSnapshot.model_validate(data)

    def adjust_balance(self, account_id: str, delta: Decimal,
                       minimum_balance: Optional[Decimal] = None) -> Optional[AccountSnapshot]:
        """
        Returns None if the account vanished. InsufficientFunds from a
        conditional decrement propagates.
        """
        try:
            data = self._request(Topics.ACCOUNTS_ADJUST_BALANCE, AdjustBalance(
                account_id=account_id, delta=delta, minimum_balance=minimum_balance
            ))
        except AccountNotFound:
            return None
        return AccountSnapshot.model_validate(data)

    def record_movement(self, account_id: str, delta: Decimal, movement_ref: str,
                        transaction_id: Optional[str] = None,
                        description: Optional[str] = None) -> Ack:
        data = self._request(Topics.ACCOUNTS_RECORD_MOVEMENT, RecordMovement(
            account_id=account_id,
            delta=delta,
            movement_ref=movement_ref,
            transaction_id=transaction_id,
            description=description
        ))
        return Ack.model_validate(data)

    def get_restrictions(self, account_id: str) -> Optional[List[Restriction]]:
        try:
            data = self._request(Topics.ACCOUNTS_GET_RESTRICTIONS, GetRestrictions(account_id=account_id))
        except AccountNotFound:
            return None
        reply = RestrictionList.model_validate(data)
        return [
            Restriction(id=r.id, amount_from=r.amount_from, amount_to=r.amount_to, pattern_ref=r.pattern_ref)
            for r in reply.restrictions
        ]
