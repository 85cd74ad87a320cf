"""
Command payloads exchanged over the command bus

One request model per topic plus the reply shapes. Everything that crosses a
service boundary is validated against these models on the receiving side.
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .accounts import AccountStatus


class CommandModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Requests

class FindAccountByNumber(CommandModel):
    number: str = Field(..., min_length=1)


class FindAccountById(CommandModel):
    account_id: str = Field(..., min_length=1)


class AdjustBalance(CommandModel):
    account_id: str
    delta: Decimal
    minimum_balance: Optional[Decimal] = Field(
        None, description="When set, the adjustment is rejected if the balance would fall below it"
    )


class RecordMovement(CommandModel):
    account_id: str
    delta: Decimal
    movement_ref: str = Field(..., min_length=1, description="Idempotency key for this movement")
    transaction_id: Optional[str] = None
    description: Optional[str] = None


class GetRestrictions(CommandModel):
    account_id: str


class FindUser(CommandModel):
    user_id: str = Field(..., min_length=1)


# Replies

class AccountSnapshot(BaseModel):
    id: str
    account_number: str
    owner_id: str
    account_type: str
    status: str
    balance: Decimal
    last_movement_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE.value


class RestrictionSnapshot(BaseModel):
    id: str
    amount_from: Decimal
    amount_to: Decimal
    pattern_ref: Optional[str] = None


class RestrictionList(BaseModel):
    restrictions: List[RestrictionSnapshot] = []


class Ack(BaseModel):
    ok: bool = True
    duplicate: bool = False


class UserLookup(BaseModel):
    exists: bool
