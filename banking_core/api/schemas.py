"""
Pydantic schemas for API requests and the response views
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..orchestrator import BalanceInquiry
from ..reconciliation import ReconciliationItem
from ..storage import to_storable
from ..transactions import Transaction


# Account schemas
class CreateAccountRequest(BaseModel):
    owner_id: str
    account_type: Optional[str] = Field(None, description="CORRIENTE or AHORROS")


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., description="ACTIVA, BLOQUEADA or INACTIVA")
    reason: str = ""


class RestrictionRequest(BaseModel):
    amount_from: Decimal
    amount_to: Decimal
    pattern_ref: Optional[str] = None


class RestrictionPatch(BaseModel):
    amount_from: Optional[Decimal] = None
    amount_to: Optional[Decimal] = None
    pattern_ref: Optional[str] = None


# Transaction schemas
class TransferRequest(BaseModel):
    origin_account: str = Field(..., description="Origin account number")
    destination_account: str = Field(..., description="Destination account number")
    amount: Decimal
    description: Optional[str] = None


class DepositRequest(BaseModel):
    account_number: str
    amount: Decimal
    description: Optional[str] = None
    external_reference: Optional[str] = None


class WithdrawRequest(BaseModel):
    account_number: str
    amount: Decimal
    description: Optional[str] = None
    external_reference: Optional[str] = None


class ValidateRequest(BaseModel):
    account_number: str
    amount: Decimal
    transaction_type: str = Field("TRANSFERENCIA", description="TRANSFERENCIA, DEPOSITO or RETIRO")
    destination_account: Optional[str] = None


class AuthorizeRequest(BaseModel):
    verification_code: str
    pattern_id: Optional[str] = None
    factors: List[str] = []


class ResolveRequest(BaseModel):
    note: str


# Views

def transaction_view(transaction: Transaction) -> Dict[str, Any]:
    return transaction.to_dict()


def balance_view(inquiry: BalanceInquiry) -> Dict[str, Any]:
    account = inquiry.account
    return {
        "account_number": account.account_number,
        "status": account.status,
        "balance": str(account.balance),
        "last_movement_at": account.last_movement_at.isoformat() if account.last_movement_at else None,
        "recent_transactions": [
            {
                "transaction_number": t.transaction_number,
                "transaction_type": t.transaction_type.value,
                "amount": str(t.amount),
                "state": t.state.value,
                "direction": "debit" if t.origin_account_id == account.id else "credit",
                "created_at": t.created_at.isoformat()
            }
            for t in inquiry.recent_transactions
        ]
    }


def reconciliation_view(item: ReconciliationItem) -> Dict[str, Any]:
    return item.to_dict()


def report_view(report: Dict[str, Any]) -> Dict[str, Any]:
    return to_storable(report)
