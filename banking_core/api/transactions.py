"""
Transaction endpoints

The executing user comes from the ``X-User-Id`` header set by the gateway
after it has verified the caller's token.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status

from .dependencies import get_banking_system, get_client_ip
from .schemas import (
    AuthorizeRequest, DepositRequest, TransferRequest, ValidateRequest, WithdrawRequest,
    balance_view, report_view, transaction_view
)
from ..errors import ValidationError
from ..system import BankingSystem
from ..transactions import TransactionState, TransactionType


router = APIRouter()


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {field} {value}") from None


@router.post("/transfer", status_code=status.HTTP_201_CREATED)
def transfer(
    request: TransferRequest,
    x_user_id: str = Header(...),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transfer between accounts; PENDIENTE when a restriction requires authorization"""
    transaction = system.orchestrator.transfer(
        request.origin_account,
        request.destination_account,
        request.amount,
        x_user_id,
        description=request.description
    )
    return transaction_view(transaction)


@router.post("/deposit", status_code=status.HTTP_201_CREATED)
def deposit(
    request: DepositRequest,
    x_user_id: str = Header(...),
    system: BankingSystem = Depends(get_banking_system)
):
    transaction = system.orchestrator.deposit(
        request.account_number,
        request.amount,
        x_user_id,
        description=request.description,
        external_reference=request.external_reference
    )
    return transaction_view(transaction)


@router.post("/withdraw", status_code=status.HTTP_201_CREATED)
def withdraw(
    request: WithdrawRequest,
    x_user_id: str = Header(...),
    system: BankingSystem = Depends(get_banking_system)
):
    transaction = system.orchestrator.withdraw(
        request.account_number,
        request.amount,
        x_user_id,
        description=request.description,
        external_reference=request.external_reference
    )
    return transaction_view(transaction)


@router.post("/validate")
def validate(request: ValidateRequest, system: BankingSystem = Depends(get_banking_system)):
    """Dry run: report whether the transaction would be accepted"""
    report = system.orchestrator.validate(
        request.account_number,
        request.amount,
        _parse_enum(TransactionType, request.transaction_type, "transaction type"),
        destination_number=request.destination_account
    )
    return report_view(report)


@router.post("/{transaction_id}/authorize")
def authorize(
    transaction_id: str,
    request: AuthorizeRequest,
    http_request: Request,
    system: BankingSystem = Depends(get_banking_system)
):
    transaction = system.orchestrator.authorize(
        transaction_id,
        request.verification_code,
        pattern_id=request.pattern_id,
        factors=request.factors,
        client_ip=get_client_ip(http_request)
    )
    return transaction_view(transaction)


@router.post("/{transaction_id}/cancel")
def cancel(transaction_id: str, system: BankingSystem = Depends(get_banking_system)):
    return transaction_view(system.orchestrator.cancel(transaction_id))


@router.get("/balance/{account_number}")
def balance_inquiry(account_number: str, system: BankingSystem = Depends(get_banking_system)):
    """Balance and the five latest settled or authorized transactions"""
    return balance_view(system.orchestrator.balance_inquiry(account_number))


@router.get("/{transaction_id}")
def get_transaction(transaction_id: str, system: BankingSystem = Depends(get_banking_system)):
    return transaction_view(system.ledger.get(transaction_id))


@router.get("")
def list_transactions(
    executor_user_id: Optional[str] = None,
    account_id: Optional[str] = None,
    transaction_type: Optional[str] = None,
    state: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
    system: BankingSystem = Depends(get_banking_system)
):
    result = system.ledger.list_transactions(
        executor_user_id=executor_user_id,
        account_id=account_id,
        transaction_type=_parse_enum(TransactionType, transaction_type, "transaction type"),
        state=_parse_enum(TransactionState, state, "transaction state"),
        start=start,
        end=end,
        page=page,
        limit=limit
    )
    return {
        "transactions": [transaction_view(t) for t in result.items],
        "pagination": {
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "pages": result.pages
        }
    }
