"""
Account management endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .dependencies import get_banking_system
from .schemas import CreateAccountRequest, RestrictionPatch, RestrictionRequest, UpdateStatusRequest
from ..accounts import AccountStatus
from ..errors import ValidationError
from ..system import BankingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Open an account for an existing owner"""
    account = system.account_store.create_account(request.owner_id, request.account_type)
    return account.to_dict()


@router.get("/by-number/{account_number}")
def get_account_by_number(account_number: str, system: BankingSystem = Depends(get_banking_system)):
    return system.account_store.find_by_number(account_number).to_dict()


@router.get("/owner/{owner_id}")
def list_owner_accounts(
    owner_id: str,
    include_cancelled: bool = False,
    system: BankingSystem = Depends(get_banking_system)
):
    accounts = system.account_store.list_for_owner(owner_id, include_cancelled=include_cancelled)
    return {"accounts": [a.to_dict() for a in accounts]}


@router.get("/{account_id}")
def get_account(account_id: str, system: BankingSystem = Depends(get_banking_system)):
    return system.account_store.find_by_id(account_id).to_dict()


@router.patch("/{account_id}/status")
def update_account_status(
    account_id: str,
    request: UpdateStatusRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Block, deactivate or reactivate an account"""
    try:
        new_status = AccountStatus(request.status)
    except ValueError:
        raise ValidationError(f"Unknown account status {request.status}") from None
    return system.account_store.update_status(account_id, new_status, request.reason).to_dict()


@router.post("/{account_id}/cancel")
def cancel_account(account_id: str, system: BankingSystem = Depends(get_banking_system)):
    """Cancel an account with a zero balance"""
    return system.account_store.cancel_account(account_id).to_dict()


@router.get("/{account_id}/restrictions")
def list_restrictions(account_id: str, system: BankingSystem = Depends(get_banking_system)):
    restrictions = system.account_store.get_restrictions(account_id)
    return {"restrictions": [r.to_dict() for r in restrictions]}


@router.post("/{account_id}/restrictions", status_code=status.HTTP_201_CREATED)
def add_restriction(
    account_id: str,
    request: RestrictionRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_store.add_restriction(
        account_id, request.amount_from, request.amount_to, request.pattern_ref
    )
    return account.to_dict()


@router.patch("/{account_id}/restrictions/{restriction_id}")
def update_restriction(
    account_id: str,
    restriction_id: str,
    request: RestrictionPatch,
    system: BankingSystem = Depends(get_banking_system)
):
    patch = request.model_dump(exclude_unset=True)
    return system.account_store.update_restriction(account_id, restriction_id, patch).to_dict()


@router.delete("/{account_id}/restrictions/{restriction_id}")
def remove_restriction(
    account_id: str,
    restriction_id: str,
    system: BankingSystem = Depends(get_banking_system)
):
    return system.account_store.remove_restriction(account_id, restriction_id).to_dict()


@router.get("/{account_id}/movements")
def list_movements(
    account_id: str,
    limit: Optional[int] = 50,
    system: BankingSystem = Depends(get_banking_system)
):
    movements = system.account_store.get_movements(account_id, limit=limit)
    return {"movements": [m.to_dict() for m in movements]}
