"""
Operational endpoints: reconciliation queue, pending-authorization expiry
and audit chain verification
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system
from .schemas import ResolveRequest, reconciliation_view, transaction_view
from ..errors import ValidationError
from ..reconciliation import ReconciliationKind
from ..system import BankingSystem


router = APIRouter()


@router.get("/reconciliation")
def list_reconciliation(
    kind: Optional[str] = None,
    system: BankingSystem = Depends(get_banking_system)
) -> Dict[str, Any]:
    """Open half-applied settlements"""
    try:
        kind_filter = ReconciliationKind(kind) if kind else None
    except ValueError:
        raise ValidationError(f"Unknown reconciliation kind {kind}") from None
    items = system.reconciliation.list_open(kind_filter)
    return {"items": [reconciliation_view(i) for i in items], "count": len(items)}


@router.post("/reconciliation/retry")
def retry_reconciliation(system: BankingSystem = Depends(get_banking_system)) -> Dict[str, Any]:
    """Re-send missing movements"""
    return system.reconciliation.retry_movements()


@router.post("/reconciliation/{item_id}/resolve")
def resolve_reconciliation(
    item_id: str,
    request: ResolveRequest,
    system: BankingSystem = Depends(get_banking_system)
) -> Dict[str, Any]:
    return reconciliation_view(system.reconciliation.resolve(item_id, request.note))


@router.post("/maintenance/expire-pending")
def expire_pending(system: BankingSystem = Depends(get_banking_system)) -> Dict[str, Any]:
    expired = system.orchestrator.expire_pending()
    return {"expired": [transaction_view(t) for t in expired], "count": len(expired)}


@router.post("/maintenance/sweep-rate-limits")
def sweep_rate_limits(system: BankingSystem = Depends(get_banking_system)) -> Dict[str, Any]:
    return {"removed": system.rate_limiter.sweep(), "tracked": system.rate_limiter.tracked()}


@router.get("/audit/verify")
def verify_audit(system: BankingSystem = Depends(get_banking_system)) -> Dict[str, Any]:
    return system.audit_trail.verify_integrity()
