"""
Shared FastAPI dependencies
"""

from typing import Optional

from fastapi import Request

from ..system import BankingSystem


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system


def get_client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For when behind the gateway, else the peer address"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
