"""
Banking Core API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import (
    BankingError, CollaboratorUnavailable, InsufficientFunds, NotFoundError,
    RateLimitExceeded, StateConflict, ValidationError
)
from ..logging_config import get_logger, log_action
from ..system import BankingSystem
from .accounts import router as accounts_router
from .admin import router as admin_router
from .transactions import router as transactions_router


logger = get_logger("banking.api")

# First match wins, so subclasses must precede their bases
_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (InsufficientFunds, 422),
    (StateConflict, 409),
    (RateLimitExceeded, 429),
    (CollaboratorUnavailable, 503),
)


def status_for(error: BankingError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status_code
    return 500


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Banking Core API",
        description="Accounts, authorization restrictions and money movement",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system or BankingSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BankingError)
    async def banking_error_handler(request: Request, exc: BankingError):
        status_code = status_for(exc)
        if status_code >= 500:
            log_action(
                logger, "error", f"{request.method} {request.url.path} failed: {exc.message}",
                action="request_failed", resource=request.url.path,
                extra={"code": exc.code}
            )
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": {"code": ValidationError.code, "message": str(exc.errors())}}
        )

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(admin_router, tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "banking_core_api",
            "version": __version__
        }

    return app
