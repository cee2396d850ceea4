"""
Lending Ledger API Application Factory
"""

from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..service import LedgerService, build_ledger
from ..config import get_config
from ..exceptions import (
    LedgerError, ValidationError, NotFoundError, AuthorizationError, InvalidTransitionError,
    LoanNotActiveError, OverpaymentError, InsufficientFundsError, AlreadyDisbursedError,
    PersistenceConflictError
)
from .. import __version__
from .loans import router as loans_router, users_router
from .accounts import router as accounts_router


ERROR_STATUS_CODES = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (InvalidTransitionError, 409),
    (LoanNotActiveError, 409),
    (OverpaymentError, 409),
    (InsufficientFundsError, 409),
    (AlreadyDisbursedError, 409),
    (PersistenceConflictError, 503),
]


def _status_for(exc: LedgerError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _jsonable(value):
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


def create_app(ledger: Optional[LedgerService] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Ledger API",
        description="Loan lifecycle and repayment ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.ledger = ledger or build_ledger(get_config())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={
                "error": type(exc).__name__,
                "detail": exc.message,
                "details": _jsonable(exc.details)
            }
        )

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(users_router, prefix="/users", tags=["Loans"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Virtual Accounts"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_ledger_api",
            "version": __version__
        }

    return app
