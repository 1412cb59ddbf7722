"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from phonevault.config import get_settings
from phonevault.errors import (
    ChainRejected,
    ClaimTransferFailed,
    DeploymentFailed,
    InsufficientFunds,
    StateConflict,
    TokenExpired,
    TokenNotFound,
    TransactionNotFound,
    TransientError,
    ValidationError,
    VaultError,
)
from phonevault.ledger.database import close_db, init_db
from phonevault.services import Services, build_services

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (ValidationError, 400),
    (TokenNotFound, 404),
    (TransactionNotFound, 404),
    (TokenExpired, 410),
    (StateConflict, 409),
    (InsufficientFunds, 422),
    (ChainRejected, 422),
    (TransientError, 503),
    (ClaimTransferFailed, 502),
    (DeploymentFailed, 502),
]


def status_for(error: VaultError) -> int:
    """HTTP status for a domain error."""
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return status_code
    return 500


async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")
    content = {"error": exc.code, "detail": exc.message}
    tx_hash = getattr(exc, "tx_hash", None)
    if tx_hash:
        content["tx_hash"] = tx_hash
    return JSONResponse(status_code=status_code, content=content)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    yield
    # Shutdown
    await close_db()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Component graph (default: built from settings)
    """
    settings = get_settings()

    app = FastAPI(
        title="PhoneVault API",
        description="Phone-number accounts, claim links and gasless relaying on Starknet",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.services = services or build_services(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(VaultError, vault_error_handler)

    # Register routes
    from phonevault.api.routers import admin, claims, otp, relay, users, webhook
    from phonevault.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(otp.router, prefix="/api/v1", tags=["OTP"])
    app.include_router(users.router, prefix="/api/v1", tags=["Users"])
    app.include_router(claims.router, prefix="/api/v1", tags=["Claims"])
    app.include_router(relay.router, prefix="/api/v1", tags=["Relay"])
    app.include_router(webhook.router, tags=["Webhooks"])
    app.include_router(admin.router, tags=["Admin"])

    return app


# Default app instance
app = create_app()
