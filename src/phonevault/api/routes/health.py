"""Health check endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from phonevault.api.deps import get_services
from phonevault.config import get_settings
from phonevault.ledger.database import get_db
from phonevault.services import Services

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "phonevault"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration info."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "phonevault",
        "version": "0.1.0",
        "config": settings.get_safe_dict(),
    }


@router.get("/status")
async def status(services: Services = Depends(get_services)):
    """Readiness: database reachable."""
    try:
        async with get_db(services.relay.session_factory) as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "database": "error", "detail": str(e)},
        )
    return {
        "status": "ok",
        "database": "ok",
        "dry_run": services.settings.dry_run,
        "relayer": services.relay.relayer_address,
    }
