"""Admin API endpoints (token-protected)."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from phonevault.api.deps import get_services, require_admin_token
from phonevault.api.routers.claims import ClaimResponse
from phonevault.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class NonceResponse(BaseModel):
    relayer: str
    next_nonce: int


@router.post("/claims/{token}/retry", response_model=ClaimResponse)
async def retry_claim_transfer(
    token: str,
    services: Services = Depends(get_services),
    _: bool = Depends(require_admin_token),
) -> ClaimResponse:
    """Re-submit the payout of a claimed link whose transfer failed."""
    logger.warning(f"Admin retry of claim payout {token[:8]}...")
    return ClaimResponse.from_view(await services.claims.retry_transfer(token))


@router.post("/relay/resync-nonce", response_model=NonceResponse)
async def resync_relayer_nonce(
    services: Services = Depends(get_services),
    _: bool = Depends(require_admin_token),
) -> NonceResponse:
    """Reset the stored relayer nonce to the chain's value."""
    nonce = await services.relay.resync_nonce()
    return NonceResponse(relayer=services.relay.relayer_address, next_nonce=nonce)
