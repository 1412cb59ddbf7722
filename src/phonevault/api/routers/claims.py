"""Claim link endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from phonevault.api.deps import felt, get_services
from phonevault.claims.registry import ClaimView
from phonevault.errors import InvalidAmount
from phonevault.identity.phone import normalize_phone
from phonevault.services import Services

router = APIRouter(prefix="/claims")


class CreateClaimRequest(BaseModel):
    """Escrow request signed by the creator as an outside execution.

    Amounts and felts are strings (hex or decimal); they exceed JSON's safe
    integer range.
    """
    creator_phone: str
    amount: str
    outside_nonce: str
    signature: list[str]
    execute_after: Optional[int] = None
    execute_before: Optional[int] = None


class RedeemRequest(BaseModel):
    recipient_phone: str


class ClaimResponse(BaseModel):
    token: str
    amount: str
    status: str
    created_at: datetime
    expires_at: datetime
    funding_status: str
    funding_tx_hash: Optional[str] = None
    claimant_address: Optional[str] = None
    claimed_at: Optional[datetime] = None
    transfer_status: str
    transfer_tx_hash: Optional[str] = None

    @classmethod
    def from_view(cls, view: ClaimView) -> "ClaimResponse":
        return cls(
            token=view.token,
            amount=str(view.amount),
            status=view.status,
            created_at=view.created_at,
            expires_at=view.expires_at,
            funding_status=view.funding_status,
            funding_tx_hash=view.funding_tx_hash,
            claimant_address=view.claimant_address,
            claimed_at=view.claimed_at,
            transfer_status=view.transfer_status,
            transfer_tx_hash=view.transfer_tx_hash,
        )


class CreateClaimResponse(BaseModel):
    token: str
    amount: str
    expires_at: datetime
    funding_status: str
    funding_tx_hash: Optional[str] = None


class RedeemResponse(BaseModel):
    token: str
    address: str


@router.post("", response_model=CreateClaimResponse)
async def create_claim(
    request: CreateClaimRequest, services: Services = Depends(get_services)
) -> CreateClaimResponse:
    """Escrow funds and issue a claim link."""
    try:
        amount = int(request.amount, 0)
    except ValueError:
        raise InvalidAmount(f"Invalid amount: {request.amount!r}")

    link = await services.claims.create(
        amount,
        normalize_phone(request.creator_phone, services.settings.default_region),
        outside_nonce=felt(request.outside_nonce, "outside_nonce"),
        signature=[felt(s, "signature") for s in request.signature],
        execute_after=request.execute_after,
        execute_before=request.execute_before,
    )
    return CreateClaimResponse(
        token=link.token,
        amount=str(link.amount),
        expires_at=link.expires_at,
        funding_status=link.funding_status,
        funding_tx_hash=link.funding_tx_hash,
    )


@router.get("/{token}", response_model=ClaimResponse)
async def get_claim(token: str, services: Services = Depends(get_services)) -> ClaimResponse:
    """Claim link status."""
    return ClaimResponse.from_view(await services.claims.get(token))


@router.post("/{token}/redeem", response_model=RedeemResponse)
async def redeem_claim(
    token: str, request: RedeemRequest, services: Services = Depends(get_services)
) -> RedeemResponse:
    """Redeem a claim link into the recipient phone's account."""
    phone = normalize_phone(request.recipient_phone, services.settings.default_region)
    address = await services.claims.redeem(token, phone)
    return RedeemResponse(token=token, address=address)
