"""OTP request and verification (registration) endpoints."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from phonevault.api.deps import felt, get_services
from phonevault.identity.phone import normalize_phone
from phonevault.registration.orchestrator import PublicKey
from phonevault.services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


class OtpRequest(BaseModel):
    phone: str


class OtpResponse(BaseModel):
    challenge_id: str
    phone: str
    expires_in: int


class VerifyRequest(BaseModel):
    """Code plus the device public key that will own the account."""
    phone: str
    code: str
    public_key_x: str
    public_key_y: str


class VerifyResponse(BaseModel):
    phone: str
    address: str
    status: str


@router.post("/otp", response_model=OtpResponse)
async def request_otp(
    request: OtpRequest, services: Services = Depends(get_services)
) -> OtpResponse:
    """Send a verification code to a phone number."""
    phone = normalize_phone(request.phone, services.settings.default_region)
    challenge_id = await services.otp.issue(phone)
    return OtpResponse(
        challenge_id=challenge_id,
        phone=phone,
        expires_in=services.settings.otp_ttl_seconds,
    )


@router.post("/otp/verify", response_model=VerifyResponse)
async def verify_otp(
    request: VerifyRequest, services: Services = Depends(get_services)
) -> VerifyResponse:
    """Verify the code and deploy the phone's account."""
    phone = normalize_phone(request.phone, services.settings.default_region)
    public_key = PublicKey(
        x=felt(request.public_key_x, "public_key_x"),
        y=felt(request.public_key_y, "public_key_y"),
    )
    address = await services.registration.register(phone, request.code, public_key)
    return VerifyResponse(phone=phone, address=address, status="registered")
