"""Phone identity lookup."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from phonevault.api.deps import get_services
from phonevault.identity.phone import normalize_phone
from phonevault.services import Services

router = APIRouter()


class UserResponse(BaseModel):
    phone: str
    address: str
    status: str
    deploy_tx_hash: Optional[str] = None


@router.get("/users/{phone}", response_model=UserResponse)
async def get_user(phone: str, services: Services = Depends(get_services)) -> UserResponse:
    """Address and registration status of a phone number.

    The address is returned for unregistered numbers too, so funds can be
    sent to it before the account exists.
    """
    phone = normalize_phone(phone, services.settings.default_region)
    user = await services.registration.get_user(phone)
    return UserResponse(
        phone=user.phone,
        address=user.address,
        status=user.status,
        deploy_tx_hash=user.deploy_tx_hash,
    )
