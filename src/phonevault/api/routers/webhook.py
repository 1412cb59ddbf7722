"""Fiat on-ramp status webhook.

The checkout itself runs at the provider; this endpoint only records the
status notifications it sends, once per (checkout, status).
"""

import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from phonevault.api.deps import get_services
from phonevault.config import get_settings
from phonevault.ledger.database import get_db
from phonevault.ledger.repository import VaultRepository
from phonevault.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks")


class OnrampWebhookPayload(BaseModel):
    """Checkout status notification."""
    checkout_id: str
    status: str                    # e.g. PENDING, COMPLETED, FAILED
    address: Optional[str] = None  # Account receiving the funds


class WebhookResponse(BaseModel):
    success: bool
    message: str
    duplicate: bool = False


class OnrampEventResponse(BaseModel):
    checkout_id: str
    status: str
    address: Optional[str] = None


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha256",
) -> bool:
    """Verify webhook signature using HMAC.

    Args:
        payload: Raw request body
        signature: Hex signature from header, optionally prefixed ("sha256=")
        secret: Webhook secret key
        algorithm: Hash algorithm (sha256, sha512)

    Returns:
        True if signature is valid
    """
    # Remove any prefix like "sha256="
    if "=" in signature:
        signature = signature.split("=", 1)[1]

    mac = hmac.new(
        secret.encode(),
        payload,
        getattr(hashlib, algorithm),
    )
    expected = mac.hexdigest()

    return hmac.compare_digest(expected, signature.lower())


@router.post("/onramp", response_model=WebhookResponse)
async def handle_onramp_webhook(
    request: Request,
    payload: OnrampWebhookPayload,
    x_webhook_signature: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> WebhookResponse:
    """Record an on-ramp checkout status.

    With ONRAMP_WEBHOOK_SECRET set, requests must carry a valid
    X-Webhook-Signature. Repeated notifications are acknowledged without
    being recorded twice.
    """
    settings = get_settings()

    body = await request.body()
    if settings.onramp_webhook_secret:
        if not x_webhook_signature or not verify_webhook_signature(
            body, x_webhook_signature, settings.onramp_webhook_secret
        ):
            logger.warning(f"Invalid webhook signature for checkout {payload.checkout_id}")
            raise HTTPException(status_code=401, detail="Invalid signature")

    async with get_db(services.relay.session_factory) as session:
        _, created = await VaultRepository(session).record_onramp_event(
            checkout_id=payload.checkout_id,
            status=payload.status.upper(),
            address=payload.address,
            raw_payload=json.dumps(payload.model_dump()),
        )

    if not created:
        logger.info(f"On-ramp {payload.checkout_id} {payload.status} already recorded, skipping")
        return WebhookResponse(success=True, message="Already recorded", duplicate=True)

    logger.info(f"On-ramp {payload.checkout_id} -> {payload.status.upper()}")
    return WebhookResponse(success=True, message="Recorded")


@router.get("/onramp/{checkout_id}", response_model=list[OnrampEventResponse])
async def get_onramp_status(
    checkout_id: str, services: Services = Depends(get_services)
) -> list[OnrampEventResponse]:
    """Statuses received for a checkout, oldest first."""
    async with get_db(services.relay.session_factory) as session:
        events = await VaultRepository(session).get_onramp_events(checkout_id)
        if not events:
            raise HTTPException(status_code=404, detail="Checkout not found")
        return [
            OnrampEventResponse(checkout_id=e.checkout_id, status=e.status, address=e.address)
            for e in events
        ]
