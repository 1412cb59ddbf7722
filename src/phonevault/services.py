"""Wiring of the vault components from settings."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phonevault.claims.registry import ClaimLinkRegistry
from phonevault.config import Settings, get_settings
from phonevault.identity.address import AddressDeriver, parse_felt
from phonevault.otp.delivery import OtpDelivery, get_otp_delivery
from phonevault.otp.store import OtpChallengeStore
from phonevault.registration.orchestrator import RegistrationOrchestrator
from phonevault.relay.base import ChainClient
from phonevault.relay.executor import RelayExecutor
from phonevault.relay.factory import create_relay_executor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """All components sharing one chain client and database."""
    settings: Settings
    deriver: AddressDeriver
    relay: RelayExecutor
    otp: OtpChallengeStore
    claims: ClaimLinkRegistry
    registration: RegistrationOrchestrator


def build_deriver(settings: Settings) -> AddressDeriver:
    return AddressDeriver(
        deployer_address=parse_felt(settings.vault_factory_address),
        class_hash=parse_felt(settings.blank_account_class_hash),
    )


def build_services(
    settings: Optional[Settings] = None,
    chain: Optional[ChainClient] = None,
    delivery: Optional[OtpDelivery] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Services:
    """Build the component graph.

    Args:
        settings: Settings (default: cached environment settings)
        chain: Chain client (default: from settings)
        delivery: OTP delivery provider (default: from settings)
        session_factory: Session factory (default: global database)
    """
    settings = settings or get_settings()
    deriver = build_deriver(settings)
    relay = create_relay_executor(chain=chain, session_factory=session_factory, settings=settings)

    otp = OtpChallengeStore(
        delivery=delivery or get_otp_delivery(),
        deriver=deriver,
        session_factory=session_factory,
        secret=settings.otp_secret,
        ttl_seconds=settings.otp_ttl_seconds,
        code_length=settings.otp_code_length,
        max_attempts=settings.otp_max_attempts,
    )
    claims = ClaimLinkRegistry(
        relay=relay,
        deriver=deriver,
        token_address=parse_felt(settings.usdc_address),
        session_factory=session_factory,
        ttl_days=settings.claim_ttl_days,
    )
    registration = RegistrationOrchestrator(
        otp=otp,
        deriver=deriver,
        relay=relay,
        factory_address=parse_felt(settings.vault_factory_address),
        session_factory=session_factory,
    )

    logger.debug(f"Services built (dry_run={settings.dry_run})")
    return Services(
        settings=settings,
        deriver=deriver,
        relay=relay,
        otp=otp,
        claims=claims,
        registration=registration,
    )
