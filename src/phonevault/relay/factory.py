"""Factory for the chain client and relay executor."""

import logging
from typing import Optional

from phonevault.config import Settings, get_settings
from phonevault.identity.address import parse_felt
from phonevault.relay.base import ChainClient
from phonevault.relay.executor import RelayExecutor

logger = logging.getLogger(__name__)

# Cached client instance
_chain_client: Optional[ChainClient] = None


def get_chain_client() -> ChainClient:
    """Get the chain client for the configured mode.

    Dry-run mode (or a missing relayer key) uses the in-memory simulated chain.
    """
    global _chain_client
    if _chain_client is not None:
        return _chain_client

    settings = get_settings()
    relayer = parse_felt(settings.relayer_address)

    if settings.dry_run or not settings.relayer_private_key:
        from phonevault.relay.simulated import SimulatedChainClient

        if not settings.dry_run:
            logger.warning("RELAYER_PRIVATE_KEY not set - using simulated chain")
        _chain_client = SimulatedChainClient(relayer)
    else:
        from phonevault.relay.starknet import StarknetChainClient

        _chain_client = StarknetChainClient(
            rpc_url=settings.starknet_rpc_url,
            relayer_address=relayer,
            relayer_private_key=parse_felt(settings.relayer_private_key),
            chain=settings.starknet_chain,
            timeout=settings.submit_timeout,
        )

    return _chain_client


def create_relay_executor(
    chain: Optional[ChainClient] = None,
    session_factory=None,
    settings: Optional[Settings] = None,
) -> RelayExecutor:
    """Build a RelayExecutor from settings."""
    settings = settings or get_settings()
    return RelayExecutor(
        chain=chain or get_chain_client(),
        session_factory=session_factory,
        fee_multiplier=settings.fee_multiplier,
        nonce_retry_limit=settings.nonce_retry_limit,
        transient_retries=settings.transient_retries,
        retry_backoff=settings.retry_backoff,
        wait_timeout=settings.submit_timeout,
    )


def reset_chain_client() -> None:
    """Drop the cached client (useful for testing)."""
    global _chain_client
    _chain_client = None
