"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["DRY_RUN"] = "true"
os.environ["RETRY_BACKOFF"] = "0"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["ONRAMP_WEBHOOK_SECRET"] = "test-webhook-secret"

from phonevault.claims.registry import ClaimLinkRegistry
from phonevault.config import get_settings
from phonevault.identity.address import AddressDeriver
from phonevault.ledger.database import create_engine_for_url, init_db, make_session_factory
from phonevault.otp.delivery import LoggingOtpDelivery
from phonevault.otp.store import OtpChallengeStore
from phonevault.registration.orchestrator import RegistrationOrchestrator
from phonevault.relay.executor import RelayExecutor
from phonevault.relay.simulated import SimulatedChainClient
from phonevault.services import Services, build_services
from phonevault.utils.locks import clear_locks

RELAYER = 0x0111111111111111111111111111111111111111111111111111111111111111
FACTORY = 0x0222222222222222222222222222222222222222222222222222222222222222
CLASS_HASH = 0x0333333333333333333333333333333333333333333333333333333333333333
TOKEN = 0x053B40A647CEDFCA6CA84F542A0FE36736031905A9639A7F19A3C1E66BFD5080

ALICE = "+33612345678"
BOB = "+14155552671"


@pytest.fixture(autouse=True)
def _reset_locks():
    """Fresh lock registry per test (each test runs in its own event loop)."""
    clear_locks()
    yield
    clear_locks()


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine; concurrent tests need real connections."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'vault.db'}")
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
def chain() -> SimulatedChainClient:
    return SimulatedChainClient(RELAYER)


@pytest.fixture
def delivery() -> LoggingOtpDelivery:
    return LoggingOtpDelivery()


@pytest.fixture
def deriver() -> AddressDeriver:
    return AddressDeriver(FACTORY, CLASS_HASH)


@pytest.fixture
def relay(chain, session_factory) -> RelayExecutor:
    return RelayExecutor(
        chain=chain,
        session_factory=session_factory,
        retry_backoff=0,
        poll_interval=0,
        wait_timeout=0.05,
    )


@pytest.fixture
def otp_store(delivery, deriver, session_factory) -> OtpChallengeStore:
    return OtpChallengeStore(
        delivery=delivery,
        deriver=deriver,
        session_factory=session_factory,
        secret="test-secret",
    )


@pytest.fixture
def registry(relay, deriver, session_factory) -> ClaimLinkRegistry:
    return ClaimLinkRegistry(
        relay=relay,
        deriver=deriver,
        token_address=TOKEN,
        session_factory=session_factory,
    )


@pytest.fixture
def orchestrator(otp_store, deriver, relay, session_factory) -> RegistrationOrchestrator:
    return RegistrationOrchestrator(
        otp=otp_store,
        deriver=deriver,
        relay=relay,
        factory_address=FACTORY,
        session_factory=session_factory,
    )


@pytest.fixture
def services(chain, delivery, session_factory) -> Services:
    """Component graph from test settings over the simulated chain."""
    return build_services(
        settings=get_settings(),
        chain=chain,
        delivery=delivery,
        session_factory=session_factory,
    )
