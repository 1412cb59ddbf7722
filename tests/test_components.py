"""Component tests: locks, retry, delivery providers, config and repository."""

import asyncio
import logging
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from phonevault.errors import ChainUnavailable, DeliveryFailed, InvalidAmount
from phonevault.ledger import database
from phonevault.ledger.database import get_db
from phonevault.ledger.models import ClaimLink, FundingStatus, IdentityStatus, utcnow
from phonevault.ledger.repository import VaultRepository
from phonevault.otp.delivery import (
    MESSAGE_TEMPLATE,
    LoggingOtpDelivery,
    TwilioOtpDelivery,
    get_otp_delivery,
    reset_otp_delivery,
)
from phonevault.utils.locks import KeyedLock, LockTimeoutError, clear_locks, get_lock
from phonevault.utils.retry import retry_transient

from tests.conftest import ALICE


class TestKeyedLocks:
    """Tests for the concurrency locks module."""

    def test_same_key_same_lock(self):
        assert get_lock("a") is get_lock("a")
        assert get_lock("a") is not get_lock("b")

    @pytest.mark.asyncio
    async def test_context_manager_releases(self):
        async with KeyedLock("relay-nonce:x", operation="test"):
            assert get_lock("relay-nonce:x").locked()

        assert not get_lock("relay-nonce:x").locked()

    @pytest.mark.asyncio
    async def test_prevents_concurrent_access(self):
        """Test that lock prevents concurrent access."""
        order = []

        async def worker(name: str):
            async with KeyedLock("shared", operation=name):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    @pytest.mark.asyncio
    async def test_lock_timeout_raises_error(self):
        async with KeyedLock("busy"):
            with pytest.raises(LockTimeoutError):
                async with KeyedLock("busy", timeout=0.05):
                    pass

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        with pytest.raises(RuntimeError):
            async with KeyedLock("error"):
                raise RuntimeError("boom")

        assert not get_lock("error").locked()

    def test_clear_locks(self):
        lock = get_lock("temp")
        clear_locks()
        assert get_lock("temp") is not lock


class TestRetry:

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = AsyncMock(side_effect=[ChainUnavailable("down"), ChainUnavailable("down"), 42])

        result = await retry_transient(calls, retries=2, backoff=0, retry_on=(ChainUnavailable,))

        assert result == 42
        assert calls.await_count == 3

    @pytest.mark.asyncio
    async def test_last_error_propagates(self):
        calls = AsyncMock(side_effect=ChainUnavailable("down"))

        with pytest.raises(ChainUnavailable):
            await retry_transient(calls, retries=1, backoff=0, retry_on=(ChainUnavailable,))
        assert calls.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        calls = AsyncMock(side_effect=InvalidAmount())

        with pytest.raises(InvalidAmount):
            await retry_transient(calls, retries=3, backoff=0, retry_on=(ChainUnavailable,))
        assert calls.await_count == 1


class TestDelivery:

    @pytest.fixture
    def twilio(self):
        with patch("phonevault.otp.delivery.Client") as client_class:
            delivery = TwilioOtpDelivery("AC123", "token", "+15005550006")
        assert delivery.client is client_class.return_value
        return delivery

    @pytest.mark.asyncio
    async def test_twilio_sends_sms(self, twilio):
        twilio.client.messages.create.return_value = SimpleNamespace(sid="SM1")

        await twilio.send_code(ALICE, "123456")

        twilio.client.messages.create.assert_called_once_with(
            body=MESSAGE_TEMPLATE.format(code="123456"),
            from_="+15005550006",
            to=ALICE,
        )

    @pytest.mark.asyncio
    async def test_twilio_rejection(self, twilio):
        twilio.client.messages.create.side_effect = TwilioRestException(
            400, "/Messages.json", msg="The 'To' number is not valid"
        )

        with pytest.raises(DeliveryFailed, match="rejected"):
            await twilio.send_code(ALICE, "123456")

    @pytest.mark.asyncio
    async def test_twilio_unreachable(self, twilio):
        twilio.client.messages.create.side_effect = ConnectionError("connection refused")

        with pytest.raises(DeliveryFailed, match="unreachable"):
            await twilio.send_code(ALICE, "123456")

    def test_twilio_requires_credentials(self):
        with pytest.raises(ValueError):
            TwilioOtpDelivery("", "", "+15005550006")

    @pytest.mark.asyncio
    async def test_logging_delivery_keeps_codes(self):
        delivery = LoggingOtpDelivery()
        await delivery.send_code(ALICE, "111111")
        await delivery.send_code(ALICE, "222222")

        assert delivery.last_code(ALICE) == "222222"
        assert delivery.send_count == 2

    def test_dry_run_uses_logging_delivery(self):
        reset_otp_delivery()
        try:
            assert isinstance(get_otp_delivery(), LoggingOtpDelivery)
        finally:
            reset_otp_delivery()


class TestConfig:

    def test_get_settings(self):
        from phonevault.config import get_settings

        settings = get_settings()
        assert settings.environment == "test"
        assert settings.dry_run is True
        assert settings.otp_max_attempts == 5

    def test_settings_safe_dict(self):
        from phonevault.config import Settings

        settings = Settings(
            relayer_private_key="0xdeadbeef",
            database_url="postgresql+asyncpg://vault:secret@db/vault",
        )
        safe = settings.get_safe_dict()

        assert "secret" not in safe["database_url"]
        assert safe["starknet"]["relayer_key"] == "***"
        assert "deadbeef" not in str(safe)


class TestDatabase:

    @pytest.mark.asyncio
    async def test_sqlite_in_production_warns(self, monkeypatch, caplog):
        settings = SimpleNamespace(
            is_production=True, debug=False, database_url="sqlite+aiosqlite:///:memory:"
        )
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "get_settings", lambda: settings)

        with caplog.at_level(logging.WARNING, logger="phonevault.ledger.database"):
            engine = database.get_engine()
        await engine.dispose()

        assert "SQLite in production" in caplog.text

    @pytest.mark.asyncio
    async def test_sqlite_in_development_is_quiet(self, monkeypatch, caplog):
        settings = SimpleNamespace(
            is_production=False, debug=False, database_url="sqlite+aiosqlite:///:memory:"
        )
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "get_settings", lambda: settings)

        with caplog.at_level(logging.WARNING, logger="phonevault.ledger.database"):
            engine = database.get_engine()
        await engine.dispose()

        assert "SQLite in production" not in caplog.text


class TestVaultRepository:

    @pytest.mark.asyncio
    async def test_identity_status_only_moves_forward(self, session_factory):
        async with get_db(session_factory) as session:
            repo = VaultRepository(session)
            await repo.get_or_create_identity(ALICE, "0x1")

            assert await repo.advance_identity_status(ALICE, IdentityStatus.REGISTERED)
            assert not await repo.advance_identity_status(ALICE, IdentityStatus.PENDING)

            identity = await repo.get_identity(ALICE)
            await session.refresh(identity)
            assert identity.status == IdentityStatus.REGISTERED

    @pytest.mark.asyncio
    async def test_claim_cas_succeeds_once(self, session_factory):
        async with get_db(session_factory) as session:
            repo = VaultRepository(session)
            await repo.create_claim_link("tok", ALICE, "0x1", 2**200, utcnow() + timedelta(days=1))

            # Not claimable until funded
            assert not await repo.mark_claimed("tok", ALICE, "0x2", utcnow())
            assert await repo.set_claim_funding("tok", FundingStatus.FUNDED, "0xf00d")

            assert await repo.mark_claimed("tok", ALICE, "0x2", utcnow())
            assert not await repo.mark_claimed("tok", ALICE, "0x3", utcnow())

        async with get_db(session_factory) as session:
            link = await session.get(ClaimLink, "tok")
            assert link.claimant_address == "0x2"
            assert link.amount == 2**200
            assert link.funding_tx_hash == "0xf00d"

    @pytest.mark.asyncio
    async def test_claim_funding_settles_once(self, session_factory):
        async with get_db(session_factory) as session:
            repo = VaultRepository(session)
            await repo.create_claim_link("tok", ALICE, "0x1", 5, utcnow() + timedelta(days=1))

            assert await repo.set_claim_funding("tok", FundingStatus.FAILED, error_message="reverted")
            assert not await repo.set_claim_funding("tok", FundingStatus.FUNDED)

            link = await repo.get_claim_link("tok")
            assert link.funding_status == FundingStatus.FAILED
            assert link.error_message == "reverted"

    @pytest.mark.asyncio
    async def test_onramp_event_recorded_once(self, session_factory):
        async with get_db(session_factory) as session:
            repo = VaultRepository(session)
            _, created = await repo.record_onramp_event("chk_1", "PENDING")
            _, again = await repo.record_onramp_event("chk_1", "PENDING")
            await repo.record_onramp_event("chk_1", "COMPLETED")

            assert created and not again
            events = await repo.get_onramp_events("chk_1")
            assert [e.status for e in events] == ["PENDING", "COMPLETED"]
