"""OTP challenge tests.

These tests ensure that:
1. Each issue sends exactly one code and stores only its digest
2. A code verifies at most once
3. A new issue supersedes every earlier code
4. Lockout after max attempts, expiry checked lazily
"""

import asyncio

import pytest
from sqlalchemy import select

from phonevault.errors import (
    AttemptsExhausted,
    DeliveryFailed,
    InvalidCode,
    InvalidPhoneNumber,
    NoActiveChallenge,
)
from phonevault.ledger.database import get_db
from phonevault.ledger.models import ChallengeStatus, IdentityStatus, OtpChallenge, PhoneIdentity
from phonevault.otp.store import OtpChallengeStore

from tests.conftest import ALICE, BOB


def wrong_code(code: str) -> str:
    return str((int(code) + 1) % 10**len(code)).zfill(len(code))


async def get_challenge(session_factory, phone: str) -> OtpChallenge:
    async with get_db(session_factory) as session:
        result = await session.execute(select(OtpChallenge).where(OtpChallenge.phone == phone))
        return result.scalar_one()


class TestIssue:

    async def test_issue_sends_exactly_one_code(self, otp_store, delivery):
        challenge_id = await otp_store.issue(ALICE)

        assert challenge_id
        assert delivery.send_count == 1
        code = delivery.last_code(ALICE)
        assert len(code) == 6 and code.isdigit()

    async def test_only_digest_is_stored(self, otp_store, delivery, session_factory):
        await otp_store.issue(ALICE)
        challenge = await get_challenge(session_factory, ALICE)

        assert delivery.last_code(ALICE) not in challenge.code_digest
        assert len(challenge.code_digest) == 64
        assert challenge.attempts == 0
        assert challenge.status == ChallengeStatus.ACTIVE

    async def test_issue_creates_unregistered_identity(self, otp_store, deriver, session_factory):
        await otp_store.issue(ALICE)

        async with get_db(session_factory) as session:
            identity = await session.get(PhoneIdentity, ALICE)
        assert identity.status == IdentityStatus.UNREGISTERED
        assert identity.address == deriver.derive_address_hex(ALICE)

    async def test_invalid_phone_sends_nothing(self, otp_store, delivery):
        with pytest.raises(InvalidPhoneNumber):
            await otp_store.issue("0612345678")
        assert delivery.send_count == 0

    async def test_delivery_failure_is_surfaced(self, otp_store, delivery, session_factory):
        delivery.fail_next = 1

        with pytest.raises(DeliveryFailed):
            await otp_store.issue(ALICE)

        # No local resend; the fresh challenge stays until the next issue
        assert delivery.send_count == 0
        challenge = await get_challenge(session_factory, ALICE)
        assert challenge.status == ChallengeStatus.ACTIVE


class TestVerify:

    async def test_correct_code_verifies_once(self, otp_store, delivery):
        challenge_id = await otp_store.issue(ALICE)
        code = delivery.last_code(ALICE)

        assert await otp_store.verify(ALICE, code) == challenge_id

        with pytest.raises(NoActiveChallenge):
            await otp_store.verify(ALICE, code)

    async def test_no_challenge(self, otp_store):
        with pytest.raises(NoActiveChallenge):
            await otp_store.verify(ALICE, "123456")

    async def test_wrong_code_keeps_challenge_active(self, otp_store, delivery, session_factory):
        await otp_store.issue(ALICE)
        code = delivery.last_code(ALICE)

        with pytest.raises(InvalidCode) as exc_info:
            await otp_store.verify(ALICE, wrong_code(code))
        assert type(exc_info.value) is InvalidCode

        challenge = await get_challenge(session_factory, ALICE)
        assert challenge.attempts == 1
        assert challenge.status == ChallengeStatus.ACTIVE

        await otp_store.verify(ALICE, code)

    async def test_lockout_after_max_attempts(self, otp_store, delivery, session_factory):
        await otp_store.issue(ALICE)
        code = delivery.last_code(ALICE)
        bad = wrong_code(code)

        for _ in range(4):
            with pytest.raises(InvalidCode) as exc_info:
                await otp_store.verify(ALICE, bad)
            assert type(exc_info.value) is InvalidCode

        # The fifth failure locks the challenge
        with pytest.raises(AttemptsExhausted):
            await otp_store.verify(ALICE, bad)

        # Terminal until a new issue, even with the right code
        with pytest.raises(AttemptsExhausted):
            await otp_store.verify(ALICE, code)

        challenge = await get_challenge(session_factory, ALICE)
        assert challenge.status == ChallengeStatus.LOCKED
        assert challenge.attempts == 5

    async def test_new_issue_clears_lockout(self, otp_store, delivery):
        await otp_store.issue(ALICE)
        bad = wrong_code(delivery.last_code(ALICE))
        for _ in range(5):
            with pytest.raises(InvalidCode):
                await otp_store.verify(ALICE, bad)

        await otp_store.issue(ALICE)
        await otp_store.verify(ALICE, delivery.last_code(ALICE))

    async def test_superseded_code_never_validates(self, otp_store, delivery):
        await otp_store.issue(ALICE)
        first = delivery.last_code(ALICE)
        await otp_store.issue(ALICE)
        second = delivery.last_code(ALICE)

        if first != second:
            with pytest.raises(InvalidCode):
                await otp_store.verify(ALICE, first)

        await otp_store.verify(ALICE, second)

    async def test_expired_code(self, delivery, deriver, session_factory):
        store = OtpChallengeStore(
            delivery=delivery,
            deriver=deriver,
            session_factory=session_factory,
            ttl_seconds=0,
        )
        await store.issue(ALICE)

        with pytest.raises(NoActiveChallenge):
            await store.verify(ALICE, delivery.last_code(ALICE))

        challenge = await get_challenge(session_factory, ALICE)
        assert challenge.status == ChallengeStatus.EXPIRED

    async def test_challenges_are_per_phone(self, otp_store, delivery):
        await otp_store.issue(ALICE)
        await otp_store.issue(BOB)

        await otp_store.verify(BOB, delivery.last_code(BOB))
        await otp_store.verify(ALICE, delivery.last_code(ALICE))

    async def test_concurrent_correct_verifications_succeed_once(self, otp_store, delivery):
        await otp_store.issue(ALICE)
        code = delivery.last_code(ALICE)

        results = await asyncio.gather(
            *[otp_store.verify(ALICE, code) for _ in range(8)],
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, str)]
        assert len(successes) == 1
        assert all(isinstance(r, NoActiveChallenge) for r in results if not isinstance(r, str))

    async def test_concurrent_wrong_codes_all_counted(self, otp_store, delivery, session_factory):
        await otp_store.issue(ALICE)
        bad = wrong_code(delivery.last_code(ALICE))

        results = await asyncio.gather(
            *[otp_store.verify(ALICE, bad) for _ in range(3)],
            return_exceptions=True,
        )

        assert all(type(r) is InvalidCode for r in results)
        challenge = await get_challenge(session_factory, ALICE)
        assert challenge.attempts == 3
