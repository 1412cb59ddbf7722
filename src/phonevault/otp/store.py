"""OTP challenge lifecycle.

States:
    active -> verified   (correct code)
    active -> locked     (max_attempts failed codes)
    active -> expired    (TTL elapsed, detected lazily on read)
    issue() always starts a new active challenge, whatever came before.

Only an HMAC digest of the code is stored. Each issue assigns a new
challenge_id and every verification attempt is a single UPDATE conditioned on
that id and the attempt count read, so a code from a superseded challenge can
never validate and concurrent attempts cannot both be counted as one.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phonevault.errors import AttemptsExhausted, InvalidCode, NoActiveChallenge
from phonevault.identity.address import AddressDeriver
from phonevault.identity.phone import mask_phone, validate_e164
from phonevault.ledger.database import get_db
from phonevault.ledger.models import ChallengeStatus, utcnow
from phonevault.ledger.repository import VaultRepository
from phonevault.otp.delivery import OtpDelivery

logger = logging.getLogger(__name__)

# Re-reads allowed when a concurrent attempt changed the challenge first
MAX_CONFLICT_RETRIES = 5


class OtpChallengeStore:
    """Issues and verifies one-time codes."""

    def __init__(
        self,
        delivery: OtpDelivery,
        deriver: AddressDeriver,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        secret: str = "dev-otp-secret",
        ttl_seconds: int = 300,
        code_length: int = 6,
        max_attempts: int = 5,
    ):
        self.delivery = delivery
        self.deriver = deriver
        self.session_factory = session_factory
        self.secret = secret.encode()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.code_length = code_length
        self.max_attempts = max_attempts

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10**self.code_length)).zfill(self.code_length)

    def _digest(self, phone: str, code: str) -> str:
        return hmac.new(self.secret, f"{phone}:{code}".encode(), hashlib.sha256).hexdigest()

    async def issue(self, phone: str) -> str:
        """Start a new challenge for `phone`, superseding any earlier one.

        Sends the code exactly once.

        Returns:
            The new challenge id

        Raises:
            InvalidPhoneNumber, PhoneNumberTooLong: Bad phone
            DeliveryFailed: Provider did not take the code
        """
        validate_e164(phone)
        address = self.deriver.derive_address_hex(phone)

        code = self._generate_code()
        challenge_id = secrets.token_hex(16)
        now = utcnow()

        async with get_db(self.session_factory) as session:
            repo = VaultRepository(session)
            await repo.get_or_create_identity(phone, address)
            await repo.replace_challenge(
                phone=phone,
                challenge_id=challenge_id,
                code_digest=self._digest(phone, code),
                issued_at=now,
                expires_at=now + self.ttl,
                max_attempts=self.max_attempts,
            )

        await self.delivery.send_code(phone, code)
        logger.info(f"[OTP] Challenge issued for {mask_phone(phone)} via {self.delivery.name}")
        return challenge_id

    async def verify(self, phone: str, code: str) -> str:
        """Check `code` against the active challenge for `phone`.

        Returns:
            The verified challenge id

        Raises:
            NoActiveChallenge: None issued, already used, or expired
            AttemptsExhausted: Locked by too many failures (also raised by the
                failure that locks it)
            InvalidCode: Wrong code, attempts remain
        """
        validate_e164(phone)

        for _ in range(MAX_CONFLICT_RETRIES):
            now = utcnow()
            async with get_db(self.session_factory) as session:
                repo = VaultRepository(session)
                challenge = await repo.get_challenge(phone)

                if challenge is None:
                    raise NoActiveChallenge(f"No code issued for {mask_phone(phone)}")

                if challenge.status == ChallengeStatus.LOCKED or (
                    challenge.status == ChallengeStatus.ACTIVE
                    and challenge.attempts >= challenge.max_attempts
                ):
                    raise AttemptsExhausted()

                if challenge.status != ChallengeStatus.ACTIVE:
                    raise NoActiveChallenge(f"Code already {challenge.status}")

                if challenge.expires_at <= now:
                    await repo.expire_challenge(challenge.challenge_id)
                    expired = True
                else:
                    expired = False
                    matched = hmac.compare_digest(self._digest(phone, code), challenge.code_digest)
                    attempts = challenge.attempts + 1
                    if matched:
                        new_status = ChallengeStatus.VERIFIED
                    elif attempts >= challenge.max_attempts:
                        new_status = ChallengeStatus.LOCKED
                    else:
                        new_status = ChallengeStatus.ACTIVE

                    won = await repo.record_attempt(
                        challenge.challenge_id, challenge.attempts, new_status, now
                    )
                    challenge_id = challenge.challenge_id
                    remaining = challenge.max_attempts - attempts

            if expired:
                raise NoActiveChallenge("Code expired")

            if not won:
                logger.debug(f"[OTP] Concurrent attempt on {mask_phone(phone)}, re-reading")
                continue

            if new_status == ChallengeStatus.VERIFIED:
                logger.info(f"[OTP] Verification successful for {mask_phone(phone)}")
                return challenge_id

            logger.warning(
                f"[OTP] Verification failed for {mask_phone(phone)} "
                f"(attempt {attempts}/{attempts + remaining})"
            )
            if new_status == ChallengeStatus.LOCKED:
                raise AttemptsExhausted()
            raise InvalidCode(f"Invalid code, {remaining} attempts left")

        raise NoActiveChallenge("Challenge changed during verification; request a new code")
