"""Registration: OTP verification followed by account deployment.

An identity is marked pending as soon as the code is verified and registered
only once the deployment transaction is accepted. A registration interrupted
after submission is resumed from the recorded transaction on the next attempt
instead of deploying twice.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phonevault.errors import (
    AlreadyRegistered,
    ChainRejected,
    DeploymentFailed,
    TransientError,
    ValidationError,
)
from phonevault.identity.address import AddressDeriver
from phonevault.identity.phone import mask_phone, validate_e164
from phonevault.ledger.database import get_db
from phonevault.ledger.models import IdentityStatus, TxStatus
from phonevault.ledger.repository import VaultRepository
from phonevault.otp.store import OtpChallengeStore
from phonevault.relay.base import make_call, split_u256
from phonevault.relay.executor import RelayExecutor, TransactionHandle
from phonevault.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublicKey:
    """P-256 public key of the device that will own the account."""
    x: int
    y: int

    def __post_init__(self):
        for coordinate in (self.x, self.y):
            if not isinstance(coordinate, int) or not 0 <= coordinate < 2**256:
                raise ValidationError("Public key coordinates must be uint256 values")

    def calldata(self) -> list[int]:
        return [*split_u256(self.x), *split_u256(self.y)]


@dataclass
class UserView:
    phone: str
    address: str
    status: str
    deploy_tx_hash: Optional[str] = None


class RegistrationOrchestrator:
    """Verifies a phone and deploys its account."""

    def __init__(
        self,
        otp: OtpChallengeStore,
        deriver: AddressDeriver,
        relay: RelayExecutor,
        factory_address: int,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.otp = otp
        self.deriver = deriver
        self.relay = relay
        self.factory_address = factory_address
        self.session_factory = session_factory

    async def register(self, phone: str, code: str, public_key: PublicKey) -> str:
        """Verify `code` and deploy the account for `phone`.

        Returns:
            The account address (hex)

        Raises:
            NoActiveChallenge, InvalidCode, AttemptsExhausted: From verification
            AlreadyRegistered: Account already deployed
            DeploymentFailed: Deployment rejected or not confirmed; the
                identity stays pending and a new attempt resumes it
        """
        validate_e164(phone)
        await self.otp.verify(phone, code)
        address = self.deriver.derive_address_hex(phone)

        async with KeyedLock(f"registration:{phone}", operation="register"):
            async with get_db(self.session_factory) as session:
                repo = VaultRepository(session)
                identity = await repo.get_or_create_identity(phone, address)
                if identity.status == IdentityStatus.REGISTERED:
                    raise AlreadyRegistered()
                await repo.advance_identity_status(phone, IdentityStatus.PENDING)
                previous_tx = identity.deploy_tx_hash
                attempt = identity.deploy_attempts + 1

            if previous_tx:
                handle = await self._resume(phone, previous_tx)
                if handle is not None:
                    await self._finish(phone, handle)
                    return address

            handle = await self._deploy(phone, public_key, attempt)
            await self._finish(phone, handle)

        return address

    async def _resume(self, phone: str, tx_hash: str) -> Optional[TransactionHandle]:
        """Earlier deployment if it is still live, None if it was rejected."""
        handle = await self.relay.get_status(tx_hash)
        if handle.status == TxStatus.REJECTED:
            logger.info(f"[Register] Earlier deployment {tx_hash} rejected, redeploying")
            return None

        logger.info(f"[Register] Resuming deployment {tx_hash} for {mask_phone(phone)}")
        if handle.status == TxStatus.PENDING:
            try:
                handle = await self.relay.wait_for(tx_hash)
            except ChainRejected:
                return None
        return handle

    async def _deploy(self, phone: str, public_key: PublicKey, attempt: int) -> TransactionHandle:
        call = make_call(
            self.factory_address,
            "deploy_account",
            [self.deriver.phone_felt(phone), *public_key.calldata()],
        )

        try:
            handle = await self.relay.submit(
                [call], operation_key=f"deploy:{phone}:{attempt}", wait=True
            )
        except ChainRejected as e:
            logger.error(f"[Register] Deployment for {mask_phone(phone)} rejected: {e.message}")
            if e.tx_hash:
                await self._record(phone, e.tx_hash, public_key)
            raise DeploymentFailed(e.message)
        except TransientError as e:
            logger.error(f"[Register] Deployment for {mask_phone(phone)} failed: {e.message}")
            raise DeploymentFailed(e.message)

        await self._record(phone, handle.tx_hash, public_key)
        return handle

    async def _record(self, phone: str, tx_hash: str, public_key: PublicKey) -> None:
        async with get_db(self.session_factory) as session:
            await VaultRepository(session).record_deployment(
                phone, tx_hash, public_key.x, public_key.y
            )

    async def _finish(self, phone: str, handle: TransactionHandle) -> None:
        if handle.status != TxStatus.ACCEPTED:
            raise DeploymentFailed(
                f"Deployment {handle.tx_hash} not confirmed yet; retry to resume"
            )

        async with get_db(self.session_factory) as session:
            await VaultRepository(session).advance_identity_status(
                phone, IdentityStatus.REGISTERED
            )
        logger.info(f"[Register] {mask_phone(phone)} registered, tx {handle.tx_hash}")

    async def get_user(self, phone: str) -> UserView:
        """Address and registration status of a phone number."""
        address = self.deriver.derive_address_hex(phone)
        async with get_db(self.session_factory) as session:
            identity = await VaultRepository(session).get_identity(phone)
            if identity is None:
                return UserView(phone, address, IdentityStatus.UNREGISTERED.value)
            return UserView(
                phone=phone,
                address=identity.address,
                status=IdentityStatus(identity.status).value,
                deploy_tx_hash=identity.deploy_tx_hash,
            )
