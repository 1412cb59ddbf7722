"""Repository for persistence operations.

Every transition that must be exclusive is a single conditional UPDATE whose
rowcount tells the caller whether it won.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from phonevault.ledger.models import (
    IDENTITY_ORDER,
    ChallengeStatus,
    ClaimLink,
    FundingStatus,
    IdentityStatus,
    OnrampEvent,
    OtpChallenge,
    PhoneIdentity,
    RelayedTransaction,
    RelayNonce,
    TransferStatus,
    TxStatus,
    utcnow,
)


class VaultRepository:
    """Repository for all vault database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Identity operations
    async def get_identity(self, phone: str) -> Optional[PhoneIdentity]:
        """Get identity by E.164 phone."""
        stmt = select(PhoneIdentity).where(PhoneIdentity.phone == phone)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_identity(self, phone: str, address: str) -> PhoneIdentity:
        """Get existing identity or create an unregistered one."""
        identity = await self.get_identity(phone)
        if identity is None:
            identity = PhoneIdentity(
                phone=phone,
                address=address,
                status=IdentityStatus.UNREGISTERED,
            )
            self.session.add(identity)
            await self.session.flush()
        return identity

    async def advance_identity_status(self, phone: str, status: IdentityStatus) -> bool:
        """Move an identity forward to `status`.

        Returns False if the identity is already at or past that status.
        """
        lower = [s.value for s in IDENTITY_ORDER[: IDENTITY_ORDER.index(status)]]
        values = {"status": status.value, "updated_at": utcnow()}
        if status == IdentityStatus.REGISTERED:
            values["registered_at"] = utcnow()

        stmt = (
            update(PhoneIdentity)
            .where(PhoneIdentity.phone == phone, PhoneIdentity.status.in_(lower))
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def record_deployment(
        self,
        phone: str,
        tx_hash: Optional[str],
        public_key_x: int,
        public_key_y: int,
    ) -> None:
        """Store the latest deployment attempt for an identity."""
        stmt = (
            update(PhoneIdentity)
            .where(PhoneIdentity.phone == phone)
            .values(
                deploy_tx_hash=tx_hash,
                public_key_x=public_key_x,
                public_key_y=public_key_y,
                deploy_attempts=PhoneIdentity.deploy_attempts + 1,
                updated_at=utcnow(),
            )
        )
        await self.session.execute(stmt)

    # OTP challenge operations
    async def get_challenge(self, phone: str) -> Optional[OtpChallenge]:
        """Get the current challenge for a phone."""
        stmt = select(OtpChallenge).where(OtpChallenge.phone == phone)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def replace_challenge(
        self,
        phone: str,
        challenge_id: str,
        code_digest: str,
        issued_at: datetime,
        expires_at: datetime,
        max_attempts: int,
    ) -> OtpChallenge:
        """Replace any existing challenge for `phone` with a fresh active one."""
        challenge = await self.get_challenge(phone)
        if challenge is None:
            challenge = OtpChallenge(phone=phone)
            self.session.add(challenge)

        challenge.challenge_id = challenge_id
        challenge.code_digest = code_digest
        challenge.issued_at = issued_at
        challenge.expires_at = expires_at
        challenge.attempts = 0
        challenge.max_attempts = max_attempts
        challenge.status = ChallengeStatus.ACTIVE
        challenge.verified_at = None
        await self.session.flush()
        return challenge

    async def record_attempt(
        self,
        challenge_id: str,
        observed_attempts: int,
        new_status: ChallengeStatus,
        now: datetime,
    ) -> bool:
        """Count one verification attempt and set the resulting status.

        Applies only if the challenge is still the same active challenge with
        the attempt count the caller observed.
        """
        values = {"attempts": observed_attempts + 1, "status": new_status.value}
        if new_status == ChallengeStatus.VERIFIED:
            values["verified_at"] = now

        stmt = (
            update(OtpChallenge)
            .where(
                OtpChallenge.challenge_id == challenge_id,
                OtpChallenge.status == ChallengeStatus.ACTIVE.value,
                OtpChallenge.attempts == observed_attempts,
                OtpChallenge.expires_at > now,
            )
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def expire_challenge(self, challenge_id: str) -> None:
        """Mark an active challenge as expired."""
        stmt = (
            update(OtpChallenge)
            .where(
                OtpChallenge.challenge_id == challenge_id,
                OtpChallenge.status == ChallengeStatus.ACTIVE.value,
            )
            .values(status=ChallengeStatus.EXPIRED.value)
        )
        await self.session.execute(stmt)

    # Claim link operations
    async def create_claim_link(
        self,
        token: str,
        creator_phone: str,
        creator_address: str,
        amount: int,
        expires_at: datetime,
        funding_tx_hash: Optional[str] = None,
        funding_status: FundingStatus = FundingStatus.PENDING,
    ) -> ClaimLink:
        """Persist a new unclaimed link, redeemable once funded."""
        link = ClaimLink(
            token=token,
            creator_phone=creator_phone,
            creator_address=creator_address,
            amount=amount,
            created_at=utcnow(),
            expires_at=expires_at,
            claimed=False,
            funding_tx_hash=funding_tx_hash,
            funding_status=funding_status.value,
            transfer_status=TransferStatus.NONE,
        )
        self.session.add(link)
        await self.session.flush()
        return link

    async def get_claim_link(self, token: str) -> Optional[ClaimLink]:
        """Get a claim link by token."""
        stmt = select(ClaimLink).where(ClaimLink.token == token)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_claimed(
        self,
        token: str,
        claimant_phone: str,
        claimant_address: str,
        now: datetime,
    ) -> bool:
        """Compare-and-set the claimed flag from false to true.

        Exactly one concurrent caller gets True for a given token.
        """
        stmt = (
            update(ClaimLink)
            .where(
                ClaimLink.token == token,
                ClaimLink.claimed.is_(False),
                ClaimLink.funding_status == FundingStatus.FUNDED.value,
                ClaimLink.expires_at > now,
            )
            .values(
                claimed=True,
                claimant_phone=claimant_phone,
                claimant_address=claimant_address,
                claimed_at=now,
            )
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def set_claim_funding(
        self,
        token: str,
        status: FundingStatus,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Settle a pending link's funding. Only the first settlement applies."""
        values = {"funding_status": status.value, "error_message": error_message}
        if tx_hash is not None:
            values["funding_tx_hash"] = tx_hash
        stmt = (
            update(ClaimLink)
            .where(
                ClaimLink.token == token,
                ClaimLink.funding_status == FundingStatus.PENDING.value,
            )
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def set_claim_funding_tx(self, token: str, tx_hash: str) -> None:
        """Remember the funding transaction of a still pending link."""
        stmt = update(ClaimLink).where(ClaimLink.token == token).values(funding_tx_hash=tx_hash)
        await self.session.execute(stmt)

    async def set_claim_transfer(
        self,
        token: str,
        status: TransferStatus,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Record the outcome of the payout transfer."""
        stmt = (
            update(ClaimLink)
            .where(ClaimLink.token == token)
            .values(
                transfer_status=status.value,
                transfer_tx_hash=tx_hash,
                error_message=error_message,
            )
        )
        await self.session.execute(stmt)

    # Relay nonce operations
    async def lock_relay_nonce(self, account_address: str) -> Optional[RelayNonce]:
        """Read the stored nonce, locking the row until commit.

        FOR UPDATE is ignored by SQLite, where BEGIN IMMEDIATE already holds
        the database write lock.
        """
        stmt = (
            select(RelayNonce)
            .where(RelayNonce.account_address == account_address)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_relay_nonce(self, account_address: str, next_nonce: int) -> RelayNonce:
        """Store the next nonce for an account."""
        state = await self.lock_relay_nonce(account_address)
        if state is None:
            state = RelayNonce(account_address=account_address, next_nonce=next_nonce)
            self.session.add(state)
        else:
            state.next_nonce = next_nonce
        await self.session.flush()
        return state

    # Relayed transaction operations
    async def get_transaction(self, tx_hash: str) -> Optional[RelayedTransaction]:
        """Get a relayed transaction by hash."""
        stmt = select(RelayedTransaction).where(RelayedTransaction.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction_by_operation(self, operation_key: str) -> Optional[RelayedTransaction]:
        """Get the transaction recorded for a logical operation."""
        stmt = select(RelayedTransaction).where(RelayedTransaction.operation_key == operation_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_transaction(
        self,
        tx_hash: str,
        sender: str,
        nonce: int,
        max_fee: int,
        calls: str,
        on_behalf_of: Optional[str] = None,
        operation_key: Optional[str] = None,
    ) -> RelayedTransaction:
        """Record a transaction the chain accepted for processing.

        An earlier attempt for the same operation gives up its key. A
        resubmission of identical signed bytes updates the existing row.
        """
        if operation_key:
            previous = await self.get_transaction_by_operation(operation_key)
            if previous is not None and previous.tx_hash != tx_hash:
                previous.operation_key = None
                await self.session.flush()

        tx = await self.get_transaction(tx_hash)
        if tx is not None:
            tx.operation_key = operation_key
            tx.status = TxStatus.PENDING
            tx.error_message = None
            await self.session.flush()
            return tx

        tx = RelayedTransaction(
            tx_hash=tx_hash,
            operation_key=operation_key,
            sender=sender,
            on_behalf_of=on_behalf_of,
            nonce=nonce,
            max_fee=max_fee,
            calls=calls,
            status=TxStatus.PENDING,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def update_transaction_status(
        self, tx_hash: str, status: TxStatus, error_message: Optional[str] = None
    ) -> None:
        """Update the status of a relayed transaction."""
        stmt = (
            update(RelayedTransaction)
            .where(RelayedTransaction.tx_hash == tx_hash)
            .values(status=status.value, error_message=error_message, updated_at=utcnow())
        )
        await self.session.execute(stmt)

    # On-ramp webhook operations
    async def record_onramp_event(
        self,
        checkout_id: str,
        status: str,
        address: Optional[str] = None,
        raw_payload: Optional[str] = None,
    ) -> tuple[OnrampEvent, bool]:
        """Record an on-ramp status once. Returns (event, created)."""
        stmt = select(OnrampEvent).where(
            OnrampEvent.checkout_id == checkout_id,
            OnrampEvent.status == status,
        )
        result = await self.session.execute(stmt)
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing, False

        event = OnrampEvent(
            checkout_id=checkout_id,
            status=status,
            address=address,
            raw_payload=raw_payload,
        )
        self.session.add(event)
        await self.session.flush()
        return event, True

    async def get_onramp_events(self, checkout_id: str) -> list[OnrampEvent]:
        """Get all recorded statuses for a checkout, oldest first."""
        stmt = (
            select(OnrampEvent)
            .where(OnrampEvent.checkout_id == checkout_id)
            .order_by(OnrampEvent.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
