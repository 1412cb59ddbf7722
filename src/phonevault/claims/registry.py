"""Claim links: escrowed amounts redeemable once by whoever holds the token.

Creating a link moves the amount from the creator's account into escrow (the
relayer account) through a signed execute-from-outside intent. The link is
recorded before the escrow transfer is submitted, with funding pending, so a
transfer that lands late is never orphaned; it becomes redeemable once the
transfer is accepted. Redeeming flips the link's claimed flag with a single
conditional UPDATE; only the caller whose UPDATE matched pays out from escrow.

The flag never goes back to false. A payout that fails after the flip leaves
the link claimed with transfer_status=failed for an operator retry.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phonevault.errors import (
    AlreadyClaimed,
    ChainRejected,
    ClaimNotFunded,
    ClaimTransferFailed,
    InsufficientFunds,
    InvalidAmount,
    StateConflict,
    TokenExpired,
    TokenNotFound,
    TransientError,
)
from phonevault.identity.address import AddressDeriver, parse_felt
from phonevault.identity.phone import mask_phone, validate_e164
from phonevault.ledger.database import get_db
from phonevault.ledger.models import ClaimLink, FundingStatus, TransferStatus, TxStatus, utcnow
from phonevault.ledger.repository import VaultRepository
from phonevault.relay.base import transfer_call
from phonevault.relay.executor import RelayExecutor

logger = logging.getLogger(__name__)

MAX_AMOUNT = 2**256


@dataclass
class ClaimView:
    """Public state of a claim link."""
    token: str
    amount: int
    status: str                # funding, unfunded, unclaimed, claimed, expired
    created_at: datetime
    expires_at: datetime
    funding_status: str = FundingStatus.PENDING.value
    funding_tx_hash: Optional[str] = None
    claimant_address: Optional[str] = None
    claimed_at: Optional[datetime] = None
    transfer_status: str = TransferStatus.NONE.value
    transfer_tx_hash: Optional[str] = None

    @classmethod
    def from_link(cls, link: ClaimLink, now: Optional[datetime] = None) -> "ClaimView":
        funding = FundingStatus(link.funding_status)
        if link.claimed:
            status = "claimed"
        elif funding == FundingStatus.FAILED:
            status = "unfunded"
        elif link.is_expired(now):
            status = "expired"
        elif funding == FundingStatus.PENDING:
            status = "funding"
        else:
            status = "unclaimed"
        return cls(
            token=link.token,
            amount=link.amount,
            status=status,
            created_at=link.created_at,
            expires_at=link.expires_at,
            funding_status=funding.value,
            funding_tx_hash=link.funding_tx_hash,
            claimant_address=link.claimant_address,
            claimed_at=link.claimed_at,
            transfer_status=TransferStatus(link.transfer_status).value,
            transfer_tx_hash=link.transfer_tx_hash,
        )


class ClaimLinkRegistry:
    """Issues and redeems claim links."""

    def __init__(
        self,
        relay: RelayExecutor,
        deriver: AddressDeriver,
        token_address: int,
        escrow_address: Optional[int] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ttl_days: int = 30,
    ):
        self.relay = relay
        self.deriver = deriver
        self.token_address = token_address
        # Escrowed funds sit on the relayer account, which also pays them out
        self.escrow_address = (
            escrow_address if escrow_address is not None else relay.chain.relayer_address
        )
        self.session_factory = session_factory
        self.ttl = timedelta(days=ttl_days)

    @staticmethod
    def generate_token() -> str:
        """256-bit URL-safe bearer token."""
        return secrets.token_urlsafe(32)

    async def create(
        self,
        amount: int,
        creator_phone: str,
        *,
        outside_nonce: int,
        signature: Sequence[int],
        execute_after: Optional[int] = None,
        execute_before: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> ClaimLink:
        """Escrow `amount` from the creator and issue a link for it.

        The creator signs an outside execution of `transfer(escrow, amount)`
        on their account. The link is recorded first with funding pending and
        settles to funded or failed with that transfer. A transfer whose
        outcome is still unknown leaves the link pending; it is settled the
        next time the link is read or redeemed.

        Raises:
            InvalidAmount: Amount not in (0, 2**256)
            InsufficientFunds: Chain refused the escrow transfer
            TransientError: Transfer never reached the chain
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount < MAX_AMOUNT:
            raise InvalidAmount(f"Invalid amount: {amount}")

        validate_e164(creator_phone)
        creator = self.deriver.derive_address(creator_phone)
        token = self.generate_token()
        operation_key = f"fund:{token}"

        async with get_db(self.session_factory) as session:
            await VaultRepository(session).create_claim_link(
                token=token,
                creator_phone=creator_phone,
                creator_address=self.deriver.derive_address_hex(creator_phone),
                amount=amount,
                expires_at=expires_at or utcnow() + self.ttl,
            )

        try:
            handle = await self.relay.submit(
                [transfer_call(self.token_address, self.escrow_address, amount)],
                on_behalf_of=creator,
                signature=signature,
                outside_nonce=outside_nonce,
                execute_after=execute_after,
                execute_before=execute_before,
                operation_key=operation_key,
                wait=True,
            )
        except ChainRejected as e:
            logger.warning(f"[Claims] Escrow funding by {mask_phone(creator_phone)} rejected: {e.message}")
            await self._settle_funding(token, FundingStatus.FAILED, e.tx_hash, e.message)
            raise InsufficientFunds(e.message)
        except TransientError as e:
            async with get_db(self.session_factory) as session:
                repo = VaultRepository(session)
                attempt = await repo.get_transaction_by_operation(operation_key)
                if attempt is not None:
                    await repo.set_claim_funding_tx(token, attempt.tx_hash)
            if attempt is None:
                await self._settle_funding(token, FundingStatus.FAILED, None, e.message)
                raise
            # The attempt is on record; its outcome settles the link later
            logger.warning(
                f"[Claims] Escrow funding for link {token[:8]}... unconfirmed: {e.message}"
            )
            return await self._load(token)

        if handle.status == TxStatus.ACCEPTED:
            await self._settle_funding(token, FundingStatus.FUNDED, handle.tx_hash)
        else:
            async with get_db(self.session_factory) as session:
                await VaultRepository(session).set_claim_funding_tx(token, handle.tx_hash)

        logger.info(
            f"[Claims] Link created by {mask_phone(creator_phone)} for {amount}, "
            f"funding tx {handle.tx_hash} {handle.status.value}"
        )
        return await self._load(token)

    async def redeem(self, token: str, recipient_phone: str) -> str:
        """Redeem a link into the account derived from `recipient_phone`.

        Returns:
            Recipient address (hex)

        Raises:
            TokenNotFound, TokenExpired, AlreadyClaimed: Link not redeemable
            ClaimNotFunded: Escrow transfer not accepted (yet)
            ClaimTransferFailed: Claimed, but the payout failed
        """
        validate_e164(recipient_phone)
        recipient = self.deriver.derive_address(recipient_phone)
        recipient_hex = self.deriver.derive_address_hex(recipient_phone)
        await self._refresh_funding(token)
        now = utcnow()

        async with get_db(self.session_factory) as session:
            repo = VaultRepository(session)
            link = await repo.get_claim_link(token)
            if link is None:
                raise TokenNotFound()
            if link.claimed:
                raise AlreadyClaimed()
            if link.funding_status != FundingStatus.FUNDED:
                raise ClaimNotFunded(f"Link funding is {FundingStatus(link.funding_status).value}")
            if link.is_expired(now):
                raise TokenExpired()

            won = await repo.mark_claimed(token, recipient_phone, recipient_hex, now)
            amount = link.amount

        if not won:
            raise AlreadyClaimed()

        logger.info(f"[Claims] Link claimed by {mask_phone(recipient_phone)}, paying out {amount}")
        await self._pay_out(token, recipient, amount)
        return recipient_hex

    async def retry_transfer(self, token: str) -> ClaimView:
        """Re-submit the payout of a claimed link whose transfer failed.

        Uses the same operation key as the original payout, so a transfer
        that did land is returned rather than repeated.

        Raises:
            TokenNotFound: Unknown token
            StateConflict: Link not claimed, or payout already submitted
            ClaimTransferFailed: Payout failed again
        """
        async with get_db(self.session_factory) as session:
            link = await VaultRepository(session).get_claim_link(token)
            if link is None:
                raise TokenNotFound()
            if not link.claimed:
                raise StateConflict("Link has not been claimed")
            if link.transfer_status == TransferStatus.SUBMITTED:
                raise StateConflict(f"Payout already submitted as {link.transfer_tx_hash}")
            recipient = parse_felt(link.claimant_address)
            amount = link.amount

        logger.warning(f"[Claims] Operator retry of payout for link {token[:8]}...")
        await self._pay_out(token, recipient, amount)
        return await self.get(token)

    async def get(self, token: str) -> ClaimView:
        """Current state of a link, with funding and expiry brought up to date."""
        await self._refresh_funding(token)
        return ClaimView.from_link(await self._load(token))

    async def _load(self, token: str) -> ClaimLink:
        async with get_db(self.session_factory) as session:
            link = await VaultRepository(session).get_claim_link(token)
            if link is None:
                raise TokenNotFound()
            return link

    async def _settle_funding(
        self,
        token: str,
        status: FundingStatus,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with get_db(self.session_factory) as session:
            settled = await VaultRepository(session).set_claim_funding(
                token, status, tx_hash, error_message
            )
        if settled:
            logger.info(f"[Claims] Link {token[:8]}... funding {status.value}")

    async def _refresh_funding(self, token: str) -> None:
        """Settle a pending link from the status of its funding transfer."""
        async with get_db(self.session_factory) as session:
            link = await VaultRepository(session).get_claim_link(token)
            if link is None or link.funding_status != FundingStatus.PENDING:
                return
            tx_hash = link.funding_tx_hash
        if tx_hash is None:
            return

        try:
            handle = await self.relay.get_status(tx_hash)
        except TransientError as e:
            logger.warning(f"[Claims] Could not check funding {tx_hash}: {e.message}")
            return

        if handle.status == TxStatus.ACCEPTED:
            await self._settle_funding(token, FundingStatus.FUNDED, tx_hash)
        elif handle.status == TxStatus.REJECTED:
            await self._settle_funding(token, FundingStatus.FAILED, tx_hash, handle.error)

    async def _pay_out(self, token: str, recipient: int, amount: int) -> None:
        try:
            handle = await self.relay.submit(
                [transfer_call(self.token_address, recipient, amount)],
                operation_key=f"claim:{token}",
                wait=True,
            )
        except (ChainRejected, TransientError) as e:
            logger.error(f"[Claims] Payout for link {token[:8]}... failed: {e.message}")
            async with get_db(self.session_factory) as session:
                await VaultRepository(session).set_claim_transfer(
                    token, TransferStatus.FAILED, getattr(e, "tx_hash", None), e.message
                )
            raise ClaimTransferFailed(f"Claim recorded but transfer failed: {e.message}")

        async with get_db(self.session_factory) as session:
            await VaultRepository(session).set_claim_transfer(
                token, TransferStatus.SUBMITTED, handle.tx_hash
            )
        logger.info(f"[Claims] Payout {handle.tx_hash} {handle.status.value}")
