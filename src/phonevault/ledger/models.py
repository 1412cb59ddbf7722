"""SQLAlchemy models for identities, challenges, claim links and relayed transactions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Uint256(TypeDecorator):
    """Arbitrary-precision unsigned integer stored as a decimal string.

    Token amounts and public keys exceed 64 bits; Numeric loses precision on
    SQLite, strings never do.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if value < 0 or value >= 2**256:
            raise ValueError(f"Value out of uint256 range: {value}")
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IdentityStatus(str, Enum):
    """Registration status of a phone identity. Only moves forward."""

    UNREGISTERED = "unregistered"
    PENDING = "pending"          # OTP verified, deployment not yet accepted
    REGISTERED = "registered"    # Account deployed


IDENTITY_ORDER = [
    IdentityStatus.UNREGISTERED,
    IdentityStatus.PENDING,
    IdentityStatus.REGISTERED,
]


class ChallengeStatus(str, Enum):
    """Status of an OTP challenge."""

    ACTIVE = "active"
    VERIFIED = "verified"
    EXPIRED = "expired"
    LOCKED = "locked"


class FundingStatus(str, Enum):
    """Status of the escrow transfer funding a claim link."""

    PENDING = "pending"          # Submitted, not yet accepted
    FUNDED = "funded"
    FAILED = "failed"


class TransferStatus(str, Enum):
    """Status of the escrow transfer paying out a claim link."""

    NONE = "none"
    SUBMITTED = "submitted"
    FAILED = "failed"            # Needs operator retry


class TxStatus(str, Enum):
    """Status of a relayed transaction."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PhoneIdentity(Base):
    """A phone number and its counterfactual account."""

    __tablename__ = "phone_identities"

    phone: Mapped[str] = mapped_column(String(32), primary_key=True)
    address: Mapped[str] = mapped_column(String(66), unique=True, nullable=False, index=True)
    status: Mapped[IdentityStatus] = mapped_column(
        String(20), default=IdentityStatus.UNREGISTERED, nullable=False
    )
    public_key_x: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    public_key_y: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    deploy_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    deploy_attempts: Mapped[int] = mapped_column(default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    registered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class OtpChallenge(Base):
    """Current verification challenge for a phone.

    One row per phone: issuing a new code overwrites the row and its
    challenge_id, which invalidates any earlier code.
    """

    __tablename__ = "otp_challenges"

    phone: Mapped[str] = mapped_column(String(32), primary_key=True)
    challenge_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    code_digest: Mapped[str] = mapped_column(String(64), nullable=False)  # HMAC-SHA256 hex
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempts: Mapped[int] = mapped_column(default=0)
    max_attempts: Mapped[int] = mapped_column(default=5)
    status: Mapped[ChallengeStatus] = mapped_column(
        String(20), default=ChallengeStatus.ACTIVE, nullable=False
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ClaimLink(Base):
    """Bearer token redeemable once for an escrowed amount."""

    __tablename__ = "claim_links"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    creator_phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    creator_address: Mapped[str] = mapped_column(String(66), nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    claimed: Mapped[bool] = mapped_column(default=False, nullable=False)
    claimant_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    claimant_address: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    funding_status: Mapped[FundingStatus] = mapped_column(
        String(20), default=FundingStatus.PENDING, nullable=False
    )
    funding_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    transfer_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    transfer_status: Mapped[TransferStatus] = mapped_column(
        String(20), default=TransferStatus.NONE, nullable=False
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class RelayNonce(Base):
    """Next nonce to use for a relayer account.

    Only advanced after the chain accepted a submission.
    """

    __tablename__ = "relay_nonces"

    account_address: Mapped[str] = mapped_column(String(66), primary_key=True)
    next_nonce: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class RelayedTransaction(Base):
    """Transaction submitted by the relayer."""

    __tablename__ = "relayed_transactions"
    __table_args__ = (Index("ix_relayed_tx_sender_nonce", "sender", "nonce"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True, nullable=False)
    operation_key: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, nullable=True
    )
    sender: Mapped[str] = mapped_column(String(66), nullable=False)
    on_behalf_of: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    nonce: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_fee: Mapped[int] = mapped_column(Uint256, nullable=False)
    calls: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    status: Mapped[TxStatus] = mapped_column(String(20), default=TxStatus.PENDING, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class OnrampEvent(Base):
    """Status notification from the fiat on-ramp provider."""

    __tablename__ = "onramp_events"
    __table_args__ = (
        Index("ix_onramp_checkout_status", "checkout_id", "status", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    checkout_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    raw_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
