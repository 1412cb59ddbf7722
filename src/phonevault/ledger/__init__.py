"""Persistence layer: identities, challenges, claim links and relayed transactions."""

from phonevault.ledger.database import get_db, init_db
from phonevault.ledger.models import (
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
)
from phonevault.ledger.repository import VaultRepository

__all__ = [
    # Models
    "ClaimLink",
    "OnrampEvent",
    "OtpChallenge",
    "PhoneIdentity",
    "RelayedTransaction",
    "RelayNonce",
    # Enums
    "ChallengeStatus",
    "FundingStatus",
    "IdentityStatus",
    "TransferStatus",
    "TxStatus",
    # Database
    "get_db",
    "init_db",
    "VaultRepository",
]
