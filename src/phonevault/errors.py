"""Error taxonomy for the vault backend.

Errors fall into four families:

- ValidationError: bad input, rejected immediately, never retried.
- TransientError: provider/network trouble, retried locally with backoff and
  surfaced only once retries are exhausted.
- StateConflict: the requested transition is no longer possible (already
  claimed, attempts exhausted, ...). Terminal, reported as-is.
- ChainRejected: the chain refused a transaction. The chain's message is
  forwarded verbatim.

Escalations (ClaimTransferFailed, DeploymentFailed) are raised after an
irreversible local state change and require operator attention.
"""

from typing import Optional


class VaultError(Exception):
    """Base class for all domain errors."""

    code = "vault_error"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# ======================
# Validation
# ======================


class ValidationError(VaultError):
    """Invalid request."""

    code = "validation_error"


class InvalidPhoneNumber(ValidationError):
    """Phone number is not a valid E.164 string."""

    code = "invalid_phone_number"


class PhoneNumberTooLong(ValidationError):
    """Phone number does not fit in a single field element."""

    code = "phone_number_too_long"


class InvalidAmount(ValidationError):
    """Amount must be a positive integer below 2**256."""

    code = "invalid_amount"


# ======================
# Transient
# ======================


class TransientError(VaultError):
    """External provider failed; retries exhausted."""

    code = "transient_error"


class DeliveryFailed(TransientError):
    """OTP could not be delivered."""

    code = "delivery_failed"


class EstimationFailed(TransientError):
    """Fee estimation failed."""

    code = "estimation_failed"


class NonceRaceExhausted(TransientError):
    """Relayer nonce kept going stale across retries."""

    code = "nonce_race_exhausted"


class SubmissionFailed(TransientError):
    """Transaction could not be submitted."""

    code = "submission_failed"


class ChainUnavailable(TransientError):
    """Chain node unreachable or returned an error."""

    code = "chain_unavailable"


class SubmissionTimeout(TransientError):
    """Submission outcome unknown; check status by hash before resubmitting."""

    code = "submission_timeout"


# ======================
# State conflicts
# ======================


class StateConflict(VaultError):
    """Requested transition is not possible in the current state."""

    code = "state_conflict"


class NoActiveChallenge(StateConflict):
    """No active verification code for this phone number."""

    code = "no_active_challenge"


class InvalidCode(StateConflict):
    """Verification code does not match."""

    code = "invalid_code"


class AttemptsExhausted(InvalidCode):
    """Too many failed attempts; request a new code."""

    code = "attempts_exhausted"


class TokenNotFound(StateConflict):
    """Claim link does not exist."""

    code = "token_not_found"


class TokenExpired(StateConflict):
    """Claim link has expired."""

    code = "token_expired"


class AlreadyClaimed(StateConflict):
    """Claim link was already redeemed."""

    code = "already_claimed"


class ClaimNotFunded(StateConflict):
    """Claim link escrow transfer has not been accepted."""

    code = "claim_not_funded"


class TransactionNotFound(StateConflict):
    """Transaction is unknown to the relayer."""

    code = "transaction_not_found"


class AlreadyRegistered(StateConflict):
    """Phone number already has a deployed account."""

    code = "already_registered"


# ======================
# Chain
# ======================


class ChainRejected(VaultError):
    """The chain rejected the transaction."""

    code = "chain_rejected"

    def __init__(self, message: str = "", tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class StaleNonce(ChainRejected):
    """Transaction nonce was already consumed."""

    code = "stale_nonce"


# ======================
# Escalations
# ======================


class InsufficientFunds(VaultError):
    """Escrow funding failed."""

    code = "insufficient_funds"


class ClaimTransferFailed(VaultError):
    """Claim was recorded but the transfer failed; operator action required."""

    code = "claim_transfer_failed"


class DeploymentFailed(VaultError):
    """Account deployment failed; registration can be resumed."""

    code = "deployment_failed"
