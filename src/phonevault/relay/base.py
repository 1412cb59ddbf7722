"""Base interfaces for chain access.

Relay flow:
1. Caller hands RelayExecutor a list of calls
2. Executor takes the relayer nonce under exclusive access
3. Fee is estimated and bounded
4. Transaction is signed by the relayer and submitted
5. Stored nonce advances only once the chain accepted the submission
6. Status is tracked by hash
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from starknet_py.hash.selector import get_selector_from_name

logger = logging.getLogger(__name__)

U128_MASK = 2**128 - 1


def split_u256(value: int) -> tuple[int, int]:
    """Split a uint256 into (low, high) 128-bit felts."""
    return value & U128_MASK, value >> 128


@dataclass(frozen=True)
class Call:
    """One contract invocation."""
    to: int
    selector: int
    calldata: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        return {
            "to": hex(self.to),
            "selector": hex(self.selector),
            "calldata": [hex(x) for x in self.calldata],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Call":
        return cls(
            to=int(data["to"], 16),
            selector=int(data["selector"], 16),
            calldata=tuple(int(x, 16) for x in data.get("calldata", [])),
        )


def make_call(to: int, entrypoint: str, calldata: Sequence[int] = ()) -> Call:
    """Build a call from an entry point name."""
    return Call(to=to, selector=get_selector_from_name(entrypoint), calldata=tuple(calldata))


def transfer_call(token: int, recipient: int, amount: int) -> Call:
    """ERC20 transfer(recipient, amount: u256)."""
    low, high = split_u256(amount)
    return make_call(token, "transfer", [recipient, low, high])


class ChainStatus(str, Enum):
    """On-chain status of a transaction."""
    PENDING = "pending"       # Received, not yet executed
    ACCEPTED = "accepted"     # Executed successfully
    REJECTED = "rejected"     # Rejected or reverted
    NOT_FOUND = "not_found"   # Unknown to the node


@dataclass
class TransactionStatusResult:
    """Status plus the chain's own reason for a rejection."""
    status: ChainStatus
    reason: Optional[str] = None


@dataclass
class SignedTransaction:
    """Relayer-signed transaction ready for submission.

    The hash is known before submission so an unknown outcome can be
    checked without re-signing.
    """
    tx_hash: int
    sender: int
    nonce: int
    max_fee: int
    calls: list[Call] = field(default_factory=list)
    payload: Any = None        # Backend-specific signed object

    @property
    def tx_hash_hex(self) -> str:
        return f"0x{self.tx_hash:064x}"


class ChainClient(ABC):
    """Abstract chain access used by RelayExecutor.

    Implementations raise:
        ChainUnavailable: node error on reads/estimation
        StaleNonce: submitted nonce already consumed
        ChainRejected: chain refused the transaction
        SubmissionTimeout: outcome of a submission unknown
    """

    def __init__(self, relayer_address: int):
        self.relayer_address = relayer_address

    @abstractmethod
    async def get_nonce(self, address: int) -> int:
        """Current on-chain nonce of an account."""
        pass

    @abstractmethod
    async def estimate_fee(self, calls: list[Call], nonce: int) -> int:
        """Fee estimate (in wei/fri) for executing `calls` from the relayer."""
        pass

    @abstractmethod
    async def sign(self, calls: list[Call], nonce: int, max_fee: int) -> SignedTransaction:
        """Sign an invoke transaction from the relayer."""
        pass

    @abstractmethod
    async def submit(self, tx: SignedTransaction) -> str:
        """Submit a signed transaction, returning its hash."""
        pass

    @abstractmethod
    async def get_status(self, tx_hash: str) -> TransactionStatusResult:
        """Look up a transaction by hash."""
        pass
