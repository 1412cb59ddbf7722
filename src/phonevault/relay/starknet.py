"""Starknet chain client backed by starknet-py.

The relayer signs invoke V1 transactions with an explicit max fee.
Node errors map onto the relay error taxonomy:
    - invalid nonce                       -> StaleNonce
    - execution, contract or validation   -> ChainRejected (message verbatim)
    - submit timeout or dropped transport -> SubmissionTimeout
    - other read/estimation faults        -> ChainUnavailable

Fee estimation simulates execution, so a bad outside-execution signature,
a reused outside nonce or an insufficient token balance is already refused
at estimation time.
"""

import asyncio
import logging
from typing import Optional

import aiohttp
from starknet_py.net.account.account import Account
from starknet_py.net.client_errors import ClientError
from starknet_py.net.client_models import Call as StarknetCall
from starknet_py.net.client_models import TransactionExecutionStatus, TransactionStatus
from starknet_py.net.full_node_client import FullNodeClient
from starknet_py.net.models import StarknetChainId
from starknet_py.net.signer.stark_curve_signer import KeyPair

from phonevault.errors import ChainRejected, ChainUnavailable, StaleNonce, SubmissionTimeout
from phonevault.relay.base import (
    Call,
    ChainClient,
    ChainStatus,
    SignedTransaction,
    TransactionStatusResult,
)

logger = logging.getLogger(__name__)

# JSON-RPC error codes
TXN_HASH_NOT_FOUND = 29
INVALID_TRANSACTION_NONCE = 52

REJECTION_CODES = {
    20,   # CONTRACT_NOT_FOUND
    21,   # INVALID_MESSAGE_SELECTOR
    40,   # CONTRACT_ERROR
    41,   # TRANSACTION_EXECUTION_ERROR
    53,   # INSUFFICIENT_MAX_FEE
    54,   # INSUFFICIENT_ACCOUNT_BALANCE
    55,   # VALIDATION_FAILURE
    59,   # DUPLICATE_TX
    61,   # UNSUPPORTED_TX_VERSION
}

# Transport failures where the request may or may not have reached the node
TRANSPORT_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)

CHAINS = {
    "sepolia": StarknetChainId.SEPOLIA,
    "mainnet": StarknetChainId.MAINNET,
}


def _error_code(error: ClientError) -> Optional[int]:
    try:
        return int(error.code)
    except (TypeError, ValueError):
        return None


def _is_nonce_error(error: ClientError) -> bool:
    code = _error_code(error)
    if code is not None:
        return code == INVALID_TRANSACTION_NONCE
    return "invalid transaction nonce" in str(error.message).lower()


def _is_rejection(error: ClientError) -> bool:
    return _error_code(error) in REJECTION_CODES


class StarknetChainClient(ChainClient):
    """JSON-RPC access to a Starknet node for the relayer account."""

    def __init__(
        self,
        rpc_url: str,
        relayer_address: int,
        relayer_private_key: int,
        chain: str = "sepolia",
        timeout: float = 30.0,
    ):
        super().__init__(relayer_address)
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.chain_id = CHAINS[chain.lower()]
        self.client = FullNodeClient(node_url=rpc_url)
        self.account = Account(
            address=relayer_address,
            client=self.client,
            key_pair=KeyPair.from_private_key(relayer_private_key),
            chain=self.chain_id,
        )

    @staticmethod
    def _to_starknet(calls: list[Call]) -> list[StarknetCall]:
        return [
            StarknetCall(to_addr=c.to, selector=c.selector, calldata=list(c.calldata))
            for c in calls
        ]

    async def get_nonce(self, address: int) -> int:
        try:
            return await asyncio.wait_for(
                self.client.get_contract_nonce(address, block_number="pending"),
                timeout=self.timeout,
            )
        except ClientError as e:
            raise ChainUnavailable(f"Failed to read nonce of {hex(address)}: {e.message}")
        except TRANSPORT_ERRORS as e:
            raise ChainUnavailable(f"Node unreachable reading nonce of {hex(address)}: {e!r}")

    async def estimate_fee(self, calls: list[Call], nonce: int) -> int:
        try:
            unsigned = await self.account.sign_invoke_v1(
                calls=self._to_starknet(calls), nonce=nonce, max_fee=0
            )
            estimate = await asyncio.wait_for(
                self.client.estimate_fee(
                    tx=await self.account.sign_for_fee_estimate(unsigned),
                    block_number="pending",
                ),
                timeout=self.timeout,
            )
        except ClientError as e:
            if _is_nonce_error(e):
                raise StaleNonce(e.message)
            if _is_rejection(e):
                raise ChainRejected(e.message)
            raise ChainUnavailable(f"Fee estimation failed: {e.message}")
        except TRANSPORT_ERRORS as e:
            raise ChainUnavailable(f"Node unreachable during fee estimation: {e!r}")
        return estimate.overall_fee

    async def sign(self, calls: list[Call], nonce: int, max_fee: int) -> SignedTransaction:
        invoke = await self.account.sign_invoke_v1(
            calls=self._to_starknet(calls), nonce=nonce, max_fee=max_fee
        )
        return SignedTransaction(
            tx_hash=invoke.calculate_hash(self.chain_id),
            sender=self.relayer_address,
            nonce=nonce,
            max_fee=max_fee,
            calls=list(calls),
            payload=invoke,
        )

    async def submit(self, tx: SignedTransaction) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.send_transaction(tx.payload), timeout=self.timeout
            )
        except ClientError as e:
            if _is_nonce_error(e):
                raise StaleNonce(e.message, tx_hash=tx.tx_hash_hex)
            if _is_rejection(e):
                raise ChainRejected(e.message, tx_hash=tx.tx_hash_hex)
            # Node-side fault; the transaction may still have been received
            raise SubmissionTimeout(f"Node error submitting {tx.tx_hash_hex}: {e.message}")
        except TRANSPORT_ERRORS as e:
            raise SubmissionTimeout(f"Submission of {tx.tx_hash_hex} interrupted: {e!r}")

        tx_hash = f"0x{response.transaction_hash:064x}"
        logger.info(f"Submitted {tx_hash} (nonce {tx.nonce}, max fee {tx.max_fee})")
        return tx_hash

    async def get_status(self, tx_hash: str) -> TransactionStatusResult:
        try:
            status = await asyncio.wait_for(
                self.client.get_transaction_status(tx_hash), timeout=self.timeout
            )
            if status.execution_status == TransactionExecutionStatus.REVERTED:
                receipt = await asyncio.wait_for(
                    self.client.get_transaction_receipt(tx_hash), timeout=self.timeout
                )
                return TransactionStatusResult(ChainStatus.REJECTED, receipt.revert_reason)
        except ClientError as e:
            if _error_code(e) == TXN_HASH_NOT_FOUND:
                return TransactionStatusResult(ChainStatus.NOT_FOUND)
            raise ChainUnavailable(f"Failed to read status of {tx_hash}: {e.message}")
        except TRANSPORT_ERRORS as e:
            raise ChainUnavailable(f"Node unreachable reading status of {tx_hash}: {e!r}")

        if status.finality_status == TransactionStatus.REJECTED:
            return TransactionStatusResult(ChainStatus.REJECTED, "transaction rejected")

        if status.finality_status in (TransactionStatus.ACCEPTED_ON_L2, TransactionStatus.ACCEPTED_ON_L1):
            return TransactionStatusResult(ChainStatus.ACCEPTED)

        return TransactionStatusResult(ChainStatus.PENDING)
