"""Relayer: gas-paid submission of transactions and execute-from-outside intents.

All on-chain mutations go through RelayExecutor, the only owner of the
relayer nonce.
"""

from phonevault.relay.base import Call, ChainClient, ChainStatus, make_call, transfer_call
from phonevault.relay.executor import RelayExecutor, TransactionHandle
from phonevault.relay.factory import create_relay_executor, get_chain_client

__all__ = [
    "Call",
    "ChainClient",
    "ChainStatus",
    "RelayExecutor",
    "TransactionHandle",
    "create_relay_executor",
    "get_chain_client",
    "make_call",
    "transfer_call",
]
