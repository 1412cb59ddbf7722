"""Simulated chain for dry-run mode and tests.

Behaves like a node for the parts the relayer depends on: per-account nonces
that must match exactly, transaction status by hash, reverted executions that
still consume the nonce, and execute-from-outside nonce replay protection.
Fault injection counters let tests reproduce node errors, timeouts and nonce
races.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional

from phonevault.errors import ChainRejected, ChainUnavailable, StaleNonce, SubmissionTimeout
from phonevault.identity.address import starknet_keccak
from phonevault.relay.base import (
    Call,
    ChainClient,
    ChainStatus,
    SignedTransaction,
    TransactionStatusResult,
    make_call,
)

EXECUTE_FROM_OUTSIDE = make_call(0, "execute_from_outside_v2").selector
TRANSFER = make_call(0, "transfer").selector


class SimulatedChainClient(ChainClient):
    """In-memory chain. Every accepted transaction executes immediately."""

    def __init__(
        self,
        relayer_address: int,
        fee_per_call: int = 10**13,
        confirm_immediately: bool = True,
    ):
        super().__init__(relayer_address)
        self.fee_per_call = fee_per_call
        self.confirm_immediately = confirm_immediately

        self.nonces: dict[int, int] = defaultdict(int)
        self.statuses: dict[str, TransactionStatusResult] = {}
        self.accepted: list[SignedTransaction] = []
        self.balances: dict[tuple[int, int], int] = defaultdict(int)
        self.transfers: list[tuple[int, int, int, int]] = []  # token, from, to, amount
        self.outside_nonces: dict[int, set[int]] = defaultdict(set)
        self._strict_tokens: set[int] = set()
        self._signed: dict[str, SignedTransaction] = {}

        # Fault injection
        self.estimate_failures = 0
        self.estimate_rejections: list[str] = []
        self.submit_failures = 0
        self.stale_nonce_bumps = 0
        self.timeouts_before_accept = 0
        self.timeouts_after_accept = 0
        self.revert_reasons: list[str] = []

    def fund(self, token: int, account: int, amount: int) -> None:
        """Give an account a token balance and enforce balances for that token."""
        self._strict_tokens.add(token)
        self.balances[(token, account)] += amount

    def confirm_all(self) -> None:
        """Mark every pending transaction as accepted."""
        for tx_hash, result in self.statuses.items():
            if result.status == ChainStatus.PENDING:
                self.statuses[tx_hash] = TransactionStatusResult(ChainStatus.ACCEPTED)

    def used_nonces(self, sender: Optional[int] = None) -> list[int]:
        """Nonces of accepted transactions, in submission order."""
        sender = self.relayer_address if sender is None else sender
        return [tx.nonce for tx in self.accepted if tx.sender == sender]

    async def get_nonce(self, address: int) -> int:
        await asyncio.sleep(0)
        return self.nonces[address]

    async def estimate_fee(self, calls: list[Call], nonce: int) -> int:
        await asyncio.sleep(0)
        if self.estimate_failures:
            self.estimate_failures -= 1
            raise ChainUnavailable("simulated node error during estimation")
        if self.estimate_rejections:
            # Estimation simulates execution, so reverts surface here
            raise ChainRejected(self.estimate_rejections.pop(0))
        return self.fee_per_call * max(len(calls), 1)

    async def sign(self, calls: list[Call], nonce: int, max_fee: int) -> SignedTransaction:
        digest_input = repr(
            (self.relayer_address, nonce, max_fee, [c.to_dict() for c in calls])
        ).encode()
        tx = SignedTransaction(
            tx_hash=starknet_keccak(digest_input),
            sender=self.relayer_address,
            nonce=nonce,
            max_fee=max_fee,
            calls=list(calls),
        )
        self._signed[tx.tx_hash_hex] = tx
        return tx

    async def submit(self, tx: SignedTransaction) -> str:
        await asyncio.sleep(0)
        tx_hash = tx.tx_hash_hex

        if self.submit_failures:
            self.submit_failures -= 1
            raise ChainUnavailable("simulated connection reset")

        if self.timeouts_before_accept:
            self.timeouts_before_accept -= 1
            raise SubmissionTimeout(f"simulated timeout before {tx_hash} reached the node")

        if tx_hash in self.statuses:
            return tx_hash

        if self.stale_nonce_bumps:
            # Another sender consumed the relayer nonce concurrently
            self.stale_nonce_bumps -= 1
            self.nonces[tx.sender] += 1

        expected = self.nonces[tx.sender]
        if tx.nonce != expected:
            raise StaleNonce(
                f"Invalid transaction nonce of contract at address {hex(tx.sender)}. "
                f"Account nonce: {expected}; got: {tx.nonce}."
            )

        minimum = self.fee_per_call * max(len(tx.calls), 1)
        if tx.max_fee < minimum:
            raise ChainRejected(
                f"Max fee ({tx.max_fee}) is too low. Minimum fee: {minimum}.", tx_hash=tx_hash
            )

        self.nonces[tx.sender] += 1
        self.accepted.append(tx)
        self.statuses[tx_hash] = self._execute(tx)

        if self.timeouts_after_accept:
            self.timeouts_after_accept -= 1
            raise SubmissionTimeout(f"simulated timeout after {tx_hash} was accepted")

        return tx_hash

    async def get_status(self, tx_hash: str) -> TransactionStatusResult:
        await asyncio.sleep(0)
        return self.statuses.get(tx_hash, TransactionStatusResult(ChainStatus.NOT_FOUND))

    def _execute(self, tx: SignedTransaction) -> TransactionStatusResult:
        """Run the calls atomically; a revert leaves no effects."""
        if self.revert_reasons:
            return TransactionStatusResult(ChainStatus.REJECTED, self.revert_reasons.pop(0))

        balances = dict(self.balances)
        transfers: list[tuple[int, int, int, int]] = []
        outside: list[tuple[int, int]] = []

        try:
            for call in tx.calls:
                self._apply(tx.sender, call, balances, transfers, outside)
        except ChainRejected as e:
            return TransactionStatusResult(ChainStatus.REJECTED, e.message)

        self.balances = defaultdict(int, balances)
        self.transfers.extend(transfers)
        for account, nonce in outside:
            self.outside_nonces[account].add(nonce)

        if self.confirm_immediately:
            return TransactionStatusResult(ChainStatus.ACCEPTED)
        return TransactionStatusResult(ChainStatus.PENDING)

    def _apply(self, sender, call, balances, transfers, outside) -> None:
        if call.selector == EXECUTE_FROM_OUTSIDE:
            account = call.to
            data = list(call.calldata)
            nonce = data[1]
            count = data[4]
            inner, pos = [], 5
            for _ in range(count):
                to, selector, length = data[pos], data[pos + 1], data[pos + 2]
                inner.append(Call(to, selector, tuple(data[pos + 3 : pos + 3 + length])))
                pos += 3 + length
            signature_length = data[pos]

            if nonce in self.outside_nonces[account] or (account, nonce) in outside:
                raise ChainRejected("argent/duplicated-outside-nonce")
            if signature_length == 0:
                raise ChainRejected("argent/invalid-signature")

            outside.append((account, nonce))
            for inner_call in inner:
                self._apply(account, inner_call, balances, transfers, outside)

        elif call.selector == TRANSFER:
            recipient, low, high = call.calldata
            amount = low + (high << 128)
            token = call.to
            if token in self._strict_tokens:
                if balances.get((token, sender), 0) < amount:
                    raise ChainRejected("ERC20: insufficient balance")
                balances[(token, sender)] = balances.get((token, sender), 0) - amount
                balances[(token, recipient)] = balances.get((token, recipient), 0) + amount
            transfers.append((token, sender, recipient, amount))
