"""Relayer: the single writer of on-chain transactions.

All submissions run inside one exclusive section per relayer account
(in-process lock plus a locked nonce row), so no two in-flight submissions
ever use the same nonce. The stored nonce advances only after the chain
accepted a submission.

On SQLite the locked row is the whole database, so other writers wait for
the fee estimation and submission RPCs of the current submission. SQLite is
for development and tests; production uses a server database where only
the nonce row is locked.

Unknown outcomes (timeouts, dropped connections) are resolved by looking the
already-signed transaction up by hash and, if absent, resubmitting the same
signed bytes. A fresh nonce is never signed for an operation whose previous
attempt may still land.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phonevault.errors import (
    ChainRejected,
    ChainUnavailable,
    EstimationFailed,
    NonceRaceExhausted,
    StaleNonce,
    SubmissionFailed,
    SubmissionTimeout,
    TransactionNotFound,
    ValidationError,
)
from phonevault.identity.address import to_hex
from phonevault.ledger.database import get_db
from phonevault.ledger.models import RelayedTransaction, TxStatus
from phonevault.ledger.repository import VaultRepository
from phonevault.relay.base import Call, ChainClient, ChainStatus, SignedTransaction
from phonevault.relay.outside import (
    NO_LOWER_BOUND,
    NO_UPPER_BOUND,
    OutsideExecution,
    wrap_outside_execution,
)
from phonevault.utils.locks import KeyedLock
from phonevault.utils.retry import retry_transient

logger = logging.getLogger(__name__)

_CHAIN_TO_TX = {
    ChainStatus.PENDING: TxStatus.PENDING,
    ChainStatus.ACCEPTED: TxStatus.ACCEPTED,
    ChainStatus.REJECTED: TxStatus.REJECTED,
}


@dataclass
class TransactionHandle:
    """Reference to a relayed transaction."""
    tx_hash: str
    status: TxStatus
    nonce: Optional[int] = None
    max_fee: Optional[int] = None
    operation_key: Optional[str] = None
    error: Optional[str] = None
    reused: bool = False       # Returned from an earlier submission of the same operation

    @classmethod
    def from_record(cls, record: RelayedTransaction, reused: bool = False) -> "TransactionHandle":
        return cls(
            tx_hash=record.tx_hash,
            status=TxStatus(record.status),
            nonce=record.nonce,
            max_fee=record.max_fee,
            operation_key=record.operation_key,
            error=record.error_message,
            reused=reused,
        )


class RelayExecutor:
    """Builds, submits and tracks relayer transactions."""

    def __init__(
        self,
        chain: ChainClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        fee_multiplier: float = 1.5,
        nonce_retry_limit: int = 3,
        transient_retries: int = 2,
        retry_backoff: float = 0.5,
        poll_interval: float = 2.0,
        wait_timeout: float = 120.0,
    ):
        self.chain = chain
        self.session_factory = session_factory
        self.fee_multiplier = fee_multiplier
        self.nonce_retry_limit = nonce_retry_limit
        self.transient_retries = transient_retries
        self.retry_backoff = retry_backoff
        self.poll_interval = poll_interval
        self.wait_timeout = wait_timeout

    @property
    def relayer_address(self) -> str:
        return to_hex(self.chain.relayer_address)

    @property
    def _lock_key(self) -> str:
        return f"relay-nonce:{self.relayer_address}"

    # Fees
    async def estimate_fee(self, calls: Sequence[Call], nonce: Optional[int] = None) -> int:
        """Conservative fee bound for `calls` sent by the relayer.

        Raises:
            EstimationFailed: If the node keeps failing
        """
        calls = list(calls)
        try:
            if nonce is None:
                nonce = await self._chain_nonce()
            estimate = await retry_transient(
                lambda: self.chain.estimate_fee(calls, nonce),
                retries=self.transient_retries,
                backoff=self.retry_backoff,
                retry_on=(ChainUnavailable,),
                operation="Fee estimation",
            )
        except ChainUnavailable as e:
            raise EstimationFailed(str(e))

        numerator, denominator = Decimal(str(self.fee_multiplier)).as_integer_ratio()
        return -(-estimate * numerator // denominator)

    # Submission
    def build_calls(
        self,
        calls: Sequence[Call],
        on_behalf_of: Optional[int] = None,
        signature: Optional[Sequence[int]] = None,
        outside_nonce: Optional[int] = None,
        execute_after: Optional[int] = None,
        execute_before: Optional[int] = None,
    ) -> list[Call]:
        """Calls the relayer actually sends.

        For an execute-from-outside relay, the user's calls are wrapped into a
        single call on their account carrying their own nonce and signature.
        """
        if on_behalf_of is None:
            if signature is not None:
                raise ValidationError("A signature is only meaningful with on_behalf_of")
            return list(calls)

        if signature is None or outside_nonce is None:
            raise ValidationError("Relaying on behalf of an account needs its nonce and signature")

        execution = OutsideExecution(
            nonce=outside_nonce,
            calls=list(calls),
            execute_after=NO_LOWER_BOUND if execute_after is None else execute_after,
            execute_before=NO_UPPER_BOUND if execute_before is None else execute_before,
        )
        return [wrap_outside_execution(on_behalf_of, execution, signature)]

    async def submit(
        self,
        calls: Sequence[Call],
        on_behalf_of: Optional[int] = None,
        signature: Optional[Sequence[int]] = None,
        *,
        outside_nonce: Optional[int] = None,
        execute_after: Optional[int] = None,
        execute_before: Optional[int] = None,
        operation_key: Optional[str] = None,
        wait: bool = False,
    ) -> TransactionHandle:
        """Submit calls paid for by the relayer.

        Args:
            calls: Calls to execute
            on_behalf_of: User account for an execute-from-outside relay
            signature: User signature over the outside execution
            outside_nonce: User account's outside-execution nonce
            execute_after: Earliest execution timestamp (outside only)
            execute_before: Latest execution timestamp (outside only)
            operation_key: Logical operation; a non-rejected earlier
                submission with the same key is returned instead of resubmitting
            wait: Poll until the transaction is accepted or rejected

        Raises:
            ChainRejected: Chain refused or reverted the transaction
            NonceRaceExhausted: Relayer nonce kept going stale
            SubmissionFailed: Outcome still unknown after retries
            EstimationFailed: Fee estimation failed
        """
        relay_calls = self.build_calls(
            calls, on_behalf_of, signature, outside_nonce, execute_after, execute_before
        )
        on_behalf_hex = to_hex(on_behalf_of) if on_behalf_of is not None else None

        replaceable = None
        if operation_key:
            existing, replaceable = await self._find_operation(operation_key)
            if existing is not None:
                logger.info(f"Operation {operation_key} already relayed as {existing.tx_hash}")
                return await self.wait_for(existing.tx_hash) if wait else existing

        async with KeyedLock(self._lock_key, timeout=None, operation=operation_key or "submit"):
            handle = await self._submit_exclusive(
                relay_calls, on_behalf_hex, operation_key, replaceable
            )

        if wait:
            return await self.wait_for(handle.tx_hash)
        return handle

    async def _submit_exclusive(
        self,
        calls: list[Call],
        on_behalf_of: Optional[str],
        operation_key: Optional[str],
        replaceable: Optional[str] = None,
    ) -> TransactionHandle:
        """Nonce read-submit-advance, run under the relayer lock."""
        async with get_db(self.session_factory) as session:
            repo = VaultRepository(session)

            if operation_key:
                # A concurrent submission of the same operation may have won the lock first
                existing = await repo.get_transaction_by_operation(operation_key)
                if (
                    existing is not None
                    and existing.status != TxStatus.REJECTED
                    and existing.tx_hash != replaceable
                ):
                    return TransactionHandle.from_record(existing, reused=True)

            state = await repo.lock_relay_nonce(self.relayer_address)
            nonce = state.next_nonce if state is not None else await self._chain_nonce()

            for race in range(self.nonce_retry_limit + 1):
                try:
                    max_fee = await self.estimate_fee(calls, nonce)
                    tx = await self.chain.sign(calls, nonce, max_fee)
                    tx_hash = await self._submit_signed(tx)
                except StaleNonce as e:
                    # Follow the chain either way; a dropped attempt leaves the
                    # stored nonce ahead of it. At most one use of a nonce lands.
                    chain_nonce = await self._chain_nonce()
                    logger.warning(
                        f"Relayer nonce {nonce} stale ({e.message}); chain nonce is {chain_nonce} "
                        f"(race {race + 1}/{self.nonce_retry_limit + 1})"
                    )
                    nonce = chain_nonce
                    continue
                except SubmissionFailed as e:
                    # Keep the unknown attempt on record so a retry of the
                    # operation checks it first; the nonce is not advanced.
                    await repo.record_transaction(
                        tx_hash=tx.tx_hash_hex,
                        sender=self.relayer_address,
                        nonce=nonce,
                        max_fee=max_fee,
                        calls=self._serialize(calls),
                        on_behalf_of=on_behalf_of,
                        operation_key=operation_key,
                    )
                    await repo.update_transaction_status(tx.tx_hash_hex, TxStatus.PENDING, e.message)
                    await session.commit()
                    raise

                await repo.set_relay_nonce(self.relayer_address, nonce + 1)
                record = await repo.record_transaction(
                    tx_hash=tx_hash,
                    sender=self.relayer_address,
                    nonce=nonce,
                    max_fee=max_fee,
                    calls=self._serialize(calls),
                    on_behalf_of=on_behalf_of,
                    operation_key=operation_key,
                )
                logger.info(
                    f"Relayed {tx_hash} with nonce {nonce}"
                    + (f" on behalf of {on_behalf_of}" if on_behalf_of else "")
                )
                return TransactionHandle.from_record(record)

        raise NonceRaceExhausted(
            f"Relayer nonce went stale {self.nonce_retry_limit + 1} times in a row"
        )

    async def _submit_signed(self, tx: SignedTransaction) -> str:
        """Submit one signed transaction, resolving unknown outcomes by hash."""
        tx_hash = tx.tx_hash_hex
        outcome_unknown = False

        for attempt in range(self.transient_retries + 1):
            try:
                return await self.chain.submit(tx)
            except StaleNonce:
                # A resubmission can hit our own earlier, accepted attempt
                if outcome_unknown and await self._landed(tx_hash):
                    return tx_hash
                raise
            except (SubmissionTimeout, ChainUnavailable) as e:
                outcome_unknown = True
                logger.warning(f"Outcome of {tx_hash} unknown: {e.message}")
                if await self._landed(tx_hash):
                    return tx_hash
                if attempt >= self.transient_retries:
                    raise SubmissionFailed(
                        f"Submission of {tx_hash} failed after {attempt + 1} attempts: {e.message}"
                    )
                await asyncio.sleep(self.retry_backoff * (2**attempt))

        raise AssertionError("unreachable")

    async def _landed(self, tx_hash: str) -> bool:
        try:
            result = await self.chain.get_status(tx_hash)
        except ChainUnavailable as e:
            logger.warning(f"Could not look up {tx_hash}: {e.message}")
            return False
        return result.status != ChainStatus.NOT_FOUND

    async def _chain_nonce(self) -> int:
        return await retry_transient(
            lambda: self.chain.get_nonce(self.chain.relayer_address),
            retries=self.transient_retries,
            backoff=self.retry_backoff,
            retry_on=(ChainUnavailable,),
            operation="Nonce read",
        )

    async def _find_operation(
        self, operation_key: str
    ) -> tuple[Optional[TransactionHandle], Optional[str]]:
        """Look up an earlier submission of an operation.

        Returns (handle, None) if it landed or is in flight, and (None, hash)
        if it is pending locally but unknown to the node. Such an attempt was
        never advanced past its nonce, so a replacement either reuses that
        nonce or follows a transaction that consumed it; at most one executes.
        """
        async with get_db(self.session_factory) as session:
            record = await VaultRepository(session).get_transaction_by_operation(operation_key)
            if record is None or record.status == TxStatus.REJECTED:
                return None, None
            if record.status == TxStatus.ACCEPTED:
                return TransactionHandle.from_record(record, reused=True), None
            tx_hash = record.tx_hash

        try:
            result = await self.chain.get_status(tx_hash)
        except ChainUnavailable as e:
            # Cannot tell; keep treating the earlier attempt as in flight
            logger.warning(f"Could not look up {tx_hash}: {e.message}")
            return await self._reuse(tx_hash), None

        if result.status == ChainStatus.NOT_FOUND:
            return None, tx_hash

        handle = await self.get_status(tx_hash)
        if handle.status == TxStatus.REJECTED:
            return None, None
        handle.reused = True
        return handle, None

    async def _reuse(self, tx_hash: str) -> TransactionHandle:
        async with get_db(self.session_factory) as session:
            record = await VaultRepository(session).get_transaction(tx_hash)
            return TransactionHandle.from_record(record, reused=True)

    @staticmethod
    def _serialize(calls: list[Call]) -> str:
        return json.dumps([c.to_dict() for c in calls])

    # Status
    async def get_status(self, tx_hash: str) -> TransactionHandle:
        """Refresh a transaction's status from the chain.

        A recorded transaction the node no longer knows, whose nonce has been
        consumed by another transaction, can never land and becomes rejected.

        Raises:
            TransactionNotFound: If the relayer never recorded this hash
        """
        async with get_db(self.session_factory) as session:
            repo = VaultRepository(session)
            record = await repo.get_transaction(tx_hash)
            if record is None:
                raise TransactionNotFound(f"Unknown transaction {tx_hash}")
            if record.status != TxStatus.PENDING:
                return TransactionHandle.from_record(record)

            result = await self.chain.get_status(tx_hash)
            if result.status == ChainStatus.NOT_FOUND:
                chain_nonce = await self._chain_nonce()
                if chain_nonce > record.nonce:
                    await repo.update_transaction_status(
                        tx_hash, TxStatus.REJECTED, "nonce consumed by another transaction"
                    )
                    await session.refresh(record)
                return TransactionHandle.from_record(record)

            status = _CHAIN_TO_TX[result.status]
            if status != TxStatus.PENDING:
                await repo.update_transaction_status(tx_hash, status, result.reason)
                await session.refresh(record)
                logger.info(f"Transaction {tx_hash} {status.value}")
            return TransactionHandle.from_record(record)

    async def wait_for(self, tx_hash: str) -> TransactionHandle:
        """Poll until accepted, rejected or `wait_timeout` elapses.

        Raises:
            ChainRejected: With the chain's reason if rejected or reverted
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout

        while True:
            handle = await self.get_status(tx_hash)
            if handle.status == TxStatus.REJECTED:
                raise ChainRejected(handle.error or "transaction rejected", tx_hash=tx_hash)
            if handle.status == TxStatus.ACCEPTED or loop.time() >= deadline:
                return handle
            await asyncio.sleep(self.poll_interval)

    # Operator actions
    async def resync_nonce(self) -> int:
        """Reset the stored relayer nonce to the chain's value."""
        async with KeyedLock(self._lock_key, timeout=None, operation="resync"):
            chain_nonce = await self._chain_nonce()
            async with get_db(self.session_factory) as session:
                await VaultRepository(session).set_relay_nonce(self.relayer_address, chain_nonce)
        logger.warning(f"Relayer nonce resynced to {chain_nonce}")
        return chain_nonce
