"""Sponsored sweep engine.

Consolidates confirmed deposits into the chain's treasury wallet. Fees are
paid by a per-chain sponsor wallet; the chain adapters assemble the actual
transactions. Sweeps on one chain are serialized so concurrent sweeps never
race on the sponsor balance or nonce.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Mapping
from decimal import Decimal
from typing import TYPE_CHECKING

from redis.exceptions import LockError

from deposit_sweeper.chain.base import ChainClientError
from deposit_sweeper.ledger.deposit_ledger import DepositNotFoundError, InvalidStateError
from deposit_sweeper.ledger.models import DepositRecord, DepositStatus
from deposit_sweeper.sweeper.audit import AuditEvent, AuditEventType, AuditSink, LoggingAuditSink
from deposit_sweeper.sweeper.models import (
    InsufficientSponsorBalanceError,
    SweepAdapter,
    SweepConfigurationError,
    SweepError,
    SweepFailedError,
)
from deposit_sweeper.vault.keys import KeyVaultError

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from deposit_sweeper.ledger.deposit_ledger import DepositLedger
    from deposit_sweeper.registry import AddressRegistry

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 600.0


class SweepEngine:
    """Runs sponsored sweeps of confirmed deposits.

    Example:
        ```python
        engine = SweepEngine(ledger, registry, {"base": evm_adapter}, thresholds={"USDC": Decimal("10")})
        if engine.should_sweep(deposit):
            engine.schedule(deposit)
        ...
        await engine.drain()
        ```
    """

    def __init__(
        self,
        ledger: DepositLedger,
        registry: AddressRegistry,
        adapters: Mapping[str, SweepAdapter],
        *,
        thresholds: Mapping[str, Decimal],
        audit: AuditSink | None = None,
        redis: Redis | None = None,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the sweep engine.

        Args:
            ledger: Deposit ledger used to re-check state and mark sweeps.
            registry: Address registry holding the encrypted owner keys.
            adapters: Sweep adapter per chain name.
            thresholds: Minimum sweep amount per asset symbol.
            audit: Audit sink; defaults to logging.
            redis: Optional Redis client for a lock shared across processes.
            lock_timeout_seconds: Expiry of the distributed lock.
        """
        self._ledger = ledger
        self._registry = registry
        self._adapters = dict(adapters)
        self._thresholds = {k.upper(): v for k, v in thresholds.items()}
        self._audit = audit or LoggingAuditSink()
        self._redis = redis
        self._lock_timeout = lock_timeout_seconds

        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: set[uuid.UUID] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def threshold_for(self, asset: str) -> Decimal | None:
        return self._thresholds.get(asset.upper())

    def should_sweep(self, deposit: DepositRecord) -> bool:
        """Whether a confirmed deposit is large enough to be swept automatically."""
        if deposit.status != DepositStatus.CONFIRMED:
            return False
        threshold = self.threshold_for(deposit.asset)
        if threshold is None:
            logger.debug("No sweep threshold for %s; not sweeping %s", deposit.asset, deposit.id)
            return False
        return deposit.amount >= threshold

    def is_in_flight(self, deposit_id: uuid.UUID) -> bool:
        return deposit_id in self._in_flight

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def schedule(self, deposit: DepositRecord) -> asyncio.Task[None] | None:
        """Start a sweep in the background; the caller never awaits it.

        Returns:
            The sweep task, or ``None`` if a sweep for this deposit is in flight.
        """
        if deposit.id in self._in_flight:
            logger.debug("Sweep for deposit %s already in flight", deposit.id)
            return None
        # Reserved before the task runs.
        self._in_flight.add(deposit.id)
        task = asyncio.create_task(self._run_scheduled(deposit), name=f"sweep-{deposit.chain}-{deposit.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_scheduled(self, deposit: DepositRecord) -> None:
        try:
            await self._sweep(deposit.id)
        except InvalidStateError as e:
            logger.warning("Skipped sweep of deposit %s: %s", deposit.id, e)
        except (SweepError, DepositNotFoundError) as e:
            logger.warning("Sweep of deposit %s on %s failed; will retry later: %s", deposit.id, deposit.chain, e)
        except Exception:
            logger.exception("Unexpected error sweeping deposit %s on %s", deposit.id, deposit.chain)

    async def sweep(self, deposit_id: uuid.UUID) -> DepositRecord:
        """Sweep one confirmed deposit to the treasury and mark it swept.

        Raises:
            DepositNotFoundError: If the deposit does not exist.
            InvalidStateError: If the deposit is not ``confirmed``.
            InsufficientSponsorBalanceError: If the sponsor cannot pay fees.
            SweepError: If the sweep could not be completed.
        """
        if deposit_id in self._in_flight:
            raise SweepFailedError(f"Sweep for deposit {deposit_id} already in flight")
        self._in_flight.add(deposit_id)
        return await self._sweep(deposit_id)

    async def _sweep(self, deposit_id: uuid.UUID) -> DepositRecord:
        try:
            deposit = await self._ledger.get(deposit_id)
            if deposit is None:
                raise DepositNotFoundError(f"Deposit {deposit_id} not found")
            async with self._chain_lock(deposit.chain):
                return await self._sweep_locked(deposit_id)
        finally:
            self._in_flight.discard(deposit_id)

    async def _sweep_locked(self, deposit_id: uuid.UUID) -> DepositRecord:
        # Re-read under the lock: another worker may have swept it meanwhile.
        deposit = await self._ledger.get(deposit_id)
        if deposit is None:
            raise DepositNotFoundError(f"Deposit {deposit_id} not found")
        if deposit.status != DepositStatus.CONFIRMED:
            raise InvalidStateError(f"Deposit {deposit_id} is {deposit.status.value}, expected confirmed")

        adapter = self._adapters.get(deposit.chain)
        if adapter is None:
            raise SweepConfigurationError(f"No sweep adapter configured for chain {deposit.chain}")
        address = await self._registry.get(deposit.deposit_address_id)
        if address is None:
            raise SweepConfigurationError(f"Deposit address {deposit.deposit_address_id} not found")

        logger.info(
            "Sweeping deposit %s: %s %s on %s from %s",
            deposit.id,
            deposit.amount,
            deposit.asset,
            deposit.chain,
            address.address,
        )
        try:
            # Key derivation is CPU bound; keep it off the event loop.
            signers = await asyncio.to_thread(adapter.load_signers, address)
            outcome = await adapter.execute(deposit, address, signers)
        except InsufficientSponsorBalanceError as e:
            await self._emit_failure(deposit, e)
            await self._audit.emit(
                AuditEvent(
                    AuditEventType.SPONSOR_BALANCE_LOW,
                    deposit.chain,
                    deposit.id,
                    {"required": e.required, "available": e.available, "error": str(e)},
                )
            )
            raise
        except SweepError as e:
            await self._emit_failure(deposit, e)
            raise
        except (ChainClientError, KeyVaultError) as e:
            await self._emit_failure(deposit, e)
            raise SweepFailedError(f"Sweep of deposit {deposit.id} failed: {e}") from e

        record = await self._ledger.mark_swept(deposit.id, outcome.tx_id)
        await self._audit.emit(
            AuditEvent(
                AuditEventType.SWEEP_SUCCEEDED,
                deposit.chain,
                deposit.id,
                {
                    "asset": deposit.asset,
                    "amount": str(deposit.amount),
                    "from_address": address.address,
                    "sweep_tx_id": outcome.tx_id,
                    "funding_tx_id": outcome.funding_tx_id,
                    "sponsor_spent": outcome.sponsor_spent,
                },
            )
        )
        return record

    async def _emit_failure(self, deposit: DepositRecord, error: Exception) -> None:
        logger.warning("Sweep of deposit %s on %s failed: %s", deposit.id, deposit.chain, error)
        await self._audit.emit(
            AuditEvent(
                AuditEventType.SWEEP_FAILED,
                deposit.chain,
                deposit.id,
                {
                    "asset": deposit.asset,
                    "amount": str(deposit.amount),
                    "error_type": type(error).__name__,
                    "error": str(error),
                },
            )
        )

    @contextlib.asynccontextmanager
    async def _chain_lock(self, chain: str) -> AsyncIterator[None]:
        local = self._locks.setdefault(chain, asyncio.Lock())
        async with local:
            if self._redis is None:
                yield
                return
            lock = self._redis.lock(
                f"deposit-sweeper:sweep-lock:{chain}",
                timeout=self._lock_timeout,
                blocking_timeout=self._lock_timeout,
            )
            if not await lock.acquire():
                raise SweepFailedError(f"Timed out waiting for the {chain} sweep lock")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError as e:
                    logger.warning("Sweep lock for %s expired before release: %s", chain, e)

    async def drain(self) -> None:
        """Wait for all scheduled sweeps to finish."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight sweeps", len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
