"""Per-chain deposit watcher.

One long-running polling loop per chain. Each tick scans a bounded height
window for inbound transfers to every active deposit address, records them
in the ledger, advances confirmations of pending deposits and hands newly
confirmed deposits above the sweep threshold to the sweep engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from deposit_sweeper.chain.base import ChainClientError
from deposit_sweeper.ledger.deposit_ledger import compute_confirmations
from deposit_sweeper.ledger.models import DepositRecord, ObservedDeposit, RecordResult
from deposit_sweeper.storage.repos import WatcherCursorRepository
from deposit_sweeper.sweeper.audit import (
    AuditEvent,
    AuditEventType,
    AuditSink,
    LoggingAuditSink,
    confirmation_latency_seconds,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from deposit_sweeper.chain.base import ChainClient
    from deposit_sweeper.chain.models import ObservedTransfer
    from deposit_sweeper.config import ChainConfig
    from deposit_sweeper.ledger.deposit_ledger import DepositLedger
    from deposit_sweeper.registry import AddressRegistry
    from deposit_sweeper.storage.repos import DepositAddressDTO
    from deposit_sweeper.sweeper.engine import SweepEngine

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS_CONCURRENCY = 5
DEFAULT_RETRY_INTERVAL_SECONDS = 300.0


class WatcherState(str, Enum):
    """Watcher lifecycle states."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class WatcherStats:
    """Statistics for one chain watcher."""

    started_at: datetime | None = None
    ticks: int = 0
    deposits_recorded: int = 0
    deposits_confirmed: int = 0
    sweeps_scheduled: int = 0
    errors: int = 0
    last_height: int | None = None
    last_tick_at: datetime | None = None
    last_error: str | None = None


class ChainWatcher:
    """Polls one chain for deposits.

    Example:
        ```python
        watcher = ChainWatcher(config, client, registry, ledger, engine)
        await watcher.start()
        ...
        watcher.stop()
        await watcher.wait_stopped()
        ```
    """

    def __init__(
        self,
        config: ChainConfig,
        client: ChainClient,
        registry: AddressRegistry,
        ledger: DepositLedger,
        engine: SweepEngine,
        *,
        audit: AuditSink | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        address_concurrency: int = DEFAULT_ADDRESS_CONCURRENCY,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the watcher.

        Args:
            config: Runtime configuration of the chain.
            client: Chain client used for heights and transfer discovery.
            registry: Source of active deposit addresses.
            ledger: Deposit ledger.
            engine: Sweep engine receiving newly confirmed deposits.
            audit: Audit sink for confirmation latency events.
            session_factory: Enables persisting the high-water mark across restarts.
            address_concurrency: Maximum concurrent address checks per tick.
            retry_interval_seconds: Period of the unswept-deposit retry pass (0 disables).
        """
        self.config = config
        self._client = client
        self._registry = registry
        self._ledger = ledger
        self._engine = engine
        self._audit = audit or LoggingAuditSink()
        self._session_factory = session_factory
        self._address_concurrency = address_concurrency
        self._retry_interval = retry_interval_seconds

        self._state = WatcherState.STOPPED
        self._stats = WatcherStats()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._last_retry_at: float | None = None
        # (address, asset) -> first height not yet scanned for that address.
        self._backlog: dict[tuple[str, str], int] = {}

    @property
    def chain(self) -> str:
        return self.config.name

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def stats(self) -> WatcherStats:
        return self._stats

    async def start(self) -> None:
        """Start the polling loop. A second call while running is a no-op."""
        if self._task is not None and not self._task.done():
            logger.warning("Watcher for %s is already running", self.chain)
            return
        self._stop_event = asyncio.Event()
        self._state = WatcherState.RUNNING
        self._stats.started_at = datetime.now(UTC)
        self._task = asyncio.create_task(self._run(self._stop_event), name=f"watcher-{self.chain}")
        logger.info(
            "Started %s watcher (interval=%ss, required_confirmations=%d)",
            self.chain,
            self.config.poll_interval_seconds,
            self.config.required_confirmations,
        )

    def stop(self) -> None:
        """Ask the loop to exit after the current tick; in-flight calls are not aborted."""
        if self._stop_event is None or self._state == WatcherState.STOPPED:
            return
        self._state = WatcherState.STOPPING
        self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None
        self._state = WatcherState.STOPPED

    async def _run(self, stop_event: asyncio.Event) -> None:
        height: int | None = None
        saved: int | None = None
        cursor_loaded = False
        interval = self.config.poll_interval_seconds

        while not stop_event.is_set():
            try:
                if not cursor_loaded:
                    height = saved = await self._load_cursor()
                    cursor_loaded = True
                height = await self.tick(height)
                checkpoint = self.checkpoint(height)
                if checkpoint is not None and checkpoint != saved:
                    await self._save_cursor(checkpoint)
                    saved = checkpoint
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.exception("Watcher tick failed on %s: %s", self.chain, e)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

        logger.info("Stopped %s watcher at height %s", self.chain, height)

    async def _load_cursor(self) -> int | None:
        if self._session_factory is None:
            return None
        async with self._session_factory() as session:
            height = await WatcherCursorRepository(session).get(self.chain)
        if height is not None:
            logger.info("Resuming %s watcher after height %d", self.chain, height)
        return height

    async def _save_cursor(self, height: int) -> None:
        if self._session_factory is None:
            return
        async with self._session_factory() as session:
            await WatcherCursorRepository(session).set(self.chain, height)
            await session.commit()

    def scan_window(self, last_height: int | None, current_height: int) -> tuple[int, int]:
        """Inclusive height window to scan; empty when ``start > end``."""
        if last_height is None:
            start = max(0, current_height - self.config.initial_lookback + 1)
        else:
            start = last_height + 1
        end = min(current_height, start + self.config.max_blocks_per_tick - 1)
        return start, end

    def backlog(self) -> dict[tuple[str, str], int]:
        """First unscanned height of every address lagging behind the chain cursor."""
        return dict(self._backlog)

    def checkpoint(self, high_water: int | None) -> int | None:
        """Height that is safe to persist as the resume point.

        Lagging addresses hold the persisted cursor back so their unscanned
        range is revisited after a restart. The in-memory cursor still moves
        on, so healthy addresses are never blocked by a failing one.
        """
        if high_water is None or not self._backlog:
            return high_water
        return min(high_water, min(self._backlog.values()) - 1)

    async def tick(self, last_height: int | None) -> int | None:
        """Run one polling pass.

        Args:
            last_height: Last height whose window was scanned, or ``None`` on
                the very first tick.

        Returns:
            The new chain high-water mark. It advances even when some
            addresses failed; those keep their own backlog and catch up on
            later ticks, at most ``max_blocks_per_tick`` heights at a time.
        """
        self._stats.ticks += 1
        self._stats.last_tick_at = datetime.now(UTC)

        try:
            current = await self._client.current_height()
        except ChainClientError as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.warning("Failed to fetch %s height, skipping tick: %s", self.chain, e)
            return last_height
        self._stats.last_height = current

        start, end = self.scan_window(last_height, current)
        new_high_water = last_height
        if start <= end or self._backlog:
            addresses = await self._registry.list_active_addresses(self.chain)
            await self._scan_addresses(addresses, start, end, current)
            if start <= end:
                new_high_water = end

        await self._reevaluate_pending(current)
        await self._retry_unswept()
        return new_high_water

    async def _scan_addresses(
        self,
        addresses: list[DepositAddressDTO],
        start: int,
        end: int,
        current: int,
    ) -> None:
        semaphore = asyncio.Semaphore(self._address_concurrency)
        active = {(a.address, a.asset) for a in addresses}
        for key in set(self._backlog) - active:
            del self._backlog[key]

        async def check(address: DepositAddressDTO) -> None:
            key = (address.address, address.asset)
            asset = self.config.assets.get(address.asset)
            if asset is None:
                logger.warning("Asset %s of %s is not tracked on %s", address.asset, address.address, self.chain)
                self._backlog.pop(key, None)
                return
            from_height = self._backlog.get(key, start)
            to_height = min(end, from_height + self.config.max_blocks_per_tick - 1)
            if from_height > to_height:
                return
            async with semaphore:
                try:
                    transfers = await self._client.transfers_to(address.address, asset, from_height, to_height)
                    for transfer in transfers:
                        await self._record(address, transfer, current)
                except ChainClientError as e:
                    self._fail(key, from_height, e)
                    logger.warning(
                        "Failed to check %s %s on %s [%d..%d]: %s",
                        address.address,
                        address.asset,
                        self.chain,
                        from_height,
                        to_height,
                        e,
                    )
                    return
                except Exception as e:
                    self._fail(key, from_height, e)
                    logger.exception(
                        "Unexpected error checking %s %s on %s [%d..%d]: %s",
                        address.address,
                        address.asset,
                        self.chain,
                        from_height,
                        to_height,
                        e,
                    )
                    return
            if to_height < end:
                self._backlog[key] = to_height + 1
            else:
                self._backlog.pop(key, None)

        await asyncio.gather(*(check(a) for a in addresses))

    def _fail(self, key: tuple[str, str], from_height: int, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error)
        self._backlog[key] = from_height

    async def _record(self, address: DepositAddressDTO, transfer: ObservedTransfer, current: int) -> None:
        if address.id is None:
            raise ValueError(f"Deposit address {address.address} has no id")
        result = await self._ledger.record_or_update(
            ObservedDeposit(
                user_id=address.user_id,
                deposit_address_id=address.id,
                chain=self.chain,
                asset=address.asset,
                tx_id=transfer.tx_id,
                amount=transfer.amount,
                from_address=transfer.from_address,
                block_number=transfer.height,
                confirmations=compute_confirmations(current, transfer.height),
                required_confirmations=self.config.required_confirmations,
            )
        )
        if result.created:
            self._stats.deposits_recorded += 1
        await self._handle_result(result)

    async def _reevaluate_pending(self, current: int) -> None:
        for deposit in await self._ledger.list_confirming(self.chain):
            confirmations = compute_confirmations(current, deposit.block_number)
            if confirmations <= deposit.confirmations:
                continue
            result = await self._ledger.record_or_update(
                ObservedDeposit(
                    user_id=deposit.user_id,
                    deposit_address_id=deposit.deposit_address_id,
                    chain=deposit.chain,
                    asset=deposit.asset,
                    tx_id=deposit.tx_id,
                    amount=deposit.amount,
                    from_address=deposit.from_address,
                    block_number=deposit.block_number,
                    confirmations=confirmations,
                    required_confirmations=deposit.required_confirmations,
                )
            )
            await self._handle_result(result)

    async def _handle_result(self, result: RecordResult) -> None:
        if not result.newly_confirmed:
            return
        deposit = result.deposit
        self._stats.deposits_confirmed += 1
        await self._audit.emit(
            AuditEvent(
                AuditEventType.DEPOSIT_CONFIRMED,
                deposit.chain,
                deposit.id,
                {
                    "asset": deposit.asset,
                    "amount": str(deposit.amount),
                    "tx_id": deposit.tx_id,
                    "confirmations": deposit.confirmations,
                    "latency_seconds": confirmation_latency_seconds(deposit.first_seen_at, deposit.confirmed_at),
                },
            )
        )
        self._offer_sweep(deposit)

    def _offer_sweep(self, deposit: DepositRecord) -> None:
        if not self._engine.should_sweep(deposit):
            logger.info(
                "Deposit %s (%s %s) is below the sweep threshold; not sweeping",
                deposit.id,
                deposit.amount,
                deposit.asset,
            )
            return
        if self._engine.schedule(deposit) is not None:
            self._stats.sweeps_scheduled += 1

    async def _retry_unswept(self) -> None:
        """Re-offer confirmed deposits whose earlier sweep failed."""
        if self._retry_interval <= 0:
            return
        now = time.monotonic()
        if self._last_retry_at is not None and now - self._last_retry_at < self._retry_interval:
            return
        self._last_retry_at = now
        for deposit in await self._ledger.list_unswept(self.chain):
            if self._engine.is_in_flight(deposit.id) or not self._engine.should_sweep(deposit):
                continue
            logger.info("Retrying sweep of confirmed deposit %s on %s", deposit.id, self.chain)
            if self._engine.schedule(deposit) is not None:
                self._stats.sweeps_scheduled += 1
