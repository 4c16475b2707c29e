"""Service orchestrator for the deposit sweeper.

Wires configuration, storage, the key vault, chain clients, sweep adapters
and one watcher per enabled chain, and owns their lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from deposit_sweeper.chain.evm import EvmChainClient
from deposit_sweeper.chain.models import ChainKind
from deposit_sweeper.chain.solana import SolanaChainClient
from deposit_sweeper.config import ChainConfig, Settings, get_settings
from deposit_sweeper.ledger.deposit_ledger import DepositLedger
from deposit_sweeper.registry import AddressRegistry
from deposit_sweeper.storage.database import DatabaseManager
from deposit_sweeper.sweeper.audit import LoggingAuditSink
from deposit_sweeper.sweeper.engine import SweepEngine
from deposit_sweeper.sweeper.evm import EvmSweepAdapter
from deposit_sweeper.sweeper.solana import SolanaSweepAdapter
from deposit_sweeper.vault.keys import KeyVault
from deposit_sweeper.watcher.chain_watcher import ChainWatcher

if TYPE_CHECKING:
    from deposit_sweeper.chain.base import ChainClient
    from deposit_sweeper.sweeper.models import SweepAdapter

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Aggregated statistics across all watchers."""

    started_at: datetime | None = None
    chains: int = 0
    deposits_recorded: int = 0
    deposits_confirmed: int = 0
    sweeps_scheduled: int = 0
    errors: int = 0
    last_error: str | None = None


class SweeperService:
    """Runs the deposit watchers and the sweep engine.

    Example:
        ```python
        service = SweeperService(get_settings(), chains=["base"])
        await service.run()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        chains: list[str] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings, defaults to ``get_settings()``.
            chains: Restrict to these chain names; all enabled chains when ``None``.
        """
        self._settings = settings or get_settings()
        self._chain_filter = {c.lower() for c in chains} if chains else None

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()
        self._stop_event: asyncio.Event | None = None

        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._clients: dict[str, ChainClient] = {}
        self._engine: SweepEngine | None = None
        self._watchers: list[ChainWatcher] = []

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def watchers(self) -> list[ChainWatcher]:
        return list(self._watchers)

    @property
    def stats(self) -> ServiceStats:
        """Current statistics, summed over the chain watchers."""
        stats = self._stats
        stats.chains = len(self._watchers)
        stats.deposits_recorded = sum(w.stats.deposits_recorded for w in self._watchers)
        stats.deposits_confirmed = sum(w.stats.deposits_confirmed for w in self._watchers)
        stats.sweeps_scheduled = sum(w.stats.sweeps_scheduled for w in self._watchers)
        stats.errors = sum(w.stats.errors for w in self._watchers)
        return stats

    def selected_chains(self) -> list[ChainConfig]:
        configs = self._settings.chain_configs()
        if self._chain_filter is None:
            return configs
        selected = [c for c in configs if c.name in self._chain_filter]
        missing = self._chain_filter - {c.name for c in selected}
        if missing:
            raise ValueError(f"Unknown or disabled chain(s): {', '.join(sorted(missing))}")
        return selected

    async def start(self) -> None:
        """Initialize components and start one watcher per chain.

        Raises:
            RuntimeError: If the service is already running.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting deposit sweeper...")

        try:
            await self._initialize_components()
            for watcher in self._watchers:
                await watcher.start()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Deposit sweeper started on %s", ", ".join(w.chain for w in self._watchers) or "no chains")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start deposit sweeper: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop watchers, let in-flight sweeps finish and release resources."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping deposit sweeper...")
        if self._stop_event:
            self._stop_event.set()

        for watcher in self._watchers:
            watcher.stop()
        for watcher in self._watchers:
            await watcher.wait_stopped()
        if self._engine is not None:
            await self._engine.drain()

        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Deposit sweeper stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings
        configs = self.selected_chains()

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)
        session_factory = self._db_manager.session_factory

        vault = KeyVault(settings.vault.encryption_key.get_secret_value() if settings.vault.encryption_key else "")
        audit = LoggingAuditSink()
        registry = AddressRegistry(session_factory)
        ledger = DepositLedger(session_factory)

        adapters: dict[str, SweepAdapter] = {}
        for config in configs:
            client, adapter = self._build_chain(config, vault)
            self._clients[config.name] = client
            adapters[config.name] = adapter

        self._engine = SweepEngine(
            ledger,
            registry,
            adapters,
            thresholds=settings.sweep.thresholds,
            audit=audit,
            redis=self._redis,
            lock_timeout_seconds=settings.sweep.lock_timeout_seconds,
        )
        self._watchers = [
            ChainWatcher(
                config,
                self._clients[config.name],
                registry,
                ledger,
                self._engine,
                audit=audit,
                session_factory=session_factory,
                address_concurrency=settings.sweep.address_concurrency,
                retry_interval_seconds=settings.sweep.retry_interval_seconds,
            )
            for config in configs
        ]

    def _build_chain(self, config: ChainConfig, vault: KeyVault) -> tuple[ChainClient, SweepAdapter]:
        extra = config.extra
        if config.kind == ChainKind.EVM:
            if config.chain_id is None:
                raise ValueError(f"EVM chain {config.name} has no chain id configured")
            evm_client = EvmChainClient(
                config.name,
                rpc_url=config.rpc_url,
                chain_id=config.chain_id,
                fallback_rpc_url=config.fallback_rpc_url,
                redis=self._redis,
                logs_chunk_size_blocks=int(extra["logs_chunk_size_blocks"]),  # type: ignore[call-overload]
                receipt_timeout_seconds=float(extra["receipt_timeout_seconds"]),  # type: ignore[arg-type]
            )
            return evm_client, EvmSweepAdapter(
                evm_client,
                vault,
                config,
                gas_buffer_multiplier=Decimal(str(extra["gas_buffer_multiplier"])),
                token_transfer_gas=int(extra["token_transfer_gas"]),  # type: ignore[call-overload]
            )

        solana_client = SolanaChainClient(
            config.name,
            rpc_url=config.rpc_url,
            fallback_rpc_url=config.fallback_rpc_url,
            signatures_limit=int(extra["signatures_limit"]),  # type: ignore[call-overload]
            confirm_timeout_seconds=float(extra["confirm_timeout_seconds"]),  # type: ignore[arg-type]
        )
        return solana_client, SolanaSweepAdapter(
            solana_client,
            vault,
            config,
            sponsor_min_balance_sol=Decimal(str(extra["sponsor_min_balance"])),
        )

    async def _cleanup(self) -> None:
        for name, client in self._clients.items():
            try:
                await client.aclose()
            except Exception as e:
                logger.warning("Failed to close %s client: %s", name, e)
        self._clients = {}

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and block until ``stop()`` or cancellation."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> SweeperService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
