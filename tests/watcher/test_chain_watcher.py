"""Tests for the per-chain deposit watcher."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deposit_sweeper.chain.base import RPCError
from deposit_sweeper.chain.models import AssetSpec, ChainKind, ObservedTransfer, SignerPair
from deposit_sweeper.config import ChainConfig
from deposit_sweeper.ledger import DepositLedger, DepositStatus
from deposit_sweeper.registry import AddressRegistry
from deposit_sweeper.storage.repos import DepositAddressDTO, DepositAddressRepository, WatcherCursorRepository
from deposit_sweeper.sweeper import (
    AuditEvent,
    AuditEventType,
    InsufficientSponsorBalanceError,
    SweepEngine,
    SweepOutcome,
)
from deposit_sweeper.watcher import ChainWatcher, WatcherState

SOLANA_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
BASE_ADDRESS = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"
THRESHOLDS = {"SOL": Decimal("0.1"), "ETH": Decimal("0.01"), "USDC": Decimal("10"), "USDT": Decimal("10")}


class FakeChainClient:
    """In-memory chain: a current height and transfers keyed by (address, asset)."""

    def __init__(self, height: int) -> None:
        self.height = height
        self.transfers: dict[tuple[str, str], list[ObservedTransfer]] = {}
        self.failing: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str, int, int]] = []

    def add(self, address: str, asset: str, transfer: ObservedTransfer) -> None:
        self.transfers.setdefault((address, asset), []).append(transfer)

    async def current_height(self) -> int:
        return self.height

    async def transfers_to(self, address: str, asset: AssetSpec, from_height: int, to_height: int):
        self.calls.append((address, asset.symbol, from_height, to_height))
        if address in self.failing:
            raise RPCError("rpc down")
        if address in self.errors:
            raise self.errors[address]
        return [
            t
            for t in self.transfers.get((address, asset.symbol), [])
            if from_height <= t.height <= to_height
        ]


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)


def solana_config(**overrides: object) -> ChainConfig:
    values: dict[str, object] = {
        "name": "solana",
        "kind": ChainKind.SOLANA,
        "rpc_url": "https://api.mainnet-beta.solana.com",
        "required_confirmations": 1,
        "poll_interval_seconds": 0.01,
        "max_blocks_per_tick": 10_000,
        "initial_lookback": 150,
        "assets": {
            "SOL": AssetSpec("SOL", 9),
            "USDC": AssetSpec("USDC", 6, "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"),
        },
        "treasury_address": "TreasuryXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX",
        "sponsor_encrypted_key": "sponsor-blob",
    }
    values.update(overrides)
    return ChainConfig(**values)  # type: ignore[arg-type]


def base_config(**overrides: object) -> ChainConfig:
    values: dict[str, object] = {
        "name": "base",
        "kind": ChainKind.EVM,
        "rpc_url": "https://mainnet.base.org",
        "chain_id": 8453,
        "required_confirmations": 12,
        "poll_interval_seconds": 0.01,
        "max_blocks_per_tick": 100,
        "initial_lookback": 100,
        "assets": {
            "ETH": AssetSpec("ETH", 18),
            "USDC": AssetSpec("USDC", 6, "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"),
        },
        "treasury_address": "0x000000000000000000000000000000000000dEaD",
        "sponsor_encrypted_key": "sponsor-blob",
    }
    values.update(overrides)
    return ChainConfig(**values)  # type: ignore[arg-type]


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> DepositLedger:
    return DepositLedger(session_factory)


@pytest.fixture
def registry(session_factory: async_sessionmaker[AsyncSession]) -> AddressRegistry:
    return AddressRegistry(session_factory)


@pytest.fixture
def adapter() -> MagicMock:
    adapter = MagicMock()
    adapter.load_signers = MagicMock(return_value=SignerPair(owner="owner", fee_payer="sponsor"))
    adapter.execute = AsyncMock(return_value=SweepOutcome(tx_id="sweep-tx", sponsor_spent=5000))
    return adapter


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def engine(
    ledger: DepositLedger,
    registry: AddressRegistry,
    adapter: MagicMock,
    audit: RecordingAuditSink,
) -> SweepEngine:
    return SweepEngine(
        ledger,
        registry,
        {"solana": adapter, "base": adapter},
        thresholds=THRESHOLDS,
        audit=audit,
    )


async def add_address(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    chain: str,
    asset: str,
    address: str,
) -> DepositAddressDTO:
    async with session_factory() as session:
        dto = await DepositAddressRepository(session).insert(
            DepositAddressDTO(
                user_id="user-1",
                chain=chain,
                asset=asset,
                address=address,
                encrypted_private_key="owner-blob",
            )
        )
        await session.commit()
    return dto


def make_watcher(
    config: ChainConfig,
    client: FakeChainClient,
    registry: AddressRegistry,
    ledger: DepositLedger,
    engine: SweepEngine,
    audit: RecordingAuditSink,
    **kwargs: object,
) -> ChainWatcher:
    return ChainWatcher(config, client, registry, ledger, engine, audit=audit, **kwargs)  # type: ignore[arg-type]


class TestScanWindow:
    def test_first_tick_uses_lookback(self, registry, ledger, engine, audit) -> None:
        watcher = make_watcher(base_config(), FakeChainClient(505), registry, ledger, engine, audit)
        assert watcher.scan_window(None, 505) == (406, 505)

    def test_window_bounded_by_max_blocks(self, registry, ledger, engine, audit) -> None:
        watcher = make_watcher(base_config(), FakeChainClient(1000), registry, ledger, engine, audit)
        assert watcher.scan_window(500, 1000) == (501, 600)

    def test_empty_window_when_caught_up(self, registry, ledger, engine, audit) -> None:
        watcher = make_watcher(base_config(), FakeChainClient(505), registry, ledger, engine, audit)
        start, end = watcher.scan_window(505, 505)
        assert start > end


class TestTick:
    @pytest.mark.asyncio
    async def test_solana_usdc_deposit_confirmed_and_swept(
        self, session_factory, registry, ledger, engine, adapter, audit
    ) -> None:
        await add_address(session_factory, chain="solana", asset="USDC", address=SOLANA_ADDRESS)
        client = FakeChainClient(1000)
        client.add(SOLANA_ADDRESS, "USDC", ObservedTransfer("sig-1", Decimal("50"), "sender", 1000))
        watcher = make_watcher(solana_config(), client, registry, ledger, engine, audit)

        assert await watcher.tick(None) == 1000
        await engine.drain()

        deposits = await ledger.list_unswept("solana") + await ledger.list_confirming("solana")
        assert deposits == []
        adapter.execute.assert_awaited_once()
        swept_deposit = adapter.execute.await_args.args[0]
        assert swept_deposit.amount == Decimal("50")
        assert swept_deposit.confirmations == 1

        stored = await ledger.get(swept_deposit.id)
        assert stored is not None
        assert stored.status == DepositStatus.SWEPT
        assert stored.sweep_tx_id == "sweep-tx"
        types = [e.event_type for e in audit.events]
        assert types == [AuditEventType.DEPOSIT_CONFIRMED, AuditEventType.SWEEP_SUCCEEDED]
        assert audit.events[0].payload["latency_seconds"] is not None

    @pytest.mark.asyncio
    async def test_evm_deposit_confirms_across_ticks_and_sweeps_once(
        self, session_factory, registry, ledger, engine, adapter, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        client = FakeChainClient(505)
        client.add(BASE_ADDRESS, "USDC", ObservedTransfer("0xdep", Decimal("25"), "0xsender", 500))
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        height = await watcher.tick(None)
        assert height == 505
        pending = await ledger.list_confirming("base")
        assert len(pending) == 1
        assert pending[0].confirmations == 6
        assert pending[0].status == DepositStatus.CONFIRMING
        adapter.execute.assert_not_awaited()

        client.height = 512
        height = await watcher.tick(height)
        assert height == 512
        await engine.drain()
        stored = await ledger.get(pending[0].id)
        assert stored is not None
        assert stored.confirmations == 13
        assert stored.status == DepositStatus.SWEPT

        client.height = 520
        await watcher.tick(height)
        await engine.drain()
        assert adapter.execute.await_count == 1
        assert watcher.stats.deposits_confirmed == 1

    @pytest.mark.asyncio
    async def test_dust_deposit_is_confirmed_but_not_swept(
        self, session_factory, registry, ledger, engine, adapter, audit
    ) -> None:
        await add_address(session_factory, chain="solana", asset="USDC", address=SOLANA_ADDRESS)
        client = FakeChainClient(1000)
        client.add(SOLANA_ADDRESS, "USDC", ObservedTransfer("sig-dust", Decimal("0.5"), "sender", 999))
        watcher = make_watcher(solana_config(), client, registry, ledger, engine, audit)

        await watcher.tick(None)
        await engine.drain()

        unswept = await ledger.list_unswept("solana")
        assert [d.amount for d in unswept] == [Decimal("0.5")]
        adapter.execute.assert_not_awaited()
        assert watcher.stats.sweeps_scheduled == 0

    @pytest.mark.asyncio
    async def test_sponsor_empty_then_retry_succeeds(
        self, session_factory, registry, ledger, engine, adapter, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="ETH", address=BASE_ADDRESS)
        client = FakeChainClient(600)
        client.add(BASE_ADDRESS, "ETH", ObservedTransfer("0xeth", Decimal("1"), "0xsender", 580))
        adapter.execute.side_effect = InsufficientSponsorBalanceError("sponsor empty", required=1, available=0)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit, retry_interval_seconds=0.01)

        height = await watcher.tick(None)
        await engine.drain()
        unswept = await ledger.list_unswept("base")
        assert len(unswept) == 1
        assert AuditEventType.SPONSOR_BALANCE_LOW in [e.event_type for e in audit.events]

        adapter.execute.side_effect = None
        await asyncio.sleep(0.02)
        await watcher.tick(height)
        await engine.drain()

        stored = await ledger.get(unswept[0].id)
        assert stored is not None
        assert stored.status == DepositStatus.SWEPT

    @pytest.mark.asyncio
    async def test_repeated_ticks_do_not_duplicate(
        self, session_factory, registry, ledger, engine, adapter, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        client = FakeChainClient(505)
        client.add(BASE_ADDRESS, "USDC", ObservedTransfer("0xdep", Decimal("25"), "0xsender", 500))
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit, retry_interval_seconds=0)

        # Re-scanning the same window (e.g. after a restart without a cursor).
        await watcher.tick(None)
        await watcher.tick(None)

        assert len(await ledger.list_confirming("base")) == 1
        assert watcher.stats.deposits_recorded == 1

    @pytest.mark.asyncio
    async def test_failed_address_gets_backlog_and_cursor_advances(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        other = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
        await add_address(session_factory, chain="base", asset="ETH", address=other)
        client = FakeChainClient(505)
        client.add(BASE_ADDRESS, "USDC", ObservedTransfer("0xdep", Decimal("25"), "0xsender", 500))
        client.failing.add(other)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        assert await watcher.tick(400) == 500
        # Healthy addresses are still recorded.
        assert len(await ledger.list_confirming("base")) == 1
        assert watcher.stats.errors == 1
        assert watcher.backlog() == {(other, "ETH"): 401}
        assert watcher.checkpoint(500) == 400

    @pytest.mark.asyncio
    async def test_permanently_failing_address_does_not_block_later_deposits(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        other = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
        await add_address(session_factory, chain="base", asset="ETH", address=other)
        client = FakeChainClient(1250)
        # Below the sweep threshold, so it stays in the ledger as unswept.
        client.add(BASE_ADDRESS, "USDC", ObservedTransfer("0xlate", Decimal("5"), "0xsender", 900))
        client.failing.add(other)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        height: int | None = 400
        for _ in range(6):
            height = await watcher.tick(height)

        assert height == 1000
        deposits = await ledger.list_confirming("base") + await ledger.list_unswept("base")
        assert [d.tx_id for d in deposits] == ["0xlate"]
        failing_calls = [c for c in client.calls if c[0] == other]
        assert {(c[2], c[3]) for c in failing_calls} == {(401, 500)}
        assert watcher.backlog() == {(other, "ETH"): 401}

    @pytest.mark.asyncio
    async def test_recovered_address_rescans_its_backlog(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        other = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
        await add_address(session_factory, chain="base", asset="ETH", address=other)
        client = FakeChainClient(700)
        client.add(other, "ETH", ObservedTransfer("0xmissed", Decimal("0.001"), "0xsender", 450))
        client.failing.add(other)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        height = await watcher.tick(400)
        height = await watcher.tick(height)
        assert height == 600
        assert await ledger.list_confirming("base") == []

        client.failing.clear()
        height = await watcher.tick(height)
        assert height == 700

        deposits = await ledger.list_confirming("base") + await ledger.list_unswept("base")
        assert [d.tx_id for d in deposits] == ["0xmissed"]
        assert (other, "ETH", 401, 500) in client.calls
        assert watcher.backlog() == {(other, "ETH"): 501}
        assert watcher.checkpoint(height) == 500

        await watcher.tick(height)
        await watcher.tick(height)
        assert watcher.backlog() == {}
        assert watcher.checkpoint(height) == height

    @pytest.mark.asyncio
    async def test_transport_error_on_one_address_does_not_abort_tick(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        other = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
        await add_address(session_factory, chain="base", asset="ETH", address=other)
        client = FakeChainClient(505)
        client.add(BASE_ADDRESS, "USDC", ObservedTransfer("0xdep", Decimal("25"), "0xsender", 500))
        client.errors[other] = TimeoutError("read timeout")
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        assert await watcher.tick(400) == 500

        pending = await ledger.list_confirming("base")
        assert [d.tx_id for d in pending] == ["0xdep"]
        assert watcher.stats.errors == 1
        assert watcher.stats.last_error == "read timeout"
        assert watcher.backlog() == {(other, "ETH"): 401}

    @pytest.mark.asyncio
    async def test_height_failure_skips_tick(self, registry, ledger, engine, audit) -> None:
        client = FakeChainClient(505)
        client.current_height = AsyncMock(side_effect=RPCError("rpc down"))  # type: ignore[method-assign]
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        assert await watcher.tick(300) == 300
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_only_address_asset_is_checked(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        await add_address(session_factory, chain="base", asset="DAI", address=BASE_ADDRESS)
        client = FakeChainClient(505)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit)

        assert await watcher.tick(500) == 505
        assert client.calls == [(BASE_ADDRESS, "USDC", 501, 505)]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_run_loop_persists_cursor_and_stops(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        client = FakeChainClient(505)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit, session_factory=session_factory)

        await watcher.start()
        await watcher.start()
        assert watcher.state == WatcherState.RUNNING
        await asyncio.sleep(0.05)
        watcher.stop()
        await watcher.wait_stopped()

        assert watcher.state == WatcherState.STOPPED
        assert watcher.stats.ticks >= 1
        async with session_factory() as session:
            assert await WatcherCursorRepository(session).get("base") == 505

    @pytest.mark.asyncio
    async def test_resumes_from_persisted_cursor(
        self, session_factory, registry, ledger, engine, audit
    ) -> None:
        async with session_factory() as session:
            await WatcherCursorRepository(session).set("base", 480)
            await session.commit()
        await add_address(session_factory, chain="base", asset="USDC", address=BASE_ADDRESS)
        client = FakeChainClient(505)
        watcher = make_watcher(base_config(), client, registry, ledger, engine, audit, session_factory=session_factory)

        await watcher.start()
        await asyncio.sleep(0.05)
        watcher.stop()
        await watcher.wait_stopped()

        assert client.calls[0] == (BASE_ADDRESS, "USDC", 481, 505)
