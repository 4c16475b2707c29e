"""Tests for the sweep engine."""

from __future__ import annotations

import asyncio
import threading
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deposit_sweeper.chain.base import TransactionFailedError
from deposit_sweeper.chain.models import SignerPair
from deposit_sweeper.ledger import DepositLedger, DepositNotFoundError, DepositStatus, InvalidStateError, ObservedDeposit
from deposit_sweeper.registry import AddressRegistry
from deposit_sweeper.storage.repos import DepositAddressDTO, DepositAddressRepository
from deposit_sweeper.sweeper import (
    AuditEvent,
    AuditEventType,
    InsufficientSponsorBalanceError,
    SweepConfigurationError,
    SweepEngine,
    SweepFailedError,
    SweepOutcome,
)
from deposit_sweeper.vault.keys import KeyDecryptionError

THRESHOLDS = {"USDC": Decimal("10"), "ETH": Decimal("0.01")}


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def types(self) -> list[AuditEventType]:
        return [e.event_type for e in self.events]


@pytest.fixture
async def address(session_factory: async_sessionmaker[AsyncSession]) -> DepositAddressDTO:
    async with session_factory() as session:
        dto = await DepositAddressRepository(session).insert(
            DepositAddressDTO(
                user_id="user-1",
                chain="base",
                asset="USDC",
                address="0x742d35cc6634c0532925a3b844bc9e7595f5eae2",
                encrypted_private_key="blob",
            )
        )
        await session.commit()
    return dto


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
    adapter.execute = AsyncMock(return_value=SweepOutcome(tx_id="0xsweep", sponsor_spent=42_000))
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
    return SweepEngine(ledger, registry, {"base": adapter}, thresholds=THRESHOLDS, audit=audit)


async def record(
    ledger: DepositLedger,
    address: DepositAddressDTO,
    *,
    amount: str = "50",
    confirmations: int = 12,
    tx_id: str = "0x01",
    asset: str = "USDC",
):
    assert address.id is not None
    result = await ledger.record_or_update(
        ObservedDeposit(
            user_id=address.user_id,
            deposit_address_id=address.id,
            chain="base",
            asset=asset,
            tx_id=tx_id,
            amount=Decimal(amount),
            from_address=None,
            block_number=500,
            confirmations=confirmations,
            required_confirmations=12,
        )
    )
    return result.deposit


class TestShouldSweep:
    @pytest.mark.asyncio
    async def test_threshold_gating(self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO) -> None:
        assert engine.should_sweep(await record(ledger, address, amount="50", tx_id="0x01")) is True
        assert engine.should_sweep(await record(ledger, address, amount="0.5", tx_id="0x02")) is False

    @pytest.mark.asyncio
    async def test_amount_equal_to_threshold(
        self, ledger: DepositLedger, registry: AddressRegistry, adapter: MagicMock, address: DepositAddressDTO
    ) -> None:
        engine = SweepEngine(ledger, registry, {"base": adapter}, thresholds={"USDC": Decimal("100")})
        assert engine.should_sweep(await record(ledger, address, amount="100")) is True

    @pytest.mark.asyncio
    async def test_requires_confirmed(self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO) -> None:
        assert engine.should_sweep(await record(ledger, address, confirmations=3)) is False

    @pytest.mark.asyncio
    async def test_asset_without_threshold(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO
    ) -> None:
        assert engine.should_sweep(await record(ledger, address, asset="DAI")) is False

    def test_threshold_lookup_is_case_insensitive(self, engine: SweepEngine) -> None:
        assert engine.threshold_for("usdc") == Decimal("10")
        assert engine.threshold_for("SOL") is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_success_marks_swept_and_audits(
        self,
        engine: SweepEngine,
        ledger: DepositLedger,
        address: DepositAddressDTO,
        adapter: MagicMock,
        audit: RecordingAuditSink,
    ) -> None:
        deposit = await record(ledger, address)
        swept = await engine.sweep(deposit.id)

        assert swept.status == DepositStatus.SWEPT
        assert swept.sweep_tx_id == "0xsweep"
        adapter.load_signers.assert_called_once()
        assert adapter.load_signers.call_args.args[0].id == address.id
        assert audit.types() == [AuditEventType.SWEEP_SUCCEEDED]
        assert audit.events[0].payload["sponsor_spent"] == 42_000
        assert not engine.is_in_flight(deposit.id)

    @pytest.mark.asyncio
    async def test_rejects_confirming(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        deposit = await record(ledger, address, confirmations=2)

        with pytest.raises(InvalidStateError):
            await engine.sweep(deposit.id)
        adapter.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_sweep_does_not_execute(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        deposit = await record(ledger, address)
        await engine.sweep(deposit.id)

        with pytest.raises(InvalidStateError):
            await engine.sweep(deposit.id)
        assert adapter.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_deposit(self, engine: SweepEngine) -> None:
        with pytest.raises(DepositNotFoundError):
            await engine.sweep(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_missing_adapter(
        self, ledger: DepositLedger, registry: AddressRegistry, address: DepositAddressDTO
    ) -> None:
        engine = SweepEngine(ledger, registry, {}, thresholds=THRESHOLDS)
        deposit = await record(ledger, address)

        with pytest.raises(SweepConfigurationError):
            await engine.sweep(deposit.id)
        stored = await ledger.get(deposit.id)
        assert stored is not None
        assert stored.status == DepositStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_sponsor_empty_leaves_deposit_confirmed(
        self,
        engine: SweepEngine,
        ledger: DepositLedger,
        address: DepositAddressDTO,
        adapter: MagicMock,
        audit: RecordingAuditSink,
    ) -> None:
        adapter.execute.side_effect = InsufficientSponsorBalanceError("sponsor empty", required=100, available=0)
        deposit = await record(ledger, address)

        with pytest.raises(InsufficientSponsorBalanceError):
            await engine.sweep(deposit.id)

        stored = await ledger.get(deposit.id)
        assert stored is not None
        assert stored.status == DepositStatus.CONFIRMED
        assert audit.types() == [AuditEventType.SWEEP_FAILED, AuditEventType.SPONSOR_BALANCE_LOW]
        assert audit.events[1].payload["available"] == 0

        adapter.execute.side_effect = None
        swept = await engine.sweep(deposit.id)
        assert swept.status == DepositStatus.SWEPT

    @pytest.mark.asyncio
    async def test_chain_error_wrapped(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        adapter.execute.side_effect = TransactionFailedError("reverted")
        deposit = await record(ledger, address)

        with pytest.raises(SweepFailedError):
            await engine.sweep(deposit.id)
        assert not engine.is_in_flight(deposit.id)

    @pytest.mark.asyncio
    async def test_key_error_wrapped(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        adapter.load_signers.side_effect = KeyDecryptionError("bad blob")
        deposit = await record(ledger, address)

        with pytest.raises(SweepFailedError):
            await engine.sweep(deposit.id)
        adapter.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signers_loaded_off_event_loop_thread(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        loop_thread = threading.get_ident()
        seen: list[int] = []

        def load_signers(_address: DepositAddressDTO) -> SignerPair:
            seen.append(threading.get_ident())
            return SignerPair(owner="owner", fee_payer="sponsor")

        adapter.load_signers.side_effect = load_signers
        deposit = await record(ledger, address)

        swept = await engine.sweep(deposit.id)

        assert swept.status == DepositStatus.SWEPT
        assert len(seen) == 1
        assert seen[0] != loop_thread


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_is_idempotent_while_in_flight(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        deposit = await record(ledger, address)

        first = engine.schedule(deposit)
        second = engine.schedule(deposit)
        assert first is not None
        assert second is None
        assert engine.is_in_flight(deposit.id)

        await engine.drain()
        assert adapter.execute.await_count == 1
        assert not engine.is_in_flight(deposit.id)

    @pytest.mark.asyncio
    async def test_scheduled_failure_is_logged_not_raised(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        adapter.execute.side_effect = InsufficientSponsorBalanceError("sponsor empty")
        deposit = await record(ledger, address)

        task = engine.schedule(deposit)
        assert task is not None
        await task
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_sweeps_serialized_per_chain(
        self, engine: SweepEngine, ledger: DepositLedger, address: DepositAddressDTO, adapter: MagicMock
    ) -> None:
        running = 0
        peak = 0

        async def slow_execute(*_args: object) -> SweepOutcome:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return SweepOutcome(tx_id=f"0xsweep{uuid.uuid4().hex[:6]}")

        adapter.execute.side_effect = slow_execute
        deposits = [await record(ledger, address, tx_id=f"0x0{i}") for i in range(3)]
        for deposit in deposits:
            engine.schedule(deposit)
        await engine.drain()

        assert peak == 1
        assert adapter.execute.await_count == 3


class TestDistributedLock:
    @pytest.mark.asyncio
    async def test_uses_redis_lock(
        self, ledger: DepositLedger, registry: AddressRegistry, adapter: MagicMock, address: DepositAddressDTO
    ) -> None:
        lock = AsyncMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock(side_effect=LockError("expired"))
        redis = MagicMock()
        redis.lock = MagicMock(return_value=lock)
        engine = SweepEngine(ledger, registry, {"base": adapter}, thresholds=THRESHOLDS, redis=redis)

        deposit = await record(ledger, address)
        swept = await engine.sweep(deposit.id)

        assert swept.status == DepositStatus.SWEPT
        assert redis.lock.call_args.args[0] == "deposit-sweeper:sweep-lock:base"
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_timeout_fails_sweep(
        self, ledger: DepositLedger, registry: AddressRegistry, adapter: MagicMock, address: DepositAddressDTO
    ) -> None:
        lock = AsyncMock()
        lock.acquire = AsyncMock(return_value=False)
        redis = MagicMock()
        redis.lock = MagicMock(return_value=lock)
        engine = SweepEngine(ledger, registry, {"base": adapter}, thresholds=THRESHOLDS, redis=redis)

        deposit = await record(ledger, address)
        with pytest.raises(SweepFailedError):
            await engine.sweep(deposit.id)
        adapter.execute.assert_not_awaited()
