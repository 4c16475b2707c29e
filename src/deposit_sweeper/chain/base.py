"""Chain client interface, errors and shared RPC plumbing."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable

from deposit_sweeper.chain.models import AssetSpec, ObservedTransfer, TransactionConfirmation

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
PRIMARY_RECOVERY_INTERVAL_SECONDS = 60.0


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


class TransactionFailedError(ChainClientError):
    """Raised when a submitted transaction reverts or is not confirmed in time."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass
class EndpointHealth:
    """Tracks whether the primary RPC endpoint should be tried."""

    healthy: bool = True
    last_check: float = 0.0
    recovery_interval: float = PRIMARY_RECOVERY_INTERVAL_SECONDS

    def should_try_primary(self) -> bool:
        if self.healthy:
            return True
        now = time.monotonic()
        if now - self.last_check > self.recovery_interval:
            self.last_check = now
            return True
        return False

    def mark_unhealthy(self) -> None:
        self.healthy = False
        self.last_check = time.monotonic()


@runtime_checkable
class ChainClient(Protocol):
    """Uniform read/submit interface over one chain family."""

    async def current_height(self) -> int:
        """Latest block number or slot."""
        ...

    async def transfers_to(
        self,
        address: str,
        asset: AssetSpec,
        from_height: int,
        to_height: int,
    ) -> list[ObservedTransfer]:
        """Inbound transfers of ``asset`` to ``address`` within an inclusive height window."""
        ...

    async def native_balance(self, address: str) -> int:
        """Native balance in base units (wei / lamports)."""
        ...

    async def token_balance(self, address: str, asset: AssetSpec) -> Decimal:
        """Token balance in display units."""
        ...

    async def submit(self, raw_tx: bytes) -> TransactionConfirmation:
        """Broadcast a signed transaction and wait for confirmation."""
        ...

    async def aclose(self) -> None:
        ...
