"""EVM chain client with failover, rate limiting and block caching.

This module provides the EVM (Base) implementation of the chain client:
- Inbound native transfers by scanning block transactions
- Inbound ERC20 transfers via ``Transfer`` log filtering
- Balance, gas and nonce queries
- Signing and submission of sweep transactions
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from deposit_sweeper.chain.base import (
    DEFAULT_MAX_REQUESTS_PER_SECOND,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    EndpointHealth,
    RateLimiter,
    RPCError,
    TransactionFailedError,
)
from deposit_sweeper.chain.models import AssetSpec, ObservedTransfer, TransactionConfirmation

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Errors worth retrying; web3 lets transport failures escape unwrapped.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (Web3Exception, aiohttp.ClientError, TimeoutError)

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_LOGS_CHUNK_SIZE_BLOCKS = 2_000
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120.0
NATIVE_TRANSFER_GAS = 21_000
BLOCK_MEMO_SIZE = 512

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

# (to, from, value_wei, tx_hash)
NativeTransfer = tuple[str, str, int, str]


def _pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _topic_to_address(topic: Any) -> str:
    hexed = topic.hex() if hasattr(topic, "hex") else str(topic)
    if hexed.startswith("0x"):
        hexed = hexed[2:]
    return ("0x" + hexed[-40:]).lower()


def _to_hex(value: Any) -> str:
    hexed = value.hex() if hasattr(value, "hex") else str(value)
    return hexed if hexed.startswith("0x") else "0x" + hexed


def _data_to_int(data: Any) -> int:
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(data, "big") if data else 0
    hexed = _to_hex(data)
    return int(hexed, 16) if hexed != "0x" else 0


# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = _to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))


class EvmChainClient:
    """EVM chain client with caching and rate limiting.

    Example:
        ```python
        client = EvmChainClient(
            "base",
            rpc_url="https://mainnet.base.org",
            chain_id=8453,
        )
        height = await client.current_height()
        transfers = await client.transfers_to(address, usdc, height - 99, height)
        ```
    """

    def __init__(
        self,
        chain: str,
        *,
        rpc_url: str,
        chain_id: int,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        logs_chunk_size_blocks: int = DEFAULT_LOGS_CHUNK_SIZE_BLOCKS,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the EVM client.

        Args:
            chain: Chain name used in logs and cache keys.
            rpc_url: Primary RPC endpoint URL.
            chain_id: EIP-155 chain id used when signing.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block scans.
            cache_ttl_seconds: Cache TTL in seconds.
            logs_chunk_size_blocks: Maximum block span per ``eth_getLogs`` call.
            receipt_timeout_seconds: How long to wait for a transaction receipt.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts on failure.
            retry_delay_seconds: Initial delay between retries.
        """
        self.chain = chain
        self.chain_id = chain_id
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._chunk = logs_chunk_size_blocks
        self._receipt_timeout = receipt_timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._health = EndpointHealth()
        self._block_memo: OrderedDict[int, list[NativeTransfer]] = OrderedDict()
        self._cache_prefix = f"evm:{chain}:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _execute_with_retry(
        self,
        func_name: str,
        *args: Any,
        retries: int | None = None,
        **kwargs: Any,
    ) -> Any:
        """Execute an ``w3.eth`` call with retry and failover logic.

        Args:
            func_name: Name of the ``web3.eth`` method or async property.
            *args: Positional arguments for the method.
            retries: Override of the retry count for non-idempotent calls.
            **kwargs: Keyword arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()
        attempts = retries or self._max_retries

        last_error: Exception | None = None
        if self._health.should_try_primary():
            result, last_error = await self._try_endpoint(
                self._w3, "Primary", func_name, attempts, args, kwargs
            )
            if last_error is None:
                self._health.healthy = True
                return result
            self._health.mark_unhealthy()

        if self._w3_fallback:
            result, error = await self._try_endpoint(
                self._w3_fallback, "Fallback", func_name, attempts, args, kwargs
            )
            if error is None:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = error

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def _try_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        attempts: int,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> tuple[Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                attr = getattr(w3.eth, func_name)
                # Async properties (block_number, gas_price) resolve to awaitables.
                pending: Awaitable[Any] = attr(*args, **kwargs) if callable(attr) else attr
                return await pending, None
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed on %s (attempt %d/%d): %s",
                    label,
                    func_name,
                    self.chain,
                    attempt + 1,
                    attempts,
                    e,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return None, last_error

    async def current_height(self) -> int:
        return int(await self._execute_with_retry("block_number"))

    async def transfers_to(
        self,
        address: str,
        asset: AssetSpec,
        from_height: int,
        to_height: int,
    ) -> list[ObservedTransfer]:
        """Inbound transfers of ``asset`` to ``address`` in ``[from_height, to_height]``."""
        if to_height < from_height:
            return []
        if asset.is_native:
            return await self._native_transfers_to(address, asset, from_height, to_height)
        return await self._token_transfers_to(address, asset, from_height, to_height)

    async def _token_transfers_to(
        self,
        address: str,
        asset: AssetSpec,
        from_height: int,
        to_height: int,
    ) -> list[ObservedTransfer]:
        totals: dict[str, int] = {}
        meta: dict[str, tuple[str, int]] = {}
        for from_block in range(from_height, to_height + 1, self._chunk):
            to_block = min(to_height, from_block + self._chunk - 1)
            logs = await self.get_logs(
                {
                    "address": AsyncWeb3.to_checksum_address(asset.contract_address),
                    "topics": [
                        TRANSFER_EVENT_SIGNATURE,
                        None,
                        _pad_topic_address(address),
                    ],
                    "fromBlock": from_block,
                    "toBlock": to_block,
                }
            )
            for log in logs:
                tx_hash = _to_hex(log["transactionHash"]).lower()
                # A transaction may carry several Transfer logs to the same address.
                totals[tx_hash] = totals.get(tx_hash, 0) + _data_to_int(log["data"])
                if tx_hash not in meta:
                    meta[tx_hash] = (_topic_to_address(log["topics"][1]), int(log["blockNumber"]))

        return [
            ObservedTransfer(
                tx_id=tx_hash,
                amount=asset.to_display(units),
                from_address=meta[tx_hash][0],
                height=meta[tx_hash][1],
            )
            for tx_hash, units in totals.items()
            if units > 0
        ]

    async def _native_transfers_to(
        self,
        address: str,
        asset: AssetSpec,
        from_height: int,
        to_height: int,
    ) -> list[ObservedTransfer]:
        target = address.lower()
        found: list[ObservedTransfer] = []
        for height in range(from_height, to_height + 1):
            for to_addr, from_addr, value, tx_hash in await self._native_transfers_in_block(height):
                if to_addr == target:
                    found.append(
                        ObservedTransfer(
                            tx_id=tx_hash,
                            amount=asset.to_display(value),
                            from_address=from_addr,
                            height=height,
                        )
                    )
        return found

    async def _native_transfers_in_block(self, height: int) -> list[NativeTransfer]:
        """Value-carrying transactions of a block, memoized and cached in Redis."""
        memo = self._block_memo.get(height)
        if memo is not None:
            self._block_memo.move_to_end(height)
            return memo

        cache_key = f"{self._cache_prefix}native:{height}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            transfers = [tuple(row) for row in json.loads(cached)]
        else:
            block = await self._execute_with_retry("get_block", height, full_transactions=True)
            transfers = []
            for tx in block.get("transactions", []):
                to_addr = tx.get("to")
                value = int(tx.get("value") or 0)
                if not to_addr or value <= 0:
                    continue
                transfers.append(
                    (str(to_addr).lower(), str(tx.get("from", "")).lower(), value, _to_hex(tx["hash"]).lower())
                )
            await self._set_cached(cache_key, json.dumps(transfers))

        result: list[NativeTransfer] = [(str(t[0]), str(t[1]), int(t[2]), str(t[3])) for t in transfers]
        self._block_memo[height] = result
        while len(self._block_memo) > BLOCK_MEMO_SIZE:
            self._block_memo.popitem(last=False)
        return result

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs`` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def native_balance(self, address: str) -> int:
        balance = await self._execute_with_retry("get_balance", AsyncWeb3.to_checksum_address(address))
        return int(balance)

    async def token_balance(self, address: str, asset: AssetSpec) -> Decimal:
        if asset.is_native:
            return asset.to_display(await self.native_balance(address))
        await self._rate_limiter.acquire()
        try:
            w3 = self._w3 if self._health.healthy else (self._w3_fallback or self._w3)
            contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(asset.contract_address), abi=ERC20_ABI)
            units = await contract.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()
        except RETRYABLE_ERRORS as e:
            raise RPCError(f"Failed to get token balance: {e}") from e
        return asset.to_display(int(units))

    async def gas_price(self) -> int:
        return int(await self._execute_with_retry("gas_price"))

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return int(await self._execute_with_retry("estimate_gas", tx))

    async def nonce(self, address: str) -> int:
        count = await self._execute_with_retry(
            "get_transaction_count",
            AsyncWeb3.to_checksum_address(address),
            "pending",
        )
        return int(count)

    def token_transfer_data(self, asset: AssetSpec, to_address: str, units: int) -> str:
        """ABI-encoded calldata of ``transfer(to_address, units)``."""
        contract = self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(asset.contract_address), abi=ERC20_ABI)
        return contract.encode_abi("transfer", args=[AsyncWeb3.to_checksum_address(to_address), units])

    async def sign_and_submit(self, account: LocalAccount, tx: dict[str, Any]) -> TransactionConfirmation:
        """Fill in nonce/chain id/gas price, sign with ``account`` and submit.

        Args:
            account: Local signing account; its key never leaves this call.
            tx: Transaction fields (``to``, ``value``, ``data``, ``gas``...).

        Returns:
            Confirmation including the fee paid in wei.
        """
        tx = dict(tx)
        tx.setdefault("from", account.address)
        tx.setdefault("chainId", self.chain_id)
        if "gasPrice" not in tx and "maxFeePerGas" not in tx:
            tx["gasPrice"] = await self.gas_price()
        if "nonce" not in tx:
            tx["nonce"] = await self.nonce(account.address)
        if "gas" not in tx:
            tx["gas"] = await self.estimate_gas(tx)
        tx.pop("from")

        signed = account.sign_transaction(tx)
        return await self.submit(bytes(signed.raw_transaction))

    async def submit(self, raw_tx: bytes) -> TransactionConfirmation:
        """Broadcast a signed transaction and wait for its receipt.

        Raises:
            TransactionFailedError: If the transaction reverts or no receipt
                arrives before the timeout.
        """
        tx_hash = await self._execute_with_retry("send_raw_transaction", raw_tx, retries=1)
        tx_id = _to_hex(tx_hash).lower()
        logger.info("Submitted transaction %s on %s", tx_id, self.chain)
        try:
            receipt = await self._wait_for_receipt(tx_hash)
        except TimeExhausted as e:
            raise TransactionFailedError(f"No receipt for {tx_id} within {self._receipt_timeout}s") from e
        if int(receipt.get("status", 0)) != 1:
            raise TransactionFailedError(f"Transaction {tx_id} reverted")

        gas_used = int(receipt.get("gasUsed", 0))
        gas_price = int(receipt.get("effectiveGasPrice", 0))
        return TransactionConfirmation(
            tx_id=tx_id,
            height=int(receipt["blockNumber"]),
            fee=gas_used * gas_price,
        )

    async def _wait_for_receipt(self, tx_hash: Any) -> dict[str, Any]:
        w3 = self._w3 if self._health.healthy else (self._w3_fallback or self._w3)
        wait: Callable[..., Awaitable[Any]] = w3.eth.wait_for_transaction_receipt
        receipt = await wait(tx_hash, timeout=self._receipt_timeout)
        return dict(receipt)

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
