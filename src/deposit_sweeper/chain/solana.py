"""Solana chain client built on solana-py's async RPC client.

Inbound transfers are discovered by listing recent signatures for a deposit
address and diffing the pre/post balances of each transaction: lamport
balances for SOL, token balances owned by the address for SPL tokens.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException, TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.instructions import get_associated_token_address

from deposit_sweeper.chain.base import (
    DEFAULT_MAX_REQUESTS_PER_SECOND,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    EndpointHealth,
    ChainClientError,
    RateLimiter,
    RPCError,
    TransactionFailedError,
)
from deposit_sweeper.chain.models import AssetSpec, ObservedTransfer, TransactionConfirmation

if TYPE_CHECKING:
    from solders.hash import Hash
    from solders.message import Message

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_SIGNATURES_LIMIT = 10
DEFAULT_CONFIRM_TIMEOUT_SECONDS = 60.0
TX_MEMO_SIZE = 1024

# Errors worth retrying; transport failures can escape solana-py unwrapped.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (SolanaRpcException, RPCException, httpx.HTTPError, TimeoutError)


def _account_key(entry: Any) -> str:
    # jsonParsed returns {"pubkey": ..., "signer": ...}; legacy encodings return plain strings.
    if isinstance(entry, dict):
        return str(entry.get("pubkey", ""))
    return str(entry)


def _token_units(balances: list[dict[str, Any]], *, owner: str, mint: str) -> dict[int, int]:
    units: dict[int, int] = {}
    for bal in balances:
        if bal.get("mint") != mint or bal.get("owner") != owner:
            continue
        amount = (bal.get("uiTokenAmount") or {}).get("amount") or "0"
        units[int(bal["accountIndex"])] = int(amount)
    return units


def parse_inbound_transfer(
    tx: dict[str, Any] | None,
    address: str,
    asset: AssetSpec,
) -> tuple[Decimal, str | None] | None:
    """Extract the amount of ``asset`` received by ``address`` in a transaction.

    Args:
        tx: ``getTransaction`` result (``jsonParsed`` encoding) as plain JSON.
        address: Deposit wallet address (base58).
        asset: Asset to look for; ``contract`` is the SPL mint for tokens.

    Returns:
        ``(amount_in_display_units, sender)`` when the address balance grew,
        otherwise ``None``. Failed transactions never count as deposits.
    """
    if not tx:
        return None
    meta = tx.get("meta")
    if not meta or meta.get("err") is not None:
        return None

    keys = [_account_key(k) for k in tx.get("transaction", {}).get("message", {}).get("accountKeys", [])]
    fee_payer = keys[0] if keys else None

    if asset.is_native:
        if address not in keys:
            return None
        idx = keys.index(address)
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        if idx >= len(pre) or idx >= len(post):
            return None
        received = int(post[idx]) - int(pre[idx])
        if received <= 0:
            return None
        return asset.to_display(received), (fee_payer if fee_payer != address else None)

    mint = asset.contract or ""
    pre_units = _token_units(meta.get("preTokenBalances") or [], owner=address, mint=mint)
    post_units = _token_units(meta.get("postTokenBalances") or [], owner=address, mint=mint)
    received = sum(post_units.values()) - sum(pre_units.values())
    if received <= 0:
        return None

    sender = fee_payer
    pre_all = {int(b["accountIndex"]): b for b in meta.get("preTokenBalances") or [] if b.get("mint") == mint}
    for b in meta.get("postTokenBalances") or []:
        before = pre_all.get(int(b["accountIndex"]))
        if before is None or b.get("owner") == address:
            continue
        if int((b.get("uiTokenAmount") or {}).get("amount") or 0) < int(
            (before.get("uiTokenAmount") or {}).get("amount") or 0
        ):
            sender = b.get("owner") or sender
            break
    return asset.to_display(received), sender


class SolanaChainClient:
    """Solana client with rate limiting, retry and failover.

    Example:
        ```python
        client = SolanaChainClient("solana", rpc_url="https://api.mainnet-beta.solana.com")
        slot = await client.current_height()
        transfers = await client.transfers_to(address, usdc, slot - 150, slot)
        ```
    """

    def __init__(
        self,
        chain: str,
        *,
        rpc_url: str,
        fallback_rpc_url: str | None = None,
        signatures_limit: int = DEFAULT_SIGNATURES_LIMIT,
        confirm_timeout_seconds: float = DEFAULT_CONFIRM_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        self.chain = chain
        self._signatures_limit = signatures_limit
        self._confirm_timeout = confirm_timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._client = AsyncClient(rpc_url, commitment=Confirmed)
        self._client_fallback: AsyncClient | None = None
        if fallback_rpc_url:
            self._client_fallback = AsyncClient(fallback_rpc_url, commitment=Confirmed)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._health = EndpointHealth()
        self._tx_memo: OrderedDict[str, dict[str, Any] | None] = OrderedDict()
        self._signature_memo: dict[str, tuple[int, list[Any]]] = {}

    async def _execute_with_retry(
        self,
        func_name: str,
        *args: Any,
        retries: int | None = None,
        **kwargs: Any,
    ) -> Any:
        """Execute an ``AsyncClient`` call with retry and failover logic.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()
        attempts = retries or self._max_retries

        last_error: Exception | None = None
        if self._health.should_try_primary():
            result, last_error = await self._try_endpoint(
                self._client, "Primary", func_name, attempts, args, kwargs
            )
            if last_error is None:
                self._health.healthy = True
                return result
            self._health.mark_unhealthy()

        if self._client_fallback:
            result, error = await self._try_endpoint(
                self._client_fallback, "Fallback", func_name, attempts, args, kwargs
            )
            if error is None:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = error

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def _try_endpoint(
        self,
        client: AsyncClient,
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
                return await getattr(client, func_name)(*args, **kwargs), None
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
        resp = await self._execute_with_retry("get_slot", commitment=Confirmed)
        return int(resp.value)

    async def transfers_to(
        self,
        address: str,
        asset: AssetSpec,
        from_height: int,
        to_height: int,
    ) -> list[ObservedTransfer]:
        """Inbound transfers of ``asset`` to ``address`` confirmed at or below ``to_height``.

        ``from_height`` only rejects an empty window. Signatures can become
        visible to the RPC node after the window covering their slot was
        scanned, so every recent signature up to ``to_height`` is returned and
        the ledger deduplicates the ones already recorded.
        """
        if to_height < from_height:
            return []

        found: list[ObservedTransfer] = []
        for status in await self._recent_signatures(address, to_height):
            slot = int(status.slot)
            if status.err is not None or slot > to_height:
                continue
            signature = str(status.signature)
            parsed = parse_inbound_transfer(await self.get_transaction(signature), address, asset)
            if parsed is None:
                continue
            amount, sender = parsed
            found.append(ObservedTransfer(tx_id=signature, amount=amount, from_address=sender, height=slot))
        return found

    async def _recent_signatures(self, address: str, to_height: int) -> list[Any]:
        # The same window is queried once per asset; reuse the listing.
        memo = self._signature_memo.get(address)
        if memo is not None and memo[0] == to_height:
            return memo[1]
        try:
            owner = Pubkey.from_string(address)
        except ValueError as e:
            raise ChainClientError(f"Invalid {self.chain} address {address!r}") from e
        resp = await self._execute_with_retry(
            "get_signatures_for_address",
            owner,
            limit=self._signatures_limit,
            commitment=Confirmed,
        )
        statuses = list(resp.value or [])
        self._signature_memo[address] = (to_height, statuses)
        return statuses

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Fetch a transaction in ``jsonParsed`` encoding as plain JSON."""
        if signature in self._tx_memo:
            self._tx_memo.move_to_end(signature)
            return self._tx_memo[signature]

        resp = await self._execute_with_retry(
            "get_transaction",
            Signature.from_string(signature),
            encoding="jsonParsed",
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        tx: dict[str, Any] | None = json.loads(resp.to_json()).get("result") if resp.value else None
        self._tx_memo[signature] = tx
        while len(self._tx_memo) > TX_MEMO_SIZE:
            self._tx_memo.popitem(last=False)
        return tx

    async def native_balance(self, address: str) -> int:
        resp = await self._execute_with_retry("get_balance", Pubkey.from_string(address), commitment=Confirmed)
        return int(resp.value)

    async def token_balance(self, address: str, asset: AssetSpec) -> Decimal:
        if asset.is_native:
            return asset.to_display(await self.native_balance(address))
        ata = get_associated_token_address(Pubkey.from_string(address), Pubkey.from_string(asset.contract_address))
        if not await self.account_exists(str(ata)):
            return Decimal(0)
        resp = await self._execute_with_retry("get_token_account_balance", ata, commitment=Confirmed)
        return asset.to_display(int(resp.value.amount))

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        """Lamports an account of ``size`` data bytes must hold to stay rent exempt."""
        resp = await self._execute_with_retry("get_minimum_balance_for_rent_exemption", size, commitment=Confirmed)
        return int(resp.value)

    async def account_exists(self, address: str) -> bool:
        resp = await self._execute_with_retry("get_account_info", Pubkey.from_string(address), commitment=Confirmed)
        return resp.value is not None

    async def latest_blockhash(self) -> Hash:
        resp = await self._execute_with_retry("get_latest_blockhash", commitment=Confirmed)
        return resp.value.blockhash

    async def fee_for_message(self, message: Message) -> int:
        resp = await self._execute_with_retry("get_fee_for_message", message, commitment=Confirmed)
        return int(resp.value or 0)

    async def submit(self, raw_tx: bytes) -> TransactionConfirmation:
        """Broadcast a signed transaction and wait until it is confirmed.

        Raises:
            TransactionFailedError: If the transaction fails or is not confirmed in time.
        """
        resp = await self._execute_with_retry(
            "send_raw_transaction",
            raw_tx,
            opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            retries=1,
        )
        signature = resp.value
        logger.info("Submitted transaction %s on %s", signature, self.chain)
        try:
            status = await asyncio.wait_for(
                self._client.confirm_transaction(signature, commitment=Confirmed),
                timeout=self._confirm_timeout,
            )
        except (TimeoutError, UnconfirmedTxError, TransactionExpiredBlockheightExceededError) as e:
            raise TransactionFailedError(f"Transaction {signature} not confirmed: {e}") from e
        except (SolanaRpcException, RPCException) as e:
            raise TransactionFailedError(f"Confirmation of {signature} failed: {e}") from e

        statuses = status.value or []
        if statuses and statuses[0] is not None and statuses[0].err is not None:
            raise TransactionFailedError(f"Transaction {signature} failed: {statuses[0].err}")
        slot = int(statuses[0].slot) if statuses and statuses[0] is not None else None
        return TransactionConfirmation(tx_id=str(signature), height=slot)

    async def aclose(self) -> None:
        clients = [self._client]
        if self._client_fallback is not None:
            clients.append(self._client_fallback)
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning("Failed to close Solana RPC client: %s", e)
