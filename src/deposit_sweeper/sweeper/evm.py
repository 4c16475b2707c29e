"""EVM sweep adapter: sponsor tops up gas, then the owner transfers to treasury."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3

from deposit_sweeper.chain.base import RPCError
from deposit_sweeper.chain.evm import NATIVE_TRANSFER_GAS
from deposit_sweeper.chain.models import SignerPair
from deposit_sweeper.sweeper.models import (
    InsufficientDepositBalanceError,
    InsufficientSponsorBalanceError,
    SweepConfigurationError,
    SweepOutcome,
)

if TYPE_CHECKING:
    from deposit_sweeper.chain.evm import EvmChainClient
    from deposit_sweeper.config import ChainConfig
    from deposit_sweeper.ledger.models import DepositRecord
    from deposit_sweeper.storage.repos import DepositAddressDTO
    from deposit_sweeper.vault.keys import KeyVault

logger = logging.getLogger(__name__)

DEFAULT_GAS_BUFFER_MULTIPLIER = Decimal("2")
DEFAULT_TOKEN_TRANSFER_GAS = 100_000


class EvmSweepAdapter:
    """Two-step sponsored sweep for EVM chains.

    1. If the deposit wallet lacks native currency for gas (estimated gas cost
       times the buffer multiplier), the sponsor sends exactly the shortfall
       and the adapter waits for that transfer to be mined.
    2. The deposit wallet submits the transfer of the deposited amount to the
       treasury.
    """

    def __init__(
        self,
        client: EvmChainClient,
        vault: KeyVault,
        config: ChainConfig,
        *,
        gas_buffer_multiplier: Decimal = DEFAULT_GAS_BUFFER_MULTIPLIER,
        token_transfer_gas: int = DEFAULT_TOKEN_TRANSFER_GAS,
    ) -> None:
        if not config.treasury_address:
            raise SweepConfigurationError(f"Treasury address is not configured for {config.name}")
        self._client = client
        self._vault = vault
        self._config = config
        self._treasury = AsyncWeb3.to_checksum_address(config.treasury_address)
        self._multiplier = gas_buffer_multiplier
        self._token_transfer_gas = token_transfer_gas

    def load_signers(self, address: DepositAddressDTO) -> SignerPair:
        if not self._config.sponsor_encrypted_key:
            raise SweepConfigurationError(f"Sponsor key is not configured for {self._config.name}")
        return SignerPair(
            owner=self._vault.evm_account(address.encrypted_private_key),
            fee_payer=self._vault.evm_account(self._config.sponsor_encrypted_key),
        )

    async def execute(
        self,
        deposit: DepositRecord,
        address: DepositAddressDTO,
        signers: SignerPair,
    ) -> SweepOutcome:
        asset = self._config.assets.get(deposit.asset)
        if asset is None:
            raise SweepConfigurationError(f"Asset {deposit.asset} is not configured for {self._config.name}")
        owner = signers.owner
        sponsor = signers.fee_payer
        units = asset.to_base_units(deposit.amount)

        gas_price = await self._client.gas_price()
        owner_native = await self._client.native_balance(owner.address)

        tx: dict[str, Any]
        if asset.is_native:
            if owner_native < units:
                raise InsufficientDepositBalanceError(
                    f"{address.address} holds {owner_native} wei, deposit is {units} wei"
                )
            value = units
            gas_limit = NATIVE_TRANSFER_GAS
            tx = {"to": self._treasury, "value": value, "gas": gas_limit, "gasPrice": gas_price}
        else:
            balance = await self._client.token_balance(owner.address, asset)
            if balance < deposit.amount:
                raise InsufficientDepositBalanceError(
                    f"{address.address} holds {balance} {asset.symbol}, deposit is {deposit.amount}"
                )
            value = 0
            tx = {
                "to": AsyncWeb3.to_checksum_address(asset.contract_address),
                "value": 0,
                "data": self._client.token_transfer_data(asset, self._treasury, units),
                "gasPrice": gas_price,
            }
            try:
                gas_limit = await self._client.estimate_gas({**tx, "from": owner.address})
            except RPCError as e:
                logger.warning("Gas estimation failed for %s, using %d: %s", deposit.id, self._token_transfer_gas, e)
                gas_limit = self._token_transfer_gas
            tx["gas"] = gas_limit

        gas_budget = int(Decimal(gas_limit * gas_price) * self._multiplier)
        shortfall = max(0, value + gas_budget - owner_native)

        sponsor_spent = 0
        funding_tx_id: str | None = None
        if shortfall > 0:
            sponsor_fee = NATIVE_TRANSFER_GAS * gas_price
            sponsor_balance = await self._client.native_balance(sponsor.address)
            if sponsor_balance < shortfall + sponsor_fee:
                raise InsufficientSponsorBalanceError(
                    f"Sponsor {sponsor.address} on {self._config.name} has {sponsor_balance} wei, "
                    f"needs {shortfall + sponsor_fee} wei",
                    required=shortfall + sponsor_fee,
                    available=sponsor_balance,
                )
            logger.info("Sponsoring %d wei of gas for %s on %s", shortfall, address.address, self._config.name)
            funding = await self._client.sign_and_submit(
                sponsor,
                {"to": owner.address, "value": shortfall, "gas": NATIVE_TRANSFER_GAS, "gasPrice": gas_price},
            )
            funding_tx_id = funding.tx_id
            sponsor_spent = shortfall + (funding.fee if funding.fee is not None else sponsor_fee)

        confirmation = await self._client.sign_and_submit(owner, tx)
        logger.info(
            "Swept %s %s from %s to treasury in %s",
            deposit.amount,
            asset.symbol,
            address.address,
            confirmation.tx_id,
        )
        return SweepOutcome(tx_id=confirmation.tx_id, sponsor_spent=sponsor_spent, funding_tx_id=funding_tx_id)
