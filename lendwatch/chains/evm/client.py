"""Loan broker client on an EVM chain, with RPC endpoint fallback."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from ...config import ChainConfig
from ...errors import (
    BroadcastUnknownError,
    StaleStateError,
    TerminalError,
    TransientError,
)
from ...models import ProtocolParams, TxReceipt

logger = logging.getLogger(__name__)

HEALTH_FACTOR_SCALE = 10**18

LOAN_BROKER_ABI: list[dict[str, Any]] = [
    {
        "name": "getHealthFactor",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "positionId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getCurrentDebt",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "positionId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "config",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "feeBps", "type": "uint256"},
            {"name": "liquidationThresholdBps", "type": "uint256"},
            {"name": "liquidationBonusBps", "type": "uint256"},
        ],
    },
    {
        "name": "liquidate",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "positionId", "type": "uint256"}],
        "outputs": [],
    },
]

_STALE_HEALTHY = ("position is healthy",)
_STALE_NOT_ACTIVE = ("position not active", "position is not active")


def classify_chain_error(error: Exception) -> Exception:
    """Map a web3/transport exception onto the lendwatch error taxonomy."""
    if isinstance(error, (TransientError, StaleStateError, TerminalError)):
        return error

    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _STALE_NOT_ACTIVE):
        return StaleStateError(message, not_active=True)
    if any(marker in lowered for marker in _STALE_HEALTHY):
        return StaleStateError(message)
    if isinstance(
        error, (asyncio.TimeoutError, TimeExhausted, aiohttp.ClientError, ConnectionError)
    ):
        return TransientError(message or type(error).__name__)
    if isinstance(error, ContractLogicError) or "revert" in lowered:
        return TerminalError(message)
    if "insufficient funds" in lowered or "nonce too low" in lowered:
        return TerminalError(message)
    return TransientError(message or type(error).__name__)


def _load_abi(path: str) -> list[dict[str, Any]]:
    if not path:
        return LOAN_BROKER_ABI
    with open(Path(path)) as f:
        data = json.load(f)
    # Hardhat artifacts wrap the ABI.
    return data["abi"] if isinstance(data, dict) else data


class LoanBrokerClient:
    """Reads loan broker state and submits liquidations from one signer.

    Read calls rotate through the configured RPC endpoints on failure.
    Writes stay on the current endpoint and are serialized so that the
    signer's nonces are issued in order.
    """

    def __init__(self, config: ChainConfig) -> None:
        if not config.rpc_endpoints:
            raise ValueError("LoanBrokerClient needs at least one RPC endpoint")
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.chain_id = config.chain_id
        self.debt_decimals = config.debt_decimals
        self.current_rpc_index = 0

        abi = _load_abi(config.loan_broker_abi_path)
        address = AsyncWeb3.to_checksum_address(config.loan_broker_address)
        self._clients: list[AsyncWeb3] = []
        self._contracts: list[Any] = []
        for url in self.endpoints:
            w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self.timeout})
            )
            self._clients.append(w3)
            self._contracts.append(w3.eth.contract(address=address, abi=abi))

        self._account = (
            Account.from_key(config.signer_private_key)
            if config.signer_private_key
            else None
        )
        self._submit_lock = asyncio.Lock()

    @property
    def signer_address(self) -> str:
        return self._account.address if self._account else ""

    async def _read(self, call: Callable[[AsyncWeb3, Any], Awaitable[Any]]) -> Any:
        """Run a read call with fallback to alternative endpoints."""
        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            try:
                result = await call(self._clients[rpc_index], self._contracts[rpc_index])
            except ContractLogicError as e:
                # A revert is the contract's answer, not an endpoint problem.
                raise classify_chain_error(e) from e
            except Exception as e:
                last_error = e
                logger.warning(
                    "RPC endpoint %s failed: %s", self.endpoints[rpc_index], e
                )
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

            if rpc_index != self.current_rpc_index:
                logger.info("Switched to RPC endpoint: %s", self.endpoints[rpc_index])
                self.current_rpc_index = rpc_index
            return result

        raise TransientError(f"All RPC endpoints failed. Last error: {last_error}")

    async def get_health_factor(self, position_ref: int) -> float:
        raw = await self._read(
            lambda w3, c: c.functions.getHealthFactor(position_ref).call()
        )
        return int(raw) / HEALTH_FACTOR_SCALE

    async def get_current_debt(self, position_ref: int) -> float:
        raw = await self._read(
            lambda w3, c: c.functions.getCurrentDebt(position_ref).call()
        )
        return int(raw) / 10**self.debt_decimals

    async def get_config(self) -> ProtocolParams:
        raw = await self._read(lambda w3, c: c.functions.config().call())
        return ProtocolParams(
            fee_bps=int(raw[0]),
            liquidation_threshold_bps=int(raw[1]),
            liquidation_bonus_bps=int(raw[2]),
        )

    async def get_gas_price(self) -> int:
        async def _gas_price(w3: AsyncWeb3, _contract: Any) -> int:
            return await w3.eth.gas_price

        return int(await self._read(_gas_price))

    def _require_signer(self) -> Any:
        if self._account is None:
            raise TerminalError("No signer_private_key configured for liquidations")
        return self._account

    async def estimate_liquidation_gas(self, position_ref: int) -> int:
        account = self._require_signer()
        contract = self._contracts[self.current_rpc_index]
        try:
            return int(
                await contract.functions.liquidate(position_ref).estimate_gas(
                    {"from": account.address}
                )
            )
        except Exception as e:
            raise classify_chain_error(e) from e

    async def submit_liquidation(self, position_ref: int, gas_limit: int) -> str:
        """Sign and broadcast ``liquidate(position_ref)``; returns the tx hash."""
        account = self._require_signer()
        w3 = self._clients[self.current_rpc_index]
        contract = self._contracts[self.current_rpc_index]

        async with self._submit_lock:
            try:
                nonce = await w3.eth.get_transaction_count(account.address, "pending")
                gas_price = await w3.eth.gas_price
                tx = await contract.functions.liquidate(position_ref).build_transaction(
                    {
                        "chainId": self.chain_id,
                        "from": account.address,
                        "gas": gas_limit,
                        "gasPrice": gas_price,
                        "nonce": nonce,
                    }
                )
                signed = account.sign_transaction(tx)
            except Exception as e:
                raise classify_chain_error(e) from e

            raw_tx = getattr(signed, "raw_transaction", None)
            if raw_tx is None:
                raw_tx = getattr(signed, "rawTransaction")
            signed_hash = AsyncWeb3.to_hex(signed.hash)
            try:
                tx_hash = await w3.eth.send_raw_transaction(raw_tx)
            except Exception as e:
                error = classify_chain_error(e)
                if isinstance(error, TransientError):
                    # The node may have accepted it before the connection dropped.
                    raise BroadcastUnknownError(
                        f"broadcast outcome unknown: {error}", signed_hash
                    ) from e
                raise error from e

        hex_hash = AsyncWeb3.to_hex(tx_hash)
        logger.info("Liquidation transaction sent: %s (nonce %s)", hex_hash, nonce)
        return hex_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        w3 = self._clients[self.current_rpc_index]
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except Exception as e:
            raise classify_chain_error(e) from e
        return TxReceipt(
            tx_hash=AsyncWeb3.to_hex(receipt["transactionHash"]),
            success=receipt["status"] == 1,
            gas_used=int(receipt.get("gasUsed", 0)),
        )

    async def close(self) -> None:
        for w3 in self._clients:
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
