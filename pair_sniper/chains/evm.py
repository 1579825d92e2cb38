from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3, WebSocketProvider
from web3.contract import AsyncContract
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)
from web3.providers.persistent import PersistentConnectionProvider

from pair_sniper.config import AppSettings
from pair_sniper.errors import (
    RejectionError,
    TransportError,
    UnsupportedCapabilityError,
)
from pair_sniper.models import PoolCreatedEvent, Receipt, SignedSwap

TRANSIENT_ERRORS = (ProviderConnectionError, TimeExhausted, asyncio.TimeoutError, ConnectionError, OSError)

# JSON-RPC "method not found"
METHOD_NOT_FOUND = -32601


def load_abi(rel_path: str):
    path = Path(__file__).resolve().parent.parent / "abi" / rel_path
    return json.loads(path.read_text())


FACTORY_ABI = load_abi("uniswap_v2_factory.json")
PAIR_ABI = load_abi("uniswap_v2_pair.json")
ROUTER_ABI = load_abi("uniswap_v2_router.json")
ERC20_ABI = load_abi("erc20.json")

PAIR_CREATED_TOPIC = Web3.to_hex(Web3.keccak(text="PairCreated(address,address,address,uint256)"))


def _rpc_error_code(exc: Web3RPCError) -> Optional[int]:
    response = getattr(exc, "rpc_response", None) or {}
    error = response.get("error") if isinstance(response, dict) else None
    if isinstance(error, dict):
        return error.get("code")
    return None


def is_unsupported(exc: Web3RPCError) -> bool:
    if _rpc_error_code(exc) == METHOD_NOT_FOUND:
        return True
    msg = str(exc).lower()
    return "not supported" in msg or "method not found" in msg or "does not exist" in msg


@dataclass
class EvmClient:
    """Network capability over web3's AsyncWeb3.

    Translates provider exceptions into the engine's error taxonomy so the
    feed, reader and tracker never see web3 internals.
    """

    settings: AppSettings
    w3: AsyncWeb3
    factory: AsyncContract

    @classmethod
    async def create(cls, settings: AppSettings) -> "EvmClient":
        url = settings.evm_rpc_url
        if url.startswith("ws"):
            try:
                w3 = await AsyncWeb3(WebSocketProvider(url))
            except TRANSIENT_ERRORS as e:
                raise TransportError(f"cannot connect to {url}: {e}") from e
        else:
            w3 = AsyncWeb3(AsyncHTTPProvider(url))
        factory = w3.eth.contract(address=Web3.to_checksum_address(settings.resolved_factory()), abi=FACTORY_ABI)
        logger.info("Connected to EVM provider: {} (chain id {})", url, settings.evm_chain_id)
        return cls(settings=settings, w3=w3, factory=factory)

    def supports_subscriptions(self) -> bool:
        return isinstance(self.w3.provider, PersistentConnectionProvider)

    def router(self) -> AsyncContract:
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(self.settings.resolved_router()), abi=ROUTER_ABI
        )

    def erc20(self, token_addr: str) -> AsyncContract:
        return self.w3.eth.contract(address=Web3.to_checksum_address(token_addr), abi=ERC20_ABI)

    def _log_filter(self) -> dict[str, Any]:
        return {"address": self.factory.address, "topics": [PAIR_CREATED_TOPIC]}

    def decode_pair_created(self, log) -> PoolCreatedEvent | None:
        try:
            ev = self.factory.events.PairCreated().process_log(log)
        except Exception as e:
            logger.warning("Undecodable PairCreated log: {}", e)
            return None
        args = ev["args"]
        return PoolCreatedEvent(
            transaction_hash=Web3.to_hex(ev["transactionHash"]),
            block_number=int(ev["blockNumber"]),
            factory_address=Web3.to_checksum_address(ev["address"]),
            pool_address=Web3.to_checksum_address(args["pair"]),
            token0=Web3.to_checksum_address(args["token0"]),
            token1=Web3.to_checksum_address(args["token1"]),
        )

    async def subscribe_pair_created(self) -> AsyncIterator[PoolCreatedEvent]:
        if not self.supports_subscriptions():
            raise UnsupportedCapabilityError(
                f"{type(self.w3.provider).__name__} does not support eth_subscribe"
            )
        try:
            sub_id = await self.w3.eth.subscribe("logs", self._log_filter())
        except Web3RPCError as e:
            if is_unsupported(e):
                raise UnsupportedCapabilityError(str(e)) from e
            raise TransportError(f"subscribe failed: {e}") from e
        except TRANSIENT_ERRORS as e:
            raise TransportError(f"subscribe failed: {e}") from e
        logger.info("Subscribed to PairCreated logs on {} (id {})", self.factory.address, sub_id)
        return self._iter_subscription(sub_id)

    async def _iter_subscription(self, sub_id) -> AsyncIterator[PoolCreatedEvent]:
        try:
            async for message in self.w3.socket.process_subscriptions():
                if message.get("subscription") != sub_id:
                    continue
                event = self.decode_pair_created(message["result"])
                if event is not None:
                    yield event
        except Exception as e:
            raise TransportError(f"subscription {sub_id} dropped: {e}") from e
        raise TransportError(f"subscription {sub_id} closed by provider")

    async def reconnect(self) -> None:
        if not self.supports_subscriptions():
            return
        provider = self.w3.provider
        try:
            await provider.disconnect()
            await provider.connect()
        except TRANSIENT_ERRORS as e:
            raise TransportError(f"reconnect failed: {e}") from e
        logger.info("Reconnected to {}", self.settings.evm_rpc_url)

    async def block_number(self) -> int:
        try:
            return int(await self.w3.eth.block_number)
        except (Web3RPCError, *TRANSIENT_ERRORS) as e:
            raise TransportError(f"eth_blockNumber failed: {e}") from e

    async def poll_pair_created(self, from_block: int, to_block: int) -> list[PoolCreatedEvent]:
        flt = {**self._log_filter(), "fromBlock": from_block, "toBlock": to_block}
        try:
            logs = await self.w3.eth.get_logs(flt)
        except (Web3RPCError, *TRANSIENT_ERRORS) as e:
            raise TransportError(f"eth_getLogs {from_block}-{to_block} failed: {e}") from e
        events = [self.decode_pair_created(lg) for lg in logs]
        return [ev for ev in events if ev is not None]

    async def get_reserves(self, pool_address: str, block: int | str = "latest") -> tuple[int, int]:
        pair = self.w3.eth.contract(address=Web3.to_checksum_address(pool_address), abi=PAIR_ABI)
        try:
            reserve0, reserve1, _ts = await pair.functions.getReserves().call(block_identifier=block)
        except ContractLogicError as e:
            raise RejectionError(f"getReserves reverted on {pool_address}: {e}") from e
        except (Web3RPCError, *TRANSIENT_ERRORS) as e:
            raise TransportError(f"getReserves failed on {pool_address}: {e}") from e
        except BadFunctionCallOutput as e:
            # Empty or undecodable output: no code at `block` yet, node lagging behind the event
            raise TransportError(f"getReserves returned no usable data on {pool_address}: {e}") from e
        return int(reserve0), int(reserve1)

    async def send_raw_transaction(self, signed: SignedSwap) -> str:
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Web3RPCError as e:
            # A retry after a dropped response can hit a node that already has the tx
            if "already known" in str(e).lower():
                logger.debug("Transaction {} already known to node", signed.tx_hash)
                return signed.tx_hash
            raise RejectionError(str(e)) from e
        except TRANSIENT_ERRORS as e:
            raise TransportError(f"eth_sendRawTransaction failed: {e}") from e
        return Web3.to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        try:
            rcpt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3RPCError, *TRANSIENT_ERRORS) as e:
            raise TransportError(f"eth_getTransactionReceipt failed: {e}") from e
        if rcpt is None:
            return None
        return Receipt(
            tx_hash=tx_hash,
            block_number=int(rcpt["blockNumber"]),
            status=int(rcpt.get("status", 0)),
            gas_used=rcpt.get("gasUsed"),
        )
