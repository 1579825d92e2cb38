from __future__ import annotations

import asyncio

import pytest
from web3 import Web3

from pair_sniper.errors import TransportError
from pair_sniper.models import PoolCreatedEvent, Receipt, SignedSwap

WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"
FACTORY = "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f"
RECIPIENT = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TOKEN_A = Web3.to_checksum_address("0x" + "aa" * 20)
TOKEN_B = Web3.to_checksum_address("0x" + "bb" * 20)


def make_event(n: int = 1, token0: str = WETH, token1: str = TOKEN_A, block: int = 100, tx: str | None = None):
    return PoolCreatedEvent(
        transaction_hash=tx or "0x" + f"{n:064x}",
        block_number=block,
        factory_address=FACTORY,
        pool_address=Web3.to_checksum_address("0x" + f"{n:040x}"),
        token0=token0,
        token1=token1,
    )


class FakeClient:
    """In-memory stand-in for EvmClient."""

    def __init__(self, heads=(100,), logs=(), subscriptions=None, subscribe_error=None):
        self.heads = list(heads)
        self.logs = list(logs)
        self.subscriptions = list(subscriptions or [])
        self.subscribe_error = subscribe_error
        self.subscribe_calls = 0
        self.reconnects = 0
        self.poll_calls: list[tuple[int, int]] = []
        self.poll_errors: list[Exception] = []
        self.reserves: dict[str, object] = {}
        self.sent: list[SignedSwap] = []
        self.send_results: list[object] = []
        self.receipts: list[object] = []
        self.receipt_calls = 0

    async def block_number(self) -> int:
        if len(self.heads) > 1:
            return self.heads.pop(0)
        return self.heads[0]

    async def poll_pair_created(self, from_block: int, to_block: int):
        self.poll_calls.append((from_block, to_block))
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        return [e for e in self.logs if from_block <= e.block_number <= to_block]

    async def subscribe_pair_created(self):
        self.subscribe_calls += 1
        if self.subscribe_error is not None:
            raise self.subscribe_error
        if not self.subscriptions:
            raise TransportError("no subscription available")
        items = self.subscriptions.pop(0)

        async def gen():
            for it in items:
                if isinstance(it, Exception):
                    raise it
                yield it
            # a healthy socket just stays quiet
            await asyncio.Event().wait()

        return gen()

    async def reconnect(self) -> None:
        self.reconnects += 1

    async def get_reserves(self, pool_address: str, block="latest"):
        value = self.reserves[pool_address]
        if isinstance(value, Exception):
            raise value
        return value

    async def send_raw_transaction(self, signed: SignedSwap) -> str:
        self.sent.append(signed)
        result = self.send_results.pop(0) if self.send_results else signed.tx_hash
        if isinstance(result, Exception):
            raise result
        return result

    async def get_receipt(self, tx_hash: str):
        self.receipt_calls += 1
        result = self.receipts.pop(0) if self.receipts else None
        if isinstance(result, Exception):
            raise result
        return result


class FakeWallet:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.signed: list[dict] = []
        self.invalidated = 0
        self.address = RECIPIENT

    async def sign(self, tx: dict) -> SignedSwap:
        if self.error is not None:
            raise self.error
        nonce = len(self.signed)
        self.signed.append(tx)
        return SignedSwap(raw_transaction=b"\x02" + bytes([nonce]), tx_hash="0x" + f"{nonce + 1:064x}", nonce=nonce)

    def invalidate_nonce(self) -> None:
        self.invalidated += 1


def included(block: int = 101, status: int = 1) -> Receipt:
    return Receipt(tx_hash="0x", block_number=block, status=status, gas_used=120_000)


@pytest.fixture
def settings():
    from pair_sniper.config import AppSettings

    return AppSettings(
        evm_rpc_url="http://localhost:8545",
        dry_run=False,
        receipt_poll_interval_sec=0,
        submit_backoff_base_sec=0,
        feed_poll_interval_sec=0,
        feed_restart_delay_sec=0,
        read_retry_delay_sec=0,
        shutdown_grace_sec=1,
    )


@pytest.fixture
def router():
    from pair_sniper.chains.evm import ROUTER_ABI

    return Web3().eth.contract(address=ROUTER, abi=ROUTER_ABI)
