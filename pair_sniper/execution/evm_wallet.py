from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from eth_account import Account
from loguru import logger
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, Web3RPCError

from pair_sniper.chains.evm import TRANSIENT_ERRORS
from pair_sniper.errors import RejectionError, SigningError
from pair_sniper.models import SignedSwap

DEFAULT_PRIORITY_FEE_GWEI = 2


@dataclass
class EvmWallet:
    """Signer for one account.

    Nonce assignment and signing happen under a single lock, so concurrent
    swaps from the same account always get consecutive nonces.
    """

    w3: AsyncWeb3
    chain_id: int
    private_key: str | None = field(repr=False)
    address: str | None
    _next_nonce: int | None = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    def create(cls, w3: AsyncWeb3, chain_id: int, private_key: str | None, explicit_address: str | None):
        addr = explicit_address
        if private_key and not addr:
            addr = Account.from_key(private_key).address
        if addr:
            addr = Web3.to_checksum_address(addr)
            logger.info("Executor address: {}", addr)
        return cls(w3=w3, chain_id=chain_id, private_key=private_key, address=addr)

    def invalidate_nonce(self) -> None:
        """Forget the cached nonce; the next signature re-reads the pending count."""
        self._next_nonce = None

    async def _prepare(self, tx: dict) -> dict:
        tx = dict(tx)
        tx.setdefault("chainId", self.chain_id)
        tx["from"] = self.address
        if self._next_nonce is None:
            self._next_nonce = int(await self.w3.eth.get_transaction_count(self.address, "pending"))
        tx["nonce"] = self._next_nonce
        if "gas" not in tx:
            tx["gas"] = await self.w3.eth.estimate_gas(tx)
        if "gasPrice" not in tx:
            if "maxFeePerGas" not in tx:
                # EIP-1559 defaults
                latest = await self.w3.eth.gas_price
                tx["maxFeePerGas"] = latest * 2
            tx.setdefault("maxPriorityFeePerGas", Web3.to_wei(DEFAULT_PRIORITY_FEE_GWEI, "gwei"))
            tx["maxFeePerGas"] = max(tx["maxFeePerGas"], tx["maxPriorityFeePerGas"])
        return tx

    async def sign(self, tx: dict) -> SignedSwap:
        if not self.private_key or not self.address:
            raise SigningError("Private key and executor address required for signing")
        async with self._lock:
            try:
                prepared = await self._prepare(tx)
            except ContractLogicError as e:
                raise RejectionError(f"gas estimation reverted: {e}") from e
            except Web3RPCError as e:
                raise RejectionError(f"node refused to prepare transaction: {e}") from e
            except TRANSIENT_ERRORS as e:
                raise SigningError(f"could not prepare transaction: {e}") from e
            try:
                signed = Account.sign_transaction(prepared, self.private_key)
            except (TypeError, ValueError) as e:
                raise SigningError(f"signing failed: {e}") from e
            self._next_nonce = prepared["nonce"] + 1
        return SignedSwap(
            raw_transaction=bytes(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
            nonce=prepared["nonce"],
        )
