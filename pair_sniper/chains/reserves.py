from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from pair_sniper.chains.evm import EvmClient
from pair_sniper.errors import ReadError, SniperError
from pair_sniper.models import ReserveState


@dataclass
class PoolStateReader:
    client: EvmClient

    async def read(self, pool_address: str) -> ReserveState | ReadError:
        """Fresh reserves of `pool_address` at the current head.

        Failures come back as a ReadError value; retrying is the caller's call.
        """
        try:
            block = await self.client.block_number()
            reserve0, reserve1 = await self.client.get_reserves(pool_address, block)
        except SniperError as e:
            logger.debug("Reserve read failed for {}: {}", pool_address, e)
            return ReadError(pool_address, str(e))
        return ReserveState(
            pool_address=pool_address,
            reserve0=reserve0,
            reserve1=reserve1,
            observed_at_block=block,
        )
