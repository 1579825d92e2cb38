from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DexContracts(BaseModel):
    # Uniswap V2 style factory per chain id
    factories: dict[int, str] = {
        1: "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f",  # Uniswap V2
        137: "0x5757371414417b8C6CAad45bAeF941aBc7d3Ab32",  # QuickSwap V2
        8453: "0x8909Dc15e40173Ff4699343b6eB8132c65e18eC6",  # Uniswap V2 Base
    }

    # Matching V2 routers
    routers: dict[int, str] = {
        1: "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",  # Uniswap V2 Router02
        137: "0xa5E0829CaCEd8fFDD4De3c43696c57F7D7A678ff",  # QuickSwap V2 router
        8453: "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24",  # Uniswap V2 Router02 Base
    }

    # Wrapped native per chain (WETH)
    native_wrapped: dict[int, str] = {
        1: "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",  # WETH9
        137: "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",  # WMATIC
        8453: "0x4200000000000000000000000000000000000006",  # WETH (Base)
    }


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="PSE_", extra="allow")

    # EVM provider; ws:// or wss:// enables push subscriptions, http(s) polls
    evm_rpc_url: str = "ws://localhost:8546"
    evm_chain_id: int = 1

    # Signer
    evm_private_key: SecretStr | None = None
    executor_address: str | None = None

    # Contracts; None falls back to DexContracts for the chain
    factory_address: str | None = None
    router_address: str | None = None
    quote_token: str | None = None
    dex_contracts: DexContracts = DexContracts()

    # Execution
    dry_run: bool = True
    trade_amount_wei: int = 10**16  # 0.01 ETH
    slippage_bps: int = 0  # 0 disables slippage protection
    tx_deadline_seconds: int = 1800
    max_priority_fee_gwei: float | None = None
    max_fee_gwei: float | None = None

    # Submission / inclusion
    submit_max_attempts: int = 3
    submit_backoff_base_sec: float = 0.5
    inclusion_retries: int = 10
    receipt_poll_interval_sec: float = 2.0

    # Pool state reads
    read_failure_policy: Literal["skip", "retry"] = "skip"
    read_retries: int = 2
    read_retry_delay_sec: float = 0.25

    # Feed
    feed_poll_interval_sec: float = 3.0
    feed_max_block_span: int = 2000
    feed_reconnect_attempts: int = 3
    feed_restart_budget: int = 5
    feed_restart_delay_sec: float = 2.0
    dedup_block_window: int = 256

    # Shutdown
    shutdown_grace_sec: float = 30.0

    # Logging
    log_level: str = "INFO"

    # --- Validators to coerce empty strings in optional envs to None ---
    @field_validator(
        "max_priority_fee_gwei",
        "max_fee_gwei",
        "evm_private_key",
        "executor_address",
        "factory_address",
        "router_address",
        "quote_token",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, v):
        if v == "":
            return None
        return v

    @field_validator(
        "submit_max_attempts",
        "inclusion_retries",
        "read_retries",
        "feed_reconnect_attempts",
        "feed_restart_budget",
        "dedup_block_window",
        "feed_max_block_span",
    )
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("slippage_bps")
    @classmethod
    def _bps_range(cls, v: int) -> int:
        if not 0 <= v < 10_000:
            raise ValueError("slippage_bps must be in [0, 10000)")
        return v

    def resolved_factory(self) -> str:
        addr = self.factory_address or self.dex_contracts.factories.get(self.evm_chain_id)
        if not addr:
            raise ValueError(f"No factory configured for chain {self.evm_chain_id}")
        return addr

    def resolved_router(self) -> str:
        addr = self.router_address or self.dex_contracts.routers.get(self.evm_chain_id)
        if not addr:
            raise ValueError(f"No router configured for chain {self.evm_chain_id}")
        return addr

    def resolved_quote_token(self) -> str:
        addr = self.quote_token or self.dex_contracts.native_wrapped.get(self.evm_chain_id)
        if not addr:
            raise ValueError(f"No quote token configured for chain {self.evm_chain_id}")
        return addr

    def quote_is_native(self) -> bool:
        wrapped = self.dex_contracts.native_wrapped.get(self.evm_chain_id)
        return bool(wrapped) and wrapped.lower() == self.resolved_quote_token().lower()
