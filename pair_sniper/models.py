from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union


@dataclass(frozen=True)
class PoolCreatedEvent:
    transaction_hash: str
    block_number: int
    factory_address: str
    pool_address: str
    token0: str
    token1: str

    @property
    def identity(self) -> tuple[str, str]:
        return (self.transaction_hash.lower(), self.pool_address.lower())


@dataclass(frozen=True)
class ReserveState:
    pool_address: str
    reserve0: int
    reserve1: int
    observed_at_block: int


@dataclass(frozen=True)
class Eligible:
    target_token: str
    quote_token: str
    pool_address: str
    quote_reserve: int
    target_reserve: int


@dataclass(frozen=True)
class Ineligible:
    reason: str


@dataclass(frozen=True)
class Indeterminate:
    reason: str


EligibilityDecision = Union[Eligible, Ineligible, Indeterminate]


@dataclass(frozen=True)
class SwapIntent:
    from_token: str
    to_token: str
    amount_in: int
    min_amount_out: int
    recipient: str
    deadline: int  # unix seconds
    pool_address: str
    native_in: bool = False  # pay with native currency instead of the ERC20 quote token


@dataclass(frozen=True)
class SignedSwap:
    raw_transaction: bytes
    tx_hash: str
    nonce: int


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int | None = None


@dataclass
class PendingSubmission:
    intent: SwapIntent
    tx_hash: str
    submitted_at_block: int | None
    attempt: int = 0


OutcomeStatus = Literal["confirmed", "failed", "skipped", "ineligible", "duplicate"]


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    stage: str
    reason: str | None = None
    pool_address: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == "confirmed"
