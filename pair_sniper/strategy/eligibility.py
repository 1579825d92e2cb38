from __future__ import annotations

from pair_sniper.models import (
    Eligible,
    EligibilityDecision,
    Indeterminate,
    Ineligible,
    PoolCreatedEvent,
    ReserveState,
)

ZERO_RESERVE = "zero-reserve"
NO_QUOTE_TOKEN_PAIR = "no-quote-token-pair"
POOL_MISMATCH = "pool-mismatch"
INVALID_RESERVE = "invalid-reserve"


def evaluate(event: PoolCreatedEvent, reserves: ReserveState, quote_token: str) -> EligibilityDecision:
    """Decide whether the pool announced by `event` can be bought into with `quote_token`.

    Rule order matters: a pool with an empty side is never tradable, so the
    zero-reserve check runs first, ahead of the consistency checks on the
    reserves themselves. Addresses compare case-insensitively. Never raises.
    """
    if reserves.reserve0 == 0 or reserves.reserve1 == 0:
        return Ineligible(ZERO_RESERVE)

    if reserves.pool_address.lower() != event.pool_address.lower():
        return Indeterminate(POOL_MISMATCH)
    if reserves.reserve0 < 0 or reserves.reserve1 < 0:
        return Indeterminate(INVALID_RESERVE)

    quote = quote_token.lower()
    if event.token0.lower() == quote:
        return Eligible(
            target_token=event.token1,
            quote_token=event.token0,
            pool_address=event.pool_address,
            quote_reserve=reserves.reserve0,
            target_reserve=reserves.reserve1,
        )
    if event.token1.lower() == quote:
        return Eligible(
            target_token=event.token0,
            quote_token=event.token1,
            pool_address=event.pool_address,
            quote_reserve=reserves.reserve1,
            target_reserve=reserves.reserve0,
        )
    return Ineligible(NO_QUOTE_TOKEN_PAIR)
