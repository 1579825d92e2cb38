from __future__ import annotations

import time

from loguru import logger
from web3 import Web3

from pair_sniper.config import AppSettings
from pair_sniper.errors import ValidationError
from pair_sniper.models import Eligible, EligibilityDecision, SwapIntent

# Uniswap V2 charges 0.3% on the input amount
FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    amount_in_with_fee = amount_in * FEE_NUMERATOR
    return amount_in_with_fee * reserve_out // (reserve_in * FEE_DENOMINATOR + amount_in_with_fee)


def compute_min_out(quoted_out: int, slippage_bps: int) -> int:
    slip = quoted_out * slippage_bps // 10_000
    return max(0, quoted_out - slip)


def build_swap_intent(
    decision: EligibilityDecision,
    settings: AppSettings,
    recipient: str,
    now: float | None = None,
) -> SwapIntent | ValidationError:
    """Turn an Eligible decision into a swap of `trade_amount_wei` quote token for the target token.

    Returns a ValidationError instead of raising. With `now` fixed the result
    is fully determined by the decision and settings.
    """
    if not isinstance(decision, Eligible):
        return ValidationError(f"cannot build a swap from a {type(decision).__name__} decision")
    if settings.trade_amount_wei <= 0:
        return ValidationError(f"trade_amount_wei must be positive, got {settings.trade_amount_wei}")
    if settings.tx_deadline_seconds <= 0:
        return ValidationError(f"tx_deadline_seconds must be positive, got {settings.tx_deadline_seconds}")
    if not recipient:
        return ValidationError("no recipient address")

    now = time.time() if now is None else now
    deadline = int(now) + int(settings.tx_deadline_seconds)
    amount_in = int(settings.trade_amount_wei)

    if settings.slippage_bps == 0:
        logger.warning("No slippage protection for pool {}: amountOutMin = 0", decision.pool_address)
        min_out = 0
    else:
        quoted = get_amount_out(amount_in, decision.quote_reserve, decision.target_reserve)
        min_out = compute_min_out(quoted, settings.slippage_bps)

    wrapped = settings.dex_contracts.native_wrapped.get(settings.evm_chain_id)
    native_in = bool(wrapped) and wrapped.lower() == decision.quote_token.lower()

    return SwapIntent(
        from_token=decision.quote_token,
        to_token=decision.target_token,
        amount_in=amount_in,
        min_amount_out=min_out,
        recipient=recipient,
        deadline=deadline,
        pool_address=decision.pool_address,
        native_in=native_in,
    )


def encode_swap(router_contract, intent: SwapIntent) -> dict:
    path = [Web3.to_checksum_address(intent.from_token), Web3.to_checksum_address(intent.to_token)]
    recipient = Web3.to_checksum_address(intent.recipient)
    if intent.native_in:
        data = router_contract.encode_abi(
            "swapExactETHForTokens",
            args=[intent.min_amount_out, path, recipient, intent.deadline],
        )
        value = intent.amount_in
    else:
        data = router_contract.encode_abi(
            "swapExactTokensForTokens",
            args=[intent.amount_in, intent.min_amount_out, path, recipient, intent.deadline],
        )
        value = 0
    return {"to": router_contract.address, "data": data, "value": value}
