from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from web3 import Web3

from pair_sniper.chains.evm import EvmClient
from pair_sniper.config import AppSettings
from pair_sniper.errors import (
    InclusionTimeoutError,
    RejectionError,
    SigningError,
    TransportError,
)
from pair_sniper.execution.evm_wallet import EvmWallet
from pair_sniper.execution.uniswap_v2 import encode_swap
from pair_sniper.models import Outcome, PendingSubmission, SwapIntent


@dataclass
class SubmissionTracker:
    """Drives one SwapIntent through built -> signed -> submitted -> confirmed/failed.

    Signing failures are final. Submission is retried with exponential
    backoff on transport errors only, always re-sending the same signed
    bytes. After submission the receipt is polled a bounded number of times.
    """

    client: EvmClient
    wallet: EvmWallet
    settings: AppSettings
    router: Any
    pending: dict[str, PendingSubmission] = field(default_factory=dict)
    _submissions: set[asyncio.Task] = field(default_factory=set, repr=False)

    def _apply_gas_overrides(self, tx: dict) -> None:
        if self.settings.max_fee_gwei is not None:
            tx["maxFeePerGas"] = Web3.to_wei(self.settings.max_fee_gwei, "gwei")
        if self.settings.max_priority_fee_gwei is not None:
            tx["maxPriorityFeePerGas"] = Web3.to_wei(self.settings.max_priority_fee_gwei, "gwei")

    def _fail(self, intent: SwapIntent, stage: str, reason: str, err: Exception | None = None, tx_hash: str | None = None) -> Outcome:
        logger.error(
            "Swap for pool {} failed at {}: {}{}",
            intent.pool_address,
            stage,
            reason,
            f" ({err})" if err else "",
        )
        return Outcome(status="failed", stage=stage, reason=reason, pool_address=intent.pool_address, tx_hash=tx_hash)

    async def execute(self, intent: SwapIntent) -> Outcome:
        tx = encode_swap(self.router, intent)
        self._apply_gas_overrides(tx)

        if self.settings.dry_run:
            logger.info(
                "[dry-run] would swap {} wei of {} for {} (min out {}, deadline {}) in pool {}",
                intent.amount_in,
                intent.from_token,
                intent.to_token,
                intent.min_amount_out,
                intent.deadline,
                intent.pool_address,
            )
            return Outcome(status="skipped", stage="built", reason="dry-run", pool_address=intent.pool_address)

        # Signing and sending must not be torn apart by a shutdown
        task = asyncio.ensure_future(self._sign_and_submit(intent, tx))
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(self._orphaned)
            raise
        if isinstance(result, Outcome):
            return result

        try:
            return await self._await_inclusion(result)
        finally:
            self.pending.pop(result.tx_hash, None)

    def _orphaned(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        result = task.result()
        if isinstance(result, PendingSubmission):
            self.pending.pop(result.tx_hash, None)
            logger.warning(
                "Submitted {} for pool {} during shutdown; inclusion not tracked",
                result.tx_hash,
                result.intent.pool_address,
            )

    async def _sign_and_submit(self, intent: SwapIntent, tx: dict) -> PendingSubmission | Outcome:
        logger.info("Executing swap for pool {}: {} -> {}", intent.pool_address, intent.from_token, intent.to_token)
        try:
            signed = await self.wallet.sign(tx)
        except RejectionError as e:
            return self._fail(intent, "sign", "rejected", e)
        except SigningError as e:
            return self._fail(intent, "sign", "sign-error", e)

        attempts = max(1, self.settings.submit_max_attempts)
        tx_hash = None
        for attempt in range(1, attempts + 1):
            try:
                tx_hash = await self.client.send_raw_transaction(signed)
                break
            except RejectionError as e:
                self.wallet.invalidate_nonce()
                return self._fail(intent, "submit", "rejected", e, tx_hash=signed.tx_hash)
            except TransportError as e:
                if attempt == attempts:
                    self.wallet.invalidate_nonce()
                    return self._fail(intent, "submit", "submit-error", e, tx_hash=signed.tx_hash)
                delay = self.settings.submit_backoff_base_sec * 2 ** (attempt - 1)
                logger.warning(
                    "Submit attempt {}/{} for {} failed, retrying in {:.2f}s: {}",
                    attempt,
                    attempts,
                    signed.tx_hash,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)

        if tx_hash in self.pending:
            return self._fail(intent, "submit", "duplicate-submission", tx_hash=tx_hash)
        try:
            block = await self.client.block_number()
        except TransportError:
            block = None
        pending = PendingSubmission(intent=intent, tx_hash=tx_hash, submitted_at_block=block)
        self.pending[tx_hash] = pending
        logger.info("Wait for transaction {} to be included in a block (submitted at {})", tx_hash, block)
        return pending

    async def _await_inclusion(self, pending: PendingSubmission) -> Outcome:
        intent = pending.intent
        retries = self.settings.inclusion_retries
        for attempt in range(1, retries + 1):
            pending.attempt = attempt
            try:
                receipt = await self.client.get_receipt(pending.tx_hash)
            except TransportError as e:
                logger.debug("Receipt poll {}/{} for {} failed: {}", attempt, retries, pending.tx_hash, e)
                receipt = None
            if receipt is not None:
                if receipt.status == 1:
                    logger.info("Buy tx {} was included in block {}", pending.tx_hash, receipt.block_number)
                    return Outcome(
                        status="confirmed",
                        stage="inclusion",
                        pool_address=intent.pool_address,
                        tx_hash=pending.tx_hash,
                        block_number=receipt.block_number,
                    )
                return self._fail(intent, "inclusion", "reverted", tx_hash=pending.tx_hash)
            if attempt < retries:
                await asyncio.sleep(self.settings.receipt_poll_interval_sec)
        err = InclusionTimeoutError(pending.tx_hash, retries)
        return self._fail(intent, "inclusion", "inclusion-timeout", err, tx_hash=pending.tx_hash)

    async def flush(self, timeout: float | None = None) -> None:
        """Wait for sign/submit steps still running after their owners were cancelled."""
        if not self._submissions:
            return
        logger.info("Waiting for {} in-flight submission(s)", len(self._submissions))
        await asyncio.wait(set(self._submissions), timeout=timeout)
