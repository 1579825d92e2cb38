from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from typing import Callable, Optional

from loguru import logger

from pair_sniper.analytics.metrics import Summary
from pair_sniper.chains.feed import PairCreatedFeed
from pair_sniper.chains.reserves import PoolStateReader
from pair_sniper.config import AppSettings
from pair_sniper.errors import FeedError, ReadError, RestartBudgetExceeded, ValidationError
from pair_sniper.execution.tracker import SubmissionTracker
from pair_sniper.execution.uniswap_v2 import build_swap_intent
from pair_sniper.models import Eligible, Outcome, PoolCreatedEvent, ReserveState
from pair_sniper.strategy.eligibility import evaluate


class SeenEvents:
    """Identities of events already dispatched, kept for a rolling window of blocks.

    Only called from the event loop thread and never awaits, so a lookup and
    its insert cannot interleave with another worker.
    """

    def __init__(self, block_window: int):
        self.block_window = block_window
        self._seen: dict[tuple[str, str], int] = {}
        self._max_block = 0

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, event: PoolCreatedEvent) -> bool:
        return event.identity in self._seen

    def add(self, event: PoolCreatedEvent) -> bool:
        """Record `event`; False if it was already seen or is older than the window."""
        key = event.identity
        if key in self._seen:
            return False
        if event.block_number < self._max_block - self.block_window:
            return False
        self._seen[key] = event.block_number
        if event.block_number > self._max_block:
            self._max_block = event.block_number
            floor = self._max_block - self.block_window
            for k in [k for k, b in self._seen.items() if b < floor]:
                del self._seen[k]
        return True


class Orchestrator:
    def __init__(
        self,
        settings: AppSettings,
        feed: PairCreatedFeed,
        reader: PoolStateReader,
        tracker: SubmissionTracker,
        recipient: str,
        summary: Optional[Summary] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.feed = feed
        self.reader = reader
        self.tracker = tracker
        self.recipient = recipient
        self.summary = summary or Summary()
        self.clock = clock
        self.quote_token = settings.resolved_quote_token()
        self.seen = SeenEvents(settings.dedup_block_window)
        self.restarts = 0
        self._workers: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        if not self._stopping.is_set():
            logger.info("Shutdown requested")
        self._stopping.set()

    async def run(self) -> None:
        logger.info("Starting pair sniper (dry_run={}, quote token {})", self.settings.dry_run, self.quote_token)
        feed_task = asyncio.create_task(self._consume_feed(), name="pair-feed")
        stop_task = asyncio.create_task(self._stopping.wait(), name="pair-stop")
        try:
            await asyncio.wait({feed_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not feed_task.done():
                feed_task.cancel()
                await asyncio.gather(feed_task, return_exceptions=True)
            await self._drain()
            logger.info("Run summary: {}", self.summary.as_dict())
        if not feed_task.cancelled():
            # Re-raise RestartBudgetExceeded or anything unexpected from the feed loop
            feed_task.result()

    async def _consume_feed(self) -> None:
        while not self._stopping.is_set():
            try:
                stream = await self.feed.open()
                async with aclosing(stream):
                    async for event in stream:
                        self.dispatch(event)
                raise FeedError("event feed ended")
            except FeedError as e:
                self.restarts += 1
                if self.restarts > self.settings.feed_restart_budget:
                    logger.critical("Event feed failed {} times; giving up: {}", self.restarts, e)
                    raise RestartBudgetExceeded(f"feed restarted {self.restarts - 1} times: {e}") from e
                logger.error(
                    "Event feed failed ({}/{}), reopening in {}s: {}",
                    self.restarts,
                    self.settings.feed_restart_budget,
                    self.settings.feed_restart_delay_sec,
                    e,
                )
                await asyncio.sleep(self.settings.feed_restart_delay_sec)

    def dispatch(self, event: PoolCreatedEvent) -> asyncio.Task | None:
        self.summary.total_observed += 1
        if not self.seen.add(event):
            self.summary.record(Outcome(status="duplicate", stage="dedup", pool_address=event.pool_address))
            logger.debug("Skipping duplicate PairCreated {} / {}", event.transaction_hash, event.pool_address)
            return None
        logger.info(
            "Found tx ({}) with PairCreated event | block {} | factory {} | pair {} | token0 {} | token1 {}",
            event.transaction_hash,
            event.block_number,
            event.factory_address,
            event.pool_address,
            event.token0,
            event.token1,
        )
        task = asyncio.create_task(self.process(event), name=f"pair-{event.pool_address}")
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)
        return task

    async def _read_reserves(self, pool_address: str) -> ReserveState | ReadError:
        result = await self.reader.read(pool_address)
        if self.settings.read_failure_policy != "retry":
            return result
        tries = 0
        while isinstance(result, ReadError) and tries < self.settings.read_retries:
            tries += 1
            logger.debug("Retrying reserve read for {} ({}/{})", pool_address, tries, self.settings.read_retries)
            await asyncio.sleep(self.settings.read_retry_delay_sec)
            result = await self.reader.read(pool_address)
        return result

    async def process(self, event: PoolCreatedEvent) -> Outcome:
        pool = event.pool_address
        stage = "read"
        try:
            reserves = await self._read_reserves(pool)
            if isinstance(reserves, ReadError):
                return self._report(Outcome(status="failed", stage=stage, reason=f"read-error: {reserves}", pool_address=pool))
            logger.info(
                "New pair {} token0: {}, reserve0: {}, token1: {}, reserve1: {} (block {})",
                pool,
                event.token0,
                reserves.reserve0,
                event.token1,
                reserves.reserve1,
                reserves.observed_at_block,
            )

            stage = "evaluate"
            decision = evaluate(event, reserves, self.quote_token)
            if not isinstance(decision, Eligible):
                logger.info("Pair {} skipped: {} ({})", pool, decision.reason, type(decision).__name__)
                return self._report(Outcome(status="ineligible", stage=stage, reason=decision.reason, pool_address=pool))
            logger.info("Swap {} for target token {} in pair {}", decision.quote_token, decision.target_token, pool)

            stage = "build"
            intent = build_swap_intent(decision, self.settings, self.recipient, now=self.clock())
            if isinstance(intent, ValidationError):
                return self._report(Outcome(status="failed", stage=stage, reason=f"invalid-intent: {intent}", pool_address=pool))

            stage = "submit"
            return self._report(await self.tracker.execute(intent))
        except asyncio.CancelledError:
            logger.warning("Processing of pair {} abandoned at {}", pool, stage)
            raise
        except Exception as e:
            logger.exception("Unhandled error for pair {} at {}: {}", pool, stage, e)
            return self._report(Outcome(status="failed", stage=stage, reason=f"unexpected: {e}", pool_address=pool))

    def _report(self, outcome: Outcome) -> Outcome:
        self.summary.record(outcome)
        if outcome.status == "failed":
            logger.warning(
                "Pair {} failed | stage {} | reason {} | tx {}",
                outcome.pool_address,
                outcome.stage,
                outcome.reason,
                outcome.tx_hash,
            )
        else:
            logger.info("Pair {} done: {} at {}", outcome.pool_address, outcome.status, outcome.stage)
        return outcome

    async def _drain(self) -> None:
        workers = set(self._workers)
        if workers:
            logger.info("Waiting up to {}s for {} in-flight pair(s)", self.settings.shutdown_grace_sec, len(workers))
            _done, pending = await asyncio.wait(workers, timeout=self.settings.shutdown_grace_sec)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Abandoned {} in-flight pair(s) after the grace period", len(pending))
        await self.tracker.flush()
