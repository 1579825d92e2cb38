from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional, Union

from loguru import logger

from pair_sniper.chains.evm import EvmClient
from pair_sniper.config import AppSettings
from pair_sniper.errors import FeedError, TransportError, UnsupportedCapabilityError
from pair_sniper.models import PoolCreatedEvent


async def fetch_window(client: EvmClient, from_block: int, to_block: int, span: int) -> list[PoolCreatedEvent]:
    """PairCreated events in [from_block, to_block], split into eth_getLogs ranges of at most `span` blocks."""
    span = max(1, span)
    out: list[PoolCreatedEvent] = []
    start = from_block
    while start <= to_block:
        end = min(to_block, start + span - 1)
        out.extend(await client.poll_pair_created(start, end))
        start = end + 1
    return out


class PollingFeed:
    mode = "poll"

    def __init__(self, client: EvmClient, settings: AppSettings):
        self.client = client
        self.settings = settings

    async def start(self, from_block: int) -> AsyncIterator[PoolCreatedEvent]:
        logger.info("Polling PairCreated logs from block {} every {}s", from_block, self.settings.feed_poll_interval_sec)
        return self._stream(from_block)

    async def _stream(self, next_block: int) -> AsyncIterator[PoolCreatedEvent]:
        failures = 0
        span = self.settings.feed_max_block_span
        while True:
            try:
                head = await self.client.block_number()
                while next_block <= head:
                    to_block = min(head, next_block + span - 1)
                    events = await self.client.poll_pair_created(next_block, to_block)
                    failures = 0
                    for ev in events:
                        yield ev
                    next_block = to_block + 1
            except TransportError as e:
                failures += 1
                if failures > self.settings.feed_reconnect_attempts:
                    raise FeedError(f"polling failed {failures} times in a row: {e}") from e
                logger.warning(
                    "Poll error ({}/{}), retrying from block {}: {}",
                    failures,
                    self.settings.feed_reconnect_attempts,
                    next_block,
                    e,
                )
                continue
            await asyncio.sleep(self.settings.feed_poll_interval_sec)


class SubscriptionFeed:
    mode = "subscribe"

    def __init__(
        self,
        client: EvmClient,
        settings: AppSettings,
        initial: Optional[AsyncIterator[PoolCreatedEvent]] = None,
    ):
        self.client = client
        self.settings = settings
        self._initial = initial

    async def start(self, from_block: int) -> AsyncIterator[PoolCreatedEvent]:
        stream, self._initial = self._initial, None
        if stream is None:
            try:
                await self.client.reconnect()
                stream = await self.client.subscribe_pair_created()
            except TransportError as e:
                raise FeedError(f"cannot re-establish subscription: {e}") from e
        return self._stream(stream, from_block)

    async def _stream(self, stream, last_block: int) -> AsyncIterator[PoolCreatedEvent]:
        failures = 0
        while True:
            try:
                if stream is None:
                    await self.client.reconnect()
                    stream = await self.client.subscribe_pair_created()
                    # Backfill what the dropped socket missed; overlap is deduped downstream
                    head = await self.client.block_number()
                    missed = await fetch_window(self.client, last_block, head, self.settings.feed_max_block_span)
                    logger.info("Resubscribed; backfilled {} event(s) from blocks {}-{}", len(missed), last_block, head)
                    failures = 0
                    for ev in missed:
                        last_block = max(last_block, ev.block_number)
                        yield ev
                async for ev in stream:
                    failures = 0
                    last_block = max(last_block, ev.block_number)
                    yield ev
                raise TransportError("subscription stream ended")
            except UnsupportedCapabilityError as e:
                logger.warning("Subscription no longer supported ({}); switching to polling", e)
                async for ev in PollingFeed(self.client, self.settings)._stream(last_block):
                    yield ev
                return
            except TransportError as e:
                stream = None
                failures += 1
                if failures > self.settings.feed_reconnect_attempts:
                    raise FeedError(f"subscription lost after {failures} reconnect attempts: {e}") from e
                logger.warning(
                    "Subscription error ({}/{}), reconnecting: {}",
                    failures,
                    self.settings.feed_reconnect_attempts,
                    e,
                )


FeedSource = Union[PollingFeed, SubscriptionFeed]


class PairCreatedFeed:
    """Restartable stream of PairCreated events.

    The transport is probed once, on the first `open()`: a push subscription
    is attempted and, if the provider reports it as unsupported, the feed
    polls for the rest of the process lifetime. Every `open()` starts at the
    current head; nothing before it is replayed.
    """

    def __init__(self, client: EvmClient, settings: AppSettings):
        self.client = client
        self.settings = settings
        self.source: Optional[FeedSource] = None

    @property
    def mode(self) -> Optional[str]:
        return self.source.mode if self.source is not None else None

    async def _select_source(self) -> FeedSource:
        try:
            stream = await self.client.subscribe_pair_created()
        except UnsupportedCapabilityError as e:
            logger.warning("Push subscriptions unsupported ({}); falling back to polling", e)
            return PollingFeed(self.client, self.settings)
        except TransportError as e:
            raise FeedError(f"cannot subscribe to PairCreated: {e}") from e
        return SubscriptionFeed(self.client, self.settings, initial=stream)

    async def open(self) -> AsyncIterator[PoolCreatedEvent]:
        try:
            head = await self.client.block_number()
        except TransportError as e:
            raise FeedError(f"cannot read chain head: {e}") from e
        if self.source is None:
            self.source = await self._select_source()
            logger.info("Event feed mode: {}", self.source.mode)
        try:
            return await self.source.start(head)
        except UnsupportedCapabilityError as e:
            logger.warning("Subscription refused on reopen ({}); polling from now on", e)
            self.source = PollingFeed(self.client, self.settings)
            return await self.source.start(head)
