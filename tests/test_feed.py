from __future__ import annotations

import asyncio

import pytest

from pair_sniper.chains.feed import PairCreatedFeed, fetch_window
from pair_sniper.errors import FeedError, TransportError, UnsupportedCapabilityError

from conftest import FakeClient, make_event


async def take(stream, n):
    out = []
    async for ev in stream:
        out.append(ev)
        if len(out) == n:
            break
    return out


@pytest.mark.asyncio
async def test_falls_back_to_polling_when_subscriptions_unsupported(settings):
    a = make_event(1, block=100)
    b = make_event(2, block=102)
    client = FakeClient(
        heads=[100, 100, 101, 102],
        logs=[a, b],
        subscribe_error=UnsupportedCapabilityError("http provider"),
    )
    feed = PairCreatedFeed(client, settings)

    stream = await feed.open()
    events = await asyncio.wait_for(take(stream, 2), timeout=2)

    assert feed.mode == "poll"
    assert events == [a, b]
    # contiguous windows, no block polled twice
    starts = [lo for lo, _ in client.poll_calls]
    assert starts == sorted(set(starts))


@pytest.mark.asyncio
async def test_mode_is_probed_only_once(settings):
    client = FakeClient(heads=[100], subscribe_error=UnsupportedCapabilityError("nope"))
    feed = PairCreatedFeed(client, settings)
    await feed.open()
    await feed.open()
    assert client.subscribe_calls == 1


@pytest.mark.asyncio
async def test_subscription_delivers_events(settings):
    a, b = make_event(1), make_event(2, block=101)
    client = FakeClient(subscriptions=[[a, b]])
    feed = PairCreatedFeed(client, settings)
    stream = await feed.open()
    assert feed.mode == "subscribe"
    assert await asyncio.wait_for(take(stream, 2), timeout=2) == [a, b]


@pytest.mark.asyncio
async def test_subscription_drop_resubscribes_and_backfills(settings):
    a = make_event(1, block=100)
    missed = make_event(2, block=103)
    c = make_event(3, block=104)
    client = FakeClient(
        heads=[100, 104],
        logs=[a, missed],
        subscriptions=[[a, TransportError("socket closed")], [c]],
    )
    feed = PairCreatedFeed(client, settings)
    stream = await feed.open()

    events = await asyncio.wait_for(take(stream, 4), timeout=2)

    assert client.reconnects == 1
    # backfill starts at the last delivered block, so `a` shows up again for dedup to drop
    assert events == [a, a, missed, c]
    assert client.poll_calls[0][0] == 100


@pytest.mark.asyncio
async def test_subscription_reconnect_budget_raises_feed_error(settings):
    s = settings.model_copy(update={"feed_reconnect_attempts": 2})
    client = FakeClient(subscriptions=[[TransportError("drop")]])
    feed = PairCreatedFeed(client, s)
    stream = await feed.open()
    with pytest.raises(FeedError):
        await asyncio.wait_for(take(stream, 1), timeout=2)
    # one initial subscription plus two reconnect attempts
    assert client.subscribe_calls == 3


@pytest.mark.asyncio
async def test_polling_errors_escalate_after_budget(settings):
    s = settings.model_copy(update={"feed_reconnect_attempts": 1})
    client = FakeClient(heads=[100], subscribe_error=UnsupportedCapabilityError("http"))
    client.poll_errors = [TransportError("boom"), TransportError("boom again")]
    feed = PairCreatedFeed(client, s)
    stream = await feed.open()
    with pytest.raises(FeedError):
        await asyncio.wait_for(take(stream, 1), timeout=2)


@pytest.mark.asyncio
async def test_polling_recovers_from_single_error(settings):
    a = make_event(1, block=100)
    client = FakeClient(heads=[100], logs=[a], subscribe_error=UnsupportedCapabilityError("http"))
    client.poll_errors = [TransportError("blip")]
    feed = PairCreatedFeed(client, settings)
    stream = await feed.open()
    assert await asyncio.wait_for(take(stream, 1), timeout=2) == [a]


@pytest.mark.asyncio
async def test_open_starts_at_current_head(settings):
    old = make_event(1, block=90)
    fresh = make_event(2, block=200)
    client = FakeClient(heads=[200], logs=[old, fresh], subscribe_error=UnsupportedCapabilityError("http"))
    feed = PairCreatedFeed(client, settings)
    stream = await feed.open()
    assert await asyncio.wait_for(take(stream, 1), timeout=2) == [fresh]


@pytest.mark.asyncio
async def test_open_fails_when_head_unreadable(settings):
    class DeadClient(FakeClient):
        async def block_number(self):
            raise TransportError("down")

    feed = PairCreatedFeed(DeadClient(), settings)
    with pytest.raises(FeedError):
        await feed.open()


@pytest.mark.asyncio
async def test_fetch_window_splits_ranges():
    client = FakeClient()
    await fetch_window(client, 10, 25, span=10)
    assert client.poll_calls == [(10, 19), (20, 25)]


@pytest.mark.asyncio
async def test_reopen_falls_back_to_polling_when_subscribe_refused(settings):
    s = settings.model_copy(update={"feed_reconnect_attempts": 0})
    fresh = make_event(2, block=100)
    client = FakeClient(heads=[100], logs=[fresh], subscriptions=[[TransportError("drop")]])
    feed = PairCreatedFeed(client, s)

    stream = await feed.open()
    with pytest.raises(FeedError):
        await asyncio.wait_for(take(stream, 1), timeout=2)

    client.subscribe_error = UnsupportedCapabilityError("subscriptions disabled")
    stream = await feed.open()

    assert feed.mode == "poll"
    assert await asyncio.wait_for(take(stream, 1), timeout=2) == [fresh]
