import asyncio
from datetime import datetime, timedelta, timezone

from fusion_engine.feeds import GreeksCache, PolygonSocketFeed, QuoteCache
from fusion_engine.feeds.messages import AggregateEvent, GreeksEvent, QuoteEvent, TradeEvent

NOW = datetime(2025, 10, 17, 15, 0, tzinfo=timezone.utc)


def test_newer_events_win_and_older_are_dropped():
    cache = QuoteCache("test", now_provider=lambda: NOW)

    async def run():
        await cache.apply(QuoteEvent("SPY", NOW, bid=580.0, ask=580.2))
        await cache.apply(TradeEvent("SPY", NOW + timedelta(seconds=1), price=580.1, size=300))
        stale = await cache.apply(QuoteEvent("SPY", NOW - timedelta(seconds=5), bid=1.0, ask=2.0))
        return stale, await cache.get("SPY", 10)

    stale, snapshot = asyncio.run(run())

    assert stale is None
    assert snapshot.bid == 580.0
    assert snapshot.ask == 580.2
    assert snapshot.last == 580.1
    assert snapshot.volume == 300
    assert snapshot.mid == 580.1
    assert snapshot.source == "test"


def test_aggregate_sets_last_and_volume():
    cache = QuoteCache("test", now_provider=lambda: NOW)

    async def run():
        await cache.apply(AggregateEvent("QQQ", NOW, open=480, high=481, low=479, close=480.5, volume=12000))
        return await cache.get("QQQ", 10)

    snapshot = asyncio.run(run())

    assert snapshot.last == 480.5
    assert snapshot.volume == 12000


def test_stale_quotes_are_hidden_and_evicted():
    moments = [NOW]
    cache = QuoteCache("test", now_provider=lambda: moments[0])

    async def run():
        await cache.apply(QuoteEvent("SPY", NOW, bid=580.0, ask=580.2))
        moments[0] = NOW + timedelta(seconds=11)
        hidden = await cache.get("SPY", 10)
        evicted = await cache.evict_stale(10)
        return hidden, evicted

    hidden, evicted = asyncio.run(run())

    assert hidden is None
    assert evicted == 1
    assert len(cache) == 0


def test_greeks_cache_respects_freshness():
    moments = [NOW]
    cache = GreeksCache(now_provider=lambda: moments[0])
    event = GreeksEvent("SPY251017C00580000", NOW, delta=0.21, gamma=0.15, theta=-0.05, vega=0.04, rho=0.01, volatility=0.18)

    async def run():
        await cache.apply(event)
        fresh = await cache.get("SPY251017C00580000", 60)
        moments[0] = NOW + timedelta(seconds=61)
        stale = await cache.get("SPY251017C00580000", 60)
        return fresh, stale

    fresh, stale = asyncio.run(run())

    assert fresh.delta == 0.21
    assert fresh.implied_volatility == 0.18
    assert stale is None


def test_wait_for_quote_times_out_and_cleans_up(caches):
    quotes, greeks = caches
    feed = PolygonSocketFeed("wss://example.test", api_key="key", quote_cache=quotes, greeks_cache=greeks)

    result = asyncio.run(feed.wait_for_quote("SPY", timeout=0.01))

    assert result is None
    assert feed.pending_requests == 0


def test_wait_for_quote_resolves_on_next_tick(caches):
    quotes, greeks = caches
    feed = PolygonSocketFeed("wss://example.test", api_key="key", quote_cache=quotes, greeks_cache=greeks)

    async def run():
        waiter = asyncio.create_task(feed.wait_for_quote("spy", timeout=1.0))
        for _ in range(3):
            await asyncio.sleep(0)
        assert feed.pending_requests == 1
        await feed.dispatch(QuoteEvent("SPY", NOW, bid=580.0, ask=580.2))
        return await waiter

    snapshot = asyncio.run(run())

    assert snapshot.symbol == "SPY"
    assert feed.pending_requests == 0


def test_option_quotes_use_the_longer_freshness(caches):
    quotes, greeks = caches
    feed = PolygonSocketFeed(
        "wss://example.test", api_key="key", quote_cache=quotes, greeks_cache=greeks, quote_freshness=10, option_freshness=60
    )

    async def run():
        await feed.dispatch(QuoteEvent("SPY", NOW - timedelta(seconds=30), bid=580.0, ask=580.2))
        await feed.dispatch(QuoteEvent("SPY251017C00580000", NOW - timedelta(seconds=30), bid=1.1, ask=1.2))
        return await feed.get_quote("SPY"), await feed.get_quote("O:SPY251017C00580000")

    equity, option = asyncio.run(run())

    assert equity is None
    assert option.mid == 1.15
