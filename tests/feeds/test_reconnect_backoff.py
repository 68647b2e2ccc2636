import asyncio

import pytest

from fusion_engine.feeds import DXLinkFeed, FeedState, PolygonSocketFeed, ReconnectBackoff


def test_delays_double_until_capped():
    backoff = ReconnectBackoff(base=5, cap=60)

    delays = [backoff.next_delay() for _ in range(7)]

    assert delays == [5, 10, 20, 40, 60, 60, 60]
    assert all(a <= b for a, b in zip(delays, delays[1:]))


def test_reset_starts_over():
    backoff = ReconnectBackoff(base=1, cap=8)
    for _ in range(4):
        backoff.next_delay()

    backoff.reset()

    assert backoff.attempts == 0
    assert backoff.next_delay() == 1


def test_run_loop_backs_off_between_connect_failures():
    delays = []
    feed = None

    async def sleep(delay):
        delays.append(delay)

    async def connector(url):
        if len(delays) == 3:
            feed._closed = True
        raise OSError("connection refused")

    feed = PolygonSocketFeed("wss://example.test", api_key="key", connector=connector, sleep=sleep)

    asyncio.run(feed.run())

    assert delays == [5, 10, 20]
    assert feed.state == FeedState.DISCONNECTED
    assert feed.available


def test_successful_login_resets_backoff(socket_connector, caches):
    quotes, greeks = caches
    delays = []
    connect, sockets = socket_connector(
        [[{"ev": "status", "status": "auth_success"}]],
        [[{"ev": "status", "status": "auth_success"}]],
    )
    feed = None

    async def sleep(delay):
        delays.append(delay)
        if len(delays) == 2:
            feed._closed = True

    feed = PolygonSocketFeed(
        "wss://example.test", api_key="key", connector=connect, sleep=sleep, quote_cache=quotes, greeks_cache=greeks
    )

    asyncio.run(feed.run())

    # Each connection logged in, so every reconnect starts from the base delay.
    assert delays == [5, 5]
    assert len(sockets) == 2
    assert all(socket.closed for socket in sockets)


def test_auth_failure_marks_feed_unavailable():
    async def sleep(delay):
        raise AssertionError("auth failures must not be retried")

    feed = DXLinkFeed("wss://example.test", token=None, sleep=sleep)

    asyncio.run(feed.run())

    assert not feed.available
    assert feed.state == FeedState.DISCONNECTED
    assert not feed.health().available
