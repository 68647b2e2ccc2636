import asyncio
import json
from datetime import datetime, timezone

import pytest

from fusion_engine.adapters.base import AuthError, TransportError
from fusion_engine.feeds import DXLinkFeed, FeedState
from fusion_engine.feeds.dxlink import GREEKS_FIELDS, QUOTE_FIELDS, decode_feed_data, decode_frame, stride_records
from fusion_engine.feeds.messages import AuthStateEvent, ChannelOpenedEvent, GreeksEvent, KeepaliveEvent, QuoteEvent, TradeEvent

NOW_MS = int(datetime(2025, 10, 17, 15, 0, tzinfo=timezone.utc).timestamp() * 1000)

OPTION = ".SPY251017C580"


def quote_values(symbol, bid, ask, stamp=NOW_MS):
    return ["Quote", symbol, stamp, 0, 0, stamp, "Q", bid, 100, stamp, "Q", ask, 200]


def trade_values(symbol, price, size, stamp=NOW_MS):
    return ["Trade", symbol, stamp, stamp, 0, 0, "Q", price, 0.5, size, 1_000_000, 0, "UP"]


def greeks_values(symbol, stamp=NOW_MS):
    return ["Greeks", symbol, stamp, stamp, 1.12, 0.18, 0.21, 0.15, -0.05, 0.01, 0.04, 0]


def test_stride_records_splits_flat_arrays():
    values = quote_values("SPY", 580.0, 580.2) + quote_values("QQQ", 480.0, 480.1)

    records = list(stride_records(values, QUOTE_FIELDS))

    assert [record["eventSymbol"] for record in records] == ["SPY", "QQQ"]
    assert records[1]["askPrice"] == 480.1


def test_stride_records_ignores_trailing_partial_record():
    values = quote_values("SPY", 580.0, 580.2) + ["Quote", "QQQ"]

    assert len(list(stride_records(values, QUOTE_FIELDS))) == 1


def test_decode_feed_data_canonicalizes_and_skips_bad_records():
    greeks = greeks_values(OPTION)
    greeks[GREEKS_FIELDS.index("delta")] = "NaN"
    data = [
        "Quote",
        quote_values("SPY", 580.0, 580.2) + quote_values("IWM", "NaN", None),
        "Greeks",
        greeks_values(OPTION) + greeks,
        "Trade",
        trade_values(OPTION, 1.12, 40) + trade_values("SPY", 0, 10),
        "Summary",
        [1, 2, 3],
    ]

    events = decode_feed_data(data)

    assert [type(event) for event in events] == [QuoteEvent, GreeksEvent, TradeEvent]
    quote, greeks_event, trade = events
    assert quote.symbol == "SPY" and quote.bid == 580.0 and quote.ask == 580.2
    assert greeks_event.symbol == "SPY251017C00580000"
    assert greeks_event.delta == 0.21
    assert greeks_event.vega == 0.04
    assert greeks_event.volatility == 0.18
    assert trade.symbol == "SPY251017C00580000"
    assert trade.size == 40


@pytest.mark.parametrize(
    "frame, expected",
    [
        ({"type": "AUTH_STATE", "channel": 0, "state": "AUTHORIZED"}, AuthStateEvent(True, "AUTHORIZED")),
        ({"type": "AUTH_STATE", "channel": 0, "state": "UNAUTHORIZED"}, AuthStateEvent(False, "UNAUTHORIZED")),
        ({"type": "CHANNEL_OPENED", "channel": 1}, ChannelOpenedEvent(1)),
        ({"type": "KEEPALIVE", "channel": 0}, KeepaliveEvent(0)),
    ],
)
def test_decode_control_frames(frame, expected):
    assert decode_frame(json.dumps(frame)) == [expected]


def test_decode_ignores_garbage():
    assert decode_frame("not json") == []
    assert decode_frame("[1, 2]") == []
    assert decode_frame('{"type": "SETUP"}') == []


@pytest.mark.parametrize("channel", [None, "feed", [1]])
def test_bad_channel_frames_are_dropped(channel):
    assert decode_frame(json.dumps({"type": "CHANNEL_OPENED", "channel": channel})) == []
    assert decode_frame(json.dumps({"type": "KEEPALIVE", "channel": channel})) == []


def test_bad_channel_frame_does_not_break_the_connection(socket_connector, caches):
    quotes, greeks = caches
    connect, _ = socket_connector(
        [
            {"type": "AUTH_STATE", "channel": 0, "state": "AUTHORIZED"},
            {"type": "CHANNEL_OPENED", "channel": None, "service": "FEED"},
            {"type": "CHANNEL_OPENED", "channel": 1, "service": "FEED"},
            {"type": "FEED_DATA", "channel": 1, "data": ["Quote", quote_values("SPY", 580.0, 580.2)]},
        ]
    )
    feed = DXLinkFeed("wss://example.test", token="token", connector=connect, quote_cache=quotes, greeks_cache=greeks)

    async def run():
        # The server closing the socket is the only error that surfaces.
        with pytest.raises(TransportError):
            await feed.connect_once()
        return await feed.get_quote("SPY")

    assert asyncio.run(run()).mid == 580.1


def test_full_handshake_subscribes_and_fills_caches(socket_connector, caches):
    quotes, greeks = caches
    connect, sockets = socket_connector(
        [
            {"type": "SETUP", "channel": 0, "keepaliveTimeout": 60},
            {"type": "AUTH_STATE", "channel": 0, "state": "UNAUTHORIZED"},
            {"type": "AUTH_STATE", "channel": 0, "state": "AUTHORIZED"},
            {"type": "CHANNEL_OPENED", "channel": 1, "service": "FEED"},
            {"type": "KEEPALIVE", "channel": 0},
            {
                "type": "FEED_DATA",
                "channel": 1,
                "data": ["Quote", quote_values("SPY", 580.0, 580.2), "Greeks", greeks_values(OPTION)],
            },
        ]
    )
    feed = DXLinkFeed("wss://example.test", token="token", connector=connect, quote_cache=quotes, greeks_cache=greeks)
    trades = []
    feed.add_trade_handler(trades.append)

    async def run():
        await feed.subscribe(["SPY", "O:SPY251017C00580000"])
        with pytest.raises(TransportError):
            await feed.connect_once()
        return await feed.get_quote("SPY"), await feed.get_greeks("SPY251017C00580000")

    quote, option_greeks = asyncio.run(run())

    sent = sockets[0].sent
    assert [frame["type"] for frame in sent] == [
        "SETUP",
        "AUTH",
        "CHANNEL_REQUEST",
        "FEED_SETUP",
        "FEED_SUBSCRIPTION",
        "KEEPALIVE",
    ]
    assert sent[1]["token"] == "token"
    assert sent[3]["acceptDataFormat"] == "COMPACT"
    assert sorted(entry["symbol"] for entry in sent[4]["add"] if entry["type"] == "Greeks") == [OPTION]
    assert {entry["symbol"] for entry in sent[4]["add"]} == {"SPY", OPTION}
    assert quote.mid == 580.1
    assert option_greeks.delta == 0.21
    assert feed.state == FeedState.RECEIVING


def test_second_unauthorized_is_an_auth_error(socket_connector, caches):
    quotes, greeks = caches
    connect, _ = socket_connector(
        [
            {"type": "AUTH_STATE", "channel": 0, "state": "UNAUTHORIZED"},
            {"type": "AUTH_STATE", "channel": 0, "state": "UNAUTHORIZED"},
        ]
    )
    feed = DXLinkFeed("wss://example.test", token="bad", connector=connect, quote_cache=quotes, greeks_cache=greeks)

    asyncio.run(feed.run())

    assert not feed.available


def test_token_provider_supplies_token_and_url(socket_connector, caches):
    quotes, greeks = caches
    connect, sockets = socket_connector([])
    urls = []

    async def connector(url):
        urls.append(url)
        return await connect(url)

    async def provider():
        return "fresh-token", "wss://dxlink.example.test/realtime"

    feed = DXLinkFeed(token_provider=provider, connector=connector, quote_cache=quotes, greeks_cache=greeks)

    async def run():
        with pytest.raises(TransportError):
            await feed.connect_once()

    asyncio.run(run())

    assert urls == ["wss://dxlink.example.test/realtime"]
    assert sockets[0].sent[1] == {"type": "AUTH", "channel": 0, "token": "fresh-token"}


def test_error_frame_before_setup_completes_is_fatal(socket_connector, caches):
    quotes, greeks = caches
    connect, _ = socket_connector([{"type": "ERROR", "error": "UNSUPPORTED_PROTOCOL", "message": "bad version"}])
    feed = DXLinkFeed("wss://example.test", token="token", connector=connect, quote_cache=quotes, greeks_cache=greeks)

    with pytest.raises(AuthError):
        asyncio.run(feed.connect_once())
