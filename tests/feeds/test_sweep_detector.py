from datetime import datetime, timedelta, timezone

from fusion_engine.feeds.messages import TradeEvent
from fusion_engine.feeds.sweeps import SweepDetector

NOW = datetime(2025, 10, 17, 15, 0, tzinfo=timezone.utc)
OPTION = "SPY251017C00580000"


def trade(price=2.5, size=10_000, conditions=(10,), symbol=OPTION, at=NOW):
    return TradeEvent(symbol, at, price=price, size=size, conditions=conditions)


def test_large_intermarket_sweep_is_recorded():
    detector = SweepDetector(now_provider=lambda: NOW)

    sweep = detector.on_trade(trade())

    assert sweep is not None
    assert sweep.premium == 2_500_000
    assert sweep.underlying == "SPY"
    assert sweep.option_type == "call"
    assert sweep.strike == 580.0
    assert detector.recent_sweeps("spy") == [sweep]
    assert detector.recent_sweeps("QQQ") == []


def test_small_or_unflagged_trades_are_ignored():
    detector = SweepDetector(now_provider=lambda: NOW)

    assert detector.on_trade(trade(size=100)) is None
    assert detector.on_trade(trade(conditions=(1, 2))) is None
    assert detector.on_trade(trade(symbol="SPY")) is None
    assert detector.recent_sweeps() == []


def test_old_sweeps_fall_out_of_the_window():
    moments = [NOW]
    detector = SweepDetector(window=timedelta(minutes=30), now_provider=lambda: moments[0])
    detector.on_trade(trade(at=NOW))

    moments[0] = NOW + timedelta(minutes=31)

    assert detector.recent_sweeps() == []


def test_unhealthy_feed_suppresses_detection():
    detector = SweepDetector(health_check=lambda: False, now_provider=lambda: NOW)

    assert detector.on_trade(trade()) is None
