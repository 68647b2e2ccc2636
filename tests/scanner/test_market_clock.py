from datetime import date, datetime, time, timezone

import pytest

from fusion_engine.models import ScanMode
from fusion_engine.scanner.market_clock import (
    EXCHANGE_TZ,
    HOURS_PER_YEAR,
    current_or_next_trading_day,
    is_market_open,
    next_market_close,
    next_market_open,
    next_trading_day,
    select_mode,
    time_to_expiry_years,
)

# 2025-10-17 is a Friday; New York is on daylight time (UTC-4).
FRIDAY = date(2025, 10, 17)
MONDAY = date(2025, 10, 20)


def eastern(day, hour, minute=0):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=EXCHANGE_TZ)


def test_before_cutoff_is_same_day():
    selection = select_mode(eastern(FRIDAY, 13, 0))

    assert selection.mode == ScanMode.SAME_DAY
    assert selection.expiry == FRIDAY
    assert selection.exit_at == eastern(FRIDAY, 15, 50)
    assert selection.time_to_expiry == pytest.approx((2 + 50 / 60) / HOURS_PER_YEAR)


def test_cutoff_switches_to_next_trading_day():
    selection = select_mode(eastern(FRIDAY, 14, 0))

    assert selection.mode == ScanMode.NEXT_DAY
    assert selection.expiry == MONDAY
    assert selection.exit_at == eastern(MONDAY, 9, 32)


def test_weekend_targets_next_session_same_day_window():
    selection = select_mode(eastern(date(2025, 10, 18), 11, 0))

    assert selection.mode == ScanMode.SAME_DAY
    assert selection.expiry == MONDAY
    assert selection.exit_at == eastern(MONDAY, 15, 50)


def test_utc_input_is_converted_to_exchange_time():
    # 17:30 UTC is 13:30 in New York.
    selection = select_mode(datetime(2025, 10, 17, 17, 30, tzinfo=timezone.utc))

    assert selection.mode == ScanMode.SAME_DAY
    assert select_mode(datetime(2025, 10, 17, 18, 30)).mode == ScanMode.NEXT_DAY


def test_custom_cutoff():
    selection = select_mode(eastern(FRIDAY, 13, 0), cutoff=time(12, 0))

    assert selection.mode == ScanMode.NEXT_DAY


def test_time_to_expiry_is_floored_at_one_minute():
    exit_at = eastern(FRIDAY, 15, 50)

    assert time_to_expiry_years(exit_at, eastern(FRIDAY, 16, 30)) == pytest.approx((1 / 60) / HOURS_PER_YEAR)


@pytest.mark.parametrize(
    "moment, expected",
    [
        (eastern(FRIDAY, 9, 29), False),
        (eastern(FRIDAY, 9, 30), True),
        (eastern(FRIDAY, 15, 59), True),
        (eastern(FRIDAY, 16, 0), False),
        (eastern(date(2025, 10, 18), 12, 0), False),
    ],
)
def test_is_market_open(moment, expected):
    assert is_market_open(moment) is expected


def test_next_session_boundaries():
    assert next_market_open(eastern(FRIDAY, 8, 0)) == eastern(FRIDAY, 9, 30)
    assert next_market_open(eastern(FRIDAY, 10, 0)) == eastern(MONDAY, 9, 30)
    assert next_market_close(eastern(FRIDAY, 10, 0)) == eastern(FRIDAY, 16, 0)
    assert next_market_close(eastern(FRIDAY, 16, 5)) == eastern(MONDAY, 16, 0)


def test_trading_day_helpers_skip_weekends():
    assert next_trading_day(FRIDAY) == MONDAY
    assert current_or_next_trading_day(date(2025, 10, 19)) == MONDAY
    assert current_or_next_trading_day(FRIDAY) == FRIDAY
