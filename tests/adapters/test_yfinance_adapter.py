from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from fusion_engine.adapters.base import AdapterError, DataNotAvailable
from fusion_engine.adapters.yfinance import YFinanceHistoryAdapter, frame_to_bars


def make_history() -> pd.DataFrame:
    index = pd.DatetimeIndex([datetime(2024, 1, 2), datetime(2024, 1, 3), datetime(2024, 1, 4)])
    return pd.DataFrame(
        {
            "Open": [470.0, 471.0, 472.0],
            "High": [472.0, 473.0, 474.0],
            "Low": [469.0, 470.0, 471.0],
            "Close": [471.5, np.nan, 473.2],
            "Volume": [1_000_000, 900_000, 950_000],
        },
        index=index,
    )


@pytest.fixture
def ticker_mock():
    return MagicMock()


def test_frame_to_bars_skips_invalid_closes_and_localizes():
    bars = frame_to_bars(make_history())

    assert [bar.close for bar in bars] == [471.5, 473.2]
    # Midnight in New York is 05:00 UTC in January.
    assert bars[0].timestamp == datetime(2024, 1, 2, 5, 0, tzinfo=timezone.utc)
    assert bars[0].volume == 1_000_000


def test_frame_to_bars_handles_empty_frames():
    assert frame_to_bars(pd.DataFrame()) == []


def test_get_bars_retries_then_returns(ticker_mock):
    ticker_mock.history.side_effect = [Exception("rate limit"), make_history()]
    delays = []

    async def sleep(delay):
        delays.append(delay)

    adapter = YFinanceHistoryAdapter(ticker_factory=lambda _: ticker_mock, max_retries=3, sleep=sleep)

    with patch("fusion_engine.adapters.yfinance.random.uniform", return_value=0):
        bars = asyncio.run(adapter.get_bars("SPY", date(2024, 1, 2), date(2024, 1, 4)))

    assert ticker_mock.history.call_count == 2
    assert delays == [0.75]
    assert len(bars) == 2
    _, kwargs = ticker_mock.history.call_args
    assert kwargs == {"start": "2024-01-02", "end": "2024-01-05", "interval": "1d"}


def test_get_bars_raises_after_exhausting_retries(ticker_mock):
    ticker_mock.history.side_effect = Exception("boom")

    async def sleep(delay):
        return None

    adapter = YFinanceHistoryAdapter(ticker_factory=lambda _: ticker_mock, max_retries=2, sleep=sleep)

    with pytest.raises(AdapterError):
        asyncio.run(adapter.get_bars("SPY", date(2024, 1, 2), date(2024, 1, 4)))
    assert ticker_mock.history.call_count == 2


def test_empty_history_is_data_not_available(ticker_mock):
    ticker_mock.history.return_value = pd.DataFrame()
    adapter = YFinanceHistoryAdapter(ticker_factory=lambda _: ticker_mock)

    with pytest.raises(DataNotAvailable):
        asyncio.run(adapter.get_bars("SPY", date(2024, 1, 2), date(2024, 1, 4)))


def test_unsupported_interval_is_data_not_available(ticker_mock):
    adapter = YFinanceHistoryAdapter(ticker_factory=lambda _: ticker_mock)

    with pytest.raises(DataNotAvailable):
        asyncio.run(adapter.get_bars("SPY", date(2024, 1, 2), date(2024, 1, 4), timespan="week"))
    ticker_mock.history.assert_not_called()
