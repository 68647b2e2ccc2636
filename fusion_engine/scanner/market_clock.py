"""Exchange-calendar helpers and scan-mode selection.

All wall-clock rules are evaluated in exchange time (America/New_York).  The
calendar only knows about weekends; exchange holidays are not modelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from fusion_engine.models import ScanMode

EXCHANGE_TZ = ZoneInfo("America/New_York")
MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)
MODE_CUTOFF = time(14, 0)
SAME_DAY_EXIT = time(15, 50)
NEXT_DAY_EXIT = time(9, 32)
HOURS_PER_YEAR = 24 * 365
MIN_HOURS_TO_EXIT = 1 / 60


@dataclass(frozen=True)
class ModeSelection:
    mode: ScanMode
    expiry: date
    exit_at: datetime
    time_to_expiry: float


def to_exchange_time(moment: Optional[datetime] = None) -> datetime:
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(EXCHANGE_TZ)


def is_trading_day(day: date) -> bool:
    return day.weekday() < 5


def next_trading_day(day: date) -> date:
    candidate = day + timedelta(days=1)
    while not is_trading_day(candidate):
        candidate += timedelta(days=1)
    return candidate


def current_or_next_trading_day(day: date) -> date:
    return day if is_trading_day(day) else next_trading_day(day)


def is_market_open(moment: Optional[datetime] = None) -> bool:
    local = to_exchange_time(moment)
    return is_trading_day(local.date()) and MARKET_OPEN <= local.time() < MARKET_CLOSE


def next_market_open(moment: Optional[datetime] = None) -> datetime:
    local = to_exchange_time(moment)
    day = local.date()
    if not (is_trading_day(day) and local.time() < MARKET_OPEN):
        day = next_trading_day(day)
    return datetime.combine(day, MARKET_OPEN, tzinfo=EXCHANGE_TZ)


def next_market_close(moment: Optional[datetime] = None) -> datetime:
    local = to_exchange_time(moment)
    day = local.date()
    if not (is_trading_day(day) and local.time() < MARKET_CLOSE):
        day = next_trading_day(day)
    return datetime.combine(day, MARKET_CLOSE, tzinfo=EXCHANGE_TZ)


def time_to_expiry_years(exit_at: datetime, moment: Optional[datetime] = None) -> float:
    """Hours from ``moment`` until ``exit_at`` expressed in years of 24 x 365 hours."""

    hours = (exit_at - to_exchange_time(moment)).total_seconds() / 3600
    return max(hours, MIN_HOURS_TO_EXIT) / HOURS_PER_YEAR


def select_mode(
    moment: Optional[datetime] = None,
    cutoff: time = MODE_CUTOFF,
    same_day_exit: time = SAME_DAY_EXIT,
    next_day_exit: time = NEXT_DAY_EXIT,
) -> ModeSelection:
    """Same-day plays before the cutoff, overnight plays from the cutoff on."""

    local = to_exchange_time(moment)
    today = local.date()
    if is_trading_day(today) and local.time() < cutoff:
        exit_at = datetime.combine(today, same_day_exit, tzinfo=EXCHANGE_TZ)
        mode = ScanMode.SAME_DAY
    elif not is_trading_day(today):
        # Weekend: the next session's same-day window is the nearest trade.
        exit_at = datetime.combine(next_trading_day(today), same_day_exit, tzinfo=EXCHANGE_TZ)
        mode = ScanMode.SAME_DAY
    else:
        exit_at = datetime.combine(next_trading_day(today), next_day_exit, tzinfo=EXCHANGE_TZ)
        mode = ScanMode.NEXT_DAY
    return ModeSelection(
        mode=mode,
        expiry=exit_at.date(),
        exit_at=exit_at,
        time_to_expiry=time_to_expiry_years(exit_at, local),
    )


__all__ = [
    "EXCHANGE_TZ",
    "ModeSelection",
    "current_or_next_trading_day",
    "is_market_open",
    "is_trading_day",
    "next_market_close",
    "next_market_open",
    "next_trading_day",
    "select_mode",
    "time_to_expiry_years",
]
