"""
Weekly FX market hours.

The spot FX market trades continuously from the Sunday open to the
Friday close (UTC).  New entries are rejected while it is shut.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import pandas as pd

from ..config.schema import MarketHoursConfig
from ..utils.timeutils import to_timestamp


@dataclass
class MarketGateState:
    market_closed: bool
    reason_code: str
    reopens_at_ms: Optional[int] = None


def _ms(ts: pd.Timestamp) -> int:
    return int(ts.value // 1_000_000)


def evaluate_market_gate(now_ms: int, cfg: MarketHoursConfig) -> MarketGateState:
    now = to_timestamp(now_ms)
    day = now.dayofweek  # Monday=0 ... Sunday=6
    friday_closed = day == 4 and now.hour >= cfg.friday_close_hour_utc
    saturday_closed = day == 5
    sunday_closed = day == 6 and now.hour < cfg.sunday_open_hour_utc
    if not (friday_closed or saturday_closed or sunday_closed):
        return MarketGateState(market_closed=False, reason_code='MARKET_OPEN')

    days_until_sunday = 6 - day
    reopen = now.normalize() + pd.Timedelta(days=days_until_sunday, hours=cfg.sunday_open_hour_utc)
    return MarketGateState(
        market_closed=True,
        reason_code='MARKET_CLOSED_WEEKEND',
        reopens_at_ms=_ms(reopen),
    )
