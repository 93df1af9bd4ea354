"""
Intraday breakout signal source.

This source tracks the highest and lowest mid price of each UTC
trading day and proposes a long or short entry when the current mid
breaks those levels.  It never proposes both directions on the same
tick and honours a configured trading session window.  The stop of a
proposed entry sits at the opposite intraday extreme.

It is the default source of the paper and live cycles; replays use
scripted entries instead.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from ..config.schema import Config
from ..execution.models import BUY, SELL, EntrySignal, StressedQuote
from ..utils.timeutils import is_in_session, parse_time_str, to_timestamp
from .signals import SignalSource


@dataclass
class IntradayState:
    """Holds intraday high/low levels and the last processed date."""
    high: Optional[float] = None
    low: Optional[float] = None
    current_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'IntradayState':
        return cls(**data) if data else cls()


class IntradayBreakoutSignalSource(SignalSource):
    """Generate entry signals based on intraday breakout logic."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.session_start = parse_time_str(config.live.session_start)
        self.session_end = parse_time_str(config.live.session_end)
        self.states: Dict[str, IntradayState] = {}
        self._pending: Dict[str, EntrySignal] = {}

    def evaluate(self, quote: StressedQuote, state: IntradayState) -> Optional[str]:
        """Evaluate a single quote against the intraday levels.

        Parameters
        ----------
        quote : StressedQuote
            Current quote; its mid price is compared with the levels.
        state : IntradayState
            Previous intraday high/low and date; reset in place on a new day.

        Returns
        -------
        str or None
            ``BUY`` or ``SELL`` when a level breaks, otherwise ``None``.
        """
        # Reset intraday levels if we are on a new day
        date = to_timestamp(quote.ts).strftime("%Y-%m-%d")
        if state.current_date != date:
            state.high = None
            state.low = None
            state.current_date = date

        price = quote.mid
        long_signal = state.high is not None and price > state.high
        short_signal = state.low is not None and price < state.low
        # Skip if both triggers
        side: Optional[str] = None
        if long_signal and not short_signal:
            side = BUY
        elif short_signal and not long_signal:
            side = SELL

        if not is_in_session(quote.ts, self.session_start, self.session_end):
            side = None
        return side

    def _update_levels(self, quote: StressedQuote, state: IntradayState) -> None:
        if state.high is None or quote.mid > state.high:
            state.high = float(quote.mid)
        if state.low is None or quote.mid < state.low:
            state.low = float(quote.mid)

    def observe(self, pair: str, quote: StressedQuote) -> None:
        state = self.states.setdefault(pair, IntradayState())
        side = self.evaluate(quote, state)
        self._pending.pop(pair, None)
        if side == BUY and state.low is not None:
            self._pending[pair] = EntrySignal(
                ts=quote.ts, side=BUY, stop_price=state.low, label='intraday_breakout_long',
            )
        elif side == SELL and state.high is not None:
            self._pending[pair] = EntrySignal(
                ts=quote.ts, side=SELL, stop_price=state.high, label='intraday_breakout_short',
            )
        self._update_levels(quote, state)

    def next_signal(self, pair: str, ts: int) -> Optional[EntrySignal]:
        return self._pending.pop(pair, None)

    def export_state(self, pair: str) -> Optional[Dict[str, Any]]:
        state = self.states.get(pair)
        return state.to_dict() if state else None

    def import_state(self, pair: str, data: Optional[Dict[str, Any]]) -> None:
        if data:
            self.states[pair] = IntradayState.from_dict(data)
