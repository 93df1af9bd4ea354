"""
Deterministic replay engine.

This module contains the `ReplayEngine` class which drives a recorded
quote stream through the same stress model, slippage model and
position state machine used by the live cycle.  At each quote it
stresses the quote, manages the open position, admits any entry
signals that are due while flat and records one equity point.  A
position still open at the end of the stream is closed with
``END_OF_REPLAY_FLAT``.

Replay input files are JSON documents of the form::

    {"pair": "EURUSD",
     "quotes": [{"ts": ..., "bid": ..., "ask": ..., "eventRisk": "high", ...}],
     "entries": [{"ts": ..., "side": "BUY", "stopPrice": ..., ...}]}

where timestamps are epoch milliseconds or ISO‑8601 strings.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config.schema import Config, clone_config
from ..reporting.metrics import compute_summary
from ..strategy.signals import ScriptedSignalSource, SignalSource
from ..utils.timeutils import to_epoch_ms
from .models import (
    EntrySignal,
    EquityPoint,
    LedgerRow,
    Quote,
    ReplayResult,
    TimelineEvent,
    normalize_side,
)
from .slippage import RandomSource, XorShiftRng
from .state_machine import PositionStateMachine
from .stress import apply_spread_stress, safe_event_risk

logger = logging.getLogger(__name__)


@dataclass
class ReplayInput:
    """A normalised replay fixture."""
    pair: str
    quotes: List[Quote]
    entries: List[EntrySignal] = field(default_factory=list)


def _get(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _optional_positive(value: Any) -> Optional[float]:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) and n > 0 else None


def _optional_float(value: Any) -> Optional[float]:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def normalize_replay_input(raw: Dict[str, Any]) -> ReplayInput:
    """Validate and normalise a raw replay fixture.

    Both camelCase keys (as written by the fixture tooling) and
    snake_case keys are accepted.  Quotes and entries are stably
    sorted by timestamp.

    Raises
    ------
    ValueError
        If the quote list is empty, a timestamp is invalid or an entry
        side is unknown.
    """
    pair = str(raw.get('pair') or 'EURUSD').strip().upper()
    raw_quotes = raw.get('quotes')
    if not isinstance(raw_quotes, list) or not raw_quotes:
        raise ValueError("Replay input requires a non-empty quotes array")

    quotes = []
    for q in raw_quotes:
        force = _get(q, 'forceCloseReasonCode', 'force_close_reason_code')
        quotes.append(Quote(
            ts=to_epoch_ms(q.get('ts')),
            bid=float(q.get('bid', math.nan)),
            ask=float(q.get('ask', math.nan)),
            event_risk=safe_event_risk(_get(q, 'eventRisk', 'event_risk')),
            force_close_reason_code=str(force) if force else None,
            shock=bool(q.get('shock', False)),
            rollover=bool(q.get('rollover', False)),
            spread_multiplier=_optional_float(_get(q, 'spreadMultiplier', 'spread_multiplier')),
            note=q.get('note'),
        ))
    quotes.sort(key=lambda q: q.ts)

    entries = []
    for e in raw.get('entries') or []:
        entries.append(EntrySignal(
            ts=to_epoch_ms(e.get('ts')),
            side=normalize_side(e.get('side')),
            stop_price=float(_get(e, 'stopPrice', 'stop_price', default=math.nan)),
            take_profit_price=_optional_positive(_get(e, 'takeProfitPrice', 'take_profit_price')),
            notional_usd=_optional_positive(_get(e, 'notionalUsd', 'notional_usd')),
            confidence=float(_get(e, 'confidence', default=0.7)),
            regime_aligned=bool(_get(e, 'regimeAligned', 'regime_aligned', default=False)),
            label=e.get('label'),
        ))
    entries.sort(key=lambda e: e.ts)
    return ReplayInput(pair=pair, quotes=quotes, entries=entries)


def load_replay_input(path: str) -> ReplayInput:
    """Load and normalise a JSON replay fixture from `path`."""
    with open(path, 'r', encoding='utf-8') as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError(f"Replay input root must be an object: {path}")
    return normalize_replay_input(raw)


class ReplayEngine:
    """Replay a quote stream through the position state machine.

    The engine works on a private copy of the configuration, so a
    caller may reuse one `Config` for many runs.
    """

    def __init__(self, config: Config, rng: Optional[RandomSource] = None) -> None:
        self.config = clone_config(config)
        self.rng = rng if rng is not None else XorShiftRng(self.config.slippage.seed)

    def run(
        self,
        quotes: List[Quote],
        signals: SignalSource,
        pair: Optional[str] = None,
    ) -> ReplayResult:
        """Execute the replay.

        Parameters
        ----------
        quotes : list of Quote
            Quote stream; stably sorted by timestamp before use.
        signals : SignalSource
            Source of entry signals, usually a `ScriptedSignalSource`.
        pair : str, optional
            Pair replayed; defaults to the configured pair.

        Returns
        -------
        ReplayResult
            Summary, ledger, timeline and equity curve.

        Raises
        ------
        ValueError
            If `quotes` is empty.
        InvalidQuoteError
            On the first crossed, zero‑width or non‑positive quote.
        """
        if not quotes:
            raise ValueError("Cannot run replay with empty quotes")
        pair = (pair or self.config.pair).strip().upper()
        self.config.pair = pair
        ordered = sorted(quotes, key=lambda q: q.ts)
        machine = PositionStateMachine(pair, self.config, self.rng)

        ledger: List[LedgerRow] = []
        timeline: List[TimelineEvent] = []
        equity_curve: List[EquityPoint] = []

        logger.info("Replaying %d quotes for %s", len(ordered), pair)
        stressed = None
        for quote in ordered:
            stressed = apply_spread_stress(quote, self.config.stress)
            outcome = machine.on_tick(stressed)
            signals.observe(pair, stressed)
            while machine.position is None:
                signal = signals.next_signal(pair, stressed.ts)
                if signal is None:
                    break
                outcome.extend(machine.try_enter(signal, stressed))
            ledger.extend(outcome.ledger)
            timeline.extend(outcome.timeline)
            equity_curve.append(machine.mark(stressed))

        if machine.position is not None:
            outcome = machine.close(stressed, ['END_OF_REPLAY_FLAT'])
            ledger.extend(outcome.ledger)
            timeline.extend(outcome.timeline)
            equity_curve.append(machine.mark(stressed))

        summary = compute_summary(
            pair=pair,
            starting_equity_usd=machine.starting_equity_usd,
            ending_equity_usd=machine.equity_usd,
            ledger=ledger,
            equity_curve=equity_curve,
            start_ts=ordered[0].ts,
            end_ts=ordered[-1].ts,
            final_position_open=machine.position is not None,
        )
        logger.info(
            "Replay of %s complete: return=%.4f%% legs=%d win_rate=%.1f%% max_dd=%.4f%%",
            pair, summary.return_pct, summary.closed_legs, summary.win_rate_pct, summary.max_drawdown_pct,
        )
        return ReplayResult(summary=summary, ledger=ledger, timeline=timeline, equity_curve=equity_curve)


def run_replay(
    quotes: List[Quote],
    entries: List[EntrySignal],
    config: Config,
    pair: Optional[str] = None,
) -> ReplayResult:
    """Replay `quotes` with scripted `entries` under `config`."""
    return ReplayEngine(config).run(quotes, ScriptedSignalSource(entries), pair=pair)


def run_replay_input(replay_input: ReplayInput, config: Config) -> ReplayResult:
    return run_replay(replay_input.quotes, replay_input.entries, config, pair=replay_input.pair)
