"""
Pair eligibility for new entries.

Combines the market‑hours gate, the spread and volatility quality
checks, the session‑transition and pre‑rollover windows, shock
cooldown and the event gate into one decision with reason codes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ..config.schema import Config
from ..execution.models import EVENT_RISK_HIGH, StressedQuote
from ..utils.timeutils import is_within_pre_rollover_window, is_within_session_transition_buffer
from .events import EconomicEvent, evaluate_event_gate
from .market_hours import evaluate_market_gate


@dataclass
class Eligibility:
    eligible: bool
    reasons: List[str] = field(default_factory=list)
    spread_to_atr1h: float = math.inf
    atr1h_percent: float = 0.0


def spread_to_atr(spread_abs: float, atr1h_abs: float) -> float:
    return spread_abs / atr1h_abs if atr1h_abs > 0 else math.inf


def evaluate_pair_eligibility(
    pair: str,
    quote: StressedQuote,
    cfg: Config,
    events: Optional[Iterable[EconomicEvent]] = None,
    stale_events: bool = False,
    risk_state: Optional[str] = 'normal',
) -> Eligibility:
    """Decide whether `pair` may open a position on `quote`.

    Parameters
    ----------
    pair : str
        Pair symbol.
    quote : StressedQuote
        Execution‑adjusted quote of the current tick.
    cfg : Config
        Full configuration.
    events : iterable of EconomicEvent, optional
        Calendar events; replay runs pass none and rely on the quote's
        event‑risk tier instead.
    stale_events : bool
        Whether the calendar feed is stale.
    risk_state : str, optional
        Regime risk state used by the stale‑data rule.
    """
    reasons: List[str] = []
    elig = cfg.eligibility
    ratio = spread_to_atr(quote.spread_abs, cfg.atr1h_abs)
    atr_pct = cfg.atr1h_abs / quote.mid if quote.mid > 0 else 0.0

    market = evaluate_market_gate(quote.ts, cfg.market_hours)
    if market.market_closed:
        reasons.append(market.reason_code)

    in_transition = is_within_session_transition_buffer(quote.ts, cfg.stress.transition_buffer_minutes)
    if in_transition:
        cap = elig.max_spread_to_atr1h * max(0.0, elig.transition_spread_to_atr_multiplier)
        if ratio >= cap:
            reasons.extend(['SESSION_TRANSITION_SPREAD_STRESS', 'SPREAD_TO_ATR_TRANSITION_CAP_EXCEEDED'])
    elif ratio >= elig.max_spread_to_atr1h:
        reasons.append('SPREAD_TO_ATR_TOO_HIGH')

    if atr_pct < elig.min_atr1h_percent:
        reasons.append('ATR_TOO_LOW')

    if is_within_pre_rollover_window(quote.ts, cfg.rollover.entry_block_minutes, cfg.rollover.rollover_hour_utc):
        reasons.append('ROLLOVER_ENTRY_BLOCK_WINDOW')

    if quote.shock:
        reasons.append('POST_SHOCK_COOLDOWN')

    if quote.event_risk == EVENT_RISK_HIGH:
        reasons.append('EVENT_WINDOW_ACTIVE_BLOCK')
    elif events is not None or stale_events:
        gate = evaluate_event_gate(pair, events or [], quote.ts, stale_events, risk_state, cfg.events)
        if gate.block_new_entries:
            reasons.extend(gate.reason_codes)

    eligible = not reasons
    if eligible:
        reasons.append('ELIGIBLE')
    return Eligibility(eligible=eligible, reasons=reasons, spread_to_atr1h=ratio, atr1h_percent=atr_pct)
