"""
Spread stress model.

Converts a raw bid/ask quote into an execution‑adjusted quote.  The
midpoint is preserved while the spread is widened by the product of
every applicable multiplier; each contributing factor leaves a reason
code so the widening is auditable.
"""

from __future__ import annotations

import math

from ..config.schema import StressConfig
from ..utils.timeutils import is_within_session_transition_buffer
from .models import (
    EVENT_RISK_HIGH,
    EVENT_RISK_MEDIUM,
    EVENT_RISK_NONE,
    InvalidQuoteError,
    Quote,
    StressedQuote,
)

MIN_SPREAD = 1e-9


def safe_event_risk(value) -> str:
    risk = str(value or '').strip().lower()
    if risk in (EVENT_RISK_MEDIUM, EVENT_RISK_HIGH):
        return risk
    return EVENT_RISK_NONE


def _floored(multiplier) -> float:
    try:
        value = float(multiplier)
    except (TypeError, ValueError):
        return 1.0
    if not math.isfinite(value):
        return 1.0
    return max(1.0, value)


def validate_quote(quote: Quote) -> None:
    """Raise `InvalidQuoteError` unless ``ask > bid > 0``."""
    bid = float(quote.bid)
    ask = float(quote.ask)
    if not (math.isfinite(bid) and math.isfinite(ask) and ask > bid > 0):
        raise InvalidQuoteError(f"Invalid quote at ts={quote.ts}: bid={quote.bid}, ask={quote.ask}")


def apply_spread_stress(quote: Quote, cfg: StressConfig) -> StressedQuote:
    """Widen the spread of `quote` according to `cfg`.

    Multipliers are applied in a fixed order: session transition,
    rollover, medium event, high event and finally a fixture supplied
    custom multiplier (only when greater than one).

    Raises
    ------
    InvalidQuoteError
        If the quote is crossed, zero width or non‑positive.
    """
    validate_quote(quote)
    bid = float(quote.bid)
    ask = float(quote.ask)
    event_risk = safe_event_risk(quote.event_risk)
    mid = (bid + ask) / 2.0
    base_spread = ask - bid

    multiplier = 1.0
    reasons = []
    if is_within_session_transition_buffer(quote.ts, cfg.transition_buffer_minutes):
        multiplier *= _floored(cfg.transition_multiplier)
        reasons.append('SESSION_TRANSITION_SPREAD_STRESS')
    if quote.rollover:
        multiplier *= _floored(cfg.rollover_multiplier)
        reasons.append('ROLLOVER_SPREAD_STRESS')
    if event_risk == EVENT_RISK_MEDIUM:
        multiplier *= _floored(cfg.medium_event_multiplier)
        reasons.append('EVENT_MEDIUM_SPREAD_STRESS')
    if event_risk == EVENT_RISK_HIGH:
        multiplier *= _floored(cfg.high_event_multiplier)
        reasons.append('EVENT_HIGH_SPREAD_STRESS')
    custom = quote.spread_multiplier
    if custom is not None and math.isfinite(float(custom)) and float(custom) > 1:
        multiplier *= float(custom)
        reasons.append('CUSTOM_SPREAD_MULTIPLIER')

    spread = max(MIN_SPREAD, base_spread * multiplier)
    return StressedQuote(
        ts=quote.ts,
        bid=mid - spread / 2.0,
        ask=mid + spread / 2.0,
        mid=mid,
        spread_abs=spread,
        spread_multiplier=multiplier,
        spread_reasons=reasons,
        event_risk=event_risk,
        shock=bool(quote.shock),
        rollover=bool(quote.rollover),
        force_close_reason_code=quote.force_close_reason_code,
    )
