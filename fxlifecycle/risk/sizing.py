"""
Position sizing from confidence and stop distance.

The size is chosen so that the loss at the stop is roughly a fixed
percentage of equity.  Confidence only selects the leverage tier; the
implied leverage of the resulting notional never exceeds the configured
maximum.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_FALLBACK_NOTIONAL_USD = 100.0


def _positive(value) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return math.nan
    return n if math.isfinite(n) and n > 0 else math.nan


def _ok(value: float) -> bool:
    return math.isfinite(value) and value > 0


@dataclass
class SizeDecision:
    """Outcome of a sizing request.

    Attributes
    ----------
    side_size_usd : float
        Margin committed on the side (``effective_notional_usd / leverage``).
    leverage : int
        Leverage tier selected from confidence.
    effective_notional_usd : float
        Notional exposure of the position.
    risk_usd, risk_pct_used, stop_distance : float or None
        Risk actually targeted; ``None`` when sizing fell back.
    used_fallback : bool
        Whether the fixed fallback notional was used.
    reason_codes : list of str
        ``SIZE_HYBRID_RISK``, ``SIZE_LEVERAGE_CAPPED`` or
        ``SIZE_FALLBACK_NOTIONAL``.
    """
    side_size_usd: float
    leverage: int
    effective_notional_usd: float
    risk_usd: Optional[float] = None
    risk_pct_used: Optional[float] = None
    stop_distance: Optional[float] = None
    used_fallback: bool = False
    reason_codes: List[str] = field(default_factory=list)


def confidence_to_leverage_capped(confidence: float, max_leverage: float) -> int:
    cap_value = _positive(max_leverage)
    cap = max(1, int(math.floor(cap_value))) if _ok(cap_value) else 1
    suggested = 1
    if confidence >= 0.85:
        suggested = 3
    elif confidence >= 0.68:
        suggested = 2
    return min(cap, suggested)


def compute_hybrid_risk_size(
    entry_price: float,
    stop_price: float,
    confidence: float,
    fallback_notional_usd: float,
    max_leverage: float,
    risk_per_trade_pct: float,
    reference_equity_usd: float,
) -> SizeDecision:
    """Size a position so that the stop loss is `risk_per_trade_pct` of equity.

    Invalid inputs never raise: the decision falls back to the fixed
    notional and says so in its reason codes.
    """
    leverage = confidence_to_leverage_capped(confidence, max_leverage)
    fallback = _positive(fallback_notional_usd)
    if not _ok(fallback):
        fallback = DEFAULT_FALLBACK_NOTIONAL_USD
    entry = _positive(entry_price)
    stop = _positive(stop_price)
    equity = _positive(reference_equity_usd)
    risk_pct = _positive(risk_per_trade_pct)
    stop_distance = abs(entry - stop) if _ok(entry) and _ok(stop) else math.nan

    def _fallback(risk_usd=None, pct=None) -> SizeDecision:
        return SizeDecision(
            side_size_usd=fallback,
            leverage=leverage,
            effective_notional_usd=fallback * leverage,
            risk_usd=risk_usd,
            risk_pct_used=pct,
            stop_distance=stop_distance if math.isfinite(stop_distance) else None,
            used_fallback=True,
            reason_codes=['SIZE_FALLBACK_NOTIONAL'],
        )

    if not (_ok(equity) and _ok(risk_pct) and _ok(stop_distance)):
        return _fallback()

    risk_usd = equity * risk_pct / 100.0
    units = risk_usd / stop_distance
    effective = units * entry
    reasons = ['SIZE_HYBRID_RISK']
    cap_value = _positive(max_leverage)
    if _ok(cap_value) and effective > equity * cap_value:
        effective = equity * cap_value
        risk_usd = effective / entry * stop_distance
        reasons.append('SIZE_LEVERAGE_CAPPED')
    side_size = effective / leverage
    if not _ok(side_size):
        return _fallback(risk_usd, risk_pct)
    return SizeDecision(
        side_size_usd=side_size,
        leverage=leverage,
        effective_notional_usd=effective,
        risk_usd=risk_usd,
        risk_pct_used=risk_usd / equity * 100.0,
        stop_distance=stop_distance,
        used_fallback=False,
        reason_codes=reasons,
    )


def position_risk_pct(entry_price: float, stop_price: float, units: float, equity_usd: float) -> float:
    """Percentage of `equity_usd` lost if the stop is hit; 0 when unknown."""
    if not (_ok(_positive(equity_usd)) and _ok(_positive(units))):
        return 0.0
    return abs(float(entry_price) - float(stop_price)) * float(units) / float(equity_usd) * 100.0
