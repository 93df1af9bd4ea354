"""
Open‑risk accounting and the portfolio risk budget.

Risk is tracked as a percentage of equity at three levels: the whole
portfolio, each pair and each currency (a pair contributes to both of
its currencies).  `RiskBudget` wraps the same arithmetic in a lock so
that concurrent pair workers reserve risk in a single critical section.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .sizing import position_risk_pct

logger = logging.getLogger(__name__)

_EPS = 1e-12


def pair_currencies(pair: str) -> List[str]:
    """Split ``EURUSD`` (or ``EUR/USD``) into ``['EUR', 'USD']``."""
    letters = ''.join(ch for ch in str(pair or '').upper() if 'A' <= ch <= 'Z')
    if len(letters) < 6:
        return []
    return [letters[:3], letters[3:6]]


@dataclass
class RiskUsage:
    """Running open‑risk percentages."""
    portfolio_pct: float = 0.0
    pair_pct: Dict[str, float] = field(default_factory=dict)
    currency_pct: Dict[str, float] = field(default_factory=dict)
    unknown_risk_pairs: List[str] = field(default_factory=list)

    def add(self, pair: str, pct: float) -> None:
        pct = max(0.0, float(pct or 0.0))
        if pct <= 0:
            return
        self.portfolio_pct += pct
        self.pair_pct[pair] = self.pair_pct.get(pair, 0.0) + pct
        for ccy in pair_currencies(pair):
            self.currency_pct[ccy] = self.currency_pct.get(ccy, 0.0) + pct

    def release(self, pair: str, fraction: float = 1.0) -> float:
        """Release `fraction` of the pair's open risk; returns the amount released."""
        held = self.pair_pct.get(pair, 0.0)
        fraction = min(1.0, max(0.0, float(fraction or 0.0)))
        amount = held * fraction
        if amount <= 0:
            return 0.0
        self.portfolio_pct = max(0.0, self.portfolio_pct - amount)
        remaining = held - amount
        if remaining <= _EPS:
            self.pair_pct.pop(pair, None)
        else:
            self.pair_pct[pair] = remaining
        for ccy in pair_currencies(pair):
            left = self.currency_pct.get(ccy, 0.0) - amount
            if left <= _EPS:
                self.currency_pct.pop(ccy, None)
            else:
                self.currency_pct[ccy] = left
        return amount


@dataclass
class BudgetDecision:
    allow: bool
    reason_codes: List[str] = field(default_factory=list)


def evaluate_risk_cap_budget(
    pair: str,
    candidate_pct: float,
    usage: RiskUsage,
    max_portfolio_open_pct: float,
    max_currency_open_pct: float,
) -> BudgetDecision:
    """Check whether adding `candidate_pct` breaches a ceiling.

    A ceiling of zero disables the respective check.
    """
    reasons: List[str] = []
    candidate = max(0.0, float(candidate_pct or 0.0))
    max_portfolio = max(0.0, float(max_portfolio_open_pct or 0.0))
    max_currency = max(0.0, float(max_currency_open_pct or 0.0))

    if max_portfolio > 0 and usage.portfolio_pct + candidate > max_portfolio:
        reasons.append('NO_TRADE_RISK_CAP_PORTFOLIO')
    if max_currency > 0:
        for ccy in pair_currencies(pair):
            if usage.currency_pct.get(ccy, 0.0) + candidate > max_currency:
                reasons.append('NO_TRADE_RISK_CAP_CURRENCY')
                break
    return BudgetDecision(allow=not reasons, reason_codes=reasons)


def compute_open_risk_usage(
    positions: Iterable[Tuple[str, object]],
    equity_usd: float,
    fallback_risk_pct: float = 0.0,
) -> RiskUsage:
    """Rebuild usage from open positions.

    Parameters
    ----------
    positions : iterable of (pair, Position)
        Open positions, typically loaded from the context store.
    equity_usd : float
        Equity used as the denominator.
    fallback_risk_pct : float
        Risk assumed for positions whose risk cannot be computed.  When
        zero such pairs are listed in ``unknown_risk_pairs`` instead.
    """
    usage = RiskUsage()
    fallback = max(0.0, float(fallback_risk_pct or 0.0))
    for pair, position in positions:
        stop = getattr(position, 'current_stop_price', None) or getattr(position, 'initial_stop_price', None)
        entry = getattr(position, 'entry_price', None)
        units = getattr(position, 'units', None)
        pct = math.nan
        if entry and stop and units:
            pct = position_risk_pct(entry, stop, units, equity_usd)
        if not (math.isfinite(pct) and pct > 0):
            if fallback > 0:
                pct = fallback
            else:
                usage.unknown_risk_pairs.append(pair)
                continue
        usage.add(pair, pct)
    return usage


class RiskBudget:
    """Thread‑safe risk budget shared by concurrent pair workers.

    Entry admission calls `reserve` before talking to the broker, then
    `confirm` or `cancel` once the order outcome is known.  No broker
    call is made while the lock is held.
    """

    def __init__(
        self,
        max_portfolio_open_pct: float,
        max_currency_open_pct: float,
        usage: Optional[RiskUsage] = None,
    ) -> None:
        self.max_portfolio_open_pct = max_portfolio_open_pct
        self.max_currency_open_pct = max_currency_open_pct
        self._usage = usage or RiskUsage()
        self._pending: Dict[str, float] = {}
        self._lock = threading.Lock()

    def snapshot(self) -> RiskUsage:
        with self._lock:
            return RiskUsage(
                portfolio_pct=self._usage.portfolio_pct,
                pair_pct=dict(self._usage.pair_pct),
                currency_pct=dict(self._usage.currency_pct),
                unknown_risk_pairs=list(self._usage.unknown_risk_pairs),
            )

    def reserve(self, pair: str, pct: float) -> BudgetDecision:
        with self._lock:
            if pair in self._pending:
                return BudgetDecision(allow=False, reason_codes=['RISK_RESERVATION_PENDING'])
            decision = evaluate_risk_cap_budget(
                pair, pct, self._usage, self.max_portfolio_open_pct, self.max_currency_open_pct,
            )
            if decision.allow:
                # Reserved risk counts against the ceilings immediately.
                self._usage.add(pair, pct)
                self._pending[pair] = max(0.0, float(pct or 0.0))
            return decision

    def confirm(self, pair: str) -> None:
        with self._lock:
            self._pending.pop(pair, None)

    def cancel(self, pair: str) -> None:
        with self._lock:
            pct = self._pending.pop(pair, None)
            if pct is None:
                return
            held = self._usage.pair_pct.get(pair, 0.0)
            if held > 0:
                self._usage.release(pair, min(1.0, pct / held))
            logger.debug("Cancelled risk reservation of %.4f%% for %s", pct, pair)

    def release(self, pair: str, fraction: float = 1.0) -> float:
        with self._lock:
            return self._usage.release(pair, fraction)
