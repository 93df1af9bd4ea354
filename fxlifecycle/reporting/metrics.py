"""
Performance metrics calculations.

This module provides helpers to compute summary statistics from a
replay ledger and equity curve.  They are used both for single replay
reports and for the scenario matrix.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional

from ..execution.models import (
    ENTRY,
    EXIT,
    PARTIAL_EXIT,
    EquityPoint,
    LedgerRow,
    ReplayResult,
    ReplaySummary,
)


def max_drawdown_pct(equity_curve: List[EquityPoint]) -> float:
    """Largest peak‑to‑trough decline of the curve, in percent."""
    peak = float('-inf')
    max_dd = 0.0
    for point in equity_curve:
        peak = max(peak, point.equity_usd)
        if not peak > 0:
            continue
        drawdown = (peak - point.equity_usd) / peak * 100.0
        if drawdown > max_dd:
            max_dd = drawdown
    return max_dd


def compute_summary(
    pair: str,
    starting_equity_usd: float,
    ending_equity_usd: float,
    ledger: List[LedgerRow],
    equity_curve: List[EquityPoint],
    start_ts: Optional[int],
    end_ts: Optional[int],
    final_position_open: bool,
) -> ReplaySummary:
    """Compute the summary of one replay run.

    Parameters
    ----------
    pair : str
        Replayed pair.
    starting_equity_usd, ending_equity_usd : float
        Cash equity before and after the run.
    ledger : list of LedgerRow
        Every money‑moving row of the run.
    equity_curve : list of EquityPoint
        One point per tick, marked to market.
    start_ts, end_ts : int or None
        First and last quote timestamps.
    final_position_open : bool
        Whether a position was still open when the run ended.

    Returns
    -------
    ReplaySummary
        Win rate is computed over closed legs (full and partial exits).
    """
    closed = [row for row in ledger if row.kind in (EXIT, PARTIAL_EXIT)]
    winners = sum(1 for row in closed if row.pnl_usd > 0)
    realized = sum(row.pnl_usd for row in closed)
    fees = sum(row.fee_usd for row in ledger)
    return_pct = (
        (ending_equity_usd - starting_equity_usd) / starting_equity_usd * 100.0
        if starting_equity_usd > 0 else 0.0
    )
    return ReplaySummary(
        pair=pair,
        start_ts=start_ts,
        end_ts=end_ts,
        starting_equity_usd=starting_equity_usd,
        ending_equity_usd=ending_equity_usd,
        realized_pnl_usd=realized,
        rollover_fees_usd=fees,
        return_pct=return_pct,
        closed_legs=len(closed),
        winning_legs=winners,
        win_rate_pct=winners / len(closed) * 100.0 if closed else 0.0,
        max_drawdown_pct=max_drawdown_pct(equity_curve),
        final_position_open=final_position_open,
    )


def trade_statistics(result: ReplayResult) -> Dict[str, object]:
    """Per‑trade statistics used by the scenario matrix.

    R multiples are computed per position from its entry and initial
    stop as recorded in the timeline; exits are counted by their first
    reason code.
    """
    entries = [row for row in result.ledger if row.kind == ENTRY]
    stops = [e.details.get('stopPrice') for e in result.timeline if e.type == 'ENTRY_OPENED']
    exits = [row for row in result.ledger if row.kind == EXIT]

    r_values: List[float] = []
    for idx, entry in enumerate(entries):
        stop = stops[idx] if idx < len(stops) else None
        if stop is None or entry.price is None:
            continue
        risk_usd = abs(entry.price - float(stop)) * (entry.units or 0.0)
        if risk_usd <= 0:
            continue
        legs_pnl = _position_pnl(result.ledger, entry.id)
        r_values.append(legs_pnl / risk_usd)

    exits_by_reason = Counter(row.reason_codes[0] if row.reason_codes else 'UNKNOWN' for row in exits)
    return {
        'trades': len(entries),
        'avg_r': sum(r_values) / len(r_values) if r_values else 0.0,
        'exits_by_reason': dict(sorted(exits_by_reason.items())),
    }


def _position_pnl(ledger: List[LedgerRow], entry_id: int) -> float:
    """Sum of exit legs following the entry row `entry_id` up to its full exit."""
    total = 0.0
    started = False
    for row in ledger:
        if row.id == entry_id:
            started = True
            continue
        if not started:
            continue
        if row.kind == PARTIAL_EXIT:
            total += row.pnl_usd
        elif row.kind == EXIT:
            total += row.pnl_usd
            break
    return total
