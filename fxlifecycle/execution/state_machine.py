"""
Position state machine.

`PositionStateMachine` owns at most one open position for one pair.
It consumes stressed quotes one at a time and answers with a
`TickOutcome` holding the ledger rows (what moved money) and timeline
events (why) produced by that tick.  The replay driver and the live
execution cycle both call into this class, so a rule behaves the same
whether it is fed by a fixture or by the broker.

Management of an open position follows a fixed priority on every tick:

1. forced close (high event risk or an external reason code)
2. partial take‑profit, stop to breakeven, trailing activated
3. trailing stop tightening
4. take‑profit hit
5. stop invalidation (bid for longs, ask for shorts)
6. pre‑rollover disposition
7. time stops

The rollover fee is accrued before any of these when the tick crosses
into a new trading day.  The machine performs no I/O and never
retries; given the same quotes, signals and seed it produces the same
output.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..config.schema import Config
from ..gates.eligibility import evaluate_pair_eligibility, spread_to_atr
from ..gates.events import EconomicEvent
from ..risk.budget import RiskBudget
from ..risk.sizing import compute_hybrid_risk_size, position_risk_pct
from ..utils.timeutils import (
    MS_PER_HOUR,
    MS_PER_MINUTE,
    is_within_pre_rollover_window,
    trading_day_key,
)
from .models import (
    BUY,
    ENTRY,
    ENTRY_BLOCKED,
    ENTRY_OPENED,
    EVENT_RISK_HIGH,
    EXIT,
    PARTIAL_EXIT,
    PARTIAL_TAKEN,
    POSITION_CLOSED,
    POSITION_HELD,
    REENTRY_LOCK_UPDATED,
    ROLLOVER_FEE,
    ROLLOVER_FEE_APPLIED,
    STOP_TIGHTENED,
    EntrySignal,
    EquityPoint,
    LedgerRow,
    Position,
    StressedQuote,
    TimelineEvent,
    close_side,
    normalize_side,
    side_sign,
)
from .reentry import ReentryLockBook
from .slippage import RandomSource, apply_execution_price, execution_slippage_bps

logger = logging.getLogger(__name__)

FLAT = 'FLAT'
OPEN = 'OPEN'
PARTIAL = 'PARTIAL'


@dataclass
class TickOutcome:
    """Ledger rows and timeline events produced by one call."""
    ts: int
    ledger: List[LedgerRow] = field(default_factory=list)
    timeline: List[TimelineEvent] = field(default_factory=list)

    @property
    def opened(self) -> bool:
        return any(row.kind == ENTRY for row in self.ledger)

    @property
    def closed(self) -> bool:
        return any(row.kind == EXIT for row in self.ledger)

    def extend(self, other: 'TickOutcome') -> None:
        self.ledger.extend(other.ledger)
        self.timeline.extend(other.timeline)


@dataclass
class EntryPlan:
    """An admitted entry whose risk is reserved but not yet opened."""
    signal: EntrySignal
    quote: StressedQuote
    side: str
    entry_price: float
    stop_price: float
    take_profit_price: Optional[float]
    units: float
    notional_usd: float
    leverage: int
    risk_pct: float
    size_reasons: List[str] = field(default_factory=list)


def _finite_positive(value: Any) -> bool:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(n) and n > 0


class PositionStateMachine:
    """Lifecycle of the positions of a single pair.

    Parameters
    ----------
    pair : str
        Pair managed by this machine.
    config : Config
        Engine configuration.
    rng : RandomSource
        Generator driving the random part of slippage.
    budget : RiskBudget, optional
        Shared risk budget.  A private budget is created when omitted.
    defer_releases : bool
        Hold the risk freed by exits in `pending_releases` until
        `apply_releases` is called, for callers that must first see the
        exit confirmed by a broker.
    """

    def __init__(
        self,
        pair: str,
        config: Config,
        rng: RandomSource,
        budget: Optional[RiskBudget] = None,
        defer_releases: bool = False,
    ) -> None:
        self.pair = pair.strip().upper()
        self.config = config
        self.rng = rng
        self.budget = budget or RiskBudget(
            config.risk.max_portfolio_open_pct, config.risk.max_currency_open_pct,
        )
        self.position: Optional[Position] = None
        self.starting_equity_usd = float(config.starting_equity_usd)
        self.realized_pnl_usd = 0.0
        self.rollover_fees_usd = 0.0
        self.locks = ReentryLockBook()
        self.defer_releases = defer_releases
        self.pending_releases: List[float] = []
        self.last_day_key: Optional[str] = None
        self.fee_day_key: Optional[str] = None
        self._next_row_id = 1

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def equity_usd(self) -> float:
        """Cash equity: starting equity plus realized PnL minus fees."""
        return self.starting_equity_usd + self.realized_pnl_usd - self.rollover_fees_usd

    @property
    def lock_until_ms(self) -> Optional[int]:
        """Unlock time of the reentry lock, if one is set."""
        return self.locks.locked_until(self.pair)

    @property
    def state(self) -> str:
        if self.position is None:
            return FLAT
        return PARTIAL if self.position.partial_taken_pct > 0 else OPEN

    def mark(self, quote: StressedQuote) -> EquityPoint:
        """Mark the account against `quote`."""
        unrealized = self.position.unrealized_pnl(quote.bid, quote.ask) if self.position else 0.0
        return EquityPoint(
            ts=quote.ts,
            equity_usd=self.equity_usd + unrealized,
            realized_pnl_usd=self.realized_pnl_usd,
            unrealized_pnl_usd=unrealized,
        )

    def to_context(self) -> Dict[str, Any]:
        """Serialise everything needed to resume this machine."""
        return {
            'position': self.position.to_dict() if self.position else None,
            'realized_pnl_usd': self.realized_pnl_usd,
            'rollover_fees_usd': self.rollover_fees_usd,
            'lock_until_ms': self.lock_until_ms,
            'last_day_key': self.last_day_key,
            'fee_day_key': self.fee_day_key,
            'next_row_id': self._next_row_id,
        }

    def restore_context(self, data: Optional[Dict[str, Any]]) -> None:
        if not data:
            return
        position = data.get('position')
        self.position = Position.from_dict(position) if position else None
        self.realized_pnl_usd = float(data.get('realized_pnl_usd', 0.0))
        self.rollover_fees_usd = float(data.get('rollover_fees_usd', 0.0))
        lock = data.get('lock_until_ms')
        self.locks = ReentryLockBook({self.pair: int(lock)} if lock else None)
        self.last_day_key = data.get('last_day_key')
        self.fee_day_key = data.get('fee_day_key')
        self._next_row_id = int(data.get('next_row_id', 1))

    # ------------------------------------------------------------------
    # Recording helpers
    # ------------------------------------------------------------------
    def _row(self, out: TickOutcome, **kwargs: Any) -> LedgerRow:
        row = LedgerRow(id=self._next_row_id, equity_usd_after=self.equity_usd, **kwargs)
        self._next_row_id += 1
        out.ledger.append(row)
        return row

    @staticmethod
    def _event(out: TickOutcome, ts: int, type_: str, reasons: List[str], **details: Any) -> None:
        out.timeline.append(TimelineEvent(ts=ts, type=type_, reason_codes=list(reasons), details=details))

    def _fill_price(self, quote: StressedQuote, side: str, is_entry: bool) -> float:
        reference = quote.ask if side == BUY else quote.bid
        bps = execution_slippage_bps(quote, self.config.slippage, self.rng, is_entry)
        return apply_execution_price(side, reference, bps)

    # ------------------------------------------------------------------
    # Per tick management
    # ------------------------------------------------------------------
    def on_tick(self, quote: StressedQuote) -> TickOutcome:
        """Run management for an open position on one stressed quote."""
        out = TickOutcome(ts=quote.ts)
        day_key = trading_day_key(quote.ts, self.config.rollover.rollover_hour_utc)
        if self.position is not None:
            self._accrue_rollover_fee(quote, day_key, out)
        self.last_day_key = day_key
        if self.position is not None:
            self._manage(quote, out)
        return out

    def _accrue_rollover_fee(self, quote: StressedQuote, day_key: str, out: TickOutcome) -> None:
        crossed = self.last_day_key is not None and day_key != self.last_day_key
        if not (quote.rollover or crossed):
            return
        if self.fee_day_key == day_key:
            return
        pos = self.position
        notional = pos.units * quote.mid
        fee = max(0.0, notional * self.config.rollover.daily_fee_bps / 10_000)
        self.fee_day_key = day_key
        if fee <= 0:
            return
        self.rollover_fees_usd += fee
        self._row(
            out, ts=quote.ts, kind=ROLLOVER_FEE, side=None, price=None, units=None,
            notional_usd=notional, pnl_usd=0.0, fee_usd=fee,
            reason_codes=['ROLLOVER_FEE_APPLIED'], position_units_after=pos.units,
        )
        self._event(out, quote.ts, ROLLOVER_FEE_APPLIED, ['ROLLOVER_FEE_APPLIED'],
                    feeUsd=fee, positionNotional=notional, tradingDay=day_key)
        logger.info("Rollover fee %.4f USD on %s (%s)", fee, self.pair, day_key)

    def _manage(self, quote: StressedQuote, out: TickOutcome) -> None:
        cfg = self.config
        pos = self.position

        if cfg.force_close_on_high_event and quote.event_risk == EVENT_RISK_HIGH:
            self.close(quote, ['EVENT_HIGH_FORCE_CLOSE'], out)
            return
        if quote.force_close_reason_code:
            self.close(quote, [str(quote.force_close_reason_code).strip().upper()], out)
            return

        r_multiple = pos.r_multiple(quote.bid, quote.ask)
        pos.mfe_r = max(pos.mfe_r, r_multiple)

        self._partial_take_profit(quote, r_multiple, out)
        self._trail(quote, out)

        tp = pos.take_profit_price
        if tp is not None and _finite_positive(tp):
            hit = quote.bid >= tp if pos.side == BUY else quote.ask <= tp
            if hit:
                self.close(quote, ['TAKE_PROFIT_HIT'], out)
                return

        if self._stop_invalidation(quote, out):
            return
        if self._pre_rollover_disposition(quote, r_multiple, out):
            return
        self._time_stops(quote, out)

    def _partial_take_profit(self, quote: StressedQuote, r_multiple: float, out: TickOutcome) -> None:
        mgmt = self.config.management
        pos = self.position
        pct = float(mgmt.partial_close_pct)
        if not (pct > 0 and pos.partial_taken_pct < pct and r_multiple >= mgmt.partial_at_r):
            return
        fraction = min(1.0, max(0.0, pct / 100.0))
        closed_units, price = self._reduce(quote, fraction, ['PARTIAL_AT_TARGET_R'], out)
        pos.partial_taken_pct = pct
        pos.current_stop_price = pos.entry_price
        pos.trailing_active = bool(mgmt.enable_trailing)
        pos.trailing_mode = 'r_multiple' if pos.trailing_active else 'none'
        self._event(out, quote.ts, PARTIAL_TAKEN, ['PARTIAL_AT_TARGET_R'],
                    closeUnits=closed_units, partialExitPrice=price, rMultiple=r_multiple,
                    stopPrice=pos.current_stop_price)

    def _trail(self, quote: StressedQuote, out: TickOutcome) -> None:
        pos = self.position
        if not pos.trailing_active:
            return
        distance = pos.initial_risk_abs * max(0.1, float(self.config.management.trailing_distance_r))
        if pos.side == BUY:
            next_stop = quote.bid - distance
            tightens = next_stop > pos.current_stop_price
        else:
            next_stop = quote.ask + distance
            tightens = next_stop < pos.current_stop_price
        if not tightens:
            return
        previous = pos.current_stop_price
        pos.current_stop_price = next_stop
        self._event(out, quote.ts, STOP_TIGHTENED, ['TRAILING_STOP_TIGHTENED'],
                    nextStop=next_stop, previousStop=previous)
        logger.debug("Trailing stop on %s tightened %.6f -> %.6f", self.pair, previous, next_stop)

    def _stop_invalidation(self, quote: StressedQuote, out: TickOutcome) -> bool:
        pos = self.position
        stop = pos.current_stop_price
        if pos.side == BUY:
            hit = quote.bid <= stop
            reason = 'STOP_INVALIDATED_LONG'
        else:
            hit = quote.ask >= stop
            reason = 'STOP_INVALIDATED_SHORT'
        if not hit:
            return False
        min_hold = float(self.config.management.min_hold_minutes_before_stop_invalidation or 0)
        age_minutes = (quote.ts - pos.opened_at_ms) / MS_PER_MINUTE
        if min_hold > 0 and age_minutes < min_hold:
            self._event(out, quote.ts, POSITION_HELD, ['STOP_INVALIDATION_MIN_HOLD_ACTIVE'],
                        stopPrice=stop, ageMinutes=age_minutes, minHoldMinutes=min_hold)
            return False
        self.close(quote, [reason], out)
        return True

    def _pre_rollover_disposition(self, quote: StressedQuote, r_multiple: float, out: TickOutcome) -> bool:
        roll = self.config.rollover
        if not is_within_pre_rollover_window(quote.ts, roll.force_close_minutes, roll.rollover_hour_utc):
            return False
        ratio = spread_to_atr(quote.spread_abs, self.config.atr1h_abs)
        if ratio < roll.force_close_spread_to_atr1h_min:
            return False

        if roll.force_close_mode != 'derisk':
            self.close(quote, ['ROLLOVER_PREEMPTIVE_FORCE_CLOSE'], out)
            return True

        pos = self.position
        if r_multiple < roll.derisk_loser_close_r_max:
            self.close(quote, ['ROLLOVER_PREEMPTIVE_FORCE_CLOSE', 'ROLLOVER_PREEMPTIVE_DERISK_CLOSE'], out)
            return True
        if pos.mfe_r >= roll.derisk_winner_mfe_r_min and not pos.derisked:
            fraction = min(1.0, max(0.0, roll.derisk_partial_close_pct / 100.0))
            if fraction >= 1.0:
                self.close(quote, ['ROLLOVER_PREEMPTIVE_DERISK_PARTIAL'], out)
                return True
            if fraction > 0:
                closed_units, price = self._reduce(quote, fraction, ['ROLLOVER_PREEMPTIVE_DERISK_PARTIAL'], out)
                pos.derisked = True
                self._event(out, quote.ts, PARTIAL_TAKEN, ['ROLLOVER_PREEMPTIVE_DERISK_PARTIAL'],
                            closeUnits=closed_units, partialExitPrice=price, rMultiple=r_multiple,
                            mfeR=pos.mfe_r, spreadToAtr1h=ratio)
                return False
        self._event(out, quote.ts, POSITION_HELD, ['ROLLOVER_PREEMPTIVE_DERISK_HOLD'],
                    rMultiple=r_multiple, mfeR=pos.mfe_r, spreadToAtr1h=ratio)
        return False

    def _time_stops(self, quote: StressedQuote, out: TickOutcome) -> None:
        ts_cfg = self.config.time_stop
        if not ts_cfg.enabled:
            return
        pos = self.position
        age_ms = quote.ts - pos.opened_at_ms
        bar_ms = max(1, int(self.config.execute_minutes)) * MS_PER_MINUTE
        bars = age_ms / bar_ms
        if ts_cfg.no_follow_bars > 0 and bars > ts_cfg.no_follow_bars and pos.mfe_r < ts_cfg.min_follow_r:
            self.close(quote, ['CLOSE_TIME_STOP_NO_PROGRESS'], out)
            return
        max_hold_ms = float(ts_cfg.max_hold_hours) * MS_PER_HOUR
        if max_hold_ms > 0 and age_ms > max_hold_ms:
            if pos.regime_aligned and pos.trailing_active:
                return
            self.close(quote, ['CLOSE_TIME_STOP_MAX_HOLD'], out)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------
    def _reduce(self, quote: StressedQuote, fraction: float, reasons: List[str], out: TickOutcome):
        pos = self.position
        exit_side = close_side(pos.side)
        price = self._fill_price(quote, exit_side, is_entry=False)
        units = pos.units * fraction
        pnl = (price - pos.entry_price) * side_sign(pos.side) * units
        self.realized_pnl_usd += pnl
        pos.units -= units
        self._release(fraction)
        self._row(
            out, ts=quote.ts, kind=PARTIAL_EXIT, side=exit_side, price=price, units=units,
            notional_usd=units * price, pnl_usd=pnl, fee_usd=0.0,
            reason_codes=list(reasons), position_units_after=pos.units,
        )
        logger.info("Partial exit on %s: %.2f units at %.6f (%s)", self.pair, units, price, ','.join(reasons))
        return units, price

    def close(self, quote: StressedQuote, reasons: List[str], out: Optional[TickOutcome] = None) -> TickOutcome:
        """Close the whole position on `quote` with `reasons`."""
        out = out if out is not None else TickOutcome(ts=quote.ts)
        pos = self.position
        if pos is None:
            return out
        exit_side = close_side(pos.side)
        price = self._fill_price(quote, exit_side, is_entry=False)
        pnl = (price - pos.entry_price) * side_sign(pos.side) * pos.units
        self.realized_pnl_usd += pnl
        self._release(1.0)
        self._row(
            out, ts=quote.ts, kind=EXIT, side=exit_side, price=price, units=pos.units,
            notional_usd=pos.units * price, pnl_usd=pnl, fee_usd=0.0,
            reason_codes=list(reasons), position_units_after=0.0,
        )
        self._event(out, quote.ts, POSITION_CLOSED, reasons,
                    side=pos.side, exitSide=exit_side, exitPrice=price, pnlUsd=pnl)
        logger.info("Closed %s %s at %.6f pnl=%.2f (%s)", pos.side, self.pair, price, pnl, ','.join(reasons))
        self.position = None
        self._update_lock(quote, reasons, out)
        return out

    def _update_lock(self, quote: StressedQuote, reasons: List[str], out: TickOutcome) -> None:
        minutes = self.locks.apply(
            self.pair,
            quote.ts,
            reasons,
            self.config.reentry,
            self.config.execute_minutes,
            stop_invalidation_stress_active=quote.stressed,
        )
        if minutes is None:
            return
        self._event(out, quote.ts, REENTRY_LOCK_UPDATED, reasons,
                    lockUntilMs=self.lock_until_ms, lockMinutes=minutes)

    def _release(self, fraction: float) -> None:
        if self.defer_releases:
            self.pending_releases.append(fraction)
        else:
            self.budget.release(self.pair, fraction)

    def apply_releases(self) -> None:
        """Give the risk held back by deferred exits back to the budget."""
        for fraction in self.pending_releases:
            self.budget.release(self.pair, fraction)
        self.pending_releases = []

    # ------------------------------------------------------------------
    # Entry admission
    # ------------------------------------------------------------------
    def _blocked(self, out: TickOutcome, quote: StressedQuote, reasons: List[str], **details: Any) -> None:
        self._event(out, quote.ts, ENTRY_BLOCKED, reasons, **details)
        logger.info("Entry on %s blocked: %s", self.pair, ','.join(reasons))

    def plan_entry(
        self,
        signal: EntrySignal,
        quote: StressedQuote,
        out: TickOutcome,
        events: Optional[Iterable[EconomicEvent]] = None,
        stale_events: bool = False,
    ) -> Optional[EntryPlan]:
        """Admit `signal` on `quote` and reserve its risk.

        Returns ``None`` when the entry is blocked; the reasons are
        recorded as an ``ENTRY_BLOCKED`` timeline event in `out`.
        """
        if self.position is not None:
            self._blocked(out, quote, ['POSITION_ALREADY_OPEN'], signalTs=signal.ts)
            return None

        if self.locks.is_locked(self.pair, quote.ts):
            self._blocked(out, quote, ['REENTRY_NEXT_BAR_LOCK'],
                          lockUntilMs=self.lock_until_ms, signalTs=signal.ts)
            return None

        eligibility = evaluate_pair_eligibility(self.pair, quote, self.config, events, stale_events)
        if not eligibility.eligible:
            self._blocked(out, quote, eligibility.reasons, spreadToAtr1h=eligibility.spread_to_atr1h)
            return None

        try:
            side = normalize_side(signal.side)
        except ValueError:
            self._blocked(out, quote, ['INVALID_ENTRY_PARAMETERS'], signalTs=signal.ts, side=signal.side)
            return None

        entry_price = self._fill_price(quote, side, is_entry=True)
        stop_price = float(signal.stop_price) if _finite_positive(signal.stop_price) else math.nan
        risk_cfg = self.config.risk
        leverage = 1
        size_reasons: List[str] = []
        if risk_cfg.sizing_mode == 'risk':
            size = compute_hybrid_risk_size(
                entry_price, stop_price, signal.confidence, risk_cfg.fallback_notional_usd,
                risk_cfg.max_leverage, risk_cfg.risk_per_trade_pct, self.equity_usd,
            )
            notional = size.effective_notional_usd
            leverage = size.leverage
            size_reasons = size.reason_codes
        elif _finite_positive(signal.notional_usd):
            notional = float(signal.notional_usd)
        else:
            notional = float(self.config.default_notional_usd)

        units = notional / entry_price if entry_price > 0 else math.nan
        risk_abs = abs(entry_price - stop_price)
        wrong_side = (side == BUY and stop_price >= entry_price) or (side != BUY and stop_price <= entry_price)
        if not (_finite_positive(units) and _finite_positive(risk_abs)) or wrong_side:
            self._blocked(out, quote, ['INVALID_ENTRY_PARAMETERS'],
                          entryPrice=entry_price, stopPrice=signal.stop_price, notionalUsd=notional)
            return None

        risk_pct = position_risk_pct(entry_price, stop_price, units, self.equity_usd)
        decision = self.budget.reserve(self.pair, risk_pct)
        if not decision.allow:
            self._blocked(out, quote, decision.reason_codes, riskPct=risk_pct)
            return None

        take_profit = float(signal.take_profit_price) if _finite_positive(signal.take_profit_price) else None
        return EntryPlan(
            signal=signal,
            quote=quote,
            side=side,
            entry_price=entry_price,
            stop_price=stop_price,
            take_profit_price=take_profit,
            units=units,
            notional_usd=notional,
            leverage=leverage,
            risk_pct=risk_pct,
            size_reasons=size_reasons,
        )

    def abort_entry(self, plan: EntryPlan) -> None:
        """Release the risk reserved by `plan` without opening."""
        self.budget.cancel(self.pair)
        logger.warning("Entry on %s aborted; risk reservation released", self.pair)

    def open_entry(self, plan: EntryPlan, out: TickOutcome, entry_price: Optional[float] = None) -> Position:
        """Open the position described by `plan`.

        `entry_price` overrides the modelled fill, for brokers that
        report the actual execution price.
        """
        price = float(entry_price) if _finite_positive(entry_price) else plan.entry_price
        units = plan.notional_usd / price
        risk_abs = abs(price - plan.stop_price)
        if not _finite_positive(risk_abs):
            # Filled on the stop: keep the planned distance as 1R.
            risk_abs = abs(plan.entry_price - plan.stop_price)
            logger.warning("Fill %.6f on %s sits on the stop; using planned risk", price, self.pair)
        self.budget.confirm(self.pair)
        self.locks.clear(self.pair)
        self.position = Position(
            pair=self.pair,
            side=plan.side,
            entry_price=price,
            initial_stop_price=plan.stop_price,
            current_stop_price=plan.stop_price,
            take_profit_price=plan.take_profit_price,
            units=units,
            initial_units=units,
            initial_risk_abs=risk_abs,
            opened_at_ms=plan.quote.ts,
            entry_notional_usd=plan.notional_usd,
            regime_aligned=bool(plan.signal.regime_aligned),
            risk_pct=plan.risk_pct,
            label=plan.signal.label,
        )
        self._row(
            out, ts=plan.quote.ts, kind=ENTRY, side=plan.side, price=price, units=units,
            notional_usd=plan.notional_usd, pnl_usd=0.0, fee_usd=0.0,
            reason_codes=['ENTRY_OPENED'], position_units_after=units,
        )
        self._event(out, plan.quote.ts, ENTRY_OPENED, ['ENTRY_OPENED'] + plan.size_reasons,
                    side=plan.side, entryPrice=price, stopPrice=plan.stop_price,
                    takeProfitPrice=plan.take_profit_price, notionalUsd=plan.notional_usd,
                    leverage=plan.leverage, riskPct=plan.risk_pct, label=plan.signal.label)
        logger.info("Opened %s %s at %.6f stop=%.6f notional=%.2f",
                    plan.side, self.pair, price, plan.stop_price, plan.notional_usd)
        return self.position

    def try_enter(
        self,
        signal: EntrySignal,
        quote: StressedQuote,
        events: Optional[Iterable[EconomicEvent]] = None,
        stale_events: bool = False,
    ) -> TickOutcome:
        """Admit and open `signal` in one step (no broker in the loop)."""
        out = TickOutcome(ts=quote.ts)
        plan = self.plan_entry(signal, quote, out, events, stale_events)
        if plan is not None:
            self.open_entry(plan, out)
        return out
