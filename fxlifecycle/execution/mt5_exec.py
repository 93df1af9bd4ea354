"""
Live and paper execution cycle.

This module provides `LiveEngine`, which trades a set of pairs through
a `BrokerAdapter` in paper or live mode.  Every cycle it loads the
persisted per‑pair contexts, rebuilds the shared risk budget, then
fans the pairs out over a thread pool.  Each pair worker pulls the
latest quote, stresses it, lets the position state machine manage the
open position, mirrors the resulting exits at the broker and finally
admits new entries.  A pair's context is saved only when its cycle
completes, so a failed broker call is retried from the same state on
the next cycle.

**Note**: Live trading requires the `MetaTrader5` package and a
locally installed MT5 terminal.  Paper mode routes orders to the
in‑memory `PaperBroker`.
"""

from __future__ import annotations

import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config.schema import Config
from ..gates.events import EconomicEvent, evaluate_event_gate
from ..risk.budget import RiskBudget, compute_open_risk_usage
from ..strategy.intraday_breakout import IntradayBreakoutSignalSource
from ..strategy.signals import SignalSource
from ..utils.persistence import PositionContextStore
from ..utils.retry import call_with_retry
from ..utils.timeutils import to_iso
from .broker import BrokerAdapter, BrokerError, OrderResult, TransientBrokerError
from .models import (
    EVENT_RISK_HIGH,
    EVENT_RISK_MEDIUM,
    EXIT,
    PARTIAL_EXIT,
    LedgerRow,
    Position,
    Quote,
    TimelineEvent,
)
from .slippage import XorShiftRng
from .state_machine import PositionStateMachine, TickOutcome
from .stress import apply_spread_stress

logger = logging.getLogger(__name__)

PAIR_CYCLE_OK = 'PAIR_CYCLE_OK'
PAIR_CYCLE_FAILED = 'PAIR_CYCLE_FAILED'

EventsProvider = Callable[[], Iterable[EconomicEvent]]


@dataclass
class PairCycleResult:
    """What one pair worker did during a cycle."""
    pair: str
    ok: bool
    reason_codes: List[str] = field(default_factory=list)
    ledger: List[LedgerRow] = field(default_factory=list)
    timeline: List[TimelineEvent] = field(default_factory=list)
    orders: List[OrderResult] = field(default_factory=list)
    error: Optional[str] = None


def _failed_result(pair: str, error: str) -> PairCycleResult:
    return PairCycleResult(pair=pair, ok=False, reason_codes=[PAIR_CYCLE_FAILED], error=error)


class LiveEngine:
    """Run the position lifecycle against a broker.

    Parameters
    ----------
    config : Config
        Engine configuration; ``config.live`` lists the pairs.
    broker : BrokerAdapter
        Broker used for quotes and orders.
    store : PositionContextStore
        Persistence for the per‑pair contexts.
    signals : SignalSource, optional
        Entry signal producer.  Defaults to the intraday breakout source.
    events_provider : callable, optional
        Returns the current economic calendar.  Without it the quote's
        event‑risk tier stays ``none``.
    sleep : callable
        Sleep function used between cycles and retries.
    """

    def __init__(
        self,
        config: Config,
        broker: BrokerAdapter,
        store: PositionContextStore,
        signals: Optional[SignalSource] = None,
        events_provider: Optional[EventsProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.broker = broker
        self.store = store
        self.signals = signals if signals is not None else IntradayBreakoutSignalSource(config)
        self.events_provider = events_provider
        self.pairs = [p.strip().upper() for p in config.live.pairs]
        self._sleep = sleep
        self._rngs = {
            pair: XorShiftRng(config.slippage.seed + idx) for idx, pair in enumerate(self.pairs)
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _retry(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        live = self.config.live
        return call_with_retry(
            func, *args,
            max_retries=live.broker_retries,
            backoff_factor=live.broker_backoff_seconds,
            retry_on=(TransientBrokerError,),
            sleep=self._sleep,
            **kwargs,
        )

    def build_budget(
        self,
        contexts: Dict[str, Dict[str, Any]],
        failed: Optional[Dict[str, str]] = None,
    ) -> RiskBudget:
        """Rebuild the shared risk budget from the stored open positions.

        A context that cannot be decoded is recorded in `failed` and its
        pair is charged ``risk.risk_per_trade_pct``.
        """
        positions = []
        realized = 0.0
        for pair, ctx in contexts.items():
            try:
                machine_ctx = (ctx or {}).get('machine') or {}
                pnl = float(machine_ctx.get('realized_pnl_usd', 0.0))
                pnl -= float(machine_ctx.get('rollover_fees_usd', 0.0))
                stored = machine_ctx.get('position')
                position = Position.from_dict(stored) if stored else None
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.error("Stored context for %s is unreadable: %s", pair, exc)
                if failed is not None:
                    failed[pair] = f"Unreadable stored context: {exc}"
                positions.append((pair, None))
                continue
            realized += pnl
            if position is not None:
                positions.append((pair, position))
        equity = self.config.starting_equity_usd + realized
        usage = compute_open_risk_usage(positions, equity, self.config.risk.risk_per_trade_pct)
        risk = self.config.risk
        return RiskBudget(risk.max_portfolio_open_pct, risk.max_currency_open_pct, usage)

    def _events(self) -> Optional[List[EconomicEvent]]:
        if self.events_provider is None:
            return None
        return list(self.events_provider())

    def _with_event_risk(self, pair: str, quote: Quote, events: Optional[List[EconomicEvent]]) -> Quote:
        if not events:
            return quote
        gate = evaluate_event_gate(pair, events, quote.ts, False, 'normal', self.config.events)
        if gate.force_close:
            return replace(quote, event_risk=EVENT_RISK_HIGH)
        if gate.block_new_entries or gate.tighten_stops:
            return replace(quote, event_risk=EVENT_RISK_MEDIUM)
        return quote

    def _mirror_exits(self, before: Optional[Position], outcome: TickOutcome, result: PairCycleResult) -> None:
        """Send the exits decided by the state machine to the broker."""
        if before is None:
            return
        held = copy.deepcopy(before)
        for row in outcome.ledger:
            if row.kind == PARTIAL_EXIT:
                total = row.units + row.position_units_after
                pct = row.units / total * 100.0 if total > 0 else 100.0
                result.orders.append(self._retry(self.broker.close_position, held, partial_pct=pct))
                held.units = row.position_units_after
            elif row.kind == EXIT:
                result.orders.append(self._retry(self.broker.close_position, held))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def cycle_pair(
        self,
        pair: str,
        context: Optional[Dict[str, Any]],
        budget: RiskBudget,
        events: Optional[List[EconomicEvent]] = None,
    ) -> PairCycleResult:
        """Run one management and admission step for `pair`.

        Raises
        ------
        BrokerError
            When a broker call fails after retries; the context is then
            left untouched and risk freed by undelivered exits stays
            committed in `budget`.
        """
        context = context or {}
        result = PairCycleResult(pair=pair, ok=True, reason_codes=[PAIR_CYCLE_OK])
        machine = PositionStateMachine(pair, self.config, self._rngs[pair], budget, defer_releases=True)
        machine.restore_context(context.get('machine'))
        if hasattr(self.signals, 'import_state'):
            self.signals.import_state(pair, context.get('signal'))

        raw = self._retry(self.broker.latest_quote, pair)
        quote = apply_spread_stress(self._with_event_risk(pair, raw, events), self.config.stress)

        before = copy.deepcopy(machine.position)
        outcome = machine.on_tick(quote)
        self._mirror_exits(before, outcome, result)
        machine.apply_releases()

        self.signals.observe(pair, quote)
        while machine.position is None:
            signal = self.signals.next_signal(pair, quote.ts)
            if signal is None:
                break
            plan = machine.plan_entry(signal, quote, outcome, events)
            if plan is None:
                continue
            try:
                order = self._retry(self.broker.open_position, pair, plan.side, plan.notional_usd, plan.leverage)
            except Exception:
                machine.abort_entry(plan)
                raise
            result.orders.append(order)
            machine.open_entry(plan, outcome, entry_price=order.price)

        new_context: Dict[str, Any] = {'machine': machine.to_context(), 'updated_at': to_iso(quote.ts)}
        if hasattr(self.signals, 'export_state'):
            new_context['signal'] = self.signals.export_state(pair)
        self.store.save(pair, new_context)

        result.ledger = outcome.ledger
        result.timeline = outcome.timeline
        return result

    def run_cycle(self) -> Dict[str, PairCycleResult]:
        """Run one cycle over every configured pair.

        A failing pair is reported with ``PAIR_CYCLE_FAILED`` and does
        not stop the others.
        """
        results: Dict[str, PairCycleResult] = {}
        try:
            contexts = self.store.load_all()
        except (OSError, ValueError) as exc:
            logger.error("Could not load position contexts from %s: %s", self.store.path, exc)
            for pair in self.pairs:
                results[pair] = _failed_result(pair, str(exc))
            return results
        failed: Dict[str, str] = {}
        budget = self.build_budget(contexts, failed)
        events = self._events()
        pending = []
        for pair in self.pairs:
            if pair in failed:
                results[pair] = _failed_result(pair, failed[pair])
            else:
                pending.append(pair)
        if not pending:
            return results
        workers = max(1, min(int(self.config.live.max_workers), len(pending)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.cycle_pair, pair, contexts.get(pair), budget, events): pair
                for pair in pending
            }
            for future in as_completed(futures):
                pair = futures[future]
                try:
                    results[pair] = future.result()
                except (BrokerError, OSError, ValueError) as exc:
                    logger.error("%s on %s: %s", PAIR_CYCLE_FAILED, pair, exc)
                    results[pair] = _failed_result(pair, str(exc))
                except Exception as exc:
                    logger.exception("%s on %s: unexpected error", PAIR_CYCLE_FAILED, pair)
                    results[pair] = _failed_result(pair, f"{type(exc).__name__}: {exc}")
        return results

    def reconcile(self) -> List[str]:
        """Compare stored positions with the broker's.

        Returns the pairs whose stored and broker state disagree; they
        are logged but not corrected.
        """
        contexts = self.store.load_all()
        stored = {
            pair for pair, ctx in contexts.items()
            if ((ctx or {}).get('machine') or {}).get('position')
        }
        held = {p.pair for p in self._retry(self.broker.list_open_positions)}
        mismatched = sorted((stored ^ held) & set(self.pairs))
        for pair in mismatched:
            logger.warning("Position mismatch on %s: stored=%s broker=%s", pair, pair in stored, pair in held)
        return mismatched

    def run(self, max_cycles: Optional[int] = None) -> None:
        """Main loop for paper/live trading.

        Connects to the broker and runs a cycle every
        ``config.live.poll_seconds`` until interrupted (Ctrl+C) or
        `max_cycles` cycles have run.
        """
        logger.info("Starting live engine (pairs=%s, mode=%s)", ','.join(self.pairs), self.config.mode)
        try:
            self.broker.connect()
        except (RuntimeError, OSError) as exc:
            logger.error("Failed to connect to broker: %s", exc)
            return
        cycles = 0
        try:
            try:
                self.reconcile()
            except (BrokerError, OSError, ValueError) as exc:
                logger.warning("Reconciliation skipped: %s", exc)
            while max_cycles is None or cycles < max_cycles:
                results = self.run_cycle()
                cycles += 1
                failed = [pair for pair, r in results.items() if not r.ok]
                if failed:
                    logger.warning("Cycle %d finished with failures: %s", cycles, ','.join(sorted(failed)))
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self._sleep(self.config.live.poll_seconds)
        except KeyboardInterrupt:
            logger.info("Shutting down live engine...")
        finally:
            self.broker.shutdown()
