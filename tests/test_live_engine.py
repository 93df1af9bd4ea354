import os
import sys
import tempfile

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fxlifecycle.config.schema import SlippageConfig, default_config
from fxlifecycle.execution.broker import BrokerError, PaperBroker, TransientBrokerError
from fxlifecycle.execution.models import BUY, ENTRY, EXIT, PARTIAL_EXIT, EntrySignal, Quote
from fxlifecycle.execution.mt5_exec import PAIR_CYCLE_FAILED, PAIR_CYCLE_OK, LiveEngine
from fxlifecycle.gates.events import EconomicEvent
from fxlifecycle.strategy.signals import ScriptedSignalSource, SignalRouter
from fxlifecycle.utils.persistence import PositionContextStore
from fxlifecycle.utils.timeutils import MS_PER_MINUTE, to_epoch_ms

import unittest

T0 = to_epoch_ms("2024-01-10T09:00:00Z")


class FlakyQuoteBroker(PaperBroker):
    """Paper broker whose quote feed fails a few times per pair."""

    def __init__(self, failures):
        super().__init__()
        self.failures = dict(failures)

    def latest_quote(self, pair):
        if self.failures.get(pair, 0) > 0:
            self.failures[pair] -= 1
            raise TransientBrokerError("session expired")
        return super().latest_quote(pair)


class RejectingBroker(PaperBroker):
    def open_position(self, pair, direction, notional, leverage):
        raise BrokerError("Order rejected: retcode=10019")


class CloseFailingBroker(PaperBroker):
    fail_closes = False

    def close_position(self, position, partial_pct=None):
        if self.fail_closes:
            raise BrokerError("Close rejected: retcode=10018")
        return super().close_position(position, partial_pct)


class BrokenFeedBroker(PaperBroker):
    def latest_quote(self, pair):
        if pair == "GBPUSD":
            raise KeyError("bid")
        return super().latest_quote(pair)


class TestLiveEngine(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.state_file = os.path.join(tmpdir.name, "state.json")
        self.store = PositionContextStore(self.state_file)

        cfg = default_config()
        cfg.slippage = SlippageConfig(
            seed=7, entry_base_bps=0.0, exit_base_bps=0.0, random_bps=0.0,
            shock_bps=0.0, medium_event_bps=0.0, high_event_bps=0.0,
        )
        cfg.time_stop.enabled = False
        cfg.live.pairs = ["EURUSD", "GBPUSD"]
        self.config = cfg
        self.sleeps = []

    def _signals(self):
        return SignalRouter({
            "EURUSD": ScriptedSignalSource([EntrySignal(ts=T0, side=BUY, stop_price=1.0995)]),
            "GBPUSD": ScriptedSignalSource([]),
        })

    def _engine(self, broker, **kwargs):
        return LiveEngine(self.config, broker, self.store, signals=self._signals(),
                          sleep=self.sleeps.append, **kwargs)

    def _broker(self, cls=PaperBroker, minutes=0, eur=(1.0999, 1.1000), **kwargs):
        broker = cls(**kwargs)
        self._quote(broker, minutes, eur)
        return broker

    @staticmethod
    def _quote(broker, minutes, eur, gbp=(1.2699, 1.2700)):
        ts = T0 + minutes * MS_PER_MINUTE
        broker.set_quote("EURUSD", Quote(ts=ts, bid=eur[0], ask=eur[1]))
        if gbp is not None:
            broker.set_quote("GBPUSD", Quote(ts=ts, bid=gbp[0], ask=gbp[1]))

    def _stored_position(self, pair):
        context = self.store.load(pair) or {}
        return (context.get('machine') or {}).get('position')

    def test_open_then_close_is_mirrored(self) -> None:
        broker = self._broker()
        engine = self._engine(broker)

        results = engine.run_cycle()
        self.assertEqual(set(results), {"EURUSD", "GBPUSD"})
        self.assertTrue(all(r.ok for r in results.values()))
        self.assertEqual(results["EURUSD"].reason_codes, [PAIR_CYCLE_OK])
        self.assertEqual([row.kind for row in results["EURUSD"].ledger], [ENTRY])
        self.assertEqual(results["GBPUSD"].ledger, [])
        self.assertEqual([p.pair for p in broker.list_open_positions()], ["EURUSD"])
        stored = self._stored_position("EURUSD")
        self.assertAlmostEqual(stored['entry_price'], 1.1000)
        self.assertEqual(self.store.load("EURUSD")['updated_at'], "2024-01-10T09:00:00+00:00")

        self._quote(broker, 5, (1.0990, 1.0991))
        results = engine.run_cycle()
        exits = [row for row in results["EURUSD"].ledger if row.kind == EXIT]
        self.assertEqual(exits[0].reason_codes, ['STOP_INVALIDATED_LONG'])
        self.assertEqual(broker.orders[-1]['action'], 'close')
        self.assertIsNone(broker.orders[-1]['partial_pct'])
        self.assertEqual(broker.list_open_positions(), [])
        self.assertIsNone(self._stored_position("EURUSD"))
        self.assertEqual(engine.reconcile(), [])

    def test_partial_exit_is_mirrored_as_percentage(self) -> None:
        broker = self._broker()
        engine = self._engine(broker)
        engine.run_cycle()
        opened_units = broker.list_open_positions()[0].units

        self._quote(broker, 5, (1.1006, 1.1007))
        results = engine.run_cycle()
        self.assertEqual([row.kind for row in results["EURUSD"].ledger], [PARTIAL_EXIT])
        self.assertAlmostEqual(broker.orders[-1]['partial_pct'], 50.0)
        self.assertAlmostEqual(broker.list_open_positions()[0].units, opened_units / 2)
        self.assertAlmostEqual(self._stored_position("EURUSD")['current_stop_price'], 1.10015)

    def test_failing_pair_does_not_stop_others(self) -> None:
        broker = PaperBroker()
        broker.set_quote("EURUSD", Quote(ts=T0, bid=1.0999, ask=1.1000))
        engine = self._engine(broker)
        results = engine.run_cycle()
        self.assertTrue(results["EURUSD"].ok)
        self.assertFalse(results["GBPUSD"].ok)
        self.assertEqual(results["GBPUSD"].reason_codes, [PAIR_CYCLE_FAILED])
        self.assertIn("No quote available", results["GBPUSD"].error)
        self.assertIsNone(self.store.load("GBPUSD"))
        self.assertIsNotNone(self._stored_position("EURUSD"))

    def test_rejected_open_releases_reservation(self) -> None:
        broker = self._broker(RejectingBroker)
        engine = self._engine(broker)
        budget = engine.build_budget({})
        with self.assertRaises(BrokerError):
            engine.cycle_pair("EURUSD", None, budget)
        self.assertAlmostEqual(budget.snapshot().portfolio_pct, 0.0)
        self.assertTrue(budget.reserve("EURUSD", 0.5).allow, "No reservation left pending")
        self.assertIsNone(self.store.load("EURUSD"))

        results = engine.run_cycle()
        self.assertEqual(results["EURUSD"].reason_codes, [PAIR_CYCLE_FAILED])

    def test_transient_quote_errors_are_retried(self) -> None:
        broker = self._broker(FlakyQuoteBroker, failures={"EURUSD": 2})
        engine = self._engine(broker)
        results = engine.run_cycle()
        self.assertTrue(results["EURUSD"].ok)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_retries_exhausted_marks_pair_failed(self) -> None:
        broker = self._broker(FlakyQuoteBroker, failures={"GBPUSD": 10})
        engine = self._engine(broker)
        results = engine.run_cycle()
        self.assertTrue(results["EURUSD"].ok)
        self.assertEqual(results["GBPUSD"].reason_codes, [PAIR_CYCLE_FAILED])
        self.assertEqual(len(self.sleeps), self.config.live.broker_retries)

    def test_failed_close_keeps_context_and_reconcile_reports(self) -> None:
        self._engine(self._broker()).run_cycle()
        stored = self.store.load("EURUSD")

        fresh = self._broker(minutes=5, eur=(1.0990, 1.0991))
        engine = self._engine(fresh)
        self.assertEqual(engine.reconcile(), ["EURUSD"])
        results = engine.run_cycle()
        self.assertEqual(results["EURUSD"].reason_codes, [PAIR_CYCLE_FAILED])
        self.assertEqual(self.store.load("EURUSD"), stored)

    def test_failed_close_keeps_risk_committed_for_other_pairs(self) -> None:
        self.config.live.max_workers = 1
        self.config.risk.max_portfolio_open_pct = 0.005
        self.config.risk.max_currency_open_pct = 0.0
        signals = SignalRouter({
            "EURUSD": ScriptedSignalSource([EntrySignal(ts=T0, side=BUY, stop_price=1.0995)]),
            "GBPUSD": ScriptedSignalSource([
                EntrySignal(ts=T0 + 5 * MS_PER_MINUTE, side=BUY, stop_price=1.2695),
            ]),
        })
        broker = self._broker(CloseFailingBroker)
        engine = LiveEngine(self.config, broker, self.store, signals=signals, sleep=self.sleeps.append)
        engine.run_cycle()
        self.assertIsNotNone(self._stored_position("EURUSD"))

        broker.fail_closes = True
        self._quote(broker, 5, (1.0990, 1.0991))
        results = engine.run_cycle()
        self.assertEqual(results["EURUSD"].reason_codes, [PAIR_CYCLE_FAILED])
        self.assertIsNotNone(self._stored_position("EURUSD"))
        self.assertTrue(results["GBPUSD"].ok)
        self.assertEqual(results["GBPUSD"].ledger, [])
        blocked = [ev for ev in results["GBPUSD"].timeline if ev.type == 'ENTRY_BLOCKED']
        self.assertEqual(blocked[0].reason_codes, ['NO_TRADE_RISK_CAP_PORTFOLIO'])
        self.assertEqual([p.pair for p in broker.list_open_positions()], ["EURUSD"])

    def test_unreadable_context_fails_only_its_pair(self) -> None:
        malformed = {'machine': {'position': {'pair': 'GBPUSD', 'side': 'BUY'}}}
        self.store.save("GBPUSD", malformed)
        broker = self._broker()
        engine = self._engine(broker)

        failed = {}
        usage = engine.build_budget(self.store.load_all(), failed).snapshot()
        self.assertIn("GBPUSD", failed)
        self.assertAlmostEqual(usage.pair_pct["GBPUSD"], self.config.risk.risk_per_trade_pct)

        results = engine.run_cycle()
        self.assertEqual(results["GBPUSD"].reason_codes, [PAIR_CYCLE_FAILED])
        self.assertIn("Unreadable stored context", results["GBPUSD"].error)
        self.assertTrue(results["EURUSD"].ok)
        self.assertEqual([row.kind for row in results["EURUSD"].ledger], [ENTRY])
        self.assertEqual(self.store.load("GBPUSD"), malformed)

    def test_unexpected_pair_error_is_isolated(self) -> None:
        broker = self._broker(BrokenFeedBroker)
        results = self._engine(broker).run_cycle()
        self.assertEqual(results["GBPUSD"].reason_codes, [PAIR_CYCLE_FAILED])
        self.assertIn("KeyError", results["GBPUSD"].error)
        self.assertTrue(results["EURUSD"].ok)
        self.assertEqual([p.pair for p in broker.list_open_positions()], ["EURUSD"])

    def test_budget_rebuilt_from_stored_positions(self) -> None:
        engine = self._engine(self._broker())
        engine.run_cycle()
        usage = engine.build_budget(self.store.load_all()).snapshot()
        self.assertGreater(usage.pair_pct["EURUSD"], 0.0)
        self.assertNotIn("GBPUSD", usage.pair_pct)

    def test_calendar_event_forces_close(self) -> None:
        broker = self._broker()
        engine = self._engine(broker)
        engine.run_cycle()

        engine.events_provider = lambda: [EconomicEvent("2024-01-10T09:10:00Z", "USD", "HIGH", "CPI")]
        self._quote(broker, 5, (1.0999, 1.1000))
        results = engine.run_cycle()
        self.assertEqual(results["EURUSD"].ledger[-1].reason_codes, ['EVENT_HIGH_FORCE_CLOSE'])
        self.assertEqual(broker.list_open_positions(), [])
        context = self.store.load("EURUSD")
        self.assertEqual(context['machine']['lock_until_ms'], T0 + 25 * MS_PER_MINUTE)

    def test_corrupt_store_fails_every_pair(self) -> None:
        with open(self.state_file, "w", encoding="utf-8") as fh:
            fh.write("{not json")
        broker = self._broker()
        results = self._engine(broker).run_cycle()
        self.assertEqual({r.reason_codes[0] for r in results.values()}, {PAIR_CYCLE_FAILED})
        self.assertEqual(broker.orders, [])

    def test_run_stops_after_max_cycles(self) -> None:
        broker = self._broker()
        engine = self._engine(broker)
        engine.run(max_cycles=2)
        self.assertEqual(self.sleeps, [self.config.live.poll_seconds])
        self.assertEqual(len(broker.orders), 1)


if __name__ == '__main__':
    unittest.main()
