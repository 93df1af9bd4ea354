import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fxlifecycle.config.schema import StressConfig, default_config
from fxlifecycle.execution.models import BUY, SELL, EntrySignal, Quote
from fxlifecycle.execution.stress import apply_spread_stress
from fxlifecycle.strategy.intraday_breakout import IntradayBreakoutSignalSource, IntradayState
from fxlifecycle.strategy.signals import ScriptedSignalSource, SignalRouter
from fxlifecycle.utils.timeutils import to_epoch_ms

import unittest


def sq(when: str, mid: float):
    quote = Quote(ts=to_epoch_ms(when), bid=mid - 0.00005, ask=mid + 0.00005)
    return apply_spread_stress(quote, StressConfig())


class TestScriptedSignals(unittest.TestCase):
    def test_entries_due_in_stable_order(self) -> None:
        a = EntrySignal(ts=200, side=BUY, stop_price=1.0, label='a')
        b = EntrySignal(ts=100, side=SELL, stop_price=1.2, label='b')
        c = EntrySignal(ts=200, side=SELL, stop_price=1.2, label='c')
        source = ScriptedSignalSource([a, b, c])
        self.assertIsNone(source.next_signal("EURUSD", 50))
        self.assertEqual(source.next_signal("EURUSD", 150).label, 'b')
        self.assertIsNone(source.next_signal("EURUSD", 150))
        self.assertEqual([source.next_signal("EURUSD", 300).label for _ in range(2)], ['a', 'c'])
        self.assertIsNone(source.next_signal("EURUSD", 300))
        self.assertEqual(source.remaining, 0)


class TestIntradayBreakout(unittest.TestCase):
    def setUp(self) -> None:
        self.source = IntradayBreakoutSignalSource(default_config())

    def test_first_quote_only_sets_levels(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T09:00:00Z", 1.1000))
        self.assertIsNone(self.source.next_signal("EURUSD", 0))
        state = self.source.states["EURUSD"]
        self.assertAlmostEqual(state.high, 1.1000)
        self.assertAlmostEqual(state.low, 1.1000)

    def test_breaks_produce_long_then_short(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T09:00:00Z", 1.1000))
        self.source.observe("EURUSD", sq("2024-01-10T09:05:00Z", 1.1010))
        signal = self.source.next_signal("EURUSD", 0)
        self.assertEqual(signal.side, BUY)
        self.assertAlmostEqual(signal.stop_price, 1.1000)
        self.assertIsNone(self.source.next_signal("EURUSD", 0), "A signal is handed out once")

        self.source.observe("EURUSD", sq("2024-01-10T09:10:00Z", 1.0990))
        signal = self.source.next_signal("EURUSD", 0)
        self.assertEqual(signal.side, SELL)
        self.assertAlmostEqual(signal.stop_price, 1.1010)

    def test_stale_signal_dropped_on_next_observe(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T09:00:00Z", 1.1000))
        self.source.observe("EURUSD", sq("2024-01-10T09:05:00Z", 1.1010))
        self.source.observe("EURUSD", sq("2024-01-10T09:10:00Z", 1.1005))
        self.assertIsNone(self.source.next_signal("EURUSD", 0))

    def test_skip_both_triggers(self) -> None:
        state = IntradayState(high=1.0990, low=1.1010, current_date="2024-01-10")
        side = self.source.evaluate(sq("2024-01-10T10:00:00Z", 1.1000), state)
        self.assertIsNone(side, "When both long and short signals trigger, the source should skip the trade")

    def test_outside_session_no_signal(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T19:00:00Z", 1.1000))
        self.source.observe("EURUSD", sq("2024-01-10T20:30:00Z", 1.1020))
        self.assertIsNone(self.source.next_signal("EURUSD", 0))
        self.assertAlmostEqual(self.source.states["EURUSD"].high, 1.1020, msg="Levels still track")

    def test_new_day_resets_levels(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T09:00:00Z", 1.1000))
        self.source.observe("EURUSD", sq("2024-01-11T09:00:00Z", 1.1050))
        self.assertIsNone(self.source.next_signal("EURUSD", 0))
        state = self.source.states["EURUSD"]
        self.assertEqual(state.current_date, "2024-01-11")
        self.assertAlmostEqual(state.low, 1.1050)

    def test_pairs_are_independent(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T09:00:00Z", 1.1000))
        self.source.observe("GBPUSD", sq("2024-01-10T09:05:00Z", 1.2700))
        self.assertIsNone(self.source.next_signal("GBPUSD", 0))
        self.assertIsNone(self.source.next_signal("EURUSD", 0))

    def test_export_and_import_state(self) -> None:
        self.source.observe("EURUSD", sq("2024-01-10T09:00:00Z", 1.1000))
        exported = self.source.export_state("EURUSD")
        self.assertIsNone(self.source.export_state("USDJPY"))

        other = IntradayBreakoutSignalSource(default_config())
        other.import_state("EURUSD", exported)
        self.assertEqual(other.states["EURUSD"], IntradayState.from_dict(exported))
        other.observe("EURUSD", sq("2024-01-10T09:05:00Z", 1.0990))
        self.assertEqual(other.next_signal("EURUSD", 0).side, SELL)


class TestSignalRouter(unittest.TestCase):
    def test_dispatch_by_pair(self) -> None:
        eur = ScriptedSignalSource([EntrySignal(ts=10, side=BUY, stop_price=1.09)])
        gbp = ScriptedSignalSource([EntrySignal(ts=20, side=SELL, stop_price=1.28)])
        router = SignalRouter({"eurusd": eur, "GBPUSD": gbp})
        self.assertIsNone(router.next_signal("GBPUSD", 10))
        self.assertEqual(router.next_signal("EURUSD", 10).side, BUY)
        self.assertEqual(router.next_signal("GBPUSD", 20).side, SELL)
        self.assertIsNone(router.next_signal("USDJPY", 20))
        router.observe("USDJPY", sq("2024-01-10T09:00:00Z", 150.0))


if __name__ == '__main__':
    unittest.main()
