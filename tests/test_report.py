import json
import os
import sys
import tempfile

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pandas as pd

from fxlifecycle.config.schema import default_config
from fxlifecycle.execution.models import (
    ENTRY,
    EXIT,
    PARTIAL_EXIT,
    EquityPoint,
    LedgerRow,
    ReplayResult,
    TimelineEvent,
)
from fxlifecycle.execution.replay_exec import load_replay_input, run_replay_input
from fxlifecycle.reporting.metrics import compute_summary, max_drawdown_pct, trade_statistics
from fxlifecycle.reporting.report import LEDGER_COLUMNS, ledger_frame, write_replay_artifacts

import unittest

FIXTURE = os.path.join(PROJECT_ROOT, "fixtures", "eurusd_session.json")


def row(id_, kind, pnl=0.0, fee=0.0, price=1.1, units=1000.0, reasons=None):
    return LedgerRow(
        id=id_, ts=id_, kind=kind, side='BUY' if kind == ENTRY else 'SELL', price=price, units=units,
        notional_usd=price * units, pnl_usd=pnl, fee_usd=fee, reason_codes=reasons or [kind],
        position_units_after=0.0, equity_usd_after=10_000.0 + pnl,
    )


class TestMetrics(unittest.TestCase):
    def test_max_drawdown(self) -> None:
        curve = [EquityPoint(i, eq, 0.0, 0.0) for i, eq in enumerate([100.0, 110.0, 99.0, 120.0, 108.0])]
        self.assertAlmostEqual(max_drawdown_pct(curve), 10.0)
        self.assertEqual(max_drawdown_pct([]), 0.0)

    def test_summary_counts_partial_and_full_exits(self) -> None:
        ledger = [
            row(1, ENTRY),
            row(2, PARTIAL_EXIT, pnl=3.0),
            row(3, EXIT, pnl=-1.0),
            LedgerRow(4, 4, 'ROLLOVER_FEE', None, None, None, 1000.0, 0.0, 0.25, ['ROLLOVER_FEE_APPLIED'], 0.0, 0.0),
        ]
        summary = compute_summary("EURUSD", 10_000.0, 10_001.75, ledger, [], 1, 4, False)
        self.assertEqual(summary.closed_legs, 2)
        self.assertEqual(summary.winning_legs, 1)
        self.assertAlmostEqual(summary.win_rate_pct, 50.0)
        self.assertAlmostEqual(summary.realized_pnl_usd, 2.0)
        self.assertAlmostEqual(summary.rollover_fees_usd, 0.25)
        self.assertAlmostEqual(summary.return_pct, 0.0175)

    def test_trade_statistics(self) -> None:
        ledger = [
            row(1, ENTRY, price=1.1000, units=1000.0),
            row(2, PARTIAL_EXIT, pnl=0.5),
            row(3, EXIT, pnl=0.5, reasons=['STOP_INVALIDATED_LONG']),
        ]
        timeline = [TimelineEvent(1, 'ENTRY_OPENED', ['ENTRY_OPENED'], {'stopPrice': 1.0990})]
        summary = compute_summary("EURUSD", 10_000.0, 10_001.0, ledger, [], 1, 3, False)
        stats = trade_statistics(ReplayResult(summary, ledger, timeline, []))
        self.assertEqual(stats['trades'], 1)
        self.assertAlmostEqual(stats['avg_r'], 1.0)
        self.assertEqual(stats['exits_by_reason'], {'STOP_INVALIDATED_LONG': 1})


class TestReplayArtifacts(unittest.TestCase):
    def setUp(self) -> None:
        self.result = run_replay_input(load_replay_input(FIXTURE), default_config())

    def test_ledger_frame_joins_reasons(self) -> None:
        frame = ledger_frame(self.result)
        self.assertEqual(list(frame.columns), LEDGER_COLUMNS)
        self.assertEqual(len(frame), len(self.result.ledger))
        for value, ledger_row in zip(frame['reason_codes'], self.result.ledger):
            self.assertEqual(value, '|'.join(ledger_row.reason_codes))

    def test_write_artifacts(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            out_dir = os.path.join(tmpdir, "replay")
            paths = write_replay_artifacts(self.result, out_dir, plot=True)
            self.assertEqual(set(paths), {'summary', 'equity', 'timeline', 'ledger', 'plot'})
            for path in paths.values():
                self.assertTrue(os.path.exists(path), path)
            with open(paths['summary'], encoding='utf-8') as fh:
                summary = json.load(fh)
            self.assertEqual(summary['pair'], "EURUSD")
            with open(paths['equity'], encoding='utf-8') as fh:
                self.assertEqual(len(json.load(fh)), len(self.result.equity_curve))
            ledger = pd.read_csv(paths['ledger'])
            self.assertEqual(list(ledger['id']), [r.id for r in self.result.ledger])

    def test_write_without_plot(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            paths = write_replay_artifacts(self.result, tmpdir, plot=False)
            self.assertNotIn('plot', paths)
            self.assertFalse(os.path.exists(os.path.join(tmpdir, 'equity_curve.png')))


if __name__ == '__main__':
    unittest.main()
