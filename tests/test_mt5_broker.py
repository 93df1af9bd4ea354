import os
import sys
from types import SimpleNamespace
from unittest import mock

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fxlifecycle.config.schema import MT5Config
from fxlifecycle.data import mt5_data
from fxlifecycle.execution import broker as broker_module
from fxlifecycle.execution.broker import BrokerError, MT5Broker
from fxlifecycle.execution.models import BUY, Position

import unittest


class FakeTerminal:
    """Minimal stand-in for the MetaTrader5 module."""

    TRADE_ACTION_DEAL = 1
    ORDER_TYPE_BUY = 0
    ORDER_TYPE_SELL = 1
    ORDER_FILLING_IOC = 1
    POSITION_TYPE_BUY = 0
    TRADE_RETCODE_DONE = 10009
    TRADE_RETCODE_REQUOTE = 10004
    TRADE_RETCODE_PRICE_CHANGED = 10020
    TRADE_RETCODE_TIMEOUT = 10012

    def __init__(self, positions):
        self.positions = positions
        self.requests = []

    def initialize(self, **kwargs):
        return True

    def shutdown(self):
        pass

    def last_error(self):
        return (1, "Success")

    def symbol_info_tick(self, symbol):
        return SimpleNamespace(time_msc=1_704_877_200_000, time=1_704_877_200, bid=1.0999, ask=1.1000)

    def symbol_info(self, symbol):
        return SimpleNamespace(trade_contract_size=100_000, volume_step=0.01, volume_min=0.01)

    def positions_get(self, symbol=None):
        return [p for p in self.positions if symbol is None or p.symbol == symbol]

    def order_send(self, request):
        self.requests.append(request)
        return SimpleNamespace(retcode=self.TRADE_RETCODE_DONE, order=77, price=1.0999, comment="done")


def terminal_position(ticket, magic, symbol="EURUSD"):
    return SimpleNamespace(ticket=ticket, magic=magic, symbol=symbol, type=0, volume=0.1, price_open=1.1)


def held_position(pair="EURUSD"):
    return Position(
        pair=pair, side=BUY, entry_price=1.1, initial_stop_price=1.0995, current_stop_price=1.0995,
        take_profit_price=None, units=10_000.0, initial_units=10_000.0, initial_risk_abs=0.0005,
        opened_at_ms=1_704_877_200_000, entry_notional_usd=11_000.0,
    )


class TestMT5Broker(unittest.TestCase):
    def _connect(self, positions):
        terminal = FakeTerminal(positions)
        for module in (broker_module, mt5_data):
            patcher = mock.patch.object(module, 'mt5', terminal)
            patcher.start()
            self.addCleanup(patcher.stop)
        broker = MT5Broker(MT5Config())
        broker.connect()
        return broker, terminal

    def test_close_targets_own_ticket(self) -> None:
        broker, terminal = self._connect([
            terminal_position(1, magic=0),
            terminal_position(2, magic=MT5Broker.MAGIC),
        ])
        broker.close_position(held_position(), partial_pct=50.0)
        request = terminal.requests[-1]
        self.assertEqual(request['position'], 2)
        self.assertEqual(request['type'], FakeTerminal.ORDER_TYPE_SELL)
        self.assertAlmostEqual(request['volume'], 0.05)

    def test_close_without_own_ticket_raises(self) -> None:
        broker, terminal = self._connect([terminal_position(1, magic=0)])
        with self.assertRaises(BrokerError):
            broker.close_position(held_position())
        self.assertEqual(terminal.requests, [])

    def test_foreign_positions_not_listed(self) -> None:
        broker, _ = self._connect([
            terminal_position(1, magic=0),
            terminal_position(2, magic=MT5Broker.MAGIC, symbol="GBPUSD"),
        ])
        self.assertEqual([(p.pair, p.order_id) for p in broker.list_open_positions()], [("GBPUSD", "2")])


if __name__ == '__main__':
    unittest.main()
