"""
Broker adapters.

The live cycle talks to a broker only through `BrokerAdapter`.  Two
implementations are provided: `PaperBroker`, an in‑memory broker used
for dry runs and tests, and `MT5Broker`, which routes market orders to
a MetaTrader 5 terminal.  Replays never use a broker.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..config.schema import MT5Config
from ..data.mt5_data import MT5DataFeed, mt5
from .models import BUY, Position, Quote, close_side

logger = logging.getLogger(__name__)


class BrokerError(RuntimeError):
    """A broker call failed and should not be retried."""


class TransientBrokerError(BrokerError):
    """A broker call failed for a reason that may clear on retry
    (session expiry, rate limiting, connection reset)."""


@dataclass
class OrderResult:
    order_id: str
    price: Optional[float] = None


@dataclass
class BrokerPosition:
    pair: str
    side: str
    units: float
    entry_price: float
    order_id: str


class BrokerAdapter:
    """Interface of a broker used by the live cycle."""

    def open_position(self, pair: str, direction: str, notional: float, leverage: int) -> OrderResult:
        raise NotImplementedError

    def close_position(self, position: Position, partial_pct: Optional[float] = None) -> OrderResult:
        raise NotImplementedError

    def list_open_positions(self) -> List[BrokerPosition]:
        raise NotImplementedError

    def latest_quote(self, pair: str) -> Quote:
        raise NotImplementedError

    def connect(self) -> None:
        """Open the broker session, if any."""

    def shutdown(self) -> None:
        """Close the broker session, if any."""


class PaperBroker(BrokerAdapter):
    """In‑memory broker.

    Quotes are pushed in with `set_quote` or pulled from `quote_source`
    (for example an `MT5DataFeed`); market orders fill at the touch
    (ask for buys, bid for sells).
    """

    def __init__(self, quote_source: Optional[Callable[[str], Quote]] = None) -> None:
        self.quote_source = quote_source
        self._quotes: Dict[str, Quote] = {}
        self._positions: Dict[str, BrokerPosition] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.orders: List[Dict[str, object]] = []

    def set_quote(self, pair: str, quote: Quote) -> None:
        with self._lock:
            self._quotes[pair] = quote

    def latest_quote(self, pair: str) -> Quote:
        if self.quote_source is not None:
            try:
                quote = self.quote_source(pair)
            except RuntimeError as exc:
                raise TransientBrokerError(str(exc)) from exc
            self.set_quote(pair, quote)
            return quote
        with self._lock:
            quote = self._quotes.get(pair)
        if quote is None:
            raise BrokerError(f"No quote available for {pair}")
        return quote

    def open_position(self, pair: str, direction: str, notional: float, leverage: int) -> OrderResult:
        quote = self.latest_quote(pair)
        price = quote.ask if direction == BUY else quote.bid
        with self._lock:
            order_id = f"paper-{next(self._ids)}"
            self._positions[pair] = BrokerPosition(
                pair=pair, side=direction, units=notional / price, entry_price=price, order_id=order_id,
            )
            self.orders.append({'order_id': order_id, 'pair': pair, 'action': 'open',
                                'side': direction, 'notional': notional, 'leverage': leverage, 'price': price})
        return OrderResult(order_id=order_id, price=price)

    def close_position(self, position: Position, partial_pct: Optional[float] = None) -> OrderResult:
        quote = self.latest_quote(position.pair)
        side = close_side(position.side)
        price = quote.ask if side == BUY else quote.bid
        with self._lock:
            held = self._positions.get(position.pair)
            if held is None:
                raise BrokerError(f"No open position on {position.pair}")
            order_id = f"paper-{next(self._ids)}"
            if partial_pct is not None and 0 < partial_pct < 100:
                held.units *= 1 - partial_pct / 100.0
            else:
                del self._positions[position.pair]
            self.orders.append({'order_id': order_id, 'pair': position.pair, 'action': 'close',
                                'side': side, 'partial_pct': partial_pct, 'price': price})
        return OrderResult(order_id=order_id, price=price)

    def list_open_positions(self) -> List[BrokerPosition]:
        with self._lock:
            return list(self._positions.values())


class MT5Broker(BrokerAdapter):
    """Market orders through a MetaTrader 5 terminal.

    **Note**: requires the `MetaTrader5` package and a locally installed
    terminal.  Volumes are converted from notional to lots using the
    symbol's contract size.
    """

    DEVIATION_POINTS = 20
    MAGIC = 240517

    def __init__(self, config: MT5Config) -> None:
        self.feed = MT5DataFeed(config)

    def connect(self) -> None:
        self.feed.connect()

    def shutdown(self) -> None:
        self.feed.shutdown()

    def latest_quote(self, pair: str) -> Quote:
        try:
            return self.feed.latest_quote(pair)
        except RuntimeError as exc:
            raise TransientBrokerError(str(exc)) from exc

    def _lots(self, pair: str, units: float) -> float:
        info = mt5.symbol_info(pair)
        if info is None:
            raise BrokerError(f"Unknown symbol {pair}")
        contract = float(info.trade_contract_size or 100_000)
        step = float(info.volume_step or 0.01)
        lots = round(units / contract / step) * step
        return max(float(info.volume_min or step), lots)

    def _own_positions(self, pair: Optional[str] = None) -> list:
        """Open terminal positions placed by this engine (matching `MAGIC`)."""
        if pair is None:
            positions = mt5.positions_get() or []
        else:
            positions = mt5.positions_get(symbol=pair) or []
        return [p for p in positions if getattr(p, 'magic', None) == self.MAGIC]

    def _send(self, request: dict) -> OrderResult:
        result = mt5.order_send(request)
        if result is None:
            raise TransientBrokerError(f"order_send returned None: {mt5.last_error()}")
        if result.retcode in (mt5.TRADE_RETCODE_REQUOTE, mt5.TRADE_RETCODE_PRICE_CHANGED, mt5.TRADE_RETCODE_TIMEOUT):
            raise TransientBrokerError(f"Transient order failure: retcode={result.retcode}")
        if result.retcode != mt5.TRADE_RETCODE_DONE:
            raise BrokerError(f"Order rejected: retcode={result.retcode} comment={result.comment}")
        return OrderResult(order_id=str(result.order), price=float(result.price))

    def open_position(self, pair: str, direction: str, notional: float, leverage: int) -> OrderResult:
        quote = self.latest_quote(pair)
        price = quote.ask if direction == BUY else quote.bid
        request = {
            'action': mt5.TRADE_ACTION_DEAL,
            'symbol': pair,
            'volume': self._lots(pair, notional / price),
            'type': mt5.ORDER_TYPE_BUY if direction == BUY else mt5.ORDER_TYPE_SELL,
            'price': price,
            'deviation': self.DEVIATION_POINTS,
            'magic': self.MAGIC,
            'comment': 'fxlifecycle entry',
            'type_filling': mt5.ORDER_FILLING_IOC,
        }
        logger.info("Sending %s order on %s (notional=%.2f, leverage=%s)", direction, pair, notional, leverage)
        return self._send(request)

    def close_position(self, position: Position, partial_pct: Optional[float] = None) -> OrderResult:
        quote = self.latest_quote(position.pair)
        side = close_side(position.side)
        units = position.units
        if partial_pct is not None and 0 < partial_pct < 100:
            units = position.units * partial_pct / 100.0
        tickets = self._own_positions(position.pair)
        if not tickets:
            raise BrokerError(f"No open position on {position.pair} with magic {self.MAGIC}")
        request = {
            'action': mt5.TRADE_ACTION_DEAL,
            'symbol': position.pair,
            'volume': self._lots(position.pair, units),
            'type': mt5.ORDER_TYPE_BUY if side == BUY else mt5.ORDER_TYPE_SELL,
            'price': quote.ask if side == BUY else quote.bid,
            'deviation': self.DEVIATION_POINTS,
            'magic': self.MAGIC,
            'comment': 'fxlifecycle exit',
            'type_filling': mt5.ORDER_FILLING_IOC,
            'position': tickets[0].ticket,
        }
        return self._send(request)

    def list_open_positions(self) -> List[BrokerPosition]:
        out = []
        for p in self._own_positions():
            out.append(BrokerPosition(
                pair=p.symbol,
                side=BUY if p.type == mt5.POSITION_TYPE_BUY else 'SELL',
                units=float(p.volume),
                entry_price=float(p.price_open),
                order_id=str(p.ticket),
            ))
        return out
