"""
MetaTrader 5 data feed.

This module wraps the `MetaTrader5` Python package to fetch the latest
bid/ask quote of a symbol for live and paper trading.  If the package
is not installed or initialisation fails, the code raises a clear
exception.  Users can skip installing MetaTrader5 when running offline
replays.
"""

from __future__ import annotations

from ..config.schema import MT5Config
from ..execution.models import Quote

# Attempt to import MetaTrader5.  If unavailable, mt5 will be None.
try:
    import MetaTrader5 as mt5  # type: ignore
except ImportError:
    mt5 = None  # Will be checked at runtime


class MT5DataFeed:
    """Handle connection to MetaTrader 5 and retrieval of quotes."""

    def __init__(self, config: MT5Config) -> None:
        self.config = config
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """Initialise the MetaTrader 5 terminal.

        Raises
        ------
        RuntimeError
            If the MetaTrader5 package is not installed or initialisation fails.
        """
        if mt5 is None:
            raise RuntimeError(
                "MetaTrader5 package is not installed.  Install it with 'pip install MetaTrader5' to use live trading."
            )
        if not mt5.initialize(path=self.config.path, login=self.config.login, password=self.config.password, server=self.config.server):
            raise RuntimeError(f"MT5 initialisation failed: {mt5.last_error()}")
        self._connected = True

    def shutdown(self) -> None:
        """Shutdown the MT5 connection if it was opened."""
        if mt5 and self._connected:
            mt5.shutdown()
            self._connected = False

    def latest_quote(self, symbol: str) -> Quote:
        """Return the latest tick of `symbol` as a `Quote`.

        Raises
        ------
        RuntimeError
            If the feed is not connected or the terminal returns no tick.
        """
        if not self._connected:
            raise RuntimeError("MT5DataFeed is not connected.  Call connect() before requesting data.")
        tick = mt5.symbol_info_tick(symbol)
        if tick is None:
            raise RuntimeError(f"No tick for {symbol}: {mt5.last_error()}")
        ts = int(getattr(tick, 'time_msc', 0) or int(tick.time) * 1000)
        return Quote(ts=ts, bid=float(tick.bid), ask=float(tick.ask))
