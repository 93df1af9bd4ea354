"""
Quote, position, ledger and timeline models.

These dataclasses represent the objects passed between the stress
model, the position state machine, the replay driver and the report
writers.  Keeping them in a separate module improves readability and
makes unit testing easier.

All timestamps are integer epoch milliseconds (UTC).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

BUY = 'BUY'
SELL = 'SELL'
SIDES = (BUY, SELL)

EVENT_RISK_NONE = 'none'
EVENT_RISK_MEDIUM = 'medium'
EVENT_RISK_HIGH = 'high'

# Ledger row kinds
ENTRY = 'ENTRY'
PARTIAL_EXIT = 'PARTIAL_EXIT'
EXIT = 'EXIT'
ROLLOVER_FEE = 'ROLLOVER_FEE'

# Timeline event types
ENTRY_OPENED = 'ENTRY_OPENED'
ENTRY_BLOCKED = 'ENTRY_BLOCKED'
PARTIAL_TAKEN = 'PARTIAL_TAKEN'
STOP_TIGHTENED = 'STOP_TIGHTENED'
POSITION_CLOSED = 'POSITION_CLOSED'
POSITION_HELD = 'POSITION_HELD'
ROLLOVER_FEE_APPLIED = 'ROLLOVER_FEE_APPLIED'
REENTRY_LOCK_UPDATED = 'REENTRY_LOCK_UPDATED'


class InvalidQuoteError(ValueError):
    """Raised for crossed, zero‑width or non‑positive quotes."""


def side_sign(side: str) -> int:
    return 1 if side == BUY else -1


def close_side(side: str) -> str:
    return SELL if side == BUY else BUY


def normalize_side(value: Any) -> str:
    side = str(value or '').strip().upper()
    if side in ('LONG', 'BUY'):
        return BUY
    if side in ('SHORT', 'SELL'):
        return SELL
    raise ValueError(f"Invalid side: {value!r}")


@dataclass
class Quote:
    """A raw bid/ask quote, optionally annotated by a replay fixture."""
    ts: int
    bid: float
    ask: float
    event_risk: str = EVENT_RISK_NONE
    force_close_reason_code: Optional[str] = None
    shock: bool = False
    rollover: bool = False
    spread_multiplier: Optional[float] = None
    note: Optional[str] = None


@dataclass
class StressedQuote:
    """A quote after execution stress has widened its spread."""
    ts: int
    bid: float
    ask: float
    mid: float
    spread_abs: float
    spread_multiplier: float
    spread_reasons: List[str]
    event_risk: str
    shock: bool
    rollover: bool
    force_close_reason_code: Optional[str] = None

    @property
    def stressed(self) -> bool:
        return self.spread_multiplier > 1.0 or self.shock


@dataclass
class EntrySignal:
    """A request to open a position, produced by a signal source."""
    ts: int
    side: str
    stop_price: float
    take_profit_price: Optional[float] = None
    notional_usd: Optional[float] = None
    confidence: float = 0.7
    regime_aligned: bool = False
    label: Optional[str] = None


@dataclass
class Position:
    """An open position owned by the state machine.

    `current_stop_price` only ever moves in the direction that reduces
    risk for the side held; `partial_taken_pct` never decreases.
    """
    pair: str
    side: str
    entry_price: float
    initial_stop_price: float
    current_stop_price: float
    take_profit_price: Optional[float]
    units: float
    initial_units: float
    initial_risk_abs: float
    opened_at_ms: int
    entry_notional_usd: float
    partial_taken_pct: float = 0.0
    trailing_active: bool = False
    trailing_mode: str = 'none'
    mfe_r: float = 0.0
    regime_aligned: bool = False
    risk_pct: float = 0.0
    derisked: bool = False
    label: Optional[str] = None

    def r_multiple(self, bid: float, ask: float) -> float:
        """Current R: bid for a long, ask for a short."""
        if not self.initial_risk_abs > 0:
            return 0.0
        if self.side == BUY:
            return (bid - self.entry_price) / self.initial_risk_abs
        return (self.entry_price - ask) / self.initial_risk_abs

    def unrealized_pnl(self, bid: float, ask: float) -> float:
        if self.side == BUY:
            return (bid - self.entry_price) * self.units
        return (self.entry_price - ask) * self.units

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(**data)


@dataclass(frozen=True)
class LedgerRow:
    """One money‑moving row; append‑only."""
    id: int
    ts: int
    kind: str
    side: Optional[str]
    price: Optional[float]
    units: Optional[float]
    notional_usd: Optional[float]
    pnl_usd: float
    fee_usd: float
    reason_codes: List[str]
    position_units_after: float
    equity_usd_after: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TimelineEvent:
    """An audit trail entry: why something happened (or did not)."""
    ts: int
    type: str
    reason_codes: List[str]
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EquityPoint:
    """Account equity marked against the quote of one tick."""
    ts: int
    equity_usd: float
    realized_pnl_usd: float
    unrealized_pnl_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReplaySummary:
    """Aggregate statistics of one replay run."""
    pair: str
    start_ts: Optional[int]
    end_ts: Optional[int]
    starting_equity_usd: float
    ending_equity_usd: float
    realized_pnl_usd: float
    rollover_fees_usd: float
    return_pct: float
    closed_legs: int
    winning_legs: int
    win_rate_pct: float
    max_drawdown_pct: float
    final_position_open: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReplayResult:
    summary: ReplaySummary
    ledger: List[LedgerRow]
    timeline: List[TimelineEvent]
    equity_curve: List[EquityPoint]
