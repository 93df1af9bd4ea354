"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with defaults for any missing fields.

The same `Config` object drives the offline replay and the live
execution cycle, so a rule tuned against a fixture runs unchanged
against the broker.  When extending the configuration, add new fields
to the appropriate dataclass; `load_config()` picks them up
automatically from the dataclass defaults.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List
import yaml


@dataclass
class StressConfig:
    """Spread stress multipliers applied to raw quotes.

    Attributes
    ----------
    transition_buffer_minutes : int
        Minutes either side of a session boundary treated as a
        transition window.  Zero disables transition stress.
    transition_multiplier : float
        Spread multiplier inside a session transition window.
    rollover_multiplier : float
        Spread multiplier on rollover‑flagged quotes.
    medium_event_multiplier, high_event_multiplier : float
        Spread multipliers for medium and high event‑risk quotes.
    """

    transition_buffer_minutes: int = 20
    transition_multiplier: float = 1.6
    rollover_multiplier: float = 1.8
    medium_event_multiplier: float = 1.4
    high_event_multiplier: float = 2.0


@dataclass
class SlippageConfig:
    """Execution slippage model, expressed in basis points.

    Attributes
    ----------
    seed : int
        Seed of the deterministic generator driving the random part.
    entry_base_bps, exit_base_bps : float
        Base slippage for entry and exit fills.
    random_bps : float
        Amplitude of the seeded random component.
    shock_bps, medium_event_bps, high_event_bps : float
        Additive slippage under shock and event‑risk conditions.
    """

    seed: int = 7
    entry_base_bps: float = 0.2
    exit_base_bps: float = 0.3
    random_bps: float = 0.15
    shock_bps: float = 0.6
    medium_event_bps: float = 0.4
    high_event_bps: float = 0.9


@dataclass
class ManagementConfig:
    """Open position management: partial take‑profit and trailing stop."""

    partial_at_r: float = 1.0
    partial_close_pct: float = 50.0
    trailing_distance_r: float = 0.9
    enable_trailing: bool = True
    min_hold_minutes_before_stop_invalidation: int = 0


@dataclass
class RolloverConfig:
    """Daily rollover fee and pre‑rollover disposition.

    Attributes
    ----------
    daily_fee_bps : float
        Fee debited on the open notional once per trading day crossed.
    rollover_hour_utc : int
        UTC hour at which the trading day rolls.
    entry_block_minutes : int
        New entries are rejected this many minutes before rollover.
    force_close_minutes : int
        Window before rollover in which stressed positions are disposed.
    force_close_spread_to_atr1h_min : float
        Spread‑to‑ATR level above which the pre‑rollover action fires.
    force_close_mode : str
        ``close`` flattens the position, ``derisk`` trims winners and
        closes weak positions only.
    derisk_winner_mfe_r_min : float
        Minimum favourable excursion (R) for a position to count as a
        winner in derisk mode.
    derisk_loser_close_r_max : float
        Positions whose current R is below this value are closed in
        derisk mode.
    derisk_partial_close_pct : float
        Percentage of units trimmed from winners in derisk mode.
    """

    daily_fee_bps: float = 0.8
    rollover_hour_utc: int = 0
    entry_block_minutes: int = 0
    force_close_minutes: int = 0
    force_close_spread_to_atr1h_min: float = 0.12
    force_close_mode: str = "close"
    derisk_winner_mfe_r_min: float = 0.8
    derisk_loser_close_r_max: float = 0.2
    derisk_partial_close_pct: float = 50.0


@dataclass
class ReentryConfig:
    """Reentry lock durations in minutes, per closing category."""

    lock_minutes: int = 5
    lock_minutes_time_stop: int = 5
    lock_minutes_regime_flip: int = 10
    lock_minutes_event_risk: int = 20
    lock_minutes_stop_invalidated: int = 0
    lock_minutes_stop_invalidated_stress: int = 0


@dataclass
class TimeStopConfig:
    """Time based exits.  Bars are measured in execute cycles."""

    enabled: bool = True
    no_follow_bars: int = 18
    min_follow_r: float = 0.3
    max_hold_hours: float = 10.0


@dataclass
class EligibilityConfig:
    """Pair tradeability thresholds used by the admission gate."""

    max_spread_to_atr1h: float = 0.12
    transition_spread_to_atr_multiplier: float = 0.8
    min_atr1h_percent: float = 0.0004


@dataclass
class RiskConfig:
    """Position sizing and open‑risk ceilings.

    Attributes
    ----------
    sizing_mode : str
        ``fixed`` uses the signal or default notional, ``risk`` sizes
        from confidence and stop distance.
    risk_per_trade_pct : float
        Target percentage of equity at risk per trade.
    max_leverage : int
        Ceiling on implied leverage (notional / equity).
    max_portfolio_open_pct, max_currency_open_pct : float
        Open‑risk ceilings.  Zero disables the respective check.
    fallback_notional_usd : float
        Notional used when risk sizing cannot be computed.
    """

    sizing_mode: str = "fixed"
    risk_per_trade_pct: float = 0.5
    max_leverage: int = 3
    max_portfolio_open_pct: float = 2.0
    max_currency_open_pct: float = 1.0
    fallback_notional_usd: float = 100.0


@dataclass
class EventConfig:
    """Economic event gate windows and impact tiers."""

    pre_event_minutes: int = 30
    post_event_minutes: int = 15
    force_close_impacts: List[str] = field(default_factory=lambda: ["HIGH"])
    block_new_impacts: List[str] = field(default_factory=lambda: ["HIGH", "MEDIUM"])
    tighten_only_impacts: List[str] = field(default_factory=lambda: ["MEDIUM"])
    stale_minutes: int = 45


@dataclass
class MarketHoursConfig:
    """Weekly FX market close and reopen hours (UTC)."""

    friday_close_hour_utc: int = 22
    sunday_open_hour_utc: int = 22


@dataclass
class MT5Config:
    """Holds parameters required to connect to a MetaTrader 5 terminal.

    Attributes
    ----------
    login : int
        Account login number.  Use `0` when running offline replays.
    password : str
        Password for the account.
    server : str
        Broker server name.
    path : str
        File system path to the MetaTrader 5 terminal executable.
    """

    login: int = 0
    password: str = ""
    server: str = ""
    path: str = ""


@dataclass
class LiveConfig:
    """Live and paper execution cycle settings.

    Attributes
    ----------
    pairs : List[str]
        Pairs managed by the live cycle.
    max_workers : int
        Number of pairs processed concurrently per cycle.
    poll_seconds : int
        Sleep between cycles.
    state_file : str
        JSON file holding persisted position contexts.
    dry_run : bool
        Route orders to the in‑memory paper broker.
    broker_retries, broker_backoff_seconds
        Retry policy for transient broker failures.
    """

    pairs: List[str] = field(default_factory=lambda: ["EURUSD"])
    max_workers: int = 4
    poll_seconds: int = 60
    state_file: str = "state.json"
    dry_run: bool = True
    broker_retries: int = 3
    broker_backoff_seconds: float = 0.5
    session_start: str = "07:00"
    session_end: str = "20:00"


@dataclass
class Config:
    """Root configuration for the lifecycle engine.

    Attributes
    ----------
    pair : str
        Pair replayed by default (e.g. ``"EURUSD"``).
    starting_equity_usd : float
        Account equity at the start of a replay.
    default_notional_usd : float
        Entry notional when a signal does not carry one.
    atr1h_abs : float
        Reference 1h ATR in price units for spread‑to‑ATR gates.
    execute_minutes : int
        Length of one execution cycle; also the bar length for time stops.
    force_close_on_high_event : bool
        Flatten open positions on high event‑risk quotes.
    mode : str
        Operating mode: ``replay``, ``matrix``, ``paper`` or ``live``.
    """

    pair: str = "EURUSD"
    starting_equity_usd: float = 10_000.0
    default_notional_usd: float = 850.0
    atr1h_abs: float = 0.0012
    execute_minutes: int = 5
    force_close_on_high_event: bool = True
    stress: StressConfig = field(default_factory=StressConfig)
    slippage: SlippageConfig = field(default_factory=SlippageConfig)
    management: ManagementConfig = field(default_factory=ManagementConfig)
    rollover: RolloverConfig = field(default_factory=RolloverConfig)
    reentry: ReentryConfig = field(default_factory=ReentryConfig)
    time_stop: TimeStopConfig = field(default_factory=TimeStopConfig)
    eligibility: EligibilityConfig = field(default_factory=EligibilityConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    events: EventConfig = field(default_factory=EventConfig)
    market_hours: MarketHoursConfig = field(default_factory=MarketHoursConfig)
    mt5: MT5Config = field(default_factory=MT5Config)
    live: LiveConfig = field(default_factory=LiveConfig)
    mode: str = "replay"


_SECTIONS = {
    'stress': StressConfig,
    'slippage': SlippageConfig,
    'management': ManagementConfig,
    'rollover': RolloverConfig,
    'reentry': ReentryConfig,
    'time_stop': TimeStopConfig,
    'eligibility': EligibilityConfig,
    'risk': RiskConfig,
    'events': EventConfig,
    'market_hours': MarketHoursConfig,
    'mt5': MT5Config,
    'live': LiveConfig,
}


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _coerce(section: str, name: str, default: Any, value: Any) -> Any:
    """Cast a YAML value to the type of the dataclass default."""
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, list):
            if isinstance(value, str):
                value = value.split(',')
            return [str(v).strip().upper() for v in value if str(v).strip()]
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {section}.{name}: {value!r}") from exc


def _build(cls, section: str, values: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown configuration keys in {section}: {sorted(unknown)}")
    defaults = asdict(cls())
    kwargs = {name: _coerce(section, name, defaults[name], value) for name, value in values.items()}
    return cls(**kwargs)


def config_from_dict(raw: Dict[str, Any]) -> Config:
    """Build a `Config` from a (possibly partial) nested dictionary."""
    merged = _merge_dict(asdict(Config()), raw or {})
    sections = {name: _build(cls, name, merged.pop(name)) for name, cls in _SECTIONS.items()}
    top = _build(Config, 'config', merged)
    for name, value in sections.items():
        setattr(top, name, value)
    top.pair = top.pair.strip().upper()
    top.mode = top.mode.lower()
    if top.rollover.force_close_mode not in ('close', 'derisk'):
        raise ValueError(f"Invalid value for rollover.force_close_mode: {top.rollover.force_close_mode!r}")
    if top.risk.sizing_mode not in ('fixed', 'risk'):
        raise ValueError(f"Invalid value for risk.sizing_mode: {top.risk.sizing_mode!r}")
    return top


def default_config(pair: str = "EURUSD") -> Config:
    """Return the default configuration for `pair`."""
    cfg = Config()
    cfg.pair = pair.strip().upper()
    return cfg


def clone_config(cfg: Config) -> Config:
    """Deep copy a configuration so scenario runs never share state."""
    return copy.deepcopy(cfg)


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        the defaults defined in the dataclasses.

    Raises
    ------
    ValueError
        If a key is unknown or a value cannot be converted.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return config_from_dict(raw)
