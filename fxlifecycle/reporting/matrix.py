"""
Replay scenario matrix.

Runs one or more replay fixtures under a grid of execution frictions:
spread stress factors, slippage factors and synthetic shock profiles.
Every scenario gets its own seed and its own copy of the
configuration, so runs are independent and reproducible.  Results are
collected into a pandas DataFrame (one row per fixture and scenario)
plus per‑scenario averages.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence
import pandas as pd

from ..config.schema import Config, clone_config
from ..execution.models import ENTRY, EXIT, PARTIAL_EXIT, Quote, ReplayResult
from ..execution.replay_exec import ReplayInput, run_replay
from ..execution.stress import apply_spread_stress
from .metrics import trade_statistics

logger = logging.getLogger(__name__)

SHOCK_PROFILES = ('none', 'occasional', 'clustered', 'frequent')
DEFAULT_SPREAD_FACTORS = (1.0, 1.5, 2.0, 3.0)
DEFAULT_SLIPPAGE_FACTORS = (1.0, 1.5, 2.0)
DEFAULT_BASE_SEED = 17

# Clustered shocks: bursts of 3 quotes every 10, starting at index 2.
BURST_EVERY = 10
BURST_LENGTH = 3
BURST_OFFSET = 2
BURST_SPREAD_MULTIPLIER = 1.35
OCCASIONAL_EVERY = 4


@dataclass(frozen=True)
class MatrixScenario:
    id: str
    spread_factor: float
    slippage_factor: float
    shock_profile: str
    seed: int


def scenario_id(spread_factor: float, slippage_factor: float, shock_profile: str) -> str:
    return f"spread_{spread_factor:.2f}__slip_{slippage_factor:.2f}__shock_{shock_profile}"


def build_scenarios(
    spread_factors: Sequence[float] = DEFAULT_SPREAD_FACTORS,
    slippage_factors: Sequence[float] = DEFAULT_SLIPPAGE_FACTORS,
    shock_profiles: Sequence[str] = SHOCK_PROFILES,
    base_seed: int = DEFAULT_BASE_SEED,
) -> List[MatrixScenario]:
    """Cartesian product of the grid; seeds are ``base_seed + index``."""
    for profile in shock_profiles:
        if profile not in SHOCK_PROFILES:
            raise ValueError(f"Unknown shock profile: {profile!r}")
    scenarios = []
    index = 0
    for sf in spread_factors:
        for lf in slippage_factors:
            for profile in shock_profiles:
                index += 1
                scenarios.append(MatrixScenario(
                    id=scenario_id(sf, lf, profile),
                    spread_factor=float(sf),
                    slippage_factor=float(lf),
                    shock_profile=profile,
                    seed=int(base_seed) + index,
                ))
    return scenarios


def with_shock_profile(quotes: Iterable[Quote], profile: str) -> List[Quote]:
    """Return copies of `quotes` with synthetic shocks injected."""
    out = []
    for idx, quote in enumerate(quotes):
        if profile == 'frequent':
            out.append(replace(quote, shock=True))
        elif profile == 'clustered':
            rel = idx - BURST_OFFSET
            in_burst = rel >= 0 and rel % BURST_EVERY < BURST_LENGTH
            multiplier = quote.spread_multiplier
            if in_burst:
                multiplier = max(1.0, quote.spread_multiplier or 1.0) * BURST_SPREAD_MULTIPLIER
            out.append(replace(quote, shock=quote.shock or in_burst, spread_multiplier=multiplier))
        elif profile == 'occasional':
            out.append(replace(quote, shock=quote.shock or idx % OCCASIONAL_EVERY == 0))
        else:
            out.append(replace(quote))
    return out


def with_scenario_config(base: Config, scenario: MatrixScenario) -> Config:
    """Scale stress multipliers and slippage bps for `scenario`."""
    cfg = clone_config(base)
    sf = scenario.spread_factor
    lf = scenario.slippage_factor
    cfg.stress.transition_multiplier *= sf
    cfg.stress.rollover_multiplier *= sf
    cfg.stress.medium_event_multiplier *= sf
    cfg.stress.high_event_multiplier *= sf

    cfg.slippage.seed = scenario.seed
    cfg.slippage.entry_base_bps *= lf
    cfg.slippage.exit_base_bps *= lf
    cfg.slippage.random_bps *= lf
    cfg.slippage.shock_bps *= lf
    cfg.slippage.medium_event_bps *= lf
    cfg.slippage.high_event_bps *= lf
    return cfg


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def fill_statistics(result: ReplayResult, quotes: List[Quote], cfg: Config) -> Dict[str, float]:
    """Average stressed spread and realised slippage (bps) over all fills."""
    stressed_by_ts = {q.ts: apply_spread_stress(q, cfg.stress) for q in quotes}
    spread_bps: List[float] = []
    slippage_bps: List[float] = []
    for row in result.ledger:
        if row.kind not in (ENTRY, PARTIAL_EXIT, EXIT) or not row.side or not row.price:
            continue
        stressed = stressed_by_ts.get(row.ts)
        if stressed is None:
            continue
        reference = stressed.ask if row.side == 'BUY' else stressed.bid
        spread_bps.append(stressed.spread_abs / stressed.mid * 10_000 if stressed.mid > 0 else 0.0)
        slippage_bps.append(abs(row.price - reference) / reference * 10_000)
    return {
        'avg_spread_bps': _mean(spread_bps),
        'avg_slippage_bps': _mean(slippage_bps),
        'fills': len(spread_bps),
    }


def run_matrix(
    fixtures: Dict[str, ReplayInput],
    base_config: Config,
    scenarios: Optional[List[MatrixScenario]] = None,
) -> pd.DataFrame:
    """Run every fixture under every scenario.

    Parameters
    ----------
    fixtures : dict of str to ReplayInput
        Fixtures keyed by an identifier.
    base_config : Config
        Configuration every scenario starts from; never mutated.
    scenarios : list of MatrixScenario, optional
        Defaults to the full default grid.

    Returns
    -------
    pandas.DataFrame
        One row per fixture and scenario.
    """
    scenarios = scenarios if scenarios is not None else build_scenarios()
    rows = []
    for fixture_id, fixture in fixtures.items():
        for scenario in scenarios:
            quotes = with_shock_profile(fixture.quotes, scenario.shock_profile)
            cfg = with_scenario_config(base_config, scenario)
            result = run_replay(quotes, fixture.entries, cfg, pair=fixture.pair)
            trades = trade_statistics(result)
            fills = fill_statistics(result, quotes, cfg)
            summary = result.summary
            rows.append({
                'fixture_id': fixture_id,
                'pair': fixture.pair,
                'scenario_id': scenario.id,
                'spread_factor': scenario.spread_factor,
                'slippage_factor': scenario.slippage_factor,
                'shock_profile': scenario.shock_profile,
                'seed': scenario.seed,
                'trades': trades['trades'],
                'closed_legs': summary.closed_legs,
                'wins': summary.winning_legs,
                'win_rate_pct': summary.win_rate_pct,
                'avg_r': trades['avg_r'],
                'avg_spread_bps': fills['avg_spread_bps'],
                'avg_slippage_bps': fills['avg_slippage_bps'],
                'avg_cost_bps': fills['avg_spread_bps'] + fills['avg_slippage_bps'],
                'rollover_fees_usd': summary.rollover_fees_usd,
                'return_pct': summary.return_pct,
                'max_drawdown_pct': summary.max_drawdown_pct,
                'exits_by_reason': json.dumps(trades['exits_by_reason'], sort_keys=True),
            })
            logger.debug("Matrix run %s/%s return=%.4f%%", fixture_id, scenario.id, summary.return_pct)
    return pd.DataFrame(rows)


def summarize_scenarios(runs: pd.DataFrame) -> pd.DataFrame:
    """Average each scenario across fixtures."""
    if runs.empty:
        return pd.DataFrame()
    grouped = runs.groupby(
        ['scenario_id', 'spread_factor', 'slippage_factor', 'shock_profile'], sort=False,
    )
    summary = grouped.agg(
        fixture_runs=('fixture_id', 'count'),
        fixtures_with_trades=('trades', lambda s: int((s > 0).sum())),
        avg_return_pct=('return_pct', 'mean'),
        worst_return_pct=('return_pct', 'min'),
        avg_avg_r=('avg_r', 'mean'),
        avg_win_rate_pct=('win_rate_pct', 'mean'),
        avg_max_drawdown_pct=('max_drawdown_pct', 'mean'),
        avg_cost_bps=('avg_cost_bps', 'mean'),
    ).reset_index()
    return summary


def write_matrix_report(runs: pd.DataFrame, out_dir: str) -> Dict[str, str]:
    os.makedirs(out_dir, exist_ok=True)
    paths = {
        'runs': os.path.join(out_dir, 'matrix_runs.csv'),
        'scenarios': os.path.join(out_dir, 'matrix_scenarios.csv'),
    }
    runs.to_csv(paths['runs'], index=False)
    summarize_scenarios(runs).to_csv(paths['scenarios'], index=False)
    logger.info("Matrix report written to %s (%d runs)", out_dir, len(runs))
    return paths
