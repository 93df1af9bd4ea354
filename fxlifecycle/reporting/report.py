"""
Report generation utilities.

This module turns replay results into human‑readable artefacts: a JSON
summary, the equity curve and timeline as JSON, the ledger as CSV and
a PNG chart of the equity curve.  Having a central place for report
generation makes it easy to extend the output formats in future.
"""

from __future__ import annotations

import os
import json
import logging
from typing import Any, Dict, List
import pandas as pd
import matplotlib

# Use non‑interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..execution.models import ReplayResult

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = [
    'id',
    'ts',
    'kind',
    'side',
    'price',
    'units',
    'notional_usd',
    'pnl_usd',
    'fee_usd',
    'reason_codes',
    'position_units_after',
    'equity_usd_after',
]


def ledger_frame(result: ReplayResult) -> pd.DataFrame:
    """Ledger rows as a DataFrame with pipe‑joined reason codes."""
    rows: List[Dict[str, Any]] = []
    for row in result.ledger:
        data = row.to_dict()
        data['reason_codes'] = '|'.join(row.reason_codes)
        rows.append(data)
    return pd.DataFrame(rows, columns=LEDGER_COLUMNS)


def _write_json(path: str, payload: Any) -> None:
    with open(path, 'w', encoding='utf-8') as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)


def plot_equity_curve(result: ReplayResult, path: str) -> None:
    fig, ax = plt.subplots(figsize=(10, 4))
    if result.equity_curve:
        times = pd.to_datetime([pt.ts for pt in result.equity_curve], unit='ms', utc=True)
        ax.plot(times, [pt.equity_usd for pt in result.equity_curve], linewidth=1.5)
        ax.set_title(f'Equity Curve ({result.summary.pair})')
        ax.set_xlabel('Time (UTC)')
        ax.set_ylabel('Equity (USD)')
        fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def write_replay_artifacts(result: ReplayResult, out_dir: str = "results", plot: bool = True) -> Dict[str, str]:
    """Generate report files for a replay run.

    Creates the output directory if it does not exist and writes the
    following files:

    - `summary.json` – replay summary
    - `equity.json` – one equity point per tick
    - `timeline.json` – audit trail of decisions
    - `ledger.csv` – money‑moving rows, reason codes pipe‑joined
    - `equity_curve.png` – line chart of the equity curve

    Returns
    -------
    dict
        Mapping of artefact name to the path written.
    """
    os.makedirs(out_dir, exist_ok=True)
    paths = {
        'summary': os.path.join(out_dir, 'summary.json'),
        'equity': os.path.join(out_dir, 'equity.json'),
        'timeline': os.path.join(out_dir, 'timeline.json'),
        'ledger': os.path.join(out_dir, 'ledger.csv'),
    }
    _write_json(paths['summary'], result.summary.to_dict())
    _write_json(paths['equity'], [pt.to_dict() for pt in result.equity_curve])
    _write_json(paths['timeline'], [ev.to_dict() for ev in result.timeline])
    ledger_frame(result).to_csv(paths['ledger'], index=False)

    if plot:
        paths['plot'] = os.path.join(out_dir, 'equity_curve.png')
        plot_equity_curve(result, paths['plot'])
    logger.info("Replay artefacts written to %s", out_dir)
    return paths
