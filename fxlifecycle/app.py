"""
Application entry point.

This module defines a simple command‑line interface for running the
position lifecycle engine in different modes (replay, matrix, paper,
live).  It leverages the modules under `fxlifecycle/` to load
configuration, replay recorded quote streams, sweep execution frictions,
connect to MetaTrader 5 and generate reports.
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import List, Optional

from .config.schema import Config, default_config, load_config
from .data.mt5_data import MT5DataFeed
from .execution.broker import BrokerAdapter, MT5Broker, PaperBroker
from .execution.mt5_exec import LiveEngine
from .execution.replay_exec import load_replay_input, run_replay_input
from .reporting.matrix import build_scenarios, run_matrix, write_matrix_report
from .reporting.report import write_replay_artifacts
from .utils.persistence import PositionContextStore

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _floats(value: str) -> List[float]:
    return [float(v) for v in value.split(',') if v.strip()]


def _load(path: str) -> Config:
    if os.path.exists(path):
        return load_config(path)
    logger.warning("Configuration file %s not found; using defaults", path)
    return default_config()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FX position lifecycle engine")
    parser.add_argument('mode', choices=['replay', 'matrix', 'paper', 'live'], help="Operating mode")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--input', nargs='+', default=[], help="Replay fixture JSON file(s)")
    parser.add_argument('--out', default='results', help="Output directory for reports")
    parser.add_argument('--no-plot', action='store_true', help="Skip the equity curve PNG")
    parser.add_argument('--spread-factors', type=_floats, default=None, help="Matrix spread factors, e.g. 1,1.5,2")
    parser.add_argument('--slippage-factors', type=_floats, default=None, help="Matrix slippage factors")
    parser.add_argument('--shock-profiles', default=None,
                        help="Matrix shock profiles, comma separated (none,occasional,clustered,frequent)")
    parser.add_argument('--seed', type=int, default=None, help="Matrix base seed")
    parser.add_argument('--cycles', type=int, default=None, help="Stop paper/live trading after N cycles")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    return parser


def _run_replay(args: argparse.Namespace, config: Config) -> None:
    if not args.input:
        raise SystemExit("replay mode requires --input")
    for path in args.input:
        fixture = load_replay_input(path)
        result = run_replay_input(fixture, config)
        out_dir = args.out
        if len(args.input) > 1:
            out_dir = os.path.join(args.out, os.path.splitext(os.path.basename(path))[0])
        write_replay_artifacts(result, out_dir=out_dir, plot=not args.no_plot)
        logging.info("Replay of %s complete. Results saved to the '%s' directory.", path, out_dir)


def _run_matrix(args: argparse.Namespace, config: Config) -> None:
    if not args.input:
        raise SystemExit("matrix mode requires --input")
    fixtures = {os.path.splitext(os.path.basename(p))[0]: load_replay_input(p) for p in args.input}
    kwargs = {}
    if args.spread_factors:
        kwargs['spread_factors'] = args.spread_factors
    if args.slippage_factors:
        kwargs['slippage_factors'] = args.slippage_factors
    if args.shock_profiles:
        kwargs['shock_profiles'] = [p.strip().lower() for p in args.shock_profiles.split(',') if p.strip()]
    if args.seed is not None:
        kwargs['base_seed'] = args.seed
    runs = run_matrix(fixtures, config, build_scenarios(**kwargs))
    write_matrix_report(runs, args.out)


def _run_trading(args: argparse.Namespace, config: Config) -> None:
    live_flag = args.mode == 'live' and not config.live.dry_run
    feed: Optional[MT5DataFeed] = None
    broker: BrokerAdapter
    if live_flag:
        broker = MT5Broker(config.mt5)
    else:
        if args.mode == 'live':
            logging.warning("live.dry_run is enabled; orders go to the paper broker")
        feed = MT5DataFeed(config.mt5)
        broker = PaperBroker(quote_source=feed.latest_quote)
    logging.info("Starting %s trading via MetaTrader 5...", 'live' if live_flag else 'paper')
    if feed is not None:
        try:
            feed.connect()
        except RuntimeError as exc:
            logging.error("Failed to connect to MetaTrader 5: %s", exc)
            return
    try:
        engine = LiveEngine(config, broker, PositionContextStore(config.live.state_file))
        engine.run(max_cycles=args.cycles)
    finally:
        if feed is not None:
            feed.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command‑line arguments and dispatch to the appropriate mode."""
    args = build_parser().parse_args(argv)

    _setup_logging(args.verbose)

    config = _load(args.config)
    # Override mode from CLI if provided
    config.mode = args.mode

    if args.mode == 'replay':
        logging.info("Running replay...")
        _run_replay(args, config)
    elif args.mode == 'matrix':
        logging.info("Running scenario matrix...")
        _run_matrix(args, config)
    else:
        _run_trading(args, config)


if __name__ == '__main__':
    main()
