"""
Application entry point.

This module defines a simple command-line interface around the position
engine:

- ``replay`` feeds a CSV of recorded alerts and price ticks through a
  paper-trading engine on a simulated clock and writes a report.
- ``report`` writes a report for the persisted trading state.
- ``status`` logs the headline profit statistics of the persisted state.

Live operation embeds `build_engine()` in a process that also runs the
price feed and the alert source.
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import List, Optional, Tuple
import pandas as pd

from .config.schema import Config, load_config
from .data.csv_data import CSVEventLoader
from .data.price_oracle import PriceOracle, PriceRegistry
from .engine.position_manager import PositionManager
from .engine.scheduler import Scheduler
from .execution.executor import InlineDispatcher, PaperExecutor, ThreadedDispatcher, TradeExecutor
from .execution.models import Alert
from .reporting.metrics import summarize_performance
from .reporting.report import generate_trade_report
from .utils.persistence import StateStore


logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def build_engine(
    config: Config,
    executor: TradeExecutor,
    oracle: PriceOracle,
) -> Tuple[PositionManager, Scheduler]:
    """Wire a persistent, thread-pooled engine and its scheduler, restoring saved state."""
    manager = PositionManager(
        limits=config.trading,
        executor=executor,
        oracle=oracle,
        dispatcher=ThreadedDispatcher(config.engine.max_workers),
        store=StateStore(config.engine.data_dir),
        account=config.engine.account,
        retry_pause_seconds=config.engine.retry_pause_seconds,
    )
    manager.restore()
    scheduler = Scheduler(
        manager,
        check_interval=config.engine.check_interval_seconds,
        retry_interval=config.engine.retry_interval_seconds,
    )
    return manager, scheduler


class _ReplayClock:
    """Simulated time advanced by the replayed events."""

    def __init__(self) -> None:
        self.now = pd.Timestamp(0, tz="UTC")

    def __call__(self) -> pd.Timestamp:
        return self.now

    def seconds(self) -> float:
        return self.now.timestamp()


def replay(config: Config, events_path: str) -> PositionManager:
    """Run the recorded events through an in-memory paper engine."""
    events = CSVEventLoader(events_path).load()
    clock = _ReplayClock()
    registry = PriceRegistry()
    manager = PositionManager(
        limits=config.trading,
        executor=PaperExecutor(),
        oracle=registry,
        dispatcher=InlineDispatcher(),
        account=config.engine.account,
        clock=clock,
        retry_pause_seconds=0.0,
    )
    scheduler = Scheduler(
        manager,
        check_interval=config.engine.check_interval_seconds,
        retry_interval=config.engine.retry_interval_seconds,
        clock=clock.seconds,
    )

    for row in events.itertuples(index=False):
        clock.now = row.time
        if pd.notna(row.price):
            registry.update(row.instrument_id, float(row.price))
        if row.event == "alert":
            alert = Alert(symbol=row.symbol or row.instrument_id,
                          alert_type=row.alert_type,
                          market_cap=float(row.market_cap))
            manager.process_alert(row.instrument_id, alert)
        scheduler.run_pending()

    # final evaluation at the last known prices
    scheduler.tick_fast()
    logger.info("Replayed %d events: %d trades closed, %d positions open",
                len(events), len(manager.history), manager.open_count())
    return manager


def _load_state(config: Config) -> Tuple[PositionManager, PriceRegistry]:
    registry = PriceRegistry()
    manager = PositionManager(
        limits=config.trading,
        executor=PaperExecutor(),
        oracle=registry,
        store=StateStore(config.engine.data_dir),
        account=config.engine.account,
    )
    manager.restore()
    return manager, registry


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command-line arguments and dispatch to the appropriate mode."""
    parser = argparse.ArgumentParser(description="Alert-driven position tracker")
    parser.add_argument('mode', choices=['replay', 'report', 'status'], help="Operating mode")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--events', help="CSV of alerts and price ticks (replay mode)")
    parser.add_argument('--out', default='results', help="Report output directory")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    config = load_config(args.config)

    if args.mode == 'replay':
        if not args.events:
            parser.error("replay mode requires --events")
        logging.info("Replaying %s...", args.events)
        manager = replay(config, args.events)
        summary = summarize_performance(manager.recompute_stats(), manager.positions.values(), manager.oracle)
        generate_trade_report(manager.history, manager.positions.values(), summary, out_dir=args.out)
        logging.info("Replay complete. Results saved to the '%s' directory.", args.out)
        return

    manager, registry = _load_state(config)
    summary = summarize_performance(manager.recompute_stats(), manager.positions.values(), registry)
    if args.mode == 'report':
        generate_trade_report(manager.history, manager.positions.values(), summary, out_dir=args.out)
        logging.info("Report saved to the '%s' directory.", args.out)
    else:
        logging.info("Profit statistics:\n%s", json.dumps(summary, indent=2))
        logging.info("Failed sales queued: %d", len(manager.retry_queue))


if __name__ == '__main__':
    main()
