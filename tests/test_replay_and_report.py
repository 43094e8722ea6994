import os
import sys

# Ensure the project root (one level above `tests`) is on sys.path so that
# `alert_trader` can be imported when running tests directly via `python`.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
for path in (PROJECT_ROOT, CURRENT_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

import json
import tempfile
import pandas as pd

from alert_trader.app import main, replay
from alert_trader.config.schema import Config, TradingLimits, load_config
from alert_trader.data.csv_data import CSVEventLoader
from alert_trader.execution.models import CloseReason
from alert_trader.reporting.report import generate_trade_report, trades_frame

import unittest


EVENTS = """time,instrument_id,event,symbol,alert_type,market_cap,price
2024-01-01T00:00:00Z,MINT1,alert,AAA,pump,5,1.0
2024-01-01T00:00:00Z,MINT2,alert,BBB,pump,0.1,1.0
2024-01-01T00:00:02Z,MINT3,alert,CCC,pump,3,2.0
2024-01-01T00:00:10Z,MINT1,price,,,,1.2
2024-01-01T00:00:20Z,MINT1,price,,,,1.6
2024-01-01T00:00:30Z,MINT3,price,,,,2.5
"""

CONFIG = """
mode: paper
trading:
  track_all_tokens: true
  default_investment: 2.0
  fees_percent: 0.5
  slippage_estimate: 2.0
engine:
  check_interval_seconds: 5
"""


class TestReplayAndReport(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.events_path = os.path.join(self.tmp, "events.csv")
        with open(self.events_path, "w", encoding="utf-8") as fh:
            fh.write(EVENTS)
        self.config_path = os.path.join(self.tmp, "config.yaml")
        with open(self.config_path, "w", encoding="utf-8") as fh:
            fh.write(CONFIG)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_load_config_merges_defaults(self) -> None:
        config = load_config(self.config_path)
        self.assertEqual(config.mode, "paper")
        self.assertTrue(config.trading.track_all_tokens)
        self.assertEqual(config.trading.default_take_profit, 50.0)
        self.assertEqual(config.trading.max_active_positions, 100)
        self.assertEqual(config.engine.check_interval_seconds, 5.0)
        self.assertEqual(config.engine.retry_interval_seconds, 600.0)
        self.assertEqual(config.engine.data_dir, "data")

    def test_limits_dict_roundtrip(self) -> None:
        limits = TradingLimits(tracked_tokens={"b", "a"}, max_active_positions=3)
        data = limits.to_dict()
        self.assertEqual(data['tracked_tokens'], ["a", "b"])
        self.assertEqual(TradingLimits.from_dict(dict(data, unknown_key=1)), limits)

    def test_event_loader(self) -> None:
        df = CSVEventLoader(self.events_path).load()
        self.assertEqual(len(df), 6)
        self.assertEqual(str(df['time'].dt.tz), "UTC")
        self.assertEqual(list(df['event'][:3]), ["alert", "alert", "alert"])
        self.assertEqual(df['symbol'][3], "")
        self.assertEqual(df['market_cap'][3], 0.0)

    def test_event_loader_rejects_bad_files(self) -> None:
        with self.assertRaises(FileNotFoundError):
            CSVEventLoader(os.path.join(self.tmp, "missing.csv")).load()
        bad = os.path.join(self.tmp, "bad.csv")
        with open(bad, "w", encoding="utf-8") as fh:
            fh.write("time,instrument_id\n2024-01-01,MINT1\n")
        with self.assertRaises(ValueError):
            CSVEventLoader(bad).load()
        with open(bad, "w", encoding="utf-8") as fh:
            fh.write("time,instrument_id,event\n2024-01-01,MINT1,trade\n")
        with self.assertRaises(ValueError):
            CSVEventLoader(bad).load()

    def test_replay(self) -> None:
        config = Config(trading=TradingLimits(track_all_tokens=True))
        manager = replay(config, self.events_path)

        # MINT2 fails the market-cap gate
        self.assertEqual(len(manager.history), 1)
        trade = manager.history[0]
        self.assertEqual(trade.instrument_id, "MINT1")
        self.assertEqual(trade.reason, CloseReason.TAKE_PROFIT)
        self.assertAlmostEqual(trade.profit_amount, 1.12)
        self.assertEqual(trade.exit_time, pd.Timestamp("2024-01-01 00:00:20", tz="UTC"))
        self.assertEqual(trade.duration, pd.Timedelta(seconds=20))

        self.assertEqual(list(manager.positions), ["MINT3"])
        self.assertEqual(manager.get_position("MINT3").highest_price, 2.5)

    def test_report_files(self) -> None:
        manager = replay(Config(trading=TradingLimits(track_all_tokens=True)), self.events_path)
        out_dir = os.path.join(self.tmp, "results")
        generate_trade_report(manager.history, manager.positions.values(), {'total_trades': 1}, out_dir)
        for name in ("trades.csv", "open_positions.csv", "summary.json", "pnl_curve.png"):
            self.assertTrue(os.path.exists(os.path.join(out_dir, name)), name)
        trades = pd.read_csv(os.path.join(out_dir, "trades.csv"))
        self.assertEqual(list(trades['reason']), ["take_profit"])
        self.assertEqual(trades['duration_s'][0], 20.0)

    def test_empty_report(self) -> None:
        out_dir = os.path.join(self.tmp, "empty")
        generate_trade_report([], [], {}, out_dir)
        self.assertTrue(os.path.exists(os.path.join(out_dir, "pnl_curve.png")))
        self.assertTrue(trades_frame([]).empty)

    def test_cli_replay_and_status(self) -> None:
        out_dir = os.path.join(self.tmp, "cli")
        main(["replay", "--config", self.config_path, "--events", self.events_path, "--out", out_dir])
        with open(os.path.join(out_dir, "summary.json"), encoding="utf-8") as fh:
            summary = json.load(fh)
        self.assertEqual(summary['total_trades'], 1)
        self.assertEqual(summary['active_positions'], 1)

        data_dir = os.path.join(self.tmp, "state")
        with open(self.config_path, "a", encoding="utf-8") as fh:
            fh.write(f"  data_dir: {data_dir}\n")
        main(["status", "--config", self.config_path])
        self.assertTrue(os.path.isdir(data_dir))


if __name__ == '__main__':
    unittest.main()
