import os
import sys

# Ensure the project root (one level above `tests`) is on sys.path so that
# `alert_trader` can be imported when running tests directly via `python`.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
for path in (PROJECT_ROOT, CURRENT_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

import pandas as pd

from alert_trader.engine.retry_queue import backoff_window
from alert_trader.execution.executor import TradeResult
from alert_trader.execution.models import Alert, CloseReason, FailedSale
from fakes import make_manager

import unittest


FAIL = TradeResult(success=False, message="transaction simulation failed")


class TestRetryQueue(unittest.TestCase):
    def setUp(self) -> None:
        self.manager, self.executor, self.oracle, self.clock = make_manager(auto_trading=True)
        self.queue = self.manager.retry_queue

    def _close_with_failed_sell(self, instrument_id: str = "MINT1", exit_price: float = 0.7) -> None:
        self.executor.sell_results.append(FAIL)
        self.manager.open_position(instrument_id, Alert("AAA", market_cap=5.0), {"currentPrice": 1.0})
        self.manager.close(instrument_id, CloseReason.STOP_LOSS, exit_price)

    def _sale(self, **overrides) -> FailedSale:
        values = dict(
            instrument_id="MINT9", symbol="ZZZ", time_added=self.clock.now, last_attempt=self.clock.now,
            exit_price=1.0, entry_price=1.0, investment_amount=2.0, token_amount=2.0, reason="manual",
        )
        values.update(overrides)
        return FailedSale(**values)

    def test_backoff_window_is_capped(self) -> None:
        self.assertEqual(backoff_window(1), pd.Timedelta(minutes=1))
        self.assertEqual(backoff_window(4), pd.Timedelta(minutes=4))
        self.assertEqual(backoff_window(40), pd.Timedelta(minutes=15))

    def test_retry_waits_for_backoff(self) -> None:
        """Failure at T, drain at T+30s skips, drain at T+61s retries."""
        self._close_with_failed_sell()
        sells_after_close = self.executor.count("sell")

        self.clock.advance(seconds=30)
        summary = self.queue.drain()
        self.assertEqual(self.executor.count("sell"), sells_after_close)
        self.assertEqual(summary, {'sold': 0, 'dropped': 0, 'remaining': 1})

        self.clock.advance(seconds=31)
        self.executor.sell_results.append(FAIL)
        self.queue.drain()
        self.assertEqual(self.executor.count("sell"), sells_after_close + 1)
        sale = self.queue.get("MINT1")
        self.assertEqual(sale.attempts, 2)
        self.assertEqual(sale.last_attempt, self.clock.now)

        # second attempt needs two minutes
        self.clock.advance(seconds=90)
        self.queue.drain()
        self.assertEqual(self.executor.count("sell"), sells_after_close + 1)

    def test_successful_retry_removes_entry(self) -> None:
        self._close_with_failed_sell()
        self.clock.advance(minutes=2)
        summary = self.queue.drain()
        self.assertEqual(summary['sold'], 1)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.executor.calls[-1], ("sell", "admin", "MINT1", 0))
        # the position was already booked; no second record
        self.assertEqual(len(self.manager.history), 1)

    def test_successful_retry_closes_reopened_position_without_selling_again(self) -> None:
        self.queue.load([self._sale(instrument_id="MINT1", exit_price=1.3)])
        self.manager.manual_entry("AAA", "MINT1", 1.0, 2.0)
        self.clock.advance(minutes=5)

        self.queue.drain()
        self.assertFalse(self.manager.has_position("MINT1"))
        self.assertEqual(self.executor.count("sell"), 1)
        trade = self.manager.history[-1]
        self.assertEqual(trade.reason, CloseReason.AUTO_RETRY)
        self.assertEqual(trade.exit_price, 1.3)

    def test_terminal_error_drops_entry(self) -> None:
        self._close_with_failed_sell()
        self.clock.advance(minutes=2)
        self.executor.sell_results.append(TradeResult(success=False, message="Token account Not Found"))
        summary = self.queue.drain()
        self.assertEqual(summary['dropped'], 1)
        self.assertIsNone(self.queue.get("MINT1"))

    def test_exception_counts_as_transient_failure(self) -> None:
        self._close_with_failed_sell()
        self.clock.advance(minutes=2)
        self.executor.sell_results.append(TimeoutError("rpc timeout"))
        summary = self.queue.drain()
        self.assertEqual(summary['remaining'], 1)
        self.assertEqual(self.queue.get("MINT1").attempts, 2)

    def test_exhausted_entry_is_never_retried(self) -> None:
        self.queue.load([self._sale(attempts=5)])
        self.clock.advance(days=2)
        self.queue.drain()
        self.assertEqual(self.executor.count("sell"), 0)
        self.assertEqual(len(self.queue), 1)

    def test_entry_reaches_max_attempts_and_stops(self) -> None:
        self._close_with_failed_sell()
        sells_after_close = self.executor.count("sell")
        self.executor.default = FAIL
        for _ in range(10):
            self.clock.advance(minutes=20)
            self.queue.drain()
        self.assertEqual(self.queue.get("MINT1").attempts, 5)
        self.assertEqual(self.executor.count("sell"), sells_after_close + 4)

    def test_drain_skipped_without_auto_trading(self) -> None:
        self._close_with_failed_sell()
        self.manager.limits.auto_trading = False
        self.clock.advance(hours=1)
        sells = self.executor.count("sell")
        self.queue.drain()
        self.assertEqual(self.executor.count("sell"), sells)
        self.assertEqual(len(self.queue), 1)

    def test_pause_between_venue_calls(self) -> None:
        pauses = []
        self.queue.pause_seconds = 1.0
        self.queue._sleep = pauses.append
        self.queue.load([self._sale(instrument_id=f"MINT{i}") for i in range(3)])
        self.clock.advance(minutes=2)
        self.queue.drain()
        self.assertEqual(pauses, [1.0, 1.0])

    def test_enqueue_bumps_existing_entry(self) -> None:
        self._close_with_failed_sell(exit_price=0.7)
        self.clock.advance(minutes=1)
        self._close_with_failed_sell(exit_price=0.6)
        self.assertEqual(len(self.queue), 1)
        sale = self.queue.get("MINT1")
        self.assertEqual(sale.attempts, 2)
        self.assertEqual(sale.exit_price, 0.6)
        self.assertEqual(sale.last_attempt, self.clock.now)

    def test_prune_removes_only_old_exhausted_entries(self) -> None:
        old = self.clock.now - pd.Timedelta(hours=25)
        self.queue.load([
            self._sale(instrument_id="OLD_DONE", time_added=old, attempts=5),
            self._sale(instrument_id="OLD_OPEN", time_added=old, attempts=2),
            self._sale(instrument_id="NEW_DONE", attempts=5),
        ])
        self._close_with_failed_sell()
        remaining = {s.instrument_id for s in self.queue.entries}
        self.assertEqual(remaining, {"OLD_OPEN", "NEW_DONE", "MINT1"})

    def test_clear(self) -> None:
        self._close_with_failed_sell()
        self.assertEqual(self.queue.clear(), 1)
        self.assertEqual(len(self.queue), 0)


if __name__ == '__main__':
    unittest.main()
