import os
import sys

# Ensure the project root (one level above `tests`) is on sys.path so that
# `alert_trader` can be imported when running tests directly via `python`.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
for path in (PROJECT_ROOT, CURRENT_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

import threading

from alert_trader.engine.scheduler import Scheduler
from alert_trader.execution.executor import ThreadedDispatcher, TradeResult
from alert_trader.execution.models import Alert, CloseReason
from fakes import make_manager

import unittest


class _Ticks:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _CountingQueue:
    def __init__(self) -> None:
        self.drains = 0

    def drain(self) -> None:
        self.drains += 1


class _BlockingQueue:
    """A drain stuck on the venue until `release` is set."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def drain(self) -> None:
        self.entered.set()
        self.release.wait(timeout=10)


class _CountingManager:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.evaluations = 0
        self.shutdowns = 0
        self.retry_queue = _CountingQueue()

    def evaluate_all(self) -> None:
        self.evaluations += 1
        if self.fail:
            raise RuntimeError("tick failed")

    def shutdown(self) -> None:
        self.shutdowns += 1


class TestScheduler(unittest.TestCase):
    def test_first_call_only_arms_timers(self) -> None:
        ticks = _Ticks()
        manager = _CountingManager()
        scheduler = Scheduler(manager, check_interval=5, retry_interval=600, clock=ticks)
        scheduler.run_pending()
        self.assertEqual(manager.evaluations, 0)
        ticks.now = 4.9
        scheduler.run_pending()
        self.assertEqual(manager.evaluations, 0)
        ticks.now = 5.0
        scheduler.run_pending()
        self.assertEqual(manager.evaluations, 1)

    def test_ticks_follow_their_periods(self) -> None:
        ticks = _Ticks()
        manager = _CountingManager()
        scheduler = Scheduler(manager, check_interval=5, retry_interval=600, clock=ticks)
        scheduler.run_pending()
        for second in range(1, 1201):
            ticks.now = float(second)
            scheduler.run_pending()
        self.assertEqual(manager.evaluations, 240)
        self.assertEqual(manager.retry_queue.drains, 2)

    def test_tick_errors_do_not_escape(self) -> None:
        manager = _CountingManager(fail=True)
        scheduler = Scheduler(manager)
        scheduler.tick_fast()
        scheduler.tick_fast()
        self.assertEqual(manager.evaluations, 2)

    def test_run_stops_and_shuts_down(self) -> None:
        manager = _CountingManager()
        scheduler = Scheduler(manager, check_interval=0.01, retry_interval=0.05)
        worker = threading.Thread(target=scheduler.run)
        worker.start()
        threading.Event().wait(0.1)
        scheduler.stop()
        worker.join(timeout=5)
        self.assertFalse(worker.is_alive())
        self.assertEqual(manager.shutdowns, 1)
        self.assertGreater(manager.evaluations, 0)

    def test_evaluation_continues_while_drain_is_blocked(self) -> None:
        manager = _CountingManager()
        manager.retry_queue = _BlockingQueue()
        scheduler = Scheduler(manager, check_interval=0.02, retry_interval=0.05)
        worker = threading.Thread(target=scheduler.run)
        worker.start()
        try:
            self.assertTrue(manager.retry_queue.entered.wait(timeout=5))
            before = manager.evaluations
            threading.Event().wait(0.4)
            self.assertGreater(manager.evaluations - before, 5)
        finally:
            scheduler.stop()
            manager.retry_queue.release.set()
            worker.join(timeout=5)
        self.assertFalse(worker.is_alive())
        self.assertEqual(manager.shutdowns, 1)


class TestConcurrentClose(unittest.TestCase):
    def test_threaded_sell_failures_reach_retry_queue(self) -> None:
        manager, executor, oracle, _ = make_manager(auto_trading=True)
        manager.dispatcher = ThreadedDispatcher(max_workers=4)
        executor.default = TradeResult(success=False, message="congested")
        executor.buy_results = [TradeResult(success=True, tx_id="b")] * 8
        for i in range(8):
            manager.open_position(f"MINT{i}", Alert(f"T{i}", market_cap=5.0), {"currentPrice": 1.0})
            oracle.set(f"MINT{i}", 2.0)

        manager.evaluate_all()
        manager.dispatcher.shutdown()

        self.assertEqual(manager.open_count(), 0)
        self.assertEqual(len(manager.history), 8)
        self.assertEqual(len(manager.retry_queue), 8)
        self.assertTrue(all(t.reason is CloseReason.TAKE_PROFIT for t in manager.history))


if __name__ == '__main__':
    unittest.main()
