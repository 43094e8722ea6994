"""
Tick scheduler.

Two cadences drive the engine: a fast one evaluating open positions
(every few seconds) and a slow one draining the failed-sale queue
(every few minutes).  Each cadence is exposed as a plain method so that
tests, the CSV replay and interactive tools can advance the engine
explicitly; `run()` is the blocking loop used in production, with the
retry passes on a thread of their own.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .position_manager import PositionManager


logger = logging.getLogger(__name__)


class Scheduler:
    """Call the evaluation and retry ticks on their configured periods."""

    def __init__(
        self,
        manager: PositionManager,
        check_interval: float = 5.0,
        retry_interval: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager
        self.check_interval = check_interval
        self.retry_interval = retry_interval
        self._clock = clock
        self._next_check: Optional[float] = None
        self._next_retry: Optional[float] = None
        self._stop = threading.Event()

    def tick_fast(self) -> None:
        """Evaluate all open positions.  Never raises."""
        try:
            self.manager.evaluate_all()
        except Exception as exc:
            logger.exception("Position check failed: %s", exc)

    def tick_slow(self) -> None:
        """Retry failed sales.  Never raises."""
        try:
            self.manager.retry_queue.drain()
        except Exception as exc:
            logger.exception("Failed sales retry failed: %s", exc)

    def run_pending(self) -> None:
        """Run every tick whose period has elapsed.

        The first call only arms the timers, like an interval timer that
        fires one period after it is installed.
        """
        now = self._clock()
        if self._next_check is None or self._next_retry is None:
            self._next_check = now + self.check_interval
            self._next_retry = now + self.retry_interval
            return
        if now >= self._next_check:
            self.tick_fast()
            self._next_check = now + self.check_interval
        if now >= self._next_retry:
            self.tick_slow()
            self._next_retry = now + self.retry_interval

    def _run_retries(self) -> None:
        while not self._stop.wait(self.retry_interval):
            self.tick_slow()

    def run(self) -> None:
        """Block and run ticks until `stop()` is called.

        Retry passes run on a separate thread: a drain waits on the venue
        for every queued sale and must not delay the evaluation tick.
        The manager's state is persisted on exit.
        """
        logger.info("Starting scheduler (check every %ss, retry every %ss)",
                    self.check_interval, self.retry_interval)
        self._stop.clear()
        retry_thread = threading.Thread(target=self._run_retries, name="retry-drain", daemon=True)
        retry_thread.start()
        try:
            while not self._stop.wait(self.check_interval):
                self.tick_fast()
        except KeyboardInterrupt:
            logger.info("Shutting down scheduler...")
        finally:
            self._stop.set()
            retry_thread.join()
            self.manager.shutdown()

    def stop(self) -> None:
        self._stop.set()
