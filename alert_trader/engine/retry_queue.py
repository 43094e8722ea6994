"""
Failed-sale retry queue.

When the venue rejects the sell issued by a close, the position has
already been booked as closed.  The queue keeps one `FailedSale` per
instrument and a slow periodic pass (`drain`) tries to sell the whole
remaining balance again, waiting ``min(attempts, 15)`` minutes between
attempts and giving up after `MAX_SALE_ATTEMPTS`.

Exhausted entries are only removed by the pruning that follows each
enqueue, once they are more than 24 hours old.  Entries that never
reach the attempt limit are kept regardless of age.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional
import pandas as pd

from ..execution.executor import is_terminal_error
from ..execution.models import CloseReason, FailedSale, TradeRecord

if TYPE_CHECKING:
    from .position_manager import PositionManager


logger = logging.getLogger(__name__)

PRUNE_AGE = pd.Timedelta(hours=24)
MAX_BACKOFF_MINUTES = 15


def backoff_window(attempts: int) -> pd.Timedelta:
    """Minimum wait after the last attempt: one minute per attempt, capped."""
    return pd.Timedelta(minutes=min(attempts, MAX_BACKOFF_MINUTES))


class RetryQueue:
    """Pending compensating sells for positions closed while the venue failed."""

    def __init__(
        self,
        manager: "PositionManager",
        pause_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.manager = manager
        self.pause_seconds = pause_seconds
        self._sleep = sleep
        self._entries: List[FailedSale] = []

    @property
    def entries(self) -> List[FailedSale]:
        with self.manager.lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self.manager.lock:
            return len(self._entries)

    def load(self, entries: Iterable[FailedSale]) -> None:
        with self.manager.lock:
            self._entries = list(entries)

    def get(self, instrument_id: str) -> Optional[FailedSale]:
        with self.manager.lock:
            for sale in self._entries:
                if sale.instrument_id == instrument_id:
                    return sale
        return None

    def enqueue(self, trade: TradeRecord) -> FailedSale:
        """Queue the exit of `trade`, or bump the existing entry for its instrument."""
        now = self.manager.clock()
        with self.manager.lock:
            sale = self.get(trade.instrument_id)
            if sale is not None:
                sale.last_attempt = now
                sale.attempts = min(sale.attempts + 1, sale.max_attempts)
                sale.exit_price = trade.exit_price
                logger.info("Updated existing retry entry for %s. Attempts: %d", trade.symbol, sale.attempts)
            else:
                sale = FailedSale(
                    instrument_id=trade.instrument_id,
                    symbol=trade.symbol,
                    time_added=now,
                    last_attempt=now,
                    exit_price=trade.exit_price,
                    entry_price=trade.entry_price,
                    investment_amount=trade.investment_amount,
                    token_amount=trade.token_amount,
                    reason=CloseReason(trade.reason).value,
                )
                self._entries.append(sale)
                logger.info("Added %s to failed sales retry queue. Queue size: %d",
                            trade.symbol, len(self._entries))
            self.prune(now)
            self.manager.persist()
            return sale

    def prune(self, now: Optional[pd.Timestamp] = None) -> int:
        """Drop entries older than 24 hours that have used all their attempts."""
        now = now if now is not None else self.manager.clock()
        cutoff = now - PRUNE_AGE
        with self.manager.lock:
            before = len(self._entries)
            self._entries = [
                sale for sale in self._entries
                if sale.time_added > cutoff or sale.attempts < sale.max_attempts
            ]
            removed = before - len(self._entries)
        if removed:
            logger.info("Pruned %d exhausted failed sales", removed)
        return removed

    def clear(self) -> int:
        with self.manager.lock:
            count = len(self._entries)
            self._entries = []
            self.manager.persist()
        logger.info("Failed sales queue cleared (%d items)", count)
        return count

    def _remove(self, sale: FailedSale) -> None:
        self._entries = [s for s in self._entries if s is not sale]

    def drain(self) -> Dict[str, int]:
        """Retry every due entry once.

        Returns counts of entries sold, dropped as terminal and still
        queued.  Errors for one entry never stop the pass.
        """
        summary = {'sold': 0, 'dropped': 0, 'remaining': len(self)}
        if not self.manager.limits.auto_trading:
            logger.info("Auto-trading is disabled. Skipping failed sales retry.")
            return summary

        pending = self.entries
        if not pending:
            logger.debug("No failed sales to retry.")
            return summary

        logger.info("Starting retry for %d failed sales...", len(pending))
        calls = 0
        for sale in pending:
            try:
                if sale.exhausted:
                    logger.debug("Skipping retry for %s - max attempts (%d) reached",
                                 sale.symbol, sale.max_attempts)
                    continue
                wait_left = sale.last_attempt + backoff_window(sale.attempts) - self.manager.clock()
                if wait_left > pd.Timedelta(0):
                    logger.debug("Skipping retry for %s - next attempt in %d seconds",
                                 sale.symbol, int(wait_left.total_seconds()))
                    continue

                if calls and self.pause_seconds > 0:
                    self._sleep(self.pause_seconds)
                calls += 1
                logger.info("Attempting retry #%d for %s (%s)", sale.attempts + 1, sale.symbol, sale.instrument_id)
                try:
                    result = self.manager.executor.sell(self.manager.account, sale.instrument_id, 0)
                except Exception as exc:
                    logger.error("Error retrying sale for %s: %s", sale.symbol, exc)
                    with self.manager.lock:
                        sale.attempts += 1
                        sale.last_attempt = self.manager.clock()
                    continue

                with self.manager.lock:
                    sale.attempts += 1
                    sale.last_attempt = self.manager.clock()
                    if result.success:
                        logger.info("Successfully sold %s on retry #%d", sale.symbol, sale.attempts)
                        self._remove(sale)
                        summary['sold'] += 1
                        if self.manager.has_position(sale.instrument_id):
                            logger.info("Closing position tracking for %s", sale.symbol)
                            self.manager.close(sale.instrument_id, CloseReason.AUTO_RETRY,
                                               sale.exit_price, execute_sell=False)
                    elif is_terminal_error(result.message):
                        logger.warning("Removing %s from retry queue - token doesn't exist in wallet",
                                       sale.symbol)
                        self._remove(sale)
                        summary['dropped'] += 1
                    else:
                        logger.info("Failed retry #%d for %s: %s", sale.attempts, sale.symbol, result.message)
            except Exception as exc:
                logger.exception("Error retrying sale for %s: %s", sale.symbol, exc)

        self.manager.persist()
        summary['remaining'] = len(self)
        logger.info("Retry session completed. Sold: %d, Dropped: %d, Remaining: %d",
                    summary['sold'], summary['dropped'], summary['remaining'])
        return summary
