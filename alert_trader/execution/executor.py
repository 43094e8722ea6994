"""
Venue execution interfaces.

The position engine never talks to a wallet or exchange directly.  It
is handed an object implementing the `TradeExecutor` protocol and an
`OrderDispatcher` that decides where the (blocking) venue calls run:

- `ThreadedDispatcher` runs them on a small thread pool so the
  evaluation tick never waits for a transaction confirmation.
- `InlineDispatcher` runs them immediately on the calling thread,
  which makes tests and CSV replays deterministic.

`PaperExecutor` is the simulated venue used in paper mode and
`RetryingExecutor` adds the short in-call retry loop that real venues
need for transient RPC errors.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple


logger = logging.getLogger(__name__)

# Substrings of venue messages meaning the tokens are no longer in custody.
TERMINAL_ERROR_MARKERS = (
    "doesn't exist",
    "not found",
    "0 tokens",
    "no accounts found",
)

# The in-call sell loop also gives up on balance errors; the retry queue does not.
SELL_STOP_MARKERS = TERMINAL_ERROR_MARKERS + ("insufficient",)


@dataclass(frozen=True)
class TradeResult:
    """Outcome of a buy or sell request."""
    success: bool
    tx_id: Optional[str] = None
    message: Optional[str] = None


class TradeExecutor(Protocol):
    """Executes orders against the venue.

    ``amount`` is the quote amount to spend for `buy` and the token
    amount to sell for `sell`, where ``0`` means the whole balance.
    """

    def buy(self, account: str, instrument_id: str, amount: float) -> TradeResult:
        ...

    def sell(self, account: str, instrument_id: str, amount: float) -> TradeResult:
        ...


def is_terminal_error(message: Optional[str], markers: Tuple[str, ...] = TERMINAL_ERROR_MARKERS) -> bool:
    """Return `True` when retrying the order cannot succeed."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in markers)


class PaperExecutor:
    """Simulated venue: every order succeeds with a synthetic transaction id."""

    def buy(self, account: str, instrument_id: str, amount: float) -> TradeResult:
        logger.info("[PAPER] Buy %s of %s for %s", amount, instrument_id, account)
        return TradeResult(success=True, tx_id=f"paper-{uuid.uuid4().hex[:16]}")

    def sell(self, account: str, instrument_id: str, amount: float) -> TradeResult:
        logger.info("[PAPER] Sell %s of %s for %s", amount or "all", instrument_id, account)
        return TradeResult(success=True, tx_id=f"paper-{uuid.uuid4().hex[:16]}")


class RetryingExecutor:
    """Wrap an executor and retry failed sells a few times before giving up.

    Attempts are spaced linearly (``retry_delay * attempt`` seconds).
    Terminal messages stop the loop at once.  Exceptions raised by the
    wrapped executor are converted into failed results so callers always
    receive a `TradeResult`.  Buys are passed through unchanged; they are
    never retried.
    """

    def __init__(
        self,
        inner: TradeExecutor,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def buy(self, account: str, instrument_id: str, amount: float) -> TradeResult:
        return self.inner.buy(account, instrument_id, amount)

    def sell(self, account: str, instrument_id: str, amount: float) -> TradeResult:
        last = TradeResult(success=False, message="no attempt made")
        for attempt in range(1, self.max_retries + 1):
            try:
                result = self.inner.sell(account, instrument_id, amount)
            except Exception as exc:
                logger.error("Sell attempt %d/%d for %s raised: %s",
                             attempt, self.max_retries, instrument_id, exc)
                result = TradeResult(success=False, message=str(exc))
            if result.success:
                if attempt > 1:
                    logger.info("Sold %s on attempt %d", instrument_id, attempt)
                return result
            last = result
            logger.warning("Sell attempt %d/%d failed for %s: %s",
                           attempt, self.max_retries, instrument_id, result.message)
            if is_terminal_error(result.message, SELL_STOP_MARKERS):
                logger.warning("Not retrying %s due to terminal error: %s", instrument_id, result.message)
                break
            if attempt < self.max_retries:
                self._sleep(self.retry_delay * attempt)
        return last


class OrderDispatcher(Protocol):
    """Runs venue calls and reports their results through a callback."""

    def submit(self, call: Callable[[], TradeResult],
               on_done: Callable[[TradeResult], None]) -> "Future[TradeResult]":
        ...

    def shutdown(self) -> None:
        ...


def _run(call: Callable[[], TradeResult], on_done: Callable[[TradeResult], None]) -> TradeResult:
    try:
        result = call()
    except Exception as exc:
        logger.exception("Venue call failed: %s", exc)
        result = TradeResult(success=False, message=str(exc))
    on_done(result)
    return result


class InlineDispatcher:
    """Execute orders synchronously on the calling thread."""

    def submit(self, call: Callable[[], TradeResult],
               on_done: Callable[[TradeResult], None]) -> "Future[TradeResult]":
        future: "Future[TradeResult]" = Future()
        future.set_result(_run(call, on_done))
        return future

    def shutdown(self) -> None:
        pass


class ThreadedDispatcher:
    """Execute orders on a thread pool so ticks never wait for the venue."""

    def __init__(self, max_workers: int = 4) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="orders")

    def submit(self, call: Callable[[], TradeResult],
               on_done: Callable[[TradeResult], None]) -> "Future[TradeResult]":
        return self._pool.submit(_run, call, on_done)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)
