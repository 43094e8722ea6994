"""
Position lifecycle engine.

`PositionManager` owns the open positions, the closed-trade history and
the derived profit statistics.  It decides whether an alert opens a
position, evaluates open positions against their exit levels on every
tick and books closes.

Closing is optimistic: the trade record is written and the position
removed before the venue has confirmed the exit.  A failed exit order
never reopens the position; it is handed to the `RetryQueue`, which is
the only compensation path for settlement failures.

All mutations of positions, history and the retry queue happen under
one re-entrant lock, so ticks, order callbacks from worker threads and
manual operations never observe a half-updated position.
"""

from __future__ import annotations

import functools
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, List, Mapping, Any, Optional
import pandas as pd

from ..config.schema import TradingLimits
from ..data.price_oracle import PriceOracle, resolve_price
from ..execution.executor import InlineDispatcher, OrderDispatcher, TradeExecutor, TradeResult
from ..execution.models import Alert, CloseReason, Position, ProfitStats, TradeRecord
from ..reporting.metrics import compute_profit_stats
from ..utils.persistence import Snapshot, StateStore
from ..utils.timeutils import utc_now
from .retry_queue import RetryQueue


logger = logging.getLogger(__name__)


class PositionManager:
    """Entry gating, exit evaluation and close accounting for one account."""

    def __init__(
        self,
        limits: TradingLimits,
        executor: TradeExecutor,
        oracle: PriceOracle,
        dispatcher: Optional[OrderDispatcher] = None,
        store: Optional[StateStore] = None,
        account: str = "admin",
        clock: Callable[[], pd.Timestamp] = utc_now,
        retry_pause_seconds: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.limits = limits
        self.executor = executor
        self.oracle = oracle
        self.dispatcher = dispatcher or InlineDispatcher()
        self.store = store
        self.account = account
        self.clock = clock
        self.lock = threading.RLock()
        self.positions: Dict[str, Position] = {}
        self.history: List[TradeRecord] = []
        self.stats = ProfitStats()
        queue_kwargs = {} if sleep is None else {'sleep': sleep}
        self.retry_queue = RetryQueue(self, pause_seconds=retry_pause_seconds, **queue_kwargs)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def restore(self) -> None:
        """Reload persisted state.  Stored trading limits replace the current ones."""
        if self.store is None:
            return
        snapshot = self.store.load()
        with self.lock:
            if snapshot.limits is not None:
                self.limits = snapshot.limits
            self.history = list(snapshot.history)
            self.positions = dict(snapshot.positions)
            self.retry_queue.load(snapshot.failed_sales)
            self.recompute_stats()
        logger.info(
            "Trading state restored: %d open positions, %d trades, %d failed sales",
            len(self.positions), len(self.history), len(self.retry_queue),
        )

    def shutdown(self) -> None:
        """Wait for in-flight orders and write a final snapshot."""
        self.dispatcher.shutdown()
        self.persist()

    def persist(self) -> bool:
        if self.store is None:
            return True
        with self.lock:
            snapshot = Snapshot(
                limits=self.limits,
                history=self.history,
                positions=self.positions,
                failed_sales=self.retry_queue.entries,
            )
            return self.store.save(snapshot)

    def recompute_stats(self) -> ProfitStats:
        with self.lock:
            self.stats = compute_profit_stats(self.history, self.positions.values())
            return self.stats

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def has_position(self, instrument_id: str) -> bool:
        with self.lock:
            return instrument_id in self.positions

    def get_position(self, instrument_id: str) -> Optional[Position]:
        with self.lock:
            return self.positions.get(instrument_id)

    def find_by_symbol(self, symbol: str) -> Optional[Position]:
        """Return the first open position whose symbol matches, ignoring case."""
        wanted = symbol.upper()
        with self.lock:
            for position in self.positions.values():
                if position.symbol.upper() == wanted:
                    return position
        return None

    def open_count(self) -> int:
        with self.lock:
            return len(self.positions)

    # ------------------------------------------------------------------
    # entries
    # ------------------------------------------------------------------
    def process_alert(self, instrument_id: str, alert: Alert) -> Optional[Position]:
        """Entry point for the alert feed: look up the price, then gate the entry."""
        try:
            info = self.oracle.lookup(instrument_id)
            if not info:
                logger.info("Skipping trade hook - token info not found for %s", instrument_id)
                return None
            return self.open_position(instrument_id, alert, info)
        except Exception as exc:
            logger.exception("Error processing alert for trading (%s): %s", instrument_id, exc)
            return None

    def open_position(
        self,
        instrument_id: str,
        alert: Alert,
        price_info: Optional[Mapping[str, Any]],
    ) -> Optional[Position]:
        """Open a position for `alert` unless a gating rule rejects it.

        Rejections are silent: `None` is returned and nothing changes.
        When auto trading is enabled the buy is dispatched after the
        position is stored; the position stays tracked even if the buy
        fails.
        """
        symbol = alert.symbol or instrument_id
        with self.lock:
            limits = self.limits
            if not limits.track_all_tokens and instrument_id not in limits.tracked_tokens:
                logger.info("Skipping %s - not in tracked tokens list", symbol)
                return None
            if alert.market_cap < limits.min_market_cap:
                logger.info("Skipping %s - market cap too low: %s", symbol, alert.market_cap)
                return None
            if instrument_id in self.positions:
                logger.info("Already have an active position for %s - skipping", symbol)
                return None
            if len(self.positions) >= limits.max_active_positions:
                logger.info("Maximum active positions reached (%d) - skipping new entry",
                            limits.max_active_positions)
                return None

            position = Position.create(
                instrument_id=instrument_id,
                symbol=symbol,
                entry_price=resolve_price(price_info) or 0.0,
                investment_amount=limits.default_investment,
                take_profit_fraction=limits.default_take_profit / 100,
                stop_loss_fraction=limits.default_stop_loss / 100,
                entry_time=self.clock(),
                alert_type=alert.alert_type,
                is_simulation=not limits.auto_trading,
            )
            self.positions[instrument_id] = position
            self.recompute_stats()
            self.persist()
            logger.info("Added new position for %s at %s", symbol, position.entry_price)

            if limits.auto_trading:
                logger.info("[REAL TRADE] Executing buy for %s with %s", symbol, position.investment_amount)
                self.dispatcher.submit(
                    functools.partial(self.executor.buy, self.account, instrument_id, position.investment_amount),
                    functools.partial(self._on_buy_done, instrument_id),
                )
            else:
                logger.debug("[SIMULATION] Would buy %s with %s", symbol, position.investment_amount)
            return position

    def manual_entry(
        self,
        symbol: str,
        instrument_id: str,
        entry_price: float,
        investment_amount: float,
        take_profit_percent: Optional[float] = None,
        stop_loss_percent: Optional[float] = None,
    ) -> Optional[Position]:
        """Track a position entered outside the alert flow.

        Tracked-set and market-cap rules do not apply, but the duplicate
        and maximum-open rules do.  No buy order is sent.
        """
        if not instrument_id or not entry_price or not investment_amount:
            logger.warning("Missing required parameters for manual entry")
            return None
        tp = self.limits.default_take_profit if take_profit_percent is None else take_profit_percent
        sl = self.limits.default_stop_loss if stop_loss_percent is None else stop_loss_percent
        with self.lock:
            if instrument_id in self.positions:
                logger.info("Already have an active position for %s - skipping manual entry", instrument_id)
                return None
            if len(self.positions) >= self.limits.max_active_positions:
                logger.info("Maximum active positions reached (%d) - skipping manual entry",
                            self.limits.max_active_positions)
                return None
            position = Position.create(
                instrument_id=instrument_id,
                symbol=symbol or "MANUAL",
                entry_price=entry_price,
                investment_amount=investment_amount,
                take_profit_fraction=tp / 100,
                stop_loss_fraction=sl / 100,
                entry_time=self.clock(),
                alert_type="manual",
                is_simulation=not self.limits.auto_trading,
            )
            self.positions[instrument_id] = position
            self.recompute_stats()
            self.persist()
            return position

    def _on_buy_done(self, instrument_id: str, result: TradeResult) -> None:
        with self.lock:
            position = self.positions.get(instrument_id)
            if result.success:
                logger.info("Successfully bought %s. Transaction: %s", instrument_id, result.tx_id)
                if position is not None:
                    position.buy_tx_id = result.tx_id
                    self.persist()
            else:
                # buys are never retried
                logger.error("Failed to buy %s: %s", instrument_id, result.message)
                if position is not None:
                    position.buy_error = result.message or "buy failed"
                    self.persist()

    # ------------------------------------------------------------------
    # exit evaluation
    # ------------------------------------------------------------------
    @staticmethod
    def _exit_reason(position: Position, price: float) -> Optional[CloseReason]:
        if position.custom_target and price >= position.custom_target:
            return CloseReason.CUSTOM_TARGET
        if price >= position.take_profit_price:
            return CloseReason.TAKE_PROFIT
        if price <= position.stop_loss_price:
            return CloseReason.STOP_LOSS
        return None

    def evaluate(self, instrument_id: str) -> Optional[Position]:
        """Check one position against the latest price.

        Returns the (updated) position, or `None` when it is not open
        anymore, either because it closed during this call or because
        another path closed it earlier.
        """
        if not self.has_position(instrument_id):
            return None
        # price I/O happens outside the lock
        price = resolve_price(self.oracle.lookup(instrument_id))

        with self.lock:
            position = self.positions.get(instrument_id)
            if position is None:
                return None
            position.last_checked = self.clock()

            if price is None:
                logger.debug("Unable to check position for %s - price data not available", position.symbol)
                return position

            if price > position.highest_price:
                position.highest_price = price
                logger.debug("New highest price for %s: %s", position.symbol, price)

            reason = self._exit_reason(position, price)
            if reason is None:
                return position

            change = (price / position.entry_price - 1) * 100 if position.entry_price > 0 else 0.0
            logger.info("%s triggered for %s at %s (%+.2f%%)", reason.value, position.symbol, price, change)
            self.close(instrument_id, reason, price)
            return None

    def evaluate_all(self) -> None:
        """Evaluate every open position once, then persist."""
        with self.lock:
            instrument_ids = list(self.positions)
        logger.debug("Checking %d active positions...", len(instrument_ids))
        for instrument_id in instrument_ids:
            try:
                self.evaluate(instrument_id)
            except Exception as exc:
                logger.exception("Error checking position for %s: %s", instrument_id, exc)
        self.persist()

    def force_update(self) -> int:
        """Refresh `last_price` from the primary price field and re-evaluate.

        Returns the number of positions that had a usable price.
        """
        with self.lock:
            instrument_ids = list(self.positions)
        updated = 0
        for instrument_id in instrument_ids:
            try:
                if not self.has_position(instrument_id):
                    continue
                price = resolve_price(self.oracle.lookup(instrument_id), ("currentPrice",))
                with self.lock:
                    position = self.positions.get(instrument_id)
                    if position is None:
                        continue
                    if price is None:
                        logger.info("No valid price for %s (%s)", position.symbol, instrument_id)
                        continue
                    position.last_price = price
                self.evaluate(instrument_id)
                updated += 1
            except Exception as exc:
                logger.exception("Error force updating price for %s: %s", instrument_id, exc)
        self.persist()
        logger.info("Force update completed. Updated %d positions.", updated)
        return updated

    # ------------------------------------------------------------------
    # closing
    # ------------------------------------------------------------------
    def close(
        self,
        instrument_id: str,
        reason: CloseReason,
        exit_price: float,
        execute_sell: bool = True,
    ) -> Optional[TradeRecord]:
        """Book the exit of a position and request the venue sell.

        The trade record is appended and the position removed before the
        sell is dispatched.  `execute_sell=False` is used when the tokens
        were already sold (retry-queue recovery).
        """
        reason = CloseReason(reason)
        with self.lock:
            position = self.positions.get(instrument_id)
            if position is None:
                logger.info("Position not found for %s", instrument_id)
                return None

            now = self.clock()
            limits = self.limits
            gross_return = position.token_amount * exit_price
            fees = gross_return * (limits.fees_percent / 100)
            slippage = gross_return * (limits.slippage_estimate / 100)
            return_amount = gross_return - fees - slippage
            profit_amount = return_amount - position.investment_amount
            profit_percent = (profit_amount / position.investment_amount * 100
                              if position.investment_amount else 0.0)

            trade = TradeRecord.from_position(
                position,
                exit_price=exit_price,
                exit_time=now,
                reason=reason,
                gross_return=gross_return,
                fees=fees,
                slippage=slippage,
                return_amount=return_amount,
                profit_amount=profit_amount,
                profit_percent=profit_percent,
                duration=now - position.entry_time,
            )
            self.history.append(trade)
            del self.positions[instrument_id]

            if limits.auto_trading and execute_sell:
                logger.info("Executing sell order for %s (%s)", trade.symbol, instrument_id)
                self.dispatcher.submit(
                    functools.partial(self.executor.sell, self.account, instrument_id, 0),
                    functools.partial(self._on_sell_done, trade),
                )

            self.recompute_stats()
            self.persist()

        logger.info(
            "Closed position for %s with %.3f %s (%.2f%%)",
            trade.symbol, profit_amount, "profit" if profit_amount >= 0 else "loss", profit_percent,
        )
        return trade

    def _on_sell_done(self, trade: TradeRecord, result: TradeResult) -> None:
        if result.success:
            logger.info("Successfully sold %s. Transaction: %s", trade.symbol, result.tx_id)
            return
        logger.error("Failed to sell %s: %s", trade.symbol, result.message)
        self.retry_queue.enqueue(trade)

    def close_all(self, reason: CloseReason = CloseReason.MANUAL_BULK) -> List[TradeRecord]:
        """Close every open position at its current price (entry price if unknown)."""
        with self.lock:
            instrument_ids = list(self.positions)
        closed: List[TradeRecord] = []
        for instrument_id in instrument_ids:
            try:
                if not self.has_position(instrument_id):
                    continue
                current = resolve_price(self.oracle.lookup(instrument_id))
                with self.lock:
                    position = self.positions.get(instrument_id)
                    if position is None:
                        continue
                    trade = self.close(instrument_id, reason, current or position.entry_price)
                if trade is not None:
                    closed.append(trade)
            except Exception as exc:
                logger.exception("Error closing position for %s: %s", instrument_id, exc)
        return closed

    # ------------------------------------------------------------------
    # manual overrides
    # ------------------------------------------------------------------
    def set_take_profit(self, instrument_id: str, percent: float) -> Optional[Position]:
        if not percent > 0:
            raise ValueError(f"take profit must be a positive percentage, got {percent!r}")
        with self.lock:
            position = self.positions.get(instrument_id)
            if position is None:
                return None
            position.take_profit_fraction = percent / 100
            position.take_profit_price = position.entry_price * (1 + position.take_profit_fraction)
            self.persist()
            return position

    def set_stop_loss(self, instrument_id: str, percent: float) -> Optional[Position]:
        if not percent > 0:
            raise ValueError(f"stop loss must be a positive percentage, got {percent!r}")
        with self.lock:
            position = self.positions.get(instrument_id)
            if position is None:
                return None
            position.stop_loss_fraction = percent / 100
            position.stop_loss_price = position.entry_price * (1 - position.stop_loss_fraction)
            self.persist()
            return position

    def set_custom_target(self, instrument_id: str, multiplier: float) -> Optional[Position]:
        """Exit when the price reaches `multiplier` times the entry price."""
        if not multiplier > 0:
            raise ValueError(f"target multiplier must be positive, got {multiplier!r}")
        with self.lock:
            position = self.positions.get(instrument_id)
            if position is None:
                return None
            position.custom_target = position.entry_price * multiplier
            position.custom_target_multiplier = multiplier
            position.custom_target_set_at = self.clock()
            self.persist()
            return position

    def save_moonbag(self, instrument_id: str, fraction: float = 0.75) -> Optional["Future[TradeResult]"]:
        """Sell `fraction` of a position and keep the rest open.

        Only available with auto trading.  The position is reduced once
        the venue confirms the partial sell; a failed sell leaves it
        untouched and is not queued for retry.
        """
        if not 0 < fraction < 1:
            raise ValueError(f"moonbag fraction must be between 0 and 1, got {fraction!r}")
        if not self.has_position(instrument_id):
            return None
        current = resolve_price(self.oracle.lookup(instrument_id))
        with self.lock:
            position = self.positions.get(instrument_id)
            if position is None:
                return None
            if not self.limits.auto_trading:
                logger.warning("Moonbag for %s requires auto trading", position.symbol)
                return None
            sell_amount = position.token_amount * fraction
            price = current or position.entry_price
            logger.info("Selling %.0f%% of %s, keeping the rest as moonbag", fraction * 100, position.symbol)
            return self.dispatcher.submit(
                functools.partial(self.executor.sell, self.account, instrument_id, sell_amount),
                functools.partial(self._on_moonbag_done, instrument_id, fraction, price),
            )

    def _on_moonbag_done(self, instrument_id: str, fraction: float, price: float, result: TradeResult) -> None:
        with self.lock:
            position = self.positions.get(instrument_id)
            if not result.success:
                logger.error("Partial sell failed for %s: %s", instrument_id, result.message)
                return
            if position is None:
                logger.warning("Partial sell of %s confirmed after the position closed", instrument_id)
                return
            keep = 1 - fraction
            position.token_amount *= keep
            position.investment_amount *= keep
            position.moonbag_saved = True
            position.moonbag_time = self.clock()
            position.moonbag_exit_price = price
            self.recompute_stats()
            self.persist()
        logger.info("Moonbag saved for %s: %s tokens remaining", position.symbol, position.token_amount)

    def reset(self) -> None:
        """Forget all open positions and trade history."""
        with self.lock:
            self.positions = {}
            self.history = []
            self.recompute_stats()
            self.persist()
        logger.warning("All trading data has been reset")
