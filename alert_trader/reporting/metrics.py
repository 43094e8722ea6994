"""
Performance metrics calculations.

This module provides helpers to compute profit statistics from the
closed-trade history and the currently open positions.  These figures
are derived data: they are recomputed from scratch on every call and
never read back from a previous result, so they always agree with the
history and the open set, including right after a restart.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from ..data.price_oracle import PriceOracle, resolve_price
from ..execution.models import Position, ProfitStats, TradeRecord


def compute_profit_stats(history: Iterable[TradeRecord], positions: Iterable[Position]) -> ProfitStats:
    """Fold trade history and open positions into `ProfitStats`.

    A trade counts as a win when its net return exceeds its investment;
    anything else, including break-even, is a loss.
    """
    total_invested = 0.0
    total_returned = 0.0
    wins = 0
    losses = 0
    for trade in history:
        total_invested += trade.investment_amount
        total_returned += trade.return_amount
        if trade.return_amount > trade.investment_amount:
            wins += 1
        else:
            losses += 1

    active_investment = sum(p.investment_amount for p in positions)

    return ProfitStats(
        total_invested=total_invested,
        total_returned=total_returned,
        total_profit=total_returned - total_invested,
        win_count=wins,
        loss_count=losses,
        active_investment=active_investment,
    )


def summarize_performance(
    stats: ProfitStats,
    positions: Iterable[Position],
    oracle: Optional[PriceOracle] = None,
) -> dict:
    """Compute the headline figures shown in status output and reports.

    Open positions are valued at the oracle's current price; positions
    without a usable price are valued at zero, as an unknown price cannot
    be sold into.
    """
    total_trades = stats.win_count + stats.loss_count
    win_rate = stats.win_count / total_trades * 100 if total_trades else 0.0
    roi = stats.total_profit / stats.total_invested * 100 if stats.total_invested > 0 else 0.0

    open_positions = list(positions)
    current_value = 0.0
    unrealized = 0.0
    for position in open_positions:
        price = resolve_price(oracle.lookup(position.instrument_id), ("currentPrice",)) if oracle else None
        value = position.token_amount * (price or 0.0)
        current_value += value
        unrealized += value - position.investment_amount

    overall_invested = stats.total_invested + stats.active_investment
    overall_profit = stats.total_profit + unrealized

    return {
        'total_trades': total_trades,
        'win_count': stats.win_count,
        'loss_count': stats.loss_count,
        'win_rate': win_rate,
        'total_invested': stats.total_invested,
        'total_returned': stats.total_returned,
        'realized_profit': stats.total_profit,
        'roi': roi,
        'active_positions': len(open_positions),
        'active_investment': stats.active_investment,
        'current_value': current_value,
        'unrealized_profit': unrealized,
        'unrealized_percent': unrealized / stats.active_investment * 100 if stats.active_investment > 0 else 0.0,
        'overall_profit': overall_profit,
        'overall_roi': overall_profit / overall_invested * 100 if overall_invested > 0 else 0.0,
    }


def simulate_expected_profit(
    investment_amount: float,
    take_profit: float,
    stop_loss: float,
    hit_rate: float,
) -> Mapping[str, float]:
    """Expected outcome of a TP/SL pair when `hit_rate` percent of trades win.

    Parameters
    ----------
    investment_amount : float
        Amount committed per trade.
    take_profit, stop_loss : float
        Exit distances in percent of the entry price.
    hit_rate : float
        Share of trades reaching take profit, in percent.
    """
    win_amount = investment_amount * (1 + take_profit / 100)
    loss_amount = investment_amount * (1 - stop_loss / 100)
    expected_wins = hit_rate / 100
    expected_losses = 1 - expected_wins
    expected_return = win_amount * expected_wins + loss_amount * expected_losses
    expected_profit = expected_return - investment_amount
    expected_roi = expected_profit / investment_amount * 100 if investment_amount else 0.0
    return {
        'investment_amount': investment_amount,
        'win_amount': win_amount,
        'loss_amount': loss_amount,
        'expected_wins': expected_wins,
        'expected_losses': expected_losses,
        'expected_return': expected_return,
        'expected_profit': expected_profit,
        'expected_roi': expected_roi,
    }
