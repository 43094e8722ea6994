"""
Report generation utilities.

This module turns the engine's state into human-readable artefacts:
CSV files of closed trades and open positions, a JSON summary of the
profit statistics and a PNG chart of cumulative realized profit.
Having a central place for report generation makes it easy to extend
the output formats in future (e.g. HTML reports).
"""

from __future__ import annotations

import os
import json
from typing import Iterable, List
import pandas as pd
import matplotlib

# Use non-interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..execution.models import Position, TradeRecord


TRADE_COLUMNS = [
    'symbol', 'instrument_id', 'reason', 'entry_time', 'exit_time', 'duration_s',
    'entry_price', 'exit_price', 'highest_price', 'investment', 'return', 'fees',
    'slippage', 'profit', 'profit_pct', 'simulation',
]


def trades_frame(history: Iterable[TradeRecord]) -> pd.DataFrame:
    """Tabulate closed trades in exit order."""
    rows = [
        {
            'symbol': t.symbol,
            'instrument_id': t.instrument_id,
            'reason': t.reason.value,
            'entry_time': t.entry_time.isoformat(),
            'exit_time': t.exit_time.isoformat(),
            'duration_s': t.duration.total_seconds(),
            'entry_price': t.entry_price,
            'exit_price': t.exit_price,
            'highest_price': t.highest_price,
            'investment': t.investment_amount,
            'return': t.return_amount,
            'fees': t.fees,
            'slippage': t.slippage,
            'profit': t.profit_amount,
            'profit_pct': t.profit_percent,
            'simulation': t.is_simulation,
        }
        for t in history
    ]
    return pd.DataFrame(rows, columns=TRADE_COLUMNS)


def generate_trade_report(
    history: List[TradeRecord],
    positions: Iterable[Position],
    summary: dict,
    out_dir: str = "results",
) -> None:
    """Generate report files for the current trading state.

    Creates the output directory if it does not exist and writes the
    following files:

    - `trades.csv` – closed trades
    - `open_positions.csv` – positions still being tracked
    - `summary.json` – profit statistics
    - `pnl_curve.png` – cumulative realized profit over time
    """
    os.makedirs(out_dir, exist_ok=True)

    df_trades = trades_frame(history)
    df_trades.to_csv(os.path.join(out_dir, 'trades.csv'), index=False)

    open_data = [
        {
            'symbol': p.symbol,
            'instrument_id': p.instrument_id,
            'entry_time': p.entry_time.isoformat(),
            'entry_price': p.entry_price,
            'investment': p.investment_amount,
            'tokens': p.token_amount,
            'take_profit': p.take_profit_price,
            'stop_loss': p.stop_loss_price,
            'custom_target': p.custom_target,
            'highest_price': p.highest_price,
            'moonbag': p.moonbag_saved,
        }
        for p in positions
    ]
    pd.DataFrame(open_data).to_csv(os.path.join(out_dir, 'open_positions.csv'), index=False)

    with open(os.path.join(out_dir, 'summary.json'), 'w', encoding='utf-8') as fh:
        json.dump(summary, fh, indent=2, ensure_ascii=False)

    fig, ax = plt.subplots(figsize=(10, 4))
    if not df_trades.empty:
        cumulative = df_trades['profit'].cumsum()
        ax.step(pd.to_datetime(df_trades['exit_time']), cumulative, where='post', linewidth=1.5)
        ax.axhline(0.0, color='grey', linewidth=0.8)
        ax.set_title('Cumulative Realized P/L')
        ax.set_xlabel('Exit time')
        ax.set_ylabel('Profit')
        fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(os.path.join(out_dir, 'pnl_curve.png'))
    plt.close(fig)
