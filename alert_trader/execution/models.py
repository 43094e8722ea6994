"""
Position, trade and retry-queue models.

These dataclasses represent the objects passed between the position
engine, the retry queue, persistence and reporting.  Keeping them in a
separate module improves readability and makes unit testing easier.

Timestamps are UTC `pandas.Timestamp` values and durations are
`pandas.Timedelta`; `to_dict()` turns both into JSON friendly values
(ISO strings and seconds) and `from_dict()` restores them.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, asdict
from enum import Enum
from typing import Any, Dict, Optional
import pandas as pd

from ..utils.timeutils import to_utc


MAX_SALE_ATTEMPTS = 5


class CloseReason(str, Enum):
    """Why a position was closed."""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    CUSTOM_TARGET = "custom_target"
    MANUAL = "manual"
    MANUAL_BULK = "manual_bulk"
    AUTO_RETRY = "auto_retry"


def _to_json(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, pd.Timedelta):
        return value.total_seconds()
    if isinstance(value, Enum):
        return value.value
    return value


def _dump(obj: Any) -> Dict[str, Any]:
    return {f.name: _to_json(getattr(obj, f.name)) for f in fields(obj)}


def _load(cls: Any, raw: Dict[str, Any], timestamps: tuple) -> Dict[str, Any]:
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in raw.items() if k in known}
    for name in timestamps:
        if values.get(name) is not None:
            values[name] = to_utc(values[name])
    return values


@dataclass
class Alert:
    """An external signal that may open a position."""
    symbol: str
    alert_type: str = "alert"
    market_cap: float = 0.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Alert":
        """Build an alert from either snake_case or the feed's camelCase keys."""
        return cls(
            symbol=str(raw.get('symbol') or ""),
            alert_type=str(raw.get('alert_type') or raw.get('type') or "alert"),
            market_cap=float(raw.get('market_cap', raw.get('initialMarketCap', 0.0)) or 0.0),
        )


_POSITION_TIMESTAMPS = ('entry_time', 'last_checked', 'custom_target_set_at', 'moonbag_time')


@dataclass
class Position:
    """An open speculative holding on one instrument."""
    instrument_id: str
    symbol: str
    entry_time: pd.Timestamp
    entry_price: float
    investment_amount: float
    token_amount: float
    take_profit_price: float
    stop_loss_price: float
    take_profit_fraction: float
    stop_loss_fraction: float
    highest_price: float
    alert_type: str = "alert"
    is_simulation: bool = True
    last_checked: Optional[pd.Timestamp] = None
    last_price: Optional[float] = None
    custom_target: Optional[float] = None
    custom_target_multiplier: Optional[float] = None
    custom_target_set_at: Optional[pd.Timestamp] = None
    buy_tx_id: Optional[str] = None
    buy_error: Optional[str] = None
    moonbag_saved: bool = False
    moonbag_time: Optional[pd.Timestamp] = None
    moonbag_exit_price: Optional[float] = None

    @classmethod
    def create(
        cls,
        instrument_id: str,
        symbol: str,
        entry_price: float,
        investment_amount: float,
        take_profit_fraction: float,
        stop_loss_fraction: float,
        entry_time: pd.Timestamp,
        alert_type: str = "alert",
        is_simulation: bool = True,
    ) -> "Position":
        """Open a position, deriving token amount and exit levels from the entry price."""
        token_amount = investment_amount / entry_price if entry_price > 0 else 0.0
        return cls(
            instrument_id=instrument_id,
            symbol=symbol,
            entry_time=entry_time,
            entry_price=entry_price,
            investment_amount=investment_amount,
            token_amount=token_amount,
            take_profit_price=entry_price * (1.0 + take_profit_fraction),
            stop_loss_price=entry_price * (1.0 - stop_loss_fraction),
            take_profit_fraction=take_profit_fraction,
            stop_loss_fraction=stop_loss_fraction,
            highest_price=entry_price,
            alert_type=alert_type,
            is_simulation=is_simulation,
            last_checked=entry_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Position":
        return cls(**_load(cls, raw, _POSITION_TIMESTAMPS))


@dataclass(frozen=True)
class TradeRecord:
    """A closed trade: the final state of its position plus the exit economics."""
    instrument_id: str
    symbol: str
    entry_time: pd.Timestamp
    entry_price: float
    investment_amount: float
    token_amount: float
    take_profit_price: float
    stop_loss_price: float
    take_profit_fraction: float
    stop_loss_fraction: float
    highest_price: float
    exit_price: float
    exit_time: pd.Timestamp
    reason: CloseReason
    gross_return: float
    fees: float
    slippage: float
    return_amount: float
    profit_amount: float
    profit_percent: float
    duration: pd.Timedelta
    alert_type: str = "alert"
    is_simulation: bool = True
    last_checked: Optional[pd.Timestamp] = None
    last_price: Optional[float] = None
    custom_target: Optional[float] = None
    custom_target_multiplier: Optional[float] = None
    custom_target_set_at: Optional[pd.Timestamp] = None
    buy_tx_id: Optional[str] = None
    buy_error: Optional[str] = None
    moonbag_saved: bool = False
    moonbag_time: Optional[pd.Timestamp] = None
    moonbag_exit_price: Optional[float] = None

    @classmethod
    def from_position(cls, position: Position, **exit_fields: Any) -> "TradeRecord":
        snapshot = {f.name: getattr(position, f.name) for f in fields(position)}
        return cls(**snapshot, **exit_fields)

    @property
    def is_win(self) -> bool:
        return self.return_amount > self.investment_amount

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TradeRecord":
        values = _load(cls, raw, _POSITION_TIMESTAMPS + ('exit_time',))
        values['reason'] = CloseReason(values['reason'])
        values['duration'] = pd.Timedelta(seconds=float(values.get('duration') or 0.0))
        return cls(**values)


@dataclass
class FailedSale:
    """An exit order that failed at the venue and awaits another attempt."""
    instrument_id: str
    symbol: str
    time_added: pd.Timestamp
    last_attempt: pd.Timestamp
    exit_price: float
    entry_price: float
    investment_amount: float
    token_amount: float
    reason: str
    attempts: int = 1
    max_attempts: int = MAX_SALE_ATTEMPTS

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "FailedSale":
        return cls(**_load(cls, raw, ('time_added', 'last_attempt')))


@dataclass(frozen=True)
class ProfitStats:
    """Aggregate performance derived from trade history and open positions."""
    total_invested: float = 0.0
    total_returned: float = 0.0
    total_profit: float = 0.0
    win_count: int = 0
    loss_count: int = 0
    active_investment: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
