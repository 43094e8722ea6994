"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with reasonable defaults for any missing
fields.

The trading limits are also persisted by the engine itself
(`trading_config.json`) so that changes made at runtime survive a
restart; `TradingLimits.to_dict()` / `from_dict()` support that.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Set, Dict, Any
import yaml


@dataclass
class TradingLimits:
    """Process-wide trading parameters.

    Attributes
    ----------
    default_investment : float
        Amount (in the quote unit, e.g. SOL) committed to each new position.
    default_take_profit : float
        Take-profit distance in percent of the entry price (``50`` = +50 %).
    default_stop_loss : float
        Stop-loss distance in percent of the entry price (``30`` = -30 %).
    auto_trading : bool
        When `False` positions are only simulated; no orders reach the venue.
    max_active_positions : int
        Upper bound on simultaneously open positions.
    fees_percent : float
        Estimated venue fees deducted from gross exit proceeds, in percent.
    slippage_estimate : float
        Estimated slippage deducted from gross exit proceeds, in percent.
    track_all_tokens : bool
        Open positions for every alert instead of only `tracked_tokens`.
    tracked_tokens : set of str
        Instrument ids eligible for entries when `track_all_tokens` is off.
    min_market_cap : float
        Minimum qualifying size reported by the alert.
    """

    default_investment: float = 2.0
    default_take_profit: float = 50.0
    default_stop_loss: float = 30.0
    auto_trading: bool = False
    max_active_positions: int = 100
    fees_percent: float = 0.5
    slippage_estimate: float = 2.0
    track_all_tokens: bool = False
    tracked_tokens: Set[str] = field(default_factory=set)
    min_market_cap: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['tracked_tokens'] = sorted(self.tracked_tokens)
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TradingLimits":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in raw.items() if k in known}
        values['tracked_tokens'] = set(values.get('tracked_tokens') or [])
        return cls(**values)


@dataclass
class EngineConfig:
    """Runtime settings of the position engine.

    Attributes
    ----------
    data_dir : str
        Directory holding the persisted JSON state files.
    account : str
        Account identifier passed to the trade executor.
    check_interval_seconds : float
        Period of the exit-evaluation tick.
    retry_interval_seconds : float
        Period of the failed-sale retry tick.
    retry_pause_seconds : float
        Pause between consecutive venue calls within one retry pass.
    max_workers : int
        Size of the thread pool that runs venue orders.
    """

    data_dir: str = "data"
    account: str = "admin"
    check_interval_seconds: float = 5.0
    retry_interval_seconds: float = 600.0
    retry_pause_seconds: float = 1.0
    max_workers: int = 4


@dataclass
class Config:
    """Root configuration for the alert trader.

    Attributes
    ----------
    trading : TradingLimits
        Entry sizing, exit thresholds and cost estimates.
    engine : EngineConfig
        Scheduling, persistence and execution settings.
    mode : str
        ``paper`` (simulated orders) or ``live``.
    """

    trading: TradingLimits = field(default_factory=TradingLimits)
    engine: EngineConfig = field(default_factory=EngineConfig)
    mode: str = "paper"


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        the defaults defined in the dataclasses.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}

    defaults: Dict[str, Any] = {
        'trading': TradingLimits().to_dict(),
        'engine': {
            'data_dir': "data",
            'account': "admin",
            'check_interval_seconds': 5.0,
            'retry_interval_seconds': 600.0,
            'retry_pause_seconds': 1.0,
            'max_workers': 4,
        },
        'mode': 'paper',
    }

    merged = _merge_dict(defaults, raw)

    trading_cfg = TradingLimits.from_dict(merged['trading'])
    engine_cfg = EngineConfig(
        data_dir=str(merged['engine']['data_dir']),
        account=str(merged['engine']['account']),
        check_interval_seconds=float(merged['engine']['check_interval_seconds']),
        retry_interval_seconds=float(merged['engine']['retry_interval_seconds']),
        retry_pause_seconds=float(merged['engine']['retry_pause_seconds']),
        max_workers=int(merged['engine']['max_workers']),
    )

    return Config(
        trading=trading_cfg,
        engine=engine_cfg,
        mode=str(merged.get('mode', 'paper')).lower(),
    )
