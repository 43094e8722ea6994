"""
State persistence utilities.

The engine has to remember its state across restarts: the trading
limits (which may be changed at runtime), the closed-trade history,
the open positions and the failed-sale retry queue.  Each lives in its
own JSON file under the data directory so the history, which grows
without bound, does not have to be rewritten with every config change
by tools that only read one of them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.schema import TradingLimits
from ..execution.models import FailedSale, Position, TradeRecord


logger = logging.getLogger(__name__)

CONFIG_FILE = "trading_config.json"
HISTORY_FILE = "trade_history.json"
POSITIONS_FILE = "active_positions.json"
FAILED_SALES_FILE = "failed_sales.json"


def load_state(path: str) -> Optional[Any]:
    """Load a JSON state file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    object or None
        The decoded JSON document if the file exists, otherwise `None`.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Any) -> None:
    """Write a JSON state file to disk.

    The document is written to a temporary sibling first and then moved
    into place so a crash mid-write never leaves a truncated file.

    Parameters
    ----------
    path : str
        Path to the output file.
    state : object
        Arbitrary JSON serialisable document.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2)
    tmp_path.replace(file_path)


@dataclass
class Snapshot:
    """Everything the engine persists."""
    limits: Optional[TradingLimits] = None
    history: List[TradeRecord] = field(default_factory=list)
    positions: Dict[str, Position] = field(default_factory=dict)
    failed_sales: List[FailedSale] = field(default_factory=list)


class StateStore:
    """Read and write the engine snapshot in `data_dir`."""

    def __init__(self, data_dir: str) -> None:
        self.data_dir = Path(data_dir)

    def _path(self, name: str) -> str:
        return str(self.data_dir / name)

    def save(self, snapshot: Snapshot) -> bool:
        """Persist `snapshot`.  Failures are logged and reported as `False`."""
        try:
            if snapshot.limits is not None:
                save_state(self._path(CONFIG_FILE), snapshot.limits.to_dict())
            save_state(self._path(HISTORY_FILE), [t.to_dict() for t in snapshot.history])
            save_state(
                self._path(POSITIONS_FILE),
                [[mint, pos.to_dict()] for mint, pos in snapshot.positions.items()],
            )
            save_state(self._path(FAILED_SALES_FILE), [s.to_dict() for s in snapshot.failed_sales])
        except (OSError, TypeError, ValueError) as exc:
            logger.exception("Error saving trading state to %s: %s", self.data_dir, exc)
            return False
        return True

    def load(self) -> Snapshot:
        """Restore the snapshot; unreadable files are logged and skipped."""
        snapshot = Snapshot()
        self.data_dir.mkdir(parents=True, exist_ok=True)

        raw_limits = self._read(CONFIG_FILE)
        if isinstance(raw_limits, dict):
            try:
                snapshot.limits = TradingLimits.from_dict(raw_limits)
            except (TypeError, ValueError) as exc:
                logger.exception("Ignoring malformed %s, keeping configured limits: %s", CONFIG_FILE, exc)

        raw_history = self._read(HISTORY_FILE)
        if isinstance(raw_history, list):
            snapshot.history = self._decode(raw_history, TradeRecord.from_dict, HISTORY_FILE)
        logger.info("Loaded %d historical trades", len(snapshot.history))

        raw_positions = self._read(POSITIONS_FILE)
        if isinstance(raw_positions, list):
            for pair in raw_positions:
                try:
                    mint, raw_pos = pair
                    snapshot.positions[str(mint)] = Position.from_dict(raw_pos)
                except (TypeError, ValueError, KeyError) as exc:
                    logger.error("Skipping malformed position entry in %s: %s", POSITIONS_FILE, exc)
        logger.info("Loaded %d active positions", len(snapshot.positions))

        raw_sales = self._read(FAILED_SALES_FILE)
        if isinstance(raw_sales, list):
            snapshot.failed_sales = self._decode(raw_sales, FailedSale.from_dict, FAILED_SALES_FILE)
        return snapshot

    def _read(self, name: str) -> Optional[Any]:
        try:
            return load_state(self._path(name))
        except (OSError, ValueError) as exc:
            logger.exception("Error reading %s: %s", name, exc)
            return None

    @staticmethod
    def _decode(items: List[Any], factory: Any, name: str) -> List[Any]:
        decoded = []
        for raw in items:
            try:
                decoded.append(factory(raw))
            except (TypeError, ValueError, KeyError) as exc:
                logger.error("Skipping malformed entry in %s: %s", name, exc)
        return decoded
