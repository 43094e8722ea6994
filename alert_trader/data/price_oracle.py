"""
Price lookup for tracked instruments.

The engine consumes prices through the `PriceOracle` protocol: a lookup
returning the latest record known for an instrument, or `None`.  Feeds
report the price under ``currentPrice`` and some older ones under
``price``; `resolve_price()` applies that order explicitly and rejects
anything that is not a positive finite number.

`PriceRegistry` is the in-memory oracle that an ingestion pipeline (or
the CSV replay) keeps up to date.
"""

from __future__ import annotations

import math
import threading
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple


PRICE_FIELDS: Tuple[str, ...] = ("currentPrice", "price")


class PriceOracle(Protocol):
    def lookup(self, instrument_id: str) -> Optional[Mapping[str, Any]]:
        ...


def resolve_price(info: Optional[Mapping[str, Any]],
                  fields: Tuple[str, ...] = PRICE_FIELDS) -> Optional[float]:
    """Return the first usable price in `info`, following `fields` order.

    A field counts as present when it is truthy, so a zero primary price
    falls through to the secondary field.  The chosen value must convert
    to a positive, finite float, otherwise `None` is returned.
    """
    if not info:
        return None
    raw = None
    for name in fields:
        if info.get(name):
            raw = info[name]
            break
    if raw is None:
        return None
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(price) or math.isinf(price) or price <= 0:
        return None
    return price


class PriceRegistry:
    """Thread-safe mapping of instrument id to its latest price record."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def update(self, instrument_id: str, price: float, **extra: Any) -> None:
        with self._lock:
            record = dict(self._records.get(instrument_id, {}))
            record.update(extra)
            record["currentPrice"] = price
            self._records[instrument_id] = record

    def lookup(self, instrument_id: str) -> Optional[Mapping[str, Any]]:
        with self._lock:
            record = self._records.get(instrument_id)
            return dict(record) if record is not None else None

    def remove(self, instrument_id: str) -> None:
        with self._lock:
            self._records.pop(instrument_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
