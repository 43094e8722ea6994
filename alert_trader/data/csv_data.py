"""
CSV event loader.

The replay mode feeds recorded alerts and price ticks through the
engine.  The expected schema is:

```
time,instrument_id,event,symbol,alert_type,market_cap,price
```

`event` is either ``alert`` or ``price``.  Alert rows should carry a
`price` too (the price at alert time); price rows only need `time`,
`instrument_id` and `price`.  The `time` column accepts ISO timestamps
or UNIX epochs in milliseconds and is converted to UTC.
"""

from __future__ import annotations

from pathlib import Path
import pandas as pd


REQUIRED_COLUMNS = ["time", "instrument_id", "event"]
EVENT_TYPES = ("alert", "price")


class CSVEventLoader:
    """Load a time-ordered stream of alert and price events.

    Parameters
    ----------
    path : str
        CSV file to read.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def load(self) -> pd.DataFrame:
        if not self.path.exists():
            raise FileNotFoundError(f"Event file not found: {self.path}")

        df = pd.read_csv(self.path)
        df.columns = [c.strip() for c in df.columns]
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(
                f"Unrecognized event file {self.path}. Missing columns: {missing}. "
                f"Found columns: {list(df.columns)}"
            )

        for column, default in (("symbol", ""), ("alert_type", "alert"), ("market_cap", 0.0), ("price", float("nan"))):
            if column not in df.columns:
                df[column] = default

        if pd.api.types.is_numeric_dtype(df["time"]):
            df["time"] = pd.to_datetime(df["time"], unit="ms", utc=True)
        else:
            df["time"] = pd.to_datetime(df["time"], utc=True, errors="raise")

        df["event"] = df["event"].astype(str).str.strip().str.lower()
        unknown = sorted(set(df["event"]) - set(EVENT_TYPES))
        if unknown:
            raise ValueError(f"Unknown event types in {self.path}: {unknown}")

        df["instrument_id"] = df["instrument_id"].astype(str).str.strip()
        df["symbol"] = df["symbol"].fillna("").astype(str)
        df["alert_type"] = df["alert_type"].fillna("alert").astype(str)
        df["market_cap"] = pd.to_numeric(df["market_cap"], errors="coerce").fillna(0.0)
        df["price"] = pd.to_numeric(df["price"], errors="coerce")

        # stable sort keeps an alert ahead of a price tick sharing its timestamp
        return df.sort_values("time", kind="mergesort").reset_index(drop=True)
