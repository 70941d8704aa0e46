"""
Candle data model, time bucketing and the per-trade fold rule.

Everything here is pure: no I/O, no clocks except now_ms().
"""

from __future__ import annotations

import datetime as dt
import math
import time
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True, slots=True)
class TradeEvent:
    """One trade tick: price, size and exchange timestamp in ms."""
    price: float
    size: int
    timestamp_ms: int
    conditions: Tuple[int, ...] = ()


@dataclass(slots=True)
class Candlestick:
    """OHLCV for one aligned bucket. bucket_ms is the bucket start."""
    bucket_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: int

    def copy(self) -> "Candlestick":
        return Candlestick(
            bucket_ms=self.bucket_ms,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )

    def as_record(self) -> dict:
        return {
            "bucket_ms": self.bucket_ms,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


# -----------------------------
# Time math
# -----------------------------

def now_ms() -> int:
    return int(time.time() * 1000)


def bucket_start_ms(ts_ms: int, period_ms: int) -> int:
    """Return the start of the aligned bucket containing ts_ms."""
    return ts_ms - ts_ms % period_ms


def next_boundary_ms(ts_ms: int, period_ms: int) -> int:
    """Smallest aligned boundary >= ts_ms."""
    start = bucket_start_ms(ts_ms, period_ms)
    return start if start == ts_ms else start + period_ms


def fmt_hms(ms: int) -> str:
    """Local wall-clock HH:MM:SS for a millisecond timestamp."""
    return dt.datetime.fromtimestamp(ms / 1000.0).strftime("%H:%M:%S")


# -----------------------------
# Validation + fold
# -----------------------------

def trade_problem(trade: TradeEvent) -> Optional[str]:
    """Return a short reason if the trade must not be folded, else None."""
    price = trade.price
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return "price not numeric"
    if not math.isfinite(price) or price <= 0.0:
        return "price not positive/finite"

    size = trade.size
    if isinstance(size, bool) or not isinstance(size, int):
        return "size not integral"
    if size <= 0:
        return "size not positive"

    ts = trade.timestamp_ms
    if isinstance(ts, bool) or not isinstance(ts, int):
        return "timestamp not integral"
    return None


def open_candle(bucket_ms: int, trade: TradeEvent) -> Candlestick:
    """Create a candle with OHLC initialized to the trade price."""
    p = float(trade.price)
    return Candlestick(bucket_ms=bucket_ms, open=p, high=p, low=p, close=p, volume=trade.size)


def update_candle(c: Candlestick, trade: TradeEvent) -> None:
    """
    Fold a trade into an existing candle.

    The high check runs first; a price only lowers `low` when it did not raise `high`.
    """
    price = float(trade.price)
    c.close = price
    if price > c.high:
        c.high = price
    elif price < c.low:
        c.low = price
    c.volume += trade.size
