"""
Emission sinks.

A sink receives completed candles (periodic or late corrections) and "no data"
markers. Sinks are called with the ring lock held and must not block.
"""

from __future__ import annotations

import sys
from typing import Optional, Protocol, Sequence, TextIO

from candles import Candlestick, fmt_hms
from raw_logger import AsyncJsonlLogger


class CandleSink(Protocol):
    def on_candle(self, candle: Candlestick, late: bool = False) -> None: ...

    def on_no_data(self, interval_start_ms: int) -> None: ...


def format_candle(candle: Candlestick, late: bool = False) -> str:
    prefix = "(late) " if late else ""
    return (
        f"{prefix}{fmt_hms(candle.bucket_ms)} - open ${candle.open:0.2f}, close ${candle.close:0.2f}, "
        f"high ${candle.high:0.2f}, low ${candle.low:0.2f}, volume {candle.volume}"
    )


def format_no_data(interval_start_ms: int) -> str:
    return f"{fmt_hms(interval_start_ms)} - no data"


class ConsoleSink:
    """One human-readable line per emission."""

    def __init__(self, out: Optional[TextIO] = None) -> None:
        self._out = out

    def _write(self, line: str) -> None:
        out = self._out if self._out is not None else sys.stdout
        out.write(line + "\n")
        out.flush()

    def on_candle(self, candle: Candlestick, late: bool = False) -> None:
        self._write(format_candle(candle, late))

    def on_no_data(self, interval_start_ms: int) -> None:
        self._write(format_no_data(interval_start_ms))


class JsonlSink:
    """Journals emissions as JSONL records (type: candle | correction | no_data)."""

    def __init__(self, logger: AsyncJsonlLogger, *, symbol: str) -> None:
        self.logger = logger
        self.symbol = symbol

    def on_candle(self, candle: Candlestick, late: bool = False) -> None:
        rec = {"source": "aggregator", "type": "correction" if late else "candle", "symbol": self.symbol}
        rec.update(candle.as_record())
        self.logger.log(rec)

    def on_no_data(self, interval_start_ms: int) -> None:
        self.logger.log(
            {"source": "aggregator", "type": "no_data", "symbol": self.symbol, "bucket_ms": interval_start_ms}
        )


class FanoutSink:
    def __init__(self, sinks: Sequence[CandleSink]) -> None:
        self.sinks = list(sinks)

    def on_candle(self, candle: Candlestick, late: bool = False) -> None:
        for s in self.sinks:
            s.on_candle(candle, late)

    def on_no_data(self, interval_start_ms: int) -> None:
        for s in self.sinks:
            s.on_no_data(interval_start_ms)
