from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from candles import Candlestick, TradeEvent
from config import AggregatorConfig

PERIOD_MS = 30_000


class RecordingSink:
    """Collects emissions as ("candle" | "late" | "no_data", payload) tuples."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def on_candle(self, candle: Candlestick, late: bool = False) -> None:
        self.events.append(("late" if late else "candle", candle))

    def on_no_data(self, interval_start_ms: int) -> None:
        self.events.append(("no_data", interval_start_ms))

    def kinds(self) -> list[str]:
        return [k for k, _ in self.events]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def trade() -> Callable[..., TradeEvent]:
    """Build a TradeEvent with defaults (price 100, size 1, t=0)."""

    def _trade(price: float = 100.0, size: int = 1, t: int = 0) -> TradeEvent:
        return TradeEvent(price=price, size=size, timestamp_ms=t)

    return _trade


@pytest.fixture
def make_config() -> Callable[..., AggregatorConfig]:
    def _make(period_ms: int = PERIOD_MS, buffer_ms: int = 4 * PERIOD_MS, **kw: Any) -> AggregatorConfig:
        return AggregatorConfig(period_ms=period_ms, buffer_ms=buffer_ms, **kw)

    return _make
