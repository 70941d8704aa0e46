"""
Periodic candle emission.

Tick k fires at start_at + k*period (k >= 1), so the first emission covers the
bucket starting at start_at. Ticks are scheduled on absolute boundaries: if a
tick overruns, the missed ones fire back to back and the read cursor stays in
step with wall-clock intervals. No tick is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from candles import now_ms
from ring import CandlestickRing
from sinks import CandleSink

LOGGER = logging.getLogger(__name__)


class CandleEmitter:
    def __init__(
        self,
        ring: CandlestickRing,
        sink: CandleSink,
        *,
        period_ms: int,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ring = ring
        self.sink = sink
        self.period_ms = period_ms
        self._clock = clock
        self._sleep = sleep
        self.ticks = 0

    def emit_tick(self, tick_ms: int) -> None:
        """Report the interval that just closed at tick_ms, then advance the read cursor. Caller holds ring.lock."""
        interval_ms = tick_ms - self.period_ms
        candle = self.ring.read_bucket(interval_ms)
        if candle is not None:
            self.sink.on_candle(candle.copy(), late=False)
        else:
            self.sink.on_no_data(interval_ms)
        self.ring.advance_read(interval_ms)
        self.ticks += 1

    async def run(self, start_at_ms: int) -> None:
        """Emit forever on period boundaries after start_at_ms; stop by cancelling the task."""
        next_tick = start_at_ms + self.period_ms
        LOGGER.info("emitter: first tick at %d, period %d ms", next_tick, self.period_ms)
        while True:
            delay_ms = next_tick - self._clock()
            if delay_ms < -self.period_ms:
                LOGGER.warning("emitter running %d ms behind schedule", -delay_ms)
            # sleep(0) when behind still yields to the aggregator and ingress
            await self._sleep(max(0, delay_ms) / 1000.0)

            async with self.ring.lock:
                self.emit_tick(next_tick)
            next_tick += self.period_ms
