"""
Trade -> candle aggregation.

fold_trade() is the pure state step (validate, bucket, late/stale policy, fold).
run() is the queue consumer task: it holds the ring lock around each fold and
hands late corrections to the sink outside the normal emission cadence.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from candles import Candlestick, TradeEvent, bucket_start_ms, fmt_hms, open_candle, trade_problem, update_candle
from ring import CandlestickRing
from sinks import CandleSink

LOGGER = logging.getLogger(__name__)

# Sentinel placed on the inbound queue to ask the aggregator to drain and exit.
END_OF_STREAM = None


class FoldOutcome(enum.Enum):
    OPENED = "opened"                # first trade of a bucket
    MERGED = "merged"                # folded into a resident, not yet emitted bucket
    CORRECTED = "corrected"          # folded into an already emitted bucket
    IGNORED_EARLY = "ignored_early"  # before start_at (first partial bar)
    DROPPED_STALE = "dropped_stale"  # bucket no longer representable in the ring
    REJECTED = "rejected"            # malformed trade


@dataclass(frozen=True, slots=True)
class FoldResult:
    outcome: FoldOutcome
    bucket_ms: Optional[int] = None
    candle: Optional[Candlestick] = None  # copy, only set for CORRECTED


@dataclass(slots=True)
class AggregatorStats:
    opened: int = 0
    merged: int = 0
    corrected: int = 0
    ignored_early: int = 0
    dropped_stale: int = 0
    rejected: int = 0

    def count(self, outcome: FoldOutcome) -> None:
        name = outcome.value
        setattr(self, name, getattr(self, name) + 1)


async def close_inbound(queue: "asyncio.Queue[Optional[TradeEvent]]") -> None:
    """Ask the aggregator to finish the queued trades and stop."""
    await queue.put(END_OF_STREAM)


class CandleAggregator:
    """Owns the write side of one instrument's candle ring."""

    def __init__(self, ring: CandlestickRing, *, period_ms: int, start_at_ms: int, debug: bool = False) -> None:
        self.ring = ring
        self.period_ms = period_ms
        self.start_at_ms = start_at_ms
        self.debug = debug
        self.stats = AggregatorStats()

    def fold_trade(self, trade: TradeEvent) -> FoldResult:
        """Apply one trade to the ring. No I/O; caller holds ring.lock when tasks share the ring."""
        problem = trade_problem(trade)
        if problem is not None:
            LOGGER.debug("rejected trade %r: %s", trade, problem)
            return self._done(FoldResult(FoldOutcome.REJECTED))

        if trade.timestamp_ms < self.start_at_ms:
            LOGGER.debug("ignoring trade at %d before start %d", trade.timestamp_ms, self.start_at_ms)
            return self._done(FoldResult(FoldOutcome.IGNORED_EARLY))

        ring = self.ring
        bucket = bucket_start_ms(trade.timestamp_ms, self.period_ms)

        last_emitted = ring.last_emitted_key()
        late = last_emitted is not None and bucket <= last_emitted

        if ring.index_of(bucket) is None and self._too_old(bucket, late):
            LOGGER.info("(late) %s - ignored", fmt_hms(trade.timestamp_ms))
            return self._done(FoldResult(FoldOutcome.DROPPED_STALE, bucket_ms=bucket))

        idx, was_empty = ring.find_or_allocate(bucket)
        if was_empty:
            candle = open_candle(bucket, trade)
            ring.put(idx, candle)
        else:
            candle = ring.get(idx)
            update_candle(candle, trade)

        if late:
            result = FoldResult(FoldOutcome.CORRECTED, bucket_ms=bucket, candle=candle.copy())
        elif was_empty:
            result = FoldResult(FoldOutcome.OPENED, bucket_ms=bucket)
        else:
            result = FoldResult(FoldOutcome.MERGED, bucket_ms=bucket)

        if self.debug:
            self._dump_ring()
        return self._done(result)

    def _too_old(self, bucket: int, late: bool) -> bool:
        """True if a non-resident bucket cannot be represented without clobbering newer data."""
        if late:
            return True
        if not self.ring.is_full:
            return False
        oldest = self.ring.oldest_resident_key()
        return oldest is not None and bucket < oldest

    def _done(self, result: FoldResult) -> FoldResult:
        self.stats.count(result.outcome)
        return result

    def _dump_ring(self) -> None:
        for i, c in enumerate(self.ring.snapshot()):
            marks = ("W" if i == self.ring.write_index else " ") + ("R" if i == self.ring.read_index else " ")
            LOGGER.debug("ring[%d]%s %s", i, marks, c)

    async def run(self, queue: "asyncio.Queue[Optional[TradeEvent]]", sink: CandleSink) -> None:
        """Consume trades until END_OF_STREAM; corrections go straight to the sink."""
        while True:
            trade = await queue.get()
            try:
                if trade is END_OF_STREAM:
                    LOGGER.info("inbound closed; aggregator exiting (%s)", self.stats)
                    return

                async with self.ring.lock:
                    result = self.fold_trade(trade)
                    if result.outcome is FoldOutcome.CORRECTED:
                        sink.on_candle(result.candle, late=True)
            finally:
                queue.task_done()
