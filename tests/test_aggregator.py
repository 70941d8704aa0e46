"""Tests for CandleAggregator: fold outcomes, late policy and the consumer task."""

import asyncio
import math

import pytest

from aggregator import CandleAggregator, FoldOutcome, close_inbound
from candles import Candlestick, TradeEvent
from emitter import CandleEmitter
from ring import CandlestickRing

P = 30_000


def _setup(sink, capacity=5, start_at_ms=0):
    ring = CandlestickRing(capacity)
    agg = CandleAggregator(ring, period_ms=P, start_at_ms=start_at_ms)
    em = CandleEmitter(ring, sink, period_ms=P)
    return ring, agg, em


class TestFoldTrade:
    def test_single_trade_then_tick(self, sink, trade):
        ring, agg, em = _setup(sink)
        assert agg.fold_trade(trade(price=100.0, size=10, t=0)).outcome is FoldOutcome.OPENED
        em.emit_tick(P)
        assert sink.events == [
            ("candle", Candlestick(bucket_ms=0, open=100.0, high=100.0, low=100.0, close=100.0, volume=10))
        ]

    def test_two_trades_merge(self, sink, trade):
        ring, agg, em = _setup(sink)
        agg.fold_trade(trade(price=100.0, size=5, t=1_000))
        assert agg.fold_trade(trade(price=105.0, size=5, t=2_000)).outcome is FoldOutcome.MERGED
        c = ring.get(ring.index_of(0))
        assert (c.open, c.high, c.low, c.close, c.volume) == (100.0, 105.0, 100.0, 105.0, 10)

    def test_out_of_order_trades_land_in_their_buckets(self, sink, trade):
        ring, agg, _ = _setup(sink)
        agg.fold_trade(trade(price=101.0, t=P + 5))
        agg.fold_trade(trade(price=99.0, t=5))
        assert ring.resident_keys() == [0, P]
        assert ring.get(ring.index_of(0)).open == 99.0

    def test_trades_before_start_are_ignored(self, sink, trade):
        ring, agg, _ = _setup(sink, start_at_ms=P)
        result = agg.fold_trade(trade(t=P - 1))
        assert result.outcome is FoldOutcome.IGNORED_EARLY
        assert len(ring) == 0
        assert agg.fold_trade(trade(t=P)).outcome is FoldOutcome.OPENED
        assert agg.stats.ignored_early == 1

    @pytest.mark.parametrize(
        "bad",
        [
            TradeEvent(price=math.nan, size=1, timestamp_ms=0),
            TradeEvent(price=100.0, size=0, timestamp_ms=0),
            TradeEvent(price=-3.0, size=1, timestamp_ms=0),
        ],
    )
    def test_malformed_trades_never_touch_the_ring(self, sink, bad):
        ring, agg, _ = _setup(sink)
        assert agg.fold_trade(bad).outcome is FoldOutcome.REJECTED
        assert len(ring) == 0
        assert agg.stats.rejected == 1


class TestLatePolicy:
    def test_late_trade_in_resident_bucket_is_a_correction(self, sink, trade):
        ring, agg, em = _setup(sink)
        agg.fold_trade(trade(price=100.0, size=10, t=1_000))
        em.emit_tick(P)

        result = agg.fold_trade(trade(price=90.0, size=3, t=2_000))
        assert result.outcome is FoldOutcome.CORRECTED
        assert result.candle == Candlestick(bucket_ms=0, open=100.0, high=100.0, low=90.0, close=90.0, volume=13)
        # the result is a snapshot, not the live slot
        assert result.candle is not ring.get(ring.index_of(0))

    def test_trade_in_current_bucket_is_not_late(self, sink, trade):
        ring, agg, em = _setup(sink)
        agg.fold_trade(trade(t=1_000))
        em.emit_tick(P)
        assert agg.fold_trade(trade(t=P + 1)).outcome is FoldOutcome.OPENED

    def test_evicted_bucket_is_dropped_without_mutation(self, sink, trade):
        ring, agg, em = _setup(sink, capacity=3)
        for b in (0, P, 2 * P):
            agg.fold_trade(trade(t=b + 1))
        for k in (1, 2, 3):
            em.emit_tick(k * P)
        agg.fold_trade(trade(t=3 * P + 1))  # evicts bucket 0
        assert ring.index_of(0) is None

        before = ring.snapshot()
        keys_before = list(ring.keys)
        write_before = ring.write_index
        emitted_before = len(sink.events)

        result = agg.fold_trade(trade(price=500.0, size=7, t=5))
        assert result.outcome is FoldOutcome.DROPPED_STALE
        assert ring.snapshot() == before
        assert ring.keys == keys_before
        assert ring.write_index == write_before
        assert len(sink.events) == emitted_before

    def test_trade_for_interval_reported_as_no_data_is_dropped(self, sink, trade):
        ring, agg, em = _setup(sink)
        em.emit_tick(P)
        result = agg.fold_trade(trade(t=5_000))
        assert result.outcome is FoldOutcome.DROPPED_STALE
        assert len(ring) == 0
        assert sink.events == [("no_data", 0)]

    def test_gap_then_resume_keeps_late_policy(self, sink, trade):
        ring, agg, em = _setup(sink, capacity=3)
        agg.fold_trade(trade(t=5_000))
        em.emit_tick(P)
        em.emit_tick(2 * P)
        agg.fold_trade(trade(price=110.0, size=2, t=2 * P + 5_000))
        em.emit_tick(3 * P)
        # late into the quiet interval: dropped; late into the reported bucket: corrected
        assert agg.fold_trade(trade(t=P + 1)).outcome is FoldOutcome.DROPPED_STALE
        assert agg.fold_trade(trade(price=120.0, size=1, t=2 * P + 6_000)).outcome is FoldOutcome.CORRECTED
        assert [c.bucket_ms for kind, c in sink.events if kind == "candle"] == [0, 2 * P]

    def test_bucket_older_than_full_ring_is_dropped(self, sink, trade):
        ring, agg, _ = _setup(sink, capacity=3)
        for b in (P, 2 * P, 3 * P):
            agg.fold_trade(trade(t=b))
        result = agg.fold_trade(trade(t=10))
        assert result.outcome is FoldOutcome.DROPPED_STALE
        assert ring.resident_keys() == [P, 2 * P, 3 * P]

    def test_newer_bucket_evicts_oldest_when_full(self, sink, trade):
        ring, agg, _ = _setup(sink, capacity=3)
        for b in (0, P, 2 * P, 3 * P):
            agg.fold_trade(trade(t=b))
        assert ring.resident_keys() == [P, 2 * P, 3 * P]


@pytest.mark.asyncio
class TestRun:
    async def test_corrections_go_to_sink_and_queue_drains(self, sink, trade):
        ring, agg, em = _setup(sink)
        agg.fold_trade(trade(price=100.0, size=1, t=1_000))
        em.emit_tick(P)

        queue: asyncio.Queue = asyncio.Queue(maxsize=10)
        await queue.put(trade(price=110.0, size=2, t=2_000))  # late, resident -> correction
        await queue.put(trade(price=120.0, size=1, t=P + 1))  # live bucket, no emission
        await close_inbound(queue)

        await asyncio.wait_for(agg.run(queue, sink), timeout=1.0)

        assert sink.kinds() == ["candle", "late"]
        late = sink.events[1][1]
        assert (late.high, late.close, late.volume) == (110.0, 110.0, 3)
        assert ring.index_of(P) is not None
        assert queue.empty()

    async def test_run_waits_for_trades(self, sink, trade):
        _, agg, _ = _setup(sink)
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(agg.run(queue, sink))
        await asyncio.sleep(0.01)
        assert not task.done()

        await queue.put(trade(t=1))
        await close_inbound(queue)
        await asyncio.wait_for(task, timeout=1.0)
        assert agg.stats.opened == 1
