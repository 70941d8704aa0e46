"""
Entrypoint: Polygon trade stream -> live OHLCV candles for one ticker.

Wires ingress, aggregator and emitter tasks around one candle ring.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
import time
from typing import Awaitable, Callable, List, Optional

from websockets.exceptions import WebSocketException

from aggregator import AggregatorStats, CandleAggregator, close_inbound
from candles import TradeEvent, fmt_hms, next_boundary_ms, now_ms
from config import (
    AGG_PERIOD_S,
    BUFFER_S,
    DEBUG_RING_CAPACITY,
    POLYGON_KEY_ENV,
    POLYGON_WS_URL,
    RAW_LOG_BATCH_SIZE,
    RAW_LOG_DIR,
    RAW_LOG_FLUSH_EVERY_S,
    RAW_LOG_MAX_QUEUE,
    AggregatorConfig,
    ConfigError,
    polygon_api_key,
)
from emitter import CandleEmitter
from ingest_polygon import HandshakeError, IngressStats, StreamClosed, connect, polygon_handshake, polygon_trades_task
from raw_logger import AsyncJsonlLogger
from ring import CandlestickRing
from sinks import CandleSink, ConsoleSink, FanoutSink, JsonlSink

LOGGER = logging.getLogger(__name__)

Ingress = Callable[["asyncio.Queue[Optional[TradeEvent]]"], Awaitable[None]]


def _journal_path(log_dir: str, ticker: str) -> str:
    ts = time.strftime("%Y%m%d_%H%M%S")
    return os.path.join(log_dir, f"candles_{ticker}_{ts}.jsonl")


async def spoof_late_trades(queue: "asyncio.Queue[Optional[TradeEvent]]", *, start_at_ms: int, period_ms: int) -> None:
    """
    Debug aid: inject a trade stamped at start_at twice.
    The first lands while its bucket is still resident (correction), the
    second after a small ring has evicted it (dropped).
    """
    trade = TradeEvent(price=200.0, size=100, timestamp_ms=start_at_ms)
    for k in (2, 4):
        await asyncio.sleep(max(0, start_at_ms + k * period_ms - now_ms()) / 1000.0)
        LOGGER.debug("spoofing late trade %r", trade)
        await queue.put(trade)


async def run_pipeline(cfg: AggregatorConfig, sink: CandleSink, ingress: Ingress, *, debug: bool = False) -> AggregatorStats:
    """
    Run ingress, aggregator and emitter until ingress ends or any task fails.

    The aggregator drains whatever was queued before it stops. Ingress errors
    propagate after shutdown.
    """
    ring = CandlestickRing(cfg.capacity)
    queue: asyncio.Queue[Optional[TradeEvent]] = asyncio.Queue(maxsize=cfg.queue_max)
    aggregator = CandleAggregator(ring, period_ms=cfg.period_ms, start_at_ms=cfg.start_at_ms, debug=debug)
    emitter = CandleEmitter(ring, sink, period_ms=cfg.period_ms)

    ingress_t = asyncio.create_task(ingress(queue), name="ingress")
    agg_t = asyncio.create_task(aggregator.run(queue, sink), name="aggregator")
    emit_t = asyncio.create_task(emitter.run(cfg.start_at_ms), name="emitter")
    extra: List[asyncio.Task] = []
    if debug:
        extra.append(
            asyncio.create_task(spoof_late_trades(queue, start_at_ms=cfg.start_at_ms, period_ms=cfg.period_ms))
        )

    try:
        done, _ = await asyncio.wait({ingress_t, agg_t, emit_t}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        ingress_t.cancel()
        emit_t.cancel()
        for t in extra:
            t.cancel()
        if not agg_t.done():
            await close_inbound(queue)
        await asyncio.gather(ingress_t, agg_t, emit_t, *extra, return_exceptions=True)

    for t in done:
        if not t.cancelled() and t.exception() is not None:
            raise t.exception()
    LOGGER.info("pipeline stopped: %s, %d emission ticks", aggregator.stats, emitter.ticks)
    return aggregator.stats


async def run_app(
    *,
    ticker: str,
    cfg: AggregatorConfig,
    api_key: str,
    ws_url: str = POLYGON_WS_URL,
    log_dir: str = RAW_LOG_DIR,
    journal_enabled: bool = True,
    debug: bool = False,
) -> None:
    sinks: List[CandleSink] = [ConsoleSink()]
    journal: Optional[AsyncJsonlLogger] = None
    if journal_enabled:
        journal = AsyncJsonlLogger.create(
            path=_journal_path(log_dir, ticker),
            max_queue=RAW_LOG_MAX_QUEUE,
            batch_size=RAW_LOG_BATCH_SIZE,
            flush_every_s=RAW_LOG_FLUSH_EVERY_S,
        )
        journal.start()
        sinks.append(JsonlSink(journal, symbol=ticker))

    stats = IngressStats()
    try:
        async with connect(ws_url) as ws:
            await polygon_handshake(ws, api_key=api_key, ticker=ticker)

            now = now_ms()
            start_at = next_boundary_ms(now, cfg.period_ms)
            LOGGER.info(
                "waiting %.1fs to start at %.0fs interval %s",
                (start_at - now) / 1000.0,
                cfg.period_ms / 1000.0,
                fmt_hms(start_at),
            )
            cfg = dataclasses.replace(cfg, start_at_ms=start_at)

            async def ingress(queue: "asyncio.Queue[Optional[TradeEvent]]") -> None:
                await polygon_trades_task(ws, queue, symbol=ticker, stats=stats, journal=journal)

            await run_pipeline(cfg, FanoutSink(sinks), ingress, debug=debug)
    finally:
        LOGGER.info("ingress: %s", stats)
        if journal is not None:
            await journal.stop()


def main(argv: Optional[List[str]] = None) -> None:
    """Program entrypoint."""
    p = argparse.ArgumentParser(description="Aggregate a Polygon trade stream into live OHLCV candles.")
    p.add_argument("ticker", help="Stock ticker to subscribe to (e.g. AAPL).")
    p.add_argument("--period", type=float, default=AGG_PERIOD_S, help=f"Candle width in seconds (default: {AGG_PERIOD_S:g}).")
    p.add_argument(
        "--buffer",
        type=float,
        default=BUFFER_S,
        help=f"Seconds of history kept for late corrections; must exceed --period (default: {BUFFER_S:g}).",
    )
    p.add_argument("--ws-url", default=POLYGON_WS_URL, help=f"Polygon websocket URL (default: {POLYGON_WS_URL}).")
    p.add_argument("--log-dir", default=RAW_LOG_DIR, help=f"Directory for the JSONL journal (default: {RAW_LOG_DIR}).")
    p.add_argument("--no-journal", action="store_true", help="Do not write the JSONL journal.")
    p.add_argument(
        "--debug",
        action="store_true",
        help=f"Tiny ring ({DEBUG_RING_CAPACITY} slots), ring dumps and two spoofed late trades.",
    )
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = AggregatorConfig.from_seconds(
            args.period,
            args.buffer,
            capacity_override=DEBUG_RING_CAPACITY if args.debug else None,
        ).validate()
    except ConfigError as e:
        p.error(str(e))

    api_key = polygon_api_key()
    if api_key is None:
        LOGGER.error("%s requires environment var %s", p.prog, POLYGON_KEY_ENV)
        sys.exit(1)

    try:
        asyncio.run(
            run_app(
                ticker=args.ticker.upper(),
                cfg=cfg,
                api_key=api_key,
                ws_url=args.ws_url,
                log_dir=args.log_dir,
                journal_enabled=not args.no_journal,
                debug=args.debug,
            )
        )
    except KeyboardInterrupt:
        LOGGER.info("interrupted")
    except (HandshakeError, StreamClosed, WebSocketException, OSError) as e:
        LOGGER.error("transport failure: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
