"""
Polygon.io trade ingestion.

Opens the stocks websocket, runs the connect/auth/subscribe handshake, then
parses trade events and puts them on the inbound queue. A full queue blocks
the reader (backpressure); trades are never dropped for lack of room.

Any transport failure is fatal for the run: errors propagate to the caller,
there is no reconnect loop here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import websockets

from candles import TradeEvent
from config import POLYGON_PING_INTERVAL_S, POLYGON_WS_URL
from raw_logger import AsyncJsonlLogger

LOGGER = logging.getLogger(__name__)


class HandshakeError(RuntimeError):
    """Polygon replied with an unexpected status during connect/auth/subscribe."""


class StreamClosed(RuntimeError):
    """The trade stream ended."""


@dataclass(slots=True)
class IngressStats:
    messages: int = 0
    trades: int = 0
    malformed: int = 0
    other: int = 0


def connect(url: str = POLYGON_WS_URL):
    """Return the websockets connection context manager for the Polygon stream."""
    return websockets.connect(url, ping_interval=POLYGON_PING_INTERVAL_S, ping_timeout=POLYGON_PING_INTERVAL_S)


# -----------------------------
# Wire parsing
# -----------------------------

def _safe_json_loads(raw: Any) -> Optional[List[Dict[str, Any]]]:
    """Polygon sends JSON arrays of event objects; anything else -> None."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(obj, dict):
        obj = [obj]
    if not isinstance(obj, list):
        return None
    return [m for m in obj if isinstance(m, dict)]


def _as_int(x: Any) -> Optional[int]:
    if isinstance(x, bool):
        return None
    if isinstance(x, int):
        return x
    if isinstance(x, float) and math.isfinite(x) and x.is_integer():
        return int(x)
    return None


def parse_trade_msg(msg: Dict[str, Any]) -> Optional[TradeEvent]:
    """Parse one `ev == "T"` object into a TradeEvent; None if the fields are unusable."""
    price = msg.get("p")
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    size = _as_int(msg.get("s"))
    ts = _as_int(msg.get("t"))
    if size is None or ts is None:
        return None
    conds = msg.get("c") or ()
    if not isinstance(conds, (list, tuple)):
        conds = ()
    return TradeEvent(
        price=float(price),
        size=size,
        timestamp_ms=ts,
        conditions=tuple(c for c in conds if isinstance(c, int)),
    )


# -----------------------------
# Handshake
# -----------------------------

async def expect_status(ws, expected: str, *, send: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Optionally send an action, then require the next reply's status to equal `expected`."""
    if send is not None:
        await ws.send(json.dumps(send))

    msgs = _safe_json_loads(await ws.recv())
    if not msgs:
        raise HandshakeError(f"expected status {expected!r} but got an unreadable reply")

    status = msgs[0].get("status")
    if status != expected:
        raise HandshakeError(f"expected status {expected!r} but got {status!r}: {msgs[0].get('message', '')}")
    LOGGER.info("polygon: %s", expected)
    return msgs[0]


async def polygon_handshake(ws, *, api_key: str, ticker: str) -> None:
    await expect_status(ws, "connected")
    await expect_status(ws, "auth_success", send={"action": "auth", "params": api_key})
    await expect_status(ws, "success", send={"action": "subscribe", "params": f"T.{ticker}"})


# -----------------------------
# Main task
# -----------------------------

async def polygon_trades_task(
    ws,
    queue: "asyncio.Queue[Optional[TradeEvent]]",
    *,
    symbol: str,
    stats: Optional[IngressStats] = None,
    journal: Optional[AsyncJsonlLogger] = None,
) -> None:
    """Pump trades from an authenticated socket into the queue until the socket ends."""
    stats = stats if stats is not None else IngressStats()

    async for raw in ws:
        stats.messages += 1
        msgs = _safe_json_loads(raw)
        if msgs is None:
            stats.malformed += 1
            LOGGER.debug("unreadable frame dropped: %.120r", raw)
            continue

        for m in msgs:
            if m.get("ev") != "T":
                stats.other += 1
                if m.get("ev") == "status":
                    LOGGER.info("polygon status: %s %s", m.get("status"), m.get("message", ""))
                continue

            trade = parse_trade_msg(m)
            if trade is None:
                stats.malformed += 1
                LOGGER.debug("malformed trade dropped: %r", m)
                continue

            stats.trades += 1
            if journal is not None:
                journal.log(
                    {
                        "source": "polygon",
                        "type": "trade",
                        "symbol": symbol,
                        "price": trade.price,
                        "size": trade.size,
                        "event_ms": trade.timestamp_ms,
                    }
                )
            await queue.put(trade)

    raise StreamClosed(f"polygon stream for {symbol} closed after {stats.messages} messages")
