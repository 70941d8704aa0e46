"""
Non-blocking JSONL journal.

- log(record) never awaits: put_nowait into a bounded queue, counted drop if full
- a background task drains the queue in batches and appends via asyncio.to_thread
- stop() cancels the writer and flushes whatever is still queued
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AsyncJsonlLogger:
    """Append-only JSONL writer with a bounded queue and one writer task."""
    path: str
    batch_size: int
    flush_every_s: float

    _q: asyncio.Queue[str]
    _task: Optional[asyncio.Task[None]] = None
    seq: int = 0
    dropped: int = 0

    @classmethod
    def create(cls, path: str, *, max_queue: int, batch_size: int, flush_every_s: float) -> "AsyncJsonlLogger":
        q: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        return cls(path=path, batch_size=batch_size, flush_every_s=flush_every_s, _q=q)

    def start(self) -> None:
        """Spawn the background writer task once."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._writer_loop())

    def log(self, record: Dict[str, Any]) -> None:
        """Stamp seq + local time and enqueue; drop (and count) when the queue is full."""
        self.seq += 1
        record.setdefault("ts_local_ms", time.time() * 1000.0)
        record["seq"] = self.seq
        try:
            line = json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            LOGGER.warning("unserializable journal record dropped: %r", e)
            self.dropped += 1
            return

        try:
            self._q.put_nowait(line)
        except asyncio.QueueFull:
            self.dropped += 1

    async def stop(self) -> None:
        """Cancel the writer, then flush what is still queued."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._flush_remaining()
        if self.dropped:
            LOGGER.warning("journal %s dropped %d records", self.path, self.dropped)

    async def _flush_remaining(self) -> None:
        """Write every queued line in one append."""
        lines = self._drain_nowait(limit=self._q.qsize())
        if lines:
            await asyncio.to_thread(_append_lines_sync, self.path, lines)

    async def _writer_loop(self) -> None:
        """Append batches forever; a failed write is counted as dropped."""
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

        while True:
            batch = await self._take_batch()
            try:
                await asyncio.to_thread(_append_lines_sync, self.path, batch)
            except OSError as e:
                LOGGER.warning("journal write failed (%d lines lost): %r", len(batch), e)
                self.dropped += len(batch)
                await asyncio.sleep(0.25)
                continue

            await asyncio.sleep(self.flush_every_s)

    async def _take_batch(self) -> list[str]:
        """Wait for one line, then take up to batch_size without waiting."""
        first = await self._q.get()
        out = [first]
        out.extend(self._drain_nowait(limit=self.batch_size - 1))
        return out

    def _drain_nowait(self, limit: int) -> list[str]:
        """Take up to limit queued lines without waiting."""
        out: list[str] = []
        for _ in range(limit):
            try:
                out.append(self._q.get_nowait())
            except asyncio.QueueEmpty:
                break
        return out


def _append_lines_sync(path: str, lines: list[str]) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8", buffering=1) as f:
        for line in lines:
            f.write(line)
            f.write("\n")
