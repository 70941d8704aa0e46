"""
Fixed-capacity candle ring.

Slots hold either None (empty) or one Candlestick. Two cursors:
- write cursor: the oldest slot, evicted next when the ring is full
- read cursor: advanced once per emission tick

The emitter looks its interval up by key, so a bucket allocated after an empty
period is still reported on time. emitted_through records the last interval
reported (candle or no-data) and decides lateness.

A key -> slot index mirrors resident buckets so lookup does not scan.
"""

from __future__ import annotations

import asyncio
import math
from typing import Dict, List, Optional, Tuple

from candles import Candlestick


def ring_capacity(buffer_ms: int, period_ms: int) -> int:
    """Slots needed to keep `buffer_ms` of history plus the live bucket."""
    return math.ceil(buffer_ms / period_ms) + 1


class CandlestickRing:
    def __init__(self, capacity: int) -> None:
        if capacity < 2:
            raise ValueError("capacity must be >= 2")
        self.capacity = capacity
        self.slots: List[Optional[Candlestick]] = [None] * capacity
        self.keys: List[Optional[int]] = [None] * capacity
        self.write_index = 0
        self.read_index = 0
        self.reads = 0
        self.emitted_through: Optional[int] = None
        self.lock = asyncio.Lock()
        self._by_key: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._by_key)

    @property
    def is_full(self) -> bool:
        return len(self._by_key) == self.capacity

    def index_of(self, bucket_ms: int) -> Optional[int]:
        return self._by_key.get(bucket_ms)

    def get(self, index: int) -> Optional[Candlestick]:
        return self.slots[index % self.capacity]

    def put(self, index: int, candle: Candlestick) -> None:
        """Store a candle in a slot previously returned by find_or_allocate."""
        if self._by_key.get(candle.bucket_ms) != index:
            raise ValueError(f"slot {index} is not allocated to bucket {candle.bucket_ms}")
        self.slots[index] = candle

    def find_or_allocate(self, bucket_ms: int) -> Tuple[int, bool]:
        """
        Return (slot index, was_empty) for bucket_ms.

        - resident bucket: its slot, was_empty=False
        - else first empty slot scanning from the write cursor
        - else evict the slot at the write cursor and advance the cursor by one
        """
        idx = self._by_key.get(bucket_ms)
        if idx is not None:
            return idx, False

        if not self.is_full:
            for step in range(self.capacity):
                i = (self.write_index + step) % self.capacity
                if self.keys[i] is None:
                    self.keys[i] = bucket_ms
                    self._by_key[bucket_ms] = i
                    return i, True

        i = self.write_index
        evicted = self.keys[i]
        if evicted is not None:
            self._by_key.pop(evicted, None)
        self.slots[i] = None
        self.keys[i] = bucket_ms
        self._by_key[bucket_ms] = i
        self.write_index = (i + 1) % self.capacity
        return i, True

    def oldest_resident_key(self) -> Optional[int]:
        """Key at the write cursor when full; smallest resident key otherwise."""
        if not self._by_key:
            return None
        if self.is_full:
            head = self.keys[self.write_index]
            if head is not None:
                return head
        return min(self._by_key)

    def resident_keys(self) -> List[int]:
        return sorted(self._by_key)

    # -----------------------------
    # Read side (emitter)
    # -----------------------------

    def current_read_slot(self) -> Optional[Candlestick]:
        return self.slots[self.read_index]

    def read_bucket(self, bucket_ms: int) -> Optional[Candlestick]:
        """Candle for bucket_ms if it is resident, else None."""
        idx = self._by_key.get(bucket_ms)
        return self.slots[idx] if idx is not None else None

    def advance_read(self, emitted_ms: int) -> None:
        """Record that the interval starting at emitted_ms was reported and move the read cursor on."""
        self.read_index = (self.read_index + 1) % self.capacity
        self.reads += 1
        self.emitted_through = emitted_ms

    def last_emitted_key(self) -> Optional[int]:
        """Start of the last reported interval, candle or no-data; None before the first read."""
        return self.emitted_through

    def snapshot(self) -> List[Optional[Candlestick]]:
        return [c.copy() if c is not None else None for c in self.slots]
