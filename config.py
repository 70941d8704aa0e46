"""
Configuration constants and the aggregator's runtime config.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from ring import ring_capacity

AGG_PERIOD_S: float = 30.0
BUFFER_S: float = 3600.0  # how far back late corrections stay possible; must exceed AGG_PERIOD_S

DEBUG_RING_CAPACITY: int = 3

INBOUND_QUEUE_MAX: int = 1000

POLYGON_WS_URL: str = "wss://socket.polygon.io/stocks"
POLYGON_KEY_ENV: str = "POLYGON_KEY"
POLYGON_PING_INTERVAL_S: float = 20.0

RAW_LOG_DIR: str = "logs"
RAW_LOG_MAX_QUEUE: int = 50_000
RAW_LOG_BATCH_SIZE: int = 200
RAW_LOG_FLUSH_EVERY_S: float = 0.25


class ConfigError(ValueError):
    """Invalid configuration; the process must not start."""


@dataclass(frozen=True, slots=True)
class AggregatorConfig:
    period_ms: int
    buffer_ms: int
    start_at_ms: int = 0
    queue_max: int = INBOUND_QUEUE_MAX
    capacity_override: Optional[int] = None

    @classmethod
    def from_seconds(cls, period_s: float, buffer_s: float, **kw) -> "AggregatorConfig":
        return cls(period_ms=int(round(period_s * 1000)), buffer_ms=int(round(buffer_s * 1000)), **kw)

    @property
    def capacity(self) -> int:
        if self.capacity_override is not None:
            return self.capacity_override
        return ring_capacity(self.buffer_ms, self.period_ms)

    def validate(self) -> "AggregatorConfig":
        if self.period_ms <= 0:
            raise ConfigError(f"aggregation period must be positive, got {self.period_ms} ms")
        if self.buffer_ms <= self.period_ms:
            raise ConfigError(
                f"buffer ({self.buffer_ms} ms) must exceed aggregation period ({self.period_ms} ms)"
            )
        if self.queue_max <= 0:
            raise ConfigError(f"inbound queue size must be positive, got {self.queue_max}")
        if self.capacity_override is not None and self.capacity_override < 2:
            raise ConfigError(f"ring capacity must be >= 2, got {self.capacity_override}")
        return self


def polygon_api_key() -> Optional[str]:
    """Read the Polygon key from the environment (a .env file is honoured)."""
    load_dotenv(find_dotenv(usecwd=True), override=False)
    key = os.getenv(POLYGON_KEY_ENV, "").strip()
    return key or None
