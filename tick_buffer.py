"""
tick_buffer.py -- Ticks and the bounded per-symbol buffers they live in.

A tick is one price observation.  Each symbol keeps only the most recent
TICK_BUFFER_SIZE ticks in arrival order; older ticks fall off the front.

The feed thread appends while analysis workers read, so every buffer guards
its deque with a lock and readers always get an immutable copy.
"""

from __future__ import annotations

import math
import threading
import uuid
from collections import deque
from dataclasses import dataclass, asdict
from typing import Iterable

import numpy as np

import config


def last_digit(price: float) -> int:
    """Trailing decimal digit used by digit contracts: floor(price * 10) mod 10."""
    return int(math.floor(price * 10)) % 10


@dataclass(frozen=True)
class Tick:
    id: str
    symbol: str
    timestamp: float    # epoch milliseconds
    price: float
    last_digit: int

    @classmethod
    def from_quote(
        cls,
        symbol: str,
        price: float,
        timestamp: float,
        tick_id: str | None = None,
    ) -> "Tick":
        price = float(price)
        return cls(
            id=str(tick_id) if tick_id else str(uuid.uuid4()),
            symbol=symbol,
            timestamp=float(timestamp),
            price=price,
            last_digit=last_digit(price),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class TickBuffer:
    """Fixed-capacity FIFO of ticks for one symbol."""

    def __init__(self, symbol: str, capacity: int | None = None) -> None:
        self.symbol = symbol
        self.capacity = max(1, int(capacity or config.TICK_BUFFER_SIZE))
        self._lock = threading.Lock()
        self._ticks: deque[Tick] = deque(maxlen=self.capacity)

    def append(self, tick: Tick) -> None:
        with self._lock:
            self._ticks.append(tick)

    def extend(self, ticks: Iterable[Tick]) -> None:
        with self._lock:
            self._ticks.extend(ticks)

    def snapshot(self) -> tuple[Tick, ...]:
        """Oldest-first copy of the buffer, safe to read without the lock."""
        with self._lock:
            return tuple(self._ticks)

    def last(self) -> Tick | None:
        with self._lock:
            return self._ticks[-1] if self._ticks else None

    def clear(self) -> None:
        with self._lock:
            self._ticks.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ticks)


@dataclass(frozen=True)
class MarketStatus:
    status: str     # normal | shift | disconnected
    z_score: float
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def market_status(
    ticks: Iterable[Tick],
    z_threshold: float | None = None,
    lookback: int = 10,
) -> MarketStatus:
    """
    Flag abrupt changes in tick-to-tick movement.

    Looks at the absolute price changes across the last *lookback* ticks and
    scores how far their mean sits from their spread.  A flat series (zero
    spread) scores 0.
    """
    threshold = config.MARKET_SHIFT_Z_THRESHOLD if z_threshold is None else float(z_threshold)
    recent = list(ticks)[-lookback:]
    if len(recent) < 2:
        return MarketStatus("normal", 0.0, "Market conditions normal")

    prices = np.asarray([t.price for t in recent], dtype=float)
    changes = np.abs(np.diff(prices))
    avg = float(changes.mean())
    spread = float(changes.std())
    z = (avg - spread) / spread if spread > 0 else 0.0
    if abs(z) > threshold:
        return MarketStatus("shift", z, "High volatility detected")
    return MarketStatus("normal", z, "Market conditions normal")


class TickStore:
    """Symbol -> TickBuffer map shared by the feed and the analysis workers."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = int(capacity or config.TICK_BUFFER_SIZE)
        self._lock = threading.Lock()
        self._buffers: dict[str, TickBuffer] = {}

    def buffer(self, symbol: str) -> TickBuffer:
        with self._lock:
            buf = self._buffers.get(symbol)
            if buf is None:
                buf = TickBuffer(symbol, self.capacity)
                self._buffers[symbol] = buf
            return buf

    def append(self, tick: Tick) -> bool:
        """Store a tick for a tracked symbol.  Ticks for untracked symbols are dropped."""
        with self._lock:
            buf = self._buffers.get(tick.symbol)
            if buf is None:
                return False
            buf.append(tick)
        return True

    def ticks(self, symbol: str) -> tuple[Tick, ...]:
        with self._lock:
            buf = self._buffers.get(symbol)
        return buf.snapshot() if buf is not None else ()

    def symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._buffers)

    def drop(self, symbol: str) -> bool:
        """Release a symbol's buffer.  Returns False if it was not tracked."""
        with self._lock:
            buf = self._buffers.pop(symbol, None)
        if buf is None:
            return False
        buf.clear()
        return True

    def recent_prices(self, n: int | None = None, exclude: str | None = None) -> dict[str, tuple[float, ...]]:
        """
        Read-only {symbol: last n prices} map for cross-symbol correlation.

        Symbols with no ticks are left out.
        """
        n = int(n or config.CORRELATION_WINDOW)
        with self._lock:
            buffers = dict(self._buffers)
        out: dict[str, tuple[float, ...]] = {}
        for symbol, buf in buffers.items():
            if symbol == exclude:
                continue
            ticks = buf.snapshot()
            if ticks:
                out[symbol] = tuple(t.price for t in ticks[-n:])
        return out

    def market_status(self, symbol: str) -> MarketStatus:
        return market_status(self.ticks(symbol))

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._buffers
