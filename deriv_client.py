"""
deriv_client.py -- Tick feed from the Deriv WebSocket API (or a demo generator).

Live mode keeps one WebSocket open on a daemon thread:

    -> {"ticks": "R_50", "subscribe": 1}
    <- {"msg_type": "tick", "tick": {"symbol": "R_50", "quote": 512.34,
                                     "epoch": 1700000000, "id": "..."},
        "subscription": {"id": "..."}}
    -> {"forget": "<subscription id>"}

Dropped connections are retried with exponential backoff (1s doubling to
30s) and every tracked symbol is re-subscribed once the socket reopens.  A
{"ping": 1} keep-alive goes out every WS_HEARTBEAT_SEC.

Demo mode needs no network: each subscribed symbol gets a synthetic tick
around its base price every 1s (1s indices) or 2s (everything else).

Nothing here raises into the caller.  Transport and callback errors are
logged and the feed keeps going.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable

import numpy as np
import websocket

import config
from tick_buffer import Tick

logger = logging.getLogger(__name__)

DEMO_BASE_PRICES = {
    "R_10": 100.0,
    "R_25": 250.0,
    "R_50": 500.0,
    "R_75": 750.0,
    "R_100": 1000.0,
}
DEMO_DEFAULT_PRICE = 500.0
DEMO_POLL_SEC = 0.25


def parse_tick_message(message: dict | str | bytes) -> Tick | None:
    """
    Tick from one API message, or None for anything that is not a tick.

    Deriv sends epoch seconds; ticks carry epoch milliseconds.
    """
    if isinstance(message, (str, bytes)):
        try:
            message = json.loads(message)
        except ValueError:
            return None
    if not isinstance(message, dict):
        return None
    tick = message.get("tick")
    if message.get("msg_type") not in (None, "tick") or not isinstance(tick, dict):
        return None
    try:
        return Tick.from_quote(
            symbol=str(tick["symbol"]),
            price=float(tick["quote"]),
            timestamp=float(tick["epoch"]) * 1000.0,
            tick_id=tick.get("id"),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Malformed tick payload: %r", tick)
        return None


def is_one_second(symbol: str) -> bool:
    return "1S" in symbol.upper()


def demo_base_price(symbol: str) -> float:
    root = symbol.upper().replace("_1S", "")
    return DEMO_BASE_PRICES.get(root, DEMO_DEFAULT_PRICE)


def demo_price(symbol: str, rng: np.random.Generator) -> float:
    """Uniform draw within +/- half the symbol's volatility of its base price."""
    base = demo_base_price(symbol)
    volatility = 0.02 if is_one_second(symbol) else 0.01
    change = (float(rng.random()) - 0.5) * volatility * base
    return max(base + change, base * 0.5)


class DerivTickFeed:
    """Symbol subscriptions feeding *on_tick* from a background thread."""

    def __init__(
        self,
        on_tick: Callable[[Tick], None],
        url: str | None = None,
        demo: bool | None = None,
        seed: int | None = None,
    ) -> None:
        self.on_tick = on_tick
        self.url = url or config.DERIV_WS_URL
        self.demo = config.DEMO_MODE if demo is None else bool(demo)
        if seed is None:
            seed = config.DEMO_SEED or None
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._subscriptions: dict[str, str | None] = {}   # symbol -> subscription id
        self._ws: websocket.WebSocketApp | None = None
        self._threads: list[threading.Thread] = []
        self._connected = False
        self._last_tick_at: float = 0.0

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def last_tick_at(self) -> float:
        return self._last_tick_at

    def symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._subscriptions)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        if self.demo:
            targets = [("deriv-demo", self._demo_loop)]
        else:
            targets = [("deriv-ws", self._ws_loop), ("deriv-heartbeat", self._heartbeat_loop)]
        for name, target in targets:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Tick feed started (%s)", "demo" if self.demo else self.url)

    def stop(self) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception:
                logger.debug("WebSocket close failed", exc_info=True)
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
        self._connected = False
        logger.info("Tick feed stopped")

    def subscribe(self, symbol: str) -> bool:
        """Start streaming *symbol*.  Returns False if it was already subscribed."""
        with self._lock:
            if symbol in self._subscriptions:
                return False
            self._subscriptions[symbol] = None
        if not self.demo:
            self._send({"ticks": symbol, "subscribe": 1})
        logger.info("Subscribed to %s", symbol)
        return True

    def unsubscribe(self, symbol: str) -> bool:
        with self._lock:
            if symbol not in self._subscriptions:
                return False
            sub_id = self._subscriptions.pop(symbol)
            remaining = len(self._subscriptions)
        if not self.demo:
            if sub_id:
                self._send({"forget": sub_id})
            elif remaining == 0:
                self._send({"forget_all": "ticks"})
        logger.info("Unsubscribed from %s", symbol)
        return True

    # ------------------------------------------------------------------ #
    # Tick delivery
    # ------------------------------------------------------------------ #

    def _deliver(self, tick: Tick) -> None:
        with self._lock:
            wanted = tick.symbol in self._subscriptions
        if not wanted:
            return
        self._last_tick_at = time.time()
        try:
            self.on_tick(tick)
        except Exception:
            logger.exception("Tick handler failed for %s", tick.symbol)

    # ------------------------------------------------------------------ #
    # Live WebSocket
    # ------------------------------------------------------------------ #

    def _send(self, payload: dict) -> bool:
        ws = self._ws
        if ws is None or not self._connected:
            return False
        try:
            ws.send(json.dumps(payload))
            return True
        except (websocket.WebSocketException, OSError) as e:
            logger.warning("WebSocket send failed (%s): %s", payload, e)
            return False

    def _on_open(self, ws) -> None:
        self._connected = True
        with self._lock:
            symbols = sorted(self._subscriptions)
            for symbol in symbols:
                self._subscriptions[symbol] = None
        logger.info("Connected to %s, subscribing %d symbol(s)", self.url, len(symbols))
        for symbol in symbols:
            self._send({"ticks": symbol, "subscribe": 1})

    def _on_message(self, ws, message) -> None:
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning("Unparseable message: %.200s", message)
            return
        if "error" in data:
            err = data.get("error") or {}
            logger.warning(
                "Deriv API error on %s: %s %s",
                data.get("msg_type", "?"), err.get("code", ""), err.get("message", ""),
            )
            return
        if data.get("msg_type") != "tick":
            return
        tick = parse_tick_message(data)
        if tick is None:
            return
        sub_id = (data.get("subscription") or {}).get("id")
        if sub_id:
            with self._lock:
                if tick.symbol in self._subscriptions:
                    self._subscriptions[tick.symbol] = sub_id
        self._deliver(tick)

    def _on_error(self, ws, error) -> None:
        logger.warning("WebSocket error: %s", error)

    def _on_close(self, ws, close_status, close_msg) -> None:
        self._connected = False
        logger.info("WebSocket closed: %s %s", close_status, close_msg)

    def _ws_loop(self) -> None:
        delay = config.WS_RECONNECT_DELAY_SEC
        while not self._stop.is_set():
            opened_at = time.time()
            try:
                self._ws = websocket.WebSocketApp(
                    self.url,
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
                self._ws.run_forever()
            except Exception:
                logger.exception("WebSocket loop crashed")
            self._connected = False
            if self._stop.is_set():
                break
            # A connection that stayed up for a while resets the backoff.
            if time.time() - opened_at > config.WS_MAX_RECONNECT_DELAY_SEC:
                delay = config.WS_RECONNECT_DELAY_SEC
            logger.warning("WebSocket disconnected, reconnecting in %.0fs", delay)
            self._stop.wait(delay)
            delay = next_backoff(delay)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(config.WS_HEARTBEAT_SEC):
            if self._connected:
                self._send({"ping": 1})

    # ------------------------------------------------------------------ #
    # Demo generator
    # ------------------------------------------------------------------ #

    def demo_tick(self, symbol: str, now: float | None = None) -> Tick:
        now = time.time() if now is None else now
        return Tick.from_quote(symbol, demo_price(symbol, self._rng), now * 1000.0)

    def _demo_loop(self) -> None:
        self._connected = True
        due: dict[str, float] = {}
        while not self._stop.wait(DEMO_POLL_SEC):
            now = time.time()
            for symbol in self.symbols():
                if now < due.get(symbol, 0.0):
                    continue
                due[symbol] = now + (1.0 if is_one_second(symbol) else 2.0)
                self._deliver(self.demo_tick(symbol, now))
        self._connected = False


def next_backoff(delay: float) -> float:
    return min(delay * 2.0, config.WS_MAX_RECONNECT_DELAY_SEC)
