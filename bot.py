"""
Digit consensus signal bot runtime.

Streams Deriv volatility-index ticks and runs one consensus engine per
subscribed symbol:
- bounded per-symbol tick buffers fed by the WebSocket (or demo) thread
- one worker thread per symbol driving the 2s / 10s / 5s analysis cadences
- most-recent-first signal log with Blockly XML export
- JSON API for status, signals and operator actions
- Telegram alerts for signals and analysis errors
"""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, HTTPServer
from math import isfinite
from socketserver import ThreadingMixIn
from typing import Any
from urllib.parse import parse_qs, urlsplit

import config
import horizon
import notifier
import xml_export
from consensus import (
    AnalysisFailed,
    ConsensusEngine,
    RiskSettings,
    SignalEmitted,
    SignalLog,
    TradingSignal,
)
from deriv_client import DerivTickFeed
from predictor import NoiseSource, PredictorConfig
from tick_buffer import MarketStatus, Tick, TickStore


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def _now() -> float:
    return time.time()


def _notify_async(fn, *args) -> None:
    """Run a notifier call off the analysis thread."""
    threading.Thread(target=fn, args=args, daemon=True, name="notify").start()


class SymbolWorker:
    """
    Sole driver of one symbol's analysis timers.

    A single thread runs the consensus cycle, the ten-second prediction and
    the volatility analysis in turn, so the engine's accumulator is only ever
    touched from here.  Buffers are read through immutable snapshots.
    """

    def __init__(
        self,
        symbol: str,
        store: TickStore,
        engine: ConsensusEngine,
        predictor_cfg: PredictorConfig,
        noise: NoiseSource | None = None,
    ) -> None:
        self.symbol = symbol
        self.store = store
        self.engine = engine
        self.predictor_cfg = predictor_cfg
        self.noise = noise or engine.noise
        self.analysis_interval = float(config.ANALYSIS_INTERVAL_SEC)
        self.horizon_interval = float(config.HORIZON_INTERVAL_SEC)
        self.volatility_interval = float(config.VOLATILITY_INTERVAL_SEC)

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self.runs_completed = 0
        self.last_run_at = 0.0
        self.realtime: dict | None = None
        self.ten_second: dict | None = None
        self.volatility: dict | None = None

    # ------------------ Lifecycle ------------------

    def start(self) -> None:
        if self.alive:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name=f"worker-{self.symbol}"
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        start = time.monotonic()
        next_analysis = start
        next_horizon = start + self.horizon_interval
        next_volatility = start + self.volatility_interval
        while not self._stop.is_set():
            now = time.monotonic()
            if now >= next_analysis:
                self.run_analysis_once()
                next_analysis = now + self.analysis_interval
            if now >= next_horizon:
                self.run_horizon_once()
                next_horizon = now + self.horizon_interval
            if now >= next_volatility:
                self.run_volatility_once()
                next_volatility = now + self.volatility_interval
            wake = min(next_analysis, next_horizon, next_volatility) - time.monotonic()
            self._stop.wait(max(0.05, wake))

    # ------------------ Timers ------------------

    def run_analysis_once(self) -> TradingSignal | None:
        ticks = self.store.ticks(self.symbol)
        others = self.store.recent_prices(exclude=self.symbol)
        sig = self.engine.run_cycle(ticks, others)
        try:
            realtime = horizon.realtime_analysis(self.symbol, ticks, self.engine.last_snapshot)
        except Exception:
            logger.exception("%s: realtime analysis failed", self.symbol)
            realtime = None
        with self._lock:
            self.runs_completed += 1
            self.last_run_at = _now()
            if realtime is not None:
                self.realtime = realtime
        return sig

    def run_horizon_once(self) -> dict | None:
        try:
            result = horizon.ten_second_prediction(
                self.symbol, self.engine.last_snapshot, self.predictor_cfg, self.noise
            )
        except Exception:
            logger.exception("%s: ten-second prediction failed", self.symbol)
            return None
        if result is not None:
            with self._lock:
                self.ten_second = result
        return result

    def run_volatility_once(self) -> dict | None:
        try:
            result = horizon.volatility_analysis(self.symbol, self.engine.last_snapshot, self.noise)
        except Exception:
            logger.exception("%s: volatility analysis failed", self.symbol)
            return None
        if result is not None:
            with self._lock:
                self.volatility = result
        return result

    # ------------------ Status ------------------

    def status(self, connected: bool) -> dict:
        ticks = self.store.ticks(self.symbol)
        last = ticks[-1] if ticks else None
        if connected:
            market = self.store.market_status(self.symbol)
        else:
            market = MarketStatus("disconnected", 0.0, "Connection lost")
        latest = self.engine.latest
        snapshot, band = latest.snapshot, latest.band
        with self._lock:
            extras = {
                "runs_completed": self.runs_completed,
                "last_run_at": self.last_run_at,
                "realtime": self.realtime,
                "ten_second": self.ten_second,
                "volatility": self.volatility,
            }
        return {
            "symbol": self.symbol,
            "name": config.VOLATILITY_INDICES.get(self.symbol, self.symbol),
            "worker_alive": self.alive,
            "tick_count": len(ticks),
            "last_price": last.price if last else None,
            "last_digit": last.last_digit if last else None,
            "last_tick_at": last.timestamp if last else None,
            "market_status": market.to_dict(),
            "state": self.engine.state,
            "run_count": self.engine.run_count,
            "features": snapshot.to_dict() if snapshot else None,
            "digits": [p.to_dict() for p in latest.digits],
            "band": band.to_dict() if band else None,
            **extras,
        }


class SignalRuntime:
    def __init__(self, feed: DerivTickFeed | None = None) -> None:
        self.lock = threading.RLock()
        self.started_at = _now()
        self.running = True

        self.mode = "INIT"  # INIT | RUNNING | HALTED
        self.halt_reason = ""

        self.store = TickStore(config.TICK_BUFFER_SIZE)
        self.signal_log = SignalLog(config.SIGNAL_LOG_SIZE)
        self.risk: RiskSettings = config.risk_settings()
        self.feature_cfg = config.feature_config()
        self.predictor_cfg = config.predictor_config()
        self.active_trading = bool(config.ACTIVE_TRADING)

        self.feed = feed if feed is not None else DerivTickFeed(self.on_tick)
        self.workers: dict[str, SymbolWorker] = {}

        self.ticks_received = 0
        self.analysis_errors = 0

    # ------------------ Lifecycle ------------------

    def initialize(self) -> None:
        logger.info("============================================================")
        logger.info("  DIGIT CONSENSUS SIGNAL BOT")
        logger.info("============================================================")

        self.feed.start()
        for symbol in config.SYMBOLS:
            ok, msg = self.subscribe(symbol)
            if not ok:
                logger.warning("Startup subscription skipped: %s", msg)

        with self.lock:
            self.mode = "RUNNING"
            workers = list(self.workers.values())
        for worker in workers:
            worker.start()

        _notify_async(notifier.notify_startup, sorted(self.workers))

    def shutdown(self, reason: str) -> None:
        with self.lock:
            if self.mode == "HALTED":
                return
            self.running = False
            self.mode = "HALTED"
            self.halt_reason = reason
            workers = list(self.workers.values())
        for worker in workers:
            worker.stop()
        self.feed.stop()
        logger.info("Runtime stopped: %s", reason)
        notifier.notify_shutdown(reason)

    def run_loop_once(self) -> None:
        """Restart any worker whose thread died."""
        with self.lock:
            if self.mode != "RUNNING":
                return
            dead = [w for w in self.workers.values() if not w.alive]
        for worker in dead:
            logger.warning("%s: worker thread not running, restarting", worker.symbol)
            worker.start()

    # ------------------ Ticks / engine events ------------------

    def on_tick(self, tick: Tick) -> None:
        if self.store.append(tick):
            self.ticks_received += 1

    def _on_engine_event(self, event: object) -> None:
        if isinstance(event, SignalEmitted):
            _notify_async(notifier.notify_signal, event.signal)
        elif isinstance(event, AnalysisFailed):
            self.analysis_errors += 1
            _notify_async(notifier.notify_analysis_error, event.symbol, event.error)

    def _build_worker(self, symbol: str) -> SymbolWorker:
        noise = NoiseSource(config.NOISE_ENABLED, config.NOISE_SEED or None)
        engine = ConsensusEngine(
            symbol,
            self.risk,
            self.feature_cfg,
            self.predictor_cfg,
            self.signal_log,
            noise=noise,
            active_trading=self.active_trading,
        )
        engine.add_observer(self._on_engine_event)
        return SymbolWorker(symbol, self.store, engine, self.predictor_cfg, noise)

    # ------------------ Operator actions ------------------

    def subscribe(self, symbol: str) -> tuple[bool, str]:
        symbol = (symbol or "").strip()
        if symbol not in config.VOLATILITY_INDICES:
            return False, f"unknown symbol: {symbol}"
        with self.lock:
            if self.mode == "HALTED":
                return False, "bot halted"
            if symbol in self.workers:
                return False, f"{symbol} already subscribed"
            self.store.buffer(symbol)
            worker = self._build_worker(symbol)
            self.workers[symbol] = worker
            start_now = self.mode == "RUNNING"
        self.feed.subscribe(symbol)
        if start_now:
            worker.start()
        return True, f"subscribed to {symbol}"

    def unsubscribe(self, symbol: str) -> tuple[bool, str]:
        with self.lock:
            worker = self.workers.pop(symbol, None)
        if worker is None:
            return False, f"{symbol} not subscribed"
        worker.stop()
        self.feed.unsubscribe(symbol)
        self.store.drop(symbol)
        return True, f"unsubscribed from {symbol}"

    def set_active_trading(self, active: bool) -> tuple[bool, str]:
        with self.lock:
            self.active_trading = bool(active)
            for worker in self.workers.values():
                worker.engine.active_trading = self.active_trading
        state = "started" if self.active_trading else "stopped"
        logger.info("Active trading %s", state)
        return True, f"trading {state}"

    def _update_risk(self, **changes) -> tuple[bool, str]:
        try:
            risk = replace(self.risk, **changes)
        except ValueError as e:
            return False, str(e)
        with self.lock:
            self.risk = risk
            for worker in self.workers.values():
                worker.engine.risk = risk
        return True, "ok"

    def set_probability_threshold(self, value: float) -> tuple[bool, str]:
        ok, msg = self._update_risk(probability_threshold=float(value))
        if not ok:
            return ok, msg
        return True, f"probability threshold set to {self.risk.probability_threshold:.2f}"

    def set_required_runs(self, value: int) -> tuple[bool, str]:
        ok, msg = self._update_risk(required_runs=int(value))
        if not ok:
            return ok, msg
        return True, f"required runs set to {self.risk.required_runs}"

    def set_stake(self, value: float) -> tuple[bool, str]:
        ok, msg = self._update_risk(stake=float(value))
        if not ok:
            return ok, msg
        return True, f"stake set to {self.risk.stake:.2f}"

    def force_signal(self, symbol: str) -> tuple[bool, str]:
        with self.lock:
            worker = self.workers.get(symbol)
        if worker is None:
            return False, f"{symbol} not subscribed"
        sig = worker.engine.force_signal()
        if sig is None:
            return False, "no prediction above threshold"
        return True, sig.id

    def set_signal_status(self, signal_id: str, status: str) -> tuple[bool, str]:
        try:
            found = self.signal_log.update_status(signal_id, status)
        except ValueError as e:
            return False, str(e)
        if not found:
            return False, f"signal {signal_id} not found"
        return True, f"signal {signal_id[:8]} marked {status}"

    def export_xml(self, signal_id: str) -> tuple[str, str] | None:
        """(filename, xml body) for a logged signal, or None if unknown."""
        sig = self.signal_log.get(signal_id)
        if sig is None:
            return None
        return xml_export.export_filename(sig), xml_export.build_bot_xml(sig, self.risk.stake)

    # ------------------ Status ------------------

    def status_payload(self) -> dict:
        with self.lock:
            workers = sorted(self.workers.values(), key=lambda w: w.symbol)
            mode = self.mode
            risk = self.risk
            active = self.active_trading
        connected = self.feed.connected
        return {
            "mode": mode,
            "halt_reason": self.halt_reason,
            "uptime_sec": _now() - self.started_at,
            "feed": {
                "demo": self.feed.demo,
                "connected": connected,
                "last_tick_at": self.feed.last_tick_at,
                "ticks_received": self.ticks_received,
            },
            "model": self.predictor_cfg.model,
            "active_trading": active,
            "risk": {
                "probability_threshold": risk.probability_threshold,
                "required_runs": risk.required_runs,
                "stake": risk.stake,
                "cycle_length": risk.cycle_length,
            },
            "analysis_errors": self.analysis_errors,
            "symbols": {w.symbol: w.status(connected) for w in workers},
            "signal_count": len(self.signal_log),
            "signals": [s.to_dict() for s in self.signal_log.list()[:10]],
        }


_RUNTIME: SignalRuntime | None = None


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class DashboardHandler(BaseHTTPRequestHandler):
    def log_message(self, fmt: str, *args: Any) -> None:  # noqa: D401
        logger.debug("HTTP %s - %s", self.address_string(), fmt % args)

    def _send_json(self, data: dict, code: int = 200) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Pragma", "no-cache")
        self.send_header("Expires", "0")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _read_json(self) -> dict:
        n = int(self.headers.get("Content-Length", "0") or "0")
        if n <= 0:
            return {}
        raw = self.rfile.read(n)
        try:
            body = json.loads(raw.decode("utf-8"))
        except Exception as exc:
            raise ValueError("invalid request body") from exc
        if not isinstance(body, dict):
            raise ValueError("invalid request body")
        return body

    def do_GET(self) -> None:  # noqa: N802
        global _RUNTIME
        parts = urlsplit(self.path)
        path = parts.path.rstrip("/") or "/"

        if not path.startswith("/api/"):
            self._send_json({"error": "not found"}, 404)
            return
        if _RUNTIME is None:
            self._send_json({"error": "runtime not ready"}, 503)
            return

        if path == "/api/status":
            self._send_json(_RUNTIME.status_payload())
            return

        if path == "/api/signals":
            symbol = (parse_qs(parts.query).get("symbol") or [""])[0] or None
            signals = _RUNTIME.signal_log.list(symbol)
            self._send_json({"signals": [s.to_dict() for s in signals]})
            return

        if path.startswith("/api/signals/") and path.endswith(".xml"):
            signal_id = path[len("/api/signals/"):-len(".xml")]
            exported = _RUNTIME.export_xml(signal_id)
            if exported is None:
                self._send_json({"error": "signal not found"}, 404)
                return
            filename, body = exported
            data = body.encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "application/xml; charset=utf-8")
            self.send_header("Content-Disposition", f'attachment; filename="{filename}"')
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)
            return

        self._send_json({"error": "not found"}, 404)

    def do_POST(self) -> None:  # noqa: N802
        global _RUNTIME
        try:
            if not self.path.startswith("/api/action"):
                self._send_json({"ok": False, "message": "not found"}, 404)
                return
            if _RUNTIME is None:
                self._send_json({"ok": False, "message": "runtime not ready"}, 503)
                return

            try:
                body = self._read_json()
            except Exception:
                self._send_json({"ok": False, "message": "invalid request body"}, 400)
                return

            action = (body.get("action") or "").strip()
            parsed: dict[str, Any] = {}

            if action in ("set_threshold", "set_stake"):
                try:
                    parsed["value"] = float(body.get("value", 0))
                    if not isfinite(parsed["value"]):
                        raise ValueError("non-finite value")
                except (TypeError, ValueError):
                    self._send_json({"ok": False, "message": "invalid numeric value"}, 400)
                    return
            elif action == "set_required_runs":
                try:
                    parsed["value"] = int(body.get("value", 0))
                except (TypeError, ValueError):
                    self._send_json({"ok": False, "message": "invalid integer value"}, 400)
                    return
            elif action in ("subscribe", "unsubscribe", "force_signal"):
                symbol = body.get("symbol")
                if not isinstance(symbol, str) or not symbol.strip():
                    self._send_json({"ok": False, "message": "missing symbol"}, 400)
                    return
                parsed["symbol"] = symbol.strip()
            elif action == "set_signal_status":
                signal_id = body.get("signal_id")
                status = body.get("status")
                if not isinstance(signal_id, str) or not isinstance(status, str):
                    self._send_json({"ok": False, "message": "signal_id and status required"}, 400)
                    return
                parsed["signal_id"] = signal_id
                parsed["status"] = status
            elif action in ("start", "stop"):
                pass
            else:
                self._send_json({"ok": False, "message": f"unknown action: {action}"}, 400)
                return

            with _RUNTIME.lock:
                ok = True
                msg = "ok"
                if action == "start":
                    ok, msg = _RUNTIME.set_active_trading(True)
                elif action == "stop":
                    ok, msg = _RUNTIME.set_active_trading(False)
                elif action == "set_threshold":
                    ok, msg = _RUNTIME.set_probability_threshold(float(parsed["value"]))
                elif action == "set_required_runs":
                    ok, msg = _RUNTIME.set_required_runs(int(parsed["value"]))
                elif action == "set_stake":
                    ok, msg = _RUNTIME.set_stake(float(parsed["value"]))
                elif action == "subscribe":
                    ok, msg = _RUNTIME.subscribe(parsed["symbol"])
                elif action == "unsubscribe":
                    ok, msg = _RUNTIME.unsubscribe(parsed["symbol"])
                elif action == "force_signal":
                    ok, msg = _RUNTIME.force_signal(parsed["symbol"])
                elif action == "set_signal_status":
                    ok, msg = _RUNTIME.set_signal_status(parsed["signal_id"], parsed["status"])

            self._send_json({"ok": bool(ok), "message": str(msg)}, 200 if ok else 400)
        except Exception:
            logger.exception("Unhandled exception in /api/action")
            self._send_json({"ok": False, "message": "internal server error"}, 500)


def start_http_server() -> ThreadingHTTPServer | None:
    if config.HEALTH_PORT <= 0:
        return None
    server = ThreadingHTTPServer(("0.0.0.0", int(config.HEALTH_PORT)), DashboardHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="api-server")
    thread.start()
    logger.info("API server started on :%s", config.HEALTH_PORT)
    return server


def run() -> None:
    global _RUNTIME
    setup_logging()
    config.print_banner()

    rt = SignalRuntime()
    _RUNTIME = rt

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        rt.shutdown(f"signal {signum}")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGBREAK"):
        signal.signal(signal.SIGBREAK, _handle_signal)

    server = None
    try:
        rt.initialize()
        server = start_http_server()

        logger.info("Entering watchdog loop (every 5s)")
        while rt.running:
            try:
                rt.run_loop_once()
            except Exception as e:
                logger.exception("Watchdog loop error: %s", e)
            time.sleep(5)

    finally:
        if server is not None:
            try:
                server.shutdown()
            except Exception:
                logger.debug("API server shutdown failed", exc_info=True)
        if _RUNTIME is not None:
            _RUNTIME.shutdown("process exit")


if __name__ == "__main__":
    run()
