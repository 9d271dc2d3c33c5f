import io
import unittest
from unittest import mock

import bot
import config
import notifier
from tick_buffer import Tick


class _FakeFeed:
    demo = True

    def __init__(self):
        self.connected = True
        self.last_tick_at = 0.0
        self.subscribed = []
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def subscribe(self, symbol):
        self.subscribed.append(symbol)
        return True

    def unsubscribe(self, symbol):
        self.subscribed.remove(symbol)
        return True


def _digit_five_ticks(symbol="R_50", n=60):
    cycle = [100.52, 100.54, 100.56, 100.54]
    return [
        Tick.from_quote(symbol, cycle[i % 4], 1_700_000_000_000.0 + i * 2000.0)
        for i in range(n)
    ]


class _RuntimeCase(unittest.TestCase):
    def setUp(self):
        patches = [
            mock.patch.object(bot, "_notify_async"),
            mock.patch.object(config, "PROBABILITY_THRESHOLD", 0.75),
            mock.patch.object(config, "REQUIRED_RUNS", 3),
            mock.patch.object(config, "STAKE", 1.0),
            mock.patch.object(config, "MODEL", "advanced"),
            mock.patch.object(config, "NOISE_ENABLED", False),
            mock.patch.object(config, "ACTIVE_TRADING", False),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.feed = _FakeFeed()
        self.rt = bot.SignalRuntime(feed=self.feed)

    def _subscribe_with_ticks(self, symbol="R_50"):
        ok, _ = self.rt.subscribe(symbol)
        self.assertTrue(ok)
        for tick in _digit_five_ticks(symbol):
            self.rt.on_tick(tick)
        return self.rt.workers[symbol]


class SignalRuntimeTests(_RuntimeCase):
    def test_subscribe_validates_symbol(self):
        ok, msg = self.rt.subscribe("BTCUSD")
        self.assertFalse(ok)
        self.assertIn("unknown symbol", msg)

    def test_subscribe_creates_idle_worker_before_start(self):
        ok, _ = self.rt.subscribe("R_50")
        self.assertTrue(ok)
        self.assertEqual(self.feed.subscribed, ["R_50"])
        self.assertFalse(self.rt.workers["R_50"].alive)
        ok, msg = self.rt.subscribe("R_50")
        self.assertFalse(ok)

    def test_ticks_for_untracked_symbols_ignored(self):
        self.rt.on_tick(Tick.from_quote("R_10", 100.0, 0))
        self.assertNotIn("R_10", self.rt.store)

    def test_tick_after_unsubscribe_does_not_revive_buffer(self):
        self._subscribe_with_ticks("R_10")
        received = self.rt.ticks_received
        ok, _ = self.rt.unsubscribe("R_10")
        self.assertTrue(ok)
        self.rt.on_tick(Tick.from_quote("R_10", 100.0, 0))
        self.assertNotIn("R_10", self.rt.store)
        self.assertEqual(self.rt.ticks_received, received)

    def test_consensus_cycle_records_signal_and_exports(self):
        worker = self._subscribe_with_ticks()
        self.rt.set_active_trading(True)
        for _ in range(4):
            worker.run_analysis_once()

        signals = self.rt.signal_log.list()
        self.assertEqual(len(signals), 1)
        self.assertEqual(signals[0].predicted_digit, 5)
        bot._notify_async.assert_any_call(notifier.notify_signal, signals[0])

        filename, body = self.rt.export_xml(signals[0].id)
        self.assertTrue(filename.startswith("accelerator_zone_R_50_"))
        self.assertIn('<field name="TRADETYPE">digit_match</field>', body)
        self.assertIsNone(self.rt.export_xml("missing"))

    def test_inactive_trading_records_nothing(self):
        worker = self._subscribe_with_ticks()
        for _ in range(4):
            worker.run_analysis_once()
        self.assertEqual(len(self.rt.signal_log), 0)
        self.assertEqual(worker.runs_completed, 4)
        self.assertIsNotNone(worker.realtime)

    def test_horizon_and_volatility_timers(self):
        worker = self._subscribe_with_ticks()
        self.assertIsNone(worker.run_horizon_once())
        worker.run_analysis_once()
        self.assertEqual(worker.run_horizon_once()["top_prediction"]["digit"], 5)
        self.assertIsNotNone(worker.run_volatility_once())

    def test_risk_updates_validated_and_propagated(self):
        self.rt.subscribe("R_50")
        ok, _ = self.rt.set_probability_threshold(1.5)
        self.assertFalse(ok)
        ok, _ = self.rt.set_required_runs(2)
        self.assertTrue(ok)
        ok, _ = self.rt.set_stake(3.0)
        self.assertTrue(ok)
        engine = self.rt.workers["R_50"].engine
        self.assertEqual(engine.risk.required_runs, 2)
        self.assertEqual(engine.risk.stake, 3.0)
        self.assertEqual(engine.risk.probability_threshold, 0.75)

    def test_force_signal(self):
        ok, msg = self.rt.force_signal("R_50")
        self.assertFalse(ok)
        worker = self._subscribe_with_ticks()
        worker.run_analysis_once()
        ok, signal_id = self.rt.force_signal("R_50")
        self.assertTrue(ok)
        self.assertEqual(self.rt.signal_log.get(signal_id).runs, 1)

    def test_signal_status(self):
        worker = self._subscribe_with_ticks()
        worker.run_analysis_once()
        _, signal_id = self.rt.force_signal("R_50")
        self.assertTrue(self.rt.set_signal_status(signal_id, "won")[0])
        self.assertFalse(self.rt.set_signal_status(signal_id, "maybe")[0])
        self.assertFalse(self.rt.set_signal_status("nope", "lost")[0])

    def test_unsubscribe_releases_buffer(self):
        self._subscribe_with_ticks()
        ok, _ = self.rt.unsubscribe("R_50")
        self.assertTrue(ok)
        self.assertNotIn("R_50", self.rt.store)
        self.assertNotIn("R_50", self.rt.workers)
        self.assertEqual(self.feed.subscribed, [])
        self.assertFalse(self.rt.unsubscribe("R_50")[0])

    def test_status_payload(self):
        worker = self._subscribe_with_ticks()
        worker.run_analysis_once()
        payload = self.rt.status_payload()
        sym = payload["symbols"]["R_50"]
        self.assertEqual(sym["tick_count"], 60)
        self.assertEqual(sym["last_digit"], 5)
        self.assertEqual(sym["run_count"], 1)
        self.assertEqual(sym["state"], "accumulating")
        self.assertEqual(len(sym["digits"]), 10)
        self.assertEqual(payload["risk"]["required_runs"], 3)
        self.assertFalse(payload["active_trading"])

    def test_status_reports_disconnected_feed(self):
        self._subscribe_with_ticks()
        self.feed.connected = False
        sym = self.rt.status_payload()["symbols"]["R_50"]
        self.assertEqual(sym["market_status"]["status"], "disconnected")

    def test_analysis_failure_counted_and_alerted(self):
        worker = self._subscribe_with_ticks()
        with mock.patch.object(worker.engine, "_analyze", side_effect=RuntimeError("boom")):
            worker.run_analysis_once()
        self.assertEqual(self.rt.analysis_errors, 1)
        bot._notify_async.assert_any_call(notifier.notify_analysis_error, "R_50", "boom")

    def test_initialize_and_shutdown(self):
        with mock.patch.object(config, "SYMBOLS", ["R_10", "NOPE"]), \
                mock.patch.object(notifier, "notify_shutdown") as notify_shutdown:
            self.rt.initialize()
            self.assertTrue(self.feed.started)
            self.assertEqual(self.rt.mode, "RUNNING")
            self.assertTrue(self.rt.workers["R_10"].alive)
            self.rt.shutdown("test")
            self.rt.shutdown("again")
        self.assertTrue(self.feed.stopped)
        self.assertFalse(self.rt.running)
        self.assertEqual(self.rt.mode, "HALTED")
        self.assertFalse(self.rt.workers["R_10"].alive)
        notify_shutdown.assert_called_once_with("test")
        self.assertFalse(self.rt.subscribe("R_25")[0])


class ApiHandlerTests(_RuntimeCase):
    class _HandlerStub:
        def __init__(self, body_or_exc):
            self.path = "/api/action"
            self._body_or_exc = body_or_exc
            self.sent = []

        def _read_json(self):
            if isinstance(self._body_or_exc, Exception):
                raise self._body_or_exc
            return self._body_or_exc

        def _send_json(self, data, code=200):
            self.sent.append((code, data))

    class _GetHandlerStub:
        def __init__(self, path):
            self.path = path
            self.code = None
            self.headers = []
            self.sent_json = []
            self.wfile = io.BytesIO()

        def send_response(self, code):
            self.code = code

        def send_header(self, key, value):
            self.headers.append((key, value))

        def end_headers(self):
            return None

        def _send_json(self, data, code=200):
            self.sent_json.append((code, data))

    def setUp(self):
        super().setUp()
        self.prev_runtime = bot._RUNTIME
        bot._RUNTIME = self.rt

    def tearDown(self):
        bot._RUNTIME = self.prev_runtime

    def _post(self, body):
        handler = self._HandlerStub(body)
        bot.DashboardHandler.do_POST(handler)
        self.assertEqual(len(handler.sent), 1)
        return handler.sent[0]

    def test_malformed_body_returns_400(self):
        code, payload = self._post(ValueError("bad json"))
        self.assertEqual(code, 400)
        self.assertEqual(payload, {"ok": False, "message": "invalid request body"})

    def test_unknown_action_returns_400(self):
        code, payload = self._post({"action": "wat"})
        self.assertEqual(code, 400)
        self.assertEqual(payload, {"ok": False, "message": "unknown action: wat"})

    def test_runtime_not_ready_returns_503(self):
        bot._RUNTIME = None
        code, _ = self._post({"action": "start"})
        self.assertEqual(code, 503)

    def test_start_and_stop_toggle_trading(self):
        code, payload = self._post({"action": "start"})
        self.assertEqual((code, payload["ok"]), (200, True))
        self.assertTrue(self.rt.active_trading)
        self._post({"action": "stop"})
        self.assertFalse(self.rt.active_trading)

    def test_set_threshold_validation(self):
        code, payload = self._post({"action": "set_threshold", "value": "abc"})
        self.assertEqual(code, 400)
        self.assertEqual(payload["message"], "invalid numeric value")
        code, _ = self._post({"action": "set_threshold", "value": "nan"})
        self.assertEqual(code, 400)
        code, _ = self._post({"action": "set_threshold", "value": 2})
        self.assertEqual(code, 400)
        code, _ = self._post({"action": "set_threshold", "value": 0.6})
        self.assertEqual(code, 200)
        self.assertEqual(self.rt.risk.probability_threshold, 0.6)

    def test_set_required_runs(self):
        code, _ = self._post({"action": "set_required_runs", "value": 4})
        self.assertEqual(code, 200)
        self.assertEqual(self.rt.risk.required_runs, 4)
        code, _ = self._post({"action": "set_required_runs", "value": 9})
        self.assertEqual(code, 400)

    def test_subscribe_requires_symbol(self):
        code, payload = self._post({"action": "subscribe"})
        self.assertEqual((code, payload["message"]), (400, "missing symbol"))
        code, _ = self._post({"action": "subscribe", "symbol": "R_75"})
        self.assertEqual(code, 200)
        self.assertIn("R_75", self.rt.workers)
        code, _ = self._post({"action": "unsubscribe", "symbol": "R_75"})
        self.assertEqual(code, 200)

    def test_internal_error_returns_500(self):
        with mock.patch.object(self.rt, "set_active_trading", side_effect=RuntimeError("x")):
            code, payload = self._post({"action": "start"})
        self.assertEqual(code, 500)
        self.assertEqual(payload, {"ok": False, "message": "internal server error"})

    def test_get_status(self):
        handler = self._GetHandlerStub("/api/status")
        bot.DashboardHandler.do_GET(handler)
        code, payload = handler.sent_json[0]
        self.assertEqual(code, 200)
        self.assertIn("symbols", payload)

    def test_get_unknown_path_404(self):
        handler = self._GetHandlerStub("/nope")
        bot.DashboardHandler.do_GET(handler)
        self.assertEqual(handler.sent_json[0][0], 404)

    def test_xml_download(self):
        worker = self._subscribe_with_ticks()
        worker.run_analysis_once()
        _, signal_id = self.rt.force_signal("R_50")

        handler = self._GetHandlerStub(f"/api/signals/{signal_id}.xml")
        bot.DashboardHandler.do_GET(handler)
        self.assertEqual(handler.code, 200)
        headers = dict(handler.headers)
        self.assertEqual(headers["Content-Type"], "application/xml; charset=utf-8")
        self.assertIn("accelerator_zone_R_50_", headers["Content-Disposition"])
        self.assertIn(b"digit_match", handler.wfile.getvalue())

        missing = self._GetHandlerStub("/api/signals/unknown.xml")
        bot.DashboardHandler.do_GET(missing)
        self.assertEqual(missing.sent_json[0][0], 404)

    def test_signal_list_filtered(self):
        worker = self._subscribe_with_ticks()
        worker.run_analysis_once()
        self.rt.force_signal("R_50")
        handler = self._GetHandlerStub("/api/signals?symbol=R_10")
        bot.DashboardHandler.do_GET(handler)
        self.assertEqual(handler.sent_json[0][1], {"signals": []})
        handler = self._GetHandlerStub("/api/signals")
        bot.DashboardHandler.do_GET(handler)
        self.assertEqual(len(handler.sent_json[0][1]["signals"]), 1)


if __name__ == "__main__":
    unittest.main()
