import os
import unittest
from unittest import mock

import config
import notifier
from consensus import TradingSignal


class EnvHelperTests(unittest.TestCase):
    def test_env_casts_and_defaults(self):
        with mock.patch.dict(os.environ, {"X_INT": "7", "X_BAD": "seven", "X_BOOL": "yes"}):
            self.assertEqual(config._env("X_INT", 1, int), 7)
            self.assertEqual(config._env("X_BAD", 1, int), 1)
            self.assertTrue(config._env("X_BOOL", False, bool))
            self.assertEqual(config._env("X_MISSING", "d"), "d")

    def test_env_list(self):
        with mock.patch.dict(os.environ, {"X_LIST": " R_10, ,R_50 "}):
            self.assertEqual(config._env_list("X_LIST", ""), ["R_10", "R_50"])

    def test_env_floats_falls_back_on_malformed_value(self):
        with mock.patch.dict(os.environ, {"X_FLOATS": "0.1,abc,0.3", "X_GOOD": "1, 2.5"}):
            self.assertEqual(config._env_floats("X_FLOATS", "0.01,0.02"), [0.01, 0.02])
            self.assertEqual(config._env_floats("X_GOOD", "0"), [1.0, 2.5])
            self.assertEqual(config._env_floats("X_UNSET", "0.5"), [0.5])


class ConfigBuilderTests(unittest.TestCase):
    def test_baseline_model_presets(self):
        with mock.patch.object(config, "MODEL", "baseline"), \
                mock.patch.object(config, "SPIKE_MULTIPLIER", 0.0):
            cfg = config.feature_config()
            self.assertEqual((cfg.min_ticks, cfg.window, cfg.spike_multiplier), (10, 30, 2.0))
            self.assertEqual(config.predictor_config().model, "baseline")

    def test_overrides_applied(self):
        with mock.patch.object(config, "MODEL", "advanced"), \
                mock.patch.object(config, "SPIKE_MULTIPLIER", 3.0), \
                mock.patch.object(config, "VOLATILITY_CUTPOINTS", [0.001, 0.002, 0.003]):
            cfg = config.feature_config()
        self.assertEqual(cfg.spike_multiplier, 3.0)
        self.assertEqual(cfg.volatility_cutpoints, (0.001, 0.002, 0.003))

    def test_invalid_risk_rejected(self):
        with mock.patch.object(config, "REQUIRED_RUNS", 7):
            with self.assertRaises(ValueError):
                config.risk_settings()


class NotifierTests(unittest.TestCase):
    def setUp(self):
        notifier._last_error_alert.clear()

    def test_unconfigured_is_noop(self):
        with mock.patch.object(config, "TELEGRAM_BOT_TOKEN", ""), \
                mock.patch.object(config, "TELEGRAM_CHAT_ID", ""):
            self.assertFalse(notifier.notify_shutdown("test"))

    def test_signal_message(self):
        sig = TradingSignal(
            id="abcdef1234", symbol="R_50", timestamp=0.0, type="over_under",
            predicted_digit=None, predicted_band="under7", confidence=0.81, runs=4,
        )
        with mock.patch.object(notifier, "_send_message", return_value=True) as send:
            self.assertTrue(notifier.notify_signal(sig))
        text = send.call_args[0][0]
        self.assertIn("Under 7", text)
        self.assertIn("81.0%", text)
        self.assertIn("abcdef12", text)

    def test_analysis_error_rate_limited(self):
        with mock.patch.object(notifier, "_send_message", return_value=True) as send:
            self.assertTrue(notifier.notify_analysis_error("R_50", "boom", now=1000.0))
            self.assertFalse(notifier.notify_analysis_error("R_50", "boom", now=1010.0))
            self.assertTrue(notifier.notify_analysis_error("R_10", "boom", now=1010.0))
            self.assertTrue(notifier.notify_analysis_error("R_50", "<boom>", now=1400.0))
        self.assertEqual(send.call_count, 3)
        self.assertIn("&lt;boom&gt;", send.call_args[0][0])


if __name__ == "__main__":
    unittest.main()
