import threading
import unittest

import tick_buffer
from tick_buffer import Tick, TickBuffer, TickStore


def _ticks(symbol, prices, start_ms=1_700_000_000_000.0, step_ms=2000.0):
    return [
        Tick.from_quote(symbol, p, start_ms + i * step_ms, tick_id=f"{symbol}-{i}")
        for i, p in enumerate(prices)
    ]


class LastDigitTests(unittest.TestCase):
    def test_first_decimal_digit(self):
        self.assertEqual(tick_buffer.last_digit(512.34), 3)
        self.assertEqual(tick_buffer.last_digit(100.0), 0)
        self.assertEqual(tick_buffer.last_digit(100.56), 5)
        self.assertEqual(tick_buffer.last_digit(99.99), 9)

    def test_from_quote_fills_digit_and_id(self):
        tick = Tick.from_quote("R_50", "512.71", 1000)
        self.assertEqual(tick.price, 512.71)
        self.assertEqual(tick.last_digit, 7)
        self.assertEqual(tick.timestamp, 1000.0)
        self.assertTrue(tick.id)

    def test_explicit_id_kept(self):
        tick = Tick.from_quote("R_50", 1.0, 0, tick_id="abc")
        self.assertEqual(tick.id, "abc")
        self.assertEqual(tick.to_dict()["symbol"], "R_50")


class TickBufferTests(unittest.TestCase):
    def test_evicts_oldest_when_full(self):
        buf = TickBuffer("R_10", capacity=3)
        buf.extend(_ticks("R_10", [1.0, 2.0, 3.0, 4.0, 5.0]))
        self.assertEqual(len(buf), 3)
        self.assertEqual([t.price for t in buf.snapshot()], [3.0, 4.0, 5.0])
        self.assertEqual(buf.last().price, 5.0)

    def test_snapshot_is_immutable_copy(self):
        buf = TickBuffer("R_10", capacity=5)
        buf.extend(_ticks("R_10", [1.0, 2.0]))
        snap = buf.snapshot()
        buf.append(Tick.from_quote("R_10", 3.0, 0))
        self.assertIsInstance(snap, tuple)
        self.assertEqual(len(snap), 2)

    def test_empty_buffer(self):
        buf = TickBuffer("R_10", capacity=5)
        self.assertIsNone(buf.last())
        self.assertEqual(buf.snapshot(), ())

    def test_concurrent_appends_respect_capacity(self):
        buf = TickBuffer("R_10", capacity=100)

        def writer(offset):
            for i in range(500):
                buf.append(Tick.from_quote("R_10", 100.0 + offset + i * 0.01, i))

        threads = [threading.Thread(target=writer, args=(k,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(buf), 100)


class TickStoreTests(unittest.TestCase):
    def test_buffers_tracked_until_dropped(self):
        store = TickStore(capacity=10)
        store.buffer("R_25")
        for tick in _ticks("R_25", [250.0, 250.1]):
            store.append(tick)
        self.assertIn("R_25", store)
        self.assertEqual(len(store.ticks("R_25")), 2)
        self.assertTrue(store.drop("R_25"))
        self.assertFalse(store.drop("R_25"))
        self.assertNotIn("R_25", store)
        self.assertEqual(store.ticks("R_25"), ())

    def test_recent_prices_excludes_symbol_and_empty_buffers(self):
        store = TickStore(capacity=50)
        store.buffer("R_10")
        store.buffer("R_50")
        for tick in _ticks("R_10", [100.0 + i for i in range(30)]):
            store.append(tick)
        for tick in _ticks("R_50", [500.0, 501.0]):
            store.append(tick)
        store.buffer("R_75")
        prices = store.recent_prices(n=5, exclude="R_50")
        self.assertEqual(list(prices), ["R_10"])
        self.assertEqual(prices["R_10"], (125.0, 126.0, 127.0, 128.0, 129.0))
        self.assertEqual(store.symbols(), ["R_10", "R_50", "R_75"])

    def test_late_tick_does_not_revive_dropped_buffer(self):
        store = TickStore(capacity=10)
        store.buffer("R_10")
        store.buffer("R_50")
        store.append(Tick.from_quote("R_50", 500.0, 0))
        self.assertTrue(store.drop("R_10"))
        self.assertFalse(store.append(Tick.from_quote("R_10", 100.0, 1)))
        self.assertNotIn("R_10", store)
        self.assertEqual(store.symbols(), ["R_50"])
        self.assertEqual(store.recent_prices(exclude="R_50"), {})

    def test_untracked_symbol_ignored(self):
        store = TickStore(capacity=10)
        self.assertFalse(store.append(Tick.from_quote("R_75", 750.0, 0)))
        self.assertEqual(store.symbols(), [])


class MarketStatusTests(unittest.TestCase):
    def test_flat_series_is_normal(self):
        status = tick_buffer.market_status(_ticks("R_10", [100.0] * 12))
        self.assertEqual(status.status, "normal")
        self.assertEqual(status.z_score, 0.0)

    def test_too_few_ticks_is_normal(self):
        status = tick_buffer.market_status(_ticks("R_10", [100.0]))
        self.assertEqual(status.status, "normal")

    def test_uniform_moves_flag_shift(self):
        # Near-identical move sizes: tiny spread relative to the mean move.
        prices = [100.0]
        for i in range(9):
            prices.append(prices[-1] + (0.5 if i % 2 else 0.5001))
        status = tick_buffer.market_status(_ticks("R_10", prices), z_threshold=3.0)
        self.assertEqual(status.status, "shift")
        self.assertGreater(status.z_score, 3.0)
        self.assertEqual(status.message, "High volatility detected")


if __name__ == "__main__":
    unittest.main()
