"""
horizon.py -- Secondary analyses that run beside the consensus cycle.

    ten_second_prediction()  every HORIZON_INTERVAL_SEC (10s)
    volatility_analysis()    every VOLATILITY_INTERVAL_SEC (5s)
    realtime_analysis()      every analysis run

All three are informational.  They never feed the vote accumulator and never
create signals.  Each returns None when its inputs are not ready.
"""

from __future__ import annotations

import time
import uuid
from typing import Sequence

import numpy as np

import predictor
from feature_extractor import FeatureSnapshot
from predictor import NoiseSource, PredictorConfig
from tick_buffer import Tick


HORIZON_SEC = 10
CHART_POINTS = 20
RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
BOLLINGER_PERIOD = 20
BOLLINGER_WIDTH = 2.0
AUTOMATED_SIGNAL_STRENGTH = 0.6
CLUSTER_SPACING_MS = 2000
FORECAST_SPREADS = {"next_10s": 0.2, "next_30s": 0.3, "next_60s": 0.4}


def _direction(momentum: float) -> str:
    if momentum > 0:
        return "up"
    if momentum < 0:
        return "down"
    return "sideways"


def ten_second_prediction(
    symbol: str,
    snapshot: FeatureSnapshot | None,
    cfg: PredictorConfig | None = None,
    noise: NoiseSource | None = None,
    now: float | None = None,
) -> dict | None:
    """Digit ranking for a contract expiring in ten seconds."""
    if snapshot is None:
        return None
    started = time.perf_counter()
    digits = predictor.ranked(predictor.predict_digits(snapshot, cfg, noise))
    elapsed_ms = (time.perf_counter() - started) * 1000.0

    predictions = [
        {
            "digit": p.digit,
            "probability": p.probability,
            "confidence": p.confidence,
            "volatility_impact": p.volatility_impact,
            "time_to_expiry": HORIZON_SEC,
        }
        for p in digits
    ]
    return {
        "id": str(uuid.uuid4()),
        "symbol": symbol,
        "timestamp": (time.time() if now is None else now) * 1000.0,
        "predictions": predictions,
        "top_prediction": predictions[0],
        "market_conditions": {
            "volatility": snapshot.volatility,
            "trend": _direction(snapshot.momentum),
            "regime": snapshot.market_regime,
        },
        "analysis_time_ms": elapsed_ms,
    }


def volatility_analysis(
    symbol: str,
    snapshot: FeatureSnapshot | None,
    noise: NoiseSource | None = None,
    now: float | None = None,
) -> dict | None:
    """
    Volatility picture for one symbol against the others being tracked.

    The forecast is the current volatility scaled by jitter when noise is
    enabled; with noise off all three horizons equal the current value.
    """
    if snapshot is None:
        return None
    noise = noise or NoiseSource()
    now_ms = (time.time() if now is None else now) * 1000.0
    current = snapshot.volatility
    clusters = snapshot.volatility_clusters
    n = len(clusters)

    return {
        "symbol": symbol,
        "timestamp": now_ms,
        "current_volatility": current,
        "volatility_history": list(clusters),
        "volatility_regime": snapshot.volatility_regime,
        "cross_correlations": dict(snapshot.cross_volatility_correlation),
        "volatility_clusters": [
            {
                "cluster": i + 1,
                "start_time": now_ms - (n - i) * CLUSTER_SPACING_MS,
                "end_time": now_ms - (n - i - 1) * CLUSTER_SPACING_MS,
                "intensity": intensity,
            }
            for i, intensity in enumerate(clusters)
        ],
        "volatility_forecast": {
            horizon: current * noise.factor(spread)
            for horizon, spread in FORECAST_SPREADS.items()
        },
        "market_impact": {
            "digit_bias": {str(d): snapshot.digit_histogram.get(d, 0.0) for d in range(10)},
            "trend_strength": snapshot.trend_strength,
            "reversal_probability": snapshot.sign_changes / 10.0,
        },
    }


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------

def _ema(series: np.ndarray, span: int) -> np.ndarray:
    """Exponential moving average via recursive filter."""
    alpha = 2.0 / (span + 1)
    out = np.empty_like(series)
    out[0] = series[0]
    for i in range(1, len(series)):
        out[i] = alpha * series[i] + (1 - alpha) * out[i - 1]
    return out


def rsi(prices: Sequence[float], period: int = RSI_PERIOD) -> float:
    """Simple-average RSI over the last *period* changes; 50 when too short."""
    closes = np.asarray(prices, dtype=float)
    if len(closes) < period:
        return 50.0
    deltas = np.diff(closes)[-period:]
    avg_gain = float(np.where(deltas > 0, deltas, 0.0).sum()) / period
    avg_loss = float(np.where(deltas < 0, -deltas, 0.0).sum()) / period
    if avg_loss == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


def macd(prices: Sequence[float]) -> float:
    closes = np.asarray(prices, dtype=float)
    if len(closes) < MACD_SLOW:
        return 0.0
    return float(_ema(closes, MACD_FAST)[-1] - _ema(closes, MACD_SLOW)[-1])


def bollinger(prices: Sequence[float], period: int = BOLLINGER_PERIOD) -> tuple[float, float]:
    """(upper, lower); (0, 0) when fewer than *period* prices."""
    closes = np.asarray(prices, dtype=float)
    if len(closes) < period:
        return 0.0, 0.0
    window = closes[-period:]
    sma = float(window.mean())
    std = float(window.std())
    return sma + BOLLINGER_WIDTH * std, sma - BOLLINGER_WIDTH * std


def patterns(snapshot: FeatureSnapshot) -> list[str]:
    found = []
    if snapshot.trend_strength > 0.7:
        found.append("Strong Trend")
    if snapshot.volatility_regime == "high":
        found.append("High Volatility")
    if snapshot.spike_indicator:
        found.append("Price Spike")
    if snapshot.market_regime == "ranging":
        found.append("Range Bound")
    return found


def realtime_analysis(
    symbol: str,
    ticks: Sequence[Tick],
    snapshot: FeatureSnapshot | None,
    now: float | None = None,
) -> dict | None:
    """
    Chart points, indicators and pattern labels.

    Indicators use every price in *ticks* so MACD has enough history once the
    buffer holds 26 ticks; the chart shows only the last CHART_POINTS.
    """
    if snapshot is None or len(ticks) < CHART_POINTS:
        return None
    prices = [t.price for t in ticks]
    recent = list(ticks)[-CHART_POINTS:]
    upper, lower = bollinger(prices)

    signals = []
    if snapshot.trend_strength > AUTOMATED_SIGNAL_STRENGTH:
        rising = snapshot.momentum > 0
        signals.append({
            "type": "buy" if rising else "sell",
            "strength": snapshot.trend_strength,
            "timeframe": HORIZON_SEC,
            "reasoning": f"Strong {'upward' if rising else 'downward'} trend detected",
        })

    return {
        "symbol": symbol,
        "timestamp": (time.time() if now is None else now) * 1000.0,
        "chart_data": [{"price": t.price, "volume": 1, "timestamp": t.timestamp} for t in recent],
        "technical_indicators": {
            "rsi": rsi(prices),
            "macd": macd(prices),
            "bollinger_upper": upper,
            "bollinger_lower": lower,
            "moving_average": float(np.mean([t.price for t in recent])),
        },
        "pattern_recognition": {
            "patterns": patterns(snapshot),
            "confidence": predictor.digit_confidence(snapshot),
            "next_move": _direction(snapshot.momentum),
        },
        "automated_signals": signals,
    }
