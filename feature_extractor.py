"""
feature_extractor.py -- Window statistics for the digit predictor.

Turns the tail of one symbol's tick buffer into a FeatureSnapshot:

    - price statistics: mean, population std, coefficient of variation
    - motion: deltas, sign flips, velocity, momentum, acceleration
    - digits: last-digit histogram and immediately repeated digits
    - regimes: a market regime and a volatility regime from threshold ladders
    - cross-symbol: Pearson correlation against other symbols' recent prices

Pure functions only.  Other symbols' prices are passed in by the caller as a
read-only mapping; nothing here reaches into shared buffers.

Two presets mirror the two dashboards the model came from: "baseline"
(10 tick minimum, 30 tick window) and "advanced" (20 / 50).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from typing import Mapping, Sequence

import numpy as np

from tick_buffer import Tick


class DegenerateSnapshotError(ValueError):
    """Window statistics are undefined (zero mean or non-finite prices)."""


@dataclass(frozen=True)
class FeatureConfig:
    min_ticks: int = 20
    window: int = 50
    last_deltas: int = 10
    spike_multiplier: float = 2.5
    momentum_span: int = 5
    cluster_multiplier: float = 1.5
    # Market regime ladder, evaluated in this order: trending, volatile, calm.
    trend_strength_trending: float = 0.7
    sign_changes_volatile: int = 8
    calm_volatility: float = 0.01
    # Volatility ratio cut points: low < [0] <= medium < [1] <= high < [2] <= extreme
    volatility_cutpoints: tuple[float, float, float] = (0.01, 0.02, 0.05)
    correlation_window: int = 20

    def __post_init__(self) -> None:
        if self.min_ticks < 2:
            raise ValueError(f"min_ticks must be >= 2, got {self.min_ticks}")
        if self.window < self.min_ticks:
            raise ValueError(f"window ({self.window}) must be >= min_ticks ({self.min_ticks})")
        if self.spike_multiplier <= 0:
            raise ValueError(f"spike_multiplier must be positive, got {self.spike_multiplier}")
        cuts = tuple(self.volatility_cutpoints)
        if len(cuts) != 3 or list(cuts) != sorted(cuts):
            raise ValueError(f"volatility_cutpoints must be 3 ascending values, got {cuts}")

    @classmethod
    def baseline(cls) -> "FeatureConfig":
        return cls(min_ticks=10, window=30, last_deltas=5, spike_multiplier=2.0)

    @classmethod
    def advanced(cls) -> "FeatureConfig":
        return cls()


@dataclass(frozen=True)
class FeatureSnapshot:
    symbol: str
    tick_count: int
    mean: float
    std: float
    last_deltas: tuple[float, ...]
    sign_changes: int
    digit_histogram: dict[int, float]
    average_velocity: float
    spike_indicator: bool
    volatility: float
    momentum: float = 0.0
    price_acceleration: float = 0.0
    trend_strength: float = 0.0
    market_regime: str = "ranging"
    volatility_regime: str = "low"
    digit_sequences: tuple[int, ...] = ()
    volatility_clusters: tuple[int, ...] = ()
    cross_volatility_correlation: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = asdict(self)
        out["last_deltas"] = list(self.last_deltas)
        out["digit_sequences"] = list(self.digit_sequences)
        out["volatility_clusters"] = list(self.volatility_clusters)
        out["digit_histogram"] = {str(k): v for k, v in self.digit_histogram.items()}
        return out


def classify_market_regime(
    trend_strength: float,
    sign_changes: int,
    volatility: float,
    cfg: FeatureConfig,
) -> str:
    """First matching rung wins: trending, then volatile, then calm, else ranging."""
    if trend_strength > cfg.trend_strength_trending:
        return "trending"
    if sign_changes > cfg.sign_changes_volatile:
        return "volatile"
    if volatility < cfg.calm_volatility:
        return "calm"
    return "ranging"


def classify_volatility_regime(volatility: float, cfg: FeatureConfig) -> str:
    low, medium, high = cfg.volatility_cutpoints
    if volatility < low:
        return "low"
    if volatility < medium:
        return "medium"
    if volatility < high:
        return "high"
    return "extreme"


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation; 0.0 for mismatched lengths, empty input or zero variance."""
    if len(x) != len(y) or len(x) == 0:
        return 0.0
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    da = a - a.mean()
    db = b - b.mean()
    den_sq = float(np.dot(da, da)) * float(np.dot(db, db))
    if den_sq <= 0:
        return 0.0
    return float(np.dot(da, db)) / math.sqrt(den_sq)


def _sign_changes(deltas: np.ndarray) -> int:
    if len(deltas) < 2:
        return 0
    signs = np.sign(deltas)
    return int(np.count_nonzero(signs[1:] != signs[:-1]))


def _volatility_clusters(deltas: np.ndarray, threshold: float) -> tuple[int, ...]:
    """Lengths of consecutive runs of |delta| above threshold."""
    clusters: list[int] = []
    run = 0
    for big in np.abs(deltas) > threshold:
        if big:
            run += 1
        elif run:
            clusters.append(run)
            run = 0
    if run:
        clusters.append(run)
    return tuple(clusters)


def _digit_sequences(digits: Sequence[int]) -> tuple[int, ...]:
    return tuple(digits[i] for i in range(1, len(digits)) if digits[i] == digits[i - 1])


def extract(
    ticks: Sequence[Tick],
    cfg: FeatureConfig | None = None,
    other_prices: Mapping[str, Sequence[float]] | None = None,
    symbol: str = "",
) -> FeatureSnapshot | None:
    """
    Build a FeatureSnapshot from the trailing window of *ticks* (oldest first).

    Returns None when fewer than cfg.min_ticks ticks are available.
    Raises DegenerateSnapshotError when the window mean is zero or any price
    is non-finite.
    """
    cfg = cfg or FeatureConfig.advanced()
    if len(ticks) < cfg.min_ticks:
        return None

    recent = list(ticks)[-cfg.window:]
    symbol = symbol or recent[-1].symbol
    prices = np.asarray([t.price for t in recent], dtype=float)
    digits = [int(t.last_digit) for t in recent]

    if not np.all(np.isfinite(prices)):
        raise DegenerateSnapshotError(f"{symbol}: non-finite price in window")
    mean = float(prices.mean())
    if mean == 0.0:
        raise DegenerateSnapshotError(f"{symbol}: zero mean price, volatility undefined")
    std = float(prices.std())  # population (ddof=0)
    volatility = std / mean

    deltas = np.diff(prices)
    last_delta = float(deltas[-1]) if len(deltas) else 0.0
    average_velocity = float(np.abs(deltas).mean()) if len(deltas) else 0.0
    sign_changes = _sign_changes(deltas)

    counts = np.bincount(np.asarray(digits, dtype=int), minlength=10)[:10]
    histogram = {d: float(counts[d]) / len(digits) for d in range(10)}

    momentum = float(deltas[-cfg.momentum_span:].sum()) if len(deltas) else 0.0
    # Discrete second derivative: mean change of the last three deltas.
    if len(deltas) >= 4:
        price_acceleration = float(np.diff(deltas[-4:]).mean())
    else:
        price_acceleration = 0.0
    if std > 0:
        trend_strength = abs(momentum) / (std * math.sqrt(cfg.momentum_span))
    else:
        trend_strength = 0.0

    correlations: dict[str, float] = {}
    if other_prices:
        window_prices = prices[-cfg.correlation_window:].tolist()
        for other, series in sorted(other_prices.items()):
            if other == symbol or not series:
                continue
            correlations[other] = pearson(window_prices, list(series)[-cfg.correlation_window:])

    return FeatureSnapshot(
        symbol=symbol,
        tick_count=len(recent),
        mean=mean,
        std=std,
        last_deltas=tuple(float(d) for d in deltas[-cfg.last_deltas:]),
        sign_changes=sign_changes,
        digit_histogram=histogram,
        average_velocity=average_velocity,
        spike_indicator=abs(last_delta) > std * cfg.spike_multiplier,
        volatility=volatility,
        momentum=momentum,
        price_acceleration=price_acceleration,
        trend_strength=trend_strength,
        market_regime=classify_market_regime(trend_strength, sign_changes, volatility, cfg),
        volatility_regime=classify_volatility_regime(volatility, cfg),
        digit_sequences=_digit_sequences(digits),
        volatility_clusters=_volatility_clusters(deltas, std * cfg.cluster_multiplier),
        cross_volatility_correlation=correlations,
    )
