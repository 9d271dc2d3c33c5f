"""
predictor.py -- Digit and band probability estimates from a FeatureSnapshot.

Two models share one contract:

    predict_digits(snapshot) -> 10 DigitPrediction, probabilities sum to 1
    predict_band(snapshot)   -> BandPrediction for the over-2 / under-7 contracts

The digit model is a weighted blend of the empirical digit frequency and a
set of adjustments:

    p(d) = sum_i w_i * (base(d) + adj_i(d))      with sum_i w_i == 1

so a snapshot where every adjustment is zero reproduces the base frequency.
Each p(d) is clamped to [0.01, 0.9] and the ten values are then rescaled to
sum to 1.

Confidence is scored separately from probability (trend strength, volatility
regime, market regime, spike flag).

Random jitter is opt-in through NoiseSource.  With the default disabled
source both models are deterministic functions of the snapshot.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from typing import Sequence

import numpy as np

from feature_extractor import FeatureSnapshot


DIGITS = tuple(range(10))
OVER2_DIGITS = (3, 4, 5, 6, 7, 8, 9)
UNDER7_DIGITS = (0, 1, 2, 3, 4, 5, 6)
OVER_UNDER_SETS = {
    "over0to8": (0, 1, 2, 3, 4, 5, 6, 7, 8),
    "under9to1": (9, 1),
    "over2to9": (2, 3, 4, 5, 6, 7, 8, 9),
    "under0to7": (0, 1, 2, 3, 4, 5, 6, 7),
}

PROB_FLOOR = 0.01
PROB_CEILING = 0.9
BAND_FLOOR = 0.1
BAND_CEILING = 0.9

VOLATILITY_MULTIPLIER = {"low": 0.5, "medium": 1.0, "high": 1.5, "extreme": 2.0}

TIME_HORIZON_SEC = 10


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(float(value), hi))


class NoiseSource:
    """
    Optional uniform jitter.

    Disabled (the default) every draw is neutral.  Enabled with a seed the
    sequence of draws is reproducible.
    """

    def __init__(self, enabled: bool = False, seed: int | None = None) -> None:
        self.enabled = bool(enabled)
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def centered(self, scale: float) -> float:
        """Uniform draw in [-scale/2, scale/2); 0.0 when disabled."""
        if not self.enabled:
            return 0.0
        return (float(self._rng.random()) - 0.5) * scale

    def factor(self, spread: float) -> float:
        """Multiplicative jitter in [1 - spread/2, 1 + spread/2); 1.0 when disabled."""
        return 1.0 + self.centered(spread)


_SILENT = NoiseSource()


@dataclass(frozen=True)
class PredictorConfig:
    model: str = "advanced"
    # frequency, trend, volatility, regime, sequence
    weights: tuple[float, ...] = (0.3, 0.25, 0.2, 0.15, 0.1)
    # frequency, trend, volatility, extreme digit
    baseline_weights: tuple[float, ...] = (0.4, 0.3, 0.2, 0.1)
    band_aggregation: str = "mean"
    momentum_scale: float = 0.15
    trending_scale: float = 0.1
    calm_adjustment: float = -0.05
    sequence_bonus: float = 0.1
    high_volatility: float = 0.02
    band_high_volatility: float = 0.015
    band_sign_changes: int = 3

    def __post_init__(self) -> None:
        if self.model not in ("advanced", "baseline"):
            raise ValueError(f"model must be 'advanced' or 'baseline', got {self.model!r}")
        if len(self.weights) != 5:
            raise ValueError(f"weights needs 5 values, got {len(self.weights)}")
        if len(self.baseline_weights) != 4:
            raise ValueError(f"baseline_weights needs 4 values, got {len(self.baseline_weights)}")
        for name, ws in (("weights", self.weights), ("baseline_weights", self.baseline_weights)):
            if any(w < 0 for w in ws) or not math.isclose(sum(ws), 1.0, abs_tol=1e-9):
                raise ValueError(f"{name} must be non-negative and sum to 1.0, got {ws}")
        if self.band_aggregation not in ("mean", "sum"):
            raise ValueError(f"band_aggregation must be 'mean' or 'sum', got {self.band_aggregation!r}")


@dataclass(frozen=True)
class DigitPrediction:
    digit: int
    probability: float
    confidence: float
    raw_probability: float = 0.0    # clamped, before normalization
    time_horizon: int = TIME_HORIZON_SEC
    volatility_impact: float = 0.0
    trend_alignment: float = 0.0
    sequence_pattern: bool = False
    market_regime_alignment: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class BandPrediction:
    over2: float
    under7: float
    confidence: float
    over_under_analysis: dict[str, float] = field(default_factory=dict)
    volatility_adjusted: bool = False
    trend_based: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

def digit_confidence(snapshot: FeatureSnapshot) -> float:
    score = 0.4
    if snapshot.trend_strength > 0.5:
        score += 0.2
    if snapshot.volatility_regime == "low":
        score += 0.2
    if snapshot.market_regime == "trending":
        score += 0.1
    if snapshot.spike_indicator:
        score += 0.1
    return _clamp(score, 0.0, 1.0)


def band_confidence(snapshot: FeatureSnapshot, over2: float, under7: float) -> float:
    score = 0.5
    if snapshot.volatility_regime == "low":
        score += 0.2
    if snapshot.market_regime == "trending":
        score += 0.15
    if abs(over2 - under7) > 0.1:
        score += 0.15
    return _clamp(score, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Digit models
# ---------------------------------------------------------------------------

def _normalize(rows: list[DigitPrediction]) -> list[DigitPrediction]:
    total = sum(p.raw_probability for p in rows)
    return [
        DigitPrediction(**{**asdict(p), "probability": p.raw_probability / total})
        for p in rows
    ]


def _digit_side(digit: int) -> int:
    return 1 if digit > 4 else -1


def _predict_digits_advanced(
    snapshot: FeatureSnapshot,
    cfg: PredictorConfig,
    noise: NoiseSource,
) -> list[DigitPrediction]:
    _w_freq, w_trend, w_vol, w_regime, w_seq = cfg.weights
    confidence = digit_confidence(snapshot)
    vol_mult = VOLATILITY_MULTIPLIER.get(snapshot.volatility_regime, 1.0)
    if snapshot.std > 0:
        momentum_factor = math.tanh(snapshot.momentum / snapshot.std) * cfg.momentum_scale
    else:
        momentum_factor = 0.0
    direction = 1 if snapshot.momentum >= 0 else -1
    repeated = set(snapshot.digit_sequences)

    rows = []
    for digit in DIGITS:
        base = snapshot.digit_histogram.get(digit, 0.0)
        side = _digit_side(digit)
        trend_adj = momentum_factor * side
        vol_adj = noise.centered(0.1) * vol_mult

        if snapshot.market_regime == "trending":
            regime_adj = snapshot.trend_strength * cfg.trending_scale * side * direction
        elif snapshot.market_regime == "volatile":
            regime_adj = noise.centered(0.2)
        elif snapshot.market_regime == "calm":
            regime_adj = cfg.calm_adjustment
        else:
            regime_adj = 0.0

        seq_adj = cfg.sequence_bonus if digit in repeated else 0.0

        p = (
            base
            + w_trend * trend_adj
            + w_vol * vol_adj
            + w_regime * regime_adj
            + w_seq * seq_adj
        )
        rows.append(DigitPrediction(
            digit=digit,
            probability=0.0,
            confidence=confidence,
            raw_probability=_clamp(p, PROB_FLOOR, PROB_CEILING),
            volatility_impact=vol_adj,
            trend_alignment=trend_adj,
            sequence_pattern=digit in repeated,
            market_regime_alignment=regime_adj,
        ))
    return _normalize(rows)


def _predict_digits_baseline(
    snapshot: FeatureSnapshot,
    cfg: PredictorConfig,
    noise: NoiseSource,
) -> list[DigitPrediction]:
    _w_freq, w_trend, w_vol, w_extreme = cfg.baseline_weights
    confidence = digit_confidence(snapshot)
    trend_adj = 0.05 if snapshot.average_velocity > snapshot.std else 0.0
    vol_adj = 0.1 if snapshot.volatility > cfg.high_volatility else 0.0

    rows = []
    for digit in DIGITS:
        base = snapshot.digit_histogram.get(digit, 0.0)
        # Spikes favour the extreme digits.
        extreme_adj = 0.15 if digit in (0, 9) and snapshot.spike_indicator else 0.0
        p = base + w_trend * trend_adj + w_vol * vol_adj + w_extreme * extreme_adj
        p = _clamp(p, PROB_FLOOR, PROB_CEILING) * noise.factor(0.4)
        rows.append(DigitPrediction(
            digit=digit,
            probability=0.0,
            confidence=confidence,
            raw_probability=_clamp(p, PROB_FLOOR, PROB_CEILING),
            volatility_impact=vol_adj,
            trend_alignment=trend_adj,
            sequence_pattern=digit in snapshot.digit_sequences,
        ))
    return _normalize(rows)


def predict_digits(
    snapshot: FeatureSnapshot,
    cfg: PredictorConfig | None = None,
    noise: NoiseSource | None = None,
) -> list[DigitPrediction]:
    """Ten predictions in digit order; probabilities sum to 1."""
    cfg = cfg or PredictorConfig()
    noise = noise or _SILENT
    if cfg.model == "baseline":
        return _predict_digits_baseline(snapshot, cfg, noise)
    return _predict_digits_advanced(snapshot, cfg, noise)


# ---------------------------------------------------------------------------
# Band models
# ---------------------------------------------------------------------------

def _mass(histogram: dict[int, float], digits: Sequence[int], how: str) -> float:
    total = sum(histogram.get(d, 0.0) for d in digits)
    return total if how == "sum" else total / len(digits)


def predict_band(
    snapshot: FeatureSnapshot,
    cfg: PredictorConfig | None = None,
    noise: NoiseSource | None = None,
) -> BandPrediction:
    """
    Over-2 (digits 3-9) and under-7 (digits 0-6) estimates.

    The two sets overlap; they price independent contracts and are not
    complementary.
    """
    cfg = cfg or PredictorConfig()
    noise = noise or _SILENT
    hist = snapshot.digit_histogram
    over2 = _mass(hist, OVER2_DIGITS, cfg.band_aggregation)
    under7 = _mass(hist, UNDER7_DIGITS, cfg.band_aggregation)
    analysis = {name: _mass(hist, digits, cfg.band_aggregation) for name, digits in OVER_UNDER_SETS.items()}

    if cfg.model == "baseline":
        boost = 0.1 if snapshot.volatility > cfg.band_high_volatility else 0.0
        boost += 0.05 if snapshot.sign_changes > cfg.band_sign_changes else 0.0
        over2 = (over2 + boost) * noise.factor(0.2)
        under7 = (under7 + boost) * noise.factor(0.2)
        over2 = _clamp(over2, BAND_FLOOR, BAND_CEILING)
        under7 = _clamp(under7, BAND_FLOOR, BAND_CEILING)
        return BandPrediction(
            over2=over2,
            under7=under7,
            confidence=band_confidence(snapshot, over2, under7),
            over_under_analysis=analysis,
            volatility_adjusted=boost > 0,
            trend_based=False,
        )

    recent_trend = sum(snapshot.last_deltas[-5:])
    boost = VOLATILITY_MULTIPLIER.get(snapshot.volatility_regime, 1.0) * 0.1
    if snapshot.market_regime == "trending":
        regime_adj = 0.1 if recent_trend > 0 else -0.1
    elif snapshot.market_regime == "volatile":
        regime_adj = noise.centered(0.15)
    else:
        regime_adj = 0.0

    over2 = _clamp(over2 + boost + regime_adj, BAND_FLOOR, BAND_CEILING)
    under7 = _clamp(under7 + boost - regime_adj, BAND_FLOOR, BAND_CEILING)
    return BandPrediction(
        over2=over2,
        under7=under7,
        confidence=band_confidence(snapshot, over2, under7),
        over_under_analysis=analysis,
        volatility_adjusted=True,
        trend_based=snapshot.market_regime == "trending",
    )


# ---------------------------------------------------------------------------
# Selection helpers
# ---------------------------------------------------------------------------

def top_digit(predictions: Sequence[DigitPrediction]) -> DigitPrediction:
    """Highest probability; the lowest digit wins exact ties."""
    if not predictions:
        raise ValueError("no digit predictions")
    return min(predictions, key=lambda p: (-p.probability, p.digit))


def top_band(band: BandPrediction) -> str:
    return "over2" if band.over2 > band.under7 else "under7"


def ranked(predictions: Sequence[DigitPrediction]) -> list[DigitPrediction]:
    return sorted(predictions, key=lambda p: (-p.probability, p.digit))
