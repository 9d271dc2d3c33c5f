"""
consensus.py -- Multi-run consensus engine and the signal log.

One engine per symbol.  Every analysis tick the engine extracts a snapshot,
runs both predictors, publishes the result to its observers and files one
vote.  After CYCLE_LENGTH votes it tallies them:

    idle --run--> accumulating --run x (cycle_length-1)--> evaluating --> idle

A digit signal needs the winning digit to collect required_runs votes AND
the latest top-digit probability to clear the threshold.  Only when that
fails is a band signal considered (winning band != none, enough votes, latest
band confidence over the threshold).

Ties are explicit: the lowest digit wins a digit tie, and over2 beats under7
beats none for bands.

The engine never raises out of run_cycle().  Insufficient data leaves it
idle, degenerate windows are skipped, and anything else is logged and
reported to observers as AnalysisFailed while the accumulator is left as it
was.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import feature_extractor
import predictor
from feature_extractor import FeatureConfig, FeatureSnapshot
from predictor import BandPrediction, DigitPrediction, NoiseSource, PredictorConfig
from tick_buffer import Tick

logger = logging.getLogger(__name__)

SIGNAL_TYPES = ("exact_digit", "over_under")
SIGNAL_STATUSES = ("pending", "won", "lost", "cancelled")
BAND_ORDER = ("over2", "under7", "none")

STATE_IDLE = "idle"
STATE_ACCUMULATING = "accumulating"
STATE_EVALUATING = "evaluating"


@dataclass(frozen=True)
class RiskSettings:
    probability_threshold: float = 0.75
    required_runs: int = 3
    stake: float = 1.0
    cycle_length: int = 4

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability_threshold <= 1.0:
            raise ValueError(
                f"probability_threshold must be in [0, 1], got {self.probability_threshold}"
            )
        if self.cycle_length < 1:
            raise ValueError(f"cycle_length must be >= 1, got {self.cycle_length}")
        if not 2 <= self.required_runs <= 4:
            raise ValueError(f"required_runs must be in [2, 4], got {self.required_runs}")
        if self.required_runs > self.cycle_length:
            raise ValueError(
                f"required_runs ({self.required_runs}) exceeds cycle_length ({self.cycle_length})"
            )
        if self.stake <= 0:
            raise ValueError(f"stake must be positive, got {self.stake}")


@dataclass(frozen=True)
class RunResult:
    digit: int
    band: str   # over2 | under7 | none


@dataclass
class TradingSignal:
    id: str
    symbol: str
    timestamp: float    # epoch milliseconds
    type: str
    predicted_digit: int | None
    predicted_band: str | None
    confidence: float
    runs: int
    status: str = "pending"
    features: FeatureSnapshot | None = None

    def __post_init__(self) -> None:
        if self.type not in SIGNAL_TYPES:
            raise ValueError(f"unknown signal type {self.type!r}")
        if self.status not in SIGNAL_STATUSES:
            raise ValueError(f"unknown signal status {self.status!r}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "timestamp": self.timestamp,
            "type": self.type,
            "predicted_digit": self.predicted_digit,
            "predicted_band": self.predicted_band,
            "confidence": self.confidence,
            "runs": self.runs,
            "status": self.status,
            "features": self.features.to_dict() if self.features else None,
        }


class SignalLog:
    """Bounded, most-recent-first signal history shared across symbols."""

    def __init__(self, capacity: int = 50) -> None:
        self.capacity = max(1, int(capacity))
        self._lock = threading.Lock()
        self._signals: deque[TradingSignal] = deque(maxlen=self.capacity)

    def append(self, signal: TradingSignal) -> None:
        with self._lock:
            self._signals.appendleft(signal)

    def get(self, signal_id: str) -> TradingSignal | None:
        with self._lock:
            for signal in self._signals:
                if signal.id == signal_id:
                    return signal
        return None

    def list(self, symbol: str | None = None) -> list[TradingSignal]:
        with self._lock:
            signals = list(self._signals)
        if symbol:
            signals = [s for s in signals if s.symbol == symbol]
        return signals

    def update_status(self, signal_id: str, status: str) -> bool:
        """Record the outcome reported by whoever executed the signal."""
        if status not in SIGNAL_STATUSES:
            raise ValueError(f"unknown signal status {status!r}")
        with self._lock:
            for signal in self._signals:
                if signal.id == signal_id:
                    signal.status = status
                    return True
        return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._signals)


# ---------------------------------------------------------------------------
# Observer events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnalysisPublished:
    symbol: str
    snapshot: FeatureSnapshot
    digits: tuple[DigitPrediction, ...]
    band: BandPrediction


@dataclass(frozen=True)
class AnalysisFailed:
    symbol: str
    error: str


@dataclass(frozen=True)
class SignalEmitted:
    signal: TradingSignal


Observer = Callable[[object], None]


def tally_digits(results: Sequence[RunResult]) -> tuple[int | None, int]:
    """(winning digit, votes); lowest digit wins ties."""
    votes = Counter(r.digit for r in results)
    if not votes:
        return None, 0
    digit, count = min(votes.items(), key=lambda kv: (-kv[1], kv[0]))
    return digit, count


def tally_bands(results: Sequence[RunResult]) -> tuple[str | None, int]:
    """(winning band, votes); over2 beats under7 beats none on ties."""
    votes = Counter(r.band for r in results)
    if not votes:
        return None, 0
    band, count = min(votes.items(), key=lambda kv: (-kv[1], BAND_ORDER.index(kv[0])))
    return band, count


@dataclass(frozen=True)
class _Latest:
    snapshot: FeatureSnapshot | None = None
    digits: tuple[DigitPrediction, ...] = ()
    band: BandPrediction | None = None


class ConsensusEngine:
    """Accumulates per-run votes for one symbol and decides when to signal."""

    def __init__(
        self,
        symbol: str,
        risk: RiskSettings,
        feature_cfg: FeatureConfig,
        predictor_cfg: PredictorConfig,
        signal_log: SignalLog,
        noise: NoiseSource | None = None,
        clock: Callable[[], float] = time.time,
        active_trading: bool = False,
    ) -> None:
        self.symbol = symbol
        self.risk = risk
        self.feature_cfg = feature_cfg
        self.predictor_cfg = predictor_cfg
        self.signal_log = signal_log
        self.noise = noise or NoiseSource()
        self._clock = clock
        self._active_trading = bool(active_trading)
        self._observers: list[Observer] = []
        self._results: list[RunResult] = []
        self._state = STATE_IDLE
        self._latest = _Latest()

    # -- observers ---------------------------------------------------------

    def add_observer(self, callback: Observer) -> None:
        self._observers.append(callback)

    def _publish(self, event: object) -> None:
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:
                logger.exception("%s: observer %r failed on %s", self.symbol, callback, type(event).__name__)

    # -- state -------------------------------------------------------------

    @property
    def active_trading(self) -> bool:
        return self._active_trading

    @active_trading.setter
    def active_trading(self, value: bool) -> None:
        self._active_trading = bool(value)

    @property
    def state(self) -> str:
        return self._state

    @property
    def run_count(self) -> int:
        return len(self._results)

    @property
    def results(self) -> tuple[RunResult, ...]:
        return tuple(self._results)

    @property
    def latest(self) -> _Latest:
        """Snapshot, digits and band of the same run, read in one step."""
        return self._latest

    @property
    def last_snapshot(self) -> FeatureSnapshot | None:
        return self._latest.snapshot

    @property
    def last_digits(self) -> tuple[DigitPrediction, ...]:
        return self._latest.digits

    @property
    def last_band(self) -> BandPrediction | None:
        return self._latest.band

    def reset(self) -> None:
        self._results = []
        self._state = STATE_IDLE

    # -- analysis ----------------------------------------------------------

    def _analyze(
        self,
        ticks: Sequence[Tick],
        other_prices: Mapping[str, Sequence[float]] | None,
    ) -> tuple[FeatureSnapshot, tuple[DigitPrediction, ...], BandPrediction] | None:
        snapshot = feature_extractor.extract(
            ticks, self.feature_cfg, other_prices=other_prices, symbol=self.symbol,
        )
        if snapshot is None:
            return None
        digits = tuple(predictor.predict_digits(snapshot, self.predictor_cfg, self.noise))
        band = predictor.predict_band(snapshot, self.predictor_cfg, self.noise)
        return snapshot, digits, band

    def run_cycle(
        self,
        ticks: Sequence[Tick],
        other_prices: Mapping[str, Sequence[float]] | None = None,
    ) -> TradingSignal | None:
        """
        One analysis run.  Returns the signal recorded at the end of a cycle,
        or None.
        """
        try:
            analysis = self._analyze(ticks, other_prices)
        except feature_extractor.DegenerateSnapshotError as e:
            logger.warning("%s: skipping run, %s", self.symbol, e)
            return None
        except Exception as e:
            logger.exception("%s: analysis failed", self.symbol)
            self._publish(AnalysisFailed(self.symbol, str(e)))
            return None

        if analysis is None:
            logger.debug("%s: %d ticks, waiting for more", self.symbol, len(ticks))
            return None

        snapshot, digits, band = analysis
        self._latest = _Latest(snapshot, digits, band)
        self._publish(AnalysisPublished(self.symbol, snapshot, digits, band))

        best = predictor.top_digit(digits)
        if best.probability >= self.risk.probability_threshold:
            vote = RunResult(best.digit, "none")
        else:
            vote = RunResult(best.digit, predictor.top_band(band))
        self._results.append(vote)
        self._state = STATE_ACCUMULATING
        logger.debug(
            "%s: run %d/%d digit=%d p=%.3f band=%s",
            self.symbol, len(self._results), self.risk.cycle_length,
            best.digit, best.probability, vote.band,
        )

        if len(self._results) < self.risk.cycle_length:
            return None

        self._state = STATE_EVALUATING
        try:
            return self._evaluate(best, band, snapshot)
        finally:
            self.reset()

    def _evaluate(
        self,
        best: DigitPrediction,
        band: BandPrediction,
        snapshot: FeatureSnapshot,
    ) -> TradingSignal | None:
        digit, digit_votes = tally_digits(self._results)
        band_label, band_votes = tally_bands(self._results)
        runs = len(self._results)
        threshold = self.risk.probability_threshold
        required = self.risk.required_runs

        if digit is not None and digit_votes >= required and best.probability >= threshold:
            signal = self._make_signal("exact_digit", digit, None, best.confidence, runs, snapshot)
        elif band_label not in (None, "none") and band_votes >= required and band.confidence >= threshold:
            signal = self._make_signal("over_under", None, band_label, band.confidence, runs, snapshot)
        else:
            logger.info(
                "%s: no consensus (digit %s x%d, band %s x%d)",
                self.symbol, digit, digit_votes, band_label, band_votes,
            )
            return None
        return self._emit(signal)

    def force_signal(self) -> TradingSignal | None:
        """
        Manual override: decide on the latest run alone.

        Same threshold and digit-before-band priority as a full cycle, but
        ignores the active-trading switch and the vote count.
        """
        latest = self._latest
        digits, band = latest.digits, latest.band
        if not digits or band is None:
            logger.info("%s: force_signal with no analysis yet", self.symbol)
            return None
        threshold = self.risk.probability_threshold
        best = predictor.top_digit(digits)
        if best.probability >= threshold:
            signal = self._make_signal("exact_digit", best.digit, None, best.confidence, 1, latest.snapshot)
        elif band.confidence >= threshold:
            signal = self._make_signal(
                "over_under", None, predictor.top_band(band), band.confidence, 1, latest.snapshot,
            )
        else:
            logger.info(
                "%s: force_signal below threshold (digit p=%.3f, band conf=%.3f)",
                self.symbol, best.probability, band.confidence,
            )
            return None
        self.signal_log.append(signal)
        logger.info("%s: forced %s", self.symbol, _describe(signal))
        self._publish(SignalEmitted(signal))
        return signal

    def _make_signal(
        self,
        kind: str,
        digit: int | None,
        band: str | None,
        confidence: float,
        runs: int,
        snapshot: FeatureSnapshot | None,
    ) -> TradingSignal:
        return TradingSignal(
            id=str(uuid.uuid4()),
            symbol=self.symbol,
            timestamp=self._clock() * 1000.0,
            type=kind,
            predicted_digit=digit,
            predicted_band=band,
            confidence=float(confidence),
            runs=runs,
            features=snapshot,
        )

    def _emit(self, signal: TradingSignal) -> TradingSignal | None:
        if not self._active_trading:
            logger.info("%s: consensus %s (not recorded, trading inactive)", self.symbol, _describe(signal))
            return None
        self.signal_log.append(signal)
        logger.info("%s: signal %s", self.symbol, _describe(signal))
        self._publish(SignalEmitted(signal))
        return signal


def _describe(signal: TradingSignal) -> str:
    target = f"digit {signal.predicted_digit}" if signal.type == "exact_digit" else signal.predicted_band
    return f"{target} conf={signal.confidence:.2f} runs={signal.runs}"
