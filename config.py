"""
config.py -- All tunable parameters for the digit consensus signal bot.

Every value here is loaded from environment variables so you can configure
the bot from your deployment dashboard (or a local .env file) without
touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen

The numeric weights and regime cut points below are unvalidated heuristics.
They are defaults for a tunable policy, not a calibrated model.
"""

import os

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


def _env_list(name, default):
    """Comma-separated env var -> list of stripped, non-empty strings."""
    raw = _env(name, default, str)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_floats(name, default):
    """Comma-separated floats.  A malformed value falls back to *default*."""
    try:
        return [float(x) for x in _env_list(name, default)]
    except ValueError:
        return [float(x) for x in default.split(",")]


# ---------------------------------------------------------------------------
# Deriv API connection
# ---------------------------------------------------------------------------

# Public Deriv application id.  1089 is Deriv's shared demo app id and is
# enough for unauthenticated tick subscriptions.
DERIV_APP_ID: str = _env("DERIV_APP_ID", "1089")

# WebSocket endpoint.  The app id is appended as a query parameter.
DERIV_WS_URL: str = _env(
    "DERIV_WS_URL", f"wss://ws.binaryws.com/websockets/v3?app_id={DERIV_APP_ID}"
)

# When True, ticks come from the built-in demo generator instead of the
# WebSocket.  Useful for local runs with no network.
DEMO_MODE: bool = _env("DEMO_MODE", False, bool)

# Seed for the demo tick generator.  0 = fresh entropy on every start.
DEMO_SEED: int = _env("DEMO_SEED", 0, int)

# Reconnect backoff: first delay and ceiling (seconds).  Each failed attempt
# doubles the delay until it hits the ceiling.
WS_RECONNECT_DELAY_SEC: float = _env("WS_RECONNECT_DELAY_SEC", 1.0, float)
WS_MAX_RECONNECT_DELAY_SEC: float = _env("WS_MAX_RECONNECT_DELAY_SEC", 30.0, float)

# Seconds between {"ping": 1} keep-alives on an idle connection.
WS_HEARTBEAT_SEC: float = _env("WS_HEARTBEAT_SEC", 30.0, float)

# ---------------------------------------------------------------------------
# Symbols
# ---------------------------------------------------------------------------

# Volatility indices offered by Deriv.  "_1S" variants tick every second.
VOLATILITY_INDICES: dict = {
    "R_10": "Volatility 10 Index",
    "R_10_1S": "Volatility 10 (1s) Index",
    "R_25": "Volatility 25 Index",
    "R_25_1S": "Volatility 25 (1s) Index",
    "R_50": "Volatility 50 Index",
    "R_50_1S": "Volatility 50 (1s) Index",
    "R_75": "Volatility 75 Index",
    "R_75_1S": "Volatility 75 (1s) Index",
    "R_100": "Volatility 100 Index",
    "R_100_1S": "Volatility 100 (1s) Index",
}

# Symbols subscribed at startup (comma-separated).
SYMBOLS: list = _env_list("SYMBOLS", "R_50")

# ---------------------------------------------------------------------------
# Buffers
# ---------------------------------------------------------------------------

# Ticks retained per symbol.  Older ticks fall off the front (FIFO).
TICK_BUFFER_SIZE: int = _env("TICK_BUFFER_SIZE", 100, int)

# Signals retained in the most-recent-first signal log.
SIGNAL_LOG_SIZE: int = _env("SIGNAL_LOG_SIZE", 50, int)

# Prices per symbol handed to the cross-symbol correlation.
CORRELATION_WINDOW: int = _env("CORRELATION_WINDOW", 20, int)

# ---------------------------------------------------------------------------
# Cadences (seconds)
# ---------------------------------------------------------------------------

# One consensus run per interval.  2.0s for the advanced model, the baseline
# dashboard used 2.5s.
ANALYSIS_INTERVAL_SEC: float = _env("ANALYSIS_INTERVAL_SEC", 2.0, float)

# Longer-horizon ("ten second") digit prediction.
HORIZON_INTERVAL_SEC: float = _env("HORIZON_INTERVAL_SEC", 10.0, float)

# Cross-symbol volatility analysis.
VOLATILITY_INTERVAL_SEC: float = _env("VOLATILITY_INTERVAL_SEC", 5.0, float)

# Runs per consensus cycle.  Votes are tallied after this many runs.
CYCLE_LENGTH: int = 4

# ---------------------------------------------------------------------------
# Risk settings
# ---------------------------------------------------------------------------

# Minimum top-digit probability (or band confidence) before a signal fires.
# Raising it: fewer, more selective signals.
PROBABILITY_THRESHOLD: float = _env("PROBABILITY_THRESHOLD", 0.75, float)

# Votes the consensus winner needs out of CYCLE_LENGTH runs (2-4).
REQUIRED_RUNS: int = _env("REQUIRED_RUNS", 3, int)

# Stake written into exported XML bot files (USD).
STAKE: float = _env("STAKE", 1.0, float)

# When False the engine still analyses and publishes predictions, but no
# signal is recorded.  Toggle at runtime via POST /api/action.
ACTIVE_TRADING: bool = _env("ACTIVE_TRADING", False, bool)

# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

# "advanced" (50-tick window, regime-aware) or "baseline" (30-tick window).
MODEL: str = _env("MODEL", "advanced")

# Random jitter on probabilities.  Off by default so identical ticks give
# identical predictions.  A non-zero seed makes enabled jitter reproducible.
NOISE_ENABLED: bool = _env("NOISE_ENABLED", False, bool)
NOISE_SEED: int = _env("NOISE_SEED", 0, int)

# Feature thresholds.  Empty env var = keep the variant preset.
SPIKE_MULTIPLIER: float = _env("SPIKE_MULTIPLIER", 0.0, float)
TREND_STRENGTH_TRENDING: float = _env("TREND_STRENGTH_TRENDING", 0.7, float)
SIGN_CHANGES_VOLATILE: int = _env("SIGN_CHANGES_VOLATILE", 8, int)
CALM_VOLATILITY: float = _env("CALM_VOLATILITY", 0.01, float)
VOLATILITY_CUTPOINTS: list = _env_floats("VOLATILITY_CUTPOINTS", "0.01,0.02,0.05")

# Advanced digit-model weights: frequency, trend, volatility, regime,
# sequence.  Must sum to 1.0.
DIGIT_WEIGHTS: list = _env_floats("DIGIT_WEIGHTS", "0.3,0.25,0.2,0.15,0.1")

# Baseline digit-model weights: frequency, trend, volatility, extreme digit.
BASELINE_DIGIT_WEIGHTS: list = _env_floats("BASELINE_DIGIT_WEIGHTS", "0.4,0.3,0.2,0.1")

# "mean" averages histogram mass over a band's digits, "sum" adds it up.
BAND_AGGREGATION: str = _env("BAND_AGGREGATION", "mean")

# |z| above which the tick store reports a market "shift".
MARKET_SHIFT_Z_THRESHOLD: float = _env("MARKET_SHIFT_Z_THRESHOLD", 3.0, float)

# ---------------------------------------------------------------------------
# Runtime / ops
# ---------------------------------------------------------------------------

LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# JSON API port.  0 disables the HTTP server.
HEALTH_PORT: int = _env("PORT", _env("HEALTH_PORT", 8080, int), int)

# Telegram bot token (from @BotFather) and your chat ID (from @userinfobot).
TELEGRAM_BOT_TOKEN: str = _env("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = _env("TELEGRAM_CHAT_ID", "")


# ---------------------------------------------------------------------------
# Builders for the frozen engine configs
# ---------------------------------------------------------------------------

def feature_config():
    """FeatureConfig for MODEL with any env overrides applied."""
    from dataclasses import replace

    import feature_extractor

    if MODEL == "baseline":
        cfg = feature_extractor.FeatureConfig.baseline()
    else:
        cfg = feature_extractor.FeatureConfig.advanced()
    overrides = {
        "trend_strength_trending": TREND_STRENGTH_TRENDING,
        "sign_changes_volatile": SIGN_CHANGES_VOLATILE,
        "calm_volatility": CALM_VOLATILITY,
        "volatility_cutpoints": tuple(VOLATILITY_CUTPOINTS),
        "correlation_window": CORRELATION_WINDOW,
    }
    if SPIKE_MULTIPLIER > 0:
        overrides["spike_multiplier"] = SPIKE_MULTIPLIER
    return replace(cfg, **overrides)


def predictor_config():
    """PredictorConfig for MODEL."""
    import predictor

    return predictor.PredictorConfig(
        model=MODEL,
        weights=tuple(DIGIT_WEIGHTS),
        baseline_weights=tuple(BASELINE_DIGIT_WEIGHTS),
        band_aggregation=BAND_AGGREGATION,
    )


def risk_settings():
    """RiskSettings from the env values (validated)."""
    import consensus

    return consensus.RiskSettings(
        probability_threshold=PROBABILITY_THRESHOLD,
        required_runs=REQUIRED_RUNS,
        stake=STAKE,
        cycle_length=CYCLE_LENGTH,
    )


def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    feed = "DEMO (synthetic ticks)" if DEMO_MODE else DERIV_WS_URL
    lines = [
        "",
        "=" * 60,
        "  DIGIT CONSENSUS SIGNAL BOT",
        "=" * 60,
        f"  Feed:            {feed}",
        f"  Symbols:         {', '.join(SYMBOLS) or '(none)'}",
        f"  Model:           {MODEL} (noise {'on' if NOISE_ENABLED else 'off'})",
        f"  Threshold:       {PROBABILITY_THRESHOLD:.2f}",
        f"  Required runs:   {REQUIRED_RUNS} of {CYCLE_LENGTH}",
        f"  Analysis every:  {ANALYSIS_INTERVAL_SEC:.1f}s",
        f"  Active trading:  {ACTIVE_TRADING}",
        f"  Stake:           ${STAKE:.2f}",
        f"  Health port:     {HEALTH_PORT}",
        f"  Log level:       {LOG_LEVEL}",
        f"  Telegram:        {'configured' if TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID else 'NOT SET'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
