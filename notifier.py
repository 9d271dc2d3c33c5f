"""
notifier.py -- Telegram notifications for the digit consensus signal bot.

Sends alerts via the Telegram Bot API for:
  - Bot startup / shutdown
  - Each recorded signal (with the digit or band and its confidence)
  - Analysis errors (rate limited per symbol)

SETUP:
  1. Message @BotFather on Telegram to create a bot -> get TELEGRAM_BOT_TOKEN
  2. Message @userinfobot to find your TELEGRAM_CHAT_ID
  3. Set both as environment variables

ZERO DEPENDENCIES:
  Uses urllib.request to POST to https://api.telegram.org/bot{token}/sendMessage
"""

import html
import json
import logging
import threading
import time
import urllib.error
import urllib.request

import config

logger = logging.getLogger(__name__)

# Telegram Bot API base URL template
TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"

# Minimum seconds between two analysis-error alerts for the same symbol
ERROR_ALERT_COOLDOWN_SEC = 300.0

_error_lock = threading.Lock()
_last_error_alert: dict = {}


def _telegram_api(method: str, payload: dict) -> dict:
    """
    Call a Telegram Bot API method.

    Returns the parsed JSON response dict, or {} on failure.
    This function NEVER raises -- failures are logged and swallowed.
    """
    if not config.TELEGRAM_BOT_TOKEN:
        logger.debug("Telegram not configured, skipping %s", method)
        return {}

    url = TELEGRAM_API.format(token=config.TELEGRAM_BOT_TOKEN, method=method)
    data = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "DigitConsensusBot/1.0",
    }
    req = urllib.request.Request(url, data=data, headers=headers)

    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            result = json.loads(resp.read().decode("utf-8"))
            if result.get("ok"):
                return result
            logger.warning("Telegram %s returned ok=false: %s", method, result)
            return {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("Telegram %s HTTP %d: %s", method, e.code, body[:200])
        return {}
    except Exception as e:
        logger.warning("Telegram %s failed: %s", method, e)
        return {}


def _send_message(text: str, parse_mode: str = "HTML") -> bool:
    """
    Send a message to the configured chat.

    Returns True if sent, False otherwise.  Never raises.
    """
    if not config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram chat ID not set, skipping notification")
        return False

    result = _telegram_api("sendMessage", {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": text,
        "parse_mode": parse_mode,
        "disable_web_page_preview": True,
    })
    return bool(result)


# ---------------------------------------------------------------------------
# Notification methods -- one for each event type
# ---------------------------------------------------------------------------

def notify_startup(symbols: list) -> bool:
    """Send startup notification with the active risk settings."""
    feed = "demo ticks" if config.DEMO_MODE else "Deriv live ticks"
    text = (
        f"🤖 <b>Digit Consensus Bot Started</b>\n\n"
        f"Feed: {feed}\n"
        f"Symbols: {', '.join(symbols) or '(none)'}\n"
        f"Model: {config.MODEL}\n"
        f"Threshold: {config.PROBABILITY_THRESHOLD:.0%}\n"
        f"Required runs: {config.REQUIRED_RUNS}/{config.CYCLE_LENGTH}\n"
        f"Active trading: {'ON' if config.ACTIVE_TRADING else 'OFF'}"
    )
    return _send_message(text)


def notify_shutdown(reason: str = "Manual") -> bool:
    text = f"🛑 <b>Digit Consensus Bot Stopped</b>\n\nReason: {html.escape(reason)}"
    return _send_message(text)


def notify_signal(signal) -> bool:
    """One message per recorded TradingSignal."""
    if signal.type == "exact_digit":
        target = f"Digit {signal.predicted_digit}"
    else:
        target = "Over 2" if signal.predicted_band == "over2" else "Under 7"
    text = (
        f"🎯 <b>{signal.symbol} Signal</b>\n\n"
        f"{target} - {signal.confidence * 100:.1f}% confidence\n"
        f"Runs: {signal.runs}\n"
        f"ID: <code>{signal.id[:8]}</code>"
    )
    return _send_message(text)


def notify_analysis_error(symbol: str, message: str, now: float | None = None) -> bool:
    """Alert on a failed analysis run, at most once per cooldown per symbol."""
    now = time.time() if now is None else now
    with _error_lock:
        last = _last_error_alert.get(symbol, 0.0)
        if now - last < ERROR_ALERT_COOLDOWN_SEC:
            return False
        _last_error_alert[symbol] = now
    text = (
        f"❌ <b>{symbol} Analysis Error</b>\n\n"
        f"{html.escape(message)}\n\n"
        f"<i>Check logs for details</i>"
    )
    return _send_message(text)
