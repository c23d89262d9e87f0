"""Application configuration."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


class ConfigError(ValueError):
    """Raised when a configuration value is missing or out of bounds."""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


def _parse_pairs(raw: str) -> Tuple[Tuple[float, float], ...]:
    """Parse `a:b,c:d` into ((a, b), (c, d)) sorted by the first item."""
    out: list[tuple[float, float]] = []
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        left, right = item.split(":", 1)
        try:
            out.append((float(left.strip()), float(right.strip())))
        except ValueError:
            continue
    out.sort(key=lambda pair: pair[0])
    return tuple(out)


def _parse_rpc_endpoints(raw: str) -> Tuple[Tuple[str, str], ...]:
    out: list[tuple[str, str]] = []
    for index, chunk in enumerate(str(raw or "").split(",")):
        item = chunk.strip()
        if not item:
            continue
        if "=" in item and not item.lower().startswith("http"):
            name, url = item.split("=", 1)
        else:
            name, url = f"rpc{index + 1}", item
        name = name.strip()
        url = url.strip()
        if name and url:
            out.append((name, url))
    return tuple(out)


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///bot.db")
BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", BOT_INSTANCE_ID).strip()

CHAIN_ID = os.getenv("CHAIN_ID", "base")
EVM_CHAIN_ID = os.getenv("EVM_CHAIN_ID", "8453")
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex")
DEX_TIMEOUT = int(os.getenv("DEX_TIMEOUT", "15"))

# Paper mode runs the whole pipeline against the simulated swap backend.
AUTO_TRADE_PAPER = _env_bool("AUTO_TRADE_PAPER", "true")
PAPER_MIRROR_ENABLED = _env_bool("PAPER_MIRROR_ENABLED", "true")
PAPER_INITIAL_BALANCE_USD = max(1.0, float(os.getenv("PAPER_INITIAL_BALANCE_USD", "1000")))
PAPER_SIMULATED_SLIPPAGE_PERCENT = max(0.0, float(os.getenv("PAPER_SIMULATED_SLIPPAGE_PERCENT", "1.0")))
PAPER_FEE_PERCENT = max(0.0, float(os.getenv("PAPER_FEE_PERCENT", "0.3")))
PAPER_STATE_FILE = os.getenv("PAPER_STATE_FILE", os.path.join("data", "paper_wallet.json"))
WALLET_BALANCE_USD = max(1.0, float(os.getenv("WALLET_BALANCE_USD", "1000")))
NATIVE_PRICE_FALLBACK_USD = max(0.0, float(os.getenv("NATIVE_PRICE_FALLBACK_USD", "3000")))

HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "90")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "HTTP_SOURCE_RATE_LIMITS",
        "coingecko:10/60,binance:60/60,dex_price:120/60,goplus:30/60,honeypot:30/60",
    )
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv(
        "HTTP_SOURCE_429_COOLDOWNS",
        "coingecko:300,binance:60",
    )
)

# Market regime
REGIME_POLL_SECONDS = max(5, int(os.getenv("REGIME_POLL_SECONDS", "60")))
REGIME_FETCH_TIMEOUT_SECONDS = max(1.0, float(os.getenv("REGIME_FETCH_TIMEOUT_SECONDS", "5")))
REGIME_PRIMARY_ASSET = os.getenv("REGIME_PRIMARY_ASSET", "ethereum").strip().lower()
REGIME_SECONDARY_ASSET = os.getenv("REGIME_SECONDARY_ASSET", "bitcoin").strip().lower()
REGIME_PRIMARY_BINANCE_SYMBOL = os.getenv("REGIME_PRIMARY_BINANCE_SYMBOL", "ETHUSDT").strip().upper()
REGIME_SECONDARY_BINANCE_SYMBOL = os.getenv("REGIME_SECONDARY_BINANCE_SYMBOL", "BTCUSDT").strip().upper()
REGIME_COINGECKO_API = os.getenv("REGIME_COINGECKO_API", "https://api.coingecko.com/api/v3/simple/price")
REGIME_BINANCE_API = os.getenv("REGIME_BINANCE_API", "https://api.binance.com/api/v3/ticker/24hr")
REGIME_PAUSE_PRIMARY_PERCENT = float(os.getenv("REGIME_PAUSE_PRIMARY_PERCENT", "-15"))
REGIME_DEFENSIVE_PRIMARY_PERCENT = float(os.getenv("REGIME_DEFENSIVE_PRIMARY_PERCENT", "-7"))
REGIME_DEFENSIVE_SECONDARY_PERCENT = float(os.getenv("REGIME_DEFENSIVE_SECONDARY_PERCENT", "-10"))
REGIME_CAUTIOUS_PRIMARY_PERCENT = float(os.getenv("REGIME_CAUTIOUS_PRIMARY_PERCENT", "-3"))
REGIME_CAUTIOUS_SECONDARY_PERCENT = float(os.getenv("REGIME_CAUTIOUS_SECONDARY_PERCENT", "-5"))
REGIME_TREND_BAND_PERCENT = max(0.0, float(os.getenv("REGIME_TREND_BAND_PERCENT", "2")))

# Token safety
SAFETY_MIN_SCORE = max(0, min(100, int(os.getenv("SAFETY_MIN_SCORE", "70"))))
SAFETY_CHECK_TIMEOUT_SECONDS = max(1.0, float(os.getenv("SAFETY_CHECK_TIMEOUT_SECONDS", "8")))
SAFETY_MAX_TOP_HOLDER_PERCENT = max(1.0, float(os.getenv("SAFETY_MAX_TOP_HOLDER_PERCENT", "30")))
SAFETY_MAX_TOP10_PERCENT = max(1.0, float(os.getenv("SAFETY_MAX_TOP10_PERCENT", "50")))
SAFETY_MAX_DEPLOYER_PERCENT = max(0.0, float(os.getenv("SAFETY_MAX_DEPLOYER_PERCENT", "10")))
SAFETY_MAX_SELL_TAX_PERCENT = max(0.0, float(os.getenv("SAFETY_MAX_SELL_TAX_PERCENT", "10")))
SAFETY_HARD_FAIL_COOLOFF_SECONDS = max(0, int(os.getenv("SAFETY_HARD_FAIL_COOLOFF_SECONDS", "86400")))
GOPLUS_ACCESS_TOKEN = os.getenv("GOPLUS_ACCESS_TOKEN", "")
GOPLUS_EVM_API = os.getenv(
    "GOPLUS_EVM_API",
    "https://api.gopluslabs.io/api/v1/token_security/{chain_id}",
)
HONEYPOT_API_URL = os.getenv("HONEYPOT_API_URL", "https://api.honeypot.is/v2/IsHoneypot")

# Conviction
CONVICTION_BASE_THRESHOLD = max(0.0, min(100.0, float(os.getenv("CONVICTION_BASE_THRESHOLD", "70"))))
CONVICTION_HIGH_TIER = float(os.getenv("CONVICTION_HIGH_TIER", "85"))
CONVICTION_MEDIUM_TIER = float(os.getenv("CONVICTION_MEDIUM_TIER", "70"))
CONVICTION_LOW_TIER = float(os.getenv("CONVICTION_LOW_TIER", "50"))
CONVICTION_HIGH_SIZE_PERCENT = max(0.0, float(os.getenv("CONVICTION_HIGH_SIZE_PERCENT", "5")))
CONVICTION_MEDIUM_SIZE_PERCENT = max(0.0, float(os.getenv("CONVICTION_MEDIUM_SIZE_PERCENT", "3")))
CONVICTION_LOW_SIZE_PERCENT = max(0.0, float(os.getenv("CONVICTION_LOW_SIZE_PERCENT", "1")))
CONVICTION_PEAK_HOURS_UTC = tuple(
    int(x) for x in os.getenv("CONVICTION_PEAK_HOURS_UTC", "13,14,15,16,17,18,19,20").split(",") if x.strip().isdigit()
)
WEIGHT_SMART_WALLET = float(os.getenv("WEIGHT_SMART_WALLET", "30"))
WEIGHT_TOKEN_SAFETY = float(os.getenv("WEIGHT_TOKEN_SAFETY", "25"))
WEIGHT_MARKET_CONDITIONS = float(os.getenv("WEIGHT_MARKET_CONDITIONS", "15"))
WEIGHT_SOCIAL_SIGNALS = float(os.getenv("WEIGHT_SOCIAL_SIGNALS", "10"))
WEIGHT_ENTRY_QUALITY = float(os.getenv("WEIGHT_ENTRY_QUALITY", "20"))

# Entry admission
ENTRY_MIN_SMART_WALLETS = max(0, int(os.getenv("ENTRY_MIN_SMART_WALLETS", "2")))
ENTRY_MIN_TOKEN_AGE_MINUTES = max(0.0, float(os.getenv("ENTRY_MIN_TOKEN_AGE_MINUTES", "10")))
ENTRY_MAX_TOKEN_AGE_MINUTES = max(1.0, float(os.getenv("ENTRY_MAX_TOKEN_AGE_MINUTES", "1440")))
ENTRY_MIN_DIP_PERCENT = max(0.0, float(os.getenv("ENTRY_MIN_DIP_PERCENT", "15")))
ENTRY_MAX_DIP_PERCENT = max(0.0, float(os.getenv("ENTRY_MAX_DIP_PERCENT", "50")))
ENTRY_MAX_OPEN_POSITIONS = max(1, int(os.getenv("ENTRY_MAX_OPEN_POSITIONS", "5")))
ENTRY_MAX_TOTAL_EXPOSURE_PERCENT = max(0.1, float(os.getenv("ENTRY_MAX_TOTAL_EXPOSURE_PERCENT", "20")))
OPPORTUNITY_ANALYSIS_WINDOW_SECONDS = max(10, int(os.getenv("OPPORTUNITY_ANALYSIS_WINDOW_SECONDS", "300")))
OPPORTUNITY_HISTORY_MAX = max(10, int(os.getenv("OPPORTUNITY_HISTORY_MAX", "500")))

# Position management
POSITION_TICK_SECONDS = max(1, int(os.getenv("POSITION_TICK_SECONDS", "10")))
POSITION_HARD_STOP_PERCENT = max(1.0, float(os.getenv("POSITION_HARD_STOP_PERCENT", "25")))
POSITION_TRAILING_ACTIVATION_PERCENT = max(0.1, float(os.getenv("POSITION_TRAILING_ACTIVATION_PERCENT", "20")))
POSITION_TRAILING_TIERS = _parse_pairs(os.getenv("POSITION_TRAILING_TIERS", "20:15,50:12,100:10"))
POSITION_TIME_STOP_HOURS = max(0.1, float(os.getenv("POSITION_TIME_STOP_HOURS", "4")))
POSITION_TIME_STOP_FLAT_ONLY = _env_bool("POSITION_TIME_STOP_FLAT_ONLY", "false")
POSITION_TIME_STOP_FLAT_MIN_PERCENT = float(os.getenv("POSITION_TIME_STOP_FLAT_MIN_PERCENT", "-5"))
POSITION_TIME_STOP_FLAT_MAX_PERCENT = float(os.getenv("POSITION_TIME_STOP_FLAT_MAX_PERCENT", "10"))
POSITION_TAKE_PROFIT_TIERS = _parse_pairs(os.getenv("POSITION_TAKE_PROFIT_TIERS", "30:20,60:25,100:25,200:15"))
POSITION_MAX_EXIT_FAILURES = max(1, int(os.getenv("POSITION_MAX_EXIT_FAILURES", "3")))
POSITION_DUST_AMOUNT = max(0.0, float(os.getenv("POSITION_DUST_AMOUNT", "0.000001")))
TRADE_BREAKEVEN_BAND_PERCENT = max(0.0, float(os.getenv("TRADE_BREAKEVEN_BAND_PERCENT", "1.0")))

# Execution
EXECUTION_WORKERS = max(1, int(os.getenv("EXECUTION_WORKERS", "2")))
EXECUTION_BUY_MAX_ATTEMPTS = max(1, int(os.getenv("EXECUTION_BUY_MAX_ATTEMPTS", "3")))
EXECUTION_SELL_MAX_ATTEMPTS = max(1, int(os.getenv("EXECUTION_SELL_MAX_ATTEMPTS", "4")))
EXECUTION_EMERGENCY_MAX_ATTEMPTS = max(1, int(os.getenv("EXECUTION_EMERGENCY_MAX_ATTEMPTS", "6")))
EXECUTION_BACKOFF_BASE_SECONDS = max(0.0, float(os.getenv("EXECUTION_BACKOFF_BASE_SECONDS", "1.5")))
EXECUTION_BACKOFF_MAX_SECONDS = max(0.0, float(os.getenv("EXECUTION_BACKOFF_MAX_SECONDS", "8")))
EXECUTION_JITTER_SECONDS = max(0.0, float(os.getenv("EXECUTION_JITTER_SECONDS", "0.25")))
EXECUTION_PRIORITY_FEE_MULTIPLIER = max(1.0, float(os.getenv("EXECUTION_PRIORITY_FEE_MULTIPLIER", "1.5")))
EXECUTION_BUY_QUEUE_TTL_SECONDS = max(1, int(os.getenv("EXECUTION_BUY_QUEUE_TTL_SECONDS", "300")))
EXECUTION_LOG_MAX = max(10, int(os.getenv("EXECUTION_LOG_MAX", "200")))
MAX_BUY_SLIPPAGE_PERCENT = max(0.1, float(os.getenv("MAX_BUY_SLIPPAGE_PERCENT", "5")))
MAX_SELL_SLIPPAGE_PERCENT = max(0.1, float(os.getenv("MAX_SELL_SLIPPAGE_PERCENT", "8")))
MAX_EMERGENCY_SLIPPAGE_PERCENT = max(0.1, float(os.getenv("MAX_EMERGENCY_SLIPPAGE_PERCENT", "15")))
EMERGENCY_SLIPPAGE_STEP_PERCENT = max(0.0, float(os.getenv("EMERGENCY_SLIPPAGE_STEP_PERCENT", "5")))
EMERGENCY_SLIPPAGE_CAP_PERCENT = max(0.1, float(os.getenv("EMERGENCY_SLIPPAGE_CAP_PERCENT", "30")))

# RPC
RPC_TIMEOUT_SECONDS = max(1, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
RPC_EMERGENCY_TIMEOUT_SECONDS = max(RPC_TIMEOUT_SECONDS, int(os.getenv("RPC_EMERGENCY_TIMEOUT_SECONDS", "60")))
RPC_HEALTH_TIMEOUT_SECONDS = max(1, int(os.getenv("RPC_HEALTH_TIMEOUT_SECONDS", "5")))
RPC_HEALTH_CHECK_SECONDS = max(5, int(os.getenv("RPC_HEALTH_CHECK_SECONDS", "60")))
RPC_MAX_CONSECUTIVE_FAILURES = max(1, int(os.getenv("RPC_MAX_CONSECUTIVE_FAILURES", "3")))
RPC_LATENCY_WARN_MS = max(1.0, float(os.getenv("RPC_LATENCY_WARN_MS", "500")))
RPC_LATENCY_CRITICAL_MS = max(1.0, float(os.getenv("RPC_LATENCY_CRITICAL_MS", "1000")))
RPC_ROLLING_WINDOW = max(3, int(os.getenv("RPC_ROLLING_WINDOW", "20")))
RPC_PRIMARY = os.getenv("RPC_PRIMARY", "").strip()
RPC_SECONDARY = os.getenv("RPC_SECONDARY", "").strip()
RPC_ENDPOINTS = _parse_rpc_endpoints(os.getenv("RPC_ENDPOINTS", ""))
if not RPC_ENDPOINTS:
    RPC_ENDPOINTS = _parse_rpc_endpoints(
        ",".join(f"{name}={url}" for name, url in (("primary", RPC_PRIMARY), ("secondary", RPC_SECONDARY)) if url)
    )

# Live swap wallet
LIVE_WALLET_ADDRESS = os.getenv("LIVE_WALLET_ADDRESS", "").strip()
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
LIVE_CHAIN_ID = int(os.getenv("LIVE_CHAIN_ID", EVM_CHAIN_ID))
LIVE_ROUTER_ADDRESS = os.getenv("LIVE_ROUTER_ADDRESS", "").strip()
WETH_ADDRESS = os.getenv("WETH_ADDRESS", "").strip().lower()
LIVE_SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("LIVE_SWAP_DEADLINE_SECONDS", "45")))
LIVE_TX_TIMEOUT_SECONDS = max(10, int(os.getenv("LIVE_TX_TIMEOUT_SECONDS", "120")))
LIVE_MAX_GAS_GWEI = float(os.getenv("LIVE_MAX_GAS_GWEI", "2.0"))
LIVE_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_PRIORITY_FEE_GWEI", "0.02"))
LIVE_MAX_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_MAX_PRIORITY_FEE_GWEI", "0.5"))
LIVE_MAX_SWAP_GAS = max(50_000, int(os.getenv("LIVE_MAX_SWAP_GAS", "450000")))

# Risk governor
RISK_EVAL_SECONDS = max(1, int(os.getenv("RISK_EVAL_SECONDS", "15")))
RISK_PORTFOLIO_BASE_USD = max(1.0, float(os.getenv("RISK_PORTFOLIO_BASE_USD", str(WALLET_BALANCE_USD))))
RISK_MAX_DAILY_LOSS_PERCENT = max(0.1, float(os.getenv("RISK_MAX_DAILY_LOSS_PERCENT", "8")))
RISK_MAX_DAILY_PROFIT_PERCENT = max(0.1, float(os.getenv("RISK_MAX_DAILY_PROFIT_PERCENT", "15")))
RISK_DAILY_LOSS_COOLDOWN_HOURS = max(0.0, float(os.getenv("RISK_DAILY_LOSS_COOLDOWN_HOURS", "12")))
RISK_STREAK_SHORT_LOSSES = max(1, int(os.getenv("RISK_STREAK_SHORT_LOSSES", "3")))
RISK_STREAK_SHORT_COOLDOWN_HOURS = max(0.0, float(os.getenv("RISK_STREAK_SHORT_COOLDOWN_HOURS", "1")))
RISK_STREAK_LONG_LOSSES = max(1, int(os.getenv("RISK_STREAK_LONG_LOSSES", "5")))
RISK_STREAK_LONG_COOLDOWN_HOURS = max(0.0, float(os.getenv("RISK_STREAK_LONG_COOLDOWN_HOURS", "6")))
RISK_STREAK_REDUCE_AT = max(1, int(os.getenv("RISK_STREAK_REDUCE_AT", "2")))
RISK_STREAK_REDUCE_MULT = max(0.0, min(1.0, float(os.getenv("RISK_STREAK_REDUCE_MULT", "0.75"))))
RISK_STREAK_HALVE_AT = max(1, int(os.getenv("RISK_STREAK_HALVE_AT", "3")))
RISK_STREAK_HALVE_MULT = max(0.0, min(1.0, float(os.getenv("RISK_STREAK_HALVE_MULT", "0.5"))))
RISK_WEEKLY_CIRCUIT_BREAKER_PERCENT = max(0.1, float(os.getenv("RISK_WEEKLY_CIRCUIT_BREAKER_PERCENT", "15")))
RISK_STATE_FILE = os.getenv("RISK_STATE_FILE", os.path.join("data", "risk_state.json"))

# Learning
LEARNING_MODE = os.getenv("LEARNING_MODE", "active").strip().lower()
LEARNING_BATCH_SIZE = max(5, int(os.getenv("LEARNING_BATCH_SIZE", "50")))
LEARNING_MIN_TRADES = max(1, int(os.getenv("LEARNING_MIN_TRADES", "30")))
LEARNING_MAX_STEP = max(0.1, float(os.getenv("LEARNING_MAX_STEP", "5")))
LEARNING_DRIFT_CAP_PERCENT = max(1.0, float(os.getenv("LEARNING_DRIFT_CAP_PERCENT", "50")))
LEARNING_MIN_WEIGHT = max(0.0, float(os.getenv("LEARNING_MIN_WEIGHT", "5")))
LEARNING_MAX_WEIGHT = max(1.0, float(os.getenv("LEARNING_MAX_WEIGHT", "40")))
LEARNING_PATTERN_MIN_OCCURRENCES = max(2, int(os.getenv("LEARNING_PATTERN_MIN_OCCURRENCES", "5")))
LEARNING_WIN_PATTERN_MIN_WIN_RATE = max(0.0, min(1.0, float(os.getenv("LEARNING_WIN_PATTERN_MIN_WIN_RATE", "0.6"))))
LEARNING_DANGER_PATTERN_MAX_WIN_RATE = max(
    0.0, min(1.0, float(os.getenv("LEARNING_DANGER_PATTERN_MAX_WIN_RATE", "0.3")))
)

# Alerts
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ALERT_TELEGRAM_CHAT_ID = os.getenv("ALERT_TELEGRAM_CHAT_ID", "").strip()
ALERT_MIN_LEVEL = os.getenv("ALERT_MIN_LEVEL", "MEDIUM").strip().upper()
ALERT_DEDUPE_SECONDS = max(0, int(os.getenv("ALERT_DEDUPE_SECONDS", "60")))
ALERT_HISTORY_MAX = max(10, int(os.getenv("ALERT_HISTORY_MAX", "200")))

# Control API
CONTROL_API_HOST = os.getenv("CONTROL_API_HOST", "127.0.0.1")
CONTROL_API_PORT = int(os.getenv("CONTROL_API_PORT", "8081"))
CONTROL_API_KEYS = tuple(x.strip() for x in os.getenv("CONTROL_API_KEYS", "").split(",") if x.strip())

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
AUDIT_FALLBACK_LOG_FILE = os.path.join(LOG_DIR, "audit_fallback.log")
TRADE_DECISIONS_LOG_FILE = os.getenv("TRADE_DECISIONS_LOG_FILE", os.path.join(LOG_DIR, "trade_decisions.jsonl"))


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.5
    backoff_max_seconds: float = 8.0
    jitter_seconds: float = 0.25
    fee_multiplier: float = 1.5

    def validate(self) -> None:
        _require(self.max_attempts >= 1, "retry max_attempts must be >= 1")
        _require(self.backoff_base_seconds >= 0, "retry backoff_base_seconds must be >= 0")
        _require(self.backoff_max_seconds >= self.backoff_base_seconds, "retry backoff_max < backoff_base")
        _require(self.fee_multiplier >= 1.0, "retry fee_multiplier must be >= 1")

    def delay(self, attempt: int, jitter: float = 0.0) -> float:
        exp = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** max(0, attempt - 1)))
        return max(0.0, exp + min(max(0.0, jitter), self.jitter_seconds))

    def fee_factor(self, attempt: int) -> float:
        return self.fee_multiplier ** max(0, attempt - 1)


@dataclass(frozen=True)
class RegimeSettings:
    poll_seconds: int = 60
    fetch_timeout_seconds: float = 5.0
    primary_asset: str = "ethereum"
    secondary_asset: str = "bitcoin"
    primary_binance_symbol: str = "ETHUSDT"
    secondary_binance_symbol: str = "BTCUSDT"
    coingecko_api: str = "https://api.coingecko.com/api/v3/simple/price"
    binance_api: str = "https://api.binance.com/api/v3/ticker/24hr"
    pause_primary_percent: float = -15.0
    defensive_primary_percent: float = -7.0
    defensive_secondary_percent: float = -10.0
    cautious_primary_percent: float = -3.0
    cautious_secondary_percent: float = -5.0
    trend_band_percent: float = 2.0

    def validate(self) -> None:
        _require(self.poll_seconds >= 5, "regime poll_seconds must be >= 5")
        _require(
            self.pause_primary_percent <= self.defensive_primary_percent <= self.cautious_primary_percent <= 0,
            "regime primary thresholds must be ordered pause <= defensive <= cautious <= 0",
        )
        _require(self.defensive_secondary_percent <= self.cautious_secondary_percent <= 0,
                 "regime secondary thresholds must be ordered defensive <= cautious <= 0")


@dataclass(frozen=True)
class SafetySettings:
    min_score: int = 70
    check_timeout_seconds: float = 8.0
    max_top_holder_percent: float = 30.0
    max_top10_percent: float = 50.0
    max_deployer_percent: float = 10.0
    max_sell_tax_percent: float = 10.0
    hard_fail_cooloff_seconds: int = 86400

    def validate(self) -> None:
        _require(0 <= self.min_score <= 100, "safety min_score must be within 0..100")
        _require(self.check_timeout_seconds > 0, "safety check_timeout_seconds must be > 0")
        _require(0 < self.max_top_holder_percent <= 100, "safety max_top_holder_percent must be within 0..100")


@dataclass(frozen=True)
class ConvictionSettings:
    base_threshold: float = 70.0
    high_tier: float = 85.0
    medium_tier: float = 70.0
    low_tier: float = 50.0
    high_size_percent: float = 5.0
    medium_size_percent: float = 3.0
    low_size_percent: float = 1.0
    peak_hours_utc: tuple = (13, 14, 15, 16, 17, 18, 19, 20)
    default_weights: tuple = (
        ("smart_wallet", 30.0),
        ("token_safety", 25.0),
        ("market_conditions", 15.0),
        ("social_signals", 10.0),
        ("entry_quality", 20.0),
    )

    def validate(self) -> None:
        _require(self.high_tier >= self.medium_tier >= self.low_tier >= 0, "conviction tiers must be ordered")
        _require(
            self.high_size_percent >= self.medium_size_percent >= self.low_size_percent >= 0,
            "conviction size fractions must decrease with tier",
        )
        total = sum(float(w) for _, w in self.default_weights)
        _require(abs(total - 100.0) < 1e-6, f"default weights must sum to 100 (got {total:.4f})")


@dataclass(frozen=True)
class EntrySettings:
    min_smart_wallets: int = 2
    min_token_age_minutes: float = 10.0
    max_token_age_minutes: float = 1440.0
    min_dip_percent: float = 15.0
    max_dip_percent: float = 50.0
    max_open_positions: int = 5
    max_total_exposure_percent: float = 20.0
    analysis_window_seconds: int = 300
    history_max: int = 500

    def validate(self) -> None:
        _require(self.min_token_age_minutes < self.max_token_age_minutes, "entry token age bounds inverted")
        _require(self.min_dip_percent < self.max_dip_percent, "entry dip band inverted")
        _require(self.max_open_positions >= 1, "entry max_open_positions must be >= 1")
        _require(0 < self.max_total_exposure_percent <= 100, "entry max_total_exposure_percent out of range")


@dataclass(frozen=True)
class PositionSettings:
    tick_seconds: int = 10
    hard_stop_percent: float = 25.0
    trailing_activation_percent: float = 20.0
    trailing_tiers: tuple = ((20.0, 15.0), (50.0, 12.0), (100.0, 10.0))
    time_stop_hours: float = 4.0
    time_stop_flat_only: bool = False
    time_stop_flat_min_percent: float = -5.0
    time_stop_flat_max_percent: float = 10.0
    take_profit_tiers: tuple = ((30.0, 20.0), (60.0, 25.0), (100.0, 25.0), (200.0, 15.0))
    max_exit_failures: int = 3
    dust_amount: float = 0.000001
    breakeven_band_percent: float = 1.0

    def validate(self) -> None:
        _require(0 < self.hard_stop_percent < 100, "position hard_stop_percent must be within 0..100")
        _require(len(self.take_profit_tiers) == 4, "exactly four take-profit tiers are required")
        gains = [float(g) for g, _ in self.take_profit_tiers]
        _require(gains == sorted(gains) and len(set(gains)) == 4, "take-profit tiers must be strictly ascending")
        for _, fraction in self.take_profit_tiers:
            _require(0 < float(fraction) < 100, "take-profit sell fraction must be within 0..100")
        _require(bool(self.trailing_tiers), "at least one trailing tier is required")
        for _, trail in self.trailing_tiers:
            _require(0 < float(trail) < 100, "trailing distance must be within 0..100")


@dataclass(frozen=True)
class ExecutionSettings:
    workers: int = 2
    buy_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=3))
    sell_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=4))
    emergency_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=6))
    buy_queue_ttl_seconds: int = 300
    log_max: int = 200
    max_buy_slippage_percent: float = 5.0
    max_sell_slippage_percent: float = 8.0
    max_emergency_slippage_percent: float = 15.0
    emergency_slippage_step_percent: float = 5.0
    emergency_slippage_cap_percent: float = 30.0
    base_priority_fee_gwei: float = 0.02
    max_priority_fee_gwei: float = 0.5

    def validate(self) -> None:
        _require(self.workers >= 1, "execution workers must be >= 1")
        for policy in (self.buy_retry, self.sell_retry, self.emergency_retry):
            policy.validate()
        _require(
            self.max_buy_slippage_percent <= self.max_sell_slippage_percent <= self.max_emergency_slippage_percent,
            "slippage ceilings must widen BUY <= SELL <= EMERGENCY_SELL",
        )
        _require(
            self.emergency_slippage_cap_percent >= self.max_emergency_slippage_percent,
            "emergency slippage cap below emergency ceiling",
        )


@dataclass(frozen=True)
class RpcSettings:
    endpoints: tuple = ()
    timeout_seconds: float = 10.0
    emergency_timeout_seconds: float = 60.0
    health_timeout_seconds: float = 5.0
    health_check_seconds: int = 60
    max_consecutive_failures: int = 3
    latency_warn_ms: float = 500.0
    latency_critical_ms: float = 1000.0
    rolling_window: int = 20

    def validate(self) -> None:
        names = [name for name, _ in self.endpoints]
        _require(len(names) == len(set(names)), "rpc endpoint names must be unique")
        _require(self.emergency_timeout_seconds >= self.timeout_seconds, "rpc emergency timeout below routine timeout")
        _require(self.latency_critical_ms >= self.latency_warn_ms, "rpc latency thresholds inverted")


@dataclass(frozen=True)
class RiskSettings:
    eval_seconds: int = 15
    portfolio_base_usd: float = 1000.0
    max_daily_loss_percent: float = 8.0
    max_daily_profit_percent: float = 15.0
    daily_loss_cooldown_hours: float = 12.0
    streak_short_losses: int = 3
    streak_short_cooldown_hours: float = 1.0
    streak_long_losses: int = 5
    streak_long_cooldown_hours: float = 6.0
    streak_reduce_at: int = 2
    streak_reduce_mult: float = 0.75
    streak_halve_at: int = 3
    streak_halve_mult: float = 0.5
    weekly_circuit_breaker_percent: float = 15.0
    state_file: str = os.path.join("data", "risk_state.json")

    def validate(self) -> None:
        _require(self.portfolio_base_usd > 0, "risk portfolio_base_usd must be > 0")
        _require(self.streak_long_losses >= self.streak_short_losses, "risk streak thresholds inverted")
        _require(0 < self.weekly_circuit_breaker_percent <= 100, "risk weekly breaker out of range")


@dataclass(frozen=True)
class LearningSettings:
    mode: str = "active"
    batch_size: int = 50
    min_trades: int = 30
    max_step: float = 5.0
    drift_cap_percent: float = 50.0
    min_weight: float = 5.0
    max_weight: float = 40.0
    pattern_min_occurrences: int = 5
    win_pattern_min_win_rate: float = 0.6
    danger_pattern_max_win_rate: float = 0.3

    def validate(self) -> None:
        _require(self.mode in ("active", "shadow", "paused"), f"learning mode invalid: {self.mode}")
        _require(self.batch_size >= 5, "learning batch_size must be >= 5")
        _require(self.min_weight < self.max_weight, "learning weight bounds inverted")
        _require(0 < self.drift_cap_percent <= 100, "learning drift cap out of range")


@dataclass(frozen=True)
class AlertSettings:
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    min_level: str = "MEDIUM"
    dedupe_seconds: int = 60
    history_max: int = 200

    def validate(self) -> None:
        _require(self.min_level in ("CRITICAL", "HIGH", "MEDIUM", "LOW"), f"alert min_level invalid: {self.min_level}")


@dataclass(frozen=True)
class ApiSettings:
    host: str = "127.0.0.1"
    port: int = 8081
    api_keys: tuple = ()

    def validate(self) -> None:
        _require(0 < self.port < 65536, "control api port out of range")


@dataclass(frozen=True)
class Settings:
    paper_mode: bool = True
    paper_mirror: bool = True
    paper_initial_balance_usd: float = 1000.0
    paper_slippage_percent: float = 1.0
    paper_fee_percent: float = 0.3
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    conviction: ConvictionSettings = field(default_factory=ConvictionSettings)
    entry: EntrySettings = field(default_factory=EntrySettings)
    position: PositionSettings = field(default_factory=PositionSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    rpc: RpcSettings = field(default_factory=RpcSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    learning: LearningSettings = field(default_factory=LearningSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    SECTIONS = (
        "regime", "safety", "conviction", "entry", "position",
        "execution", "rpc", "risk", "learning", "alerts", "api",
    )

    def validate(self) -> "Settings":
        for name in self.SECTIONS:
            getattr(self, name).validate()
        return self

    def updated(self, section: str, fields: dict[str, Any]) -> "Settings":
        """Return a validated copy with `fields` replaced inside `section`."""
        if section not in self.SECTIONS:
            raise ConfigError(f"unknown settings section: {section}")
        current = getattr(self, section)
        known = {f.name: f for f in dataclasses.fields(current)}
        changes: dict[str, Any] = {}
        for key, value in (fields or {}).items():
            if key not in known:
                raise ConfigError(f"unknown field {section}.{key}")
            changes[key] = _coerce_like(getattr(current, key), value, f"{section}.{key}")
        replaced = dataclasses.replace(current, **changes)
        replaced.validate()
        return dataclasses.replace(self, **{section: replaced})

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _coerce_like(current: Any, value: Any, name: str) -> Any:
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, str):
            return str(value)
        if isinstance(current, tuple):
            return tuple(tuple(x) if isinstance(x, list) else x for x in value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {value!r}") from exc
    raise ConfigError(f"field {name} is not runtime-tunable")


def load_settings() -> Settings:
    """Build typed settings from the module-level values and validate them."""
    g = globals()

    def retry(attempts_key: str) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=int(g[attempts_key]),
            backoff_base_seconds=float(g["EXECUTION_BACKOFF_BASE_SECONDS"]),
            backoff_max_seconds=max(float(g["EXECUTION_BACKOFF_BASE_SECONDS"]), float(g["EXECUTION_BACKOFF_MAX_SECONDS"])),
            jitter_seconds=float(g["EXECUTION_JITTER_SECONDS"]),
            fee_multiplier=float(g["EXECUTION_PRIORITY_FEE_MULTIPLIER"]),
        )

    settings = Settings(
        paper_mode=bool(g["AUTO_TRADE_PAPER"]),
        paper_mirror=bool(g["PAPER_MIRROR_ENABLED"]),
        paper_initial_balance_usd=float(g["PAPER_INITIAL_BALANCE_USD"]),
        paper_slippage_percent=float(g["PAPER_SIMULATED_SLIPPAGE_PERCENT"]),
        paper_fee_percent=float(g["PAPER_FEE_PERCENT"]),
        regime=RegimeSettings(
            poll_seconds=int(g["REGIME_POLL_SECONDS"]),
            fetch_timeout_seconds=float(g["REGIME_FETCH_TIMEOUT_SECONDS"]),
            primary_asset=str(g["REGIME_PRIMARY_ASSET"]),
            secondary_asset=str(g["REGIME_SECONDARY_ASSET"]),
            primary_binance_symbol=str(g["REGIME_PRIMARY_BINANCE_SYMBOL"]),
            secondary_binance_symbol=str(g["REGIME_SECONDARY_BINANCE_SYMBOL"]),
            coingecko_api=str(g["REGIME_COINGECKO_API"]),
            binance_api=str(g["REGIME_BINANCE_API"]),
            pause_primary_percent=float(g["REGIME_PAUSE_PRIMARY_PERCENT"]),
            defensive_primary_percent=float(g["REGIME_DEFENSIVE_PRIMARY_PERCENT"]),
            defensive_secondary_percent=float(g["REGIME_DEFENSIVE_SECONDARY_PERCENT"]),
            cautious_primary_percent=float(g["REGIME_CAUTIOUS_PRIMARY_PERCENT"]),
            cautious_secondary_percent=float(g["REGIME_CAUTIOUS_SECONDARY_PERCENT"]),
            trend_band_percent=float(g["REGIME_TREND_BAND_PERCENT"]),
        ),
        safety=SafetySettings(
            min_score=int(g["SAFETY_MIN_SCORE"]),
            check_timeout_seconds=float(g["SAFETY_CHECK_TIMEOUT_SECONDS"]),
            max_top_holder_percent=float(g["SAFETY_MAX_TOP_HOLDER_PERCENT"]),
            max_top10_percent=float(g["SAFETY_MAX_TOP10_PERCENT"]),
            max_deployer_percent=float(g["SAFETY_MAX_DEPLOYER_PERCENT"]),
            max_sell_tax_percent=float(g["SAFETY_MAX_SELL_TAX_PERCENT"]),
            hard_fail_cooloff_seconds=int(g["SAFETY_HARD_FAIL_COOLOFF_SECONDS"]),
        ),
        conviction=ConvictionSettings(
            base_threshold=float(g["CONVICTION_BASE_THRESHOLD"]),
            high_tier=float(g["CONVICTION_HIGH_TIER"]),
            medium_tier=float(g["CONVICTION_MEDIUM_TIER"]),
            low_tier=float(g["CONVICTION_LOW_TIER"]),
            high_size_percent=float(g["CONVICTION_HIGH_SIZE_PERCENT"]),
            medium_size_percent=float(g["CONVICTION_MEDIUM_SIZE_PERCENT"]),
            low_size_percent=float(g["CONVICTION_LOW_SIZE_PERCENT"]),
            peak_hours_utc=tuple(g["CONVICTION_PEAK_HOURS_UTC"]),
            default_weights=(
                ("smart_wallet", float(g["WEIGHT_SMART_WALLET"])),
                ("token_safety", float(g["WEIGHT_TOKEN_SAFETY"])),
                ("market_conditions", float(g["WEIGHT_MARKET_CONDITIONS"])),
                ("social_signals", float(g["WEIGHT_SOCIAL_SIGNALS"])),
                ("entry_quality", float(g["WEIGHT_ENTRY_QUALITY"])),
            ),
        ),
        entry=EntrySettings(
            min_smart_wallets=int(g["ENTRY_MIN_SMART_WALLETS"]),
            min_token_age_minutes=float(g["ENTRY_MIN_TOKEN_AGE_MINUTES"]),
            max_token_age_minutes=float(g["ENTRY_MAX_TOKEN_AGE_MINUTES"]),
            min_dip_percent=float(g["ENTRY_MIN_DIP_PERCENT"]),
            max_dip_percent=float(g["ENTRY_MAX_DIP_PERCENT"]),
            max_open_positions=int(g["ENTRY_MAX_OPEN_POSITIONS"]),
            max_total_exposure_percent=float(g["ENTRY_MAX_TOTAL_EXPOSURE_PERCENT"]),
            analysis_window_seconds=int(g["OPPORTUNITY_ANALYSIS_WINDOW_SECONDS"]),
            history_max=int(g["OPPORTUNITY_HISTORY_MAX"]),
        ),
        position=PositionSettings(
            tick_seconds=int(g["POSITION_TICK_SECONDS"]),
            hard_stop_percent=float(g["POSITION_HARD_STOP_PERCENT"]),
            trailing_activation_percent=float(g["POSITION_TRAILING_ACTIVATION_PERCENT"]),
            trailing_tiers=tuple(g["POSITION_TRAILING_TIERS"]),
            time_stop_hours=float(g["POSITION_TIME_STOP_HOURS"]),
            time_stop_flat_only=bool(g["POSITION_TIME_STOP_FLAT_ONLY"]),
            time_stop_flat_min_percent=float(g["POSITION_TIME_STOP_FLAT_MIN_PERCENT"]),
            time_stop_flat_max_percent=float(g["POSITION_TIME_STOP_FLAT_MAX_PERCENT"]),
            take_profit_tiers=tuple(g["POSITION_TAKE_PROFIT_TIERS"]),
            max_exit_failures=int(g["POSITION_MAX_EXIT_FAILURES"]),
            dust_amount=float(g["POSITION_DUST_AMOUNT"]),
            breakeven_band_percent=float(g["TRADE_BREAKEVEN_BAND_PERCENT"]),
        ),
        execution=ExecutionSettings(
            workers=int(g["EXECUTION_WORKERS"]),
            buy_retry=retry("EXECUTION_BUY_MAX_ATTEMPTS"),
            sell_retry=retry("EXECUTION_SELL_MAX_ATTEMPTS"),
            emergency_retry=retry("EXECUTION_EMERGENCY_MAX_ATTEMPTS"),
            buy_queue_ttl_seconds=int(g["EXECUTION_BUY_QUEUE_TTL_SECONDS"]),
            log_max=int(g["EXECUTION_LOG_MAX"]),
            max_buy_slippage_percent=float(g["MAX_BUY_SLIPPAGE_PERCENT"]),
            max_sell_slippage_percent=float(g["MAX_SELL_SLIPPAGE_PERCENT"]),
            max_emergency_slippage_percent=float(g["MAX_EMERGENCY_SLIPPAGE_PERCENT"]),
            emergency_slippage_step_percent=float(g["EMERGENCY_SLIPPAGE_STEP_PERCENT"]),
            emergency_slippage_cap_percent=float(g["EMERGENCY_SLIPPAGE_CAP_PERCENT"]),
            base_priority_fee_gwei=float(g["LIVE_PRIORITY_FEE_GWEI"]),
            max_priority_fee_gwei=float(g["LIVE_MAX_PRIORITY_FEE_GWEI"]),
        ),
        rpc=RpcSettings(
            endpoints=tuple(g["RPC_ENDPOINTS"]),
            timeout_seconds=float(g["RPC_TIMEOUT_SECONDS"]),
            emergency_timeout_seconds=float(g["RPC_EMERGENCY_TIMEOUT_SECONDS"]),
            health_timeout_seconds=float(g["RPC_HEALTH_TIMEOUT_SECONDS"]),
            health_check_seconds=int(g["RPC_HEALTH_CHECK_SECONDS"]),
            max_consecutive_failures=int(g["RPC_MAX_CONSECUTIVE_FAILURES"]),
            latency_warn_ms=float(g["RPC_LATENCY_WARN_MS"]),
            latency_critical_ms=float(g["RPC_LATENCY_CRITICAL_MS"]),
            rolling_window=int(g["RPC_ROLLING_WINDOW"]),
        ),
        risk=RiskSettings(
            eval_seconds=int(g["RISK_EVAL_SECONDS"]),
            portfolio_base_usd=float(g["RISK_PORTFOLIO_BASE_USD"]),
            max_daily_loss_percent=float(g["RISK_MAX_DAILY_LOSS_PERCENT"]),
            max_daily_profit_percent=float(g["RISK_MAX_DAILY_PROFIT_PERCENT"]),
            daily_loss_cooldown_hours=float(g["RISK_DAILY_LOSS_COOLDOWN_HOURS"]),
            streak_short_losses=int(g["RISK_STREAK_SHORT_LOSSES"]),
            streak_short_cooldown_hours=float(g["RISK_STREAK_SHORT_COOLDOWN_HOURS"]),
            streak_long_losses=int(g["RISK_STREAK_LONG_LOSSES"]),
            streak_long_cooldown_hours=float(g["RISK_STREAK_LONG_COOLDOWN_HOURS"]),
            streak_reduce_at=int(g["RISK_STREAK_REDUCE_AT"]),
            streak_reduce_mult=float(g["RISK_STREAK_REDUCE_MULT"]),
            streak_halve_at=int(g["RISK_STREAK_HALVE_AT"]),
            streak_halve_mult=float(g["RISK_STREAK_HALVE_MULT"]),
            weekly_circuit_breaker_percent=float(g["RISK_WEEKLY_CIRCUIT_BREAKER_PERCENT"]),
            state_file=str(g["RISK_STATE_FILE"]),
        ),
        learning=LearningSettings(
            mode=str(g["LEARNING_MODE"]),
            batch_size=int(g["LEARNING_BATCH_SIZE"]),
            min_trades=int(g["LEARNING_MIN_TRADES"]),
            max_step=float(g["LEARNING_MAX_STEP"]),
            drift_cap_percent=float(g["LEARNING_DRIFT_CAP_PERCENT"]),
            min_weight=float(g["LEARNING_MIN_WEIGHT"]),
            max_weight=float(g["LEARNING_MAX_WEIGHT"]),
            pattern_min_occurrences=int(g["LEARNING_PATTERN_MIN_OCCURRENCES"]),
            win_pattern_min_win_rate=float(g["LEARNING_WIN_PATTERN_MIN_WIN_RATE"]),
            danger_pattern_max_win_rate=float(g["LEARNING_DANGER_PATTERN_MAX_WIN_RATE"]),
        ),
        alerts=AlertSettings(
            telegram_bot_token=str(g["TELEGRAM_BOT_TOKEN"]),
            telegram_chat_id=str(g["ALERT_TELEGRAM_CHAT_ID"]),
            min_level=str(g["ALERT_MIN_LEVEL"]),
            dedupe_seconds=int(g["ALERT_DEDUPE_SECONDS"]),
            history_max=int(g["ALERT_HISTORY_MAX"]),
        ),
        api=ApiSettings(
            host=str(g["CONTROL_API_HOST"]),
            port=int(g["CONTROL_API_PORT"]),
            api_keys=tuple(g["CONTROL_API_KEYS"]),
        ),
    )
    return settings.validate()
