#!/usr/bin/env python3
from typing import Dict, List, Union

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- Environment Variable Names ---
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'
DB_PATH_ENV_VAR = 'ARBSCAN_DB_PATH'

DEFAULT_DB_PATH = 'data/arbitrage_history.db'
HTTP_USER_AGENT = 'ArbScan/1.0'

# --- Source Rate Limits ---
# rate: sustained requests/sec, burst: bucket capacity, backoff values in seconds.
DEFAULT_RATE_LIMIT: Dict[str, Union[int, float]] = {
    'rate': 1.0,
    'burst': 2,
    'max_retries': 3,
    'base_backoff': 5.0,
    'max_backoff': 60.0,
}

SOURCE_RATE_LIMITS: Dict[str, Dict[str, Union[int, float]]] = {
    'binance': {'rate': 2.0, 'burst': 3, 'max_retries': 3, 'base_backoff': 5.0, 'max_backoff': 60.0},
    'bybit': {'rate': 2.0, 'burst': 3, 'max_retries': 3, 'base_backoff': 5.0, 'max_backoff': 60.0},
    'kucoin': {'rate': 3.0, 'burst': 5, 'max_retries': 3, 'base_backoff': 3.0, 'max_backoff': 30.0},
    'okx': {'rate': 2.0, 'burst': 4, 'max_retries': 3, 'base_backoff': 5.0, 'max_backoff': 30.0},
    'gateio': {'rate': 3.0, 'burst': 5, 'max_retries': 3, 'base_backoff': 3.0, 'max_backoff': 30.0},
    'bigone': {'rate': 2.0, 'burst': 4, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
    'lbank': {'rate': 0.5, 'burst': 2, 'max_retries': 2, 'base_backoff': 10.0, 'max_backoff': 30.0},
    'huobi': {'rate': 2.0, 'burst': 4, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
    'kraken': {'rate': 3.0, 'burst': 5, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
    'coinbase': {'rate': 2.0, 'burst': 4, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
    'poloniex': {'rate': 2.0, 'burst': 3, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
    'mexc': {'rate': 2.0, 'burst': 3, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
    'bitget': {'rate': 2.0, 'burst': 3, 'max_retries': 3, 'base_backoff': 1.0, 'max_backoff': 30.0},
}

BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.3

# --- Taker Fees (percent) ---
DEFAULT_TAKER_FEE_PCT = 0.2

TAKER_FEES_PCT: Dict[str, float] = {
    'binance': 0.1,
    'kucoin': 0.1,
    'gateio': 0.2,
    'bybit': 0.1,
    'okx': 0.1,
    'mexc': 0.2,
    'huobi': 0.2,
    'kraken': 0.26,
    'coinbase': 0.6,
    'bitget': 0.1,
    'poloniex': 0.155,
    'bigone': 0.2,
}

# --- Scan Defaults ---
DEFAULT_SOURCES: List[str] = ['binance', 'kucoin', 'gateio', 'okx', 'mexc']

DEFAULT_SYMBOLS: List[str] = [
    'BTC/USDT', 'ETH/USDT', 'SOL/USDT', 'XRP/USDT', 'DOGE/USDT',
    'ADA/USDT', 'LINK/USDT', 'AVAX/USDT', 'DOT/USDT', 'LTC/USDT',
]

DEFAULT_TRADE_SIZES: List[float] = [100.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0]

ORDER_BOOK_CACHE_TTL = 5.0
CURRENCY_CACHE_TTL = 300.0
FILL_TOLERANCE = 0.99
SLIPPAGE_SWEEP_STEPS = 100

# --- Liquidity Scoring ---
NEAR_BEST_BAND_PCT = 2.0
DEPTH_ANALYSIS_NOTIONALS: List[float] = [1000.0, 5000.0, 10000.0, 25000.0, 50000.0]
IMBALANCE_LEVELS = 5
IMBALANCE_PRESSURE_THRESHOLD = 0.2

LIQUIDITY_GRADES = [
    (80.0, 'Excellent'),
    (60.0, 'Good'),
    (40.0, 'Fair'),
    (20.0, 'Poor'),
]

# --- Risk Tiers ---
RISK_LOW_MIN_CONFIDENCE = 70
RISK_MEDIUM_MIN_CONFIDENCE = 50
