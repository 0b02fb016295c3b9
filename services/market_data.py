"""Market data provider interface, ccxt-backed implementation and provider error kinds."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, Protocol

import aiohttp
import ccxt.async_support as ccxt

logger = logging.getLogger(__name__)

TRANSIENT = 'transient'
THROTTLED = 'throttled'
UNSUPPORTED = 'unsupported'
MALFORMED = 'malformed'

_THROTTLE_PATTERN = re.compile(r'rate[\s_-]?limit|too many requests|request limit|throttl|\b429\b', re.IGNORECASE)
_RETRY_AFTER_PATTERN = re.compile(r'retry[\s_-]*after[^0-9]*(\d+(?:\.\d+)?)', re.IGNORECASE)


class ProviderError(Exception):
    """Base class for every failure a market data provider can report."""
    kind = TRANSIENT

    def __init__(self, message: str, *, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class TransientProviderError(ProviderError):
    kind = TRANSIENT


class ThrottledError(ProviderError):
    kind = THROTTLED

    def __init__(self, message: str, *, source: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, source=source)
        self.retry_after = retry_after


class UnsupportedSymbolError(ProviderError):
    kind = UNSUPPORTED


class MalformedDataError(ProviderError):
    kind = MALFORMED


def looks_throttled(message: str) -> bool:
    return _THROTTLE_PATTERN.search(message) is not None


def parse_retry_after(message: str) -> Optional[float]:
    """Extracts a 'retry after N' seconds hint from an error message."""
    match = _RETRY_AFTER_PATTERN.search(message)
    if not match:
        return None
    return float(match.group(1))


def classify_provider_error(exc: BaseException, source: Optional[str] = None) -> ProviderError:
    """Maps a ccxt, aiohttp or timeout exception onto the closed provider error set."""
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        return ThrottledError(message, source=source, retry_after=parse_retry_after(message))
    if isinstance(exc, aiohttp.ClientResponseError) and exc.status == 429:
        retry_after = None
        if exc.headers and exc.headers.get('Retry-After'):
            try:
                retry_after = float(exc.headers['Retry-After'])
            except ValueError:
                retry_after = None
        return ThrottledError(message, source=source, retry_after=retry_after)
    if isinstance(exc, (ccxt.BadSymbol, ccxt.NotSupported)):
        return UnsupportedSymbolError(message, source=source)
    if isinstance(exc, ccxt.BadResponse):
        return MalformedDataError(message, source=source)
    if looks_throttled(message):
        return ThrottledError(message, source=source, retry_after=parse_retry_after(message))
    # Timeouts, connection failures and any other exchange error.
    return TransientProviderError(message, source=source)


class MarketDataProvider(Protocol):
    """Per-source market data capability consumed by the detection pipeline."""
    source_id: str

    async def fetch_ticker(self, symbol: str) -> dict:
        ...

    async def fetch_order_book(self, symbol: str, depth: int) -> dict:
        ...

    async def fetch_currencies(self) -> dict:
        ...

    async def close(self) -> None:
        ...


class CcxtMarketDataProvider:
    """MarketDataProvider backed by a ccxt async exchange client sharing one aiohttp session."""

    def __init__(self, source_id: str, session: Optional[aiohttp.ClientSession] = None, timeout: float = 30.0):
        self.source_id = source_id
        self.timeout = timeout
        try:
            exchange_class = getattr(ccxt, source_id)
        except AttributeError:
            raise ValueError(f"Unknown exchange id '{source_id}'")
        options: dict[str, Any] = {
            'timeout': int(timeout * 1000),
            # Pacing is owned by RateGovernor.
            'enableRateLimit': False,
            'options': {'defaultType': 'spot'},
        }
        if session is not None:
            options['session'] = session
        self.exchange = exchange_class(options)

    async def _call(self, method: str, *args: Any) -> Any:
        try:
            return await asyncio.wait_for(getattr(self.exchange, method)(*args), timeout=self.timeout)
        except Exception as exc:
            error = classify_provider_error(exc, self.source_id)
            logger.debug("%s.%s failed (%s): %s", self.source_id, method, error.kind, exc)
            raise error from exc

    async def fetch_ticker(self, symbol: str) -> dict:
        ticker = await self._call('fetch_ticker', symbol)
        if not isinstance(ticker, dict):
            raise MalformedDataError(f"Ticker for {symbol} is not a mapping", source=self.source_id)
        return {
            'last': ticker.get('last'),
            'bid_volume': ticker.get('bidVolume'),
            'ask_volume': ticker.get('askVolume'),
            'quote_volume': ticker.get('quoteVolume'),
        }

    async def fetch_order_book(self, symbol: str, depth: int) -> dict:
        book = await self._call('fetch_order_book', symbol, depth)
        if not isinstance(book, dict) or 'bids' not in book or 'asks' not in book:
            raise MalformedDataError(f"Order book for {symbol} is missing bids or asks", source=self.source_id)
        return {'bids': book['bids'], 'asks': book['asks'], 'timestamp': book.get('timestamp')}

    async def fetch_currencies(self) -> dict:
        currencies = await self._call('fetch_currencies')
        return currencies or {}

    async def close(self) -> None:
        try:
            await self.exchange.close()
        except Exception as exc:
            logger.warning("Failed to close %s client: %s", self.source_id, exc)


__all__ = [
    "MarketDataProvider",
    "CcxtMarketDataProvider",
    "ProviderError",
    "TransientProviderError",
    "ThrottledError",
    "UnsupportedSymbolError",
    "MalformedDataError",
    "classify_provider_error",
    "looks_throttled",
    "parse_retry_after",
]
