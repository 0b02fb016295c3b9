from unittest.mock import AsyncMock, MagicMock

import aiohttp
import ccxt.async_support as ccxt
import pytest

from services.market_data import (
    CcxtMarketDataProvider,
    MalformedDataError,
    ThrottledError,
    TransientProviderError,
    UnsupportedSymbolError,
    classify_provider_error,
    parse_retry_after,
)


@pytest.mark.parametrize('exc,expected', [
    (ccxt.RateLimitExceeded("binance 429"), ThrottledError),
    (ccxt.DDoSProtection("slow down"), ThrottledError),
    (ccxt.BadSymbol("binance does not have market symbol FOO/USDT"), UnsupportedSymbolError),
    (ccxt.NotSupported("fetchOrderBook not supported"), UnsupportedSymbolError),
    (ccxt.BadResponse("unexpected payload"), MalformedDataError),
    (ccxt.RequestTimeout("timed out"), TransientProviderError),
    (ccxt.NetworkError("connection reset"), TransientProviderError),
    (RuntimeError("Too many requests, please retry after 3 seconds"), ThrottledError),
    (RuntimeError("boom"), TransientProviderError),
])
def test_classify_provider_error(exc, expected):
    error = classify_provider_error(exc, 'binance')

    assert type(error) is expected
    assert error.source == 'binance'


def test_classify_http_429_reads_retry_after_header():
    exc = aiohttp.ClientResponseError(
        request_info=MagicMock(),
        history=(),
        status=429,
        message='Too Many Requests',
        headers={'Retry-After': '12'},
    )

    error = classify_provider_error(exc, 'kucoin')

    assert isinstance(error, ThrottledError)
    assert error.retry_after == 12.0


def test_classify_passes_provider_errors_through():
    original = MalformedDataError("bad", source='okx')

    assert classify_provider_error(original, 'other') is original


def test_parse_retry_after():
    assert parse_retry_after("Retry-After: 2.5") == 2.5
    assert parse_retry_after("please retry after 10 seconds") == 10.0
    assert parse_retry_after("nothing here") is None


def test_unknown_exchange_id_is_rejected():
    with pytest.raises(ValueError):
        CcxtMarketDataProvider('definitely-not-an-exchange')


def _provider_with(exchange):
    provider = CcxtMarketDataProvider('binance', timeout=5.0)
    provider.exchange = exchange
    return provider


@pytest.mark.asyncio
async def test_fetch_order_book_returns_raw_sides():
    exchange = MagicMock()
    exchange.fetch_order_book = AsyncMock(return_value={
        'bids': [[100.0, 1.0]],
        'asks': [[101.0, 1.0]],
        'timestamp': 1700000000000,
        'nonce': 5,
    })
    provider = _provider_with(exchange)

    book = await provider.fetch_order_book('BTC/USDT', 20)

    assert book == {'bids': [[100.0, 1.0]], 'asks': [[101.0, 1.0]], 'timestamp': 1700000000000}
    exchange.fetch_order_book.assert_awaited_once_with('BTC/USDT', 20)


@pytest.mark.asyncio
async def test_fetch_order_book_missing_side_is_malformed():
    exchange = MagicMock()
    exchange.fetch_order_book = AsyncMock(return_value={'bids': []})
    provider = _provider_with(exchange)

    with pytest.raises(MalformedDataError):
        await provider.fetch_order_book('BTC/USDT', 20)


@pytest.mark.asyncio
async def test_exchange_errors_are_classified():
    exchange = MagicMock()
    exchange.fetch_order_book = AsyncMock(side_effect=ccxt.RateLimitExceeded("429 retry after 4"))
    provider = _provider_with(exchange)

    with pytest.raises(ThrottledError) as excinfo:
        await provider.fetch_order_book('BTC/USDT', 20)

    assert excinfo.value.retry_after == 4.0
    assert excinfo.value.kind == 'throttled'


@pytest.mark.asyncio
async def test_fetch_ticker_maps_fields():
    exchange = MagicMock()
    exchange.fetch_ticker = AsyncMock(return_value={
        'last': 101.0, 'bidVolume': 3.0, 'askVolume': 4.0, 'quoteVolume': 1_000_000.0,
    })
    provider = _provider_with(exchange)

    ticker = await provider.fetch_ticker('BTC/USDT')

    assert ticker == {'last': 101.0, 'bid_volume': 3.0, 'ask_volume': 4.0, 'quote_volume': 1_000_000.0}


@pytest.mark.asyncio
async def test_close_swallows_client_errors():
    exchange = MagicMock()
    exchange.close = AsyncMock(side_effect=RuntimeError("already closed"))
    provider = _provider_with(exchange)

    await provider.close()

    exchange.close.assert_awaited_once()


def test_data_errors_mentioning_429_stay_data_errors():
    unsupported = classify_provider_error(ccxt.BadSymbol("binance does not have market symbol 1429/USDT"), 'binance')
    malformed = classify_provider_error(ccxt.BadResponse("bad level at price 429"), 'binance')

    assert type(unsupported) is UnsupportedSymbolError
    assert type(malformed) is MalformedDataError


def test_429_must_be_a_whole_word_to_look_throttled():
    assert classify_provider_error(RuntimeError("HTTP 429"), 'okx').kind == 'throttled'
    assert classify_provider_error(RuntimeError("order 14290 rejected"), 'okx').kind == 'transient'
