import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.market_data import MalformedDataError, TransientProviderError
from services.orderbook_cache import OrderBookCache, liquidity_up_to_price, normalize_order_book
from services.rate_governor import RateGovernor, RateLimitConfig

RAW_BOOK = {
    'bids': [[99.0, 1.0], [100.0, 2.0], [99.0, 0.5], [98.0, 0.0]],
    'asks': [[102.0, 1.0], [101.0, 3.0], [0.0, 5.0]],
}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _provider(book=RAW_BOOK):
    provider = MagicMock()
    provider.fetch_order_book = AsyncMock(return_value=book)
    return provider


def _cache(providers, clock=None, ttl=5.0):
    governor = RateGovernor(default=RateLimitConfig(rate=1000.0, burst=1000))
    return OrderBookCache(providers, governor, ttl=ttl, clock=clock or FakeClock())


def test_normalize_sorts_merges_and_accumulates():
    book = normalize_order_book('alpha', 'BTC/USDT', RAW_BOOK, depth=10, fetched_at=12.0)

    assert [level.price for level in book.bids] == [100.0, 99.0]
    assert [level.quantity for level in book.bids] == [2.0, 1.5]
    assert [level.price for level in book.asks] == [101.0, 102.0]
    assert book.asks[-1].cumulative_quantity == pytest.approx(4.0)
    assert book.asks[-1].cumulative_cost == pytest.approx(3 * 101.0 + 102.0)
    assert book.best_bid < book.best_ask
    assert book.fetched_at == 12.0


def test_normalize_truncates_to_depth():
    raw = {'bids': [[100.0 - i, 1.0] for i in range(10)], 'asks': [[101.0 + i, 1.0] for i in range(10)]}

    book = normalize_order_book('alpha', 'BTC/USDT', raw, depth=3)

    assert len(book.bids) == 3
    assert len(book.asks) == 3


@pytest.mark.parametrize('raw', [
    {'bids': [], 'asks': [[101.0, 1.0]]},
    {'bids': [[100.0, 1.0]], 'asks': [[101.0, 0.0]]},
    {'bids': [[100.0, 1.0]]},
    {'bids': [['abc', 1.0]], 'asks': [[101.0, 1.0]]},
    None,
])
def test_normalize_rejects_unusable_books(raw):
    with pytest.raises(MalformedDataError):
        normalize_order_book('alpha', 'BTC/USDT', raw, depth=10)


@pytest.mark.asyncio
async def test_back_to_back_gets_hit_the_cache():
    provider = _provider()
    cache = _cache({'alpha': provider})

    first = await cache.get('alpha', 'BTC/USDT', 10)
    second = await cache.get('alpha', 'BTC/USDT', 10)

    assert first is second
    provider.fetch_order_book.assert_awaited_once_with('BTC/USDT', 10)
    assert cache.stats()['hits'] == 1
    assert cache.stats()['misses'] == 1


@pytest.mark.asyncio
async def test_expired_entries_are_refetched():
    clock = FakeClock()
    provider = _provider()
    cache = _cache({'alpha': provider}, clock=clock, ttl=5.0)

    await cache.get('alpha', 'BTC/USDT', 10)
    clock.now = 4.9
    await cache.get('alpha', 'BTC/USDT', 10)
    assert provider.fetch_order_book.await_count == 1

    clock.now = 5.0
    await cache.get('alpha', 'BTC/USDT', 10)
    assert provider.fetch_order_book.await_count == 2


@pytest.mark.asyncio
async def test_refresh_bypasses_the_cache():
    provider = _provider()
    cache = _cache({'alpha': provider})

    await cache.get('alpha', 'BTC/USDT', 10)
    await cache.get('alpha', 'BTC/USDT', 10, refresh=True)

    assert provider.fetch_order_book.await_count == 2


@pytest.mark.asyncio
async def test_failures_return_none_and_are_not_cached():
    provider = MagicMock()
    provider.fetch_order_book = AsyncMock(side_effect=[TransientProviderError("timeout", source='alpha'), RAW_BOOK])
    cache = _cache({'alpha': provider})

    assert await cache.get('alpha', 'BTC/USDT', 10) is None
    assert await cache.get('alpha', 'BTC/USDT', 10) is not None
    assert cache.stats()['failures'] == 1


@pytest.mark.asyncio
async def test_malformed_books_count_as_failures():
    cache = _cache({'alpha': _provider({'bids': [], 'asks': []})})

    assert await cache.get('alpha', 'BTC/USDT', 10) is None
    assert cache.stats()['entries'] == 0


@pytest.mark.asyncio
async def test_concurrent_gets_share_one_fetch():
    release = asyncio.Event()

    async def slow_fetch(symbol, depth):
        await release.wait()
        return RAW_BOOK

    provider = MagicMock()
    provider.fetch_order_book = AsyncMock(side_effect=slow_fetch)
    cache = _cache({'alpha': provider})

    waiters = [asyncio.ensure_future(cache.get('alpha', 'BTC/USDT', 10)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    books = await asyncio.gather(*waiters)

    assert provider.fetch_order_book.await_count == 1
    assert books[0] is books[1] is books[2]


@pytest.mark.asyncio
async def test_clear_forces_refetch():
    provider = _provider()
    cache = _cache({'alpha': provider})

    await cache.get('alpha', 'BTC/USDT', 10)
    cache.clear()
    await cache.get('alpha', 'BTC/USDT', 10)

    assert provider.fetch_order_book.await_count == 2


@pytest.mark.asyncio
async def test_fetch_books_for_symbol_drops_unavailable_sources():
    failing = MagicMock()
    failing.fetch_order_book = AsyncMock(side_effect=TransientProviderError("down", source='beta'))
    cache = _cache({'alpha': _provider(), 'beta': failing})

    books = await cache.fetch_books_for_symbol(['alpha', 'beta', 'gamma'], 'BTC/USDT', 10)

    assert list(books) == ['alpha']
    assert cache.stats()['failures'] == 2


@pytest.mark.asyncio
async def test_stats_report_entry_ages():
    clock = FakeClock()
    cache = _cache({'alpha': _provider()}, clock=clock, ttl=5.0)

    await cache.get('alpha', 'BTC/USDT', 10)
    clock.now = 7.0
    stats = cache.stats()

    assert stats['entries'] == 1
    assert stats['expired'] == 1
    assert stats['oldest_age'] == pytest.approx(7.0)


def test_liquidity_up_to_price():
    book = normalize_order_book('alpha', 'BTC/USDT', RAW_BOOK, depth=10)

    buy = liquidity_up_to_price(book, 'buy', 101.5)
    sell = liquidity_up_to_price(book, 'sell', 99.0)

    assert buy == {'amount': 3.0, 'notional': pytest.approx(303.0), 'levels': 1}
    assert sell['amount'] == pytest.approx(3.5)
    assert sell['levels'] == 2
    with pytest.raises(ValueError):
        liquidity_up_to_price(book, 'hold', 100.0)
