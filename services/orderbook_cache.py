"""Short-lived cache of normalized order books keyed by (source, symbol)."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from analysis.models import BookLevel, NormalizedOrderBook
from constants import ORDER_BOOK_CACHE_TTL
from services.market_data import MalformedDataError, MarketDataProvider, ProviderError
from services.rate_governor import RateGovernor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _CacheEntry:
    book: NormalizedOrderBook
    stored_at: float


def _coerce_levels(raw_levels, source: str, symbol: str) -> list[tuple[float, float]]:
    if not isinstance(raw_levels, (list, tuple)):
        raise MalformedDataError(f"{source} {symbol}: levels are not a list", source=source)
    merged: dict[float, float] = {}
    for raw in raw_levels:
        try:
            price = float(raw[0])
            quantity = float(raw[1])
        except (TypeError, ValueError, IndexError):
            raise MalformedDataError(f"{source} {symbol}: unreadable level {raw!r}", source=source)
        if not (math.isfinite(price) and math.isfinite(quantity)) or price <= 0 or quantity <= 0:
            continue
        merged[price] = merged.get(price, 0.0) + quantity
    return list(merged.items())


def _build_levels(pairs: list[tuple[float, float]], descending: bool, depth: int) -> list[BookLevel]:
    levels: list[BookLevel] = []
    cumulative_quantity = 0.0
    cumulative_cost = 0.0
    for price, quantity in sorted(pairs, key=lambda pair: pair[0], reverse=descending)[:depth]:
        cumulative_quantity += quantity
        cumulative_cost += price * quantity
        levels.append(BookLevel(price, quantity, cumulative_quantity, cumulative_cost))
    return levels


def normalize_order_book(
    source: str,
    symbol: str,
    raw: dict,
    depth: int,
    fetched_at: Optional[float] = None,
) -> NormalizedOrderBook:
    """
    Turns raw [[price, qty], ...] arrays into sorted levels with running totals.

    Bids end up strictly descending and asks strictly ascending: duplicate
    prices are merged and non-positive levels dropped. A book missing either
    side raises MalformedDataError.
    """
    if not isinstance(raw, dict):
        raise MalformedDataError(f"{source} {symbol}: order book is not a mapping", source=source)
    bids = _build_levels(_coerce_levels(raw.get('bids'), source, symbol), True, depth)
    asks = _build_levels(_coerce_levels(raw.get('asks'), source, symbol), False, depth)
    if not bids or not asks:
        raise MalformedDataError(f"{source} {symbol}: empty order book side", source=source)
    return NormalizedOrderBook(
        source=source,
        symbol=symbol,
        fetched_at=fetched_at if fetched_at is not None else time.time(),
        bids=bids,
        asks=asks,
    )


def liquidity_up_to_price(book: NormalizedOrderBook, side: str, price_limit: float) -> dict:
    """Quantity and notional available on one side without crossing price_limit."""
    if side == 'buy':
        levels = [level for level in book.asks if level.price <= price_limit]
    elif side == 'sell':
        levels = [level for level in book.bids if level.price >= price_limit]
    else:
        raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")
    return {
        'amount': sum(level.quantity for level in levels),
        'notional': sum(level.price * level.quantity for level in levels),
        'levels': len(levels),
    }


class OrderBookCache:
    """Fetches books through the RateGovernor and keeps each one for `ttl` seconds."""

    def __init__(
        self,
        providers: dict[str, MarketDataProvider],
        governor: RateGovernor,
        ttl: float = ORDER_BOOK_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.providers = providers
        self.governor = governor
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self.hits = 0
        self.misses = 0
        self.failures = 0

    async def get(
        self,
        source: str,
        symbol: str,
        depth: int,
        *,
        refresh: bool = False,
    ) -> Optional[NormalizedOrderBook]:
        """Returns a fresh-enough book, or None when the source cannot supply one."""
        key = (source, symbol)
        if not refresh:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry.stored_at < self.ttl:
                self.hits += 1
                return entry.book

            pending = self._inflight.get(key)
            if pending is not None:
                self.hits += 1
                return await asyncio.shield(pending)

        self.misses += 1
        task = asyncio.ensure_future(self._fetch(source, symbol, depth))
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    async def _fetch(self, source: str, symbol: str, depth: int) -> Optional[NormalizedOrderBook]:
        provider = self.providers.get(source)
        if provider is None:
            logger.warning("No market data provider configured for %s", source)
            self.failures += 1
            return None
        try:
            raw = await self.governor.execute(source, lambda: provider.fetch_order_book(symbol, depth))
            book = normalize_order_book(source, symbol, raw, depth)
        except ProviderError as exc:
            self.failures += 1
            logger.warning("%s unavailable for %s (%s): %s", source, symbol, exc.kind, exc)
            return None
        except Exception as exc:
            self.failures += 1
            logger.warning("%s unavailable for %s: %s", source, symbol, exc)
            return None
        self._entries[(source, symbol)] = _CacheEntry(book=book, stored_at=self._clock())
        return book

    async def fetch_books_for_symbol(
        self,
        sources: Iterable[str],
        symbol: str,
        depth: int,
        *,
        refresh: bool = False,
    ) -> dict[str, NormalizedOrderBook]:
        """Fetches one symbol from every source in parallel, dropping unavailable ones."""
        sources = list(sources)
        books = await asyncio.gather(*(self.get(source, symbol, depth, refresh=refresh) for source in sources))
        return {source: book for source, book in zip(sources, books) if book is not None}

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        now = self._clock()
        ages = [now - entry.stored_at for entry in self._entries.values()]
        valid = sum(1 for age in ages if age < self.ttl)
        return {
            'hits': self.hits,
            'misses': self.misses,
            'failures': self.failures,
            'entries': len(ages),
            'valid': valid,
            'expired': len(ages) - valid,
            'ttl': self.ttl,
            'oldest_age': round(max(ages), 3) if ages else None,
            'newest_age': round(min(ages), 3) if ages else None,
            'mean_age': round(sum(ages) / len(ages), 3) if ages else None,
        }


__all__ = ["OrderBookCache", "normalize_order_book", "liquidity_up_to_price"]
