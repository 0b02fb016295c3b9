#!/usr/bin/env python3
import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from analysis.execution_price import fill_buy, fill_sell, gross_spread_pct
from analysis.feasibility import FeasibilityScorer
from analysis.models import ArbitrageOpportunity, NormalizedOrderBook, RevalidationResult
from config import AppConfig
from constants import RISK_LOW_MIN_CONFIDENCE, RISK_MEDIUM_MIN_CONFIDENCE
from services.orderbook_cache import OrderBookCache

logger = logging.getLogger(__name__)


def risk_tier(confidence: float) -> str:
    if confidence >= RISK_LOW_MIN_CONFIDENCE:
        return 'Low'
    if confidence >= RISK_MEDIUM_MIN_CONFIDENCE:
        return 'Medium'
    return 'High'


def confidence_score(net_profit_pct: float, liquidity_score: float, total_slippage_pct: float, avg_levels: float) -> int:
    """Heuristic 0-100 confidence that the quoted profit is real."""
    score = 50.0
    score += min(25.0, net_profit_pct * 10)
    score += liquidity_score * 0.25
    score -= total_slippage_pct * 10
    if avg_levels <= 2:
        score += 10
    elif avg_levels <= 5:
        score += 5
    else:
        score -= 5
    return int(round(min(100.0, max(0.0, score))))


class OpportunityDetector:
    def __init__(self, config: AppConfig, cache: OrderBookCache, scorer: FeasibilityScorer):
        self.config = config
        self.cache = cache
        self.scorer = scorer

    def trade_ladder(self) -> List[float]:
        """Configured trade sizes inside the [min, max] notional window, ascending."""
        return sorted(
            size for size in self.config.trade_sizes
            if self.config.min_trade_usd <= size <= self.config.max_trade_usd
        )

    async def find_opportunities(self, symbol: str) -> List[ArbitrageOpportunity]:
        """Fetches every enabled source's book for a symbol and compares all pairs."""
        books = await self.cache.fetch_books_for_symbol(
            self.config.sources, symbol, self.config.order_book_depth
        )
        if len(books) < 2:
            logger.debug("%s: only %d usable order book(s), skipping", symbol, len(books))
            return []
        return self.find_opportunities_in_books(symbol, books)

    def find_opportunities_in_books(
        self, symbol: str, books: Dict[str, NormalizedOrderBook]
    ) -> List[ArbitrageOpportunity]:
        opportunities: List[ArbitrageOpportunity] = []
        for source_a, source_b in itertools.combinations(sorted(books), 2):
            opportunity = self.detect_pair(books[source_a], books[source_b])
            if opportunity:
                opportunities.append(opportunity)
        opportunities.sort(key=lambda opp: opp.expected_profit, reverse=True)
        return opportunities

    def detect_pair(
        self, book_a: NormalizedOrderBook, book_b: NormalizedOrderBook
    ) -> Optional[ArbitrageOpportunity]:
        """Evaluates both directions of a source pair and keeps the more profitable one."""
        candidates = [
            opp for opp in (
                self.evaluate_direction(book_a, book_b),
                self.evaluate_direction(book_b, book_a),
            ) if opp is not None
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda opp: opp.expected_profit)

    def evaluate_direction(
        self, buy_book: NormalizedOrderBook, sell_book: NormalizedOrderBook
    ) -> Optional[ArbitrageOpportunity]:
        best_ask = buy_book.best_ask
        best_bid = sell_book.best_bid
        if best_ask <= 0 or best_bid <= best_ask:
            return None

        buy_fee = self.scorer.fee_rate(buy_book.source)
        sell_fee = self.scorer.fee_rate(sell_book.source)
        raw_spread_pct = (best_bid - best_ask) / best_ask * 100
        if raw_spread_pct < buy_fee + sell_fee:
            return None

        reference_price = (best_ask + best_bid) / 2
        best: Optional[ArbitrageOpportunity] = None
        for notional in self.trade_ladder():
            candidate = self._evaluate_size(buy_book, sell_book, notional / reference_price, buy_fee, sell_fee)
            if candidate and (best is None or candidate.expected_profit > best.expected_profit):
                best = candidate
        return best

    def _evaluate_size(
        self,
        buy_book: NormalizedOrderBook,
        sell_book: NormalizedOrderBook,
        amount: float,
        buy_fee: float,
        sell_fee: float,
    ) -> Optional[ArbitrageOpportunity]:
        buy = fill_buy(buy_book.asks, amount)
        sell = fill_sell(sell_book.bids, amount)
        if not buy.fillable or not sell.fillable:
            return None

        # Both legs must trade the same base amount.
        matched = min(buy.filled_amount, sell.filled_amount)
        if buy.filled_amount > matched:
            buy = fill_buy(buy_book.asks, matched)
        if sell.filled_amount > matched:
            sell = fill_sell(sell_book.bids, matched)

        total_slippage = buy.slippage_pct + sell.slippage_pct
        if total_slippage > self.config.max_slippage_pct:
            return None

        gross = gross_spread_pct(buy.vwap, sell.vwap)
        total_cost = buy_fee + sell_fee + total_slippage
        net = gross - total_cost
        if net < self.config.min_profit_pct:
            return None

        buy_liquidity = self.scorer.liquidity_score(buy_book, buy.notional)
        sell_liquidity = self.scorer.liquidity_score(sell_book, sell.notional)
        liquidity = (buy_liquidity.score + sell_liquidity.score) / 2
        if liquidity < self.config.min_liquidity_score:
            return None

        avg_levels = (buy.levels_consumed + sell.levels_consumed) / 2
        confidence = confidence_score(net, liquidity, total_slippage, avg_levels)

        return ArbitrageOpportunity(
            symbol=buy_book.symbol,
            buy_source=buy_book.source,
            sell_source=sell_book.source,
            buy_price=buy.vwap,
            sell_price=sell.vwap,
            best_ask=buy_book.best_ask,
            best_bid=sell_book.best_bid,
            gross_spread_pct=gross,
            buy_fee_pct=buy_fee,
            sell_fee_pct=sell_fee,
            buy_slippage_pct=buy.slippage_pct,
            sell_slippage_pct=sell.slippage_pct,
            total_cost_pct=total_cost,
            net_profit_pct=net,
            trade_amount=buy.filled_amount,
            trade_notional=buy.notional,
            sell_notional=sell.notional,
            expected_profit=net / 100 * buy.notional,
            buy_liquidity_score=buy_liquidity.score,
            sell_liquidity_score=sell_liquidity.score,
            liquidity_score=liquidity,
            buy_levels_used=buy.levels_consumed,
            sell_levels_used=sell.levels_consumed,
            confidence_score=confidence,
            risk_tier=risk_tier(confidence),
            detected_at=datetime.now(timezone.utc),
        )

    async def revalidate(self, opportunity: ArbitrageOpportunity) -> RevalidationResult:
        """Best-effort check of an opportunity against freshly fetched books."""
        age = (datetime.now(timezone.utc) - opportunity.detected_at).total_seconds()
        depth = self.config.order_book_depth
        buy_book, sell_book = await asyncio.gather(
            self.cache.get(opportunity.buy_source, opportunity.symbol, depth, refresh=True),
            self.cache.get(opportunity.sell_source, opportunity.symbol, depth, refresh=True),
        )
        if buy_book is None or sell_book is None:
            return RevalidationResult(False, "Order book unavailable", None, None, age)
        if sell_book.best_bid <= buy_book.best_ask:
            return RevalidationResult(False, "Spread no longer exists", None, None, age)

        buy = fill_buy(buy_book.asks, opportunity.trade_amount)
        sell = fill_sell(sell_book.bids, opportunity.trade_amount)
        if not buy.fillable or not sell.fillable:
            return RevalidationResult(False, "Insufficient liquidity at trade size", None, None, age)

        fees = self.scorer.fee_rate(opportunity.buy_source) + self.scorer.fee_rate(opportunity.sell_source)
        net = gross_spread_pct(buy.vwap, sell.vwap) - fees - buy.slippage_pct - sell.slippage_pct
        change = net - opportunity.net_profit_pct
        if net < self.config.min_profit_pct:
            return RevalidationResult(False, "Net profit below threshold", net, change, age)
        return RevalidationResult(True, "Opportunity still valid", net, change, age)
