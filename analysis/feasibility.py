#!/usr/bin/env python3
import math
from typing import Dict, List, Optional, Sequence

from analysis.execution_price import fill_buy, fill_sell, max_fillable
from analysis.models import BookLevel, LiquidityScore, NormalizedOrderBook
from constants import (
    DEFAULT_TAKER_FEE_PCT,
    DEPTH_ANALYSIS_NOTIONALS,
    IMBALANCE_LEVELS,
    IMBALANCE_PRESSURE_THRESHOLD,
    LIQUIDITY_GRADES,
    NEAR_BEST_BAND_PCT,
    TAKER_FEES_PCT,
)

SPREAD_WEIGHT = 30.0
DEPTH_WEIGHT = 50.0
COVERAGE_WEIGHT = 20.0


def grade_for_score(score: float) -> str:
    for threshold, grade in LIQUIDITY_GRADES:
        if score >= threshold:
            return grade
    return 'Very Poor'


def _near_best_notional(levels: Sequence[BookLevel], is_bid: bool, band_pct: float) -> float:
    """Notional resting within band_pct of the best price on one side."""
    if not levels:
        return 0.0
    best = levels[0].price
    if is_bid:
        limit = best * (1 - band_pct / 100)
        return sum(level.price * level.quantity for level in levels if level.price >= limit)
    limit = best * (1 + band_pct / 100)
    return sum(level.price * level.quantity for level in levels if level.price <= limit)


def _sufficiency(available: float, required: float) -> float:
    """Saturating ratio in [0, 1): 0.5 when available exactly covers required."""
    if required <= 0:
        return 1.0
    ratio = available / required
    return ratio / (ratio + 1)


class FeasibilityScorer:
    def __init__(
        self,
        fee_overrides: Optional[Dict[str, float]] = None,
        default_fee_pct: float = DEFAULT_TAKER_FEE_PCT,
        near_best_band_pct: float = NEAR_BEST_BAND_PCT,
    ):
        self.set_fee_overrides(fee_overrides)
        self.default_fee_pct = default_fee_pct
        self.near_best_band_pct = near_best_band_pct

    def set_fee_overrides(self, fee_overrides: Optional[Dict[str, float]]) -> None:
        """Rebuilds the fee table from the known-source defaults plus fee_overrides."""
        fees = dict(TAKER_FEES_PCT)
        fees.update(fee_overrides or {})
        self.fees = fees

    def fee_rate(self, source_id: str) -> float:
        """Taker fee percent for a source, or the conservative fallback."""
        return self.fees.get(source_id.lower(), self.default_fee_pct)

    def liquidity_score(self, order_book: NormalizedOrderBook, trade_notional: float) -> LiquidityScore:
        """
        Scores how comfortably the book absorbs trade_notional on both sides.

        Three bounded components add up to at most 100:
        spread tightness (0-30), depth near the best price relative to the trade
        (0-50) and whole-book coverage of the trade (0-20). The depth and coverage
        terms rise with book depth and fall with trade size, so the score is
        monotonic in both.
        """
        spread_pct = order_book.spread_pct
        spread_score = SPREAD_WEIGHT * max(0.0, 1 - max(0.0, spread_pct))

        required = trade_notional if trade_notional and math.isfinite(trade_notional) else 0.0
        near_bid = _near_best_notional(order_book.bids, True, self.near_best_band_pct)
        near_ask = _near_best_notional(order_book.asks, False, self.near_best_band_pct)
        depth_score = DEPTH_WEIGHT * (_sufficiency(near_bid, required) + _sufficiency(near_ask, required)) / 2

        total_bid = max_fillable(order_book.bids).notional
        total_ask = max_fillable(order_book.asks).notional
        if required <= 0:
            coverage = 1.0
        else:
            coverage = (min(1.0, total_bid / required) + min(1.0, total_ask / required)) / 2
        coverage_score = COVERAGE_WEIGHT * coverage

        score = round(min(100.0, max(0.0, spread_score + depth_score + coverage_score)), 2)
        return LiquidityScore(
            score=score,
            grade=grade_for_score(score),
            factors={
                'spread': round(spread_score, 2),
                'depth': round(depth_score, 2),
                'coverage': round(coverage_score, 2),
            },
        )

    def analyze_depth(
        self,
        order_book: NormalizedOrderBook,
        notionals: Optional[List[float]] = None,
    ) -> List[dict]:
        """Buy/sell execution summaries for a set of quote-currency trade sizes."""
        results = []
        mid = order_book.mid_price
        for notional in notionals or DEPTH_ANALYSIS_NOTIONALS:
            amount = notional / mid if mid > 0 else 0.0
            buy = fill_buy(order_book.asks, amount)
            sell = fill_sell(order_book.bids, amount)
            results.append({
                'notional': notional,
                'amount': amount,
                'buy': {
                    'fillable': buy.fillable,
                    'vwap': buy.vwap,
                    'slippage_pct': buy.slippage_pct,
                    'levels': buy.levels_consumed,
                },
                'sell': {
                    'fillable': sell.fillable,
                    'vwap': sell.vwap,
                    'slippage_pct': sell.slippage_pct,
                    'levels': sell.levels_consumed,
                },
            })
        return results

    def imbalance(self, order_book: NormalizedOrderBook, levels: int = IMBALANCE_LEVELS) -> dict:
        """Bid/ask volume imbalance over the top levels, in [-1, 1]."""
        bid_volume = sum(level.quantity for level in order_book.bids[:levels])
        ask_volume = sum(level.quantity for level in order_book.asks[:levels])
        total = bid_volume + ask_volume
        value = (bid_volume - ask_volume) / total if total > 0 else 0.0

        if value > IMBALANCE_PRESSURE_THRESHOLD:
            pressure = 'buy'
        elif value < -IMBALANCE_PRESSURE_THRESHOLD:
            pressure = 'sell'
        else:
            pressure = 'neutral'
        return {
            'imbalance': value,
            'bid_volume': bid_volume,
            'ask_volume': ask_volume,
            'pressure': pressure,
        }
