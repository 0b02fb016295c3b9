#!/usr/bin/env python3
"""Volume-weighted execution pricing over normalized order book levels.

Every function here is pure and synchronous: the same levels and target always
produce the same quote, and degenerate inputs (no levels, non-positive or
non-finite targets) produce an empty, non-fillable quote instead of raising.
"""
import math
from typing import Sequence

from analysis.models import BookLevel, ExecutionQuote, FillCapacity, SizeUnderSlippage
from constants import FILL_TOLERANCE, SLIPPAGE_SWEEP_STEPS

# Remaining quantity below this fraction of the target counts as filled.
_REMAINDER_EPSILON = 1e-12
# Percentages are rounded so float noise on a single level reads as zero.
_PCT_DECIMALS = 10


def _walk_levels(levels: Sequence[BookLevel], target_amount: float, is_buy: bool) -> ExecutionQuote:
    if not levels or target_amount is None or not math.isfinite(target_amount) or target_amount <= 0:
        return ExecutionQuote.empty()

    best_price = levels[0].price
    if best_price <= 0:
        return ExecutionQuote.empty()

    remaining = target_amount
    filled = 0.0
    cost = 0.0
    consumed = 0
    worst_price = best_price

    for level in levels:
        if remaining <= target_amount * _REMAINDER_EPSILON:
            break
        take = min(level.quantity, remaining)
        if take <= 0:
            continue
        filled += take
        cost += take * level.price
        remaining -= take
        consumed += 1
        worst_price = level.price

    if filled <= 0:
        return ExecutionQuote.empty()

    vwap = cost / filled
    if is_buy:
        slippage = (vwap - best_price) / best_price * 100
        impact = (worst_price - best_price) / best_price * 100
    else:
        slippage = (best_price - vwap) / best_price * 100
        impact = (best_price - worst_price) / best_price * 100

    return ExecutionQuote(
        fillable=filled >= target_amount * FILL_TOLERANCE,
        vwap=vwap,
        notional=cost,
        filled_amount=filled,
        levels_consumed=consumed,
        best_price=best_price,
        worst_price=worst_price,
        slippage_pct=max(0.0, round(slippage, _PCT_DECIMALS)),
        price_impact_pct=max(0.0, round(impact, _PCT_DECIMALS)),
    )


def fill_buy(ask_levels: Sequence[BookLevel], target_amount: float) -> ExecutionQuote:
    """Walks asks from the best (lowest) price upward to buy target_amount base units."""
    return _walk_levels(ask_levels, target_amount, is_buy=True)


def fill_sell(bid_levels: Sequence[BookLevel], target_amount: float) -> ExecutionQuote:
    """Walks bids from the best (highest) price downward to sell target_amount base units."""
    return _walk_levels(bid_levels, target_amount, is_buy=False)


def max_fillable(levels: Sequence[BookLevel]) -> FillCapacity:
    """Total depth of one side, read from the last cumulative entry."""
    if not levels:
        return FillCapacity(amount=0.0, notional=0.0)
    last = levels[-1]
    return FillCapacity(amount=last.cumulative_quantity, notional=last.cumulative_cost)


def optimal_size_under_slippage(
    levels: Sequence[BookLevel],
    max_slippage_pct: float,
    is_buy: bool,
    steps: int = SLIPPAGE_SWEEP_STEPS,
) -> SizeUnderSlippage:
    """
    Largest size whose slippage stays at or below max_slippage_pct.

    Slippage is a piecewise function of book depth with no closed form, so this
    samples `steps` evenly spaced sizes between zero and the full side depth and
    keeps the largest one that passes. Every size is checked rather than stopping
    at the first breach, so books where slippage is not monotonic in size still
    return a size that satisfies the cap.
    """
    zero = SizeUnderSlippage(amount=0.0, notional=0.0, slippage_pct=0.0)
    if not levels or steps <= 0 or max_slippage_pct is None or max_slippage_pct < 0:
        return zero

    capacity = max_fillable(levels)
    if capacity.amount <= 0:
        return zero

    best = zero
    for step in range(1, steps + 1):
        amount = capacity.amount * step / steps
        quote = _walk_levels(levels, amount, is_buy)
        if not quote.fillable:
            continue
        if quote.slippage_pct <= max_slippage_pct:
            best = SizeUnderSlippage(
                amount=quote.filled_amount,
                notional=quote.notional,
                slippage_pct=quote.slippage_pct,
            )
    return best


def gross_spread_pct(buy_price: float, sell_price: float) -> float:
    """Percentage gained selling at sell_price what was bought at buy_price."""
    if buy_price <= 0:
        return 0.0
    return (sell_price - buy_price) / buy_price * 100
