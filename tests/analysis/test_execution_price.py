import math

import pytest

from analysis.execution_price import (
    fill_buy,
    fill_sell,
    gross_spread_pct,
    max_fillable,
    optimal_size_under_slippage,
)


@pytest.fixture
def book(make_book):
    return make_book(
        'alpha',
        bids=[[100.0, 1.0], [99.0, 1.0], [98.0, 1.0]],
        asks=[[100.0, 1.0], [101.0, 1.0], [102.0, 1.0]],
    )


def test_fill_buy_walks_asks_outward(book):
    quote = fill_buy(book.asks, 1.5)

    assert quote.fillable is True
    assert quote.filled_amount == pytest.approx(1.5)
    assert quote.notional == pytest.approx(150.5)
    assert quote.vwap == pytest.approx(150.5 / 1.5)
    assert quote.levels_consumed == 2
    assert quote.best_price == 100.0
    assert quote.worst_price == 101.0
    assert quote.slippage_pct == pytest.approx((150.5 / 1.5 - 100.0))
    assert quote.price_impact_pct == pytest.approx(1.0)


def test_fill_sell_walks_bids_downward(book):
    quote = fill_sell(book.bids, 1.5)

    assert quote.fillable is True
    assert quote.vwap == pytest.approx(149.5 / 1.5)
    assert quote.slippage_pct == pytest.approx(100.0 - 149.5 / 1.5)
    assert quote.price_impact_pct == pytest.approx(1.0)
    assert quote.levels_consumed == 2


def test_single_level_fill_has_no_slippage(book):
    quote = fill_buy(book.asks, 0.5)

    assert quote.vwap == pytest.approx(100.0)
    assert quote.slippage_pct == 0.0
    assert quote.price_impact_pct == 0.0
    assert quote.levels_consumed == 1


def test_target_beyond_depth_is_not_fillable(book):
    quote = fill_buy(book.asks, 10.0)

    assert quote.fillable is False
    assert quote.filled_amount == pytest.approx(3.0)
    assert quote.filled_amount <= max_fillable(book.asks).amount + 1e-9
    assert quote.levels_consumed == 3


def test_small_shortfall_within_tolerance_is_fillable(book):
    quote = fill_sell(book.bids, 3.02)

    assert quote.fillable is True
    assert quote.filled_amount == pytest.approx(3.0)


@pytest.mark.parametrize('target', [0.0, -1.0, math.nan, math.inf, None])
def test_degenerate_targets_return_empty_quote(book, target):
    quote = fill_buy(book.asks, target)

    assert quote.fillable is False
    assert quote.vwap == 0.0
    assert quote.filled_amount == 0.0
    assert quote.levels_consumed == 0


def test_empty_levels_return_empty_quote():
    assert fill_buy([], 1.0).fillable is False
    assert fill_sell([], 1.0).notional == 0.0


def test_fills_are_idempotent(book):
    assert fill_buy(book.asks, 2.2) == fill_buy(book.asks, 2.2)
    assert fill_sell(book.bids, 2.2) == fill_sell(book.bids, 2.2)


def test_max_fillable_reads_last_cumulative_entry(book):
    capacity = max_fillable(book.asks)

    assert capacity.amount == pytest.approx(3.0)
    assert capacity.notional == pytest.approx(303.0)
    assert max_fillable([]).amount == 0.0


def test_optimal_size_never_exceeds_slippage_cap(make_book):
    book = make_book(
        'alpha',
        bids=[[100.0, 1.0], [99.0, 1.0], [90.0, 5.0]],
        asks=[[100.0, 1.0], [101.0, 1.0], [110.0, 5.0]],
    )

    for cap in (0.0, 0.25, 0.5, 1.0, 5.0):
        buy = optimal_size_under_slippage(book.asks, cap, is_buy=True)
        sell = optimal_size_under_slippage(book.bids, cap, is_buy=False)

        assert buy.amount > 0
        assert sell.amount > 0
        assert fill_buy(book.asks, buy.amount).slippage_pct <= cap + 1e-9
        assert fill_sell(book.bids, sell.amount).slippage_pct <= cap + 1e-9


def test_optimal_size_grows_with_looser_cap(make_book):
    book = make_book(
        'alpha',
        bids=[[100.0, 1.0]],
        asks=[[100.0, 1.0], [101.0, 1.0], [110.0, 5.0]],
    )

    tight = optimal_size_under_slippage(book.asks, 0.0, is_buy=True)
    loose = optimal_size_under_slippage(book.asks, 50.0, is_buy=True)

    assert 0.9 < tight.amount <= 1.0
    assert loose.amount == pytest.approx(7.0)


def test_optimal_size_handles_missing_book_and_bad_cap(book):
    assert optimal_size_under_slippage([], 1.0, is_buy=True).amount == 0.0
    assert optimal_size_under_slippage(book.asks, -1.0, is_buy=True).amount == 0.0


def test_gross_spread_pct():
    assert gross_spread_pct(100.0, 103.0) == pytest.approx(3.0)
    assert gross_spread_pct(0.0, 103.0) == 0.0
