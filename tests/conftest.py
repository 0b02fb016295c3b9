from datetime import datetime, timezone

import pytest

from analysis.models import ArbitrageOpportunity
from config import AppConfig
from services.orderbook_cache import normalize_order_book


@pytest.fixture
def app_config():
    return AppConfig(
        sources=['alpha', 'beta'],
        symbols=['BTC/USDT'],
        min_profit_pct=0.1,
        min_trade_usd=100.0,
        max_trade_usd=10000.0,
        max_slippage_pct=0.5,
        min_liquidity_score=0.0,
        order_book_depth=20,
        trade_sizes=[100.0, 500.0, 1000.0],
        interval=60,
        batch_size=5,
        batch_delay=0.0,
        significant_profit_pct=2.0,
        cache_ttl=5.0,
        request_timeout=10.0,
        rate_limit_overrides={},
        fee_overrides={},
        check_transfers=False,
        telegram_enabled=False,
        telegram_bot_token=None,
        telegram_chat_id=None,
        db_path=':memory:',
        log_level='INFO',
        run_once=False,
        show_opportunities=False,
        opportunity_status='all',
        opportunity_limit=20,
    )


@pytest.fixture
def make_book():
    def _make(source, bids, asks, symbol='BTC/USDT', depth=50):
        return normalize_order_book(source, symbol, {'bids': bids, 'asks': asks}, depth)
    return _make


@pytest.fixture
def make_opportunity():
    def _make(symbol='BTC/USDT', buy_source='alpha', sell_source='beta', net_profit_pct=2.5, **overrides):
        values = dict(
            symbol=symbol,
            buy_source=buy_source,
            sell_source=sell_source,
            buy_price=100.0,
            sell_price=100.0 + net_profit_pct + 0.3,
            best_ask=100.0,
            best_bid=100.0 + net_profit_pct + 0.3,
            gross_spread_pct=net_profit_pct + 0.3,
            buy_fee_pct=0.1,
            sell_fee_pct=0.1,
            buy_slippage_pct=0.05,
            sell_slippage_pct=0.05,
            total_cost_pct=0.3,
            net_profit_pct=net_profit_pct,
            trade_amount=10.0,
            trade_notional=1000.0,
            sell_notional=1000.0 + net_profit_pct * 10,
            expected_profit=net_profit_pct * 10,
            buy_liquidity_score=70.0,
            sell_liquidity_score=60.0,
            liquidity_score=65.0,
            buy_levels_used=2,
            sell_levels_used=3,
            confidence_score=75,
            risk_tier='Low',
            detected_at=datetime.now(timezone.utc),
        )
        values.update(overrides)
        return ArbitrageOpportunity(**values)
    return _make
