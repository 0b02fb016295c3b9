from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.telegram_notifier import MAX_ALERTS_PER_MESSAGE, TelegramNotifier, format_alert_message
from storage.models import STATUS_ACTIVE, PersistedOpportunity


def _record(symbol='BTC/USDT', buy='alpha', sell='beta', net=2.5):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return PersistedOpportunity(
        opportunity_key=f"{symbol}-{buy}-{sell}",
        symbol=symbol,
        buy_source=buy,
        sell_source=sell,
        buy_price=100.0,
        sell_price=102.8,
        gross_spread_pct=2.8,
        total_cost_pct=0.3,
        net_profit_pct=net,
        trade_amount=10.0,
        trade_notional=1000.0,
        expected_profit=25.0,
        liquidity_score=65.0,
        confidence_score=75,
        risk_tier='Low',
        peak_profit_pct=net,
        status=STATUS_ACTIVE,
        first_detected_at=now,
        last_seen_at=now,
        cleared_at=None,
        alert_sent=False,
    )


def test_format_alert_message_lists_each_record():
    text = format_alert_message([_record(), _record(symbol='ETH/USDT', net=3.1)])

    assert '2 significant arbitrage opportunities' in text
    assert '<b>BTC/USDT</b>: buy alpha' in text
    assert '<b>ETH/USDT</b>' in text
    assert '3.10%' in text
    assert '75/100 (Low risk)' in text
    assert 'Disclaimer' in text


def test_format_alert_message_escapes_html():
    text = format_alert_message([_record(buy='a<b>')])

    assert 'a&lt;b&gt;' in text


def test_format_alert_message_truncates_large_batches():
    records = [_record(symbol=f"T{i}/USDT") for i in range(MAX_ALERTS_PER_MESSAGE + 3)]

    text = format_alert_message(records)

    assert '...and 3 more' in text
    assert 'T12/USDT' not in text


@pytest.mark.asyncio
async def test_notifier_sends_one_message_per_batch():
    bot = MagicMock()
    bot.send_message = AsyncMock()
    notifier = TelegramNotifier(bot, '12345')

    await notifier.on_significant_opportunities([_record(), _record(symbol='ETH/USDT')])

    bot.send_message.assert_awaited_once()
    kwargs = bot.send_message.await_args.kwargs
    assert kwargs['chat_id'] == '12345'
    assert kwargs['parse_mode'] == 'HTML'


@pytest.mark.asyncio
async def test_notifier_skips_empty_batches():
    bot = MagicMock()
    bot.send_message = AsyncMock()

    await TelegramNotifier(bot, '12345').on_significant_opportunities([])

    bot.send_message.assert_not_awaited()
