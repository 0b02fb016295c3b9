#!/usr/bin/env python3
import html
from typing import Sequence

from telegram import Bot

from storage.models import PersistedOpportunity

MAX_ALERTS_PER_MESSAGE = 10


def format_alert_message(records: Sequence[PersistedOpportunity]) -> str:
    """Formats one HTML alert covering a batch of new or reactivated opportunities."""
    header = f"🚨 <b>{len(records)} significant arbitrage opportunit{'y' if len(records) == 1 else 'ies'}</b>"
    lines: list[str] = [header, ""]

    for record in list(records)[:MAX_ALERTS_PER_MESSAGE]:
        symbol = html.escape(record.symbol)
        buy = html.escape(record.buy_source)
        sell = html.escape(record.sell_source)
        lines.extend([
            f"<b>{symbol}</b>: buy {buy} @ {record.buy_price:,.6g} -> sell {sell} @ {record.sell_price:,.6g}",
            f"<b>Net:</b> {record.net_profit_pct:.2f}% (gross {record.gross_spread_pct:.2f}%, costs {record.total_cost_pct:.2f}%)",
            f"<b>Size:</b> ${record.trade_notional:,.0f} | <b>Est. Profit:</b> ${record.expected_profit:,.2f}",
            f"<b>Confidence:</b> {record.confidence_score}/100 ({record.risk_tier} risk)",
            "",
        ])

    remaining = len(records) - MAX_ALERTS_PER_MESSAGE
    if remaining > 0:
        lines.append(f"<i>...and {remaining} more. Use /tracked to see all.</i>")
        lines.append("")

    lines.append("<i>Disclaimer: prices move fast; re-check books before trading. Not financial advice.</i>")
    return "\n".join(lines)


class TelegramNotifier:
    """Delivers significant-opportunity alerts to a Telegram chat."""

    def __init__(self, bot: Bot, chat_id: str):
        self.bot = bot
        self.chat_id = chat_id

    async def on_significant_opportunities(self, records: Sequence[PersistedOpportunity]) -> None:
        if not records:
            return
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=format_alert_message(records),
            parse_mode='HTML',
        )
