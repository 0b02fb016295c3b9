# bot/handlers.py
import html
import time

from telegram import Update
from telegram.ext import ContextTypes

from scanner import ArbitrageScanner
from storage import SQLiteRepository

MAX_LISTED = 10

# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Welcome to the Arbitrage Scanner Bot!</b>

    This bot compares exchange order books and reports size-aware, fee-adjusted arbitrage opportunities.

    <b><u>Available Commands:</u></b>
    /status - Get scanner status and last scan info
    /opportunities - Top opportunities from the latest scan
    /tracked - Significant opportunities being tracked
    /refresh - Trigger a scan now
    /scaninfo - See current scan configuration
    /help - Show this help message
    """
    await update.message.reply_html(help_text)


def format_opportunity_line(index: int, opp) -> str:
    return (
        f"{index}. <b>{html.escape(opp.symbol)}</b> {html.escape(opp.buy_source)} → {html.escape(opp.sell_source)}\n"
        f"   Net {opp.net_profit_pct:.2f}% | ${opp.expected_profit:,.2f} on ${opp.trade_notional:,.0f}"
        f" | {opp.confidence_score}/100 ({opp.risk_tier})"
    )


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Checks and reports the bot's operational status and scanner state."""
    scanner: ArbitrageScanner | None = context.application.bot_data.get('scanner')
    scanner_task = context.application.bot_data.get('scanner_task')
    start_time = context.application.bot_data.get('start_time', 0)

    uptime_seconds = time.time() - start_time
    uptime_str = time.strftime('%H:%M:%S', time.gmtime(uptime_seconds))

    if scanner is None:
        await update.message.reply_html(f"<b>🤖 Bot Status</b>\nUptime: <code>{uptime_str}</code>\n\nScanner: 🚫 Not configured")
        return

    if scanner_task and not scanner_task.done():
        scanner_status = "✅ Running"
    elif scanner_task and scanner_task.done():
        scanner_status = "❌ Stopped with error" if scanner_task.exception() else "⏹️ Stopped"
    else:
        scanner_status = "⚠️ Not running"

    snapshot = scanner.get_cached()
    stats = scanner.get_service_stats()
    last_scan = snapshot.last_update.strftime('%Y-%m-%d %H:%M:%S UTC') if snapshot.last_update else 'Never'
    next_scan = snapshot.next_scheduled_scan.strftime('%H:%M:%S UTC') if snapshot.next_scheduled_scan else 'N/A'
    throttled = [source for source, state in stats['rate_limits'].items() if state['is_rate_limited']]

    status_text = (
        f"<b>🤖 Bot Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n\n"
        f"<b>🔍 Scanner</b>\n"
        f"Status: {scanner_status}{' (scanning now)' if snapshot.is_scanning else ''}\n"
        f"Last Scan: <code>{last_scan}</code>\n"
        f"Next Scan: <code>{next_scan}</code>\n"
        f"Found Last Scan: <code>{len(snapshot.opportunities)}</code>\n"
        f"Total Scans: <code>{snapshot.stats['total_scans']}</code> "
        f"(failed {snapshot.stats['failed_scans']})\n"
        f"Cache: <code>{stats['cache']['valid']}/{stats['cache']['entries']} fresh</code>\n"
    )
    if throttled:
        status_text += f"Throttled: <code>{', '.join(throttled)}</code>\n"
    if snapshot.error:
        status_text += f"Last Error: <pre>{html.escape(snapshot.error)}</pre>\n"

    await update.message.reply_html(status_text)


async def opportunities_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists the best opportunities from the latest completed scan."""
    scanner: ArbitrageScanner | None = context.application.bot_data.get('scanner')
    if scanner is None:
        await update.message.reply_text("Scanner is not configured.")
        return

    snapshot = scanner.get_cached()
    if not snapshot.ready:
        await update.message.reply_text("No scan has completed yet. Please try again shortly.")
        return
    if not snapshot.opportunities:
        await update.message.reply_text("No profitable opportunities in the latest scan.")
        return

    lines = [f"<b>💹 Top Opportunities</b> (as of {int(snapshot.age_seconds or 0)}s ago)\n"]
    for index, opp in enumerate(snapshot.opportunities[:MAX_LISTED], start=1):
        lines.append(format_opportunity_line(index, opp))
    await update.message.reply_html("\n".join(lines))


async def tracked_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists active significant opportunities with status counts."""
    repository: SQLiteRepository | None = context.application.bot_data.get('repository')
    if repository is None:
        await update.message.reply_text("Persistence is not configured.")
        return

    try:
        counts = await repository.count_by_status()
        records = await repository.fetch_opportunities(status='active', limit=MAX_LISTED)
    except Exception as e:
        print(f"Error in /tracked command: {e}")
        await update.message.reply_text("An error occurred while loading tracked opportunities.")
        return

    lines = [
        f"<b>📌 Tracked Opportunities</b>\n"
        f"Active: {counts['active']} | Cleared: {counts['cleared']} | Total: {counts['total']}\n"
    ]
    for index, record in enumerate(records, start=1):
        line = format_opportunity_line(index, record)
        line += f"\n   Peak {record.peak_profit_pct:.2f}% since {record.first_detected_at:%Y-%m-%d %H:%M} UTC"
        lines.append(line)
    await update.message.reply_html("\n".join(lines))


async def refresh_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Triggers an on-demand scan unless one is already running."""
    scanner: ArbitrageScanner | None = context.application.bot_data.get('scanner')
    if scanner is None:
        await update.message.reply_text("Scanner is not configured.")
        return
    if scanner.is_scanning:
        await update.message.reply_text("A scan is already running; results will be available shortly.")
        return

    await update.message.reply_text("Starting scan...")
    snapshot = await scanner.refresh_now()
    if snapshot.rejected:
        await update.message.reply_text("A scan is already running; results will be available shortly.")
    elif snapshot.error:
        await update.message.reply_text(f"Scan failed: {snapshot.error}")
    else:
        await update.message.reply_text(f"Scan complete. Found {len(snapshot.opportunities)} opportunities.")


async def scaninfo_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays the current sources, symbols and thresholds."""
    scanner: ArbitrageScanner | None = context.application.bot_data.get('scanner')
    config = scanner.config if scanner else context.application.bot_data.get('config')
    if not config:
        await update.message.reply_text("Scanner configuration not found.")
        return

    message = (
        f"<b>🔍 Current Scanner Configuration</b>\n\n"
        f"<b>Sources:</b> <code>{', '.join(config.sources)}</code>\n"
        f"<b>Symbols:</b> <code>{', '.join(config.symbols)}</code>\n"
        f"<b>Min Profit:</b> {config.min_profit_pct}% | <b>Alert At:</b> {config.significant_profit_pct}%\n"
        f"<b>Trade Sizes:</b> {', '.join(f'${size:,.0f}' for size in config.trade_sizes)}\n"
        f"<b>Max Slippage:</b> {config.max_slippage_pct}% | <b>Min Liquidity:</b> {config.min_liquidity_score}\n"
        f"<b>Interval:</b> {config.interval}s"
    )

    await update.message.reply_html(message)
