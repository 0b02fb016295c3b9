#!/usr/bin/env python3
import asyncio
import logging
import time
from typing import Optional

import aiohttp
from telegram import BotCommand
from telegram.ext import Application, CommandHandler
from telegram.error import TimedOut, TelegramError

import constants
from config import AppConfig, load_config
from bot.handlers import (
    help_command,
    status_command,
    opportunities_command,
    tracked_command,
    refresh_command,
    scaninfo_command,
)
from analysis.detector import OpportunityDetector
from analysis.feasibility import FeasibilityScorer
from scanner import ArbitrageScanner
from services.market_data import CcxtMarketDataProvider, MarketDataProvider
from services.orderbook_cache import OrderBookCache
from services.rate_governor import RateGovernor
from services.telegram_notifier import TelegramNotifier
from services.transfer_status import TransferStatusChecker
from storage import SQLiteRepository, PersistedOpportunity

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'


def build_providers(config: AppConfig, session: aiohttp.ClientSession) -> dict[str, MarketDataProvider]:
    """Creates one ccxt-backed provider per configured source, skipping unknown ids."""
    providers: dict[str, MarketDataProvider] = {}
    for source in config.sources:
        try:
            providers[source] = CcxtMarketDataProvider(source, session, timeout=config.request_timeout)
        except ValueError as exc:
            print(f"{constants.C_YELLOW}Skipping source {source}: {exc}{constants.C_RESET}")
    return providers


def build_scanner(
    config: AppConfig,
    providers: dict[str, MarketDataProvider],
    repository: Optional[SQLiteRepository],
    notifier: Optional[TelegramNotifier] = None,
) -> ArbitrageScanner:
    governor = RateGovernor.from_overrides(config.rate_limit_overrides)
    cache = OrderBookCache(providers, governor, ttl=config.cache_ttl)
    scorer = FeasibilityScorer(config.fee_overrides)
    detector = OpportunityDetector(config, cache, scorer)
    transfer_checker = TransferStatusChecker(providers, governor) if config.check_transfers else None
    return ArbitrageScanner(
        config,
        detector,
        cache,
        governor,
        repository=repository,
        notifier=notifier,
        transfer_checker=transfer_checker,
    )


async def close_providers(providers: dict[str, MarketDataProvider]) -> None:
    await asyncio.gather(*(provider.close() for provider in providers.values()))


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    # Create and store a single, shared aiohttp session
    session = aiohttp.ClientSession(headers={'User-Agent': constants.HTTP_USER_AGENT})
    application.bot_data['http_session'] = session

    config: AppConfig = application.bot_data['config']
    providers = build_providers(config, session)
    application.bot_data['providers'] = providers

    notifier = TelegramNotifier(application.bot, config.telegram_chat_id)
    scanner = build_scanner(config, providers, application.bot_data.get('repository'), notifier)
    application.bot_data['scanner'] = scanner

    # Set bot commands
    commands = [
        BotCommand("status", "Check scanner status"),
        BotCommand("opportunities", "Top opportunities from the latest scan"),
        BotCommand("tracked", "Tracked significant opportunities"),
        BotCommand("refresh", "Run a scan now"),
        BotCommand("scaninfo", "See current scan config"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    application.bot_data['scanner_task'] = scanner.run_in_background()


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    scanner: ArbitrageScanner | None = application.bot_data.get('scanner')
    if scanner:
        await scanner.stop()
    providers = application.bot_data.get('providers')
    if providers:
        await close_providers(providers)
    session = application.bot_data.get('http_session')
    if session:
        await session.close()
    repository = application.bot_data.get('repository')
    if repository:
        await repository.close()


async def run_cli(config: AppConfig) -> None:
    """Runs the scanner without Telegram, either once or until interrupted."""
    repository = SQLiteRepository(config.db_path)
    async with aiohttp.ClientSession(headers={'User-Agent': constants.HTTP_USER_AGENT}) as session:
        providers = build_providers(config, session)
        scanner = build_scanner(config, providers, repository)
        try:
            if config.run_once:
                await scanner.run_scan()
                snapshot = scanner.get_cached()
                if snapshot.error:
                    print(f"{constants.C_RED}Scan failed: {snapshot.error}{constants.C_RESET}")
                _print_opportunity_table(snapshot.opportunities)
            else:
                await scanner.start()
        finally:
            await close_providers(providers)
            await repository.close()


async def _load_persisted(config: AppConfig) -> tuple[list[PersistedOpportunity], dict[str, int]]:
    repository = SQLiteRepository(config.db_path)
    try:
        status = None if config.opportunity_status == 'all' else config.opportunity_status
        records = await repository.fetch_opportunities(status=status, limit=config.opportunity_limit)
        counts = await repository.count_by_status()
    finally:
        await repository.close()
    return records, counts


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    logging.basicConfig(level=getattr(logging, config.log_level), format=LOG_FORMAT)

    if config.show_opportunities:
        records, counts = asyncio.run(_load_persisted(config))
        _print_persisted_opportunities(records, counts, config.opportunity_limit, config.opportunity_status)
        return

    if config.run_once or not config.telegram_enabled:
        if not config.run_once:
            print("Telegram is not configured. The application will run in CLI-only mode.")
        try:
            asyncio.run(run_cli(config))
        except KeyboardInterrupt:
            print("Interrupted. Exiting.")
        return

    repository = SQLiteRepository(config.db_path)
    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    # Store config and other shared data
    application.bot_data['config'] = config
    application.bot_data['start_time'] = time.time()
    application.bot_data['repository'] = repository

    # Register command handlers
    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("opportunities", opportunities_command))
    application.add_handler(CommandHandler("tracked", tracked_command))
    application.add_handler(CommandHandler("refresh", refresh_command))
    application.add_handler(CommandHandler("scaninfo", scaninfo_command))

    application.run_polling()


def _print_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _format_line(row: list[str]) -> str:
        return "  ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(row))

    print(_format_line(headers))
    print("  ".join('-' * w for w in widths))
    for row in rows:
        print(_format_line(row))


def _print_opportunity_table(opportunities: list) -> None:
    if not opportunities:
        print("No profitable opportunities found.")
        return

    headers = ["Symbol", "Buy", "Sell", "Buy @", "Sell @", "Gross %", "Net %", "Size $", "Profit $", "Liq", "Conf", "Risk"]
    rows = [
        [
            opp.symbol,
            opp.buy_source,
            opp.sell_source,
            f"{opp.buy_price:.6g}",
            f"{opp.sell_price:.6g}",
            f"{opp.gross_spread_pct:.3f}",
            f"{opp.net_profit_pct:.3f}",
            f"{opp.trade_notional:,.0f}",
            f"{opp.expected_profit:,.2f}",
            f"{opp.liquidity_score:.0f}",
            str(opp.confidence_score),
            opp.risk_tier,
        ]
        for opp in opportunities
    ]
    _print_table(headers, rows)


def _print_persisted_opportunities(
    records: list[PersistedOpportunity],
    counts: dict[str, int],
    limit: int,
    status: str,
) -> None:
    heading = f"Showing up to {limit} tracked opportunities (status={status})"
    print(heading)
    print("=" * len(heading))
    print(f"Active: {counts['active']}  Cleared: {counts['cleared']}  Total: {counts['total']}")

    if not records:
        print("No tracked opportunities found.")
        return

    headers = ["First Seen (UTC)", "Symbol", "Route", "Net %", "Peak %", "Profit $", "Conf", "Status", "Cleared (UTC)", "Alerted"]

    def _format_row(record: PersistedOpportunity) -> list[str]:
        cleared = record.cleared_at.strftime("%Y-%m-%d %H:%M:%S") if record.cleared_at else "-"
        return [
            record.first_detected_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.symbol,
            f"{record.buy_source} -> {record.sell_source}",
            f"{record.net_profit_pct:.2f}",
            f"{record.peak_profit_pct:.2f}",
            f"{record.expected_profit:,.2f}",
            str(record.confidence_score),
            record.status,
            cleared,
            "Yes" if record.alert_sent else "No",
        ]

    _print_table(headers, [_format_row(record) for record in records])


if __name__ == "__main__":
    main()
