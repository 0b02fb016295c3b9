#!/usr/bin/env python3
import os
import argparse
from typing import NamedTuple
import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    sources: list[str]
    symbols: list[str]
    min_profit_pct: float
    min_trade_usd: float
    max_trade_usd: float
    max_slippage_pct: float
    min_liquidity_score: float
    order_book_depth: int
    trade_sizes: list[float]
    interval: int
    batch_size: int
    batch_delay: float
    significant_profit_pct: float
    cache_ttl: float
    request_timeout: float
    rate_limit_overrides: dict[str, tuple[float, int]]
    fee_overrides: dict[str, float]
    check_transfers: bool
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    db_path: str
    log_level: str
    run_once: bool
    show_opportunities: bool
    opportunity_status: str
    opportunity_limit: int


def _parse_rate_limit(value: str) -> tuple[str, tuple[float, int]]:
    """Parses SOURCE=RATE:BURST into a (source, (rate, burst)) pair."""
    try:
        source, limits = value.split('=', 1)
        rate, burst = limits.split(':', 1)
        parsed = (float(rate), int(burst))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid rate limit '{value}', expected SOURCE=RATE:BURST")
    if parsed[0] <= 0 or parsed[1] < 1:
        raise argparse.ArgumentTypeError(f"rate limit for '{source}' must have rate > 0 and burst >= 1")
    return source.strip().lower(), parsed


def _parse_fee(value: str) -> tuple[str, float]:
    """Parses SOURCE=PERCENT into a (source, fee) pair."""
    try:
        source, fee = value.split('=', 1)
        parsed = float(fee)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid fee '{value}', expected SOURCE=PERCENT")
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"fee for '{source}' cannot be negative")
    return source.strip().lower(), parsed


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Scan centralized exchange order books for size-aware arbitrage opportunities.",
        epilog="Example: ./main.py --source binance kucoin okx --symbol BTC/USDT ETH/USDT --min-profit 0.2"
    )
    # --- Detection Arguments ---
    parser.add_argument('--source', nargs='+', default=constants.DEFAULT_SOURCES, help='Exchange ids to compare (default: %(default)s).')
    parser.add_argument('--symbol', nargs='+', default=constants.DEFAULT_SYMBOLS, help='Symbols to scan, e.g. BTC/USDT.')
    parser.add_argument('--min-profit', type=float, default=0.1, help='Minimum net profit percentage (default: 0.1).')
    parser.add_argument('--min-trade', type=float, default=100.0, help='Minimum trade notional in quote currency (default: 100).')
    parser.add_argument('--max-trade', type=float, default=10000.0, help='Maximum trade notional in quote currency (default: 10000).')
    parser.add_argument('--max-slippage', type=float, default=0.5, help='Maximum combined slippage percentage (default: 0.5).')
    parser.add_argument('--min-liquidity', type=float, default=40.0, help='Minimum average liquidity score 0-100 (default: 40).')
    parser.add_argument('--depth', type=int, default=20, help='Order book depth to request (default: 20).')
    parser.add_argument('--trade-sizes', nargs='+', type=float, default=constants.DEFAULT_TRADE_SIZES, help='Trade size ladder in quote currency.')

    # --- Scheduling Arguments ---
    parser.add_argument('--interval', type=int, default=300, help='Seconds to wait between each scan (default: 300).')
    parser.add_argument('--batch-size', type=int, default=5, help='Symbols scanned concurrently per batch (default: 5).')
    parser.add_argument('--batch-delay', type=float, default=1.0, help='Seconds to pause between batches (default: 1.0).')
    parser.add_argument('--significant-profit', type=float, default=2.0, help='Net profit percentage that gets persisted and alerted (default: 2.0).')
    parser.add_argument('--cache-ttl', type=float, default=constants.ORDER_BOOK_CACHE_TTL, help='Order book cache TTL in seconds (default: 5).')
    parser.add_argument('--request-timeout', type=float, default=30.0, help='Per-request timeout in seconds (default: 30).')
    parser.add_argument('--rate-limit', action='append', type=_parse_rate_limit, default=[], metavar='SOURCE=RATE:BURST', help='Override a source rate limit. Repeatable.')
    parser.add_argument('--fee', action='append', type=_parse_fee, default=[], metavar='SOURCE=PERCENT', help='Override a source taker fee. Repeatable.')
    parser.add_argument('--check-transfers', action='store_true', help='Tag opportunities with deposit/withdraw availability.')

    # --- Output Arguments ---
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable Telegram notifications and commands.')
    parser.add_argument('--once', action='store_true', help='Run a single scan, print the results and exit.')
    parser.add_argument('--show-opportunities', action='store_true', help='Display persisted significant opportunities and exit.')
    parser.add_argument('--opportunity-status', choices=['active', 'cleared', 'all'], default='all', help='Filter persisted opportunities by status (default: all).')
    parser.add_argument('--opportunity-limit', type=int, default=20, help='Number of persisted opportunities to display (default: 20).')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], default='INFO', help='Logging level (default: INFO).')

    args = parser.parse_args()

    sources = list(dict.fromkeys(source.lower() for source in args.source))
    symbols = list(dict.fromkeys(symbol.upper() for symbol in args.symbol))

    if len(sources) < 2 and not args.show_opportunities:
        print(f"{constants.C_RED}Insufficient exchanges - need at least 2 sources to compare.{constants.C_RESET}")
        exit(1)

    if args.min_trade <= 0 or args.min_trade > args.max_trade:
        print(f"{constants.C_RED}--min-trade must be positive and not greater than --max-trade.{constants.C_RESET}")
        exit(1)

    if any(size <= 0 for size in args.trade_sizes):
        print(f"{constants.C_RED}--trade-sizes must all be positive.{constants.C_RESET}")
        exit(1)

    if args.interval <= 0 or args.batch_size <= 0 or args.depth <= 0:
        print(f"{constants.C_RED}--interval, --batch-size and --depth must be positive.{constants.C_RESET}")
        exit(1)

    # Load from environment
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)
    db_path = os.environ.get(constants.DB_PATH_ENV_VAR) or constants.DEFAULT_DB_PATH

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    return AppConfig(
        sources=sources,
        symbols=symbols,
        min_profit_pct=args.min_profit,
        min_trade_usd=args.min_trade,
        max_trade_usd=args.max_trade,
        max_slippage_pct=args.max_slippage,
        min_liquidity_score=args.min_liquidity,
        order_book_depth=args.depth,
        trade_sizes=sorted(args.trade_sizes),
        interval=args.interval,
        batch_size=args.batch_size,
        batch_delay=args.batch_delay,
        significant_profit_pct=args.significant_profit,
        cache_ttl=args.cache_ttl,
        request_timeout=args.request_timeout,
        rate_limit_overrides=dict(args.rate_limit),
        fee_overrides=dict(args.fee),
        check_transfers=args.check_transfers,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        db_path=db_path,
        log_level=args.log_level,
        run_once=args.once,
        show_opportunities=args.show_opportunities,
        opportunity_status=args.opportunity_status,
        opportunity_limit=args.opportunity_limit,
    )
