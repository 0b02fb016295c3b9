# scanner.py
import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional

from analysis.detector import OpportunityDetector
from analysis.models import ArbitrageOpportunity, RevalidationResult
from config import AppConfig
from constants import C_BLUE, C_GREEN, C_RED, C_RESET, C_YELLOW
from services.orderbook_cache import OrderBookCache
from services.rate_governor import RateGovernor
from services.telegram_notifier import TelegramNotifier
from services.transfer_status import TransferStatusChecker
from storage import SQLiteRepository


@dataclass
class ScanStats:
    total_scans: int = 0
    failed_scans: int = 0
    skipped_scans: int = 0
    total_opportunities_found: int = 0
    last_scan_duration: Optional[float] = None
    last_symbols_scanned: int = 0

    @property
    def avg_opportunities_per_scan(self) -> float:
        if self.total_scans == 0:
            return 0.0
        return self.total_opportunities_found / self.total_scans

    def to_dict(self) -> dict:
        data = asdict(self)
        data['avg_opportunities_per_scan'] = round(self.avg_opportunities_per_scan, 2)
        return data


@dataclass
class ScanSnapshot:
    """What callers see of the latest scan, plus how stale it is."""
    ready: bool
    opportunities: List[ArbitrageOpportunity]
    last_update: Optional[datetime]
    age_seconds: Optional[float]
    is_scanning: bool
    error: Optional[str]
    next_scheduled_scan: Optional[datetime]
    stats: dict = field(default_factory=dict)
    rejected: bool = False


class ArbitrageScanner:
    def __init__(
        self,
        config: AppConfig,
        detector: OpportunityDetector,
        cache: OrderBookCache,
        governor: RateGovernor,
        repository: Optional[SQLiteRepository] = None,
        notifier: Optional[TelegramNotifier] = None,
        transfer_checker: Optional[TransferStatusChecker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.detector = detector
        self.cache = cache
        self.governor = governor
        self.repository = repository
        self.notifier = notifier
        self.transfer_checker = transfer_checker
        self.stats = ScanStats()
        self._sleep = sleep
        self._opportunities: List[ArbitrageOpportunity] = []
        self._last_update: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._scanning = False
        self._next_scan_at: Optional[datetime] = None
        self._pending_changes: dict = {}
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Runs an immediate scan, then re-scans every interval until stop() is called."""
        self._stop_event.clear()
        await self._run_main_loop()

    async def _run_main_loop(self):
        """The main scanning loop."""
        while not self._stop_event.is_set():
            print("\n" + "="*50)
            print("Starting new arbitrage scan cycle...")
            await self.run_scan()

            self._next_scan_at = datetime.now(timezone.utc) + timedelta(seconds=self.config.interval)
            print(f"Scan finished. Waiting {self.config.interval} seconds...")
            print("="*50)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                pass
        self._next_scan_at = None

    def run_in_background(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self) -> None:
        """Stops the loop after any in-flight scan completes."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def is_ready(self) -> bool:
        return self._last_update is not None

    async def refresh_now(self) -> ScanSnapshot:
        """Forces a scan unless one is already running, then returns the snapshot."""
        if self._scanning:
            self.stats.skipped_scans += 1
            snapshot = self.get_cached()
            snapshot.rejected = True
            return snapshot
        await self.run_scan()
        return self.get_cached()

    async def run_scan(self) -> bool:
        """Runs one full scan. Returns False if it was rejected or failed."""
        if self._scanning:
            self.stats.skipped_scans += 1
            print(f"{C_YELLOW}Scan already in progress; ignoring trigger.{C_RESET}")
            return False

        self._scanning = True
        self._next_scan_at = None
        if self._pending_changes:
            self._apply_config_changes(self._pending_changes)
            self._pending_changes = {}

        started = time.monotonic()
        cycle_id = await self._record_scan_cycle_start()
        found = 0
        significant_count = 0
        error: Optional[str] = None
        try:
            self.cache.clear()
            opportunities = await self._scan_all_symbols()
            if self.transfer_checker is not None:
                await self._tag_transfers(opportunities)

            self._opportunities = opportunities
            self._last_update = datetime.now(timezone.utc)
            self._last_error = None
            found = len(opportunities)
            self.stats.total_scans += 1
            self.stats.total_opportunities_found += found
            self.stats.last_symbols_scanned = len(self.config.symbols)
            self._print_results(opportunities)

            significant = [
                opp for opp in opportunities
                if opp.net_profit_pct >= self.config.significant_profit_pct
            ]
            significant_count = len(significant)
            await self._process_significant(significant)
            return True
        except Exception as e:
            error = str(e) or e.__class__.__name__
            self._last_error = error
            self.stats.failed_scans += 1
            print(f"{C_RED}Error during scan cycle: {error}{C_RESET}")
            return False
        finally:
            self.stats.last_scan_duration = time.monotonic() - started
            await self._record_scan_cycle_finish(cycle_id, found, significant_count, error)
            self._scanning = False

    async def _scan_all_symbols(self) -> List[ArbitrageOpportunity]:
        """Scans the symbol universe in fixed-size batches with a pause in between."""
        symbols = list(self.config.symbols)
        batch_size = max(1, self.config.batch_size)
        results: List[ArbitrageOpportunity] = []

        for index in range(0, len(symbols), batch_size):
            batch = symbols[index:index + batch_size]
            batch_results = await asyncio.gather(*(self._scan_symbol(symbol) for symbol in batch))
            for opportunities in batch_results:
                results.extend(opportunities)
            if index + batch_size < len(symbols) and self.config.batch_delay > 0:
                await self._sleep(self.config.batch_delay)

        results.sort(key=lambda opp: opp.expected_profit, reverse=True)
        return results

    async def _scan_symbol(self, symbol: str) -> List[ArbitrageOpportunity]:
        print(f"Scanning symbol: {C_YELLOW}{symbol}{C_RESET} across {C_BLUE}{len(self.config.sources)}{C_RESET} sources")
        try:
            return await self.detector.find_opportunities(symbol)
        except Exception as e:
            print(f"{C_RED}Error scanning {symbol}: {e}{C_RESET}")
            return []

    async def _tag_transfers(self, opportunities: List[ArbitrageOpportunity]) -> None:
        for opp in opportunities:
            try:
                opp.transfer = await self.transfer_checker.check_route(opp.symbol, opp.buy_source, opp.sell_source)
            except Exception as exc:
                print(f"{C_YELLOW}Could not check transfers for {opp.opportunity_key}: {exc}{C_RESET}")

    async def _process_significant(self, significant: List[ArbitrageOpportunity]) -> None:
        """Persists significant opportunities and alerts on new or reactivated ones."""
        if not self.repository:
            return
        try:
            fresh = await self.repository.sync_significant_opportunities(significant)
        except Exception as exc:
            print(f"{C_RED}Failed to persist significant opportunities: {exc}{C_RESET}")
            return

        pending = [record for record in fresh if record is not None and not record.alert_sent]
        if not pending:
            return
        if self.notifier is None:
            print(f"{C_GREEN}{len(pending)} new significant opportunities (no notifier configured).{C_RESET}")
            return

        try:
            await self.notifier.on_significant_opportunities(pending)
        except Exception as exc:
            print(f"{C_RED}Failed to send significant opportunity alert: {exc}{C_RESET}")
            return

        try:
            await self.repository.mark_alert_sent([record.opportunity_key for record in pending])
        except Exception as exc:
            print(f"{C_RED}Failed to persist alert flags: {exc}{C_RESET}")

    def _print_results(self, opportunities: List[ArbitrageOpportunity]) -> None:
        print("-" * 40)
        for opp in opportunities[:10]:
            self._print_opportunity(opp)
        print(f"Scan complete. Found {len(opportunities)} profitable opportunities.")

    def _print_opportunity(self, opp: ArbitrageOpportunity):
        """Formats and prints a single opportunity to the console."""
        colour = C_GREEN if opp.net_profit_pct >= self.config.significant_profit_pct else C_BLUE
        print(f"{colour}OPPORTUNITY: {opp.symbol} buy {opp.buy_source} -> sell {opp.sell_source}"
              f" | Net: {opp.net_profit_pct:.2f}% | Profit: ${opp.expected_profit:.2f}"
              f" on ${opp.trade_notional:,.0f} | Confidence: {opp.confidence_score} ({opp.risk_tier}){C_RESET}")

    async def _record_scan_cycle_start(self) -> Optional[int]:
        if not self.repository:
            return None
        try:
            return await self.repository.record_scan_cycle_start(self.config.sources, self.config.symbols)
        except Exception as exc:
            print(f"{C_RED}Failed to persist scan cycle start: {exc}{C_RESET}")
            return None

    async def _record_scan_cycle_finish(
        self,
        cycle_id: Optional[int],
        opportunities_found: int,
        significant_found: int,
        error: Optional[str],
    ) -> None:
        if not self.repository or cycle_id is None:
            return
        try:
            await self.repository.record_scan_cycle_finish(cycle_id, opportunities_found, significant_found, error)
        except Exception as exc:
            print(f"{C_RED}Failed to persist scan cycle finish: {exc}{C_RESET}")

    def get_cached(self) -> ScanSnapshot:
        age = None
        if self._last_update is not None:
            age = (datetime.now(timezone.utc) - self._last_update).total_seconds()
        return ScanSnapshot(
            ready=self.is_ready(),
            opportunities=list(self._opportunities),
            last_update=self._last_update,
            age_seconds=age,
            is_scanning=self._scanning,
            error=self._last_error,
            next_scheduled_scan=self._next_scan_at,
            stats=self.stats.to_dict(),
        )

    def get_service_stats(self) -> dict:
        return {
            'ready': self.is_ready(),
            'is_scanning': self._scanning,
            'last_update': self._last_update.isoformat() if self._last_update else None,
            'last_error': self._last_error,
            'sources': list(self.config.sources),
            'symbols': len(self.config.symbols),
            'scans': self.stats.to_dict(),
            'cache': self.cache.stats(),
            'rate_limits': self.governor.status(),
        }

    def update_config(self, **changes) -> None:
        """Applies config changes now, or at the start of the next scan if one is running."""
        unknown = set(changes) - set(AppConfig._fields)
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        if self._scanning:
            self._pending_changes.update(changes)
            return
        self._apply_config_changes(changes)

    def _apply_config_changes(self, changes: dict) -> None:
        self.config = self.config._replace(**changes)
        self.detector.config = self.config
        if 'fee_overrides' in changes:
            self.detector.scorer.set_fee_overrides(changes['fee_overrides'])

    async def revalidate(self, opportunity: ArbitrageOpportunity) -> RevalidationResult:
        return await self.detector.revalidate(opportunity)
