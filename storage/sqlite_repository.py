"""SQLite-backed persistence layer for scan cycles and significant opportunities."""
from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence

from analysis.models import ArbitrageOpportunity
from storage.models import STATUS_ACTIVE, STATUS_CLEARED, PersistedOpportunity, ScanCycleRecord

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _serialize_list(values: Iterable[str]) -> str:
    return ",".join(sorted(set(values)))


def _deserialize_list(value: Optional[str]) -> list[str]:
    return [item for item in (value or "").split(",") if item]


def _format_time(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(ISO_FORMAT)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def _row_to_opportunity(row: sqlite3.Row) -> PersistedOpportunity:
    return PersistedOpportunity(
        opportunity_key=row["opportunity_key"],
        symbol=row["symbol"],
        buy_source=row["buy_source"],
        sell_source=row["sell_source"],
        buy_price=row["buy_price"],
        sell_price=row["sell_price"],
        gross_spread_pct=row["gross_spread_pct"],
        total_cost_pct=row["total_cost_pct"],
        net_profit_pct=row["net_profit_pct"],
        trade_amount=row["trade_amount"],
        trade_notional=row["trade_notional"],
        expected_profit=row["expected_profit"],
        liquidity_score=row["liquidity_score"],
        confidence_score=row["confidence_score"],
        risk_tier=row["risk_tier"],
        peak_profit_pct=row["peak_profit_pct"],
        status=row["status"],
        first_detected_at=_parse_time(row["first_detected_at"]),
        last_seen_at=_parse_time(row["last_seen_at"]),
        cleared_at=_parse_time(row["cleared_at"]),
        alert_sent=bool(row["alert_sent"]),
    )


def _snapshot_values(opp: ArbitrageOpportunity) -> tuple:
    return (
        opp.buy_price,
        opp.sell_price,
        opp.gross_spread_pct,
        opp.total_cost_pct,
        opp.net_profit_pct,
        opp.trade_amount,
        opp.trade_notional,
        opp.expected_profit,
        opp.liquidity_score,
        opp.confidence_score,
        opp.risk_tier,
    )


class SQLiteRepository:
    """Provides async-friendly helpers for persisting significant opportunities."""

    def __init__(self, db_path: Path | str = Path("data/arbitrage_history.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS scan_cycle (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                sources TEXT NOT NULL,
                symbols TEXT NOT NULL,
                opportunities_found INTEGER NOT NULL DEFAULT 0,
                significant_found INTEGER NOT NULL DEFAULT 0,
                error TEXT
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS tracked_opportunity (
                opportunity_key TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                buy_source TEXT NOT NULL,
                sell_source TEXT NOT NULL,
                buy_price REAL NOT NULL,
                sell_price REAL NOT NULL,
                gross_spread_pct REAL NOT NULL,
                total_cost_pct REAL NOT NULL,
                net_profit_pct REAL NOT NULL,
                trade_amount REAL NOT NULL,
                trade_notional REAL NOT NULL,
                expected_profit REAL NOT NULL,
                liquidity_score REAL NOT NULL,
                confidence_score INTEGER NOT NULL,
                risk_tier TEXT NOT NULL,
                peak_profit_pct REAL NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('active', 'cleared')),
                first_detected_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                cleared_at TEXT,
                alert_sent INTEGER NOT NULL DEFAULT 0
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_tracked_opportunity_status_time
                ON tracked_opportunity(status, first_detected_at);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_tracked_opportunity_symbol_status
                ON tracked_opportunity(symbol, status);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def record_scan_cycle_start(self, sources: Iterable[str], symbols: Iterable[str]) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._record_scan_cycle_start_sync,
            list(sources),
            list(symbols),
        )

    def _record_scan_cycle_start_sync(self, sources: list[str], symbols: list[str]) -> int:
        started_at = datetime.now(timezone.utc).strftime(ISO_FORMAT)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO scan_cycle (started_at, sources, symbols)
                VALUES (?, ?, ?)
                """,
                (started_at, _serialize_list(sources), _serialize_list(symbols)),
            )
            self._connection.commit()
            cycle_id = cursor.lastrowid
            cursor.close()
        return cycle_id

    async def record_scan_cycle_finish(
        self,
        scan_cycle_id: int,
        opportunities_found: int,
        significant_found: int = 0,
        error: Optional[str] = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            self._record_scan_cycle_finish_sync,
            scan_cycle_id,
            opportunities_found,
            significant_found,
            error,
        )

    def _record_scan_cycle_finish_sync(
        self,
        scan_cycle_id: int,
        opportunities_found: int,
        significant_found: int,
        error: Optional[str],
    ) -> None:
        finished_at = datetime.now(timezone.utc).strftime(ISO_FORMAT)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE scan_cycle
                SET finished_at = ?, opportunities_found = ?, significant_found = ?, error = ?
                WHERE id = ?
                """,
                (finished_at, opportunities_found, significant_found, error, scan_cycle_id),
            )
            self._connection.commit()
            cursor.close()

    async def fetch_recent_scan_cycles(self, limit: int = 20) -> list[ScanCycleRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_scan_cycles_sync, limit)

    def _fetch_recent_scan_cycles_sync(self, limit: int) -> list[ScanCycleRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM scan_cycle
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,)
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            ScanCycleRecord(
                id=row["id"],
                started_at=_parse_time(row["started_at"]),
                finished_at=_parse_time(row["finished_at"]),
                sources=_deserialize_list(row["sources"]),
                symbols=_deserialize_list(row["symbols"]),
                opportunities_found=row["opportunities_found"],
                significant_found=row["significant_found"],
                error=row["error"],
            )
            for row in rows
        ]

    async def sync_significant_opportunities(
        self,
        opportunities: Sequence[ArbitrageOpportunity],
        seen_at: Optional[datetime] = None,
    ) -> list[PersistedOpportunity]:
        """
        Applies one scan cycle's significant opportunities to the tracked set.

        New pairs are created active, active pairs are refreshed, cleared pairs
        are reactivated with their alert flag reset, and active pairs missing
        from this cycle are cleared. Returns the records that were created or
        reactivated by this call.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._sync_significant_opportunities_sync,
            list(opportunities),
            seen_at or datetime.now(timezone.utc),
        )

    def _sync_significant_opportunities_sync(
        self,
        opportunities: list[ArbitrageOpportunity],
        seen_at: datetime,
    ) -> list[PersistedOpportunity]:
        now = _format_time(seen_at)
        seen_keys: list[str] = []
        fresh_keys: list[str] = []

        with self._lock:
            cursor = self._connection.cursor()
            try:
                for opp in opportunities:
                    key = opp.opportunity_key
                    if key in seen_keys:
                        continue
                    seen_keys.append(key)

                    cursor.execute(
                        "SELECT status, peak_profit_pct FROM tracked_opportunity WHERE opportunity_key = ?",
                        (key,),
                    )
                    existing = cursor.fetchone()
                    if existing is None:
                        cursor.execute(
                            """
                            INSERT INTO tracked_opportunity (
                                opportunity_key, symbol, buy_source, sell_source,
                                buy_price, sell_price, gross_spread_pct, total_cost_pct,
                                net_profit_pct, trade_amount, trade_notional, expected_profit,
                                liquidity_score, confidence_score, risk_tier,
                                peak_profit_pct, status, first_detected_at, last_seen_at,
                                cleared_at, alert_sent
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 0)
                            """,
                            (key, opp.symbol, opp.buy_source, opp.sell_source)
                            + _snapshot_values(opp)
                            + (opp.net_profit_pct, STATUS_ACTIVE, now, now),
                        )
                        fresh_keys.append(key)
                    elif existing["status"] == STATUS_CLEARED:
                        cursor.execute(
                            """
                            UPDATE tracked_opportunity
                            SET buy_price = ?, sell_price = ?, gross_spread_pct = ?, total_cost_pct = ?,
                                net_profit_pct = ?, trade_amount = ?, trade_notional = ?, expected_profit = ?,
                                liquidity_score = ?, confidence_score = ?, risk_tier = ?,
                                peak_profit_pct = ?, status = ?, first_detected_at = ?, last_seen_at = ?,
                                cleared_at = NULL, alert_sent = 0
                            WHERE opportunity_key = ?
                            """,
                            _snapshot_values(opp) + (opp.net_profit_pct, STATUS_ACTIVE, now, now, key),
                        )
                        fresh_keys.append(key)
                    else:
                        cursor.execute(
                            """
                            UPDATE tracked_opportunity
                            SET buy_price = ?, sell_price = ?, gross_spread_pct = ?, total_cost_pct = ?,
                                net_profit_pct = ?, trade_amount = ?, trade_notional = ?, expected_profit = ?,
                                liquidity_score = ?, confidence_score = ?, risk_tier = ?,
                                peak_profit_pct = ?, last_seen_at = ?
                            WHERE opportunity_key = ?
                            """,
                            _snapshot_values(opp)
                            + (max(existing["peak_profit_pct"], opp.net_profit_pct), now, key),
                        )

                if seen_keys:
                    placeholders = ", ".join("?" for _ in seen_keys)
                    cursor.execute(
                        f"""
                        UPDATE tracked_opportunity
                        SET status = ?, cleared_at = ?
                        WHERE status = ? AND opportunity_key NOT IN ({placeholders})
                        """,
                        (STATUS_CLEARED, now, STATUS_ACTIVE, *seen_keys),
                    )
                else:
                    cursor.execute(
                        "UPDATE tracked_opportunity SET status = ?, cleared_at = ? WHERE status = ?",
                        (STATUS_CLEARED, now, STATUS_ACTIVE),
                    )
                self._connection.commit()
            except sqlite3.Error:
                self._connection.rollback()
                raise
            finally:
                cursor.close()

        return [self._fetch_opportunity_locked(key) for key in fresh_keys]

    def _fetch_opportunity_locked(self, key: str) -> Optional[PersistedOpportunity]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM tracked_opportunity WHERE opportunity_key = ?", (key,))
            row = cursor.fetchone()
            cursor.close()
        return _row_to_opportunity(row) if row is not None else None

    async def fetch_opportunity(self, opportunity_key: str) -> Optional[PersistedOpportunity]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_opportunity_locked, opportunity_key)

    async def mark_alert_sent(self, opportunity_keys: Iterable[str]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._mark_alert_sent_sync, list(opportunity_keys))

    def _mark_alert_sent_sync(self, opportunity_keys: list[str]) -> None:
        if not opportunity_keys:
            return
        with self._lock:
            cursor = self._connection.cursor()
            cursor.executemany(
                "UPDATE tracked_opportunity SET alert_sent = 1 WHERE opportunity_key = ?",
                [(key,) for key in opportunity_keys],
            )
            self._connection.commit()
            cursor.close()

    async def fetch_opportunities(
        self,
        *,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[PersistedOpportunity]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_opportunities_sync, status, limit)

    def _fetch_opportunities_sync(self, status: Optional[str], limit: int) -> list[PersistedOpportunity]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM tracked_opportunity
                WHERE (? IS NULL OR status = ?)
                ORDER BY first_detected_at DESC
                LIMIT ?
                """,
                (status, status, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [_row_to_opportunity(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._count_by_status_sync)

    def _count_by_status_sync(self) -> dict[str, int]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT status, COUNT(*) AS total FROM tracked_opportunity GROUP BY status")
            rows = cursor.fetchall()
            cursor.close()
        counts = {STATUS_ACTIVE: 0, STATUS_CLEARED: 0}
        for row in rows:
            counts[row["status"]] = row["total"]
        counts["total"] = counts[STATUS_ACTIVE] + counts[STATUS_CLEARED]
        return counts

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = ["SQLiteRepository", "ScanCycleRecord", "PersistedOpportunity"]
