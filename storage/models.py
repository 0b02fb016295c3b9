"""Dataclasses representing stored arbitrage records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

STATUS_ACTIVE = "active"
STATUS_CLEARED = "cleared"


@dataclass(slots=True)
class ScanCycleRecord:
    id: int
    started_at: datetime
    finished_at: Optional[datetime]
    sources: list[str]
    symbols: list[str]
    opportunities_found: int
    significant_found: int
    error: Optional[str]


@dataclass(slots=True)
class PersistedOpportunity:
    opportunity_key: str
    symbol: str
    buy_source: str
    sell_source: str
    buy_price: float
    sell_price: float
    gross_spread_pct: float
    total_cost_pct: float
    net_profit_pct: float
    trade_amount: float
    trade_notional: float
    expected_profit: float
    liquidity_score: float
    confidence_score: int
    risk_tier: str
    peak_profit_pct: float
    status: str
    first_detected_at: datetime
    last_seen_at: datetime
    cleared_at: Optional[datetime]
    alert_sent: bool

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE
