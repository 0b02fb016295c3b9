#!/usr/bin/env python3
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class BookLevel:
    """A single price level with running totals from the best price outward."""
    price: float
    quantity: float
    cumulative_quantity: float
    cumulative_cost: float


@dataclass
class NormalizedOrderBook:
    """Order book for one source and symbol, sorted best price first on both sides."""
    source: str
    symbol: str
    fetched_at: float
    bids: List[BookLevel]
    asks: List[BookLevel]

    @property
    def best_bid(self) -> float:
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask(self) -> float:
        return self.asks[0].price if self.asks else 0.0

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid

    @property
    def mid_price(self) -> float:
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread_pct(self) -> float:
        mid = self.mid_price
        return (self.spread / mid) * 100 if mid > 0 else 0.0


@dataclass(frozen=True)
class ExecutionQuote:
    """Result of walking one side of a book for a target base amount."""
    fillable: bool
    vwap: float
    notional: float
    filled_amount: float
    levels_consumed: int
    best_price: float
    worst_price: float
    slippage_pct: float
    price_impact_pct: float

    @classmethod
    def empty(cls) -> "ExecutionQuote":
        return cls(
            fillable=False,
            vwap=0.0,
            notional=0.0,
            filled_amount=0.0,
            levels_consumed=0,
            best_price=0.0,
            worst_price=0.0,
            slippage_pct=0.0,
            price_impact_pct=0.0,
        )


@dataclass(frozen=True)
class FillCapacity:
    amount: float
    notional: float


@dataclass(frozen=True)
class SizeUnderSlippage:
    amount: float
    notional: float
    slippage_pct: float


@dataclass(frozen=True)
class LiquidityScore:
    score: float
    grade: str
    factors: Dict[str, float] = field(default_factory=dict)


@dataclass
class TransferTag:
    """Deposit/withdraw availability of the base currency along a route."""
    currency: str
    withdraw_on_buy: Optional[bool]
    deposit_on_sell: Optional[bool]

    @property
    def transferable(self) -> Optional[bool]:
        if self.withdraw_on_buy is False or self.deposit_on_sell is False:
            return False
        if self.withdraw_on_buy is None or self.deposit_on_sell is None:
            return None
        return True


@dataclass
class ArbitrageOpportunity:
    """A size-aware, fee-adjusted opportunity to buy on one source and sell on another."""
    symbol: str
    buy_source: str
    sell_source: str
    buy_price: float
    sell_price: float
    best_ask: float
    best_bid: float
    gross_spread_pct: float
    buy_fee_pct: float
    sell_fee_pct: float
    buy_slippage_pct: float
    sell_slippage_pct: float
    total_cost_pct: float
    net_profit_pct: float
    trade_amount: float
    trade_notional: float
    sell_notional: float
    expected_profit: float
    buy_liquidity_score: float
    sell_liquidity_score: float
    liquidity_score: float
    buy_levels_used: int
    sell_levels_used: int
    confidence_score: int
    risk_tier: str
    detected_at: datetime
    transfer: Optional[TransferTag] = None

    @property
    def opportunity_key(self) -> str:
        return f"{self.symbol}-{self.buy_source}-{self.sell_source}"

    @property
    def total_slippage_pct(self) -> float:
        return self.buy_slippage_pct + self.sell_slippage_pct

    @property
    def total_fee_pct(self) -> float:
        return self.buy_fee_pct + self.sell_fee_pct

    def to_dict(self) -> dict:
        data = asdict(self)
        data['opportunity_key'] = self.opportunity_key
        data['detected_at'] = self.detected_at.isoformat()
        data['transferable'] = self.transfer.transferable if self.transfer else None
        return data


@dataclass
class RevalidationResult:
    """Outcome of re-checking an opportunity against fresh order books."""
    valid: bool
    reason: str
    current_net_profit_pct: Optional[float]
    profit_change_pct: Optional[float]
    age_seconds: float
