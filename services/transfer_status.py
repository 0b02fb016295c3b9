"""Deposit/withdraw availability lookups used to tag cross-source routes."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from analysis.models import TransferTag
from constants import CURRENCY_CACHE_TTL
from services.market_data import MarketDataProvider
from services.rate_governor import RateGovernor

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {'true', '1', 'yes', 'enabled', 'enable', 'on'}
_FALSE_STRINGS = {'false', '0', 'no', 'disabled', 'disable', 'off'}

_INFO_KEYS = {
    'deposit': ('deposit', 'depositEnable', 'depositEnabled', 'canDeposit', 'deposit_enabled', 'is_deposit_enabled'),
    'withdraw': ('withdraw', 'withdrawEnable', 'withdrawEnabled', 'canWithdraw', 'withdraw_enabled', 'is_withdraw_enabled'),
}


def to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _flag(currency: dict, field: str) -> Optional[bool]:
    direct = to_bool(currency.get(field))
    if direct is not None:
        return direct

    active = to_bool(currency.get('active'))
    if active is not None:
        return active

    info = currency.get('info')
    if isinstance(info, dict):
        for key in _INFO_KEYS[field]:
            value = to_bool(info.get(key))
            if value is not None:
                return value

    networks = currency.get('networks')
    if isinstance(networks, dict) and networks:
        states = [to_bool(network.get(field)) for network in networks.values() if isinstance(network, dict)]
        known = [state for state in states if state is not None]
        if known:
            return any(known)

    return None


def extract_transfer_status(currency: Optional[dict]) -> dict[str, Optional[bool]]:
    """Reads deposit/withdraw flags from a ccxt-style currency entry; unknown stays None."""
    if not isinstance(currency, dict):
        return {'deposit': None, 'withdraw': None}
    return {'deposit': _flag(currency, 'deposit'), 'withdraw': _flag(currency, 'withdraw')}


class TransferStatusChecker:
    def __init__(
        self,
        providers: dict[str, MarketDataProvider],
        governor: RateGovernor,
        ttl: float = CURRENCY_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.providers = providers
        self.governor = governor
        self.ttl = ttl
        self._clock = clock
        self._currencies: dict[str, tuple[float, dict]] = {}

    async def currencies(self, source: str) -> dict:
        cached = self._currencies.get(source)
        if cached and self._clock() - cached[0] < self.ttl:
            return cached[1]
        provider = self.providers.get(source)
        if provider is None:
            return {}
        try:
            currencies = await self.governor.execute(source, provider.fetch_currencies)
        except Exception as exc:
            logger.warning("Could not load currencies for %s: %s", source, exc)
            return {}
        self._currencies[source] = (self._clock(), currencies)
        return currencies

    async def check_route(self, symbol: str, buy_source: str, sell_source: str) -> TransferTag:
        """Can the base currency leave the buy source and arrive at the sell source?"""
        base = symbol.split('/')[0]
        buy_currencies = await self.currencies(buy_source)
        sell_currencies = await self.currencies(sell_source)
        return TransferTag(
            currency=base,
            withdraw_on_buy=extract_transfer_status(buy_currencies.get(base))['withdraw'],
            deposit_on_sell=extract_transfer_status(sell_currencies.get(base))['deposit'],
        )
