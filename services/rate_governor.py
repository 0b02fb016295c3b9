"""Per-source token bucket limiter with throttle-aware retries."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from constants import BACKOFF_JITTER, BACKOFF_MULTIPLIER, DEFAULT_RATE_LIMIT, SOURCE_RATE_LIMITS
from services.market_data import THROTTLED, ProviderError, ThrottledError, looks_throttled, parse_retry_after

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Refill rounding slack so a sleep of exactly the deficit yields a token.
_TOKEN_EPSILON = 1e-9


@dataclass(slots=True)
class RateLimitConfig:
    rate: float
    burst: int
    max_retries: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 30.0
    multiplier: float = BACKOFF_MULTIPLIER
    jitter: float = BACKOFF_JITTER

    @classmethod
    def from_dict(cls, values: dict) -> "RateLimitConfig":
        return cls(**values)


@dataclass(slots=True)
class _SourceState:
    tokens: float
    last_refill: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    consecutive_errors: int = 0
    cooldown_until: float = 0.0


class RateGovernor:
    """Paces outbound calls per source and retries the ones a source throttles.

    Each source owns its own bucket and lock, so callers against different
    sources never wait on each other while callers against the same source
    consume tokens one at a time.
    """

    def __init__(
        self,
        limits: Optional[dict[str, RateLimitConfig]] = None,
        default: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._limits = {name.lower(): config for name, config in (limits or {}).items()}
        self._default = default or RateLimitConfig.from_dict(DEFAULT_RATE_LIMIT)
        self._states: dict[str, _SourceState] = {}
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_overrides(cls, overrides: Optional[dict[str, tuple[float, int]]] = None, **kwargs: Any) -> "RateGovernor":
        """Builds a governor from the known-source table plus (rate, burst) overrides."""
        limits = {name: RateLimitConfig.from_dict(values) for name, values in SOURCE_RATE_LIMITS.items()}
        for source, (rate, burst) in (overrides or {}).items():
            base = limits.get(source) or RateLimitConfig.from_dict(DEFAULT_RATE_LIMIT)
            limits[source] = dataclasses.replace(base, rate=rate, burst=burst)
        return cls(limits, **kwargs)

    def limits_for(self, source_id: str) -> RateLimitConfig:
        return self._limits.get(source_id.lower(), self._default)

    def _state(self, source_id: str) -> _SourceState:
        state = self._states.get(source_id)
        if state is None:
            limits = self.limits_for(source_id)
            state = _SourceState(tokens=float(limits.burst), last_refill=self._clock())
            self._states[source_id] = state
        return state

    def _refill(self, state: _SourceState, limits: RateLimitConfig) -> None:
        now = self._clock()
        elapsed = now - state.last_refill
        if elapsed > 0:
            state.tokens = min(float(limits.burst), state.tokens + elapsed * limits.rate)
            state.last_refill = now

    async def acquire(self, source_id: str) -> None:
        """Waits until the source is out of cooldown and a token is available, then takes it."""
        source_id = source_id.lower()
        limits = self.limits_for(source_id)
        state = self._state(source_id)
        async with state.lock:
            while True:
                cooldown = state.cooldown_until - self._clock()
                if cooldown > 0:
                    await self._sleep(cooldown)
                    continue
                self._refill(state, limits)
                if state.tokens >= 1 - _TOKEN_EPSILON:
                    state.tokens -= 1
                    return
                await self._sleep((1 - state.tokens) / limits.rate)

    @staticmethod
    def is_throttle_error(exc: BaseException) -> bool:
        if isinstance(exc, ProviderError):
            return exc.kind == THROTTLED
        for attr in ('status', 'status_code', 'http_status'):
            if getattr(exc, attr, None) == 429:
                return True
        name = exc.__class__.__name__.lower()
        if 'ratelimit' in name or 'ddosprotection' in name:
            return True
        return looks_throttled(str(exc))

    @staticmethod
    def retry_after_hint(exc: BaseException) -> Optional[float]:
        hint = getattr(exc, 'retry_after', None)
        if hint is not None:
            return float(hint)
        headers = getattr(exc, 'headers', None)
        if headers:
            value = headers.get('Retry-After') or headers.get('retry-after')
            if value is not None:
                try:
                    return float(value)
                except (TypeError, ValueError):
                    pass
        return parse_retry_after(str(exc))

    def register_throttle(self, source_id: str, exc: Optional[BaseException] = None) -> float:
        """Puts the source in cooldown and returns the cooldown length in seconds."""
        source_id = source_id.lower()
        limits = self.limits_for(source_id)
        state = self._state(source_id)

        hint = self.retry_after_hint(exc) if exc is not None else None
        if hint is not None and hint > 0:
            backoff = hint
        else:
            backoff = min(limits.max_backoff, limits.base_backoff * limits.multiplier ** state.consecutive_errors)
            backoff += backoff * limits.jitter * self._rng.random()

        state.consecutive_errors += 1
        state.cooldown_until = max(state.cooldown_until, self._clock() + backoff)
        return backoff

    async def execute(self, source_id: str, call: Callable[[], Awaitable[T]]) -> T:
        """Runs call() under the source's rate limit, retrying throttled attempts."""
        source_id = source_id.lower()
        limits = self.limits_for(source_id)
        attempt = 0
        while True:
            await self.acquire(source_id)
            try:
                result = await call()
            except Exception as exc:
                if not self.is_throttle_error(exc):
                    raise
                backoff = self.register_throttle(source_id, exc)
                if attempt >= limits.max_retries:
                    logger.warning(
                        "%s still throttling after %d retries, giving up: %s",
                        source_id, limits.max_retries, exc,
                    )
                    raise
                attempt += 1
                logger.info(
                    "%s throttled, retry %d/%d in %.2fs",
                    source_id, attempt, limits.max_retries, backoff,
                )
                continue
            self._states[source_id].consecutive_errors = 0
            return result

    async def execute_batch(
        self,
        source_id: str,
        calls: Iterable[Callable[[], Awaitable[Any]]],
    ) -> list[Any]:
        """Runs calls one after another; failures are returned in place of results."""
        results: list[Any] = []
        for call in calls:
            try:
                results.append(await self.execute(source_id, call))
            except Exception as exc:
                results.append(exc)
        return results

    def status(self) -> dict[str, dict]:
        """Snapshot of every source the governor has seen."""
        now = self._clock()
        report: dict[str, dict] = {}
        for source_id, state in self._states.items():
            limits = self.limits_for(source_id)
            if not state.lock.locked():
                self._refill(state, limits)
            cooldown_remaining = max(0.0, state.cooldown_until - now)
            report[source_id] = {
                'available_tokens': round(state.tokens, 3),
                'max_tokens': limits.burst,
                'rate': limits.rate,
                'is_rate_limited': cooldown_remaining > 0,
                'consecutive_errors': state.consecutive_errors,
                'cooldown_remaining': round(cooldown_remaining, 3),
            }
        return report


__all__ = ["RateGovernor", "RateLimitConfig"]
