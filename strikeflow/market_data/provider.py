"""
Market Data Providers

The decision engine and exit monitor only see MarketDataProvider. Two
implementations ship with the package:

    InMemoryMarketDataProvider - push-fed (webhook context payloads, price
        updates), values expire through a ContextCache
    CachedMarketDataProvider - wraps any upstream provider with TTL caching,
        request coalescing and stale fallback
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional
import logging
import time

from strikeflow.errors import MarketDataUnavailableError
from strikeflow.market_data.config import MarketDataConfig
from strikeflow.market_data.context_cache import ContextCache
from strikeflow.market_data.schemas import MarketContext, Positioning

LOG = logging.getLogger(__name__)

_CONTEXT_KEY = ('context',)


def _price_key(symbol: str):
    return ('price', symbol.upper())


def _positioning_key(symbol: str):
    return ('positioning', symbol.upper())


class MarketDataProvider(ABC):
    """Market data interface"""

    @abstractmethod
    def get_current_price(self, symbol: str) -> float:
        """Latest underlying/contract price for symbol"""

    @abstractmethod
    def get_context(self) -> MarketContext:
        """Base market context (VIX, trend, regime, bias)"""

    @abstractmethod
    def get_positioning(self, symbol: str) -> Positioning:
        """Options positioning (GEX, put/call, levels) for symbol"""


class InMemoryMarketDataProvider(MarketDataProvider):
    """
    Push-fed provider.

    Values older than the TTL are still served (with a warning) up to
    fallback_max_age; beyond that the getters raise
    MarketDataUnavailableError.
    """

    def __init__(
        self,
        config: Optional[MarketDataConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or MarketDataConfig()
        self._context_cache = ContextCache(
            ttl_seconds=self.config.context_ttl_seconds,
            fallback_max_age_seconds=self.config.fallback_max_age_seconds,
            clock=clock,
        )
        self._price_cache = ContextCache(
            ttl_seconds=self.config.price_ttl_seconds,
            fallback_max_age_seconds=self.config.fallback_max_age_seconds,
            clock=clock,
        )

    def update_context(self, context: MarketContext):
        self._context_cache.put(_CONTEXT_KEY, context)
        LOG.debug(f"Context updated: VIX={context.vix} trend={context.trend.value}")

    def update_price(self, symbol: str, price: float):
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        self._price_cache.put(_price_key(symbol), float(price))

    def update_positioning(self, positioning: Positioning):
        self._context_cache.put(_positioning_key(positioning.symbol), positioning)

    def get_current_price(self, symbol: str) -> float:
        return self._price_cache.get(_price_key(symbol))

    def get_context(self) -> MarketContext:
        return self._context_cache.get(_CONTEXT_KEY)

    def get_positioning(self, symbol: str) -> Positioning:
        return self._context_cache.get(_positioning_key(symbol))

    def get_stats(self) -> dict:
        return {
            'context_cache': self._context_cache.get_stats(),
            'price_cache': self._price_cache.get_stats(),
        }


class CachedMarketDataProvider(MarketDataProvider):
    """Caching decorator around an upstream provider"""

    def __init__(
        self,
        upstream: MarketDataProvider,
        config: Optional[MarketDataConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.upstream = upstream
        self.config = config or MarketDataConfig()
        self._cache = ContextCache(
            ttl_seconds=self.config.context_ttl_seconds,
            fallback_max_age_seconds=self.config.fallback_max_age_seconds,
            clock=clock,
        )
        self._price_cache = ContextCache(
            ttl_seconds=self.config.price_ttl_seconds,
            fallback_max_age_seconds=self.config.fallback_max_age_seconds,
            clock=clock,
        )

    def get_current_price(self, symbol: str) -> float:
        return self._price_cache.get(
            _price_key(symbol), lambda: self.upstream.get_current_price(symbol)
        )

    def get_context(self) -> MarketContext:
        return self._cache.get(_CONTEXT_KEY, self.upstream.get_context)

    def get_positioning(self, symbol: str) -> Positioning:
        return self._cache.get(
            _positioning_key(symbol), lambda: self.upstream.get_positioning(symbol)
        )

    def invalidate(self):
        self._cache.invalidate()
        self._price_cache.invalidate()


__all__ = [
    'MarketDataProvider',
    'InMemoryMarketDataProvider',
    'CachedMarketDataProvider',
    'MarketDataUnavailableError',
]
