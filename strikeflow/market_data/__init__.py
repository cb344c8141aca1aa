"""
Market Data Layer

Narrow interface to context (VIX, trend, regime), options positioning
(GEX, put/call, support/resistance) and prices.

Base context and price are required inputs for entries. Positioning is
optional: when it is missing the decision engine runs in degraded mode.
"""

from strikeflow.market_data.config import MarketDataConfig
from strikeflow.market_data.schemas import (
    MarketContext,
    Trend,
    Regime,
    GexSignal,
    Positioning,
    ExitMarketData,
)
from strikeflow.market_data.context_cache import ContextCache
from strikeflow.market_data.provider import (
    MarketDataProvider,
    InMemoryMarketDataProvider,
    CachedMarketDataProvider,
)

__version__ = "1.0.0"

__all__ = [
    'MarketDataConfig',
    'MarketContext',
    'Trend',
    'Regime',
    'GexSignal',
    'Positioning',
    'ExitMarketData',
    'ContextCache',
    'MarketDataProvider',
    'InMemoryMarketDataProvider',
    'CachedMarketDataProvider',
]
