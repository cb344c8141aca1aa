"""
Shared fixtures for the strikeflow test suite

All components run on an injected clock pinned to a regular-session
weekday (Tuesday 2024-03-05 10:00 ET) so no test depends on wall time.
"""

from datetime import datetime, timedelta, timezone

import pytest

from strikeflow.config import StrikeflowConfig
from strikeflow.market_data.schemas import MarketContext, Regime, Trend
from strikeflow.runtime import build_runtime
from strikeflow.signals.normalizer import SignalNormalizer


SESSION_OPEN_UTC = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)  # 10:00 ET


class FakeClock:
    """Mutable UTC clock"""

    def __init__(self, now: datetime = SESSION_OPEN_UTC):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime):
        self.now = now

    def epoch(self) -> float:
        return self.now.timestamp()


def create_raw_signal(**overrides) -> dict:
    """The canonical TradingView-style payload"""
    raw = {'symbol': 'SPY', 'action': 'BUY', 'type': 'CALL', 'timeframe': '5m'}
    raw.update(overrides)
    return raw


def create_signal(clock=None, **overrides):
    """Normalized Signal built from create_raw_signal()"""
    return SignalNormalizer(clock or FakeClock()).normalize(create_raw_signal(**overrides))


def create_context(vix=18.0, trend=Trend.NEUTRAL, regime=Regime.NORMAL, bias=0.0, timestamp=None) -> MarketContext:
    return MarketContext(vix=vix, trend=trend, regime=regime, bias=bias,
                         timestamp=timestamp or SESSION_OPEN_UTC)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return StrikeflowConfig()


@pytest.fixture
def runtime(config, clock):
    """In-memory runtime with context and an SPY option price pushed"""
    rt = build_runtime(config, clock=clock)
    rt.market_data.update_context(create_context())
    rt.market_data.update_price('SPY', 2.50)
    yield rt
    rt.shutdown()
