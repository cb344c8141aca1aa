"""
Market Data Configuration
"""

from dataclasses import dataclass


@dataclass
class MarketDataConfig:
    """Context cache configuration"""

    context_ttl_seconds: int = 60
    # Stale cached data may be served for this long when a refresh fails
    fallback_max_age_seconds: int = 300
    price_ttl_seconds: int = 60
