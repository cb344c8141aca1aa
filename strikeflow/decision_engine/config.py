"""
Decision Engine Configuration

Confidence layering, position sizing, risk filters and exit thresholds.
"""

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class ConfidenceConfig:
    """Layered confidence scoring configuration"""

    base_confidence: float = 50.0
    base_confidence_by_source: Dict[str, float] = field(default_factory=lambda: {
        "TRADINGVIEW": 50.0,
        "GEX": 55.0,
        "MTF": 55.0,
        "MANUAL": 45.0,
    })

    # Each adjustment term is clamped to +/- its range
    context_adjustment_range: float = 20.0
    positioning_adjustment_range: float = 15.0
    gex_adjustment_range: float = 15.0

    # Entry threshold on final (clamped) confidence
    min_entry_confidence: float = 50.0


@dataclass
class SizingConfig:
    """Position sizing configuration"""

    base_size: float = 1.0
    kelly_fraction: float = 0.25
    min_size: float = 1.0
    max_size: float = 10.0

    # Round final size down to whole contracts
    whole_contracts: bool = True

    regime_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "LOW_VOL": 1.2,
        "NORMAL": 1.0,
        "HIGH_VOL": 0.7,
    })

    # confluence multiplier = floor + span * score
    confluence_floor: float = 0.8
    confluence_span: float = 0.4


@dataclass
class RiskConfig:
    """Market filters and exposure limits"""

    max_vix_for_entry: float = 50.0
    high_vix_threshold: float = 30.0
    vix_position_size_reduction: float = 0.5
    max_total_exposure: float = 50000.0
    contract_multiplier: float = 100.0


@dataclass
class GexConfig:
    """Positioning / GEX input configuration"""

    max_stale_minutes: int = 240
    stale_weight_reduction: float = 0.5
    level_proximity_pct: float = 0.5  # Distance to support/resistance, in percent
    bullish_put_call_ratio: float = 0.7
    bearish_put_call_ratio: float = 1.2


@dataclass
class ExitConfig:
    """Exit rule thresholds (evaluated in fixed priority order)"""

    profit_target_percent: float = 50.0
    stop_loss_percent: float = -30.0
    enable_gex_flip_exit: bool = True
    time_stop_dte: int = 1
    max_hold_days: int = 5
    enable_session_close_exit: bool = True
    session_exit_time: str = "15:45"
    market_timezone: str = "America/New_York"


@dataclass
class DecisionEngineConfig:
    """Complete decision engine configuration"""

    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    gex: GexConfig = field(default_factory=GexConfig)
    exit: ExitConfig = field(default_factory=ExitConfig)

    # Timeout for each external data call
    data_timeout_seconds: float = 5.0
