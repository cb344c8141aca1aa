"""
Signal Intake

Normalization, validation and deduplication of inbound trading signals.

Flow:
    raw payload -> SignalNormalizer -> SignalValidator -> DeduplicationCache

Principles:
    - One canonical Signal shape regardless of source vocabulary
    - Every signal gets a tracking ID at normalization
    - Validation is a fixed, ordered, short-circuiting gate battery
    - Replays inside the dedup window are detected by payload fingerprint
"""

from strikeflow.signals.config import SignalsConfig, ValidationConfig, DeduplicationConfig
from strikeflow.signals.schemas import (
    Signal,
    SignalSource,
    Direction,
    ValidationResult,
    PipelineStage,
    PipelineFailure,
)
from strikeflow.signals.normalizer import SignalNormalizer
from strikeflow.signals.dedup_cache import DeduplicationCache
from strikeflow.signals.validator import (
    SignalValidator,
    CooldownGate,
    MarketHoursGate,
    MTFAlignmentGate,
    ConfluenceGate,
    TimeFilterGate,
)

__version__ = "1.0.0"

__all__ = [
    'SignalsConfig',
    'ValidationConfig',
    'DeduplicationConfig',
    'Signal',
    'SignalSource',
    'Direction',
    'ValidationResult',
    'PipelineStage',
    'PipelineFailure',
    'SignalNormalizer',
    'DeduplicationCache',
    'SignalValidator',
    'CooldownGate',
    'MarketHoursGate',
    'MTFAlignmentGate',
    'ConfluenceGate',
    'TimeFilterGate',
]
