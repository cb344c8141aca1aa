"""
Strikeflow Configuration

Aggregates the per-layer configurations, applies environment profiles and
environment variable overrides, and validates the result.

Load order:
    1. Dataclass defaults
    2. Environment profile (development / staging / production)
    3. Environment variable overrides
    4. validate() - raises ConfigValidationError
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional
import hashlib
import json
import logging
import os

from strikeflow.decision_engine.config import DecisionEngineConfig
from strikeflow.errors import ConfigValidationError
from strikeflow.execution.config import ExecutionConfig
from strikeflow.market_data.config import MarketDataConfig
from strikeflow.position_manager.config import PositionManagerConfig
from strikeflow.pipeline.config import PipelineConfig
from strikeflow.signals.config import SignalsConfig

LOG = logging.getLogger(__name__)

ENVIRONMENTS = ("development", "staging", "production")


@dataclass
class StrikeflowConfig:
    """
    Complete system configuration.

    One instance is shared by every component built in strikeflow.runtime.
    """

    environment: str = "development"

    signals: SignalsConfig = field(default_factory=SignalsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    decision_engine: DecisionEngineConfig = field(default_factory=DecisionEngineConfig)
    position_manager: PositionManagerConfig = field(default_factory=PositionManagerConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    # SQLite store path. None selects the in-memory store.
    db_path: Optional[str] = None

    config_version: str = "1.0.0"

    def compute_hash(self) -> str:
        """
        Compute deterministic hash of configuration.

        Used to stamp decisions so they can be reproduced.
        """
        config_dict = asdict(self)
        config_json = json.dumps(config_dict, sort_keys=True, default=str)
        return hashlib.sha256(config_json.encode()).hexdigest()[:12]

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        data = asdict(self)
        data['config_hash'] = self.compute_hash()
        return data

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty when valid)"""
        errors = []
        validation = self.signals.validation
        dedup = self.signals.deduplication
        decision = self.decision_engine

        if self.environment not in ENVIRONMENTS:
            errors.append(f"environment must be one of {ENVIRONMENTS}, got {self.environment!r}")

        if validation.cooldown_seconds < 0:
            errors.append("cooldown_seconds must be non-negative")
        if validation.max_signal_age_minutes <= 0:
            errors.append("max_signal_age_minutes must be positive")
        if not 0.0 <= validation.min_confluence <= 1.0:
            errors.append("min_confluence must be between 0 and 1")
        for name in ('market_hours_start', 'market_hours_end'):
            if not _is_clock_time(getattr(validation, name)):
                errors.append(f"{name} must be HH:MM, got {getattr(validation, name)!r}")
        if (_is_clock_time(validation.market_hours_start) and _is_clock_time(validation.market_hours_end)
                and validation.market_hours_start >= validation.market_hours_end):
            errors.append("market_hours_start must be before market_hours_end")
        for window in validation.blocked_windows:
            if len(window) != 2 or not all(_is_clock_time(t) for t in window):
                errors.append(f"blocked window {window!r} must be a pair of HH:MM times")

        if dedup.window_seconds <= 0:
            errors.append("deduplication window_seconds must be positive")
        if dedup.max_entries <= 0:
            errors.append("deduplication max_entries must be positive")

        if decision.data_timeout_seconds <= 0:
            errors.append("data_timeout_seconds must be positive")
        if not 0.0 <= decision.confidence.min_entry_confidence <= 100.0:
            errors.append("min_entry_confidence must be between 0 and 100")

        sizing = decision.sizing
        if sizing.base_size <= 0:
            errors.append("base_size must be positive")
        if not 0.0 <= sizing.kelly_fraction <= 1.0:
            errors.append("kelly_fraction must be between 0 and 1")
        if sizing.min_size < 0:
            errors.append("min_size must be non-negative")
        if sizing.max_size < sizing.min_size:
            errors.append("max_size must be greater than or equal to min_size")

        risk = decision.risk
        if risk.max_vix_for_entry <= 0:
            errors.append("max_vix_for_entry must be positive")
        if not 0.0 < risk.vix_position_size_reduction <= 1.0:
            errors.append("vix_position_size_reduction must be in (0, 1]")
        if risk.max_total_exposure <= 0:
            errors.append("max_total_exposure must be positive")

        exit_config = decision.exit
        if exit_config.profit_target_percent <= 0:
            errors.append("profit_target_percent must be positive")
        if exit_config.stop_loss_percent >= 0:
            errors.append("stop_loss_percent must be negative")
        if not _is_clock_time(exit_config.session_exit_time):
            errors.append(f"session_exit_time must be HH:MM, got {exit_config.session_exit_time!r}")

        if self.market_data.context_ttl_seconds <= 0:
            errors.append("context_ttl_seconds must be positive")
        if self.market_data.fallback_max_age_seconds < self.market_data.context_ttl_seconds:
            errors.append("fallback_max_age_seconds must be at least context_ttl_seconds")

        if self.pipeline.batch_max_workers < 1:
            errors.append("batch_max_workers must be at least 1")
        if self.pipeline.batch_deadline_seconds is not None and self.pipeline.batch_deadline_seconds <= 0:
            errors.append("batch_deadline_seconds must be positive when set")
        if self.pipeline.worker_claim_timeout_seconds <= 0:
            errors.append("worker_claim_timeout_seconds must be positive")

        if self.position_manager.monitor_interval_seconds <= 0:
            errors.append("monitor_interval_seconds must be positive")
        if self.execution.slippage_bps < 0:
            errors.append("slippage_bps must be non-negative")
        if self.execution.mode != "paper":
            errors.append(f"execution mode {self.execution.mode!r} is not supported (only 'paper')")

        return errors


def _is_clock_time(value: str) -> bool:
    try:
        datetime.strptime(value, "%H:%M")
    except (TypeError, ValueError):
        return False
    return True


def _apply_development(config: StrikeflowConfig):
    config.signals.validation.cooldown_seconds = 60
    config.decision_engine.sizing.max_size = 10


def _apply_staging(config: StrikeflowConfig):
    config.signals.validation.cooldown_seconds = 120
    config.decision_engine.sizing.max_size = 3


def _apply_production(config: StrikeflowConfig):
    config.signals.validation.cooldown_seconds = 180
    config.decision_engine.risk.max_vix_for_entry = 40
    config.decision_engine.sizing.max_size = 5
    config.market_data.context_ttl_seconds = 30


PROFILES: Dict[str, Callable[[StrikeflowConfig], None]] = {
    "development": _apply_development,
    "staging": _apply_staging,
    "production": _apply_production,
}


# env var -> (setter, parser)
_ENV_OVERRIDES = {
    'COOLDOWN_SECONDS': (lambda c, v: setattr(c.signals.validation, 'cooldown_seconds', v), int),
    'MAX_SIGNAL_AGE_MINUTES': (lambda c, v: setattr(c.signals.validation, 'max_signal_age_minutes', v), int),
    'DEDUP_WINDOW_SECONDS': (lambda c, v: setattr(c.signals.deduplication, 'window_seconds', v), int),
    'MAX_VIX_FOR_ENTRY': (lambda c, v: setattr(c.decision_engine.risk, 'max_vix_for_entry', v), float),
    'MAX_POSITION_SIZE': (lambda c, v: setattr(c.decision_engine.sizing, 'max_size', v), float),
    'MAX_TOTAL_EXPOSURE': (lambda c, v: setattr(c.decision_engine.risk, 'max_total_exposure', v), float),
    'BASE_SIZE': (lambda c, v: setattr(c.decision_engine.sizing, 'base_size', v), float),
    'KELLY_FRACTION': (lambda c, v: setattr(c.decision_engine.sizing, 'kelly_fraction', v), float),
    'MIN_ENTRY_CONFIDENCE': (lambda c, v: setattr(c.decision_engine.confidence, 'min_entry_confidence', v), float),
    'CONTEXT_TTL_SECONDS': (lambda c, v: setattr(c.market_data, 'context_ttl_seconds', v), int),
    'STRIKEFLOW_DB_PATH': (lambda c, v: setattr(c, 'db_path', v), str),
}


def load_config(environment: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> StrikeflowConfig:
    """
    Build a validated configuration.

    Args:
        environment: Profile name. Defaults to STRIKEFLOW_ENV, then "development".
        env: Mapping to read overrides from (defaults to os.environ)

    Returns:
        Validated StrikeflowConfig

    Raises:
        ConfigValidationError: on unknown profile, unparseable override or
            failed validation
    """
    env = os.environ if env is None else env
    environment = (environment or env.get('STRIKEFLOW_ENV') or 'development').lower()

    if environment not in PROFILES:
        raise ConfigValidationError(
            "Unknown environment",
            [f"environment must be one of {ENVIRONMENTS}, got {environment!r}"]
        )

    config = StrikeflowConfig(environment=environment)
    PROFILES[environment](config)

    parse_errors = []
    for name, (setter, parser) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            setter(config, parser(raw))
        except ValueError:
            parse_errors.append(f"{name}={raw!r} is not a valid {parser.__name__}")
            continue
        LOG.info(f"Config override from environment: {name}={raw}")

    errors = parse_errors + config.validate()
    if errors:
        raise ConfigValidationError("Invalid configuration", errors)

    LOG.info(f"Loaded {environment} configuration (hash={config.compute_hash()})")
    return config
