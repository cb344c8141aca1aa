"""
Signal Validator

Fixed battery of gating checks, evaluated in order:
1. Cooldown - one signal per symbol+direction per cooldown window
2. Market hours - signal time inside the regular session
3. MTF alignment - higher timeframes agree
4. Confluence - enough independent confirmation
5. Time filters - signal not stale, not inside a blocked window

Evaluation short-circuits at the first failure; the failing gate's
description becomes the rejection reason and later gates report False.
"""

from datetime import datetime, time as dtime
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import threading

from dateutil import tz

from strikeflow.signals.config import ValidationConfig
from strikeflow.signals.schemas import Signal, ValidationResult, utcnow

LOG = logging.getLogger(__name__)

GateResult = Tuple[bool, str, Dict[str, Any]]

CHECK_ORDER = ('cooldown', 'market_hours', 'mtf', 'confluence', 'time_filters')

_TRUE_STRINGS = {'true', '1', 'yes', 'y'}
_FALSE_STRINGS = {'false', '0', 'no', 'n'}


def _parse_clock(value: str) -> dtime:
    return datetime.strptime(value, "%H:%M").time()


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return default


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class CooldownGate:
    """
    Gate 1: Cooldown

    Tracks the last accepted signal per symbol+direction. A replay of the
    exact payload that opened the cooldown is let through so the
    deduplication stage can classify it.
    """

    def __init__(self, config: ValidationConfig, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self._clock = clock
        self._last: Dict[str, Tuple[datetime, str]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def key(signal: Signal) -> str:
        return f"{signal.symbol}_{signal.direction.value}"

    def check(self, signal: Signal) -> GateResult:
        with self._lock:
            return self._evaluate(signal)

    def record(self, signal: Signal) -> bool:
        """
        Start the cooldown for an accepted signal.

        Returns False if another signal claimed the slot since check().
        """
        with self._lock:
            passed, _, _ = self._evaluate(signal)
            if not passed:
                return False
            previous = self._last.get(self.key(signal))
            if previous is None or previous[1] != signal.payload_hash:
                self._last[self.key(signal)] = (self._clock(), signal.payload_hash)
            return True

    def reset(self, symbol: Optional[str] = None):
        with self._lock:
            if symbol is None:
                self._last.clear()
            else:
                for key in [k for k in self._last if k.startswith(f"{symbol}_")]:
                    del self._last[key]

    def _evaluate(self, signal: Signal) -> GateResult:
        previous = self._last.get(self.key(signal))
        if previous is None:
            return True, "", {}

        last_time, last_hash = previous
        elapsed = (self._clock() - last_time).total_seconds()
        remaining = self.config.cooldown_seconds - elapsed
        details = {'elapsed_seconds': elapsed, 'remaining_seconds': max(remaining, 0.0)}

        if remaining <= 0 or last_hash == signal.payload_hash:
            return True, "", details
        return False, "Cooldown active", details


class MarketHoursGate:
    """Gate 2: Regular session hours in the exchange timezone"""

    def __init__(self, config: ValidationConfig):
        self.config = config
        self.timezone = tz.gettz(config.market_timezone)
        self.session_start = _parse_clock(config.market_hours_start)
        self.session_end = _parse_clock(config.market_hours_end)

    def check(self, signal: Signal) -> GateResult:
        local = signal.timestamp.astimezone(self.timezone)
        details = {'local_time': local.strftime("%Y-%m-%d %H:%M:%S %Z")}

        if local.weekday() not in self.config.trading_days:
            return False, "Outside market hours", details
        if not self.session_start <= local.time() <= self.session_end:
            return False, "Outside market hours", details
        return True, "", details


class MTFAlignmentGate:
    """
    Gate 3: Multi-timeframe alignment

    Uses metadata `mtf_aligned` (default True), or a numeric
    `mtf_alignment` / `mtf_score` when the payload carries one.
    """

    def __init__(self, config: ValidationConfig):
        self.config = config

    def check(self, signal: Signal) -> GateResult:
        metadata = signal.metadata
        score = _as_float(metadata.get('mtf_alignment', metadata.get('mtf_score')))
        if score is not None:
            details = {'mtf_score': score, 'min_mtf_alignment': self.config.min_mtf_alignment}
            if score < self.config.min_mtf_alignment:
                return False, "MTF alignment failed", details
            return True, "", details

        aligned = _as_bool(metadata.get('mtf_aligned'), default=True)
        if not aligned:
            return False, "MTF alignment failed", {'mtf_aligned': False}
        return True, "", {'mtf_aligned': True}


class ConfluenceGate:
    """Gate 4: Confluence score (metadata `confluence`, default 1.0)"""

    def __init__(self, config: ValidationConfig):
        self.config = config

    def check(self, signal: Signal) -> GateResult:
        metadata = signal.metadata
        score = _as_float(metadata.get('confluence', metadata.get('confluence_score')))
        if score is None:
            score = 1.0
        details = {'confluence': score, 'min_confluence': self.config.min_confluence}
        if score < self.config.min_confluence:
            return False, "Insufficient confluence", details
        return True, "", details


class TimeFilterGate:
    """Gate 5: Signal age and blocked time-of-day windows"""

    def __init__(self, config: ValidationConfig, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self._clock = clock
        self.timezone = tz.gettz(config.market_timezone)
        self.blocked_windows = [
            (_parse_clock(start), _parse_clock(end)) for start, end in config.blocked_windows
        ]

    def check(self, signal: Signal) -> GateResult:
        age_minutes = (self._clock() - signal.timestamp).total_seconds() / 60.0
        details = {'age_minutes': age_minutes, 'max_signal_age_minutes': self.config.max_signal_age_minutes}

        if age_minutes > self.config.max_signal_age_minutes:
            return False, "Signal too old", details
        if age_minutes < -self.config.max_signal_age_minutes:
            return False, "Signal timestamp in the future", details

        local_time = signal.timestamp.astimezone(self.timezone).time()
        for start, end in self.blocked_windows:
            if start <= local_time < end:
                details['blocked_window'] = f"{start.strftime('%H:%M')}-{end.strftime('%H:%M')}"
                return False, "Inside blocked trading window", details

        return True, "", details


class SignalValidator:
    """
    Runs the gate battery and produces a ValidationResult.

    Gates disabled in config report True without being evaluated.
    """

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or ValidationConfig()
        self.cooldown_gate = CooldownGate(self.config, clock)
        self.market_hours_gate = MarketHoursGate(self.config)
        self.mtf_gate = MTFAlignmentGate(self.config)
        self.confluence_gate = ConfluenceGate(self.config)
        self.time_filter_gate = TimeFilterGate(self.config, clock)

        self._gates = {
            'cooldown': (self.config.enable_cooldown, self.cooldown_gate),
            'market_hours': (self.config.enable_market_hours, self.market_hours_gate),
            'mtf': (self.config.enable_mtf, self.mtf_gate),
            'confluence': (self.config.enable_confluence, self.confluence_gate),
            'time_filters': (self.config.enable_time_filters, self.time_filter_gate),
        }

    def validate(self, signal: Signal) -> ValidationResult:
        """
        Validate a signal.

        Args:
            signal: Normalized signal

        Returns:
            ValidationResult with per-check flags and the first failure reason
        """
        checks = {name: False for name in CHECK_ORDER}
        details: Dict[str, Any] = {}

        for name in CHECK_ORDER:
            enabled, gate = self._gates[name]
            if not enabled:
                checks[name] = True
                continue

            passed, reason, gate_details = gate.check(signal)
            details[name] = gate_details
            if not passed:
                LOG.info(f"Signal {signal.id} rejected at {name}: {reason}")
                return ValidationResult(valid=False, checks=checks, rejection_reason=reason, details=details)
            checks[name] = True

        if self.config.enable_cooldown and not self.cooldown_gate.record(signal):
            checks = {name: False for name in CHECK_ORDER}
            LOG.info(f"Signal {signal.id} lost cooldown slot to a concurrent signal")
            return ValidationResult(valid=False, checks=checks, rejection_reason="Cooldown active", details=details)

        return ValidationResult(valid=True, checks=checks, details=details)
