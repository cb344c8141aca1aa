"""
Signal Normalizer

Turns heterogeneous webhook payloads into canonical Signal objects.

Field resolution uses ordered alias lists (first non-empty value wins).
Anything that is not an alias field is kept verbatim in metadata.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
import hashlib
import json
import logging
import uuid

from dateutil import parser as date_parser

from strikeflow.errors import NormalizationError
from strikeflow.signals.schemas import Direction, Signal, SignalSource, utcnow

LOG = logging.getLogger(__name__)


FIELD_ALIASES: Dict[str, List[str]] = {
    'symbol': ['symbol', 'ticker', 'underlying'],
    'direction': ['direction', 'action', 'side', 'signal', 'type', 'option_type', 'optionType'],
    'timeframe': ['timeframe', 'tf', 'interval'],
    'timestamp': ['timestamp', 'time', 'signal_time'],
    'source': ['source'],
}

ALIAS_FIELDS = frozenset(alias for aliases in FIELD_ALIASES.values() for alias in aliases)

TIMEFRAME_ALIASES: Dict[str, str] = {
    '1m': '1m', '1min': '1m',
    '5m': '5m', '5min': '5m',
    '15m': '15m', '15min': '15m',
    '30m': '30m', '30min': '30m',
    '1h': '1h', '1hr': '1h', '1hour': '1h', '60m': '1h', '60min': '1h',
    '4h': '4h', '4hr': '4h',
    '1d': '1d', '1day': '1d', 'daily': '1d', 'd': '1d',
}

_CALL_WORDS = {'CALL', 'BUY', 'LONG', 'BULL', 'BULLISH'}
_PUT_WORDS = {'PUT', 'SELL', 'SHORT', 'BEAR', 'BEARISH'}

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 1e11


def payload_hash(raw: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a raw payload"""
    canonical = json.dumps(raw, sort_keys=True, default=str, separators=(',', ':'))
    return hashlib.sha256(canonical.encode()).hexdigest()


def normalize_symbol(value: Any) -> str:
    """'NASDAQ:qqq' -> 'QQQ', 'BRK.B' -> 'BRK'"""
    symbol = str(value).strip().upper()
    if ':' in symbol:
        symbol = symbol.split(':')[-1]
    if '.' in symbol:
        symbol = symbol.split('.')[0]
    return symbol.strip()


def normalize_direction(value: Any) -> Direction:
    """
    Map direction vocabulary onto CALL/PUT.

    Raises:
        NormalizationError: value matches neither side
    """
    text = str(value).strip().upper()
    if text in _CALL_WORDS:
        return Direction.CALL
    if text in _PUT_WORDS:
        return Direction.PUT
    if 'CALL' in text or text == 'C':
        return Direction.CALL
    if 'PUT' in text or text == 'P':
        return Direction.PUT
    raise NormalizationError(f"Invalid direction: {value!r}")


def normalize_timeframe(value: Any) -> str:
    """Canonical timeframe, unknown values pass through unchanged"""
    text = str(value).strip()
    return TIMEFRAME_ALIASES.get(text.lower(), text)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch seconds/milliseconds or datetimes into aware UTC"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.replace('.', '', 1).isdigit():
            return parse_timestamp(float(text))
        parsed = date_parser.parse(text)
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class SignalNormalizer:
    """
    Raw payload -> Signal.

    Every call assigns a fresh tracking ID, so two identical payloads yield
    two distinct Signals (duplicate detection happens downstream).
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def normalize(self, raw: Mapping[str, Any]) -> Signal:
        """
        Normalize a raw webhook payload.

        Args:
            raw: Deserialized JSON object

        Returns:
            Canonical Signal

        Raises:
            NormalizationError: payload is not a mapping, required fields
                are missing, or direction is unrecognised
        """
        if not isinstance(raw, Mapping):
            raise NormalizationError(f"Signal payload must be an object, got {type(raw).__name__}")

        symbol_raw = self._resolve(raw, 'symbol')
        direction_raw = self._resolve(raw, 'direction')
        timeframe_raw = self._resolve(raw, 'timeframe')

        missing = [
            name for name, value in (
                ('symbol', symbol_raw),
                ('direction', direction_raw),
                ('timeframe', timeframe_raw),
            ) if value is None
        ]
        if missing:
            raise NormalizationError(f"Missing required fields: {', '.join(missing)}", missing)

        symbol = normalize_symbol(symbol_raw)
        if not symbol:
            raise NormalizationError(f"Invalid symbol: {symbol_raw!r}", ['symbol'])

        now = self._clock()
        timestamp = self._resolve_timestamp(raw, now)

        signal = Signal(
            id=str(uuid.uuid4()),
            source=self._resolve_source(raw),
            symbol=symbol,
            direction=normalize_direction(direction_raw),
            timeframe=normalize_timeframe(timeframe_raw),
            timestamp=timestamp,
            metadata={k: v for k, v in raw.items() if k not in ALIAS_FIELDS},
            payload_hash=payload_hash(raw),
            received_at=now,
        )

        LOG.debug(
            f"Normalized signal {signal.id}: {signal.symbol} {signal.direction.value} "
            f"{signal.timeframe} from {signal.source.value}"
        )
        return signal

    @staticmethod
    def _resolve(raw: Mapping[str, Any], field_name: str) -> Any:
        for alias in FIELD_ALIASES[field_name]:
            value = raw.get(alias)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
        return None

    def _resolve_source(self, raw: Mapping[str, Any]) -> SignalSource:
        value = self._resolve(raw, 'source')
        if value is None:
            return SignalSource.TRADINGVIEW
        try:
            return SignalSource(str(value).strip().upper())
        except ValueError:
            LOG.warning(f"Unknown signal source {value!r}, defaulting to TRADINGVIEW")
            return SignalSource.TRADINGVIEW

    def _resolve_timestamp(self, raw: Mapping[str, Any], now: datetime) -> datetime:
        value = self._resolve(raw, 'timestamp')
        if value is None:
            return now
        try:
            parsed = parse_timestamp(value)
        except (ValueError, OverflowError, OSError) as e:
            LOG.warning(f"Unparseable timestamp {value!r} ({e}), using ingestion time")
            return now
        if parsed is None:
            LOG.warning(f"Unsupported timestamp {value!r}, using ingestion time")
            return now
        return parsed
