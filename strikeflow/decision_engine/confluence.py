"""
Confluence Calculator

Reliability-weighted agreement between a signal and the other recent
signals for the same symbol and timeframe.

    score = sum(weight of agreeing signals) / sum(weight of all signals)
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from strikeflow.signals.schemas import Signal

DEFAULT_SOURCE_RELIABILITY: Dict[str, float] = {
    'TRADINGVIEW': 1.0,
    'GEX': 0.9,
    'MTF': 0.85,
    'MANUAL': 0.7,
}

UNKNOWN_SOURCE_WEIGHT = 0.5


@dataclass
class ConfluenceBreakdown:
    score: float
    agreeing: List[str] = field(default_factory=list)
    disagreeing: List[str] = field(default_factory=list)
    total: int = 0


class ConfluenceCalculator:
    """Weighted agreement scoring across signal sources"""

    def __init__(self, source_reliability: Optional[Dict[str, float]] = None):
        self.source_reliability = dict(source_reliability or DEFAULT_SOURCE_RELIABILITY)

    def source_weight(self, source: str) -> float:
        return self.source_reliability.get(source, UNKNOWN_SOURCE_WEIGHT)

    def calculate(self, target: Signal, signals: Iterable[Signal]) -> float:
        """Weighted confluence in [0, 1]; 0 when nothing comparable exists"""
        return self.breakdown(target, signals).score

    def breakdown(self, target: Signal, signals: Iterable[Signal]) -> ConfluenceBreakdown:
        comparable = [
            s for s in signals
            if s.symbol == target.symbol and s.timeframe == target.timeframe
        ]
        if not comparable:
            return ConfluenceBreakdown(score=0.0)

        total_weight = 0.0
        agreeing_weight = 0.0
        agreeing = []
        disagreeing = []
        for signal in comparable:
            weight = self.source_weight(signal.source.value)
            total_weight += weight
            if signal.direction == target.direction:
                agreeing_weight += weight
                agreeing.append(signal.source.value)
            else:
                disagreeing.append(signal.source.value)

        score = agreeing_weight / total_weight if total_weight > 0 else 0.0
        return ConfluenceBreakdown(
            score=score,
            agreeing=agreeing,
            disagreeing=disagreeing,
            total=len(comparable),
        )
