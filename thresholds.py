"""
Threshold evaluation: turns raw usage counts into per-resource percentages,
classifies the alert level and picks the next services to divert.

Everything here is pure. The orchestrator recomputes the level every tick from
the fresh snapshot and the current diversion set; nothing is carried forward.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Tuple

from limits import FAILOVER_PRIORITY, RESOURCE_LIMITS

CRITICAL_PCT = 90.0
LOW_WATER_PCT = 50.0


class AlertLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    FAILOVER = "failover"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    # str's lexicographic comparisons would order "critical" < "normal"
    def __lt__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, AlertLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_RANK = {
    AlertLevel.NORMAL: 0,
    AlertLevel.WARNING: 1,
    AlertLevel.FAILOVER: 2,
    AlertLevel.CRITICAL: 3,
}


@dataclass(frozen=True)
class ResourceUsage:
    current: int
    limit: int
    pct: float

    def to_dict(self) -> dict:
        return {"current": self.current, "limit": self.limit, "pct": self.pct}


@dataclass(frozen=True)
class Evaluation:
    level: AlertLevel
    triggered_resources: List[Tuple[str, float]] = field(default_factory=list)
    failover_targets: List[str] = field(default_factory=list)


def make_usage(current: int, limit: int) -> ResourceUsage:
    current = max(int(current or 0), 0)
    pct = (current / limit) * 100 if limit > 0 else 0.0
    return ResourceUsage(current=current, limit=limit, pct=pct)


def build_usage_map(raw_counts: Mapping[str, int]) -> Dict[str, ResourceUsage]:
    """One entry per tracked resource; missing or negative counts become 0."""
    return {
        key: make_usage(raw_counts.get(key, 0), limit)
        for key, limit in RESOURCE_LIMITS.items()
    }


def classify(max_pct: float, warn_pct: float, fail_pct: float) -> AlertLevel:
    if max_pct >= CRITICAL_PCT:
        return AlertLevel.CRITICAL
    if max_pct >= fail_pct:
        return AlertLevel.FAILOVER
    if max_pct >= warn_pct:
        return AlertLevel.WARNING
    return AlertLevel.NORMAL


def evaluate(
    usage: Mapping[str, ResourceUsage],
    already_diverted: Iterable[str],
    warn_pct: float = 60,
    fail_pct: float = 80,
) -> Evaluation:
    """
    Classify usage and decide which services to divert next.

    critical  → every remaining service in priority order (imminent overage)
    failover  → only the next service in priority order
    warning / normal → nothing
    """
    triggered: List[Tuple[str, float]] = []
    max_pct = 0.0
    for resource, data in usage.items():
        if data.pct >= warn_pct:
            triggered.append((resource, data.pct))
        if data.pct > max_pct:
            max_pct = data.pct

    level = classify(max_pct, warn_pct, fail_pct)

    diverted = set(already_diverted)
    remaining = [svc for svc in FAILOVER_PRIORITY if svc not in diverted]
    if level is AlertLevel.CRITICAL:
        targets = remaining
    elif level is AlertLevel.FAILOVER:
        targets = remaining[:1]
    else:
        targets = []

    return Evaluation(level=level, triggered_resources=triggered, failover_targets=targets)


def all_below(usage: Mapping[str, ResourceUsage], pct: float = LOW_WATER_PCT) -> bool:
    return all(data.pct < pct for data in usage.values())
