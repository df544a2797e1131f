import math
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

GAUGE = 'gauge'
COUNTER = 'counter'

UNKNOWN = 'unknown'


@dataclass(frozen=True)
class MetricFamily:
    name: str
    documentation: str
    kind: str
    labelnames: Tuple[str, ...]
    samples: Tuple[Tuple[Tuple[str, ...], float], ...]


@dataclass(frozen=True)
class MetricSnapshot:
    """Complete, immutable result of one poll cycle."""
    prefix: str
    timestamp: float
    families: Tuple[MetricFamily, ...]

    def names(self) -> List[str]:
        return [family.name for family in self.families]

    def value(self, name: str, **labels) -> Optional[float]:
        for family in self.families:
            if family.name != name:
                continue
            wanted = tuple(labels.get(label, '') for label in family.labelnames)
            for labelvalues, value in family.samples:
                if not labels or labelvalues == wanted:
                    return value
        return None

    def labels(self, name: str) -> List[Dict[str, str]]:
        for family in self.families:
            if family.name == name:
                return [dict(zip(family.labelnames, labelvalues)) for labelvalues, _ in family.samples]
        return []


def number(value) -> float:
    """Coerce a polled value to a finite number; anything else becomes 0."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def label(value) -> str:
    text = '' if value is None else str(value).strip()
    return text or UNKNOWN


class SnapshotBuilder:
    """Collects metric families in declaration order and freezes them into a MetricSnapshot.

    Names are given without the chain prefix. Each name may be declared only once.
    """

    def __init__(self, prefix: str, timestamp: Optional[float] = None):
        self.prefix = prefix
        self.timestamp = time.time() if timestamp is None else timestamp
        self._families: List[MetricFamily] = []
        self._seen = set()

    def _add(self, name: str, documentation: str, kind: str, labelnames: Tuple[str, ...],
             samples: List[Tuple[Tuple[str, ...], float]]):
        full_name = f"{self.prefix}_{name}"
        if full_name in self._seen:
            raise ValueError(f"Metric {full_name} declared twice")
        self._seen.add(full_name)
        self._families.append(MetricFamily(
            name=full_name,
            documentation=documentation,
            kind=kind,
            labelnames=labelnames,
            samples=tuple(samples),
        ))

    def gauge(self, name: str, documentation: str, value) -> 'SnapshotBuilder':
        self._add(name, documentation, GAUGE, (), [((), number(value))])
        return self

    def flag(self, name: str, documentation: str, state) -> 'SnapshotBuilder':
        self._add(name, documentation, GAUGE, (), [((), 1.0 if state else 0.0)])
        return self

    def counter(self, name: str, documentation: str, value) -> 'SnapshotBuilder':
        self._add(name, documentation, COUNTER, (), [((), max(0.0, number(value)))])
        return self

    def info(self, name: str, documentation: str, version, label_name: str = 'version') -> 'SnapshotBuilder':
        # value pinned at 1, the fact itself travels in the label
        self._add(name, documentation, GAUGE, (label_name,), [((label(version),), 1.0)])
        return self

    def labeled(self, name: str, documentation: str, label_name: str,
                values: Mapping[str, object]) -> 'SnapshotBuilder':
        samples = [((label(key),), number(value)) for key, value in values.items()]
        self._add(name, documentation, GAUGE, (label_name,), samples)
        return self

    def build(self) -> MetricSnapshot:
        return MetricSnapshot(prefix=self.prefix, timestamp=self.timestamp, families=tuple(self._families))
