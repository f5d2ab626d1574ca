"""In-process counters and distributions for ticket lifecycle events."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable, Mapping, MutableMapping, Tuple

LabelValues = Tuple[str, ...]


class Metric:
    """Label handling shared by counters and distributions."""

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        self.name = name
        self.description = description
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._lock = Lock()

    def _label_key(self, labels: Mapping[str, str] | None) -> LabelValues:
        if not self.label_names:
            if labels:
                raise ValueError(f"Metric '{self.name}' does not accept labels")
            return ()
        if labels is None:
            raise ValueError(f"Metric '{self.name}' requires labels {self.label_names}")
        missing = [label for label in self.label_names if label not in labels]
        if missing:
            raise ValueError(f"Missing labels {missing} for metric '{self.name}'")
        return tuple(str(labels[label]) for label in self.label_names)


class CounterMetric(Metric):
    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: MutableMapping[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] += amount

    def value(self, *, labels: Mapping[str, str] | None = None) -> float:
        key = self._label_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: {"value": value} for key, value in self._values.items()}


@dataclass
class DistributionStats:
    count: int = 0
    total: float = 0.0

    def to_mapping(self) -> Mapping[str, float]:
        return {
            "count": float(self.count),
            "sum": self.total,
            "avg": self.total / self.count if self.count else 0.0,
        }


class DistributionMetric(Metric):
    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: Dict[LabelValues, DistributionStats] = defaultdict(DistributionStats)

    def observe(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            stats = self._values[key]
            stats.count += 1
            stats.total += value

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: stats.to_mapping() for key, stats in self._values.items()}


class TicketMetrics:
    """Metrics emitted by the ticket service."""

    def __init__(self) -> None:
        self.transitions = CounterMetric(
            "ticket_transitions_total",
            description="Committed ticket status transitions.",
            label_names=("from_status", "to_status"),
        )
        self.rejections = CounterMetric(
            "ticket_transition_rejections_total",
            description="Status transitions rejected by the transition table.",
            label_names=("from_status", "to_status"),
        )
        self.sequence_failures = CounterMetric(
            "ticket_sequence_failures_total",
            description="Ticket creations aborted because the number counter could not be locked.",
        )
        self.sla_pause_seconds = DistributionMetric(
            "ticket_sla_pause_seconds",
            description="Length of SLA pauses folded back into ticket deadlines.",
        )

    def snapshot(self) -> Dict[str, Mapping[LabelValues, Mapping[str, float]]]:
        metrics: Tuple[Metric, ...] = (self.transitions, self.rejections, self.sequence_failures, self.sla_pause_seconds)
        return {metric.name: metric.snapshot() for metric in metrics}
