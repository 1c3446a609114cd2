"""
Metrics collection for the shielded pool.

Thread-safe collector, owned by the wallet session, that tracks:
- Counters: deposits, withdrawals, rejected double spends
- Gauges: pending spends, anonymity set size per pool
- Histograms: proof generation and verification latency

Metrics can be exported in Prometheus text format.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

# Proof latencies range from milliseconds (verification) to minutes (mobile proving)
DEFAULT_BUCKETS_MS = [5, 25, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000]


@dataclass
class HistogramBucket:
    """A histogram bucket for tracking value distributions."""

    le: float  # Less than or equal to
    count: int = 0


@dataclass
class Histogram:
    """Distribution of observed values over fixed buckets."""

    name: str
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in DEFAULT_BUCKETS_MS]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    @property
    def average(self) -> float:
        return self.sum / self.count if self.count else 0.0


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Collects counters, gauges, and histograms with optional labels.
    """

    def __init__(self, namespace: str = "shielded_pool"):
        self.namespace = namespace
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    def _labels_key(self, labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counter operations

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauge operations

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histogram operations

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a timing observation in milliseconds."""
        with self._lock:
            key = self._labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name)
            self._histograms[name][key].observe(value_ms)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> Histogram | None:
        with self._lock:
            return self._histograms[name].get(self._labels_key(labels))

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Context manager for timing code blocks."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export methods

    def get_all(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        with self._lock:
            result = {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {},
                "gauges": {},
                "histograms": {},
            }

            for section, source in (("counters", self._counters), ("gauges", self._gauges)):
                for name, values in source.items():
                    if len(values) == 1 and "" in values:
                        result[section][name] = values[""]
                    else:
                        result[section][name] = dict(values)

            for name, histograms in self._histograms.items():
                result["histograms"][name] = {
                    (key or "_total"): {
                        "count": hist.count,
                        "sum": hist.sum,
                        "avg": hist.average,
                        "buckets": {str(b.le): b.count for b in hist.buckets},
                    }
                    for key, hist in histograms.items()
                }

            return result

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        prefix = self.namespace
        lines = []

        with self._lock:
            lines.append(f"# HELP {prefix}_uptime_seconds Time since session start")
            lines.append(f"# TYPE {prefix}_uptime_seconds gauge")
            lines.append(f"{prefix}_uptime_seconds {time.time() - self._start_time:.2f}")
            lines.append("")

            for kind, source in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in source.items():
                    metric_name = f"{prefix}_{name}"
                    lines.append(f"# TYPE {metric_name} {kind}")
                    for key, value in values.items():
                        lines.append(f"{metric_name}{{{key}}} {value}" if key else f"{metric_name} {value}")
                    lines.append("")

            for name, histograms in self._histograms.items():
                metric_name = f"{prefix}_{name}"
                lines.append(f"# TYPE {metric_name} histogram")
                for key, hist in histograms.items():
                    for bucket in hist.buckets:
                        le_val = "+Inf" if bucket.le == float("inf") else bucket.le
                        labels = f'{key},le="{le_val}"' if key else f'le="{le_val}"'
                        lines.append(f"{metric_name}_bucket{{{labels}}} {bucket.count}")

                    suffix = f"{{{key}}}" if key else ""
                    lines.append(f"{metric_name}_sum{suffix} {hist.sum:.2f}")
                    lines.append(f"{metric_name}_count{suffix} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()
