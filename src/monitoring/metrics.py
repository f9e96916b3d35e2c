"""
Metrics collection for the zkTLS snapshot pipeline.

Thread-safe, in-process counters, gauges and histograms:
- Counters: capture attempts, retries, fallbacks, publish failures, run outcomes
- Gauges: runs currently in flight
- Histograms: capture latency in milliseconds

Metrics can be exported as a dict or in Prometheus text format.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

METRIC_PREFIX = "zktls_"

# Notarized captures run from sub-second (simulated) to the two minute run deadline
LATENCY_BUCKETS_MS = (50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000)


@dataclass
class Histogram:
    """Cumulative histogram over LATENCY_BUCKETS_MS plus +Inf."""

    name: str
    bounds: tuple[float, ...] = LATENCY_BUCKETS_MS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.counts:
            self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
        self.counts[-1] += 1

    def buckets(self) -> list[tuple[str, int]]:
        labels = [str(b) for b in self.bounds] + ["+Inf"]
        return list(zip(labels, self.counts, strict=True))


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Labels are folded into a sorted key so the same label set always lands
    in the same series.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    @staticmethod
    def _labels_key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def increment_gauge(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] += value

    def decrement_gauge(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] -= value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histograms

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

    # Export

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            def flatten(series: dict[str, Any]) -> Any:
                if len(series) == 1 and "" in series:
                    return series[""]
                return dict(series)

            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {name: flatten(values) for name, values in self._counters.items()},
                "gauges": {name: flatten(values) for name, values in self._gauges.items()},
                "histograms": {
                    name: {
                        (key or "_total"): {
                            "count": hist.count,
                            "sum": hist.sum,
                            "avg": hist.sum / hist.count if hist.count else 0,
                            "buckets": dict(hist.buckets()),
                        }
                        for key, hist in histograms.items()
                    }
                    for name, histograms in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        def sample(metric: str, key: str, value: Any) -> str:
            return f"{metric}{{{key}}} {value}" if key else f"{metric} {value}"

        with self._lock:
            uptime = time.time() - self._start_time
            lines.append(f"# HELP {METRIC_PREFIX}uptime_seconds Time since the collector was created")
            lines.append(f"# TYPE {METRIC_PREFIX}uptime_seconds gauge")
            lines.append(f"{METRIC_PREFIX}uptime_seconds {uptime:.2f}")
            lines.append("")

            for kind, table in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in table.items():
                    metric = f"{METRIC_PREFIX}{name}"
                    lines.append(f"# TYPE {metric} {kind}")
                    lines.extend(sample(metric, key, value) for key, value in values.items())
                    lines.append("")

            for name, histograms in self._histograms.items():
                metric = f"{METRIC_PREFIX}{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in histograms.items():
                    for le, count in hist.buckets():
                        le_label = f'{key},le="{le}"' if key else f'le="{le}"'
                        lines.append(f"{metric}_bucket{{{le_label}}} {count}")
                    lines.append(sample(f"{metric}_sum", key, f"{hist.sum:.2f}"))
                    lines.append(sample(f"{metric}_count", key, hist.count))
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (used between tests)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
