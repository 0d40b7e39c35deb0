"""
Prometheus Metrics Collector

Lightweight in-process metrics for queue observability.
Generates Prometheus text exposition format (text/plain; version=0.0.4).
"""
import time
import threading
from typing import Dict, List, Optional
from dataclasses import dataclass, field


@dataclass
class MetricValue:
    """Single metric value with optional labels."""
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class _LabeledMetric:
    """Shared label bookkeeping for all metric types."""

    kind = "untyped"

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def _label_key(self, labels: Dict[str, str]) -> tuple:
        """Create hashable key from labels."""
        return tuple(sorted(labels.items()))

    def collect(self) -> List[MetricValue]:
        with self._lock:
            return [MetricValue(value=v, labels=dict(k)) for k, v in self._values.items()]


class Counter(_LabeledMetric):
    """Cumulative metric that only goes up (enqueues, dispatches, sweep outcomes)."""

    kind = "counter"

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount


class Gauge(_LabeledMetric):
    """Metric that can go up and down (queue depth per status)."""

    kind = "gauge"

    def set(self, value: float, **labels: str) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self.inc(-amount, **labels)


class Histogram(_LabeledMetric):
    """
    Samples observations into cumulative buckets.
    Used for dispatch durations.
    """

    kind = "histogram"

    # Suited to remote processor calls bounded by a ~10s timeout
    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ):
        super().__init__(name, description, labels)
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        self._series: Dict[tuple, Dict] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = self._label_key(labels)
        with self._lock:
            series = self._series.setdefault(
                key,
                {"buckets": {b: 0 for b in self.buckets}, "sum": 0.0, "count": 0},
            )
            series["sum"] += value
            series["count"] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    series["buckets"][bucket] += 1

    def collect(self) -> List[MetricValue]:
        """Bucket values followed by +Inf, sum and count for each label set."""
        result = []
        with self._lock:
            for key, series in self._series.items():
                base = dict(key)
                for bucket in self.buckets:
                    result.append(MetricValue(series["buckets"][bucket], {**base, "le": str(bucket)}))
                result.append(MetricValue(series["count"], {**base, "le": "+Inf"}))
                result.append(MetricValue(series["sum"], {**base, "_metric": "sum"}))
                result.append(MetricValue(series["count"], {**base, "_metric": "count"}))
        return result


class Timer:
    """Context manager for timing code blocks into a histogram."""

    def __init__(self, histogram: Histogram, **labels: str):
        self.histogram = histogram
        self.labels = labels
        self.start_time: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        if self.start_time is not None:
            self.histogram.observe(time.perf_counter() - self.start_time, **self.labels)


class MetricsRegistry:
    """
    Central registry for all queue metrics.

    Provides singleton access and Prometheus text format export.
    """

    _instance: Optional["MetricsRegistry"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetricsRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._metrics: Dict[str, _LabeledMetric] = {}
        self._initialized = True
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        """Initialize all queue metrics."""

        # ============================================
        # ENQUEUE
        # ============================================
        self.enqueued = self.counter(
            "workqueue_enqueued_total",
            "Items accepted into a queue",
            ["queue"]
        )

        self.enqueue_duplicates = self.counter(
            "workqueue_enqueue_duplicates_total",
            "Enqueue calls rejected by the dedup key (already recorded)",
            ["queue"]
        )

        # ============================================
        # DISPATCH
        # ============================================
        self.dispatch_total = self.counter(
            "workqueue_dispatch_total",
            "Processor invocations by delivery outcome",
            ["queue", "outcome"]
        )

        self.dispatch_duration = self.histogram(
            "workqueue_dispatch_duration_seconds",
            "Processor invocation duration including delivery retries",
            ["queue"]
        )

        # ============================================
        # JOBS
        # ============================================
        self.jobs_total = self.counter(
            "workqueue_jobs_total",
            "Internal jobs executed by type and result",
            ["job_type", "result"]
        )

        # ============================================
        # RECOVERY
        # ============================================
        self.recovery_total = self.counter(
            "workqueue_recovery_total",
            "Stale items handled by the recovery sweep by result",
            ["queue", "result"]
        )

        self.sweep_runs = self.counter(
            "workqueue_sweep_runs_total",
            "Sweep executions by sweep and status",
            ["sweep", "status"]
        )

        # ============================================
        # QUEUE DEPTH
        # ============================================
        self.queue_items = self.gauge(
            "workqueue_items",
            "Items per queue and status",
            ["queue", "status"]
        )

    def counter(self, name: str, description: str, labels: Optional[List[str]] = None) -> Counter:
        """Create and register a counter."""
        return self._register(Counter(name, description, labels))

    def gauge(self, name: str, description: str, labels: Optional[List[str]] = None) -> Gauge:
        """Create and register a gauge."""
        return self._register(Gauge(name, description, labels))

    def histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ) -> Histogram:
        """Create and register a histogram."""
        return self._register(Histogram(name, description, labels, buckets))

    def _register(self, metric):
        self._metrics[metric.name] = metric
        return metric

    def update_queue_gauges(self, queue: str, counts: Dict[str, int]) -> None:
        """
        Refresh the depth gauges for one queue.

        Args:
            queue: Queue name
            counts: Mapping of status -> item count
        """
        for status, count in counts.items():
            self.queue_items.set(count, queue=queue, status=status)

    def export(self) -> str:
        """
        Export all metrics in Prometheus text exposition format.

        Format specification:
        https://prometheus.io/docs/instrumenting/exposition_formats/
        """
        lines = []

        for name, metric in self._metrics.items():
            lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {metric.kind}")

            for mv in metric.collect():
                metric_name = name
                if isinstance(metric, Histogram):
                    if "_metric" in mv.labels:
                        metric_name = f"{name}_{mv.labels.pop('_metric')}"
                    elif "le" in mv.labels:
                        metric_name = f"{name}_bucket"

                lines.append(f"{metric_name}{self._format_labels(mv.labels)} {mv.value}")

            lines.append("")

        return "\n".join(lines)

    def _format_labels(self, labels: Dict[str, str]) -> str:
        """Format labels as Prometheus label string."""
        if not labels:
            return ""

        parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(parts) + "}"

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        self._metrics.clear()
        self._setup_metrics()


# Global metrics instance
metrics = MetricsRegistry()
