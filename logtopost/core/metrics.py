"""In-process metrics, rendered in the Prometheus text format at /metrics."""

from __future__ import annotations

import bisect
import re
import threading
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

LabelValues = Tuple[str, ...]

DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    return "{" + ",".join(f'{n}="{_escape(v)}"' for n, v in zip(names, values)) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Optional[Sequence[str]] = None):
        self.name = name
        self.description = description
        self.label_names = tuple(label_names or ())
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no label(s) {sorted(unknown)}")
        return tuple(str(labels.get(n, "")) for n in self.label_names)

    def _samples(self) -> Iterator[Tuple[str, Sequence[str], LabelValues, float]]:
        raise NotImplementedError

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for name, label_names, label_values, value in self._samples():
                lines.append(f"{name}{_render_labels(label_names, label_values)} {value}")
        return lines

    def reset(self) -> None:
        raise NotImplementedError


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Optional[Sequence[str]] = None):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelValues, float] = {}

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _samples(self):
        for key, value in self._values.items():
            yield self.name, self.label_names, key, value

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Gauge(Counter):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class Histogram(_Metric):
    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Optional[Sequence[str]] = None,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ):
        super().__init__(name, description, label_names)
        self.buckets = tuple(sorted(buckets))
        # per label set: (count per bucket, +Inf excluded), sum, total count
        self._series: Dict[LabelValues, Tuple[List[int], float, int]] = {}

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            counts, total, count = self._series.get(key, ([0] * len(self.buckets), 0.0, 0))
            if index < len(counts):
                counts[index] += 1
            self._series[key] = (counts, total + value, count + 1)

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            return series[2] if series else 0

    def _samples(self):
        bucket_labels = self.label_names + ("le",)
        for key, (counts, total, count) in self._series.items():
            cumulative = 0
            for upper, bucket_count in zip(self.buckets, counts):
                cumulative += bucket_count
                yield f"{self.name}_bucket", bucket_labels, key + (repr(upper),), cumulative
            yield f"{self.name}_bucket", bucket_labels, key + ("+Inf",), count
            yield f"{self.name}_sum", self.label_names, key, total
            yield f"{self.name}_count", self.label_names, key, count

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric):
        with self._lock:
            return self._metrics.setdefault(metric.name, metric)

    def counter(self, name: str, description: str, label_names: Optional[Sequence[str]] = None) -> Counter:
        return self._register(Counter(name, description, label_names))

    def gauge(self, name: str, description: str, label_names: Optional[Sequence[str]] = None) -> Gauge:
        return self._register(Gauge(name, description, label_names))

    def histogram(
        self,
        name: str,
        description: str,
        label_names: Optional[Sequence[str]] = None,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> Histogram:
        return self._register(Histogram(name, description, label_names, buckets))

    def render_prometheus(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by route and status", ["method", "path", "status"]
)
billing_webhook_events_total = METRICS.counter(
    "billing_webhook_events_total", "Webhook deliveries by outcome", ["event_type", "outcome"]
)
billing_webhook_seconds = METRICS.histogram(
    "billing_webhook_seconds", "Time spent applying one webhook delivery", ["event_type"]
)
billing_provider_call_seconds = METRICS.histogram(
    "billing_provider_call_seconds", "Latency of user-initiated billing provider calls", ["action"]
)
quota_denials_total = METRICS.counter("quota_denials_total", "Quota gate denials", ["reason"])
generations_recorded_total = METRICS.counter(
    "generations_recorded_total", "Generations committed against a quota", ["plan"]
)
trial_eligibility_fail_open_total = METRICS.counter(
    "trial_eligibility_fail_open_total", "Registrations granted a trial because the provider check failed"
)
trial_revocations_total = METRICS.counter(
    "trial_revocations_total", "Trials withdrawn after a flagged eligibility review"
)
usage_resets_total = METRICS.counter("usage_resets_total", "Scheduled usage period resets", ["source"])
billing_last_reset_users = METRICS.gauge(
    "billing_last_reset_users", "Users reset by the most recent scheduled usage reset"
)


_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Collapse numeric and UUID-like path segments to :id to bound label cardinality."""
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in path.split("/") if s)
