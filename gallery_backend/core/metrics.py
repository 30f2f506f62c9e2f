"""
In-memory lifecycle and HTTP metrics.

Process-local counters and gauges rendered in Prometheus text exposition
format by GET /metrics. Several workers each keep their own registry; the
scraper sums them.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple, Type

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class _LabeledMetric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._values: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _render_labels(self, key: LabelValues) -> str:
        if not self.label_names:
            return ""
        pairs = ",".join(f'{name}="{_escape(val)}"' for name, val in zip(self.label_names, key))
        return "{" + pairs + "}"

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            samples = sorted(self._values.items())
        lines.extend(f"{self.name}{self._render_labels(key)} {val}" for key, val in samples)
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_LabeledMetric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("Counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_LabeledMetric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _LabeledMetric] = {}
        self._lock = threading.Lock()

    def _register(self, cls: Type[_LabeledMetric], name: str, label_names, help_text: str):
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                existing = self._metrics[name] = cls(name, label_names, help_text)
            elif not isinstance(existing, cls):
                raise ValueError(f"Metric {name} already registered as {existing.kind}")
            return existing

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        return self._register(Counter, name, label_names, help_text)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Gauge:
        return self._register(Gauge, name, label_names, help_text)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in list(self._metrics.values()):
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status."
)
lifecycle_transitions_total = METRICS.counter(
    "lifecycle_transitions_total", ["action", "result"], "Lifecycle entry points by outcome."
)
lifecycle_cascade_failures_total = METRICS.counter(
    "lifecycle_cascade_failures_total", ["step"], "Cascade steps that raised and were recorded for retry."
)
lifecycle_replays_total = METRICS.counter(
    "lifecycle_replays_total", ["action"], "Deliveries answered from a recorded outcome."
)
billing_webhooks_total = METRICS.counter(
    "billing_webhooks_total", ["event_type", "result"], "Verified billing webhooks by dispatch result."
)
notifications_sent_total = METRICS.counter(
    "notifications_sent_total", ["template", "result"], "Lifecycle emails by template and delivery result."
)

lifecycle_last_sweep_downgraded = METRICS.gauge(
    "lifecycle_last_sweep_downgraded", help_text="Accounts downgraded by the most recent grace sweep."
)
lifecycle_pending_deletion_warnings = METRICS.gauge(
    "lifecycle_pending_deletion_warnings", help_text="Deletions inside the warning window not yet warned."
)


# uuids, long hex, and prefixed ids such as acct_..., cus_..., gal_...
_ID_SEGMENT = re.compile(r"^(?:\d+|[0-9a-fA-F-]{8,}|(?:user|acct|cus|gal)_[A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id to bound label cardinality."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
