from __future__ import annotations

import threading
from typing import Iterable, List, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Histogram
from prometheus_client.metrics_core import Metric

from accesslog_metrics.processor import Observation

# 100 B, 500 B, 2.5 kB ... ~195 GB
RESPONSE_SIZE_BUCKETS = [100.0 * 5.0 ** i for i in range(10)]


class LogMetrics:
    """
    Request metrics fed by the log tailer and read by the scrape endpoint.

    Registered as a custom collector on an explicit registry. Nothing is
    exposed until the tailer has established its watch (``active``). Updates
    and collection happen under ``lock``.
    """

    def __init__(self, label_names: Sequence[str], registry: Optional[CollectorRegistry] = None):
        self.label_names = tuple(label_names)
        self.lock = threading.Lock()
        self.active = False

        # registry=None keeps them out of the default global registry
        self.requests = Counter(
            "requests",
            "The total number of requests per HTTP status code and virtual host name",
            self.label_names,
            registry=None,
        )
        self.request_duration = Histogram(
            "request_duration",
            "Duration of HTTP requests in seconds per HTTP status code and virtual host name",
            self.label_names,
            registry=None,
        )
        self.response_body_size = Histogram(
            "response_body_size",
            "Size of responses' bodies in bytes per HTTP status code and virtual host name",
            self.label_names,
            buckets=RESPONSE_SIZE_BUCKETS,
            registry=None,
        )
        self.errors = Counter(
            "errors",
            "The total number of log lines that failed parsing",
            registry=None,
        )

        self.registry = registry if registry is not None else CollectorRegistry()
        self.registry.register(self)

    def _metrics(self):
        return (self.requests, self.request_duration, self.response_body_size, self.errors)

    def _child(self, metric, labels: Sequence[str]):
        return metric.labels(*labels) if self.label_names else metric

    def set_active(self, active: bool) -> None:
        with self.lock:
            self.active = active

    def observe(self, observation: Observation) -> None:
        labels = observation.labels
        with self.lock:
            self._child(self.requests, labels).inc()
            if observation.duration is not None:
                self._child(self.request_duration, labels).observe(observation.duration)
            if observation.response_size is not None:
                self._child(self.response_body_size, labels).observe(observation.response_size)

    def record_error(self) -> None:
        with self.lock:
            self.errors.inc()

    # prometheus_client collector protocol
    def describe(self) -> List[Metric]:
        out: List[Metric] = []
        for metric in self._metrics():
            out.extend(metric.describe())
        return out

    def collect(self) -> Iterable[Metric]:
        with self.lock:
            if not self.active:
                return []
            out: List[Metric] = []
            for metric in self._metrics():
                out.extend(metric.collect())
            return out
