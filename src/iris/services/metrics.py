"""Prometheus metrics for the vision pipeline.

Each ``VisionMetrics`` owns its own ``CollectorRegistry`` so tests and
multiple app instances never collide on metric names in the global registry.

Metric names:
    - iris_vision_requests_total{outcome}
    - iris_vision_errors_total{kind}
    - iris_vision_cache_lookups_total{result}
    - iris_vision_request_duration_seconds{outcome}
"""

import threading
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from iris.exceptions import ErrorKind

# 远程视觉调用的耗时分布，覆盖缓存命中到长视频请求
REQUEST_DURATION_BUCKETS = (
    0.005,
    0.05,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


class VisionMetrics:
    """Request, error and cache counters. One instance per process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._build()

    def _build(self) -> None:
        registry = CollectorRegistry()
        self._requests = Counter(
            "iris_vision_requests_total",
            "Vision analysis requests by outcome",
            labelnames=["outcome"],
            registry=registry,
        )
        self._errors = Counter(
            "iris_vision_errors_total",
            "Failed vision analysis requests by error kind",
            labelnames=["kind"],
            registry=registry,
        )
        self._cache_lookups = Counter(
            "iris_vision_cache_lookups_total",
            "Result cache lookups by result",
            labelnames=["result"],
            registry=registry,
        )
        self._duration = Histogram(
            "iris_vision_request_duration_seconds",
            "End-to-end vision analysis latency",
            labelnames=["outcome"],
            buckets=REQUEST_DURATION_BUCKETS,
            registry=registry,
        )
        self._registry = registry

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_request(
        self, success: bool, latency_ms: float, kind: ErrorKind | None = None
    ) -> None:
        outcome = "success" if success else "failure"
        with self._lock:
            self._requests.labels(outcome=outcome).inc()
            self._duration.labels(outcome=outcome).observe(latency_ms / 1000)
            if not success and kind is not None:
                self._errors.labels(kind=kind.value).inc()

    def record_cache_hit(self) -> None:
        with self._lock:
            self._cache_lookups.labels(result="hit").inc()

    def record_cache_miss(self) -> None:
        with self._lock:
            self._cache_lookups.labels(result="miss").inc()

    def snapshot(self) -> dict[str, Any]:
        """Summary derived from the registry; average latency covers successes only."""
        with self._lock:
            successful = self._sample("iris_vision_requests_total", outcome="success")
            failed = self._sample("iris_vision_requests_total", outcome="failure")
            hits = self._sample("iris_vision_cache_lookups_total", result="hit")
            misses = self._sample("iris_vision_cache_lookups_total", result="miss")
            latency_sum = self._sample(
                "iris_vision_request_duration_seconds_sum", outcome="success"
            )
            error_counts = self._error_counts()

        total = successful + failed
        lookups = hits + misses
        return {
            "total_requests": int(total),
            "successful_requests": int(successful),
            "failed_requests": int(failed),
            "success_rate": successful / total if total else 0.0,
            "average_latency_ms": (
                round(latency_sum / successful * 1000, 1) if successful else 0.0
            ),
            "error_counts": error_counts,
            "cache_hits": int(hits),
            "cache_misses": int(misses),
            "cache_hit_rate": hits / lookups if lookups else 0.0,
        }

    def render(self) -> bytes:
        """Prometheus text exposition of this instance's registry."""
        return generate_latest(self._registry)

    def reset(self) -> None:
        # prometheus 计数器不可归零，直接换一个新的 registry
        with self._lock:
            self._build()

    def _sample(self, name: str, **labels: str) -> float:
        return self._registry.get_sample_value(name, labels) or 0.0

    def _error_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for metric in self._registry.collect():
            for sample in metric.samples:
                if sample.name == "iris_vision_errors_total":
                    counts[sample.labels["kind"]] = int(sample.value)
        return counts
