from iris.exceptions import ErrorKind
from iris.services.metrics import VisionMetrics


class TestVisionMetrics:
    def test_empty_snapshot(self):
        snapshot = VisionMetrics().snapshot()
        assert snapshot["total_requests"] == 0
        assert snapshot["success_rate"] == 0.0
        assert snapshot["cache_hit_rate"] == 0.0

    def test_records_outcomes_and_latency(self):
        metrics = VisionMetrics()
        metrics.record_request(True, 100.0)
        metrics.record_request(True, 300.0)
        metrics.record_request(False, 50.0, ErrorKind.TIMEOUT)
        metrics.record_request(False, 50.0, ErrorKind.TIMEOUT)

        snapshot = metrics.snapshot()
        assert snapshot["total_requests"] == 4
        assert snapshot["successful_requests"] == 2
        assert snapshot["success_rate"] == 0.5
        assert snapshot["average_latency_ms"] == 200.0
        assert snapshot["error_counts"] == {"timeout": 2}

    def test_cache_hit_rate_and_reset(self):
        metrics = VisionMetrics()
        metrics.record_cache_hit()
        metrics.record_cache_hit()
        metrics.record_cache_hit()
        metrics.record_cache_miss()
        assert metrics.snapshot()["cache_hit_rate"] == 0.75

        metrics.reset()
        assert metrics.snapshot()["cache_hits"] == 0

    def test_failure_latency_excluded_from_average(self):
        metrics = VisionMetrics()
        metrics.record_request(True, 250.0)
        metrics.record_request(False, 9000.0, ErrorKind.NETWORK)
        assert metrics.snapshot()["average_latency_ms"] == 250.0

    def test_snapshot_reads_from_registry(self):
        metrics = VisionMetrics()
        metrics.record_request(False, 10.0, ErrorKind.RATE_LIMIT)
        metrics.record_cache_miss()

        registry = metrics.registry
        assert registry.get_sample_value(
            "iris_vision_requests_total", {"outcome": "failure"}
        ) == 1.0
        assert registry.get_sample_value(
            "iris_vision_errors_total", {"kind": "rate_limit"}
        ) == 1.0
        assert registry.get_sample_value(
            "iris_vision_cache_lookups_total", {"result": "miss"}
        ) == 1.0

    def test_instances_do_not_share_registry(self):
        first = VisionMetrics()
        second = VisionMetrics()
        first.record_cache_hit()
        assert second.snapshot()["cache_hits"] == 0

    def test_render_exposition(self):
        metrics = VisionMetrics()
        metrics.record_request(True, 120.0)
        text = metrics.render().decode()
        assert 'iris_vision_requests_total{outcome="success"} 1.0' in text
        assert "iris_vision_request_duration_seconds_bucket" in text
