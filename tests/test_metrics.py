"""
Tests for Prometheus metrics export
"""

from exceptions import UpstreamHTTPError
from pipeline.metrics import DietwatchMetrics
from pipeline.protocols import NullMetrics


class TestDietwatchMetrics:
    def test_record_error_by_type(self):
        metrics = DietwatchMetrics()

        metrics.record_error("upstream", UpstreamHTTPError("boom", status_code=503))
        metrics.record_error("normalizer", "SchemaViolation")

        text = metrics.get_metrics_text()
        assert 'dietwatch_errors_total{component="upstream",error_type="UpstreamHTTPError"} 1.0' in text
        assert 'dietwatch_errors_total{component="normalizer",error_type="SchemaViolation"} 1.0' in text

    def test_instances_do_not_share_registries(self):
        first = DietwatchMetrics()
        second = DietwatchMetrics()

        first.meetings_fetched.labels(upstream="ndl").inc(3)

        assert 'dietwatch_meetings_fetched_total{upstream="ndl"} 3.0' in first.get_metrics_text()
        assert 'dietwatch_meetings_fetched_total{upstream="ndl"}' not in second.get_metrics_text()

    def test_write_textfile(self, tmp_path):
        metrics = DietwatchMetrics()
        metrics.tasks_created.labels(processing_mode="chunked").inc()
        path = tmp_path / "dietwatch.prom"

        metrics.write_textfile(str(path))

        assert 'dietwatch_tasks_created_total{processing_mode="chunked"} 1.0' in path.read_text()


class TestNullMetrics:
    def test_accepts_every_call(self):
        metrics = NullMetrics()
        metrics.upstream_requests.labels(status="success").inc()
        metrics.upstream_request_duration.labels(upstream="ndl").observe(0.2)
        with metrics.run_duration.labels(trigger="manual").time():
            pass
        metrics.record_error("conductor", RuntimeError("boom"))
