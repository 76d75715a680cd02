"""
Prometheus Metrics Module

Provides instrumentation for an ingestion run:
- Upstream requests and latency
- Meetings fetched and skipped
- Chunk prompts written
- Tasks created vs. already present
- Error tracking

Ingestion runs as a batch job, so metrics are exported by writing the
registry to a node_exporter textfile at the end of a run.

Usage:
    metrics = DietwatchMetrics()
    metrics.tasks_created.labels(processing_mode="chunked").inc()
    with metrics.run_duration.labels(trigger="cron").time():
        await conductor.run(run_range)
    metrics.write_textfile("/var/lib/node_exporter/dietwatch.prom")
"""

from typing import Optional, Union

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, write_to_textfile


class DietwatchMetrics:
    """Centralized metrics for the ingestion pipeline

    Each instance owns its registry so several runs (or tests) in one
    process never collide on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Upstream metrics
        self.upstream_requests = Counter(
            'dietwatch_upstream_requests_total',
            'Total meetings API requests',
            ['status'],  # success/error/cache
            registry=self.registry,
        )

        self.upstream_request_duration = Histogram(
            'dietwatch_upstream_request_duration_seconds',
            'Meetings API request duration',
            ['upstream'],
            buckets=[0.25, 0.5, 1, 2, 5, 10, 30],
            registry=self.registry,
        )

        self.meetings_fetched = Counter(
            'dietwatch_meetings_fetched_total',
            'Meetings returned by the range fetcher',
            ['upstream'],
            registry=self.registry,
        )

        # Planning metrics
        self.speeches_counted = Counter(
            'dietwatch_speeches_counted_total',
            'Speeches whose token length was counted',
            ['model'],
            registry=self.registry,
        )

        self.chunks_written = Counter(
            'dietwatch_chunks_written_total',
            'Chunk prompt payloads written to object storage',
            ['oversized'],
            registry=self.registry,
        )

        self.meetings_skipped = Counter(
            'dietwatch_meetings_skipped_total',
            'Meetings skipped during planning',
            ['reason'],  # missing_issue_id/no_speeches/no_packs
            registry=self.registry,
        )

        # Task metrics
        self.tasks_created = Counter(
            'dietwatch_tasks_created_total',
            'Tasks created by processing mode',
            ['processing_mode'],
            registry=self.registry,
        )

        self.tasks_existing = Counter(
            'dietwatch_tasks_existing_total',
            'Meetings whose task already existed',
            ['stage'],  # precheck/create
            registry=self.registry,
        )

        self.run_duration = Histogram(
            'dietwatch_run_duration_seconds',
            'Ingestion run duration',
            ['trigger'],
            buckets=[5, 15, 30, 60, 120, 300, 600, 1800],
            registry=self.registry,
        )

        # Error metrics
        self.errors = Counter(
            'dietwatch_errors_total',
            'Total errors by component and type',
            ['component', 'error_type'],
            registry=self.registry,
        )

    def record_error(self, component: str, error: Union[Exception, str]):
        """Record an error

        Args:
            component: Component name (upstream/normalizer/planner/tasks/conductor)
            error: Exception instance or an error type name
        """
        error_type = error if isinstance(error, str) else type(error).__name__
        self.errors.labels(component=component, error_type=error_type).inc()

    def get_metrics_text(self) -> str:
        """Get Prometheus metrics in text exposition format"""
        return generate_latest(self.registry).decode('utf-8')

    def write_textfile(self, path: str):
        write_to_textfile(path, self.registry)
