"""Metrics Protocol - Interface for metrics collection without concrete dependency

This protocol enables dependency injection of metrics throughout the pipeline,
allowing components to be tested and run without prometheus_client wiring.
"""

from typing import Protocol, Any, ContextManager, Union
from contextlib import contextmanager


class LabeledCounter(Protocol):
    def labels(self, **kwargs: Any) -> "LabeledCounter": ...
    def inc(self, amount: float = 1) -> None: ...


class LabeledHistogram(Protocol):
    def labels(self, **kwargs: Any) -> "LabeledHistogram": ...
    def observe(self, value: float) -> None: ...
    def time(self) -> ContextManager: ...


class MetricsCollector(Protocol):
    """Unified metrics interface for all pipeline components

    Used by:
    - upstream/range_fetcher.py - Upstream request metrics
    - upstream/normalizer.py - Schema violations
    - pipeline/plan_builder.py - Chunk prompt writes
    - pipeline/conductor.py - Task creation outcomes
    """
    # Upstream metrics
    upstream_requests: LabeledCounter
    upstream_request_duration: LabeledHistogram
    meetings_fetched: LabeledCounter

    # Planning metrics
    speeches_counted: LabeledCounter
    chunks_written: LabeledCounter
    meetings_skipped: LabeledCounter

    # Task metrics
    tasks_created: LabeledCounter
    tasks_existing: LabeledCounter
    run_duration: LabeledHistogram

    def record_error(self, component: str, error: Union[Exception, str]) -> None: ...


class _NullCounter:
    def labels(self, **kwargs: Any) -> "_NullCounter":
        return self

    def inc(self, amount: float = 1) -> None:
        pass


class _NullHistogram:
    def labels(self, **kwargs: Any) -> "_NullHistogram":
        return self

    def observe(self, value: float) -> None:
        pass

    @contextmanager
    def time(self):
        yield


class NullMetrics:
    """No-op metrics for testing or standalone use"""

    def __init__(self):
        self.upstream_requests = _NullCounter()
        self.upstream_request_duration = _NullHistogram()
        self.meetings_fetched = _NullCounter()
        self.speeches_counted = _NullCounter()
        self.chunks_written = _NullCounter()
        self.meetings_skipped = _NullCounter()
        self.tasks_created = _NullCounter()
        self.tasks_existing = _NullCounter()
        self.run_duration = _NullHistogram()

    def record_error(self, component: str, error: Union[Exception, str]) -> None:
        pass
