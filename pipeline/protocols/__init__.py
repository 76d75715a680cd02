"""Pipeline Protocols - Interfaces injected into fetcher, planner and conductor"""

from pipeline.protocols.metrics import LabeledCounter, LabeledHistogram, MetricsCollector, NullMetrics

__all__ = ["LabeledCounter", "LabeledHistogram", "MetricsCollector", "NullMetrics"]
