"""
Storage layer for MetricDB.

MetricStorage owns the registry, the per-metric log writers, the last value
cache and the change listeners. MetricLogWriter implements the on-disk log
of a single metric.
"""

from .engine import REGISTRY_FILE_NAME, ChangeListener, MetricStorage
from .log_writer import DEFAULT_MAX_FILE_SIZE, LAST_VALUE_FILE_NAME, MetricLogWriter

__all__ = [
    "ChangeListener",
    "DEFAULT_MAX_FILE_SIZE",
    "LAST_VALUE_FILE_NAME",
    "MetricLogWriter",
    "MetricStorage",
    "REGISTRY_FILE_NAME",
]
