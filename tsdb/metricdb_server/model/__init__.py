"""
Value model for MetricDB.

This module provides the types shared by storage and protocol layers and
the rule deciding which updates are appended to a metric's history.
"""

from .ordering import HistoryOrder, should_update, values_to_update
from .types import (
    MetricId,
    MetricIdHash,
    MetricInfo,
    MetricType,
    MetricTypeTag,
    ServerStatus,
    Timestamped,
    metric_id_hash,
    register_custom_type,
)

__all__ = [
    # Types
    "MetricId",
    "MetricIdHash",
    "MetricInfo",
    "MetricType",
    "MetricTypeTag",
    "ServerStatus",
    "Timestamped",
    "metric_id_hash",
    "register_custom_type",
    # Ordering
    "HistoryOrder",
    "should_update",
    "values_to_update",
]
