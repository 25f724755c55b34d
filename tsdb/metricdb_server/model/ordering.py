"""
Update ordering and deduplication rule.

A value is appended to a metric only when it is strictly newer than, and
different in value from, the current last value. Batches are sorted by
timestamp and filtered against a running last value, so replaying an
already stored batch appends nothing.

Invariants:
    - should_update(v, None) is always True
    - values_to_update never returns two adjacent equal values
    - values_to_update output is strictly increasing in timestamp
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional

from .types import Timestamped


class HistoryOrder(Enum):
    """Direction of history queries."""

    ASCENDING = "ascending"
    DESCENDING = "descending"


def is_different_and_newer(value: Timestamped, other: Timestamped) -> bool:
    """Check whether a value differs from and is newer than another one."""
    return value.value != other.value and value.timestamp > other.timestamp


def should_update(value: Timestamped, current: Optional[Timestamped]) -> bool:
    """Check whether a value should be appended given the current last value."""
    if current is None:
        return True
    return is_different_and_newer(value, current)


def values_to_update(
    values: Iterable[Timestamped],
    current: Optional[Timestamped],
) -> List[Timestamped]:
    """Select the values of a batch that qualify for appending.

    Args:
        values: Values in any order
        current: Current last value of the metric

    Returns:
        Qualifying values, sorted by timestamp

    Example:
        >>> batch = [Timestamped(3, "b"), Timestamped(1, "a"), Timestamped(2, "a")]
        >>> [v.timestamp for v in values_to_update(batch, None)]
        [1, 3]
    """
    last = current
    selected: List[Timestamped] = []
    for value in sorted(values, key=lambda v: v.timestamp):
        if not should_update(value, last):
            continue
        selected.append(value)
        last = value
    return selected
