"""
Metric handle.

A Metric is a lightweight proxy holding a metric id and the storage that
owns the metric. All state lives in the storage; any number of handles for
the same id can exist and they all see the same values.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any, Iterable, List, Optional

from .model.ordering import HistoryOrder
from .model.types import MetricId, MetricIdHash, MetricInfo, Timestamped

if TYPE_CHECKING:
    from .storage.engine import ChangeListener, MetricStorage


class Metric:
    """Handle to a metric in a MetricStorage.

    Obtain handles from MetricStorage.metric(). The storage must outlive
    its handles.

    Example:
        >>> temp = await storage.metric("temp", MetricType.DOUBLE, group="app")
        >>> await temp.update(10.0)
        True
        >>> await temp.update(10.0)
        False
    """

    def __init__(self, id: MetricId, storage: MetricStorage) -> None:
        self.id = id
        self.storage = storage

    def __repr__(self) -> str:
        return f"Metric({self.id})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Metric):
            return NotImplemented
        return self.id == other.id and self.storage is other.storage

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def hash(self) -> MetricIdHash:
        return self.id.hash

    def info(self) -> MetricInfo:
        return self.storage.info(self.id)

    async def update(self, value: Any, timestamp: Optional[float] = None) -> bool:
        """Record a new value.

        Args:
            value: The new value
            timestamp: Observation time; defaults to now

        Returns:
            True if the value was written, False if it equals the current
            value or is not newer than it
        """
        if timestamp is None:
            entry = Timestamped.now(value)
        else:
            entry = Timestamped(timestamp=timestamp, value=value)
        return await self.storage.store(entry, self.id)

    async def update_timestamped(self, value: Timestamped) -> bool:
        return await self.storage.store(value, self.id)

    async def update_many(self, values: Iterable[Timestamped]) -> List[Timestamped]:
        """Record a batch of values; returns the values actually written."""
        return await self.storage.store_batch(list(values), self.id)

    async def current_value(self) -> Optional[Timestamped]:
        return await self.storage.last_value(self.id)

    async def history(
        self,
        start: Optional[float] = None,
        end: Optional[float] = None,
        order: HistoryOrder = HistoryOrder.ASCENDING,
        limit: Optional[int] = None,
    ) -> List[Timestamped]:
        """Values in [start, end]; open bounds default to the full history."""
        return await self.storage.history(
            self.id,
            start=-math.inf if start is None else start,
            end=math.inf if end is None else end,
            limit=limit,
            order=order,
        )

    async def delete_history(
        self, start: Optional[float] = None, end: Optional[float] = None
    ) -> None:
        """Remove the values in [start, end]; open bounds remove everything."""
        await self.storage.delete_history(
            self.id,
            start=-math.inf if start is None else start,
            end=math.inf if end is None else end,
        )

    def on_change(self, callback: ChangeListener) -> None:
        """Call callback with every value written to this metric."""
        self.storage.add_change_listener(self.id, callback)
