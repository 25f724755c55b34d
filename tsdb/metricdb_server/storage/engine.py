"""
File-based storage engine for MetricDB.

The engine owns all mutable state of a storage folder:
- The registry of metrics, persisted as metrics.json in the folder
- One MetricLogWriter per metric (<folder>/<group>/<id>/)
- The last value cache
- The change listeners of every metric

Handles (Metric) and the protocol layer only hold metric ids and call into
the engine.

Invariants:
    - A value is appended only if it differs from the current last value
      and is strictly newer
    - The value type of a metric is fixed at first registration
    - metrics.json is rewritten wholesale after every registry change and
      the in-memory change is undone if writing fails
    - Listeners are called after the value is durable; their failures are
      logged and never reach the writer
    - Only one process owns a storage folder

How to change safely:
    - Registry mutations go through self._registry_lock
    - Appends, cache fills and deletion of one metric go through its lock
      from _metric_lock(), and re-check registration once they hold it
    - delete() takes the registry lock before the metric lock; nothing
      may take them in the opposite order
    - Blocking file I/O goes through _run() so the event loop stays free
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import shutil
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
)

from ..codec.base import Codec
from ..codec.json_codec import JsonCodec
from ..errors import MetricNotFoundError, MetricTypeMismatchError, StorageIOError
from ..metric import Metric
from ..model.ordering import HistoryOrder, should_update, values_to_update
from ..model.types import MetricId, MetricInfo, MetricType, Timestamped
from .log_writer import DEFAULT_MAX_FILE_SIZE, MetricLogWriter

logger = logging.getLogger(__name__)

REGISTRY_FILE_NAME = "metrics.json"

# Number of values fetched per executor call by iter_history()
HISTORY_CHUNK_SIZE = 500

ChangeListener = Callable[[Timestamped], None]


class MetricStorage:
    """Storage engine for all metrics of one folder.

    Thread safety:
        Intended for use from a single event loop. File I/O runs in the
        default executor; different metrics proceed independently.

    Example:
        >>> storage = MetricStorage("/var/lib/metricdb")
        >>> temp = await storage.metric("temp", MetricType.DOUBLE, group="app")
        >>> await temp.update(21.5)
        True
    """

    def __init__(
        self,
        folder: str | Path,
        codec: Optional[Codec] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        """Open or create a storage folder.

        Args:
            folder: Root folder of the storage
            codec: Codec for log records and wire payloads (JSON by default)
            max_file_size: Size at which a metric starts a new log file

        Raises:
            StorageIOError: If the folder or registry can not be read
        """
        self.folder = Path(folder)
        self.codec = codec or JsonCodec()
        self.max_file_size = max_file_size
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(str(self.folder), e)

        self._infos: Dict[MetricId, MetricInfo] = {
            info.id: info for info in self._load_registry()
        }
        self._writers: Dict[MetricId, MetricLogWriter] = {}
        self._last_values: Dict[MetricId, Optional[Timestamped]] = {}
        self._listeners: Dict[MetricId, List[ChangeListener]] = {}
        self._metric_locks: Dict[MetricId, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

        logger.info(
            "Opened metric storage",
            extra={"folder": str(self.folder), "metrics": len(self._infos)},
        )

    @property
    def registry_path(self) -> Path:
        return self.folder / REGISTRY_FILE_NAME

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

    # ---- registry ----

    def _load_registry(self) -> List[MetricInfo]:
        path = self.registry_path
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageIOError(str(path), e)
        try:
            return [MetricInfo.from_dict(entry) for entry in json.loads(data)]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageIOError(str(path), e)

    def _write_registry(self) -> None:
        path = self.registry_path
        entries = [info.to_dict() for info in self._infos.values()]
        data = json.dumps(entries, indent=2, sort_keys=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(data, encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise StorageIOError(str(path), e)

    async def _persist_registry(self) -> None:
        await self._run(self._write_registry)

    async def metric(
        self,
        id: str,
        value_type: MetricType,
        name: Optional[str] = None,
        description: Optional[str] = None,
        group: str = "default",
    ) -> Metric:
        """Get or create a metric.

        Args:
            id: Identifier of the metric within the group
            value_type: Value type of the metric
            name: Name to store; None keeps the stored name
            description: Description to store; None keeps the stored one
            group: Group of the metric

        Returns:
            Handle to the metric

        Raises:
            MetricTypeMismatchError: If the metric exists with another type
            StorageIOError: If the registry can not be written
        """
        metric_id = MetricId(id=id, group=group)
        await self.register(metric_id, value_type, name, description)
        return Metric(metric_id, self)

    async def register(
        self,
        metric_id: MetricId,
        value_type: MetricType,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> MetricInfo:
        """Register a metric, or update name and description of an existing one."""
        async with self._registry_lock:
            existing = self._infos.get(metric_id)
            if existing is None:
                info = MetricInfo(
                    id=metric_id, value_type=value_type, name=name, description=description
                )
                self._infos[metric_id] = info
                try:
                    await self._persist_registry()
                except StorageIOError:
                    del self._infos[metric_id]
                    raise
                logger.info(
                    "Registered metric",
                    extra={"metric": str(metric_id), "value_type": str(value_type)},
                )
                return info

            if existing.value_type != value_type:
                raise MetricTypeMismatchError(
                    str(metric_id), str(existing.value_type), str(value_type)
                )

            old_name, old_description = existing.name, existing.description
            changed = False
            if name and name != existing.name:
                existing.name = name
                changed = True
            if description and description != existing.description:
                existing.description = description
                changed = True
            if changed:
                try:
                    await self._persist_registry()
                except StorageIOError:
                    existing.name = old_name
                    existing.description = old_description
                    raise
                logger.debug("Updated metric info", extra={"metric": str(metric_id)})
            return existing

    def metrics(self) -> List[MetricInfo]:
        """All registered metrics in registration order."""
        return list(self._infos.values())

    def info(self, metric_id: MetricId) -> MetricInfo:
        """Registry entry of a metric.

        Raises:
            MetricNotFoundError: If the metric is not registered
        """
        info = self._infos.get(metric_id)
        if info is None:
            raise MetricNotFoundError(str(metric_id))
        return info

    def contains(self, metric_id: MetricId) -> bool:
        return metric_id in self._infos

    async def delete(self, metric_id: MetricId) -> None:
        """Remove a metric with its history. Unknown ids are ignored.

        Waits for running appends of the metric; appends queued behind the
        deletion fail with MetricNotFoundError.
        """
        async with self._registry_lock:
            if metric_id not in self._infos:
                return
            async with self._metric_lock(metric_id):
                info = self._infos.pop(metric_id)
                try:
                    await self._persist_registry()
                except StorageIOError:
                    self._infos[metric_id] = info
                    raise

                writer = self._writers.pop(metric_id, None)
                self._last_values.pop(metric_id, None)
                self._listeners.pop(metric_id, None)
                if writer is None:
                    writer = self._create_writer(info)
                await self._run(writer.remove)
                await self._run(self._remove_empty_group, metric_id.group)

        logger.info("Deleted metric", extra={"metric": str(metric_id)})

    def _remove_empty_group(self, group: str) -> None:
        path = self.folder / group
        try:
            if path.is_dir() and not any(path.iterdir()):
                shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to remove empty group folder: {e}", extra={"group": group})

    # ---- writers and cache ----

    def _create_writer(self, info: MetricInfo) -> MetricLogWriter:
        return MetricLogWriter(
            folder=self.folder / info.id.group / info.id.id,
            metric_id=info.id,
            value_type=info.value_type,
            codec=self.codec,
            max_file_size=self.max_file_size,
        )

    def _writer(self, metric_id: MetricId) -> MetricLogWriter:
        info = self.info(metric_id)
        writer = self._writers.get(metric_id)
        if writer is None:
            writer = self._create_writer(info)
            self._writers[metric_id] = writer
        return writer

    # Locks outlive their metric: a task still waiting on the lock of a
    # deleted metric must share it with a metric registered under the same id.
    def _metric_lock(self, metric_id: MetricId) -> asyncio.Lock:
        lock = self._metric_locks.get(metric_id)
        if lock is None:
            lock = asyncio.Lock()
            self._metric_locks[metric_id] = lock
        return lock

    async def _cached_last_value(self, metric_id: MetricId) -> Optional[Timestamped]:
        if metric_id in self._last_values:
            return self._last_values[metric_id]
        writer = self._writer(metric_id)
        value = await self._run(writer.last_value)
        self._last_values[metric_id] = value
        return value

    # ---- values ----

    async def store(self, value: Timestamped, metric_id: MetricId) -> bool:
        """Append a value if it passes the ordering rule.

        Returns:
            True if the value was written, False if it was a duplicate or
            not newer than the current last value

        Raises:
            MetricNotFoundError: If the metric is not registered
            MetricEncodeError: If the value does not fit the value type
            StorageIOError: If the log can not be written
        """
        async with self._metric_lock(metric_id):
            writer = self._writer(metric_id)
            current = await self._cached_last_value(metric_id)
            if not should_update(value, current):
                return False
            await self._run(writer.append, value)
            self._last_values[metric_id] = value
        self._notify(metric_id, value)
        return True

    async def store_batch(
        self, values: Sequence[Timestamped], metric_id: MetricId
    ) -> List[Timestamped]:
        """Append the values that pass the ordering rule.

        Values are sorted by timestamp first. Listeners are notified once
        with the last appended value.

        Returns:
            The appended values in timestamp order
        """
        async with self._metric_lock(metric_id):
            writer = self._writer(metric_id)
            current = await self._cached_last_value(metric_id)
            accepted = values_to_update(values, current)
            if not accepted:
                return []
            await self._run(writer.append_many, accepted)
            self._last_values[metric_id] = accepted[-1]
        self._notify(metric_id, accepted[-1])
        return accepted

    async def last_value(self, metric_id: MetricId) -> Optional[Timestamped]:
        """Most recent value, or None if the metric has no value."""
        async with self._metric_lock(metric_id):
            self.info(metric_id)
            return await self._cached_last_value(metric_id)

    async def last_value_data(self, metric_id: MetricId) -> Optional[bytes]:
        """Encoded most recent value, as stored in the side file."""
        async with self._metric_lock(metric_id):
            writer = self._writer(metric_id)
            return await self._run(writer.last_value_data)

    async def history(
        self,
        metric_id: MetricId,
        start: float = -math.inf,
        end: float = math.inf,
        limit: Optional[int] = None,
        order: HistoryOrder = HistoryOrder.ASCENDING,
    ) -> List[Timestamped]:
        """Values with start <= timestamp <= end in the requested order.

        Raises:
            MetricNotFoundError: If the metric is not registered
            LogFileCorruptedError: If a scanned log file is corrupted
            MetricDecodeError: If a stored value can not be decoded
        """
        writer = self._writer(metric_id)

        def read() -> List[Timestamped]:
            return list(writer.history(start, end, limit, order))

        return await self._run(read)

    async def iter_history(
        self,
        metric_id: MetricId,
        start: float = -math.inf,
        end: float = math.inf,
        order: HistoryOrder = HistoryOrder.ASCENDING,
        chunk_size: int = HISTORY_CHUNK_SIZE,
    ) -> AsyncIterator[Timestamped]:
        """Stream values in range, reading chunk_size values per step.

        Timestamps of one metric are strictly increasing, so each chunk
        continues right after the last timestamp of the previous one.
        """
        while start <= end:
            chunk = await self.history(metric_id, start, end, chunk_size, order)
            for value in chunk:
                yield value
            if len(chunk) < chunk_size:
                return
            if order is HistoryOrder.ASCENDING:
                start = math.nextafter(chunk[-1].timestamp, math.inf)
            else:
                end = math.nextafter(chunk[-1].timestamp, -math.inf)

    async def delete_history(
        self,
        metric_id: MetricId,
        start: float = -math.inf,
        end: float = math.inf,
    ) -> None:
        """Remove the values with start <= timestamp <= end."""
        async with self._metric_lock(metric_id):
            writer = self._writer(metric_id)
            deleted_last = await self._run(writer.delete_history, start, end)
            if deleted_last:
                self._last_values.pop(metric_id, None)

    async def count(self, metric_id: MetricId) -> int:
        """Number of stored values of a metric."""
        writer = self._writer(metric_id)
        return await self._run(writer.count)

    async def disk_usage(self) -> int:
        """Bytes used by the registry and all metric folders."""

        def usage() -> int:
            total = 0
            for path in self.folder.rglob("*"):
                if path.is_file():
                    total += path.stat().st_size
            return total

        try:
            return await self._run(usage)
        except OSError as e:
            raise StorageIOError(str(self.folder), e)

    # ---- listeners ----

    def add_change_listener(self, metric_id: MetricId, callback: ChangeListener) -> None:
        """Call callback with every new value of the metric.

        Raises:
            MetricNotFoundError: If the metric is not registered
        """
        self.info(metric_id)
        self._listeners.setdefault(metric_id, []).append(callback)

    def _notify(self, metric_id: MetricId, value: Timestamped) -> None:
        for callback in list(self._listeners.get(metric_id, ())):
            try:
                callback(value)
            except Exception as e:
                logger.warning(
                    f"Change listener failed: {e}",
                    extra={"metric": str(metric_id)},
                    exc_info=True,
                )

    async def close(self) -> None:
        """Close all open log files."""
        for writer in self._writers.values():
            await self._run(writer.close)
        self._writers.clear()
