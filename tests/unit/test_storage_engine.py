"""
Unit tests for the storage engine.

Tests cover:
- Registration, type mismatch and metadata updates
- Registry persistence in metrics.json
- Ordering and dedup of single and batch stores
- Change notification
- History queries, streaming and deletion
- Metric deletion
- Concurrent stores, reads and deletion
"""

import asyncio
import json
import random
import tempfile
from pathlib import Path

import pytest

from tsdb.metricdb_server.errors import MetricNotFoundError, MetricTypeMismatchError
from tsdb.metricdb_server.model.ordering import HistoryOrder
from tsdb.metricdb_server.model.types import MetricId, MetricType, Timestamped
from tsdb.metricdb_server.storage import REGISTRY_FILE_NAME, MetricStorage


class TestMetricStorage:
    """Tests for MetricStorage."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def storage(self, data_dir):
        return MetricStorage(data_dir)

    @pytest.mark.asyncio
    async def test_register_persists_registry(self, storage, data_dir):
        """New metrics are written to metrics.json."""
        await storage.metric("temp", MetricType.DOUBLE, name="Temperature", group="app")

        entries = json.loads((Path(data_dir) / REGISTRY_FILE_NAME).read_text())
        assert entries == [
            {"group": "app", "id": "temp", "name": "Temperature", "valueType": "Double"}
        ]

    @pytest.mark.asyncio
    async def test_registry_reloaded(self, storage, data_dir):
        """A new storage on the same folder knows the metrics."""
        await storage.metric("a", MetricType.INTEGER, group="app")
        await storage.metric("b", MetricType.STRING, group="app")

        reopened = MetricStorage(data_dir)
        assert [info.id.id for info in reopened.metrics()] == ["a", "b"]
        assert reopened.info(MetricId(id="b", group="app")).value_type == MetricType.STRING

    @pytest.mark.asyncio
    async def test_get_or_create(self, storage):
        """Requesting a metric twice returns handles to the same metric."""
        first = await storage.metric("temp", MetricType.DOUBLE, group="app")
        second = await storage.metric("temp", MetricType.DOUBLE, group="app")

        assert first == second
        assert len(storage.metrics()) == 1

    @pytest.mark.asyncio
    async def test_type_mismatch(self, storage):
        """A different value type for an existing metric fails."""
        await storage.metric("temp", MetricType.DOUBLE, group="app")

        with pytest.raises(MetricTypeMismatchError):
            await storage.metric("temp", MetricType.INTEGER, group="app")

    @pytest.mark.asyncio
    async def test_metadata_update(self, storage):
        """Given name and description overwrite; omitted ones are kept."""
        await storage.metric("temp", MetricType.DOUBLE, name="Old", description="Desc", group="app")
        metric = await storage.metric("temp", MetricType.DOUBLE, name="New", group="app")

        info = metric.info()
        assert info.name == "New"
        assert info.description == "Desc"

    @pytest.mark.asyncio
    async def test_unknown_metric(self, storage):
        """Operations on unregistered ids fail with not found."""
        metric_id = MetricId(id="missing", group="app")

        with pytest.raises(MetricNotFoundError):
            storage.info(metric_id)
        with pytest.raises(MetricNotFoundError):
            await storage.store(Timestamped(1.0, 1), metric_id)
        with pytest.raises(MetricNotFoundError):
            await storage.last_value(metric_id)
        with pytest.raises(MetricNotFoundError):
            storage.add_change_listener(metric_id, lambda value: None)

    @pytest.mark.asyncio
    async def test_store_ordering_and_dedup(self, storage):
        """Only different and newer values are stored."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")

        assert await storage.store(Timestamped(1.0, 1), metric.id) is True
        assert await storage.store(Timestamped(2.0, 1), metric.id) is False
        assert await storage.store(Timestamped(0.5, 2), metric.id) is False
        assert await storage.store(Timestamped(3.0, 2), metric.id) is True

        assert await storage.history(metric.id) == [Timestamped(1.0, 1), Timestamped(3.0, 2)]
        assert await storage.last_value(metric.id) == Timestamped(3.0, 2)

    @pytest.mark.asyncio
    async def test_last_value_survives_restart(self, storage, data_dir):
        """The last value is read back from the side file."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store(Timestamped(1.0, 1), metric.id)
        await storage.close()

        reopened = MetricStorage(data_dir)
        assert await reopened.last_value(metric.id) == Timestamped(1.0, 1)
        assert await reopened.store(Timestamped(2.0, 1), metric.id) is False

    @pytest.mark.asyncio
    async def test_store_batch_single_notification(self, storage):
        """A batch notifies listeners once with its final value."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        received = []
        storage.add_change_listener(metric.id, received.append)

        stored = await storage.store_batch(
            [Timestamped(3.0, 3), Timestamped(1.0, 1), Timestamped(2.0, 1), Timestamped(4.0, 3)],
            metric.id,
        )

        assert stored == [Timestamped(1.0, 1), Timestamped(3.0, 3)]
        assert received == [Timestamped(3.0, 3)]
        assert await storage.last_value(metric.id) == Timestamped(3.0, 3)

    @pytest.mark.asyncio
    async def test_store_batch_nothing_new(self, storage):
        """A batch without qualifying values stores and notifies nothing."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store(Timestamped(5.0, 1), metric.id)
        received = []
        storage.add_change_listener(metric.id, received.append)

        assert await storage.store_batch([Timestamped(1.0, 2)], metric.id) == []
        assert received == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_store(self, storage):
        """Listener errors are logged; later listeners still run."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        received = []

        def failing(value):
            raise RuntimeError("listener failed")

        storage.add_change_listener(metric.id, failing)
        storage.add_change_listener(metric.id, received.append)

        assert await storage.store(Timestamped(1.0, 1), metric.id) is True
        assert received == [Timestamped(1.0, 1)]

    @pytest.mark.asyncio
    async def test_history_range_and_order(self, storage):
        """History returns the range in the requested order."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store_batch([Timestamped(float(i), i) for i in range(1, 8)], metric.id)

        ascending = await storage.history(metric.id, 2.0, 5.0)
        descending = await storage.history(metric.id, 2.0, 5.0, order=HistoryOrder.DESCENDING)

        assert [v.value for v in ascending] == [2, 3, 4, 5]
        assert [v.value for v in descending] == [5, 4, 3, 2]

    @pytest.mark.asyncio
    async def test_iter_history_chunks(self, storage):
        """Streaming yields the same values as a full query."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store_batch([Timestamped(float(i), i) for i in range(1, 8)], metric.id)

        ascending = [v async for v in storage.iter_history(metric.id, chunk_size=2)]
        descending = [
            v
            async for v in storage.iter_history(
                metric.id, order=HistoryOrder.DESCENDING, chunk_size=3
            )
        ]

        assert [v.value for v in ascending] == [1, 2, 3, 4, 5, 6, 7]
        assert [v.value for v in descending] == [7, 6, 5, 4, 3, 2, 1]

    @pytest.mark.asyncio
    async def test_delete_history_updates_last_value(self, storage):
        """Deleting the newest value makes the previous one current."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store_batch([Timestamped(float(i), i) for i in range(1, 5)], metric.id)

        await storage.delete_history(metric.id, 3.5, 10.0)

        assert await storage.last_value(metric.id) == Timestamped(3.0, 3)
        assert await storage.store(Timestamped(4.0, 4), metric.id) is True

    @pytest.mark.asyncio
    async def test_delete_metric(self, storage, data_dir):
        """Deleting a metric removes registry entry, files and listeners."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store(Timestamped(1.0, 1), metric.id)

        await storage.delete(metric.id)

        assert storage.metrics() == []
        assert not (Path(data_dir) / "app" / "count").exists()
        assert json.loads((Path(data_dir) / REGISTRY_FILE_NAME).read_text()) == []
        with pytest.raises(MetricNotFoundError):
            await storage.last_value(metric.id)

    @pytest.mark.asyncio
    async def test_delete_unknown_metric(self, storage):
        """Deleting an unknown metric does nothing."""
        await storage.delete(MetricId(id="missing", group="app"))

    @pytest.mark.asyncio
    async def test_recreate_after_delete_starts_empty(self, storage):
        """A metric registered again after deletion has no history."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store(Timestamped(1.0, 1), metric.id)
        await storage.delete(metric.id)

        metric = await storage.metric("count", MetricType.STRING, group="app")
        assert await metric.current_value() is None
        assert await metric.history() == []

    @pytest.mark.asyncio
    async def test_count_and_disk_usage(self, storage):
        """Counts and disk usage reflect stored values."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store_batch([Timestamped(float(i), i) for i in range(1, 4)], metric.id)

        assert await storage.count(metric.id) == 3
        assert await storage.disk_usage() > 0

    @pytest.mark.asyncio
    async def test_rotation_through_engine(self, data_dir):
        """The configured file size applies to every metric."""
        storage = MetricStorage(data_dir, max_file_size=30)
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        await storage.store_batch([Timestamped(float(i), i) for i in range(1, 10)], metric.id)

        log_files = list((Path(data_dir) / "app" / "count").glob("*.log"))
        assert len(log_files) > 1
        assert [v.value for v in await storage.history(metric.id)] == list(range(1, 10))


class TestConcurrency:
    """Tests for concurrent operations on one storage."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def storage(self, data_dir):
        return MetricStorage(data_dir)

    @pytest.mark.asyncio
    async def test_concurrent_updates_one_metric(self, storage):
        """Concurrent updates of one metric are all appended in order."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")

        results = await asyncio.gather(
            *(metric.update(i, timestamp=float(i)) for i in range(1, 51))
        )

        assert all(results)
        assert [v.value for v in await metric.history()] == list(range(1, 51))
        assert await storage.count(metric.id) == 50

    @pytest.mark.asyncio
    async def test_concurrent_updates_out_of_order(self, storage):
        """Shuffled concurrent updates keep the log strictly increasing."""
        metric = await storage.metric("count", MetricType.INTEGER, group="app")
        timestamps = [float(i) for i in range(1, 101)]
        random.Random(7).shuffle(timestamps)

        results = await asyncio.gather(
            *(metric.update(int(t), timestamp=t) for t in timestamps)
        )

        stored = [v.timestamp for v in await metric.history()]
        assert stored == sorted(set(stored))
        assert len(stored) == sum(results)
        assert stored[-1] == 100.0
        assert await metric.current_value() == Timestamped(100.0, 100)

    @pytest.mark.asyncio
    async def test_concurrent_updates_two_metrics(self, storage):
        """Interleaved updates of two metrics do not affect each other."""
        first = await storage.metric("first", MetricType.INTEGER, group="app")
        second = await storage.metric("second", MetricType.INTEGER, group="app")

        updates = []
        for i in range(1, 31):
            updates.append(first.update(i, timestamp=float(i)))
            updates.append(second.update(-i, timestamp=float(i)))
        await asyncio.gather(*updates)

        assert [v.value for v in await first.history()] == list(range(1, 31))
        assert [v.value for v in await second.history()] == [-i for i in range(1, 31)]

    @pytest.mark.asyncio
    async def test_concurrent_registration(self, storage, data_dir):
        """Concurrent registrations all reach metrics.json."""
        await asyncio.gather(
            *(storage.metric(f"m{i}", MetricType.INTEGER, group="app") for i in range(20))
        )

        entries = json.loads((Path(data_dir) / REGISTRY_FILE_NAME).read_text())
        assert sorted(entry["id"] for entry in entries) == sorted(f"m{i}" for i in range(20))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delete_first", [True, False])
    async def test_delete_during_update(self, storage, data_dir, delete_first):
        """An update racing a deletion leaves nothing behind."""
        metric = await storage.metric("temp", MetricType.DOUBLE, group="app")
        await metric.update(1.0, timestamp=1.0)

        delete = storage.delete(metric.id)
        update = metric.update(2.0, timestamp=2.0)
        tasks = [delete, update] if delete_first else [update, delete]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        update_result = results[1] if delete_first else results[0]
        assert update_result is True or isinstance(update_result, MetricNotFoundError)
        assert storage.metrics() == []
        assert not (Path(data_dir) / "app" / "temp").exists()

        metric = await storage.metric("temp", MetricType.DOUBLE, group="app")
        assert await metric.current_value() is None
        assert await metric.history() == []

    @pytest.mark.asyncio
    async def test_update_queued_behind_delete_fails(self, storage):
        """Updates waiting for a deletion raise not found."""
        metric = await storage.metric("temp", MetricType.DOUBLE, group="app")
        await metric.update(1.0, timestamp=1.0)

        results = await asyncio.gather(
            storage.delete(metric.id),
            *(metric.update(float(i), timestamp=float(i)) for i in range(2, 6)),
            return_exceptions=True,
        )

        assert all(isinstance(r, MetricNotFoundError) for r in results[1:])

    @pytest.mark.asyncio
    async def test_read_during_delete_leaves_no_cached_value(self, storage, data_dir):
        """A last value read racing a deletion does not survive it."""
        metric = await storage.metric("temp", MetricType.DOUBLE, group="app")
        await metric.update(5.0, timestamp=5.0)
        reopened = MetricStorage(data_dir)

        await asyncio.gather(
            reopened.last_value(metric.id),
            reopened.delete(metric.id),
            return_exceptions=True,
        )

        recreated = await reopened.metric("temp", MetricType.DOUBLE, group="app")
        assert await recreated.current_value() is None
        assert await recreated.update(1.0, timestamp=1.0) is True
