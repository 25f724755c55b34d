"""
Transport-agnostic protocol layer for MetricDB.

MetricService implements the remote operations on top of a MetricStorage:
- list_metrics: Registered metrics with their hashes
- list_last_values: Encoded last value per metric hash
- last_value: Encoded last value of one metric
- history: Encoded values of one metric within a range
- push: Remote writes to metrics flagged as remotely writable
- metric_info / list_extended: Registry entry, optionally with last value

Remote callers address metrics only by MetricIdHash. Requests and
responses are bytes produced by the configured codec; transports pass them
through unchanged.

Invariants:
    - Every operation consults the access policy before storage access
    - Unknown hashes raise MetricNotFoundError
    - Push goes through store_batch, so ordering and dedup apply
    - Push is refused for metrics not flagged remotely writable

How to change safely:
    - Keep operations free of transport details (headers, status codes)
    - Response layouts are consumed by collectors; only add fields
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from ..codec.base import Codec
from ..errors import (
    MetricDecodeError,
    MetricNotFoundError,
    NoValueAvailableError,
    NotWritableError,
)
from ..metric import Metric
from ..model.ordering import HistoryOrder
from ..model.types import MetricId, MetricIdHash, MetricInfo
from ..storage.engine import MetricStorage
from .access import AccessPolicy, Operation

logger = logging.getLogger(__name__)


class MetricService:
    """Remote operations over a MetricStorage.

    Example:
        >>> service = MetricService(storage, TokenAccessManager([b"secret"]))
        >>> service.expose(temp, remote_writable=True)
        >>> await service.push(temp.hash, payload, b"secret")
    """

    def __init__(
        self,
        storage: MetricStorage,
        access_policy: AccessPolicy,
        codec: Optional[Codec] = None,
    ) -> None:
        """Initialize the service.

        Args:
            storage: Storage holding the metrics
            access_policy: Policy consulted before every operation
            codec: Codec for request and response payloads (defaults to the
                storage codec)
        """
        self.storage = storage
        self.access_policy = access_policy
        self.codec = codec or storage.codec
        self._hashes: Dict[MetricIdHash, MetricId] = {}
        # Flag bound to the registry entry it was set on
        self._remote_writable: Dict[MetricId, MetricInfo] = {}

    # ---- addressing ----

    def _rebuild_hashes(self) -> None:
        self._hashes = {info.id.hash: info.id for info in self.storage.metrics()}

    def resolve(self, metric_hash: MetricIdHash) -> MetricId:
        """Find the metric with the given hash.

        Raises:
            MetricNotFoundError: If no registered metric has the hash
        """
        metric_id = self._hashes.get(metric_hash)
        if metric_id is None or not self.storage.contains(metric_id):
            if metric_id is not None:
                self._remote_writable.pop(metric_id, None)
            self._rebuild_hashes()
            metric_id = self._hashes.get(metric_hash)
        if metric_id is None:
            raise MetricNotFoundError(metric_hash)
        return metric_id

    def _authorize(
        self,
        operation: Operation,
        metric_hash: MetricIdHash,
        credential: Optional[bytes],
    ) -> MetricId:
        metric_id = self.resolve(metric_hash)
        self.access_policy.check(operation, metric_id, credential)
        return metric_id

    # ---- remote writes ----

    def set_remote_writable(self, metric_id: MetricId, writable: bool = True) -> None:
        """Allow or forbid remote pushes to a metric.

        The flag ends with the metric: a metric registered again under
        the same id after deletion is not remotely writable.

        Raises:
            MetricNotFoundError: If writable is set for an unregistered metric
        """
        if writable:
            self._remote_writable[metric_id] = self.storage.info(metric_id)
        else:
            self._remote_writable.pop(metric_id, None)

    def is_remote_writable(self, metric_id: MetricId) -> bool:
        flagged = self._remote_writable.get(metric_id)
        if flagged is None:
            return False
        if self.storage.contains(metric_id) and self.storage.info(metric_id) is flagged:
            return True
        del self._remote_writable[metric_id]
        return False

    def expose(self, metric: Metric, remote_writable: bool = False) -> None:
        """Make a handle's metric addressable and set its writability."""
        self._hashes[metric.hash] = metric.id
        self.set_remote_writable(metric.id, remote_writable)

    # ---- operations ----

    def _info_dict(self, info: MetricInfo) -> Dict[str, Any]:
        data = info.to_dict()
        data["hash"] = info.hash
        return data

    async def list_metrics(self, credential: Optional[bytes]) -> bytes:
        """Encoded list of all registered metrics."""
        self.access_policy.check(Operation.LIST, None, credential)
        return self.codec.encode([self._info_dict(info) for info in self.storage.metrics()])

    async def list_last_values(self, credential: Optional[bytes]) -> bytes:
        """Encoded mapping of metric hash to encoded last value.

        Metrics without a value are left out.
        """
        self.access_policy.check(Operation.LIST_LAST_VALUES, None, credential)
        values: Dict[str, bytes] = {}
        for info in self.storage.metrics():
            try:
                data = await self.storage.last_value_data(info.id)
            except MetricNotFoundError:
                continue
            if data is not None:
                values[info.hash] = data
        return self.codec.encode(values)

    async def last_value(self, metric_hash: MetricIdHash, credential: Optional[bytes]) -> bytes:
        """Encoded last value of a metric.

        Raises:
            NoValueAvailableError: If the metric has no value
        """
        metric_id = self._authorize(Operation.LAST_VALUE, metric_hash, credential)
        data = await self.storage.last_value_data(metric_id)
        if data is None:
            raise NoValueAvailableError(str(metric_id))
        return data

    async def history(
        self,
        metric_hash: MetricIdHash,
        request: bytes,
        credential: Optional[bytes],
    ) -> bytes:
        """Encoded values of a metric within a range.

        The request is an encoded object {"start", "end", "limit"}. A start
        after the end returns the range [end, start] newest first.

        Raises:
            MetricDecodeError: If the request is invalid
        """
        metric_id = self._authorize(Operation.HISTORY, metric_hash, credential)
        start, end, limit = self._decode_history_request(request)
        order = HistoryOrder.ASCENDING
        if start > end:
            start, end = end, start
            order = HistoryOrder.DESCENDING
        values = await self.storage.history(metric_id, start, end, limit, order)
        info = self.storage.info(metric_id)
        return self.codec.encode_timestamped_list(values, info.value_type)

    def _decode_history_request(self, request: bytes) -> tuple:
        data = self.codec.decode(request)
        if not isinstance(data, dict):
            raise MetricDecodeError("History request must be an object")
        start = self._number(data, "start", -math.inf)
        end = self._number(data, "end", math.inf)
        limit = data.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise MetricDecodeError(f"Invalid history limit: {limit!r}")
        return start, end, limit

    @staticmethod
    def _number(data: Dict[str, Any], key: str, default: float) -> float:
        value = data.get(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MetricDecodeError(f"Invalid history {key}: {value!r}")
        return float(value)

    async def push(
        self,
        metric_hash: MetricIdHash,
        payload: bytes,
        credential: Optional[bytes],
    ) -> None:
        """Store values sent by a remote caller.

        Raises:
            NotWritableError: If the metric is not remotely writable
            MetricDecodeError: If the payload does not decode
        """
        metric_id = self._authorize(Operation.PUSH, metric_hash, credential)
        if not self.is_remote_writable(metric_id):
            raise NotWritableError(str(metric_id))
        info = self.storage.info(metric_id)
        values = self.codec.decode_timestamped_list(payload, info.value_type)
        stored = await self.storage.store_batch(values, metric_id)
        logger.debug(
            "Stored pushed values",
            extra={"metric": str(metric_id), "received": len(values), "stored": len(stored)},
        )

    async def metric_info(self, metric_hash: MetricIdHash, credential: Optional[bytes]) -> bytes:
        """Encoded registry entry of a metric."""
        metric_id = self._authorize(Operation.INFO, metric_hash, credential)
        return self.codec.encode(self._info_dict(self.storage.info(metric_id)))

    async def list_extended(self, credential: Optional[bytes]) -> bytes:
        """Encoded list of registry entries, each with its encoded last value."""
        self.access_policy.check(Operation.LIST, None, credential)
        entries: List[Dict[str, Any]] = []
        for info in self.storage.metrics():
            try:
                last_value = await self.storage.last_value_data(info.id)
            except MetricNotFoundError:
                continue
            entry = self._info_dict(info)
            entry["lastValue"] = last_value
            entries.append(entry)
        return self.codec.encode(entries)
