"""
JSON codec for MetricDB.

Values are stored as compact UTF-8 JSON. Timestamps are stored as 8-byte
big-endian IEEE 754 doubles (seconds since the epoch), which gives every log
record a fixed-size header. Binary values (type Data) and bytes inside
generic wire objects are carried as base64 strings.

Wire format:
    Timestamped        -> [timestamp, value]
    Timestamped list   -> [[timestamp, value], ...]
"""

from __future__ import annotations

import base64
import json
import logging
import math
import struct
from typing import Any, List, Sequence

from ..errors import MetricDecodeError, MetricEncodeError
from ..model.types import MetricType, Timestamped

logger = logging.getLogger(__name__)

_TIMESTAMP = struct.Struct(">d")


def _default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonCodec:
    """JSON implementation of the Codec protocol.

    Thread safety:
        Stateless; one instance can be shared by all writers.
    """

    name = "json"
    content_type = "application/json"

    @property
    def timestamp_length(self) -> int:
        return _TIMESTAMP.size

    # Timestamps

    def encode_timestamp(self, timestamp: float) -> bytes:
        if not math.isfinite(timestamp):
            raise MetricEncodeError(f"Invalid timestamp: {timestamp}")
        return _TIMESTAMP.pack(timestamp)

    def decode_timestamp(self, data: bytes) -> float:
        if len(data) != _TIMESTAMP.size:
            raise MetricDecodeError(
                f"Timestamp needs {_TIMESTAMP.size} bytes, got {len(data)}"
            )
        return _TIMESTAMP.unpack(data)[0]

    # Values

    def _to_raw(self, value: Any, value_type: MetricType) -> Any:
        try:
            raw = value_type.to_raw(value)
            # Reject values that would not decode back into the type
            value_type.from_raw(raw)
        except (TypeError, ValueError) as e:
            raise MetricEncodeError(f"Value {value!r} does not fit type {value_type}: {e}")
        return raw

    def _from_raw(self, raw: Any, value_type: MetricType) -> Any:
        try:
            return value_type.from_raw(raw)
        except (TypeError, ValueError) as e:
            raise MetricDecodeError(f"Invalid {value_type} value: {e}")

    def _dumps(self, obj: Any) -> bytes:
        try:
            return json.dumps(
                obj, separators=(",", ":"), allow_nan=False, default=_default
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MetricEncodeError(f"Failed to encode: {e}")

    def _loads(self, data: bytes) -> Any:
        try:
            return json.loads(bytes(data).decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MetricDecodeError(f"Failed to parse JSON: {e}")

    def encode_value(self, value: Any, value_type: MetricType) -> bytes:
        return self._dumps(self._to_raw(value, value_type))

    def decode_value(self, data: bytes, value_type: MetricType) -> Any:
        return self._from_raw(self._loads(data), value_type)

    # Timestamped values

    def _pair(self, value: Timestamped, value_type: MetricType) -> List[Any]:
        if not math.isfinite(value.timestamp):
            raise MetricEncodeError(f"Invalid timestamp: {value.timestamp}")
        return [value.timestamp, self._to_raw(value.value, value_type)]

    def _unpair(self, raw: Any, value_type: MetricType) -> Timestamped:
        if not isinstance(raw, list) or len(raw) != 2:
            raise MetricDecodeError("Timestamped value must be a [timestamp, value] pair")
        timestamp, value = raw
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MetricDecodeError(f"Invalid timestamp: {timestamp!r}")
        return Timestamped(timestamp=float(timestamp), value=self._from_raw(value, value_type))

    def encode_timestamped(self, value: Timestamped, value_type: MetricType) -> bytes:
        return self._dumps(self._pair(value, value_type))

    def decode_timestamped(self, data: bytes, value_type: MetricType) -> Timestamped:
        return self._unpair(self._loads(data), value_type)

    def encode_timestamped_list(
        self, values: Sequence[Timestamped], value_type: MetricType
    ) -> bytes:
        return self._dumps([self._pair(v, value_type) for v in values])

    def decode_timestamped_list(self, data: bytes, value_type: MetricType) -> List[Timestamped]:
        raw = self._loads(data)
        if not isinstance(raw, list):
            raise MetricDecodeError("Expected a list of timestamped values")
        return [self._unpair(item, value_type) for item in raw]

    # Generic objects

    def encode(self, obj: Any) -> bytes:
        return self._dumps(obj)

    def decode(self, data: bytes) -> Any:
        return self._loads(data)
