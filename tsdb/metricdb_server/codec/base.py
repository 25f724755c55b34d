"""
Codec protocol for MetricDB.

A codec converts values to bytes for two purposes:
- On-disk log records: [2-byte length][timestamp bytes][value bytes]
- Wire payloads of the remote operations

The storage engine only needs to know the fixed width of an encoded
timestamp to frame records independently of value length.

Invariants:
    - encode_timestamp always returns exactly timestamp_length bytes
    - decode_value(encode_value(v, t), t) == v for every valid value of t
    - Codecs raise MetricEncodeError / MetricDecodeError, nothing else

How to change safely:
    - A codec's timestamp_length must never change once data was written
    - New codecs must be registered in create_codec
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, List, Protocol, Sequence, runtime_checkable

from ..model.types import MetricType, Timestamped


@runtime_checkable
class Codec(Protocol):
    """Protocol for value and wire codecs.

    Example:
        >>> codec = JsonCodec()
        >>> data = codec.encode_timestamped(Timestamped(1.0, 2.5), MetricType.DOUBLE)
        >>> codec.decode_timestamped(data, MetricType.DOUBLE)
        Timestamped(timestamp=1.0, value=2.5)
    """

    name: str
    content_type: str

    @property
    @abstractmethod
    def timestamp_length(self) -> int:
        """Fixed number of bytes of an encoded timestamp."""
        ...

    @abstractmethod
    def encode_timestamp(self, timestamp: float) -> bytes:
        """Encode a timestamp to exactly timestamp_length bytes."""
        ...

    @abstractmethod
    def decode_timestamp(self, data: bytes) -> float:
        """Decode a timestamp.

        Raises:
            MetricDecodeError: If data has the wrong length
        """
        ...

    @abstractmethod
    def encode_value(self, value: Any, value_type: MetricType) -> bytes:
        """Encode a single value.

        Raises:
            MetricEncodeError: If the value does not fit the type
        """
        ...

    @abstractmethod
    def decode_value(self, data: bytes, value_type: MetricType) -> Any:
        """Decode a single value.

        Raises:
            MetricDecodeError: If the data is not a valid value of the type
        """
        ...

    @abstractmethod
    def encode_timestamped(self, value: Timestamped, value_type: MetricType) -> bytes:
        """Encode a timestamped value for the wire and the last value file."""
        ...

    @abstractmethod
    def decode_timestamped(self, data: bytes, value_type: MetricType) -> Timestamped:
        """Decode a timestamped value."""
        ...

    @abstractmethod
    def encode_timestamped_list(
        self, values: Sequence[Timestamped], value_type: MetricType
    ) -> bytes:
        """Encode an ordered sequence of timestamped values."""
        ...

    @abstractmethod
    def decode_timestamped_list(self, data: bytes, value_type: MetricType) -> List[Timestamped]:
        """Decode an ordered sequence of timestamped values."""
        ...

    @abstractmethod
    def encode(self, obj: Any) -> bytes:
        """Encode a generic response object (dicts, lists, scalars, bytes)."""
        ...

    @abstractmethod
    def decode(self, data: bytes) -> Any:
        """Decode a generic request object."""
        ...


def create_codec(name: str = "json") -> Codec:
    """Factory function to create a codec by name.

    Args:
        name: Codec name

    Returns:
        Codec instance

    Raises:
        ValueError: If the codec is not supported
    """
    from .json_codec import JsonCodec

    if name == JsonCodec.name:
        return JsonCodec()
    raise ValueError(f"Unsupported codec: {name}")
