"""
Core value types for MetricDB.

This module defines the data model shared by storage and protocol:
- MetricId: (id, group) pair identifying a metric within one storage
- MetricInfo: registry entry with value type, name and description
- MetricType: closed set of value type tags with a per-tag decode table
- Timestamped: a (timestamp, value) pair, the atomic unit of history
- metric_id_hash: opaque external address of a metric

Invariants:
    - MetricId and MetricInfo.id/value_type are immutable
    - metric_id_hash is deterministic and does not reveal the raw id
    - Value conversion dispatches on the type tag, never on the Python type
      of the value

How to change safely:
    - New tags must get a string form and an entry in VALUE_DECODERS
    - Never change the string form of an existing tag; it is persisted in
      metrics.json
"""

from __future__ import annotations

import base64
import hashlib
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple

# Number of SHA-256 bytes kept for the external metric address
HASH_BYTE_COUNT = 16

MetricIdHash = str


@dataclass(frozen=True, order=True)
class MetricId:
    """Identifier of a metric, unique within one storage instance.

    Attributes:
        id: Identifier of the metric within the group
        group: Group the metric belongs to (e.g. the application name)
    """

    id: str
    group: str

    def __post_init__(self) -> None:
        for part in (self.group, self.id):
            if not part or "/" in part or part in (".", ".."):
                raise ValueError(f"Invalid metric id component: {part!r}")

    def __str__(self) -> str:
        return f"{self.group}/{self.id}"

    @property
    def hash(self) -> MetricIdHash:
        """External address of the metric."""
        return metric_id_hash(self)


def metric_id_hash(metric_id: MetricId) -> MetricIdHash:
    """Compute the external address of a metric.

    The address is the hex form of the first 16 bytes of the SHA-256 digest
    of "group/id".

    Example:
        >>> metric_id_hash(MetricId(group="app", id="temp"))  # doctest: +SKIP
        '3c5e...'
    """
    digest = hashlib.sha256(str(metric_id).encode("utf-8")).digest()
    return digest[:HASH_BYTE_COUNT].hex()


class ServerStatus(IntEnum):
    """Status of a server, reported through metrics of type serverStatus."""

    NO_RESPONSE = 0
    INITIALIZING = 1
    INITIALIZATION_FAILURE = 2
    REDUCED_FUNCTIONALITY = 3
    HEAVY_LOAD = 4
    NOMINAL = 5
    TERMINATED = 6
    NEVER_REPORTED = 7


class MetricTypeTag(Enum):
    """Tags of the closed value type set."""

    INTEGER = "Int"
    DOUBLE = "Double"
    BOOLEAN = "Bool"
    STRING = "String"
    DATA = "Data"
    ENUMERATION = "Enum"
    SERVER_STATUS = "ServerStatus"
    CUSTOM = "Custom"


@dataclass(frozen=True)
class MetricType:
    """Value type of a metric.

    Custom types carry a name; all other tags have no name.

    Example:
        >>> MetricType.parse("Double") == MetricType.DOUBLE
        True
        >>> MetricType.parse("Position").name
        'Position'
    """

    tag: MetricTypeTag
    name: Optional[str] = None

    # Populated after class creation
    INTEGER: ClassVar[MetricType]
    DOUBLE: ClassVar[MetricType]
    BOOLEAN: ClassVar[MetricType]
    STRING: ClassVar[MetricType]
    DATA: ClassVar[MetricType]
    ENUMERATION: ClassVar[MetricType]
    SERVER_STATUS: ClassVar[MetricType]

    def __post_init__(self) -> None:
        if self.tag is MetricTypeTag.CUSTOM:
            if not self.name:
                raise ValueError("Custom metric types require a name")
        elif self.name is not None:
            raise ValueError(f"Metric type {self.tag.value} does not take a name")

    @classmethod
    def custom(cls, name: str) -> MetricType:
        """Create a custom value type."""
        return cls(MetricTypeTag.CUSTOM, name)

    @classmethod
    def parse(cls, description: str) -> MetricType:
        """Parse the string form; unknown strings are custom types."""
        for tag in MetricTypeTag:
            if tag is not MetricTypeTag.CUSTOM and tag.value == description:
                return cls(tag)
        return cls.custom(description)

    @property
    def is_custom(self) -> bool:
        return self.tag is MetricTypeTag.CUSTOM

    def __str__(self) -> str:
        if self.tag is MetricTypeTag.CUSTOM:
            return self.name or ""
        return self.tag.value

    def to_raw(self, value: Any) -> Any:
        """Convert a value of this type into a JSON-compatible form."""
        if self.tag is MetricTypeTag.CUSTOM:
            encode, _ = _custom_types.get(self.name or "", (_identity, _identity))
            return encode(value)
        return VALUE_ENCODERS[self.tag](value)

    def from_raw(self, raw: Any) -> Any:
        """Convert a JSON-compatible form back into a value of this type.

        Raises:
            ValueError: If the raw value does not fit the type
        """
        if self.tag is MetricTypeTag.CUSTOM:
            _, decode = _custom_types.get(self.name or "", (_identity, _identity))
            return decode(raw)
        return VALUE_DECODERS[self.tag](raw)


MetricType.INTEGER = MetricType(MetricTypeTag.INTEGER)
MetricType.DOUBLE = MetricType(MetricTypeTag.DOUBLE)
MetricType.BOOLEAN = MetricType(MetricTypeTag.BOOLEAN)
MetricType.STRING = MetricType(MetricTypeTag.STRING)
MetricType.DATA = MetricType(MetricTypeTag.DATA)
MetricType.ENUMERATION = MetricType(MetricTypeTag.ENUMERATION)
MetricType.SERVER_STATUS = MetricType(MetricTypeTag.SERVER_STATUS)


def _identity(value: Any) -> Any:
    return value


def _decode_int(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"Expected integer, got {type(raw).__name__}")
    return raw


def _decode_float(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValueError(f"Expected number, got {type(raw).__name__}")
    return float(raw)


def _decode_bool(raw: Any) -> bool:
    if not isinstance(raw, bool):
        raise ValueError(f"Expected boolean, got {type(raw).__name__}")
    return raw


def _decode_str(raw: Any) -> str:
    if not isinstance(raw, str):
        raise ValueError(f"Expected string, got {type(raw).__name__}")
    return raw


def _decode_bytes(raw: Any) -> bytes:
    if not isinstance(raw, str):
        raise ValueError(f"Expected base64 string, got {type(raw).__name__}")
    return base64.b64decode(raw.encode("ascii"), validate=True)


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_status(raw: Any) -> ServerStatus:
    return ServerStatus(_decode_int(raw))


VALUE_DECODERS: Dict[MetricTypeTag, Callable[[Any], Any]] = {
    MetricTypeTag.INTEGER: _decode_int,
    MetricTypeTag.DOUBLE: _decode_float,
    MetricTypeTag.BOOLEAN: _decode_bool,
    MetricTypeTag.STRING: _decode_str,
    MetricTypeTag.DATA: _decode_bytes,
    MetricTypeTag.ENUMERATION: _decode_int,
    MetricTypeTag.SERVER_STATUS: _decode_status,
}

VALUE_ENCODERS: Dict[MetricTypeTag, Callable[[Any], Any]] = {
    MetricTypeTag.INTEGER: _identity,
    MetricTypeTag.DOUBLE: float,
    MetricTypeTag.BOOLEAN: _identity,
    MetricTypeTag.STRING: _identity,
    MetricTypeTag.DATA: _encode_bytes,
    MetricTypeTag.ENUMERATION: int,
    MetricTypeTag.SERVER_STATUS: int,
}

_custom_types: Dict[str, Tuple[Callable[[Any], Any], Callable[[Any], Any]]] = {}


def register_custom_type(
    name: str,
    encode: Callable[[Any], Any],
    decode: Callable[[Any], Any],
) -> MetricType:
    """Register conversion functions for a custom value type.

    Args:
        name: Name of the custom type as stored in metrics.json
        encode: Converts a value into a JSON-compatible form
        decode: Converts the JSON-compatible form back (raise ValueError on
            invalid input)

    Returns:
        The custom MetricType
    """
    metric_type = MetricType.custom(name)
    _custom_types[name] = (encode, decode)
    return metric_type


@dataclass(frozen=True)
class Timestamped:
    """A value with the time it was observed.

    Attributes:
        timestamp: Seconds since the Unix epoch
        value: The observed value
    """

    timestamp: float
    value: Any

    @classmethod
    def now(cls, value: Any) -> Timestamped:
        """Timestamp a value with the current time."""
        return cls(timestamp=time.time(), value=value)

    def __lt__(self, other: Timestamped) -> bool:
        # History order is by timestamp only
        if not isinstance(other, Timestamped):
            return NotImplemented
        return self.timestamp < other.timestamp

    def __str__(self) -> str:
        return f"[{self.timestamp}] {self.value}"


@dataclass
class MetricInfo:
    """Registry entry of a metric.

    Attributes:
        id: Metric identifier (immutable)
        value_type: Value type (immutable)
        name: Optional human-readable name
        description: Optional textual description
    """

    id: MetricId
    value_type: MetricType
    name: Optional[str] = None
    description: Optional[str] = None

    def __setattr__(self, key: str, value: Any) -> None:
        if key in ("id", "value_type") and key in self.__dict__:
            raise AttributeError(f"MetricInfo.{key} is immutable")
        super().__setattr__(key, value)

    @property
    def hash(self) -> MetricIdHash:
        return metric_id_hash(self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for metrics.json and wire responses."""
        data: Dict[str, Any] = {
            "id": self.id.id,
            "group": self.id.group,
            "valueType": str(self.value_type),
        }
        if self.name is not None:
            data["name"] = self.name
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MetricInfo:
        """Create from dictionary."""
        return cls(
            id=MetricId(group=data["group"], id=data["id"]),
            value_type=MetricType.parse(data["valueType"]),
            name=data.get("name"),
            description=data.get("description"),
        )
