"""
Pluggable codecs for MetricDB.

The codec turns values into bytes for log records, the last value file and
wire payloads. Only the timestamp width is fixed per codec; value length is
free, since every record carries its own length prefix.
"""

from .base import Codec, create_codec
from .json_codec import JsonCodec

__all__ = [
    "Codec",
    "create_codec",
    "JsonCodec",
]
