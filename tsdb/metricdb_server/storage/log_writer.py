"""
Per-metric append-only log for MetricDB.

Each metric owns a folder <root>/<group>/<id>/ containing:
- Log files named by zero-padded sequence number (00000001.log, ...)
- A side file "last" holding the encoded most recent value

Record framing inside a log file:
    [2-byte big-endian length N][timestamp bytes][value bytes]
    N = len(timestamp bytes) + len(value bytes)

The timestamp width is fixed by the codec, so a record can be split into
timestamp and value without decoding the value.

Invariants:
    - Records within a metric have strictly increasing timestamps
    - Log files are created in increasing sequence order and each file
      holds only records newer than every record of the previous file
    - A file is never rotated while empty, so an oversized record still
      lands in a file of its own
    - The side file is replaced atomically (temp file + os.replace)
    - Framing violations fail the query that found them; the writer stays
      usable for appends

How to change safely:
    - Never change the framing; existing folders must stay readable
    - Keep every file operation under self._lock
    - Test rotation with small max_file_size values
"""

from __future__ import annotations

import logging
import math
import os
import re
import shutil
import struct
import threading
from pathlib import Path
from typing import BinaryIO, Iterator, List, NamedTuple, Optional, Sequence

from ..codec.base import Codec
from ..errors import LogFileCorruptedError, MetricDecodeError, MetricEncodeError, StorageIOError
from ..model.ordering import HistoryOrder
from ..model.types import MetricId, MetricType, Timestamped

logger = logging.getLogger(__name__)

# Default size at which a new log file is started (bytes)
DEFAULT_MAX_FILE_SIZE = 10_000_000

LAST_VALUE_FILE_NAME = "last"

_LENGTH = struct.Struct(">H")
_MAX_RECORD_LENGTH = 0xFFFF
_LOG_FILE_PATTERN = re.compile(r"^(\d{8})\.log$")


class _Record(NamedTuple):
    timestamp: float
    value: bytes
    raw: bytes


class MetricLogWriter:
    """Append-only log of a single metric.

    All public methods are synchronous and block on file I/O. The storage
    engine calls them from the default executor.

    Thread safety:
        Every public method takes the writer's lock; history() takes it
        once per file it reads.

    Example:
        >>> writer = MetricLogWriter(Path("/data/app/temp"), metric_id,
        ...                          MetricType.DOUBLE, JsonCodec())
        >>> writer.append(Timestamped(1.0, 20.5))
        >>> list(writer.history(0.0, 10.0))
        [Timestamped(timestamp=1.0, value=20.5)]
    """

    def __init__(
        self,
        folder: Path,
        metric_id: MetricId,
        value_type: MetricType,
        codec: Codec,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        """Initialize the writer.

        Args:
            folder: Folder of this metric
            metric_id: Metric the log belongs to (used in log context)
            value_type: Value type used to encode and decode values
            codec: Codec for timestamps and values
            max_file_size: Size at which a new log file is started
        """
        self.folder = Path(folder)
        self.metric_id = metric_id
        self.value_type = value_type
        self.codec = codec
        self.max_file_size = max_file_size
        self._lock = threading.Lock()
        self._handle: Optional[BinaryIO] = None
        self._active_path: Optional[Path] = None
        self._active_size = 0

    @property
    def last_value_path(self) -> Path:
        return self.folder / LAST_VALUE_FILE_NAME

    # ---- appending ----

    def append(self, value: Timestamped) -> None:
        """Append one value and replace the side file.

        Raises:
            MetricEncodeError: If the value can not be encoded
            StorageIOError: If a file can not be written
        """
        with self._lock:
            record = self._encode_record(value)
            self._write_records([record])
            self._write_last_value(value)

    def append_many(self, values: Sequence[Timestamped]) -> None:
        """Append several values, replacing the side file once.

        All values are encoded before anything is written, so an encoding
        failure leaves the log unchanged.
        """
        if not values:
            return
        with self._lock:
            records = [self._encode_record(value) for value in values]
            self._write_records(records)
            self._write_last_value(values[-1])

    def _encode_record(self, value: Timestamped) -> bytes:
        timestamp = self.codec.encode_timestamp(value.timestamp)
        data = self.codec.encode_value(value.value, self.value_type)
        length = len(timestamp) + len(data)
        if length > _MAX_RECORD_LENGTH:
            raise MetricEncodeError(
                f"Record of {length} bytes exceeds the maximum of {_MAX_RECORD_LENGTH}"
            )
        return _LENGTH.pack(length) + timestamp + data

    def _write_records(self, records: List[bytes]) -> None:
        handle = self._open_active()
        for record in records:
            if self._active_size > 0 and self._active_size + len(record) > self.max_file_size:
                handle = self._rotate()
            try:
                handle.write(record)
            except OSError as e:
                raise StorageIOError(str(self._active_path), e)
            self._active_size += len(record)
        try:
            handle.flush()
            os.fsync(handle.fileno())
        except OSError as e:
            raise StorageIOError(str(self._active_path), e)

    def _open_active(self) -> BinaryIO:
        if self._handle is not None:
            return self._handle
        files = self._log_files()
        path = files[-1] if files else self.folder / _file_name(1)
        return self._open(path)

    def _open(self, path: Path) -> BinaryIO:
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
            handle = open(path, "ab")
            self._active_size = path.stat().st_size
        except OSError as e:
            raise StorageIOError(str(path), e)
        self._handle = handle
        self._active_path = path
        return handle

    def _rotate(self) -> BinaryIO:
        active_path = self._active_path
        if active_path is None:
            raise StorageIOError(str(self.folder), RuntimeError("No active log file to rotate"))
        next_path = self.folder / _file_name(_sequence(active_path) + 1)
        logger.debug(
            "Rotating log file",
            extra={
                "metric": str(self.metric_id),
                "file": active_path.name,
                "size": self._active_size,
                "next": next_path.name,
            },
        )
        self._close()
        return self._open(next_path)

    def _close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError as e:
                logger.warning(
                    f"Failed to close log file: {e}",
                    extra={"metric": str(self.metric_id)},
                )
            self._handle = None
            self._active_path = None
            self._active_size = 0

    def close(self) -> None:
        """Close the active log file handle."""
        with self._lock:
            self._close()

    # ---- last value ----

    def _write_last_value(self, value: Timestamped) -> None:
        data = self.codec.encode_timestamped(value, self.value_type)
        path = self.last_value_path
        _write_atomic(path, data)

    def last_value_data(self) -> Optional[bytes]:
        """Encoded content of the side file, or None if there is no value."""
        with self._lock:
            return self._read_last_value_data()

    def _read_last_value_data(self) -> Optional[bytes]:
        path = self.last_value_path
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(str(path), e)

    def last_value(self) -> Optional[Timestamped]:
        """Decode the side file.

        A side file that fails to decode is removed and None returned.
        """
        with self._lock:
            return self._read_last_value()

    def _read_last_value(self) -> Optional[Timestamped]:
        data = self._read_last_value_data()
        if data is None:
            return None
        try:
            return self.codec.decode_timestamped(data, self.value_type)
        except MetricDecodeError as e:
            logger.warning(
                f"Removing undecodable last value file: {e.message}",
                extra={"metric": str(self.metric_id)},
            )
            self._remove_file(self.last_value_path)
            return None

    # ---- reading ----

    def _log_files(self) -> List[Path]:
        try:
            names = os.listdir(self.folder)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageIOError(str(self.folder), e)
        return [self.folder / name for name in sorted(names) if _LOG_FILE_PATTERN.match(name)]

    def _flush_active(self) -> None:
        if self._handle is not None:
            try:
                self._handle.flush()
            except OSError as e:
                raise StorageIOError(str(self._active_path), e)

    def _first_timestamp(self, path: Path) -> Optional[float]:
        header_length = _LENGTH.size + self.codec.timestamp_length
        try:
            with open(path, "rb") as f:
                header = f.read(header_length)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(str(path), e)
        if not header:
            return None
        if len(header) < header_length:
            raise LogFileCorruptedError(path.name, "Truncated first record")
        return self.codec.decode_timestamp(header[_LENGTH.size:])

    def _read_records(self, path: Path) -> List[_Record]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageIOError(str(path), e)
        return list(self._parse_records(path.name, data))

    def _parse_records(self, file_name: str, data: bytes) -> Iterator[_Record]:
        timestamp_length = self.codec.timestamp_length
        position = 0
        end = len(data)
        while position < end:
            if position + _LENGTH.size > end:
                raise LogFileCorruptedError(
                    file_name, f"Incomplete record length at byte {position}"
                )
            (length,) = _LENGTH.unpack_from(data, position)
            if length < timestamp_length:
                raise LogFileCorruptedError(
                    file_name, f"Record length {length} at byte {position} is too short"
                )
            record_end = position + _LENGTH.size + length
            if record_end > end:
                raise LogFileCorruptedError(
                    file_name, f"Record at byte {position} exceeds the file size"
                )
            value_start = position + _LENGTH.size + timestamp_length
            timestamp = self.codec.decode_timestamp(data[position + _LENGTH.size:value_start])
            yield _Record(timestamp, data[value_start:record_end], data[position:record_end])
            position = record_end

    def _file_ranges(self) -> List[tuple]:
        """(path, first_timestamp, next_first_timestamp) for each non-empty file."""
        with self._lock:
            self._flush_active()
            files = self._log_files()
            firsts = [self._first_timestamp(path) for path in files]
        entries = [(path, first) for path, first in zip(files, firsts) if first is not None]
        ranges = []
        for index, (path, first) in enumerate(entries):
            next_first = entries[index + 1][1] if index + 1 < len(entries) else None
            ranges.append((path, first, next_first))
        return ranges

    def history(
        self,
        start: float = -math.inf,
        end: float = math.inf,
        limit: Optional[int] = None,
        order: HistoryOrder = HistoryOrder.ASCENDING,
    ) -> Iterator[Timestamped]:
        """Iterate the values with start <= timestamp <= end.

        Files whose time span lies outside the range are skipped after
        reading only their first record header.

        Args:
            start: Lower bound (inclusive)
            end: Upper bound (inclusive)
            limit: Maximum number of values; None for no limit
            order: Ascending (oldest first) or descending

        Yields:
            Timestamped values in the requested order

        Raises:
            LogFileCorruptedError: If a scanned file violates the framing
            MetricDecodeError: If a value in range can not be decoded
        """
        if limit is not None and limit <= 0:
            return
        if start > end:
            return
        ranges = [
            path
            for path, first, next_first in self._file_ranges()
            if first <= end and (next_first is None or next_first >= start)
        ]
        if order is HistoryOrder.DESCENDING:
            ranges.reverse()

        remaining = limit
        for path in ranges:
            with self._lock:
                self._flush_active()
                records = self._read_records(path)
            if order is HistoryOrder.DESCENDING:
                records.reverse()
            for record in records:
                if not start <= record.timestamp <= end:
                    continue
                yield Timestamped(
                    record.timestamp, self.codec.decode_value(record.value, self.value_type)
                )
                if remaining is not None:
                    remaining -= 1
                    if remaining == 0:
                        return

    def count(self) -> int:
        """Number of records over all log files."""
        with self._lock:
            self._flush_active()
            return sum(len(self._read_records(path)) for path in self._log_files())

    def disk_usage(self) -> int:
        """Bytes used by the files in the metric folder."""
        with self._lock:
            self._flush_active()
            try:
                return sum(entry.stat().st_size for entry in os.scandir(self.folder) if entry.is_file())
            except FileNotFoundError:
                return 0
            except OSError as e:
                raise StorageIOError(str(self.folder), e)

    # ---- deleting ----

    def delete_history(self, start: float = -math.inf, end: float = math.inf) -> bool:
        """Remove all values with start <= timestamp <= end.

        Files entirely inside the range are removed, intersecting files are
        rewritten without the matching records.

        Returns:
            True if the current last value was inside the range. The side
            file is then rebuilt from the newest remaining record, or
            removed if no record remains.
        """
        if start > end:
            return False
        with self._lock:
            self._close()
            last = self._read_last_value()
            files = self._log_files()
            firsts = [self._first_timestamp(path) for path in files]

            removed_files = 0
            rewritten_files = 0
            for index, path in enumerate(files):
                first = firsts[index]
                if first is None:
                    continue
                if first > end:
                    break
                next_first = next((f for f in firsts[index + 1:] if f is not None), None)
                if next_first is not None and next_first <= start:
                    continue
                if first >= start and next_first is not None and next_first <= end:
                    self._remove_file(path)
                    removed_files += 1
                    continue
                records = self._read_records(path)
                kept = [r for r in records if not start <= r.timestamp <= end]
                if len(kept) == len(records):
                    continue
                if not kept:
                    self._remove_file(path)
                    removed_files += 1
                else:
                    _write_atomic(path, b"".join(r.raw for r in kept))
                    rewritten_files += 1

            deleted_last = last is not None and start <= last.timestamp <= end
            if deleted_last:
                self._rebuild_last_value()

        logger.info(
            "Deleted history range",
            extra={
                "metric": str(self.metric_id),
                "start": start,
                "end": end,
                "removed_files": removed_files,
                "rewritten_files": rewritten_files,
            },
        )
        return deleted_last

    def _rebuild_last_value(self) -> None:
        for path in reversed(self._log_files()):
            records = self._read_records(path)
            if records:
                newest = records[-1]
                value = self.codec.decode_value(newest.value, self.value_type)
                self._write_last_value(Timestamped(newest.timestamp, value))
                return
        self._remove_file(self.last_value_path)

    def remove(self) -> None:
        """Close the writer and delete the whole metric folder."""
        with self._lock:
            self._close()
            try:
                shutil.rmtree(self.folder)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageIOError(str(self.folder), e)

    def _remove_file(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError(str(path), e)


def _file_name(sequence: int) -> str:
    return f"{sequence:08d}.log"


def _sequence(path: Path) -> int:
    match = _LOG_FILE_PATTERN.match(path.name)
    if match is None:
        raise ValueError(f"Not a log file: {path.name}")
    return int(match.group(1))


def _write_atomic(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        raise StorageIOError(str(path), e)
