"""
Error types for MetricDB.

This module defines every exception raised by the storage engine and the
protocol layer:
- MetricError: Base exception
- MetricNotFoundError: Unknown metric id or hash
- MetricTypeMismatchError: Handle requested a different value type
- AccessDeniedError: Access policy rejected the request
- MetricEncodeError / MetricDecodeError: Codec failures
- LogFileCorruptedError: Framing violation in a log file
- NotWritableError: Push to a metric not flagged as remotely writable
- NoValueAvailableError: Metric has never been written
- StorageIOError: File system failure while reading or writing logs

Invariants:
    - All errors inherit from MetricError
    - Each error class has exactly one stable code and one status
    - Status values follow the HTTP codes used by existing collectors

How to change safely:
    - Never renumber an existing status; collectors map them back to errors
    - Add new error classes with new codes only
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# Status returned for exceptions outside the taxonomy
INTERNAL_ERROR_STATUS = 500


class MetricError(Exception):
    """Base exception for all MetricDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        status: Stable externally visible status
        details: Additional error context
    """

    code = "METRIC_ERROR"
    status = INTERNAL_ERROR_STATUS

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for error responses."""
        return {
            "error": self.message,
            "error_code": self.code,
            "details": self.details,
        }


class MetricNotFoundError(MetricError):
    """Metric does not exist.

    Raised when:
    - A handle refers to a metric that was deleted
    - A remote hash does not resolve to a registered metric
    """

    code = "NOT_FOUND"
    status = 404

    def __init__(self, metric: str) -> None:
        super().__init__(f"Metric not found: {metric}", details={"metric": metric})
        self.metric = metric


class MetricTypeMismatchError(MetricError):
    """A metric was requested with a value type other than the registered one."""

    code = "TYPE_MISMATCH"
    status = 428

    def __init__(self, metric: str, registered: str, requested: str) -> None:
        super().__init__(
            f"Metric {metric} has type {registered}, requested {requested}",
            details={"metric": metric, "registered": registered, "requested": requested},
        )
        self.registered = registered
        self.requested = requested


class AccessDeniedError(MetricError):
    """Access denied by the access policy."""

    code = "ACCESS_DENIED"
    status = 401

    def __init__(self, operation: str, metric: Optional[str] = None) -> None:
        target = f" on {metric}" if metric else ""
        super().__init__(
            f"Access denied: {operation}{target}",
            details={"operation": operation, "metric": metric},
        )
        self.operation = operation
        self.metric = metric


class MetricEncodeError(MetricError):
    """A value could not be converted to binary data."""

    code = "FAILED_TO_ENCODE"
    status = 424


class MetricDecodeError(MetricError):
    """Binary data could not be decoded into a value."""

    code = "FAILED_TO_DECODE"
    status = 417


class LogFileCorruptedError(MetricError):
    """A log file contains a record that violates the framing.

    The error applies to the query that found it; the writer stays usable.
    """

    code = "LOG_FILE_CORRUPTED"
    status = 422

    def __init__(self, file: str, reason: str) -> None:
        super().__init__(f"File {file}: {reason}", details={"file": file})
        self.file = file


class NotWritableError(MetricError):
    """The metric does not accept values pushed by remote callers."""

    code = "NOT_WRITABLE"
    status = 417

    def __init__(self, metric: str) -> None:
        super().__init__(
            f"Metric {metric} can not be updated remotely", details={"metric": metric}
        )
        self.metric = metric


class NoValueAvailableError(MetricError):
    """The metric has no value yet."""

    code = "NO_VALUE_AVAILABLE"
    status = 410

    def __init__(self, metric: str) -> None:
        super().__init__(f"No value available for {metric}", details={"metric": metric})
        self.metric = metric


class StorageIOError(MetricError):
    """A log, side or registry file could not be opened, written or deleted."""

    code = "FAILED_TO_OPEN_LOG_FILE"
    status = 423

    def __init__(self, file: str, error: Exception) -> None:
        super().__init__(f"File {file}: {error}", details={"file": file})
        self.file = file
        self.error = error


def status_for(error: BaseException) -> int:
    """Map an exception to its stable external status."""
    if isinstance(error, MetricError):
        return error.status
    return INTERNAL_ERROR_STATUS
