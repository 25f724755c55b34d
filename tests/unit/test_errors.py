"""
Unit tests for the error taxonomy.

Tests cover:
- Stable status per error
- Status mapping of foreign exceptions
- Error dictionaries
"""

import pytest

from tsdb.metricdb_server.errors import (
    INTERNAL_ERROR_STATUS,
    AccessDeniedError,
    LogFileCorruptedError,
    MetricDecodeError,
    MetricEncodeError,
    MetricError,
    MetricNotFoundError,
    MetricTypeMismatchError,
    NoValueAvailableError,
    NotWritableError,
    StorageIOError,
    status_for,
)


class TestStatus:
    """Tests for status mapping."""

    @pytest.mark.parametrize(
        "error,status",
        [
            (MetricNotFoundError("app/temp"), 404),
            (MetricTypeMismatchError("app/temp", "Int", "Double"), 428),
            (AccessDeniedError("list"), 401),
            (MetricEncodeError("bad value"), 424),
            (MetricDecodeError("bad data"), 417),
            (LogFileCorruptedError("00000001.log", "truncated"), 422),
            (NotWritableError("app/temp"), 417),
            (NoValueAvailableError("app/temp"), 410),
            (StorageIOError("last", OSError("disk full")), 423),
        ],
    )
    def test_status(self, error, status):
        """Each error maps to its fixed status."""
        assert isinstance(error, MetricError)
        assert error.status == status
        assert status_for(error) == status

    def test_foreign_exception(self):
        """Exceptions outside the taxonomy map to an internal error."""
        assert status_for(RuntimeError("boom")) == INTERNAL_ERROR_STATUS == 500


class TestErrorDict:
    """Tests for to_dict."""

    def test_contains_code_and_details(self):
        """Dictionaries carry message, code and details."""
        data = MetricTypeMismatchError("app/temp", "Int", "Double").to_dict()

        assert data["error_code"] == "TYPE_MISMATCH"
        assert "app/temp" in data["error"]
        assert data["details"] == {"metric": "app/temp", "registered": "Int", "requested": "Double"}

    def test_access_denied_without_metric(self):
        """List operations are denied without a target."""
        error = AccessDeniedError("list")
        assert str(error) == "Access denied: list"
        assert error.metric is None
