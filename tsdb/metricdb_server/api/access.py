"""
Access control for remote MetricDB operations.

Every remote operation asks an AccessPolicy before touching storage. The
policy gets the operation kind, the target metric (None for list
operations) and the opaque credential delivered by the transport.

Invariants:
    - check() raises AccessDeniedError to deny; returning means allowed
    - Policies never see storage contents
    - Credentials are compared as raw bytes

How to change safely:
    - New operations must be added to Operation and handled by every policy
    - Never log credentials
"""

from __future__ import annotations

import hmac
import logging
from abc import abstractmethod
from enum import Enum
from typing import Iterable, Optional, Protocol, Set, runtime_checkable

from ..errors import AccessDeniedError
from ..model.types import MetricId

logger = logging.getLogger(__name__)


class Operation(Enum):
    """Kinds of remote operations."""

    LIST = "list"
    LIST_LAST_VALUES = "list_last_values"
    LAST_VALUE = "last_value"
    HISTORY = "history"
    PUSH = "push"
    INFO = "info"


@runtime_checkable
class AccessPolicy(Protocol):
    """Decides whether a remote caller may perform an operation."""

    @abstractmethod
    def check(
        self,
        operation: Operation,
        metric_id: Optional[MetricId],
        credential: Optional[bytes],
    ) -> None:
        """Allow or deny a request.

        Args:
            operation: Requested operation
            metric_id: Target metric, None for list operations
            credential: Credential sent by the caller, None if absent

        Raises:
            AccessDeniedError: If the request is not allowed
        """
        ...


class TokenAccessManager:
    """Allows requests that carry one of a set of access tokens.

    The same tokens grant every operation on every metric.

    Example:
        >>> manager = TokenAccessManager([b"secret"])
        >>> manager.check(Operation.LIST, None, b"secret")
        >>> manager.check(Operation.LIST, None, b"wrong")
        Traceback (most recent call last):
        ...
        AccessDeniedError: Access denied: list
    """

    def __init__(self, tokens: Iterable[bytes] = ()) -> None:
        self._tokens: Set[bytes] = set(tokens)

    def add(self, token: bytes) -> None:
        self._tokens.add(token)

    def remove(self, token: bytes) -> None:
        self._tokens.discard(token)

    def __len__(self) -> int:
        return len(self._tokens)

    def check(
        self,
        operation: Operation,
        metric_id: Optional[MetricId],
        credential: Optional[bytes],
    ) -> None:
        if credential is not None and any(
            hmac.compare_digest(credential, token) for token in self._tokens
        ):
            return
        target = str(metric_id) if metric_id is not None else None
        logger.info(
            "Access denied",
            extra={"operation": operation.value, "metric": target},
        )
        raise AccessDeniedError(operation.value, target)


class AllowAllAccess:
    """Allows every request. Only for development setups."""

    def __init__(self) -> None:
        logger.warning("Access control disabled, all remote requests are allowed")

    def check(
        self,
        operation: Operation,
        metric_id: Optional[MetricId],
        credential: Optional[bytes],
    ) -> None:
        return None
