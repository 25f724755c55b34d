"""
Remote access layer for MetricDB.

This module provides:
- Access policies deciding which remote requests are allowed
- MetricService, the transport-agnostic remote operations
- The aiohttp transport binding the operations to HTTP routes
"""

from .access import AccessPolicy, AllowAllAccess, Operation, TokenAccessManager
from .http_server import create_http_app
from .service import MetricService

__all__ = [
    "AccessPolicy",
    "AllowAllAccess",
    "MetricService",
    "Operation",
    "TokenAccessManager",
    "create_http_app",
]
