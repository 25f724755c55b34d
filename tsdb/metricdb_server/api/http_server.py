"""
HTTP transport for MetricDB.

This module binds the MetricService operations to POST routes of an aiohttp
application. Handlers only move bytes between the request, the service
and the response.

Routes (prefix configurable, default "metrics"):
    POST /metrics/list                 -> list_metrics
    POST /metrics/list/extended        -> list_extended
    POST /metrics/last/all             -> list_last_values
    POST /metrics/last/{hash}          -> last_value
    POST /metrics/history/{hash}       -> history
    POST /metrics/push/{hash}          -> push
    POST /metrics/info/{hash}          -> metric_info

Invariants:
    - The credential is the base64-decoded "token" header
    - MetricError responses use the error's status and a JSON body
    - Handlers contain no storage or access logic

How to change safely:
    - Add routes for new service operations only
    - Keep /last/all registered before /last/{hash}
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from functools import partial
from typing import Optional

from aiohttp import web

from ..config import HttpConfig
from ..errors import MetricDecodeError, MetricError
from .service import MetricService

logger = logging.getLogger(__name__)

TOKEN_HEADER = "token"


def create_http_app(service: MetricService, config: HttpConfig | None = None) -> web.Application:
    """Create the aiohttp application exposing a MetricService.

    Args:
        service: Service implementing the operations
        config: HTTP configuration (route prefix)

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    prefix = "/" + config.sub_path.strip("/") if config.sub_path.strip("/") else ""
    app = web.Application()

    app.router.add_post(f"{prefix}/list", partial(handle_list, service=service))
    app.router.add_post(f"{prefix}/list/extended", partial(handle_list_extended, service=service))
    app.router.add_post(f"{prefix}/last/all", partial(handle_last_all, service=service))
    app.router.add_post(f"{prefix}/last/{{hash}}", partial(handle_last_value, service=service))
    app.router.add_post(f"{prefix}/history/{{hash}}", partial(handle_history, service=service))
    app.router.add_post(f"{prefix}/push/{{hash}}", partial(handle_push, service=service))
    app.router.add_post(f"{prefix}/info/{{hash}}", partial(handle_info, service=service))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except MetricError as e:
            logger.debug(
                f"Request failed: {e.message}",
                extra={"path": request.path, "status": e.status, "error_code": e.code},
            )
            return web.json_response(e.to_dict(), status=e.status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.append(error_middleware)
    return app


def extract_credential(request: web.Request) -> Optional[bytes]:
    """Decode the access token of a request.

    Returns:
        The token bytes, or None if the header is missing or not base64
    """
    token = request.headers.get(TOKEN_HEADER)
    if token is None:
        return None
    try:
        return base64.b64decode(token.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        return None


def _response(service: MetricService, data: bytes) -> web.Response:
    return web.Response(body=data, content_type=service.codec.content_type)


async def _read_body(request: web.Request) -> bytes:
    body = await request.read()
    if not body:
        raise MetricDecodeError("Request body is empty")
    return body


async def handle_list(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /list - All registered metrics."""
    data = await service.list_metrics(extract_credential(request))
    return _response(service, data)


async def handle_list_extended(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /list/extended - All metrics with their last values."""
    data = await service.list_extended(extract_credential(request))
    return _response(service, data)


async def handle_last_all(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /last/all - Last value of every metric."""
    data = await service.list_last_values(extract_credential(request))
    return _response(service, data)


async def handle_last_value(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /last/{hash} - Last value of one metric."""
    data = await service.last_value(request.match_info["hash"], extract_credential(request))
    return _response(service, data)


async def handle_history(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /history/{hash} - Values of one metric in a range."""
    credential = extract_credential(request)
    body = await _read_body(request)
    data = await service.history(request.match_info["hash"], body, credential)
    return _response(service, data)


async def handle_push(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /push/{hash} - Store values sent by the caller."""
    credential = extract_credential(request)
    body = await _read_body(request)
    await service.push(request.match_info["hash"], body, credential)
    return web.Response(status=200)


async def handle_info(request: web.Request, service: MetricService) -> web.Response:
    """Handle POST /info/{hash} - Registry entry of one metric."""
    data = await service.metric_info(request.match_info["hash"], extract_credential(request))
    return _response(service, data)

