"""aiohttp middlewares: API key check and request logging."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable

from aiohttp import web

from padma_wa.log_context import set_log_context

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

API_KEY_HEADER = "x-api-key"


def api_key_middleware(api_key: str) -> Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]:
    """Reject requests whose ``x-api-key`` header does not match *api_key*.

    Uses constant-time comparison to prevent timing attacks.
    """

    @web.middleware
    async def _check(request: web.Request, handler: Handler) -> web.StreamResponse:
        supplied = request.headers.get(API_KEY_HEADER, "")
        if not supplied or not hmac.compare_digest(supplied, api_key):
            logger.warning("Rejected %s %s: invalid api key", request.method, request.path)
            return web.json_response({"error": "Api key not found or invalid"}, status=401)
        return await handler(request)

    return _check


@web.middleware
async def request_logger(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Tag the request's log context and log it at DEBUG."""
    set_log_context(operation="http", session_id=request.match_info.get("session_id"))
    logger.debug(
        "%s %s query=%s ip=%s",
        request.method,
        request.path,
        dict(request.query),
        request.remote,
    )
    return await handler(request)
