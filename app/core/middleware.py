"""Request middleware: correlation ids, caller context and access logs."""

import time
import uuid
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import get_logger, request_id_ctx, user_id_ctx

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
USER_ID_HEADER = "X-User-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request id and forwarded caller to the log context.

    The request id is taken from ``X-Request-ID`` (generated when absent) and
    echoed on the response. Probes under ``/health`` are logged at debug level.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request_token = request_id_ctx.set(request_id)
        user_token = user_id_ctx.set(request.headers.get(USER_ID_HEADER) or None)

        path = request.url.path
        log = logger.debug if path.startswith("/health") else logger.info
        started = time.perf_counter()

        try:
            log("http.request_started", method=request.method, path=path)
            response = await call_next(request)
            log(
                "http.request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            user_id_ctx.reset(user_token)
            request_id_ctx.reset(request_token)
