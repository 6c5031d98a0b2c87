import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from services.metrics import increment_http_requests
from services.observability import resolve_request_id, set_request_id

logger = logging.getLogger("billing.http")

REQUEST_ID_HEADER = "X-Request-ID"


def _route_template(request: Request) -> str:
    # route pattern, not raw path
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        start = time.time()

        request.state.request_id = req_id
        set_request_id(req_id)

        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[REQUEST_ID_HEADER] = req_id
            return response
        finally:
            duration_ms = int((time.time() - start) * 1000)
            increment_http_requests(_route_template(request), status)

            # no headers or bodies
            logger.info(
                "http_request_end request_id=%s method=%s path=%s status=%s duration_ms=%s",
                req_id,
                request.method,
                request.url.path,
                status,
                duration_ms,
            )
            set_request_id(None)
