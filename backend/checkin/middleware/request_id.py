"""
Request ID middleware.

Propagates a caller-supplied X-Request-ID or generates one, and binds it to
the structlog context so every event logged while serving the request
carries it.
"""
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER)

        # Alphanumerics, hyphens and underscores, at most 64 chars
        if not request_id or len(request_id) > 64 or not self._is_valid_request_id(request_id):
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _is_valid_request_id(request_id: str) -> bool:
        return all(c.isalnum() or c in "-_" for c in request_id)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
