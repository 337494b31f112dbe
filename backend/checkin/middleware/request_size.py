"""
Request size enforcement middleware.

Rejects oversized request bodies early (HTTP 413). Every body this service
accepts is a small JSON document, so a single limit applies to all paths.
"""
from typing import Optional, Set

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger()


class RequestSizeMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        max_size: int = 1024 * 1024,
        excluded_paths: Optional[Set[str]] = None,
    ):
        """
        Args:
            app: ASGI application
            max_size: Maximum request body size in bytes
            excluded_paths: Path prefixes exempt from the check
        """
        super().__init__(app)
        self.max_size = max_size
        self.excluded_paths = excluded_paths or set()

    def _too_large(self, request: Request, size: int) -> JSONResponse:
        logger.warning(
            "Request size exceeded",
            path=request.url.path,
            size=size,
            limit=self.max_size,
            client=request.client.host if request.client else "unknown",
        )
        return JSONResponse(
            status_code=413,
            content={
                "detail": f"Request body too large. Maximum size is {self.max_size} bytes",
                "error": "request_too_large",
            },
        )

    async def dispatch(self, request: Request, call_next):
        if any(request.url.path.startswith(p) for p in self.excluded_paths):
            return await call_next(request)

        content_length = request.headers.get("Content-Length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = 0
            if size > self.max_size:
                return self._too_large(request, size)
        elif request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # No Content-Length: measure the body itself
            body = await request.body()
            if len(body) > self.max_size:
                return self._too_large(request, len(body))

        return await call_next(request)
